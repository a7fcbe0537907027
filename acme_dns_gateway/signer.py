"""
Account key material: generation, JWS signing and export/import.
"""

import logging
from typing import Any

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, padding, rsa
from cryptography.hazmat.primitives.asymmetric.utils import (
    decode_dss_signature,
    encode_dss_signature,
)

from acme_dns_gateway import utils
from acme_dns_gateway.exceptions import UnsupportedAlgorithmError

logger = logging.getLogger(__name__)

RSA_KEY_SIZE = 2048

# algorithm -> (curve, hash, coordinate size in bytes, JWK curve name)
EC_ALGORITHMS = {
    "ES256": (ec.SECP256R1, hashes.SHA256, 32, "P-256"),
    "ES384": (ec.SECP384R1, hashes.SHA384, 48, "P-384"),
    "ES512": (ec.SECP521R1, hashes.SHA512, 66, "P-521"),
}

RSA_ALGORITHMS = {
    "RS256": hashes.SHA256,
    "RS384": hashes.SHA384,
    "RS512": hashes.SHA512,
}

SUPPORTED_ALGORITHMS = tuple(EC_ALGORITHMS) + tuple(RSA_ALGORITHMS)

JWK_CURVES = {name: (curve, size) for curve, _, size, name in EC_ALGORITHMS.values()}


class AccountSigner:
    """Owns an account key pair and produces JWS signatures for one algorithm."""

    def __init__(
        self,
        algorithm: str,
        private_key: ec.EllipticCurvePrivateKey | rsa.RSAPrivateKey,
    ):
        """
        Wrap an existing private key.

        Args:
            algorithm: JWS algorithm identifier, e.g. "ES256".
            private_key: Private key matching the algorithm family.

        Raises:
            UnsupportedAlgorithmError: If the algorithm is unknown.
            TypeError: If the key type does not match the algorithm.
        """
        if algorithm not in SUPPORTED_ALGORITHMS:
            raise UnsupportedAlgorithmError(algorithm, SUPPORTED_ALGORITHMS)

        if algorithm in EC_ALGORITHMS:
            curve = EC_ALGORITHMS[algorithm][0]
            if not isinstance(private_key, ec.EllipticCurvePrivateKey) or not isinstance(
                private_key.curve, curve
            ):
                raise TypeError(f"{algorithm} requires an EC key on curve {curve.name}")
        elif not isinstance(private_key, rsa.RSAPrivateKey):
            raise TypeError(f"{algorithm} requires an RSA key")

        self.algorithm = algorithm
        self.private_key = private_key

    @classmethod
    def generate(cls, algorithm: str) -> "AccountSigner":
        """
        Create a signer with a freshly generated key pair.

        Args:
            algorithm: One of SUPPORTED_ALGORITHMS.

        Returns:
            AccountSigner: The new signer.

        Raises:
            UnsupportedAlgorithmError: If the algorithm is unknown.
        """
        logger.debug(f"Creating new {algorithm} signer")
        if algorithm in EC_ALGORITHMS:
            key: Any = ec.generate_private_key(EC_ALGORITHMS[algorithm][0]())
        elif algorithm in RSA_ALGORITHMS:
            key = rsa.generate_private_key(public_exponent=65537, key_size=RSA_KEY_SIZE)
        else:
            raise UnsupportedAlgorithmError(algorithm, SUPPORTED_ALGORITHMS)
        return cls(algorithm, key)

    @classmethod
    def from_export(cls, data: dict[str, Any]) -> "AccountSigner":
        """
        Rebuild a signer from the output of export().

        Raises:
            KeyError: If the export is missing a field.
            TypeError: If the key material is not a PEM string.
            ValueError: If the key cannot be loaded.
            UnsupportedAlgorithmError: If the recorded key type is unknown.
        """
        key_export = data["key_export"]
        if not isinstance(key_export, str):
            raise TypeError(f"Expected PEM string for key_export, got {type(key_export).__name__}")
        key = serialization.load_pem_private_key(key_export.encode("ascii"), password=None)
        if not isinstance(key, (ec.EllipticCurvePrivateKey, rsa.RSAPrivateKey)):
            raise ValueError(f"Unsupported key type in export: {type(key).__name__}")
        return cls(data["key_type"], key)

    def export(self) -> dict[str, str]:
        """Return the full key material as a JSON-serializable dict."""
        pem = self.private_key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption(),
        )
        return {"key_type": self.algorithm, "key_export": pem.decode("ascii")}

    def public_jwk(self) -> dict[str, str]:
        """
        Return the public key as a JWK with only its required members.

        Returns:
            dict[str, str]: JWK usable in JWS headers and for thumbprints.
        """
        public_key = self.private_key.public_key()

        if isinstance(public_key, ec.EllipticCurvePublicKey):
            _, _, size, crv = EC_ALGORITHMS[self.algorithm]
            numbers = public_key.public_numbers()
            return {
                "kty": "EC",
                "crv": crv,
                "x": utils.b64url_uint(numbers.x, size),
                "y": utils.b64url_uint(numbers.y, size),
            }

        numbers = public_key.public_numbers()
        return {
            "kty": "RSA",
            "n": utils.b64url_uint(numbers.n),
            "e": utils.b64url_uint(numbers.e),
        }

    def thumbprint(self) -> str:
        """Return the RFC 7638 thumbprint of the public JWK."""
        return utils.json_thumbprint(self.public_jwk())

    def sign(self, data: bytes) -> bytes:
        """
        Sign data in the JWS encoding for this algorithm.

        ECDSA signatures are returned as the fixed-width r||s concatenation.
        """
        if self.algorithm in EC_ALGORITHMS:
            _, hash_cls, size, _ = EC_ALGORITHMS[self.algorithm]
            der = self.private_key.sign(data, ec.ECDSA(hash_cls()))
            r, s = decode_dss_signature(der)
            return r.to_bytes(size, "big") + s.to_bytes(size, "big")

        hash_cls = RSA_ALGORITHMS[self.algorithm]
        return self.private_key.sign(data, padding.PKCS1v15(), hash_cls())

    def verify(self, data: bytes, signature: bytes) -> bool:
        """Check a signature against this signer's exported public JWK."""
        return verify_signature(self.public_jwk(), self.algorithm, data, signature)

    def __repr__(self) -> str:
        return f"<AccountSigner {self.algorithm} {self.thumbprint()}>"


def public_key_from_jwk(jwk: dict[str, str]) -> ec.EllipticCurvePublicKey | rsa.RSAPublicKey:
    """
    Load a public key from its JWK representation.

    Raises:
        ValueError: If the key type or curve is not supported.
    """
    kty = jwk.get("kty")
    if kty == "EC":
        if jwk.get("crv") not in JWK_CURVES:
            raise ValueError(f"Unsupported curve: {jwk.get('crv')}")
        curve, _ = JWK_CURVES[jwk["crv"]]
        x = int.from_bytes(utils.b64url_decode(jwk["x"]), "big")
        y = int.from_bytes(utils.b64url_decode(jwk["y"]), "big")
        return ec.EllipticCurvePublicNumbers(x, y, curve()).public_key()

    if kty == "RSA":
        n = int.from_bytes(utils.b64url_decode(jwk["n"]), "big")
        e = int.from_bytes(utils.b64url_decode(jwk["e"]), "big")
        return rsa.RSAPublicNumbers(e, n).public_key()

    raise ValueError(f"Unsupported key type: {kty}")


def verify_signature(jwk: dict[str, str], algorithm: str, data: bytes, signature: bytes) -> bool:
    """
    Verify a JWS signature with a public JWK.

    Returns:
        bool: True if the signature is valid.
    """
    public_key = public_key_from_jwk(jwk)

    try:
        if algorithm in EC_ALGORITHMS:
            _, hash_cls, size, _ = EC_ALGORITHMS[algorithm]
            if len(signature) != 2 * size:
                return False
            r = int.from_bytes(signature[:size], "big")
            s = int.from_bytes(signature[size:], "big")
            public_key.verify(encode_dss_signature(r, s), data, ec.ECDSA(hash_cls()))
        elif algorithm in RSA_ALGORITHMS:
            public_key.verify(signature, data, padding.PKCS1v15(), RSA_ALGORITHMS[algorithm]())
        else:
            raise UnsupportedAlgorithmError(algorithm, SUPPORTED_ALGORITHMS)
    except InvalidSignature:
        return False

    return True
