"""
External Account Binding (RFC 8555 section 7.3.4).

CAs that pre-register customers out of band issue a key id and an HMAC key.
The binding is a JWS over the new account's public JWK, MAC'd with that key.
"""

import logging
from typing import TYPE_CHECKING

from cryptography.hazmat.primitives import hashes, hmac

from acme_dns_gateway import utils
from acme_dns_gateway.exceptions import MissingParameterError, UnsupportedAlgorithmError
from acme_dns_gateway.signer import AccountSigner

if TYPE_CHECKING:
    from acme_dns_gateway.acme import AcmeClient

logger = logging.getLogger(__name__)

HMAC_ALGORITHMS = {
    "HS256": hashes.SHA256,
    "HS384": hashes.SHA384,
    "HS512": hashes.SHA512,
}


def validate_eab_pair(kid: str | None, hmac_key: str | None) -> bool:
    """
    Check that the EAB credentials are either both set or both absent.

    Returns:
        bool: True if a binding should be built.

    Raises:
        MissingParameterError: If only one of the pair is configured.
    """
    if kid and not hmac_key:
        raise MissingParameterError("eab_hmac_key", "EAB key id is set but the HMAC key is missing.")
    if hmac_key and not kid:
        raise MissingParameterError("eab_kid", "EAB HMAC key is set but the key id is missing.")
    return bool(kid and hmac_key)


def compute_hmac(data: bytes, key: bytes, algorithm: str) -> bytes:
    """HMAC data with the hash matching an HS* algorithm."""
    if algorithm not in HMAC_ALGORITHMS:
        raise UnsupportedAlgorithmError(algorithm, HMAC_ALGORITHMS)
    mac = hmac.HMAC(key, HMAC_ALGORITHMS[algorithm]())
    mac.update(data)
    return mac.finalize()


def build_external_account_binding(
    client: "AcmeClient",
    signer: AccountSigner,
    kid: str,
    hmac_key: str,
    algorithm: str = "HS256",
) -> dict[str, str]:
    """
    Build the externalAccountBinding object for a new-account request.

    Args:
        client: ACME client; supplies the newAccount URL.
        signer: Account signer whose public key is being bound.
        kid: Key identifier issued by the CA.
        hmac_key: Base64url-encoded HMAC key issued by the CA.
        algorithm: HS256, HS384 or HS512.

    Returns:
        dict[str, str]: Flattened JWS {"protected", "payload", "signature"}.

    Raises:
        UnsupportedAlgorithmError: If the algorithm is not an HS* variant.
        MissingParameterError: If any input is empty.
    """
    if algorithm not in HMAC_ALGORITHMS:
        raise UnsupportedAlgorithmError(algorithm, HMAC_ALGORITHMS)
    if client is None:
        raise MissingParameterError("client")
    if signer is None:
        raise MissingParameterError("signer")
    if not kid or not kid.strip():
        raise MissingParameterError("eab_kid")
    if not hmac_key or not hmac_key.strip():
        raise MissingParameterError("eab_hmac_key")

    try:
        key = utils.b64url_decode(hmac_key.strip())
    except ValueError as e:
        raise MissingParameterError("eab_hmac_key", f"EAB HMAC key is not valid base64url: {e}") from e

    protected_header = {"alg": algorithm, "kid": kid, "url": client.url_for("newAccount")}
    protected = utils.b64url(utils.json_encode(protected_header, sort_keys=False))
    payload = utils.b64url(utils.json_encode(signer.public_jwk()))

    signature = compute_hmac(f"{protected}.{payload}".encode("utf-8"), key, algorithm)
    logger.debug(f"Built external account binding for kid {kid} ({algorithm})")

    return {"protected": protected, "payload": payload, "signature": utils.b64url(signature)}
