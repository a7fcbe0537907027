"""
CSR and certificate encoding utilities.
"""

import base64
import binascii
import logging
import re

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import ExtensionOID, NameOID

logger = logging.getLogger(__name__)

PUBLIC_EXPONENT = 65537
PEM_CERT_HEADER = "-----BEGIN CERTIFICATE-----"

_CN_PATTERN = re.compile(r"CN=([^,]+)", re.IGNORECASE)
_PEM_ARMOR = re.compile(r"-----(BEGIN|END)[^-]*-----")


def generate_private_key(key_size: int = 2048, public_exponent: int = PUBLIC_EXPONENT) -> rsa.RSAPrivateKey:
    """
    Generate an RSA private key for a certificate.

    Args:
        key_size: Size of the key in bits.
        public_exponent: Public exponent value.
    """
    logger.info(f"Generating {key_size}-bit RSA private key")
    return rsa.generate_private_key(public_exponent=public_exponent, key_size=key_size)


def generate_csr(
    domain: str, private_key: rsa.RSAPrivateKey, additional_domains: list[str] | None = None
) -> x509.CertificateSigningRequest:
    """
    Generate a Certificate Signing Request with the domain as CN and all domains as SANs.

    Args:
        domain: Primary domain name for the certificate (used as CN).
        private_key: Private key to sign the CSR with.
        additional_domains: Additional domains to include in SAN (optional).

    Returns:
        x509.CertificateSigningRequest: Generated CSR.
    """
    san_domains = [domain]
    for additional_domain in additional_domains or []:
        if additional_domain not in san_domains:
            san_domains.append(additional_domain)

    logger.info(f"Creating CSR for domains: {', '.join(san_domains)}")
    return (
        x509.CertificateSigningRequestBuilder()
        .subject_name(x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, domain)]))
        .add_extension(
            x509.SubjectAlternativeName([x509.DNSName(d) for d in san_domains]), critical=False
        )
        .sign(private_key, hashes.SHA256())
    )


def private_key_to_pem(private_key: rsa.RSAPrivateKey) -> str:
    """Serialize a private key as unencrypted PEM."""
    pem_bytes = private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.TraditionalOpenSSL,
        encryption_algorithm=serialization.NoEncryption(),
    )
    return pem_bytes.decode("ascii")


def csr_to_single_line(csr: str) -> str:
    """Strip PEM armor and whitespace from a CSR, leaving its base64 body."""
    return "".join(_PEM_ARMOR.sub("", csr).split())


def load_csr(data: bytes | str) -> x509.CertificateSigningRequest:
    """
    Load a CSR given as PEM, as a single-line base64 string, or as DER bytes.

    Raises:
        ValueError: If the data is not a CSR in any of those forms.
    """
    if isinstance(data, bytes):
        if data.lstrip().startswith(b"-----BEGIN"):
            return x509.load_pem_x509_csr(data.strip())
        try:
            return x509.load_der_x509_csr(data)
        except ValueError:
            data = data.decode("ascii", errors="strict")

    body = csr_to_single_line(data)
    try:
        der = base64.b64decode(body, validate=True)
    except binascii.Error as e:
        raise ValueError(f"CSR is not valid base64: {e}") from e
    return x509.load_der_x509_csr(der)


def csr_to_der(csr: x509.CertificateSigningRequest) -> bytes:
    return csr.public_bytes(serialization.Encoding.DER)


def csr_identifiers(csr: x509.CertificateSigningRequest) -> list[str]:
    """Return the CN followed by the DNS SANs of a CSR, without duplicates."""
    names: list[str] = []

    for attr in csr.subject.get_attributes_for_oid(NameOID.COMMON_NAME):
        value = attr.value if isinstance(attr.value, str) else attr.value.decode("utf-8")
        names.append(value)

    try:
        san = csr.extensions.get_extension_for_oid(ExtensionOID.SUBJECT_ALTERNATIVE_NAME)
        names.extend(san.value.get_values_for_type(x509.DNSName))
    except x509.ExtensionNotFound:
        pass

    return list(dict.fromkeys(name.strip().lower() for name in names if name.strip()))


def extract_common_name(subject: str) -> str | None:
    """Return the CN value of a subject string like "CN=example.com,O=Org"."""
    if not subject:
        return None
    match = _CN_PATTERN.search(subject)
    return match.group(1).strip() if match else None


def certificate_to_pem(data: bytes) -> str:
    """
    Return certificate data as PEM text. PEM input is kept as-is; DER is encoded.

    Raises:
        ValueError: If the data is neither PEM nor a DER certificate.
    """
    stripped = data.lstrip()
    if stripped.startswith(PEM_CERT_HEADER.encode("ascii")):
        return stripped.decode("ascii")

    cert = x509.load_der_x509_certificate(data)
    return cert.public_bytes(serialization.Encoding.PEM).decode("ascii")
