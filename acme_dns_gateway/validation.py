"""
Checks for issued certificate chains.
"""

import logging

from cryptography import x509
from cryptography.x509.oid import ExtensionOID, NameOID

from acme_dns_gateway.certificate import PEM_CERT_HEADER

logger = logging.getLogger(__name__)

PEM_CERT_FOOTER = "-----END CERTIFICATE-----"


def validate_certificate_format(certificate: str) -> tuple[bool, str]:
    """
    Validate the PEM armor of a certificate chain.

    Returns:
        tuple[bool, str]: (is_valid, error_message)
    """
    if not certificate.strip().startswith(PEM_CERT_HEADER):
        return (False, "Certificate does not start with BEGIN CERTIFICATE marker")

    if not certificate.strip().endswith(PEM_CERT_FOOTER):
        return (False, "Certificate does not end with END CERTIFICATE marker")

    return (True, "")


def normalize_certificate(certificate: str) -> str:
    """Use LF line endings and end with a newline."""
    certificate = certificate.replace("\r\n", "\n").replace("\r", "\n")
    if not certificate.endswith("\n"):
        certificate += "\n"
    return certificate


def parse_certificate_chain(certificate: str) -> list[x509.Certificate]:
    """
    Parse a PEM chain into certificate objects, leaf first.

    Raises:
        ValueError: If a block fails to parse.
    """
    certificates = []
    for i, block in enumerate(certificate.split(PEM_CERT_HEADER)[1:], 1):
        cert_pem = PEM_CERT_HEADER + block.split(PEM_CERT_FOOTER)[0] + PEM_CERT_FOOTER
        try:
            certificates.append(x509.load_pem_x509_certificate(cert_pem.encode()))
        except ValueError as e:
            raise ValueError(f"Failed to parse certificate {i}: {e}") from e
    return certificates


def get_certificate_domains(cert: x509.Certificate) -> tuple[str, list[str]]:
    """
    Extract CN and DNS SANs from a certificate.

    Returns:
        tuple[str, list[str]]: (common_name, subject_alternative_names)
    """
    cn_attrs = cert.subject.get_attributes_for_oid(NameOID.COMMON_NAME)
    cn = str(cn_attrs[0].value) if cn_attrs else ""

    try:
        san_ext = cert.extensions.get_extension_for_oid(ExtensionOID.SUBJECT_ALTERNATIVE_NAME)
        sans = san_ext.value.get_values_for_type(x509.DNSName)
    except x509.ExtensionNotFound:
        sans = []

    return (cn, sans)


def covers_domain(names: list[str], domain: str) -> bool:
    """Whether a set of certificate names matches a domain, honoring one-label wildcards."""
    domain = domain.lower()
    for name in (n.lower() for n in names):
        if name == domain:
            return True
        if name.startswith("*.") and "." in domain and domain.split(".", 1)[1] == name[2:]:
            return True
    return False


def validate_certificate_chain(certificate: str, identifiers: list[str]) -> tuple[bool, str, int]:
    """
    Validate a PEM chain and check the leaf covers every identifier.

    Returns:
        tuple[bool, str, int]: (is_valid, error_message, cert_count)
    """
    is_valid, error = validate_certificate_format(certificate)
    if not is_valid:
        return (False, error, 0)

    cert_count = certificate.count(PEM_CERT_HEADER)
    try:
        certificates = parse_certificate_chain(certificate)
    except ValueError as e:
        return (False, f"Failed to validate certificate chain: {e}", cert_count)

    cn, sans = get_certificate_domains(certificates[0])
    names = [cn, *sans] if cn else sans
    uncovered = [identifier for identifier in identifiers if not covers_domain(names, identifier)]
    if uncovered:
        return (
            False,
            f"Certificate does not cover {', '.join(uncovered)}. "
            f"Certificate is for: CN={cn or 'N/A'}, SANs={sans}",
            cert_count,
        )

    for i, cert in enumerate(certificates, 1):
        issuer = cert.issuer.get_attributes_for_oid(NameOID.COMMON_NAME)
        logger.debug(f"Certificate {i}: Issued by {issuer[0].value if issuer else 'unknown'}")

    return (True, "", cert_count)
