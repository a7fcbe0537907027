"""
ACME DNS Gateway - certificate enrollment from ACME CAs with DNS-01 validation.
"""

from . import (
    accounts,
    acme,
    certificate,
    challenge,
    config,
    dns_providers,
    eab,
    exceptions,
    models,
    propagation,
    retry,
    signer,
    utils,
    validation,
)
from .config import AcmeClientConfig, validate_connection_info

# Import main public API
from .core import AcmeEnrollmentManager, EnrollmentResult

__version__ = "0.1.0"

__all__ = [
    # High-level API (recommended for most users)
    "AcmeEnrollmentManager",
    "EnrollmentResult",
    "AcmeClientConfig",
    "validate_connection_info",
    # Low-level modules (for advanced usage)
    "accounts",
    "acme",
    "certificate",
    "challenge",
    "config",
    "dns_providers",
    "eab",
    "exceptions",
    "models",
    "propagation",
    "retry",
    "signer",
    "utils",
    "validation",
]
