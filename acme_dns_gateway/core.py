"""
Host-facing interface for ACME DNS-01 enrollment.

A host shell (a CA gateway plugin, a CLI, a scheduler) hands a CSR to the
manager and gets back one EnrollmentResult. Every failure inside the
enrollment is reported through the result; only configuration errors and
missing arguments raise.

Example usage:
    ```python
    from acme_dns_gateway import AcmeClientConfig, AcmeEnrollmentManager

    config = AcmeClientConfig.from_dict({
        "DirectoryUrl": "https://acme-staging-v02.api.letsencrypt.org/directory",
        "Email": "admin@example.com",
        "DnsProvider": "cloudflare",
        "Cloudflare_ApiToken": "...",
    })

    with AcmeEnrollmentManager(config) as manager:
        result = manager.enroll(csr_pem, "CN=www.example.com")
        if result:
            print(result.certificate_pem)
    ```
"""

import logging
import threading
from dataclasses import dataclass
from typing import Any

import requests

from acme_dns_gateway import accounts, certificate, eab, validation
from acme_dns_gateway.accounts import AccountStore
from acme_dns_gateway.acme import USER_AGENT, AcmeClient
from acme_dns_gateway.challenge import ChallengeOrchestrator
from acme_dns_gateway.config import AcmeClientConfig
from acme_dns_gateway.dns_providers import DnsProvider, create_dns_provider
from acme_dns_gateway.exceptions import AcmeError
from acme_dns_gateway.monitoring import timer
from acme_dns_gateway.propagation import PropagationChecker

logger = logging.getLogger(__name__)

DEFAULT_PRODUCT_ID = "default"

STATUS_GENERATED = "generated"
STATUS_FAILED = "failed"
STATUS_NOT_SUPPORTED = "not_supported"


def ping_directory(directory_url: str, user_agent: str = USER_AGENT) -> dict[str, Any]:
    """
    Check that a directory is reachable and offers account and order endpoints.

    Returns:
        dict[str, Any]: The directory document.

    Raises:
        AcmeError: If the directory is not JSON or lacks newAccount or newOrder.
        requests.RequestException: If the directory cannot be fetched.
    """
    logger.info(f"Pinging ACME directory {directory_url}")
    r = requests.get(directory_url, headers={"User-Agent": user_agent}, timeout=AcmeClient.TIMEOUT)
    r.raise_for_status()

    try:
        directory = r.json()
    except ValueError:
        raise AcmeError(f"ACME directory {directory_url} did not return JSON") from None

    missing = [name for name in ("newAccount", "newOrder") if not directory.get(name)]
    if missing:
        raise AcmeError(f"ACME directory is missing required endpoints: {', '.join(missing)}")

    logger.info("ACME directory is reachable")
    return directory


@dataclass
class EnrollmentResult:
    """Outcome of a host request."""

    status: str
    certificate_pem: str = ""
    request_id: str = ""
    message: str = ""

    @property
    def success(self) -> bool:
        return self.status == STATUS_GENERATED

    def __bool__(self) -> bool:
        """Allow boolean evaluation of result."""
        return self.success

    def __repr__(self) -> str:
        label = {STATUS_GENERATED: "SUCCESS", STATUS_NOT_SUPPORTED: "NOT SUPPORTED"}.get(self.status, "FAILED")
        return f"<EnrollmentResult {self.request_id or '<no request>'}: {label}>"


class AcmeEnrollmentManager:
    """
    Enrolls certificates from an ACME CA, proving control with DNS-01.

    One ACME account per directory host is reused across runs through the
    account store. Clients and providers are created on first use.

    Attributes:
        config: Validated connection settings.
        cancel: Event that aborts polling loops and waits when set.
        user_agent: User-Agent header for ACME and DNS provider requests.
    """

    def __init__(
        self,
        config: AcmeClientConfig,
        cancel: threading.Event | None = None,
        dns_provider: DnsProvider | None = None,
        propagation_checker: PropagationChecker | None = None,
        account_store: AccountStore | None = None,
        user_agent: str = USER_AGENT,
    ):
        """
        Initialize the enrollment manager.

        Args:
            config: Connection settings.
            cancel: Cancellation event shared by every wait in an enrollment.
            dns_provider: Provider override; built from the config when omitted.
            propagation_checker: Resolver checker override.
            account_store: Account store override.
            user_agent: User agent string for API requests.

        Raises:
            ConfigurationError: If the settings are incomplete or unsupported.
        """
        config.validate(require_dns=dns_provider is None)

        self.config = config
        self.cancel = cancel or threading.Event()
        self.user_agent = user_agent

        self._dns_provider = dns_provider
        self._propagation_checker = propagation_checker
        self._account_store = account_store
        self._acme_client: AcmeClient | None = None

    @property
    def dns_provider(self) -> DnsProvider:
        """Get or create the DNS provider."""
        if self._dns_provider is None:
            self._dns_provider = create_dns_provider(self.config)
            self._dns_provider.add_headers({"User-Agent": self.user_agent})
        return self._dns_provider

    @property
    def propagation_checker(self) -> PropagationChecker:
        if self._propagation_checker is None:
            self._propagation_checker = PropagationChecker(
                attempts=self.config.propagation_attempts,
                retry_delay=self.config.propagation_retry_delay,
                cancel=self.cancel,
            )
        return self._propagation_checker

    @property
    def account_store(self) -> AccountStore:
        if self._account_store is None:
            self._account_store = AccountStore(
                self.config.account_store_path, self.config.signer_encryption_phrase
            )
        return self._account_store

    @property
    def acme_client(self) -> AcmeClient:
        """Get an ACME client bound to the cached account, registering one if needed."""
        if self._acme_client is None:
            client = self._load_cached_client()
            if client is None:
                logger.info("No cached account found, creating new ACME account")
                client = self._register_client()
            self._acme_client = client
        return self._acme_client

    def _new_client(self, signer, account=None) -> AcmeClient:
        return AcmeClient(
            signer,
            directory_url=self.config.directory_url,
            account=account,
            cancel=self.cancel,
            user_agent=self.user_agent,
        )

    def _load_cached_client(self) -> AcmeClient | None:
        """Build a client from the default stored account, or None when unusable."""
        stored = self.account_store.load_default(self.config.directory_url)
        if stored is None:
            logger.debug(f"No valid cached account found for directory: {self.config.directory_url}")
            return None

        client = self._new_client(stored.signer, stored.account)
        try:
            client.url_for("newOrder")
            client.new_nonce()
        except (AcmeError, requests.RequestException) as e:
            logger.warning(f"Failed to initialize client with cached account, will create new account: {e}")
            client.close()
            return None

        logger.info(f"Using cached ACME account for directory: {self.config.directory_url}")
        return client

    def _register_client(self) -> AcmeClient:
        """Register a new account, store it as the default, and return its client."""
        signer = accounts.new_signer(self.config.key_type)
        client = self._new_client(signer)

        binding = None
        if self.config.use_external_account_binding:
            binding = eab.build_external_account_binding(
                client,
                signer,
                self.config.eab_kid,
                self.config.eab_hmac_key,
                self.config.eab_algorithm,
            )
        elif client.requires_external_account_binding:
            logger.warning(f"{client.host} requires external account binding but none is configured")

        account = client.new_account(
            contact=self.config.contact,
            terms_of_service_agreed=True,
            external_account_binding=binding,
        )

        try:
            self.account_store.store(account, signer, self.config.directory_url)
        except OSError as e:
            logger.warning(f"Could not cache ACME account {account.kid}: {e}")

        return client

    def _orchestrator(self, client: AcmeClient) -> ChallengeOrchestrator:
        return ChallengeOrchestrator(
            client,
            self.dns_provider,
            self.propagation_checker,
            min_resolvers=self.config.propagation_min_resolvers,
            require_propagation=self.config.require_propagation,
            cleanup_records=self.config.cleanup_dns_records,
            settle_delay=self.config.dns_settle_delay,
            fallback_delay=self.config.propagation_fallback_delay,
            cancel=self.cancel,
        )

    def ping(self) -> dict[str, Any]:
        """Check that the configured directory is usable. See ping_directory()."""
        return ping_directory(self.config.directory_url, self.user_agent)

    def product_ids(self) -> list[str]:
        return [DEFAULT_PRODUCT_ID]

    @staticmethod
    def _resolve_identifiers(
        subject: str, identifiers: list[str] | None, csr: Any
    ) -> list[str]:
        names = [name.strip().lower() for name in identifiers or [] if name and name.strip()]
        if not names:
            common_name = certificate.extract_common_name(subject) or subject.strip()
            names = [common_name.lower()] if common_name else certificate.csr_identifiers(csr)
        if not names:
            raise ValueError("No identifiers found in subject, identifier list, or CSR")
        return list(dict.fromkeys(names))

    def enroll(
        self, csr: bytes | str, subject: str, identifiers: list[str] | None = None
    ) -> EnrollmentResult:
        """
        Obtain a certificate for a CSR.

        This method:
        1. Loads the cached ACME account, or registers a new one
        2. Creates an order for the identifiers
        3. Publishes DNS-01 records and answers every challenge
        4. Finalizes the order with the CSR
        5. Downloads the certificate and encodes it as PEM

        Args:
            csr: CSR as PEM, single-line base64, or DER.
            subject: Subject string such as "CN=www.example.com".
            identifiers: DNS names to order; defaults to the subject CN.

        Returns:
            EnrollmentResult with the PEM chain on success, or the failure message.

        Raises:
            ValueError: If the CSR or the subject is empty.
        """
        if not csr or (isinstance(csr, str) and not csr.strip()):
            raise ValueError("CSR cannot be empty")
        if not subject and not identifiers:
            raise ValueError("Subject cannot be empty")

        try:
            with timer(f"Enrollment for {subject or identifiers}"):
                csr_obj = certificate.load_csr(csr)
                names = self._resolve_identifiers(subject, identifiers, csr_obj)
                logger.info(f"Starting enrollment for: {', '.join(names)}")

                client = self.acme_client
                order = client.create_order(names)
                self._orchestrator(client).process_authorizations(order)
                order = client.finalize_order(order, certificate.csr_to_der(csr_obj))
                request_id = order.finalize_url

                if order.status != "valid" or not order.certificate_url:
                    logger.warning(f"Order not valid yet. Status: {order.status}")
                    return EnrollmentResult(
                        STATUS_FAILED,
                        request_id=request_id,
                        message="Could not retrieve order in allowed time.",
                    )

                certificate_pem = certificate.certificate_to_pem(client.get_certificate(order))
                is_valid, error, cert_count = validation.validate_certificate_chain(certificate_pem, names)
                if is_valid:
                    logger.info(f"Issued certificate chain with {cert_count} certificate(s)")
                else:
                    logger.warning(f"Issued certificate failed local checks: {error}")

                logger.info(f"Successfully enrolled certificate for: {', '.join(names)}")
                return EnrollmentResult(STATUS_GENERATED, certificate_pem, request_id)

        except (AcmeError, ValueError, requests.RequestException) as e:
            logger.error(f"Enrollment failed for subject {subject}: {e}")
            return EnrollmentResult(STATUS_FAILED, message=str(e))
        except Exception as e:
            logger.exception(f"Unexpected error enrolling certificate: {e}")
            return EnrollmentResult(STATUS_FAILED, message=f"Unexpected error: {e}")

    def synchronize(self, last_sync: Any = None, full_sync: bool = False) -> EnrollmentResult:
        """Certificate synchronization is not offered by ACME; nothing is sent."""
        logger.warning("Certificate sync is not supported by standard ACME protocol")
        return EnrollmentResult(STATUS_NOT_SUPPORTED, message="Synchronization is not supported")

    def revoke(self, request_id: str, serial_number: str = "", reason: int = 0) -> EnrollmentResult:
        """Revocation through the host is not offered; nothing is sent."""
        logger.warning("Certificate revocation is not supported by standard ACME protocol")
        return EnrollmentResult(
            STATUS_NOT_SUPPORTED, request_id=request_id, message="Revocation is not supported"
        )

    def close(self) -> None:
        """Close all client connections."""
        if self._acme_client:
            self._acme_client.close()
        if self._dns_provider:
            self._dns_provider.close()

    def __enter__(self):
        """Context manager entry."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit."""
        self.close()

    def __repr__(self) -> str:
        return f"<AcmeEnrollmentManager {self.config.directory_url} dns={self.config.dns_provider or 'custom'}>"
