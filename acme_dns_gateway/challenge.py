"""
DNS-01 challenge orchestration.

Records for every pending authorization are published in one pass before any
propagation wait, so multi-domain orders pay the propagation delay once.
"""

import logging
import threading
from dataclasses import dataclass

from acme_dns_gateway import models, retry
from acme_dns_gateway.acme import AcmeClient
from acme_dns_gateway.dns_providers import DnsProvider
from acme_dns_gateway.exceptions import (
    ChallengeTypeUnavailableError,
    ChallengeValidationError,
    DnsPropagationError,
    DnsRecordError,
    OrderStateError,
)
from acme_dns_gateway.propagation import DEFAULT_MIN_RESOLVERS, PropagationChecker

logger = logging.getLogger(__name__)

SUPPORTED_CHALLENGES = [models.DNS_01]
SETTLE_DELAY = 5.0
FALLBACK_DELAY = 30.0


@dataclass
class PendingChallenge:
    """A published dns-01 record waiting for its challenge to be answered."""

    authorization: models.Authorization
    challenge: models.Challenge
    validation: models.DnsChallengeValidation

    @property
    def identifier(self) -> str:
        return self.authorization.identifier.get("value", "")


def find_supported_challenge(authorization: models.Authorization) -> models.Challenge:
    """
    Find the dns-01 challenge of an authorization.

    Raises:
        ChallengeTypeUnavailableError: If no dns-01 challenge is offered.
    """
    for challenge_type in SUPPORTED_CHALLENGES:
        challenge = authorization.find_challenge(challenge_type)
        if challenge is not None:
            return challenge

    available = [c.type for c in authorization.challenges]
    logger.error(f"No supported challenge found. Available: {available}, Supported: {SUPPORTED_CHALLENGES}")
    raise ChallengeTypeUnavailableError(authorization.identifier.get("value", ""), available)


class ChallengeOrchestrator:
    """Drives dns-01 validation for every authorization of an order."""

    def __init__(
        self,
        client: AcmeClient,
        dns_provider: DnsProvider,
        checker: PropagationChecker | None = None,
        min_resolvers: int = DEFAULT_MIN_RESOLVERS,
        require_propagation: bool = False,
        cleanup_records: bool = True,
        settle_delay: float = SETTLE_DELAY,
        fallback_delay: float = FALLBACK_DELAY,
        cancel: threading.Event | None = None,
    ):
        """
        Args:
            client: Protocol client bound to a registered account.
            dns_provider: Provider that publishes TXT records.
            checker: Multi-resolver propagation checker.
            min_resolvers: Resolver quorum for propagation.
            require_propagation: Fail instead of proceeding when quorum is never reached.
            cleanup_records: Delete published records once challenges resolve.
            settle_delay: Wait used instead of propagation checks for internal DNS.
            fallback_delay: Extra wait when propagation quorum is never reached.
            cancel: Cancellation event; defaults to the client's.
        """
        self.client = client
        self.dns_provider = dns_provider
        self.cancel = cancel or client.cancel
        self.checker = checker or PropagationChecker(cancel=self.cancel)
        self.min_resolvers = min_resolvers
        self.require_propagation = require_propagation
        self.cleanup_records = cleanup_records
        self.settle_delay = settle_delay
        self.fallback_delay = fallback_delay

    def publish_records(self, order: models.Order, pending: list[PendingChallenge]) -> None:
        """
        First pass: create the TXT record for every authorization that is not yet valid.

        Published records are appended to `pending` as they are created.
        """
        if not order.authorizations:
            raise OrderStateError(order.url, "missing or empty authorization list")

        for url in order.authorizations:
            retry.check_cancelled(self.cancel)
            authorization = self.client.get_authorization(url)
            domain = authorization.identifier.get("value", "")

            if authorization.status == "valid":
                logger.info(f"Using cached authorization for {domain}")
                continue

            challenge = find_supported_challenge(authorization)
            validation = self.client.decode_challenge_validation(authorization, challenge)

            if not self.dns_provider.create_record(validation.record_name, validation.value):
                raise DnsRecordError(validation.record_name, f"{self.dns_provider.name} could not create the record")

            logger.info(f"Created DNS record {validation.record_name} for domain {domain}")
            pending.append(PendingChallenge(authorization, challenge, validation))

    def wait_for_record(self, item: PendingChallenge) -> bool:
        """
        Wait until public resolvers see the record, or settle for internal DNS.

        Returns:
            bool: Whether propagation was confirmed.

        Raises:
            DnsPropagationError: If quorum is not reached and propagation is required.
        """
        if not self.dns_provider.externally_resolvable:
            logger.info(
                f"Skipping external DNS propagation check for {self.dns_provider.name} "
                f"provider for {item.identifier}. Adding short delay..."
            )
            retry.sleep(self.settle_delay, self.cancel)
            return False

        logger.info(f"Waiting for DNS propagation for {item.identifier}...")
        propagated = self.checker.wait_for_propagation(
            item.validation.record_name, item.validation.value, minimum=self.min_resolvers
        )
        if propagated:
            return True

        if self.require_propagation:
            raise DnsPropagationError(
                item.validation.record_name, self.checker.last_confirmations, self.min_resolvers
            )

        logger.warning(f"DNS record may not have fully propagated for {item.identifier}. Proceeding anyway...")
        retry.sleep(self.fallback_delay, self.cancel)
        return False

    def submit(self, item: PendingChallenge) -> models.Challenge:
        """
        Answer the challenge and check its outcome.

        Raises:
            ChallengeValidationError: If the server marks the challenge invalid.
        """
        logger.info(f"Submitting challenge for {item.identifier}")
        answered = self.client.answer_challenge(item.challenge)

        if answered.status == "invalid":
            raise ChallengeValidationError(answered.url, item.identifier, answered.error)
        if answered.status != "valid":
            logger.warning(f"Challenge for {item.identifier} still {answered.status}, continuing to finalize")
        return answered

    def cleanup(self, pending: list[PendingChallenge]) -> None:
        """Delete published records; failures are logged."""
        for item in pending:
            try:
                if not self.dns_provider.delete_record(item.validation.record_name):
                    logger.warning(f"Failed to clean up DNS record {item.validation.record_name}")
            except Exception as e:
                logger.warning(f"Failed to clean up DNS record {item.validation.record_name}: {e}")

    def process_authorizations(self, order: models.Order) -> list[models.Challenge]:
        """
        Validate every pending authorization of an order.

        Returns:
            list[models.Challenge]: The answered challenges, in authorization order.
        """
        pending: list[PendingChallenge] = []
        answered: list[models.Challenge] = []

        try:
            self.publish_records(order, pending)
            for item in pending:
                self.wait_for_record(item)
                answered.append(self.submit(item))
        finally:
            if self.cleanup_records and pending:
                self.cleanup(pending)

        return answered
