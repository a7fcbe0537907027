"""
DNS propagation checks against a fixed set of public resolvers.
"""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor

import dns.exception
import dns.resolver

from acme_dns_gateway import retry
from acme_dns_gateway.monitoring import timer

logger = logging.getLogger(__name__)

PUBLIC_RESOLVERS = (
    "8.8.8.8",  # Google
    "8.8.4.4",
    "1.1.1.1",  # Cloudflare
    "1.0.0.1",
    "208.67.222.222",  # OpenDNS
    "9.9.9.9",  # Quad9
)

DEFAULT_MIN_RESOLVERS = 3
DEFAULT_ATTEMPTS = 3
DEFAULT_RETRY_DELAY = 10
QUERY_TIMEOUT = 5.0


class PropagationChecker:
    """Checks that a TXT record is visible from several independent resolvers."""

    def __init__(
        self,
        nameservers: tuple[str, ...] | list[str] = PUBLIC_RESOLVERS,
        attempts: int = DEFAULT_ATTEMPTS,
        retry_delay: float = DEFAULT_RETRY_DELAY,
        timeout: float = QUERY_TIMEOUT,
        cancel: threading.Event | None = None,
    ):
        self.nameservers = list(nameservers)
        self.attempts = attempts
        self.retry_delay = retry_delay
        self.timeout = timeout
        self.cancel = cancel
        self.last_confirmations = 0

    def query_txt(self, record_name: str, nameserver: str) -> list[str]:
        """
        Return the TXT strings one resolver reports for a name.

        Raises:
            dns.exception.DNSException: On timeouts and server failures.
        """
        resolver = dns.resolver.Resolver(configure=False)
        resolver.nameservers = [nameserver]
        resolver.lifetime = self.timeout

        try:
            answers = resolver.resolve(record_name, "TXT")
        except (dns.resolver.NXDOMAIN, dns.resolver.NoAnswer):
            return []

        return [b"".join(rdata.strings).decode("utf-8", errors="replace") for rdata in answers]

    def has_record(self, record_name: str, expected_value: str, nameserver: str) -> bool:
        """Whether a resolver's answer set contains exactly the expected value."""
        values = self.query_txt(record_name, nameserver)
        found = expected_value in values
        logger.debug(
            f"DNS server {nameserver} returned {len(values)} TXT record(s) for {record_name}. "
            f"Found expected: {found}"
        )
        return found

    def _check(self, record_name: str, expected_value: str, nameserver: str) -> bool:
        try:
            return self.has_record(record_name, expected_value, nameserver)
        except dns.exception.DNSException as e:
            logger.warning(f"DNS query failed for server {nameserver}: {e}")
            return False

    def count_confirmations(self, record_name: str, expected_value: str) -> int:
        """Query every resolver in parallel and count those that see the record."""
        with ThreadPoolExecutor(max_workers=len(self.nameservers) or 1) as pool:
            results = list(
                pool.map(lambda ns: self._check(record_name, expected_value, ns), self.nameservers)
            )

        summary = ", ".join(
            f"{'ok' if ok else 'missing'} {ns}" for ns, ok in zip(self.nameservers, results)
        )
        logger.debug(f"Resolver results for {record_name}: {summary}")
        return sum(results)

    def wait_for_propagation(
        self, record_name: str, expected_value: str, minimum: int = DEFAULT_MIN_RESOLVERS
    ) -> bool:
        """
        Wait until at least `minimum` resolvers report the expected TXT value.

        Args:
            record_name: Record to query, e.g. "_acme-challenge.example.com".
            expected_value: Exact TXT value expected.
            minimum: Quorum of resolvers required.

        Returns:
            bool: True once quorum is reached, False after all attempts fail.
            The count from the final round is kept in last_confirmations.
        """
        logger.info(f"Waiting for DNS propagation of {record_name}")
        self.last_confirmations = 0

        with timer(f"DNS propagation check for {record_name}", level=logging.DEBUG):
            for attempt in range(1, self.attempts + 1):
                retry.check_cancelled(self.cancel)
                confirmations = self.count_confirmations(record_name, expected_value)
                self.last_confirmations = confirmations
                logger.debug(
                    f"DNS verification attempt {attempt}/{self.attempts}: "
                    f"{confirmations}/{len(self.nameservers)} servers confirmed record"
                )

                if confirmations >= minimum:
                    logger.info(
                        f"DNS record propagated: {confirmations}/{len(self.nameservers)} "
                        f"servers confirmed record after {attempt} attempt(s)"
                    )
                    return True

                if attempt < self.attempts:
                    retry.sleep(self.retry_delay, self.cancel)

        logger.warning(f"DNS record {record_name} did not propagate within {self.attempts} attempts")
        return False
