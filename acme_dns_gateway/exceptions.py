"""
Exception types raised by the ACME DNS gateway.
"""

from typing import Any

PROBLEM_PREFIX = "urn:ietf:params:acme:error:"


class AcmeError(Exception):
    """Base class for every error raised by this package."""


class ConfigurationError(AcmeError):
    """Exception raised when configuration is invalid or incomplete."""


class MissingParameterError(ConfigurationError):
    """Exception raised when a required parameter is absent."""

    def __init__(self, parameter, message=None):
        self.parameter = parameter
        super().__init__(message or f"Missing required parameter '{parameter}'.")


class UnsupportedAlgorithmError(ConfigurationError):
    """Exception raised for an unrecognized key or HMAC algorithm."""

    def __init__(self, algorithm, supported=()):
        self.algorithm = algorithm
        self.supported = tuple(supported)
        message = f"Unsupported algorithm '{algorithm}'."
        if self.supported:
            message += f" Supported: {', '.join(self.supported)}"
        super().__init__(message)


class UnsupportedDnsProviderError(ConfigurationError):
    """Exception raised when the configured DNS provider is unknown."""

    def __init__(self, provider):
        self.provider = provider
        super().__init__(f"Unsupported DNS provider '{provider}'.")


class DecryptionFailedError(AcmeError):
    """Exception raised when an encrypted signer cannot be decrypted."""

    def __init__(self, message="Unable to decrypt signer: wrong passphrase or corrupt data."):
        super().__init__(message)


class AcmeProblemError(AcmeError):
    """Exception raised when the ACME server answers with a problem document."""

    def __init__(self, status_code: int, problem: dict[str, Any] | None = None, body: str = ""):
        self.status_code = status_code
        self.problem = problem or {}
        self.body = body
        self.problem_type = self.problem.get("type", "")
        self.detail = self.problem.get("detail", "")
        super().__init__(
            f"ACME request failed with status {status_code}: "
            f"{self.problem_type or 'unknown'} {self.detail or body}".rstrip()
        )

    @property
    def short_type(self) -> str:
        """Return the problem type without the ACME URN prefix."""
        if self.problem_type.startswith(PROBLEM_PREFIX):
            return self.problem_type[len(PROBLEM_PREFIX):]
        return self.problem_type

    @property
    def is_transient(self) -> bool:
        """Whether the failure looks like a temporary server-side condition."""
        return self.status_code >= 500 or self.short_type == "serverInternal"


class RateLimitedError(AcmeProblemError):
    """Exception raised when the server reports a rate limit. Never retried."""


class UserActionRequiredError(AcmeProblemError):
    """Exception raised when the CA requires out-of-band action (e.g. new terms)."""


class OrderCreationError(AcmeProblemError):
    """Exception raised when a new order is rejected by the server."""


class ServiceBusyError(AcmeError):
    """Exception raised when transient failures persist past the backoff budget."""

    def __init__(self, attempts, cause):
        self.attempts = attempts
        self.cause = cause
        super().__init__(
            f"ACME service is too busy after {attempts} attempts, try again later: {cause}"
        )


class OrderValidationError(AcmeError):
    """Exception raised when an order reaches the 'invalid' status."""

    def __init__(self, order_url, detail=None):
        self.order_url = order_url
        self.detail = detail
        message = f"Order '{order_url}' is invalid."
        if detail:
            message += f" {detail}"
        super().__init__(message)


class OrderStateError(AcmeError):
    """Exception raised when an order is missing data needed for the next step."""

    def __init__(self, order_url, message):
        self.order_url = order_url
        super().__init__(f"Order '{order_url}': {message}")


class UnsupportedChallengeTypeError(AcmeError):
    """Exception raised when a challenge type cannot be decoded."""

    def __init__(self, challenge_type, identifier=""):
        self.challenge_type = challenge_type
        self.identifier = identifier
        super().__init__(
            f"Unsupported challenge type '{challenge_type or '<empty>'}' for '{identifier}'."
        )


class ChallengeTypeUnavailableError(AcmeError):
    """Exception raised when an authorization offers no dns-01 challenge."""

    def __init__(self, identifier, available):
        self.identifier = identifier
        self.available = list(available)
        super().__init__(
            f"No dns-01 challenge offered for '{identifier}'. Available: {self.available}"
        )


class ChallengeValidationError(AcmeError):
    """Exception raised when the server rejects a challenge response."""

    def __init__(self, challenge_url, identifier, error=None):
        self.challenge_url = challenge_url
        self.identifier = identifier
        self.error = error or {}
        detail = self.error.get("detail", "no detail provided")
        super().__init__(f"Challenge for '{identifier}' failed ({challenge_url}): {detail}")


class DnsRecordError(AcmeError):
    """Exception raised when a DNS provider cannot create or delete a record."""

    def __init__(self, record_name, message):
        self.record_name = record_name
        super().__init__(f"DNS record '{record_name}': {message}")


class DnsPropagationError(AcmeError):
    """Exception raised when a record is not seen by enough resolvers and propagation is required."""

    def __init__(self, record_name, confirmations, required):
        self.record_name = record_name
        self.confirmations = confirmations
        self.required = required
        super().__init__(
            f"DNS record '{record_name}' seen by {confirmations}/{required} required resolvers."
        )


class OperationCancelledError(AcmeError):
    """Exception raised when the caller cancels a running operation."""

    def __init__(self, message="Operation cancelled."):
        super().__init__(message)
