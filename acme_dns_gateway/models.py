import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

# Only import for type checking, not at runtime
if TYPE_CHECKING:
    from acme_dns_gateway.acme import AcmeClient

logger = logging.getLogger(__name__)

DNS_01 = "dns-01"

ORDER_STATUSES = {"pending", "ready", "processing", "valid", "invalid"}
AUTHORIZATION_STATUSES = {"pending", "valid", "invalid", "deactivated", "expired", "revoked"}


class Resource:
    """Base class representing a generic ACME resource."""

    def __init__(
        self, client: "AcmeClient | None", url: str, data: dict[str, Any] | None = None
    ):
        self.client = client
        self.url = url
        self._data: dict[str, Any] = dict(data or {})

    @property
    def data(self) -> dict[str, Any]:
        """Return the last payload received from the server."""
        return self._data

    @property
    def status(self) -> str:
        """Get the status of the resource."""
        return self._data.get("status", "")

    def update(self) -> None:
        """Refresh the resource with a POST-as-GET request."""
        if self.client is None:
            raise ValueError(f"{self.__class__.__name__} is not bound to a client")
        if not self.url:
            raise ValueError(f"{self.__class__.__name__} has no URL to refresh")

        r = self.client.post_as_get(self.url)
        self._data = self.client.get_json_response(r)

    def __getitem__(self, item: str) -> Any:
        return self._data.get(item)

    def __repr__(self) -> str:
        """Representation of the Resource."""
        return f"<{self.__class__.__name__} {self.url or '<no url>'} status={self.status or '...'}>"


class Account(Resource):
    """Represents an ACME account registration. The URL is the account "kid"."""

    @property
    def kid(self) -> str:
        return self.url

    @property
    def contact(self) -> list[str]:
        """Return the contact URIs registered with the account."""
        return list(self._data.get("contact") or [])

    @property
    def terms_of_service_agreed(self) -> bool:
        return bool(self._data.get("termsOfServiceAgreed", False))

    @property
    def account_id(self) -> str:
        """Return the last path segment of the kid URL."""
        return self.url.rstrip("/").rsplit("/", 1)[-1]

    def to_dict(self) -> dict[str, Any]:
        """Return the registration as a JSON-serializable record."""
        return {"kid": self.url, "payload": dict(self._data)}

    @classmethod
    def from_dict(cls, record: dict[str, Any], client: "AcmeClient | None" = None) -> "Account":
        """
        Load a registration record written by to_dict().

        Raises:
            KeyError: If the record has no kid.
        """
        kid = record["kid"]
        if not kid:
            raise KeyError("kid")
        return cls(client, kid, record.get("payload") or {})


class Challenge(Resource):
    """Class representing an ACME challenge."""

    @property
    def type(self) -> str:
        return self._data.get("type", "")

    @property
    def token(self) -> str:
        return self._data.get("token", "")

    @property
    def error(self) -> dict[str, Any] | None:
        return self._data.get("error")


class Authorization(Resource):
    """Class representing an ACME authorization."""

    @property
    def identifier(self) -> dict[str, Any]:
        return self._data.get("identifier") or {}

    @property
    def domain(self) -> str:
        """Return the identifier value, without any wildcard prefix."""
        value = self.identifier.get("value", "")
        if self.wildcard and value.startswith("*."):
            return value[2:]
        return value

    @property
    def wildcard(self) -> bool:
        return bool(self._data.get("wildcard")) or self.identifier.get("value", "").startswith("*.")

    @property
    def challenges(self) -> list[Challenge]:
        """Get the list of challenges offered for the authorization."""
        return [
            Challenge(self.client, challenge.get("url", ""), challenge)
            for challenge in self._data.get("challenges", [])
        ]

    def find_challenge(self, challenge_type: str) -> Challenge | None:
        """Return the first challenge of the given type, if offered."""
        for challenge in self.challenges:
            if challenge.type == challenge_type:
                return challenge
        return None


class Order(Resource):
    """Class representing an ACME order. The URL may be empty when the CA omits Location."""

    @property
    def identifiers(self) -> list[dict[str, str]]:
        return list(self._data.get("identifiers") or [])

    @property
    def authorizations(self) -> list[str]:
        """Authorization URLs. Fixed once the order is created."""
        return list(self._data.get("authorizations") or [])

    @property
    def finalize_url(self) -> str:
        return self._data.get("finalize") or ""

    @property
    def certificate_url(self) -> str:
        return self._data.get("certificate") or ""

    @property
    def not_after(self) -> str | None:
        return self._data.get("notAfter")

    @property
    def error(self) -> dict[str, Any] | None:
        return self._data.get("error")

    def apply_update(self, data: dict[str, Any]) -> None:
        """Take status-bearing fields from a refreshed payload."""
        authorizations = self._data.get("authorizations")
        self._data.update(data)
        # authorization list is immutable once fetched
        if authorizations:
            self._data["authorizations"] = authorizations


@dataclass(frozen=True)
class DnsChallengeValidation:
    """TXT record required to satisfy a dns-01 challenge."""

    domain: str
    record_name: str
    value: str

    @classmethod
    def for_domain(cls, domain: str, value: str) -> "DnsChallengeValidation":
        """Build the validation for a domain, stripping a wildcard label."""
        if domain.startswith("*."):
            domain = domain[2:]
        return cls(domain=domain, record_name=f"_acme-challenge.{domain}", value=value)
