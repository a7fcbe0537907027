"""
Connection configuration for the ACME DNS gateway.
"""

import json
import logging
from dataclasses import MISSING, dataclass, field, fields
from pathlib import Path
from typing import Any

from acme_dns_gateway import eab, signer, utils
from acme_dns_gateway.accounts import DEFAULT_STORE_PATH
from acme_dns_gateway.acme import AcmeClient
from acme_dns_gateway.dns_providers import PROVIDERS
from acme_dns_gateway.exceptions import (
    ConfigurationError,
    MissingParameterError,
    UnsupportedAlgorithmError,
    UnsupportedDnsProviderError,
)

logger = logging.getLogger(__name__)

ENV_PREFIX = "ACME_"

# connection keys used by host shells that configure the gateway
ALIASES = {
    "DirectoryUrl": "directory_url",
    "Email": "email",
    "EabKid": "eab_kid",
    "EabHmacKey": "eab_hmac_key",
    "EabAlgorithm": "eab_algorithm",
    "SignerEncryptionPhrase": "signer_encryption_phrase",
    "AccountStorePath": "account_store_path",
    "KeyType": "key_type",
    "DnsProvider": "dns_provider",
    "Cloudflare_ApiToken": "cloudflare_api_token",
    "Ns1_ApiKey": "ns1_api_key",
    "Infoblox_Host": "infoblox_host",
    "Infoblox_Username": "infoblox_username",
    "Infoblox_Password": "infoblox_password",
    "Infoblox_WapiVersion": "infoblox_wapi_version",
    "Infoblox_IgnoreSslErrors": "infoblox_ignore_ssl_errors",
    "RequirePropagation": "require_propagation",
}

SECRET_FIELDS = {
    "eab_hmac_key",
    "signer_encryption_phrase",
    "cloudflare_api_token",
    "ns1_api_key",
    "infoblox_password",
}


def _to_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ("1", "true", "yes", "on")


@dataclass
class AcmeClientConfig:
    """Settings for one ACME CA connection and its DNS provider."""

    directory_url: str = AcmeClient.DIRECTORY_URL
    email: str = ""
    eab_kid: str | None = None
    eab_hmac_key: str | None = None
    eab_algorithm: str = "HS256"
    signer_encryption_phrase: str | None = None
    account_store_path: str = str(DEFAULT_STORE_PATH)
    key_type: str = "ES256"

    dns_provider: str | None = None
    cloudflare_api_token: str | None = None
    ns1_api_key: str | None = None
    infoblox_host: str | None = None
    infoblox_username: str | None = None
    infoblox_password: str | None = None
    infoblox_wapi_version: str = "2.12"
    infoblox_ignore_ssl_errors: bool = False

    propagation_min_resolvers: int = 3
    propagation_attempts: int = 3
    propagation_retry_delay: float = 10.0
    propagation_fallback_delay: float = 30.0
    dns_settle_delay: float = 5.0
    require_propagation: bool = False
    cleanup_dns_records: bool = True

    extra: dict[str, Any] = field(default_factory=dict, repr=False)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AcmeClientConfig":
        """
        Build a config from snake_case or PascalCase keys.

        Unknown keys are kept in `extra`. Values are coerced to the field types.
        """
        known = {f.name: f for f in fields(cls) if f.name != "extra"}
        values: dict[str, Any] = {}
        extra: dict[str, Any] = {}

        for key, value in data.items():
            name = ALIASES.get(key, key)
            if name not in known:
                extra[key] = value
                continue
            if value is None or value == "":
                continue
            values[name] = cls._coerce(known[name].default, value)

        return cls(**values, extra=extra)

    @staticmethod
    def _coerce(default: Any, value: Any) -> Any:
        if default is MISSING or default is None:
            return value
        if isinstance(default, bool):
            return _to_bool(value)
        if isinstance(default, int):
            return int(value)
        if isinstance(default, float):
            return float(value)
        return value

    @classmethod
    def from_file(cls, path: Path | str) -> "AcmeClientConfig":
        """Load a JSON configuration file."""
        path = Path(path)
        logger.debug(f"Loading configuration from {path}")
        return cls.from_dict(json.loads(path.read_text()))

    @classmethod
    def from_env(cls, secrets_path: Path | None = None) -> "AcmeClientConfig":
        """
        Load configuration from ACME_* environment variables.

        Secret values may also come from files in the secrets directory, named
        like the variable (e.g. secrets/ACME_EAB_HMAC_KEY).
        """
        data: dict[str, Any] = {}
        for f in fields(cls):
            if f.name == "extra":
                continue
            name = f"{ENV_PREFIX}{f.name.upper()}"
            if f.name in SECRET_FIELDS and secrets_path is not None:
                value = utils.get_env_secrets(name, secrets_path, required=False)
            else:
                value = utils.get_env_secrets(name, required=False)
            if value is not None:
                data[f.name] = value
        return cls.from_dict(data)

    @property
    def contact(self) -> list[str]:
        return [f"mailto:{self.email}"] if self.email else []

    @property
    def use_external_account_binding(self) -> bool:
        return bool(self.eab_kid and self.eab_hmac_key)

    def validate(self, require_dns: bool = True) -> None:
        """
        Fail fast on configuration errors, before any network call.

        Raises:
            MissingParameterError: Missing directory URL or email, or half an EAB pair.
            UnsupportedAlgorithmError: Unknown key type or EAB algorithm.
            ConfigurationError: Unknown DNS provider or missing provider credentials.
        """
        if not self.directory_url:
            raise MissingParameterError("directory_url")
        if not self.email:
            raise MissingParameterError("email")

        eab.validate_eab_pair(self.eab_kid, self.eab_hmac_key)
        if self.eab_algorithm not in eab.HMAC_ALGORITHMS:
            raise UnsupportedAlgorithmError(self.eab_algorithm, eab.HMAC_ALGORITHMS)
        if self.key_type not in signer.SUPPORTED_ALGORITHMS:
            raise UnsupportedAlgorithmError(self.key_type, signer.SUPPORTED_ALGORITHMS)

        if self.propagation_min_resolvers < 1 or self.propagation_attempts < 1:
            raise ConfigurationError("Propagation quorum and attempts must be at least 1")

        if require_dns:
            if not self.dns_provider:
                raise MissingParameterError("dns_provider")
            if self.dns_provider.strip().lower() not in PROVIDERS:
                raise UnsupportedDnsProviderError(self.dns_provider)
            self._check_provider_credentials()

    def _check_provider_credentials(self) -> None:
        provider = (self.dns_provider or "").strip().lower()
        required = {
            "cloudflare": ("cloudflare_api_token",),
            "ns1": ("ns1_api_key",),
            "infoblox": ("infoblox_host", "infoblox_username", "infoblox_password"),
        }.get(provider, ())
        missing = [name for name in required if not getattr(self, name)]
        if missing:
            raise ConfigurationError(f"DNS provider '{provider}' requires {', '.join(missing)}")

    def redacted(self) -> dict[str, Any]:
        """Return the settings with secrets masked, for logging."""
        result = {}
        for f in fields(self):
            if f.name == "extra":
                continue
            value = getattr(self, f.name)
            result[f.name] = utils.mask_secret(value) if f.name in SECRET_FIELDS and value else value
        return result


def validate_connection_info(connection_info: dict[str, Any]) -> list[str]:
    """
    Report problems in a host-supplied connection dictionary.

    Returns:
        list[str]: Error messages; empty when the connection info is usable.
    """
    errors = []
    if not connection_info.get("DirectoryUrl") and not connection_info.get("directory_url"):
        errors.append("DirectoryUrl is required")
    if not connection_info.get("Email") and not connection_info.get("email"):
        errors.append("Email is required")
    return errors
