"""
DNS provider clients for publishing dns-01 TXT records.

Each provider implements create_record/delete_record and reports success as a
bool. The set of providers is closed; create_dns_provider selects one from
validated configuration.
"""

import logging
from typing import TYPE_CHECKING, Any
from urllib.parse import quote, urljoin

import requests
import requests.auth

from acme_dns_gateway.exceptions import ConfigurationError, UnsupportedDnsProviderError

if TYPE_CHECKING:
    from acme_dns_gateway.config import AcmeClientConfig

logger = logging.getLogger(__name__)

CLOUDFLARE_API = "https://api.cloudflare.com/client/v4/"
NS1_API = "https://api.nsone.net/v1/"
TXT_TTL = 60
REQUEST_TIMEOUT = 30


class BearerAuth(requests.auth.AuthBase):
    """Attaches a bearer token to each request."""

    def __init__(self, token: str) -> None:
        self.token = token

    def __call__(self, r: requests.PreparedRequest) -> requests.PreparedRequest:
        r.headers["Authorization"] = f"Bearer {self.token}"
        return r


def fallback_zone(record_name: str) -> str:
    """Guess the zone as the last two labels of a name."""
    labels = record_name.rstrip(".").split(".")
    if len(labels) < 2:
        return record_name.rstrip(".")
    return ".".join(labels[-2:])


def find_zone(record_name: str, zones: list[str]) -> str:
    """
    Return the longest zone in `zones` that contains `record_name`.

    Falls back to the last two labels when no listed zone matches.
    """
    labels = record_name.rstrip(".").lower().split(".")
    known = {zone.rstrip(".").lower() for zone in zones}

    for i in range(len(labels)):
        candidate = ".".join(labels[i:])
        if candidate in known:
            return candidate

    zone = fallback_zone(record_name)
    logger.debug(f"No listed zone contains {record_name}, assuming {zone}")
    return zone


class DnsProvider:
    """
    Interface every DNS provider implements.

    Attributes:
        name (str): Configuration key for the provider.
        externally_resolvable (bool): False for private DNS that public resolvers cannot see.
    """

    name = ""
    externally_resolvable = True

    def __init__(self) -> None:
        self.http = requests.Session()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.http.close()

    def close(self) -> None:
        """Closes the HTTP session."""
        self.__exit__(None, None, None)

    def add_headers(self, headers: dict[str, str]) -> None:
        self.http.headers.update(headers)

    def create_record(self, record_name: str, value: str) -> bool:
        """Publish a TXT record. Re-creating the same value succeeds without duplicating it."""
        raise NotImplementedError

    def delete_record(self, record_name: str) -> bool:
        """Remove the TXT record(s) at a name. Succeeds when none remain, including when none existed."""
        raise NotImplementedError

    def _request(self, method: str, url: str, **kwargs) -> requests.Response:
        kwargs.setdefault("timeout", REQUEST_TIMEOUT)
        logger.debug(f"[{self.name}] {method} {url}")
        return self.http.request(method, url, **kwargs)

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__}>"


class CloudflareDnsProvider(DnsProvider):
    """Cloudflare DNS via the v4 REST API and an API token."""

    name = "cloudflare"

    def __init__(self, api_token: str, api_url: str = CLOUDFLARE_API) -> None:
        super().__init__()
        self.http.auth = BearerAuth(api_token)
        self.api_url = api_url
        self._zones: dict[str, str] | None = None

    def list_zones(self) -> dict[str, str]:
        """Return {zone name: zone id}, following pagination."""
        if self._zones is not None:
            return self._zones

        zones: dict[str, str] = {}
        page = 1
        total_pages = 1
        while page <= total_pages:
            response = self._request(
                "GET", urljoin(self.api_url, "zones"), params={"page": page, "per_page": 50}
            )
            response.raise_for_status()
            data = response.json()

            for zone in data.get("result", []):
                zones[zone["name"].lower()] = zone["id"]

            total_pages = (data.get("result_info") or {}).get("total_pages", page)
            page += 1

        self._zones = zones
        return zones

    def _zone_id(self, record_name: str) -> str | None:
        zones = self.list_zones()
        zone = find_zone(record_name, list(zones))
        zone_id = zones.get(zone)
        if not zone_id:
            logger.error(f"[cloudflare] No zone found for {record_name} (tried {zone})")
        return zone_id

    def _find_records(self, zone_id: str, record_name: str, value: str | None = None) -> list[dict[str, Any]]:
        params = {"type": "TXT", "name": record_name.rstrip(".")}
        if value is not None:
            params["content"] = value
        response = self._request(
            "GET", urljoin(self.api_url, f"zones/{zone_id}/dns_records"), params=params
        )
        response.raise_for_status()
        return response.json().get("result", [])

    def create_record(self, record_name: str, value: str) -> bool:
        try:
            zone_id = self._zone_id(record_name)
            if not zone_id:
                return False

            if self._find_records(zone_id, record_name, value):
                logger.info(f"[cloudflare] TXT record {record_name} already has the value, skipping")
                return True

            response = self._request(
                "POST",
                urljoin(self.api_url, f"zones/{zone_id}/dns_records"),
                json={"type": "TXT", "name": record_name.rstrip("."), "content": value, "ttl": TXT_TTL},
            )
            if not response.ok:
                logger.error(f"[cloudflare] Create TXT failed: {response.status_code} - {response.text}")
                return False

            logger.info(f"[cloudflare] Created TXT record {record_name}")
            return True
        except requests.RequestException as e:
            logger.error(f"[cloudflare] Error creating TXT record {record_name}: {e}")
            return False

    def delete_record(self, record_name: str) -> bool:
        try:
            zone_id = self._zone_id(record_name)
            if not zone_id:
                return False

            records = self._find_records(zone_id, record_name)
            if not records:
                logger.warning(f"[cloudflare] No TXT record found to delete for {record_name}")
                return True

            for record in records:
                response = self._request(
                    "DELETE", urljoin(self.api_url, f"zones/{zone_id}/dns_records/{record['id']}")
                )
                if not response.ok:
                    logger.error(f"[cloudflare] Delete TXT failed: {response.status_code} - {response.text}")
                    return False

            logger.info(f"[cloudflare] Deleted {len(records)} TXT record(s) for {record_name}")
            return True
        except requests.RequestException as e:
            logger.error(f"[cloudflare] Error deleting TXT record {record_name}: {e}")
            return False


class Ns1DnsProvider(DnsProvider):
    """NS1 managed DNS via its REST API and an API key."""

    name = "ns1"

    def __init__(self, api_key: str, api_url: str = NS1_API) -> None:
        super().__init__()
        self.http.headers.update({"X-NSONE-Key": api_key})
        self.api_url = api_url
        self._zones: list[str] | None = None

    def list_zones(self) -> list[str]:
        if self._zones is None:
            response = self._request("GET", urljoin(self.api_url, "zones"))
            response.raise_for_status()
            self._zones = [zone["zone"] for zone in response.json()]
        return self._zones

    def _zone_for(self, record_name: str) -> str:
        try:
            zones = self.list_zones()
        except requests.RequestException as e:
            logger.warning(f"[ns1] Could not fetch zones: {e}")
            zones = []
        return find_zone(record_name, zones)

    def _record_url(self, zone: str, domain: str) -> str:
        return urljoin(self.api_url, f"zones/{quote(zone)}/{quote(domain)}/TXT")

    def create_record(self, record_name: str, value: str) -> bool:
        domain = record_name.rstrip(".")
        zone = self._zone_for(record_name)
        url = self._record_url(zone, domain)
        body = {
            "zone": zone,
            "domain": domain,
            "type": "TXT",
            "ttl": TXT_TTL,
            "answers": [{"answer": [value]}],
        }

        try:
            # PUT creates the record; an existing record is replaced by POST
            response = self._request("PUT", url, json=body)
            if response.status_code == 400 and "exists" in response.text.lower():
                response = self._request("POST", url, json=body)

            if not response.ok:
                logger.error(f"[ns1] API error: {response.status_code} - {response.text}")
                return False

            logger.info(f"[ns1] Upserted TXT record {record_name} in zone {zone}")
            return True
        except requests.RequestException as e:
            logger.error(f"[ns1] Error upserting TXT record {record_name}: {e}")
            return False

    def delete_record(self, record_name: str) -> bool:
        try:
            domain = record_name.rstrip(".")
            response = self._request("DELETE", self._record_url(self._zone_for(domain), domain))
        except requests.RequestException as e:
            logger.error(f"[ns1] Error deleting TXT record {record_name}: {e}")
            return False

        if response.status_code == 404:
            logger.warning(f"[ns1] TXT record not found for deletion: {record_name}")
            return True
        if not response.ok:
            logger.error(f"[ns1] Error deleting TXT record: {response.status_code} - {response.text}")
            return False

        logger.info(f"[ns1] Deleted TXT record {record_name}")
        return True


class InfobloxDnsProvider(DnsProvider):
    """Infoblox NIOS via WAPI. Internal DNS, so public resolvers cannot confirm propagation."""

    name = "infoblox"
    externally_resolvable = False

    def __init__(
        self,
        host: str,
        username: str,
        password: str,
        wapi_version: str = "2.12",
        verify_ssl: bool = True,
    ) -> None:
        super().__init__()
        self.http.auth = requests.auth.HTTPBasicAuth(username, password)
        self.http.verify = verify_ssl
        if "://" not in host:
            host = f"https://{host}"
        self.base_url = f"{host.rstrip('/')}/wapi/v{wapi_version}/"

    def _search(self, record_name: str, value: str | None = None) -> list[dict[str, Any]]:
        params = {"name": record_name.rstrip(".")}
        if value is not None:
            params["text"] = value
        response = self._request("GET", f"{self.base_url}record:txt", params=params)
        response.raise_for_status()
        return response.json()

    def create_record(self, record_name: str, value: str) -> bool:
        try:
            if self._search(record_name, value):
                logger.info(f"[infoblox] TXT record already exists for {record_name}, skipping creation")
                return True

            response = self._request(
                "POST",
                f"{self.base_url}record:txt",
                json={"name": record_name.rstrip("."), "text": value, "ttl": TXT_TTL, "view": "default"},
            )
            if not response.ok:
                logger.error(f"[infoblox] Create TXT failed: {response.status_code} - {response.text}")
                return False

            logger.info(f"[infoblox] Created TXT record {record_name}")
            return True
        except requests.RequestException as e:
            logger.error(f"[infoblox] Error creating TXT record {record_name}: {e}")
            return False

    def delete_record(self, record_name: str) -> bool:
        try:
            records = self._search(record_name)
            if not records:
                logger.warning(f"[infoblox] No TXT records found to delete for {record_name}")
                return True

            for record in records:
                response = self._request("DELETE", f"{self.base_url}{record['_ref']}")
                if not response.ok:
                    logger.error(f"[infoblox] Delete TXT failed: {response.status_code} - {response.text}")
                    return False

            logger.info(f"[infoblox] Deleted TXT record(s) for {record_name}")
            return True
        except requests.RequestException as e:
            logger.error(f"[infoblox] Error deleting TXT record {record_name}: {e}")
            return False


PROVIDERS: dict[str, type[DnsProvider]] = {
    CloudflareDnsProvider.name: CloudflareDnsProvider,
    Ns1DnsProvider.name: Ns1DnsProvider,
    InfobloxDnsProvider.name: InfobloxDnsProvider,
}


def create_dns_provider(config: "AcmeClientConfig") -> DnsProvider:
    """
    Build the DNS provider named in the configuration.

    Raises:
        UnsupportedDnsProviderError: If the provider key is unknown.
        ConfigurationError: If the provider's credentials are missing.
    """
    provider = (config.dns_provider or "").strip().lower()

    if provider == CloudflareDnsProvider.name:
        if not config.cloudflare_api_token:
            raise ConfigurationError("Cloudflare DNS requires cloudflare_api_token")
        return CloudflareDnsProvider(config.cloudflare_api_token)

    if provider == Ns1DnsProvider.name:
        if not config.ns1_api_key:
            raise ConfigurationError("NS1 DNS requires ns1_api_key")
        return Ns1DnsProvider(config.ns1_api_key)

    if provider == InfobloxDnsProvider.name:
        missing = [
            name
            for name in ("infoblox_host", "infoblox_username", "infoblox_password")
            if not getattr(config, name)
        ]
        if missing:
            raise ConfigurationError(f"Infoblox DNS requires {', '.join(missing)}")
        return InfobloxDnsProvider(
            config.infoblox_host,
            config.infoblox_username,
            config.infoblox_password,
            wapi_version=config.infoblox_wapi_version,
            verify_ssl=not config.infoblox_ignore_ssl_errors,
        )

    raise UnsupportedDnsProviderError(provider or "<unset>")
