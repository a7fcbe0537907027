import hashlib
import logging
import threading
from datetime import datetime
from typing import Any
from urllib.parse import urlsplit

import requests

from acme_dns_gateway import models, retry, utils
from acme_dns_gateway.exceptions import (
    PROBLEM_PREFIX,
    AcmeError,
    AcmeProblemError,
    OperationCancelledError,
    OrderCreationError,
    OrderStateError,
    OrderValidationError,
    RateLimitedError,
    UnsupportedChallengeTypeError,
    UserActionRequiredError,
)
from acme_dns_gateway.signer import AccountSigner

logger = logging.getLogger(__name__)

USER_AGENT = "acme-dns-gateway/0.1.0"
JOSE_CONTENT_TYPE = "application/jose+json"

PROBLEM_CLASSES: dict[str, type[AcmeProblemError]] = {
    "rateLimited": RateLimitedError,
    "userActionRequired": UserActionRequiredError,
}


class AcmeClient:
    """Client for the ACME (RFC 8555) wire protocol.

    Every signed request is one logical exchange: it holds the client's request
    gate, is wrapped in backoff for transient server failures, and retries
    locally on stale nonces.
    """

    DIRECTORY_URL = "https://acme-v02.api.letsencrypt.org/directory"
    TEST_DIRECTORY_URL = "https://acme-staging-v02.api.letsencrypt.org/directory"

    NONCE_RETRY_ATTEMPTS = 3
    NONCE_RETRY_DELAY = 0.5
    BACKOFF_ATTEMPTS = retry.MAX_BACKOFF_ATTEMPTS
    BACKOFF_BASE_DELAY = retry.BASE_DELAY
    CHALLENGE_POLL_INTERVAL = 1
    CHALLENGE_POLL_ATTEMPTS = 5
    ORDER_POLL_INTERVAL = 2
    ORDER_POLL_ATTEMPTS = 30
    TIMEOUT = 30

    def __init__(
        self,
        signer: AccountSigner,
        directory_url: str = DIRECTORY_URL,
        account: models.Account | None = None,
        cancel: threading.Event | None = None,
        user_agent: str = USER_AGENT,
    ):
        """
        Initialize the AcmeClient.

        Args:
        - signer (AccountSigner): Account key material used to sign every request.
        - directory_url (str): ACME directory URL.
        - account (models.Account | None): Existing registration; its URL is used as "kid".
        - cancel (threading.Event | None): Set to abort polling loops and sleeps.
        - user_agent (str): User-Agent header sent with every request.
        """
        self.http = requests.Session()
        self.http.headers.update({"User-Agent": user_agent})
        self.signer = signer
        self.directory_url = directory_url
        self.account = account
        self.cancel = cancel or threading.Event()
        self.gate = retry.RequestGate()

        self._directory: dict[str, Any] | None = None
        self._nonce: str | None = None

        if self.account is not None:
            self.account.client = self

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Close the HTTP session."""
        self.http.close()

    def close(self):
        """Close the AcmeClient."""
        self.__exit__(None, None, None)

    def add_headers(self, headers: dict[str, str]) -> None:
        """Add headers to the HTTP session."""
        self.http.headers.update(headers)

    @property
    def kid(self) -> str:
        return self.account.url if self.account else ""

    @property
    def host(self) -> str:
        """Host name of the ACME directory."""
        return urlsplit(self.directory_url).hostname or ""

    @property
    def directory(self) -> dict[str, Any]:
        """The ACME directory, fetched on first use."""
        if self._directory is None:
            r = self.http.get(self.directory_url, timeout=self.TIMEOUT)
            r.raise_for_status()
            self._directory = r.json()
            logger.debug(f"Fetched directory: {self._directory}")
        return self._directory

    def url_for(self, resource: str) -> str:
        """
        Get the URL for a specific ACME resource.

        Raises:
            AcmeError: If the directory has no such entry.
        """
        url = self.directory.get(resource)
        if not url:
            raise AcmeError(f"ACME directory {self.directory_url} has no '{resource}' endpoint")
        return url

    @property
    def terms_of_service(self) -> str | None:
        return (self.directory.get("meta") or {}).get("termsOfService")

    @property
    def requires_external_account_binding(self) -> bool:
        return bool((self.directory.get("meta") or {}).get("externalAccountRequired"))

    def new_nonce(self) -> str:
        """Fetch a fresh nonce from the newNonce endpoint."""
        r = self.http.head(self.url_for("newNonce"), timeout=self.TIMEOUT)
        r.raise_for_status()

        nonce = r.headers.get("Replay-Nonce")
        if not nonce:
            raise AcmeError("newNonce response carried no Replay-Nonce header")
        self._nonce = nonce
        return nonce

    def format_data(
        self, url: str, payload: dict[str, Any] | None, use_jwk: bool = False
    ) -> dict[str, str]:
        """
        Build the flattened JWS for a request.

        Args:
        - url (str): URL for the request.
        - payload (dict | None): Payload data. None for POST-as-GET.
        - use_jwk (bool): Embed the public JWK instead of the account "kid".

        Returns:
        - dict: {"protected", "payload", "signature"}.
        """
        if use_jwk or not self.kid:
            # jwk must be the first member; some CAs reject other orderings
            protected_header: dict[str, Any] = {
                "jwk": self.signer.public_jwk(),
                "alg": self.signer.algorithm,
                "url": url,
                "nonce": self._nonce,
            }
        else:
            protected_header = {
                "alg": self.signer.algorithm,
                "kid": self.kid,
                "url": url,
                "nonce": self._nonce,
            }
        logger.debug(f"Protected header: {protected_header}")

        protected = utils.b64url(utils.json_encode(protected_header, sort_keys=False))
        dumped_payload = "" if payload is None else utils.b64url(utils.json_encode(payload))

        signing_input = f"{protected}.{dumped_payload}".encode("utf-8")
        signature = utils.b64url(self.signer.sign(signing_input))

        return {"protected": protected, "payload": dumped_payload, "signature": signature}

    def _post(self, url: str, payload: dict[str, Any] | None, use_jwk: bool) -> requests.Response:
        """Send one signed POST, consuming the cached nonce."""
        if not self._nonce:
            self.new_nonce()

        data = self.format_data(url, payload, use_jwk)
        self._nonce = None

        response = self.http.post(
            url,
            data=utils.json_encode(data, sort_keys=False),
            headers={"Content-Type": JOSE_CONTENT_TYPE},
            timeout=self.TIMEOUT,
        )

        new_nonce = response.headers.get("Replay-Nonce")
        if new_nonce:
            self._nonce = new_nonce
        return response

    def _post_with_nonce_retry(
        self, url: str, payload: dict[str, Any] | None, use_jwk: bool
    ) -> requests.Response:
        """Send a signed POST, resubmitting with a fresh nonce on badNonce.

        Any other failure, or a badNonce on the last attempt, is returned as-is.
        """
        attempt = 1
        response = self._post(url, payload, use_jwk)

        while not response.ok and "badNonce" in response.text:
            if attempt >= self.NONCE_RETRY_ATTEMPTS:
                break
            logger.warning(
                f"badNonce received on attempt {attempt}/{self.NONCE_RETRY_ATTEMPTS}. "
                "Retrying with fresh nonce..."
            )
            self._nonce = None
            retry.sleep(self.NONCE_RETRY_DELAY, self.cancel)
            attempt += 1
            response = self._post(url, payload, use_jwk)

        if not response.ok:
            logger.debug(f"ACME request to {url} failed: {response.status_code} {response.text}")
        return response

    def signed_request(
        self, url: str, payload: dict[str, Any] | None = None, use_jwk: bool = False
    ) -> requests.Response:
        """
        Send a signed request as one serialized logical exchange.

        Args:
        - url (str): URL for the request.
        - payload (dict | None): Payload data. None for POST-as-GET.
        - use_jwk (bool): Sign with the embedded JWK (account creation).

        Returns:
        - requests.Response: Successful response.

        Raises:
        - AcmeProblemError: The server answered with a non-transient problem.
        - RateLimitedError: The server rate limited the request.
        - ServiceBusyError: Transient failures exhausted the backoff budget.
        """
        if not use_jwk and not self.kid:
            raise AcmeError("No account registered with this client, unable to sign with 'kid'")

        def attempt() -> requests.Response:
            response = self._post_with_nonce_retry(url, payload, use_jwk)
            self.raise_for_problem(response)
            return response

        with self.gate.hold(self.cancel):
            try:
                return retry.backoff(
                    attempt, self.BACKOFF_ATTEMPTS, self.BACKOFF_BASE_DELAY, self.cancel
                )
            except UserActionRequiredError as e:
                logger.error(f"User action required: {e.detail} (instance: {e.problem.get('instance')})")
                raise
            except AcmeProblemError as e:
                logger.error(f"ACME problem from {url}: {e}")
                raise

    def post_as_get(self, url: str) -> requests.Response:
        """Fetch a resource with an empty-payload signed POST."""
        return self.signed_request(url, None)

    @staticmethod
    def raise_for_problem(response: requests.Response) -> None:
        """
        Raise the matching AcmeProblemError for a failed response.

        Raises:
        - AcmeProblemError: If the response status is not 2xx.
        """
        if response.ok:
            return

        try:
            problem = response.json()
        except ValueError:
            problem = {}
        if not isinstance(problem, dict):
            problem = {}

        short_type = str(problem.get("type", "")).removeprefix(PROBLEM_PREFIX)
        cls = PROBLEM_CLASSES.get(short_type, AcmeProblemError)
        raise cls(response.status_code, problem, response.text)

    @staticmethod
    def get_json_response(r: requests.Response) -> dict[str, Any]:
        """
        Parse the JSON body of a response.

        Raises:
        - AcmeError: If the response is not valid JSON.
        """
        if r.status_code == 204 or not r.content:
            return {}
        try:
            return r.json()
        except ValueError:
            raise AcmeError(f"Invalid JSON response: {r.text}") from None

    def new_account(
        self,
        contact: list[str] | None = None,
        terms_of_service_agreed: bool = True,
        external_account_binding: dict[str, str] | None = None,
        only_return_existing: bool = False,
    ) -> models.Account:
        """
        Register (or look up) the account for this client's key.

        Args:
        - contact (list[str] | None): Contact URIs, e.g. ["mailto:admin@example.com"].
        - terms_of_service_agreed (bool): Whether the user agrees to the terms of service.
        - external_account_binding (dict | None): EAB JWS from eab.build_external_account_binding.
        - only_return_existing (bool): Do not create a new account.

        Returns:
        - models.Account: The registration, also bound to this client.
        """
        payload: dict[str, Any] = {}
        if contact:
            payload["contact"] = contact
        if terms_of_service_agreed:
            payload["termsOfServiceAgreed"] = True
        if only_return_existing:
            payload["onlyReturnExisting"] = True
        if external_account_binding:
            payload["externalAccountBinding"] = external_account_binding

        r = self.signed_request(self.url_for("newAccount"), payload, use_jwk=True)

        kid = r.headers.get("Location")
        if not kid:
            raise AcmeError("newAccount response carried no Location header")

        data = self.get_json_response(r)
        data.setdefault("contact", contact or [])
        data.setdefault("termsOfServiceAgreed", terms_of_service_agreed)

        self.account = models.Account(self, kid, data)
        logger.info(f"Registered ACME account {kid}")
        return self.account

    def create_order(
        self, identifiers: list[str], not_after: datetime | str | None = None
    ) -> models.Order:
        """
        Create a new order for the given DNS identifiers.

        Raises:
        - OrderCreationError: If the server rejects the order.
        - RateLimitedError: If the CA rate-limits the request.
        - ServiceBusyError: If the server keeps failing with 5xx or transport errors
          until backoff is exhausted; these are not rejections of the order itself.
        """
        payload: dict[str, Any] = {
            "identifiers": [{"type": "dns", "value": value} for value in identifiers]
        }
        if not_after:
            payload["notAfter"] = not_after.isoformat() if isinstance(not_after, datetime) else not_after

        logger.debug(f"Creating ACME order for {len(identifiers)} identifier(s): {identifiers}")
        try:
            r = self.signed_request(self.url_for("newOrder"), payload)
        except (RateLimitedError, UserActionRequiredError):
            raise
        except AcmeProblemError as e:
            raise OrderCreationError(e.status_code, e.problem, e.body) from e

        order = models.Order(self, r.headers.get("Location", ""), self.get_json_response(r))
        logger.info(f"Order created with status: {order.status} ({order.url or 'no Location'})")
        return order

    def get_order(self, url: str) -> models.Order:
        order = models.Order(self, url)
        order.update()
        return order

    def get_authorization(self, url: str) -> models.Authorization:
        authorization = models.Authorization(self, url)
        authorization.update()
        return authorization

    def get_challenge(self, url: str) -> models.Challenge:
        challenge = models.Challenge(self, url)
        challenge.update()
        return challenge

    def key_authorization(self, token: str) -> str:
        return f"{token}.{self.signer.thumbprint()}"

    def decode_challenge_validation(
        self, authorization: models.Authorization, challenge: models.Challenge
    ) -> models.DnsChallengeValidation:
        """
        Compute the TXT record that satisfies a dns-01 challenge.

        Raises:
        - UnsupportedChallengeTypeError: If the challenge is not dns-01.
        """
        identifier = authorization.identifier.get("value", "")
        if challenge.type != models.DNS_01:
            raise UnsupportedChallengeTypeError(challenge.type, identifier)
        if not challenge.token:
            raise AcmeError(f"dns-01 challenge for '{identifier}' has no token")

        digest = hashlib.sha256(self.key_authorization(challenge.token).encode("utf-8")).digest()
        return models.DnsChallengeValidation.for_domain(identifier, utils.b64url(digest))

    def answer_challenge(self, challenge: models.Challenge) -> models.Challenge:
        """
        Tell the server the challenge is ready, then poll until it resolves.

        Returns:
        - models.Challenge: Last known state; may still be pending after the poll budget.
        """
        if not challenge.url:
            raise AcmeError("Missing challenge URL - cannot submit response")

        logger.debug(f"Submitting challenge response to {challenge.url}")
        r = self.signed_request(challenge.url, {})
        answered = models.Challenge(self, challenge.url, self.get_json_response(r) or challenge.data)

        attempts = 0
        while answered.status in ("pending", "processing") and attempts < self.CHALLENGE_POLL_ATTEMPTS:
            retry.sleep(self.CHALLENGE_POLL_INTERVAL, self.cancel)
            attempts += 1
            logger.debug(f"Polling challenge status (attempt {attempts}/{self.CHALLENGE_POLL_ATTEMPTS})")

            try:
                answered = self.get_challenge(challenge.url)
            except OperationCancelledError:
                raise
            except (AcmeError, requests.RequestException) as e:
                logger.warning(f"Error polling challenge status on attempt {attempts}: {e}")
                if attempts >= self.CHALLENGE_POLL_ATTEMPTS:
                    raise

        if answered.status in ("pending", "processing"):
            logger.warning(f"Challenge polling exceeded max retries ({self.CHALLENGE_POLL_ATTEMPTS})")

        logger.info(f"Challenge completed with status: {answered.status}")
        return answered

    def wait_for_order_status(
        self, order: models.Order, target: str, negate: bool = False
    ) -> models.Order:
        """
        Poll an order until its status equals (or, negated, differs from) the target.

        Gives up after ORDER_POLL_ATTEMPTS and returns the last known state.

        Raises:
        - OrderValidationError: As soon as the order is seen as invalid.
        """
        operation = "NOT be" if negate else "become"

        def reached(status: str) -> bool:
            return (status != target) if negate else (status == target)

        if not order.url:
            # some CAs omit Location on new-order; nothing to poll
            if order.status == "invalid":
                raise OrderValidationError("<no url>", (order.error or {}).get("detail"))
            if not reached(order.status):
                logger.warning(
                    f"Cannot refresh order status and current status ({order.status}) "
                    f"doesn't match target ({target})"
                )
            return order

        for attempt in range(1, self.ORDER_POLL_ATTEMPTS + 1):
            retry.check_cancelled(self.cancel)
            try:
                refreshed = self.get_order(order.url)
                order.apply_update(refreshed.data)
            except OperationCancelledError:
                raise
            except (AcmeError, requests.RequestException) as e:
                logger.warning(f"Error updating order details on attempt {attempt}: {e}")
                if attempt >= self.ORDER_POLL_ATTEMPTS // 2:
                    raise

            if order.status == "invalid":
                logger.error(f"Order {order.url} entered invalid state")
                raise OrderValidationError(order.url, (order.error or {}).get("detail"))

            logger.debug(f"Current order status: {order.status}, target: {target}, negate: {negate}")
            if reached(order.status):
                return order

            if attempt < self.ORDER_POLL_ATTEMPTS:
                logger.debug(
                    f"Waiting for order to {operation} {target} "
                    f"(attempt {attempt}/{self.ORDER_POLL_ATTEMPTS})"
                )
                retry.sleep(self.ORDER_POLL_INTERVAL, self.cancel)

        logger.warning(
            f"Maximum retries ({self.ORDER_POLL_ATTEMPTS}) reached waiting for order to {operation} {target}"
        )
        return order

    def finalize_order(self, order: models.Order, csr_der: bytes) -> models.Order:
        """
        Wait for the order to be ready, submit the CSR, and wait for processing to end.

        Args:
        - order (models.Order): The order to finalize.
        - csr_der (bytes): DER-encoded certificate signing request.

        Returns:
        - models.Order: The order; unchanged if it never became ready.

        Raises:
        - OrderValidationError: If the order becomes invalid.
        - OrderStateError: If the order has no finalize URL.
        """
        self.wait_for_order_status(order, "ready")

        if order.status != "ready":
            logger.warning(f"Order status is {order.status}, expected ready")
            return order

        if not order.finalize_url:
            raise OrderStateError(order.url, "missing finalize URL - order may be corrupted")

        logger.debug(f"Finalizing order {order.url} with CSR submission")
        r = self.signed_request(order.finalize_url, {"csr": utils.b64url(csr_der)})
        order.apply_update(self.get_json_response(r))

        if order.status == "invalid":
            raise OrderValidationError(order.url, (order.error or {}).get("detail"))

        self.wait_for_order_status(order, "processing", negate=True)
        logger.info(f"Order finalized with status: {order.status}")
        return order

    def get_certificate(self, order: models.Order) -> bytes:
        """
        Download the issued certificate chain.

        Raises:
        - OrderStateError: If the order has no certificate URL.
        """
        if not order.certificate_url:
            raise OrderStateError(order.url, "missing certificate URL in order payload")

        logger.debug(f"Downloading certificate from {order.certificate_url}")
        r = self.post_as_get(order.certificate_url)
        logger.info(f"Certificate downloaded successfully ({len(r.content)} bytes)")
        return r.content

    def revoke_certificate(self, certificate_der: bytes, reason: int = 0) -> None:
        """Revoke a certificate issued to this account."""
        logger.info(f"Revoking certificate with reason: {reason}")
        self.signed_request(
            self.url_for("revokeCert"),
            {"certificate": utils.b64url(certificate_der), "reason": reason},
        )

    def __repr__(self) -> str:
        return f"<AcmeClient {self.directory_url} kid={self.kid or '<unregistered>'}>"
