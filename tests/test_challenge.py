"""Tests for dns-01 challenge orchestration."""

from unittest.mock import Mock, patch

import pytest

from acme_dns_gateway import models
from acme_dns_gateway.challenge import ChallengeOrchestrator, find_supported_challenge
from acme_dns_gateway.exceptions import (
    ChallengeTypeUnavailableError,
    ChallengeValidationError,
    DnsPropagationError,
    DnsRecordError,
    OrderStateError,
)


def make_authorization(domain, status="pending", challenge_types=("http-01", "dns-01")):
    return models.Authorization(
        None,
        f"https://acme.test/acme/authz/{domain}",
        {
            "status": status,
            "identifier": {"type": "dns", "value": domain},
            "challenges": [
                {"type": t, "url": f"https://acme.test/acme/chall/{domain}/{t}", "token": f"tok-{domain}"}
                for t in challenge_types
            ],
        },
    )


def make_order(*domains):
    return models.Order(
        None,
        "https://acme.test/acme/order/1",
        {"status": "pending", "authorizations": [f"https://acme.test/acme/authz/{d}" for d in domains]},
    )


@pytest.fixture
def events():
    return []


@pytest.fixture
def authorizations():
    return {}


@pytest.fixture
def client(events, authorizations):
    def get_authorization(url):
        domain = url.rsplit("/", 1)[-1]
        return authorizations.get(domain) or make_authorization(domain)

    def decode(authorization, challenge):
        domain = authorization.identifier["value"]
        return models.DnsChallengeValidation.for_domain(domain, f"value-{domain}")

    def answer(challenge):
        events.append(("answer", challenge.url))
        return models.Challenge(None, challenge.url, {"status": "valid", "type": challenge.type})

    client = Mock(cancel=None)
    client.get_authorization.side_effect = get_authorization
    client.decode_challenge_validation.side_effect = decode
    client.answer_challenge.side_effect = answer
    return client


@pytest.fixture
def provider(events):
    provider = Mock(externally_resolvable=True)
    provider.name = "stub"
    provider.create_record.side_effect = lambda name, value: events.append(("create", name)) or True
    provider.delete_record.side_effect = lambda name: events.append(("delete", name)) or True
    return provider


@pytest.fixture
def checker(events):
    checker = Mock()
    checker.wait_for_propagation.side_effect = lambda name, value, minimum: events.append(("wait", name)) or True
    return checker


@pytest.fixture
def orchestrator(client, provider, checker):
    return ChallengeOrchestrator(client, provider, checker, settle_delay=5, fallback_delay=30)


class TestFindSupportedChallenge:
    """Tests for find_supported_challenge()."""

    def test_picks_dns_01(self):
        challenge = find_supported_challenge(make_authorization("example.com"))

        assert challenge.type == "dns-01"
        assert challenge.url.endswith("/dns-01")

    def test_no_dns_01(self):
        with pytest.raises(ChallengeTypeUnavailableError) as exc_info:
            find_supported_challenge(make_authorization("example.com", challenge_types=("http-01", "tls-alpn-01")))

        assert exc_info.value.identifier == "example.com"
        assert exc_info.value.available == ["http-01", "tls-alpn-01"]


class TestProcessAuthorizations:
    """Tests for ChallengeOrchestrator.process_authorizations()."""

    def test_two_pass_ordering(self, orchestrator, events):
        answered = orchestrator.process_authorizations(make_order("a.example.com", "b.example.com"))

        assert [kind for kind, _ in events] == ["create", "create", "wait", "answer", "wait", "answer", "delete", "delete"]
        assert events[0] == ("create", "_acme-challenge.a.example.com")
        assert [c.status for c in answered] == ["valid", "valid"]

    def test_record_values(self, orchestrator, provider, checker):
        orchestrator.process_authorizations(make_order("www.example.com"))

        provider.create_record.assert_called_once_with("_acme-challenge.www.example.com", "value-www.example.com")
        checker.wait_for_propagation.assert_called_once_with(
            "_acme-challenge.www.example.com", "value-www.example.com", minimum=3
        )

    def test_cached_valid_authorization_skipped(self, orchestrator, authorizations, provider, client):
        authorizations["a.example.com"] = make_authorization("a.example.com", status="valid")

        answered = orchestrator.process_authorizations(make_order("a.example.com", "b.example.com"))

        assert len(answered) == 1
        provider.create_record.assert_called_once_with("_acme-challenge.b.example.com", "value-b.example.com")
        client.answer_challenge.assert_called_once()

    def test_all_cached_publishes_nothing(self, orchestrator, authorizations, provider):
        authorizations["a.example.com"] = make_authorization("a.example.com", status="valid")

        assert orchestrator.process_authorizations(make_order("a.example.com")) == []
        provider.create_record.assert_not_called()
        provider.delete_record.assert_not_called()

    def test_empty_authorization_list(self, orchestrator):
        with pytest.raises(OrderStateError):
            orchestrator.process_authorizations(make_order())

    def test_missing_dns_01_cleans_up_published_records(self, orchestrator, authorizations, provider):
        authorizations["b.example.com"] = make_authorization("b.example.com", challenge_types=("http-01",))

        with pytest.raises(ChallengeTypeUnavailableError):
            orchestrator.process_authorizations(make_order("a.example.com", "b.example.com"))

        provider.delete_record.assert_called_once_with("_acme-challenge.a.example.com")

    def test_create_failure(self, orchestrator, provider, client):
        provider.create_record.side_effect = None
        provider.create_record.return_value = False

        with pytest.raises(DnsRecordError) as exc_info:
            orchestrator.process_authorizations(make_order("www.example.com"))

        assert exc_info.value.record_name == "_acme-challenge.www.example.com"
        client.answer_challenge.assert_not_called()
        provider.delete_record.assert_not_called()

    @patch("acme_dns_gateway.retry.sleep")
    def test_unpropagated_record_proceeds(self, mock_sleep, orchestrator, checker, client):
        checker.wait_for_propagation.side_effect = None
        checker.wait_for_propagation.return_value = False

        answered = orchestrator.process_authorizations(make_order("www.example.com"))

        assert answered[0].status == "valid"
        mock_sleep.assert_called_once_with(30, None)
        client.answer_challenge.assert_called_once()

    def test_required_propagation(self, client, provider, checker):
        checker.wait_for_propagation.side_effect = None
        checker.wait_for_propagation.return_value = False
        checker.last_confirmations = 2
        orchestrator = ChallengeOrchestrator(client, provider, checker, require_propagation=True, min_resolvers=4)

        with pytest.raises(DnsPropagationError) as exc_info:
            orchestrator.process_authorizations(make_order("www.example.com"))

        assert exc_info.value.confirmations == 2
        assert exc_info.value.required == 4
        client.answer_challenge.assert_not_called()
        provider.delete_record.assert_called_once()

    @patch("acme_dns_gateway.retry.sleep")
    def test_internal_dns_skips_propagation_check(self, mock_sleep, orchestrator, provider, checker, client):
        provider.externally_resolvable = False

        orchestrator.process_authorizations(make_order("www.example.com"))

        checker.wait_for_propagation.assert_not_called()
        mock_sleep.assert_called_once_with(5, None)
        client.answer_challenge.assert_called_once()

    def test_invalid_challenge(self, orchestrator, client, provider):
        client.answer_challenge.side_effect = lambda c: models.Challenge(
            None, c.url, {"status": "invalid", "error": {"detail": "NXDOMAIN looking up TXT"}}
        )

        with pytest.raises(ChallengeValidationError) as exc_info:
            orchestrator.process_authorizations(make_order("www.example.com"))

        assert exc_info.value.identifier == "www.example.com"
        assert "NXDOMAIN" in str(exc_info.value)
        provider.delete_record.assert_called_once()

    def test_pending_challenge_continues(self, orchestrator, client):
        client.answer_challenge.side_effect = lambda c: models.Challenge(None, c.url, {"status": "pending"})

        answered = orchestrator.process_authorizations(make_order("www.example.com"))

        assert answered[0].status == "pending"

    def test_cleanup_errors_are_logged(self, orchestrator, provider, caplog):
        provider.delete_record.side_effect = RuntimeError("api down")

        answered = orchestrator.process_authorizations(make_order("a.example.com", "b.example.com"))

        assert len(answered) == 2
        assert provider.delete_record.call_count == 2
        assert "api down" in caplog.text

    def test_cleanup_disabled(self, client, provider, checker):
        orchestrator = ChallengeOrchestrator(client, provider, checker, cleanup_records=False)

        orchestrator.process_authorizations(make_order("www.example.com"))

        provider.delete_record.assert_not_called()


def test_default_checker_shares_cancel_event(client, provider):
    cancel = Mock()

    orchestrator = ChallengeOrchestrator(client, provider, cancel=cancel)

    assert orchestrator.checker.cancel is cancel
