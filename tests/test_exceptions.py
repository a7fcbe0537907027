"""Tests for custom exceptions."""

import pytest

from acme_dns_gateway import exceptions


class TestAcmeProblemError:
    """Tests for AcmeProblemError exception."""

    def test_creates_from_problem_document(self):
        """Test exception creation from an RFC 7807 problem."""
        error = exceptions.AcmeProblemError(
            403, {"type": "urn:ietf:params:acme:error:unauthorized", "detail": "account deactivated"}
        )

        assert error.status_code == 403
        assert error.short_type == "unauthorized"
        assert "account deactivated" in str(error)
        assert "403" in str(error)

    def test_without_problem_uses_body(self):
        error = exceptions.AcmeProblemError(502, body="Bad Gateway")

        assert error.problem == {}
        assert error.short_type == ""
        assert "Bad Gateway" in str(error)

    def test_foreign_problem_type_kept(self):
        assert exceptions.AcmeProblemError(400, {"type": "about:blank"}).short_type == "about:blank"

    @pytest.mark.parametrize(
        "status, kind, transient",
        [
            (500, "", True),
            (503, "badNonce", True),
            (400, "serverInternal", True),
            (400, "malformed", False),
            (404, "", False),
        ],
    )
    def test_is_transient(self, status, kind, transient):
        problem = {"type": f"urn:ietf:params:acme:error:{kind}"} if kind else None

        assert exceptions.AcmeProblemError(status, problem).is_transient is transient

    def test_subclasses(self):
        assert issubclass(exceptions.RateLimitedError, exceptions.AcmeProblemError)
        assert issubclass(exceptions.OrderCreationError, exceptions.AcmeProblemError)
        assert issubclass(exceptions.UserActionRequiredError, exceptions.AcmeProblemError)


class TestConfigurationErrors:
    """Tests for configuration exception types."""

    def test_missing_parameter(self):
        """Test that the parameter name is kept and shown."""
        error = exceptions.MissingParameterError("email")

        assert error.parameter == "email"
        assert "'email'" in str(error)
        assert isinstance(error, exceptions.ConfigurationError)

    def test_unsupported_algorithm_lists_supported(self):
        error = exceptions.UnsupportedAlgorithmError("HS1", ["HS256", "HS384"])

        assert error.supported == ("HS256", "HS384")
        assert "HS256, HS384" in str(error)

    def test_unsupported_provider(self):
        with pytest.raises(exceptions.ConfigurationError) as exc_info:
            raise exceptions.UnsupportedDnsProviderError("route53")

        assert exc_info.value.provider == "route53"


class TestWorkflowErrors:
    """Tests for order and challenge exception types."""

    def test_order_validation_detail(self):
        error = exceptions.OrderValidationError("https://acme.test/order/1", "CAA forbids issuance")

        assert "CAA forbids issuance" in str(error)
        assert error.order_url == "https://acme.test/order/1"

    def test_challenge_validation_without_error(self):
        error = exceptions.ChallengeValidationError("https://acme.test/chall/1", "example.com")

        assert error.error == {}
        assert "no detail provided" in str(error)

    def test_challenge_type_unavailable(self):
        error = exceptions.ChallengeTypeUnavailableError("example.com", ("http-01",))

        assert error.available == ["http-01"]
        assert "example.com" in str(error)

    def test_unsupported_challenge_type_empty(self):
        assert "<empty>" in str(exceptions.UnsupportedChallengeTypeError("", "example.com"))

    def test_dns_propagation(self):
        error = exceptions.DnsPropagationError("_acme-challenge.example.com", 2, 3)

        assert "2/3" in str(error)

    def test_service_busy_keeps_cause(self):
        cause = TimeoutError("slow")
        error = exceptions.ServiceBusyError(5, cause)

        assert error.cause is cause
        assert "5 attempts" in str(error)

    def test_everything_is_acme_error(self):
        """Test that hosts can catch every package error with one class."""
        for error in (
            exceptions.DecryptionFailedError(),
            exceptions.OperationCancelledError(),
            exceptions.DnsRecordError("name", "failed"),
            exceptions.OrderStateError("url", "missing finalize URL"),
        ):
            assert isinstance(error, exceptions.AcmeError)
