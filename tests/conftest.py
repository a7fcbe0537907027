from datetime import datetime, timedelta, timezone

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID

from acme_dns_gateway import acme, certificate, models
from acme_dns_gateway.signer import AccountSigner

DIRECTORY_URL = "https://acme.test/directory"
NEW_NONCE_URL = "https://acme.test/acme/new-nonce"
NEW_ACCOUNT_URL = "https://acme.test/acme/new-acct"
NEW_ORDER_URL = "https://acme.test/acme/new-order"
REVOKE_URL = "https://acme.test/acme/revoke-cert"
KID = "https://acme.test/acme/acct/42"

DIRECTORY = {
    "newNonce": NEW_NONCE_URL,
    "newAccount": NEW_ACCOUNT_URL,
    "newOrder": NEW_ORDER_URL,
    "revokeCert": REVOKE_URL,
    "meta": {"termsOfService": "https://acme.test/terms"},
}


def make_certificate(common_name, sans=(), issuer_name="Test CA"):
    """Build a PEM certificate for the given names, signed by a throwaway key."""
    key = ec.generate_private_key(ec.SECP256R1())
    now = datetime.now(timezone.utc)
    builder = (
        x509.CertificateBuilder()
        .subject_name(x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)]))
        .issuer_name(x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, issuer_name)]))
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now)
        .not_valid_after(now + timedelta(days=90))
    )
    if sans:
        builder = builder.add_extension(
            x509.SubjectAlternativeName([x509.DNSName(name) for name in sans]), critical=False
        )
    return builder.sign(key, hashes.SHA256()).public_bytes(serialization.Encoding.PEM).decode("ascii")


@pytest.fixture(scope="session")
def csr_key():
    return certificate.generate_private_key()


@pytest.fixture(scope="session")
def csr_pem(csr_key):
    """CSR for www.example.com with one extra SAN."""
    csr = certificate.generate_csr("www.example.com", csr_key, ["example.com"])
    return csr.public_bytes(serialization.Encoding.PEM)


@pytest.fixture(scope="session")
def ec_signer():
    """Fixture to generate an ES256 account signer for the tests."""
    return AccountSigner.generate("ES256")


@pytest.fixture(scope="session")
def rsa_signer():
    return AccountSigner.generate("RS256")


@pytest.fixture(autouse=True)
def no_delays(monkeypatch):
    """Zero every fixed wait so polling tests run instantly."""
    monkeypatch.setattr(acme.AcmeClient, "NONCE_RETRY_DELAY", 0)
    monkeypatch.setattr(acme.AcmeClient, "BACKOFF_BASE_DELAY", 0)
    monkeypatch.setattr(acme.AcmeClient, "CHALLENGE_POLL_INTERVAL", 0)
    monkeypatch.setattr(acme.AcmeClient, "ORDER_POLL_INTERVAL", 0)


@pytest.fixture
def requests_mock():
    """Fixture for requests-mock."""
    import requests_mock as rm

    with rm.Mocker() as m:
        yield m


@pytest.fixture
def acme_server(requests_mock):
    """A mocked ACME directory with a nonce endpoint that always issues a nonce."""
    requests_mock.get(DIRECTORY_URL, json=DIRECTORY)
    requests_mock.head(NEW_NONCE_URL, headers={"Replay-Nonce": "nonce-from-head"})
    return requests_mock


@pytest.fixture
def unregistered_client(ec_signer):
    """Fixture to initialize an AcmeClient without an account."""
    client = acme.AcmeClient(ec_signer, directory_url=DIRECTORY_URL)
    yield client
    client.close()


@pytest.fixture
def acme_client(ec_signer):
    """Fixture to initialize an AcmeClient bound to an existing account."""
    account = models.Account(None, KID, {"status": "valid", "contact": ["mailto:admin@example.com"]})
    client = acme.AcmeClient(ec_signer, directory_url=DIRECTORY_URL, account=account)
    yield client
    client.close()


@pytest.fixture
def order(acme_client):
    """Fixture to initialize an Order instance."""
    data = {
        "status": "pending",
        "identifiers": [{"type": "dns", "value": "www.example.com"}],
        "authorizations": ["https://acme.test/acme/authz/1"],
        "finalize": "https://acme.test/acme/order/1/finalize",
    }
    return models.Order(acme_client, "https://acme.test/acme/order/1", data)


@pytest.fixture
def authorization(acme_client):
    """Fixture to initialize an Authorization with a dns-01 challenge."""
    data = {
        "status": "pending",
        "identifier": {"type": "dns", "value": "www.example.com"},
        "challenges": [
            {"type": "http-01", "url": "https://acme.test/acme/chall/1-http", "token": "tok-http"},
            {"type": "dns-01", "url": "https://acme.test/acme/chall/1-dns", "token": "tok-dns"},
        ],
    }
    return models.Authorization(acme_client, "https://acme.test/acme/authz/1", data)
