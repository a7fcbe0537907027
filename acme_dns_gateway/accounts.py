"""
On-disk account store.

Layout under the base directory:

    default_{host-with-dashes}.txt      name of the default account directory
    {host-with-dashes}_{accountId}/
        registration.json              account registration record
        signer.json                    signer export, plaintext or encrypted

With a passphrase, the signer file is [16-byte salt][16-byte IV][AES-CBC ciphertext]
with key and IV derived by PBKDF2-HMAC-SHA1 (10,000 iterations) over the salt.
"""

import json
import logging
import os
import re
from dataclasses import dataclass
from pathlib import Path
from urllib.parse import urlsplit

from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from acme_dns_gateway import models
from acme_dns_gateway.exceptions import DecryptionFailedError, UnsupportedAlgorithmError
from acme_dns_gateway.signer import AccountSigner

logger = logging.getLogger(__name__)

DEFAULT_STORE_PATH = Path.home() / ".acme_dns_gateway" / "accounts"
REGISTRATION_FILE = "registration.json"
SIGNER_FILE = "signer.json"

SALT_SIZE = 16
IV_SIZE = 16
KEY_SIZE = 32
PBKDF2_ITERATIONS = 10_000

PREFERRED_KEY_TYPE = "ES256"
FALLBACK_KEY_TYPE = "RS256"


@dataclass
class StoredAccount:
    """An account registration paired with the signer that owns it."""

    account: models.Account
    signer: AccountSigner

    @property
    def kid(self) -> str:
        return self.account.kid


def _derive(passphrase: str, salt: bytes) -> tuple[bytes, bytes]:
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA1(),
        length=KEY_SIZE + IV_SIZE,
        salt=salt,
        iterations=PBKDF2_ITERATIONS,
    )
    derived = kdf.derive(passphrase.encode("utf-8"))
    return derived[:KEY_SIZE], derived[KEY_SIZE:]


def encrypt(plaintext: str, passphrase: str) -> bytes:
    """
    Encrypt text with a passphrase.

    Returns:
        bytes: salt + IV + AES-256-CBC ciphertext (PKCS7 padded).
    """
    salt = os.urandom(SALT_SIZE)
    key, iv = _derive(passphrase, salt)

    padder = padding.PKCS7(algorithms.AES.block_size).padder()
    padded = padder.update(plaintext.encode("utf-8")) + padder.finalize()

    encryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).encryptor()
    return salt + iv + encryptor.update(padded) + encryptor.finalize()


def decrypt(data: bytes, passphrase: str) -> str:
    """
    Decrypt data produced by encrypt().

    Raises:
        DecryptionFailedError: On a wrong passphrase or corrupt data.
    """
    header = SALT_SIZE + IV_SIZE
    block = algorithms.AES.block_size // 8
    if len(data) <= header or (len(data) - header) % block:
        raise DecryptionFailedError("Encrypted signer is truncated or malformed.")

    salt, iv, ciphertext = data[:SALT_SIZE], data[SALT_SIZE:header], data[header:]
    key, _ = _derive(passphrase, salt)

    decryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).decryptor()
    padded = decryptor.update(ciphertext) + decryptor.finalize()

    try:
        unpadder = padding.PKCS7(algorithms.AES.block_size).unpadder()
        return (unpadder.update(padded) + unpadder.finalize()).decode("utf-8")
    except (ValueError, UnicodeDecodeError) as e:
        raise DecryptionFailedError() from e


def encrypt_signer(signer: AccountSigner, passphrase: str | None) -> bytes:
    """Serialize a signer, encrypting it when a passphrase is given."""
    payload = json.dumps(signer.export())
    if passphrase:
        return encrypt(payload, passphrase)
    return payload.encode("utf-8")


def decrypt_signer(data: bytes, passphrase: str | None) -> AccountSigner:
    """
    Load a signer written by encrypt_signer().

    Raises:
        DecryptionFailedError: If the passphrase is wrong or the content is not a signer.
    """
    text = decrypt(data, passphrase) if passphrase else data.decode("utf-8")
    try:
        return AccountSigner.from_export(json.loads(text))
    except (ValueError, KeyError, TypeError, UnsupportedAlgorithmError) as e:
        if passphrase:
            raise DecryptionFailedError() from e
        raise


def new_signer(key_type: str = PREFERRED_KEY_TYPE) -> AccountSigner:
    """
    Generate a signer, falling back to RS256 if ES256 generation fails.

    Raises:
        UnsupportedAlgorithmError: If key_type is unknown.
    """
    try:
        return AccountSigner.generate(key_type)
    except (UnsupportedAlgorithm, ValueError) as e:
        # ec generation can be unavailable on restricted crypto backends
        if key_type != PREFERRED_KEY_TYPE:
            raise
        logger.warning(f"{key_type} key generation failed, falling back to {FALLBACK_KEY_TYPE}: {e}")
        return AccountSigner.generate(FALLBACK_KEY_TYPE)


def host_key(url: str) -> str:
    """Return the host of a URL with dots replaced by dashes."""
    host = urlsplit(url).hostname
    if not host:
        raise ValueError(f"URL has no host: {url}")
    return host.replace(".", "-")


def sanitize_file_name(name: str) -> str:
    return re.sub(r'[<>:"/\\|?*\x00-\x1f]', "_", name)


def account_directory_name(kid: str) -> str:
    """
    Return the directory name for an account: {kid-host-with-dashes}_{accountId}.

    Raises:
        ValueError: If the kid is not a URL.
    """
    account_id = urlsplit(kid).path.rstrip("/").rsplit("/", 1)[-1]
    return sanitize_file_name(f"{host_key(kid)}_{account_id}")


class AccountStore:
    """Persists one default account per ACME directory host."""

    def __init__(self, base_path: Path | str = DEFAULT_STORE_PATH, passphrase: str | None = None):
        self.base_path = Path(base_path).expanduser()
        self.passphrase = passphrase or None

    def _pointer_path(self, directory_url: str) -> Path:
        return self.base_path / f"default_{host_key(directory_url)}.txt"

    def load_default(self, directory_url: str) -> StoredAccount | None:
        """
        Load the default account for a directory's host.

        Corrupt or undecryptable files are logged and treated as a cache miss.

        Returns:
            StoredAccount | None: The cached account, or None.
        """
        pointer = self._pointer_path(directory_url)
        if not pointer.exists():
            logger.debug(f"No default account pointer at {pointer}")
            return None

        folder = pointer.read_text().strip()
        if not folder:
            return None
        return self.load_account(folder)

    def load_account(self, folder: str) -> StoredAccount | None:
        """Load an account directory by name, or None if missing or unreadable."""
        account_dir = self.base_path / folder
        registration_path = account_dir / REGISTRATION_FILE
        signer_path = account_dir / SIGNER_FILE

        if not registration_path.exists() or not signer_path.exists():
            logger.debug(f"Account files not found in {account_dir}")
            return None

        try:
            account = models.Account.from_dict(json.loads(registration_path.read_text()))
        except (OSError, ValueError, KeyError, TypeError) as e:
            logger.warning(f"Unable to load registration from {registration_path}: {e}")
            return None

        try:
            signer = decrypt_signer(signer_path.read_bytes(), self.passphrase)
        except (
            OSError,
            ValueError,
            KeyError,
            TypeError,
            UnsupportedAlgorithmError,
            DecryptionFailedError,
        ) as e:
            logger.warning(f"Unable to load signer from {signer_path}: {e}")
            return None

        logger.info(f"Loaded cached ACME account {account.kid}")
        return StoredAccount(account, signer)

    def store(self, account: models.Account, signer: AccountSigner, directory_url: str) -> Path:
        """
        Persist an account and make it the default for the directory's host.

        Returns:
            Path: The account directory.
        """
        if not account.kid:
            raise ValueError("Account has no kid, cannot determine storage location")

        folder = account_directory_name(account.kid)
        account_dir = self.base_path / folder
        account_dir.mkdir(parents=True, exist_ok=True)

        (account_dir / REGISTRATION_FILE).write_text(json.dumps(account.to_dict(), indent=2))
        (account_dir / SIGNER_FILE).write_bytes(encrypt_signer(signer, self.passphrase))
        self._pointer_path(directory_url).write_text(folder)

        logger.info(f"Stored ACME account {account.kid} in {account_dir}")
        return account_dir

    def list_accounts(self) -> list[str]:
        """Return the names of account directories that hold a registration."""
        if not self.base_path.exists():
            return []
        return sorted(
            entry.name
            for entry in self.base_path.iterdir()
            if entry.is_dir() and (entry / REGISTRATION_FILE).exists()
        )
