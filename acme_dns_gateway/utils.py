import base64
import binascii
import hashlib
import json
import logging
import os
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)


def b64url_uint(n: int, length: int | None = None) -> str:
    """
    Convert an unsigned integer to a Base64url-encoded string.

    Args:
        n (int): Unsigned integer.
        length (int | None): Fixed byte length, used for EC coordinates.

    Raises:
        TypeError: If the input is not an unsigned integer.

    Returns:
        str: Base64url-encoded string.
    """
    if not isinstance(n, int) or n < 0:
        raise TypeError("Input must be an unsigned integer")

    if length is None:
        length = max(1, (n.bit_length() + 7) // 8)

    return b64url(n.to_bytes(length, "big"))


def b64url(data: bytes) -> str:
    """
    Convert binary data to a Base64url-encoded string without padding.

    Args:
    - data (bytes): Binary data.

    Returns:
    - str: Base64url-encoded string.
    """
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def b64url_decode(data: str) -> bytes:
    """
    Decode a Base64url string, tolerating missing padding.

    Raises:
        ValueError: If the input is not valid Base64url.
    """
    padded = data + "=" * (-len(data) % 4)
    try:
        return base64.urlsafe_b64decode(padded.encode("ascii"))
    except (binascii.Error, UnicodeEncodeError) as e:
        raise ValueError(f"Invalid base64url data: {e}") from e


def json_encode(data: dict[str, Any], sort_keys: bool = True) -> bytes:
    """
    Encode a dictionary as compact JSON bytes.

    Args:
    - data (dict): Input data.
    - sort_keys (bool): Sort members. JWS protected headers keep insertion order.

    Returns:
    - bytes: JSON-encoded data.
    """
    return json.dumps(data, sort_keys=sort_keys, separators=(",", ":")).encode("utf-8")


def json_thumbprint(data: dict[str, Any]) -> str:
    """
    Calculate the RFC 7638 thumbprint of a JWK.

    Args:
    - data (dict): JWK containing only its required members.

    Returns:
    - str: Base64url-encoded SHA-256 thumbprint.
    """
    return b64url(hashlib.sha256(json_encode(data)).digest())


def mask_secret(secret: str | None, visible: int = 4) -> str:
    """Return a log-safe form of a secret."""
    if not secret:
        return "<unset>"
    return f"{secret[:visible]}..."


def get_env_secrets(
    name: str, path: Path = Path(Path.cwd() / "secrets/"), required: bool = True
) -> str | None:
    """
    Get a secret from an environment variable or a file in the secrets directory.

    Args:
        name (str): Environment variable name.
        path (Path): Path to the secrets directory (default: "secrets/").
        required (bool): Raise when the secret is not found.

    Returns:
        str | None: The secret, or None when optional and absent.

    Raises:
        OSError: If the secret is required and neither source provides it.
    """
    secret = os.environ.get(name)
    if secret:
        return secret

    if (path / name).exists():
        secret = (path / name).read_text().rstrip("\n")
        logger.debug(f"Loaded secret from file: {path}/{name}")
        return secret

    if required:
        raise OSError(f"Environment variable and/or secret file variable: {path}/{name} not found")
    return None
