"""
Canonicalization and hashing utilities for evidence integrity.

Both functions are pure: the same input always yields the same bytes and
the same 64-character lowercase hex digest.
"""
import hashlib
import hmac
import json
from typing import Any, List

from evidence_ledger.api.core.errors import ErrorCode, LedgerError


def canonicalize(data: Any) -> bytes:
    """
    Serialize a JSON object to canonical bytes.

    Keys are sorted at every level, separators carry no whitespace, and the
    output is UTF-8 without ASCII escaping.

    Args:
        data: A JSON object (dict with string keys)

    Returns:
        bytes: Canonical UTF-8 JSON

    Raises:
        LedgerError(INVALID_PAYLOAD): Not a JSON object, or contains values
            JSON cannot represent (NaN, Infinity, sets, objects, unpaired
            surrogates, ...)
    """
    if not isinstance(data, dict):
        raise LedgerError(
            ErrorCode.INVALID_PAYLOAD,
            f"Structured payload must be a JSON object, got {type(data).__name__}"
        )
    try:
        encoded = json.dumps(
            data,
            sort_keys=True,
            separators=(",", ":"),
            ensure_ascii=False,
            allow_nan=False
        ).encode("utf-8")
    except UnicodeEncodeError:
        raise LedgerError(ErrorCode.INVALID_PAYLOAD, "Payload contains text that is not valid UTF-8")
    except (TypeError, ValueError) as e:
        raise LedgerError(ErrorCode.INVALID_PAYLOAD, f"Payload is not canonical JSON: {e}")
    return encoded


def unencodable_paths(data: Any, path: str = "") -> List[str]:
    """Dotted paths of keys and string values that cannot be encoded as UTF-8."""
    paths = []
    if isinstance(data, dict):
        for key, value in data.items():
            if _encodable(str(key)):
                child = f"{path}.{key}" if path else str(key)
            else:
                # The key itself cannot be echoed back
                child = path or "body"
                paths.append(child)
            paths.extend(unencodable_paths(value, child))
    elif isinstance(data, (list, tuple)):
        for index, value in enumerate(data):
            paths.extend(unencodable_paths(value, f"{path}[{index}]"))
    elif isinstance(data, str) and not _encodable(data):
        paths.append(path or "body")
    return paths


def _encodable(text: str) -> bool:
    try:
        text.encode("utf-8")
    except UnicodeEncodeError:
        return False
    return True


def hash_bytes(data: bytes) -> str:
    """
    SHA-256 of raw bytes.

    Args:
        data: Bytes to hash

    Returns:
        str: Lowercase hex digest (64 characters)
    """
    return hashlib.sha256(data).hexdigest()


def hash_canonical(data: Any) -> str:
    """SHA-256 of the canonical serialization of a JSON object."""
    return hash_bytes(canonicalize(data))


def verify_hash(data: bytes, expected_hash: str) -> bool:
    """
    Verify bytes match an expected SHA-256 digest (constant-time compare).

    Args:
        data: Bytes to verify
        expected_hash: Expected hex digest

    Returns:
        bool: True if hash matches
    """
    return hmac.compare_digest(hash_bytes(data), expected_hash or "")
