"""
Plain JSON container codec.

UTF-8 text in, JSON value tree out (and back). A leading BOM is tolerated, and
a file that fails to parse is searched for an embedded card object before
giving up.
"""

import json
import logging
from typing import Any, Optional

from .errors import InvalidJson, UnrecognizedFormat

logger = logging.getLogger(__name__)

UTF8_BOM = b"\xef\xbb\xbf"
MAX_RECOVERY_CANDIDATES = 16


def _strip_bom(data: bytes) -> bytes:
    return data[len(UTF8_BOM):] if data.startswith(UTF8_BOM) else data


def looks_like_json(data: bytes, filename_hint: Optional[str] = None) -> bool:
    """True when the bytes claim to be JSON (leading brace/bracket or a .json name)."""
    head = _strip_bom(data).lstrip()[:1]
    if head in (b"{", b"["):
        return True
    return bool(filename_hint and filename_hint.lower().endswith(".json"))


def recover_card_object(text: str) -> Optional[Any]:
    """
    Find the largest parseable object that looks like a card.

    Tries each '{' from the left against each '}' from the right, keeping the
    first candidate that parses and mentions "spec" or "name".
    """
    starts = [i for i, ch in enumerate(text) if ch == "{"][:MAX_RECOVERY_CANDIDATES]
    ends = [i for i, ch in enumerate(text) if ch == "}"][-MAX_RECOVERY_CANDIDATES:]
    for start in starts:
        for end in reversed(ends):
            if end <= start:
                break
            candidate = text[start:end + 1]
            if '"spec"' not in candidate and '"name"' not in candidate:
                continue
            try:
                parsed = json.loads(candidate)
            except json.JSONDecodeError:
                continue
            if isinstance(parsed, dict):
                logger.info(f"Recovered card object from malformed JSON (offset {start})")
                return parsed
    return None


def decode_json(data: bytes, filename_hint: Optional[str] = None, assume_json: bool = False) -> Any:
    """
    Decode UTF-8 JSON bytes.

    Args:
        data: Raw file bytes
        filename_hint: Original filename, if known
        assume_json: Caller already established the bytes claim to be JSON

    Raises:
        UnrecognizedFormat: Bytes do not look like JSON at all
        InvalidJson: Bytes look like JSON but do not parse
    """
    if not assume_json and not looks_like_json(data, filename_hint):
        raise UnrecognizedFormat("Bytes do not match PNG, ZIP or JSON")

    try:
        text = _strip_bom(data).decode("utf-8")
    except UnicodeDecodeError as e:
        raise InvalidJson(f"File is not valid UTF-8: {e}") from e

    try:
        return json.loads(text)
    except json.JSONDecodeError as e:
        recovered = recover_card_object(text)
        if recovered is not None:
            return recovered
        raise InvalidJson(f"Invalid JSON at line {e.lineno} column {e.colno}: {e.msg}") from e


def encode_json(payload: Any, indent: Optional[int] = 2) -> bytes:
    return json.dumps(payload, ensure_ascii=False, indent=indent).encode("utf-8")
