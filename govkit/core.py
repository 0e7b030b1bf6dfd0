"""Core primitives for govkit.

This module provides the foundational utilities used throughout the stack:
- Cryptographic hashing (SHA-256)
- Canonical JSON serialization (JCS/RFC8785 subset)
- YAML/JSON loading with consistent encoding
- Duration parsing for poll and retry settings

Design principles:
- Pure functions where possible
- No global mutable state
- Floats never reach canonical bytes
"""

from __future__ import annotations

import hashlib
import json
import pathlib
import re
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, Dict

import yaml

# Package root, computed once at module load
PACKAGE_ROOT = pathlib.Path(__file__).resolve().parent


def sha256_bytes(data: bytes) -> str:
    """Compute SHA-256 hash of bytes, returning lowercase hex string."""
    return hashlib.sha256(data).hexdigest()


def load_yaml(path: pathlib.Path) -> Any:
    """Load YAML file with UTF-8 encoding."""
    return yaml.safe_load(pathlib.Path(path).read_text(encoding="utf-8"))


def load_json(path: pathlib.Path) -> Any:
    """Load JSON file with UTF-8 encoding."""
    return json.loads(pathlib.Path(path).read_text(encoding="utf-8"))


def _coerce_json_types(obj: Any) -> Any:
    """Coerce Python objects into strict JSON types.

    - Decimals become their string form, bytes become 0x-prefixed hex.
    - datetime/date objects become ISO strings.
    - Floats are rejected to avoid non-JCS number edge cases (use strings for amounts).
    """
    if obj is None:
        return None
    if isinstance(obj, (str, bool, int)):
        return obj
    if isinstance(obj, float):
        raise ValueError("Floats are not allowed in JCS canonicalization. Use strings or integers.")
    if isinstance(obj, Decimal):
        return str(obj)
    if isinstance(obj, (bytes, bytearray)):
        return "0x" + bytes(obj).hex()
    if isinstance(obj, (datetime, date)):
        if isinstance(obj, datetime):
            if obj.tzinfo is None:
                obj = obj.replace(tzinfo=timezone.utc)
            return obj.astimezone(timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z")
        return obj.isoformat()
    if isinstance(obj, (list, tuple)):
        return [_coerce_json_types(x) for x in obj]
    if isinstance(obj, dict):
        out: Dict[str, Any] = {}
        for k, v in obj.items():
            out[str(k)] = _coerce_json_types(v)
        return out
    return str(obj)


def canonical_json_bytes(obj: Any) -> bytes:
    """Serialize object to canonical JSON bytes (JCS/RFC8785 subset).

    Properties:
    - Keys sorted lexicographically
    - No whitespace
    - UTF-8 encoded
    - Floats rejected (use strings/ints for amounts)

    This ensures byte-for-byte reproducibility for payload digests.
    """
    clean = _coerce_json_types(obj)
    return json.dumps(
        clean,
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
    ).encode("utf-8")


def canonical_digest(obj: Any) -> str:
    """SHA-256 digest of the canonical JSON form of ``obj``."""
    return sha256_bytes(canonical_json_bytes(obj))


def parse_duration_seconds(duration: Any) -> float:
    """Parse duration string to seconds.

    Supported formats:
    - Shorthand: "30s", "15m", "2h", "7d"
    - ISO8601 subset: "PT1H", "PT30M", "P1D"
    - Plain number (seconds), including ints and "1.5"

    Returns 0 for empty input; raises ValueError for anything else it
    cannot parse.
    """
    if isinstance(duration, bool):
        raise ValueError(f"Not a duration: {duration!r}")
    if isinstance(duration, (int, float)):
        return float(duration)

    s = str(duration or "").strip()
    if not s:
        return 0

    # Plain number
    if re.fullmatch(r"\d+(\.\d+)?", s):
        return float(s)

    # Shorthand: 30s, 15m, 2h, 7d
    m = re.fullmatch(r"(?i)(\d+)\s*([smhd])", s)
    if m:
        n, unit = int(m.group(1)), m.group(2).lower()
        return float(n * {"s": 1, "m": 60, "h": 3600, "d": 86400}[unit])

    # ISO8601 PnD
    m = re.fullmatch(r"(?i)P(\d+)D", s)
    if m:
        return float(int(m.group(1)) * 86400)

    # ISO8601 PTnHnMnS
    m = re.fullmatch(r"(?i)PT(?:(\d+)H)?(?:(\d+)M)?(?:(\d+)S)?", s)
    if m:
        h = int(m.group(1) or 0)
        mi = int(m.group(2) or 0)
        sec = int(m.group(3) or 0)
        return float(h * 3600 + mi * 60 + sec)

    raise ValueError(f"Unparseable duration: {duration!r}")


def now_iso8601() -> str:
    """Return current UTC time in ISO8601 format."""
    return datetime.now(timezone.utc).isoformat(timespec="seconds")
