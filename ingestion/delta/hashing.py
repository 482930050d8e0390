"""
Row hashing and natural key normalisation for delta sync
"""

import base64
import hashlib
import unicodedata
from datetime import date, datetime, time
from decimal import Decimal, ROUND_HALF_EVEN
from typing import Any, Dict, Iterable, Optional

from models.base import HashAlgorithm, NullStrategy
from schemas.profile import DeltaSyncConfig

NULL_SENTINEL = "NULL"
BOM = "\ufeff"

ALGORITHMS = {
    HashAlgorithm.SHA256: "sha256",
    HashAlgorithm.SHA512: "sha512",
    HashAlgorithm.MD5: "md5",
}


def compute_digest(data: bytes, algorithm: HashAlgorithm = HashAlgorithm.SHA256) -> str:
    h = hashlib.new(ALGORITHMS[algorithm])
    h.update(data)
    return h.hexdigest()


def normalize_reef_id(value: Any, normalization: str = "Trim") -> Optional[str]:
    """
    Apply comma separated normalisation flags (Trim, Lowercase,
    RemoveWhitespace) to a natural key. Blank keys become None.
    """
    if value is None:
        return None

    text = str(value)
    flags = {f.strip().lower() for f in (normalization or "").split(",") if f.strip()}

    if "trim" in flags:
        text = text.strip()
    if "lowercase" in flags:
        text = text.lower()
    if "removewhitespace" in flags:
        text = "".join(text.split())

    return text if text.strip() else None


def _clean_string(text: str, remove_non_printable: bool) -> str:
    text = unicodedata.normalize("NFC", text.replace(BOM, ""))
    if remove_non_printable:
        text = "".join(ch for ch in text if not unicodedata.category(ch).startswith("C"))
    return text


def normalize_value(value: Any, config: DeltaSyncConfig) -> Optional[str]:
    """
    Canonical text for one field value. None means the field does not
    contribute to the hash (Skip null strategy).
    """
    if value is None:
        if config.null_strategy == NullStrategy.SKIP:
            return None
        if config.null_strategy == NullStrategy.EMPTY:
            return ""
        return NULL_SENTINEL

    if isinstance(value, bool):
        return "TRUE" if value else "FALSE"

    if isinstance(value, (datetime, date, time)):
        return value.isoformat()

    precision = config.numeric_precision

    if isinstance(value, Decimal):
        if not value.is_finite():
            return str(value)
        quantum = Decimal(1).scaleb(-precision)
        return f"{value.quantize(quantum, rounding=ROUND_HALF_EVEN):f}"

    if isinstance(value, float):
        if value != value or value in (float("inf"), float("-inf")):
            return str(value)
        return f"{round(value, precision):.{precision}f}"

    if isinstance(value, (bytes, bytearray)):
        return base64.b64encode(bytes(value)).decode("ascii")

    if isinstance(value, str):
        return _clean_string(value, config.remove_non_printable)

    return _clean_string(str(value), config.remove_non_printable)


def compute_row_hash(reef_id: str, columns: Dict[str, Any], config: DeltaSyncConfig) -> str:
    """
    Hash of REEFID:<key>| followed by name=value; for every column in
    ordinal name order.
    """
    excluded = {c.lower() for c in config.hash_excluded_columns}
    parts = [f"REEFID:{reef_id}|"]

    for name in sorted(columns):
        if name.lower() in excluded:
            continue
        text = normalize_value(columns[name], config)
        if text is None:
            continue
        parts.append(f"{name}={text};")

    return compute_digest("".join(parts).encode("utf-8"), config.hash_algorithm)


def schema_fingerprint(columns: Iterable[str]) -> str:
    """Order-independent fingerprint of a record's column names"""
    names = sorted({c.lower() for c in columns})
    return compute_digest("|".join(names).encode("utf-8"))
