"""
Canonical Serialization

Deterministic byte encoding of structured values.
Same logical input → same bytes. Always. Forever.

This is SACRED GROUND.

Every stored link hash depends on these rules. Any change must be
backward-compatible or ship under a new VERSION.

CANONICAL SERIALIZATION RULES (VERSION 1):
1. Output: compact JSON, no whitespace, ASCII only (non-ASCII escaped)
2. Dictionary keys: strings only, sorted recursively (Unicode codepoint order)
3. Nulls in dicts: omitted entirely (null and absent encode the same)
4. Nulls in lists: encoded as null (list positions are meaningful)
5. Empty strings, lists, dicts: preserved (they are valid data)
6. Integers: decimal digits
7. Floats and Decimals: fixed positional decimal, no exponent, trailing
   fractional zeros stripped, integral values as integers (5 == 5.0),
   negative zero as 0. Floats use their shortest round-trip digits.
8. NaN / Infinity: REJECTED
9. Datetimes: timezone-aware only, UTC, YYYY-MM-DDTHH:MM:SS.ffffffZ
10. Dates: YYYY-MM-DD
11. UUIDs: lowercase string
12. Enums: value (not name)
13. Bytes: standard base64 text
14. Sets, cycles, non-string keys, unknown types: REJECTED
15. Numbers longer than MAX_NUMBER_DIGITS digits: REJECTED
"""

import base64
import json
import math
from collections.abc import Mapping
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID

from pydantic import BaseModel


class CanonicalizationError(Exception):
    """Raised when a value cannot be canonically serialized."""
    pass


class CanonicalText(str):
    """
    Text that is already canonical JSON.

    Spliced into the output verbatim instead of being encoded as a string.
    Used to embed a stored payload_canon without re-serializing it.
    """
    __slots__ = ()


class Canonicalizer:
    """
    Canonical encoder.

    IMMUTABLE CONTRACT:
    - Same logical input → same bytes
    - Key order of the input never matters
    - Different logical input → different bytes

    Pure and stateless; safe to call from any thread.
    """

    VERSION = 1

    # Deeper nesting than this is rejected rather than risking RecursionError
    MAX_DEPTH = 64

    # Every finite float fits well inside this
    MAX_NUMBER_DIGITS = 1000

    @classmethod
    def encode(cls, value: Any) -> bytes:
        """
        Canonical UTF-8 bytes for a value.

        Raises:
            CanonicalizationError: If the value cannot be encoded deterministically
        """
        return cls.encode_text(value).encode("utf-8")

    @classmethod
    def encode_text(cls, value: Any) -> CanonicalText:
        """
        Canonical JSON text for a value.

        The result is a CanonicalText, so it can be embedded in a larger
        structure and re-encoded without change.
        """
        out: list[str] = []
        cls._encode(value, "$", out, set(), 0)
        return CanonicalText("".join(out))

    @classmethod
    def _encode(
        cls,
        value: Any,
        path: str,
        out: list[str],
        active: set[int],
        depth: int,
    ) -> None:
        if depth > cls.MAX_DEPTH:
            raise CanonicalizationError(
                f"Nesting deeper than {cls.MAX_DEPTH} levels at {path}"
            )

        if value is None:
            out.append("null")
            return

        # Already canonical - splice as-is
        if isinstance(value, CanonicalText):
            out.append(str(value))
            return

        # Enum before bool/int/str (str and int enums are subclasses of those)
        if isinstance(value, Enum):
            cls._encode(value.value, path, out, active, depth)
            return

        if isinstance(value, bool):
            out.append("true" if value else "false")
            return

        if isinstance(value, int):
            out.append(cls._format_int(value, path))
            return

        if isinstance(value, float):
            if not math.isfinite(value):
                raise CanonicalizationError(
                    f"Cannot serialize non-finite float {value!r} at {path}"
                )
            # repr() gives the shortest digits that round-trip
            out.append(cls._format_decimal(Decimal(repr(value)), path))
            return

        if isinstance(value, Decimal):
            out.append(cls._format_decimal(value, path))
            return

        if isinstance(value, str):
            out.append(json.dumps(value, ensure_ascii=True))
            return

        # Datetime before date (datetime is a subclass of date)
        if isinstance(value, datetime):
            out.append(json.dumps(cls.format_datetime(value, path)))
            return

        if isinstance(value, date):
            out.append(json.dumps(value.strftime("%Y-%m-%d")))
            return

        if isinstance(value, UUID):
            out.append(json.dumps(str(value).lower()))
            return

        if isinstance(value, (bytes, bytearray)):
            out.append(json.dumps(base64.b64encode(bytes(value)).decode("ascii")))
            return

        if isinstance(value, (set, frozenset)):
            raise CanonicalizationError(
                f"Cannot serialize set at {path}. "
                "Sets have no stable ordering. Convert to sorted list first."
            )

        # Pydantic model - dump to python objects first
        if isinstance(value, BaseModel):
            cls._encode(value.model_dump(mode="python"), path, out, active, depth)
            return

        if isinstance(value, Mapping):
            cls._enter(value, path, active)
            try:
                cls._encode_mapping(value, path, out, active, depth)
            finally:
                active.discard(id(value))
            return

        if isinstance(value, (list, tuple)):
            cls._enter(value, path, active)
            try:
                out.append("[")
                for i, item in enumerate(value):
                    if i:
                        out.append(",")
                    cls._encode(item, f"{path}[{i}]", out, active, depth + 1)
                out.append("]")
            finally:
                active.discard(id(value))
            return

        raise CanonicalizationError(
            f"Cannot serialize {type(value).__name__} at {path}. "
            "Only JSON-compatible types are allowed."
        )

    @classmethod
    def _encode_mapping(
        cls,
        data: Mapping,
        path: str,
        out: list[str],
        active: set[int],
        depth: int,
    ) -> None:
        for key in data.keys():
            if not isinstance(key, str):
                raise CanonicalizationError(
                    f"Dictionary key at {path} must be string, "
                    f"got {type(key).__name__}"
                )

        out.append("{")
        first = True
        for key in sorted(data.keys()):
            value = data[key]
            # Omit None values (null and absent are the same thing)
            if value is None:
                continue
            if not first:
                out.append(",")
            first = False
            out.append(json.dumps(key, ensure_ascii=True))
            out.append(":")
            cls._encode(value, f"{path}.{key}", out, active, depth + 1)
        out.append("}")

    @staticmethod
    def _enter(container: Any, path: str, active: set[int]) -> None:
        """Track containers on the current path to detect cycles."""
        marker = id(container)
        if marker in active:
            raise CanonicalizationError(f"Cyclic reference at {path}")
        active.add(marker)

    @classmethod
    def _format_int(cls, value: int, path: str) -> str:
        # 4 bits per digit over-approximates, so str() is never asked for a huge value
        if value.bit_length() > 4 * cls.MAX_NUMBER_DIGITS:
            raise cls._too_long(path)
        try:
            text = str(value)
        except ValueError as e:
            raise CanonicalizationError(f"Cannot serialize integer at {path}: {e}") from e
        if len(text.lstrip("-")) > cls.MAX_NUMBER_DIGITS:
            raise cls._too_long(path)
        return text

    @classmethod
    def _format_decimal(cls, value: Decimal, path: str) -> str:
        """
        Fixed positional form of a finite decimal.

        Decimal("5.00") -> "5", Decimal("1E+2") -> "100",
        Decimal("-0.0") -> "0", Decimal("1E-7") -> "0.0000001"
        """
        if not value.is_finite():
            raise CanonicalizationError(
                f"Cannot serialize non-finite number {value} at {path}"
            )

        # Bound the positional form before building it
        _, digits, exponent = value.as_tuple()
        if len(digits) + abs(exponent) > cls.MAX_NUMBER_DIGITS:
            raise cls._too_long(path)

        text = format(value, "f")
        if "." in text:
            text = text.rstrip("0").rstrip(".")
        if text == "-0":
            text = "0"
        return text

    @classmethod
    def _too_long(cls, path: str) -> CanonicalizationError:
        return CanonicalizationError(
            f"Number at {path} needs more than {cls.MAX_NUMBER_DIGITS} digits"
        )

    @staticmethod
    def format_datetime(dt: datetime, path: str = "$") -> str:
        """
        Canonical ISO 8601 form of an aware datetime.

        Format: YYYY-MM-DDTHH:MM:SS.ffffffZ (always UTC, always 6 digits)
        """
        if dt.tzinfo is None:
            raise CanonicalizationError(
                f"Datetime at {path} is timezone-naive. "
                "All datetimes must be timezone-aware for deterministic serialization."
            )

        utc_dt = dt.astimezone(timezone.utc)
        return utc_dt.strftime("%Y-%m-%dT%H:%M:%S.") + f"{utc_dt.microsecond:06d}Z"
