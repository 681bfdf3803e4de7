#!/usr/bin/env python3
"""
Canonical JSON serialization for generated manifests.

A generated manifest (for example a mixin ``*.refmap.json``) is written by
build tooling in whatever member order the tool's hash maps happened to
produce. This module re-serializes such documents into one canonical form so
that two builds of the same sources produce byte-identical payloads.

Canonical form:
1. Object members are sorted by key (code point order) at every level.
   This is not UTF-16 code unit order as used by Java's String.compareTo:
   the two disagree when keys mix supplementary characters (e.g. emoji)
   with characters in U+E000..U+FFFF.
2. Array elements keep their original order
3. Numbers are emitted with the exact digits of the source text
4. No insignificant whitespace; exactly one trailing newline

Numbers are never converted to ``int`` or ``float``. A binary float cannot
represent most decimals exactly, so a round-trip through one is exactly the
kind of drift a canonical form has to rule out.

SPDX-License-Identifier: Apache-2.0
"""

from __future__ import annotations

import json
import re
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

# =============================================================================
# Constants
# =============================================================================

# JSON number grammar (RFC 8259, section 6)
_NUMBER_RE = re.compile(r"-?(?:0|[1-9]\d*)(?:\.\d+)?(?:[eE][-+]?\d+)?\Z")

# Characters escaped inside string literals: quote, backslash, C0 controls,
# U+2028/U+2029 and lone surrogates (only reachable through \u escapes).
_ESCAPE_RE = re.compile(r'["\\\x00-\x1f\u2028\u2029\ud800-\udfff]')

_ESCAPES: Dict[str, str] = {
    '"': '\\"',
    "\\": "\\\\",
    "\b": "\\b",
    "\f": "\\f",
    "\n": "\\n",
    "\r": "\\r",
    "\t": "\\t",
}

TRAILER = "\n"


# =============================================================================
# Data Types
# =============================================================================


class ParseError(ValueError):
    """Raised when a payload is not a well-formed JSON document."""

    def __init__(self, message: str, line: Optional[int] = None, column: Optional[int] = None):
        self.message = message
        self.line = line
        self.column = column
        location = f" (line {line}, column {column})" if line is not None else ""
        super().__init__(f"{message}{location}")


class Number:
    """A JSON number held as its exact source text."""

    __slots__ = ("text",)

    def __init__(self, text: str) -> None:
        if not isinstance(text, str) or not _NUMBER_RE.match(text):
            raise ValueError(f"Not a JSON number: {text!r}")
        self.text = text

    def __eq__(self, other: object) -> bool:
        if isinstance(other, Number):
            return self.text == other.text
        return NotImplemented

    def __hash__(self) -> int:
        return hash(self.text)

    def __repr__(self) -> str:
        return f"Number({self.text!r})"

    def __str__(self) -> str:
        return self.text


# A parsed document: None, bool, Number, str, list or dict, nested.
Value = Union[None, bool, Number, str, List[Any], Dict[str, Any]]


# =============================================================================
# Parsing
# =============================================================================


def _reject_constant(name: str) -> Any:
    raise ParseError(f"Non-standard numeric literal not allowed: {name}")


def parse(text: str) -> Value:
    """
    Parse a JSON document, keeping numbers as exact text.

    Args:
        text: Complete JSON document

    Returns:
        The document as nested None/bool/Number/str/list/dict values.
        When an object repeats a key, the last occurrence wins.

    Raises:
        ParseError: If the text is not a single well-formed JSON value
    """
    try:
        return json.loads(
            text,
            parse_int=Number,
            parse_float=Number,
            parse_constant=_reject_constant,
        )
    except json.JSONDecodeError as exc:
        raise ParseError(exc.msg, line=exc.lineno, column=exc.colno) from exc
    except RecursionError as exc:
        raise ParseError("Document nesting too deep") from exc


# =============================================================================
# Serialization
# =============================================================================


def _escape(match: "re.Match[str]") -> str:
    char = match.group(0)
    return _ESCAPES.get(char) or f"\\u{ord(char):04x}"


def _encode_string(value: str) -> str:
    return '"' + _ESCAPE_RE.sub(_escape, value) + '"'


def _write(value: Any, out: List[str]) -> None:
    if value is None:
        out.append("null")
    elif value is True:
        out.append("true")
    elif value is False:
        out.append("false")
    elif isinstance(value, Number):
        out.append(value.text)
    elif isinstance(value, str):
        out.append(_encode_string(value))
    elif isinstance(value, int):
        out.append(str(value))
    elif isinstance(value, (list, tuple)):
        out.append("[")
        for index, item in enumerate(value):
            if index:
                out.append(",")
            _write(item, out)
        out.append("]")
    elif isinstance(value, dict):
        for key in value:
            if not isinstance(key, str):
                raise TypeError(f"Object keys must be strings, got {type(key).__name__}")
        out.append("{")
        for index, key in enumerate(sorted(value)):
            if index:
                out.append(",")
            out.append(_encode_string(key))
            out.append(":")
            _write(value[key], out)
        out.append("}")
    elif isinstance(value, float):
        raise TypeError(f"Refusing to serialize float {value!r}; wrap the exact text in Number")
    else:
        raise TypeError(f"Cannot serialize {type(value).__name__}")


def serialize(value: Value) -> str:
    """Serialize a value in canonical form (no trailing newline)."""
    out: List[str] = []
    try:
        _write(value, out)
    except RecursionError as exc:
        raise ParseError("Document nesting too deep") from exc
    return "".join(out)


def canonicalize(text: str) -> str:
    """
    Rewrite a JSON document in canonical form.

    Args:
        text: JSON document

    Returns:
        Canonical text followed by exactly one newline

    Raises:
        ParseError: If the document is malformed
    """
    return serialize(parse(text)) + TRAILER


def canonicalize_bytes(data: bytes, encoding: str = "utf-8") -> bytes:
    """Canonicalize an encoded payload and return UTF-8 bytes."""
    try:
        text = data.decode(encoding)
    except UnicodeDecodeError as exc:
        raise ParseError(f"Payload is not valid {encoding}: {exc.reason}") from exc
    if text.startswith("\ufeff"):
        text = text[1:]
    return canonicalize(text).encode("utf-8")


# =============================================================================
# CLI Interface
# =============================================================================


# pragma: no mutate
def main() -> int:
    """CLI entry point."""
    import argparse

    parser = argparse.ArgumentParser(
        description="Print the canonical form of a JSON document",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s mixins.example.refmap.json     # Canonicalize a file
  cat data.json | %(prog)s                # Canonicalize stdin
        """,
    )
    parser.add_argument(
        "path", type=Path, nargs="?", help="JSON document to canonicalize (default: stdin)"
    )
    args = parser.parse_args()

    try:
        data = args.path.read_bytes() if args.path else sys.stdin.buffer.read()
        sys.stdout.buffer.write(canonicalize_bytes(data))
        sys.stdout.flush()
        return 0
    except ParseError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    except OSError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
