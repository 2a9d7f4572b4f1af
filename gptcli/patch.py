"""Structured edit engine for the patch_file tool.

Provides a single public function `apply_operations()` that applies an
ordered list of line- or regex-based operations to in-memory text. Each
operation sees the result of the previous one. Nothing here touches the
filesystem: callers write the result only after every operation succeeded.
"""

from __future__ import annotations

import re

from .errors import InvalidLine, InvalidPattern, InvalidRange, UnsupportedOperation

OPERATIONS = ("replace_range", "insert_at", "replace_regex", "append", "prepend")

# Regex flag letters accepted in replace_regex. "g" selects global replacement;
# "u" is accepted for compatibility and is a no-op on str patterns.
_REGEX_FLAGS = {
    "i": re.IGNORECASE,
    "m": re.MULTILINE,
    "s": re.DOTALL,
    "x": re.VERBOSE,
    "u": 0,
    "g": 0,
}


# ---------------------------------------------------------------------------
# Argument helpers
# ---------------------------------------------------------------------------


def _line_number(value, label: str, exc_type: type) -> int:
    """Coerce a JSON number to an int line number, rejecting non-integers."""
    if isinstance(value, bool):
        raise exc_type(f"{label} must be an integer, got {value!r}")
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    raise exc_type(f"{label} must be an integer, got {value!r}")


def _content(op: dict) -> str:
    value = op.get("newContent")
    if value is None:
        return ""
    return value if isinstance(value, str) else str(value)


def _compile(pattern: str, flags: str) -> tuple[re.Pattern, bool]:
    """Compile a pattern with letter flags. Returns (regex, global)."""
    re_flags = 0
    seen: set[str] = set()
    for letter in flags:
        if letter not in _REGEX_FLAGS:
            raise InvalidPattern(f"unsupported regex flag {letter!r} in {flags!r}")
        if letter in seen:
            raise InvalidPattern(f"duplicate regex flag {letter!r} in {flags!r}")
        seen.add(letter)
        re_flags |= _REGEX_FLAGS[letter]
    try:
        return re.compile(pattern, re_flags), "g" in seen
    except re.error as exc:
        raise InvalidPattern(f"invalid regex {pattern!r}: {exc}") from exc


# ---------------------------------------------------------------------------
# Operations
# ---------------------------------------------------------------------------


def _replace_range(text: str, op: dict) -> str:
    if "startLine" not in op or "endLine" not in op:
        raise InvalidRange("replace_range requires startLine and endLine")
    start = _line_number(op["startLine"], "startLine", InvalidRange)
    end = _line_number(op["endLine"], "endLine", InvalidRange)
    if start < 1:
        raise InvalidRange(f"startLine must be >= 1, got {start}")
    if end < start:
        raise InvalidRange(f"endLine ({end}) must be >= startLine ({start})")

    lines = text.split("\n")
    new = _content(op)
    new_lines = new.split("\n") if new else []
    return "\n".join(lines[: start - 1] + new_lines + lines[end:])


def _insert_at(text: str, op: dict) -> str:
    if "line" not in op:
        raise InvalidLine("insert_at requires line")
    line = _line_number(op["line"], "line", InvalidLine)
    if line < 1:
        raise InvalidLine(f"line must be >= 1, got {line}")
    position = str(op.get("position") or "before").lower()
    if position not in ("before", "after"):
        raise InvalidLine(f"position must be 'before' or 'after', got {position!r}")

    lines = text.split("\n")
    idx = line if position == "after" else line - 1
    return "\n".join(lines[:idx] + _content(op).split("\n") + lines[idx:])


# Group references in newContent: \1, \12 or \g<name>. A doubled
# backslash is matched so it is copied through as two characters.
_GROUP_REF = re.compile(r"\\(?:(\\)|g<([^>]*)>|(\d{1,2}))")


def _parse_template(template: str, regex: re.Pattern) -> list[tuple[str, int | str | None]]:
    """Split newContent into (literal, group) pairs.

    Only group references are special; every other backslash sequence,
    such as ``\\n`` or ``\\d``, is kept as written.
    """
    parts: list[tuple[str, int | str | None]] = []
    literal = []
    pos = 0
    for m in _GROUP_REF.finditer(template):
        literal.append(template[pos : m.start()])
        pos = m.end()
        escaped, name, digits = m.groups()
        if escaped:
            literal.append(m.group(0))
            continue
        if name is not None:
            ref: int | str = int(name) if name.isdigit() else name
        elif int(digits) > regex.groups and len(digits) == 2:
            # \12 with a single group means group 1 followed by "2"
            ref = int(digits[0])
            pos -= 1
        else:
            ref = int(digits)
        known = ref <= regex.groups if isinstance(ref, int) else ref in regex.groupindex
        if not known:
            raise InvalidPattern(f"invalid group reference {m.group(0)!r} in newContent")
        parts.append(("".join(literal), ref))
        literal = []
    literal.append(template[pos:])
    parts.append(("".join(literal), None))
    return parts


def _replace_regex(text: str, op: dict) -> str:
    pattern = op.get("pattern")
    if not isinstance(pattern, str):
        raise InvalidPattern("replace_regex requires a string pattern")
    flags = op.get("flags") or ""
    if not isinstance(flags, str):
        raise InvalidPattern(f"flags must be a string, got {flags!r}")
    regex, is_global = _compile(pattern, flags)
    parts = _parse_template(_content(op), regex)

    def expand(match: re.Match) -> str:
        out = []
        for literal, ref in parts:
            out.append(literal)
            if ref is not None:
                out.append(match.group(ref) or "")
        return "".join(out)

    return regex.sub(expand, text, count=0 if is_global else 1)


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def apply_operations(text: str, operations: list) -> str:
    """Apply `operations` to `text` in order and return the new text.

    Supported ``op`` values:
      - replace_range: replace 1-based inclusive lines startLine..endLine
        with newContent (empty newContent deletes the range)
      - insert_at: insert newContent before/after a 1-based line
      - replace_regex: substitute pattern over the whole text; flag "g"
        replaces every match, otherwise only the first. In newContent only
        group references (\\1, \\g<name>) are expanded; other backslashes
        are literal
      - append / prepend: concatenate newContent at the end / start

    Raises InvalidRange, InvalidLine, InvalidPattern or
    UnsupportedOperation. On failure the input is not modified (str is
    immutable) and no later operation runs.
    """
    for index, op in enumerate(operations, start=1):
        if not isinstance(op, dict):
            raise UnsupportedOperation(f"operation {index} must be an object")
        kind = str(op.get("op") or "").lower()
        try:
            if kind == "replace_range":
                text = _replace_range(text, op)
            elif kind == "insert_at":
                text = _insert_at(text, op)
            elif kind == "replace_regex":
                text = _replace_regex(text, op)
            elif kind == "append":
                text = text + _content(op)
            elif kind == "prepend":
                text = _content(op) + text
            else:
                raise UnsupportedOperation(
                    f"unsupported op {kind!r}, expected one of: {', '.join(OPERATIONS)}"
                )
        except (InvalidRange, InvalidLine, InvalidPattern, UnsupportedOperation) as exc:
            raise type(exc)(f"operation {index}: {exc}") from exc
    return text
