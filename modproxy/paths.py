"""Module path decoding and route parameter helpers."""

from __future__ import annotations

import json
from collections.abc import Mapping
from dataclasses import dataclass

from modproxy.errors import e

__all__ = [
    "AllPathParams",
    "decode_path",
    "get_module",
    "get_version",
    "get_all_params",
    "matches_pattern",
]


@dataclass(frozen=True)
class AllPathParams:
    """The module and version taken from a request path."""

    module: str
    version: str


def decode_path(encoding: str) -> str:
    """Return the module path of a safe encoding.

    Upper-case letters are encoded as ``!`` followed by the lower-case
    letter. Raises an :class:`~modproxy.errors.AthensError` if the encoding
    is invalid.
    """
    op = "paths.DecodePath"
    decoded = _decode_string(encoding)
    if decoded is None:
        quoted = json.dumps(encoding, ensure_ascii=False)
        raise e(op, f"invalid module path encoding {quoted}")
    return decoded


def _decode_string(encoding: str) -> str | None:
    chars: list[str] = []
    bang = False
    for ch in encoding:
        if ord(ch) >= 0x80:
            return None
        if bang:
            bang = False
            if not "a" <= ch <= "z":
                return None
            chars.append(ch.upper())
            continue
        if ch == "!":
            bang = True
            continue
        if "A" <= ch <= "Z":
            return None
        chars.append(ch)
    if bang:
        return None
    return "".join(chars)


def get_module(route_vars: Mapping[str, str]) -> str:
    """Return the decoded ``module`` route parameter."""
    op = "paths.GetModule"
    module = route_vars.get("module", "")
    if not module:
        raise e(op, "missing module parameter")
    return decode_path(module)


def get_version(route_vars: Mapping[str, str]) -> str:
    """Return the decoded ``version`` route parameter."""
    op = "paths.GetVersion"
    version = route_vars.get("version", "")
    if not version:
        raise e(op, "missing version parameter")
    return decode_path(version)


def get_all_params(route_vars: Mapping[str, str]) -> AllPathParams:
    """Return both the module and the version route parameters."""
    op = "paths.GetAllParams"
    try:
        module = get_module(route_vars)
        version = get_version(route_vars)
    except Exception as err:
        raise e(op, err) from err
    return AllPathParams(module=module, version=version)


def matches_pattern(pattern: str, target: str) -> bool:
    """Report whether the path prefix of ``target`` matches ``pattern``.

    The prefix has as many path elements as the pattern, so a pattern
    matches a module and everything below it. A malformed pattern matches
    nothing.
    """
    slashes = pattern.count("/")
    prefix = target
    for i, ch in enumerate(target):
        if ch == "/":
            if slashes == 0:
                prefix = target[:i]
                break
            slashes -= 1
    if slashes > 0:
        return False
    try:
        return _path_match(pattern, prefix)
    except _BadPattern:
        return False


class _BadPattern(ValueError):
    """Raised for a syntactically invalid glob pattern."""


def _path_match(pattern: str, name: str) -> bool:
    """Shell-style matching where ``*`` and ``?`` never match ``/``."""
    while pattern:
        star, chunk, pattern = _scan_chunk(pattern)
        if star and not chunk:
            return "/" not in name
        rest = _match_chunk(chunk, name)
        if rest is not None and (not rest or pattern):
            name = rest
            continue
        if star:
            advanced = False
            for i, ch in enumerate(name):
                if ch == "/":
                    break
                rest = _match_chunk(chunk, name[i + 1:])
                if rest is not None:
                    if not pattern and rest:
                        continue
                    name = rest
                    advanced = True
                    break
            if advanced:
                continue
        while pattern:
            _, chunk, pattern = _scan_chunk(pattern)
            _match_chunk(chunk, "")
        return False
    return not name


def _scan_chunk(pattern: str) -> tuple[bool, str, str]:
    stripped = pattern.lstrip("*")
    star = len(stripped) != len(pattern)
    pattern = stripped
    in_range = False
    i = 0
    while i < len(pattern):
        ch = pattern[i]
        if ch == "\\":
            if i + 1 < len(pattern):
                i += 1
        elif ch == "[":
            in_range = True
        elif ch == "]":
            in_range = False
        elif ch == "*" and not in_range:
            break
        i += 1
    return star, pattern[:i], pattern[i:]


def _match_chunk(chunk: str, s: str) -> str | None:
    """Match ``chunk`` at the start of ``s``; return the rest or ``None``."""
    failed = False
    while chunk:
        if not failed and not s:
            failed = True
        head = chunk[0]
        if head == "[":
            char = "\0"
            if not failed:
                char, s = s[0], s[1:]
            chunk = chunk[1:]
            negated = chunk.startswith("^")
            if negated:
                chunk = chunk[1:]
            matched = False
            ranges = 0
            while True:
                if chunk.startswith("]") and ranges > 0:
                    chunk = chunk[1:]
                    break
                lo, chunk = _get_esc(chunk)
                hi = lo
                if chunk[0] == "-":
                    hi, chunk = _get_esc(chunk[1:])
                if lo <= char <= hi:
                    matched = True
                ranges += 1
            if matched == negated:
                failed = True
        elif head == "?":
            if not failed:
                if s[0] == "/":
                    failed = True
                s = s[1:]
            chunk = chunk[1:]
        else:
            if head == "\\":
                chunk = chunk[1:]
                if not chunk:
                    raise _BadPattern(chunk)
            if not failed:
                if chunk[0] != s[0]:
                    failed = True
                s = s[1:]
            chunk = chunk[1:]
    return None if failed else s


def _get_esc(chunk: str) -> tuple[str, str]:
    if not chunk or chunk[0] in "-]":
        raise _BadPattern(chunk)
    if chunk[0] == "\\":
        chunk = chunk[1:]
        if not chunk:
            raise _BadPattern(chunk)
    char, rest = chunk[0], chunk[1:]
    if not rest:
        raise _BadPattern(chunk)
    return char, rest