"""Include/exclude/direct rules for module paths and versions.

A filter file holds one rule per line: ``+`` includes, ``-`` excludes and
``D`` sends requests directly upstream. A rule applies to a path and
everything below it, optionally only to versions matching a
comma-separated list of qualifiers::

    - github.com/a
    + github.com/a/b
    D github.com/c v1,~v2.3.4

A sign alone sets the rule for every module. Lines starting with ``#`` are
comments.
"""

from __future__ import annotations

import re
from collections.abc import Iterable
from dataclasses import dataclass, field
from enum import IntEnum

from modproxy.errors import e

__all__ = ["FilterRule", "Filter", "new_filter"]

_PATH_SEPARATOR = "/"
_VERSION_SEPARATOR = "."
_INTEGER = re.compile(r"[+-]?[0-9]+")


class FilterRule(IntEnum):
    """What to do with a module."""

    DEFAULT = 0
    """Does not alter the parent's behaviour."""
    INCLUDE = 1
    """Serve the module the usual way."""
    EXCLUDE = 2
    """Refuse the module and its children."""
    DIRECT = 3
    """Fetch the module from the upstream proxy."""


@dataclass
class _RuleNode:
    rule: FilterRule = FilterRule.DEFAULT
    qualifiers: list[str] = field(default_factory=list)
    next: dict[str, _RuleNode] = field(default_factory=dict)


class Filter:
    """A tree of rules keyed by module path segments. Not thread-safe."""

    def __init__(self, file_path: str = "") -> None:
        self.file_path = file_path
        self._root = _RuleNode()

    @classmethod
    def from_config(cls, file_path: str) -> Filter:
        """Build a filter from the rules in ``file_path``."""
        op = "module.initFromConfig"
        lines = _config_lines(file_path)
        flt = cls(file_path)
        for number, line in enumerate(lines, start=1):
            if not line or line.startswith("#"):
                continue
            invalid = f"Invalid configuration found in filter file at the line {number}"
            parts = line.split(" ")
            if len(parts) > 3:
                raise e(op, invalid)
            rule = {
                "+": FilterRule.INCLUDE,
                "-": FilterRule.EXCLUDE,
                "D": FilterRule.DIRECT,
            }.get(parts[0].strip())
            if rule is None:
                raise e(op, invalid)
            if len(parts) == 1:
                flt.add_rule("", None, rule)
                continue
            qualifiers: list[str] = []
            if len(parts) == 3:
                for raw in parts[2].split(","):
                    qualifier = raw.rstrip("*")
                    if not qualifier:
                        raise e(op, invalid)
                    if not qualifier.endswith(".") and qualifier.count(".") < 2:
                        qualifier += "."
                    qualifiers.append(qualifier)
            flt.add_rule(parts[1].strip(), qualifiers, rule)
        return flt

    def add_rule(
        self, path: str, qualifiers: Iterable[str] | None, rule: FilterRule
    ) -> None:
        """Set ``rule`` for ``path``, limited to versions matching ``qualifiers``."""
        segments = _path_segments(path)
        if not segments:
            self._root.rule = rule
            return
        node = self._root
        for segment in segments:
            node = node.next.setdefault(segment, _RuleNode())
        node.rule = rule
        node.qualifiers = list(qualifiers or [])

    def rule(self, path: str, version: str) -> FilterRule:
        """Return the rule for ``path`` at ``version``; never DEFAULT."""
        rule = self._associated_rule(version, _path_segments(path))
        return FilterRule.INCLUDE if rule is FilterRule.DEFAULT else rule

    def _associated_rule(self, version: str, segments: list[str]) -> FilterRule:
        if not segments:
            return self._root.rule
        rules: list[FilterRule] = []
        node = self._root
        for segment in segments:
            if segment not in node.next:
                break
            node = node.next[segment]
            match = not node.qualifiers or any(
                _matches(version, qualifier) for qualifier in node.qualifiers
            )
            if match or not version:
                rules.append(node.rule)
        for rule in reversed(rules):
            if rule is not FilterRule.DEFAULT:
                return rule
        return self._root.rule


def new_filter(filter_file_path: str) -> Filter | None:
    """Return the filter defined in ``filter_file_path``, or None if it is empty."""
    if not filter_file_path:
        return None
    return Filter.from_config(filter_file_path)


def _config_lines(path: str) -> list[str]:
    op = "module.getConfigLines"
    try:
        with open(path, encoding="utf-8") as fh:
            return [line.strip() for line in fh]
    except OSError as err:
        raise e(op, err) from err


def _matches(version: str, qualifier: str) -> bool:
    """Report whether ``version`` satisfies ``qualifier``.

    ``v1.2.`` accepts versions with that prefix, ``~v1.2.3`` any 1.2.x at
    least 1.2.3, ``^v1.2.3`` any 1.x.x at least 1.2.3 and ``<v1.2.3``
    anything up to 1.2.3.
    """
    if len(qualifier) < 2 or not version:
        return False
    prefix, first = qualifier[0], qualifier[1]
    if prefix == "v" and "0" <= first <= "9":
        return version.startswith(qualifier)
    v = _version_segments(version[1:])
    q = _version_segments(qualifier[2:])
    if v is None or q is None or len(v) != 3 or len(q) != 3:
        return False
    if prefix == "~":
        return v[0] == q[0] and v[1] == q[1] and v[2] >= q[2]
    if prefix == "^":
        return v[0] == q[0] and (v[1] > q[1] or (v[1] == q[1] and v[2] >= q[2]))
    if prefix == "<":
        return (
            v[0] < q[0]
            or (v[0] == q[0] and v[1] < q[1])
            or (v[0] == q[0] and v[1] == q[1] and v[2] <= q[2])
        )
    return False


def _path_segments(path: str) -> list[str]:
    return _segments(path, _PATH_SEPARATOR)


def _version_segments(text: str) -> list[int] | None:
    parts = _segments(text, _VERSION_SEPARATOR)
    if not all(_INTEGER.fullmatch(part) for part in parts):
        return None
    return [int(part) for part in parts]


def _segments(text: str, separator: str) -> list[str]:
    text = text.strip().strip(separator)
    return text.split(separator) if text else []