"""
Minimal go.mod reader. Only `require` directives matter to the resolver, in
both the single-line and the parenthesized block form.
"""

import re
from typing import List, Tuple

_REQUIRE_LINE = re.compile(r"^\s*(\S+)\s+(\S+)")


def _strip_comment(line: str) -> str:
    return line.split("//", 1)[0].strip()


def parse_requires(text: str) -> List[Tuple[str, str]]:
    """Return (module path, version) for every required module, in file order."""
    requires: List[Tuple[str, str]] = []
    in_block = False
    for raw in text.splitlines():
        line = _strip_comment(raw)
        if not line:
            continue
        if in_block:
            if line == ")":
                in_block = False
                continue
            match = _REQUIRE_LINE.match(line)
            if match:
                requires.append((match.group(1), match.group(2)))
            continue
        if line.startswith("require"):
            rest = line[len("require"):].strip()
            if rest == "(":
                in_block = True
                continue
            match = _REQUIRE_LINE.match(rest)
            if match:
                requires.append((match.group(1), match.group(2)))
    return requires


def unwrap_pseudo_version(version: str) -> str:
    """
    v0.0.0-20240101000000-abcdef123456 -> abcdef123456.

    Pseudo-versions carry the commit as their last dash-separated field;
    anything else is returned unchanged.
    """
    parts = version.split("-")
    if len(parts) == 3:
        return parts[2]
    return version
