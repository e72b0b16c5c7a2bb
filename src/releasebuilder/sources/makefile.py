"""
Reads simple variable assignments out of a Makefile.

Only plain assignments are understood (`=`, `:=`, `::=`, `?=`, `+=`, with an
optional `export`). Recipes, conditionals and references to other variables
are left alone; the value is returned exactly as written.
"""

import re
from pathlib import Path
from typing import Dict

from releasebuilder.core.errors import VariableNotFoundError

_ASSIGNMENT = re.compile(
    r"^(?:export\s+)?(?P<name>[A-Za-z_][A-Za-z0-9_]*)\s*(?P<op>\?=|::=|:=|\+=|=)\s*(?P<value>.*)$"
)


def parse_variables(text: str) -> Dict[str, str]:
    variables: Dict[str, str] = {}
    for raw in text.splitlines():
        # Recipe lines
        if raw.startswith("\t"):
            continue
        line = raw.split("#", 1)[0].strip()
        match = _ASSIGNMENT.match(line)
        if not match:
            continue
        name, op, value = match.group("name"), match.group("op"), match.group("value").strip()
        if op == "?=":
            variables.setdefault(name, value)
        elif op == "+=" and name in variables:
            variables[name] = f"{variables[name]} {value}".strip()
        else:
            variables[name] = value
    return variables


def read_variable(path: str, name: str) -> str:
    """Value of `name` in the Makefile at path. Raises VariableNotFoundError when unassigned."""
    try:
        text = Path(path).read_text(encoding="utf-8")
    except OSError as err:
        raise VariableNotFoundError(name, path) from err
    variables = parse_variables(text)
    if name not in variables:
        raise VariableNotFoundError(name, path)
    return variables[name]
