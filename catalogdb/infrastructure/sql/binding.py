"""Placeholder handling shared by every driver.

Statements are written once and bound to the driver's placeholder style:

- ``:name`` named parameters (`compile_named`, `bind_named`)
- ``?`` positional parameters (`rebind`)
- ``IN (?)`` expansion of sequence arguments (`expand_in`)

String literals, quoted identifiers and Postgres ``::type`` casts are never
treated as placeholders.

For the ``%s`` style, a statement that ends up with placeholders has every
literal ``%`` doubled, since pymysql formats it with ``query % args``. Without
placeholders no arguments are sent and the text is left as written.
"""

from __future__ import annotations

import re
from collections.abc import Mapping, Sequence
from typing import Any

from pydantic import BaseModel

from .enums import BindVar
from .exceptions import BindError

_NAMED_TOKEN = re.compile(r"""'(?:[^']|'')*'|"(?:[^"]|"")*"|::|:([A-Za-z_][A-Za-z0-9_]*)""")
_QUESTION_TOKEN = re.compile(r"""'(?:[^']|'')*'|"(?:[^"]|"")*"|(\?)""")


def _escape_percent(query: str, token: re.Pattern[str], bindvar: BindVar) -> str:
    if bindvar is BindVar.FORMAT and any(match.group(1) is not None for match in token.finditer(query)):
        return query.replace("%", "%%")
    return query


def compile_named(query: str, bindvar: BindVar) -> tuple[str, list[str]]:
    """Rewrite ``:name`` placeholders into the driver's positional style.

    Parameters
    ----------
    query
        SQL text with ``:name`` placeholders.
    bindvar
        Target placeholder style.

    Returns
    -------
    tuple[str, list[str]]
        The rewritten statement and the parameter names in positional order.
        A name used twice appears twice.

    Examples
    --------
    >>> compile_named("SELECT * FROM product WHERE id = :id AND price::numeric > :min", BindVar.DOLLAR)
    ('SELECT * FROM product WHERE id = $1 AND price::numeric > $2', ['id', 'min'])
    """
    names: list[str] = []

    def _substitute(match: re.Match[str]) -> str:
        name = match.group(1)
        if name is None:
            return match.group(0)
        names.append(name)
        return bindvar.placeholder(len(names))

    return _NAMED_TOKEN.sub(_substitute, _escape_percent(query, _NAMED_TOKEN, bindvar)), names


def _lookup(arg: Any, name: str) -> Any:
    if isinstance(arg, Mapping):
        if name not in arg:
            msg = f"could not find name {name!r} in mapping"
            raise BindError(msg)
        return arg[name]
    if not hasattr(arg, name):
        msg = f"could not find name {name!r} in {type(arg).__name__}"
        raise BindError(msg)
    return getattr(arg, name)


def bind_named(query: str, arg: Any, bindvar: BindVar) -> tuple[str, list[Any]]:
    """Compile a named statement and pull its arguments from ``arg``.

    ``arg`` may be a mapping, a pydantic model or any object exposing the names
    as attributes.

    Raises
    ------
    BindError
        If a placeholder has no matching key or attribute.
    """
    compiled, names = compile_named(query, bindvar)
    return compiled, bind_values(names, arg)


def bind_values(names: Sequence[str], arg: Any) -> list[Any]:
    """Pull the values for ``names``, in order, from a mapping, model or object."""
    if isinstance(arg, BaseModel):
        arg = arg.model_dump()
    return [_lookup(arg, name) for name in names]


def rebind(query: str, bindvar: BindVar) -> str:
    """Transform ``?`` placeholders into the driver's style.

    Examples
    --------
    >>> rebind("SELECT * FROM product WHERE name LIKE 'Mug%' AND id = ?", BindVar.FORMAT)
    "SELECT * FROM product WHERE name LIKE 'Mug%%' AND id = %s"
    """
    position = 0

    def _substitute(match: re.Match[str]) -> str:
        nonlocal position
        if match.group(1) is None:
            return match.group(0)
        position += 1
        return bindvar.placeholder(position)

    return _QUESTION_TOKEN.sub(_substitute, _escape_percent(query, _QUESTION_TOKEN, bindvar))


def _is_expandable(value: Any) -> bool:
    return isinstance(value, Sequence) and not isinstance(value, str | bytes | bytearray)


def expand_in(query: str, *args: Any) -> tuple[str, list[Any]]:
    """Expand sequence arguments bound to ``?`` into one placeholder per element.

    The result still uses ``?``; pass it through `rebind` for the target driver.

    Examples
    --------
    >>> expand_in("SELECT * FROM product WHERE id IN (?) AND active = ?", [1, 2, 3], True)
    ('SELECT * FROM product WHERE id IN (?, ?, ?) AND active = ?', [1, 2, 3, True])

    Raises
    ------
    BindError
        If the placeholder count differs from the argument count, or a
        sequence argument is empty.
    """
    flattened: list[Any] = []
    index = 0

    def _substitute(match: re.Match[str]) -> str:
        nonlocal index
        if match.group(1) is None:
            return match.group(0)
        if index >= len(args):
            msg = "number of bindvars exceeds arguments"
            raise BindError(msg)
        value = args[index]
        index += 1
        if not _is_expandable(value):
            flattened.append(value)
            return "?"
        if len(value) == 0:
            msg = "empty slice passed to 'in' query"
            raise BindError(msg)
        flattened.extend(value)
        return ", ".join(["?"] * len(value))

    expanded = _QUESTION_TOKEN.sub(_substitute, query)
    if index != len(args):
        msg = "number of bindvars less than number arguments"
        raise BindError(msg)
    return expanded, flattened
