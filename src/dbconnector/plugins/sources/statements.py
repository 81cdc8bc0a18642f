# src/dbconnector/plugins/sources/statements.py
"""SQL statement preparation.

Configured statements may use JDBC-style ``?`` placeholders or SQLAlchemy
named parameters (``:offset``). Either way the statement is normalized into
a ``TextClause`` with exactly one named bind parameter, so the executor can
bind values the same way on every dialect.

Quoted literals and identifiers are left untouched: ``'what?'`` is not a
placeholder and ``'10:30'`` is not a named parameter.
"""

import re
from dataclasses import dataclass

from sqlalchemy import TextClause, text

from dbconnector.contracts import QueryConfigurationError

_NAMED_PARAM = re.compile(r"(?<![:\w\\]):([A-Za-z_]\w*)(?!:)")
_QUOTES = ("'", '"', "`")


@dataclass(frozen=True, slots=True)
class PreparedStatement:
    """A normalized statement and the name of its single bind parameter."""

    clause: TextClause
    param_name: str | None


def _mask_quoted(sql: str) -> str:
    """Replace every character inside a quoted region with a space.

    The result has the same length as sql, so match positions carry over.
    Doubled quotes inside a literal ('it''s') stay inside the literal.
    """
    masked: list[str] = []
    quote: str | None = None
    for ch in sql:
        if quote is None:
            masked.append(ch)
            if ch in _QUOTES:
                quote = ch
        elif ch == quote:
            masked.append(ch)
            quote = None
        else:
            masked.append(" ")
    if quote is not None:
        raise QueryConfigurationError(f"Unterminated quoted literal in statement: {sql!r}")
    return "".join(masked)


def _escape_quoted_colons(sql: str, masked: str) -> str:
    # text() treats ':name' as a bind even inside literals
    return "".join("\\:" if ch == ":" and m == " " else ch for ch, m in zip(sql, masked, strict=True))


def prepare_statement(sql: str, bind_name: str | None) -> PreparedStatement:
    """Normalize a configured statement.

    Args:
        sql: Statement as configured
        bind_name: Name given to a ``?`` placeholder. None means the
            statement must have no placeholder at all.

    Returns:
        PreparedStatement whose param_name is bind_name for a ``?``
        placeholder, or the statement's own name for a named parameter

    Raises:
        QueryConfigurationError: If the placeholder count is wrong
    """
    masked = _mask_quoted(sql)
    qmarks = [i for i, ch in enumerate(masked) if ch == "?"]
    named = list(_NAMED_PARAM.finditer(masked))
    found = len(qmarks) + len(named)

    if bind_name is None:
        if found:
            raise QueryConfigurationError(f"Statement must not contain placeholders, found {found}: {sql!r}")
        return PreparedStatement(clause=text(_escape_quoted_colons(sql, masked)), param_name=None)

    if found != 1:
        raise QueryConfigurationError(f"Statement must contain exactly one placeholder, found {found}: {sql!r}")

    escaped = _escape_quoted_colons(sql, masked)
    if named:
        return PreparedStatement(clause=text(escaped), param_name=named[0].group(1))

    # Escaping only touched quoted regions, so the position is recomputed
    position = len(_escape_quoted_colons(sql[: qmarks[0]], masked[: qmarks[0]]))
    rewritten = f"{escaped[:position]}:{bind_name}{escaped[position + 1 :]}"
    return PreparedStatement(clause=text(rewritten), param_name=bind_name)
