# src/dbconnector/engine/acl.py
"""ACL resolver.

Combines the ACL carried by a row with the configured default ACL. Row ACL
columns hold comma-separated principal names:

    readers_users   readers_groups   denied_users   denied_groups

The default policy's mode decides how the two combine; see AclMode. Public
access is granted only when the policy contributes to the result.

All functions here are pure: they are evaluated on every full and
incremental pass, so an ACL change picked up by an incremental traversal
reaches the index in that same cycle.
"""

from collections.abc import Callable, Iterable
from typing import Any

from dbconnector.contracts import Acl, AclMode, AclPolicy, Principal, Row

READERS_USERS_COLUMN = "readers_users"
READERS_GROUPS_COLUMN = "readers_groups"
DENIED_USERS_COLUMN = "denied_users"
DENIED_GROUPS_COLUMN = "denied_groups"


def parse_principals(value: Any) -> tuple[str, ...]:
    """Split a comma-separated column value into trimmed names.

    Empty entries are dropped. None yields an empty tuple. A list or tuple
    (array column) is accepted as already split.
    """
    if value is None:
        return ()
    items: Iterable[Any] = value if isinstance(value, (list, tuple)) else str(value).split(",")
    return tuple(name for name in (str(item).strip() for item in items if item is not None) if name)


def row_acl_from_row(row: Row) -> Acl:
    """Extract the per-row ACL. Missing ACL columns mean no entries."""
    readers = tuple(Principal.user(n) for n in parse_principals(row.get(READERS_USERS_COLUMN))) + tuple(
        Principal.group(n) for n in parse_principals(row.get(READERS_GROUPS_COLUMN))
    )
    denied = tuple(Principal.user(n) for n in parse_principals(row.get(DENIED_USERS_COLUMN))) + tuple(
        Principal.group(n) for n in parse_principals(row.get(DENIED_GROUPS_COLUMN))
    )
    return Acl(readers=readers, denied_readers=denied)


def _union(first: Iterable[Principal], second: Iterable[Principal]) -> tuple[Principal, ...]:
    # dict keeps first-seen order
    return tuple(dict.fromkeys([*first, *second]))


def _resolve_none(row_acl: Acl, policy: AclPolicy) -> Acl:
    return row_acl


def _resolve_fallback(row_acl: Acl, policy: AclPolicy) -> Acl:
    if row_acl.readers:
        return Acl(readers=row_acl.readers, denied_readers=row_acl.denied_readers)
    return Acl(
        readers=policy.readers,
        denied_readers=_union(row_acl.denied_readers, policy.denied_readers),
        public=policy.public,
    )


def _resolve_append(row_acl: Acl, policy: AclPolicy) -> Acl:
    return Acl(
        readers=_union(row_acl.readers, policy.readers),
        denied_readers=_union(row_acl.denied_readers, policy.denied_readers),
        public=policy.public,
    )


def _resolve_override(row_acl: Acl, policy: AclPolicy) -> Acl:
    return Acl(readers=policy.readers, denied_readers=policy.denied_readers, public=policy.public)


_RESOLVERS: dict[AclMode, Callable[[Acl, AclPolicy], Acl]] = {
    AclMode.NONE: _resolve_none,
    AclMode.FALLBACK: _resolve_fallback,
    AclMode.APPEND: _resolve_append,
    AclMode.OVERRIDE: _resolve_override,
}


def resolve_acl(row_acl: Acl, policy: AclPolicy) -> Acl:
    """Compute the effective ACL of one item.

    Args:
        row_acl: ACL read from the row's ACL columns
        policy: Configured default ACL

    Returns:
        FALLBACK: row readers when present, else the default readers
        APPEND: row readers then default readers, without duplicates
        OVERRIDE: default readers only
        NONE: the row ACL unchanged
    """
    return _RESOLVERS[policy.mode](row_acl, policy)
