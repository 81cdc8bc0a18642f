# src/dbconnector/contracts/identity.py
"""Item identity derivation.

An item name is the text of the unique-key column values joined with "/".
Each value has "%" and "/" percent-encoded first, so distinct composite
keys never produce the same name. The item id scopes the name to the data
source: ``datasources/<source_id>/items/<name>``.
"""

from collections.abc import Sequence

ITEM_NAME_SEPARATOR = "/"


def escape_key_value(value: str) -> str:
    """Percent-encode the characters that would make a joined name ambiguous."""
    return value.replace("%", "%25").replace(ITEM_NAME_SEPARATOR, "%2F")


def item_name(key_values: Sequence[str]) -> str:
    """Join unique-key values into an item name."""
    if not key_values:
        raise ValueError("At least one unique key value is required")
    return ITEM_NAME_SEPARATOR.join(escape_key_value(v) for v in key_values)


def item_id(source_id: str, name: str) -> str:
    """Scope an item name to a data source."""
    return f"datasources/{source_id}/items/{name}"
