# src/dbconnector/engine/documents.py
"""Document builder: one result row to one DocumentRecord.

Per metadata attribute (title, URL, content language, create/update time,
object type) the value is resolved in order:
1. The configured column's value, when non-null
2. The configured default_value
3. Unset

The source repository URL is special: an explicit
``item_metadata.source_repository_url.field`` wins; otherwise the URL is
computed from the URL columns (``url.format`` with positional placeholders,
or the concatenated values) and falls back to the default only when a URL
column is null.

Item content comes from ``database.blob_column`` (raw bytes) or is rendered
as HTML from ``database.content_columns`` through a sandboxed Jinja2
template.

A named default ACL (``default_acl.name``) is also published as a virtual
container item carrying the policy readers, so the index holds the default
ACL under a stable id.

DocumentBuilder holds only configuration, so one instance is shared by the
full and incremental traversal threads.
"""

from collections.abc import Mapping, Sequence

import jinja2
import jinja2.sandbox

from dbconnector.contracts import (
    Acl,
    AclMode,
    ContentFormat,
    DocumentRecord,
    FieldKind,
    ItemContent,
    ItemType,
    MissingUniqueKeyError,
    Row,
    RowMappingError,
    item_id,
    item_name,
)
from dbconnector.core.config import ConnectorSettings, FieldSource
from dbconnector.engine.acl import resolve_acl, row_acl_from_row
from dbconnector.engine.schema_mapper import map_row, value_to_text

HTML_TEMPLATE = """\
<!DOCTYPE html>
<html{% if language %} lang="{{ language }}"{% endif %}>
<head>
<meta charset="utf-8">
<title>{{ title }}</title>
</head>
<body>
{%- for name, value in sections %}
<div id="{{ name }}">
<p>{{ name }}:</p>
<h1>{{ value }}</h1>
</div>
{%- endfor %}
</body>
</html>
"""


class HtmlContentRenderer:
    """Renders content columns into an HTML page.

    Column values are auto-escaped; the template runs in a
    SandboxedEnvironment.
    """

    def __init__(self, title_column: str | None, content_columns: Sequence[str]) -> None:
        self._title_column = title_column
        self._content_columns = tuple(content_columns)
        env = jinja2.sandbox.SandboxedEnvironment(
            autoescape=True,
            undefined=jinja2.StrictUndefined,
        )
        self._template = env.from_string(HTML_TEMPLATE)

    def render(self, row: Row, language: str | None = None) -> ItemContent:
        title = value_to_text(row.get(self._title_column)) if self._title_column else None
        sections = [(name, value_to_text(row.get(name)) or "") for name in self._content_columns]
        html = self._template.render(title=title or "", sections=sections, language=language)
        return ItemContent(data=html.encode("utf-8"), content_format=ContentFormat.HTML)


class DocumentBuilder:
    """Builds DocumentRecords from rows according to the connector settings."""

    def __init__(self, settings: ConnectorSettings) -> None:
        self._source_id = settings.source_id
        self._unique_keys = tuple(settings.database.unique_key_columns)
        self._metadata = settings.item_metadata
        self._url_format = settings.url.format
        self._url_columns = tuple(settings.url_columns)
        self._field_kinds = dict(settings.structured_data.fields)
        self._policy = settings.default_acl.to_policy()
        self._blob_column = settings.database.blob_column
        content_columns = settings.database.resolved_content_columns()
        self._renderer: HtmlContentRenderer | None = None
        if self._blob_column is None and content_columns:
            self._renderer = HtmlContentRenderer(settings.content_template.title, content_columns)

    def identify(self, row: Row) -> tuple[str, str]:
        """Derive (item name, item id) from the unique-key columns.

        Raises:
            MissingUniqueKeyError: If a key column is absent, null or empty
        """
        key_values: list[str] = []
        for column in self._unique_keys:
            text = value_to_text(row.get(column))
            if not text:
                raise MissingUniqueKeyError(column)
            key_values.append(text)
        name = item_name(key_values)
        return name, item_id(self._source_id, name)

    def build(self, row: Row, fields: Mapping[str, FieldKind] | None = None) -> DocumentRecord:
        """Build the document for one row.

        Args:
            row: Result row keyed by column label
            fields: Structured fields to emit (defaults to the configured ones)

        Raises:
            MissingUniqueKeyError: If a unique-key column is absent, null or empty
            FieldCoercionError: If a structured value has the wrong type
        """
        name, doc_id = self.identify(row)
        try:
            structured = map_row(row, self._field_kinds if fields is None else fields)
        except RowMappingError as e:
            # Attach the identity so the cycle can report which item failed
            e.item_id = doc_id
            raise

        language = self._resolve(self._metadata.content_language, row)
        return DocumentRecord(
            item_id=doc_id,
            name=name,
            title=self._resolve(self._metadata.title, row),
            content_language=language,
            source_repository_url=self._source_repository_url(row),
            object_type=self._resolve(self._metadata.object_type, row),
            structured_data=structured,
            acl=resolve_acl(row_acl_from_row(row), self._policy),
            item_type=self._metadata.item_type,
            create_time=self._resolve(self._metadata.create_time, row),
            update_time=self._resolve(self._metadata.update_time, row),
            content=self._content(row, language),
        )

    def default_acl_container(self) -> DocumentRecord | None:
        """The virtual container item for a named default ACL, if configured."""
        policy = self._policy
        if not policy.name or policy.mode is AclMode.NONE:
            return None
        name = item_name([policy.name])
        return DocumentRecord(
            item_id=item_id(self._source_id, name),
            name=name,
            title=policy.name,
            acl=Acl(readers=policy.readers, denied_readers=policy.denied_readers, public=policy.public),
            item_type=ItemType.VIRTUAL_CONTAINER_ITEM,
        )

    @staticmethod
    def _resolve(source: FieldSource, row: Row) -> str | None:
        if source.field is not None:
            value = value_to_text(row.get(source.field))
            if value is not None:
                return value
        return source.default_value

    def _source_repository_url(self, row: Row) -> str | None:
        configured = self._metadata.source_repository_url
        if configured.field is not None:
            return self._resolve(configured, row)
        computed = self._computed_url(row)
        if computed is not None:
            return computed
        return configured.default_value

    def _computed_url(self, row: Row) -> str | None:
        values: list[str] = []
        for column in self._url_columns:
            text = value_to_text(row.get(column))
            if text is None:
                return None
            values.append(text)
        if self._url_format is not None:
            return self._url_format.format(*values)
        return "".join(values)

    def _content(self, row: Row, language: str | None) -> ItemContent | None:
        if self._blob_column is not None:
            value = row.get(self._blob_column)
            if value is None:
                return None
            if isinstance(value, str):
                return ItemContent(data=value.encode("utf-8"), content_format=ContentFormat.TEXT)
            return ItemContent(data=bytes(value), content_format=ContentFormat.RAW)
        if self._renderer is not None:
            return self._renderer.render(row, language)
        return None
