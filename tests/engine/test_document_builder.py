# tests/engine/test_document_builder.py
"""Tests for DocumentBuilder."""

from collections.abc import Callable

import pytest

from dbconnector.contracts import (
    AclMode,
    ContentFormat,
    FieldCoercionError,
    FieldKind,
    ItemType,
    MissingUniqueKeyError,
    Principal,
)
from dbconnector.core.config import ConnectorSettings
from dbconnector.engine.documents import DocumentBuilder

SettingsFactory = Callable[..., ConnectorSettings]


class TestIdentity:
    """Item name and id derivation."""

    def test_single_key(self, make_settings: SettingsFactory) -> None:
        builder = DocumentBuilder(make_settings())

        assert builder.identify({"id": "x1"}) == ("x1", "datasources/employees/items/x1")

    def test_composite_key_joined_with_slash(self, make_settings: SettingsFactory) -> None:
        builder = DocumentBuilder(make_settings({"database": {"unique_key_columns": "region, id"}}))

        name, doc_id = builder.identify({"region": "emea", "id": 7})

        assert name == "emea/7"
        assert doc_id == "datasources/employees/items/emea/7"

    def test_slash_in_key_value_does_not_collide(self, make_settings: SettingsFactory) -> None:
        builder = DocumentBuilder(make_settings({"database": {"unique_key_columns": "region, id"}}))

        first = builder.identify({"region": "a/b", "id": "c"})
        second = builder.identify({"region": "a", "id": "b/c"})

        assert first == ("a%2Fb/c", "datasources/employees/items/a%2Fb/c")
        assert second == ("a/b%2Fc", "datasources/employees/items/a/b%2Fc")

    @pytest.mark.parametrize("row", [{"name": "no id"}, {"id": None}, {"id": ""}])
    def test_missing_key_raises(self, make_settings: SettingsFactory, row: dict[str, object]) -> None:
        builder = DocumentBuilder(make_settings())

        with pytest.raises(MissingUniqueKeyError) as exc_info:
            builder.build(row)

        assert exc_info.value.column == "id"


class TestMetadata:
    """Attribute resolution: column value, else default, else unset."""

    def test_basic_row(self, make_settings: SettingsFactory) -> None:
        """Row without structured fields: title and URL from id, default language."""
        builder = DocumentBuilder(make_settings())

        document = builder.build({"id": "x1", "name": "Jones May", "phone": "2134"})

        assert document.title == "x1"
        assert document.source_repository_url == "x1"
        assert document.content_language == "en-US"
        assert document.structured_data == {}
        assert document.item_type is ItemType.CONTENT_ITEM

    def test_default_used_only_for_null_column(self, make_settings: SettingsFactory) -> None:
        settings = make_settings({"item_metadata": {"title": {"field": "name", "default_value": "Untitled"}}})
        builder = DocumentBuilder(settings)

        assert builder.build({"id": "1", "name": None}).title == "Untitled"
        assert builder.build({"id": "2", "name": "Jones"}).title == "Jones"
        assert builder.build({"id": "3"}).title == "Untitled"

    def test_unset_without_field_or_default(self, make_settings: SettingsFactory) -> None:
        builder = DocumentBuilder(make_settings())

        document = builder.build({"id": "1"})

        assert document.object_type is None
        assert document.create_time is None
        assert document.update_time is None

    def test_timestamps_from_columns(self, make_settings: SettingsFactory) -> None:
        settings = make_settings(
            {
                "item_metadata": {
                    "create_time": {"field": "created"},
                    "update_time": {"field": "modified", "default_value": "2000-01-01T00:00:00Z"},
                    "object_type": {"default_value": "employee"},
                }
            }
        )

        document = DocumentBuilder(settings).build({"id": "1", "created": "2024-01-01T09:00:00Z", "modified": None})

        assert document.create_time == "2024-01-01T09:00:00Z"
        assert document.update_time == "2000-01-01T00:00:00Z"
        assert document.object_type == "employee"

    def test_item_type_from_settings(self, make_settings: SettingsFactory) -> None:
        settings = make_settings({"item_metadata": {"item_type": "virtual_container_item"}})

        assert DocumentBuilder(settings).build({"id": "1"}).item_type is ItemType.VIRTUAL_CONTAINER_ITEM


class TestUrl:
    """Source repository URL construction."""

    def test_format_fills_positional_placeholders(self, make_settings: SettingsFactory) -> None:
        settings = make_settings({"url": {"format": "https://hr.example.com/{0}/{1}", "columns": "id, name"}})

        document = DocumentBuilder(settings).build({"id": "7", "name": "jones"})

        assert document.source_repository_url == "https://hr.example.com/7/jones"

    def test_without_format_values_concatenate(self, make_settings: SettingsFactory) -> None:
        settings = make_settings({"url": {"columns": "id, name"}})

        assert DocumentBuilder(settings).build({"id": "7", "name": "jones"}).source_repository_url == "7jones"

    def test_null_url_column_falls_back_to_default(self, make_settings: SettingsFactory) -> None:
        settings = make_settings(
            {
                "url": {"format": "https://hr.example.com/{0}", "columns": "name"},
                "item_metadata": {"source_repository_url": {"default_value": "https://hr.example.com/"}},
            }
        )

        document = DocumentBuilder(settings).build({"id": "7", "name": None})

        assert document.source_repository_url == "https://hr.example.com/"

    def test_explicit_url_field_wins(self, make_settings: SettingsFactory) -> None:
        settings = make_settings(
            {
                "url": {"format": "https://hr.example.com/{0}"},
                "item_metadata": {"source_repository_url": {"field": "link"}},
            }
        )

        document = DocumentBuilder(settings).build({"id": "7", "link": "https://wiki.example.com/7"})

        assert document.source_repository_url == "https://wiki.example.com/7"


class TestStructuredDataAndAcl:
    """Structured fields and ACL resolution inside build()."""

    def test_structured_fields(self, make_settings: SettingsFactory) -> None:
        settings = make_settings({"structured_data": {"fields": {"text": "text", "salary": "double"}}})

        document = DocumentBuilder(settings).build({"id": "1", "text": ["joe", "Smith", "black"], "salary": 2000})

        assert document.structured_text("text") == ["joe", "Smith", "black"]
        assert document.structured_text("salary") == ["2000.00"]

    def test_fields_argument_overrides_configured(self, make_settings: SettingsFactory) -> None:
        document = DocumentBuilder(make_settings()).build({"id": "1", "phone": "2134"}, {"phone": FieldKind.INTEGER})

        assert document.structured_text("phone") == ["2134"]

    def test_coercion_error_carries_item_id(self, make_settings: SettingsFactory) -> None:
        settings = make_settings({"structured_data": {"fields": {"age": "integer"}}})

        with pytest.raises(FieldCoercionError) as exc_info:
            DocumentBuilder(settings).build({"id": "9", "age": "old"})

        assert exc_info.value.item_id == "datasources/employees/items/9"

    def test_default_public_acl_applied(self, make_settings: SettingsFactory) -> None:
        acl = DocumentBuilder(make_settings()).build({"id": "1"}).acl

        assert acl.public is True
        assert acl.readers == ()

    def test_row_acl_columns_applied(self, make_settings: SettingsFactory) -> None:
        settings = make_settings({"default_acl": {"mode": AclMode.APPEND.value, "readers_users": "u1"}})

        acl = DocumentBuilder(settings).build({"id": "1", "readers_users": "u2"}).acl

        assert acl.readers == (Principal.user("u2"), Principal.user("u1"))


class TestDefaultAclContainer:
    """Virtual container item for a named default ACL."""

    def test_named_policy_becomes_container(self, make_settings: SettingsFactory) -> None:
        settings = make_settings(
            {
                "default_acl": {
                    "mode": "fallback",
                    "public": False,
                    "name": "employees_default_acl",
                    "readers_users": "u1",
                    "denied_groups": "contractors",
                }
            }
        )

        container = DocumentBuilder(settings).default_acl_container()

        assert container is not None
        assert container.item_id == "datasources/employees/items/employees_default_acl"
        assert container.item_type is ItemType.VIRTUAL_CONTAINER_ITEM
        assert container.acl.readers == (Principal.user("u1"),)
        assert container.acl.denied_readers == (Principal.group("contractors"),)
        assert container.acl.public is False

    def test_unnamed_policy_has_no_container(self, make_settings: SettingsFactory) -> None:
        assert DocumentBuilder(make_settings()).default_acl_container() is None

    def test_mode_none_has_no_container(self, make_settings: SettingsFactory) -> None:
        settings = make_settings({"default_acl": {"mode": "none", "public": False, "name": "unused"}})

        assert DocumentBuilder(settings).default_acl_container() is None


class TestContent:
    """Blob and HTML template content."""

    def test_no_content_by_default(self, make_settings: SettingsFactory) -> None:
        assert DocumentBuilder(make_settings()).build({"id": "1"}).content is None

    def test_blob_column(self, make_settings: SettingsFactory) -> None:
        settings = make_settings({"database": {"blob_column": "photo"}})

        content = DocumentBuilder(settings).build({"id": "1", "photo": b"\x89PNG"}).content

        assert content is not None
        assert content.data == b"\x89PNG"
        assert content.content_format is ContentFormat.RAW

    def test_null_blob_means_no_content(self, make_settings: SettingsFactory) -> None:
        settings = make_settings({"database": {"blob_column": "photo"}})

        assert DocumentBuilder(settings).build({"id": "1", "photo": None}).content is None

    def test_html_from_content_columns(self, make_settings: SettingsFactory) -> None:
        settings = make_settings({"database": {"content_columns": "*"}, "content_template": {"title": "name"}})

        content = DocumentBuilder(settings).build({"id": "1", "name": "Jones <May>", "phone": "2134"}).content

        assert content is not None
        assert content.content_format is ContentFormat.HTML
        html = content.data.decode("utf-8")
        assert "<title>Jones &lt;May&gt;</title>" in html
        assert '<div id="phone">' in html
        assert "<h1>2134</h1>" in html
        assert 'lang="en-US"' in html

    def test_blob_column_takes_precedence(self, make_settings: SettingsFactory) -> None:
        settings = make_settings({"database": {"blob_column": "photo", "content_columns": "name"}})

        content = DocumentBuilder(settings).build({"id": "1", "name": "x", "photo": b"raw"}).content

        assert content is not None
        assert content.content_format is ContentFormat.RAW
