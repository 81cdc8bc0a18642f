# src/dbconnector/core/config.py
"""Connector settings: pydantic models plus Dynaconf loading.

Every section is a frozen model that rejects unknown keys, so a typo in the
YAML fails at load time instead of being silently ignored. Column lists
accept either a YAML list or a comma-separated string.
"""

import os
import re
import string
from pathlib import Path
from typing import Annotated, Any

import yaml
from pydantic import BaseModel, BeforeValidator, Field, field_validator, model_validator
from sqlalchemy.engine import URL, make_url

from dbconnector.contracts import (
    AclMode,
    AclPolicy,
    FieldKind,
    IndexingBackend,
    ItemType,
    PaginationMode,
    Principal,
)


def _split_comma_list(value: Any) -> Any:
    """Accept "id, name" as well as ["id", "name"] for list-valued keys.

    Environment variable overrides can only carry strings, so every column
    list also takes the comma-separated form.
    """
    if isinstance(value, str):
        return [part.strip() for part in value.split(",") if part.strip()]
    return value


CommaList = Annotated[list[str], BeforeValidator(_split_comma_list)]


class RunSettings(BaseModel):
    """Connector lifecycle settings.

    Example YAML:
        connector:
          run_once: false
          checkpoint_directory: ./state
    """

    model_config = {"frozen": True, "extra": "forbid"}

    run_once: bool = Field(
        default=False,
        description="Run a single full traversal and exit",
    )
    checkpoint_directory: Path | None = Field(
        default=None,
        description="Directory holding the checkpoint database (in-memory when unset)",
    )

    def checkpoint_url(self) -> str:
        """SQLAlchemy URL of the checkpoint database."""
        if self.checkpoint_directory is None:
            return "sqlite:///:memory:"
        return f"sqlite:///{self.checkpoint_directory / 'checkpoint.db'}"


class DatabaseSettings(BaseModel):
    """Relational source settings.

    Example YAML:
        database:
          url: sqlite:///./employees.db
          all_records_sql: "SELECT id, name, phone FROM employees"
          all_columns: id, name, phone
          unique_key_columns: id
          incremental_update_sql: "SELECT id, name, phone, modified FROM employees WHERE modified > ?"
          incremental_watermark_column: modified
    """

    model_config = {"frozen": True, "extra": "forbid"}

    url: str = Field(description="SQLAlchemy database URL")
    user: str | None = Field(default=None, description="Overrides the URL username")
    password: str | None = Field(default=None, description="Overrides the URL password")
    all_records_sql: str = Field(description="Full-snapshot query")
    all_columns: CommaList = Field(default_factory=list, description="Output column order")
    pagination: PaginationMode = Field(default=PaginationMode.NONE)
    page_size: int | None = Field(
        default=None,
        gt=0,
        description="Rows per page for offset pagination; a shorter page ends the traversal",
    )
    incremental_update_sql: str | None = Field(
        default=None,
        description="Changed-rows query with one watermark placeholder",
    )
    incremental_watermark_column: str | None = Field(
        default=None,
        description="Column whose maximum value advances the watermark (traversal start time when unset)",
    )
    unique_key_columns: CommaList = Field(description="Columns forming the item identity")
    view_url_columns: CommaList = Field(default_factory=list)
    blob_column: str | None = Field(default=None, description="Column streamed as item content")
    content_columns: CommaList = Field(
        default_factory=list,
        description="Columns rendered into HTML content ('*' = all_columns)",
    )

    @field_validator("unique_key_columns")
    @classmethod
    def validate_unique_keys_not_empty(cls, v: list[str]) -> list[str]:
        """At least one unique key column is required."""
        if not v:
            raise ValueError("at least one unique key column is required")
        return v

    @model_validator(mode="after")
    def validate_statements(self) -> "DatabaseSettings":
        """Check placeholder counts at config time."""
        from dbconnector.contracts import QueryConfigurationError
        from dbconnector.plugins.sources.statements import prepare_statement

        try:
            if self.pagination is PaginationMode.OFFSET:
                prepare_statement(self.all_records_sql, "offset")
            else:
                prepare_statement(self.all_records_sql, None)
            if self.incremental_update_sql is not None:
                prepare_statement(self.incremental_update_sql, "watermark")
        except QueryConfigurationError as e:
            raise ValueError(str(e)) from e
        return self

    def sqlalchemy_url(self) -> URL:
        """Database URL with user/password overrides applied."""
        url = make_url(self.url)
        if self.user is not None:
            url = url.set(username=self.user)
        if self.password is not None:
            url = url.set(password=self.password)
        return url

    def resolved_content_columns(self) -> list[str]:
        if self.content_columns == ["*"]:
            return list(self.all_columns)
        return list(self.content_columns)


class UrlSettings(BaseModel):
    """Source repository URL construction.

    With a format, positional placeholders ({0}, {1}, ...) are filled with
    the column values. Without one, the column values are concatenated.
    """

    model_config = {"frozen": True, "extra": "forbid"}

    columns: CommaList = Field(default_factory=list)
    format: str | None = None

    @field_validator("format")
    @classmethod
    def validate_format_syntax(cls, v: str | None) -> str | None:
        """Only positional placeholders are allowed."""
        if v is None:
            return v
        try:
            fields = [name for _, name, _, _ in string.Formatter().parse(v) if name is not None]
        except ValueError as e:
            raise ValueError(f"Invalid url.format: {e}") from e
        for name in fields:
            if not name.isdigit():
                raise ValueError(f"url.format placeholders must be positional ({{0}}, {{1}}, ...), got {{{name}}}")
        return v

    def max_placeholder_index(self) -> int:
        """Highest positional index used by the format (-1 when none)."""
        if self.format is None:
            return -1
        indexes = [int(name) for _, name, _, _ in string.Formatter().parse(self.format) if name]
        return max(indexes, default=-1)


class FieldSource(BaseModel):
    """Resolution rule for one item metadata attribute.

    The column value wins when non-null, then the default, else unset.
    """

    model_config = {"frozen": True, "extra": "forbid"}

    field: str | None = Field(default=None, description="Source column label")
    default_value: str | None = Field(default=None, description="Used when the column value is null")


class ItemMetadataSettings(BaseModel):
    """Per-attribute metadata rules.

    Example YAML:
        item_metadata:
          title:
            field: title
            default_value: Untitled
          content_language:
            default_value: en-US
    """

    model_config = {"frozen": True, "extra": "forbid"}

    title: FieldSource = Field(default_factory=FieldSource)
    source_repository_url: FieldSource = Field(default_factory=FieldSource)
    content_language: FieldSource = Field(default_factory=FieldSource)
    create_time: FieldSource = Field(default_factory=FieldSource)
    update_time: FieldSource = Field(default_factory=FieldSource)
    object_type: FieldSource = Field(default_factory=FieldSource)
    item_type: ItemType = ItemType.CONTENT_ITEM


class StructuredDataSettings(BaseModel):
    """Structured data fields emitted per item (name -> kind).

    Only configured names are emitted; other row columns are ignored.
    """

    model_config = {"frozen": True, "extra": "forbid"}

    fields: dict[str, FieldKind] = Field(default_factory=dict)


class ContentTemplateSettings(BaseModel):
    """HTML content template settings."""

    model_config = {"frozen": True, "extra": "forbid"}

    title: str | None = Field(default=None, description="Column rendered as the HTML title")


class DefaultAclSettings(BaseModel):
    """Default ACL applied alongside per-row ACL columns.

    Example YAML:
        default_acl:
          mode: fallback
          public: false
          readers_users: google:jdoe@example.com
    """

    model_config = {"frozen": True, "extra": "forbid"}

    mode: AclMode = AclMode.NONE
    public: bool = False
    name: str | None = None
    readers_users: CommaList = Field(default_factory=list)
    readers_groups: CommaList = Field(default_factory=list)
    denied_users: CommaList = Field(default_factory=list)
    denied_groups: CommaList = Field(default_factory=list)

    @model_validator(mode="after")
    def validate_policy_has_readers(self) -> "DefaultAclSettings":
        """A default ACL that grants nothing is a configuration mistake."""
        if self.mode is not AclMode.NONE and not self.public and not (self.readers_users or self.readers_groups):
            raise ValueError(f"default_acl mode '{self.mode}' requires public=true or at least one reader")
        return self

    def to_policy(self) -> AclPolicy:
        return AclPolicy(
            mode=self.mode,
            public=self.public,
            readers=tuple(Principal.user(u) for u in self.readers_users)
            + tuple(Principal.group(g) for g in self.readers_groups),
            denied_readers=tuple(Principal.user(u) for u in self.denied_users)
            + tuple(Principal.group(g) for g in self.denied_groups),
            name=self.name,
        )


class ScheduleSettings(BaseModel):
    """Traversal schedules.

    Incremental traversal runs only when its interval is configured.
    """

    model_config = {"frozen": True, "extra": "forbid"}

    traversal_interval_seconds: float = Field(default=86400.0, gt=0)
    incremental_traversal_interval_seconds: float | None = Field(default=None, gt=0)


class RetrySettings(BaseModel):
    """Retry policy for indexing operations."""

    model_config = {"frozen": True, "extra": "forbid"}

    max_attempts: int = Field(default=3, ge=1)
    initial_delay_seconds: float = Field(default=1.0, gt=0)
    max_delay_seconds: float = Field(default=60.0, gt=0)
    exponential_base: float = Field(default=2.0, gt=1)


class IndexingSettings(BaseModel):
    """Indexing service settings.

    Example YAML:
        indexing:
          backend: http
          base_url: https://index.example.com/v1
          api_key: ${INDEX_API_KEY}
    """

    model_config = {"frozen": True, "extra": "forbid"}

    backend: IndexingBackend = IndexingBackend.MEMORY
    base_url: str | None = None
    api_key: str | None = None
    timeout_seconds: float = Field(default=30.0, gt=0)
    retry: RetrySettings = Field(default_factory=RetrySettings)

    @model_validator(mode="after")
    def validate_http_has_base_url(self) -> "IndexingSettings":
        if self.backend is IndexingBackend.HTTP and not self.base_url:
            raise ValueError("indexing.base_url is required for the http backend")
        return self


class ConnectorSettings(BaseModel):
    """Top-level connector configuration."""

    model_config = {"frozen": True, "extra": "forbid"}

    source_id: str = Field(min_length=1, description="Data source identifier scoping item ids")
    connector: RunSettings = Field(default_factory=RunSettings)
    database: DatabaseSettings
    url: UrlSettings = Field(default_factory=UrlSettings)
    item_metadata: ItemMetadataSettings = Field(default_factory=ItemMetadataSettings)
    structured_data: StructuredDataSettings = Field(default_factory=StructuredDataSettings)
    content_template: ContentTemplateSettings = Field(default_factory=ContentTemplateSettings)
    default_acl: DefaultAclSettings = Field(default_factory=DefaultAclSettings)
    schedule: ScheduleSettings = Field(default_factory=ScheduleSettings)
    indexing: IndexingSettings = Field(default_factory=IndexingSettings)

    @property
    def url_columns(self) -> list[str]:
        """URL source columns: url.columns, else view_url_columns, else unique keys."""
        return list(self.url.columns or self.database.view_url_columns or self.database.unique_key_columns)

    @property
    def incremental_enabled(self) -> bool:
        return (
            self.schedule.incremental_traversal_interval_seconds is not None
            and self.database.incremental_update_sql is not None
        )

    @model_validator(mode="after")
    def validate_url_format_columns(self) -> "ConnectorSettings":
        """Every url.format placeholder must have a column to fill it."""
        highest = self.url.max_placeholder_index()
        if highest >= len(self.url_columns):
            raise ValueError(
                f"url.format uses placeholder {{{highest}}} but only {len(self.url_columns)} URL column(s) are configured"
            )
        return self

    @model_validator(mode="after")
    def validate_incremental_schedule(self) -> "ConnectorSettings":
        """An incremental interval without an incremental query cannot run."""
        if self.schedule.incremental_traversal_interval_seconds is not None and self.database.incremental_update_sql is None:
            raise ValueError("schedule.incremental_traversal_interval_seconds requires database.incremental_update_sql")
        return self


# ${NAME} or ${NAME:-fallback}
_ENV_REFERENCE = re.compile(r"\$\{(?P<name>[A-Z_][A-Z0-9_]*)(?::-(?P<fallback>[^}]*))?\}")


def _substitute_env(match: re.Match[str]) -> str:
    value = os.environ.get(match["name"])
    if value is not None:
        return value
    if match["fallback"] is not None:
        return match["fallback"]
    # Left as is; validation reports the unexpanded reference
    return match.group(0)


def _expand_env_vars(node: Any) -> Any:
    """Expand ${NAME} references in every string of a nested config tree."""
    if isinstance(node, str):
        return _ENV_REFERENCE.sub(_substitute_env, node)
    if isinstance(node, dict):
        return {key: _expand_env_vars(value) for key, value in node.items()}
    if isinstance(node, list):
        return [_expand_env_vars(item) for item in node]
    return node


_SECRET_KEYS = frozenset({"password", "api_key", "token", "secret"})
_REDACTED = "***"


def _redact_secrets(node: Any) -> Any:
    if isinstance(node, dict):
        return {
            key: _REDACTED if key in _SECRET_KEYS and value is not None else _redact_secrets(value)
            for key, value in node.items()
        }
    if isinstance(node, list):
        return [_redact_secrets(item) for item in node]
    return node


def load_settings(config_path: Path) -> ConnectorSettings:
    """Load and validate a settings file.

    Values are layered by Dynaconf, highest priority first:
    1. ``DBCONNECTOR_*`` environment variables, ``__`` for nesting
       (``DBCONNECTOR_DATABASE__PASSWORD``)
    2. The YAML file, after ``${VAR}`` / ``${VAR:-default}`` expansion
    3. Model defaults

    Raises:
        FileNotFoundError: If config_path does not exist
        yaml.YAMLError: If the file is not valid YAML
        ValidationError: If the merged settings are invalid
    """
    from dynaconf import Dynaconf

    if not config_path.is_file():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    # Parse once with PyYAML so syntax errors keep their type and position
    with config_path.open(encoding="utf-8") as f:
        yaml.safe_load(f)

    layered = Dynaconf(
        envvar_prefix="DBCONNECTOR",
        settings_files=[str(config_path)],
        environments=False,
        load_dotenv=False,
        merge_enabled=True,
    )
    dynaconf_keys = {"LOAD_DOTENV", "ENVIRONMENTS", "SETTINGS_FILES"}
    raw = {key.lower(): value for key, value in layered.as_dict().items() if key not in dynaconf_keys}
    return ConnectorSettings(**_expand_env_vars(raw))


def resolve_config(settings: ConnectorSettings) -> dict[str, Any]:
    """Settings as a plain dict for display, with secrets redacted.

    The database URL keeps its shape but not its password.
    """
    resolved: dict[str, Any] = _redact_secrets(settings.model_dump(mode="json"))
    resolved["database"]["url"] = make_url(settings.database.url).render_as_string(hide_password=True)
    return resolved
