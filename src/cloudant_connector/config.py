"""Configuration for the Cloudant connector.

Connection settings are process-wide and set once per session; read and write
options are string-keyed bags supplied per operation. Both are validated into
frozen Pydantic models with an enumerated set of recognised keys.
"""

import json
import os
from typing import Any, ClassVar, Literal, Self

from typing_extensions import override

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from cloudant_connector.errors import ConnectorConfigError

# Prefixes accepted in front of option keys, e.g. "cloudant.host"
_KEY_PREFIXES = ("cloudant.", "jsonstore.rdd.")

# Reserved prefix of design document identifiers
DESIGN_DOC_PREFIX = "_design/"

Endpoint = Literal["_all_docs", "_changes"]


class BaseConnectorConfiguration(BaseModel):
    """Base class for all connector configurations and option bags.

    Features:
        - Pydantic validation for type safety
        - Immutable (frozen) so settings are read-only once an operation starts
        - Case-insensitive keys in camelCase or snake_case form
        - Unknown keys are rejected rather than silently ignored

    Example:
        ```python
        options = WriteOptions.from_properties({"createDBOnSave": "true"})
        assert options.create_db_on_save is True
        ```

    """

    model_config = ConfigDict(
        frozen=True,
        extra="forbid",
        validate_assignment=True,
    )

    _config_name: ClassVar[str] = "connector"

    @classmethod
    def _recognised_keys(cls) -> dict[str, str]:
        keys: dict[str, str] = {}
        for name in cls.model_fields:
            keys[name.lower()] = name
            keys[name.replace("_", "").lower()] = name
        return keys

    @classmethod
    def normalise_properties(cls, properties: dict[str, Any]) -> dict[str, Any]:
        """Map user supplied keys onto field names.

        Args:
            properties: Raw string-keyed option bag

        Returns:
            Dictionary keyed by canonical field names

        Raises:
            ConnectorConfigError: If any key is not recognised

        """
        recognised = cls._recognised_keys()
        normalised: dict[str, Any] = {}
        unknown: list[str] = []

        for key, value in properties.items():
            lookup = key.strip().lower()
            for prefix in _KEY_PREFIXES:
                lookup = lookup.removeprefix(prefix)
            name = recognised.get(lookup)
            if name is None:
                unknown.append(key)
                continue
            normalised[name] = value

        if unknown:
            raise ConnectorConfigError(
                f"Unknown {cls._config_name} option(s): {', '.join(sorted(unknown))}"
            )
        return normalised

    @classmethod
    def from_properties(cls, properties: dict[str, Any]) -> Self:
        """Create configuration from an option bag with validation.

        Args:
            properties: Raw string-keyed options

        Returns:
            Validated configuration instance

        Raises:
            ConnectorConfigError: If keys are unknown or values invalid

        """
        try:
            return cls.model_validate(cls.normalise_properties(properties))
        except ValueError as e:
            raise ConnectorConfigError(
                f"Invalid {cls._config_name} configuration: {e}"
            ) from e


class CloudantConnectionConfig(BaseConnectorConfiguration):
    """Connection settings for a Cloudant or CouchDB server."""

    _config_name: ClassVar[str] = "connection"

    protocol: Literal["http", "https"] = Field(
        default="https", description="URL scheme used to reach the server"
    )
    host: str = Field(description="Server host, optionally with port")
    username: str | None = Field(default=None, description="Basic auth username")
    password: str | None = Field(default=None, description="Basic auth password")
    endpoint: Endpoint = Field(
        default="_all_docs",
        description="Endpoint used for unfiltered scans: _all_docs or _changes",
    )
    request_timeout: float = Field(
        default=900.0, description="Per-request timeout in seconds", gt=0
    )
    retries: int = Field(
        default=3, description="Retries for transient transport failures", ge=0
    )
    backoff_factor: float = Field(
        default=0.5, description="Base delay in seconds for exponential backoff", ge=0
    )
    max_connections: int = Field(
        default=20, description="Size of the shared connection pool", gt=0
    )

    @field_validator("host")
    @classmethod
    def validate_host_not_empty(cls, v: str) -> str:
        """Validate that host is not empty and strip any scheme or slash."""
        v = v.strip().rstrip("/")
        for scheme in ("https://", "http://"):
            v = v.removeprefix(scheme)
        if not v:
            raise ValueError("Cloudant host is required")
        return v

    @model_validator(mode="after")
    def validate_credentials_pair(self) -> Self:
        """Validate that username and password are given together."""
        if (self.username is None) != (self.password is None):
            raise ValueError("username and password must be provided together")
        return self

    @property
    def base_url(self) -> str:
        """Return the server root URL."""
        return f"{self.protocol}://{self.host}"

    @classmethod
    @override
    def from_properties(cls, properties: dict[str, Any]) -> Self:
        """Create configuration from session properties with environment variable support.

        Environment variables take precedence over properties:
        - CLOUDANT_PROTOCOL, CLOUDANT_HOST, CLOUDANT_USERNAME,
          CLOUDANT_PASSWORD, CLOUDANT_ENDPOINT

        Args:
            properties: Raw connection properties

        Returns:
            Validated configuration object

        Raises:
            ConnectorConfigError: If validation fails or the host is missing

        """
        try:
            config_data = cls.normalise_properties(properties)

            for name in ("protocol", "host", "username", "password", "endpoint"):
                env_var = f"CLOUDANT_{name.upper()}"
                if env_var in os.environ:
                    config_data[name] = os.environ[env_var]

            if config_data.get("host") is None:
                raise ConnectorConfigError(
                    "Cloudant host is required (either 'host' property or CLOUDANT_HOST env var)"
                )

            return cls.model_validate(config_data)
        except ValueError as e:
            raise ConnectorConfigError(
                f"Invalid Cloudant connection configuration: {e}"
            ) from e


class ReadOptions(BaseConnectorConfiguration):
    """Options recognised by a read operation."""

    _config_name: ClassVar[str] = "read"

    index: str | None = Field(
        default=None, description="Search index path, e.g. _design/ddoc/_search/name"
    )
    view: str | None = Field(
        default=None,
        description="View path with optional query suffix, e.g. _design/ddoc/_view/v?reduce=true",
    )
    selector: dict[str, Any] | None = Field(
        default=None, description="Mango selector as JSON string or mapping"
    )
    schema_sample_size: int = Field(
        default=200,
        description="Documents sampled for schema inference, -1 samples all",
    )
    partitions: int = Field(default=10, description="Parallelism hint", gt=0)
    min_in_partition: int = Field(
        default=10, description="Minimum documents per partition", gt=0
    )
    max_in_partition: int = Field(
        default=-1, description="Maximum documents per partition, -1 for no limit"
    )
    page_size: int = Field(default=200, description="Rows fetched per request", gt=0)
    use_query: bool = Field(
        default=False, description="Push predicates down as a Mango query"
    )
    flatten_nested: bool = Field(
        default=False, description="Flatten nested objects to dotted column names"
    )

    @field_validator("index", "view")
    @classmethod
    def validate_design_path(cls, v: str | None) -> str | None:
        """Validate that index and view paths point into a design document."""
        if v is None or not v.strip():
            return None
        v = v.strip().lstrip("/")
        if not v.startswith(DESIGN_DOC_PREFIX):
            raise ValueError(f"path must start with '{DESIGN_DOC_PREFIX}': {v}")
        return v

    @field_validator("selector", mode="before")
    @classmethod
    def parse_selector(cls, v: Any) -> Any:
        """Parse a JSON selector string into a mapping."""
        if isinstance(v, str):
            if not v.strip():
                return None
            try:
                v = json.loads(v)
            except json.JSONDecodeError as e:
                raise ValueError(f"selector is not valid JSON: {e}") from e
        if v is not None and not isinstance(v, dict):
            raise ValueError("selector must be a JSON object")
        return v

    @field_validator("schema_sample_size", "max_in_partition")
    @classmethod
    def validate_positive_or_unbounded(cls, v: int) -> int:
        """Validate that a limit is positive or -1 for unbounded."""
        if v == -1 or v > 0:
            return v
        raise ValueError("value must be positive or -1")


class WriteOptions(BaseConnectorConfiguration):
    """Options recognised by a write operation."""

    _config_name: ClassVar[str] = "write"

    create_db_on_save: bool = Field(
        default=False, description="Create the target database when absent"
    )
    bulk_size: int = Field(
        default=200, description="Maximum documents per bulk write", gt=0
    )
    conflict_retries: int = Field(
        default=0,
        description="Re-submissions of conflicting documents with the current revision",
        ge=0,
    )
    keep_revisions: bool = Field(
        default=False,
        description="Send the _rev column so rows update documents at that revision",
    )
    partitions: int = Field(
        default=1, description="Parallel write workers", gt=0
    )
