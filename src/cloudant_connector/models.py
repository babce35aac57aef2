"""Pydantic models for store responses and write outcomes."""

from pydantic import BaseModel, ConfigDict, Field


class DatabaseInfo(BaseModel):
    """Subset of the ``GET /{db}`` response used for planning."""

    model_config = ConfigDict(extra="ignore")

    db_name: str = Field(description="Database name")
    doc_count: int = Field(
        default=0, description="Live documents, design documents included"
    )
    doc_del_count: int = Field(default=0, description="Deleted documents")
    update_seq: str | int | None = Field(
        default=None, description="Current update sequence token"
    )


class BulkDocResult(BaseModel):
    """Per-document entry of a ``_bulk_docs`` response."""

    model_config = ConfigDict(extra="ignore")

    id: str | None = Field(default=None, description="Document identifier")
    rev: str | None = Field(default=None, description="New revision on success")
    ok: bool | None = Field(default=None, description="Set on success")
    error: str | None = Field(default=None, description="CouchDB error code")
    reason: str | None = Field(default=None, description="CouchDB error reason")

    @property
    def succeeded(self) -> bool:
        """Return whether the document was persisted."""
        return self.error is None


class WriteFailure(BaseModel):
    """A document that could not be persisted."""

    index: int = Field(description="Position of the row in the written stream")
    id: str | None = Field(default=None, description="Document identifier, if known")
    error: str = Field(description="CouchDB error code, e.g. conflict")
    reason: str | None = Field(default=None, description="CouchDB error reason")


class WriteResult(BaseModel):
    """Outcome of one write operation."""

    database: str = Field(description="Target database")
    written: int = Field(default=0, description="Documents persisted")
    batches: int = Field(default=0, description="Bulk write calls issued")
    failures: list[WriteFailure] = Field(
        default_factory=list, description="Documents that ultimately failed"
    )

    @property
    def ok(self) -> bool:
        """Return whether every document was persisted."""
        return not self.failures
