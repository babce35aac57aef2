"""Bulk persistence of tabular rows as documents."""

import logging
from collections.abc import Iterable, Mapping, Sequence
from typing import Any, TypeAlias

from cloudant_connector.config import WriteOptions
from cloudant_connector.errors import CloudantError, WriteError
from cloudant_connector.models import BulkDocResult, WriteFailure, WriteResult
from cloudant_connector.schema.types import StructType
from cloudant_connector.transport import CloudantClient

logger = logging.getLogger(__name__)

_CONFLICT = "conflict"

OutgoingRow: TypeAlias = Mapping[str, Any] | Sequence[Any]


def row_to_document(row: OutgoingRow, schema: StructType | None = None) -> dict[str, Any]:
    """Convert a row into a JSON document.

    Mapping rows are used as they are; sequence rows are zipped with the
    schema's field names. ``None`` values are omitted, so a row without an
    ``_id`` gets a store-assigned identifier. Flattened columns are written
    back to their nested location.

    Raises:
        ValueError: If a sequence row has no schema or the wrong arity

    """
    if isinstance(row, Mapping):
        items = list(row.items())
    else:
        if schema is None:
            raise ValueError("Sequence rows need a schema to name their fields")
        items = list(zip(schema.field_names, row, strict=True))

    document: dict[str, Any] = {}
    for name, value in items:
        if value is None:
            continue
        path = (
            schema[name].source_path
            if schema is not None and name in schema
            else (name,)
        )
        target = document
        for key in path[:-1]:
            target = target.setdefault(key, {})
        target[path[-1]] = value
    return document


class RowWriter:
    """Buffers rows into bulk writes against one database.

    Example:
        >>> writer = RowWriter(client, "n_flight2", WriteOptions(create_db_on_save=True))
        >>> result = writer.write([{"flightSegmentId": "AA142"}])
        >>> result.written
        1

    """

    def __init__(
        self,
        client: CloudantClient,
        database: str,
        options: WriteOptions | None = None,
        schema: StructType | None = None,
    ) -> None:
        """Initialise the writer.

        Args:
            client: Shared transport client
            database: Target database
            options: Write options; defaults apply when None
            schema: Schema of outgoing rows, required for sequence rows

        """
        self._client = client
        self._database = database
        self._options = options or WriteOptions()
        self._schema = schema
        self._database_ready = False
        self._cancelled = False

    def cancel(self) -> None:
        """Stop writing before the next batch; flushed batches stay persisted."""
        self._cancelled = True

    def write(self, rows: Iterable[OutgoingRow], start_index: int = 0) -> WriteResult:
        """Persist rows, one bulk call per batch.

        Args:
            rows: Outgoing rows
            start_index: Position of the first row in the overall stream,
                used to report failures of one output partition globally

        Returns:
            Write summary with the number of documents persisted

        Raises:
            WriteError: If any document failed; ``failures`` lists each one.
                Batches flushed before the failure stay persisted.

        """
        result = WriteResult(database=self._database)
        batch: list[dict[str, Any]] = []
        offset = 0

        for index, row in enumerate(rows, start=start_index):
            if self._cancelled:
                logger.warning(
                    "Write to '%s' cancelled after %d batch(es)",
                    self._database,
                    result.batches,
                )
                batch = []
                break
            if not batch:
                offset = index
            document = row_to_document(row, self._schema)
            if not self._options.keep_revisions:
                # A revision read from another database conflicts on insert
                document.pop("_rev", None)
            batch.append(document)
            if len(batch) >= self._options.bulk_size:
                self._flush(batch, offset, result)
                batch = []

        if batch:
            self._flush(batch, offset, result)
        elif not result.batches and not self._cancelled:
            # Saving no rows still leaves an existing (possibly empty) database
            self._ensure_database()

        logger.info(
            "Wrote %d document(s) to '%s' in %d batch(es), %d failure(s)",
            result.written,
            self._database,
            result.batches,
            len(result.failures),
        )
        if result.failures:
            raise WriteError(
                f"{len(result.failures)} document(s) failed to persist to '{self._database}'",
                failures=result.failures,
            )
        return result

    def _ensure_database(self) -> None:
        if self._database_ready:
            return
        if self._options.create_db_on_save and not self._client.database_exists(
            self._database
        ):
            # Losing a creation race to another worker is fine
            self._client.create_database(self._database)
        self._database_ready = True

    def _flush(
        self, batch: list[dict[str, Any]], offset: int, result: WriteResult
    ) -> None:
        try:
            self._ensure_database()
            outcomes = self._client.bulk_docs(self._database, batch)
        except CloudantError as e:
            failures = [
                WriteFailure(
                    index=offset + position,
                    id=doc.get("_id"),
                    error=getattr(e, "error", None) or type(e).__name__,
                    reason=str(e),
                )
                for position, doc in enumerate(batch)
            ]
            result.failures.extend(failures)
            logger.error(f"Bulk write to '{self._database}' failed: {e}")
            raise WriteError(
                f"Bulk write of {len(batch)} document(s) to '{self._database}' failed: {e}",
                failures=result.failures,
            ) from e

        result.batches += 1
        pending = self._retry_conflicts(batch, outcomes)

        for position, outcome in enumerate(pending):
            if outcome.succeeded:
                result.written += 1
                continue
            result.failures.append(
                WriteFailure(
                    index=offset + position,
                    id=outcome.id or batch[position].get("_id"),
                    error=outcome.error or "unknown_error",
                    reason=outcome.reason,
                )
            )

    def _retry_conflicts(
        self, batch: list[dict[str, Any]], outcomes: list[BulkDocResult]
    ) -> list[BulkDocResult]:
        """Re-submit conflicting documents with their current revision.

        Returns:
            Final outcome per document of the batch, in batch order

        """
        final = list(outcomes)
        for attempt in range(self._options.conflict_retries):
            conflicted = [
                position
                for position, outcome in enumerate(final)
                if outcome.error == _CONFLICT and batch[position].get("_id")
            ]
            if not conflicted:
                break

            logger.warning(
                "Retrying %d conflicting document(s) in '%s' (attempt %d/%d)",
                len(conflicted),
                self._database,
                attempt + 1,
                self._options.conflict_retries,
            )
            try:
                for position in conflicted:
                    current = self._client.get_document(
                        self._database, batch[position]["_id"]
                    )
                    document = dict(batch[position])
                    if current is None:
                        document.pop("_rev", None)
                    else:
                        document["_rev"] = current["_rev"]
                    batch[position] = document

                retried = self._client.bulk_docs(
                    self._database, [batch[position] for position in conflicted]
                )
            except CloudantError as e:
                # Conflicts stay reported as failures
                logger.warning(
                    "Conflict retry against '%s' failed: %s", self._database, e
                )
                break

            for position, outcome in zip(conflicted, retried, strict=True):
                final[position] = outcome
        return final
