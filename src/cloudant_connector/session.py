"""In-process engine session driving the connector end to end.

This module provides:
- CloudantSession: Connection settings set once, then parallel partition
  reads with residual filtering and projection, and parallel saves
- ReadResult: Materialised rows of one read together with their schema

The session plays the part of the tabular engine: it hands columns and
predicates to the connector, runs one worker per partition on a thread pool
and applies whatever the store could not evaluate.
"""

import logging
import math
from collections.abc import Iterable, Iterator, Mapping, Sequence
from concurrent.futures import ThreadPoolExecutor
from types import TracebackType
from typing import Any, Self, TypeAlias

import httpx

from cloudant_connector.base_connector import ReadPlan
from cloudant_connector.config import ReadOptions, WriteOptions
from cloudant_connector.connector import CloudantConnector
from cloudant_connector.errors import WriteError
from cloudant_connector.factory import CloudantConnectorFactory
from cloudant_connector.filters import Predicate, Row, apply_filters
from cloudant_connector.models import WriteFailure, WriteResult
from cloudant_connector.planner import Partition
from cloudant_connector.schema import StructType
from cloudant_connector.writer import OutgoingRow

logger = logging.getLogger(__name__)

OptionBag: TypeAlias = Mapping[str, Any]


class ReadResult:
    """Rows returned by a read, all conforming to ``schema``."""

    def __init__(self, schema: StructType, rows: list[Row]) -> None:
        self._schema = schema
        self._rows = rows

    @property
    def schema(self) -> StructType:
        """Return the schema of the rows."""
        return self._schema

    @property
    def columns(self) -> list[str]:
        """Return the column names in order."""
        return self._schema.field_names

    @property
    def rows(self) -> list[Row]:
        """Return the rows."""
        return self._rows

    def count(self) -> int:
        """Return the number of rows."""
        return len(self._rows)

    def __len__(self) -> int:
        return len(self._rows)

    def __iter__(self) -> Iterator[Row]:
        return iter(self._rows)


def _read_options(options: ReadOptions | OptionBag | None) -> ReadOptions:
    if isinstance(options, ReadOptions):
        return options
    return ReadOptions.from_properties(dict(options or {}))


def _write_options(options: WriteOptions | OptionBag | None) -> WriteOptions:
    if isinstance(options, WriteOptions):
        return options
    return WriteOptions.from_properties(dict(options or {}))


def _split(rows: list[OutgoingRow], parts: int) -> list[tuple[int, list[OutgoingRow]]]:
    """Split rows into at most ``parts`` contiguous chunks with their start index."""
    if not rows:
        return []
    size = math.ceil(len(rows) / parts)
    return [(start, rows[start : start + size]) for start in range(0, len(rows), size)]


class CloudantSession:
    """Reads and saves tables against one Cloudant server.

    Example:
        >>> with CloudantSession({"cloudant.host": "localhost:5984"}) as session:
        ...     airports = session.read("n_airportcodemapping", {"selector": '{"airportName": "Moscow"}'})
        ...     session.save("airportcodemapping_df", airports, {"createDBOnSave": "true"})

    """

    def __init__(
        self,
        properties: OptionBag,
        transport: httpx.BaseTransport | None = None,
        max_workers: int | None = None,
    ) -> None:
        """Create the session and its shared connector.

        Args:
            properties: Connection properties, validated once for the session
            transport: Optional httpx transport, used to plug in test doubles
            max_workers: Thread pool size; defaults to the plan's partition count

        Raises:
            ConnectorConfigError: If the connection properties are invalid

        """
        self._connector: CloudantConnector = CloudantConnectorFactory(transport).create(
            dict(properties)
        )
        self._max_workers = max_workers

    @property
    def connector(self) -> CloudantConnector:
        """Return the connector shared by all operations of this session."""
        return self._connector

    def close(self) -> None:
        """Release the connection pool."""
        self._connector.close()

    def __enter__(self) -> Self:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.close()

    def schema(
        self, database: str, options: ReadOptions | OptionBag | None = None
    ) -> StructType:
        """Infer the schema a read of ``database`` would produce."""
        return self._connector.infer_schema(database, _read_options(options))

    def read(
        self,
        database: str,
        options: ReadOptions | OptionBag | None = None,
        columns: Sequence[str] | None = None,
        filters: Iterable[Predicate] = (),
    ) -> ReadResult:
        """Read a database as a table.

        Args:
            database: Source database
            options: Read options (``view``, ``index``, ``selector``, ...)
            columns: Columns to return, in order; None returns every column
            filters: Predicates every returned row satisfies

        Returns:
            Materialised rows and their schema

        Raises:
            SchemaInferenceError: If no schema can be inferred
            QueryTranslationError: If a filter or column is invalid
            ReadError: If a partition fails mid-stream

        """
        read_options = _read_options(options)
        predicates = tuple(filters)
        schema = self._connector.infer_schema(database, read_options)
        plan = self._connector.plan_read(
            database, schema, read_options, columns, predicates
        )

        rows = self._read_partitions(plan)
        if plan.residual:
            rows = list(apply_filters(rows, list(plan.residual)))

        output_schema = plan.schema
        if columns is not None:
            output_schema = schema.select(list(columns))
            names = output_schema.field_names
            rows = [{name: row[name] for name in names} for row in rows]

        logger.info(
            "Read %d row(s) from '%s' in %d partition(s)",
            len(rows),
            database,
            len(plan.partitions),
        )
        return ReadResult(output_schema, rows)

    def _read_partitions(self, plan: ReadPlan) -> list[Row]:
        if not plan.partitions:
            return []

        def read_one(partition: Partition) -> list[Row]:
            return list(self._connector.read_partition(plan, partition))

        workers = self._max_workers or len(plan.partitions)
        with ThreadPoolExecutor(max_workers=workers) as pool:
            results = list(pool.map(read_one, plan.partitions))
        return [row for partition_rows in results for row in partition_rows]

    def save(
        self,
        database: str,
        rows: ReadResult | Iterable[OutgoingRow],
        options: WriteOptions | OptionBag | None = None,
        schema: StructType | None = None,
    ) -> WriteResult:
        """Save rows as documents, one writer per output partition.

        Args:
            database: Target database
            rows: Rows to save; a ReadResult also supplies its schema
            options: Write options (``createDBOnSave``, ``bulkSize``, ...)
            schema: Schema of sequence rows

        Returns:
            Combined write summary

        Raises:
            WriteError: If any document failed; ``failures`` lists all of them

        """
        write_options = _write_options(options)
        if isinstance(rows, ReadResult):
            schema = schema or rows.schema
            rows = rows.rows
        chunks = _split(list(rows), write_options.partitions)

        def write_one(chunk: tuple[int, list[OutgoingRow]]) -> WriteResult | WriteError:
            start, chunk_rows = chunk
            try:
                return self._connector.write(
                    database, chunk_rows, write_options, schema, start_index=start
                )
            except WriteError as e:
                return e

        if len(chunks) > 1:
            workers = self._max_workers or len(chunks)
            with ThreadPoolExecutor(max_workers=workers) as pool:
                outcomes = list(pool.map(write_one, chunks))
        else:
            outcomes = [write_one(chunks[0] if chunks else (0, []))]

        merged = WriteResult(database=database)
        failures: list[WriteFailure] = []
        for outcome in outcomes:
            if isinstance(outcome, WriteError):
                failures.extend(outcome.failures)
                continue
            merged.written += outcome.written
            merged.batches += outcome.batches

        if failures:
            failures.sort(key=lambda failure: failure.index)
            raise WriteError(
                f"{len(failures)} document(s) failed to persist to '{database}'",
                failures=failures,
            )
        return merged
