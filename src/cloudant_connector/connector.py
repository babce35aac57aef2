"""Cloudant connector for tabular reads and writes.

This module provides:
- CloudantConnector: Schema discovery, partitioned reads and bulk writes
  against one Cloudant or CouchDB server
- Shared connection pool used by every partition worker of a session
"""

import logging
from collections.abc import Iterable, Iterator, Sequence
from itertools import islice
from typing import Any, Self

from typing_extensions import override

from cloudant_connector.base_connector import Connector, ReadPlan
from cloudant_connector.config import CloudantConnectionConfig, ReadOptions, WriteOptions
from cloudant_connector.errors import CloudantError, SchemaInferenceError
from cloudant_connector.filters import Predicate, Row, references
from cloudant_connector.models import WriteResult
from cloudant_connector.planner import Partition, PartitionPlanner
from cloudant_connector.query import AccessMode, QueryTranslator
from cloudant_connector.reader import DocumentFetcher, RowReader
from cloudant_connector.schema import SchemaInferencer, StructType
from cloudant_connector.transport import CloudantClient
from cloudant_connector.writer import OutgoingRow, RowWriter

logger = logging.getLogger(__name__)

_CONNECTOR_NAME = "cloudant"


class CloudantConnector(Connector):
    """Connector exposing Cloudant databases as tables.

    Example:
        >>> connector = CloudantConnector.from_properties({"host": "localhost:5984"})
        >>> options = ReadOptions()
        >>> schema = connector.infer_schema("n_airportcodemapping", options)
        >>> plan = connector.plan_read("n_airportcodemapping", schema, options)
        >>> rows = [row for p in plan.partitions for row in connector.read_partition(plan, p)]

    """

    def __init__(
        self,
        config: CloudantConnectionConfig,
        client: CloudantClient | None = None,
    ) -> None:
        """Initialise the connector with validated configuration.

        Args:
            config: Validated connection configuration
            client: Transport client to share; one is created when None

        """
        self._config = config
        self._client = client or CloudantClient(config)

    @classmethod
    @override
    def get_name(cls) -> str:
        """Return the name of the connector."""
        return _CONNECTOR_NAME

    @classmethod
    def from_properties(cls, properties: dict[str, Any]) -> Self:
        """Create a connector from raw connection properties.

        Raises:
            ConnectorConfigError: If validation fails or the host is missing

        """
        return cls(CloudantConnectionConfig.from_properties(properties))

    @property
    def client(self) -> CloudantClient:
        """Return the shared transport client."""
        return self._client

    def close(self) -> None:
        """Release the connection pool."""
        self._client.close()

    @override
    def infer_schema(self, database: str, options: ReadOptions) -> StructType:
        """Infer the row schema from a sample of the documents the read would return.

        The sample goes through the same access mode as the read itself, so a
        view, search index or selector shapes the schema.

        Args:
            database: Source database
            options: Read options

        Returns:
            Inferred row schema

        Raises:
            SchemaInferenceError: If sampling fails or yields no documents

        """
        translator = QueryTranslator()
        translation = translator.translate(
            translator.describe(options, self._config.endpoint)
        )
        sample_size = options.schema_sample_size
        limit = None if sample_size == -1 else sample_size
        fetcher = DocumentFetcher(self._client, database, options.page_size)
        partition = Partition(0, translation.request, limit=limit)

        logger.info(
            "Sampling %s document(s) of '%s' through %s",
            "all" if limit is None else limit,
            database,
            translation.request.mode,
        )
        try:
            sample = list(islice(fetcher.documents(partition), limit))
        except CloudantError as e:
            logger.error(f"Sampling '{database}' for schema inference failed: {e}")
            raise SchemaInferenceError(
                f"Cannot infer the schema of '{database}': {e}"
            ) from e
        finally:
            fetcher.cancel()

        return SchemaInferencer(options.flatten_nested).infer(sample)

    @override
    def plan_read(
        self,
        database: str,
        schema: StructType,
        options: ReadOptions,
        columns: Sequence[str] | None = None,
        predicates: Iterable[Predicate] = (),
    ) -> ReadPlan:
        """Translate filters into a native request and split it into partitions.

        Args:
            database: Source database
            schema: Row schema from inference
            options: Read options
            columns: Columns the host engine needs, None for all
            predicates: Filters the host engine would like pushed down

        Returns:
            Read plan; ``plan.residual`` must still be applied to produced rows

        Raises:
            QueryTranslationError: If a predicate or column is invalid

        """
        translator = QueryTranslator(schema)
        descriptor = translator.describe(
            options, self._config.endpoint, predicates, columns
        )
        translation = translator.translate(descriptor)

        read_schema = schema
        if columns is not None:
            needed = set(columns) | references(translation.residual)
            read_schema = StructType(
                tuple(field for field in schema.fields if field.name in needed)
            )

        total: int | None = None
        request = translation.request
        if request.mode == AccessMode.ALL_DOCS and not request.empty:
            try:
                total = self._client.database_info(database).doc_count
            except CloudantError as e:
                logger.warning(
                    "Could not size '%s', reading it as one partition: %s", database, e
                )

        partitions = PartitionPlanner.from_options(options).plan(request, total)
        return ReadPlan(
            database=database,
            schema=read_schema,
            translation=translation,
            partitions=partitions,
            page_size=options.page_size,
        )

    @override
    def read_partition(self, plan: ReadPlan, partition: Partition) -> Iterator[Row]:
        """Return a lazy reader over one partition of a plan."""
        return RowReader(
            self._client,
            plan.database,
            partition,
            plan.schema,
            page_size=plan.page_size,
        )

    @override
    def write(
        self,
        database: str,
        rows: Iterable[OutgoingRow],
        options: WriteOptions,
        schema: StructType | None = None,
        start_index: int = 0,
    ) -> WriteResult:
        """Persist rows as documents through bulk writes.

        Raises:
            WriteError: If any document failed to persist

        """
        writer = RowWriter(self._client, database, options, schema)
        return writer.write(rows, start_index=start_index)
