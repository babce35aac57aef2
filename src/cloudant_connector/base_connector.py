"""Base classes for tabular connectors.

This module provides:
- Connector: Abstract contract between a host processing engine and a store
- ReadPlan: Described, partitioned read handed back to the host engine

The host engine consumes a connector through three calls: schema discovery,
a partitioned read (plan, then one row-producing call per partition) and a
row write.
"""

import abc
import logging
from collections.abc import Iterable, Iterator, Sequence
from dataclasses import dataclass

from cloudant_connector.config import ReadOptions, WriteOptions
from cloudant_connector.filters import Predicate, Row
from cloudant_connector.models import WriteResult
from cloudant_connector.planner import Partition, PartitionPlan
from cloudant_connector.query import Translation
from cloudant_connector.schema.types import StructType
from cloudant_connector.writer import OutgoingRow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReadPlan:
    """A translated and partitioned read.

    Attributes:
        database: Source database
        schema: Schema of the rows each partition produces
        translation: Native request with pushed and residual predicates
        partitions: Partition plan
        page_size: Rows requested per call

    """

    database: str
    schema: StructType
    translation: Translation
    partitions: PartitionPlan
    page_size: int = 200

    @property
    def residual(self) -> tuple[Predicate, ...]:
        """Return predicates the host engine must apply to produced rows."""
        return self.translation.residual

    @property
    def columns(self) -> list[str]:
        """Return the columns each produced row carries."""
        return self.schema.field_names


class Connector(abc.ABC):
    """Reads documents as rows and writes rows as documents for a host engine.

    Connectors are the adapters between a tabular engine and a vendor
    specific store. They discover a schema, translate predicates into native
    queries, split reads into independent partitions and persist rows.
    """

    @classmethod
    @abc.abstractmethod
    def get_name(cls) -> str:
        """Return the name of the connector."""

    @abc.abstractmethod
    def infer_schema(self, database: str, options: ReadOptions) -> StructType:
        """Discover the row schema of a read.

        Raises:
            SchemaInferenceError: If no schema can be inferred

        """

    @abc.abstractmethod
    def plan_read(
        self,
        database: str,
        schema: StructType,
        options: ReadOptions,
        columns: Sequence[str] | None = None,
        predicates: Iterable[Predicate] = (),
    ) -> ReadPlan:
        """Translate and partition a read.

        Raises:
            QueryTranslationError: If predicates or columns are invalid

        """

    @abc.abstractmethod
    def read_partition(self, plan: ReadPlan, partition: Partition) -> Iterator[Row]:
        """Return the lazy row sequence of one partition.

        Raises:
            ReadError: While iterating, if the store fails mid-stream

        """

    @abc.abstractmethod
    def write(
        self,
        database: str,
        rows: Iterable[OutgoingRow],
        options: WriteOptions,
        schema: StructType | None = None,
        start_index: int = 0,
    ) -> WriteResult:
        """Persist rows as documents.

        Raises:
            WriteError: If any document failed to persist

        """
