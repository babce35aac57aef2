"""Partition planning for parallel reads.

``_all_docs`` reads are split into contiguous row slices that independent
workers fetch with ``skip``/``limit``::

    total = 95, partitions = 4  ->  size = 24

    partition 0: skip  0, limit 24
    partition 1: skip 24, limit 24
    partition 2: skip 48, limit 24
    partition 3: skip 72, open ended   (absorbs rows added since the estimate)

Every other mode is read by a single partition that paginates internally. The
``_changes`` feed must be consumed in sequence order, so it is never split.
"""

import logging
import math
from collections.abc import Iterator
from dataclasses import dataclass

from cloudant_connector.config import ReadOptions
from cloudant_connector.query import AccessMode, NativeRequest

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Partition:
    """One independently readable slice of a query result.

    Attributes:
        index: Position of the partition in the plan
        request: Native request shared by all partitions of the plan
        skip: Rows of the result preceding this slice
        limit: Rows owned by this slice, None when open ended
        since: Changes feed sequence to resume from

    """

    index: int
    request: NativeRequest
    skip: int = 0
    limit: int | None = None
    since: str = "0"


@dataclass(frozen=True)
class PartitionPlan:
    """Ordered partitions whose union is the full query result."""

    partitions: tuple[Partition, ...]
    estimated_total: int | None = None

    def __len__(self) -> int:
        return len(self.partitions)

    def __iter__(self) -> Iterator[Partition]:
        return iter(self.partitions)


class PartitionPlanner:
    """Decides how many partitions a read uses and what each one owns."""

    def __init__(
        self,
        parallelism: int = 10,
        min_in_partition: int = 10,
        max_in_partition: int = -1,
    ) -> None:
        """Initialise the planner.

        Args:
            parallelism: Preferred number of partitions
            min_in_partition: Minimum rows a partition should own
            max_in_partition: Maximum rows a partition may own, -1 for no limit

        """
        self._parallelism = max(1, parallelism)
        self._min_in_partition = max(1, min_in_partition)
        self._max_in_partition = max_in_partition

    @classmethod
    def from_options(cls, options: ReadOptions) -> "PartitionPlanner":
        """Create a planner from read options."""
        return cls(
            parallelism=options.partitions,
            min_in_partition=options.min_in_partition,
            max_in_partition=options.max_in_partition,
        )

    def partition_count(self, total: int) -> int:
        """Return the number of partitions for ``total`` rows."""
        count = min(self._parallelism, max(1, math.ceil(total / self._min_in_partition)))
        if self._max_in_partition > 0:
            count = max(count, math.ceil(total / self._max_in_partition))
        return count

    def plan(self, request: NativeRequest, total: int | None) -> PartitionPlan:
        """Build the partition plan for a translated request.

        Args:
            request: Native request from the query translator
            total: Estimated result size, None when unknown

        Returns:
            Partition plan; empty when the request provably matches nothing

        """
        if request.empty:
            logger.info("Query range is empty, planning no partitions")
            return PartitionPlan((), total)

        if request.mode == AccessMode.CHANGES:
            if self._parallelism > 1:
                logger.debug(
                    "Changes feed is read sequentially, ignoring parallelism %d",
                    self._parallelism,
                )
            return PartitionPlan((Partition(0, request, since="0"),), total)

        if request.mode != AccessMode.ALL_DOCS or total is None or total <= 0:
            return PartitionPlan((Partition(0, request),), total)

        count = self.partition_count(total)
        size = math.ceil(total / count)
        partitions = tuple(
            Partition(
                index,
                request,
                skip=index * size,
                limit=size if index < count - 1 else None,
            )
            for index in range(count)
        )
        logger.info(
            "Planned %d partition(s) of ~%d row(s) for %d estimated row(s)",
            count,
            size,
            total,
        )
        return PartitionPlan(partitions, total)
