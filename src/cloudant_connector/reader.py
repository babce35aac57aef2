"""Per-partition document fetching and row decoding.

This module provides:
- DocumentFetcher: Mode-specific pagination over _all_docs, _find, _changes,
  views and search indexes, yielding live (non-deleted, non-design) documents
- RowReader: Lazy, forward-only, single-pass iterator of rows for one partition
- decode_document: Projection of a JSON document onto a row schema
"""

import json
import logging
from collections.abc import Iterator
from typing import Any, TypeAlias

from cloudant_connector.config import DESIGN_DOC_PREFIX
from cloudant_connector.errors import CloudantError, ReadError
from cloudant_connector.filters import Row
from cloudant_connector.planner import Partition
from cloudant_connector.query import AccessMode
from cloudant_connector.schema.types import StructType, coerce_value
from cloudant_connector.transport import CloudantClient

logger = logging.getLogger(__name__)

# Cloudant rejects search pages larger than this
_MAX_SEARCH_LIMIT = 200

Document: TypeAlias = dict[str, Any]


def is_live_document(document: Any) -> bool:
    """Return whether a fetched document is a data document."""
    if not isinstance(document, dict):
        return False
    if document.get("_deleted") is True:
        return False
    return not str(document.get("_id", "")).startswith(DESIGN_DOC_PREFIX)


def _lookup(document: Document, path: tuple[str, ...]) -> Any:
    value: Any = document
    for key in path:
        if not isinstance(value, dict):
            return None
        value = value.get(key)
    return value


def decode_document(document: Document, schema: StructType) -> Row:
    """Project a document onto ``schema``.

    Missing fields become None, undeclared fields are dropped and values are
    coerced to their column type.
    """
    return {
        field.name: coerce_value(_lookup(document, field.source_path), field.data_type)
        for field in schema.fields
    }


def _view_row_document(row: dict[str, Any]) -> Document:
    doc = row.get("doc")
    if isinstance(doc, dict):
        return doc
    value = row.get("value")
    if isinstance(value, dict):
        document = dict(value)
        if row.get("id") is not None:
            document.setdefault("_id", row["id"])
        return document
    # Scalar map or reduce output
    document = {"key": row.get("key"), "value": value}
    if row.get("id") is not None:
        document["_id"] = row["id"]
    return document


class DocumentFetcher:
    """Paginates one partition of a native request."""

    def __init__(
        self,
        client: CloudantClient,
        database: str,
        page_size: int = 200,
    ) -> None:
        """Initialise the fetcher.

        Args:
            client: Shared transport client
            database: Database to read
            page_size: Rows requested per call

        """
        self._client = client
        self._database = database
        self._page_size = page_size
        self._cancelled = False

    def cancel(self) -> None:
        """Stop fetching at the next page boundary."""
        self._cancelled = True

    def documents(self, partition: Partition) -> Iterator[Document]:
        """Yield the live documents of a partition in store order."""
        request = partition.request
        if request.empty:
            return

        match request.mode:
            case AccessMode.ALL_DOCS:
                pages = self._all_docs(partition)
            case AccessMode.SELECTOR:
                pages = self._find(partition)
            case AccessMode.CHANGES:
                pages = self._changes(partition)
            case AccessMode.VIEW:
                pages = self._view(partition)
            case AccessMode.SEARCH:
                pages = self._search(partition)
            case _:
                raise ReadError(f"Unsupported access mode: {request.mode}")

        for document in pages:
            if is_live_document(document):
                yield document

    def _page_limit(self, remaining: int | None) -> int:
        return self._page_size if remaining is None else min(self._page_size, remaining)

    def _all_docs(self, partition: Partition) -> Iterator[Any]:
        params = dict(partition.request.params)
        remaining = partition.limit
        last_key: Any = None
        first = True

        while not self._cancelled and (remaining is None or remaining > 0):
            limit = self._page_limit(remaining)
            query = {**params, "limit": limit}
            if first:
                if partition.skip:
                    query["skip"] = partition.skip
            else:
                # Keyset pagination: resume after the last key of the previous page
                query["startkey"] = json.dumps(last_key)
                query["skip"] = 1

            payload = self._client.all_docs(self._database, query)
            rows = payload.get("rows", [])
            logger.debug(
                "Partition %d: fetched %d _all_docs row(s)", partition.index, len(rows)
            )
            for row in rows:
                yield row.get("doc")

            if remaining is not None:
                remaining -= len(rows)
            if len(rows) < limit:
                return
            last_key = rows[-1]["key"]
            first = False

    def _find(self, partition: Partition) -> Iterator[Any]:
        body = dict(partition.request.body or {})
        remaining = partition.limit
        bookmark: str | None = None
        if partition.skip:
            body["skip"] = partition.skip

        while not self._cancelled and (remaining is None or remaining > 0):
            limit = self._page_limit(remaining)
            query = {**body, "limit": limit}
            if bookmark is not None:
                query["bookmark"] = bookmark
                query.pop("skip", None)

            payload = self._client.find(self._database, query)
            docs = payload.get("docs", [])
            logger.debug("Partition %d: fetched %d _find doc(s)", partition.index, len(docs))
            yield from docs

            if remaining is not None:
                remaining -= len(docs)
            bookmark = payload.get("bookmark")
            if len(docs) < limit or not bookmark:
                return

    def _changes(self, partition: Partition) -> Iterator[Any]:
        params = dict(partition.request.params)
        body = partition.request.body
        since = partition.since

        while not self._cancelled:
            query = {**params, "limit": self._page_size, "since": since}
            payload = self._client.changes(self._database, query, body)
            results = payload.get("results", [])
            logger.debug(
                "Partition %d: fetched %d change(s) since %s",
                partition.index,
                len(results),
                since,
            )
            for change in results:
                if change.get("deleted"):
                    continue
                yield change.get("doc")

            since = str(payload.get("last_seq", since))
            if not results or payload.get("pending") == 0 or len(results) < self._page_size:
                return

    def _view(self, partition: Partition) -> Iterator[Any]:
        params = dict(partition.request.params)
        # A limit or skip in the view path bounds the whole result
        user_limit = params.pop("limit", None)
        skip = int(params.pop("skip", 0)) + partition.skip
        remaining = int(user_limit) if user_limit is not None else partition.limit
        path = partition.request.path or ""

        while not self._cancelled and (remaining is None or remaining > 0):
            limit = self._page_limit(remaining)
            query = {**params, "limit": limit, "skip": skip}
            payload = self._client.view(self._database, path, query)
            rows = payload.get("rows", [])
            logger.debug("Partition %d: fetched %d view row(s)", partition.index, len(rows))
            for row in rows:
                yield _view_row_document(row)

            skip += len(rows)
            if remaining is not None:
                remaining -= len(rows)
            if len(rows) < limit:
                return

    def _search(self, partition: Partition) -> Iterator[Any]:
        params = dict(partition.request.params)
        path = partition.request.path or ""
        bookmark: str | None = None
        limit = min(self._page_size, _MAX_SEARCH_LIMIT)

        while not self._cancelled:
            query = {**params, "limit": limit}
            if bookmark is not None:
                query["bookmark"] = bookmark

            payload = self._client.search(self._database, path, query)
            rows = payload.get("rows", [])
            logger.debug(
                "Partition %d: fetched %d search row(s)", partition.index, len(rows)
            )
            for row in rows:
                doc = row.get("doc")
                if isinstance(doc, dict):
                    yield doc
                else:
                    yield {"_id": row.get("id"), **row.get("fields", {})}

            bookmark = payload.get("bookmark")
            if len(rows) < limit or not bookmark:
                return


class RowReader:
    """Lazy row sequence of one partition.

    The reader is an iterator, not an iterable: it is consumed once and cannot
    be restarted. If a request fails, rows produced so far remain delivered,
    the failure is raised as ReadError, and the reader is exhausted afterwards.

    Example:
        >>> reader = RowReader(client, "n_flight", plan.partitions[0], schema)
        >>> for row in reader:
        ...     print(row["_id"])

    """

    def __init__(
        self,
        client: CloudantClient,
        database: str,
        partition: Partition,
        schema: StructType,
        columns: list[str] | None = None,
        page_size: int = 200,
    ) -> None:
        """Initialise the reader; no request is issued until the first row is pulled.

        Args:
            client: Shared transport client
            database: Database to read
            partition: Partition owned by this reader
            schema: Row schema every emitted row conforms to
            columns: Columns to emit, in order; None emits every schema field
            page_size: Rows requested per call

        """
        self._database = database
        self._partition = partition
        self._schema = schema.select(columns) if columns is not None else schema
        self._fetcher = DocumentFetcher(client, database, page_size)
        self._rows = self._generate()
        self._exhausted = False
        self._produced = 0

    @property
    def schema(self) -> StructType:
        """Return the schema of emitted rows."""
        return self._schema

    @property
    def produced(self) -> int:
        """Return how many rows have been emitted so far."""
        return self._produced

    def __iter__(self) -> "RowReader":
        return self

    def __next__(self) -> Row:
        if self._exhausted:
            raise StopIteration
        try:
            row = next(self._rows)
        except StopIteration:
            self._exhausted = True
            logger.debug(
                "Partition %d of '%s' exhausted after %d row(s)",
                self._partition.index,
                self._database,
                self._produced,
            )
            raise
        except ReadError:
            self._exhausted = True
            raise
        self._produced += 1
        return row

    def close(self) -> None:
        """Stop reading at the next page boundary."""
        self._fetcher.cancel()

    def _generate(self) -> Iterator[Row]:
        try:
            for document in self._fetcher.documents(self._partition):
                yield decode_document(document, self._schema)
        except ReadError:
            raise
        except CloudantError as e:
            logger.error(
                f"Reading partition {self._partition.index} of '{self._database}' failed: {e}"
            )
            raise ReadError(
                f"Reading partition {self._partition.index} of '{self._database}' "
                f"failed after {self._produced} row(s): {e}"
            ) from e
