"""Translation of tabular reads into native Cloudant requests.

A read resolves to exactly one access mode, chosen by precedence::

    view option  >  index option  >  selector / pushed-down Mango query  >  scan

where *scan* is ``_all_docs`` or ``_changes`` depending on the connection
endpoint. Predicates the store can evaluate exactly are pushed down; every
other predicate is returned as *residual* and must be applied by the caller
after decoding.
"""

import json
import logging
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any
from urllib.parse import parse_qsl

from cloudant_connector.config import Endpoint, ReadOptions
from cloudant_connector.errors import QueryTranslationError
from cloudant_connector.filters import (
    And,
    ColumnPredicate,
    EqualTo,
    GreaterThan,
    GreaterThanOrEqual,
    In,
    IsNotNull,
    LessThan,
    LessThanOrEqual,
    Or,
    Predicate,
    conjuncts,
    references,
)
from cloudant_connector.schema.types import (
    BooleanType,
    DoubleType,
    LongType,
    StringType,
    StructType,
)

logger = logging.getLogger(__name__)

_ID = "_id"

# Mango selector matching every document
MATCH_ALL: dict[str, Any] = {_ID: {"$gt": None}}

_RANGE_OPERATORS: dict[type[Predicate], str] = {
    GreaterThan: "$gt",
    GreaterThanOrEqual: "$gte",
    LessThan: "$lt",
    LessThanOrEqual: "$lte",
}


class AccessMode(StrEnum):
    """How documents are fetched from the store."""

    ALL_DOCS = "all_docs"
    CHANGES = "changes"
    SELECTOR = "selector"
    VIEW = "view"
    SEARCH = "search"


@dataclass(frozen=True)
class QueryDescriptor:
    """Resolved combination of access mode, filters and requested columns."""

    mode: AccessMode
    path: str | None = None
    path_params: dict[str, str] = field(default_factory=dict)
    selector: dict[str, Any] | None = None
    use_query: bool = False
    predicates: tuple[Predicate, ...] = ()
    columns: tuple[str, ...] | None = None


@dataclass(frozen=True)
class NativeRequest:
    """Store-native request parameters, before pagination."""

    mode: AccessMode
    path: str | None = None
    params: dict[str, Any] = field(default_factory=dict)
    body: dict[str, Any] | None = None
    empty: bool = False


@dataclass(frozen=True)
class Translation:
    """Outcome of translating a query descriptor."""

    descriptor: QueryDescriptor
    request: NativeRequest
    pushed: tuple[Predicate, ...]
    residual: tuple[Predicate, ...]


def _split_path(path: str) -> tuple[str, dict[str, str]]:
    base, _, query = path.partition("?")
    return base, dict(parse_qsl(query, keep_blank_values=True))


def _and_selectors(parts: list[dict[str, Any]]) -> dict[str, Any]:
    if not parts:
        return dict(MATCH_ALL)
    if len(parts) == 1:
        return parts[0]
    return {"$and": parts}


class QueryTranslator:
    """Maps query descriptors onto ``_all_docs``, ``_find``, ``_changes``, view
    and search requests.

    The translator is schema aware: a predicate is only pushed down when the
    store would evaluate it exactly like the client does on decoded rows.
    Without a schema (e.g. while sampling for inference) nothing is pushed.
    """

    def __init__(self, schema: StructType | None = None) -> None:
        """Initialise the translator.

        Args:
            schema: Inferred row schema, or None before inference

        """
        self._schema = schema

    # ------------------------------------------------------------------
    # Descriptor resolution
    # ------------------------------------------------------------------

    def describe(
        self,
        options: ReadOptions,
        endpoint: Endpoint = "_all_docs",
        predicates: Iterable[Predicate] = (),
        columns: Sequence[str] | None = None,
    ) -> QueryDescriptor:
        """Resolve the access mode and validate predicates and columns.

        Args:
            options: Read options
            endpoint: Endpoint used for unfiltered scans
            predicates: Filters from the host engine
            columns: Columns the host engine needs, or None for all

        Returns:
            Query descriptor with exactly one access mode

        Raises:
            QueryTranslationError: If a predicate or column is invalid

        """
        flat = tuple(conjuncts(predicates))
        self._validate(flat, columns)
        requested = tuple(columns) if columns is not None else None

        if options.view is not None:
            path, params = _split_path(options.view)
            return QueryDescriptor(
                AccessMode.VIEW,
                path=path,
                path_params=params,
                predicates=flat,
                columns=requested,
            )
        if options.index is not None:
            path, params = _split_path(options.index)
            return QueryDescriptor(
                AccessMode.SEARCH,
                path=path,
                path_params=params,
                predicates=flat,
                columns=requested,
            )

        pushes_down = options.use_query and any(
            self._to_mango(p) is not None for p in flat
        )
        if endpoint == "_changes":
            return QueryDescriptor(
                AccessMode.CHANGES,
                selector=options.selector,
                use_query=options.use_query,
                predicates=flat,
                columns=requested,
            )
        if options.selector is not None or pushes_down:
            return QueryDescriptor(
                AccessMode.SELECTOR,
                selector=options.selector,
                use_query=options.use_query,
                predicates=flat,
                columns=requested,
            )
        return QueryDescriptor(AccessMode.ALL_DOCS, predicates=flat, columns=requested)

    def _validate(
        self, predicates: tuple[Predicate, ...], columns: Sequence[str] | None
    ) -> None:
        for predicate in predicates:
            if not isinstance(predicate, Predicate):
                raise QueryTranslationError(
                    f"Unsupported predicate type: {type(predicate).__name__}"
                )
        referenced = references(predicates) | set(columns or ())
        for column in referenced:
            if not column:
                raise QueryTranslationError("Predicate or column with empty name")
            if self._schema is not None and column not in self._schema:
                raise QueryTranslationError(f"Unknown column: {column}")

    # ------------------------------------------------------------------
    # Translation
    # ------------------------------------------------------------------

    def translate(self, descriptor: QueryDescriptor) -> Translation:
        """Produce the native request and the residual predicates.

        Args:
            descriptor: Resolved query descriptor

        Returns:
            Native request plus pushed and residual predicates

        """
        match descriptor.mode:
            case AccessMode.ALL_DOCS:
                translation = self._translate_all_docs(descriptor)
            case AccessMode.SELECTOR:
                translation = self._translate_selector(descriptor)
            case AccessMode.CHANGES:
                translation = self._translate_changes(descriptor)
            case AccessMode.VIEW:
                request = NativeRequest(
                    AccessMode.VIEW,
                    path=descriptor.path,
                    params=dict(descriptor.path_params),
                )
                translation = Translation(
                    descriptor, request, (), descriptor.predicates
                )
            case AccessMode.SEARCH:
                params: dict[str, Any] = {"q": "*:*", "include_docs": True}
                params.update(descriptor.path_params)
                request = NativeRequest(
                    AccessMode.SEARCH, path=descriptor.path, params=params
                )
                translation = Translation(
                    descriptor, request, (), descriptor.predicates
                )
            case _:
                raise QueryTranslationError(
                    f"Unsupported access mode: {descriptor.mode}"
                )

        logger.debug(
            "Translated %s read: %d pushed, %d residual predicate(s)",
            descriptor.mode,
            len(translation.pushed),
            len(translation.residual),
        )
        return translation

    def _translate_all_docs(self, descriptor: QueryDescriptor) -> Translation:
        lower: tuple[str, bool] | None = None
        upper: tuple[str, bool] | None = None
        pushed: list[Predicate] = []
        residual: list[Predicate] = []

        def tighten_lower(value: str, inclusive: bool) -> None:
            nonlocal lower
            if lower is None or value > lower[0] or (value == lower[0] and not inclusive):
                lower = (value, inclusive)

        def tighten_upper(value: str, inclusive: bool) -> None:
            nonlocal upper
            if upper is None or value < upper[0] or (value == upper[0] and not inclusive):
                upper = (value, inclusive)

        for predicate in descriptor.predicates:
            key = self._id_literal(predicate)
            if key is None:
                residual.append(predicate)
                continue
            if isinstance(predicate, EqualTo | In):
                tighten_lower(key, True)
                tighten_upper(key, True)
            elif isinstance(predicate, GreaterThanOrEqual):
                tighten_lower(key, True)
            elif isinstance(predicate, GreaterThan):
                # No exclusive start key; the boundary document is removed client side
                tighten_lower(key, False)
                residual.append(predicate)
                continue
            elif isinstance(predicate, LessThanOrEqual):
                tighten_upper(key, True)
            elif isinstance(predicate, LessThan):
                tighten_upper(key, False)
            pushed.append(predicate)

        params: dict[str, Any] = {"include_docs": True}
        empty = False
        if lower is not None:
            params["startkey"] = json.dumps(lower[0])
        if upper is not None:
            params["endkey"] = json.dumps(upper[0])
            params["inclusive_end"] = upper[1]
        if lower is not None and upper is not None:
            if lower[0] > upper[0] or (
                lower[0] == upper[0] and not (lower[1] and upper[1])
            ):
                empty = True

        request = NativeRequest(AccessMode.ALL_DOCS, params=params, empty=empty)
        return Translation(descriptor, request, tuple(pushed), tuple(residual))

    def _id_literal(self, predicate: Predicate) -> str | None:
        if not isinstance(predicate, ColumnPredicate) or predicate.column != _ID:
            return None
        if isinstance(predicate, In):
            if len(predicate.values) == 1 and isinstance(predicate.values[0], str):
                return predicate.values[0]
            return None
        if isinstance(
            predicate,
            EqualTo | GreaterThan | GreaterThanOrEqual | LessThan | LessThanOrEqual,
        ):
            value = predicate.value
            return value if isinstance(value, str) else None
        return None

    def _push_to_selector(
        self, descriptor: QueryDescriptor, always: bool
    ) -> tuple[dict[str, Any] | None, list[Predicate], list[Predicate]]:
        parts: list[dict[str, Any]] = []
        if descriptor.selector is not None:
            parts.append(descriptor.selector)

        pushed: list[Predicate] = []
        residual: list[Predicate] = []
        push = always or descriptor.use_query
        for predicate in descriptor.predicates:
            translated = self._to_mango(predicate) if push else None
            if translated is None:
                residual.append(predicate)
            else:
                parts.append(translated)
                pushed.append(predicate)

        selector = _and_selectors(parts) if parts else None
        return selector, pushed, residual

    def _translate_selector(self, descriptor: QueryDescriptor) -> Translation:
        selector, pushed, residual = self._push_to_selector(descriptor, always=True)
        body: dict[str, Any] = {"selector": selector or dict(MATCH_ALL)}

        if descriptor.columns is not None:
            needed = set(descriptor.columns) | references(residual) | {_ID}
            body["fields"] = sorted(needed)

        request = NativeRequest(AccessMode.SELECTOR, body=body)
        return Translation(descriptor, request, tuple(pushed), tuple(residual))

    def _translate_changes(self, descriptor: QueryDescriptor) -> Translation:
        selector, pushed, residual = self._push_to_selector(
            descriptor, always=descriptor.selector is not None
        )
        params: dict[str, Any] = {"include_docs": True}
        body: dict[str, Any] | None = None
        if selector is not None:
            params["filter"] = "_selector"
            body = {"selector": selector}

        request = NativeRequest(AccessMode.CHANGES, params=params, body=body)
        return Translation(descriptor, request, tuple(pushed), tuple(residual))

    # ------------------------------------------------------------------
    # Mango
    # ------------------------------------------------------------------

    def _literal_matches(self, column: str, value: Any) -> bool:
        """Check the store compares ``value`` with ``column`` like decoded rows do."""
        if self._schema is None or column not in self._schema:
            return False
        schema_field = self._schema[column]
        if "." in column and schema_field.path is None:
            # A literal dot would be read as a nested path by Mango
            return False
        if schema_field.widened:
            # Decoded values are JSON text of mixed kinds; Mango compares the raw values
            return False

        data_type = schema_field.data_type
        if isinstance(value, bool):
            return isinstance(data_type, BooleanType)
        if isinstance(value, int | float):
            return isinstance(data_type, LongType | DoubleType)
        if isinstance(value, str):
            return isinstance(data_type, StringType)
        return False

    def _to_mango(self, predicate: Predicate) -> dict[str, Any] | None:
        """Translate a predicate into a Mango selector, or None if not exact."""
        if isinstance(predicate, EqualTo):
            if self._literal_matches(predicate.column, predicate.value):
                return {predicate.column: {"$eq": predicate.value}}
            return None

        if isinstance(predicate, In):
            if predicate.values and all(
                self._literal_matches(predicate.column, v) for v in predicate.values
            ):
                return {predicate.column: {"$in": list(predicate.values)}}
            return None

        if isinstance(predicate, IsNotNull):
            if self._schema is not None and predicate.column in self._schema:
                if "." in predicate.column and self._schema[predicate.column].path is None:
                    return None
                return {predicate.column: {"$exists": True, "$ne": None}}
            return None

        if isinstance(
            predicate, GreaterThan | GreaterThanOrEqual | LessThan | LessThanOrEqual
        ):
            operator = _RANGE_OPERATORS[type(predicate)]
            value = predicate.value
            # String ordering in Mango follows ICU collation, so only numbers are exact
            if (
                isinstance(value, int | float)
                and not isinstance(value, bool)
                and self._literal_matches(predicate.column, value)
            ):
                return {predicate.column: {operator: value, "$type": "number"}}
            return None

        if isinstance(predicate, And):
            left = self._to_mango(predicate.left)
            right = self._to_mango(predicate.right)
            if left is None or right is None:
                return None
            return {"$and": [left, right]}

        if isinstance(predicate, Or):
            left = self._to_mango(predicate.left)
            right = self._to_mango(predicate.right)
            if left is None or right is None:
                return None
            return {"$or": [left, right]}

        return None
