"""Schema inference over a sample of JSON documents."""

import logging
from collections.abc import Iterable
from typing import Any, cast

from cloudant_connector.config import DESIGN_DOC_PREFIX
from cloudant_connector.errors import SchemaInferenceError
from cloudant_connector.schema.types import (
    StructType,
    finalize_type,
    flatten_schema,
    infer_value_type,
    merge_schemas,
)

logger = logging.getLogger(__name__)

# Store-managed markers that never become columns
_EXCLUDED_FIELDS = frozenset({"_deleted"})


def infer_document_schema(document: dict[str, Any]) -> StructType:
    """Infer the struct type of one document, ignoring deletion markers."""
    data_type = infer_value_type(
        {k: v for k, v in document.items() if k not in _EXCLUDED_FIELDS}
    )
    return cast(StructType, data_type)


class SchemaInferencer:
    """Merges the JSON shapes of sampled documents into one row schema.

    Example:
        >>> inferencer = SchemaInferencer()
        >>> schema = inferencer.infer([{"_id": "a", "n": 1}, {"_id": "b", "n": 2.5}])
        >>> schema["n"].data_type
        DoubleType()

    """

    def __init__(self, flatten_nested: bool = False) -> None:
        """Initialise the inferencer.

        Args:
            flatten_nested: Flatten nested objects into dotted column names

        """
        self._flatten_nested = flatten_nested

    def infer(self, documents: Iterable[dict[str, Any]]) -> StructType:
        """Infer a schema from sampled documents.

        Deleted documents and design documents are skipped.

        Args:
            documents: Sampled documents

        Returns:
            Unified row schema, fields ordered by name

        Raises:
            SchemaInferenceError: If no usable document is available

        """
        schema: StructType | None = None
        sampled = 0

        for document in documents:
            if not isinstance(document, dict):
                raise SchemaInferenceError(
                    f"Expected a JSON object, got {type(document).__name__}"
                )
            if document.get("_deleted") is True:
                continue
            if str(document.get("_id", "")).startswith(DESIGN_DOC_PREFIX):
                continue

            document_schema = infer_document_schema(document)
            schema = (
                document_schema
                if schema is None
                else merge_schemas(schema, document_schema)
            )
            sampled += 1

        if schema is None:
            raise SchemaInferenceError(
                "Cannot infer a schema: no non-deleted documents were sampled"
            )

        finalized = cast(StructType, finalize_type(schema))
        if self._flatten_nested:
            finalized = flatten_schema(finalized)

        logger.info(
            "Inferred schema with %d field(s) from %d document(s)",
            len(finalized),
            sampled,
        )
        logger.debug("Inferred schema: %s", finalized.simple_string())
        return finalized
