"""Schema system: type lattice and inference for JSON documents."""

from cloudant_connector.schema.inference import SchemaInferencer, infer_document_schema
from cloudant_connector.schema.types import (
    BOOLEAN,
    DOUBLE,
    LONG,
    NULL,
    STRING,
    ArrayType,
    BooleanType,
    DataType,
    DoubleType,
    LongType,
    NullType,
    Schema,
    StringType,
    StructField,
    StructType,
    coerce_value,
    finalize_type,
    flatten_schema,
    infer_value_type,
    merge_schemas,
    unify,
)

__all__ = [
    # Types
    "DataType",
    "NullType",
    "BooleanType",
    "LongType",
    "DoubleType",
    "StringType",
    "ArrayType",
    "StructField",
    "StructType",
    "Schema",
    "NULL",
    "BOOLEAN",
    "LONG",
    "DOUBLE",
    "STRING",
    # Lattice operations
    "unify",
    "merge_schemas",
    "finalize_type",
    "flatten_schema",
    "infer_value_type",
    "coerce_value",
    # Inference
    "SchemaInferencer",
    "infer_document_schema",
]
