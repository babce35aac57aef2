"""Cloudant connector - tabular access to Cloudant and CouchDB databases.

This package infers tabular schemas from JSON documents, translates filters
into native queries, reads results as parallel partitions and writes rows back
as documents.
"""

__version__ = "0.1.0"

from cloudant_connector.base_connector import Connector, ReadPlan
from cloudant_connector.config import (
    BaseConnectorConfiguration,
    CloudantConnectionConfig,
    ReadOptions,
    WriteOptions,
)
from cloudant_connector.connector import CloudantConnector
from cloudant_connector.errors import (
    CloudantConnectionError,
    CloudantError,
    CloudantRequestError,
    ConnectorConfigError,
    QueryTranslationError,
    ReadError,
    SchemaInferenceError,
    WriteError,
)
from cloudant_connector.factory import CloudantConnectorFactory
from cloudant_connector.filters import (
    And,
    EqualTo,
    GreaterThan,
    GreaterThanOrEqual,
    In,
    IsNotNull,
    IsNull,
    LessThan,
    LessThanOrEqual,
    Not,
    Or,
    Predicate,
    StringContains,
    StringStartsWith,
)
from cloudant_connector.models import WriteFailure, WriteResult
from cloudant_connector.planner import Partition, PartitionPlan, PartitionPlanner
from cloudant_connector.query import AccessMode, QueryTranslator
from cloudant_connector.reader import RowReader
from cloudant_connector.schema import SchemaInferencer, StructField, StructType
from cloudant_connector.session import CloudantSession, ReadResult
from cloudant_connector.transport import CloudantClient
from cloudant_connector.writer import RowWriter

__all__ = [
    "__version__",
    # Contract
    "Connector",
    "ReadPlan",
    # Configuration
    "BaseConnectorConfiguration",
    "CloudantConnectionConfig",
    "ReadOptions",
    "WriteOptions",
    # Components
    "CloudantClient",
    "CloudantConnector",
    "CloudantConnectorFactory",
    "CloudantSession",
    "ReadResult",
    "SchemaInferencer",
    "StructField",
    "StructType",
    "QueryTranslator",
    "AccessMode",
    "PartitionPlanner",
    "PartitionPlan",
    "Partition",
    "RowReader",
    "RowWriter",
    "WriteResult",
    "WriteFailure",
    # Predicates
    "Predicate",
    "EqualTo",
    "GreaterThan",
    "GreaterThanOrEqual",
    "LessThan",
    "LessThanOrEqual",
    "In",
    "IsNull",
    "IsNotNull",
    "StringStartsWith",
    "StringContains",
    "And",
    "Or",
    "Not",
    # Errors
    "CloudantError",
    "ConnectorConfigError",
    "CloudantConnectionError",
    "CloudantRequestError",
    "SchemaInferenceError",
    "QueryTranslationError",
    "ReadError",
    "WriteError",
]
