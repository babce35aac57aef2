"""Tabular type lattice for schema-on-read over JSON documents.

JSON value kinds map onto a small lattice::

                 string            (top)
        /      /    |     \\      \\
    boolean  double array struct  ...
               |
             long
                \\    |    /
                   null            (bottom)

``unify`` is the lattice join. It is a pure function that is commutative,
associative and idempotent, so the order in which sampled documents are
merged never changes the resulting schema.
"""

import json
from collections.abc import Iterator
from dataclasses import dataclass, replace
from typing import Any


@dataclass(frozen=True)
class DataType:
    """Base class for all column types."""

    def simple_string(self) -> str:
        """Return a compact type name, e.g. ``array<long>``."""
        return type(self).__name__.removesuffix("Type").lower()


@dataclass(frozen=True)
class NullType(DataType):
    """Type of a value only ever observed as ``null``."""


@dataclass(frozen=True)
class BooleanType(DataType):
    """JSON ``true``/``false``."""


@dataclass(frozen=True)
class LongType(DataType):
    """Integral JSON numbers."""


@dataclass(frozen=True)
class DoubleType(DataType):
    """Fractional JSON numbers."""


@dataclass(frozen=True)
class StringType(DataType):
    """JSON strings; also the fallback for conflicting types."""


@dataclass(frozen=True)
class ArrayType(DataType):
    """JSON arrays with a unified element type."""

    element_type: DataType

    def simple_string(self) -> str:
        return f"array<{self.element_type.simple_string()}>"


@dataclass(frozen=True)
class StructField:
    """A named, typed column.

    ``path`` locates the value inside a document when it differs from
    ``(name,)``, which is the case for flattened nested fields. ``widened``
    marks a string column whose sampled values had conflicting types, so
    decoded values may be the JSON text of numbers, booleans or objects.
    """

    name: str
    data_type: DataType
    nullable: bool = True
    path: tuple[str, ...] | None = None
    widened: bool = False

    @property
    def source_path(self) -> tuple[str, ...]:
        """Return the key path of the value inside a document."""
        return self.path if self.path is not None else (self.name,)


@dataclass(frozen=True)
class StructType(DataType):
    """Ordered collection of fields; a top-level struct is a row schema."""

    fields: tuple[StructField, ...] = ()

    def simple_string(self) -> str:
        inner = ",".join(f"{f.name}:{f.data_type.simple_string()}" for f in self.fields)
        return f"struct<{inner}>"

    @property
    def field_names(self) -> list[str]:
        """Return the field names in order."""
        return [f.name for f in self.fields]

    def __iter__(self) -> Iterator[StructField]:
        return iter(self.fields)

    def __len__(self) -> int:
        return len(self.fields)

    def __contains__(self, name: object) -> bool:
        return any(f.name == name for f in self.fields)

    def __getitem__(self, name: str) -> StructField:
        for f in self.fields:
            if f.name == name:
                return f
        raise KeyError(name)

    def select(self, names: list[str]) -> "StructType":
        """Return a schema restricted to ``names`` in the given order.

        Raises:
            KeyError: If a name is not a field of this schema

        """
        return StructType(tuple(self[name] for name in names))


# Row schemas are top-level structs
Schema = StructType

NULL = NullType()
BOOLEAN = BooleanType()
LONG = LongType()
DOUBLE = DoubleType()
STRING = StringType()


def infer_value_type(value: Any) -> DataType:
    """Infer the type of a single JSON value."""
    if value is None:
        return NULL
    if isinstance(value, bool):
        return BOOLEAN
    if isinstance(value, int):
        return LONG
    if isinstance(value, float):
        return DOUBLE
    if isinstance(value, str):
        return STRING
    if isinstance(value, list):
        element: DataType = NULL
        for item in value:
            element = unify(element, infer_value_type(item))
        return ArrayType(element)
    if isinstance(value, dict):
        return StructType(
            tuple(
                StructField(str(key), infer_value_type(item), nullable=item is None)
                for key, item in sorted(value.items())
            )
        )
    # Anything else (e.g. Decimal from a custom decoder) is rendered as text
    return STRING


def unify(left: DataType, right: DataType) -> DataType:
    """Return the least common supertype of two types.

    Rules:
        - ``null`` joins to the other side
        - equal types join to themselves
        - ``long`` and ``double`` join to ``double``
        - arrays join element-wise
        - structs merge fields by name; fields missing on one side are nullable
        - any other combination widens to ``string``

    """
    if left == right:
        return left
    if isinstance(left, NullType):
        return right
    if isinstance(right, NullType):
        return left
    if {type(left), type(right)} == {LongType, DoubleType}:
        return DOUBLE
    if isinstance(left, ArrayType) and isinstance(right, ArrayType):
        return ArrayType(unify(left.element_type, right.element_type))
    if isinstance(left, StructType) and isinstance(right, StructType):
        return merge_schemas(left, right)
    return STRING


def _widens(left: DataType, right: DataType, joined: DataType) -> bool:
    """Return whether joining two value types fell back to ``string``."""
    textual = StringType | NullType
    return isinstance(joined, StringType) and not (
        isinstance(left, textual) and isinstance(right, textual)
    )


def merge_schemas(left: StructType, right: StructType) -> StructType:
    """Merge two struct types field by field; fields are ordered by name."""
    left_fields = {f.name: f for f in left.fields}
    right_fields = {f.name: f for f in right.fields}

    merged: list[StructField] = []
    for name in sorted(left_fields.keys() | right_fields.keys()):
        a = left_fields.get(name)
        b = right_fields.get(name)
        if a is None and b is not None:
            merged.append(replace(b, nullable=True))
        elif b is None and a is not None:
            merged.append(replace(a, nullable=True))
        elif a is not None and b is not None:
            data_type = unify(a.data_type, b.data_type)
            merged.append(
                StructField(
                    name,
                    data_type,
                    a.nullable or b.nullable,
                    widened=a.widened
                    or b.widened
                    or _widens(a.data_type, b.data_type, data_type),
                )
            )
    return StructType(tuple(merged))


def finalize_type(data_type: DataType) -> DataType:
    """Replace types never observed with a value (``null``) by ``string``."""
    if isinstance(data_type, NullType):
        return STRING
    if isinstance(data_type, ArrayType):
        return ArrayType(finalize_type(data_type.element_type))
    if isinstance(data_type, StructType):
        return StructType(
            tuple(replace(f, data_type=finalize_type(f.data_type)) for f in data_type.fields)
        )
    return data_type


def flatten_schema(schema: StructType) -> StructType:
    """Flatten nested struct fields to dotted top-level columns.

    Arrays are preserved as they are. A flattened field is nullable when it or
    any enclosing object is.
    """
    flattened: list[StructField] = []

    def visit(field: StructField, path: tuple[str, ...], nullable: bool) -> None:
        if isinstance(field.data_type, StructType) and field.data_type.fields:
            for child in field.data_type.fields:
                visit(child, (*path, child.name), nullable or field.nullable)
            return
        flattened.append(
            StructField(
                ".".join(path),
                field.data_type,
                nullable or field.nullable,
                path=path if len(path) > 1 else None,
                widened=field.widened,
            )
        )

    for field in schema.fields:
        visit(field, (field.name,), False)
    return StructType(tuple(flattened))


def coerce_value(value: Any, data_type: DataType) -> Any:
    """Convert a JSON value to the representation of ``data_type``.

    Values that cannot be represented become ``None``, except for ``string``
    columns which accept any value in its JSON text form.
    """
    if value is None:
        return None
    if isinstance(data_type, StringType):
        if isinstance(value, str):
            return value
        return json.dumps(value, separators=(",", ":"))
    if isinstance(data_type, LongType):
        if isinstance(value, int) and not isinstance(value, bool):
            return value
        return None
    if isinstance(data_type, DoubleType):
        if isinstance(value, int | float) and not isinstance(value, bool):
            return float(value)
        return None
    if isinstance(data_type, BooleanType):
        return value if isinstance(value, bool) else None
    if isinstance(data_type, ArrayType):
        if not isinstance(value, list):
            return None
        return [coerce_value(item, data_type.element_type) for item in value]
    if isinstance(data_type, StructType):
        if not isinstance(value, dict):
            return None
        return {f.name: coerce_value(value.get(f.name), f.data_type) for f in data_type.fields}
    return None
