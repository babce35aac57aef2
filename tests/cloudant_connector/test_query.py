"""Tests for QueryTranslator."""

import json

import pytest

from cloudant_connector.config import ReadOptions
from cloudant_connector.errors import QueryTranslationError
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
    Or,
    StringStartsWith,
)
from cloudant_connector.query import MATCH_ALL, AccessMode, QueryTranslator
from cloudant_connector.schema.types import (
    BOOLEAN,
    DOUBLE,
    LONG,
    STRING,
    StructField,
    StructType,
)

SCHEMA = StructType(
    (
        StructField("_id", STRING, False),
        StructField("active", BOOLEAN),
        StructField("address.city", STRING, path=("address", "city")),
        StructField("code", STRING, widened=True),
        StructField("cost", LONG),
        StructField("odd.name", STRING),
        StructField("origin", STRING),
        StructField("ratio", DOUBLE),
    )
)


def translate(options: ReadOptions, *predicates, columns=None, endpoint="_all_docs"):
    translator = QueryTranslator(SCHEMA)
    return translator.translate(
        translator.describe(options, endpoint, predicates, columns)
    )


class TestDescribe:
    """Test access mode resolution."""

    def test_default_is_all_docs(self) -> None:
        """Test an unfiltered read scans _all_docs."""
        descriptor = QueryTranslator(SCHEMA).describe(ReadOptions())

        assert descriptor.mode == AccessMode.ALL_DOCS

    def test_view_takes_precedence(self) -> None:
        """Test view wins over index and selector."""
        options = ReadOptions(
            view="_design/view/_view/AA0?reduce=false",
            index="_design/search/_search/n",
            selector={"origin": "BOM"},
        )

        descriptor = QueryTranslator(SCHEMA).describe(options)

        assert descriptor.mode == AccessMode.VIEW
        assert descriptor.path == "_design/view/_view/AA0"
        assert descriptor.path_params == {"reduce": "false"}

    def test_index_takes_precedence_over_selector(self) -> None:
        """Test a search index wins over a selector."""
        options = ReadOptions(index="_design/search/_search/n", selector={"a": 1})

        assert QueryTranslator(SCHEMA).describe(options).mode == AccessMode.SEARCH

    def test_selector_activates_selector_mode(self) -> None:
        """Test a user selector reads through _find."""
        options = ReadOptions(selector={"origin": "BOM"})

        assert QueryTranslator(SCHEMA).describe(options).mode == AccessMode.SELECTOR

    def test_changes_endpoint_replaces_scan(self) -> None:
        """Test the _changes endpoint is used for scans and selectors."""
        translator = QueryTranslator(SCHEMA)

        assert translator.describe(ReadOptions(), "_changes").mode == AccessMode.CHANGES
        assert (
            translator.describe(ReadOptions(selector={"a": 1}), "_changes").mode
            == AccessMode.CHANGES
        )

    def test_use_query_needs_a_translatable_predicate(self) -> None:
        """Test useQuery only switches to _find when something can be pushed."""
        translator = QueryTranslator(SCHEMA)
        options = ReadOptions(use_query=True)

        pushed = translator.describe(options, predicates=[EqualTo("origin", "BOM")])
        residual = translator.describe(
            options, predicates=[StringStartsWith("origin", "B")]
        )

        assert pushed.mode == AccessMode.SELECTOR
        assert residual.mode == AccessMode.ALL_DOCS

    def test_unknown_column_raises_error(self) -> None:
        """Test predicates on columns outside the schema are rejected."""
        with pytest.raises(QueryTranslationError, match="Unknown column: nope"):
            QueryTranslator(SCHEMA).describe(
                ReadOptions(), predicates=[EqualTo("nope", 1)]
            )

    def test_unknown_requested_column_raises_error(self) -> None:
        """Test requested columns outside the schema are rejected."""
        with pytest.raises(QueryTranslationError, match="Unknown column"):
            QueryTranslator(SCHEMA).describe(ReadOptions(), columns=["nope"])

    def test_empty_column_name_raises_error(self) -> None:
        """Test predicates need a column name."""
        with pytest.raises(QueryTranslationError, match="empty name"):
            QueryTranslator(SCHEMA).describe(ReadOptions(), predicates=[IsNull("")])

    def test_foreign_predicate_raises_error(self) -> None:
        """Test objects that are not predicates are rejected."""
        with pytest.raises(QueryTranslationError, match="Unsupported predicate type"):
            QueryTranslator(SCHEMA).describe(
                ReadOptions(), predicates=["origin = 'BOM'"]  # type: ignore[list-item]
            )

    def test_top_level_and_is_split(self) -> None:
        """Test AND trees are flattened into conjuncts."""
        descriptor = QueryTranslator(SCHEMA).describe(
            ReadOptions(),
            predicates=[And(EqualTo("origin", "BOM"), EqualTo("cost", 1))],
        )

        assert descriptor.predicates == (EqualTo("origin", "BOM"), EqualTo("cost", 1))


class TestAllDocsTranslation:
    """Test _id range pushdown onto _all_docs."""

    def test_unfiltered_scan(self) -> None:
        """Test a plain scan includes documents and nothing else."""
        translation = translate(ReadOptions())

        assert translation.request.params == {"include_docs": True}
        assert translation.pushed == ()
        assert translation.residual == ()

    def test_id_equality_becomes_key_range(self) -> None:
        """Test _id = x reads exactly one key."""
        translation = translate(ReadOptions(), EqualTo("_id", "AA010"))

        assert translation.request.params["startkey"] == json.dumps("AA010")
        assert translation.request.params["endkey"] == json.dumps("AA010")
        assert translation.request.params["inclusive_end"] is True
        assert translation.pushed == (EqualTo("_id", "AA010"),)
        assert translation.residual == ()

    def test_single_value_in_becomes_key_range(self) -> None:
        """Test _id IN (x) reads exactly one key."""
        translation = translate(ReadOptions(), In("_id", ("AA010",)))

        assert translation.request.params["startkey"] == '"AA010"'
        assert translation.pushed == (In("_id", ("AA010",)),)

    def test_multi_value_in_stays_residual(self) -> None:
        """Test _id IN (x, y) is evaluated after reading."""
        predicate = In("_id", ("AA010", "AA020"))

        translation = translate(ReadOptions(), predicate)

        assert "startkey" not in translation.request.params
        assert translation.residual == (predicate,)

    def test_exclusive_upper_bound(self) -> None:
        """Test _id < x excludes the end key."""
        translation = translate(ReadOptions(), LessThan("_id", "AA050"))

        assert translation.request.params["endkey"] == '"AA050"'
        assert translation.request.params["inclusive_end"] is False

    def test_strict_lower_bound_stays_residual(self) -> None:
        """Test _id > x narrows the range but is also applied client side."""
        predicate = GreaterThan("_id", "AA050")

        translation = translate(ReadOptions(), predicate)

        assert translation.request.params["startkey"] == '"AA050"'
        assert translation.residual == (predicate,)
        assert translation.pushed == ()

    def test_tightest_bounds_win(self) -> None:
        """Test several bounds on _id are intersected."""
        translation = translate(
            ReadOptions(),
            GreaterThanOrEqual("_id", "AA010"),
            GreaterThanOrEqual("_id", "AA020"),
            LessThanOrEqual("_id", "AA090"),
            LessThan("_id", "AA080"),
        )

        assert translation.request.params["startkey"] == '"AA020"'
        assert translation.request.params["endkey"] == '"AA080"'
        assert translation.request.params["inclusive_end"] is False

    @pytest.mark.parametrize(
        "predicates",
        [
            (GreaterThanOrEqual("_id", "B"), LessThan("_id", "A")),
            (EqualTo("_id", "A"), LessThan("_id", "A")),
            (EqualTo("_id", "A"), EqualTo("_id", "B")),
        ],
    )
    def test_contradictory_bounds_are_empty(self, predicates) -> None:
        """Test a provably empty range is flagged instead of requested."""
        assert translate(ReadOptions(), *predicates).request.empty is True

    def test_other_predicates_are_residual(self) -> None:
        """Test predicates on other columns are never pushed onto _all_docs."""
        predicate = EqualTo("origin", "BOM")

        translation = translate(ReadOptions(), predicate)

        assert translation.residual == (predicate,)
        assert translation.request.params == {"include_docs": True}

    def test_numeric_id_literal_is_residual(self) -> None:
        """Test only string literals become keys."""
        predicate = EqualTo("_id", 5)

        assert translate(ReadOptions(), predicate).residual == (predicate,)


class TestSelectorTranslation:
    """Test Mango selector pushdown."""

    def test_user_selector_alone(self) -> None:
        """Test the user selector is sent as given."""
        translation = translate(ReadOptions(selector={"origin": "BOM"}))

        assert translation.request.mode == AccessMode.SELECTOR
        assert translation.request.body == {"selector": {"origin": "BOM"}}

    def test_user_selector_is_combined_with_predicates(self) -> None:
        """Test translated predicates are ANDed with the user selector."""
        translation = translate(
            ReadOptions(selector={"origin": "BOM"}), EqualTo("active", True)
        )

        assert translation.request.body == {
            "selector": {"$and": [{"origin": "BOM"}, {"active": {"$eq": True}}]}
        }
        assert translation.pushed == (EqualTo("active", True),)

    def test_numeric_range_is_type_guarded(self) -> None:
        """Test numeric ranges only match numbers."""
        translation = translate(ReadOptions(use_query=True), GreaterThan("cost", 200))

        assert translation.request.body == {
            "selector": {"cost": {"$gt": 200, "$type": "number"}}
        }

    def test_string_range_stays_residual(self) -> None:
        """Test string ranges are not pushed since collation differs."""
        pushed = EqualTo("cost", 5)
        string_range = GreaterThan("origin", "M")

        translation = translate(ReadOptions(use_query=True), pushed, string_range)

        assert translation.pushed == (pushed,)
        assert translation.residual == (string_range,)

    def test_literal_type_must_match_schema(self) -> None:
        """Test a literal of another type than the column is not pushed."""
        predicate = EqualTo("cost", "200")

        translation = translate(ReadOptions(selector={"a": 1}), predicate)

        assert translation.residual == (predicate,)

    def test_in_and_not_null(self) -> None:
        """Test IN and IS NOT NULL translate."""
        translation = translate(
            ReadOptions(use_query=True),
            In("origin", ("BOM", "CDG")),
            IsNotNull("cost"),
        )

        assert translation.request.body is not None
        assert translation.request.body["selector"] == {
            "$and": [
                {"origin": {"$in": ["BOM", "CDG"]}},
                {"cost": {"$exists": True, "$ne": None}},
            ]
        }

    def test_or_translates_only_when_both_sides_do(self) -> None:
        """Test OR is pushed as a whole or not at all."""
        both = Or(EqualTo("origin", "BOM"), EqualTo("origin", "CDG"))
        partial = Or(EqualTo("origin", "BOM"), StringStartsWith("origin", "C"))

        translation = translate(ReadOptions(use_query=True), both, partial)

        assert translation.pushed == (both,)
        assert translation.residual == (partial,)
        assert translation.request.body is not None
        assert translation.request.body["selector"] == {
            "$or": [{"origin": {"$eq": "BOM"}}, {"origin": {"$eq": "CDG"}}]
        }

    def test_flattened_column_uses_nested_path(self) -> None:
        """Test flattened columns are addressed by their dotted path."""
        translation = translate(
            ReadOptions(use_query=True), EqualTo("address.city", "Paris")
        )

        assert translation.request.body == {
            "selector": {"address.city": {"$eq": "Paris"}}
        }

    def test_literal_dot_in_field_name_stays_residual(self) -> None:
        """Test a top-level field containing a dot is not pushed."""
        predicate = EqualTo("odd.name", "x")

        translation = translate(ReadOptions(selector={"a": 1}), predicate)

        assert translation.residual == (predicate,)

    @pytest.mark.parametrize(
        "predicate", [EqualTo("code", "5"), In("code", ("5", "7"))]
    )
    def test_widened_string_column_stays_residual(self, predicate) -> None:
        """Test predicates on a column of mixed sampled types are evaluated client side."""
        translation = translate(ReadOptions(selector={"a": 1}), predicate)

        assert translation.request.body == {"selector": {"a": 1}}
        assert translation.residual == (predicate,)

    def test_use_query_ignores_widened_column(self) -> None:
        """Test useQuery keeps scanning when only a widened column is filtered."""
        translation = translate(ReadOptions(use_query=True), EqualTo("code", "5"))

        assert translation.request.mode == AccessMode.ALL_DOCS
        assert translation.residual == (EqualTo("code", "5"),)

    def test_fields_cover_columns_residuals_and_id(self) -> None:
        """Test Mango fields include requested and residual columns plus _id."""
        translation = translate(
            ReadOptions(selector={"origin": "BOM"}),
            StringStartsWith("active", "t"),
            columns=["cost"],
        )

        assert translation.request.body is not None
        assert translation.request.body["fields"] == ["_id", "active", "cost"]

    def test_without_schema_nothing_is_pushed(self) -> None:
        """Test a translator without schema only sends the user selector."""
        translator = QueryTranslator()
        predicate = EqualTo("origin", "BOM")

        translation = translator.translate(
            translator.describe(ReadOptions(selector={"a": 1}), predicates=[predicate])
        )

        assert translation.request.body == {"selector": {"a": 1}}
        assert translation.residual == (predicate,)


class TestChangesTranslation:
    """Test _changes feed translation."""

    def test_unfiltered_feed(self) -> None:
        """Test a scan through _changes keeps every predicate residual."""
        predicate = EqualTo("origin", "BOM")

        translation = translate(ReadOptions(), predicate, endpoint="_changes")

        assert translation.request.params == {"include_docs": True}
        assert translation.request.body is None
        assert translation.residual == (predicate,)

    def test_selector_becomes_feed_filter(self) -> None:
        """Test a user selector filters the feed server side."""
        translation = translate(
            ReadOptions(selector={"origin": "BOM"}),
            GreaterThan("cost", 250),
            endpoint="_changes",
        )

        assert translation.request.params["filter"] == "_selector"
        assert translation.request.body == {
            "selector": {
                "$and": [
                    {"origin": "BOM"},
                    {"cost": {"$gt": 250, "$type": "number"}},
                ]
            }
        }


class TestViewAndSearchTranslation:
    """Test view and search index translation."""

    def test_view_passes_path_parameters(self) -> None:
        """Test view query suffix parameters are sent and predicates stay residual."""
        predicate = EqualTo("origin", "BOM")

        translation = translate(
            ReadOptions(view="_design/view/_view/AA0?reduce=true"), predicate
        )

        assert translation.request.path == "_design/view/_view/AA0"
        assert translation.request.params == {"reduce": "true"}
        assert translation.residual == (predicate,)

    def test_search_matches_all_and_includes_docs(self) -> None:
        """Test a search read queries every document of the index."""
        translation = translate(
            ReadOptions(index="_design/search/_search/by_origin"),
            EqualTo("origin", "BOM"),
        )

        assert translation.request.params == {"q": "*:*", "include_docs": True}
        assert len(translation.residual) == 1

    def test_search_query_from_path(self) -> None:
        """Test a q parameter in the index path overrides the default."""
        translation = translate(
            ReadOptions(index="_design/search/_search/by_origin?q=origin:BOM")
        )

        assert translation.request.params["q"] == "origin:BOM"


def test_match_all_selector_matches_any_id() -> None:
    """Test the match-all selector compares _id against null."""
    assert MATCH_ALL == {"_id": {"$gt": None}}
