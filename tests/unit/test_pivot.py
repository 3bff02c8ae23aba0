from __future__ import annotations

from decimal import Decimal

import pytest

from sqla_relations import (
    InvalidJsonPathError,
    InvalidOperatorError,
    InvalidPivotDataError,
    InvalidRelatedIdError,
)
from sqla_relations.pivot import (
    PivotConstraintSet,
    PivotWhere,
    format_sync_records,
    validate_json_path,
    validate_pivot_data,
)
from sqla_relations.predicates import Comparison, In

from ..models import Post, Tag, post_tag, tags


def _pivot() -> PivotConstraintSet:
    return PivotConstraintSet(table=post_tag, foreign_pivot_key="post_id", related_pivot_key="tag_id")


def _sql(query: object) -> str:
    return str(query.to_select().compile(compile_kwargs={"literal_binds": True}))  # type: ignore[attr-defined]


class TestValidators:
    @pytest.mark.parametrize("path", ["$", "$.a", "$.a.b_c", "$.items[0]", "$[3].name"])
    def test_valid_json_paths(self, path: str) -> None:
        assert validate_json_path(path) == path

    @pytest.mark.parametrize("path", ["", "a.b", "$.", "$.a'; drop", "$[x]", "$..a", None])
    def test_invalid_json_paths(self, path: object) -> None:
        with pytest.raises(InvalidJsonPathError):
            validate_json_path(path)

    def test_pivot_data_scalars(self) -> None:
        data = {"role": "author", "position": 2, "weight": Decimal("1.5"), "note": None}

        assert validate_pivot_data(data) == data

    def test_pivot_data_bad_column(self) -> None:
        with pytest.raises(InvalidPivotDataError):
            validate_pivot_data({"role; --": "x"})

    def test_pivot_data_non_scalar(self) -> None:
        with pytest.raises(InvalidPivotDataError, match="scalar"):
            validate_pivot_data({"role": ["a", "b"]})


class TestFormatSyncRecords:
    def test_single_id(self) -> None:
        assert format_sync_records(3) == {3: {}}

    def test_list_of_ids(self) -> None:
        assert format_sync_records([1, "2", 1]) == {1: {}, "2": {}}

    def test_mapping_with_data(self) -> None:
        assert format_sync_records({1: {"role": "author"}, 2: None}) == {1: {"role": "author"}, 2: {}}

    def test_model_instances(self) -> None:
        assert format_sync_records([Tag({"id": 4}), Tag({"id": 2})]) == {4: {}, 2: {}}

    @pytest.mark.parametrize("ids", [[1.5], [True], [None], object()])
    def test_rejects_non_keys(self, ids: object) -> None:
        with pytest.raises(InvalidRelatedIdError):
            format_sync_records(ids)

    def test_validates_data_before_returning(self) -> None:
        with pytest.raises(InvalidPivotDataError):
            format_sync_records({1: {"bad column": 1}})


class TestConstraintSet:
    def test_qualify_and_alias(self) -> None:
        pivot = _pivot()

        assert pivot.qualify("role") == "post_tag.role"
        assert pivot.qualify("tags.role") == "post_tag.role"
        assert pivot.alias("post_tag.role") == "pivot_role"

    def test_with_pivot(self) -> None:
        pivot = _pivot()
        pivot.with_pivot("role", "post_tag.position", "role")

        assert pivot.columns == ["role", "position"]
        assert pivot.extra_columns(None) == ["role", "position"]

    def test_with_pivot_rejects_identifier(self) -> None:
        with pytest.raises(InvalidPivotDataError):
            _pivot().with_pivot("role)")

    def test_with_timestamps(self) -> None:
        pivot = _pivot()
        pivot.with_timestamps()

        assert pivot.timestamps
        assert pivot.columns == ["created_at", "updated_at"]

    def test_staged_until_joined(self) -> None:
        pivot = _pivot()
        query = Tag.query()
        pivot.add(PivotWhere("basic", "is_primary", "=", True), query)

        assert query.wheres == ()

        query.join(post_tag, "tags.id", "=", "post_tag.tag_id")
        pivot.apply(query)
        pivot.apply(query)

        (node,) = query.wheres
        assert isinstance(node, Comparison)
        assert node.column == "post_tag.is_primary"

    def test_direct_when_joined(self) -> None:
        pivot = _pivot()
        query = Tag.query().join(post_tag, "tags.id", "=", "post_tag.tag_id")
        pivot.add(PivotWhere("in", "role", values=("author", "editor")), query)

        pivot.apply(query)

        assert len(query.wheres) == 1
        assert isinstance(query.wheres[0], In)

    def test_order_selects_column(self) -> None:
        from sqla_relations.pivot import PivotOrder

        pivot = _pivot()
        query = Tag.query().join(post_tag, "tags.id", "=", "post_tag.tag_id")
        pivot.add_order(PivotOrder("position", "desc"), query)

        assert "position" in pivot.columns
        assert "ORDER BY post_tag.position DESC" in _sql(query)

    def test_apply_all_on_pivot_query(self) -> None:
        from sqla_relations.query import QueryBuilder

        pivot = _pivot()
        pivot.add(PivotWhere("null", "role"), None)
        query = QueryBuilder(post_tag)
        pivot.apply_all(query)

        assert "post_tag.role IS NULL" in _sql(query)

    def test_scope_predicates(self) -> None:
        assert _pivot().scope_predicates() == ()

        pivot = _pivot()
        pivot.morph_type_column = "post_type"
        pivot.morph_class = "post"
        (node,) = pivot.scope_predicates()

        assert node == Comparison("post_tag.post_type", "=", "post")
        assert pivot.copy().morph_class == "post"

    def test_select_columns(self) -> None:
        pivot = _pivot()
        pivot.with_pivot("role")
        query = Tag.query().join(post_tag, "tags.id", "=", "post_tag.tag_id")
        pivot.select_columns(query, None)
        labels = [column.name for column in query.selected_columns()]

        assert labels == [*(c.name for c in tags.c), "pivot_post_id", "pivot_tag_id", "pivot_role"]

    def test_copy_is_independent(self) -> None:
        pivot = _pivot()
        copy = pivot.copy()
        copy.with_pivot("role")
        copy.add(PivotWhere("null", "role"), None)

        assert pivot.columns == []
        assert pivot.wheres == []


class TestRejectedBeforeSql:
    def test_bad_operator(self) -> None:
        with pytest.raises(InvalidOperatorError):
            _pivot().add(PivotWhere("basic", "role", "=<>", "x"), None)

    def test_bad_column(self) -> None:
        with pytest.raises(InvalidPivotDataError):
            _pivot().add(PivotWhere("basic", "role = 1 or 1", "=", "x"), None)

    def test_bad_json_path(self) -> None:
        with pytest.raises(InvalidJsonPathError):
            _pivot().add(PivotWhere("json_contains", "role", value="x", path="$.a') or 1=1 --"), None)

    def test_bad_function(self) -> None:
        with pytest.raises(InvalidPivotDataError, match="function"):
            _pivot().add(PivotWhere("function", "created_at", "=", 1, function="sleep"), None)

    def test_relation_methods_validate(self) -> None:
        relation = Post({"id": 1}).tags()
        with pytest.raises(InvalidOperatorError):
            relation.where_pivot("role", "regexp", "a")
        with pytest.raises(InvalidJsonPathError):
            relation.where_pivot_json_contains("role", "x", "not-a-path")
