from __future__ import annotations

import pytest
import sqlalchemy as sa

from sqla_relations import InvalidOperatorError, QueryBuilder
from sqla_relations.predicates import (
    MAX_PREDICATE_DEPTH,
    Comparison,
    In,
    Nested,
    Null,
    Raw,
    check_operator,
    find_in,
    has_or,
    references,
    render,
    same_column,
    without,
    wrap_in_group,
)

from ..models import comments


def _sql(query: QueryBuilder[object]) -> str:
    return str(query.to_select().compile(compile_kwargs={"literal_binds": True}))


class TestCheckOperator:
    @pytest.mark.parametrize("operator", ["=", "<>", "!=", ">=", "LIKE", "not  like", "ILike"])
    def test_allowed(self, operator: str) -> None:
        assert check_operator(operator) in {"=", "<>", "!=", ">=", "like", "not like", "ilike"}

    @pytest.mark.parametrize("operator", ["; drop table", "in", "==", "", 5])
    def test_rejected(self, operator: object) -> None:
        with pytest.raises(InvalidOperatorError):
            check_operator(operator)

    def test_error_is_value_error(self) -> None:
        with pytest.raises(ValueError, match="not allowed"):
            check_operator("regexp")


class TestSameColumn:
    def test_qualified_equal(self) -> None:
        assert same_column("comments.post_id", "comments.post_id")

    def test_unqualified_matches_leaf(self) -> None:
        assert same_column("post_id", "comments.post_id")

    def test_different_tables(self) -> None:
        assert not same_column("comments.post_id", "images.post_id")

    def test_column_element(self) -> None:
        assert same_column(comments.c.post_id, "comments.post_id")


class TestGrouping:
    def test_has_or(self) -> None:
        assert has_or([Comparison("a", "=", 1), Comparison("b", "=", 2, "or")])
        assert not has_or([Comparison("a", "=", 1), Null("b")])

    def test_wrap_forces_first_and(self) -> None:
        first = Comparison("a", "=", 1, "or")
        second = Comparison("b", "=", 2, "or")
        (group,) = wrap_in_group([first, second])

        assert isinstance(group, Nested)
        assert group.children[0].connective == "and"
        assert group.children[1] is second

    def test_wrap_empty(self) -> None:
        assert wrap_in_group([]) == ()

    def test_or_precedence_rendering(self) -> None:
        query = QueryBuilder(comments)
        query.where("id", ">", 3).or_where("body", "like", "%x%")
        query.set_wheres(wrap_in_group(query.wheres))
        query.where_in("comments.post_id", [1, 2])

        assert "(comments.id > 3 OR comments.body LIKE '%x%') AND comments.post_id IN (1, 2)" in _sql(query)

    def test_flat_list_and_binds_tighter(self) -> None:
        nodes = [Comparison("a", "=", 1), Comparison("b", "=", 2, "or"), Comparison("c", "=", 3)]
        table = sa.table("t", sa.column("a"), sa.column("b"), sa.column("c"))
        expr = render(nodes, lambda ref: table.c[ref])
        sql = str(expr.compile(compile_kwargs={"literal_binds": True}))

        assert sql == "t.a = 1 OR t.b = 2 AND t.c = 3"

    def test_render_empty(self) -> None:
        assert render([], lambda ref: ref) is None


class TestFindAndStrip:
    def test_find_in_nested(self) -> None:
        target = In("comments.post_id", (1, 2))
        nodes = [Nested((Comparison("a", "=", 1), Nested((target,))))]

        assert find_in(nodes, "comments.post_id") is target

    def test_find_in_depth_limit(self) -> None:
        node: object = In("x", (1,))
        for _ in range(MAX_PREDICATE_DEPTH + 2):
            node = Nested((node,))  # type: ignore[arg-type]

        assert find_in([node], "x") is None  # type: ignore[list-item]

    def test_without_identity(self) -> None:
        mine = Comparison("a", "=", 1)
        lookalike = Comparison("a", "=", 1)

        assert without([mine, lookalike], [mine]) == (lookalike,)

    def test_without_drops_empty_groups(self) -> None:
        inner = In("x", (1,))
        keep = Comparison("y", "=", 2)
        result = without([Nested((inner,)), keep], [inner])

        assert result == (keep,)

    def test_without_rebuilds_group(self) -> None:
        inner = In("x", (1,))
        keep = Comparison("y", "=", 2)
        (group,) = without([Nested((keep, inner))], [inner])

        assert isinstance(group, Nested)
        assert group.children == (keep,)

    def test_references(self) -> None:
        assert references(Nested((Comparison("comments.post_id", "=", 1),)), "comments.post_id")
        assert not references(Raw("post_id = 1"), "comments.post_id")
