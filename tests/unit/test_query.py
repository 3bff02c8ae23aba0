from __future__ import annotations

import pytest
import sqlalchemy as sa

from sqla_relations import InvalidOperatorError, QueryBuilder

from ..models import Comment, Post, comments, posts, users


def _sql(query: QueryBuilder[object]) -> str:
    return str(query.to_select().compile(compile_kwargs={"literal_binds": True}))


class TestWhere:
    def test_two_argument_form_is_equality(self) -> None:
        sql = _sql(Comment.query().where("post_id", 3))

        assert "comments.post_id = 3" in sql

    def test_operator_form(self) -> None:
        sql = _sql(Comment.query().where("comments.id", ">=", 2))

        assert "comments.id >= 2" in sql

    def test_missing_value(self) -> None:
        with pytest.raises(TypeError):
            Comment.query().where("post_id")

    def test_rejected_operator(self) -> None:
        with pytest.raises(InvalidOperatorError):
            Comment.query().where("post_id", "; --", 1)

    def test_null_and_in(self) -> None:
        sql = _sql(Comment.query().where_null("post_id").or_where_in("id", [1, 2]))

        assert "comments.post_id IS NULL OR comments.id IN (1, 2)" in sql

    def test_between(self) -> None:
        sql = _sql(Comment.query().where_between("id", 1, 5).where_not_between("post_id", 7, 9))

        assert "comments.id BETWEEN 1 AND 5" in sql
        assert "comments.post_id NOT BETWEEN 7 AND 9" in sql

    def test_raw_with_params(self) -> None:
        query = Comment.query().where_raw("length(body) > :size", size=3)

        assert "length(body) > :size" in query.to_sql()
        assert query.bindings()["size"] == 3

    def test_expression(self) -> None:
        sql = _sql(Comment.query().where_expr(comments.c.body == "x"))

        assert "comments.body = 'x'" in sql

    def test_group(self) -> None:
        query = Comment.query().where("post_id", 1).where_group(
            lambda q: q.where("id", 1).or_where("id", 2)
        )

        assert "comments.post_id = 1 AND (comments.id = 1 OR comments.id = 2)" in _sql(query)


class TestResolve:
    def test_unknown_table(self) -> None:
        with pytest.raises(ValueError, match="not part of the query"):
            Comment.query().where("users.id", 1).to_select()

    def test_unknown_column(self) -> None:
        with pytest.raises(ValueError, match="Available"):
            Comment.query().where("missing", 1).to_select()

    def test_joined_table(self) -> None:
        query = Post.query().join(users, "users.id", "=", "posts.user_id").where("users.name", "alice")

        assert "JOIN users ON users.id = posts.user_id" in _sql(query)

    def test_select_alias(self) -> None:
        query = Post.query().join(users, "users.id", "=", "posts.user_id").add_select("users.name as author")
        labels = [column.name for column in query.selected_columns()]

        assert labels[-1] == "author"
        assert labels[: len(posts.c)] == [column.name for column in posts.c]


class TestOrdering:
    def test_order_and_limit(self) -> None:
        sql = _sql(Comment.query().order_by("id", "DESC").limit(3).offset(2))

        assert "ORDER BY comments.id DESC" in sql
        assert "LIMIT 3 OFFSET 2" in sql

    def test_invalid_direction(self) -> None:
        with pytest.raises(ValueError):
            Comment.query().order_by("id", "sideways")

    def test_for_page(self) -> None:
        query = Comment.query().for_page(3, 10)

        assert query.limit_value == 10
        assert query.offset_value == 20

    def test_clone_is_independent(self) -> None:
        query = Comment.query().where("post_id", 1)
        clone = query.clone().where("id", 2)

        assert len(query.wheres) == 1
        assert len(clone.wheres) == 2


def test_unbound_query_get() -> None:
    with pytest.raises(TypeError, match="rows"):
        QueryBuilder(sa.Table("loose", sa.MetaData(), sa.Column("id", sa.Integer))).get(None)  # type: ignore[arg-type]
