from __future__ import annotations

from typing import Any

import pytest
import sqlalchemy as sa

from sqla_relations import ModelCollection, add_constraints, eager_load, load_counts

from ..conftest import StatementRecorder
from ..models import Comment, Country, Image, Post, User, Video, comments


def _by_name(models: ModelCollection[Any]) -> dict[str, Any]:
    return {model.name: model for model in models}


class TestHasMany:
    def test_every_owner_gets_collection(self, connection: sa.Connection, seed_data: dict[str, Any]) -> None:
        users = eager_load(connection, User.all(connection), loads=("posts",))
        by_name = _by_name(users)

        assert sorted(by_name["alice"].get_relation("posts").model_keys()) == [1, 2, 3]
        assert sorted(by_name["bob"].get_relation("posts").model_keys()) == [4, 5]
        assert by_name["dave"].get_relation("posts") == []
        assert all(user.relation_loaded("posts") for user in users)

    def test_one_query_for_the_batch(
        self, connection: sa.Connection, seed_data: dict[str, Any], statements: StatementRecorder
    ) -> None:
        users = User.all(connection)
        statements.clear()
        eager_load(connection, users, loads=("posts",))

        assert len(statements.selects) == 1
        assert "IN" in statements.selects[0]

    def test_returns_same_owners(self, connection: sa.Connection, seed_data: dict[str, Any]) -> None:
        users = User.all(connection)
        result = eager_load(connection, users, loads=("posts",))

        assert [id(user) for user in result] == [id(user) for user in users]


class TestHasOne:
    def test_profile(self, connection: sa.Connection, seed_data: dict[str, Any]) -> None:
        by_name = _by_name(eager_load(connection, User.all(connection), loads=("profile",)))

        assert by_name["alice"].get_relation("profile").bio == "alice bio"
        assert by_name["carol"].get_relation("profile") is None


class TestBelongsTo:
    def test_post_user(self, connection: sa.Connection, seed_data: dict[str, Any]) -> None:
        posts = eager_load(connection, Post.all(connection), loads=("user",))

        assert {post.key: post.get_relation("user").name for post in posts} == {
            1: "alice", 2: "alice", 3: "alice", 4: "bob", 5: "bob", 6: "carol",
        }

    def test_null_foreign_key(self, connection: sa.Connection, seed_data: dict[str, Any]) -> None:
        by_name = _by_name(eager_load(connection, User.all(connection), loads=("country",)))

        assert by_name["alice"].get_relation("country").name == "Netherlands"
        assert by_name["dave"].get_relation("country") is None

    def test_no_owner_keys_issues_no_sql(
        self, connection: sa.Connection, seed_data: dict[str, Any], statements: StatementRecorder
    ) -> None:
        dave = User.find(connection, 4)
        statements.clear()
        eager_load(connection, [dave], loads=("country",))

        assert statements.selects == []
        assert dave.get_relation("country") is None  # type: ignore[union-attr]


class TestThrough:
    def test_has_many_through(self, connection: sa.Connection, seed_data: dict[str, Any]) -> None:
        by_name = _by_name(eager_load(connection, Country.all(connection), loads=("posts",)))

        assert sorted(by_name["Netherlands"].get_relation("posts").model_keys()) == [1, 2, 3, 4, 5]
        assert by_name["France"].get_relation("posts").model_keys() == [6]

    def test_through_key_removed(self, connection: sa.Connection, seed_data: dict[str, Any]) -> None:
        countries = eager_load(connection, Country.all(connection), loads=("posts",))

        for country in countries:
            for post in country.get_relation("posts"):
                assert "through_country_id" not in post.attributes

    def test_has_one_through(self, connection: sa.Connection, seed_data: dict[str, Any]) -> None:
        by_name = _by_name(eager_load(connection, Country.all(connection), loads=("first_post",)))

        assert by_name["Netherlands"].get_relation("first_post").key in {1, 2, 3, 4, 5}
        assert by_name["France"].get_relation("first_post").key == 6

    def test_lazy(self, connection: sa.Connection, seed_data: dict[str, Any]) -> None:
        france = Country.find(connection, 2)
        posts = france.posts().get(connection)  # type: ignore[union-attr]

        assert posts.model_keys() == [6]
        assert "through_country_id" not in posts[0].attributes


class TestNested:
    def test_dotted_path(
        self, connection: sa.Connection, seed_data: dict[str, Any], statements: StatementRecorder
    ) -> None:
        users = User.all(connection)
        statements.clear()
        eager_load(connection, users, loads=("posts.comments",))
        alice = _by_name(users)["alice"]
        counts = {post.key: len(post.get_relation("comments")) for post in alice.get_relation("posts")}

        assert counts == {1: 5, 2: 2, 3: 0}
        assert len(statements.selects) == 2

    def test_sibling_and_nested(self, connection: sa.Connection, seed_data: dict[str, Any]) -> None:
        users = eager_load(connection, User.all(connection), loads=("profile", "posts.user", "posts.tags"))
        alice = _by_name(users)["alice"]

        assert alice.get_relation("profile").key == 1
        assert all(post.get_relation("user").name == "alice" for post in alice.get_relation("posts"))
        assert {post.key: len(post.get_relation("tags")) for post in alice.get_relation("posts")} == {1: 3, 2: 1, 3: 0}

    def test_mixed_owner_classes(
        self, connection: sa.Connection, seed_data: dict[str, Any], statements: StatementRecorder
    ) -> None:
        owners = [*Post.find_many(connection, [1, 2]), *Video.all(connection)]
        statements.clear()
        eager_load(connection, owners, loads=("images",))

        assert len(statements.selects) == 2
        assert {(type(o).__name__, o.key): sorted(o.get_relation("images").model_keys()) for o in owners} == {
            ("Post", 1): [1, 2],
            ("Post", 2): [4],
            ("Video", 1): [3],
            ("Video", 2): [5],
        }


class TestConditions:
    def test_callable(self, connection: sa.Connection, seed_data: dict[str, Any]) -> None:
        users = eager_load(
            connection,
            User.all(connection),
            loads=("posts",),
            conditions={"posts": lambda rel: rel.where("published", True)},
        )

        assert sorted(_by_name(users)["alice"].get_relation("posts").model_keys()) == [1, 2]

    def test_add_constraints(self, connection: sa.Connection, seed_data: dict[str, Any]) -> None:
        posts = eager_load(
            connection,
            Post.find_many(connection, [1, 2]),
            loads=("comments",),
            conditions={"comments": add_constraints(comments.c.approved.is_(True))},
        )

        assert {post.key: sorted(post.get_relation("comments").model_keys()) for post in posts} == {
            1: [1, 3, 5],
            2: [6],
        }

    def test_dotted_key_wins(self, connection: sa.Connection, seed_data: dict[str, Any]) -> None:
        users = eager_load(
            connection,
            User.all(connection),
            loads=("posts.comments",),
            conditions={
                "posts.comments": lambda rel: rel.where("body", "first"),
                "comments": lambda rel: rel.where("body", "never"),
            },
        )
        post_one = next(post for post in _by_name(users)["alice"].get_relation("posts") if post.key == 1)

        assert [comment.body for comment in post_one.get_relation("comments")] == ["first"]

    def test_no_match_gives_empty(self, connection: sa.Connection, seed_data: dict[str, Any]) -> None:
        users = eager_load(
            connection,
            User.all(connection),
            loads=("posts",),
            conditions={"posts": lambda rel: rel.where("title", "NONEXISTENT")},
        )

        assert all(user.get_relation("posts") == [] for user in users)


class TestErrors:
    def test_unknown_relation(self, connection: sa.Connection, seed_data: dict[str, Any]) -> None:
        with pytest.raises(ValueError, match="not found on User"):
            eager_load(connection, User.all(connection), loads=("missing",))

    def test_empty_owner_list(self, connection: sa.Connection, statements: StatementRecorder) -> None:
        statements.clear()

        assert eager_load(connection, [], loads=("posts",)) == []
        assert statements.selects == []


class TestLoadCounts:
    def test_one_grouped_query_per_relation(
        self, connection: sa.Connection, seed_data: dict[str, Any], statements: StatementRecorder
    ) -> None:
        posts = Post.find_many(connection, [1, 2, 3])
        statements.clear()
        load_counts(connection, posts, "comments", "tags")

        assert {post.key: post.comments_count for post in posts} == {1: 5, 2: 2, 3: 0}
        assert {post.key: post.tags_count for post in posts} == {1: 3, 2: 1, 3: 0}
        assert len(statements.selects) == 2
        assert not any(post.relation_loaded("comments") for post in posts)

    def test_morph_many_counts_own_type(self, connection: sa.Connection, seed_data: dict[str, Any]) -> None:
        posts = load_counts(connection, Post.find_many(connection, [1, 2]), "images")
        videos = load_counts(connection, Video.find_many(connection, [1, 2]), "images")

        assert {post.key: post.images_count for post in posts} == {1: 2, 2: 1}
        assert {video.key: video.images_count for video in videos} == {1: 1, 2: 1}

    def test_through(self, connection: sa.Connection, seed_data: dict[str, Any]) -> None:
        countries = load_counts(connection, Country.all(connection), "posts")

        assert {country.name: country.posts_count for country in countries} == {"Netherlands": 5, "France": 1}

    def test_morph_to_rejected(self, connection: sa.Connection, seed_data: dict[str, Any]) -> None:
        with pytest.raises(ValueError, match="cannot be counted"):
            load_counts(connection, Image.all(connection), "imageable")

    def test_empty_owner_list(self, connection: sa.Connection, statements: StatementRecorder) -> None:
        statements.clear()

        assert load_counts(connection, [], "comments") == []
        assert statements.statements == []


def test_lazy_load_into(connection: sa.Connection, seed_data: dict[str, Any]) -> None:
    post = Post.find(connection, 2)
    assert post is not None
    result = post.comments().load_into(connection, "comments")

    assert post.relation_loaded("comments")
    assert sorted(result.model_keys()) == [6, 7]
    assert all(isinstance(comment, Comment) for comment in post.get_relation("comments"))
