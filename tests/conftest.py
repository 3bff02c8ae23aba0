from __future__ import annotations

import os
from collections.abc import Iterator
from datetime import datetime
from typing import Any

import pytest
import sqlalchemy as sa

from sqla_relations import MorphMap, default_schema_cache, relations_cache_clear, supports_window_functions

from .models import (
    comments,
    countries,
    images,
    metadata,
    post_tag,
    posts,
    profiles,
    taggables,
    tags,
    users,
    videos,
)


def pytest_addoption(parser: pytest.Parser) -> None:
    parser.addoption(
        "--db",
        default="sqlite",
        choices=["sqlite", "postgres", "mysql", "mariadb"],
        help="Database backend to test against",
    )


@pytest.fixture(scope="session")
def db_backend(request: pytest.FixtureRequest) -> str:
    value: str = request.config.getoption("--db")

    return value


@pytest.fixture(scope="session")
def db_config(db_backend: str, tmp_path_factory: pytest.TempPathFactory) -> Iterator[str]:
    match db_backend:
        case "postgres":
            from testcontainers.postgres import PostgresContainer

            pg = PostgresContainer(image="postgres:latest")
            if os.name == "nt":
                pg.get_container_host_ip = lambda: "127.0.0.1"
            with pg:
                host = pg.get_container_host_ip()
                dsn = (
                    f"postgresql+psycopg://{pg.username}:{pg.password}"
                    f"@{host}:{pg.get_exposed_port(pg.port)}/{pg.dbname}"
                )
                yield dsn

        case "mysql" | "mariadb":
            from testcontainers.mysql import MySqlContainer

            my = MySqlContainer(image="mysql:8.0" if db_backend == "mysql" else "mariadb:latest")
            if os.name == "nt":
                my.get_container_host_ip = lambda: "127.0.0.1"
            with my:
                host = my.get_container_host_ip()
                port = my.get_exposed_port(my.port)
                dsn = (
                    f"mysql+pymysql://{my.username}:{my.password}"
                    f"@{host}:{port}/{my.dbname}"
                )
                yield dsn

        case "sqlite":
            tmp = tmp_path_factory.mktemp("db")
            yield f"sqlite+pysqlite:///{tmp}/test.db"


@pytest.fixture(scope="session")
def engine(db_config: str, db_backend: str) -> Iterator[sa.Engine]:
    engine = sa.create_engine(db_config, echo=False)
    if db_backend == "sqlite":
        # pysqlite defers BEGIN, which breaks SAVEPOINT inside the test transaction

        @sa.event.listens_for(engine, "connect")
        def _do_connect(dbapi_connection: Any, connection_record: Any) -> None:
            dbapi_connection.isolation_level = None

        @sa.event.listens_for(engine, "begin")
        def _do_begin(conn: sa.Connection) -> None:
            conn.exec_driver_sql("BEGIN")

    yield engine
    engine.dispose()


@pytest.fixture(scope="session")
def _create_tables(engine: sa.Engine) -> Iterator[None]:
    with engine.begin() as conn:
        metadata.create_all(conn)
    yield
    with engine.begin() as conn:
        metadata.drop_all(conn)


@pytest.fixture
def connection(engine: sa.Engine, _create_tables: None) -> Iterator[sa.Connection]:
    with engine.connect() as conn:
        trans = conn.begin()
        yield conn
        trans.rollback()


def _day(day: int) -> datetime:
    return datetime(2024, 1, day, 12, 0, 0)


@pytest.fixture
def seed_data(connection: sa.Connection) -> dict[str, list[dict[str, Any]]]:
    data: dict[str, list[dict[str, Any]]] = {
        "countries": [
            {"id": 1, "name": "Netherlands"},
            {"id": 2, "name": "France"},
        ],
        "users": [
            {"id": 1, "name": "alice", "country_id": 1, "updated_at": _day(1)},
            {"id": 2, "name": "bob", "country_id": 1, "updated_at": _day(1)},
            {"id": 3, "name": "carol", "country_id": 2, "updated_at": _day(1)},
            {"id": 4, "name": "dave", "country_id": None, "updated_at": _day(1)},
        ],
        "profiles": [
            {"id": 1, "user_id": 1, "bio": "alice bio"},
            {"id": 2, "user_id": 2, "bio": "bob bio"},
        ],
        "posts": [
            {"id": 1, "user_id": 1, "title": "Alice Post 1", "published": True, "created_at": _day(1), "updated_at": _day(1)},
            {"id": 2, "user_id": 1, "title": "Alice Post 2", "published": True, "created_at": _day(2), "updated_at": _day(2)},
            {"id": 3, "user_id": 1, "title": "Alice Post 3", "published": False, "created_at": _day(3), "updated_at": _day(3)},
            {"id": 4, "user_id": 2, "title": "Bob Post 1", "published": True, "created_at": _day(4), "updated_at": _day(4)},
            {"id": 5, "user_id": 2, "title": "Bob Post 2", "published": False, "created_at": _day(5), "updated_at": _day(5)},
            {"id": 6, "user_id": 3, "title": "Carol Post 1", "published": True, "created_at": _day(6), "updated_at": _day(6)},
        ],
        "comments": [
            {"id": 1, "post_id": 1, "body": "first", "approved": True, "created_at": _day(1)},
            {"id": 2, "post_id": 1, "body": "second", "approved": False, "created_at": _day(2)},
            {"id": 3, "post_id": 1, "body": "third", "approved": True, "created_at": _day(3)},
            {"id": 4, "post_id": 1, "body": "fourth", "approved": False, "created_at": _day(4)},
            {"id": 5, "post_id": 1, "body": "fifth", "approved": True, "created_at": _day(5)},
            {"id": 6, "post_id": 2, "body": "sixth", "approved": True, "created_at": _day(6)},
            {"id": 7, "post_id": 2, "body": "seventh", "approved": False, "created_at": _day(7)},
            {"id": 8, "post_id": 4, "body": "eighth", "approved": True, "created_at": _day(8)},
        ],
        "tags": [
            {"id": 1, "name": "python"},
            {"id": 2, "name": "sql"},
            {"id": 3, "name": "testing"},
            {"id": 4, "name": "rust"},
        ],
        "post_tag": [
            {"post_id": 1, "tag_id": 1, "role": "author", "is_primary": True, "position": 1, "created_at": _day(1)},
            {"post_id": 1, "tag_id": 2, "role": "editor", "is_primary": False, "position": 2, "created_at": _day(2)},
            {"post_id": 1, "tag_id": 3, "role": None, "is_primary": False, "position": 3, "created_at": _day(3)},
            {"post_id": 2, "tag_id": 1, "role": None, "is_primary": True, "position": 1, "created_at": _day(4)},
            {"post_id": 4, "tag_id": 3, "role": "author", "is_primary": False, "position": 1, "created_at": _day(5)},
        ],
        "videos": [
            {"id": 1, "title": "Intro", "duration": 60, "created_at": _day(1), "updated_at": _day(1)},
            {"id": 2, "title": "Deep dive", "duration": 600, "created_at": _day(2), "updated_at": _day(2)},
        ],
        "images": [
            {"id": 1, "url": "post1-a.png", "imageable_type": "post", "imageable_id": 1},
            {"id": 2, "url": "post1-b.png", "imageable_type": "post", "imageable_id": 1},
            {"id": 3, "url": "video1.png", "imageable_type": "video", "imageable_id": 1},
            {"id": 4, "url": "post2.png", "imageable_type": "post", "imageable_id": 2},
            {"id": 5, "url": "video2.png", "imageable_type": "video", "imageable_id": 2},
            {"id": 6, "url": "orphan.png", "imageable_type": None, "imageable_id": None},
        ],
        "taggables": [
            {"tag_id": 1, "taggable_id": 1, "taggable_type": "post"},
            {"tag_id": 2, "taggable_id": 1, "taggable_type": "post"},
            {"tag_id": 1, "taggable_id": 1, "taggable_type": "video"},
            {"tag_id": 3, "taggable_id": 2, "taggable_type": "video"},
        ],
    }

    for table in (countries, users, profiles, posts, comments, tags, post_tag, videos, images, taggables):
        connection.execute(sa.insert(table), data[table.name])

    return data


class StatementRecorder:
    """Statements sent to the database, for round-trip assertions."""

    def __init__(self) -> None:
        self.statements: list[str] = []

    def __call__(self, conn: Any, cursor: Any, statement: str, *args: Any) -> None:
        self.statements.append(statement)

    def clear(self) -> None:
        self.statements.clear()

    @property
    def selects(self) -> list[str]:
        return [
            statement
            for statement in self.statements
            if statement.lstrip("( \n").upper().startswith("SELECT")
        ]


@pytest.fixture
def statements(engine: sa.Engine) -> Iterator[StatementRecorder]:
    recorder = StatementRecorder()
    sa.event.listen(engine, "before_cursor_execute", recorder)
    yield recorder
    sa.event.remove(engine, "before_cursor_execute", recorder)


@pytest.fixture(autouse=True)
def clear_caches() -> Iterator[None]:
    yield
    relations_cache_clear()
    default_schema_cache.clear()
    MorphMap.reset()


# Multi-dialect: auto-skip @pytest.mark.window on backends without ROW_NUMBER() OVER

@pytest.fixture(autouse=True)
def _skip_window(request: pytest.FixtureRequest) -> None:
    if request.node.get_closest_marker("window"):
        conn: sa.Connection = request.getfixturevalue("connection")
        if not supports_window_functions(conn.dialect):
            pytest.skip("window functions not supported on this backend")
