"""Per-owner ``LIMIT`` through ``ROW_NUMBER() OVER (PARTITION BY ...)``.

An eager query shaped like ``WHERE owner_key IN (...) LIMIT n`` limits the
whole batch, not each owner. When the backend has window functions the
query is rewritten into::

    SELECT <columns> FROM (
        SELECT ranked_base.*, ROW_NUMBER() OVER (
            PARTITION BY <owner key> ORDER BY <ordering>
        ) AS relation_row
        FROM (<query without the IN batch, LIMIT and ORDER BY>) AS ranked_base
        WHERE <owner key> IN (...)
    ) AS ranked
    WHERE relation_row <= n          -- or offset < relation_row <= offset + n
    ORDER BY relation_row

Anything that goes wrong while planning or executing the ranked query is
logged and reported as ``None`` so the caller runs the plain query instead.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, Final

import sqlalchemy as sa
from sqlalchemy.exc import SQLAlchemyError

from .predicates import ColumnRef, Predicate, column_key, without
from .query import QueryBuilder
from .tools import leaf, supports_window_functions


logger = logging.getLogger(__name__)

ROW_NUMBER_LABEL: Final[str] = "relation_row"


@dataclass(frozen=True, slots=True)
class Partition:
    """One partitioning column of the ranked subquery and the values it is filtered on."""

    label: str
    values: tuple[Any, ...]


@dataclass(frozen=True, slots=True)
class WindowPlan:
    """Inputs for :func:`build_ranked_select`.

    Attributes:
        partitions: Base-subquery labels to partition by, with owner values.
        eager_predicates: Nodes to strip from the base query (identity match).
        tiebreaker: Label of the related primary key, used as default ordering
            and appended as a final ascending sort key when absent.
        order_label: Maps an ``ORDER BY`` column reference to the label it has
            inside the base subquery. Raises ``KeyError`` when it has none.
    """

    partitions: tuple[Partition, ...]
    eager_predicates: tuple[Predicate, ...]
    tiebreaker: str
    order_label: Callable[[ColumnRef], str] = field(default=lambda ref: leaf(column_key(ref)))


def should_rank(query: QueryBuilder[Any], plan: WindowPlan | None) -> bool:
    """The triggering shape: an eager batch predicate plus a positive ``LIMIT``."""
    return (
        plan is not None
        and bool(plan.eager_predicates)
        and query.limit_value is not None
        and query.limit_value > 0
    )


def build_ranked_select(query: QueryBuilder[Any], plan: WindowPlan) -> sa.Select[Any]:
    """Rewrite *query* into the ranked partition query described in the module docstring.

    Raises:
        KeyError: If a partition or ordering column is missing from the base select.
    """
    limit = query.limit_value
    if limit is None:
        raise ValueError("build_ranked_select() needs a query with a LIMIT")
    offset = query.offset_value or 0

    base = query.clone().reorder().limit(None).offset(None)
    base.set_wheres(without(query.wheres, plan.eager_predicates))
    base_sq = base.to_select().subquery("ranked_base")

    order_by: list[sa.ColumnElement[Any]] = []
    seen: set[str] = set()
    for order in query.orders:
        label = plan.order_label(order.column)
        column = base_sq.c[label]
        order_by.append(column.desc() if order.direction == "desc" else column.asc())
        seen.add(label)
    if plan.tiebreaker not in seen:
        order_by.append(base_sq.c[plan.tiebreaker].asc())

    partition_by = [base_sq.c[partition.label] for partition in plan.partitions]
    row_number = sa.func.row_number().over(partition_by=partition_by, order_by=order_by)

    ranked = (
        sa.select(base_sq, row_number.label(ROW_NUMBER_LABEL))
        .where(*(
            base_sq.c[partition.label].in_(partition.values) for partition in plan.partitions
        ))
        .subquery("ranked")
    )

    row = ranked.c[ROW_NUMBER_LABEL]
    window = row <= limit if not offset else sa.and_(row > offset, row <= offset + limit)
    return (
        sa.select(*(column for column in ranked.c if column.key != ROW_NUMBER_LABEL))
        .where(window)
        .order_by(row, *(ranked.c[partition.label] for partition in plan.partitions))
    )


def fetch_ranked(
    conn: sa.Connection, query: QueryBuilder[Any], plan: WindowPlan | None
) -> list[dict[str, Any]] | None:
    """Run the ranked query for *plan*.

    Returns the row mappings, or ``None`` when the caller must run the plain
    query: the trigger shape is absent, the backend lacks window functions,
    or building or executing the ranked query failed.
    """
    if plan is None or not should_rank(query, plan):
        return None

    if not supports_window_functions(conn.dialect):
        logger.debug(
            "window functions unsupported on %s, per-owner limit on %s degrades to a global limit",
            conn.dialect.name,
            query.table.name,
        )
        return None

    try:
        stmt = build_ranked_select(query, plan)
        if conn.dialect.name == "postgresql":
            # a failed statement aborts the whole transaction on PostgreSQL
            with conn.begin_nested():
                return [dict(row) for row in conn.execute(stmt).mappings()]
        return [dict(row) for row in conn.execute(stmt).mappings()]
    except (SQLAlchemyError, KeyError, ValueError) as exc:
        logger.warning(
            "ranked eager query on %s failed, falling back to the plain query: %s",
            query.table.name,
            exc,
        )
        return None
