"""Ordering helper for list queries."""

from __future__ import annotations

from collections.abc import Iterable

from sqlalchemy import asc, desc
from sqlalchemy.orm import Query

from coupon_ledger.core.database import Base


def parse_order_by(
    order_by: str | None,
    allowed_fields: Iterable[str],
    default_field: str = "created_at",
    default_direction: str = "desc",
) -> tuple[str, str]:
    """Split a ``field:direction`` string into a sortable field and direction.

    Unknown fields fall back to the defaults; a missing or unknown direction
    falls back to ``asc`` for an explicit field.
    """
    if not order_by:
        return default_field, default_direction

    field, _, direction = order_by.partition(":")
    if field not in set(allowed_fields):
        return default_field, default_direction
    if direction not in ("asc", "desc"):
        direction = "asc"
    return field, direction


def apply_order_by(
    query: Query,  # type: ignore[type-arg]
    model: type[Base],
    order_by: str | None,
    default_field: str = "created_at",
    default_direction: str = "desc",
) -> Query:  # type: ignore[type-arg]
    """Apply ``field:direction`` ordering to a query over ``model``'s columns."""
    field, direction = parse_order_by(
        order_by,
        model.__table__.columns.keys(),
        default_field=default_field,
        default_direction=default_direction,
    )
    order_func = asc if direction == "asc" else desc
    return query.order_by(order_func(getattr(model, field)))
