"""Utility functions for m365-inventory-hub."""

from datetime import date, datetime, timezone
from typing import Any, Dict, Iterable, Optional, Sequence

from sqlalchemy.orm import Session
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert


def utcnow() -> datetime:
    """
    Get current UTC time with timezone awareness.

    Returns:
        datetime: Current UTC time with timezone info
    """
    return datetime.now(timezone.utc)


def to_int_clamped(value: Any, default: int = 0) -> int:
    """
    Convert a report/API value to a non-negative integer.

    Empty strings, garbage and negative numbers all collapse to ``default``
    (itself never below zero).

    Args:
        value: Raw value (str, int, float or None)
        default: Fallback value

    Returns:
        int: Parsed value, clamped at 0
    """
    default = max(default, 0)
    if value is None or isinstance(value, bool):
        return default
    if isinstance(value, (int, float)):
        try:
            number = int(value)
        except (ValueError, OverflowError):
            return default
    else:
        text = str(value).strip()
        if not text:
            return default
        try:
            number = int(text)
        except ValueError:
            try:
                number = int(float(text))
            except (ValueError, OverflowError):
                return default
    return number if number >= 0 else default


def parse_bool(value: Any) -> bool:
    """Parse 'True'/'False' style report values."""
    if isinstance(value, bool):
        return value
    if value is None:
        return False
    return str(value).strip().lower() in ('true', '1', 'yes')


def parse_report_date(value: Any) -> Optional[date]:
    """
    Parse a date from a Graph usage report.

    Reports use ISO dates (YYYY-MM-DD); timestamps are tolerated and
    truncated to their date part.

    Returns:
        date or None when empty/unparseable
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    text = str(value).strip()
    if not text:
        return None
    try:
        return datetime.strptime(text[:10], '%Y-%m-%d').date()
    except ValueError:
        pass
    try:
        return datetime.fromisoformat(text.replace('Z', '+00:00')).date()
    except ValueError:
        return None


def parse_graph_datetime(value: Any) -> Optional[datetime]:
    """Parse a Graph ISO-8601 timestamp such as '2024-01-31T08:15:00Z'."""
    if not value:
        return None
    if isinstance(value, datetime):
        return value
    try:
        return datetime.fromisoformat(str(value).replace('Z', '+00:00'))
    except ValueError:
        return None


def upsert(
    session: Session,
    model: Any,
    values: Dict[str, Any],
    index_elements: Sequence[str],
    update_columns: Optional[Iterable[str]] = None,
) -> None:
    """
    Insert a row or update it when the unique key already exists.

    Uses the dialect's native ON CONFLICT DO UPDATE (PostgreSQL in
    production, SQLite in tests).

    Args:
        session: SQLAlchemy session
        model: Declarative model class
        values: Column values for the row
        index_elements: Columns of the unique constraint to conflict on
        update_columns: Columns to overwrite on conflict (default: every
            column in ``values`` that is not part of the key)
    """
    dialect = session.get_bind().dialect.name
    if dialect == 'postgresql':
        stmt = pg_insert(model.__table__).values(values)
    elif dialect == 'sqlite':
        stmt = sqlite_insert(model.__table__).values(values)
    else:
        raise NotImplementedError(f"Upsert not supported for dialect: {dialect}")

    if update_columns is None:
        update_columns = [key for key in values if key not in index_elements]

    update_values = {column: stmt.excluded[column] for column in update_columns}

    if update_values:
        stmt = stmt.on_conflict_do_update(
            index_elements=list(index_elements),
            set_=update_values
        )
    else:
        stmt = stmt.on_conflict_do_nothing(index_elements=list(index_elements))

    session.execute(stmt)
