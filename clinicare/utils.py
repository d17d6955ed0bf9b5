from datetime import datetime
from typing import Optional

from .errors import ValidationFailed


def to_naive(value: Optional[datetime]) -> Optional[datetime]:
    """Timestamps are stored as naive server-local time; convert aware inputs."""
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone().replace(tzinfo=None)


def reject_required_nulls(model, updates: dict):
    """Partial updates may clear optional columns but never required ones."""
    columns = model.__table__.columns
    nulled = sorted(
        key for key, value in updates.items()
        if value is None and key in columns and not columns[key].nullable
    )
    if nulled:
        raise ValidationFailed(f"Field(s) cannot be null: {', '.join(nulled)}")
