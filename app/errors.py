from __future__ import annotations

from contextlib import contextmanager
from typing import Iterator

from sqlalchemy.exc import SQLAlchemyError


class RotationError(Exception):
    """Base class for failures reported by month generation."""


class InvalidMonth(RotationError, ValueError):
    """The month identifier is not a valid ``YYYY-MM`` calendar month."""


class NoEligiblePeople(RotationError):
    """The active roster is empty, so there is nobody to schedule."""


class StorageFailure(RotationError):
    """A read or write against the backing store failed."""


@contextmanager
def storage_guard(action: str) -> Iterator[None]:
    """Re-raise SQLAlchemy errors raised inside the block as ``StorageFailure``."""
    try:
        yield
    except SQLAlchemyError as exc:
        raise StorageFailure(f"{action} failed: {exc}") from exc
