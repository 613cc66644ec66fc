from __future__ import annotations

import logging
import threading
import weakref
from typing import Callable, Dict

from .engine import RotationEngine
from database import SessionLocal
from months import format_month, parse_month

logger = logging.getLogger("duty.rotation")

# Entries disappear once no caller holds the month's lock.
_MONTH_LOCKS: "weakref.WeakValueDictionary[str, threading.Lock]" = weakref.WeakValueDictionary()
_REGISTRY_LOCK = threading.Lock()


def month_lock(month_key: str) -> threading.Lock:
    """Return the lock that serializes generation runs for one month."""
    with _REGISTRY_LOCK:
        lock = _MONTH_LOCKS.get(month_key)
        if lock is None:
            lock = threading.Lock()
            _MONTH_LOCKS[month_key] = lock
        return lock


def generate_month_schedule(
    session_factory: Callable = SessionLocal,
    month: str = "",
    *,
    overwrite: bool = False,
    actor: str = "system",
) -> Dict:
    """Run one generation for ``month`` with exclusive access to that month.

    Raises ``InvalidMonth``, ``NoEligiblePeople`` or ``StorageFailure``.
    """
    month_key = format_month(*parse_month(month))
    lock = month_lock(month_key)
    if lock.locked():
        logger.info("Waiting for the running generation of %s to finish", month_key)
    with lock:
        with session_factory() as session:
            engine = RotationEngine(session, actor=actor or "system")
            return engine.generate_month(month_key, overwrite=overwrite)
