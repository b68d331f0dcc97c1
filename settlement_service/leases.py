"""
Store-backed advisory locks.

A lease is a row keyed by name; whoever inserts it first holds it until
the row is deleted or goes stale. Each acquire/release uses its own short
session so the lock is visible to other workers immediately.
"""
from contextlib import contextmanager
from typing import Optional

from common.retry import RetryConfig, retry_call
from common.settings import settings
from settlement_service.models import new_id
from settlement_service.repositories import LeaseRepository, LeaseBusy

__all__ = ["hold_lease", "LeaseBusy"]

@contextmanager
def hold_lease(session_factory, key: str, ttl_seconds: int = None, retry_config: Optional[RetryConfig] = None):
    """Hold lease `key` for the duration of the block; raises LeaseBusy if it cannot be taken."""
    holder = new_id()
    ttl = ttl_seconds or settings.lease_ttl_seconds

    def _acquire():
        with session_factory() as db:
            LeaseRepository(db).acquire(key, holder, ttl)

    if retry_config:
        retry_call(_acquire, retry_config)
    else:
        _acquire()

    try:
        yield holder
    finally:
        with session_factory() as db:
            LeaseRepository(db).release(key, holder)
