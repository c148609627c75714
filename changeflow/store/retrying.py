"""
Retrying EntityStore adapter.

Wraps another store and retries TransientStorageError with bounded
exponential backoff:

    attempt 1 -> fail -> sleep base_delay
    attempt 2 -> fail -> sleep base_delay * 2
    attempt 3 -> fail -> StorageError

Domain errors (conflict, not found, ...) pass through untouched.
"""

import asyncio
import logging

from ..errors import StorageError, TransientStorageError
from .base import EntityStore

logger = logging.getLogger(__name__)


class RetryingEntityStore(EntityStore):

    def __init__(self, inner: EntityStore, attempts: int = 3, base_delay: float = 0.1, max_delay: float = 2.0):
        if attempts < 1:
            raise ValueError("attempts must be >= 1")
        self.inner = inner
        self.attempts = attempts
        self.base_delay = base_delay
        self.max_delay = max_delay

    async def _call(self, operation: str, *args, **kwargs):
        last_error = None
        for attempt in range(1, self.attempts + 1):
            try:
                return await getattr(self.inner, operation)(*args, **kwargs)
            except TransientStorageError as exc:
                last_error = exc
                if attempt == self.attempts:
                    break
                delay = min(self.base_delay * (2 ** (attempt - 1)), self.max_delay)
                logger.warning(
                    "Store %s failed attempt=%d/%d (%s), retrying in %.2fs",
                    operation, attempt, self.attempts, exc.message, delay,
                )
                await asyncio.sleep(delay)

        logger.error("Store %s failed after %d attempts", operation, self.attempts)
        raise StorageError(
            f"Storage operation '{operation}' failed after {self.attempts} attempts",
            context={"operation": operation, "cause": last_error.message if last_error else None},
        ) from last_error

    async def get(self, kind, entity_id, organization_id):
        return await self._call("get", kind, entity_id, organization_id)

    async def get_by_number(self, kind, number, organization_id):
        return await self._call("get_by_number", kind, number, organization_id)

    async def put(self, entity, expected_version):
        return await self._call("put", entity, expected_version)

    async def list_requests_for_order(self, order_id, organization_id):
        return await self._call("list_requests_for_order", order_id, organization_id)

    async def get_notice_for_order(self, order_id, organization_id):
        return await self._call("get_notice_for_order", order_id, organization_id)

    async def next_sequence(self, organization_id, kind):
        return await self._call("next_sequence", organization_id, kind)

    async def search(self, organization_id, query, limit=50):
        return await self._call("search", organization_id, query, limit)

    async def list_notices_for_sweep(self):
        return await self._call("list_notices_for_sweep")

    async def append_revision(self, revision):
        return await self._call("append_revision", revision)

    async def list_revisions(self, entity_id, organization_id):
        return await self._call("list_revisions", entity_id, organization_id)

    async def add_recipient(self, recipient):
        return await self._call("add_recipient", recipient)

    async def get_recipient(self, recipient_id):
        return await self._call("get_recipient", recipient_id)

    async def put_recipient(self, recipient, expected_version):
        return await self._call("put_recipient", recipient, expected_version)

    async def list_recipients(self, notice_id):
        return await self._call("list_recipients", notice_id)

    async def append_escalation_event(self, event):
        return await self._call("append_escalation_event", event)

    async def list_escalation_events(self, notice_id):
        return await self._call("list_escalation_events", notice_id)

    def transaction(self):
        return self.inner.transaction()
