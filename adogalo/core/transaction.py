"""
PER-PROJECT TRANSACTIONAL BOUNDARY

Every escrow operation runs inside `TransactionManager.project(project_id)`:
1. Acquire the project's asyncio.Lock (serialises one project's transitions
   inside this process, other projects proceed independently)
2. Start a MongoDB multi-document transaction when enabled (replica set)
3. Run the operation, queueing domain events on the unit of work
4. Commit
5. Emit queued events AFTER commit only; discard them on rollback

Status compare-and-set and the ledger version check still guard writes
coming from other processes.
"""

from motor.motor_asyncio import AsyncIOMotorClient
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Optional, Dict, Any, Callable, List
import asyncio
import logging
import uuid

logger = logging.getLogger(__name__)


# =============================================================================
# DOMAIN EVENTS
# =============================================================================

class DomainEventEmitter:
    """Dispatch domain events to registered handlers (after commit only)."""

    def __init__(self):
        self._handlers: Dict[str, list] = {}

    def register_handler(self, event_type: str, handler: Callable):
        """Register a handler for an event type"""
        self._handlers.setdefault(event_type, []).append(handler)

    async def emit(self, events: List[Dict[str, Any]]):
        """Emit events; handler failures are logged and never raised."""
        for event in events:
            event_type = event["event_type"]

            for handler in self._handlers.get(event_type, []):
                try:
                    if asyncio.iscoroutinefunction(handler):
                        await handler(event)
                    else:
                        handler(event)
                except Exception as e:
                    logger.error(f"[DOMAIN_EVENT] Handler error: {event_type} - {str(e)}")

            logger.info(f"[DOMAIN_EVENT] Emitted: {event_type} - {event['event_id']}")


class UnitOfWork:
    """State of one running project transaction."""

    def __init__(self, project_id: str, session=None):
        self.project_id = project_id
        self.session = session
        self._pending_events: List[Dict[str, Any]] = []

    def queue_event(self, event_type: str, payload: Dict[str, Any]):
        """Queue an event to be emitted after commit"""
        self._pending_events.append({
            "event_id": str(uuid.uuid4()),
            "event_type": event_type,
            "project_id": self.project_id,
            "payload": payload,
            "timestamp": datetime.utcnow().isoformat()
        })

    def drain(self) -> List[Dict[str, Any]]:
        events = self._pending_events.copy()
        self._pending_events.clear()
        return events

    def clear_pending(self):
        """Drop queued events (rollback)"""
        self._pending_events.clear()


# =============================================================================
# TRANSACTION MANAGER
# =============================================================================

class TransactionManager:
    """
    Owns the per-project locks and the Mongo transaction switch.

    use_transactions=False keeps the lock and the compare-and-set guards
    but skips Mongo sessions (standalone servers, mongomock in tests).
    """

    def __init__(
        self,
        client: Optional[AsyncIOMotorClient],
        events: Optional[DomainEventEmitter] = None,
        use_transactions: bool = True
    ):
        self.client = client
        self.events = events or DomainEventEmitter()
        self.use_transactions = use_transactions and client is not None
        self._locks: Dict[str, asyncio.Lock] = {}

    def _lock_for(self, project_id: str) -> asyncio.Lock:
        lock = self._locks.get(project_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[project_id] = lock
        return lock

    def forget(self, project_id: str):
        """Drop the lock of a deleted project."""
        self._locks.pop(project_id, None)

    @asynccontextmanager
    async def project(self, project_id: str):
        lock = self._lock_for(project_id)

        async with lock:
            unit = UnitOfWork(project_id)
            try:
                if self.use_transactions:
                    async with await self.client.start_session() as session:
                        async with session.start_transaction():
                            unit.session = session
                            yield unit
                else:
                    yield unit
            except Exception as e:
                unit.clear_pending()
                logger.warning(
                    f"[TRANSACTION] Rolled back project:{project_id}: {type(e).__name__}: {e}"
                )
                raise

            events = unit.drain()

        logger.debug(f"[TRANSACTION] Committed project:{project_id}, {len(events)} event(s)")
        await self.events.emit(events)
