"""
Message Debouncer - coalesces rapid inbound messages per contact.

Every message for a contact restarts that contact's quiet-period timer and
joins the pending batch. When the timer finally fires, exactly one caller
(the first one that joined the batch) receives the combined Batch; every
other caller receives None and must return without side effects.

Pending batches are mirrored to a DebounceStore so a crash between receipt
and processing does not lose messages:
- InMemoryDebounceStore: tests and single-process development
- RedisDebounceStore: production, keys expire after BATCH_TTL_SECONDS
"""

import asyncio
import json
import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Callable, Coroutine

from redis.asyncio import Redis

logger = logging.getLogger(__name__)

BATCH_KEY_PREFIX = "debounce:pending:"
BATCH_TTL_SECONDS = 300


@dataclass
class Batch:
    contact_id: str
    messages: list[str] = field(default_factory=list)
    payloads: list[dict[str, Any]] = field(default_factory=list)
    received_at: str = field(default_factory=lambda: datetime.now(UTC).isoformat())

    @property
    def combined_text(self) -> str:
        """Non-blank message bodies joined by a blank line."""
        return "\n\n".join(m.strip() for m in self.messages if m and m.strip())

    @property
    def latest_payload(self) -> dict[str, Any]:
        return self.payloads[-1] if self.payloads else {}

    def to_dict(self) -> dict[str, Any]:
        return {
            "contact_id": self.contact_id,
            "messages": self.messages,
            "payloads": self.payloads,
            "received_at": self.received_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Batch":
        return cls(
            contact_id=data["contact_id"],
            messages=list(data.get("messages") or []),
            payloads=list(data.get("payloads") or []),
            received_at=data.get("received_at") or datetime.now(UTC).isoformat(),
        )


class DebounceStore:
    """Persistence for pending batches. Implementations must be best-effort safe."""

    async def save(self, batch: Batch) -> None:
        raise NotImplementedError

    async def clear(self, contact_id: str) -> None:
        raise NotImplementedError

    async def load_all(self) -> list[Batch]:
        raise NotImplementedError


class InMemoryDebounceStore(DebounceStore):
    def __init__(self):
        self.batches: dict[str, dict[str, Any]] = {}

    async def save(self, batch: Batch) -> None:
        self.batches[batch.contact_id] = batch.to_dict()

    async def clear(self, contact_id: str) -> None:
        self.batches.pop(contact_id, None)

    async def load_all(self) -> list[Batch]:
        return [Batch.from_dict(data) for data in self.batches.values()]


class RedisDebounceStore(DebounceStore):
    def __init__(self, redis_client: Redis, ttl_seconds: int = BATCH_TTL_SECONDS):
        self._redis = redis_client
        self.ttl_seconds = ttl_seconds

    async def save(self, batch: Batch) -> None:
        await self._redis.set(
            f"{BATCH_KEY_PREFIX}{batch.contact_id}",
            json.dumps(batch.to_dict()),
            ex=self.ttl_seconds,
        )

    async def clear(self, contact_id: str) -> None:
        await self._redis.delete(f"{BATCH_KEY_PREFIX}{contact_id}")

    async def load_all(self) -> list[Batch]:
        batches: list[Batch] = []
        # SCAN instead of KEYS to avoid blocking Redis
        cursor = 0
        while True:
            cursor, keys = await self._redis.scan(
                cursor=cursor, match=f"{BATCH_KEY_PREFIX}*", count=100
            )
            for key in keys:
                raw = await self._redis.get(key)
                if not raw:
                    continue
                try:
                    batches.append(Batch.from_dict(json.loads(raw)))
                except (ValueError, KeyError, TypeError) as e:
                    logger.warning(f"Skipping unreadable pending batch | key={key} | error={e}")
            if cursor == 0:
                break
        return batches


@dataclass
class _Pending:
    batch: Batch
    waiters: list[asyncio.Future] = field(default_factory=list)
    timer: asyncio.Task | None = None


class MessageDebouncer:
    """
    Per-contact quiet-period debouncer with leader election.

    Example:
        >>> debouncer = MessageDebouncer(quiet_seconds=15)
        >>> batch = await debouncer.submit("contact-1", "here's a photo", payload)
        >>> if batch is None:
        ...     return  # another request owns this batch
        >>> await process(batch.combined_text)
    """

    def __init__(self, quiet_seconds: float = 15, store: DebounceStore | None = None):
        """
        Args:
            quiet_seconds: Silence required before a batch is released.
                           0 disables coalescing (every message is its own batch).
            store: Optional persistence for crash recovery
        """
        self.quiet_seconds = quiet_seconds
        self.store = store
        self._pending: dict[str, _Pending] = {}

        logger.info(
            f"MessageDebouncer initialized | quiet_seconds={quiet_seconds} | "
            f"persistence={'enabled' if store else 'disabled'}"
        )

    async def _persist(self, batch: Batch) -> None:
        if not self.store:
            return
        try:
            await self.store.save(batch)
        except Exception as e:
            logger.warning(f"Failed to persist batch | contact_id={batch.contact_id} | error={e}")

    async def clear_persisted(self, contact_id: str) -> None:
        """Forget the stored copy once the leader has processed the batch."""
        if not self.store:
            return
        try:
            await self.store.clear(contact_id)
        except Exception as e:
            logger.warning(f"Failed to clear persisted batch | contact_id={contact_id} | error={e}")

    async def submit(
        self, contact_id: str, text: str | None, payload: dict[str, Any] | None = None
    ) -> Batch | None:
        """
        Add a message and wait for the contact's batch to be released.

        Returns:
            The combined Batch for the leader (first caller of the batch),
            None for every other caller
        """
        if self.quiet_seconds <= 0:
            return Batch(contact_id=contact_id, messages=[text or ""], payloads=[payload or {}])

        pending = self._pending.get(contact_id)
        if pending is None:
            pending = _Pending(batch=Batch(contact_id=contact_id))
            self._pending[contact_id] = pending
            logger.info(f"Debounce batch started | contact_id={contact_id}")
        elif pending.timer is not None:
            pending.timer.cancel()

        pending.batch.messages.append(text or "")
        pending.batch.payloads.append(payload or {})
        waiter = asyncio.get_running_loop().create_future()
        pending.waiters.append(waiter)
        pending.timer = asyncio.create_task(self._release_after_quiet(contact_id))

        logger.info(
            f"Message added to batch | contact_id={contact_id} | "
            f"batch_size={len(pending.batch.messages)} | quiet={self.quiet_seconds}s"
        )
        await self._persist(pending.batch)
        return await waiter

    async def _release_after_quiet(self, contact_id: str) -> None:
        try:
            await asyncio.sleep(self.quiet_seconds)
        except asyncio.CancelledError:
            return
        self._release(contact_id)

    def _release(self, contact_id: str) -> Batch | None:
        pending = self._pending.pop(contact_id, None)
        if pending is None:
            return None

        logger.info(
            f"Debounce batch released | contact_id={contact_id} | "
            f"messages={len(pending.batch.messages)}"
        )
        for index, waiter in enumerate(pending.waiters):
            if not waiter.done():
                waiter.set_result(pending.batch if index == 0 else None)
        return pending.batch

    async def flush_all(self) -> int:
        """
        Release every pending batch immediately (graceful shutdown).

        Returns:
            Number of batches released
        """
        logger.info(f"Flushing debounce batches | pending={len(self._pending)}")
        released = 0
        for contact_id in list(self._pending):
            pending = self._pending.get(contact_id)
            if pending and pending.timer is not None:
                pending.timer.cancel()
            if self._release(contact_id) is not None:
                released += 1
        return released

    async def recover_pending_batches(
        self, callback: Callable[[Batch], Coroutine[Any, Any, Any]]
    ) -> int:
        """
        Process batches persisted before a crash, then clear them.

        Returns:
            Number of batches processed successfully
        """
        if not self.store:
            logger.info("No debounce store - skipping batch recovery")
            return 0

        try:
            batches = await self.store.load_all()
        except Exception as e:
            logger.error(f"Batch recovery failed | error={e}", exc_info=True)
            return 0

        recovered = 0
        for batch in batches:
            logger.info(
                f"Recovering batch | contact_id={batch.contact_id} | messages={len(batch.messages)}"
            )
            try:
                await callback(batch)
                recovered += 1
            except Exception as e:
                logger.error(
                    f"Error processing recovered batch | contact_id={batch.contact_id} | error={e}",
                    exc_info=True,
                )
            await self.clear_persisted(batch.contact_id)

        if recovered:
            logger.info(f"Batch recovery complete | recovered={recovered}")
        return recovered

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def get_batch_size(self, contact_id: str) -> int:
        pending = self._pending.get(contact_id)
        return len(pending.batch.messages) if pending else 0
