"""Redis-backed record store.

Key layout:
- ``receipt:{id}`` receipt JSON
- ``receipts:seq`` id sequence (INCR)
- ``receipts:owner:{owner_id}`` sorted set of receipt ids scored by ``created_at``
- ``receipts:url:{owner_id}:{sha256(file_url)}`` id of the reusable receipt for an upload
- ``batch:{session_id}`` session JSON, expiring after ``status_ttl_seconds`` until paid
- ``batches:owner:{owner_id}`` sorted set of session ids scored by ``created_at``

Runs over any ``redis.asyncio.Redis`` client, including the ``ArqRedis`` pool
the worker already holds.
"""

import hashlib
import logging
from datetime import datetime

from redis.asyncio import Redis
from redis.exceptions import RedisError, WatchError

from receipt_pipeline.records.models import REUSABLE_RECEIPT_STATUSES, BatchSession, Receipt
from receipt_pipeline.records.store import BatchMutation, RecordStore
from receipt_pipeline.shared.errors import NotFoundError

logger = logging.getLogger(__name__)

MAX_WATCH_RETRIES = 10


def _url_digest(file_url: str) -> str:
    return hashlib.sha256(file_url.encode("utf-8")).hexdigest()


class RedisRecordStore(RecordStore):
    """Record store persisting JSON documents in Redis."""

    def __init__(self, redis: Redis, status_ttl_seconds: int = 604800) -> None:
        self.redis = redis
        self.status_ttl_seconds = status_ttl_seconds

    @staticmethod
    def _receipt_key(receipt_id: int) -> str:
        return f"receipt:{receipt_id}"

    @staticmethod
    def _owner_receipts_key(owner_id: int) -> str:
        return f"receipts:owner:{owner_id}"

    @staticmethod
    def _url_index_key(owner_id: int, file_url: str) -> str:
        return f"receipts:url:{owner_id}:{_url_digest(file_url)}"

    @staticmethod
    def _batch_key(session_id: str) -> str:
        return f"batch:{session_id}"

    @staticmethod
    def _owner_batches_key(owner_id: int) -> str:
        return f"batches:owner:{owner_id}"

    # Receipts

    async def _allocate(self, owner_id: int, file_url: str, file_name: str, **fields) -> Receipt:
        receipt_id = await self.redis.incr("receipts:seq")
        receipt = Receipt(
            id=int(receipt_id),
            owner_id=owner_id,
            file_url=file_url,
            file_name=file_name,
            **fields,
        )
        await self.redis.set(self._receipt_key(receipt.id), receipt.model_dump_json())
        return receipt

    async def _register(self, receipt: Receipt) -> None:
        await self.redis.zadd(
            self._owner_receipts_key(receipt.owner_id),
            {str(receipt.id): receipt.created_at.timestamp()},
        )

    async def create_receipt(self, owner_id: int, file_url: str, file_name: str, **fields) -> Receipt:
        receipt = await self._allocate(owner_id, file_url, file_name, **fields)
        await self._register(receipt)
        if file_url and receipt.status in REUSABLE_RECEIPT_STATUSES:
            await self.redis.set(self._url_index_key(owner_id, file_url), receipt.id)
        return receipt

    async def get_receipt(self, receipt_id: int) -> Receipt | None:
        raw = await self.redis.get(self._receipt_key(receipt_id))
        if raw is None:
            return None
        return Receipt.model_validate_json(raw)

    async def save_receipt(self, receipt: Receipt) -> Receipt:
        key = self._receipt_key(receipt.id)
        receipt.touch()
        # XX: only overwrite an existing row
        written = await self.redis.set(key, receipt.model_dump_json(), xx=True)
        if not written:
            raise NotFoundError(f"Receipt {receipt.id} not found")
        return receipt

    async def find_or_create_receipt(
        self, owner_id: int, file_url: str, file_name: str
    ) -> tuple[Receipt, bool]:
        index_key = self._url_index_key(owner_id, file_url)

        for _ in range(MAX_WATCH_RETRIES):
            current_id = await self.redis.get(index_key)
            if current_id is not None:
                existing = await self.get_receipt(int(current_id))
                if existing is not None and existing.status in REUSABLE_RECEIPT_STATUSES:
                    return existing, False

            # The row is written before it is claimed, so the index never
            # points at a missing receipt.
            candidate = await self._allocate(owner_id, file_url, file_name)
            if current_id is None:
                claimed = await self.redis.set(index_key, candidate.id, nx=True)
            else:
                claimed = await self._replace_index(index_key, current_id, candidate.id)

            if claimed:
                await self._register(candidate)
                return candidate, True

            logger.info(
                f"Lost find-or-create race for owner {owner_id} url {file_url}, "
                f"discarding receipt {candidate.id}"
            )
            await self.redis.delete(self._receipt_key(candidate.id))

        raise RedisError(f"Could not claim receipt index for owner {owner_id}")

    async def _replace_index(self, index_key: str, expected: bytes | str, new_id: int) -> bool:
        """Point the index at ``new_id`` if it still holds ``expected``."""
        async with self.redis.pipeline(transaction=True) as pipe:
            try:
                await pipe.watch(index_key)
                current = await pipe.get(index_key)
                if current is None or int(current) != int(expected):
                    await pipe.unwatch()
                    return False
                pipe.multi()
                pipe.set(index_key, new_id)
                await pipe.execute()
                return True
            except WatchError:
                return False

    async def find_reusable_receipt(self, owner_id: int, file_url: str) -> Receipt | None:
        current_id = await self.redis.get(self._url_index_key(owner_id, file_url))
        if current_id is None:
            return None
        receipt = await self.get_receipt(int(current_id))
        if receipt is None or receipt.status not in REUSABLE_RECEIPT_STATUSES:
            return None
        return receipt

    async def list_receipts(
        self, owner_id: int, created_after: datetime | None = None
    ) -> list[Receipt]:
        low = f"({created_after.timestamp()}" if created_after else "-inf"
        ids = await self.redis.zrangebyscore(self._owner_receipts_key(owner_id), low, "+inf")
        if not ids:
            return []
        rows = await self.redis.mget([self._receipt_key(int(i)) for i in ids])
        return [Receipt.model_validate_json(raw) for raw in rows if raw is not None]

    # Batch sessions

    async def create_batch(self, session: BatchSession) -> BatchSession:
        await self.redis.set(
            self._batch_key(session.session_id),
            session.model_dump_json(),
            **self._batch_expiry(session),
        )
        await self.redis.zadd(
            self._owner_batches_key(session.owner_id),
            {session.session_id: session.created_at.timestamp()},
        )
        return session

    async def get_batch(self, session_id: str) -> BatchSession | None:
        raw = await self.redis.get(self._batch_key(session_id))
        if raw is None:
            return None
        return BatchSession.model_validate_json(raw)

    async def update_batch(self, session_id: str, mutate: BatchMutation) -> BatchSession:
        key = self._batch_key(session_id)
        for attempt in range(MAX_WATCH_RETRIES):
            async with self.redis.pipeline(transaction=True) as pipe:
                try:
                    await pipe.watch(key)
                    raw = await pipe.get(key)
                    if raw is None:
                        await pipe.unwatch()
                        raise NotFoundError(f"Batch session {session_id} not found")
                    session = BatchSession.model_validate_json(raw)
                    mutate(session)
                    session.touch()
                    pipe.multi()
                    pipe.set(key, session.model_dump_json(), **self._batch_expiry(session))
                    await pipe.execute()
                    return session
                except WatchError:
                    logger.debug(f"Concurrent update of batch {session_id}, retry {attempt + 1}")

        raise RedisError(f"Batch session {session_id} kept changing during update")

    async def list_batches(self, owner_id: int) -> list[BatchSession]:
        index_key = self._owner_batches_key(owner_id)
        session_ids = [
            s.decode() if isinstance(s, bytes) else s
            for s in await self.redis.zrange(index_key, 0, -1)
        ]
        if not session_ids:
            return []
        rows = await self.redis.mget([self._batch_key(s) for s in session_ids])

        expired = [s for s, raw in zip(session_ids, rows) if raw is None]
        if expired:
            await self.redis.zrem(index_key, *expired)
        return [BatchSession.model_validate_json(raw) for raw in rows if raw is not None]

    def _batch_expiry(self, session: BatchSession) -> dict[str, int]:
        # A plain SET drops any TTL, so paid sessions persist
        if session.paid_at is not None:
            return {}
        return {"ex": self.status_ttl_seconds}

    async def ping(self) -> bool:
        try:
            return bool(await self.redis.ping())
        except RedisError as e:
            logger.warning(f"Record store ping failed: {e}")
            return False
