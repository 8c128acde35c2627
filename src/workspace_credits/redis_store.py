"""Redis-backed record store.

Balances use WATCH/MULTI for the compare-and-set, so a concurrent writer
between the read and the write aborts the transaction instead of being
overwritten. Transaction records committed with a balance are queued in the
same MULTI. Reservations are indexed by expiry in a sorted set and committed
transactions are kept per workspace in a sorted set scored by timestamp.
"""

from collections.abc import Sequence
from datetime import datetime
from typing import Any, cast

import redis.asyncio as redis
import structlog
from redis.exceptions import WatchError

from workspace_credits.config import Settings, get_settings
from workspace_credits.exceptions import StaleVersionError
from workspace_credits.models import CreditReservation, TransactionRecord, WorkspaceBalance

logger = structlog.get_logger()


class RedisRecordStore:
    """:class:`~workspace_credits.store.RecordStore` on Redis."""

    def __init__(self, url: str, key_prefix: str = "credits", client: Any = None) -> None:
        """Initialize the store.

        Args:
            url: Redis connection URL (e.g., redis://localhost:6379)
            key_prefix: Namespace for every key written by the store
            client: Pre-built ``redis.asyncio`` client, mainly for tests
        """
        self._url = url
        self._prefix = key_prefix
        self._client: Any = client

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "RedisRecordStore":
        """Build a store from REDIS_URL and REDIS_KEY_PREFIX."""
        settings = settings or get_settings()
        return cls(settings.REDIS_URL, key_prefix=settings.REDIS_KEY_PREFIX)

    async def connect(self) -> None:
        """Connect to Redis."""
        if self._client is not None:
            return

        self._client = redis.from_url(  # type: ignore[no-untyped-call]
            self._url,
            decode_responses=True,
        )
        logger.info("Connected to Redis credit store", url=self._url, prefix=self._prefix)

    async def disconnect(self) -> None:
        """Disconnect from Redis."""
        if self._client:
            await self._client.aclose()
            self._client = None
        logger.info("Disconnected from Redis credit store")

    @property
    def client(self) -> Any:
        """Get the underlying Redis client."""
        if self._client is None:
            raise RuntimeError("Redis client not connected. Call connect() first.")
        return self._client

    # Keys

    def balance_key(self, workspace_id: str) -> str:
        return f"{self._prefix}:balance:{workspace_id}"

    def reservation_key(self, reservation_id: str) -> str:
        return f"{self._prefix}:reservation:{reservation_id}"

    @property
    def expiry_index_key(self) -> str:
        return f"{self._prefix}:reservations:by-expiry"

    def transactions_key(self, workspace_id: str) -> str:
        return f"{self._prefix}:transactions:{workspace_id}"

    # Balances

    async def get_balance(self, workspace_id: str) -> WorkspaceBalance | None:
        raw = await self.client.get(self.balance_key(workspace_id))
        if raw is None:
            return None
        return WorkspaceBalance.model_validate_json(raw)

    async def create_balance(self, balance: WorkspaceBalance) -> WorkspaceBalance:
        key = self.balance_key(balance.workspace_id)
        created = await self.client.set(key, balance.model_dump_json(), nx=True)
        if not created:
            raise StaleVersionError(key, 0)
        logger.info(
            "Created workspace balance",
            workspace_id=balance.workspace_id,
            credit_balance=balance.credit_balance,
            currency=balance.currency,
        )
        return balance

    async def compare_and_set_balance(
        self,
        balance: WorkspaceBalance,
        expected_version: int,
        records: Sequence[TransactionRecord] = (),
    ) -> WorkspaceBalance:
        key = self.balance_key(balance.workspace_id)
        async with self.client.pipeline(transaction=True) as pipe:
            try:
                await pipe.watch(key)
                raw = await pipe.get(key)
                stored = WorkspaceBalance.model_validate_json(raw) if raw is not None else None
                if stored is None or stored.version != expected_version:
                    await pipe.unwatch()
                    raise StaleVersionError(key, expected_version)
                pipe.multi()
                pipe.set(key, balance.model_dump_json())
                self._queue_transactions(pipe, records)
                await pipe.execute()
            except WatchError as e:
                raise StaleVersionError(key, expected_version) from e
        return balance

    # Reservations

    async def get_reservation(self, reservation_id: str) -> CreditReservation | None:
        raw = await self.client.get(self.reservation_key(reservation_id))
        if raw is None:
            return None
        return CreditReservation.model_validate_json(raw)

    async def create_reservation(self, reservation: CreditReservation) -> None:
        key = self.reservation_key(reservation.reservation_id)
        async with self.client.pipeline(transaction=True) as pipe:
            pipe.set(key, reservation.model_dump_json(), nx=True)
            pipe.zadd(self.expiry_index_key, {reservation.reservation_id: reservation.expires})
            created, _ = await pipe.execute()
        if not created:
            raise ValueError(f"Reservation {reservation.reservation_id} already exists")

    async def delete_reservation(self, reservation_id: str) -> bool:
        async with self.client.pipeline(transaction=True) as pipe:
            pipe.delete(self.reservation_key(reservation_id))
            pipe.zrem(self.expiry_index_key, reservation_id)
            deleted, _ = await pipe.execute()
        return bool(deleted)

    async def list_expired_reservations(
        self,
        now: int,
        limit: int | None = None,
    ) -> list[CreditReservation]:
        # Exclusive upper bound: expires < now
        ids = cast(
            "list[str]",
            await self.client.zrangebyscore(
                self.expiry_index_key,
                "-inf",
                f"({now}",
                start=0 if limit is not None else None,
                num=limit,
            ),
        )
        if not ids:
            return []

        raws = await self.client.mget([self.reservation_key(rid) for rid in ids])
        reservations = []
        for rid, raw in zip(ids, raws, strict=True):
            if raw is None:
                # Settled between the index read and the fetch
                await self.client.zrem(self.expiry_index_key, rid)
                continue
            reservations.append(CreditReservation.model_validate_json(raw))
        return reservations

    # Transactions

    async def put_transactions(self, records: list[TransactionRecord]) -> None:
        if not records:
            return
        async with self.client.pipeline(transaction=True) as pipe:
            self._queue_transactions(pipe, records)
            await pipe.execute()

    def _queue_transactions(self, pipe: Any, records: Sequence[TransactionRecord]) -> None:
        for record in records:
            pipe.zadd(
                self.transactions_key(record.workspace_id),
                {record.model_dump_json(): record.created_at.timestamp()},
            )

    async def query_transactions(
        self,
        workspace_id: str,
        start: datetime,
        end: datetime,
        agent_id: str | None = None,
    ) -> list[TransactionRecord]:
        raws = await self.client.zrangebyscore(
            self.transactions_key(workspace_id),
            start.timestamp(),
            end.timestamp(),
        )
        records = [TransactionRecord.model_validate_json(raw) for raw in raws]
        if agent_id is not None:
            records = [r for r in records if r.agent_id == agent_id]
        return records
