"""Record store contract and the optimistic-concurrency update loop.

Only the workspace balance is contended. Every balance mutation goes through
:func:`atomic_update`, which reads the record, applies an updater and writes it
back with a compare-and-set on ``version``. Stores never take locks.
"""

import asyncio
import copy
import inspect
from collections.abc import Awaitable, Callable, Sequence
from datetime import datetime
from typing import Protocol, runtime_checkable

import structlog

from workspace_credits.exceptions import (
    ConcurrencyExhaustedError,
    StaleVersionError,
    WorkspaceNotFoundError,
)
from workspace_credits.models import (
    CreditReservation,
    TransactionRecord,
    WorkspaceBalance,
    utcnow,
)

logger = structlog.get_logger()

DEFAULT_MAX_RETRIES = 3

# Exponential backoff between version conflicts: 50ms, 100ms, 200ms, ...
RETRY_BACKOFF_SECONDS = 0.05

BalanceUpdater = Callable[[WorkspaceBalance], WorkspaceBalance | Awaitable[WorkspaceBalance]]

# Builds the records written together with a balance: (read, next) -> records
RecordsBuilder = Callable[[WorkspaceBalance, WorkspaceBalance], list[TransactionRecord]]


@runtime_checkable
class RecordStore(Protocol):
    """Persistence used by the credit ledger."""

    async def get_balance(self, workspace_id: str) -> WorkspaceBalance | None: ...

    async def create_balance(self, balance: WorkspaceBalance) -> WorkspaceBalance: ...

    async def compare_and_set_balance(
        self,
        balance: WorkspaceBalance,
        expected_version: int,
        records: Sequence[TransactionRecord] = (),
    ) -> WorkspaceBalance:
        """Write ``balance`` only if the stored version equals ``expected_version``.

        ``records`` are persisted in the same write: either the balance and
        every record are stored, or nothing is.

        Raises:
            StaleVersionError: If another writer got there first
        """
        ...

    async def get_reservation(self, reservation_id: str) -> CreditReservation | None: ...

    async def create_reservation(self, reservation: CreditReservation) -> None: ...

    async def delete_reservation(self, reservation_id: str) -> bool: ...

    async def list_expired_reservations(
        self,
        now: int,
        limit: int | None = None,
    ) -> list[CreditReservation]: ...

    async def put_transactions(self, records: list[TransactionRecord]) -> None: ...

    async def query_transactions(
        self,
        workspace_id: str,
        start: datetime,
        end: datetime,
        agent_id: str | None = None,
    ) -> list[TransactionRecord]: ...


async def atomic_update(
    store: RecordStore,
    workspace_id: str,
    updater: BalanceUpdater,
    max_retries: int = DEFAULT_MAX_RETRIES,
    backoff_seconds: float = RETRY_BACKOFF_SECONDS,
    records_for: RecordsBuilder | None = None,
) -> WorkspaceBalance:
    """Conditionally update a workspace balance, retrying on version conflicts.

    The updater receives the freshly read record on every attempt and returns
    the desired next state; it may raise to abort (e.g. insufficient credits),
    in which case nothing is written. The version is always set to the read
    version plus one.

    Args:
        store: Record store holding the balance
        workspace_id: Workspace to update
        updater: Callable (sync or async) producing the next record
        max_retries: Retries after the first attempt
        backoff_seconds: Base delay, doubled after each conflict
        records_for: Builds transaction records from the read and the next
            balance; they are written atomically with the balance

    Returns:
        The balance as written

    Raises:
        WorkspaceNotFoundError: If the workspace has no balance record
        ConcurrencyExhaustedError: If every attempt lost to a concurrent writer
    """
    attempt = 0
    while True:
        current = await store.get_balance(workspace_id)
        if current is None:
            raise WorkspaceNotFoundError(workspace_id)

        desired = updater(current)
        if inspect.isawaitable(desired):
            desired = await desired

        next_balance = desired.model_copy(
            update={
                "workspace_id": current.workspace_id,
                "version": current.version + 1,
                "updated_at": utcnow(),
            }
        )
        try:
            if records_for is None:
                return await store.compare_and_set_balance(next_balance, current.version)
            return await store.compare_and_set_balance(
                next_balance, current.version, records=records_for(current, next_balance)
            )
        except StaleVersionError:
            attempt += 1
            if attempt > max_retries:
                logger.warning(
                    "Balance update retries exhausted",
                    workspace_id=workspace_id,
                    max_retries=max_retries,
                )
                raise ConcurrencyExhaustedError(f"workspace:{workspace_id}", max_retries) from None

            delay = backoff_seconds * (2 ** (attempt - 1))
            logger.info(
                "Version conflict on balance, retrying",
                workspace_id=workspace_id,
                attempt=attempt,
                max_retries=max_retries,
                backoff_seconds=delay,
            )
            await asyncio.sleep(delay)


class InMemoryRecordStore:
    """Process-local :class:`RecordStore` for tests and single-process tools.

    Every operation yields to the event loop before touching state so that
    concurrent tasks interleave the way they would against a remote store.
    """

    def __init__(self) -> None:
        self._balances: dict[str, WorkspaceBalance] = {}
        self._reservations: dict[str, CreditReservation] = {}
        self._transactions: list[TransactionRecord] = []

    async def get_balance(self, workspace_id: str) -> WorkspaceBalance | None:
        await asyncio.sleep(0)
        return self._balances.get(workspace_id)

    async def create_balance(self, balance: WorkspaceBalance) -> WorkspaceBalance:
        await asyncio.sleep(0)
        if balance.workspace_id in self._balances:
            raise StaleVersionError(f"workspace:{balance.workspace_id}", 0)
        self._balances[balance.workspace_id] = balance
        return balance

    async def compare_and_set_balance(
        self,
        balance: WorkspaceBalance,
        expected_version: int,
        records: Sequence[TransactionRecord] = (),
    ) -> WorkspaceBalance:
        await asyncio.sleep(0)
        key = f"workspace:{balance.workspace_id}"
        stored = self._balances.get(balance.workspace_id)
        if stored is None or stored.version != expected_version:
            raise StaleVersionError(key, expected_version)
        self._balances[balance.workspace_id] = balance
        self._transactions.extend(records)
        return balance

    async def get_reservation(self, reservation_id: str) -> CreditReservation | None:
        await asyncio.sleep(0)
        return self._reservations.get(reservation_id)

    async def create_reservation(self, reservation: CreditReservation) -> None:
        await asyncio.sleep(0)
        if reservation.reservation_id in self._reservations:
            raise ValueError(f"Reservation {reservation.reservation_id} already exists")
        self._reservations[reservation.reservation_id] = reservation

    async def delete_reservation(self, reservation_id: str) -> bool:
        await asyncio.sleep(0)
        return self._reservations.pop(reservation_id, None) is not None

    async def list_expired_reservations(
        self,
        now: int,
        limit: int | None = None,
    ) -> list[CreditReservation]:
        await asyncio.sleep(0)
        expired = sorted(
            (r for r in self._reservations.values() if r.is_expired(now)),
            key=lambda r: r.expires,
        )
        return expired if limit is None else expired[:limit]

    async def put_transactions(self, records: list[TransactionRecord]) -> None:
        await asyncio.sleep(0)
        self._transactions.extend(records)

    async def query_transactions(
        self,
        workspace_id: str,
        start: datetime,
        end: datetime,
        agent_id: str | None = None,
    ) -> list[TransactionRecord]:
        await asyncio.sleep(0)
        return [
            record
            for record in self._transactions
            if record.workspace_id == workspace_id
            and start <= record.created_at <= end
            and (agent_id is None or record.agent_id == agent_id)
        ]

    # Inspection helpers (not part of the store contract)

    @property
    def reservations(self) -> dict[str, CreditReservation]:
        """Snapshot of outstanding reservations."""
        return copy.copy(self._reservations)

    @property
    def transactions(self) -> list[TransactionRecord]:
        """Snapshot of committed transaction records."""
        return list(self._transactions)
