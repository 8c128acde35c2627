"""Request-scoped buffer of credit transactions.

Settlement appends entries here instead of touching balances. At the end of
the request :meth:`DeferredTransactionLedger.commit` applies the net delta of
each workspace and persists its entries with a single conditional update.
"""

import time
import uuid
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

import structlog

from workspace_credits.config import Settings, get_settings
from workspace_credits.exceptions import LedgerCommitError
from workspace_credits.models import (
    CreditTransaction,
    TransactionRecord,
    TransactionSource,
    WorkspaceBalance,
)
from workspace_credits.observability import capture_exception
from workspace_credits.store import RETRY_BACKOFF_SECONDS, RecordStore, atomic_update

logger = structlog.get_logger()


class DeferredTransactionLedger:
    """In-memory ledger for one unit of work (an HTTP request or queue message).

    Never share an instance between requests.
    """

    def __init__(
        self,
        store: RecordStore,
        request_id: str | None = None,
        settings: Settings | None = None,
        max_retries: int | None = None,
        retry_backoff_seconds: float = RETRY_BACKOFF_SECONDS,
    ) -> None:
        self.store = store
        self.request_id = request_id or str(uuid.uuid4())
        settings = settings or get_settings()
        self.max_retries = settings.CREDIT_MAX_RETRIES if max_retries is None else max_retries
        self._retry_backoff_seconds = retry_backoff_seconds
        self._buffer: dict[str, list[CreditTransaction]] = {}
        self._counter = 0

    def __len__(self) -> int:
        return sum(len(entries) for entries in self._buffer.values())

    @property
    def pending(self) -> list[CreditTransaction]:
        """Entries not yet committed."""
        return [entry for entries in self._buffer.values() for entry in entries]

    def pending_total(self, workspace_id: str) -> int:
        """Net uncommitted amount for a workspace."""
        return sum(e.amount_millionth_usd for e in self._buffer.get(workspace_id, []))

    def append(self, entry: CreditTransaction) -> None:
        """Buffer a transaction.

        Zero-amount entries are dropped unless they record tool usage or
        settle a reservation; a settlement at exactly the estimate still
        carries its cost in ``reserved_amount``.
        """
        if (
            entry.amount_millionth_usd == 0
            and entry.reserved_amount == 0
            and entry.source != TransactionSource.TOOL_EXECUTION
        ):
            logger.debug(
                "Skipping zero-amount credit transaction",
                workspace_id=entry.workspace_id,
                source=entry.source.value,
                request_id=self.request_id,
            )
            return

        self._buffer.setdefault(entry.workspace_id, []).append(entry)
        logger.debug(
            "Buffered credit transaction",
            workspace_id=entry.workspace_id,
            source=entry.source.value,
            supplier=entry.supplier,
            amount=entry.amount_millionth_usd,
            request_id=self.request_id,
        )

    def _next_transaction_id(self) -> str:
        self._counter += 1
        millis = int(time.time() * 1000)
        return f"{millis}-{self._counter:06d}-{uuid.uuid4()}"

    def _build_records(
        self,
        entries: list[CreditTransaction],
        balance_before: int,
    ) -> list[TransactionRecord]:
        records = []
        running = balance_before
        for entry in entries:
            after = running - entry.amount_millionth_usd
            records.append(
                TransactionRecord(
                    transaction_id=self._next_transaction_id(),
                    request_id=self.request_id,
                    balance_before=running,
                    balance_after=after,
                    **entry.model_dump(),
                )
            )
            running = after
        return records

    async def _commit_workspace(
        self,
        workspace_id: str,
        entries: list[CreditTransaction],
    ) -> WorkspaceBalance:
        net = sum(e.amount_millionth_usd for e in entries)
        # Records are written in the same conditional update as the balance,
        # rebuilt on every retry from the balance actually read.
        updated = await atomic_update(
            self.store,
            workspace_id,
            lambda current: current.model_copy(
                update={"credit_balance": current.credit_balance - net}
            ),
            max_retries=self.max_retries,
            backoff_seconds=self._retry_backoff_seconds,
            records_for=lambda current, _next: self._build_records(
                entries, current.credit_balance
            ),
        )
        # Only drop what was committed so entries appended meanwhile stay
        # buffered.
        remaining = self._buffer.get(workspace_id, [])[len(entries) :]
        if remaining:
            self._buffer[workspace_id] = remaining
        else:
            self._buffer.pop(workspace_id, None)

        logger.info(
            "Committed credit transactions",
            workspace_id=workspace_id,
            request_id=self.request_id,
            net_amount=net,
            count=len(entries),
            new_balance=updated.credit_balance,
            version=updated.version,
        )
        return updated

    async def commit(self) -> dict[str, WorkspaceBalance]:
        """Apply all buffered transactions.

        Performs one conditional update per workspace. Committed workspaces are
        removed from the buffer, so calling ``commit`` again never re-applies
        them.

        Returns:
            Updated balances keyed by workspace id (empty if nothing was buffered)

        Raises:
            LedgerCommitError: If any workspace could not be updated; its
                entries stay buffered
        """
        snapshot = {ws: list(entries) for ws, entries in self._buffer.items() if entries}
        if not snapshot:
            logger.debug("No credit transactions to commit", request_id=self.request_id)
            return {}

        # Recorded before any write so amounts can be reconciled by hand
        logger.info(
            "Committing credit transactions",
            request_id=self.request_id,
            workspaces=list(snapshot),
            transactions=[
                e.model_dump(mode="json") for entries in snapshot.values() for e in entries
            ],
        )

        results: dict[str, WorkspaceBalance] = {}
        failed: dict[str, int] = {}
        cause: Exception | None = None
        for workspace_id, entries in snapshot.items():
            try:
                results[workspace_id] = await self._commit_workspace(workspace_id, entries)
            except Exception as e:
                failed[workspace_id] = sum(entry.amount_millionth_usd for entry in entries)
                cause = e
                logger.exception(
                    "Failed to commit credit transactions",
                    workspace_id=workspace_id,
                    request_id=self.request_id,
                    net_amount=failed[workspace_id],
                    transactions=[entry.model_dump(mode="json") for entry in entries],
                )

        if failed:
            error = LedgerCommitError(failed, cause)
            capture_exception(
                error,
                tags={"component": "ledger"},
                extra={"request_id": self.request_id, "failed": failed},
                level="fatal",
            )
            raise error from cause
        return results


@asynccontextmanager
async def ledger_scope(
    store: RecordStore,
    request_id: str | None = None,
    raise_on_commit_error: bool = False,
    **ledger_kwargs: Any,
) -> AsyncIterator[DeferredTransactionLedger]:
    """Provide a ledger for one unit of work and commit it on exit.

    The ledger is committed on the error path too, so refunds appended while
    cleaning up a failed call are applied. A commit failure after an error is
    logged and never masks the original exception. After a successful body,
    commit failures are logged (and reported by ``commit``) and only raised when
    ``raise_on_commit_error`` is set.

    Example:
        async with ledger_scope(store, request_id) as ledger:
            async with metered_operation(manager, engine, ledger, ...) as op:
                op.settle(await call_provider())
    """
    ledger = DeferredTransactionLedger(store, request_id=request_id, **ledger_kwargs)
    try:
        yield ledger
    except BaseException:
        try:
            await ledger.commit()
        except Exception:
            logger.exception(
                "Failed to commit credit transactions after request error",
                request_id=ledger.request_id,
            )
        raise

    try:
        await ledger.commit()
    except LedgerCommitError:
        if raise_on_commit_error:
            raise
        logger.error(
            "Credit transactions left uncommitted",
            request_id=ledger.request_id,
            pending=len(ledger),
        )


async def add_credits(  # noqa: PLR0913
    store: RecordStore,
    workspace_id: str,
    amount_micros: int,
    *,
    supplier: str = "platform",
    description: str = "Credit purchase",
    request_id: str | None = None,
    **ledger_kwargs: Any,
) -> WorkspaceBalance:
    """Top up a workspace balance.

    Args:
        store: Record store holding the balance
        workspace_id: Workspace to credit
        amount_micros: Amount to add, must be positive
        supplier: Who supplied the credits (payment provider or platform)
        description: Human-readable description of the purchase
        request_id: Id of the purchase request, for tracing

    Returns:
        The updated workspace balance
    """
    if amount_micros <= 0:
        raise ValueError(f"Credit amount must be positive, got {amount_micros}")

    ledger = DeferredTransactionLedger(store, request_id=request_id, **ledger_kwargs)
    ledger.append(
        CreditTransaction(
            workspace_id=workspace_id,
            source=TransactionSource.CREDIT_PURCHASE,
            supplier=supplier,
            description=description,
            amount_millionth_usd=-amount_micros,
        )
    )
    results = await ledger.commit()
    logger.info(
        "Credited workspace",
        workspace_id=workspace_id,
        amount=amount_micros,
        new_balance=results[workspace_id].credit_balance,
    )
    return results[workspace_id]
