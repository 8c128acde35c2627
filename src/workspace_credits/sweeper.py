"""Reclamation of reservations that were never settled.

A reservation outlives its TTL only if the process handling the paid call
died (or was cancelled without cleanup). The sweeper refunds such
reservations through the normal ledger path so balances stay conserved.
"""

import asyncio
import contextlib
import time
import uuid

import structlog

from workspace_credits.config import Settings, get_settings
from workspace_credits.exceptions import LedgerCommitError
from workspace_credits.ledger import DeferredTransactionLedger
from workspace_credits.models import TransactionSource
from workspace_credits.observability import capture_exception
from workspace_credits.settlement import SettlementEngine
from workspace_credits.store import RETRY_BACKOFF_SECONDS, RecordStore

logger = structlog.get_logger()

EXPIRY_SUPPLIER = "platform"


class ReservationSweeper:
    """Periodically refunds expired credit reservations.

    Triggers are at-least-once: running the sweep twice, or concurrently with
    a late settlement, is safe because refunding a missing reservation is a
    no-op.
    """

    def __init__(
        self,
        store: RecordStore,
        settings: Settings | None = None,
        interval: float | None = None,
        batch_size: int = 100,
        retry_backoff_seconds: float = RETRY_BACKOFF_SECONDS,
    ) -> None:
        """Initialize the sweeper.

        Args:
            store: Record store holding reservations and balances
            settings: Settings (defaults to the cached settings)
            interval: Seconds between sweeps (defaults to SWEEPER_INTERVAL_SECONDS)
            batch_size: Maximum reservations refunded per sweep
            retry_backoff_seconds: Backoff base for balance conflicts
        """
        self.store = store
        self.settings = settings or get_settings()
        self.interval = interval if interval is not None else self.settings.SWEEPER_INTERVAL_SECONDS
        self.batch_size = batch_size
        self._retry_backoff_seconds = retry_backoff_seconds
        self._engine = SettlementEngine(store)
        self._task: asyncio.Task[None] | None = None
        self._running = False

    async def start(self) -> None:
        """Start the periodic sweep."""
        if self._running:
            return

        self._running = True
        self._task = asyncio.create_task(self._periodic_sweep())
        logger.info("Reservation sweeper started", interval=self.interval)

    async def stop(self) -> None:
        """Stop the periodic sweep."""
        self._running = False

        if self._task:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None

        logger.info("Reservation sweeper stopped")

    @property
    def running(self) -> bool:
        return self._running

    async def _periodic_sweep(self) -> None:
        while self._running:
            try:
                await asyncio.sleep(self.interval)
                await self.cleanup_expired_reservations()
            except asyncio.CancelledError:
                break
            except Exception:
                logger.exception("Error in reservation sweep")

    async def cleanup_expired_reservations(self, now: int | None = None) -> int:
        """Refund every reservation that expired before ``now``.

        Args:
            now: Unix seconds (defaults to the current time)

        Returns:
            Number of reservations refunded
        """
        now = int(time.time()) if now is None else now
        expired = await self.store.list_expired_reservations(now, limit=self.batch_size)
        if not expired:
            logger.debug("No expired reservations", now=now)
            return 0

        ledger = DeferredTransactionLedger(
            self.store,
            request_id=f"sweep-{uuid.uuid4()}",
            settings=self.settings,
            retry_backoff_seconds=self._retry_backoff_seconds,
        )
        refunded = 0
        for reservation in expired:
            try:
                amount = await self._engine.refund(
                    reservation.reservation_id,
                    reservation.workspace_id,
                    ledger,
                    source=TransactionSource.RESERVATION_EXPIRY,
                    supplier=reservation.provider or EXPIRY_SUPPLIER,
                    description=(
                        f"Expired reservation refund ({reservation.reserved_amount} reserved, "
                        f"expired at {reservation.expires})"
                    ),
                )
            except Exception as e:
                logger.exception(
                    "Failed to refund expired reservation",
                    reservation_id=reservation.reservation_id,
                    workspace_id=reservation.workspace_id,
                    reserved_amount=reservation.reserved_amount,
                )
                capture_exception(
                    e,
                    tags={"component": "sweeper"},
                    extra={
                        "reservation_id": reservation.reservation_id,
                        "workspace_id": reservation.workspace_id,
                    },
                )
                continue
            if amount is not None:
                refunded += 1

        try:
            await ledger.commit()
        except LedgerCommitError as e:
            # Balances of the failed workspaces were not restored; the
            # reservations are already gone, so the amounts live in the logs.
            logger.error(
                "Failed to commit expired reservation refunds",
                failed=e.failed,
                request_id=ledger.request_id,
            )
            raise

        logger.info(
            "Cleaned up expired reservations",
            found=len(expired),
            refunded=refunded,
            request_id=ledger.request_id,
        )
        return refunded
