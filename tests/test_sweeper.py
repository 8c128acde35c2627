"""Tests for the expired reservation sweeper."""

import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from workspace_credits.config import Settings
from workspace_credits.exceptions import LedgerCommitError
from workspace_credits.ledger import DeferredTransactionLedger
from workspace_credits.models import CreditReservation, TransactionSource
from workspace_credits.reservations import ReservationManager
from workspace_credits.settlement import SettlementEngine
from workspace_credits.store import InMemoryRecordStore
from workspace_credits.sweeper import EXPIRY_SUPPLIER, ReservationSweeper

from .conftest import INITIAL_BALANCE, NOW, WORKSPACE_ID

AFTER_TTL = NOW + 900 + 1


@pytest.fixture
def sweeper(seeded_store: InMemoryRecordStore, settings: Settings) -> ReservationSweeper:
    """Sweeper with a short interval and no retry backoff."""
    return ReservationSweeper(
        seeded_store,
        settings=settings,
        interval=0.01,
        retry_backoff_seconds=0,
    )


class TestCleanupExpiredReservations:
    """Tests for ReservationSweeper.cleanup_expired_reservations."""

    @pytest.mark.asyncio
    async def test_refunds_expired_reservations(
        self,
        manager: ReservationManager,
        sweeper: ReservationSweeper,
        seeded_store: InMemoryRecordStore,
    ) -> None:
        """Test abandoned reservations are refunded in full."""
        await manager.reserve(WORKSPACE_ID, 4_000, agent_id="agent-1", provider="exa")
        await manager.reserve(WORKSPACE_ID, 6_000)

        refunded = await sweeper.cleanup_expired_reservations(now=AFTER_TTL)

        assert refunded == 2
        assert seeded_store.reservations == {}
        balance = await seeded_store.get_balance(WORKSPACE_ID)
        assert balance is not None
        assert balance.credit_balance == INITIAL_BALANCE

        records = seeded_store.transactions
        assert {r.source for r in records} == {TransactionSource.RESERVATION_EXPIRY}
        assert {r.supplier for r in records} == {"exa", EXPIRY_SUPPLIER}
        assert {r.agent_id for r in records} == {"agent-1", None}

    @pytest.mark.asyncio
    async def test_keeps_live_reservations(
        self,
        manager: ReservationManager,
        sweeper: ReservationSweeper,
        seeded_store: InMemoryRecordStore,
    ) -> None:
        """Test reservations within their TTL are left alone."""
        await manager.reserve(WORKSPACE_ID, 4_000)

        assert await sweeper.cleanup_expired_reservations(now=NOW + 900) == 0
        assert len(seeded_store.reservations) == 1

    @pytest.mark.asyncio
    async def test_sweeping_twice_is_safe(
        self,
        manager: ReservationManager,
        sweeper: ReservationSweeper,
        seeded_store: InMemoryRecordStore,
    ) -> None:
        """Test a second sweep finds nothing to refund."""
        await manager.reserve(WORKSPACE_ID, 4_000)

        assert await sweeper.cleanup_expired_reservations(now=AFTER_TTL) == 1
        assert await sweeper.cleanup_expired_reservations(now=AFTER_TTL) == 0

        balance = await seeded_store.get_balance(WORKSPACE_ID)
        assert balance is not None
        assert balance.credit_balance == INITIAL_BALANCE

    @pytest.mark.asyncio
    async def test_late_adjust_racing_the_sweep_settles_once(
        self,
        manager: ReservationManager,
        sweeper: ReservationSweeper,
        engine: SettlementEngine,
        ledger: DeferredTransactionLedger,
        seeded_store: InMemoryRecordStore,
    ) -> None:
        """Test a reservation is either refunded by the sweep or adjusted, never both."""
        reservation = await manager.reserve(WORKSPACE_ID, 8_000)

        refunded, adjusted = await asyncio.gather(
            sweeper.cleanup_expired_reservations(now=AFTER_TTL),
            engine.adjust(
                reservation.reservation_id,
                WORKSPACE_ID,
                8_000,
                ledger,
                source=TransactionSource.TOOL_EXECUTION,
                supplier="tavily",
            ),
        )
        await ledger.commit()

        assert (refunded == 1) != (adjusted is not None)
        expected = INITIAL_BALANCE if refunded == 1 else INITIAL_BALANCE - 8_000
        balance = await seeded_store.get_balance(WORKSPACE_ID)
        assert balance is not None
        assert balance.credit_balance == expected
        assert len(seeded_store.transactions) == 1

    @pytest.mark.asyncio
    async def test_respects_batch_size(
        self,
        manager: ReservationManager,
        seeded_store: InMemoryRecordStore,
        settings: Settings,
    ) -> None:
        """Test at most batch_size reservations are handled per sweep."""
        for _ in range(3):
            await manager.reserve(WORKSPACE_ID, 1_000)
        sweeper = ReservationSweeper(
            seeded_store, settings=settings, batch_size=2, retry_backoff_seconds=0
        )

        assert await sweeper.cleanup_expired_reservations(now=AFTER_TTL) == 2
        assert len(seeded_store.reservations) == 1

    @pytest.mark.asyncio
    async def test_skips_failing_reservation(
        self,
        manager: ReservationManager,
        sweeper: ReservationSweeper,
        seeded_store: InMemoryRecordStore,
        mock_capture_exception: MagicMock,
    ) -> None:
        """Test one broken reservation does not block the rest."""
        good = await manager.reserve(WORKSPACE_ID, 1_000)
        bad = await manager.reserve(WORKSPACE_ID, 2_000)
        original_get = seeded_store.get_reservation

        async def get_reservation(reservation_id: str) -> CreditReservation | None:
            if reservation_id == bad.reservation_id:
                raise ConnectionError("read failed")
            return await original_get(reservation_id)

        seeded_store.get_reservation = get_reservation  # type: ignore[method-assign]

        assert await sweeper.cleanup_expired_reservations(now=AFTER_TTL) == 1
        assert good.reservation_id not in seeded_store.reservations
        assert bad.reservation_id in seeded_store.reservations
        mock_capture_exception.assert_called_once()
        assert mock_capture_exception.call_args.kwargs["tags"] == {"component": "sweeper"}

    @pytest.mark.asyncio
    async def test_commit_failure_is_raised(
        self,
        manager: ReservationManager,
        sweeper: ReservationSweeper,
        seeded_store: InMemoryRecordStore,
        mock_capture_exception: MagicMock,
    ) -> None:
        """Test a failed refund commit surfaces to the caller."""
        await manager.reserve(WORKSPACE_ID, 1_000)
        seeded_store.compare_and_set_balance = AsyncMock(  # type: ignore[method-assign]
            side_effect=ConnectionError("down")
        )

        with pytest.raises(LedgerCommitError):
            await sweeper.cleanup_expired_reservations(now=AFTER_TTL)


class TestSweeperLifecycle:
    """Tests for start/stop of the periodic sweep."""

    @pytest.mark.asyncio
    async def test_start_and_stop(self, sweeper: ReservationSweeper) -> None:
        """Test the background task is started once and cancelled on stop."""
        with patch.object(
            sweeper, "cleanup_expired_reservations", AsyncMock(return_value=0)
        ) as cleanup:
            await sweeper.start()
            await sweeper.start()
            assert sweeper.running is True

            await asyncio.sleep(0.05)
            await sweeper.stop()

        assert sweeper.running is False
        assert cleanup.await_count >= 1

    @pytest.mark.asyncio
    async def test_errors_do_not_stop_the_loop(self, sweeper: ReservationSweeper) -> None:
        """Test a failing sweep is logged and the next one still runs."""
        with patch.object(
            sweeper,
            "cleanup_expired_reservations",
            AsyncMock(side_effect=[RuntimeError("boom"), 0, 0, 0, 0, 0, 0, 0, 0, 0]),
        ) as cleanup:
            await sweeper.start()
            await asyncio.sleep(0.05)
            await sweeper.stop()

        assert cleanup.await_count >= 2

    @pytest.mark.asyncio
    async def test_stop_without_start(self, sweeper: ReservationSweeper) -> None:
        """Test stopping an idle sweeper is harmless."""
        await sweeper.stop()
        assert sweeper.running is False
