"""Settlement of credit reservations.

Settlement never touches balances. It records the difference between the
reserved and the actual cost (or the full reversal on refund) in the request
ledger and deletes the reservation. The delete decides ownership: only the
settler that removes the reservation appends an entry. A missing reservation
means it was already settled or reclaimed, so settling is idempotent.
"""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass

import structlog

from workspace_credits.exceptions import ReservationNotFoundError
from workspace_credits.ledger import DeferredTransactionLedger
from workspace_credits.models import (
    CreditReservation,
    CreditTransaction,
    Reservation,
    TransactionSource,
)
from workspace_credits.observability import capture_exception
from workspace_credits.reservations import ReservationManager
from workspace_credits.store import RecordStore

logger = structlog.get_logger()


class SettlementEngine:
    """Adjusts and refunds reservations into a request ledger."""

    def __init__(self, store: RecordStore) -> None:
        self.store = store

    async def _lookup(
        self,
        reservation_id: str,
        workspace_id: str,
        operation: str,
    ) -> CreditReservation | None:
        reservation = await self.store.get_reservation(reservation_id)
        if reservation is None:
            self._log_missing(reservation_id, workspace_id, operation)
            return None
        if reservation.workspace_id != workspace_id:
            logger.warning(
                "Reservation belongs to another workspace, not settling",
                reservation_id=reservation_id,
                workspace_id=workspace_id,
                reservation_workspace_id=reservation.workspace_id,
                operation=operation,
            )
            return None
        return reservation

    async def _claim(self, reservation_id: str, workspace_id: str, operation: str) -> bool:
        """Take ownership of a reservation by deleting it.

        Only the caller whose delete succeeds may append its entry, so
        concurrent settlers (a late adjust racing the sweeper) settle once.
        """
        if await self.store.delete_reservation(reservation_id):
            return True
        self._log_missing(reservation_id, workspace_id, operation)
        return False

    @staticmethod
    def _log_missing(reservation_id: str, workspace_id: str, operation: str) -> None:
        missing = ReservationNotFoundError(reservation_id)
        logger.warning(
            "Reservation not found, assuming already processed",
            reservation_id=reservation_id,
            workspace_id=workspace_id,
            operation=operation,
            error_code=missing.error_code,
            reason=missing.message,
        )

    async def adjust(  # noqa: PLR0913
        self,
        reservation_id: str | None,
        workspace_id: str,
        actual_cost_micros: int,
        ledger: DeferredTransactionLedger,
        *,
        source: TransactionSource,
        supplier: str,
        description: str | None = None,
        agent_id: str | None = None,
        conversation_id: str | None = None,
        model: str | None = None,
        tool_call: str | None = None,
    ) -> int | None:
        """Settle a reservation at its actual cost.

        Deletes the reservation and appends ``actual - reserved`` to the ledger
        (positive charges more, negative refunds the excess).

        Returns:
            The appended difference, or None if there was nothing to settle
        """
        if reservation_id is None:
            return None

        if actual_cost_micros < 0:
            logger.warning(
                "Negative actual cost, clamping to 0",
                reservation_id=reservation_id,
                workspace_id=workspace_id,
                actual_cost=actual_cost_micros,
            )
            actual_cost_micros = 0

        reservation = await self._lookup(reservation_id, workspace_id, "adjust")
        if reservation is None:
            return None

        difference = actual_cost_micros - reservation.reserved_amount
        entry = CreditTransaction(
            workspace_id=workspace_id,
            source=source,
            supplier=supplier,
            description=description
            or (
                f"{supplier} usage: reserved {reservation.reserved_amount}, "
                f"actual {actual_cost_micros}"
            ),
            amount_millionth_usd=difference,
            reserved_amount=reservation.reserved_amount,
            agent_id=agent_id or reservation.agent_id,
            conversation_id=conversation_id or reservation.conversation_id,
            model=model or reservation.model,
            tool_call=tool_call,
        )
        if not await self._claim(reservation_id, workspace_id, "adjust"):
            return None
        ledger.append(entry)
        logger.info(
            "Adjusted credit reservation",
            reservation_id=reservation_id,
            workspace_id=workspace_id,
            reserved_amount=reservation.reserved_amount,
            actual_cost=actual_cost_micros,
            difference=difference,
        )
        return difference

    async def refund(  # noqa: PLR0913
        self,
        reservation_id: str | None,
        workspace_id: str,
        ledger: DeferredTransactionLedger,
        *,
        source: TransactionSource,
        supplier: str,
        description: str | None = None,
        agent_id: str | None = None,
        conversation_id: str | None = None,
        model: str | None = None,
        tool_call: str | None = None,
    ) -> int | None:
        """Reverse a reservation entirely.

        Returns:
            The refunded amount, or None if there was nothing to refund
        """
        if reservation_id is None:
            return None

        reservation = await self._lookup(reservation_id, workspace_id, "refund")
        if reservation is None:
            return None

        entry = CreditTransaction(
            workspace_id=workspace_id,
            source=source,
            supplier=supplier,
            description=description or f"{supplier} usage refunded",
            amount_millionth_usd=-reservation.reserved_amount,
            reserved_amount=reservation.reserved_amount,
            agent_id=agent_id or reservation.agent_id,
            conversation_id=conversation_id or reservation.conversation_id,
            model=model or reservation.model,
            tool_call=tool_call,
        )
        if not await self._claim(reservation_id, workspace_id, "refund"):
            return None
        ledger.append(entry)
        logger.info(
            "Refunded credit reservation",
            reservation_id=reservation_id,
            workspace_id=workspace_id,
            refunded_amount=reservation.reserved_amount,
        )
        return reservation.reserved_amount

    async def adjust_safely(  # noqa: PLR0913
        self,
        reservation_id: str | None,
        workspace_id: str,
        actual_cost_micros: int,
        ledger: DeferredTransactionLedger,
        *,
        source: TransactionSource,
        supplier: str,
        description: str | None = None,
        agent_id: str | None = None,
        conversation_id: str | None = None,
        model: str | None = None,
        tool_call: str | None = None,
    ) -> int | None:
        """:meth:`adjust` that logs and reports failures instead of raising."""
        try:
            return await self.adjust(
                reservation_id,
                workspace_id,
                actual_cost_micros,
                ledger,
                source=source,
                supplier=supplier,
                description=description,
                agent_id=agent_id,
                conversation_id=conversation_id,
                model=model,
                tool_call=tool_call,
            )
        except Exception as e:
            logger.exception(
                "Failed to adjust credit reservation",
                reservation_id=reservation_id,
                workspace_id=workspace_id,
                actual_cost=actual_cost_micros,
                supplier=supplier,
            )
            capture_exception(
                e,
                tags={"component": "settlement", "operation": "adjust"},
                extra={
                    "reservation_id": reservation_id,
                    "workspace_id": workspace_id,
                    "actual_cost": actual_cost_micros,
                },
            )
            return None

    async def refund_safely(  # noqa: PLR0913
        self,
        reservation_id: str | None,
        workspace_id: str,
        ledger: DeferredTransactionLedger,
        *,
        source: TransactionSource,
        supplier: str,
        description: str | None = None,
        agent_id: str | None = None,
        conversation_id: str | None = None,
        model: str | None = None,
        tool_call: str | None = None,
    ) -> int | None:
        """:meth:`refund` that logs and reports failures instead of raising."""
        try:
            return await self.refund(
                reservation_id,
                workspace_id,
                ledger,
                source=source,
                supplier=supplier,
                description=description,
                agent_id=agent_id,
                conversation_id=conversation_id,
                model=model,
                tool_call=tool_call,
            )
        except Exception as e:
            logger.exception(
                "Failed to refund credit reservation",
                reservation_id=reservation_id,
                workspace_id=workspace_id,
                supplier=supplier,
            )
            capture_exception(
                e,
                tags={"component": "settlement", "operation": "refund"},
                extra={"reservation_id": reservation_id, "workspace_id": workspace_id},
            )
            return None


@dataclass
class MeteredOperation:
    """Handle for a paid call running under :func:`metered_operation`."""

    reservation: Reservation
    actual_cost: int | None = None

    @property
    def reservation_id(self) -> str | None:
        return self.reservation.reservation_id

    def settle(self, actual_cost_micros: int) -> None:
        """Record the actual cost; the reservation is adjusted to it on exit."""
        self.actual_cost = actual_cost_micros


@asynccontextmanager
async def metered_operation(  # noqa: PLR0913
    reservations: ReservationManager,
    engine: SettlementEngine,
    ledger: DeferredTransactionLedger,
    workspace_id: str,
    estimated_cost_micros: int,
    *,
    source: TransactionSource,
    supplier: str,
    uses_own_api_key: bool = False,
    agent_id: str | None = None,
    conversation_id: str | None = None,
    provider: str | None = None,
    model: str | None = None,
    tool_call: str | None = None,
) -> AsyncIterator[MeteredOperation]:
    """Reserve credits for a paid call and always settle the reservation.

    The reservation is adjusted to the cost recorded with
    :meth:`MeteredOperation.settle`. It is refunded if the body raises, is
    cancelled, or exits without recording a cost. Exceptions from the body
    always propagate; reservation errors propagate before the body runs.

    Example:
        async with metered_operation(
            manager, engine, ledger, workspace_id, calculate_tavily_cost(1),
            source=TransactionSource.TOOL_EXECUTION, supplier="tavily",
        ) as op:
            result = await search(query)
            op.settle(calculate_tavily_cost(result.credits_used))
    """
    reservation = await reservations.reserve(
        workspace_id,
        estimated_cost_micros,
        uses_own_api_key=uses_own_api_key,
        agent_id=agent_id,
        conversation_id=conversation_id,
        provider=provider,
        model=model,
    )
    operation = MeteredOperation(reservation=reservation)
    details = {
        "source": source,
        "supplier": supplier,
        "agent_id": agent_id,
        "conversation_id": conversation_id,
        "model": model,
        "tool_call": tool_call,
    }

    try:
        yield operation
    except BaseException:
        await engine.refund_safely(reservation.reservation_id, workspace_id, ledger, **details)
        raise

    if operation.actual_cost is None:
        if reservation.reservation_id is not None:
            logger.warning(
                "Metered operation finished without a cost, refunding",
                reservation_id=reservation.reservation_id,
                workspace_id=workspace_id,
            )
        await engine.refund_safely(reservation.reservation_id, workspace_id, ledger, **details)
    else:
        await engine.adjust_safely(
            reservation.reservation_id,
            workspace_id,
            operation.actual_cost,
            ledger,
            **details,
        )
