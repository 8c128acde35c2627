"""Credit reservation before paid external calls.

A reservation debits the estimated cost from the workspace balance up front
and records the hold. Settlement later replaces the hold with the actual cost
(see :mod:`workspace_credits.settlement`).
"""

import time
import uuid
from collections.abc import Callable, Sequence

import structlog

from workspace_credits.config import Settings, get_settings
from workspace_credits.exceptions import (
    InsufficientCreditsError,
    SpendingLimitExceededError,
    WorkspaceNotFoundError,
)
from workspace_credits.models import (
    CreditReservation,
    Reservation,
    SpendingLimit,
    WorkspaceBalance,
)
from workspace_credits.observability import capture_exception
from workspace_credits.spending_limits import check_spending_limits
from workspace_credits.store import RETRY_BACKOFF_SECONDS, RecordStore, atomic_update

logger = structlog.get_logger()

SECONDS_PER_HOUR = 3600


def calculate_expires_hour(expires: int) -> int:
    """Truncate an expiry timestamp to its hour bucket."""
    return (expires // SECONDS_PER_HOUR) * SECONDS_PER_HOUR


class ReservationManager:
    """Reserves credits against workspace balances."""

    def __init__(
        self,
        store: RecordStore,
        settings: Settings | None = None,
        clock: Callable[[], float] = time.time,
        retry_backoff_seconds: float = RETRY_BACKOFF_SECONDS,
    ) -> None:
        self.store = store
        self.settings = settings or get_settings()
        self._clock = clock
        self._retry_backoff_seconds = retry_backoff_seconds

    async def _current_balance(self, workspace_id: str) -> WorkspaceBalance:
        balance = await self.store.get_balance(workspace_id)
        if balance is None:
            raise WorkspaceNotFoundError(workspace_id)
        return balance

    async def reserve(  # noqa: PLR0913
        self,
        workspace_id: str,
        estimated_cost_micros: int,
        max_retries: int | None = None,
        uses_own_api_key: bool = False,
        *,
        agent_id: str | None = None,
        conversation_id: str | None = None,
        provider: str | None = None,
        model: str | None = None,
    ) -> Reservation:
        """Atomically debit the estimated cost and create a reservation.

        Args:
            workspace_id: Workspace to charge
            estimated_cost_micros: Estimated cost in micro-units
            max_retries: Retries on version conflicts (defaults to settings)
            uses_own_api_key: Workspace pays the provider directly (BYOK)
            agent_id: Agent making the call, kept for expiry refunds
            conversation_id: Conversation the call belongs to
            provider: Provider being called
            model: Model being called

        Returns:
            The reservation; ``reservation_id`` is ``None`` when skipped

        Raises:
            InsufficientCreditsError: If the balance is below the estimate
            ConcurrencyExhaustedError: If retries are exhausted
            WorkspaceNotFoundError: If the workspace has no balance
        """
        if uses_own_api_key:
            balance = await self._current_balance(workspace_id)
            logger.info(
                "Request uses own API key, skipping credit reservation",
                workspace_id=workspace_id,
                estimated_cost=estimated_cost_micros,
            )
            return Reservation(
                reservation_id=None,
                reserved_amount=0,
                workspace_balance_after=balance.credit_balance,
                currency=balance.currency,
                skipped=True,
            )

        if estimated_cost_micros < 0:
            balance = await self._current_balance(workspace_id)
            logger.warning(
                "Negative estimated cost, skipping reservation",
                workspace_id=workspace_id,
                estimated_cost=estimated_cost_micros,
            )
            return Reservation(
                reservation_id=None,
                reserved_amount=0,
                workspace_balance_after=balance.credit_balance,
                currency=balance.currency,
                skipped=True,
            )

        retries = self.settings.CREDIT_MAX_RETRIES if max_retries is None else max_retries

        def debit(current: WorkspaceBalance) -> WorkspaceBalance:
            if current.credit_balance < estimated_cost_micros:
                raise InsufficientCreditsError(
                    workspace_id,
                    estimated_cost_micros,
                    current.credit_balance,
                    current.currency,
                    agent_id,
                )
            return current.model_copy(
                update={"credit_balance": current.credit_balance - estimated_cost_micros}
            )

        updated = await atomic_update(
            self.store,
            workspace_id,
            debit,
            max_retries=retries,
            backoff_seconds=self._retry_backoff_seconds,
        )

        expires = int(self._clock()) + self.settings.RESERVATION_TTL_SECONDS
        reservation = CreditReservation(
            reservation_id=str(uuid.uuid4()),
            workspace_id=workspace_id,
            reserved_amount=estimated_cost_micros,
            estimated_cost=estimated_cost_micros,
            currency=updated.currency,
            expires=expires,
            expires_hour=calculate_expires_hour(expires),
            agent_id=agent_id,
            conversation_id=conversation_id,
            provider=provider,
            model=model,
        )
        try:
            await self.store.create_reservation(reservation)
        except Exception:
            await self._compensate_debit(workspace_id, estimated_cost_micros, retries)
            raise

        logger.info(
            "Reserved credits",
            workspace_id=workspace_id,
            reservation_id=reservation.reservation_id,
            reserved_amount=estimated_cost_micros,
            new_balance=updated.credit_balance,
            currency=updated.currency,
            expires=expires,
        )
        return Reservation(
            reservation_id=reservation.reservation_id,
            reserved_amount=estimated_cost_micros,
            workspace_balance_after=updated.credit_balance,
            currency=updated.currency,
        )

    async def _compensate_debit(self, workspace_id: str, amount: int, max_retries: int) -> None:
        """Credit back a debit whose reservation record could not be created."""
        logger.error(
            "Failed to create reservation record, reverting debit",
            workspace_id=workspace_id,
            amount=amount,
        )
        try:
            await atomic_update(
                self.store,
                workspace_id,
                lambda current: current.model_copy(
                    update={"credit_balance": current.credit_balance + amount}
                ),
                max_retries=max_retries,
                backoff_seconds=self._retry_backoff_seconds,
            )
        except Exception as e:
            # Balance stays debited with no reservation; needs manual reconciliation
            logger.exception(
                "Failed to revert reservation debit",
                workspace_id=workspace_id,
                amount=amount,
            )
            capture_exception(
                e,
                tags={"component": "reservations"},
                extra={"workspace_id": workspace_id, "amount": amount},
            )

    async def validate_and_reserve(  # noqa: PLR0913
        self,
        workspace_id: str,
        estimated_cost_micros: int,
        *,
        agent_id: str | None = None,
        conversation_id: str | None = None,
        provider: str | None = None,
        model: str | None = None,
        uses_own_api_key: bool = False,
        workspace_limits: Sequence[SpendingLimit] = (),
        agent_limits: Sequence[SpendingLimit] = (),
    ) -> Reservation | None:
        """Check credits and spending limits, then reserve.

        Spending limits are checked for own-key requests too. Each check can be
        switched off with the ``ENABLE_*`` feature flags in settings.

        Returns:
            The reservation, or ``None`` when no reservation was made (own key,
            deduction disabled, or all checks disabled)

        Raises:
            InsufficientCreditsError: If the balance is below the estimate
            SpendingLimitExceededError: If a spending limit would be exceeded
        """
        validation_enabled = self.settings.ENABLE_CREDIT_VALIDATION
        spending_checks_enabled = self.settings.ENABLE_SPENDING_LIMIT_CHECKS

        if not validation_enabled and not spending_checks_enabled:
            logger.info(
                "Credit validation and spending limit checks disabled",
                workspace_id=workspace_id,
                agent_id=agent_id,
            )
            return None

        balance = await self._current_balance(workspace_id)

        if not uses_own_api_key and validation_enabled:
            if balance.credit_balance < estimated_cost_micros:
                raise InsufficientCreditsError(
                    workspace_id,
                    estimated_cost_micros,
                    balance.credit_balance,
                    balance.currency,
                    agent_id,
                )

        if spending_checks_enabled:
            result = await check_spending_limits(
                self.store,
                workspace_id,
                workspace_limits,
                agent_id,
                agent_limits,
                estimated_cost_micros,
            )
            if not result.passed:
                raise SpendingLimitExceededError(workspace_id, result.failed_limits, agent_id)

        if not uses_own_api_key and self.settings.ENABLE_CREDIT_DEDUCTION:
            return await self.reserve(
                workspace_id,
                estimated_cost_micros,
                agent_id=agent_id,
                conversation_id=conversation_id,
                provider=provider,
                model=model,
            )

        logger.info(
            "No credit reservation created",
            workspace_id=workspace_id,
            agent_id=agent_id,
            estimated_cost=estimated_cost_micros,
            reason="own_api_key" if uses_own_api_key else "deduction_disabled",
        )
        return None
