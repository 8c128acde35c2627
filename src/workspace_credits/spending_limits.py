"""Rolling-window spending limits for workspaces and agents."""

from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

import structlog

from workspace_credits.models import SpendingLimit, TimeFrame, TransactionSource, utcnow
from workspace_credits.store import RecordStore

logger = structlog.get_logger()

ROLLING_WINDOWS: dict[TimeFrame, timedelta] = {
    TimeFrame.DAILY: timedelta(hours=24),
    TimeFrame.WEEKLY: timedelta(days=7),
    TimeFrame.MONTHLY: timedelta(days=30),
}


@dataclass
class SpendingLimitCheck:
    """Result of checking spending limits."""

    passed: bool
    failed_limits: list[dict[str, Any]] = field(default_factory=list)


def calculate_rolling_window(time_frame: TimeFrame, now: datetime | None = None) -> datetime:
    """Start of the rolling window ending at ``now``."""
    return (now or utcnow()) - ROLLING_WINDOWS[time_frame]


async def get_spending_in_window(
    store: RecordStore,
    workspace_id: str,
    agent_id: str | None,
    start: datetime,
    end: datetime,
) -> int:
    """Sum of committed spend between ``start`` and ``end``.

    Credit purchases are not spend. Refunded operations contribute zero
    because their refund cancels the reserved part.
    """
    records = await store.query_transactions(workspace_id, start, end, agent_id=agent_id)
    return sum(
        record.cost_micros
        for record in records
        if record.source != TransactionSource.CREDIT_PURCHASE
    )


async def _check_scope(  # noqa: PLR0913
    store: RecordStore,
    scope: str,
    workspace_id: str,
    agent_id: str | None,
    limits: Sequence[SpendingLimit],
    estimated_cost: int,
    now: datetime,
) -> list[dict[str, Any]]:
    failed = []
    for limit in limits:
        start = calculate_rolling_window(limit.time_frame, now)
        spent = await get_spending_in_window(store, workspace_id, agent_id, start, now)
        current = spent + estimated_cost
        if current > limit.amount:
            failed.append(
                {
                    "scope": scope,
                    "time_frame": limit.time_frame.value,
                    "limit": limit.amount,
                    "current": current,
                }
            )
    return failed


async def check_spending_limits(  # noqa: PLR0913
    store: RecordStore,
    workspace_id: str,
    workspace_limits: Sequence[SpendingLimit],
    agent_id: str | None,
    agent_limits: Sequence[SpendingLimit],
    estimated_cost: int,
    now: datetime | None = None,
) -> SpendingLimitCheck:
    """Check workspace and agent spending limits against an upcoming cost.

    Args:
        store: Record store holding committed transactions
        workspace_id: Workspace being charged
        workspace_limits: Limits configured on the workspace
        agent_id: Agent making the call, if any
        agent_limits: Limits configured on the agent
        estimated_cost: Estimated cost of the upcoming call in micro-units
        now: End of every window (defaults to current time)

    Returns:
        SpendingLimitCheck listing every limit that would be exceeded
    """
    now = now or utcnow()
    failed = await _check_scope(
        store, "workspace", workspace_id, None, workspace_limits, estimated_cost, now
    )
    if agent_id is not None:
        failed += await _check_scope(
            store, "agent", workspace_id, agent_id, agent_limits, estimated_cost, now
        )

    if failed:
        logger.warning(
            "Spending limit exceeded",
            workspace_id=workspace_id,
            agent_id=agent_id,
            estimated_cost=estimated_cost,
            failed_limits=failed,
        )
    return SpendingLimitCheck(passed=not failed, failed_limits=failed)
