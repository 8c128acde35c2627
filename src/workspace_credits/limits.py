"""Admission control against subscription plan limits.

Usage is never stored as a running total: every check walks the workspaces
(and agents) of the subscription and counts the resources from scratch.
"""

import asyncio
from collections.abc import Awaitable, Callable
from typing import Protocol

import structlog

from workspace_credits.exceptions import (
    InvalidPlanError,
    LimitExceededError,
    SubscriptionNotFoundError,
)
from workspace_credits.models import ResourceKind, SubscriptionPlanLimits

logger = structlog.get_logger()

BYTES_PER_MB = 1024 * 1024

# Plan table shipped as configuration data; deployments pass their own.
DEFAULT_PLAN_LIMITS: dict[str, SubscriptionPlanLimits] = {
    "free": SubscriptionPlanLimits(
        plan="free",
        max_workspaces=1,
        max_agents=3,
        max_agent_keys=3,
        max_channels=2,
        max_mcp_servers=1,
        max_agent_schedules_per_agent=1,
        max_eval_judges_per_agent=1,
        max_documents=10,
        max_document_size_bytes=10 * BYTES_PER_MB,
    ),
    "starter": SubscriptionPlanLimits(
        plan="starter",
        max_workspaces=1,
        max_agents=5,
        max_agent_keys=5,
        max_channels=2,
        max_mcp_servers=1,
        max_agent_schedules_per_agent=3,
        max_eval_judges_per_agent=3,
        max_documents=100,
        max_document_size_bytes=100 * BYTES_PER_MB,
    ),
    "pro": SubscriptionPlanLimits(
        plan="pro",
        max_workspaces=5,
        max_agents=20,
        max_agent_keys=10,
        max_channels=5,
        max_mcp_servers=3,
        max_agent_schedules_per_agent=10,
        max_eval_judges_per_agent=10,
        max_documents=1000,
        max_document_size_bytes=1024 * BYTES_PER_MB,
    ),
}

# (label, noun) used in limit messages
_KIND_LABELS: dict[ResourceKind, tuple[str, str]] = {
    ResourceKind.WORKSPACE: ("Workspace", "workspace"),
    ResourceKind.AGENT: ("Agent", "agent"),
    ResourceKind.AGENT_KEY: ("Agent key", "agent key"),
    ResourceKind.CHANNEL: ("Channel", "channel"),
    ResourceKind.MCP_SERVER: ("MCP server", "MCP server"),
    ResourceKind.DOCUMENT: ("Document count", "document"),
    ResourceKind.AGENT_SCHEDULE: ("Agent schedule", "schedule"),
    ResourceKind.EVAL_JUDGE: ("Eval judge", "eval judge"),
}


class PlanLimitsProvider(Protocol):
    """Configuration lookup of plan limits."""

    def get_plan_limits(self, plan: str) -> SubscriptionPlanLimits | None: ...


class ResourceDirectory(Protocol):
    """Read access to the resources owned by a subscription."""

    async def get_subscription_plan(self, subscription_id: str) -> str | None: ...

    async def list_workspaces(self, subscription_id: str) -> list[str]: ...

    async def list_agents(self, workspace_id: str) -> list[str]: ...

    async def count_agent_keys(self, workspace_id: str, agent_id: str) -> int: ...

    async def count_channels(self, workspace_id: str) -> int: ...

    async def count_mcp_servers(self, workspace_id: str) -> int: ...

    async def list_document_sizes(self, workspace_id: str) -> list[int]: ...

    async def count_agent_schedules(self, workspace_id: str, agent_id: str) -> int: ...

    async def count_eval_judges(self, workspace_id: str, agent_id: str) -> int: ...


class StaticPlanLimits:
    """Plan limits from an in-memory table."""

    def __init__(self, table: dict[str, SubscriptionPlanLimits] | None = None) -> None:
        self._table = dict(DEFAULT_PLAN_LIMITS if table is None else table)

    def get_plan_limits(self, plan: str) -> SubscriptionPlanLimits | None:
        return self._table.get(plan)


class AdmissionController:
    """Checks resource creation against the subscription's plan caps."""

    def __init__(
        self,
        directory: ResourceDirectory,
        plan_limits: PlanLimitsProvider | None = None,
    ) -> None:
        self.directory = directory
        self.plan_limits = plan_limits or StaticPlanLimits()

    async def get_limits(self, subscription_id: str) -> SubscriptionPlanLimits:
        """Resolve the plan limits of a subscription.

        Raises:
            SubscriptionNotFoundError: If the subscription does not exist
            InvalidPlanError: If the plan has no configured limits
        """
        plan = await self.directory.get_subscription_plan(subscription_id)
        if plan is None:
            raise SubscriptionNotFoundError(subscription_id)

        limits = self.plan_limits.get_plan_limits(plan)
        if limits is None:
            logger.error(
                "Subscription references unknown plan",
                subscription_id=subscription_id,
                plan=plan,
            )
            raise InvalidPlanError(plan)
        return limits

    async def _sum_over_workspaces(
        self,
        subscription_id: str,
        count: Callable[[str], Awaitable[int]],
    ) -> int:
        workspace_ids = await self.directory.list_workspaces(subscription_id)
        counts = await asyncio.gather(*(count(ws) for ws in workspace_ids))
        return sum(counts)

    async def _count_agent_keys(self, workspace_id: str) -> int:
        agent_ids = await self.directory.list_agents(workspace_id)
        counts = await asyncio.gather(
            *(self.directory.count_agent_keys(workspace_id, agent_id) for agent_id in agent_ids)
        )
        return sum(counts)

    async def _count_agents(self, workspace_id: str) -> int:
        return len(await self.directory.list_agents(workspace_id))

    async def _document_usage(self, subscription_id: str) -> tuple[int, int]:
        workspace_ids = await self.directory.list_workspaces(subscription_id)
        sizes_per_workspace = await asyncio.gather(
            *(self.directory.list_document_sizes(ws) for ws in workspace_ids)
        )
        sizes = [size for sizes in sizes_per_workspace for size in sizes]
        return len(sizes), sum(sizes)

    async def count_usage(
        self,
        subscription_id: str,
        resource_kind: ResourceKind,
        workspace_id: str | None = None,
        agent_id: str | None = None,
    ) -> int:
        """Count existing resources of a kind (per agent for per-agent kinds)."""
        if resource_kind.is_per_agent:
            if workspace_id is None or agent_id is None:
                raise ValueError(f"{resource_kind.value} limits require workspace_id and agent_id")
            if resource_kind == ResourceKind.AGENT_SCHEDULE:
                return await self.directory.count_agent_schedules(workspace_id, agent_id)
            return await self.directory.count_eval_judges(workspace_id, agent_id)

        if resource_kind == ResourceKind.WORKSPACE:
            return len(await self.directory.list_workspaces(subscription_id))
        if resource_kind == ResourceKind.DOCUMENT:
            count, _ = await self._document_usage(subscription_id)
            return count

        counters = {
            ResourceKind.AGENT: self._count_agents,
            ResourceKind.AGENT_KEY: self._count_agent_keys,
            ResourceKind.CHANNEL: self.directory.count_channels,
            ResourceKind.MCP_SERVER: self.directory.count_mcp_servers,
        }
        return await self._sum_over_workspaces(subscription_id, counters[resource_kind])

    async def check_limit(  # noqa: PLR0913
        self,
        subscription_id: str,
        resource_kind: ResourceKind | str,
        additional_count: int = 0,
        *,
        workspace_id: str | None = None,
        agent_id: str | None = None,
        additional_size: int = 0,
    ) -> None:
        """Fail if adding resources would exceed the plan's cap.

        ``additional_count=0`` only checks the current state and never mutates
        anything. Documents are also checked against the total size cap.

        Args:
            subscription_id: Subscription owning the resources
            resource_kind: Kind of resource being created
            additional_count: How many resources are about to be created
            workspace_id: Workspace of the agent (per-agent kinds only)
            agent_id: Agent owning the resource (per-agent kinds only)
            additional_size: Bytes about to be added (documents only)

        Raises:
            LimitExceededError: If ``current + additional`` exceeds the cap
            InvalidPlanError: If the plan has no configured limits
            SubscriptionNotFoundError: If the subscription does not exist
        """
        kind = ResourceKind(resource_kind)
        limits = await self.get_limits(subscription_id)

        if kind == ResourceKind.DOCUMENT:
            current, current_size = await self._document_usage(subscription_id)
        else:
            current = await self.count_usage(subscription_id, kind, workspace_id, agent_id)
            current_size = 0

        cap = limits.cap_for(kind)
        if current + additional_count > cap:
            label, noun = _KIND_LABELS[kind]
            scope = " per agent" if kind.is_per_agent else ""
            logger.info(
                "Plan limit exceeded",
                subscription_id=subscription_id,
                resource_kind=kind.value,
                current=current,
                additional=additional_count,
                limit=cap,
                plan=limits.plan,
            )
            raise LimitExceededError(
                kind.value,
                current,
                cap,
                limits.plan,
                message=(
                    f"{label} limit exceeded. Maximum {cap} {noun}(s) allowed{scope} "
                    f"for {limits.plan} plan."
                ),
            )

        if kind == ResourceKind.DOCUMENT and current_size + additional_size > (
            limits.max_document_size_bytes
        ):
            max_size_mb = limits.max_document_size_bytes / BYTES_PER_MB
            raise LimitExceededError(
                kind.value,
                current_size,
                limits.max_document_size_bytes,
                limits.plan,
                message=(
                    f"Document size limit exceeded. Maximum {max_size_mb:g} MB total size "
                    f"allowed for {limits.plan} plan."
                ),
            )
