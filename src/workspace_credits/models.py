"""Ledger records shared across the credit subsystem."""

from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


def utcnow() -> datetime:
    """Timezone-aware current time."""
    return datetime.now(UTC)


class TransactionSource(str, Enum):
    """What originated a credit transaction."""

    TEXT_GENERATION = "text-generation"
    EMBEDDING_GENERATION = "embedding-generation"
    TOOL_EXECUTION = "tool-execution"
    RERANKING = "reranking"
    CREDIT_PURCHASE = "credit-purchase"
    RESERVATION_EXPIRY = "reservation-expiry"


class ResourceKind(str, Enum):
    """Metered resources gated by plan limits."""

    WORKSPACE = "workspace"
    AGENT = "agent"
    AGENT_KEY = "agentKey"
    CHANNEL = "channel"
    MCP_SERVER = "mcpServer"
    DOCUMENT = "document"
    AGENT_SCHEDULE = "agentSchedule"
    EVAL_JUDGE = "evalJudge"

    @property
    def is_per_agent(self) -> bool:
        """Whether the cap applies to each agent rather than the subscription."""
        return self in (ResourceKind.AGENT_SCHEDULE, ResourceKind.EVAL_JUDGE)


class TimeFrame(str, Enum):
    """Rolling spending-limit windows."""

    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"


class WorkspaceBalance(BaseModel):
    """Credit balance of one workspace.

    ``version`` is bumped by exactly one on every successful conditional
    update; stores reject writes carrying a stale version.
    """

    model_config = ConfigDict(frozen=True)

    workspace_id: str
    credit_balance: int  # micro-units, may go negative after settlement
    currency: str = "usd"
    version: int = 1
    updated_at: datetime = Field(default_factory=utcnow)


class CreditReservation(BaseModel):
    """A provisional debit held for one in-flight paid operation."""

    model_config = ConfigDict(frozen=True)

    reservation_id: str
    workspace_id: str
    reserved_amount: int = Field(ge=0)
    estimated_cost: int = Field(ge=0)
    currency: str = "usd"
    expires: int  # unix seconds
    expires_hour: int  # expires truncated to the hour, indexes expiry scans
    version: int = 1
    agent_id: str | None = None
    conversation_id: str | None = None
    provider: str | None = None
    model: str | None = None
    created_at: datetime = Field(default_factory=utcnow)

    def is_expired(self, now: int) -> bool:
        """Whether the reservation expired before ``now`` (unix seconds)."""
        return self.expires < now


class CreditTransaction(BaseModel):
    """A buffered balance delta.

    Positive ``amount_millionth_usd`` is an additional charge, negative is a
    refund or credit. ``reserved_amount`` is the part of the operation's
    cost already debited by a reservation; the full cost is their sum.
    """

    model_config = ConfigDict(frozen=True)

    workspace_id: str
    source: TransactionSource
    supplier: str
    description: str
    amount_millionth_usd: int
    reserved_amount: int = Field(default=0, ge=0)
    agent_id: str | None = None
    conversation_id: str | None = None
    model: str | None = None
    tool_call: str | None = None


class TransactionRecord(BaseModel):
    """A committed transaction as persisted by the store."""

    model_config = ConfigDict(frozen=True)

    transaction_id: str
    request_id: str
    workspace_id: str
    source: TransactionSource
    supplier: str
    description: str
    amount_millionth_usd: int
    reserved_amount: int = 0
    balance_before: int
    balance_after: int
    agent_id: str | None = None
    conversation_id: str | None = None
    model: str | None = None
    tool_call: str | None = None
    created_at: datetime = Field(default_factory=utcnow)

    @property
    def cost_micros(self) -> int:
        """Total cost of the operation, counting the reserved part."""
        return self.amount_millionth_usd + self.reserved_amount


class SubscriptionPlanLimits(BaseModel):
    """Resource caps of a subscription plan."""

    model_config = ConfigDict(frozen=True)

    plan: str
    max_workspaces: int
    max_agents: int
    max_agent_keys: int
    max_channels: int
    max_mcp_servers: int
    max_agent_schedules_per_agent: int
    max_eval_judges_per_agent: int
    max_documents: int
    max_document_size_bytes: int

    def cap_for(self, kind: ResourceKind) -> int:
        """Count cap for a resource kind."""
        return {
            ResourceKind.WORKSPACE: self.max_workspaces,
            ResourceKind.AGENT: self.max_agents,
            ResourceKind.AGENT_KEY: self.max_agent_keys,
            ResourceKind.CHANNEL: self.max_channels,
            ResourceKind.MCP_SERVER: self.max_mcp_servers,
            ResourceKind.DOCUMENT: self.max_documents,
            ResourceKind.AGENT_SCHEDULE: self.max_agent_schedules_per_agent,
            ResourceKind.EVAL_JUDGE: self.max_eval_judges_per_agent,
        }[kind]


class SpendingLimit(BaseModel):
    """A rolling-window spending cap in micro-units."""

    model_config = ConfigDict(frozen=True)

    time_frame: TimeFrame
    amount: int = Field(ge=0)


class Reservation(BaseModel):
    """Result of a reservation request.

    ``reservation_id`` is ``None`` when no reservation was needed
    (bring-your-own-key or zero-cost calls).
    """

    reservation_id: str | None
    reserved_amount: int
    workspace_balance_after: int
    currency: str = "usd"
    skipped: bool = False

    def to_log_dict(self) -> dict[str, Any]:
        """Fields for structured logging."""
        return self.model_dump()
