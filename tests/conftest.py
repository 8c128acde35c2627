"""Pytest configuration for credit ledger tests."""

import os
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from unittest.mock import AsyncMock, MagicMock

import pytest

from workspace_credits.config import Settings
from workspace_credits.ledger import DeferredTransactionLedger
from workspace_credits.limits import AdmissionController, StaticPlanLimits
from workspace_credits.models import SubscriptionPlanLimits, WorkspaceBalance
from workspace_credits.reservations import ReservationManager
from workspace_credits.settlement import SettlementEngine
from workspace_credits.store import InMemoryRecordStore

# Check if integration tests should run
RUN_INTEGRATION_TESTS = os.getenv("RUN_INTEGRATION_TESTS", "false").lower() == "true"
REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379")

WORKSPACE_ID = "ws-1"
INITIAL_BALANCE = 100_000
NOW = 1_700_000_000


@pytest.fixture
def settings() -> Settings:
    """Settings isolated from the environment."""
    return Settings(
        _env_file=None,
        ENVIRONMENT="test",
        RESERVATION_TTL_SECONDS=900,
        CREDIT_MAX_RETRIES=3,
        ENABLE_CREDIT_VALIDATION=True,
        ENABLE_CREDIT_DEDUCTION=True,
        ENABLE_SPENDING_LIMIT_CHECKS=True,
        SWEEPER_INTERVAL_SECONDS=300.0,
    )


@pytest.fixture
def store() -> InMemoryRecordStore:
    """Empty in-memory record store."""
    return InMemoryRecordStore()


@pytest.fixture
async def seeded_store(store: InMemoryRecordStore) -> AsyncIterator[InMemoryRecordStore]:
    """Store with one workspace holding INITIAL_BALANCE micro-units."""
    await store.create_balance(
        WorkspaceBalance(workspace_id=WORKSPACE_ID, credit_balance=INITIAL_BALANCE)
    )
    yield store


@pytest.fixture
def manager(seeded_store: InMemoryRecordStore, settings: Settings) -> ReservationManager:
    """Reservation manager with a fixed clock and no retry backoff."""
    return ReservationManager(
        seeded_store,
        settings=settings,
        clock=lambda: float(NOW),
        retry_backoff_seconds=0,
    )


@pytest.fixture
def engine(seeded_store: InMemoryRecordStore) -> SettlementEngine:
    """Settlement engine on the seeded store."""
    return SettlementEngine(seeded_store)


@pytest.fixture
def ledger(seeded_store: InMemoryRecordStore, settings: Settings) -> DeferredTransactionLedger:
    """Request ledger on the seeded store."""
    return DeferredTransactionLedger(
        seeded_store,
        request_id="req-1",
        settings=settings,
        retry_backoff_seconds=0,
    )


@pytest.fixture
def mock_capture_exception(monkeypatch: pytest.MonkeyPatch) -> MagicMock:
    """Replace Sentry reporting in every module that reports errors."""
    mock = MagicMock(return_value="event-id")
    for module in (
        "workspace_credits.ledger",
        "workspace_credits.reservations",
        "workspace_credits.settlement",
        "workspace_credits.sweeper",
    ):
        monkeypatch.setattr(f"{module}.capture_exception", mock)
    return mock


@dataclass
class FakeResourceDirectory:
    """In-memory resource directory keyed like the real document store."""

    plans: dict[str, str] = field(default_factory=dict)
    workspaces: dict[str, list[str]] = field(default_factory=dict)
    agents: dict[str, list[str]] = field(default_factory=dict)
    agent_keys: dict[tuple[str, str], int] = field(default_factory=dict)
    channels: dict[str, int] = field(default_factory=dict)
    mcp_servers: dict[str, int] = field(default_factory=dict)
    document_sizes: dict[str, list[int]] = field(default_factory=dict)
    schedules: dict[tuple[str, str], int] = field(default_factory=dict)
    eval_judges: dict[tuple[str, str], int] = field(default_factory=dict)

    async def get_subscription_plan(self, subscription_id: str) -> str | None:
        return self.plans.get(subscription_id)

    async def list_workspaces(self, subscription_id: str) -> list[str]:
        return list(self.workspaces.get(subscription_id, []))

    async def list_agents(self, workspace_id: str) -> list[str]:
        return list(self.agents.get(workspace_id, []))

    async def count_agent_keys(self, workspace_id: str, agent_id: str) -> int:
        return self.agent_keys.get((workspace_id, agent_id), 0)

    async def count_channels(self, workspace_id: str) -> int:
        return self.channels.get(workspace_id, 0)

    async def count_mcp_servers(self, workspace_id: str) -> int:
        return self.mcp_servers.get(workspace_id, 0)

    async def list_document_sizes(self, workspace_id: str) -> list[int]:
        return list(self.document_sizes.get(workspace_id, []))

    async def count_agent_schedules(self, workspace_id: str, agent_id: str) -> int:
        return self.schedules.get((workspace_id, agent_id), 0)

    async def count_eval_judges(self, workspace_id: str, agent_id: str) -> int:
        return self.eval_judges.get((workspace_id, agent_id), 0)


@pytest.fixture
def team_plan() -> SubscriptionPlanLimits:
    """Plan with five agent keys."""
    return SubscriptionPlanLimits(
        plan="team",
        max_workspaces=2,
        max_agents=4,
        max_agent_keys=5,
        max_channels=3,
        max_mcp_servers=2,
        max_agent_schedules_per_agent=2,
        max_eval_judges_per_agent=1,
        max_documents=3,
        max_document_size_bytes=1024,
    )


@pytest.fixture
def directory() -> FakeResourceDirectory:
    """Subscription "sub-1" on the team plan with two workspaces."""
    return FakeResourceDirectory(
        plans={"sub-1": "team", "sub-bad": "legacy"},
        workspaces={"sub-1": ["ws-a", "ws-b"], "sub-bad": ["ws-x"]},
        agents={"ws-a": ["agent-1", "agent-2"], "ws-b": ["agent-3"]},
        agent_keys={("ws-a", "agent-1"): 2, ("ws-a", "agent-2"): 1, ("ws-b", "agent-3"): 2},
        channels={"ws-a": 1, "ws-b": 1},
        mcp_servers={"ws-a": 1},
        document_sizes={"ws-a": [100, 200], "ws-b": [300]},
        schedules={("ws-a", "agent-1"): 2},
        eval_judges={("ws-a", "agent-1"): 0},
    )


@pytest.fixture
def admission(
    directory: FakeResourceDirectory,
    team_plan: SubscriptionPlanLimits,
) -> AdmissionController:
    """Admission controller over the fake directory."""
    return AdmissionController(directory, StaticPlanLimits({"team": team_plan}))


@pytest.fixture
def mock_redis_client() -> MagicMock:
    """Create a mock Redis client."""
    client = MagicMock()
    client.get = AsyncMock(return_value=None)
    client.set = AsyncMock(return_value=True)
    client.delete = AsyncMock(return_value=1)
    client.mget = AsyncMock(return_value=[])
    client.zrem = AsyncMock(return_value=1)
    client.zrangebyscore = AsyncMock(return_value=[])
    client.aclose = AsyncMock()
    return client
