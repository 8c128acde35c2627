"""Exception classes for the credit ledger."""

from typing import Any


class CreditErrorCode:
    """Machine-readable reasons returned to clients."""

    INSUFFICIENT_CREDITS = "INSUFFICIENT_CREDITS"
    SPENDING_LIMIT_EXCEEDED = "SPENDING_LIMIT_EXCEEDED"
    LIMIT_EXCEEDED = "LIMIT_EXCEEDED"
    INVALID_PLAN = "INVALID_PLAN"
    SUBSCRIPTION_NOT_FOUND = "SUBSCRIPTION_NOT_FOUND"
    CONCURRENCY_EXHAUSTED = "CONCURRENCY_EXHAUSTED"
    WORKSPACE_NOT_FOUND = "WORKSPACE_NOT_FOUND"
    RESERVATION_NOT_FOUND = "RESERVATION_NOT_FOUND"
    LEDGER_COMMIT_FAILED = "LEDGER_COMMIT_FAILED"


class CreditError(Exception):
    """Base exception for credit ledger failures."""

    error_code: str = "CREDIT_ERROR"

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)

    def to_detail(self) -> dict[str, Any]:
        """Build a JSON-serializable error detail."""
        return {"error_code": self.error_code, "message": self.message}


class InsufficientCreditsError(CreditError):
    """Raised when the workspace balance cannot cover the estimated cost."""

    error_code = CreditErrorCode.INSUFFICIENT_CREDITS

    def __init__(
        self,
        workspace_id: str,
        required: int,
        available: int,
        currency: str = "usd",
        agent_id: str | None = None,
    ) -> None:
        self.workspace_id = workspace_id
        self.required = required
        self.available = available
        self.currency = currency
        self.agent_id = agent_id
        super().__init__(
            f"Insufficient credits in workspace {workspace_id}: "
            f"required {required}, available {available} (micro-{currency}). "
            "Please add credits to continue."
        )

    def to_detail(self) -> dict[str, Any]:
        return {
            **super().to_detail(),
            "workspace_id": self.workspace_id,
            "required": self.required,
            "available": self.available,
            "currency": self.currency,
        }


class SpendingLimitExceededError(CreditError):
    """Raised when a spending limit of the workspace or agent would be exceeded."""

    error_code = CreditErrorCode.SPENDING_LIMIT_EXCEEDED

    def __init__(
        self,
        workspace_id: str,
        failed_limits: list[dict[str, Any]],
        agent_id: str | None = None,
    ) -> None:
        self.workspace_id = workspace_id
        self.failed_limits = failed_limits
        self.agent_id = agent_id
        summary = ", ".join(
            f"{f['scope']} {f['time_frame']} limit {f['limit']} (would reach {f['current']})"
            for f in failed_limits
        )
        super().__init__(f"Spending limit exceeded: {summary}")

    def to_detail(self) -> dict[str, Any]:
        return {
            **super().to_detail(),
            "workspace_id": self.workspace_id,
            "failed_limits": self.failed_limits,
        }


class ConcurrencyExhaustedError(CreditError):
    """Raised when a conditional update keeps losing to concurrent writers.

    Transient: the caller may retry the whole operation.
    """

    error_code = CreditErrorCode.CONCURRENCY_EXHAUSTED

    def __init__(self, key: str, max_retries: int) -> None:
        self.key = key
        self.max_retries = max_retries
        super().__init__(f"Failed to atomically update {key} after {max_retries} retries")


class StaleVersionError(CreditError):
    """Raised by a store when a compare-and-set sees a newer version."""

    def __init__(self, key: str, expected_version: int) -> None:
        self.key = key
        self.expected_version = expected_version
        super().__init__(f"Record {key} was outdated (expected version {expected_version})")


class WorkspaceNotFoundError(CreditError):
    """Raised when a workspace has no balance record."""

    error_code = CreditErrorCode.WORKSPACE_NOT_FOUND

    def __init__(self, workspace_id: str) -> None:
        self.workspace_id = workspace_id
        super().__init__(f"Workspace {workspace_id} not found")


class ReservationNotFoundError(CreditError):
    """A reservation is missing at settlement time.

    Settlement treats this as an already-processed reservation and only logs it.
    """

    error_code = CreditErrorCode.RESERVATION_NOT_FOUND

    def __init__(self, reservation_id: str) -> None:
        self.reservation_id = reservation_id
        super().__init__(f"Reservation {reservation_id} not found")


class LimitExceededError(CreditError):
    """Raised when creating a resource would exceed the plan's cap."""

    error_code = CreditErrorCode.LIMIT_EXCEEDED

    def __init__(
        self,
        resource_kind: str,
        current: int,
        limit: int,
        plan: str,
        message: str | None = None,
    ) -> None:
        self.resource_kind = resource_kind
        self.current = current
        self.limit = limit
        self.plan = plan
        super().__init__(
            message
            or f"{resource_kind} limit exceeded. Maximum {limit} allowed for {plan} plan."
        )

    def to_detail(self) -> dict[str, Any]:
        return {
            **super().to_detail(),
            "resource_kind": self.resource_kind,
            "current": self.current,
            "limit": self.limit,
            "plan": self.plan,
        }


class InvalidPlanError(CreditError):
    """Raised when a subscription references a plan with no limits."""

    error_code = CreditErrorCode.INVALID_PLAN

    def __init__(self, plan: str) -> None:
        self.plan = plan
        super().__init__(f"Invalid subscription plan: {plan}")

    def to_detail(self) -> dict[str, Any]:
        return {**super().to_detail(), "plan": self.plan}


class SubscriptionNotFoundError(CreditError):
    """Raised when a subscription does not exist."""

    error_code = CreditErrorCode.SUBSCRIPTION_NOT_FOUND

    def __init__(self, subscription_id: str) -> None:
        self.subscription_id = subscription_id
        super().__init__(f"Subscription {subscription_id} not found")


class LedgerCommitError(CreditError):
    """Raised when buffered transactions could not be applied.

    The entries stay buffered; ``failed`` maps workspace ids to the net
    amount that was not applied so it can be reconciled.
    """

    error_code = CreditErrorCode.LEDGER_COMMIT_FAILED

    def __init__(self, failed: dict[str, int], cause: Exception | None = None) -> None:
        self.failed = failed
        self.cause = cause
        workspaces = ", ".join(f"{ws}={amount}" for ws, amount in failed.items())
        super().__init__(f"Failed to commit credit transactions for workspaces: {workspaces}")
