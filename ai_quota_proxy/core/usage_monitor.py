"""
Workspace spend tracking and monthly quota enforcement.

Quotas are soft: the check happens before a request and the cost is written
after it completes, so concurrent in-flight requests can push a workspace
slightly past its limit. New requests are refused once the ledger reflects
the overage.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, List, Optional, Tuple

from .errors import InfrastructureError, run_store_call
from ai_quota_proxy.storage.models import UsageRecord, WorkspaceLimitConfig, month_year_of
from ai_quota_proxy.storage.repository import UsageRepository, WorkspaceRepository

logger = logging.getLogger(__name__)

# Percentages at which check_usage_alerts starts alerting, highest first
ALERT_THRESHOLDS = (
    (100, "Your workspace has reached its monthly usage limit."),
    (90, "Your workspace has used 90% of its monthly limit."),
    (80, "Your workspace has used 80% of its monthly limit."),
)


@dataclass(frozen=True)
class WorkspaceUsage:
    """Spend of one workspace in one month, derived from the ledger."""
    workspace_id: str
    month_year: str
    total_cost: float
    limit: float
    limit_enabled: bool
    name: Optional[str] = None

    @property
    def percentage_used(self) -> float:
        if self.limit <= 0:
            return 0.0
        return self.total_cost / self.limit * 100

    @property
    def is_over_limit(self) -> bool:
        return self.limit_enabled and self.total_cost > self.limit


@dataclass(frozen=True)
class QuotaCheckResult:
    allowed: bool
    usage: WorkspaceUsage
    message: Optional[str] = None


@dataclass(frozen=True)
class AllWorkspacesUsage:
    workspaces: List[WorkspaceUsage]
    total_usage: float


@dataclass(frozen=True)
class UsageAlert:
    should_alert: bool
    percentage: float
    message: Optional[str] = None


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def format_quota_message(usage: WorkspaceUsage) -> str:
    """Human-readable over-limit message, e.g. "$10.05 / $10.00"."""
    return (
        f"Monthly usage limit exceeded: "
        f"${usage.total_cost:.2f} / ${usage.limit:.2f}"
    )


class UsageMonitor:
    """Gatekeeper for workspace spend and writer of the usage ledger."""

    def __init__(
        self,
        usage_repository: UsageRepository,
        workspace_repository: WorkspaceRepository,
        clock: Callable[[], datetime] = _utc_now,
    ):
        self.usage_repository = usage_repository
        self.workspace_repository = workspace_repository
        self.clock = clock

    def current_month_year(self) -> str:
        return month_year_of(self.clock())

    async def _load_workspace(self, workspace_id: str) -> WorkspaceLimitConfig:
        workspace = await run_store_call(
            "fetch workspace", self.workspace_repository.get_workspace, workspace_id
        )
        if workspace is None:
            raise InfrastructureError(f"Failed to fetch workspace {workspace_id}: not found")
        return workspace

    async def check_workspace_quota(self, workspace_id: str) -> QuotaCheckResult:
        """Check whether a workspace is still under its monthly limit.

        Exceeding the quota is an ordinary outcome reported through
        ``allowed``; only store failures raise.

        Args:
            workspace_id: Workspace to check

        Returns:
            QuotaCheckResult with the current month's usage

        Raises:
            InfrastructureError: If the workspace or ledger cannot be read
        """
        workspace = await self._load_workspace(workspace_id)
        total_cost, month_year = await self.get_workspace_usage_for_month(workspace_id)

        usage = WorkspaceUsage(
            workspace_id=workspace_id,
            month_year=month_year,
            total_cost=total_cost,
            limit=workspace.usage_limit_monthly,
            limit_enabled=workspace.usage_limit_enabled,
            name=workspace.name,
        )

        if not workspace.usage_limit_enabled:
            return QuotaCheckResult(allowed=True, usage=usage)

        if usage.is_over_limit:
            message = format_quota_message(usage)
            logger.info("Workspace %s over quota: %s", workspace_id, message)
            return QuotaCheckResult(allowed=False, usage=usage, message=message)

        return QuotaCheckResult(allowed=True, usage=usage)

    async def get_workspace_usage_for_month(
        self,
        workspace_id: str,
        month_year: Optional[str] = None,
    ) -> Tuple[float, str]:
        """Sum a workspace's ledger for one month (current month by default).

        Raises:
            InfrastructureError: If the ledger cannot be read
        """
        target_month = month_year or self.current_month_year()
        total_cost = await run_store_call(
            "sum workspace usage",
            self.usage_repository.sum_cost_for_month,
            workspace_id,
            target_month,
        )
        return total_cost, target_month

    async def record_usage(self, record: UsageRecord) -> None:
        """Append one row to the usage ledger.

        Callers must call this exactly once per completed upstream call; a
        duplicate call double-counts spend.

        Raises:
            InfrastructureError: If the ledger write fails
        """
        await run_store_call("record usage", self.usage_repository.insert_usage_record, record)
        logger.debug(
            "Recorded $%.6f for workspace %s (%s/%s)",
            record.estimated_cost, record.workspace_id, record.provider, record.model,
        )

    async def update_workspace_limit(
        self,
        workspace_id: str,
        limit: float,
        enabled: bool = True,
    ) -> None:
        """Overwrite a workspace's monthly limit configuration.

        Only types are checked; negative limits are accepted as-is.

        Raises:
            TypeError: If ``limit`` is not a number or ``enabled`` not a bool
            InfrastructureError: If the workspace does not exist or the write fails
        """
        if isinstance(limit, bool) or not isinstance(limit, (int, float)):
            raise TypeError("limit must be a number")
        if not isinstance(enabled, bool):
            raise TypeError("enabled must be a bool")

        updated = await run_store_call(
            "update workspace limit",
            self.workspace_repository.update_limit,
            workspace_id,
            float(limit),
            enabled,
        )
        if not updated:
            raise InfrastructureError(f"Failed to update workspace limit: {workspace_id} not found")

    async def get_all_workspaces_usage(self, month_year: Optional[str] = None) -> AllWorkspacesUsage:
        """Usage of every workspace for one month, for the admin report.

        Raises:
            InfrastructureError: If workspaces or the ledger cannot be read
        """
        target_month = month_year or self.current_month_year()
        workspaces = await run_store_call("fetch workspaces", self.workspace_repository.list_workspaces)

        usages = []
        for workspace in workspaces:
            total_cost, _ = await self.get_workspace_usage_for_month(workspace.workspace_id, target_month)
            usages.append(WorkspaceUsage(
                workspace_id=workspace.workspace_id,
                month_year=target_month,
                total_cost=total_cost,
                limit=workspace.usage_limit_monthly,
                limit_enabled=workspace.usage_limit_enabled,
                name=workspace.name,
            ))

        return AllWorkspacesUsage(
            workspaces=usages,
            total_usage=sum(u.total_cost for u in usages),
        )

    async def check_usage_alerts(self, workspace_id: str) -> UsageAlert:
        """Whether a workspace crossed the 80/90/100 percent alert levels."""
        result = await self.check_workspace_quota(workspace_id)
        usage = result.usage

        if not usage.limit_enabled:
            return UsageAlert(should_alert=False, percentage=0.0)

        for threshold, message in ALERT_THRESHOLDS:
            if usage.percentage_used >= threshold:
                return UsageAlert(should_alert=True, percentage=float(threshold), message=message)

        return UsageAlert(should_alert=False, percentage=usage.percentage_used)
