"""
Row types for the storage layer.

Each table the proxy touches has one narrow, immutable record type. Raw rows
are validated into these types at the storage boundary; nothing deeper in
the code handles untyped rows.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Mapping, Optional


class WindowType(Enum):
    """Rate-limit window types and their durations in seconds."""
    MINUTE = "minute"
    HOUR = "hour"
    DAY = "day"

    @property
    def duration_seconds(self) -> int:
        return _WINDOW_DURATIONS[self]


_WINDOW_DURATIONS = {
    WindowType.MINUTE: 60,
    WindowType.HOUR: 60 * 60,
    WindowType.DAY: 24 * 60 * 60,
}


def month_year_of(moment: datetime) -> str:
    """Calendar-month bucket ("YYYY-MM") of a timestamp, in UTC."""
    if moment.tzinfo is not None:
        moment = moment.astimezone(timezone.utc)
    return moment.strftime("%Y-%m")


def _require(row: Mapping[str, Any], key: str) -> Any:
    if key not in row.keys() or row[key] is None:
        raise ValueError(f"Row is missing required column '{key}'")
    return row[key]


def _optional(row: Mapping[str, Any], key: str) -> Any:
    return row[key] if key in row.keys() else None


@dataclass(frozen=True)
class UsageRecord:
    """Immutable ledger row for one completed upstream call.

    Append-only: rows are never updated or deleted. Cache hits never
    produce a row.
    """
    workspace_id: str
    user_id: str
    provider: str
    model: str
    endpoint: str
    input_tokens: int
    output_tokens: int
    total_tokens: int
    estimated_cost: float
    response_time_ms: int
    created_at: datetime
    cache_hit: bool = False
    request_id: Optional[str] = None

    @property
    def month_year(self) -> str:
        return month_year_of(self.created_at)

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "UsageRecord":
        """Validate a raw ``llm_usage_logs`` row.

        Raises:
            ValueError: If a required column is missing or has the wrong type
        """
        created_at = datetime.fromisoformat(_require(row, "created_at"))
        return cls(
            workspace_id=str(_require(row, "workspace_id")),
            user_id=str(_require(row, "user_id")),
            provider=str(_require(row, "provider")),
            model=str(_require(row, "model")),
            endpoint=str(_require(row, "endpoint")),
            input_tokens=int(_require(row, "input_tokens")),
            output_tokens=int(_require(row, "output_tokens")),
            total_tokens=int(_require(row, "total_tokens")),
            estimated_cost=float(_require(row, "estimated_cost")),
            response_time_ms=int(_require(row, "response_time_ms")),
            created_at=created_at,
            cache_hit=bool(_optional(row, "cache_hit")),
            request_id=_optional(row, "request_id"),
        )


@dataclass(frozen=True)
class WorkspaceLimitConfig:
    """Limit configuration and optional own API key of a workspace."""
    workspace_id: str
    usage_limit_monthly: float
    usage_limit_enabled: bool
    name: Optional[str] = None
    api_key: Optional[str] = None
    api_provider: Optional[str] = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "WorkspaceLimitConfig":
        """Validate a raw ``workspaces`` row.

        Raises:
            ValueError: If a required column is missing or has the wrong type
        """
        return cls(
            workspace_id=str(_require(row, "id")),
            usage_limit_monthly=float(_require(row, "usage_limit_monthly")),
            usage_limit_enabled=bool(_require(row, "usage_limit_enabled")),
            name=_optional(row, "name"),
            api_key=_optional(row, "api_key") or None,
            api_provider=_optional(row, "api_provider") or None,
        )


@dataclass(frozen=True)
class RateLimitWindow:
    """Counter of one rate-limit window for a workspace."""
    workspace_id: str
    window_type: WindowType
    window_start: float  # epoch seconds
    request_count: int

    def is_active(self, now: float) -> bool:
        """Whether ``now`` falls inside [window_start, window_start + duration)."""
        return self.window_start <= now < self.window_start + self.window_type.duration_seconds

    def effective_count(self, now: float) -> int:
        """Counter as seen by a request at ``now``; expired windows count zero."""
        return self.request_count if self.is_active(now) else 0

    def seconds_until_reset(self, now: float) -> float:
        return self.window_start + self.window_type.duration_seconds - now

    def advanced(self, now: float) -> "RateLimitWindow":
        """The window after counting one more request at ``now``."""
        if self.is_active(now):
            return RateLimitWindow(self.workspace_id, self.window_type, self.window_start, self.request_count + 1)
        return RateLimitWindow(self.workspace_id, self.window_type, now, 1)

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "RateLimitWindow":
        """Validate a raw ``api_rate_limits`` row.

        Raises:
            ValueError: If a required column is missing or has the wrong type
        """
        return cls(
            workspace_id=str(_require(row, "workspace_id")),
            window_type=WindowType(_require(row, "window_type")),
            window_start=float(_require(row, "window_start")),
            request_count=int(_require(row, "request_count")),
        )
