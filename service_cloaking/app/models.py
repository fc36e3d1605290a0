"""
Value types shared by the upstream client, the reference cache and the routes.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional


@dataclass(frozen=True)
class UpstreamResponse:
    """Decoded reply from the cloaking API."""

    status: str
    data: Any
    message: str = ""
    code: Optional[int] = None
    total: Optional[int] = None
    raw: Dict[str, Any] = field(default_factory=dict, repr=False)

    @property
    def ok(self) -> bool:
        return self.status == "success"

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "UpstreamResponse":
        code = payload.get("code")
        total = payload.get("total")
        return cls(
            status=str(payload.get("status", "error")),
            data=payload.get("data"),
            message=str(payload.get("msg") or payload.get("message") or ""),
            code=_as_int(code),
            total=_as_int(total),
            raw=payload,
        )


def _as_int(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


@dataclass(frozen=True)
class CacheEntry:
    """One cached value. Replaced wholesale, never mutated."""

    key: str
    value: Any
    stored_at: float
    ttl_seconds: int

    def age(self, now: float) -> float:
        return max(0.0, now - self.stored_at)

    def is_fresh(self, now: float) -> bool:
        return now - self.stored_at <= self.ttl_seconds


@dataclass
class RefreshJob:
    """Background refresh definition for one reference-data key."""

    cache_key: str
    endpoint: str
    interval_seconds: float
    ttl_seconds: int
    last_run_at: Optional[float] = None
    last_result: Optional[str] = None
    last_error: Optional[str] = None


class CacheState(Enum):
    """Lifecycle of the reference cache."""

    UNINITIALIZED = "uninitialized"
    WARMING = "warming"
    READY = "ready"
    STOPPED = "stopped"
