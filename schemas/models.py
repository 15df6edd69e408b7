from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Iterable


class CheckStatus(str, Enum):
    OK = "ok"
    FAIL = "fail"
    TIMEOUT = "timeout"
    PENDING = "pending"

    @property
    def is_terminal(self) -> bool:
        return self is not CheckStatus.PENDING


class ProbeKind(str, Enum):
    """Probe kinds, in the order the chain tries them."""
    ICON_PRIMARY = "favicon"
    ICON_SECONDARY = "touch_icon"
    ICON_TERTIARY = "favicon_png"
    HEAD = "head"
    GET = "get"


PROBE_ORDER: tuple[ProbeKind, ...] = tuple(ProbeKind)


class Category(str, Enum):
    COMPANY_BLOCKED = "company_blocked"
    BLOCKED_BY_RUSSIA = "blocked_by_russia"
    RUSSIAN_SPECIFIC = "russian_specific"
    ALLOWED = "allowed"


class HealthStatus(str, Enum):
    OK = "ok"
    PARTIAL = "partial"
    NO_INTERNET = "no-internet"
    LISTS_UNAVAILABLE = "lists-unavailable"


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds")


@dataclass(frozen=True)
class ProbeOutcome:
    kind: ProbeKind
    status: CheckStatus
    latency_ms: int | None

    def to_dict(self) -> dict[str, Any]:
        return {"probe": self.kind.value, "status": self.status.value, "latencyMs": self.latency_ms}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ProbeOutcome":
        return cls(
            kind=ProbeKind(data["probe"]),
            status=CheckStatus(data["status"]),
            latency_ms=data.get("latencyMs"),
        )


@dataclass(frozen=True)
class DomainCheckResult:
    domain: str
    status: CheckStatus
    category: Category | None = None
    probe_used: ProbeKind | None = None
    latency_ms: int | None = None
    checked_at: str = ""
    details: tuple[ProbeOutcome, ...] = ()

    def __post_init__(self):
        if (self.probe_used is not None) != (self.status is CheckStatus.OK):
            raise ValueError(
                f"probe_used must be set exactly when status is ok "
                f"(domain={self.domain}, status={self.status.value}, probe_used={self.probe_used})"
            )

    @classmethod
    def pending(cls, domain: str, category: Category | None = None) -> "DomainCheckResult":
        return cls(domain=domain, status=CheckStatus.PENDING, category=category)

    def to_dict(self) -> dict[str, Any]:
        return {
            "domain": self.domain,
            "category": self.category.value if self.category else None,
            "status": self.status.value,
            "probeUsed": self.probe_used.value if self.probe_used else None,
            "latencyMs": self.latency_ms,
            "checkedAt": self.checked_at,
            "details": [d.to_dict() for d in self.details],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "DomainCheckResult":
        return cls(
            domain=data["domain"],
            status=CheckStatus(data["status"]),
            category=Category(data["category"]) if data.get("category") else None,
            probe_used=ProbeKind(data["probeUsed"]) if data.get("probeUsed") else None,
            latency_ms=data.get("latencyMs"),
            checked_at=data.get("checkedAt") or "",
            details=tuple(ProbeOutcome.from_dict(d) for d in data.get("details") or ()),
        )


@dataclass(frozen=True)
class RunStats:
    total: int
    ok: int
    fail: int
    timeout: int
    pending: int
    duration_ms: int | None = None
    started_at: str | None = None

    @classmethod
    def from_results(
            cls, results: Iterable[DomainCheckResult | dict],
            duration_ms: int | None = None, started_at: str | None = None
    ) -> "RunStats":
        counts = {s: 0 for s in CheckStatus}
        total = 0
        for r in results:
            status = CheckStatus(r["status"]) if isinstance(r, dict) else r.status
            counts[status] += 1
            total += 1
        return cls(
            total=total,
            ok=counts[CheckStatus.OK],
            fail=counts[CheckStatus.FAIL],
            timeout=counts[CheckStatus.TIMEOUT],
            pending=counts[CheckStatus.PENDING],
            duration_ms=duration_ms,
            started_at=started_at,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "total": self.total,
            "ok": self.ok,
            "fail": self.fail,
            "timeout": self.timeout,
            "pending": self.pending,
            "durationMs": self.duration_ms,
            "startedAt": self.started_at,
        }


@dataclass(frozen=True)
class DiagnosticsState:
    control_primary: CheckStatus | None
    control_list_host: CheckStatus | None
    lists_loaded: bool
    used_fallback_list: bool
    health_status: HealthStatus
    health_message: str
    ok_ratio: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "controlPrimary": self.control_primary.value if self.control_primary else None,
            "controlListHost": self.control_list_host.value if self.control_list_host else None,
            "listsLoaded": self.lists_loaded,
            "usedFallbackList": self.used_fallback_list,
            "healthStatus": self.health_status.value,
            "healthMessage": self.health_message,
            "okRatio": self.ok_ratio,
        }


@dataclass
class CategoryStats:
    category: Category
    ok: int = 0
    fail: int = 0
    timeout: int = 0
    total: int = 0
    done: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "category": self.category.value,
            "ok": self.ok,
            "fail": self.fail,
            "timeout": self.timeout,
            "total": self.total,
            "done": self.done,
        }


@dataclass(frozen=True)
class ResultEvent:
    """One completed domain, as emitted by the scheduler."""
    result: DomainCheckResult
    done: int
    total: int


@dataclass
class RunSettings:
    concurrency: int = 15
    timeout_ms: int = 6000
    ok_threshold_percent: int = 85
    domain_limit: int = 120
    categories: list[Category] = field(default_factory=lambda: list(Category))
    preset: str | None = None
    source_url: str | None = None

    @property
    def ok_threshold_ratio(self) -> float:
        return self.ok_threshold_percent / 100

    def to_dict(self) -> dict[str, Any]:
        return {
            "concurrency": self.concurrency,
            "timeout_ms": self.timeout_ms,
            "ok_threshold_percent": self.ok_threshold_percent,
            "domain_limit": self.domain_limit,
            "categories": [c.value for c in self.categories],
            "preset": self.preset,
            "source_url": self.source_url,
        }
