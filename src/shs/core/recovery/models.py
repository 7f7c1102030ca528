"""Data models for the error recovery engine."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, Awaitable, Callable, Literal

ErrorCategory = Literal[
    "network",
    "authentication",
    "encryption",
    "storage",
    "validation",
    "sync",
    "compliance",
    "user_action",
    "system",
]
ErrorSeverity = Literal["low", "medium", "high", "critical"]

ERROR_CATEGORIES: tuple[str, ...] = (
    "network",
    "authentication",
    "encryption",
    "storage",
    "validation",
    "sync",
    "compliance",
    "user_action",
    "system",
)
SEVERITIES: tuple[str, ...] = ("low", "medium", "high", "critical")

# Retry limit recorded on each ErrorRecord, per category.
CATEGORY_MAX_RETRIES: dict[str, int] = {
    "network": 3,
    "authentication": 2,
    "encryption": 1,
    "storage": 2,
    "validation": 1,
    "sync": 3,
    "compliance": 1,
    "user_action": 0,
    "system": 2,
}


class RecoveryError(Exception):
    """Raised for invalid recovery requests (unknown error id or action)."""


class StrategyNotApplicableError(RecoveryError):
    """A strategy cannot act on this error/context; try the next one, no retry."""


@dataclass
class ErrorRecord:
    """One handled failure, kept in the in-memory log."""

    id: str
    message: str
    category: str
    severity: str
    timestamp: str  # ISO 8601
    owner_id: str | None = None
    error_type: str = ""
    context: dict[str, Any] = field(default_factory=dict)  # sanitized
    resolved: bool = False
    retry_count: int = 0
    max_retries: int = 0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ErrorRecord:
        return cls(
            id=data["id"],
            message=data.get("message", ""),
            category=data.get("category", "system"),
            severity=data.get("severity", "medium"),
            timestamp=data.get("timestamp", ""),
            owner_id=data.get("owner_id"),
            error_type=data.get("error_type", ""),
            context=dict(data.get("context") or {}),
            resolved=bool(data.get("resolved", False)),
            retry_count=int(data.get("retry_count", 0)),
            max_retries=int(data.get("max_retries", 0)),
        )


StrategyHandler = Callable[[Exception, dict[str, Any]], Awaitable[Any]]


@dataclass(frozen=True)
class FallbackStrategy:
    """A named, category-scoped recovery handler. Lower priority runs first."""

    name: str
    category: str
    handler: StrategyHandler
    can_retry: bool = False
    max_retries: int = 0
    priority: int = 1


@dataclass
class RecoveryAction:
    """A user-facing remediation offered for critical errors."""

    name: str
    description: str
    action: Callable[[], Awaitable[bool]]
    is_destructive: bool = False
    requires_confirmation: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "is_destructive": self.is_destructive,
            "requires_confirmation": self.requires_confirmation,
        }


@dataclass
class RecoveryResult:
    """Structured outcome of ``ErrorRecoveryEngine.handle``. Never an exception."""

    error_id: str
    category: str
    severity: str
    resolved: bool
    strategy: str | None = None
    value: Any = None
    message: str = ""
    silent: bool = False
    can_retry: bool = False
    critical: bool = False
    recovery_actions: list[RecoveryAction] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "error_id": self.error_id,
            "category": self.category,
            "severity": self.severity,
            "resolved": self.resolved,
            "strategy": self.strategy,
            "value": self.value,
            "message": self.message,
            "silent": self.silent,
            "can_retry": self.can_retry,
            "critical": self.critical,
            "recovery_actions": [a.to_dict() for a in self.recovery_actions],
        }
