"""
Structured results for scheduling operations.

Expected failures (capacity, conflicts, missing mappings, upstream sync
failures) are reported through these objects so callers aggregating many
sub-operations never lose which one failed.
"""
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional


@dataclass
class RebuildResult:
    schedule_id: int
    success: bool
    subscriber_count: int = 0
    enabled: bool = False
    error: Optional[str] = None


@dataclass
class OperationResult:
    """Outcome of one orchestrator call, with per-job-kind detail."""
    success: bool
    message: str
    reason: Optional[str] = None
    changed: bool = False
    outcomes: Dict[str, str] = field(default_factory=dict)  # job kind -> outcome
    schedule_ids: List[int] = field(default_factory=list)
    sync_failures: List[RebuildResult] = field(default_factory=list)

    @property
    def fully_synced(self) -> bool:
        return not self.sync_failures

    @classmethod
    def ok(cls, message: str, **kwargs) -> "OperationResult":
        return cls(success=True, message=message, **kwargs)

    @classmethod
    def failed(cls, message: str, reason: str, **kwargs) -> "OperationResult":
        return cls(success=False, message=message, reason=reason, **kwargs)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["fully_synced"] = self.fully_synced
        return data


@dataclass
class LifecycleError:
    target_type: Optional[str]
    message: str
    target: Optional[str] = None
    reason: Optional[str] = None


@dataclass
class LifecycleReport:
    """
    Partial-success report for a tenant lifecycle event.

    Every platform and target is processed independently; failures are
    collected here rather than raised.
    """
    event: str
    tenant_id: str
    success: bool = True
    message: str = ""
    deferred: bool = False  # no active subscription yet; activates later
    initial_jobs_started: int = 0
    profiles_created: int = 0
    targets_added: int = 0
    targets_moved: int = 0
    targets_removed: int = 0
    operations_succeeded: int = 0
    operations_failed: int = 0
    errors: List[LifecycleError] = field(default_factory=list)

    def record_success(self):
        self.operations_succeeded += 1

    def record_failure(self, target_type, message, target=None, reason=None):
        self.operations_failed += 1
        self.errors.append(LifecycleError(
            target_type=getattr(target_type, "value", target_type),
            message=message,
            target=target,
            reason=reason,
        ))

    @property
    def partial(self) -> bool:
        return self.operations_failed > 0 and self.operations_succeeded > 0

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["partial"] = self.partial
        return data
