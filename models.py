# models.py
"""
Value types for the tagged-resource reclaimer.

Everything here lives for a single run; nothing is persisted.
"""
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional


class ResourceKind(str, Enum):
    INSTANCE = "instance"
    SECURITY_GROUP = "security-group"
    BUCKET = "bucket"
    KEY_PAIR = "key-pair"


@dataclass(frozen=True)
class ResourceRef:
    kind: ResourceKind
    identifier: str
    region: str

    def __str__(self):
        return f"{self.kind.value} {self.identifier} ({self.region})"


@dataclass(frozen=True)
class TagFilter:
    key: str
    value: str

    def as_ec2_filter(self) -> Dict:
        return {"Name": f"tag:{self.key}", "Values": [self.value]}

    def matches(self, tags: Dict[str, str]) -> bool:
        return tags.get(self.key) == self.value

    def __str__(self):
        return f"{self.key}={self.value}"


class OutcomeStatus(str, Enum):
    DELETED = "deleted"
    SKIPPED = "skipped (dry run)"
    FAILED = "failed"


@dataclass(frozen=True)
class DeletionOutcome:
    resource: ResourceRef
    status: OutcomeStatus
    detail: Optional[str] = None


@dataclass
class RunSummary:
    """Accumulates outcomes, warnings and manual actions for one run."""
    tag_filter: TagFilter
    region: str
    dry_run: bool = False
    outcomes: List[DeletionOutcome] = field(default_factory=list)
    manual_actions: List[str] = field(default_factory=list)
    warned: int = 0

    def processed(self, ref: ResourceRef) -> bool:
        return any(o.resource == ref for o in self.outcomes)

    def record(self, ref: ResourceRef, status: OutcomeStatus, detail: Optional[str] = None) -> DeletionOutcome:
        if self.processed(ref):
            raise ValueError(f"{ref} was already processed in this run")
        outcome = DeletionOutcome(ref, status, detail)
        self.outcomes.append(outcome)
        return outcome

    def warn(self):
        self.warned += 1

    def require_action(self, action: str):
        self.warn()
        self.manual_actions.append(action)

    def fail(self, ref: ResourceRef, detail: str, manual_action: str) -> DeletionOutcome:
        """Record a failed resource: warning + manual follow-up."""
        outcome = self.record(ref, OutcomeStatus.FAILED, detail)
        self.require_action(manual_action)
        return outcome

    def _count(self, status, kind=None):
        return sum(1 for o in self.outcomes
                   if o.status == status and (kind is None or o.resource.kind == kind))

    @property
    def deleted(self) -> int:
        return self._count(OutcomeStatus.DELETED)

    @property
    def skipped(self) -> int:
        return self._count(OutcomeStatus.SKIPPED)

    @property
    def failed(self) -> int:
        return self._count(OutcomeStatus.FAILED)

    def counts_for(self, kind: ResourceKind) -> Dict[str, int]:
        return {status.name.lower(): self._count(status, kind) for status in OutcomeStatus}

    def identifiers(self, status: OutcomeStatus, kind: Optional[ResourceKind] = None) -> List[str]:
        return [o.resource.identifier for o in self.outcomes
                if o.status == status and (kind is None or o.resource.kind == kind)]
