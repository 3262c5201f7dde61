"""
Data models for the sync and remediation pipeline.

Uses Pydantic for validation and serialization.
"""
from datetime import date, datetime
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, Field


class ApprovalStatus(str, Enum):
    """System-owner approval status on a review decision."""

    PENDING = "P"
    APPROVED = "A"
    REVOKED = "R"


class RunStatus(str, Enum):
    """Terminal state of a run as recorded in the run ledger."""

    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class SourceGrant(BaseModel):
    """User-role assignment extracted from a source system."""

    system: str
    subject_id: Optional[str] = None  # employee registration number; None for accounts without one
    username: Optional[str] = None
    role_id: str
    role_name: Optional[str] = None
    company_code: Optional[str] = None
    created_at: Optional[datetime] = None
    changed_at: Optional[datetime] = None


class RoleFunction(BaseModel):
    """Role to screen/function mapping extracted from a source system."""

    system: str
    role_id: str
    role_name: Optional[str] = None
    screen_id: str
    screen_name: Optional[str] = None
    created_at: Optional[datetime] = None
    changed_at: Optional[datetime] = None


class ReviewDecision(BaseModel):
    """Access review outcome for one subject/role/system."""

    uar_id: str
    subject_id: str
    username: Optional[str] = None
    role_id: str
    system: str
    division_id: Optional[str] = None
    approval_status: Optional[ApprovalStatus] = None
    remediated: Optional[bool] = None
    remediated_at: Optional[datetime] = None

    @property
    def grant_key(self) -> tuple:
        return (self.subject_id, self.role_id, self.system)


class TerminationRecord(BaseModel):
    """Employee termination fed by HR."""

    subject_id: str
    valid_to: date
    remediated: bool = False
    remediated_at: Optional[datetime] = None


class StepResult(BaseModel):
    """Row counts affected by one pipeline step."""

    step: str
    source: str
    rows: Dict[str, int] = Field(default_factory=dict)
    duration_seconds: float = 0.0

    @property
    def total(self) -> int:
        return sum(self.rows.values())


class SyncSummary(BaseModel):
    """Summary of one source sync run."""

    run_id: str
    source: str
    as_of: datetime
    steps: List[StepResult] = Field(default_factory=list)
    duration_seconds: float = 0.0

    def counts(self) -> Dict[str, int]:
        """Flatten step counts into ``step.entity`` keys."""
        flat: Dict[str, int] = {}
        for step in self.steps:
            for entity, count in step.rows.items():
                flat[f"{step.step}.{entity}"] = count
        return flat


class RemediationSummary(BaseModel):
    """Summary of a remediation run."""

    run_id: str
    as_of: datetime
    decisions_pending: int = 0
    decisions_marked: int = 0
    terminations_pending: int = 0
    terminations_marked: int = 0
    canonical_deleted: int = 0
    source_deleted: int = 0
    duration_seconds: float = 0.0

    @property
    def total_deleted(self) -> int:
        return self.canonical_deleted + self.source_deleted
