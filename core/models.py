#!/usr/bin/env python3
"""
Unified Data Models for the Review Report Worker

All shared data models are defined here to ensure consistency across the codebase.
"""

from typing import Optional, Dict, Any
from dataclasses import dataclass, field
from enum import Enum
from datetime import datetime


# ============== Enums ==============

class JobStatus(str, Enum):
    """Job status values. Transitions only move forward."""
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)


class AccountStatus(str, Enum):
    """Account status values."""
    ACTIVE = "active"
    DISABLED = "disabled"


class RouteKind(str, Enum):
    """Shape of a job's target reference."""
    SUBMIT_URL = "submit_url"
    REPORT_FORM_URL = "report_form_url"
    CONTENT = "menu_discovery"


class Confidence(str, Enum):
    """How sure we are that a dispatched report was accepted."""
    CONFIRMED = "confirmed"
    UNCONFIRMED = "unconfirmed"


class PageKind(str, Enum):
    """Result of classifying a freshly loaded page."""
    READY = "ready"
    EMPTY = "empty"
    BLOCKED = "blocked"
    CAPTCHA = "captcha"


# Legal next states for each job status.
ALLOWED_TRANSITIONS = {
    JobStatus.PENDING: {JobStatus.IN_PROGRESS, JobStatus.FAILED},
    JobStatus.IN_PROGRESS: {JobStatus.COMPLETED, JobStatus.FAILED},
    JobStatus.COMPLETED: set(),
    JobStatus.FAILED: set(),
}


def _parse_ts(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value))


# ============== Data Models ==============

@dataclass
class Job:
    """One queued review report."""
    id: str
    target_reference: str
    action_parameter: Optional[str] = None
    status: JobStatus = JobStatus.PENDING
    created_at: Optional[datetime] = None
    assigned_account_id: Optional[str] = None
    error_message: Optional[str] = None
    completed_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    label: Optional[str] = None
    method: Optional[str] = None
    confidence: Optional[str] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Job":
        return cls(
            id=str(row["id"]),
            target_reference=row["target_reference"],
            action_parameter=row.get("action_parameter"),
            status=JobStatus(row.get("status") or JobStatus.PENDING.value),
            created_at=_parse_ts(row.get("created_at")),
            assigned_account_id=row.get("assigned_account_id"),
            error_message=row.get("error_message"),
            completed_at=_parse_ts(row.get("completed_at")),
            started_at=_parse_ts(row.get("started_at")),
            label=row.get("label"),
            method=row.get("method"),
            confidence=row.get("confidence"),
        )

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "id": self.id,
            "target_reference": self.target_reference,
            "action_parameter": self.action_parameter,
            "status": self.status.value,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "assigned_account_id": self.assigned_account_id,
            "error_message": self.error_message,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "label": self.label,
            "method": self.method,
            "confidence": self.confidence,
        }


@dataclass
class Account:
    """An authenticated identity leased to one job at a time."""
    id: str
    identity: str
    status: AccountStatus = AccountStatus.ACTIVE
    last_used_at: Optional[datetime] = None
    access_token: Optional[str] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Account":
        return cls(
            id=str(row["id"]),
            identity=row["identity"],
            status=AccountStatus(row.get("status") or AccountStatus.ACTIVE.value),
            last_used_at=_parse_ts(row.get("last_used_at")),
            access_token=row.get("access_token"),
        )


@dataclass
class ProxyEndpoint:
    """Egress proxy with a rotating session counter."""
    id: int
    address: str
    port: int
    protocol: str = "http"
    username: Optional[str] = None
    password: Optional[str] = None
    session_counter: int = 0
    max_sessions: int = 10000
    rotation_enabled: bool = True
    priority: int = 0
    location: Optional[str] = None

    @property
    def identifier(self) -> str:
        """Host:port label for logs and audit records."""
        return f"{self.address}:{self.port}"

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "ProxyEndpoint":
        return cls(
            id=int(row["id"]),
            address=row["address"],
            port=int(row["port"]),
            protocol=row.get("protocol") or "http",
            username=row.get("username"),
            password=row.get("password"),
            session_counter=int(row.get("session_counter") or 0),
            max_sessions=int(row.get("max_sessions") or 10000),
            rotation_enabled=bool(row.get("rotation_enabled", 1)),
            priority=int(row.get("priority") or 0),
            location=row.get("location"),
        )


@dataclass
class ProxyCredentials:
    """Username/password supplied to the page-level auth hook, never to launch args."""
    username: str
    password: str


@dataclass
class ProofArtifact:
    """Screenshot proof of a job outcome."""
    url: str
    path_ref: str
    captured_at: datetime = field(default_factory=datetime.now)


@dataclass
class AuditRecord:
    """Append-only record of a job outcome."""
    job_id: str
    status: str
    account_id: Optional[str] = None
    proxy_identifier: Optional[str] = None
    direct_connection: bool = False
    method: Optional[str] = None
    confidence: Optional[str] = None
    error_message: Optional[str] = None
    screenshot_url: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


@dataclass
class InteractionResult:
    """What the interaction state machine reports for a finished job."""
    method: RouteKind
    confidence: Confidence
    final_url: str = ""
    confirmation_signal: Optional[str] = None
    reason_selected: bool = False
    steps: Dict[str, str] = field(default_factory=dict)


@dataclass
class RunStats:
    """Counters updated exactly once per terminal job."""
    total_processed: int = 0
    successful: int = 0
    failed: int = 0
    last_processed_at: Optional[datetime] = None

    def record(self, success: bool):
        self.total_processed += 1
        if success:
            self.successful += 1
        else:
            self.failed += 1
        self.last_processed_at = datetime.now()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "totalProcessed": self.total_processed,
            "successful": self.successful,
            "failed": self.failed,
            "lastProcessedAt": self.last_processed_at.isoformat() if self.last_processed_at else None,
        }
