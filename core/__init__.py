"""
Core components for unattended review reporting.

Modules:
- models: Jobs, accounts, proxy endpoints, audit records
- error_handler: Error taxonomy with step attribution
- retry: with_retry / poll_until primitives
- resource_directory: Account and proxy leasing
- browser: Single-browser session host
- strategies: Page snapshots, selector strategies and scoring
- interaction: Report interaction state machine
- session_auth: Cookie restore/save per account
- outcome_recorder: Job status, audit log and proof capture
"""

from .models import (
    Job,
    JobStatus,
    Account,
    AccountStatus,
    ProxyEndpoint,
    ProxyCredentials,
    ProofArtifact,
    AuditRecord,
    InteractionResult,
    RunStats,
    RouteKind,
    Confidence,
    PageKind,
)
from .error_handler import (
    ReviewReportError,
    ErrorStep,
    NoResourceAvailable,
    ResourceExhausted,
    DegradedConnection,
    NavigationFailure,
    AntiBotChallenge,
    ControlNotFound,
    ActionUnconfirmed,
    AuthenticationFailure,
    JobCancelled,
)
from .retry import Backoff, with_retry, poll_until
from .resource_directory import ResourceDirectory
from .browser import SessionHost, PageLease
from .interaction import ReportInteraction, InteractionConfig
from .session_auth import BrowserSessionAuthenticator
from .outcome_recorder import OutcomeRecorder

__all__ = [
    "Job",
    "JobStatus",
    "Account",
    "AccountStatus",
    "ProxyEndpoint",
    "ProxyCredentials",
    "ProofArtifact",
    "AuditRecord",
    "InteractionResult",
    "RunStats",
    "RouteKind",
    "Confidence",
    "PageKind",
    "ReviewReportError",
    "ErrorStep",
    "NoResourceAvailable",
    "ResourceExhausted",
    "DegradedConnection",
    "NavigationFailure",
    "AntiBotChallenge",
    "ControlNotFound",
    "ActionUnconfirmed",
    "AuthenticationFailure",
    "JobCancelled",
    "Backoff",
    "with_retry",
    "poll_until",
    "ResourceDirectory",
    "SessionHost",
    "PageLease",
    "ReportInteraction",
    "InteractionConfig",
    "BrowserSessionAuthenticator",
    "OutcomeRecorder",
]
