"""
Error taxonomy for the review report pipeline.

Every failure raised inside job processing derives from ``ReviewReportError``
so the scheduler can convert it to a terminal ``failed`` status with a
readable message. ``step`` names the pipeline step that failed and
``retryable`` tells ``with_retry`` whether another attempt makes sense.
"""

from enum import Enum
from typing import Optional


class ErrorStep(Enum):
    """Pipeline steps an error can be attributed to."""
    LEASE = "lease"
    SESSION = "session"
    AUTHENTICATION = "authentication"
    NAVIGATION = "navigation"
    CLASSIFICATION = "classification"
    DISCOVERY = "discovery"
    ACTION = "action"
    CONFIRMATION = "confirmation"
    PROOF = "proof"
    LIFECYCLE = "lifecycle"


class ReviewReportError(Exception):
    """Base exception with step attribution."""

    default_step = ErrorStep.LIFECYCLE
    retryable = False

    def __init__(self, message: str, step: Optional[ErrorStep] = None,
                 retryable: Optional[bool] = None):
        self.message = message
        self.step = step or self.default_step
        if retryable is not None:
            self.retryable = retryable
        super().__init__(message)

    def to_dict(self):
        return {
            "type": type(self).__name__,
            "step": self.step.value,
            "message": self.message,
            "retryable": self.retryable,
        }


class NoResourceAvailable(ReviewReportError):
    """No leasable account or proxy endpoint exists."""
    default_step = ErrorStep.LEASE

    def __init__(self, resource: str, message: Optional[str] = None):
        self.resource = resource
        super().__init__(message or f"No active {resource} available")


class ResourceExhausted(ReviewReportError):
    """Browser or page could not be created after bounded retries."""
    default_step = ErrorStep.SESSION


class DegradedConnection(ReviewReportError):
    """Proxy launch failed and the session fell back to a direct connection.

    Logged as a warning value; it is never raised across the job boundary.
    """
    default_step = ErrorStep.SESSION

    def __init__(self, proxy_identifier: str, cause: Optional[BaseException] = None):
        self.proxy_identifier = proxy_identifier
        self.cause = cause
        detail = f": {cause}" if cause else ""
        super().__init__(f"Proxy {proxy_identifier} unusable, using direct connection{detail}")


class NavigationFailure(ReviewReportError):
    """Every navigation wait strategy failed."""
    default_step = ErrorStep.NAVIGATION
    retryable = True


class AntiBotChallenge(NavigationFailure):
    """The page loaded but shows a block or CAPTCHA interstitial."""
    default_step = ErrorStep.CLASSIFICATION
    retryable = False

    def __init__(self, kind: str, url: str = ""):
        self.kind = kind
        self.url = url
        where = f" at {url}" if url else ""
        super().__init__(f"Anti-bot challenge detected ({kind}){where}")


class ControlNotFound(ReviewReportError):
    """A required UI control could not be located."""
    default_step = ErrorStep.DISCOVERY

    def __init__(self, control: str, message: Optional[str] = None):
        self.control = control
        super().__init__(message or f"Could not find {control}")


class ActionUnconfirmed(ReviewReportError):
    """Action was dispatched but no confirmation signal appeared."""
    default_step = ErrorStep.CONFIRMATION


class AuthenticationFailure(ReviewReportError):
    """Credential verification rejected the leased account."""
    default_step = ErrorStep.AUTHENTICATION


class JobCancelled(ReviewReportError):
    """Stop was requested while the job was between steps."""
    default_step = ErrorStep.LIFECYCLE

    def __init__(self, message: str = "Job cancelled: worker stopping"):
        super().__init__(message)


def describe_error(error: BaseException) -> str:
    """Message stored on a failed job."""
    if isinstance(error, ReviewReportError):
        return f"[{error.step.value}] {error.message}"
    return f"{type(error).__name__}: {error}" if str(error) else type(error).__name__
