"""Error taxonomy for portal submissions.

Every error carries a stable ``code`` that ends up verbatim in the submission
record, and a ``recoverable`` flag telling the workflow driver whether the
recovery advisor may be consulted.
"""

from typing import Any, Dict, List, Optional


class SubmissionError(Exception):
    """Base class for all submission engine errors."""

    code = "submission_error"
    recoverable = False

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for the audit trail."""
        return {
            "code": self.code,
            "message": self.message,
            "recoverable": self.recoverable,
            "details": self.details,
        }


class ConfigurationError(SubmissionError):
    """Target configuration is invalid, inactive or incomplete."""

    code = "configuration_error"


class MissingRequiredValue(SubmissionError):
    """A required field could not be resolved from static, local or default values."""

    code = "missing_required_value"

    def __init__(self, field_label: str, local_field: Optional[str] = None, page: Optional[str] = None,
                 line_number: Optional[int] = None):
        where = f" (line {line_number})" if line_number else ""
        source = local_field or "no source"
        super().__init__(
            f"Required field '{field_label}'{where} has no value (source: {source})",
            field=field_label,
            local_field=local_field,
            page=page,
            line_number=line_number,
        )
        self.field_label = field_label
        self.local_field = local_field
        self.page = page
        self.line_number = line_number


class MissingRequiredValues(SubmissionError):
    """Pre-flight rejection listing every required field that could not be resolved."""

    code = "missing_required_value"

    def __init__(self, missing: List[MissingRequiredValue]):
        labels = ", ".join(error.field_label for error in missing)
        super().__init__(
            f"{len(missing)} required field(s) have no value: {labels}",
            missing=[error.to_dict() for error in missing],
        )
        self.missing = missing


class UnmappedDropdownValue(SubmissionError):
    """No alias or default option matched a resolved select value."""

    code = "unmapped_dropdown_value"

    def __init__(self, field_label: str, value: str):
        super().__init__(
            f"No dropdown option of '{field_label}' matches '{value}'",
            field=field_label,
            value=value,
        )
        self.field_label = field_label
        self.value = value


class SelectorNotFound(SubmissionError):
    """Every selector candidate for a field or button failed to match the live page."""

    code = "selector_not_found"
    recoverable = True

    def __init__(self, target: str, candidates: List[str]):
        super().__init__(
            f"No selector candidate matched '{target}': {', '.join(candidates) or '(none)'}",
            target=target,
            candidates=list(candidates),
        )
        self.target = target
        self.candidates = list(candidates)


class UnexpectedDialog(SubmissionError):
    """A modal or overlay blocked the configured action."""

    code = "unexpected_dialog"
    recoverable = True

    def __init__(self, text: str, action_error: Optional[str] = None):
        super().__init__(f"Unexpected dialog on page: {text[:200]}", dialog_text=text, action_error=action_error)
        self.text = text


class AmbiguousOutcome(SubmissionError):
    """The page matched neither the success nor the error indicator."""

    code = "ambiguous_outcome"
    recoverable = True

    def __init__(self, page: str, action: str):
        super().__init__(
            f"Result of '{action}' on page '{page}' matched neither success nor error indicator",
            page=page,
            action=action,
        )
        self.page = page


class PortalRejection(SubmissionError):
    """The portal answered with its error indicator after a save."""

    code = "portal_rejection"

    def __init__(self, page: str, portal_message: Optional[str]):
        super().__init__(
            f"Portal rejected submission on page '{page}': {portal_message or 'error indicator matched'}",
            page=page,
            portal_message=portal_message,
        )
        self.portal_message = portal_message


class LoginFailed(PortalRejection):
    """The login page answered with its error indicator."""

    code = "login_failed"


class AdvisorTimeout(SubmissionError):
    """The decision service did not answer in time."""

    code = "advisor_timeout"


class AdvisorInvalidAction(SubmissionError):
    """The decision service returned something outside the closed recovery action set."""

    code = "advisor_invalid_action"


class SessionError(SubmissionError):
    """Browser or network level failure; never offered to the advisor."""

    code = "session_error"


class SubmissionCancelled(SubmissionError):
    """The submission was cancelled at a state boundary."""

    code = "cancelled"

    def __init__(self, reason: str = "Cancelled by request"):
        super().__init__(reason)


class RecordFinalizedError(SubmissionError):
    """A finalized submission record cannot be mutated."""

    code = "record_finalized"


class InvalidFieldValue(SubmissionError):
    """A declaration value could not be transformed into the portal's format."""

    code = "invalid_field_value"


class UnknownTarget(ConfigurationError):
    """No target is registered under the requested code."""

    code = "unknown_target"


class UnknownSubmission(SubmissionError):
    """No submission record exists with the requested id."""

    code = "unknown_submission"


class RetryNotAllowed(SubmissionError):
    """The submission is not failed, or its retry limit is reached."""

    code = "retry_not_allowed"
