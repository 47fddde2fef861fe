"""Core data models: target configuration, declaration bundles and submission records."""

import re
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Union
from uuid import UUID, uuid4

from pydantic import BaseModel, Field, SecretStr, model_validator

LINE_PLACEHOLDER = "{N}"
_PLACEHOLDER_RE = re.compile(r"\{(\w+)\}")

Scalar = Union[bool, int, float, str]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def fill_placeholders(template: str, values: Mapping[str, Any]) -> str:
    """Substitute ``{name}`` placeholders present in ``values``; unknown ones are left untouched."""

    def _replace(match: "re.Match[str]") -> str:
        key = match.group(1)
        if key in values and values[key] is not None:
            return str(values[key])
        return match.group(0)

    return _PLACEHOLDER_RE.sub(_replace, template)


class AuthMode(str, Enum):
    """How the engine authenticates against a portal."""
    FORM = "form"
    API_KEY = "api_key"
    NONE = "none"
    DELEGATED = "delegated"


class PageType(str, Enum):
    """Logical screen types within a portal workflow."""
    LOGIN = "login"
    SEARCH = "search"
    LIST = "list"
    FORM = "form"
    CONFIRMATION = "confirmation"
    OTHER = "other"


class FieldKind(str, Enum):
    """Declared input kind of a mapped field."""
    TEXT = "text"
    SELECT = "select"
    CHECKBOX = "checkbox"
    DATE = "date"
    NUMBER = "number"
    TEXTAREA = "textarea"
    HIDDEN = "hidden"


class WorkflowAction(str, Enum):
    """Closed vocabulary of workflow step actions."""
    LOGIN = "login"
    NAVIGATE = "navigate"
    NEW = "new"
    FILL = "fill"
    SAVE = "save"


class TransformType(str, Enum):
    """Closed vocabulary of value transforms."""
    REMOVE_DOTS = "remove_dots"
    DIGITS_ONLY = "digits_only"
    STRIP = "strip"
    UPPERCASE = "uppercase"
    LOWERCASE = "lowercase"
    DATE_FORMAT = "date_format"
    NUMBER_FORMAT = "number_format"
    PREFIX = "prefix"
    SUFFIX = "suffix"
    MAP = "map"
    TRUNCATE = "truncate"


# Descriptor argument of "type:argument" strings, per transform type
_DESCRIPTOR_ARGUMENT = {
    TransformType.DATE_FORMAT.value: "format",
    TransformType.NUMBER_FORMAT.value: "decimals",
    TransformType.PREFIX.value: "prefix",
    TransformType.SUFFIX.value: "suffix",
    TransformType.TRUNCATE.value: "length",
}


class ValueTransform(BaseModel):
    """A value transform descriptor, e.g. ``remove_dots`` or ``date_format:%d/%m/%Y``."""
    type: TransformType = Field(..., description="Transform type")
    format: Optional[str] = Field(None, description="Target date pattern (strftime or d/m/Y tokens)")
    decimals: int = Field(2, description="Decimals for number_format")
    decimal_separator: str = Field(".", description="Decimal separator for number_format")
    thousands_separator: str = Field("", description="Thousands separator for number_format")
    prefix: str = Field("", description="Prefix to prepend")
    suffix: str = Field("", description="Suffix to append")
    mappings: Dict[str, str] = Field(default_factory=dict, description="Lookup table for map")
    length: Optional[int] = Field(None, ge=1, description="Length for truncate")

    @model_validator(mode="before")
    @classmethod
    def parse_descriptor(cls, data: Any) -> Any:
        if isinstance(data, str):
            name, _, argument = data.partition(":")
            name = name.strip()
            parsed: Dict[str, Any] = {"type": name}
            if argument and name in _DESCRIPTOR_ARGUMENT:
                parsed[_DESCRIPTOR_ARGUMENT[name]] = argument
            return parsed
        return data


class DropdownValue(BaseModel):
    """One allowed external option of a select field, with its known local aliases."""
    option_value: str = Field(..., description="External option value submitted to the portal")
    option_label: Optional[str] = Field(None, description="External option label")
    local_equivalent: Optional[str] = Field(None, description="Internal equivalent value")
    local_matches: List[str] = Field(default_factory=list, description="Aliases, abbreviations and symbols")
    sort_order: int = Field(0, description="Precedence of this option during matching")
    is_default: bool = Field(False, description="Fallback option when nothing matches")


class FieldMapping(BaseModel):
    """Correspondence between one local data attribute and one portal form field."""
    label: str = Field(..., description="Field label, unique within its page")
    local_field: Optional[str] = Field(None, description="Dotted path into the declaration bundle")
    selectors: List[str] = Field(default_factory=list, description="Ordered selector candidates")
    field_name: Optional[str] = Field(None, description="Form field name attribute")
    field_id: Optional[str] = Field(None, description="Form field id attribute")
    kind: FieldKind = Field(FieldKind.TEXT, description="Declared field kind")
    static_value: Optional[Scalar] = Field(None, description="Constant that always wins")
    default_value: Optional[Scalar] = Field(None, description="Fallback when the local lookup is empty")
    transform: Optional[ValueTransform] = Field(None, description="Value transform descriptor")
    is_required: bool = Field(False, description="Whether the portal requires a value")
    max_length: Optional[int] = Field(None, ge=1, description="Values longer than this are truncated")
    tab_order: int = Field(0, description="Fill order within the page")
    section: Optional[str] = Field(None, description="Section label for grouping")
    is_active: bool = Field(True, description="Inactive mappings are ignored")
    is_repeatable: bool = Field(False, description="Filled once per line item via the {N} placeholder")
    dropdown_values: List[DropdownValue] = Field(default_factory=list, description="Options of a select field")
    notes: Optional[str] = Field(None, description="Free-form author notes")

    @model_validator(mode="after")
    def check_integrity(self) -> "FieldMapping":
        candidates = self.selector_candidates()
        if not candidates:
            raise ValueError(f"Field '{self.label}' needs at least one selector candidate")
        if self.is_repeatable and not any(LINE_PLACEHOLDER in candidate for candidate in candidates):
            raise ValueError(f"Repeatable field '{self.label}' has no {LINE_PLACEHOLDER} placeholder")

        defaults = [option for option in self.dropdown_values if option.is_default]
        if len(defaults) > 1:
            raise ValueError(f"Field '{self.label}' has more than one default dropdown value")
        values = [option.option_value for option in self.dropdown_values]
        if len(values) != len(set(values)):
            raise ValueError(f"Field '{self.label}' has duplicate dropdown option values")
        return self

    def selector_candidates(self, line_number: Optional[int] = None) -> List[str]:
        """Selector candidates in trial order, with name/id fallbacks and the line index substituted."""
        candidates = list(self.selectors)
        if self.field_name:
            candidates.append(f'[name="{self.field_name}"]')
        if self.field_id:
            candidates.append(f"#{self.field_id}")
        if line_number is not None:
            candidates = [candidate.replace(LINE_PLACEHOLDER, str(line_number)) for candidate in candidates]
        return list(dict.fromkeys(candidates))

    def ordered_options(self) -> List[DropdownValue]:
        return sorted(self.dropdown_values, key=lambda option: option.sort_order)

    @property
    def source_description(self) -> str:
        if self.static_value is not None:
            return f"Static: {self.static_value}"
        if self.local_field:
            return self.local_field
        if self.default_value is not None:
            return f"Default: {self.default_value}"
        return "Manual Entry"


class Page(BaseModel):
    """One logical screen within a target's workflow."""
    name: str = Field(..., description="Page key referenced by workflow steps")
    url_pattern: Optional[str] = Field(None, description="URL path, may contain {record_id} style placeholders")
    page_type: PageType = Field(PageType.FORM, description="Page type")
    sequence_order: int = Field(0, description="Display/sequence order within the target")
    submit_selectors: List[str] = Field(default_factory=list, description="Submit action selector candidates")
    success_indicator: Optional[str] = Field(None, description="Success indicator pattern")
    error_indicator: Optional[str] = Field(None, description="Error indicator pattern")
    reference_pattern: Optional[str] = Field(None, description="Regex extracting a reference from page text")
    add_line_selectors: List[str] = Field(default_factory=list, description="Button adding a line-item section")
    field_mappings: List[FieldMapping] = Field(default_factory=list, description="Field mappings of this page")
    is_active: bool = Field(True, description="Inactive pages are ignored")

    @model_validator(mode="after")
    def check_integrity(self) -> "Page":
        labels = [mapping.label for mapping in self.field_mappings]
        if len(labels) != len(set(labels)):
            raise ValueError(f"Page '{self.name}' has duplicate field labels")
        if self.reference_pattern:
            try:
                re.compile(self.reference_pattern)
            except re.error as e:
                raise ValueError(f"Page '{self.name}' has an invalid reference_pattern: {e}") from e
        return self

    def full_url(self, base_url: str, runtime: Optional[Mapping[str, Any]] = None) -> str:
        path = fill_placeholders(self.url_pattern or "", runtime or {})
        if path.startswith(("http://", "https://")):
            return path
        return base_url.rstrip("/") + "/" + path.lstrip("/")

    def active_mappings(self) -> List[FieldMapping]:
        return sorted((m for m in self.field_mappings if m.is_active), key=lambda m: m.tab_order)

    def mappings_by_section(self) -> Dict[str, List[FieldMapping]]:
        grouped: Dict[str, List[FieldMapping]] = {}
        for mapping in self.active_mappings():
            grouped.setdefault(mapping.section or "General", []).append(mapping)
        return grouped

    def has_unmapped_required_fields(self) -> bool:
        return any(
            m.is_required and m.local_field is None and m.static_value is None and m.default_value is None
            for m in self.field_mappings
        )


class WorkflowStep(BaseModel):
    """One ``{action, page}`` pair of a target's workflow."""
    action: WorkflowAction = Field(..., description="Action to perform")
    page: str = Field(..., description="Name of the page the action applies to")
    selectors: List[str] = Field(default_factory=list, description="Optional selector override for the action")


class CredentialBundle(BaseModel):
    """Decrypted credentials for a portal; secrets never render in logs or reprs."""
    username: Optional[SecretStr] = Field(None, description="Portal user name")
    password: Optional[SecretStr] = Field(None, description="Portal password")
    api_key: Optional[SecretStr] = Field(None, description="API key for api_key auth")
    api_key_header: str = Field("X-API-Key", description="Header carrying the API key")
    storage_state_path: Optional[str] = Field(None, description="Stored browser state for delegated auth")
    username_selectors: List[str] = Field(
        default_factory=lambda: ['input[name="username"]', 'input[name="UserId"]', 'input[type="text"]'],
        description="User name field candidates when the login page has no mappings",
    )
    password_selectors: List[str] = Field(
        default_factory=lambda: ['input[name="password"]', 'input[type="password"]'],
        description="Password field candidates when the login page has no mappings",
    )
    submit_selectors: List[str] = Field(
        default_factory=lambda: ['button[type="submit"]', 'input[type="submit"]', 'button:has-text("Login")'],
        description="Login button candidates when the login page has none",
    )

    def as_bundle(self) -> Dict[str, Any]:
        """Plain values addressable as ``credentials.<name>`` by login field mappings."""
        return {
            "username": self.username.get_secret_value() if self.username else None,
            "password": self.password.get_secret_value() if self.password else None,
            "api_key": self.api_key.get_secret_value() if self.api_key else None,
        }


class Target(BaseModel):
    """One external customs portal and its complete automation configuration."""
    code: str = Field(..., description="Unique external system code")
    name: str = Field(..., description="Display name")
    base_url: str = Field(..., description="Portal base URL")
    login_url: Optional[str] = Field(None, description="Login path or URL")
    auth_mode: AuthMode = Field(AuthMode.FORM, description="Authentication mode")
    credentials: Optional[CredentialBundle] = Field(None, description="Decrypted credential bundle")
    allow_ai_assist: bool = Field(False, description="Whether AI-assisted recovery is permitted")
    workflow_steps: List[WorkflowStep] = Field(default_factory=list, description="Ordered workflow steps")
    pages: List[Page] = Field(default_factory=list, description="Pages owned by this target")
    is_active: bool = Field(True, description="Inactive targets cannot be submitted to")
    last_tested_at: Optional[datetime] = Field(None, description="Last successful connection test")
    last_mapped_at: Optional[datetime] = Field(None, description="Last time the mappings were authored")
    notes: Optional[str] = Field(None, description="Free-form author notes")

    @model_validator(mode="after")
    def check_integrity(self) -> "Target":
        names = [page.name for page in self.pages]
        if len(names) != len(set(names)):
            raise ValueError(f"Target '{self.code}' has duplicate page names")
        orders = [page.sequence_order for page in self.pages]
        if len(orders) != len(set(orders)):
            raise ValueError(f"Target '{self.code}' has duplicate page sequence orders")
        unknown = [step.page for step in self.workflow_steps if step.page not in names]
        if unknown:
            raise ValueError(f"Workflow of '{self.code}' references unknown pages: {', '.join(unknown)}")
        return self

    @property
    def full_login_url(self) -> str:
        login = self.login_url or ""
        if login.startswith(("http://", "https://")):
            return login
        return self.base_url.rstrip("/") + "/" + login.lstrip("/")

    def page(self, name: str) -> Optional[Page]:
        for page in self.pages:
            if page.name == name:
                return page
        return None

    def login_page(self) -> Optional[Page]:
        for step in self.workflow_steps:
            if step.action == WorkflowAction.LOGIN:
                return self.page(step.page)
        return next((page for page in self.pages if page.page_type == PageType.LOGIN), None)

    def form_pages(self) -> List[Page]:
        return sorted(
            (page for page in self.pages if page.page_type == PageType.FORM and page.is_active),
            key=lambda page: page.sequence_order,
        )

    def is_mapped(self) -> bool:
        return self.last_mapped_at is not None and len(self.pages) > 0

    def mark_tested(self) -> None:
        self.last_tested_at = utc_now()

    def mark_mapped(self) -> None:
        self.last_mapped_at = utc_now()


class DeclarationBundle(BaseModel):
    """Declaration data addressable by dotted paths (declaration, shipment, shipper, items...)."""
    declaration_id: str = Field(..., description="Identifier of the declaration")
    data: Dict[str, Any] = Field(default_factory=dict, description="Nested declaration data")
    line_items: List[Dict[str, Any]] = Field(default_factory=list, description="Ordered declaration line items")

    def context(self) -> Dict[str, Any]:
        """Header-level lookup context."""
        return {**self.data, "items": self.line_items, "declaration_id": self.declaration_id}

    def line_context(self, line_number: int) -> Dict[str, Any]:
        """Lookup context where ``item`` is the given 1-based line item."""
        context = self.context()
        context["item"] = self.line_items[line_number - 1]
        context["line"] = line_number
        return context


class SubmissionStatus(str, Enum):
    """Submission record status."""
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"


class ScreenshotEntry(BaseModel):
    """Screenshot captured at a workflow state transition."""
    path: Optional[str] = Field(None, description="File path, None if capture failed")
    state: str = Field(..., description="Driver state entered")
    page: Optional[str] = Field(None, description="Page name")
    timestamp: datetime = Field(default_factory=utc_now, description="Capture time")


class DecisionEntry(BaseModel):
    """One recovery advisor decision and its stated reasoning."""
    step: str = Field(..., description="Workflow action being recovered")
    page: Optional[str] = Field(None, description="Page name")
    field: Optional[str] = Field(None, description="Field label, if any")
    attempt: int = Field(..., description="Retry attempt the decision applies to")
    situation: str = Field(..., description="Summary of the failure shown to the advisor")
    action: str = Field(..., description="Recovery action chosen")
    details: Dict[str, Any] = Field(default_factory=dict, description="Action arguments")
    reasoning: str = Field("", description="Advisor reasoning")
    accepted: bool = Field(True, description="Whether the driver executed the action")
    rejection_reason: Optional[str] = Field(None, description="Why the driver refused the action")
    timestamp: datetime = Field(default_factory=utc_now, description="Decision time")


class ErrorEntry(BaseModel):
    """An error encountered during the workflow and how it was handled."""
    code: str = Field(..., description="Error code")
    message: str = Field(..., description="Verbatim error message")
    step: Optional[str] = Field(None, description="Workflow action")
    page: Optional[str] = Field(None, description="Page name")
    field: Optional[str] = Field(None, description="Field label")
    attempt: int = Field(0, description="Retry attempt")
    resolution: str = Field("", description="Recovery applied")
    timestamp: datetime = Field(default_factory=utc_now, description="Time of the error")


class LogEntry(BaseModel):
    """Human-readable progress log line."""
    timestamp: datetime = Field(default_factory=utc_now, description="Entry time")
    level: str = Field("info", description="Level")
    message: str = Field(..., description="Message")


class SubmissionRecord(BaseModel):
    """One attempt to push one declaration through one target."""
    id: UUID = Field(default_factory=uuid4, description="Submission identifier")
    target_code: str = Field(..., description="Target code (weak reference)")
    declaration_id: str = Field(..., description="Declaration identifier (weak reference)")
    status: SubmissionStatus = Field(SubmissionStatus.PENDING, description="Submission status")
    external_reference: Optional[str] = Field(None, description="Reference number issued by the portal")
    message: Optional[str] = Field(None, description="Human-readable outcome")
    screenshots: List[ScreenshotEntry] = Field(default_factory=list, description="Ordered screenshot log")
    decisions: List[DecisionEntry] = Field(default_factory=list, description="Ordered advisor decision log")
    errors_recovered: List[ErrorEntry] = Field(default_factory=list, description="Ordered error log")
    warnings: List[str] = Field(default_factory=list, description="Non-fatal warnings")
    log: List[LogEntry] = Field(default_factory=list, description="Progress log")
    error_code: Optional[str] = Field(None, description="Code of the terminating error")
    error_message: Optional[str] = Field(None, description="Terminating error, verbatim")
    missing_fields: List[Dict[str, Any]] = Field(default_factory=list, description="Pre-flight rejections")
    retry_count: int = Field(0, description="How many retries preceded this attempt")
    parent_id: Optional[UUID] = Field(None, description="Submission this one retries")
    started_at: datetime = Field(default_factory=utc_now, description="Start time")
    completed_at: Optional[datetime] = Field(None, description="Finalization time")
    duration_seconds: Optional[float] = Field(None, description="Wall-clock duration")

    @property
    def is_final(self) -> bool:
        return self.status != SubmissionStatus.PENDING

    @property
    def is_successful(self) -> bool:
        return self.status == SubmissionStatus.SUCCESS

    def can_retry(self, max_retries: int) -> bool:
        return self.status == SubmissionStatus.FAILED and self.retry_count < max_retries
