"""
Workflow Driver: executes a target's ordered workflow steps against a live portal.

The driver is a small state machine (NOT_STARTED, LOGGING_IN, NAVIGATING,
FILLING, SUBMITTING, then SUCCEEDED or FAILED). Recoverable failures pause the
current step and go through a bounded recovery loop: the recovery advisor when
AI assistance is permitted, deterministic backoff otherwise.
"""

import asyncio
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional

from customs_portal.browser.indicators import IndicatorEvaluator, Outcome, extract_reference
from customs_portal.config import settings
from customs_portal.core.errors import (
    AdvisorInvalidAction,
    AdvisorTimeout,
    AmbiguousOutcome,
    ConfigurationError,
    LoginFailed,
    PortalRejection,
    SelectorNotFound,
    SessionError,
    SubmissionCancelled,
    SubmissionError,
    UnexpectedDialog,
)
from customs_portal.core.models import (
    AuthMode,
    CredentialBundle,
    DecisionEntry,
    ErrorEntry,
    FieldKind,
    Page,
    SubmissionRecord,
    Target,
    WorkflowAction,
    WorkflowStep,
)
from customs_portal.mapping.planner import FieldPlan, PlannedField, fill_pages
from customs_portal.mapping.resolver import FieldValueResolver, is_empty
from customs_portal.workflow.advisor import RecoveryAction, RecoveryAdvisor, RecoveryKind, RecoverySituation
from customs_portal.workflow.recorder import SubmissionRecorder
from customs_portal.utils.logging import get_logger

logger = get_logger(__name__)

RECOVERABLE = (SelectorNotFound, UnexpectedDialog, AmbiguousOutcome)

DEFAULT_NEW_SELECTORS = [
    'button:has-text("New")',
    'input[type="button"][value*="New"]',
    'input[type="submit"][value*="New"]',
    'a:has-text("New")',
]

_TRUTHY = {"1", "true", "yes", "y", "on", "x", "checked"}


class DriverState(str, Enum):
    """States of a submission workflow."""
    NOT_STARTED = "not_started"
    LOGGING_IN = "logging_in"
    NAVIGATING = "navigating"
    FILLING = "filling"
    SUBMITTING = "submitting"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass
class RetryBudget:
    """Retries left for one step, or for one field inside ``fill``."""
    limit: int
    used: int = 0

    @property
    def exhausted(self) -> bool:
        return self.used >= self.limit


class _Skipped(Exception):
    """Internal signal: an optional field was skipped on advice."""


class CancelSignal:
    """Set once to stop a submission at its next state boundary."""

    def __init__(self):
        self.reason: Optional[str] = None

    def set(self, reason: Optional[str] = None) -> None:
        self.reason = reason or "Cancelled by request"

    def is_set(self) -> bool:
        return self.reason is not None


def default_workflow(target: Target) -> List[WorkflowStep]:
    """Steps for a target without an explicit workflow: login, then navigate+fill each form page, then save."""
    steps: List[WorkflowStep] = []
    login = target.login_page()
    if login is not None and target.auth_mode == AuthMode.FORM:
        steps.append(WorkflowStep(action=WorkflowAction.LOGIN, page=login.name))
    pages = fill_pages(target)
    for page in pages:
        steps.append(WorkflowStep(action=WorkflowAction.NAVIGATE, page=page.name))
        steps.append(WorkflowStep(action=WorkflowAction.FILL, page=page.name))
    if pages:
        steps.append(WorkflowStep(action=WorkflowAction.SAVE, page=pages[-1].name))
    return steps


def to_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    return str(value).strip().lower() in _TRUTHY


class WorkflowDriver:
    """
    Drives one submission through one target's workflow.

    A driver owns its browser session for the duration of ``run`` and always
    closes it, whatever the outcome. Every state transition is screenshotted and
    appended to the submission record.
    """

    def __init__(
        self,
        target: Target,
        session: Any,
        recorder: SubmissionRecorder,
        advisor: Optional[RecoveryAdvisor] = None,
        evaluator: Optional[IndicatorEvaluator] = None,
        resolver: Optional[FieldValueResolver] = None,
        max_retries: Optional[int] = None,
        backoff_ms: Optional[int] = None,
        max_wait_ms: Optional[int] = None,
        screenshot_dir: Optional[str] = None,
        cancel_signal: Optional[CancelSignal] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        """
        Initialize the driver.

        Args:
            target: Snapshot of the target configuration
            session: Browser session (BrowserSession or an equivalent)
            recorder: Started recorder for this submission
            advisor: Recovery advisor, used only when the target allows AI assistance
            evaluator: Indicator evaluator
            resolver: Resolver for login field mappings
            max_retries: Retry budget per step and per field
            backoff_ms: Base backoff for deterministic retries
            max_wait_ms: Upper bound for advised waits
            screenshot_dir: Root directory for screenshots
            cancel_signal: Set to request cancellation at the next state boundary
            sleep: Coroutine used for deterministic backoff
        """
        self.target = target
        self.session = session
        self.recorder = recorder
        self.advisor = advisor
        self.evaluator = evaluator or IndicatorEvaluator()
        self.resolver = resolver or FieldValueResolver()
        self.max_retries = settings.max_retries if max_retries is None else max_retries
        self.backoff_ms = settings.retry_backoff_ms if backoff_ms is None else backoff_ms
        self.max_wait_ms = settings.advisor_max_wait_ms if max_wait_ms is None else max_wait_ms
        self.screenshot_dir = Path(screenshot_dir or settings.screenshot_dir)
        self.cancel_signal = cancel_signal or CancelSignal()
        self._sleep = sleep

        self.state = DriverState.NOT_STARTED
        self.runtime: Dict[str, Any] = {"target_code": target.code}
        self.last_save_outcome: Optional[Outcome] = None
        self.reference: Optional[str] = None
        self._screenshot_seq = 0
        self.logger = logger.bind(component="workflow_driver", target=target.code)

    @property
    def ai_assist(self) -> bool:
        return bool(self.target.allow_ai_assist and self.advisor is not None and self.advisor.is_available)

    @property
    def record(self) -> SubmissionRecord:
        return self.recorder.record

    def steps(self) -> List[WorkflowStep]:
        return list(self.target.workflow_steps) or default_workflow(self.target)

    # ------------------------------------------------------------------ run

    async def run(self, plan: FieldPlan) -> SubmissionRecord:
        """
        Execute every workflow step and finalize the record.

        Args:
            plan: Pre-flight field plan for this target and declaration

        Returns:
            The finalized submission record
        """
        self.runtime["declaration_id"] = plan.declaration_id
        self.logger = self.logger.bind(submission_id=str(self.record.id))
        steps = self.steps()
        if not any(step.action == WorkflowAction.SAVE for step in steps):
            return await self._fail(ConfigurationError(f"Target '{self.target.code}' has no save step"))

        for warning in plan.warnings:
            await self.recorder.add_warning(warning)

        try:
            await self._start_session()
            for step in steps:
                await self._execute(step, plan)

            if self.last_save_outcome != Outcome.SUCCESS:
                raise SubmissionError("Workflow finished without a successful save")
            await self._transition(DriverState.SUCCEEDED, None)
            reference = self.reference or self.runtime.get("record_id")
            return await self.recorder.finalize_success(
                reference,
                f"Submitted to {self.target.name}" + (f", reference {reference}" if reference else ""),
            )
        except SubmissionError as e:
            return await self._fail(e)
        except asyncio.CancelledError:
            await self._abandon()
            raise
        except Exception as e:
            self.logger.exception("Unexpected workflow failure", error=str(e))
            return await self._fail(SessionError(f"Unexpected error: {e}", error_type=type(e).__name__))
        finally:
            await self.session.close()

    async def run_login(self) -> SubmissionRecord:
        """Execute only authentication, for connection tests."""
        self.logger = self.logger.bind(submission_id=str(self.record.id))
        try:
            await self._start_session()
            login_step = next((s for s in self.steps() if s.action == WorkflowAction.LOGIN), None)
            if login_step is not None:
                await self._login(login_step)
            else:
                page = self.target.login_page()
                url = self.target.full_login_url if self.target.login_url else self.target.base_url
                await self._transition(DriverState.NAVIGATING, page.name if page else None)
                await self.session.goto(url)
            await self._transition(DriverState.SUCCEEDED, None)
            return await self.recorder.finalize_success(None, f"Connected to {self.target.name}")
        except SubmissionError as e:
            return await self._fail(e)
        except asyncio.CancelledError:
            await self._abandon()
            raise
        except Exception as e:
            self.logger.exception("Unexpected connection test failure", error=str(e))
            return await self._fail(SessionError(f"Unexpected error: {e}", error_type=type(e).__name__))
        finally:
            await self.session.close()

    async def _start_session(self) -> None:
        credentials = self.target.credentials or CredentialBundle()
        headers = None
        storage_state = None
        if self.target.auth_mode == AuthMode.API_KEY:
            if credentials.api_key is None:
                raise ConfigurationError(f"Target '{self.target.code}' uses api_key auth but has no key")
            headers = {credentials.api_key_header: credentials.api_key.get_secret_value()}
        elif self.target.auth_mode == AuthMode.DELEGATED:
            storage_state = credentials.storage_state_path
        await self.session.start(extra_headers=headers, storage_state=storage_state)

    async def _abandon(self) -> None:
        """Finalize the record when the surrounding task is cancelled."""
        self.state = DriverState.FAILED
        self.logger.warning("Submission task cancelled", state=self.state.value)
        if not self.record.is_final:
            await self.recorder.finalize_failure(SubmissionCancelled("Submission task cancelled"))

    async def _fail(self, error: SubmissionError) -> SubmissionRecord:
        if self.session.is_started:
            try:
                await self._capture(DriverState.FAILED, None)
            except SubmissionError as e:
                self.logger.warning("Failure screenshot not recorded", error=str(e))
        self.state = DriverState.FAILED
        missing = error.details.get("missing") if isinstance(error.details.get("missing"), list) else None
        return await self.recorder.finalize_failure(error, missing_fields=missing)

    # ---------------------------------------------------------- transitions

    async def _transition(self, state: DriverState, page: Optional[str]) -> None:
        if self.cancel_signal.is_set() and state not in (DriverState.SUCCEEDED, DriverState.FAILED):
            raise SubmissionCancelled(self.cancel_signal.reason)
        self.state = state
        self.logger.info("State transition", state=state.value, page=page)
        await self.recorder.add_log(f"{state.value}" + (f": {page}" if page else ""))
        await self._capture(state, page)

    async def _capture(self, state: DriverState, page: Optional[str]) -> None:
        self._screenshot_seq += 1
        name = f"{self._screenshot_seq:02d}-{state.value}" + (f"-{page}" if page else "") + ".png"
        path = str(self.screenshot_dir / str(self.record.id) / name)
        captured = await self.session.screenshot(path)
        await self.recorder.add_screenshot(path if captured else None, state.value, page)

    async def _drain_dialogs(self) -> None:
        for message in self.session.drain_dialogs():
            await self.recorder.add_log(f"Dialog accepted: {message}")

    # ---------------------------------------------------------------- steps

    async def _execute(self, step: WorkflowStep, plan: FieldPlan) -> None:
        page = self.target.page(step.page)
        if page is None:
            raise ConfigurationError(f"Workflow references unknown page '{step.page}'")

        if step.action == WorkflowAction.LOGIN:
            await self._login(step)
        elif step.action == WorkflowAction.NAVIGATE:
            await self._navigate(page)
        elif step.action == WorkflowAction.NEW:
            await self._new(step, page)
        elif step.action == WorkflowAction.FILL:
            await self._fill(page, plan)
        elif step.action == WorkflowAction.SAVE:
            await self._save(step, page)
        await self._drain_dialogs()

    async def _login(self, step: WorkflowStep) -> None:
        if self.target.auth_mode != AuthMode.FORM:
            await self.recorder.add_log(f"Login skipped ({self.target.auth_mode.value} authentication)")
            return

        page = self.target.page(step.page)
        await self._transition(DriverState.LOGGING_IN, page.name)
        url = self.target.full_login_url if self.target.login_url else page.full_url(self.target.base_url, self.runtime)
        await self.session.goto(url)

        credentials = self.target.credentials or CredentialBundle()
        budget = RetryBudget(self.max_retries)
        mappings = page.active_mappings()
        if mappings:
            context = {"credentials": credentials.as_bundle(), **self.runtime}
            for mapping in mappings:
                resolved = self.resolver.resolve(mapping, context, page=page.name)
                if resolved.is_empty:
                    continue
                planned = PlannedField(mapping=mapping, page=page.name, resolved=resolved)
                await self._fill_field(planned, page)
        else:
            values = credentials.as_bundle()
            if values["username"] is None or values["password"] is None:
                raise ConfigurationError(f"Target '{self.target.code}' has no login credentials")
            for label, candidates, value in (
                ("username", credentials.username_selectors, values["username"]),
                ("password", credentials.password_selectors, values["password"]),
            ):
                await self._with_recovery(
                    step="login",
                    page=page,
                    budget=RetryBudget(self.max_retries),
                    target=label,
                    candidates=candidates,
                    operation=lambda extra, c=candidates, v=value, t=label: self._locate_and(
                        extra + c, t, lambda selector: self.session.fill(selector, v)
                    ),
                )

        submit = step.selectors or page.submit_selectors or credentials.submit_selectors
        await self._click(submit, "login button", "login", page, budget)
        await self.session.wait_for_load()
        await self._drain_dialogs()

        if not page.success_indicator and not page.error_indicator:
            return
        await self._classify("login", page, budget, LoginFailed)

    async def _navigate(self, page: Page) -> None:
        await self._transition(DriverState.NAVIGATING, page.name)
        await self.session.goto(page.full_url(self.target.base_url, self.runtime))

    async def _new(self, step: WorkflowStep, page: Page) -> None:
        await self._transition(DriverState.NAVIGATING, page.name)
        budget = RetryBudget(self.max_retries)
        await self._click(step.selectors or DEFAULT_NEW_SELECTORS, "new record button", "new", page, budget)
        await self.session.wait_for_load()
        await self._drain_dialogs()

        if page.reference_pattern:
            url = await self.session.current_url()
            record_id = extract_reference(url, page.reference_pattern) or extract_reference(
                await self.session.page_text(), page.reference_pattern
            )
            if record_id:
                self.runtime["record_id"] = record_id
                await self.recorder.add_log(f"Record created: {record_id}")

    async def _fill(self, page: Page, plan: FieldPlan) -> None:
        page_plan = plan.for_page(page.name)
        if page_plan is None:
            raise ConfigurationError(f"No field plan for page '{page.name}'")
        await self._transition(DriverState.FILLING, page.name)

        filled = 0
        for planned in page_plan.header:
            filled += await self._fill_field(planned, page)
        for line_number in sorted(page_plan.lines):
            if line_number > 1 and page.add_line_selectors:
                await self._click(
                    page.add_line_selectors,
                    f"add line {line_number}",
                    "fill",
                    page,
                    RetryBudget(self.max_retries),
                )
                await self.session.wait_for_load()
            for planned in page_plan.lines[line_number]:
                filled += await self._fill_field(planned, page)

        await self.recorder.add_log(f"Filled {filled} field(s) on {page.name}")

    async def _save(self, step: WorkflowStep, page: Page) -> None:
        await self._transition(DriverState.SUBMITTING, page.name)
        budget = RetryBudget(self.max_retries)
        submit = step.selectors or page.submit_selectors
        if not submit:
            raise ConfigurationError(f"Page '{page.name}' has no submit selectors")

        await self._click(submit, "submit button", "save", page, budget)
        await self.session.wait_for_load()
        await self._drain_dialogs()

        evaluation = await self._classify("save", page, budget, PortalRejection)
        self.last_save_outcome = evaluation.outcome
        if evaluation.reference:
            self.reference = evaluation.reference

    # -------------------------------------------------------------- actions

    async def _fill_field(self, planned: PlannedField, page: Page) -> int:
        """Fill one field instance with its own retry budget; returns 1 if filled."""
        value = planned.value
        if is_empty(value):
            return 0

        if planned.kind == FieldKind.SELECT:
            act = lambda selector: self.session.select_option(selector, str(value))
        elif planned.kind == FieldKind.CHECKBOX:
            act = lambda selector: self.session.set_checked(selector, to_bool(value))
        elif planned.kind == FieldKind.HIDDEN:
            act = lambda selector: self.session.set_value(selector, str(value))
        else:
            act = lambda selector: self.session.fill(selector, str(value))

        try:
            await self._with_recovery(
                step="fill",
                page=page,
                budget=RetryBudget(self.max_retries),
                target=planned.label,
                candidates=planned.candidates,
                operation=lambda extra: self._locate_and(extra + planned.candidates, planned.label, act),
                field_required=planned.is_required,
            )
        except _Skipped:
            await self.recorder.add_warning(f"Optional field '{planned.label}' skipped")
            return 0
        return 1

    async def _locate_and(self, candidates: List[str], target: str, act) -> None:
        selector = await self.session.locate(list(dict.fromkeys(candidates)), target)
        await act(selector)

    async def _click(self, candidates: List[str], target: str, step: str, page: Page, budget: RetryBudget) -> None:
        await self._with_recovery(
            step=step,
            page=page,
            budget=budget,
            target=target,
            candidates=candidates,
            operation=lambda extra: self._locate_and(extra + list(candidates), target, self.session.click),
            field=None,
        )

    async def _classify(self, step: str, page: Page, budget: RetryBudget, rejection):
        """Evaluate indicators; retries of an ambiguous outcome only re-evaluate the page."""

        async def evaluate(extra: List[str]):
            evaluation = await self.evaluator.evaluate(self.session, page)
            if evaluation.outcome == Outcome.ERROR:
                raise rejection(page.name, evaluation.message)
            if evaluation.outcome == Outcome.AMBIGUOUS:
                raise AmbiguousOutcome(page.name, step)
            return evaluation

        return await self._with_recovery(
            step=step,
            page=page,
            budget=budget,
            target=f"{step} outcome",
            candidates=[],
            operation=evaluate,
            field=None,
        )

    # ------------------------------------------------------------- recovery

    async def _with_recovery(
        self,
        step: str,
        page: Page,
        budget: RetryBudget,
        target: str,
        candidates: List[str],
        operation: Callable[[List[str]], Awaitable[Any]],
        field: Optional[str] = "",
        field_required: bool = False,
    ) -> Any:
        """
        Run ``operation`` until it succeeds or the budget is exhausted.

        ``operation`` receives extra selector candidates proposed by the advisor.
        The first recoverable error is the one raised on exhaustion.
        """
        field_label = target if field == "" else field
        extra: List[str] = []
        originating: Optional[SubmissionError] = None
        while True:
            try:
                return await operation(extra)
            except RECOVERABLE as e:
                originating = originating or e
                if budget.exhausted:
                    self.logger.warning(
                        "Retry budget exhausted", step=step, page=page.name, target=target, error=originating.code
                    )
                    raise originating
                budget.used += 1
                attempt = budget.used

                if self.ai_assist:
                    resolution = await self._advised_recovery(
                        e, step, page, field_label, field_required, candidates + extra, attempt, budget
                    )
                else:
                    resolution = await self._deterministic_recovery(e, attempt)

                if resolution is None:
                    await self._record_error(e, step, page, field_label, attempt, "abort")
                    raise originating
                await self._record_error(e, step, page, field_label, attempt, resolution[0])
                if resolution[0] == RecoveryKind.SKIP_FIELD.value:
                    raise _Skipped()
                if resolution[1]:
                    extra = [resolution[1]] + [s for s in extra if s != resolution[1]]

    async def _deterministic_recovery(self, error: SubmissionError, attempt: int):
        if isinstance(error, AmbiguousOutcome):
            return None
        if isinstance(error, UnexpectedDialog):
            await self.session.dismiss_dialog(None)
        delay_ms = self.backoff_ms * (2 ** (attempt - 1))
        await self._sleep(delay_ms / 1000)
        return ("backoff_retry", None)

    async def _advised_recovery(
        self,
        error: SubmissionError,
        step: str,
        page: Page,
        field: Optional[str],
        field_required: bool,
        tried: List[str],
        attempt: int,
        budget: RetryBudget,
    ):
        """Consult the advisor; returns ``(action, selector)`` or None to abort."""
        situation = RecoverySituation(
            step=step,
            page=page.name,
            field=field,
            field_required=field_required,
            selectors_tried=tried,
            error_code=error.code,
            error_message=error.message,
            attempt=attempt,
            budget=budget.limit,
            snapshot=await self.session.snapshot(),
        )

        try:
            action = await self.advisor.advise(situation)
        except (AdvisorTimeout, AdvisorInvalidAction) as e:
            await self.recorder.add_decision(
                DecisionEntry(
                    step=step,
                    page=page.name,
                    field=field,
                    attempt=attempt,
                    situation=situation.summary(),
                    action=RecoveryKind.ABORT.value,
                    details={"error_code": e.code},
                    reasoning=e.message,
                )
            )
            await self._record_error(e, step, page, field, attempt, "abort")
            return None

        rejection = self._rejection_reason(action, error, step, field, field_required)
        await self.recorder.add_decision(
            DecisionEntry(
                step=step,
                page=page.name,
                field=field,
                attempt=attempt,
                situation=situation.summary(),
                action=action.action.value,
                details=action.details(),
                reasoning=action.reasoning,
                accepted=rejection is None,
                rejection_reason=rejection,
            )
        )
        if rejection is not None:
            self.logger.warning("Advisor action rejected", action=action.action.value, reason=rejection)
            return None
        return await self._apply(action)

    def _rejection_reason(
        self,
        action: RecoveryAction,
        error: SubmissionError,
        step: str,
        field: Optional[str],
        field_required: bool,
    ) -> Optional[str]:
        if action.action == RecoveryKind.ABORT:
            return None
        if action.action == RecoveryKind.SKIP_FIELD:
            if step != "fill" or field is None:
                return "skip_field is only allowed while filling a field"
            if field_required:
                return f"Field '{field}' is required and cannot be skipped"
        if isinstance(error, AmbiguousOutcome) and action.action in (RecoveryKind.RETRY_SELECTOR, RecoveryKind.SKIP_FIELD):
            return f"{action.action.value} cannot resolve an ambiguous outcome"
        return None

    async def _apply(self, action: RecoveryAction):
        if action.action == RecoveryKind.ABORT:
            await self.recorder.add_log(f"Advisor aborted: {action.reason or action.reasoning}", level="warning")
            return None
        if action.action == RecoveryKind.RETRY_SELECTOR:
            return (action.action.value, action.selector)
        if action.action == RecoveryKind.DISMISS_DIALOG:
            try:
                await self.session.dismiss_dialog(action.selector)
            except RECOVERABLE as e:
                self.logger.warning("Dialog dismissal failed", selector=action.selector, error=e.message)
            return (action.action.value, None)
        if action.action == RecoveryKind.WAIT_AND_RETRY:
            await self.session.wait(min(action.wait_ms or 0, self.max_wait_ms))
            return (action.action.value, None)
        return (action.action.value, None)

    async def _record_error(
        self, error: SubmissionError, step: str, page: Page, field: Optional[str], attempt: int, resolution: str
    ) -> None:
        await self.recorder.add_recovered_error(
            ErrorEntry(
                code=error.code,
                message=error.message,
                step=step,
                page=page.name,
                field=field,
                attempt=attempt,
                resolution=resolution,
            )
        )
