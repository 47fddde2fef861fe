"""
Submission service: the public facade over planning, driving and recording.

Callers submit a declaration to a target by code; everything else (pre-flight
resolution, the isolated browser session, recovery and the audit trail) happens
behind this interface.
"""

import asyncio
from typing import Any, Callable, Dict, List, Optional, Union
from uuid import UUID

from pydantic import BaseModel, Field

from customs_portal.browser.session import create_browser_session
from customs_portal.config import settings
from customs_portal.core.errors import (
    ConfigurationError,
    MissingRequiredValues,
    RetryNotAllowed,
    SubmissionError,
    UnknownSubmission,
)
from customs_portal.core.models import DeclarationBundle, SubmissionRecord, Target
from customs_portal.core.store import TargetConfigStore
from customs_portal.mapping.planner import FieldPlanner, MappingPreview
from customs_portal.workflow.advisor import RecoveryAdvisor
from customs_portal.workflow.driver import CancelSignal, WorkflowDriver
from customs_portal.workflow.recorder import (
    InMemorySubmissionRepository,
    JsonFileSubmissionRepository,
    SubmissionRecorder,
    SubmissionRepository,
)
from customs_portal.utils.logging import get_logger, log_submission_context

logger = get_logger(__name__)


class ConnectionTestResult(BaseModel):
    """Outcome of a login-only connection test."""
    success: bool = Field(..., description="Whether authentication succeeded")
    logs: List[str] = Field(default_factory=list, description="Progress messages")
    error: Optional[str] = Field(None, description="Error message on failure")
    error_code: Optional[str] = Field(None, description="Error code on failure")
    screenshots: List[str] = Field(default_factory=list, description="Captured screenshot paths")


class SubmissionService:
    """
    Facade exposing submit, test_connection, preview, retry and cancel.

    Each submission gets a deep-copied target snapshot and its own browser
    session; nothing is shared between concurrent submissions.
    """

    def __init__(
        self,
        store: TargetConfigStore,
        repository: Optional[SubmissionRepository] = None,
        advisor: Optional[RecoveryAdvisor] = None,
        session_factory: Optional[Callable[[], Any]] = None,
        planner: Optional[FieldPlanner] = None,
        driver_options: Optional[Dict[str, Any]] = None,
    ):
        """
        Initialize the service.

        Args:
            store: Target configuration store
            repository: Where submission records are persisted
            advisor: Recovery advisor; built from settings when AI assistance is enabled
            session_factory: Callable returning a fresh browser session per submission
            planner: Pre-flight field planner
            driver_options: Extra keyword arguments for every WorkflowDriver
        """
        self.store = store
        self.repository = repository or InMemorySubmissionRepository()
        if advisor is None and settings.advisor_enabled:
            advisor = RecoveryAdvisor()
        self.advisor = advisor
        self.session_factory = session_factory or create_browser_session
        self.planner = planner or FieldPlanner()
        self.driver_options = driver_options or {}
        self.logger = logger.bind(component="submission_service")

        self._cancel_signals: Dict[UUID, CancelSignal] = {}
        self._tasks: Dict[UUID, asyncio.Task] = {}

    def _snapshot(self, target: Union[str, Target]) -> Target:
        snapshot = self.store.get(target) if isinstance(target, str) else target.model_copy(deep=True)
        if not snapshot.is_active:
            raise ConfigurationError(f"Target '{snapshot.code}' is inactive", target=snapshot.code)
        return snapshot

    def _driver(self, target: Target, recorder: SubmissionRecorder, cancel_signal: Optional[CancelSignal] = None):
        return WorkflowDriver(
            target=target,
            session=self.session_factory(),
            recorder=recorder,
            advisor=self.advisor,
            cancel_signal=cancel_signal,
            **self.driver_options,
        )

    async def submit(
        self,
        target: Union[str, Target],
        declaration: DeclarationBundle,
        retry_count: int = 0,
        parent_id: Optional[UUID] = None,
        submission_id: Optional[UUID] = None,
    ) -> SubmissionRecord:
        """
        Submit one declaration to one target and wait for the outcome.

        Args:
            target: Target code or Target instance
            declaration: Declaration data bundle
            retry_count: Number of retries preceding this attempt
            parent_id: Submission this attempt retries
            submission_id: Pre-allocated submission id

        Returns:
            The finalized SubmissionRecord

        Raises:
            ConfigurationError: unknown or inactive target.
        """
        snapshot = self._snapshot(target)
        recorder = SubmissionRecorder(self.repository)
        record = None
        try:
            record = await recorder.start(
                snapshot.code,
                declaration.declaration_id,
                retry_count=retry_count,
                parent_id=parent_id,
                submission_id=submission_id,
            )
            log = self.logger.bind(**log_submission_context(str(record.id), snapshot.code, declaration.declaration_id))

            try:
                plan = self.planner.plan(snapshot, declaration)
            except MissingRequiredValues as e:
                log.warning("Declaration rejected before browser launch", missing=len(e.missing))
                return await recorder.finalize_failure(e, missing_fields=[error.to_dict() for error in e.missing])
            except SubmissionError as e:
                return await recorder.finalize_failure(e)

            cancel_signal = self._cancel_signals.setdefault(record.id, CancelSignal())
            driver = self._driver(snapshot, recorder, cancel_signal)
            log.info("Submission workflow starting", steps=len(driver.steps()))
            return await driver.run(plan)
        finally:
            self._cancel_signals.pop(record.id if record is not None else submission_id, None)

    async def start_submission(
        self,
        target: Union[str, Target],
        declaration: DeclarationBundle,
        retry_count: int = 0,
        parent_id: Optional[UUID] = None,
    ) -> SubmissionRecord:
        """Start a submission in the background and return its pending record."""
        snapshot = self._snapshot(target)
        record = SubmissionRecord(
            target_code=snapshot.code,
            declaration_id=declaration.declaration_id,
            retry_count=retry_count,
            parent_id=parent_id,
        )
        self._cancel_signals[record.id] = CancelSignal()
        task = asyncio.create_task(
            self.submit(snapshot, declaration, retry_count=retry_count, parent_id=parent_id, submission_id=record.id)
        )
        self._tasks[record.id] = task
        task.add_done_callback(lambda _: self._tasks.pop(record.id, None))
        # Let the task persist its pending record before returning
        await asyncio.sleep(0)
        return await self.repository.get(record.id) or record

    async def get_record(self, submission_id: UUID) -> Optional[SubmissionRecord]:
        return await self.repository.get(submission_id)

    async def list_records(self, target_code: Optional[str] = None) -> List[SubmissionRecord]:
        return await self.repository.list(target_code)

    async def cancel(self, submission_id: UUID, reason: Optional[str] = None) -> bool:
        """Request cancellation; the driver stops at its next state boundary."""
        signal = self._cancel_signals.get(submission_id)
        if signal is None:
            return False
        signal.set(reason)
        self.logger.info("Cancellation requested", submission_id=str(submission_id), reason=signal.reason)
        return True

    async def wait(self, submission_id: UUID) -> Optional[SubmissionRecord]:
        """Wait for a background submission to finish."""
        task = self._tasks.get(submission_id)
        if task is not None:
            return await task
        return await self.repository.get(submission_id)

    async def test_connection(self, target: Union[str, Target]) -> ConnectionTestResult:
        """Run only the login step; marks the target tested on success."""
        snapshot = self._snapshot(target)
        recorder = SubmissionRecorder(InMemorySubmissionRepository())
        await recorder.start(snapshot.code, "connection-test")
        record = await self._driver(snapshot, recorder).run_login()

        result = ConnectionTestResult(
            success=record.is_successful,
            logs=[entry.message for entry in record.log],
            error=record.error_message,
            error_code=record.error_code,
            screenshots=[shot.path for shot in record.screenshots if shot.path],
        )
        if result.success and snapshot.code in self.store:
            stored = self.store.get(snapshot.code)
            stored.mark_tested()
            self.store.register(stored, replace=True)
        self.logger.info("Connection test finished", target=snapshot.code, success=result.success)
        return result

    def preview(self, target: Union[str, Target], declaration: DeclarationBundle) -> MappingPreview:
        """Show what would be typed into the portal, without launching a browser."""
        snapshot = self.store.get(target) if isinstance(target, str) else target
        return self.planner.preview(snapshot, declaration)

    async def retry(self, submission_id: UUID, declaration: DeclarationBundle, background: bool = False) -> SubmissionRecord:
        """
        Retry a failed submission as a new record linked to the original.

        Raises:
            UnknownSubmission: no record with this id.
            RetryNotAllowed: the record is not failed or its retry limit is reached.
        """
        original = await self.repository.get(submission_id)
        if original is None:
            raise UnknownSubmission(f"Unknown submission '{submission_id}'")
        if not original.can_retry(settings.max_submission_retries):
            raise RetryNotAllowed(
                f"Submission {submission_id} cannot be retried "
                f"(status {original.status.value}, retry_count {original.retry_count})",
                submission_id=str(submission_id),
            )
        if declaration.declaration_id != original.declaration_id:
            raise RetryNotAllowed("Retry must resubmit the same declaration")

        kwargs = {"retry_count": original.retry_count + 1, "parent_id": original.id}
        if background:
            return await self.start_submission(original.target_code, declaration, **kwargs)
        return await self.submit(original.target_code, declaration, **kwargs)


def create_submission_service(store: Optional[TargetConfigStore] = None, **kwargs: Any) -> SubmissionService:
    """
    Factory function to create a submission service from settings.

    Targets are loaded from ``settings.targets_dir`` when no store is given, and
    records are persisted as JSON documents under ``settings.submissions_dir``.
    """
    if store is None:
        store = TargetConfigStore()
        store.load_directory(settings.targets_dir)
    kwargs.setdefault("repository", JsonFileSubmissionRepository(settings.submissions_dir))
    return SubmissionService(store=store, **kwargs)
