"""
Error Recovery Advisor: a bounded oracle consulted when a workflow step fails.

The advisor sees a structured description of the failure and the live page and
answers with exactly one action from a closed set. It never drives the browser
itself; the workflow driver validates and executes whatever it proposes.
"""

import asyncio
import json
import re
from enum import Enum
from typing import Any, Dict, List, Optional

from langchain_core.messages import HumanMessage, SystemMessage
from langchain_groq import ChatGroq
from langchain_openai import ChatOpenAI
from pydantic import BaseModel, Field, ValidationError

from customs_portal.browser.session import PageSnapshot
from customs_portal.config import settings
from customs_portal.core.errors import AdvisorInvalidAction, AdvisorTimeout
from customs_portal.utils.logging import get_logger

logger = get_logger(__name__)

_JSON_OBJECT = re.compile(r"\{[\s\S]*\}")


class RecoveryKind(str, Enum):
    """Closed set of recovery actions."""
    RETRY_SELECTOR = "retry_selector"
    DISMISS_DIALOG = "dismiss_dialog"
    WAIT_AND_RETRY = "wait_and_retry"
    SKIP_FIELD = "skip_field"
    ABORT = "abort"


class RecoveryAction(BaseModel):
    """One advisor decision."""
    action: RecoveryKind = Field(..., description="Chosen recovery action")
    selector: Optional[str] = Field(None, description="Selector for retry_selector / dismiss_dialog")
    wait_ms: Optional[int] = Field(None, ge=0, description="Milliseconds to wait for wait_and_retry")
    reason: Optional[str] = Field(None, description="Abort reason")
    reasoning: str = Field("", description="Why the advisor chose this action")

    def details(self) -> Dict[str, Any]:
        return {
            key: value
            for key, value in (("selector", self.selector), ("wait_ms", self.wait_ms), ("reason", self.reason))
            if value is not None
        }


class RecoverySituation(BaseModel):
    """Everything the advisor is told about a failure."""
    step: str = Field(..., description="Workflow action that failed")
    page: Optional[str] = Field(None, description="Page name")
    field: Optional[str] = Field(None, description="Field label, if a field failed")
    field_required: bool = Field(False, description="Whether the failing field is required")
    selectors_tried: List[str] = Field(default_factory=list, description="Selector candidates already tried")
    error_code: str = Field(..., description="Error code")
    error_message: str = Field(..., description="Error message")
    attempt: int = Field(..., description="Retry attempt about to be made (1-based)")
    budget: int = Field(..., description="Retry budget for this step or field")
    snapshot: PageSnapshot = Field(default_factory=PageSnapshot, description="Live page snapshot")

    def summary(self) -> str:
        where = f"{self.step} on '{self.page}'"
        if self.field:
            where += f" field '{self.field}'"
        return f"{self.error_code} during {where}: {self.error_message}"


_SYSTEM_PROMPT = """You assist an automated customs declaration submission to a government web portal.
A workflow step failed. Choose exactly ONE recovery action from this closed set:

- retry_selector: the element exists under a different selector. Give "selector".
- dismiss_dialog: a modal or overlay blocks the page. Give "selector" of its close/OK button, or omit it to press Escape.
- wait_and_retry: the page is still loading. Give "wait_ms".
- skip_field: the field is optional and cannot be filled. Only valid for optional fields.
- abort: the situation cannot be recovered. Give "reason".

Never invent data values and never suggest navigating elsewhere.
Respond ONLY with a JSON object:
{"action": "...", "selector": "...", "wait_ms": 0, "reason": "...", "reasoning": "..."}"""


class RecoveryAdvisor:
    """
    Wraps a langchain chat model as a bounded decision service.

    Every call runs under its own timeout. Responses outside the closed action
    set raise ``AdvisorInvalidAction``; a slow service raises ``AdvisorTimeout``.
    """

    def __init__(self, model: Optional[Any] = None, timeout_seconds: Optional[float] = None):
        """
        Initialize the advisor.

        Args:
            model: Chat model exposing ``ainvoke``. If None, one is built from settings.
            timeout_seconds: Timeout for one decision; defaults to settings.
        """
        self.model = model if model is not None else self._create_model()
        self.timeout_seconds = timeout_seconds or settings.advisor_timeout_seconds
        self.logger = logger.bind(component="recovery_advisor")

    @property
    def is_available(self) -> bool:
        return self.model is not None

    def _create_model(self) -> Optional[Any]:
        """Create the decision model, or None when no API key is configured."""
        if settings.groq_api_key:
            return ChatGroq(
                model=settings.advisor_model,
                api_key=settings.groq_api_key,
                temperature=0.0,
                max_tokens=512,
            )
        if settings.openai_api_key:
            return ChatOpenAI(
                model=settings.advisor_fallback_model,
                api_key=settings.openai_api_key,
                temperature=0.0,
                max_tokens=512,
            )
        return None

    async def advise(self, situation: RecoverySituation) -> RecoveryAction:
        """
        Ask the decision service for one recovery action.

        Args:
            situation: The failure and the live page state

        Returns:
            A structurally valid RecoveryAction

        Raises:
            AdvisorTimeout: the service did not answer within the timeout.
            AdvisorInvalidAction: the answer was not a valid action, or the call failed.
        """
        if self.model is None:
            raise AdvisorInvalidAction("No decision service configured")

        messages = [
            SystemMessage(content=_SYSTEM_PROMPT),
            HumanMessage(content=self._build_prompt(situation)),
        ]
        self.logger.debug("Requesting recovery advice", situation=situation.summary(), attempt=situation.attempt)

        try:
            response = await asyncio.wait_for(self.model.ainvoke(messages), timeout=self.timeout_seconds)
        except asyncio.TimeoutError as e:
            self.logger.warning("Recovery advisor timed out", timeout=self.timeout_seconds)
            raise AdvisorTimeout(
                f"Decision service did not answer within {self.timeout_seconds}s",
                timeout=self.timeout_seconds,
            ) from e
        except Exception as e:
            self.logger.error("Recovery advisor call failed", error=str(e), error_type=type(e).__name__)
            raise AdvisorInvalidAction(f"Decision service failed: {e}") from e

        action = self.parse_action(getattr(response, "content", response))
        self.logger.info(
            "Recovery advice received",
            action=action.action.value,
            reasoning=action.reasoning[:200],
        )
        return action

    def _build_prompt(self, situation: RecoverySituation) -> str:
        snapshot = situation.snapshot
        parts = [
            f"FAILED ACTION: {situation.step}",
            f"PAGE: {situation.page or '(none)'}",
        ]
        if situation.field:
            required = "required" if situation.field_required else "optional"
            parts.append(f"FIELD: {situation.field} ({required})")
        parts.extend(
            [
                f"SELECTORS TRIED: {json.dumps(situation.selectors_tried)}",
                f"ERROR: [{situation.error_code}] {situation.error_message}",
                f"ATTEMPT: {situation.attempt} of {situation.budget}",
                "",
                "CURRENT PAGE STATE:",
                f"- URL: {snapshot.url}",
                f"- Title: {snapshot.title}",
                f"- Error messages: {json.dumps(snapshot.errors)}",
                f"- Success messages: {json.dumps(snapshot.successes)}",
                f"- Dialogs/modals visible: {json.dumps(snapshot.dialogs)}",
                f"- Form fields: {json.dumps(snapshot.form_fields[:15])}",
                f"- Visible text: {snapshot.text[:1000]}",
            ]
        )
        return "\n".join(parts)

    @staticmethod
    def parse_action(text: Any) -> RecoveryAction:
        """
        Parse a model response into a RecoveryAction.

        Raises:
            AdvisorInvalidAction: no JSON object, unknown action or missing arguments.
        """
        if not isinstance(text, str):
            text = str(text)
        match = _JSON_OBJECT.search(text)
        if match is None:
            raise AdvisorInvalidAction("Advisor response contained no JSON object", response=text[:500])
        try:
            payload = json.loads(match.group(0))
        except json.JSONDecodeError as e:
            raise AdvisorInvalidAction(f"Advisor response is not valid JSON: {e}", response=text[:500]) from e
        if not isinstance(payload, dict):
            raise AdvisorInvalidAction("Advisor response is not a JSON object", response=text[:500])

        # Accept "wait_seconds" as an alias
        if payload.get("wait_ms") is None and payload.get("wait_seconds") is not None:
            try:
                payload["wait_ms"] = int(float(payload["wait_seconds"]) * 1000)
            except (TypeError, ValueError):
                payload["wait_ms"] = None

        try:
            action = RecoveryAction.model_validate(
                {key: payload.get(key) for key in ("action", "selector", "wait_ms", "reason")}
                | {"reasoning": str(payload.get("reasoning") or "")}
            )
        except ValidationError as e:
            raise AdvisorInvalidAction(
                f"Advisor proposed an action outside the allowed set: {payload.get('action')!r}",
                response=text[:500],
            ) from e

        if action.action == RecoveryKind.RETRY_SELECTOR and not action.selector:
            raise AdvisorInvalidAction("retry_selector requires a selector", response=text[:500])
        if action.action == RecoveryKind.WAIT_AND_RETRY and action.wait_ms is None:
            raise AdvisorInvalidAction("wait_and_retry requires wait_ms", response=text[:500])
        return action


def create_recovery_advisor(model: Optional[Any] = None) -> RecoveryAdvisor:
    """Factory function to create a recovery advisor."""
    return RecoveryAdvisor(model=model)
