"""Tests for the recovery advisor."""

import asyncio
import json
from unittest.mock import AsyncMock, MagicMock

import pytest
from hypothesis import given, strategies as st
from langchain_core.messages import AIMessage

from customs_portal.browser.session import PageSnapshot
from customs_portal.core.errors import AdvisorInvalidAction, AdvisorTimeout
from customs_portal.workflow.advisor import (
    RecoveryAction,
    RecoveryAdvisor,
    RecoveryKind,
    RecoverySituation,
)


def situation(**overrides):
    data = dict(
        step="fill",
        page="td_entry",
        field="Carrier",
        field_required=False,
        selectors_tried=['select[name="carrier"]'],
        error_code="selector_not_found",
        error_message="No selector candidate matched 'Carrier'",
        attempt=1,
        budget=3,
        snapshot=PageSnapshot(url="https://caps.example.gov/TDDataEntry", title="TD", text="TD Data Entry"),
    )
    data.update(overrides)
    return RecoverySituation(**data)


class TestParseAction:
    """Test cases for RecoveryAdvisor.parse_action."""

    def test_plain_json(self):
        action = RecoveryAdvisor.parse_action('{"action": "retry_selector", "selector": "#carrier", "reasoning": "id"}')

        assert action.action == RecoveryKind.RETRY_SELECTOR
        assert action.selector == "#carrier"
        assert action.reasoning == "id"

    def test_json_wrapped_in_prose(self):
        text = 'Looking at the page...\n```json\n{"action": "dismiss_dialog"}\n```'

        assert RecoveryAdvisor.parse_action(text).action == RecoveryKind.DISMISS_DIALOG

    def test_wait_seconds_alias(self):
        action = RecoveryAdvisor.parse_action('{"action": "wait_and_retry", "wait_seconds": 2.5}')

        assert action.wait_ms == 2500

    @pytest.mark.parametrize(
        "text",
        [
            "I would click the button",
            '{"action": "navigate_home"}',
            '{"action": "retry_selector"}',
            '{"action": "wait_and_retry"}',
            '{"action": "abort", ',
            '{"action": "wait_and_retry", "wait_ms": -5}',
        ],
    )
    def test_invalid_responses(self, text):
        with pytest.raises(AdvisorInvalidAction) as exc_info:
            RecoveryAdvisor.parse_action(text)

        assert exc_info.value.code == "advisor_invalid_action"

    @given(action=st.text(min_size=1, max_size=20).filter(lambda a: a not in {k.value for k in RecoveryKind}))
    def test_actions_outside_closed_set_are_rejected(self, action):
        with pytest.raises(AdvisorInvalidAction):
            RecoveryAdvisor.parse_action(json.dumps({"action": action, "selector": "#x", "wait_ms": 1}))

    def test_details_only_carry_set_arguments(self):
        action = RecoveryAction(action=RecoveryKind.ABORT, reason="Portal is down")

        assert action.details() == {"reason": "Portal is down"}


class TestRecoveryAdvisor:
    """Test cases for RecoveryAdvisor.advise."""

    @pytest.mark.asyncio
    async def test_advise_returns_parsed_action(self):
        model = MagicMock()
        model.ainvoke = AsyncMock(
            return_value=AIMessage(content='{"action": "skip_field", "reasoning": "optional field absent"}')
        )
        advisor = RecoveryAdvisor(model=model, timeout_seconds=5)

        action = await advisor.advise(situation())

        assert action.action == RecoveryKind.SKIP_FIELD
        messages = model.ainvoke.call_args.args[0]
        assert "FIELD: Carrier (optional)" in messages[1].content
        assert "ATTEMPT: 1 of 3" in messages[1].content

    @pytest.mark.asyncio
    async def test_slow_service_times_out(self):
        async def slow(_messages):
            await asyncio.sleep(1)

        model = MagicMock()
        model.ainvoke = slow
        advisor = RecoveryAdvisor(model=model, timeout_seconds=0.01)

        with pytest.raises(AdvisorTimeout) as exc_info:
            await advisor.advise(situation())

        assert exc_info.value.code == "advisor_timeout"

    @pytest.mark.asyncio
    async def test_service_failure_is_invalid_action(self):
        model = MagicMock()
        model.ainvoke = AsyncMock(side_effect=RuntimeError("rate limited"))
        advisor = RecoveryAdvisor(model=model, timeout_seconds=5)

        with pytest.raises(AdvisorInvalidAction, match="rate limited"):
            await advisor.advise(situation())

    @pytest.mark.asyncio
    async def test_no_model_configured(self, monkeypatch):
        monkeypatch.setattr(RecoveryAdvisor, "_create_model", lambda self: None)
        advisor = RecoveryAdvisor()

        assert not advisor.is_available
        with pytest.raises(AdvisorInvalidAction):
            await advisor.advise(situation())


def test_situation_summary():
    assert situation().summary() == (
        "selector_not_found during fill on 'td_entry' field 'Carrier': No selector candidate matched 'Carrier'"
    )
