"""Success / error indicator evaluation and external reference extraction."""

import re
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional

from customs_portal.core.models import Page
from customs_portal.utils.logging import get_logger

logger = get_logger(__name__)


class Outcome(str, Enum):
    """Classification of the page after a login or save."""
    SUCCESS = "success"
    ERROR = "error"
    AMBIGUOUS = "ambiguous"


@dataclass
class Evaluation:
    outcome: Outcome
    matched: Optional[str] = None
    message: Optional[str] = None
    reference: Optional[str] = None


def split_indicator(indicator: Optional[str]) -> List[str]:
    """
    Split an indicator into alternatives.

    ``text=Saved, .alert-success`` has two alternatives. A regular expression
    (``regex:...`` or ``/.../``) is always a single alternative.
    """
    if not indicator or not indicator.strip():
        return []
    stripped = indicator.strip()
    if stripped.startswith("regex:") or (stripped.startswith("/") and stripped.endswith("/") and len(stripped) > 1):
        return [stripped]
    return [part.strip() for part in stripped.split(",") if part.strip()]


def _regex(alternative: str) -> Optional[str]:
    if alternative.startswith("regex:"):
        return alternative[len("regex:"):]
    if alternative.startswith("/") and alternative.endswith("/") and len(alternative) > 1:
        return alternative[1:-1]
    return None


def extract_reference(text: str, pattern: Optional[str]) -> Optional[str]:
    """First capture group of ``pattern`` in ``text`` (whole match when there is no group)."""
    if not pattern:
        return None
    match = re.search(pattern, text)
    if match is None:
        return None
    value = match.group(1) if match.groups() else match.group(0)
    return value.strip() if value else None


class IndicatorEvaluator:
    """
    Classifies the current page against a Page's indicators.

    The success indicator is checked first, the error indicator second; a page
    matching neither is ambiguous. Indicator alternatives are ``text=...``
    (case-insensitive substring of the visible text), ``regex:...`` or
    ``/.../`` (searched in the visible text) or a selector whose presence counts.
    """

    def __init__(self):
        self.logger = logger.bind(component="indicator_evaluator")

    async def evaluate(self, session, page: Page) -> Evaluation:
        text = await session.page_text()

        success = await self._first_match(session, page.success_indicator, text)
        if success is not None:
            matched, message, group = success
            reference = extract_reference(text, page.reference_pattern) or group
            self.logger.info("Success indicator matched", page=page.name, indicator=matched, reference=reference)
            return Evaluation(Outcome.SUCCESS, matched=matched, message=message, reference=reference)

        error = await self._first_match(session, page.error_indicator, text)
        if error is not None:
            matched, message, _ = error
            self.logger.warning("Error indicator matched", page=page.name, indicator=matched, message=message)
            return Evaluation(Outcome.ERROR, matched=matched, message=message)

        return Evaluation(Outcome.AMBIGUOUS)

    async def _first_match(self, session, indicator: Optional[str], text: str):
        """Return ``(alternative, message, regex_group)`` for the first matching alternative."""
        for alternative in split_indicator(indicator):
            if alternative.startswith("text="):
                needle = alternative[len("text="):].strip().strip("\"'")
                if needle and needle.casefold() in text.casefold():
                    return alternative, needle, None
                continue

            pattern = _regex(alternative)
            if pattern is not None:
                match = re.search(pattern, text, re.IGNORECASE)
                if match:
                    group = match.group(1) if match.groups() else None
                    return alternative, match.group(0), group
                continue

            element_text = await session.element_text(alternative)
            if element_text is not None:
                return alternative, element_text or None, None
        return None


def create_indicator_evaluator() -> IndicatorEvaluator:
    return IndicatorEvaluator()
