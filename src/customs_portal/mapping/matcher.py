"""Deterministic dropdown value matching against stored option tables."""

from dataclasses import dataclass
from typing import Any, Optional

from customs_portal.core.models import DropdownValue, FieldMapping
from customs_portal.utils.logging import get_logger

logger = get_logger(__name__)


def normalize(value: Any) -> str:
    return " ".join(str(value).split()).casefold()


@dataclass(frozen=True)
class MatchResult:
    """Outcome of matching one resolved value against a field's options."""
    option_value: Optional[str]
    matched_by: str
    option: Optional[DropdownValue] = None

    @property
    def is_unmapped(self) -> bool:
        return self.option_value is None


class DropdownValueMatcher:
    """
    Translates a resolved local value into an external option code.

    Options are scanned in stored sort order and the first one whose aliases
    match wins; there is no scoring, so authors control precedence by ordering.
    """

    def __init__(self):
        self.logger = logger.bind(component="dropdown_matcher")

    def match(self, mapping: FieldMapping, value: Any) -> MatchResult:
        options = mapping.ordered_options()
        if value is not None and str(value).strip():
            needle = normalize(value)
            for option in options:
                matched_by = self._match_option(option, needle)
                if matched_by:
                    self.logger.debug(
                        "Dropdown value matched",
                        field=mapping.label,
                        option=option.option_value,
                        matched_by=matched_by,
                    )
                    return MatchResult(option.option_value, matched_by, option)

        default = next((option for option in options if option.is_default), None)
        if default is not None:
            self.logger.debug("Dropdown fell back to default", field=mapping.label, option=default.option_value)
            return MatchResult(default.option_value, "default", default)

        self.logger.warning("Unmapped dropdown value", field=mapping.label, value=str(value))
        return MatchResult(None, "unmapped")

    def _match_option(self, option: DropdownValue, needle: str) -> Optional[str]:
        for alias in option.local_matches:
            normalized = normalize(alias)
            if normalized and (needle == normalized or needle in normalized):
                return "alias"
        if option.local_equivalent is not None and needle == normalize(option.local_equivalent):
            return "local_equivalent"
        if needle == normalize(option.option_value):
            return "option_value"
        if option.option_label and needle == normalize(option.option_label):
            return "option_label"
        return None
