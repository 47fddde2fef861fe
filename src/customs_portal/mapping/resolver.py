"""Field value resolution: static value, local lookup, default, transform, truncation."""

from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Mapping, Optional

from customs_portal.core.errors import MissingRequiredValue, UnmappedDropdownValue
from customs_portal.core.models import FieldKind, FieldMapping
from customs_portal.mapping.matcher import DropdownValueMatcher, MatchResult
from customs_portal.mapping.transforms import apply_transform

_MISSING = object()


@dataclass
class ResolvedValue:
    """A field value ready to be typed, selected or checked."""
    value: Any
    source: str
    raw: Any = None
    truncated: bool = False
    match: Optional[MatchResult] = None
    warning: Optional[UnmappedDropdownValue] = None

    @property
    def is_empty(self) -> bool:
        return is_empty(self.value)


def is_empty(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def lookup_path(bundle: Any, path: str) -> Any:
    """Walk a dotted path through mappings, attributes and list indices."""
    current = bundle
    for part in path.split("."):
        if current is None:
            return None
        if isinstance(current, Mapping):
            current = current.get(part, _MISSING)
        elif isinstance(current, (list, tuple)):
            if not part.isdigit() or int(part) >= len(current):
                return None
            current = current[int(part)]
        else:
            current = getattr(current, part, _MISSING)
        if current is _MISSING:
            return None
    return current


def _scalar(value: Any) -> Any:
    """Reduce a looked-up value to a scalar, or None when it is a container."""
    if isinstance(value, (str, bool, int, float, Decimal, date, datetime)):
        return value
    return None


def _truncatable(value: Any) -> bool:
    return isinstance(value, (str, int, float, Decimal)) and not isinstance(value, bool)


class FieldValueResolver:
    """
    Produces the exact value for one field mapping from a data bundle.

    Precedence is static value, then the dotted local lookup, then the default.
    The resolver is pure: it never touches the browser and never mutates the bundle.
    """

    def __init__(self, matcher: Optional[DropdownValueMatcher] = None):
        self.matcher = matcher or DropdownValueMatcher()

    def resolve(self, mapping: FieldMapping, bundle: Mapping[str, Any], page: Optional[str] = None,
                line_number: Optional[int] = None) -> ResolvedValue:
        """
        Resolve a mapping against a bundle.

        Raises:
            MissingRequiredValue: the field is required and nothing resolved,
                including a select whose value matched no option and no default.
            InvalidFieldValue: the transform could not handle the value.
        """
        raw, source = self._select(mapping, bundle)
        value = raw
        if mapping.transform is not None and not is_empty(raw):
            value = apply_transform(value, mapping.transform)
        if is_empty(value):
            if mapping.is_required:
                raise MissingRequiredValue(mapping.label, mapping.local_field, page, line_number)
            return ResolvedValue(value=None, source="unresolved", raw=raw)

        truncated = False
        if mapping.max_length and _truncatable(value) and len(str(value)) > mapping.max_length:
            value = str(value)[: mapping.max_length]
            truncated = True

        resolved = ResolvedValue(value=value, source=source, raw=raw, truncated=truncated)
        if mapping.kind == FieldKind.SELECT and mapping.dropdown_values:
            self._apply_match(mapping, resolved, page, line_number)
        return resolved

    def _select(self, mapping: FieldMapping, bundle: Mapping[str, Any]) -> tuple:
        if mapping.static_value is not None:
            return mapping.static_value, "static"
        if mapping.local_field:
            local = _scalar(lookup_path(bundle, mapping.local_field))
            if not is_empty(local):
                return local, "local"
        if mapping.default_value is not None:
            return mapping.default_value, "default"
        return None, "unresolved"

    def _apply_match(self, mapping: FieldMapping, resolved: ResolvedValue, page: Optional[str],
                     line_number: Optional[int]) -> None:
        match = self.matcher.match(mapping, resolved.value)
        resolved.match = match
        if match.is_unmapped:
            if mapping.is_required:
                raise MissingRequiredValue(mapping.label, mapping.local_field, page, line_number)
            resolved.warning = UnmappedDropdownValue(mapping.label, str(resolved.value))
            resolved.value = None
        else:
            resolved.value = match.option_value
