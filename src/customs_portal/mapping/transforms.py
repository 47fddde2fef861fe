"""Closed vocabulary of value transforms applied to resolved field values."""

import re
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Dict

from customs_portal.core.errors import ConfigurationError, InvalidFieldValue
from customs_portal.core.models import TransformType, ValueTransform

# d/m/Y style tokens used by portal authors, translated to strftime
_PHP_DATE_TOKENS = {
    "d": "%d",
    "j": "%-d",
    "m": "%m",
    "n": "%-m",
    "Y": "%Y",
    "y": "%y",
    "H": "%H",
    "i": "%M",
    "s": "%S",
    "M": "%b",
    "F": "%B",
}

_INPUT_DATE_FORMATS = ("%Y-%m-%d", "%d/%m/%Y", "%m/%d/%Y", "%d.%m.%Y", "%Y/%m/%d", "%d-%m-%Y")


def to_strftime(pattern: str) -> str:
    if "%" in pattern:
        return pattern
    return "".join(_PHP_DATE_TOKENS.get(char, char) for char in pattern)


def parse_date(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)
    text = str(value).strip()
    try:
        return datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        pass
    for candidate in _INPUT_DATE_FORMATS:
        try:
            return datetime.strptime(text, candidate)
        except ValueError:
            continue
    raise ValueError(f"Unrecognized date value: {text!r}")


def _format_date(value: Any, transform: ValueTransform) -> str:
    pattern = to_strftime(transform.format or "%Y-%m-%d")
    parsed = parse_date(value)
    # %-d / %-m are not portable; strip zero padding by hand
    if "%-d" in pattern or "%-m" in pattern:
        pattern = pattern.replace("%-d", str(parsed.day)).replace("%-m", str(parsed.month))
    return parsed.strftime(pattern)


def _format_number(value: Any, transform: ValueTransform) -> str:
    try:
        number = Decimal(str(value).replace(",", ""))
    except InvalidOperation as e:
        raise ValueError(f"Not a number: {value!r}") from e
    formatted = f"{number:,.{transform.decimals}f}"
    integer, _, fraction = formatted.partition(".")
    integer = integer.replace(",", transform.thousands_separator)
    return integer + (transform.decimal_separator + fraction if fraction else "")


_TRANSFORMS: Dict[TransformType, Callable[[Any, ValueTransform], Any]] = {
    TransformType.REMOVE_DOTS: lambda value, t: str(value).replace(".", ""),
    TransformType.DIGITS_ONLY: lambda value, t: re.sub(r"[^0-9]", "", str(value)),
    TransformType.STRIP: lambda value, t: str(value).strip(),
    TransformType.UPPERCASE: lambda value, t: str(value).upper(),
    TransformType.LOWERCASE: lambda value, t: str(value).lower(),
    TransformType.DATE_FORMAT: _format_date,
    TransformType.NUMBER_FORMAT: _format_number,
    TransformType.PREFIX: lambda value, t: f"{t.prefix}{value}",
    TransformType.SUFFIX: lambda value, t: f"{value}{t.suffix}",
    TransformType.MAP: lambda value, t: t.mappings.get(str(value), value),
    TransformType.TRUNCATE: lambda value, t: str(value)[: t.length] if t.length else value,
}


def apply_transform(value: Any, transform: ValueTransform) -> Any:
    """Apply one transform; malformed input values raise ``InvalidFieldValue``."""
    handler = _TRANSFORMS.get(transform.type)
    if handler is None:
        raise ConfigurationError(f"Unsupported transform '{transform.type}'")
    try:
        return handler(value, transform)
    except ValueError as e:
        raise InvalidFieldValue(
            f"Transform '{transform.type.value}' cannot handle value: {e}",
            transform=transform.type.value,
        ) from e
