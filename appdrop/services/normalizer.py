"""
Normalization of free-form release fields.

Changelog and custom-field input arrives as JSON text, plain text, or data
that is already structured. ``raw_field`` decides which once, at the
boundary; the ``normalize_*`` functions are pure and never parse.
"""

import json
from dataclasses import dataclass
from typing import Any, Optional, Union

ORIGIN_PREFIX = "origin/"

EMPTY_CHANGELOG_MESSAGE = (
    "No changelog was provided for this release. Possible reasons:\n\n"
    "- The developer did not write one\n"
    "- It got lost somewhere between CI and this server"
)


@dataclass(frozen=True)
class TextField:
    value: str


@dataclass(frozen=True)
class StructuredField:
    value: Any


RawField = Union[TextField, StructuredField]


def _parse_structured(text: str) -> Optional[Any]:
    """Return the decoded JSON array/object, or None for anything else."""
    stripped = text.strip()
    if not stripped or stripped[0] not in "[{":
        return None
    try:
        decoded = json.loads(stripped)
    except json.JSONDecodeError:
        return None
    return decoded if isinstance(decoded, (list, dict)) else None


def raw_field(value: Any) -> RawField:
    """Classify incoming field data.

    Text that decodes to a JSON array or object counts as structured; other
    text (including JSON scalars) stays text. Non-string values are
    structured already. ``None`` is treated as empty text.
    """
    if value is None:
        return TextField("")
    if isinstance(value, (TextField, StructuredField)):
        return value
    if isinstance(value, str):
        structured = _parse_structured(value)
        if structured is not None:
            return StructuredField(structured)
        return TextField(value)
    return StructuredField(value)


def normalize_changelog(raw: Any) -> Any:
    """Canonical changelog: structured data as-is, text as ``[{"message": line}]``."""
    field = raw_field(raw)
    if isinstance(field, StructuredField):
        return field.value
    if not field.value.strip():
        return []
    return [{"message": line} for line in field.value.splitlines() if line.strip()]


def normalize_custom_fields(raw: Any) -> Any:
    """Like ``normalize_changelog`` but plain text collapses to ``[]``."""
    field = raw_field(raw)
    if isinstance(field, StructuredField):
        return field.value
    return []


def empty_changelog_placeholder(use_default_changelog: bool = True) -> list:
    if not use_default_changelog:
        return []
    return [{"message": EMPTY_CHANGELOG_MESSAGE}]


def changelog_list(changelog: Any, use_default_changelog: bool = True) -> Any:
    """Changelog as shown to readers, with the placeholder for blank input."""
    if changelog is None or changelog == "" or changelog == [] or changelog == {}:
        return empty_changelog_placeholder(use_default_changelog)
    if not isinstance(changelog, (list, dict)):
        return [{"message": str(changelog)}]
    return changelog


def normalize_branch(raw: Optional[str]) -> Optional[str]:
    """Strip a leading ``origin/``; everything else passes through."""
    if not raw:
        return raw
    if raw.startswith(ORIGIN_PREFIX):
        return raw[len(ORIGIN_PREFIX):]
    return raw
