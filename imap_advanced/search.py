"""Structured search criteria → IMAP ``SEARCH`` tokens.

Criteria are a mapping such as ``{"seen": False, "subject": "invoice"}``.
A two-element ``header`` list (``["Message-ID", "<a@x>"]``) is normalized
into a ``{name: value}`` mapping before compilation.
"""

from __future__ import annotations

from collections.abc import Mapping
from datetime import date, datetime
from typing import Any

from .errors import ValidationError

_BOOLEAN_FLAGS = {
    "seen": ("SEEN", "UNSEEN"),
    "answered": ("ANSWERED", "UNANSWERED"),
    "flagged": ("FLAGGED", "UNFLAGGED"),
    "deleted": ("DELETED", "UNDELETED"),
    "draft": ("DRAFT", "UNDRAFT"),
}
_STRING_KEYS = {
    "from": "FROM",
    "to": "TO",
    "cc": "CC",
    "bcc": "BCC",
    "subject": "SUBJECT",
    "body": "BODY",
    "text": "TEXT",
    "keyword": "KEYWORD",
    "unKeyword": "UNKEYWORD",
}
_DATE_KEYS = {
    "since": "SINCE",
    "before": "BEFORE",
    "on": "ON",
    "sentSince": "SENTSINCE",
    "sentBefore": "SENTBEFORE",
    "sentOn": "SENTON",
}
_SIZE_KEYS = {"larger": "LARGER", "smaller": "SMALLER"}


def normalize_criteria(criteria: Mapping[str, Any] | None) -> dict[str, Any]:
    """Copy *criteria*, rewriting a ``[name, value]`` header into a mapping."""
    query = dict(criteria or {})
    header = query.get("header")
    if isinstance(header, (list, tuple)) and len(header) >= 2:
        query["header"] = {str(header[0]): str(header[1])}
    return query


def compile_criteria(criteria: Mapping[str, Any] | None) -> list[str]:
    """Translate normalized criteria into a flat list of IMAP search tokens."""
    return [token for group in compile_groups(criteria) for token in group]


def compile_groups(criteria: Mapping[str, Any] | None) -> list[list[str]]:
    """Translate criteria into token groups, one group per search key."""
    query = normalize_criteria(criteria)
    groups: list[list[str]] = []

    for key, value in query.items():
        if value is None:
            continue
        if key == "all":
            if value:
                groups.append(["ALL"])
        elif key in _BOOLEAN_FLAGS:
            positive, negative = _BOOLEAN_FLAGS[key]
            groups.append([positive if value else negative])
        elif key in _STRING_KEYS:
            groups.append([_STRING_KEYS[key], quote(str(value))])
        elif key in _DATE_KEYS:
            groups.append([_DATE_KEYS[key], _imap_date(value)])
        elif key in _SIZE_KEYS:
            groups.append([_SIZE_KEYS[key], str(_as_int(key, value))])
        elif key == "header":
            if not isinstance(value, Mapping):
                raise ValidationError("header criterion must be [name, value] or a mapping")
            for name, header_value in value.items():
                groups.append(["HEADER", quote(str(name)), quote(str(header_value))])
        elif key == "uid":
            groups.append(["UID", _sequence_set(value)])
        else:
            raise ValidationError(f"Unsupported search criterion: {key}")

    return groups or [["ALL"]]


def quote(value: str) -> str:
    """Quote a string argument for the IMAP wire."""
    escaped = value.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


def _imap_date(value: Any) -> str:
    if isinstance(value, str):
        try:
            value = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError as exc:
            raise ValidationError(f"Invalid search date: {value!r}") from exc
    if not isinstance(value, (date, datetime)):
        raise ValidationError(f"Invalid search date: {value!r}")
    # IMAP date search is day-granular
    return value.strftime("%d-%b-%Y")


def _as_int(key: str, value: Any) -> int:
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ValidationError(f"{key} must be an integer byte count") from exc


def _sequence_set(value: Any) -> str:
    if isinstance(value, int):
        return str(value)
    if isinstance(value, (list, tuple)):
        return ",".join(str(int(v)) for v in value)
    return str(value)
