"""Attachment filtering and projection into output metadata."""

from __future__ import annotations

import re
from dataclasses import dataclass

from pydantic import BaseModel, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from .errors import ValidationError
from .normalize import parse_csv
from .parser import ParsedAttachment

DEFAULT_CONTENT_TYPE = "application/octet-stream"
_MB = 1024 * 1024


class AttachmentFilter(BaseModel):
    """Size / MIME / filename constraints applied to parsed attachments."""

    model_config = {"frozen": True}

    max_size_mb: float = Field(default=25.0, description="Drop attachments larger than this")
    allowed_mime_types: str | list[str] = Field(
        default="",
        description="CSV or list of accepted MIME types; empty accepts all",
    )
    filename_regex: str = Field(default="", description="Pattern the filename must match")

    @field_validator("max_size_mb")
    @classmethod
    def _positive_size(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("max_size_mb must be positive")
        return value

    @field_validator("filename_regex")
    @classmethod
    def _compilable(cls, value: str) -> str:
        try:
            re.compile(value.strip())
        except re.error as exc:
            raise ValueError(f"invalid filename_regex: {exc}") from exc
        return value

    @property
    def max_bytes(self) -> int:
        return int(self.max_size_mb * _MB)

    @property
    def allowed(self) -> frozenset[str]:
        return frozenset(t.lower() for t in parse_csv(self.allowed_mime_types))

    @property
    def matcher(self) -> re.Pattern[str] | None:
        pattern = self.filename_regex.strip()
        return re.compile(pattern) if pattern else None

    def accepts(self, filename: str, content_type: str, size: int) -> bool:
        """Apply the size, MIME and filename checks in that order."""
        if size > self.max_bytes:
            return False
        if self.allowed and (content_type or "").lower() not in self.allowed:
            return False
        if self.matcher is not None and not self.matcher.search(filename):
            return False
        return True

    @classmethod
    def build(
        cls,
        *,
        max_size_mb: float | None = None,
        allowed_mime_types: str | list[str] | None = None,
        filename_regex: str | None = None,
    ) -> AttachmentFilter:
        """Construct a filter, reporting bad input as :class:`ValidationError`."""
        try:
            return cls(
                max_size_mb=25.0 if max_size_mb is None else max_size_mb,
                allowed_mime_types=allowed_mime_types or "",
                filename_regex=filename_regex or "",
            )
        except PydanticValidationError as exc:
            raise ValidationError(f"Malformed attachment filter: {exc}") from exc


@dataclass
class KeptAttachment:
    """An attachment that passed the filter, with its output name."""

    index: int
    filename: str
    content_type: str
    attachment: ParsedAttachment

    @property
    def size(self) -> int:
        return self.attachment.size


def select_attachments(
    attachments: list[ParsedAttachment],
    attachment_filter: AttachmentFilter,
) -> list[KeptAttachment]:
    """Return the attachments that survive the filter, indexed in kept order."""
    kept: list[KeptAttachment] = []
    for position, att in enumerate(attachments):
        filename = att.filename or f"attachment_{position}"
        if not attachment_filter.accepts(filename, att.content_type, att.size):
            continue
        kept.append(
            KeptAttachment(
                index=len(kept),
                filename=filename,
                content_type=att.content_type or DEFAULT_CONTENT_TYPE,
                attachment=att,
            )
        )
    return kept
