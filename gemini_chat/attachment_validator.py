from __future__ import annotations

import base64
from dataclasses import dataclass
from typing import Iterable, Optional, Tuple

from .config import DEFAULT_ALLOWED_MIME_TYPES, DEFAULT_MAX_ATTACHMENT_BYTES
from .errors import AttachmentErrorKind, AttachmentRejected
from .models import Attachment


@dataclass(frozen=True)
class FileCandidate:
    """File metadata checked before its payload may enter a message."""
    mime_type: str
    size: int
    name: Optional[str] = None


class AttachmentValidator:
    """Size/type policy gate for user-supplied attachments."""

    def __init__(
        self,
        max_bytes: int = DEFAULT_MAX_ATTACHMENT_BYTES,
        allowed_mime_types: Iterable[str] = DEFAULT_ALLOWED_MIME_TYPES,
    ) -> None:
        self._max_bytes = max_bytes
        self._allowed: Tuple[str, ...] = tuple(mime.lower() for mime in allowed_mime_types)

    @property
    def max_bytes(self) -> int:
        return self._max_bytes

    def validate(self, candidate: FileCandidate) -> FileCandidate:
        """Purpose: Check a candidate file against the size ceiling and type allow-list.
        Inputs/Outputs: Input is a FileCandidate; returns it unchanged when accepted.
        Side Effects / State: None; pure predicate.
        Dependencies: Uses the configured max_bytes and allow-list.
        Failure Modes: Raises AttachmentRejected(TOO_LARGE) or (UNSUPPORTED_TYPE).
        If Removed: Oversized or unsupported files reach the model and fail with 400.
        Testing Notes: Boundary at exactly max_bytes is accepted; one byte more is not.
        """
        # Size is checked first so huge files are rejected regardless of type.
        label = candidate.name or "attachment"
        if candidate.size > self._max_bytes:
            limit_mb = self._max_bytes // (1024 * 1024)
            raise AttachmentRejected(
                AttachmentErrorKind.TOO_LARGE,
                f"File {label} is too large. Max {limit_mb}MB.",
            )
        if candidate.mime_type.lower() not in self._allowed:
            raise AttachmentRejected(
                AttachmentErrorKind.UNSUPPORTED_TYPE,
                f"File {label} has unsupported type {candidate.mime_type!r}.",
            )
        return candidate

    def encode(self, candidate: FileCandidate, payload: bytes) -> Attachment:
        return Attachment(
            mime_type=candidate.mime_type,
            data=base64.b64encode(payload).decode("ascii"),
            name=candidate.name,
        )

    def prepare(self, name: Optional[str], mime_type: str, payload: bytes) -> Attachment:
        """Validate raw bytes and return an immutable, encoded Attachment."""
        candidate = self.validate(FileCandidate(mime_type=mime_type, size=len(payload), name=name))
        return self.encode(candidate, payload)
