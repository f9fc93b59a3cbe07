"""Helpers for decoding persisted attachment payloads."""

from __future__ import annotations

import base64
import binascii
import mimetypes

from .exceptions import UnsupportedAttachmentError
from .models import Attachment

TRUNCATION_MARKER = "\n... [truncated]"

TEXT_LIKE_TYPES: frozenset[str] = frozenset(
    {"application/json", "application/xml", "application/x-yaml", "application/yaml"}
)


def split_data_url(data: str, fallback_type: str = "") -> tuple[str, str]:
    """Return ``(mime_type, base64_payload)`` for a data URL or bare base64 string."""
    if data.startswith("data:") and "," in data:
        header, payload = data.split(",", 1)
        mime_type = header[len("data:") :].split(";", 1)[0]
        return mime_type or fallback_type, payload
    return fallback_type, data


def as_data_url(attachment: Attachment) -> str:
    mime_type, payload = split_data_url(attachment.data, attachment.type)
    return f"data:{mime_type};base64,{payload}"


def decode_payload(attachment: Attachment) -> bytes:
    """Decode the base64 payload, raising UnsupportedAttachmentError when corrupt."""
    _, payload = split_data_url(attachment.data, attachment.type)
    try:
        return base64.b64decode(payload, validate=False)
    except (binascii.Error, ValueError) as exc:
        raise UnsupportedAttachmentError(
            f"There was an error processing the attachment {attachment.name!r}.",
            detail=str(exc),
        ) from exc


def is_text_attachment(attachment: Attachment) -> bool:
    mime_type = attachment.type.lower()
    return mime_type.startswith("text/") or mime_type in TEXT_LIKE_TYPES


def is_pdf_attachment(attachment: Attachment) -> bool:
    return attachment.type.lower() == "application/pdf"


def extract_text(attachment: Attachment, max_chars: int) -> str:
    """Decode a text attachment, truncated to ``max_chars`` with a marker."""
    text = decode_payload(attachment).decode("utf-8", errors="replace")
    if len(text) > max_chars:
        return text[:max_chars] + TRUNCATION_MARKER
    return text


def guess_extension(mime_type: str) -> str:
    return mimetypes.guess_extension(mime_type.split(";", 1)[0].strip()) or ".bin"
