"""Content classification, sanitization and prompt construction.

Everything here is a pure function of its arguments so the monitor and the
orchestrator can share it without carrying state.
"""

from __future__ import annotations

import re
from typing import Optional

from contracts import ClipboardChangeEvent, ContentType
from clipassist.errors import UnsupportedContentError

MIN_CONTENT_LENGTH = 3
MAX_CONTENT_LENGTH = 10000
LONG_TEXT_THRESHOLD = 100
ABNORMAL_LINE_LENGTH = 200
PREVIEW_LENGTH = 100

_URL_RE = re.compile(r"^https?://.+", re.IGNORECASE)
_WWW_RE = re.compile(r"^www\.", re.IGNORECASE)
_EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
_CODE_KEYWORDS = ("function", "const ", "var ", "let ", "def ", "import ")
_WINDOWS_PATH_RE = re.compile(r"^(?:[A-Za-z]:\\|\\\\)[^\n]*$")
_POSIX_PATH_RE = re.compile(r"^(?:~|\.{1,2})?/\S*$")
_BLANK_RUN_RE = re.compile(r"\n\s*\n\s*\n")
_SPACE_RUN_RE = re.compile(r"[ \t]+")
_BINARY_MARKERS = ("\x00", "\ufffd")

_PROMPTS = {
    ContentType.CODE: (
        "Please analyze this code and provide a brief explanation or "
        "suggestions for improvement:\n\n{content}"
    ),
    ContentType.URL: (
        "This appears to be a URL. Please provide a brief description of "
        "what this link might contain:\n\n{content}"
    ),
    ContentType.EMAIL: (
        "This appears to be an email address. Please provide a brief "
        "analysis:\n\n{content}"
    ),
}
_DEFAULT_PROMPT = "Please provide a brief analysis or summary of this text:\n\n{content}"
_QUESTION_PROMPT = "Question: {question}\n\nPlease provide a helpful and informative response."


def detect_content_type(content: Optional[str]) -> ContentType:
    if not content or not content.strip():
        return ContentType.EMPTY

    trimmed = content.strip()

    if _URL_RE.match(trimmed) or _WWW_RE.match(trimmed):
        return ContentType.URL

    if _EMAIL_RE.match(trimmed):
        return ContentType.EMAIL

    if any(keyword in trimmed for keyword in _CODE_KEYWORDS):
        return ContentType.CODE
    if ("{" in trimmed and "}" in trimmed) or ("(" in trimmed and ")" in trimmed):
        return ContentType.CODE

    if len(trimmed) > LONG_TEXT_THRESHOLD and "." in trimmed:
        return ContentType.LONG_TEXT

    return ContentType.SHORT_TEXT


def is_valid_change(
    new_value: Optional[str],
    old_value: Optional[str],
    min_length: int = MIN_CONTENT_LENGTH,
    max_length: int = MAX_CONTENT_LENGTH,
) -> bool:
    """Check whether a clipboard transition may be emitted at all.

    Args:
        new_value: Freshly read clipboard text.
        old_value: Last emitted clipboard text.
        min_length: Minimum stripped length of ``new_value``.
        max_length: Maximum raw length of ``new_value``.

    Returns:
        True if the change passes every validity rule.
    """
    if new_value is None:
        return False
    old_value = old_value or ""
    if not new_value.strip() and not old_value.strip():
        return False
    if len(new_value.strip()) < min_length:
        return False
    if len(new_value) > max_length:
        return False
    return new_value != old_value


def _normalize(text: str) -> str:
    return " ".join(text.split()).casefold()


def is_significant_change(new_value: str, old_value: Optional[str]) -> bool:
    """Decide whether a change is worth sending to a model.

    A change is significant when the previous value was empty, when the
    length moved by more than half of the average length, when the content
    type changed, or when the text differs beyond whitespace and case.
    Whitespace-only or case-only edits are cosmetic.
    """
    if not old_value or not old_value.strip():
        return True

    length_diff = abs(len(new_value) - len(old_value))
    average_length = (len(new_value) + len(old_value)) / 2
    if length_diff > average_length * 0.5:
        return True

    if detect_content_type(new_value) != detect_content_type(old_value):
        return True

    return _normalize(new_value) != _normalize(old_value)


def _is_abnormal_line(line: str) -> bool:
    if len(line) <= ABNORMAL_LINE_LENGTH:
        return False
    whitespace = sum(1 for ch in line if ch.isspace())
    return whitespace < len(line) / 50


def looks_like_path(content: str) -> bool:
    trimmed = content.strip()
    if "\n" in trimmed:
        return False
    return bool(_WINDOWS_PATH_RE.match(trimmed) or _POSIX_PATH_RE.match(trimmed))


def is_unsupported_format(content: str) -> bool:
    if any(marker in content for marker in _BINARY_MARKERS):
        return True

    if looks_like_path(content):
        return True

    lines = content.split("\n")
    long_lines = [line for line in lines if _is_abnormal_line(line)]
    return len(long_lines) > len(lines) * 0.5


def sanitize_content(content: str) -> str:
    sanitized = content.replace("\x00", "")
    sanitized = sanitized.replace("\r\n", "\n").replace("\r", "\n")
    sanitized = _BLANK_RUN_RE.sub("\n\n", sanitized)
    sanitized = _SPACE_RUN_RE.sub(" ", sanitized)
    sanitized = "\n".join(line.strip() for line in sanitized.split("\n"))
    return sanitized.strip()


def prepare_clipboard_text(
    raw: Optional[str],
    min_length: int = MIN_CONTENT_LENGTH,
    max_length: int = MAX_CONTENT_LENGTH,
) -> str:
    """Validate and sanitize raw clipboard text before prompt construction.

    Raises:
        UnsupportedContentError: If the text is empty, out of bounds, looks
            binary or looks like a filesystem path.
    """
    if not isinstance(raw, str):
        raise UnsupportedContentError("Invalid clipboard content: not a string")

    trimmed = raw.strip()
    if not trimmed:
        raise UnsupportedContentError("Clipboard content is empty after processing")
    if len(trimmed) < min_length:
        raise UnsupportedContentError(
            f"Clipboard content is too short (minimum {min_length} characters)"
        )
    if len(trimmed) > max_length:
        raise UnsupportedContentError(
            f"Clipboard content is too long (maximum {max_length:,} characters)"
        )
    if is_unsupported_format(trimmed):
        raise UnsupportedContentError("Unsupported clipboard format detected")

    sanitized = sanitize_content(trimmed)
    if not sanitized:
        raise UnsupportedContentError("Content became empty after sanitization")
    return sanitized


def build_prompt_for(content: str, content_type: ContentType) -> str:
    template = _PROMPTS.get(content_type, _DEFAULT_PROMPT)
    return template.format(content=content)


def build_prompt(event: ClipboardChangeEvent) -> str:
    content = prepare_clipboard_text(event.new_value)
    return build_prompt_for(content, event.content_type)


def build_question_prompt(question: str) -> str:
    return _QUESTION_PROMPT.format(question=sanitize_content(question))


def preview(text: Optional[str], limit: int = PREVIEW_LENGTH) -> str:
    if not text:
        return ""
    if len(text) <= limit:
        return text
    return text[:limit] + "..."
