"""Output security for search answers: sanitize, redact PII, validate.

``sanitize_output`` is total and idempotent. ``has_potential_pii`` is a
regex-free pre-filter that decides whether the full redaction scan runs;
it must return True for any text the full pattern set would match.
Every pattern below needs an ``@``, at least 9 digits, or at least 6
digits next to uppercase letters, and the pre-filter checks exactly
those conditions (plus ``--``).
"""

from __future__ import annotations

import logging
import re
import time
from dataclasses import dataclass, field
from typing import Any

from docsearch_mcp.errors import OutputValidationFailed
from docsearch_mcp.utils.constants import MAX_OUTPUT_CHARS, REDACTION_PLACEHOLDER

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Sanitization
# ---------------------------------------------------------------------------

_SCRIPT_STYLE_RE = re.compile(r"<(script|style)\b[^>]*>.*?</\1\s*>", re.IGNORECASE | re.DOTALL)
_TAG_RE = re.compile(r"<[^>]*>")
# C0 controls except \t \n \r, plus DEL and C1
_CONTROL_RE = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f-\x9f]")
_WHITESPACE_RE = re.compile(r"\s+")


def _collapse_run(match: re.Match[str]) -> str:
    newlines = match.group(0).count("\n")
    if newlines >= 2:
        return "\n\n"
    if newlines == 1:
        return "\n"
    return " "


def sanitize_output(raw: Any, max_length: int = MAX_OUTPUT_CHARS) -> str:
    """Strip markup and control characters, normalize whitespace, cap length.

    Never raises. Non-string input is coerced with ``str()``.
    """
    text = raw if isinstance(raw, str) else str(raw)
    text = _SCRIPT_STYLE_RE.sub("", text)
    text = _TAG_RE.sub("", text)
    text = _CONTROL_RE.sub("", text)
    text = _WHITESPACE_RE.sub(_collapse_run, text).strip()
    if len(text) > max_length:
        text = text[:max_length].rstrip()
    return text


# ---------------------------------------------------------------------------
# PII detection / redaction
# ---------------------------------------------------------------------------

_PREFILTER_MIN_DIGITS = 9
_PREFILTER_MIN_DIGITS_WITH_LETTERS = 6

# Priority order: most specific first. A span redacted by an earlier
# pattern becomes the placeholder, which holds no digits, so later
# patterns never re-match it.
_PII_PATTERNS: list[tuple[str, re.Pattern[str]]] = [
    # Polish NRB / IBAN: 26 digits, optionally grouped by four
    ("bank_account", re.compile(r"(?<![\w])(?:PL ?)?\d{2}(?: ?\d{4}){6}(?!\d)", re.ASCII)),
    ("credit_card", re.compile(r"(?<!\d)\d{4}[ -]?\d{4}[ -]?\d{4}[ -]?\d{4}(?!\d)", re.ASCII)),
    ("pesel", re.compile(r"(?<!\d)\d{11}(?!\d)", re.ASCII)),
    ("ssn", re.compile(r"(?<!\d)\d{3}-\d{2}-\d{4}(?!\d)", re.ASCII)),
    # NANP-style: (555) 123-4567, 555-123-4567, +1 555.123.4567
    (
        "phone",
        re.compile(
            r"(?<![\w+])(?:\+\d{1,3}[ .-]?)?(?:\(\d{3}\)[ .-]?|\d{3}[ .-]?)\d{3}[ .-]?\d{4}(?!\d)",
            re.ASCII,
        ),
    ),
    # Polish mobile: +48 123 456 789, 123-456-789
    ("phone", re.compile(r"(?<![\w+])(?:\+48[ -]?)?\d{3}[ -]\d{3}[ -]\d{3}(?!\d)", re.ASCII)),
    ("id_card", re.compile(r"\b[A-Z]{3} ?\d{6}\b", re.ASCII)),
    ("passport", re.compile(r"\b[A-Z]{2} ?\d{7}\b", re.ASCII)),
]

_EMAIL_PATTERN = ("email", re.compile(r"[\w.+-]+@[\w-]+(?:\.[\w-]+)+", re.ASCII))


@dataclass(frozen=True)
class RedactionResult:
    """Redacted text plus the PII categories found (deduplicated)."""

    redacted_text: str
    detected_categories: list[str] = field(default_factory=list)


def has_potential_pii(text: str) -> bool:
    """Cheap structural check. False means the full scan can be skipped.

    False positives only cost a scan; false negatives would leak PII.
    """
    if "@" in text or "--" in text:
        return True
    digits = 0
    has_upper = False
    for ch in text:
        if ch.isdigit():
            digits += 1
            if digits >= _PREFILTER_MIN_DIGITS:
                return True
        elif not has_upper and ch.isupper():
            has_upper = True
    return has_upper and digits >= _PREFILTER_MIN_DIGITS_WITH_LETTERS


def redact_pii(
    text: str,
    *,
    redact_emails: bool = False,
    placeholder: str = REDACTION_PLACEHOLDER,
) -> RedactionResult:
    """Replace PII matches with ``placeholder`` in fixed priority order."""
    patterns = list(_PII_PATTERNS)
    if redact_emails:
        patterns.insert(0, _EMAIL_PATTERN)

    detected: list[str] = []
    for category, pattern in patterns:
        text, count = pattern.subn(placeholder, text)
        if count and category not in detected:
            detected.append(category)
    return RedactionResult(redacted_text=text, detected_categories=detected)


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


def validate_output(text: Any, max_length: int = MAX_OUTPUT_CHARS) -> None:
    """Raise OutputValidationFailed unless ``text`` is a non-blank str within limits."""
    errors: list[str] = []
    if not isinstance(text, str):
        errors.append(f"expected string output, got {type(text).__name__}")
    else:
        if not text.strip():
            errors.append("output is empty")
        if len(text) > max_length:
            errors.append(f"output exceeds {max_length} characters ({len(text)})")
    if errors:
        raise OutputValidationFailed(errors)


# ---------------------------------------------------------------------------
# Full scan
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SecurityReport:
    """Processed answer plus what the security pass did to it."""

    text: str
    pii_categories: list[str]
    full_scan: bool
    sanitized: bool = True

    @property
    def pii_redacted(self) -> bool:
        return bool(self.pii_categories)

    def to_dict(self) -> dict[str, Any]:
        return {
            "pii_redacted": self.pii_redacted,
            "pii_categories": list(self.pii_categories),
            "sanitized": self.sanitized,
            "full_scan": self.full_scan,
        }


def scan_output(
    raw: Any,
    *,
    max_length: int = MAX_OUTPUT_CHARS,
    redact_emails: bool = False,
    tool_name: str = "",
) -> SecurityReport:
    """Sanitize, redact (unless the pre-filter clears the text), validate.

    Raises:
        OutputValidationFailed: if the processed text is empty or too long.
    """
    started = time.perf_counter()
    text = sanitize_output(raw, max_length)

    full_scan = has_potential_pii(text)
    categories: list[str] = []
    if full_scan:
        logger.debug("PII indicators present, running full redaction.")
        result = redact_pii(text, redact_emails=redact_emails)
        text = result.redacted_text
        categories = result.detected_categories
    else:
        logger.debug("Fast path: no PII indicators, redaction skipped.")

    elapsed_ms = (time.perf_counter() - started) * 1000
    logger.info(
        "Security processing took %.1fms (PII scan: %s)",
        elapsed_ms, "FULL" if full_scan else "SKIPPED",
    )
    if categories:
        # Category names only, never matched content
        logger.warning("Tool %s: redacted PII types: %s", tool_name, ", ".join(categories))

    validate_output(text, max_length)
    return SecurityReport(text=text, pii_categories=categories, full_scan=full_scan)
