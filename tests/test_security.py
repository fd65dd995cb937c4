"""Tests for output sanitization, PII redaction and validation."""

import pytest

from docsearch_mcp.errors import OutputValidationFailed
from docsearch_mcp.security import (
    has_potential_pii,
    redact_pii,
    sanitize_output,
    scan_output,
    validate_output,
)
from docsearch_mcp.utils.constants import REDACTION_PLACEHOLDER

NASTY_INPUTS = [
    "",
    "   ",
    "<",
    ">",
    "<<>>",
    "a < b > c",
    "<b>bold</b> <i>and</i>\n\n\n\nitalic",
    "<script>alert(1)</script>visible",
    "<STYLE type='text/css'>p {}</STYLE>text",
    "tab\there\r\nand\x00nul\x07bell\x9fc1",
    "\n\n  \t \n",
    "trailing   \n\n",
    "<a href='x'>link</a>" * 50,
    "x" * 20_000,
    "mixed  nbsp and line sep",
]


# ---------------------------------------------------------------------------
# sanitize_output
# ---------------------------------------------------------------------------


class TestSanitizeOutput:
    @pytest.mark.parametrize("raw", NASTY_INPUTS)
    def test_total_and_idempotent(self, raw: str) -> None:
        once = sanitize_output(raw)
        assert isinstance(once, str)
        assert sanitize_output(once) == once

    @pytest.mark.parametrize("raw", NASTY_INPUTS)
    def test_respects_max_length(self, raw: str) -> None:
        assert len(sanitize_output(raw, max_length=50)) <= 50

    def test_non_string_input(self) -> None:
        assert sanitize_output(12345) == "12345"
        assert sanitize_output(None) == "None"

    def test_strips_script_and_tags(self) -> None:
        raw = "<p>Use <code>Depends</code></p><script>steal()</script>"
        assert sanitize_output(raw) == "Use Depends"

    def test_collapses_whitespace(self) -> None:
        raw = "line one   \n\n\n\n  line two\n  line three \t end"
        assert sanitize_output(raw) == "line one\n\nline two\nline three end"

    def test_removes_control_characters_keeps_newlines(self) -> None:
        assert sanitize_output("a\x00b\x1bc\nd") == "abc\nd"

    def test_plain_text_unchanged(self) -> None:
        text = "FastAPI uses Pydantic models for request validation."
        assert sanitize_output(text) == text

    def test_control_only_input_becomes_empty(self) -> None:
        """An answer of only control characters sanitizes to an empty string."""
        assert sanitize_output("\x00\x01\x02\x7f") == ""


# ---------------------------------------------------------------------------
# has_potential_pii
# ---------------------------------------------------------------------------

PII_SAMPLES = {
    "email": "write to jane.doe@example.com",
    "credit_card": "card 4111 1111 1111 1111",
    "ssn": "ssn 123-45-6789",
    "phone_nanp": "call (555) 123-4567",
    "phone_dashed": "call 555-123-4567",
    "phone_pl": "dzwon +48 601 234 567",
    "pesel": "PESEL 44051401359",
    "bank_account": "konto PL61 1090 1014 0000 0712 1981 2874",
    "id_card": "dowod ABC123456",
    "passport": "paszport AB1234567",
}


class TestPrefilter:
    @pytest.mark.parametrize("name", sorted(PII_SAMPLES))
    def test_flags_every_pattern_sample(self, name: str) -> None:
        assert has_potential_pii(PII_SAMPLES[name]) is True

    @pytest.mark.parametrize("name", sorted(PII_SAMPLES))
    def test_prefilter_sound_against_redaction(self, name: str) -> None:
        """Whenever redaction changes text, the pre-filter said True."""
        text = PII_SAMPLES[name]
        redacted = redact_pii(text, redact_emails=True).redacted_text
        if redacted != text:
            assert has_potential_pii(text)

    def test_plain_prose_skips_scan(self) -> None:
        assert has_potential_pii("Use Depends() to inject a database session.") is False

    def test_few_digits_skip_scan(self) -> None:
        assert has_potential_pii("return status 404 or 422 on failure") is False

    def test_sql_comment_marker(self) -> None:
        assert has_potential_pii("SELECT 1 -- comment") is True


# ---------------------------------------------------------------------------
# redact_pii
# ---------------------------------------------------------------------------


class TestRedactPII:
    @pytest.mark.parametrize(
        ("text", "category"),
        [
            ("card 4111 1111 1111 1111 ok", "credit_card"),
            ("card 4111-1111-1111-1111 ok", "credit_card"),
            ("ssn 123-45-6789 ok", "ssn"),
            ("call 555-123-4567 ok", "phone"),
            ("call (555) 123-4567 ok", "phone"),
            ("dzwon +48 601 234 567 ok", "phone"),
            ("pesel 44051401359 ok", "pesel"),
            ("konto 61109010140000071219812874 ok", "bank_account"),
            ("konto PL61 1090 1014 0000 0712 1981 2874 ok", "bank_account"),
            ("dowod ABC123456 ok", "id_card"),
            ("paszport AB1234567 ok", "passport"),
        ],
    )
    def test_category_detected_and_replaced(self, text: str, category: str) -> None:
        result = redact_pii(text)
        assert category in result.detected_categories
        assert REDACTION_PLACEHOLDER in result.redacted_text
        assert result.redacted_text.endswith(" ok")
        assert not any(ch.isdigit() for ch in result.redacted_text)

    def test_email_kept_by_default(self) -> None:
        text = "Contact support@fastapi.example for help."
        result = redact_pii(text)
        assert result.redacted_text == text
        assert result.detected_categories == []

    def test_email_redacted_when_enabled(self) -> None:
        result = redact_pii("Contact support@fastapi.example now.", redact_emails=True)
        assert result.redacted_text == f"Contact {REDACTION_PLACEHOLDER} now."
        assert result.detected_categories == ["email"]

    def test_categories_deduplicated(self) -> None:
        result = redact_pii("a 555-123-4567 b 555-987-6543")
        assert result.detected_categories == ["phone"]
        assert result.redacted_text.count(REDACTION_PLACEHOLDER) == 2

    def test_card_not_also_reported_as_phone(self) -> None:
        result = redact_pii("card 4111 1111 1111 1111")
        assert result.detected_categories == ["credit_card"]

    def test_redaction_is_idempotent(self) -> None:
        once = redact_pii("ssn 123-45-6789, card 4111111111111111").redacted_text
        twice = redact_pii(once)
        assert twice.redacted_text == once
        assert twice.detected_categories == []

    def test_ordinary_numbers_untouched(self) -> None:
        text = "Set the port to 8000 and timeout to 30 seconds."
        assert redact_pii(text).redacted_text == text


# ---------------------------------------------------------------------------
# validate_output
# ---------------------------------------------------------------------------


class TestValidateOutput:
    def test_accepts_normal_text(self) -> None:
        validate_output("Some answer.")

    def test_rejects_empty(self) -> None:
        with pytest.raises(OutputValidationFailed) as exc_info:
            validate_output("   ")
        assert "output is empty" in exc_info.value.errors

    def test_rejects_non_string(self) -> None:
        with pytest.raises(OutputValidationFailed):
            validate_output(["not", "text"])

    def test_rejects_too_long(self) -> None:
        with pytest.raises(OutputValidationFailed):
            validate_output("x" * 11, max_length=10)


# ---------------------------------------------------------------------------
# scan_output
# ---------------------------------------------------------------------------


class TestScanOutput:
    def test_fast_path_skips_redaction(self) -> None:
        report = scan_output("<p>Use Depends for injection.</p>")
        assert report.text == "Use Depends for injection."
        assert report.full_scan is False
        assert report.pii_redacted is False

    def test_full_scan_redacts(self) -> None:
        report = scan_output("Call 555-123-4567 for support.")
        assert report.full_scan is True
        assert report.pii_categories == ["phone"]
        assert "555" not in report.text
        assert report.to_dict() == {
            "pii_redacted": True,
            "pii_categories": ["phone"],
            "sanitized": True,
            "full_scan": True,
        }

    def test_markup_only_answer_fails_validation(self) -> None:
        with pytest.raises(OutputValidationFailed):
            scan_output("<div><script>x()</script></div>")

    def test_long_answer_is_truncated_not_rejected(self) -> None:
        report = scan_output("word " * 5000, max_length=100)
        assert len(report.text) <= 100

    def test_email_flag_passed_through(self) -> None:
        report = scan_output("mail me@example.com", redact_emails=True)
        assert report.pii_categories == ["email"]

    def test_phone_number_in_prose(self) -> None:
        report = scan_output("call me at 555-123-4567")
        assert report.text == f"call me at {REDACTION_PLACEHOLDER}"
        assert report.pii_categories == ["phone"]
