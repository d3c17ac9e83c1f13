"""Tests for webhook signature verification and prompt templates."""

import pytest

from fleet_orchestrator.core.prompts import build_prompt
from fleet_orchestrator.core.signatures import compute_signature, verify_signature

BODY = b'{"event":"task.completed","task":{"id":"bb-1"}}'


class TestSignatures:
    def test_valid_signature(self):
        sig = compute_signature("s3cret", BODY)
        assert verify_signature(BODY, sig, "s3cret")

    def test_known_digest(self):
        # HMAC-SHA256("key", "The quick brown fox jumps over the lazy dog")
        assert compute_signature("key", b"The quick brown fox jumps over the lazy dog") == (
            "f7bc83f430538424b13298e6aa6fb143ef4d59a14946175997479dbc2d1a3cd8"
        )

    def test_tampered_body_rejected(self):
        sig = compute_signature("s3cret", BODY)
        tampered = BODY.replace(b"bb-1", b"bb-2")
        assert not verify_signature(tampered, sig, "s3cret")

    def test_wrong_secret_rejected(self):
        sig = compute_signature("other", BODY)
        assert not verify_signature(BODY, sig, "s3cret")

    def test_non_ascii_signature_rejected(self):
        assert not verify_signature(BODY, "\u00e9abc", "s3cret")
        assert not verify_signature(BODY, "\u00c3\u00a9" + "0" * 62, "s3cret")

    def test_missing_signature_rejected(self):
        assert not verify_signature(BODY, None, "s3cret")
        assert not verify_signature(BODY, "", "s3cret")

    def test_no_secret_accepts_everything(self):
        assert verify_signature(BODY, None, None)
        assert verify_signature(BODY, "garbage", "")


class TestBuildPrompt:
    def test_custom_passes_through(self):
        assert build_prompt("custom", "  Fix the flaky test ") == "Fix the flaky test"

    def test_custom_requires_prompt(self):
        with pytest.raises(ValueError, match="Prompt is required"):
            build_prompt("custom", "")

    def test_review_default_focus(self):
        assert build_prompt("review").startswith("Code Review: Comprehensive review")

    def test_review_security(self):
        assert "security vulnerabilities" in build_prompt("review", focus="security")

    def test_docs_changelog(self):
        assert build_prompt("docs", docs_type="changelog") == (
            "Documentation: Generate a CHANGELOG following Keep a Changelog format."
        )

    def test_tests_with_target(self):
        result = build_prompt("tests", test_type="e2e", target="checkout flow")
        assert result.startswith("Test Generation: Generate end-to-end tests")
        assert result.endswith(" Target: checkout flow")

    def test_unknown_option_rejected(self):
        with pytest.raises(ValueError):
            build_prompt("docs", docs_type="poetry")
