"""Tests for phaseforge/core/exceptions.py."""

import pytest

from phaseforge.core.exceptions import (
    AuthenticationError,
    CompilerError,
    ConfigError,
    ConversationError,
    ConversationTimeoutError,
    CorrectionError,
    FunctionCallingError,
    JsonParseError,
    ModelNotFoundError,
    PhaseForgeError,
    PhaseNotReadyError,
    PreliminaryError,
    PreliminaryExhaustedError,
    QuotaExceededError,
    RateLimitError,
    StateError,
    ValidationFailedError,
    VendorError,
    VendorRequestError,
    VendorServerError,
)


class TestHierarchy:
    @pytest.mark.parametrize("cls", [
        VendorError, ConversationError, PreliminaryError, CorrectionError,
        CompilerError, StateError, ConfigError,
    ])
    def test_rooted_at_phaseforge_error(self, cls):
        assert issubclass(cls, PhaseForgeError)

    @pytest.mark.parametrize("cls", [
        RateLimitError, VendorServerError, AuthenticationError,
        QuotaExceededError, ModelNotFoundError, VendorRequestError,
    ])
    def test_vendor_errors(self, cls):
        assert issubclass(cls, VendorError)

    def test_conversation_errors(self):
        for cls in (FunctionCallingError, JsonParseError, ValidationFailedError, ConversationTimeoutError):
            assert issubclass(cls, ConversationError)

    def test_phase_not_ready_is_state_error(self):
        assert issubclass(PhaseNotReadyError, StateError)
        assert issubclass(PreliminaryExhaustedError, PreliminaryError)


class TestMessages:
    def test_vendor_error_status(self):
        e = RateLimitError("slow down", status=429, code="rate_limit_exceeded")
        assert e.status == 429
        assert e.code == "rate_limit_exceeded"
        assert str(e) == "slow down"

    def test_function_calling_error(self):
        e = FunctionCallingError("realize_write", ["user_message", "assistant_message"])
        assert e.source == "realize_write"
        assert "Failed to function calling in the realize_write step." in str(e)
        assert "- assistant_message" in str(e)

    def test_timeout(self):
        e = ConversationTimeoutError(30)
        assert e.timeout == 30
        assert str(e) == "Timeout, over 30 seconds."

    def test_preliminary_exhausted(self):
        e = PreliminaryExhaustedError("schema_write", 10)
        assert e.limit == 10
        assert "schema_write" in str(e)

    def test_validation_failed_counts_errors(self):
        e = ValidationFailedError("rewrite", [{"path": "$input.draft"}, {"path": "$input.think"}])
        assert "2 error(s)" in str(e)

    def test_phase_not_ready_reason(self):
        e = PhaseNotReadyError("schema", "Requirements analysis not started.")
        assert e.phase == "schema"
        assert str(e) == "Requirements analysis not started."
