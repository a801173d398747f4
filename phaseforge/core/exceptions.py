"""Custom exception hierarchy for PhaseForge.

All exceptions inherit from PhaseForgeError so callers can catch broadly
or narrowly as needed.
"""

from __future__ import annotations

from typing import Any, Optional


class PhaseForgeError(Exception):
    """Base exception for all PhaseForge errors."""


# ---------------------------------------------------------------------------
# Vendor
# ---------------------------------------------------------------------------

class VendorError(PhaseForgeError):
    """Failed model vendor operation."""

    def __init__(
        self,
        message: str,
        status: Optional[int] = None,
        code: Optional[str] = None,
    ):
        self.status = status
        self.code = code
        super().__init__(message)


class RateLimitError(VendorError):
    """Hit vendor rate limit (HTTP 429)."""


class VendorServerError(VendorError):
    """Vendor returned a 5xx response."""


class VendorNetworkError(VendorError):
    """Connection reset, connect timeout or similar transport failure."""


class ResponseParseError(VendorError):
    """Vendor response body could not be parsed."""


class AuthenticationError(VendorError):
    """Invalid API key or unauthorized."""


class QuotaExceededError(VendorError):
    """Account quota exhausted. Never retried."""


class ModelNotFoundError(VendorError):
    """Requested model not available."""


class VendorRequestError(VendorError):
    """Vendor rejected the request (4xx other than auth/404/429)."""


# ---------------------------------------------------------------------------
# Conversation
# ---------------------------------------------------------------------------

class ConversationError(PhaseForgeError):
    """A conversation turn failed."""


class JsonParseError(ConversationError):
    """Model produced a function-call payload that is not valid JSON."""

    def __init__(self, function: str, arguments: str, message: str = ""):
        self.function = function
        self.arguments = arguments
        super().__init__(
            message or f"Malformed arguments for function '{function}': {arguments[:200]}"
        )


class ValidationFailedError(ConversationError):
    """Function-call arguments kept failing validation after all retries."""

    def __init__(self, function: str, errors: list[dict[str, Any]]):
        self.function = function
        self.errors = errors
        super().__init__(
            f"Arguments for function '{function}' failed validation ({len(errors)} error(s))"
        )


class FunctionCallingError(ConversationError):
    """The model did not call any function although one was required."""

    def __init__(self, source: str, history_types: list[str]):
        self.source = source
        self.history_types = history_types
        listed = "\n".join(f"- {t}" for t in history_types) or "- (none)"
        super().__init__(
            f"Failed to function calling in the {source} step.\n\n"
            "Here is the list of history types that occurred during the conversation:\n\n"
            f"{listed}"
        )


class ConversationTimeoutError(ConversationError):
    """A conversation turn exceeded its time budget. Never retried generically."""

    def __init__(self, timeout: float):
        self.timeout = timeout
        super().__init__(f"Timeout, over {timeout} seconds.")


# ---------------------------------------------------------------------------
# Orchestration
# ---------------------------------------------------------------------------

class PreliminaryError(PhaseForgeError):
    """Context retrieval (preliminary) step failed."""


class PreliminaryExhaustedError(PreliminaryError):
    """The model kept requesting context past the round limit."""

    def __init__(self, source: str, limit: int):
        self.source = source
        self.limit = limit
        super().__init__(
            f"Preliminary process of {source} exceeded the maximum number of rounds ({limit})"
        )


class CorrectionError(PhaseForgeError):
    """The correction loop could not obtain a candidate from the model."""


class CompilerError(PhaseForgeError):
    """The compiler service itself failed (not a diagnostic)."""


# ---------------------------------------------------------------------------
# State
# ---------------------------------------------------------------------------

class StateError(PhaseForgeError):
    """Invalid pipeline state transition."""


class PhaseNotReadyError(StateError):
    """A phase was started before its prerequisites were current."""

    def __init__(self, phase: str, reason: str):
        self.phase = phase
        self.reason = reason
        super().__init__(reason)


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

class ConfigError(PhaseForgeError):
    """Invalid or missing configuration."""
