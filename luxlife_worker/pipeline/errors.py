"""
Error taxonomy for the order pipeline.

Every error carries a machine-readable `code` that ends up in the order's
`error_code` field when the failure is terminal.
"""

from typing import Optional


class PipelineError(Exception):
    code = "unknown_error"

    def __init__(self, message: str = "", code: Optional[str] = None):
        super().__init__(message or self.code)
        if code:
            self.code = code

    @property
    def message(self) -> str:
        return str(self)


class ValidationError(PipelineError):
    code = "validation_error"


class CreditError(PipelineError):
    code = "credit_error"


class InsufficientCredits(CreditError):
    code = "insufficient_credits"

    def __init__(self, message: str = "Not enough credits to start generation. Purchase more to continue."):
        super().__init__(message)


class UserProfileMissing(CreditError):
    code = "user_profile_missing"

    def __init__(self, message: str = "User profile missing credits configuration."):
        super().__init__(message)


class ConfigError(PipelineError):
    code = "config_missing"


class ProviderError(PipelineError):
    """Non-success response from an external service."""

    code = "provider_error"

    def __init__(self, provider: str, status_code: Optional[int], body: str = ""):
        self.provider = provider
        self.status_code = status_code
        self.body = body
        super().__init__(f"{provider} API error ({status_code}): {body[:500]}")


class PollTimeoutError(PipelineError, TimeoutError):
    code = "provider_timeout"


class EmptyAudioError(PipelineError):
    code = "tts_empty_audio"


class CompositionError(PipelineError):
    code = "composition_error"


class UnknownError(PipelineError):
    code = "unknown_error"


class StatusTransitionError(PipelineError):
    """A status write that would move an order backwards or out of a terminal state."""

    code = "invalid_status_transition"
