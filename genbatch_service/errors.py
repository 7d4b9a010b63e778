"""
Failure taxonomy surfaced per job.

Every error that reaches a JobState is one of the classes below, so callers
can branch on `retryable` / `code` without knowing the provider.
"""

from __future__ import annotations

import requests


class GenerationError(Exception):
    """Base class for failures of a single generation call."""

    code = "generation_error"
    retryable = False

    def __init__(self, message: str = ""):
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__

    def __str__(self) -> str:
        return self.message


class TransientServiceError(GenerationError):
    """Overload, rate limit, timeout or connection trouble. Retried."""

    code = "transient_service_error"
    retryable = True


class ContentPolicyBlock(GenerationError):
    """The provider refused the request on policy grounds. Never retried."""

    code = "content_policy_block"


class MalformedResponse(GenerationError):
    """The call succeeded but carried no usable artifact. Retried."""

    code = "malformed_response"
    retryable = True


class AuthorizationRequired(GenerationError):
    """Credentials or billing entitlement are missing. Fails the whole batch."""

    code = "authorization_required"


class Cancelled(GenerationError):
    """The caller stopped the batch before this job could finish."""

    code = "cancelled"


def classify_exception(exc: BaseException) -> GenerationError:
    """Map an arbitrary exception onto the taxonomy."""
    if isinstance(exc, GenerationError):
        return exc
    if isinstance(exc, (TimeoutError, requests.Timeout)):
        return TransientServiceError(f"Request timed out: {exc}")
    if isinstance(exc, requests.ConnectionError):
        return TransientServiceError(f"Connection failed: {exc}")
    # The provider is opaque; anything we do not recognise is assumed transient.
    return TransientServiceError(f"{type(exc).__name__}: {exc}")
