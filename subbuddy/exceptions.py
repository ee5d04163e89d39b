"""
API Exceptions
==============

Closed error taxonomy for the external systems the core talks to.

WHY THIS FILE EXISTS
--------------------
Each failure mode needs a specific, user-actionable message:
- Missing credentials are caught before any network call
- 401/403 must tell the user to check credentials, never retry
- 429 tells the user to try again shortly
- Anything else carries the status code and a bounded body excerpt

RELATED FILES
-------------
- subbuddy/services/subscription_client.py: raises SubscriptionAPIError subclasses
- subbuddy/services/text_gen_client.py: raises TextGenError subclasses
- subbuddy/services/refresh_scheduler.py: records `to_user_message()` per project
"""

from typing import Optional

SERVER_BODY_LIMIT = 300
DECODE_BODY_LIMIT = 200


class SubBuddyError(Exception):
    """
    Base exception for all core errors.

    Allows catching every taxonomy error with a single except clause while
    still being able to handle specific error types.
    """

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_user_message(self) -> str:
        """String suitable for display to end users."""
        return self.message


# =============================================================================
# SUBSCRIPTION-ANALYTICS API
# =============================================================================

class SubscriptionAPIError(SubBuddyError):
    """Base for subscription-analytics (RevenueCat) failures."""


class NotConfiguredError(SubscriptionAPIError):
    """API key or project id missing; raised before any network call."""

    def __init__(self, message: str = "API key or project ID not configured"):
        super().__init__(message)


class UnauthorizedError(SubscriptionAPIError):
    def __init__(self):
        super().__init__("Invalid API key — check your credentials")


class ForbiddenError(SubscriptionAPIError):
    def __init__(self):
        super().__init__("Access denied — check API key permissions")


class NotFoundError(SubscriptionAPIError):
    def __init__(self, project_id: Optional[str] = None):
        self.project_id = project_id
        if project_id:
            message = f"Project not found — check your project ID ({project_id})"
        else:
            message = "Project not found — check your project ID"
        super().__init__(message)


class RateLimitedError(SubscriptionAPIError):
    def __init__(self):
        super().__init__("Rate limited — try again shortly")


class ServerError(SubscriptionAPIError):
    """Any other non-2xx status, with a bounded body excerpt for diagnostics."""

    def __init__(self, status_code: int, body: Optional[str] = None):
        self.status_code = status_code
        self.body = body[:SERVER_BODY_LIMIT] if body else None
        if self.body:
            message = f"Server error ({status_code}): {self.body}"
        else:
            message = f"Server error ({status_code})"
        super().__init__(message)


class DecodeError(SubscriptionAPIError):
    """Critical-path response did not match the expected shape."""

    def __init__(self, body: str, cause: Optional[Exception] = None):
        self.body = body
        self.cause = cause
        super().__init__(f"Unexpected API response: {body[:DECODE_BODY_LIMIT]}")


class NetworkError(SubscriptionAPIError):
    """Transport-level failure, wrapping the underlying transport error."""

    def __init__(self, cause: Exception):
        self.cause = cause
        super().__init__(f"Network error: {cause}")


# =============================================================================
# TEXT-GENERATION API
# =============================================================================

class TextGenError(SubBuddyError):
    """Base for text-generation (OpenAI) failures. Any of these aborts a report."""


class NoAPIKeyError(TextGenError):
    def __init__(self):
        super().__init__("OpenAI API key not configured")


class TextGenUnauthorizedError(TextGenError):
    def __init__(self):
        super().__init__("Invalid OpenAI API key — check your credentials")


class TextGenRateLimitedError(TextGenError):
    def __init__(self):
        super().__init__("Rate limited — try again shortly")


class TextGenServerError(TextGenError):
    def __init__(self, status_code: int, body: Optional[str] = None):
        self.status_code = status_code
        self.body = body[:SERVER_BODY_LIMIT] if body else None
        if self.body:
            message = f"OpenAI error ({status_code}): {self.body}"
        else:
            message = f"OpenAI error ({status_code})"
        super().__init__(message)


class TextGenNetworkError(TextGenError):
    def __init__(self, cause: Exception):
        self.cause = cause
        super().__init__(f"Network error: {cause}")


class TextGenDecodeError(TextGenError):
    def __init__(self, cause: Exception):
        self.cause = cause
        super().__init__(f"Failed to parse response: {cause}")


class EmptyResponseError(TextGenError):
    def __init__(self):
        super().__init__("OpenAI returned an empty response")


# =============================================================================
# REPORTS
# =============================================================================

class ReportUnavailableError(SubBuddyError):
    """No snapshot exists for the current selection, so there is nothing to report on."""

    def __init__(self, message: str = "No data loaded for the selected tab yet"):
        super().__init__(message)
