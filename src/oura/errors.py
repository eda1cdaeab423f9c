"""Exception taxonomy for the Oura sync engine.

Credential and authorization errors propagate to the immediate caller.
Fetch and transform errors are caught at the per-resource boundary inside
the orchestrator and only ever show up in the sync summary.
"""

from __future__ import annotations


class OuraSyncError(Exception):
    """Base class for all engine errors."""


class OAuthNotConfigured(OuraSyncError):
    """Raised when the OAuth client id/secret are not set."""


class CredentialMissing(OuraSyncError):
    """No usable access token anywhere; an interactive authorization is required."""

    def __init__(self, message: str = "No Oura credential found. Visit /oauth/start to authorize.") -> None:
        super().__init__(message)


class TokenExchangeFailed(OuraSyncError):
    """The authorization server rejected a code or refresh-token exchange."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class AuthorizationError(OuraSyncError):
    """Base class for OAuth callback state failures (user-visible 4xx)."""


class InvalidState(AuthorizationError):
    def __init__(self) -> None:
        super().__init__("Invalid state")


class ExpiredState(AuthorizationError):
    def __init__(self) -> None:
        super().__init__("State expired")


class RemoteFetchFailed(OuraSyncError):
    """Non-success HTTP response from the provider after retries."""

    def __init__(
        self, resource: str, status_code: int, body_excerpt: str = "", requests: int = 0
    ) -> None:
        super().__init__(f"Oura fetch failed for {resource}: HTTP {status_code}")
        self.resource = resource
        self.status_code = status_code
        self.body_excerpt = body_excerpt
        # HTTP requests spent in the failing fetch, retries included
        self.requests = requests


class TransformError(OuraSyncError):
    """A raw record cannot be normalized (e.g. its natural key is missing)."""


class NotReadOnly(OuraSyncError):
    """An ad-hoc query failed read-only validation."""

    def __init__(self, reason: str) -> None:
        super().__init__(f"Only read-only SQL is allowed: {reason}")
        self.reason = reason

