from __future__ import annotations


class Assistant0Error(Exception):
    """Base error for Assistant0."""


class RiskAssessmentAnomaly(Assistant0Error):
    """Tool arguments could not be scored; contributes no risk factors."""


class AuthorizationError(Assistant0Error):
    """Step-up authorization ended without approval."""

    def __init__(self, message: str, *, challenge_id: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.challenge_id = challenge_id


class AuthorizationDenied(AuthorizationError):
    """The user refused the out-of-band authorization request."""


class AuthorizationTimeout(AuthorizationError):
    """The authorization request expired before the user responded."""


class ChallengeNotFoundError(Assistant0Error):
    """No authorization challenge exists for the caller and id."""


class IdentityProviderError(Assistant0Error):
    """Identity provider request failure."""


class IdentityProviderConfigError(IdentityProviderError):
    """Identity provider configuration missing required fields."""


class ConsentRequiredError(Assistant0Error):
    """A delegated credential is missing or was rejected; user consent is needed."""

    def __init__(self, message: str, *, connection: str, scopes: list[str]) -> None:
        super().__init__(message)
        self.message = message
        self.connection = connection
        self.scopes = list(scopes)


class AuthorizerError(Assistant0Error):
    """Relationship-authorization service failure."""


class ToolExecutionError(Assistant0Error):
    """A concrete tool's upstream integration failed."""


class AuditWriteFailure(Assistant0Error):
    """An audit row could not be persisted."""


class RetrievalError(Assistant0Error):
    """Retrieval layer failure."""