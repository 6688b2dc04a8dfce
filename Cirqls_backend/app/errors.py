"""
Error taxonomy shared by the API layer, the gateway and the push channel.

Every failure surfaced to a client maps to exactly one of these kinds; the
response carries the kind and a short message, never the underlying cause.
"""


class CirqlsError(Exception):
    """Base exception for all Cirqls backend errors."""

    kind = "internal_error"
    status_code = 500
    default_detail = "Internal error"

    def __init__(self, detail: str | None = None):
        self.detail = detail or self.default_detail
        super().__init__(self.detail)


class AuthenticationFailure(CirqlsError):
    """Raised when a credential is missing, malformed or rejected."""

    kind = "authentication_failure"
    status_code = 401
    default_detail = "Not authenticated"


class AuthorizationFailure(CirqlsError):
    """Raised when an authenticated user is not permitted to act."""

    kind = "authorization_failure"
    status_code = 403
    default_detail = "Not authorized"


class NotFound(CirqlsError):
    """Raised when a referenced entity does not exist."""

    kind = "not_found"
    status_code = 404
    default_detail = "Not found"


class DataIntegrityFailure(CirqlsError):
    """Raised when stored rows violate an assembly invariant."""

    kind = "data_integrity_failure"
    status_code = 500
    default_detail = "Stored data is inconsistent"


class UpstreamFailure(CirqlsError):
    """Raised when the entity store or the credential service fails."""

    kind = "upstream_failure"
    status_code = 502
    default_detail = "Upstream service unavailable"
