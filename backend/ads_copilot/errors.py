"""
Error taxonomy for the context pipeline.

Every error carries a stable machine code so the frontend can branch
(e.g. show a reconnect prompt) without parsing messages.
"""


class ContextError(Exception):
    """Base class for errors surfaced to API callers."""

    status_code: int = 500
    code: str = "context_error"
    reconnect: bool = False

    def __init__(self, message: str, account_id: str | None = None):
        super().__init__(message)
        self.message = message
        self.account_id = account_id

    def to_dict(self) -> dict:
        return {"error": self.message, "code": self.code, "reconnect": self.reconnect}


class AccessDenied(ContextError):
    """Account missing or not owned by the caller."""

    status_code = 403
    code = "account_access_denied"


class NotConnected(ContextError):
    """Account exists but its connection status is not CONNECTED."""

    status_code = 400
    code = "account_not_connected"
    reconnect = True


class NeedsReconnection(ContextError):
    """Credentials were rejected; the user has to re-authorize the account."""

    status_code = 400
    code = "account_needs_reconnection"
    reconnect = True


class UpstreamError(ContextError):
    """The advertising API failed (after one credential-refresh retry)."""

    status_code = 502
    code = "upstream_error"

    def __init__(self, message: str, account_id: str | None = None, upstream_status: int | None = None):
        super().__init__(message, account_id)
        self.upstream_status = upstream_status


class PartialDatasetFailure(ContextError):
    """One dataset of a fan-out fetch failed. Logged and degraded, never raised to callers."""

    code = "partial_dataset_failure"

    def __init__(self, dataset: str, account_id: str | None, cause: BaseException):
        super().__init__(f"{dataset} fetch failed: {cause}", account_id)
        self.dataset = dataset
        self.cause = cause
