"""Error taxonomy for the ingestion pipeline."""


class FleetGuardianError(Exception):
    """Base exception for all pipeline errors."""

    outcome = "permanent_error"


class UpstreamError(FleetGuardianError):
    """Failure talking to the GPS provider."""

    def __init__(self, message, *, code=None, action=""):
        self.code = code
        self.action = action
        super().__init__(message)


class RateLimited(UpstreamError):
    """Provider throttled us, or a shared backoff deadline is still active.

    kind is "throttled" (generic, exponential backoff), "ip_limit" (flat backoff)
    or "backoff" (another invocation already set a deadline).
    """

    outcome = "rate_limited"

    def __init__(self, message, *, retry_after, kind="throttled", code=None, action=""):
        self.retry_after = retry_after
        self.kind = kind
        super().__init__(message, code=code, action=action)


class TransientNetworkError(UpstreamError):
    """Timeout, connection failure or 5xx; safe to retry."""

    outcome = "transient_error"


class AuthExpired(UpstreamError):
    """Provider rejected the token; the auth collaborator must refresh it."""

    outcome = "transient_error"


class PermanentError(UpstreamError):
    """Provider rejected the request in a way retrying will not fix."""


class MalformedUpstreamData(FleetGuardianError):
    """A single device's report or trip row could not be parsed."""

    def __init__(self, message, *, device_id=None):
        self.device_id = device_id
        super().__init__(message)
