"""Error taxonomy shared by the remote clients, the job engine and the API layer."""


class TranscriptHubError(Exception):
    """Base class for every error raised on purpose inside the service."""


class RemoteError(TranscriptHubError):
    """Non-transient failure from an external service (bad credentials, malformed response, empty model output).
    Why available: Workers record the item as failed without spending retries on it."""


class TransientRemoteError(RemoteError):
    """Timeout, connection failure, rate limiting (429) or a 5xx from an external service.
    Why available: The only error class the worker retries with backoff."""


class NotAvailable(TranscriptHubError):
    """The remote source answered but has no transcript for this ticker/quarter.
    Why available: Lets the quarter search move on to the next candidate; never retried."""


class ValidationError(TranscriptHubError):
    """Input rejected before or by the remote call (malformed ticker, quarter out of range)."""


class PersistenceError(TranscriptHubError):
    """A job snapshot or cache chunk could not be written. Fatal to the running job."""


class JobNotFound(TranscriptHubError):
    def __init__(self, job_id: str):
        super().__init__(f"Job not found: {job_id}")
        self.job_id = job_id


class InvalidTransition(TranscriptHubError):
    """Raised when a control event is not legal for the job's current status."""

    def __init__(self, job_id: str, status: str, event: str):
        super().__init__(f"Cannot {event} job {job_id} in status {status}")
        self.job_id = job_id
        self.status = status
        self.event = event
