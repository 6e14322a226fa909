"""Exception taxonomy for the error pipeline."""


class PipelineError(Exception):
    """Base class for every failure raised inside the pipeline."""


class MalformedCaptureError(PipelineError):
    """Raw capture payload is missing its source or any diagnostic text."""


class PersistenceError(PipelineError):
    """The durable queue could not write or remove an entry."""


class TransportError(PipelineError):
    """The collector could not be reached or asked us to come back later."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class RejectedPayloadError(PipelineError):
    """The collector refused the payload; retrying the same bytes cannot succeed."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class CapacityExceededError(PipelineError):
    """A bounded buffer is full and the newest item was not accepted."""
