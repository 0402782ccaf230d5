"""Exceptions raised by the outbox worker and its handlers."""


class OutboxError(Exception):
    """Base class for outbox errors."""


class OutboxStoreError(OutboxError):
    """The job store could not be read or written.

    This is the only error that aborts a drain.
    """


class HandlerError(OutboxError):
    """A job's handler failed. Counts against the job's attempts."""


class UnknownJobTypeError(HandlerError):
    def __init__(self, job_type: str):
        super().__init__(f"Unknown job type: {job_type}")
        self.job_type = job_type


class InvalidPayloadError(HandlerError):
    pass


class EmailDeliveryError(HandlerError):
    pass


class RegistryError(OutboxError):
    """A declared job type has no handler registered."""
