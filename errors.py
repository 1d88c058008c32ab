# errors.py


class CastQueueError(Exception):
    pass


class ConfigurationError(CastQueueError):
    """Required credentials or settings are missing."""


class PayloadError(CastQueueError):
    """Cast/notification content or job arguments are unusable."""


class NotFoundError(CastQueueError):
    pass


class TemplateError(CastQueueError):
    """A builder has nothing meaningful to say yet."""


class TransportError(CastQueueError):
    def __init__(self, message, status_code=None):
        super().__init__(message)
        self.status_code = status_code


class ConflictError(CastQueueError):
    pass


class AdminActionError(CastQueueError):
    def __init__(self, message, status_code=400):
        super().__init__(message)
        self.status_code = status_code
