# eatsome/errors.py


class EatsomeError(Exception):
    """Base class for every error raised by the service."""


class ValidationError(EatsomeError):
    pass


class NotFound(EatsomeError):
    pass


class PersistenceError(EatsomeError):
    pass


class RecognitionError(EatsomeError):
    """Raised when one of the AI calls cannot produce a trusted result."""


class ProviderUnavailable(RecognitionError):
    pass


class ResponseMalformed(RecognitionError):
    pass


class ModelRefused(RecognitionError):
    pass


class ContentFiltered(RecognitionError):
    pass


class TruncatedOutput(RecognitionError):
    pass
