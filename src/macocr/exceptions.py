# macocr/exceptions.py
class MacOCRError(Exception):
    """Base exception for the macocr library."""
    kind = "MacOCRError"


class InvalidImageError(MacOCRError):
    """Raised when image bytes cannot be decoded."""
    kind = "InvalidImage"


class RecognitionEngineError(MacOCRError):
    """Raised when the recognition engine fails or is unavailable."""
    kind = "RecognitionEngineError"


class MalformedObservationError(MacOCRError):
    """Raised when an engine returns an observation without four corners."""
    kind = "MalformedObservation"


class AuthFailedError(MacOCRError):
    kind = "AuthFailed"


class PayloadTooLargeError(MacOCRError):
    """Raised when an upload or input file exceeds the size limit."""
    kind = "PayloadTooLarge"


class FileProcessingError(MacOCRError):
    """Raised when a single file cannot be read or its output written."""
    kind = "IOFailure"
