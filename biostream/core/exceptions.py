"""
Custom exceptions for the biostream pipeline.
"""


class BioStreamError(Exception):
    """Base exception for all biostream errors."""

    # HTTP status used when the error reaches the API
    status_code = 400

    def __init__(self, message: str, code: str = "BIOSTREAM_ERROR") -> None:
        self.message = message
        self.code = code
        super().__init__(self.message)


class ValidationError(BioStreamError):
    """Invalid channel index or configuration value at a configuration boundary."""

    def __init__(self, message: str) -> None:
        super().__init__(message, code="VALIDATION_ERROR")


class FilterConfigurationError(BioStreamError):
    """Unknown filter key or malformed filter configuration."""

    def __init__(self, message: str) -> None:
        super().__init__(message, code="FILTER_CONFIGURATION_ERROR")


class ProcessingError(BioStreamError):
    """Signal processing errors, including work submitted after shutdown."""

    status_code = 503

    def __init__(self, message: str) -> None:
        super().__init__(message, code="PROCESSING_ERROR")


class SubscriptionError(BioStreamError):
    """Invalid subscription request (e.g. non-callable subscriber)."""

    def __init__(self, message: str) -> None:
        super().__init__(message, code="SUBSCRIPTION_ERROR")
