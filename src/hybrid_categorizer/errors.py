class CategorizerError(Exception):
    """Base class for every error raised by the categorization core."""


class PreprocessingError(CategorizerError):
    """A transaction failed input validation and cannot be classified."""


class ClassifierUnavailable(CategorizerError):
    """The remote classifier could not be reached, timed out or is not configured."""


class InvalidClassifierResponse(CategorizerError):
    """The remote classifier answered, but the payload was unusable."""

    def __init__(self, message: str, raw_payload: str | None = None) -> None:
        super().__init__(message)
        self.raw_payload = raw_payload


class StoreUnavailable(CategorizerError):
    """A key-value store operation failed."""


CacheUnavailable = StoreUnavailable


class FeedbackError(CategorizerError):
    pass


class TransactionNotFound(FeedbackError):
    pass


class UnknownCategory(FeedbackError):
    pass


class BatchTooLarge(CategorizerError):
    def __init__(self, size: int, limit: int) -> None:
        super().__init__(f"Batch of {size} transactions exceeds the limit of {limit}.")
        self.size = size
        self.limit = limit


class ConfigurationError(CategorizerError):
    pass
