"""Exception hierarchy shared by the workflow services."""
from typing import Any, Optional


class WordFlowError(Exception):
    """Base error for the localization workflow."""


class StoreError(WordFlowError):
    """A read or write against the document store failed."""


class DocumentNotFoundError(StoreError):
    def __init__(self, collection: str, doc_id: str):
        super().__init__(f"Document '{doc_id}' not found in '{collection}'")
        self.collection = collection
        self.doc_id = doc_id


class BatchLimitExceededError(StoreError):
    def __init__(self, size: int, limit: int):
        super().__init__(f"Batch of {size} writes exceeds the store limit of {limit}")
        self.size = size
        self.limit = limit


class TranslationError(WordFlowError):
    """The AI translation backend could not produce a result."""


class ProviderNotConfiguredError(TranslationError):
    pass


class TranslationRateLimitedError(TranslationError):
    pass


class ResponseParseError(TranslationError):
    def __init__(self, message: str, *, raw_response: Optional[str] = None):
        super().__init__(message)
        self.raw_response = raw_response


class RowValidationError(WordFlowError):
    pass


class DuplicateRowError(RowValidationError):
    def __init__(self, message: str, *, duplicate: Any = None, field: Optional[str] = None):
        super().__init__(message)
        self.duplicate = duplicate
        self.field = field


class PermissionDeniedError(WordFlowError):
    def __init__(self, role: Optional[str], action: str):
        super().__init__(f"Role '{role}' is not allowed to perform '{action}'")
        self.role = role
        self.action = action


class TranslationInProgressError(WordFlowError):
    pass
