"""
Codification exception hierarchy

Every error carries message (what happened), detail (technical context) and
suggestion (what the caller should do next). The API layer maps the families
below to HTTP status codes in one place:

- Not found: missing extraction, item or item code (not retried)
- Invalid argument: bad confirm request, duplicate code (not retried)
- Resolver unavailable: model call failed after bounded retries (retry later)
- Concurrent modification: extraction changed underneath the caller (retry)
"""
from typing import Optional


class CodificationError(Exception):
    """Base exception for all codification errors"""

    def __init__(
        self,
        message: str,
        detail: Optional[str] = None,
        suggestion: Optional[str] = None,
    ) -> None:
        self.message = message
        self.detail = detail
        self.suggestion = suggestion
        super().__init__(message)

    def __str__(self) -> str:
        parts = [self.message]
        if self.detail:
            parts.append(f"Detail: {self.detail}")
        if self.suggestion:
            parts.append(f"Suggestion: {self.suggestion}")
        return " | ".join(parts)

    def to_dict(self) -> dict:
        return {
            "error": type(self).__name__,
            "message": self.message,
            "detail": self.detail,
            "suggestion": self.suggestion,
        }


class NotFoundError(CodificationError):
    """A referenced record does not exist"""


class ExtractionNotFoundError(NotFoundError):
    def __init__(
        self,
        message: str = "Codified extraction not found",
        detail: Optional[str] = None,
        suggestion: Optional[str] = "Run the fast pass for the document first",
    ) -> None:
        super().__init__(message, detail, suggestion)


class ItemNotFoundError(NotFoundError):
    def __init__(
        self,
        message: str = "Item not found in extraction",
        detail: Optional[str] = None,
        suggestion: Optional[str] = "Reload the extraction to get current item ids",
    ) -> None:
        super().__init__(message, detail, suggestion)


class ItemCodeNotFoundError(NotFoundError):
    def __init__(
        self,
        message: str = "Item code not found",
        detail: Optional[str] = None,
        suggestion: Optional[str] = "Pick an existing code or supply a new code spec",
    ) -> None:
        super().__init__(message, detail, suggestion)


class CategoryNotFoundError(NotFoundError):
    def __init__(
        self,
        message: str = "Item category not found",
        detail: Optional[str] = None,
        suggestion: Optional[str] = "List categories to get current ids",
    ) -> None:
        super().__init__(message, detail, suggestion)


class InvalidArgumentError(CodificationError):
    """The request cannot be applied as given"""

    def __init__(
        self,
        message: str = "Invalid argument",
        detail: Optional[str] = None,
        suggestion: Optional[str] = "Check the request fields",
    ) -> None:
        super().__init__(message, detail, suggestion)


class DuplicateItemCodeError(InvalidArgumentError):
    """Raised when creating an item code whose code string already exists"""

    def __init__(
        self,
        message: str = "Item code already exists",
        detail: Optional[str] = None,
        suggestion: Optional[str] = "Confirm against the existing code instead of creating a new one",
    ) -> None:
        super().__init__(message, detail, suggestion)


class ResolverUnavailableError(CodificationError):
    """The model-assisted resolver failed, timed out or returned unparsable output"""

    def __init__(
        self,
        message: str = "Model-assisted resolver unavailable",
        detail: Optional[str] = None,
        suggestion: Optional[str] = "Retry the smart pass later; the extraction was not modified",
    ) -> None:
        super().__init__(message, detail, suggestion)


class ConcurrentModificationError(CodificationError):
    """Another writer updated the extraction since it was read"""

    def __init__(
        self,
        message: str = "Extraction was modified concurrently",
        detail: Optional[str] = None,
        suggestion: Optional[str] = "Reload the extraction and retry the operation",
    ) -> None:
        super().__init__(message, detail, suggestion)
