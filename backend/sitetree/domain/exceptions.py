from typing import Any, Dict, List, Optional, Sequence


class SiteStructureError(Exception):
    """Base class for every error raised by the site tree engine."""

    status_code = 400
    error = "SiteStructureError"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": self.error,
            "message": self.message,
        }


class InvariantViolation(SiteStructureError):
    error = "InvariantViolation"


# -------------------------------------------------
# Validation (400)
# -------------------------------------------------
class ValidationError(SiteStructureError):
    error = "ValidationError"


class InvalidSlugError(ValidationError):
    error = "InvalidSlugError"

    def __init__(self, slug: str, validation_errors: Sequence[str]):
        message = validation_errors[0] if validation_errors else f"Invalid slug: '{slug}'"
        super().__init__(message)
        self.slug = slug
        self.validation_errors: List[str] = list(validation_errors)

    def to_dict(self) -> Dict[str, Any]:
        payload = super().to_dict()
        payload["slug"] = self.slug
        payload["validation_errors"] = self.validation_errors
        return payload


class ReservedSlugError(InvalidSlugError):
    error = "ReservedSlugError"

    def __init__(self, slug: str):
        super().__init__(slug, [f"Invalid slug: '{slug}' is a reserved system slug"])


class CircularReferenceError(SiteStructureError):
    error = "CircularReferenceError"


# -------------------------------------------------
# Conflicts (409)
# -------------------------------------------------
class ConflictError(SiteStructureError):
    status_code = 409
    error = "ConflictError"


class SlugConflictError(ConflictError):
    error = "SlugConflictError"

    def __init__(
        self,
        slug: str,
        parent_id: Optional[str],
        website_id: str,
        suggestions: Optional[Sequence[str]] = None,
    ):
        where = f"parent {parent_id}" if parent_id else "root level"
        super().__init__(f'Slug "{slug}" already exists under {where}')
        self.slug = slug
        self.parent_id = parent_id
        self.website_id = website_id
        self.suggestions: List[str] = list(suggestions or [])

    def to_dict(self) -> Dict[str, Any]:
        payload = super().to_dict()
        payload["slug"] = self.slug
        payload["parent_id"] = self.parent_id
        payload["suggestions"] = self.suggestions
        return payload


class SlugGenerationError(ConflictError):
    error = "SlugGenerationError"

    def __init__(self, base_slug: str, attempts: int):
        super().__init__(
            f'Unable to generate unique slug after {attempts} attempts for base slug: "{base_slug}"'
        )
        self.base_slug = base_slug
        self.attempts = attempts


class TransactionConflictError(ConflictError):
    """The store aborted the transaction to keep it serializable. Retry it."""

    error = "TransactionConflictError"
    retryable = True

    def to_dict(self) -> Dict[str, Any]:
        payload = super().to_dict()
        payload["retryable"] = self.retryable
        return payload


# -------------------------------------------------
# Missing rows (404)
# -------------------------------------------------
class NotFoundError(SiteStructureError):
    status_code = 404
    error = "NotFoundError"


class NodeNotFoundError(NotFoundError):
    error = "NodeNotFoundError"

    def __init__(self, node_id: Optional[str], kind: str = "Node"):
        super().__init__(f"{kind} {node_id} not found")
        self.node_id = node_id
