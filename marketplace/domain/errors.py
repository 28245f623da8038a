# marketplace/domain/errors.py


class CommerceError(Exception):
    """Base class for every rejection a caller can act on."""

    kind = "internal"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(CommerceError):
    kind = "validation"


class NotFoundError(CommerceError):
    kind = "not_found"


class ConflictError(CommerceError):
    kind = "conflict"


class ExternalDependencyError(CommerceError):
    kind = "external_dependency"


class InvariantViolationError(CommerceError):
    kind = "invariant_violation"
