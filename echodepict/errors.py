from __future__ import annotations


class EchoDepictError(Exception):
    """Base error for the EchoDepict library."""


class InvalidConfigError(EchoDepictError):
    """Raised when settings or an invoker spec cannot be parsed or validated."""


class InvalidInputError(EchoDepictError):
    """Raised when a pipeline request is malformed."""


class GenerationError(EchoDepictError):
    """Raised when the generative backend call fails."""


class ModelNotAvailableError(GenerationError):
    """Raised when the generative backend or its dependencies are missing."""


class SchemaViolationError(EchoDepictError):
    """Raised when a backend payload does not match the stage schema."""


class InvalidMusicalStructureError(EchoDepictError):
    """Raised when a composer mapping is not a collection of records."""


class EmptyCompositionError(EchoDepictError):
    """Raised when no notes survive normalization."""
