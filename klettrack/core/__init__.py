"""Klettrack core helpers shared by client and server.

    from klettrack.core import validate_mutation, MutationValidationError
"""

from klettrack.core.validation import (
    MutationValidationError,
    normalize_uuid,
    validate_backend_url,
    validate_mutation,
)

__all__ = [
    "MutationValidationError",
    "normalize_uuid",
    "validate_backend_url",
    "validate_mutation",
]
