"""Error taxonomy for secret rotation.

Provider-facing failures (generation, validation, discard, external rollback)
are caught where the core calls into a Recipe and turned into rotation log
rows. The remaining errors are caller-input or programming errors and
propagate.
"""
from typing import Optional

VALIDATION_FAILED_REASON = "Validation failed for generated value"
ROLLBACK_FAILED_PREFIX = "Rollback failed: "


class KeyrotorError(Exception):
    """Base error with a stable machine-readable code."""
    code = "KEYROTOR_ERROR"

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        if code:
            self.code = code


class RecipeGenerationError(KeyrotorError):
    """Recipe could not produce a candidate value."""
    code = "RECIPE_GENERATION_FAILED"


class RecipeValidationError(KeyrotorError):
    """Generated candidate was rejected by the recipe."""
    code = "RECIPE_VALIDATION_FAILED"

    def __init__(self, message: str = VALIDATION_FAILED_REASON):
        super().__init__(message)


class ProviderDiscardError(KeyrotorError):
    """Provider-side deletion of a retired value failed. Never fatal."""
    code = "PROVIDER_DISCARD_FAILED"


class RollbackError(KeyrotorError):
    """External rollback capability failed."""
    code = "ROLLBACK_FAILED"

    def __init__(self, cause: str):
        super().__init__(f"{ROLLBACK_FAILED_PREFIX}{cause}")


class SecretNotFoundError(KeyrotorError):
    code = "SECRET_NOT_FOUND"

    def __init__(self, key: str):
        super().__init__(f"Secret [{key}] not found.")
        self.key = key


class UnknownRecipeError(KeyrotorError):
    code = "UNKNOWN_RECIPE"

    def __init__(self, name: str):
        super().__init__(f"Recipe [{name}] is not registered.")
        self.name = name


class InvalidSecretKeyError(KeyrotorError):
    code = "INVALID_SECRET_KEY"


class InvalidTransitionError(KeyrotorError):
    code = "INVALID_TRANSITION"


class GracePeriodInvariantError(KeyrotorError):
    code = "GRACE_PERIOD_INVARIANT"
