#!/usr/bin/env python3
"""
Planner error taxonomy.

ProviderError          - the language-model call itself failed
MalformedResponseError - model text could not be parsed (recorded, never raised to callers)
PlannerValidationError - bad caller input or stored data
PlanStateError         - plan/profile state could not be read or changed
"""


class ProviderError(Exception):
    """Language-model invocation failed (network, auth, quota, timeout, bad request)."""
    pass


class MalformedResponseError(Exception):
    """Model output is not the expected JSON structure."""
    pass


class PlannerValidationError(Exception):
    """Custom exception for planner validation errors."""
    pass


class DocumentInputError(PlannerValidationError):
    """Neither text nor a file was supplied to the document explainer."""
    pass


class ProfileValidationError(PlannerValidationError):
    """Profile data is missing fields or carries an unknown enum value."""
    pass


class StoreError(Exception):
    """Persistence backend failure."""
    pass


class PlanStateError(Exception):
    """Plan state could not be read or mutated."""
    pass


class ProfileNotFoundError(PlanStateError):
    pass


class StepNotFoundError(PlanStateError):
    pass


class PlanGenerationError(PlanStateError):
    """Generation produced no usable steps; nothing was persisted."""
    pass
