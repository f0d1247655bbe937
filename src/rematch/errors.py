from __future__ import annotations


class RematchError(Exception):
    code = "INTERNAL_ERROR"

    def __init__(self, message: str, *, details: dict | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ValidationError(RematchError, ValueError):
    """Bad caller input. Never retried."""

    code = "VALIDATION_ERROR"


class NotFoundError(RematchError, ValueError):
    code = "NOT_FOUND"


class CollaboratorError(RematchError):
    """A parse, embed, search or narrative call failed."""

    code = "COLLABORATOR_ERROR"

    def __init__(self, collaborator: str, message: str, *, details: dict | None = None):
        super().__init__(f"{collaborator} failed: {message}", details=details)
        self.collaborator = collaborator


class PersistenceError(RematchError):
    """A store write failed; the whole queue job must be retried."""

    code = "PERSISTENCE_ERROR"


class WorkflowError(RematchError):
    code = "WORKFLOW_ERROR"


class InvalidTransitionError(WorkflowError):
    def __init__(self, current: str, target: str):
        super().__init__(f"invalid workflow transition {current} -> {target}")
        self.current = current
        self.target = target
