"""
Error taxonomy for the fact core.

Normalization and synthesis never let these escape to the caller; they log
and degrade to a per-rule no-op. Mutation primitives (citation edits,
pending-change transitions) raise them so the caller can inform the human
actor and retry.
"""
from typing import Optional


class CoreError(Exception):
    """Base class for every failure raised by the fact core."""


class SourceUnavailable(CoreError):
    """Primary store read or write failed."""

    def __init__(self, message: str, project_id: Optional[str] = None):
        super().__init__(message)
        self.project_id = project_id


class SynthesisConflict(CoreError):
    """Target fact appeared between the absence check and the write."""

    def __init__(self, cite_type: str, dedup_key: Optional[str] = None):
        super().__init__(f"{cite_type} already present (key={dedup_key})")
        self.cite_type = cite_type
        self.dedup_key = dedup_key


class FactValidationError(CoreError):
    """Malformed record. Legacy facts are coerced, never dropped; store-rejected writes raise it."""


class AuthorizationDenied(CoreError):
    """Caller lacks the tier or role for the operation."""

    def __init__(self, action: str, role: Optional[str]):
        super().__init__(f"Role '{role}' may not {action}")
        self.action = action
        self.role = role


class ExternalServiceDegraded(CoreError):
    """AI, weather or email call failed or timed out."""

    def __init__(self, service: str, message: str):
        super().__init__(f"{service}: {message}")
        self.service = service


class CitationNotFound(CoreError):
    """Edit targeted a citation id that is not in the ledger."""


class InvalidTransition(CoreError):
    """Pending change is not in a state that allows the requested transition."""


class DuplicatePendingChange(CoreError):
    """A pending change already exists for the same (item_type, item_id)."""

    def __init__(self, item_type: str, item_id: str):
        super().__init__(f"Pending change already open for {item_type}:{item_id}")
        self.item_type = item_type
        self.item_id = item_id


class PendingChangeNotFound(CoreError):
    """Transition targeted an unknown pending-change id."""
