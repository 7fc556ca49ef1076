"""
Error taxonomy for the hierarchy scope and targeting engine.

Permission checks never raise for a plain "no": they return booleans. The
exceptions here cover missing data, structural violations and invalid
content targeting, which callers must not confuse with a denied permission.
"""

from __future__ import annotations


class HierarchyError(Exception):
    """Base class for all hierarchy engine errors."""
    pass


class NotFoundError(HierarchyError):
    """Raised when a referenced node does not exist or is inactive."""

    def __init__(self, node_id: str | None, message: str | None = None) -> None:
        self.node_id = node_id
        super().__init__(message or f"Hierarchy node not found: {node_id}")


class HierarchyValidationError(HierarchyError):
    """Raised when a node violates naming, code or parent/level rules."""
    pass


class DeletionBlockedError(HierarchyError):
    """Raised when a node still has children or assigned members."""
    pass


class OptimisticLockError(HierarchyError):
    """Raised when a node was modified by another writer since it was read."""

    def __init__(self, node_id: str, expected: int, actual: int) -> None:
        self.node_id = node_id
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Node {node_id} has been modified by another user "
            f"(expected version {expected}, found {actual}). Refresh and try again."
        )


class PermissionDeniedError(HierarchyError):
    """Raised by PermissionGuard.ensure when a denial is not concealed as not found."""
    pass


class InvalidTargetError(HierarchyError):
    """Base class for rejected content targeting."""
    pass


class InconsistentTargetError(InvalidTargetError):
    """A lower-level target is set without its true ancestor targets."""
    pass


class EmptyTargetError(InvalidTargetError):
    """A content item targets no hierarchy node at all."""
    pass


class MixedHierarchyTargetError(InvalidTargetError):
    """A content item targets nodes in more than one tree kind."""
    pass
