"""
Hierarchy Store — the persistence collaborator consumed by the engine.

The engine never issues queries itself. It asks a HierarchyStore for nodes,
their parents, children and assigned members, and hands back decisions and
predicates. Two implementations ship with the package:

- InMemoryHierarchyStore — thread-safe dictionaries, used by tests and tools
- SqlHierarchyStore      — SQLAlchemy sessions (see sql_store.py)
"""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from datetime import datetime, timezone

from orgscope.errors import NotFoundError, OptimisticLockError
from orgscope.hierarchy.schema import (
    ActorPosition,
    HierarchyLevel,
    HierarchyNode,
    SectorType,
    TreeKind,
)

logger = logging.getLogger(__name__)


class HierarchyStore(ABC):
    """Abstract store of hierarchy nodes and member positions."""

    @abstractmethod
    def get_node(self, node_id: str) -> HierarchyNode | None:
        """Return a node by id, active or not."""

    @abstractmethod
    def add_node(self, node: HierarchyNode) -> HierarchyNode:
        """Persist a new node and commit."""

    @abstractmethod
    def update_node(self, node: HierarchyNode, expected_version: int) -> HierarchyNode:
        """
        Persist changes to an existing node.

        Raises:
            NotFoundError: If the node does not exist.
            OptimisticLockError: If the stored version differs from expected_version.
        """

    @abstractmethod
    def remove_node(self, node_id: str) -> None:
        """Hard-delete a node."""

    @abstractmethod
    def children(self, parent_id: str, active_only: bool = False) -> list[HierarchyNode]:
        """Direct children of a node."""

    @abstractmethod
    def find_nodes(
        self,
        tree_kind: TreeKind,
        level: HierarchyLevel | None = None,
        *,
        code: str | None = None,
        name_prefix: str | None = None,
        sector_type: SectorType | None = None,
        source_node_id: str | None = None,
        active_only: bool = False,
    ) -> list[HierarchyNode]:
        """Nodes of one tree matching every given criterion."""

    @abstractmethod
    def save_position(self, position: ActorPosition) -> ActorPosition:
        """Insert or replace a member's stored position."""

    @abstractmethod
    def get_position(self, actor_id: str) -> ActorPosition | None:
        """A member's stored position."""

    @abstractmethod
    def positions(self) -> list[ActorPosition]:
        """All stored member positions."""

    @abstractmethod
    def count_members(self, node_id: str) -> int:
        """Number of members whose stored ancestors reference the node."""

    def get_node_with_parent(
        self, node_id: str
    ) -> tuple[HierarchyNode, HierarchyNode | None] | None:
        """Return a node together with its immediate parent."""
        node = self.get_node(node_id)
        if node is None:
            return None
        parent = self.get_node(node.parent_id) if node.parent_id else None
        return node, parent


class InMemoryHierarchyStore(HierarchyStore):
    """
    Dictionary-backed store.

    Every read returns a copy so callers work on a snapshot, as they would
    with rows loaded from a database session.
    """

    def __init__(self) -> None:
        self._nodes: dict[str, HierarchyNode] = {}
        self._positions: dict[str, ActorPosition] = {}
        self._lock = threading.RLock()

    def get_node(self, node_id: str) -> HierarchyNode | None:
        with self._lock:
            node = self._nodes.get(node_id)
            return node.model_copy(deep=True) if node else None

    def add_node(self, node: HierarchyNode) -> HierarchyNode:
        with self._lock:
            self._nodes[node.id] = node.model_copy(deep=True)
        logger.debug("Node stored: %s %s/%s", node.id[:8], node.tree_kind.value, node.level.value)
        return node

    def update_node(self, node: HierarchyNode, expected_version: int) -> HierarchyNode:
        with self._lock:
            current = self._nodes.get(node.id)
            if current is None:
                raise NotFoundError(node.id)
            if current.version != expected_version:
                raise OptimisticLockError(node.id, expected_version, current.version)
            updated = node.model_copy(
                update={"version": current.version + 1, "updated_at": datetime.now(timezone.utc)},
                deep=True,
            )
            self._nodes[node.id] = updated
            return updated.model_copy(deep=True)

    def remove_node(self, node_id: str) -> None:
        with self._lock:
            if self._nodes.pop(node_id, None) is None:
                raise NotFoundError(node_id)

    def children(self, parent_id: str, active_only: bool = False) -> list[HierarchyNode]:
        with self._lock:
            return [
                node.model_copy(deep=True)
                for node in self._nodes.values()
                if node.parent_id == parent_id and (node.active or not active_only)
            ]

    def find_nodes(
        self,
        tree_kind: TreeKind,
        level: HierarchyLevel | None = None,
        *,
        code: str | None = None,
        name_prefix: str | None = None,
        sector_type: SectorType | None = None,
        source_node_id: str | None = None,
        active_only: bool = False,
    ) -> list[HierarchyNode]:
        with self._lock:
            matches = []
            for node in self._nodes.values():
                if node.tree_kind != tree_kind:
                    continue
                if level is not None and node.level != level:
                    continue
                if code is not None and node.code != code:
                    continue
                if name_prefix is not None and not node.name.startswith(name_prefix):
                    continue
                if sector_type is not None and node.sector_type != sector_type:
                    continue
                if source_node_id is not None and node.source_node_id != source_node_id:
                    continue
                if active_only and not node.active:
                    continue
                matches.append(node.model_copy(deep=True))
            return matches

    def save_position(self, position: ActorPosition) -> ActorPosition:
        with self._lock:
            self._positions[position.actor_id] = position.model_copy(deep=True)
        return position

    def get_position(self, actor_id: str) -> ActorPosition | None:
        with self._lock:
            position = self._positions.get(actor_id)
            return position.model_copy(deep=True) if position else None

    def positions(self) -> list[ActorPosition]:
        with self._lock:
            return [p.model_copy(deep=True) for p in self._positions.values()]

    def count_members(self, node_id: str) -> int:
        with self._lock:
            return sum(
                1
                for position in self._positions.values()
                if any(chain.contains(node_id) for chain in position.ancestors.values())
            )
