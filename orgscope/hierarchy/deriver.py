"""
Hierarchy Deriver — ancestor chains from leaf assignments.

Members and content items are bound to a single leaf node. Every id above
that leaf is derived here by walking parent links, never taken from a
request. Any write of a leaf id must be followed by a derivation whose
result overwrites the stored ancestor ids.

The deriver is a pure read over the store's current snapshot. Nothing is
cached, so concurrent hierarchy edits are always observed.
"""

from __future__ import annotations

import logging
from typing import Mapping

from orgscope.errors import HierarchyValidationError, NotFoundError
from orgscope.hierarchy.schema import (
    ActorPosition,
    AncestorChain,
    ChainLink,
    HierarchyLevel,
    TreeKind,
)
from orgscope.hierarchy.store import HierarchyStore

logger = logging.getLogger(__name__)


class HierarchyDeriver:
    """Walks parent pointers from a leaf to the top of its tree."""

    def __init__(self, store: HierarchyStore) -> None:
        self.store = store

    def derive(
        self,
        tree_kind: TreeKind,
        leaf_id: str,
        include_inactive: bool = False,
    ) -> AncestorChain:
        """
        Derive the ancestor chain of a leaf, top of the tree first.

        Args:
            tree_kind: The tree the leaf must belong to.
            leaf_id: Id of the leaf node.
            include_inactive: Accept a deactivated leaf (used when modifying
                or reactivating it).

        Returns:
            AncestorChain whose last link is the leaf itself.

        Raises:
            NotFoundError: If the leaf is missing, inactive, in another tree,
                or a parent link points at a missing node.
            HierarchyValidationError: If a parent is not exactly one level up
                in the same tree.
        """
        leaf = self.store.get_node(leaf_id)
        if leaf is None or leaf.tree_kind != tree_kind or not (leaf.active or include_inactive):
            raise NotFoundError(
                leaf_id, f"No active {tree_kind.value} node with id {leaf_id}"
            )

        links = [ChainLink(level=leaf.level, node_id=leaf.id)]
        current = leaf
        while current.parent_id:
            parent = self.store.get_node(current.parent_id)
            if parent is None:
                raise NotFoundError(
                    current.parent_id,
                    f"Node {current.id} references missing parent {current.parent_id}",
                )
            # Levels strictly decrease on the way up, so the walk terminates
            if parent.tree_kind != tree_kind or parent.level != current.level.parent:
                raise HierarchyValidationError(
                    f"Corrupt parent link {current.id} -> {parent.id}: "
                    f"{parent.tree_kind.value}/{parent.level.value} is not directly "
                    f"above {current.tree_kind.value}/{current.level.value}"
                )
            links.append(ChainLink(level=parent.level, node_id=parent.id))
            current = parent

        links.reverse()
        return AncestorChain(tree_kind=tree_kind, links=links)

    def derive_position(self, position: ActorPosition) -> ActorPosition:
        """
        Return a copy of the position with every ancestor chain re-derived.

        Ancestors supplied on the input are discarded.
        """
        ancestors = {
            tree: self.derive(tree, position.leaf_for(tree))
            for tree in position.participating_trees()
        }
        return position.model_copy(update={"ancestors": ancestors})

    def reconcile(
        self,
        tree_kind: TreeKind,
        leaf_id: str,
        supplied: Mapping[HierarchyLevel, str | None],
    ) -> AncestorChain:
        """
        Derive a chain and discard any caller-supplied ancestor that disagrees.

        The derived chain is always what is returned; mismatches are logged
        so that bad clients can be spotted.
        """
        chain = self.derive(tree_kind, leaf_id)
        derived = chain.as_mapping()
        for level, value in supplied.items():
            if value and derived.get(level) != value:
                logger.warning(
                    "Discarding supplied ancestor: tree=%s level=%s supplied=%s derived=%s",
                    tree_kind.value, level.value, value, derived.get(level),
                )
        return chain
