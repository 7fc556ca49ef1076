"""
Target Validation — enforcing the content targeting invariant at write time.

A content item is bound to one leaf target. Every target above that leaf must
hold the leaf's true ancestor, as derived from the hierarchy store. Items are
rejected, never silently corrected:

    EmptyTargetError          nothing targeted
    MixedHierarchyTargetError targets in more than one tree kind
    InvalidTargetError        a (tree, level) the content kind does not carry
    InconsistentTargetError   an ancestor target missing or wrong
    NotFoundError             the leaf target does not resolve
"""

from __future__ import annotations

import logging

from orgscope.errors import (
    EmptyTargetError,
    InconsistentTargetError,
    InvalidTargetError,
    MixedHierarchyTargetError,
)
from orgscope.hierarchy.deriver import HierarchyDeriver
from orgscope.hierarchy.schema import (
    ActorPosition,
    ContentKind,
    ContentTargetSpec,
    TreeKind,
)

logger = logging.getLogger(__name__)


class TargetValidator:
    """Validates and derives ContentTargetSpecs against the hierarchy."""

    def __init__(self, deriver: HierarchyDeriver) -> None:
        self.deriver = deriver

    def validate(self, spec: ContentTargetSpec, kind: ContentKind) -> ContentTargetSpec:
        """
        Check a target spec for a content kind.

        Args:
            spec: The targets supplied for the new item.
            kind: The content type being created.

        Returns:
            The spec, unchanged, if it is valid.

        Raises:
            EmptyTargetError: If no target is set.
            MixedHierarchyTargetError: If targets span several tree kinds.
            InvalidTargetError: If a target level is not supported by the kind.
            InconsistentTargetError: If an ancestor target disagrees with the
                derived chain of the leaf target.
            NotFoundError: If the leaf target does not resolve.
        """
        targets = spec.set_targets()
        if not targets:
            raise EmptyTargetError(f"A {kind.value} must target at least one node")

        trees = spec.targeted_trees()
        if len(trees) > 1:
            raise MixedHierarchyTargetError(
                "Targets span several hierarchies: "
                + ", ".join(tree.value for tree in trees)
            )
        tree = trees[0]

        supported = kind.target_levels.get(tree, ())
        for _, level, _ in targets:
            if level not in supported:
                raise InvalidTargetError(
                    f"A {kind.value} cannot target {tree.value}/{level.value}"
                )

        leaf_level, leaf_id = spec.deepest(tree)
        chain = self.deriver.derive(tree, leaf_id)
        if chain.leaf_level != leaf_level:
            raise InconsistentTargetError(
                f"Node {leaf_id} is a {chain.leaf_level.value}, "
                f"not a {leaf_level.value}"
            )

        derived = chain.as_mapping()
        for level in supported:
            if not level.is_above(leaf_level):
                continue
            expected = derived.get(level)
            actual = spec.get(tree, level)
            if actual != expected:
                raise InconsistentTargetError(
                    f"{tree.value}/{level.value} target is {actual!r}, "
                    f"but the ancestor of {leaf_id} is {expected!r}"
                )
        return spec

    def derive_targets(
        self, tree_kind: TreeKind, leaf_id: str, kind: ContentKind
    ) -> ContentTargetSpec:
        """
        Build a consistent spec from a single leaf target.

        Raises:
            InvalidTargetError: If the leaf's level is not supported by the kind.
            NotFoundError: If the leaf does not resolve.
        """
        supported = kind.target_levels.get(tree_kind, ())
        chain = self.deriver.derive(tree_kind, leaf_id)
        if chain.leaf_level not in supported:
            raise InvalidTargetError(
                f"A {kind.value} cannot target "
                f"{tree_kind.value}/{chain.leaf_level.value}"
            )
        return ContentTargetSpec.from_chain(chain, supported)

    def auto_fill(self, creator: ActorPosition, kind: ContentKind) -> ContentTargetSpec:
        """
        Target the creator's own leaf in their active hierarchy.

        Raises:
            EmptyTargetError: If the creator has no leaf in that hierarchy.
        """
        tree = creator.active_hierarchy
        leaf_id = creator.leaf_for(tree)
        if not leaf_id:
            raise EmptyTargetError(
                f"Actor {creator.actor_id} has no {tree.value} position to target"
            )
        spec = self.derive_targets(tree, leaf_id, kind)
        logger.debug(
            "Auto-filled %s targets for actor %s from %s leaf %s",
            kind.value, creator.actor_id, tree.value, leaf_id,
        )
        return spec


def initial_approval(creator: ActorPosition, kind: ContentKind) -> bool:
    """Approval state of a newly created item: reviewed kinds start unapproved unless ROOT created them."""
    if not kind.has_review_workflow:
        return True
    return creator.is_root
