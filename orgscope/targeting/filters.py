"""
Content Target Filters — which targeted content a member may see.

Content is distributed by targeting a node in one of the trees. A viewer sees
an item when the item's deepest target in some tree is one of the viewer's
own ancestors (their own node included):

    targeted at Region R      → visible to everyone whose chain contains R
    targeted at District D    → visible only inside D
    targeted at a sibling     → not visible

Each tree the viewer sits in and the content type supports is evaluated
independently and the results are unioned. ROOT viewers see everything.

Content types with a review workflow (subscription plans) add an approval
overlay: unapproved items are visible only to their creator.
"""

from __future__ import annotations

import logging
from typing import Iterator, Mapping, Sequence

from orgscope.hierarchy.deriver import HierarchyDeriver
from orgscope.hierarchy.schema import (
    ActorPosition,
    AdminLevel,
    AncestorChain,
    ContentKind,
    HierarchyLevel,
    Scope,
    TreeKind,
    position_field,
    target_field,
)
from orgscope.targeting.predicate import (
    FALSE,
    TRUE,
    Equals,
    IsNull,
    Predicate,
    all_of,
    any_of,
)

logger = logging.getLogger(__name__)

APPROVED_FIELD = "is_approved"
CREATOR_FIELD = "creator_id"
PUBLISHED_FIELD = "published"
ACTOR_FIELD = "actor_id"


class ContentTargetFilterBuilder:
    """Builds visibility and management predicates from actor positions."""

    def __init__(self, deriver: HierarchyDeriver) -> None:
        self.deriver = deriver

    def build_visibility_predicate(
        self,
        viewer: ActorPosition,
        content_tree_levels: Mapping[TreeKind, Sequence[HierarchyLevel]],
        approval_overlay: bool = False,
    ) -> Predicate:
        """
        Build the predicate matching content visible to a viewer.

        Args:
            viewer: The viewing actor's position.
            content_tree_levels: The (tree, levels) target columns carried by
                the content type.
            approval_overlay: Apply the creator-only rule for unapproved items.

        Returns:
            A predicate over content target fields. A viewer with no position
            in any supported tree gets FALSE.

        Raises:
            NotFoundError: If one of the viewer's leaves no longer resolves.
        """
        if viewer.is_root:
            return TRUE

        branches: list[Predicate] = []
        for tree, levels in content_tree_levels.items():
            leaf_id = viewer.leaf_for(tree)
            if not leaf_id:
                continue
            chain = self.deriver.derive(tree, leaf_id)
            branches.extend(self._ancestor_branches(chain, levels))

        predicate = any_of(*branches)
        if predicate == FALSE:
            logger.debug("Viewer %s has no position in any targeted tree", viewer.actor_id)
        if approval_overlay:
            predicate = self.with_approval_overlay(predicate, viewer)
        return predicate

    def build_for_content(
        self,
        viewer: ActorPosition,
        kind: ContentKind,
        published_only: bool = True,
    ) -> Predicate:
        """Visibility predicate for one content type, with its own overlay rules."""
        predicate = self.build_visibility_predicate(
            viewer,
            kind.target_levels,
            approval_overlay=kind.has_review_workflow,
        )
        if published_only:
            predicate = all_of(Equals(PUBLISHED_FIELD, True), predicate)
        return predicate

    @staticmethod
    def with_approval_overlay(predicate: Predicate, viewer: ActorPosition) -> Predicate:
        """
        Restrict unapproved items to their creator.

        visibility AND (approved OR (not approved AND creator = viewer))
        """
        if viewer.is_root:
            return predicate
        return all_of(
            predicate,
            any_of(
                Equals(APPROVED_FIELD, True),
                all_of(
                    Equals(APPROVED_FIELD, False),
                    Equals(CREATOR_FIELD, viewer.actor_id),
                ),
            ),
        )

    # ── Administrative filters ──────────────────────────────────

    @staticmethod
    def manageable_users_predicate(scope: Scope) -> Predicate:
        """
        Members an admin may manage, over denormalized position columns.

        Plain members only see themselves; an admin with an empty scope
        sees nobody.
        """
        if scope.is_root:
            return TRUE
        if scope.is_empty:
            if scope.admin_level == AdminLevel.MEMBER:
                return Equals(ACTOR_FIELD, scope.actor_id)
            return FALSE
        return Equals(
            position_field(scope.tree_kind, scope.authority_level),
            scope.authority_root_id,
        )

    @staticmethod
    def manageable_content_predicate(scope: Scope, kind: ContentKind) -> Predicate:
        """Content an admin may edit: own items plus items targeted inside the subtree."""
        if scope.is_root:
            return TRUE
        own = Equals(CREATOR_FIELD, scope.actor_id)
        if scope.is_empty:
            return own
        levels = kind.target_levels.get(scope.tree_kind, ())
        if scope.authority_level not in levels:
            return own
        return any_of(
            own,
            Equals(
                target_field(scope.tree_kind, scope.authority_level),
                scope.authority_root_id,
            ),
        )

    # ── Internal ────────────────────────────────────────────────

    @staticmethod
    def _ancestor_branches(
        chain: AncestorChain, levels: Sequence[HierarchyLevel]
    ) -> Iterator[Predicate]:
        """
        One branch per ancestor: the item targets that ancestor and nothing
        deeper in the same tree.
        """
        tree = chain.tree_kind
        supported = [level for level in tree.levels if level in levels]
        for link in chain.links:
            if link.level not in supported:
                continue
            deeper = [level for level in supported if link.level.is_above(level)]
            yield all_of(
                Equals(target_field(tree, link.level), link.node_id),
                *(IsNull(target_field(tree, level)) for level in deeper),
            )
