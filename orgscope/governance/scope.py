"""
Scope Resolution — turning an actor's stored position into authority.

An admin's authority subtree is rooted at the node of their active tree that
sits at their admin level: a REGION admin whose leaf is a District governs
the Region above that District. ROOT admins govern everything.

Any admin whose position cannot produce a root at their level resolves to an
empty scope. Hierarchy admins must never gain universal access from a
missing assignment, so the failure mode is "matches nothing".
"""

from __future__ import annotations

import logging

from orgscope.hierarchy.deriver import HierarchyDeriver
from orgscope.hierarchy.schema import ActorPosition, AdminLevel, Scope

logger = logging.getLogger(__name__)


class ScopeResolver:
    """Computes an actor's Scope from their ActorPosition."""

    def __init__(self, deriver: HierarchyDeriver) -> None:
        self.deriver = deriver

    def resolve(self, position: ActorPosition) -> Scope:
        """
        Resolve an actor's scope.

        Args:
            position: The actor's stored position.

        Returns:
            A root scope for ROOT admins, a subtree scope for hierarchy
            admins, and an empty scope for members or malformed positions.

        Raises:
            NotFoundError: If the actor's leaf in their active tree no longer
                resolves to an active node.
        """
        if position.admin_level == AdminLevel.ROOT:
            return Scope.root(position.actor_id)

        tree = position.active_hierarchy
        leaf_id = position.leaf_for(tree)
        if not leaf_id:
            if position.admin_level != AdminLevel.MEMBER:
                logger.warning(
                    "Admin without %s assignment resolves to empty scope: actor=%s level=%s",
                    tree.value, position.actor_id, position.admin_level.value,
                )
            return Scope.empty(position.actor_id, position.admin_level)

        chain = self.deriver.derive(tree, leaf_id)

        level = position.admin_level.hierarchy_level
        if level is None:
            return Scope.empty(position.actor_id, position.admin_level, chain)

        root_id = chain.id_at(level)
        if root_id is None:
            logger.warning(
                "Admin leaf has no %s ancestor, empty scope: actor=%s leaf=%s tree=%s",
                level.value, position.actor_id, leaf_id, tree.value,
            )
            return Scope.empty(position.actor_id, position.admin_level, chain)

        return Scope(
            actor_id=position.actor_id,
            admin_level=position.admin_level,
            tree_kind=tree,
            authority_root_id=root_id,
            authority_level=level,
            ancestor_chain=chain,
        )
