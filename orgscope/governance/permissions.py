"""
Permission Guard — subtree-based authorization for hierarchy admins.

Every mutating administrative request passes through this guard with the
actor's resolved Scope. Decisions are classified as:

- AUTHORIZED: the subject lies inside the actor's authority subtree
- OUT_OF_SCOPE: the subject lies elsewhere
- INVALID_LEVEL: a child was requested at the wrong level under its parent
- EMPTY_SCOPE: the actor has no authority subtree at all
- ESCALATION: an admin level above the actor's own was requested

The can_* methods are pure booleans. A missing node raises NotFoundError
rather than returning False, so callers can keep "missing" and "forbidden"
apart. PermissionGuard.ensure applies the uniform concealment policy: with
``conceal_out_of_scope`` set, a denied subject is reported as not found.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum

from orgscope.config import settings
from orgscope.errors import NotFoundError, PermissionDeniedError
from orgscope.hierarchy.deriver import HierarchyDeriver
from orgscope.hierarchy.schema import (
    ActorPosition,
    AdminLevel,
    ContentRecord,
    HierarchyLevel,
    Scope,
    TreeKind,
)

logger = logging.getLogger(__name__)


class PermissionDecision(str, Enum):
    """Result of a permission check."""

    AUTHORIZED = "authorized"
    OUT_OF_SCOPE = "out_of_scope"
    INVALID_LEVEL = "invalid_level"
    EMPTY_SCOPE = "empty_scope"
    ESCALATION = "escalation"


@dataclass
class PermissionCheckResult:
    """Result of checking an action against an actor's scope."""

    decision: PermissionDecision
    action: str
    actor_id: str
    subject_id: str | None
    reason: str

    @property
    def is_allowed(self) -> bool:
        return self.decision == PermissionDecision.AUTHORIZED


class PermissionGuard:
    """
    Central permission enforcement for hierarchy mutations.

    Re-derives every subject's ancestor chain from the store on each call;
    nothing is cached between requests.
    """

    def __init__(
        self,
        deriver: HierarchyDeriver,
        conceal_out_of_scope: bool | None = None,
    ) -> None:
        """
        Initialize the guard.

        Args:
            deriver: Ancestor deriver over the hierarchy store.
            conceal_out_of_scope: Report denied subjects as not found.
                Defaults to ``settings.conceal_out_of_scope``.
        """
        self.deriver = deriver
        self.store = deriver.store
        if conceal_out_of_scope is None:
            conceal_out_of_scope = settings.conceal_out_of_scope
        self.conceal_out_of_scope = conceal_out_of_scope

    # ── Checks ──────────────────────────────────────────────────

    def check_create_under(
        self,
        scope: Scope,
        parent_node_id: str | None,
        target_level: HierarchyLevel,
    ) -> PermissionCheckResult:
        """
        Check whether a node at target_level may be created under a parent.

        Top-level nodes (no parent) may only be created by ROOT admins. The
        parent must exist and be active.

        Raises:
            NotFoundError: If the parent does not exist or is inactive.
        """
        action = "create"
        if parent_node_id is None:
            if scope.is_root:
                return self._allow(scope, action, None, "ROOT may create top-level nodes")
            return self._deny(
                scope, action, None, PermissionDecision.OUT_OF_SCOPE,
                f"Only ROOT may create a top-level {target_level.value}",
            )

        parent = self.store.get_node(parent_node_id)
        if parent is None or not parent.active:
            raise NotFoundError(parent_node_id)

        if scope.is_root:
            return self._allow(scope, action, parent_node_id, "ROOT may create anywhere")
        if scope.is_empty:
            return self._deny(
                scope, action, parent_node_id, PermissionDecision.EMPTY_SCOPE,
                "Actor has no authority subtree",
            )
        if parent.level.child != target_level or target_level not in parent.tree_kind.levels:
            return self._deny(
                scope, action, parent_node_id, PermissionDecision.INVALID_LEVEL,
                f"A {target_level.value} cannot be created under a {parent.level.value}",
            )

        chain = self.deriver.derive(parent.tree_kind, parent.id)
        if not scope.covers(chain):
            return self._deny(
                scope, action, parent_node_id, PermissionDecision.OUT_OF_SCOPE,
                f"Parent {parent_node_id} is outside the actor's subtree",
            )
        return self._allow(scope, action, parent_node_id, "Parent inside actor's subtree")

    def check_modify(self, scope: Scope, node_id: str) -> PermissionCheckResult:
        """
        Check whether a node may be modified: it must be the authority root
        or one of its descendants. Inactive nodes may be modified too, so
        they can be reactivated.

        Raises:
            NotFoundError: If the node does not exist.
        """
        action = "modify"
        node = self.store.get_node(node_id)
        if node is None:
            raise NotFoundError(node_id)
        if scope.is_root:
            return self._allow(scope, action, node_id, "ROOT may modify anything")
        if scope.is_empty:
            return self._deny(
                scope, action, node_id, PermissionDecision.EMPTY_SCOPE,
                "Actor has no authority subtree",
            )

        chain = self.deriver.derive(node.tree_kind, node.id, include_inactive=True)
        if not scope.covers(chain):
            return self._deny(
                scope, action, node_id, PermissionDecision.OUT_OF_SCOPE,
                f"Node {node_id} is outside the actor's subtree",
            )
        return self._allow(scope, action, node_id, "Node inside actor's subtree")

    def check_assign_admin(
        self, scope: Scope, candidate: ActorPosition
    ) -> PermissionCheckResult:
        """
        Check whether a candidate's position may be assigned by this actor.

        The candidate must have a leaf in the actor's tree, and every leaf
        the candidate participates in must lie inside the actor's subtree.
        The candidate may not be granted an admin level above the actor's own.

        Raises:
            NotFoundError: If the candidate's leaf does not resolve.
        """
        action = "assign_admin"
        subject = candidate.actor_id
        if scope.is_root:
            return self._allow(scope, action, subject, "ROOT may assign anyone")
        if scope.is_empty:
            return self._deny(
                scope, action, subject, PermissionDecision.EMPTY_SCOPE,
                "Actor has no authority subtree",
            )
        if candidate.admin_level == AdminLevel.ROOT or candidate.admin_level.rank > scope.admin_level.rank:
            return self._deny(
                scope, action, subject, PermissionDecision.ESCALATION,
                f"Cannot grant {candidate.admin_level.value} from {scope.admin_level.value}",
            )

        leaf_id = candidate.leaf_for(scope.tree_kind)
        if not leaf_id:
            return self._deny(
                scope, action, subject, PermissionDecision.OUT_OF_SCOPE,
                f"Candidate has no {scope.tree_kind.value} assignment",
            )
        for tree in candidate.participating_trees():
            leaf_id = candidate.leaf_for(tree)
            if not self._leaf_in_scope(scope, tree, leaf_id):
                return self._deny(
                    scope, action, subject, PermissionDecision.OUT_OF_SCOPE,
                    f"Candidate {tree.value} leaf {leaf_id} is outside the actor's subtree",
                )
        return self._allow(scope, action, subject, "Candidate inside actor's subtree")

    def check_manage_user(
        self, scope: Scope, target: ActorPosition
    ) -> PermissionCheckResult:
        """Check whether an actor may manage another member's account."""
        action = "manage_user"
        subject = target.actor_id
        if scope.is_root or scope.actor_id == target.actor_id:
            return self._allow(scope, action, subject, "ROOT or self")
        if scope.is_empty:
            return self._deny(
                scope, action, subject, PermissionDecision.EMPTY_SCOPE,
                "Actor has no authority subtree",
            )
        leaf_id = target.leaf_for(scope.tree_kind)
        if not leaf_id:
            return self._deny(
                scope, action, subject, PermissionDecision.OUT_OF_SCOPE,
                f"Member has no {scope.tree_kind.value} assignment",
            )
        chain = self.deriver.derive(scope.tree_kind, leaf_id, include_inactive=True)
        if not scope.covers(chain):
            return self._deny(
                scope, action, subject, PermissionDecision.OUT_OF_SCOPE,
                f"Member {subject} is outside the actor's subtree",
            )
        return self._allow(scope, action, subject, "Member inside actor's subtree")

    def check_manage_content(
        self, scope: Scope, content: ContentRecord
    ) -> PermissionCheckResult:
        """
        Check whether an actor may edit or delete a content item.

        Creators always manage their own items. Otherwise the item's deepest
        target in the actor's tree must lie inside the actor's subtree.
        """
        action = "manage_content"
        if scope.is_root or (content.creator_id and content.creator_id == scope.actor_id):
            return self._allow(scope, action, content.id, "ROOT or creator")
        if scope.is_empty:
            return self._deny(
                scope, action, content.id, PermissionDecision.EMPTY_SCOPE,
                "Actor has no authority subtree",
            )
        deepest = content.targets.deepest(scope.tree_kind)
        if deepest is None:
            return self._deny(
                scope, action, content.id, PermissionDecision.OUT_OF_SCOPE,
                f"Content has no {scope.tree_kind.value} target",
            )
        _, target_id = deepest
        chain = self.deriver.derive(scope.tree_kind, target_id, include_inactive=True)
        if not scope.covers(chain):
            return self._deny(
                scope, action, content.id, PermissionDecision.OUT_OF_SCOPE,
                f"Content target {target_id} is outside the actor's subtree",
            )
        return self._allow(scope, action, content.id, "Content target inside actor's subtree")

    # ── Boolean decisions ───────────────────────────────────────

    def can_create_under(
        self,
        scope: Scope,
        parent_node_id: str | None,
        target_level: HierarchyLevel,
    ) -> bool:
        return self.check_create_under(scope, parent_node_id, target_level).is_allowed

    def can_modify(self, scope: Scope, node_id: str) -> bool:
        return self.check_modify(scope, node_id).is_allowed

    def can_assign_admin(self, scope: Scope, candidate: ActorPosition) -> bool:
        return self.check_assign_admin(scope, candidate).is_allowed

    def can_manage_user(self, scope: Scope, target: ActorPosition) -> bool:
        return self.check_manage_user(scope, target).is_allowed

    def can_manage_content(self, scope: Scope, content: ContentRecord) -> bool:
        return self.check_manage_content(scope, content).is_allowed

    # ── Enforcement ─────────────────────────────────────────────

    def ensure(self, result: PermissionCheckResult) -> None:
        """
        Turn a denial into an exception under the concealment policy.

        A denial without a subject node (a top-level create) has nothing to
        conceal and is always reported as forbidden.

        Raises:
            NotFoundError: If denied and out-of-scope subjects are concealed.
            PermissionDeniedError: If denied and concealment is off, or the
                denial has no subject node.
        """
        if result.is_allowed:
            return
        if self.conceal_out_of_scope and result.subject_id is not None:
            raise NotFoundError(result.subject_id)
        raise PermissionDeniedError(result.reason)

    # ── Internal ────────────────────────────────────────────────

    def _leaf_in_scope(self, scope: Scope, tree: TreeKind, leaf_id: str) -> bool:
        """
        Whether a leaf in any tree falls under the scope's authority subtree.

        SECTOR and ORIGINAL leaves are compared through the ORIGINAL node a
        sector mirror was created from. EXPATRIATE leaves only fall under an
        EXPATRIATE scope.

        Raises:
            NotFoundError: If the leaf does not resolve.
        """
        chain = self.deriver.derive(tree, leaf_id)
        if tree == scope.tree_kind:
            return scope.covers(chain)

        if tree == TreeKind.SECTOR and scope.tree_kind == TreeKind.ORIGINAL:
            source_id = self.store.get_node(leaf_id).source_node_id
            if not source_id:
                return False
            return scope.covers(
                self.deriver.derive(TreeKind.ORIGINAL, source_id, include_inactive=True)
            )

        if tree == TreeKind.ORIGINAL and scope.tree_kind == TreeKind.SECTOR:
            root = self.store.get_node(scope.authority_root_id)
            return bool(root and root.source_node_id) and chain.contains(root.source_node_id)

        return False

    @staticmethod
    def _allow(
        scope: Scope, action: str, subject_id: str | None, reason: str
    ) -> PermissionCheckResult:
        return PermissionCheckResult(
            decision=PermissionDecision.AUTHORIZED,
            action=action,
            actor_id=scope.actor_id,
            subject_id=subject_id,
            reason=reason,
        )

    @staticmethod
    def _deny(
        scope: Scope,
        action: str,
        subject_id: str | None,
        decision: PermissionDecision,
        reason: str,
    ) -> PermissionCheckResult:
        logger.info(
            "Permission denied: actor=%s action=%s subject=%s decision=%s",
            scope.actor_id, action, subject_id, decision.value,
        )
        return PermissionCheckResult(
            decision=decision,
            action=action,
            actor_id=scope.actor_id,
            subject_id=subject_id,
            reason=reason,
        )
