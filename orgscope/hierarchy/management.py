"""
Hierarchy Manager — administrative mutations of the trees and of member positions.

Every operation takes the acting admin's position explicitly, resolves their
scope, and passes the request through the PermissionGuard before touching the
store. Denials follow the guard's concealment policy.

Ordering guarantees:
- A child is only accepted while its parent exists and is active; the check
  is repeated under the parent's lock.
- Sector mirrors are created only after the ORIGINAL node has been stored,
  and a mirroring failure never undoes the node.
- Mutations of one node are serialized by a per-node lock and guarded by the
  node's version.
"""

from __future__ import annotations

import logging
import re
import threading
from collections import Counter
from contextlib import contextmanager
from typing import Iterator, Mapping

from orgscope.config import OrgScopeSettings, settings as default_settings
from orgscope.errors import (
    DeletionBlockedError,
    HierarchyError,
    HierarchyValidationError,
    NotFoundError,
)
from orgscope.governance.permissions import PermissionGuard
from orgscope.governance.scope import ScopeResolver
from orgscope.hierarchy.deriver import HierarchyDeriver
from orgscope.hierarchy.schema import (
    ActorPosition,
    HierarchyLevel,
    HierarchyNode,
    Scope,
    SectorType,
    TreeKind,
)
from orgscope.hierarchy.sector_linker import SectorLinker
from orgscope.hierarchy.store import HierarchyStore

logger = logging.getLogger(__name__)

CODE_PATTERN = re.compile(r"^[A-Z0-9_-]+$")


def normalize_node_fields(
    name: str | None,
    code: str | None = None,
    description: str | None = None,
) -> tuple[str, str | None, str | None]:
    """
    Trim and validate editable node fields.

    Raises:
        HierarchyValidationError: If the name is blank or the code contains
            characters outside A-Z, 0-9, '_' and '-'.
    """
    name = (name or "").strip()
    if not name:
        raise HierarchyValidationError("Name is required")

    code = (code or "").strip().upper() or None
    if code is not None and not CODE_PATTERN.match(code):
        raise HierarchyValidationError(
            f"Code {code!r} may only contain letters, digits, '_' and '-'"
        )

    description = (description or "").strip() or None
    return name, code, description


class HierarchyManager:
    """Creates, edits, deactivates and deletes nodes; (re)assigns members."""

    def __init__(
        self,
        store: HierarchyStore,
        settings: OrgScopeSettings | None = None,
        guard: PermissionGuard | None = None,
        linker: SectorLinker | None = None,
    ) -> None:
        self.store = store
        self.settings = settings or default_settings
        self.deriver = HierarchyDeriver(store)
        self.resolver = ScopeResolver(self.deriver)
        self.guard = guard or PermissionGuard(
            self.deriver, self.settings.conceal_out_of_scope
        )
        self.linker = linker or SectorLinker(store, self.settings)
        self._locks: dict[str, list] = {}
        self._locks_guard = threading.Lock()

    # ── Nodes ───────────────────────────────────────────────────

    def get_node(self, actor: ActorPosition, node_id: str) -> HierarchyNode:
        """
        Fetch a node the actor administers.

        Raises:
            NotFoundError: If the node is missing, or out of scope while
                concealment is on.
            PermissionDeniedError: If out of scope and concealment is off.
        """
        scope = self.resolver.resolve(actor)
        self.guard.ensure(self.guard.check_modify(scope, node_id))
        return self.store.get_node(node_id)

    def create_node(
        self,
        actor: ActorPosition,
        name: str,
        level: HierarchyLevel,
        tree_kind: TreeKind = TreeKind.ORIGINAL,
        parent_id: str | None = None,
        code: str | None = None,
        description: str | None = None,
        sector_type: SectorType | None = None,
        parent_sector_ids: Mapping[SectorType, str] | None = None,
    ) -> HierarchyNode:
        """
        Create a node and, for ORIGINAL nodes, its sector mirrors.

        Args:
            actor: The acting admin.
            name: Display name, required.
            level: Level of the new node.
            tree_kind: Tree the node belongs to.
            parent_id: Parent node, one level above in the same tree.
            code: Optional code, unique per tree and level.
            description: Optional free text.
            sector_type: Required for SECTOR nodes, forbidden otherwise.
            parent_sector_ids: Known sector mirrors of the parent, passed to
                the SectorLinker.

        Returns:
            The stored node.

        Raises:
            NotFoundError: If the parent is missing or inactive.
            HierarchyValidationError: On bad fields, duplicate codes or a
                parent at the wrong level or tree.
            PermissionDeniedError: If denied and concealment is off.
        """
        scope = self.resolver.resolve(actor)
        self.guard.ensure(self.guard.check_create_under(scope, parent_id, level))

        name, code, description = normalize_node_fields(name, code, description)
        if level not in tree_kind.levels:
            raise HierarchyValidationError(
                f"The {tree_kind.value} tree has no {level.value} level"
            )

        with self._node_lock(parent_id):
            if parent_id is None:
                if level not in tree_kind.top_levels:
                    raise HierarchyValidationError(
                        f"A {tree_kind.value} {level.value} requires a parent"
                    )
            else:
                parent = self.store.get_node(parent_id)
                if parent is None or not parent.active:
                    raise NotFoundError(parent_id)
                self._check_parent(parent, tree_kind, level)
            self._check_code_unique(tree_kind, level, code)

            try:
                node = HierarchyNode(
                    name=name,
                    code=code,
                    description=description,
                    tree_kind=tree_kind,
                    level=level,
                    parent_id=parent_id,
                    sector_type=sector_type,
                )
            except ValueError as e:
                raise HierarchyValidationError(str(e)) from e
            self.store.add_node(node)

        logger.info(
            "Node created: %s %s/%s %r by %s",
            node.id, tree_kind.value, level.value, name, actor.actor_id,
        )

        if tree_kind == TreeKind.ORIGINAL:
            try:
                self.linker.on_node_created(node, parent_sector_ids)
            except Exception:
                logger.exception("Sector mirroring failed for node %s; left for reconciliation", node.id)

        return node

    def update_node(
        self,
        actor: ActorPosition,
        node_id: str,
        expected_version: int,
        name: str | None = None,
        code: str | None = None,
        description: str | None = None,
    ) -> HierarchyNode:
        """
        Edit a node's name, code or description.

        Omitted fields keep their value. Pass an empty string to clear the
        code or description.

        Raises:
            NotFoundError: If the node is missing or concealed.
            OptimisticLockError: If the node changed since expected_version.
            HierarchyValidationError: On bad fields or a duplicate code.
        """
        scope = self.resolver.resolve(actor)
        self.guard.ensure(self.guard.check_modify(scope, node_id))

        with self._node_lock(node_id):
            node = self._require(node_id)
            new_name, new_code, new_description = normalize_node_fields(
                node.name if name is None else name,
                node.code if code is None else code,
                node.description if description is None else description,
            )
            if new_code != node.code:
                self._check_code_unique(node.tree_kind, node.level, new_code)

            changed = node.model_copy(
                update={"name": new_name, "code": new_code, "description": new_description}
            )
            updated = self.store.update_node(changed, expected_version)

        logger.info("Node updated: %s v%d by %s", node_id, updated.version, actor.actor_id)
        return updated

    def move_node(
        self,
        actor: ActorPosition,
        node_id: str,
        new_parent_id: str,
        expected_version: int,
    ) -> HierarchyNode:
        """
        Re-parent a node within its tree.

        The actor must administer both the node and the new parent. Members
        below the node have their stored ancestors re-derived, and the node's
        sector mirrors are relinked. Once the move is stored it is not undone:
        a member chain that cannot be re-derived is logged and left for the
        reconciliation audit.

        Raises:
            NotFoundError: If either node is missing, inactive or concealed.
            HierarchyValidationError: If the new parent is at the wrong level.
            OptimisticLockError: If the node changed since expected_version.
        """
        scope = self.resolver.resolve(actor)
        self.guard.ensure(self.guard.check_modify(scope, node_id))

        with self._node_lock(node_id):
            node = self._require(node_id)
            self.guard.ensure(self.guard.check_create_under(scope, new_parent_id, node.level))
            new_parent = self.store.get_node(new_parent_id)
            if new_parent is None or not new_parent.active:
                raise NotFoundError(new_parent_id)
            self._check_parent(new_parent, node.tree_kind, node.level)

            moved = self.store.update_node(
                node.model_copy(update={"parent_id": new_parent_id}), expected_version
            )

        logger.info(
            "Node moved: %s under %s by %s", node_id, new_parent_id, actor.actor_id
        )
        if moved.tree_kind == TreeKind.ORIGINAL:
            self._relink_mirrors(moved)
        self._rederive_members(node_id)
        return moved

    def set_active(
        self,
        actor: ActorPosition,
        node_id: str,
        active: bool,
        expected_version: int,
    ) -> HierarchyNode:
        """
        Soft-delete or reactivate a node.

        Raises:
            DeletionBlockedError: If deactivating while active children exist.
            HierarchyValidationError: If reactivating under an inactive parent.
            OptimisticLockError: If the node changed since expected_version.
        """
        scope = self.resolver.resolve(actor)
        self.guard.ensure(self.guard.check_modify(scope, node_id))

        with self._node_lock(node_id):
            node = self._require(node_id)
            if not active and self.store.children(node_id, active_only=True):
                raise DeletionBlockedError(
                    f"Node {node_id} still has active children; deactivate them first"
                )
            if active and node.parent_id:
                parent = self.store.get_node(node.parent_id)
                if parent is None or not parent.active:
                    raise HierarchyValidationError(
                        f"Cannot reactivate {node_id} under inactive parent {node.parent_id}"
                    )
            updated = self.store.update_node(
                node.model_copy(update={"active": active}), expected_version
            )

        logger.info(
            "Node %s: %s by %s",
            "reactivated" if active else "deactivated", node_id, actor.actor_id,
        )
        return updated

    def deactivate_node(
        self, actor: ActorPosition, node_id: str, expected_version: int
    ) -> HierarchyNode:
        return self.set_active(actor, node_id, False, expected_version)

    def delete_node(self, actor: ActorPosition, node_id: str) -> None:
        """
        Hard-delete a node together with its sector mirrors.

        Raises:
            DeletionBlockedError: If the node or one of its mirrors has any
                children or assigned members.
        """
        scope = self.resolver.resolve(actor)
        self.guard.ensure(self.guard.check_modify(scope, node_id))

        with self._node_lock(node_id):
            node = self._require(node_id)
            mirrors = []
            if node.tree_kind == TreeKind.ORIGINAL:
                mirrors = list(self.linker.mirrors_of(node_id).values())

            for candidate in [node, *mirrors]:
                if self.store.children(candidate.id):
                    raise DeletionBlockedError(
                        f"Node {candidate.id} has children; remove or move them first"
                    )
                members = self.store.count_members(candidate.id)
                if members:
                    raise DeletionBlockedError(
                        f"Node {candidate.id} has {members} assigned members"
                    )

            for mirror in mirrors:
                self.store.remove_node(mirror.id)
            self.store.remove_node(node_id)

        logger.info(
            "Node deleted: %s (%d sector mirrors) by %s",
            node_id, len(mirrors), actor.actor_id,
        )

    def get_or_create_default_national_level(self) -> HierarchyNode:
        """The first active ORIGINAL NationalLevel, created from settings if none exists."""
        with self._node_lock(None):
            existing = self.store.find_nodes(
                TreeKind.ORIGINAL, HierarchyLevel.NATIONAL_LEVEL, active_only=True
            )
            if existing:
                return min(existing, key=lambda node: node.created_at)

            name, code, _ = normalize_node_fields(
                self.settings.default_national_level_name,
                self.settings.default_national_level_code,
            )
            if code and self.store.find_nodes(
                TreeKind.ORIGINAL, HierarchyLevel.NATIONAL_LEVEL, code=code
            ):
                code = None
            node = HierarchyNode(
                name=name,
                code=code,
                tree_kind=TreeKind.ORIGINAL,
                level=HierarchyLevel.NATIONAL_LEVEL,
            )
            self.store.add_node(node)

        logger.info("Default national level created: %s", node.id)
        return node

    # ── Members ─────────────────────────────────────────────────

    def assign_member(
        self, actor: ActorPosition, position: ActorPosition
    ) -> ActorPosition:
        """
        Store a member's position with freshly derived ancestors.

        Ancestors supplied on ``position`` are discarded.

        Raises:
            NotFoundError: If a leaf does not resolve, or the assignment is
                out of scope while concealment is on.
            PermissionDeniedError: If out of scope and concealment is off.
        """
        scope = self.resolver.resolve(actor)
        self.guard.ensure(self.guard.check_assign_admin(scope, position))

        derived = self.deriver.derive_position(position)
        self.store.save_position(derived)
        logger.info(
            "Member assigned: %s as %s in %s by %s",
            position.actor_id,
            position.admin_level.value,
            ",".join(tree.value for tree in derived.participating_trees()) or "-",
            actor.actor_id,
        )
        return derived

    # ── Statistics ──────────────────────────────────────────────

    def subtree_counts(self, scope: Scope) -> dict[HierarchyLevel, int]:
        """Active nodes per level inside a scope's authority subtree."""
        counts: Counter[HierarchyLevel] = Counter()
        if scope.is_empty:
            return {}
        if scope.is_root:
            # ROOT statistics cover the geographic tree
            for node in self.store.find_nodes(TreeKind.ORIGINAL, active_only=True):
                counts[node.level] += 1
            return dict(counts)

        root = self.store.get_node(scope.authority_root_id)
        if root is None or not root.active:
            return {}
        pending = [root]
        while pending:
            node = pending.pop()
            counts[node.level] += 1
            pending.extend(self.store.children(node.id, active_only=True))
        return dict(counts)

    # ── Internal ────────────────────────────────────────────────

    @contextmanager
    def _node_lock(self, node_id: str | None) -> Iterator[None]:
        key = node_id or "__top__"
        with self._locks_guard:
            entry = self._locks.setdefault(key, [threading.Lock(), 0])
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            # Drop the lock once nobody holds or waits for it
            with self._locks_guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._locks[key]

    def _require(self, node_id: str) -> HierarchyNode:
        node = self.store.get_node(node_id)
        if node is None:
            raise NotFoundError(node_id)
        return node

    @staticmethod
    def _check_parent(
        parent: HierarchyNode, tree_kind: TreeKind, level: HierarchyLevel
    ) -> None:
        if parent.tree_kind != tree_kind:
            raise HierarchyValidationError(
                f"Parent {parent.id} is in the {parent.tree_kind.value} tree, "
                f"not {tree_kind.value}"
            )
        if parent.level.child != level:
            raise HierarchyValidationError(
                f"A {level.value} cannot be placed under a {parent.level.value}"
            )

    def _check_code_unique(
        self, tree_kind: TreeKind, level: HierarchyLevel, code: str | None
    ) -> None:
        if code and self.store.find_nodes(tree_kind, level, code=code):
            raise HierarchyValidationError(
                f"Code {code} is already used by another {tree_kind.value} {level.value}"
            )

    def _relink_mirrors(self, node: HierarchyNode) -> None:
        for sector_type, mirror in self.linker.mirrors_of(node.id).items():
            parent_sector_id = None
            needs_reconciliation = False
            # Region mirrors stay top-level in the SECTOR tree
            if node.level != HierarchyLevel.REGION:
                parent_sector_id = self.linker.resolve_parent_sector(node, sector_type)
                needs_reconciliation = parent_sector_id is None
            relinked = mirror.model_copy(
                update={
                    "parent_id": parent_sector_id,
                    "needs_reconciliation": needs_reconciliation,
                }
            )
            self.store.update_node(relinked, mirror.version)
            self._rederive_members(mirror.id)

    def _rederive_members(self, node_id: str) -> None:
        """
        Refresh stored chains that pass through a moved node.

        Only the trees containing the node are re-derived. A position that
        cannot be re-derived is logged and skipped; the audit reports it.
        """
        refreshed = 0
        for position in self.store.positions():
            trees = [
                tree for tree, chain in position.ancestors.items() if chain.contains(node_id)
            ]
            if not trees:
                continue
            ancestors = dict(position.ancestors)
            try:
                for tree in trees:
                    ancestors[tree] = self.deriver.derive(
                        tree, position.leaf_for(tree), include_inactive=True
                    )
            except HierarchyError as e:
                logger.warning(
                    "Could not re-derive position of %s below %s: %s",
                    position.actor_id, node_id, e,
                )
                continue
            self.store.save_position(position.model_copy(update={"ancestors": ancestors}))
            refreshed += 1
        if refreshed:
            logger.info("Re-derived %d member positions below %s", refreshed, node_id)
