"""
Tests for the HierarchyManager.

Validates:
- Node creation: normalization, code uniqueness, structure and scope checks
- Optimistic locking on edits, including racing threads
- Soft and hard delete blocking
- Moves: mirror relinking and member re-derivation across trees
- Member assignment with derived ancestors
- Statistics and the default national level
"""

from __future__ import annotations

import threading

import pytest

from orgscope.errors import (
    DeletionBlockedError,
    HierarchyError,
    HierarchyValidationError,
    NotFoundError,
    OptimisticLockError,
    PermissionDeniedError,
)
from orgscope.hierarchy.audit import HierarchyAuditor
from orgscope.hierarchy.management import HierarchyManager, normalize_node_fields
from orgscope.hierarchy.schema import (
    AdminLevel,
    HierarchyLevel,
    HierarchyNode,
    SectorType,
    TreeKind,
)
from orgscope.hierarchy.store import InMemoryHierarchyStore

from conftest import make_settings


class TestNormalization:

    def test_trims_and_uppercases(self):
        assert normalize_node_fields("  Bahri ", " kh-01 ", "  ") == ("Bahri", "KH-01", None)

    def test_blank_name_rejected(self):
        with pytest.raises(HierarchyValidationError):
            normalize_node_fields("   ")

    def test_bad_code_rejected(self):
        with pytest.raises(HierarchyValidationError):
            normalize_node_fields("X", "A B")


class TestCreateNode:

    @pytest.fixture(autouse=True)
    def _tree(self, tree):
        self.tree = tree
        self.manager = tree.manager
        self.region_admin = tree.position("ra", tree.l1, AdminLevel.REGION)

    def test_region_admin_creates_locality(self):
        node = self.manager.create_node(
            self.region_admin, " New Locality ", HierarchyLevel.LOCALITY,
            parent_id=self.tree.r1.id, code="nl1",
        )
        assert node.name == "New Locality"
        assert node.code == "NL1"
        mirrors = self.tree.store.find_nodes(TreeKind.SECTOR, source_node_id=node.id)
        assert len(mirrors) == 4

    def test_out_of_scope_parent_concealed(self):
        with pytest.raises(NotFoundError) as exc:
            self.manager.create_node(
                self.region_admin, "X", HierarchyLevel.LOCALITY, parent_id=self.tree.r2.id
            )
        assert exc.value.node_id == self.tree.r2.id

    def test_out_of_scope_parent_forbidden_without_concealment(self):
        manager = HierarchyManager(self.tree.store, make_settings(conceal_out_of_scope=False))
        with pytest.raises(PermissionDeniedError):
            manager.create_node(
                self.region_admin, "X", HierarchyLevel.LOCALITY, parent_id=self.tree.r2.id
            )

    def test_root_wrong_level_rejected(self):
        with pytest.raises(HierarchyValidationError):
            self.manager.create_node(
                self.tree.root, "X", HierarchyLevel.DISTRICT, parent_id=self.tree.r1.id
            )

    def test_root_parent_in_other_tree_rejected(self):
        with pytest.raises(HierarchyValidationError):
            self.manager.create_node(
                self.tree.root, "X", HierarchyLevel.LOCALITY, parent_id=self.tree.e1.id
            )

    def test_top_level_create_by_admin_forbidden(self):
        with pytest.raises(PermissionDeniedError):
            self.manager.create_node(self.region_admin, "N9", HierarchyLevel.NATIONAL_LEVEL)

    def test_region_requires_parent(self):
        with pytest.raises(HierarchyValidationError):
            self.manager.create_node(self.tree.root, "X", HierarchyLevel.REGION)

    def test_expatriate_has_no_localities(self):
        with pytest.raises(HierarchyValidationError):
            self.manager.create_node(
                self.tree.root, "X", HierarchyLevel.LOCALITY,
                tree_kind=TreeKind.EXPATRIATE, parent_id=self.tree.e1.id,
            )

    def test_duplicate_code_rejected(self):
        with pytest.raises(HierarchyValidationError):
            self.manager.create_node(
                self.tree.root, "Another", HierarchyLevel.REGION,
                parent_id=self.tree.n1.id, code="r1",
            )

    def test_same_code_allowed_at_other_level(self):
        node = self.manager.create_node(
            self.tree.root, "Loc", HierarchyLevel.LOCALITY, parent_id=self.tree.r2.id, code="R1"
        )
        assert node.code == "R1"

    def test_child_of_inactive_parent_rejected(self):
        self.manager.deactivate_node(self.tree.root, self.tree.d2.id, 1)
        self.manager.deactivate_node(self.tree.root, self.tree.l2.id, 1)
        with pytest.raises(NotFoundError):
            self.manager.create_node(
                self.tree.root, "X", HierarchyLevel.ADMIN_UNIT, parent_id=self.tree.l2.id
            )

    def test_sector_node_requires_type(self):
        with pytest.raises(HierarchyValidationError):
            self.manager.create_node(self.tree.root, "S", HierarchyLevel.REGION, tree_kind=TreeKind.SECTOR)
        node = self.manager.create_node(
            self.tree.root, "S", HierarchyLevel.REGION,
            tree_kind=TreeKind.SECTOR, sector_type=SectorType.POLITICAL,
        )
        assert node.sector_type == SectorType.POLITICAL

    def test_mirroring_failure_does_not_abort(self, monkeypatch):
        def boom(*args, **kwargs):
            raise RuntimeError("sector store unavailable")

        monkeypatch.setattr(self.manager.linker, "on_node_created", boom)
        node = self.manager.create_node(
            self.tree.root, "Survivor", HierarchyLevel.LOCALITY, parent_id=self.tree.r2.id
        )
        assert self.tree.store.get_node(node.id) is not None


class TestEditAndDelete:

    @pytest.fixture(autouse=True)
    def _tree(self, tree):
        self.tree = tree
        self.manager = tree.manager

    def test_update_bumps_version(self):
        updated = self.manager.update_node(self.tree.root, self.tree.l1.id, 1, name="L1 renamed")
        assert updated.version == 2
        assert updated.name == "L1 renamed"
        assert updated.code is None

    def test_stale_version_rejected(self):
        self.manager.update_node(self.tree.root, self.tree.l1.id, 1, description="first")
        with pytest.raises(OptimisticLockError) as exc:
            self.manager.update_node(self.tree.root, self.tree.l1.id, 1, description="second")
        assert exc.value.actual == 2

    def test_update_out_of_scope_concealed(self):
        admin = self.tree.position("la", self.tree.l1, AdminLevel.LOCALITY)
        with pytest.raises(NotFoundError):
            self.manager.update_node(admin, self.tree.l2.id, 1, name="Mine now")

    def test_deactivate_with_active_children_blocked(self):
        with pytest.raises(DeletionBlockedError):
            self.manager.deactivate_node(self.tree.root, self.tree.a1.id, 1)

    def test_reactivate(self):
        node = self.manager.deactivate_node(self.tree.root, self.tree.d2.id, 1)
        assert not node.active
        node = self.manager.set_active(self.tree.root, self.tree.d2.id, True, node.version)
        assert node.active

    def test_delete_with_children_blocked(self):
        with pytest.raises(DeletionBlockedError):
            self.manager.delete_node(self.tree.root, self.tree.a1.id)

    def test_delete_with_members_blocked(self):
        self.manager.assign_member(self.tree.root, self.tree.position("m", self.tree.d2))
        with pytest.raises(DeletionBlockedError):
            self.manager.delete_node(self.tree.root, self.tree.d2.id)

    def test_delete_removes_mirrors(self):
        self.manager.delete_node(self.tree.root, self.tree.d2.id)
        assert self.tree.store.get_node(self.tree.d2.id) is None
        assert self.tree.store.find_nodes(TreeKind.SECTOR, source_node_id=self.tree.d2.id) == []

    def test_move_rederives_members(self):
        self.manager.assign_member(self.tree.root, self.tree.position("m", self.tree.d1))
        moved = self.manager.move_node(self.tree.root, self.tree.l1.id, self.tree.r2.id, 1)
        assert moved.parent_id == self.tree.r2.id

        position = self.tree.store.get_position("m")
        assert position.ancestors[TreeKind.ORIGINAL].id_at(HierarchyLevel.REGION) == self.tree.r2.id
        for sector_type in SectorType:
            mirror = self.tree.sector(self.tree.l1, sector_type)
            assert mirror.parent_id == self.tree.sector(self.tree.r2, sector_type).id

    def test_move_region_keeps_mirrors_top_level(self):
        n2 = self.manager.create_node(self.tree.root, "N2", HierarchyLevel.NATIONAL_LEVEL)
        moved = self.manager.move_node(self.tree.root, self.tree.r2.id, n2.id, 1)
        assert moved.parent_id == n2.id

        for sector_type in SectorType:
            mirror = self.tree.sector(self.tree.r2, sector_type)
            assert mirror.parent_id is None
            assert not mirror.needs_reconciliation
        assert HierarchyAuditor(self.tree.store).run() == []

    def test_move_with_cross_tree_members(self):
        sector_leaf = self.tree.sector(self.tree.a1, SectorType.SOCIAL)
        self.manager.assign_member(
            self.tree.root,
            self.tree.position("u1", self.tree.d1, expatriate=self.tree.e1, sector=sector_leaf),
        )
        self.manager.assign_member(self.tree.root, self.tree.position("u2", self.tree.d2))
        self.manager.deactivate_node(self.tree.root, self.tree.e1.id, 1)

        self.manager.move_node(self.tree.root, self.tree.a1.id, self.tree.l2.id, 1)

        u1 = self.tree.store.get_position("u1")
        assert u1.ancestors[TreeKind.ORIGINAL].ids == [
            self.tree.n1.id, self.tree.r2.id, self.tree.l2.id, self.tree.a1.id, self.tree.d1.id,
        ]
        assert u1.ancestors[TreeKind.SECTOR].ids == [
            self.tree.sector(self.tree.r2, SectorType.SOCIAL).id,
            self.tree.sector(self.tree.l2, SectorType.SOCIAL).id,
            sector_leaf.id,
        ]
        assert u1.ancestors[TreeKind.EXPATRIATE].ids == [self.tree.e1.id]

        u2 = self.tree.store.get_position("u2")
        assert u2.ancestors[TreeKind.ORIGINAL].id_at(HierarchyLevel.REGION) == self.tree.r2.id


class TestMembersAndStatistics:

    @pytest.fixture(autouse=True)
    def _tree(self, tree):
        self.tree = tree
        self.manager = tree.manager

    def test_assign_member_derives_ancestors(self):
        position = self.tree.position("m", self.tree.d1, expatriate=self.tree.e1)
        stored = self.manager.assign_member(self.tree.root, position)
        assert stored.ancestors[TreeKind.ORIGINAL].ids == [
            self.tree.n1.id, self.tree.r1.id, self.tree.l1.id, self.tree.a1.id, self.tree.d1.id,
        ]
        assert self.tree.store.get_position("m").ancestors[TreeKind.EXPATRIATE].ids == [self.tree.e1.id]
        assert self.tree.store.count_members(self.tree.r1.id) == 1

    def test_region_admin_cannot_assign_elsewhere(self):
        admin = self.tree.position("ra", self.tree.r1, AdminLevel.REGION)
        with pytest.raises(NotFoundError):
            self.manager.assign_member(admin, self.tree.position("m", self.tree.l2))

    def test_region_admin_cannot_escalate(self):
        admin = self.tree.position("ra", self.tree.r1, AdminLevel.REGION)
        with pytest.raises(NotFoundError):
            self.manager.assign_member(
                admin, self.tree.position("m", self.tree.d1, AdminLevel.NATIONAL_LEVEL)
            )

    def test_subtree_counts(self):
        scope = self.manager.resolver.resolve(
            self.tree.position("ra", self.tree.r1, AdminLevel.REGION)
        )
        assert self.manager.subtree_counts(scope) == {
            HierarchyLevel.REGION: 1,
            HierarchyLevel.LOCALITY: 1,
            HierarchyLevel.ADMIN_UNIT: 1,
            HierarchyLevel.DISTRICT: 2,
        }

    def test_subtree_counts_root_and_empty(self):
        root_counts = self.manager.subtree_counts(self.manager.resolver.resolve(self.tree.root))
        assert root_counts[HierarchyLevel.REGION] == 2
        empty = self.manager.resolver.resolve(self.tree.position("x", admin_level=AdminLevel.REGION))
        assert self.manager.subtree_counts(empty) == {}

    def test_default_national_level_reused(self):
        assert self.manager.get_or_create_default_national_level().id == self.tree.n1.id

    def test_default_national_level_created(self):
        manager = HierarchyManager(InMemoryHierarchyStore(), make_settings())
        node = manager.get_or_create_default_national_level()
        assert node.level == HierarchyLevel.NATIONAL_LEVEL
        assert node.code == "NATIONAL"
        assert manager.get_or_create_default_national_level().id == node.id


class TestConcurrentMutations:
    """Per-node locking and version checks under racing threads."""

    @pytest.fixture(autouse=True)
    def _tree(self, tree):
        self.tree = tree
        self.manager = tree.manager

    def _race(self, *calls):
        barrier = threading.Barrier(len(calls))
        outcomes = [None] * len(calls)

        def run(index, call):
            barrier.wait()
            try:
                outcomes[index] = call()
            except HierarchyError as e:
                outcomes[index] = e

        threads = [
            threading.Thread(target=run, args=(index, call))
            for index, call in enumerate(calls)
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=10)
        return outcomes

    def test_same_version_updates(self):
        for attempt in range(10):
            node = self.tree.store.get_node(self.tree.l1.id)
            outcomes = self._race(
                lambda: self.manager.update_node(
                    self.tree.root, node.id, node.version, description=f"first {attempt}"
                ),
                lambda: self.manager.update_node(
                    self.tree.root, node.id, node.version, description=f"second {attempt}"
                ),
            )
            assert len([o for o in outcomes if isinstance(o, HierarchyNode)]) == 1
            assert len([o for o in outcomes if isinstance(o, OptimisticLockError)]) == 1
            assert self.tree.store.get_node(node.id).version == node.version + 1

    def test_create_under_parent_racing_deactivation(self):
        for attempt in range(10):
            parent = self.manager.create_node(
                self.tree.root, f"P{attempt}", HierarchyLevel.LOCALITY, parent_id=self.tree.r2.id
            )
            created, deactivated = self._race(
                lambda: self.manager.create_node(
                    self.tree.root, f"C{attempt}", HierarchyLevel.ADMIN_UNIT, parent_id=parent.id
                ),
                lambda: self.manager.deactivate_node(self.tree.root, parent.id, parent.version),
            )

            stored = self.tree.store.get_node(parent.id)
            if isinstance(created, HierarchyNode):
                assert isinstance(deactivated, DeletionBlockedError)
                assert stored.active
            else:
                assert isinstance(created, NotFoundError)
                assert isinstance(deactivated, HierarchyNode)
                assert not stored.active
                assert self.tree.store.children(parent.id) == []

    def test_locks_released(self):
        self._race(
            lambda: self.manager.update_node(self.tree.root, self.tree.l1.id, 1, name="L1a"),
            lambda: self.manager.update_node(self.tree.root, self.tree.l2.id, 1, name="L2a"),
        )
        self.manager.delete_node(self.tree.root, self.tree.d2.id)
        assert self.manager._locks == {}
