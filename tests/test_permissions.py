"""
Tests for the PermissionGuard.

Validates:
- Descendant-inclusive modify rights
- Create-under level and subtree checks
- Admin assignment, including escalation refusal
- Not-found vs not-permitted and the concealment policy
"""

from __future__ import annotations

import pytest

from orgscope.errors import NotFoundError, PermissionDeniedError
from orgscope.governance.permissions import PermissionDecision, PermissionGuard
from orgscope.governance.scope import ScopeResolver
from orgscope.hierarchy.deriver import HierarchyDeriver
from orgscope.hierarchy.schema import (
    AdminLevel,
    ContentKind,
    ContentRecord,
    ContentTargetSpec,
    HierarchyLevel,
    SectorType,
    TreeKind,
)


class TestPermissionGuard:
    """Subtree authorization for a REGION admin of R1."""

    @pytest.fixture(autouse=True)
    def _tree(self, tree):
        self.tree = tree
        deriver = HierarchyDeriver(tree.store)
        self.resolver = ScopeResolver(deriver)
        self.guard = PermissionGuard(deriver, conceal_out_of_scope=True)
        self.region_admin = tree.position("ra", tree.d1, AdminLevel.REGION)
        self.scope = self.resolver.resolve(self.region_admin)
        self.root_scope = self.resolver.resolve(tree.root)

    # ── Modify ──────────────────────────────────────────────────

    def test_modify_own_root_and_descendants(self):
        for node in (self.tree.r1, self.tree.l1, self.tree.a1, self.tree.d1, self.tree.d2):
            assert self.guard.can_modify(self.scope, node.id), node.name

    def test_modify_denied_for_sibling_and_ancestors(self):
        assert not self.guard.can_modify(self.scope, self.tree.r2.id)
        assert not self.guard.can_modify(self.scope, self.tree.l2.id)
        assert not self.guard.can_modify(self.scope, self.tree.n1.id)

    def test_modify_denied_outside_original_tree(self):
        assert not self.guard.can_modify(self.scope, self.tree.e1.id)
        sector_r1 = self.tree.sector(self.tree.r1, SectorType.SOCIAL)
        assert not self.guard.can_modify(self.scope, sector_r1.id)

    def test_modify_missing_node_raises(self):
        with pytest.raises(NotFoundError):
            self.guard.can_modify(self.scope, "nope")

    def test_root_modifies_anything(self):
        assert self.guard.can_modify(self.root_scope, self.tree.r2.id)
        assert self.guard.can_modify(self.root_scope, self.tree.e2.id)

    def test_modify_inactive_descendant(self):
        self.tree.manager.deactivate_node(self.tree.root, self.tree.d2.id, 1)
        assert self.guard.can_modify(self.scope, self.tree.d2.id)

    # ── Create ──────────────────────────────────────────────────

    def test_create_locality_under_own_region(self):
        assert self.guard.can_create_under(self.scope, self.tree.r1.id, HierarchyLevel.LOCALITY)

    def test_create_wrong_level(self):
        result = self.guard.check_create_under(self.scope, self.tree.r1.id, HierarchyLevel.DISTRICT)
        assert result.decision == PermissionDecision.INVALID_LEVEL

    def test_create_under_sibling_region(self):
        result = self.guard.check_create_under(self.scope, self.tree.r2.id, HierarchyLevel.LOCALITY)
        assert result.decision == PermissionDecision.OUT_OF_SCOPE

    def test_create_top_level_root_only(self):
        assert not self.guard.can_create_under(self.scope, None, HierarchyLevel.NATIONAL_LEVEL)
        assert self.guard.can_create_under(self.root_scope, None, HierarchyLevel.NATIONAL_LEVEL)

    def test_national_admin_creates_regions_only_under_own_national_level(self):
        national = self.resolver.resolve(
            self.tree.position("na", self.tree.n1, AdminLevel.NATIONAL_LEVEL)
        )
        assert self.guard.can_create_under(national, self.tree.n1.id, HierarchyLevel.REGION)
        assert not self.guard.can_create_under(national, None, HierarchyLevel.NATIONAL_LEVEL)
        assert not self.guard.can_create_under(national, self.tree.n1.id, HierarchyLevel.LOCALITY)

    def test_create_under_inactive_parent_raises(self):
        self.tree.manager.deactivate_node(self.tree.root, self.tree.d2.id, 1)
        with pytest.raises(NotFoundError):
            self.guard.can_create_under(self.root_scope, self.tree.d2.id, HierarchyLevel.DISTRICT)

    def test_empty_scope_denied(self):
        empty = self.resolver.resolve(self.tree.position("x", admin_level=AdminLevel.REGION))
        result = self.guard.check_create_under(empty, self.tree.r1.id, HierarchyLevel.LOCALITY)
        assert result.decision == PermissionDecision.EMPTY_SCOPE
        assert not self.guard.can_modify(empty, self.tree.r1.id)

    # ── Assign admin ────────────────────────────────────────────

    def test_assign_candidate_inside_subtree(self):
        candidate = self.tree.position("c", self.tree.d2, AdminLevel.DISTRICT)
        assert self.guard.can_assign_admin(self.scope, candidate)

    def test_assign_candidate_outside_subtree(self):
        candidate = self.tree.position("c", self.tree.l2, AdminLevel.LOCALITY)
        assert not self.guard.can_assign_admin(self.scope, candidate)

    def test_assign_refuses_escalation(self):
        candidate = self.tree.position("c", self.tree.d2, AdminLevel.NATIONAL_LEVEL)
        result = self.guard.check_assign_admin(self.scope, candidate)
        assert result.decision == PermissionDecision.ESCALATION
        root_candidate = self.tree.position("c", self.tree.d2, AdminLevel.ROOT)
        assert not self.guard.can_assign_admin(self.scope, root_candidate)

    def test_assign_candidate_without_leaf(self):
        candidate = self.tree.position("c", expatriate=self.tree.e1)
        assert not self.guard.can_assign_admin(self.scope, candidate)

    def test_assign_checks_sector_leaf(self):
        inside = self.tree.position(
            "c", self.tree.d2, sector=self.tree.sector(self.tree.a1, SectorType.SOCIAL)
        )
        outside = self.tree.position(
            "c", self.tree.d2, sector=self.tree.sector(self.tree.l2, SectorType.SOCIAL)
        )
        assert self.guard.can_assign_admin(self.scope, inside)
        assert not self.guard.can_assign_admin(self.scope, outside)

    def test_assign_refuses_expatriate_leaf(self):
        candidate = self.tree.position("c", self.tree.d2, expatriate=self.tree.e1)
        assert not self.guard.can_assign_admin(self.scope, candidate)

    def test_sector_admin_assigns_by_source_region(self):
        sector_admin = self.tree.position(
            "sa",
            admin_level=AdminLevel.REGION,
            sector=self.tree.sector(self.tree.r1, SectorType.SOCIAL),
            active_hierarchy=TreeKind.SECTOR,
        )
        scope = self.resolver.resolve(sector_admin)
        inside = self.tree.position(
            "c", self.tree.d1, sector=self.tree.sector(self.tree.l1, SectorType.SOCIAL)
        )
        outside = self.tree.position(
            "c", self.tree.l2, sector=self.tree.sector(self.tree.l1, SectorType.SOCIAL)
        )
        assert self.guard.can_assign_admin(scope, inside)
        assert not self.guard.can_assign_admin(scope, outside)

    def test_root_assigns_anyone(self):
        candidate = self.tree.position("c", self.tree.l2, AdminLevel.ROOT)
        assert self.guard.can_assign_admin(self.root_scope, candidate)

    # ── Users and content ───────────────────────────────────────

    def test_manage_user(self):
        assert self.guard.can_manage_user(self.scope, self.tree.position("m", self.tree.a1))
        assert not self.guard.can_manage_user(self.scope, self.tree.position("m", self.tree.l2))
        assert self.guard.can_manage_user(self.scope, self.region_admin)

    def test_member_manages_only_self(self):
        member = self.tree.position("m", self.tree.d1)
        scope = self.resolver.resolve(member)
        assert self.guard.can_manage_user(scope, member)
        assert not self.guard.can_manage_user(scope, self.tree.position("o", self.tree.d1))

    def test_manage_content(self):
        inside = ContentRecord(
            kind=ContentKind.BULLETIN,
            creator_id="someone",
            targets=ContentTargetSpec(
                target_national_level_id=self.tree.n1.id,
                target_region_id=self.tree.r1.id,
                target_locality_id=self.tree.l1.id,
            ),
        )
        outside = ContentRecord(
            kind=ContentKind.BULLETIN,
            creator_id="someone",
            targets=ContentTargetSpec(
                target_national_level_id=self.tree.n1.id,
                target_region_id=self.tree.r2.id,
            ),
        )
        own_outside = outside.model_copy(update={"creator_id": "ra"})
        assert self.guard.can_manage_content(self.scope, inside)
        assert not self.guard.can_manage_content(self.scope, outside)
        assert self.guard.can_manage_content(self.scope, own_outside)

    def test_content_in_other_tree(self):
        record = ContentRecord(
            kind=ContentKind.SURVEY,
            targets=ContentTargetSpec(target_expatriate_region_id=self.tree.e1.id),
        )
        assert not self.guard.can_manage_content(self.scope, record)

    # ── Concealment ─────────────────────────────────────────────

    def test_ensure_conceals_as_not_found(self):
        result = self.guard.check_modify(self.scope, self.tree.r2.id)
        with pytest.raises(NotFoundError) as exc:
            self.guard.ensure(result)
        assert exc.value.node_id == self.tree.r2.id

    def test_ensure_without_concealment(self):
        guard = PermissionGuard(self.guard.deriver, conceal_out_of_scope=False)
        result = guard.check_modify(self.scope, self.tree.r2.id)
        with pytest.raises(PermissionDeniedError):
            guard.ensure(result)

    def test_ensure_top_level_denial_not_concealed(self):
        result = self.guard.check_create_under(self.scope, None, HierarchyLevel.NATIONAL_LEVEL)
        with pytest.raises(PermissionDeniedError):
            self.guard.ensure(result)

    def test_ensure_allows(self):
        self.guard.ensure(self.guard.check_modify(self.scope, self.tree.l1.id))
