"""
Shared fixtures — a small sample hierarchy built through the HierarchyManager.

    ORIGINAL   N1 ─┬─ R1 ── L1 ── A1 ─┬─ D1
                   │                  └─ D2
                   └─ R2 ── L2
    EXPATRIATE E1, E2
    SECTOR     four mirrors of every ORIGINAL node below N1
"""

from __future__ import annotations

from dataclasses import dataclass

import pytest

from orgscope.config import OrgScopeSettings
from orgscope.hierarchy.management import HierarchyManager
from orgscope.hierarchy.schema import (
    ActorPosition,
    AdminLevel,
    HierarchyLevel,
    HierarchyNode,
    SectorType,
    TreeKind,
)
from orgscope.hierarchy.sql_store import SqlHierarchyStore
from orgscope.hierarchy.store import HierarchyStore, InMemoryHierarchyStore


def make_settings(**overrides) -> OrgScopeSettings:
    values = {"sector_label_language": "en", "log_format": "console"}
    values.update(overrides)
    return OrgScopeSettings(_env_file=None, **values)


@dataclass
class SampleTree:
    store: HierarchyStore
    settings: OrgScopeSettings
    manager: HierarchyManager
    root: ActorPosition
    n1: HierarchyNode
    r1: HierarchyNode
    r2: HierarchyNode
    l1: HierarchyNode
    l2: HierarchyNode
    a1: HierarchyNode
    d1: HierarchyNode
    d2: HierarchyNode
    e1: HierarchyNode
    e2: HierarchyNode

    def node(self, node_id: str) -> HierarchyNode:
        return self.store.get_node(node_id)

    def sector(self, original: HierarchyNode, sector_type: SectorType) -> HierarchyNode:
        mirrors = self.store.find_nodes(
            TreeKind.SECTOR, source_node_id=original.id, sector_type=sector_type
        )
        assert len(mirrors) == 1
        return mirrors[0]

    def position(
        self,
        actor_id: str,
        leaf: HierarchyNode | None = None,
        admin_level: AdminLevel = AdminLevel.MEMBER,
        expatriate: HierarchyNode | None = None,
        sector: HierarchyNode | None = None,
        active_hierarchy: TreeKind = TreeKind.ORIGINAL,
    ) -> ActorPosition:
        return ActorPosition(
            actor_id=actor_id,
            admin_level=admin_level,
            original_leaf_id=leaf.id if leaf else None,
            expatriate_region_id=expatriate.id if expatriate else None,
            sector_leaf_id=sector.id if sector else None,
            active_hierarchy=active_hierarchy,
        )


def build_sample_tree(store: HierarchyStore, settings: OrgScopeSettings | None = None) -> SampleTree:
    settings = settings or make_settings()
    manager = HierarchyManager(store, settings)
    root = ActorPosition(actor_id="root", admin_level=AdminLevel.ROOT)
    create = manager.create_node

    n1 = create(root, "N1", HierarchyLevel.NATIONAL_LEVEL, code="N1")
    r1 = create(root, "R1", HierarchyLevel.REGION, parent_id=n1.id, code="R1")
    r2 = create(root, "R2", HierarchyLevel.REGION, parent_id=n1.id, code="R2")
    l1 = create(root, "L1", HierarchyLevel.LOCALITY, parent_id=r1.id)
    l2 = create(root, "L2", HierarchyLevel.LOCALITY, parent_id=r2.id)
    a1 = create(root, "A1", HierarchyLevel.ADMIN_UNIT, parent_id=l1.id)
    d1 = create(root, "D1", HierarchyLevel.DISTRICT, parent_id=a1.id)
    d2 = create(root, "D2", HierarchyLevel.DISTRICT, parent_id=a1.id)
    e1 = create(root, "E1", HierarchyLevel.REGION, tree_kind=TreeKind.EXPATRIATE)
    e2 = create(root, "E2", HierarchyLevel.REGION, tree_kind=TreeKind.EXPATRIATE)

    return SampleTree(
        store=store, settings=settings, manager=manager, root=root,
        n1=n1, r1=r1, r2=r2, l1=l1, l2=l2, a1=a1, d1=d1, d2=d2, e1=e1, e2=e2,
    )


@pytest.fixture
def settings() -> OrgScopeSettings:
    return make_settings()


@pytest.fixture
def tree(settings) -> SampleTree:
    return build_sample_tree(InMemoryHierarchyStore(), settings)


@pytest.fixture
def sql_store() -> SqlHierarchyStore:
    store = SqlHierarchyStore("sqlite://")
    store.initialize()
    yield store
    store.engine.dispose()


@pytest.fixture
def sql_tree(sql_store, settings) -> SampleTree:
    return build_sample_tree(sql_store, settings)
