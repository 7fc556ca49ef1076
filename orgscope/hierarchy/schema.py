"""
Hierarchy Schema — Pydantic models for the three administrative trees.

These models are the canonical data structures shared by every component of
the engine: the hierarchy store, the ancestor deriver, scope resolution,
permission guards, content targeting and sector mirroring.

Trees:
    ORIGINAL   — the geographic tree (NationalLevel > Region > Locality >
                 AdminUnit > District)
    EXPATRIATE — a single level of expatriate Regions
    SECTOR     — mirrors ORIGINAL, each node classified by a SectorType
"""

from __future__ import annotations

import enum
from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, Field, model_validator


ROOT_SENTINEL = "*"  # authority root of ROOT admins, matches every node


# ════════════════════════════════════════════════════════════════
# Enumerations
# ════════════════════════════════════════════════════════════════


class HierarchyLevel(str, enum.Enum):
    """Depth within a tree, ordered from the top."""

    NATIONAL_LEVEL = "national_level"
    REGION = "region"
    LOCALITY = "locality"
    ADMIN_UNIT = "admin_unit"
    DISTRICT = "district"

    @property
    def depth(self) -> int:
        return LEVEL_ORDER.index(self)

    @property
    def parent(self) -> HierarchyLevel | None:
        """The level exactly one above, or None at the top."""
        if self.depth == 0:
            return None
        return LEVEL_ORDER[self.depth - 1]

    @property
    def child(self) -> HierarchyLevel | None:
        """The level exactly one below, or None at the bottom."""
        if self.depth == len(LEVEL_ORDER) - 1:
            return None
        return LEVEL_ORDER[self.depth + 1]

    def is_above(self, other: HierarchyLevel) -> bool:
        return self.depth < other.depth

    def below(self) -> tuple[HierarchyLevel, ...]:
        """All levels strictly below this one."""
        return LEVEL_ORDER[self.depth + 1:]


LEVEL_ORDER: tuple[HierarchyLevel, ...] = (
    HierarchyLevel.NATIONAL_LEVEL,
    HierarchyLevel.REGION,
    HierarchyLevel.LOCALITY,
    HierarchyLevel.ADMIN_UNIT,
    HierarchyLevel.DISTRICT,
)


class TreeKind(str, enum.Enum):
    """The three parallel hierarchies a member or content item may sit in."""

    ORIGINAL = "original"
    EXPATRIATE = "expatriate"
    SECTOR = "sector"

    @property
    def levels(self) -> tuple[HierarchyLevel, ...]:
        return TREE_LEVELS[self]

    @property
    def top_levels(self) -> frozenset[HierarchyLevel]:
        """Levels whose nodes may legitimately have no parent."""
        return TREE_TOP_LEVELS[self]


TREE_LEVELS: dict[TreeKind, tuple[HierarchyLevel, ...]] = {
    TreeKind.ORIGINAL: LEVEL_ORDER,
    TreeKind.EXPATRIATE: (HierarchyLevel.REGION,),
    TreeKind.SECTOR: LEVEL_ORDER,
}

TREE_TOP_LEVELS: dict[TreeKind, frozenset[HierarchyLevel]] = {
    TreeKind.ORIGINAL: frozenset({HierarchyLevel.NATIONAL_LEVEL}),
    TreeKind.EXPATRIATE: frozenset({HierarchyLevel.REGION}),
    # Region sector nodes are created without a parent link
    TreeKind.SECTOR: frozenset({HierarchyLevel.NATIONAL_LEVEL, HierarchyLevel.REGION}),
}


class SectorType(str, enum.Enum):
    """The four fixed cross-cutting sector classifications."""

    SOCIAL = "social"
    ECONOMIC = "economic"
    ORGANIZATIONAL = "organizational"
    POLITICAL = "political"

    def label(self, language: str = "ar") -> str:
        table = SECTOR_TYPE_LABELS.get(language, SECTOR_TYPE_LABELS["en"])
        return table[self]


SECTOR_TYPE_LABELS: dict[str, dict[SectorType, str]] = {
    "ar": {
        SectorType.SOCIAL: "الاجتماعي",
        SectorType.ECONOMIC: "الاقتصادي",
        SectorType.ORGANIZATIONAL: "التنظيمي",
        SectorType.POLITICAL: "السياسي",
    },
    "en": {
        SectorType.SOCIAL: "Social",
        SectorType.ECONOMIC: "Economic",
        SectorType.ORGANIZATIONAL: "Organizational",
        SectorType.POLITICAL: "Political",
    },
}


class AdminLevel(str, enum.Enum):
    """Administrative rank of an actor."""

    ROOT = "root"
    NATIONAL_LEVEL = "national_level"
    REGION = "region"
    LOCALITY = "locality"
    ADMIN_UNIT = "admin_unit"
    DISTRICT = "district"
    MEMBER = "member"

    @property
    def hierarchy_level(self) -> HierarchyLevel | None:
        """The tree level this admin rank governs (None for ROOT and MEMBER)."""
        try:
            return HierarchyLevel(self.value)
        except ValueError:
            return None

    @property
    def rank(self) -> int:
        """Numeric authority, higher is broader (MEMBER=0, ROOT=6)."""
        return len(ADMIN_ORDER) - 1 - ADMIN_ORDER.index(self)

    @classmethod
    def from_legacy(cls, value: str) -> AdminLevel:
        """Map stored admin level names, including retired ones, to AdminLevel."""
        normalized = value.strip().upper()
        if normalized in ("ADMIN", "GENERAL_SECRETARIAT", "ROOT"):
            return cls.ROOT
        if normalized in ("USER", "MEMBER"):
            return cls.MEMBER
        return cls(normalized.lower())


ADMIN_ORDER: tuple[AdminLevel, ...] = (
    AdminLevel.ROOT,
    AdminLevel.NATIONAL_LEVEL,
    AdminLevel.REGION,
    AdminLevel.LOCALITY,
    AdminLevel.ADMIN_UNIT,
    AdminLevel.DISTRICT,
    AdminLevel.MEMBER,
)


class ContentKind(str, enum.Enum):
    """Distributable content types."""

    BULLETIN = "bulletin"
    SURVEY = "survey"
    VOTING_ITEM = "voting_item"
    SUBSCRIPTION_PLAN = "subscription_plan"
    REPORT = "report"

    @property
    def target_levels(self) -> dict[TreeKind, tuple[HierarchyLevel, ...]]:
        """Which (tree, level) target columns this content type carries."""
        if self == ContentKind.SUBSCRIPTION_PLAN:
            return {TreeKind.ORIGINAL: LEVEL_ORDER[1:]}
        return dict(TREE_LEVELS)

    @property
    def has_review_workflow(self) -> bool:
        return self == ContentKind.SUBSCRIPTION_PLAN


# ════════════════════════════════════════════════════════════════
# Column naming
# ════════════════════════════════════════════════════════════════


def position_field(tree_kind: TreeKind, level: HierarchyLevel) -> str:
    """Name of the denormalized member column for a (tree, level) pair."""
    if tree_kind == TreeKind.ORIGINAL:
        return f"{level.value}_id"
    return f"{tree_kind.value}_{level.value}_id"


def target_field(tree_kind: TreeKind, level: HierarchyLevel) -> str:
    """Name of the content target column for a (tree, level) pair."""
    return f"target_{position_field(tree_kind, level)}"


ALL_TREE_LEVELS: tuple[tuple[TreeKind, HierarchyLevel], ...] = tuple(
    (tree, level) for tree in TreeKind for level in tree.levels
)


# ════════════════════════════════════════════════════════════════
# Hierarchy Nodes
# ════════════════════════════════════════════════════════════════


def _new_id() -> str:
    return str(uuid4())


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class HierarchyNode(BaseModel):
    """
    A node in one of the three trees.

    A node's parent, when present, is in the same tree and exactly one level
    above. SECTOR nodes carry a sector type and the id of the ORIGINAL node
    they mirror.
    """

    id: str = Field(default_factory=_new_id)
    name: str
    code: str | None = Field(default=None, description="Unique per tree and level")
    description: str | None = None
    tree_kind: TreeKind
    level: HierarchyLevel
    parent_id: str | None = None
    active: bool = True
    sector_type: SectorType | None = None
    source_node_id: str | None = Field(
        default=None, description="ORIGINAL node mirrored by this SECTOR node"
    )
    needs_reconciliation: bool = Field(
        default=False, description="Sector parent link could not be resolved"
    )
    version: int = 1
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    @model_validator(mode="after")
    def _check_shape(self) -> HierarchyNode:
        if self.level not in self.tree_kind.levels:
            raise ValueError(
                f"Level {self.level.value} does not exist in the "
                f"{self.tree_kind.value} tree"
            )
        if self.tree_kind == TreeKind.SECTOR and self.sector_type is None:
            raise ValueError("Sector nodes require a sector_type")
        if self.tree_kind != TreeKind.SECTOR and self.sector_type is not None:
            raise ValueError("Only sector nodes carry a sector_type")
        return self


class ChainLink(BaseModel):
    """One node of an ancestor chain."""

    level: HierarchyLevel
    node_id: str


class AncestorChain(BaseModel):
    """
    The path from the top of a tree down to a leaf, one id per level.

    The leaf itself is the last link. A SECTOR chain may start below
    NationalLevel when a sector node has no parent link.
    """

    tree_kind: TreeKind
    links: list[ChainLink] = Field(default_factory=list)

    @property
    def leaf_id(self) -> str | None:
        return self.links[-1].node_id if self.links else None

    @property
    def leaf_level(self) -> HierarchyLevel | None:
        return self.links[-1].level if self.links else None

    @property
    def ids(self) -> list[str]:
        return [link.node_id for link in self.links]

    def id_at(self, level: HierarchyLevel) -> str | None:
        for link in self.links:
            if link.level == level:
                return link.node_id
        return None

    def contains(self, node_id: str) -> bool:
        return any(link.node_id == node_id for link in self.links)

    def as_mapping(self) -> dict[HierarchyLevel, str]:
        return {link.level: link.node_id for link in self.links}

    def __len__(self) -> int:
        return len(self.links)


# ════════════════════════════════════════════════════════════════
# Actors and Scope
# ════════════════════════════════════════════════════════════════


class ActorPosition(BaseModel):
    """
    Where an actor sits in the trees.

    Leaf ids are the only editable part. ``ancestors`` is filled by the
    deriver and anything supplied there by a caller is discarded.
    """

    actor_id: str
    admin_level: AdminLevel = AdminLevel.MEMBER
    original_leaf_id: str | None = None
    expatriate_region_id: str | None = None
    sector_leaf_id: str | None = None
    active_hierarchy: TreeKind = TreeKind.ORIGINAL
    ancestors: dict[TreeKind, AncestorChain] = Field(default_factory=dict)

    def leaf_for(self, tree_kind: TreeKind) -> str | None:
        if tree_kind == TreeKind.ORIGINAL:
            return self.original_leaf_id
        if tree_kind == TreeKind.EXPATRIATE:
            return self.expatriate_region_id
        return self.sector_leaf_id

    def participating_trees(self) -> list[TreeKind]:
        return [tree for tree in TreeKind if self.leaf_for(tree)]

    @property
    def is_root(self) -> bool:
        return self.admin_level == AdminLevel.ROOT


class Scope(BaseModel):
    """
    The subtree an actor may act within, plus their own ancestor chain.

    ``authority_root_id`` is ROOT_SENTINEL for ROOT admins and None for an
    empty scope, which matches nothing.
    """

    actor_id: str
    admin_level: AdminLevel
    tree_kind: TreeKind | None = None
    authority_root_id: str | None = None
    authority_level: HierarchyLevel | None = None
    ancestor_chain: AncestorChain | None = None

    @property
    def is_root(self) -> bool:
        return self.authority_root_id == ROOT_SENTINEL

    @property
    def is_empty(self) -> bool:
        return self.authority_root_id is None

    def covers(self, chain: AncestorChain) -> bool:
        """True if the chain's leaf is the authority root or below it."""
        if self.is_root:
            return True
        if self.is_empty or chain.tree_kind != self.tree_kind:
            return False
        return chain.contains(self.authority_root_id)

    @classmethod
    def root(cls, actor_id: str) -> Scope:
        return cls(
            actor_id=actor_id,
            admin_level=AdminLevel.ROOT,
            authority_root_id=ROOT_SENTINEL,
        )

    @classmethod
    def empty(
        cls,
        actor_id: str,
        admin_level: AdminLevel,
        chain: AncestorChain | None = None,
    ) -> Scope:
        return cls(
            actor_id=actor_id,
            admin_level=admin_level,
            tree_kind=chain.tree_kind if chain else None,
            ancestor_chain=chain,
        )


# ════════════════════════════════════════════════════════════════
# Content Targeting
# ════════════════════════════════════════════════════════════════


class ContentTargetSpec(BaseModel):
    """
    Per-(tree, level) target ids attached to a distributable content item.

    If a lower-level target is set, every ancestor target must hold that
    node's true ancestor. At least one target must be set.
    """

    target_national_level_id: str | None = None
    target_region_id: str | None = None
    target_locality_id: str | None = None
    target_admin_unit_id: str | None = None
    target_district_id: str | None = None
    target_expatriate_region_id: str | None = None
    target_sector_national_level_id: str | None = None
    target_sector_region_id: str | None = None
    target_sector_locality_id: str | None = None
    target_sector_admin_unit_id: str | None = None
    target_sector_district_id: str | None = None

    def get(self, tree_kind: TreeKind, level: HierarchyLevel) -> str | None:
        return getattr(self, target_field(tree_kind, level))

    def set_targets(self) -> list[tuple[TreeKind, HierarchyLevel, str]]:
        """All non-null targets as (tree, level, id) triples."""
        found = []
        for tree, level in ALL_TREE_LEVELS:
            value = self.get(tree, level)
            if value:
                found.append((tree, level, value))
        return found

    def targeted_trees(self) -> list[TreeKind]:
        trees: list[TreeKind] = []
        for tree, _, _ in self.set_targets():
            if tree not in trees:
                trees.append(tree)
        return trees

    def deepest(self, tree_kind: TreeKind) -> tuple[HierarchyLevel, str] | None:
        """The lowest set target in one tree, if any."""
        for level in reversed(tree_kind.levels):
            value = self.get(tree_kind, level)
            if value:
                return level, value
        return None

    @classmethod
    def from_chain(
        cls,
        chain: AncestorChain,
        levels: tuple[HierarchyLevel, ...] | None = None,
    ) -> ContentTargetSpec:
        """Build targets from a derived chain, keeping only the given levels."""
        values: dict[str, str] = {}
        for link in chain.links:
            if levels is not None and link.level not in levels:
                continue
            values[target_field(chain.tree_kind, link.level)] = link.node_id
        return cls(**values)


class ContentRecord(BaseModel):
    """A content item as seen by the visibility filters."""

    id: str = Field(default_factory=_new_id)
    kind: ContentKind
    title: str = ""
    creator_id: str | None = None
    is_approved: bool = True
    published: bool = True
    targets: ContentTargetSpec = Field(default_factory=ContentTargetSpec)

    def as_record(self) -> dict[str, Any]:
        """Flat field mapping, as a persistence row would expose it."""
        record: dict[str, Any] = {
            "id": self.id,
            "kind": self.kind.value,
            "creator_id": self.creator_id,
            "is_approved": self.is_approved,
            "published": self.published,
        }
        record.update(self.targets.model_dump())
        return record
