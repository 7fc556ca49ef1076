"""
Hierarchy Store — SQLAlchemy models for nodes, member positions and content.

All three trees share one node table, discriminated by ``tree_kind``. Member
positions and content items carry one denormalized id column per
(tree, level) pair so that visibility predicates translate to plain column
comparisons:

    members.region_id               ORIGINAL Region ancestor
    members.expatriate_region_id    EXPATRIATE Region (also the leaf)
    members.sector_locality_id      SECTOR Locality ancestor
    content_items.target_region_id  ORIGINAL Region target
    ...

The denormalized columns are written only from derived ancestor chains.
"""

from __future__ import annotations

from uuid import uuid4

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import DeclarativeBase


def _uuid() -> str:
    return str(uuid4())


class Base(DeclarativeBase):
    """SQLAlchemy declarative base for all hierarchy models."""
    pass


class HierarchyNodeDB(Base):
    """A node of the ORIGINAL, EXPATRIATE or SECTOR tree."""

    __tablename__ = "hierarchy_nodes"

    id = Column(String(36), primary_key=True, default=_uuid)
    name = Column(String(200), nullable=False)
    code = Column(String(50), nullable=True, comment="Unique per tree and level")
    description = Column(Text, nullable=True)

    tree_kind = Column(String(20), nullable=False, comment="original, expatriate or sector")
    level = Column(String(20), nullable=False)
    parent_id = Column(
        String(36), ForeignKey("hierarchy_nodes.id"), nullable=True,
        comment="Parent one level above in the same tree",
    )
    active = Column(Boolean, nullable=False, default=True)

    # Sector mirrors
    sector_type = Column(String(20), nullable=True)
    source_node_id = Column(
        String(36), nullable=True,
        comment="ORIGINAL node mirrored by this sector node",
    )
    needs_reconciliation = Column(Boolean, nullable=False, default=False)

    version = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime(timezone=True), nullable=False, default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=False, default=func.now())

    __table_args__ = (
        UniqueConstraint("tree_kind", "level", "code", name="uq_node_tree_level_code"),
        Index("ix_node_parent", "parent_id"),
        Index("ix_node_tree_level", "tree_kind", "level"),
        Index("ix_node_source", "source_node_id"),
    )

    def __repr__(self) -> str:
        return f"<HierarchyNode {self.tree_kind}/{self.level} {self.name!r} v{self.version}>"


class MemberPositionDB(Base):
    """
    A member's leaf assignments plus every derived ancestor id.

    ``expatriate_region_id`` is both the EXPATRIATE leaf and its only
    ancestor column.
    """

    __tablename__ = "member_positions"

    actor_id = Column(String(36), primary_key=True)
    admin_level = Column(String(20), nullable=False, default="member")
    active_hierarchy = Column(String(20), nullable=False, default="original")

    # Leaf assignments
    original_leaf_id = Column(String(36), nullable=True)
    sector_leaf_id = Column(String(36), nullable=True)
    expatriate_region_id = Column(String(36), nullable=True, index=True)

    # Derived ORIGINAL ancestors
    national_level_id = Column(String(36), nullable=True, index=True)
    region_id = Column(String(36), nullable=True, index=True)
    locality_id = Column(String(36), nullable=True, index=True)
    admin_unit_id = Column(String(36), nullable=True, index=True)
    district_id = Column(String(36), nullable=True, index=True)

    # Derived SECTOR ancestors
    sector_national_level_id = Column(String(36), nullable=True)
    sector_region_id = Column(String(36), nullable=True)
    sector_locality_id = Column(String(36), nullable=True)
    sector_admin_unit_id = Column(String(36), nullable=True)
    sector_district_id = Column(String(36), nullable=True)

    updated_at = Column(
        DateTime(timezone=True), nullable=False, default=func.now(), onupdate=func.now(),
    )


class ContentItemDB(Base):
    """A distributable item (bulletin, survey, voting item, plan, report) and its targets."""

    __tablename__ = "content_items"

    id = Column(String(36), primary_key=True, default=_uuid)
    kind = Column(String(30), nullable=False, index=True)
    title = Column(String(300), nullable=False, default="")
    creator_id = Column(String(36), nullable=True, index=True)
    is_approved = Column(Boolean, nullable=False, default=True)
    published = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=func.now())

    # ORIGINAL targets
    target_national_level_id = Column(String(36), nullable=True)
    target_region_id = Column(String(36), nullable=True)
    target_locality_id = Column(String(36), nullable=True)
    target_admin_unit_id = Column(String(36), nullable=True)
    target_district_id = Column(String(36), nullable=True)

    # EXPATRIATE target
    target_expatriate_region_id = Column(String(36), nullable=True)

    # SECTOR targets
    target_sector_national_level_id = Column(String(36), nullable=True)
    target_sector_region_id = Column(String(36), nullable=True)
    target_sector_locality_id = Column(String(36), nullable=True)
    target_sector_admin_unit_id = Column(String(36), nullable=True)
    target_sector_district_id = Column(String(36), nullable=True)

    __table_args__ = (
        Index("ix_content_kind_published", "kind", "published"),
        Index("ix_content_target_region", "target_region_id"),
        Index("ix_content_target_district", "target_district_id"),
    )
