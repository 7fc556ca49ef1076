"""
SQL Hierarchy Store — SQLAlchemy persistence for nodes, positions and content.

This is the production HierarchyStore. Every call opens its own session and
commits before returning, so a node is visible to other requests (and to the
SectorLinker) as soon as ``add_node`` returns.

Node updates are conditional on the stored version:

    UPDATE hierarchy_nodes SET ..., version = version + 1
    WHERE id = :id AND version = :expected

so two writers racing on the same node cannot both succeed.

Content visibility is queried by translating a Predicate into a WHERE clause
over ``content_items``.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import create_engine, func, or_, select, update
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from orgscope.config import settings
from orgscope.errors import NotFoundError, OptimisticLockError
from orgscope.hierarchy.models import (
    Base,
    ContentItemDB,
    HierarchyNodeDB,
    MemberPositionDB,
)
from orgscope.hierarchy.schema import (
    ALL_TREE_LEVELS,
    ActorPosition,
    AdminLevel,
    AncestorChain,
    ChainLink,
    ContentKind,
    ContentRecord,
    ContentTargetSpec,
    HierarchyLevel,
    HierarchyNode,
    SectorType,
    TreeKind,
    position_field,
)
from orgscope.hierarchy.store import HierarchyStore
from orgscope.targeting.predicate import Predicate

logger = logging.getLogger(__name__)

POSITION_COLUMNS: tuple[str, ...] = tuple(
    dict.fromkeys(position_field(tree, level) for tree, level in ALL_TREE_LEVELS)
)
NODE_FIELDS = (
    "name", "code", "description", "tree_kind", "level", "parent_id", "active",
    "sector_type", "source_node_id", "needs_reconciliation",
)


def make_engine(database_url: str | None = None) -> Engine:
    """
    Create an engine for the given URL (defaults to settings).

    In-memory SQLite shares a single connection so every session sees the
    same database.
    """
    url = database_url or settings.database_url_sync
    if url.startswith("sqlite") and (url in ("sqlite://", "sqlite:///") or ":memory:" in url):
        return create_engine(
            url,
            echo=False,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    return create_engine(url, echo=False)


def _enum_value(value: Any) -> Any:
    return value.value if hasattr(value, "value") else value


def _as_utc(value: datetime) -> datetime:
    # SQLite drops the offset on read
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


class SqlHierarchyStore(HierarchyStore):
    """
    HierarchyStore backed by SQLAlchemy.

    Usage:
        store = SqlHierarchyStore("sqlite://")
        store.initialize()
        engine = HierarchyEngine(store)
    """

    def __init__(self, database_url: str | None = None, engine: Engine | None = None) -> None:
        """
        Initialize the store.

        Args:
            database_url: Connection string (sync driver). Defaults to
                ``settings.database_url_sync``.
            engine: An existing engine to share instead of creating one.
        """
        self.engine = engine or make_engine(database_url)
        self.SessionLocal = sessionmaker(bind=self.engine, expire_on_commit=False)

    def initialize(self) -> None:
        """Create all tables that do not exist yet."""
        Base.metadata.create_all(self.engine)
        logger.info("Hierarchy schema ready on %s", self.engine.url.render_as_string(hide_password=True))

    # ── Nodes ───────────────────────────────────────────────────

    def get_node(self, node_id: str) -> HierarchyNode | None:
        with self.SessionLocal() as session:
            row = session.get(HierarchyNodeDB, node_id)
            return self._to_node(row) if row else None

    def add_node(self, node: HierarchyNode) -> HierarchyNode:
        with self.SessionLocal() as session:
            row = HierarchyNodeDB(
                id=node.id,
                version=node.version,
                created_at=node.created_at,
                updated_at=node.updated_at,
                **self._node_values(node),
            )
            session.add(row)
            session.commit()
        logger.debug("Node stored: %s %s/%s", node.id[:8], node.tree_kind.value, node.level.value)
        return node

    def update_node(self, node: HierarchyNode, expected_version: int) -> HierarchyNode:
        with self.SessionLocal() as session:
            result = session.execute(
                update(HierarchyNodeDB)
                .where(
                    HierarchyNodeDB.id == node.id,
                    HierarchyNodeDB.version == expected_version,
                )
                .values(
                    version=HierarchyNodeDB.version + 1,
                    updated_at=datetime.now(timezone.utc),
                    **self._node_values(node),
                )
            )
            if result.rowcount == 0:
                session.rollback()
                current = session.get(HierarchyNodeDB, node.id)
                if current is None:
                    raise NotFoundError(node.id)
                raise OptimisticLockError(node.id, expected_version, current.version)
            session.commit()
            row = session.get(HierarchyNodeDB, node.id)
            session.refresh(row)
            return self._to_node(row)

    def remove_node(self, node_id: str) -> None:
        with self.SessionLocal() as session:
            row = session.get(HierarchyNodeDB, node_id)
            if row is None:
                raise NotFoundError(node_id)
            session.delete(row)
            session.commit()

    def children(self, parent_id: str, active_only: bool = False) -> list[HierarchyNode]:
        with self.SessionLocal() as session:
            stmt = select(HierarchyNodeDB).where(HierarchyNodeDB.parent_id == parent_id)
            if active_only:
                stmt = stmt.where(HierarchyNodeDB.active.is_(True))
            return [self._to_node(row) for row in session.execute(stmt).scalars().all()]

    def find_nodes(
        self,
        tree_kind: TreeKind,
        level: HierarchyLevel | None = None,
        *,
        code: str | None = None,
        name_prefix: str | None = None,
        sector_type: SectorType | None = None,
        source_node_id: str | None = None,
        active_only: bool = False,
    ) -> list[HierarchyNode]:
        stmt = select(HierarchyNodeDB).where(HierarchyNodeDB.tree_kind == tree_kind.value)
        if level is not None:
            stmt = stmt.where(HierarchyNodeDB.level == level.value)
        if code is not None:
            stmt = stmt.where(HierarchyNodeDB.code == code)
        if name_prefix is not None:
            stmt = stmt.where(HierarchyNodeDB.name.startswith(name_prefix, autoescape=True))
        if sector_type is not None:
            stmt = stmt.where(HierarchyNodeDB.sector_type == sector_type.value)
        if source_node_id is not None:
            stmt = stmt.where(HierarchyNodeDB.source_node_id == source_node_id)
        if active_only:
            stmt = stmt.where(HierarchyNodeDB.active.is_(True))
        stmt = stmt.order_by(HierarchyNodeDB.created_at.asc())

        with self.SessionLocal() as session:
            return [self._to_node(row) for row in session.execute(stmt).scalars().all()]

    # ── Member positions ────────────────────────────────────────

    def save_position(self, position: ActorPosition) -> ActorPosition:
        values: dict[str, Any] = {column: None for column in POSITION_COLUMNS}
        for tree, chain in position.ancestors.items():
            for link in chain.links:
                values[position_field(tree, link.level)] = link.node_id
        values.update(
            admin_level=position.admin_level.value,
            active_hierarchy=position.active_hierarchy.value,
            original_leaf_id=position.original_leaf_id,
            sector_leaf_id=position.sector_leaf_id,
            expatriate_region_id=position.expatriate_region_id,
        )

        with self.SessionLocal() as session:
            row = session.get(MemberPositionDB, position.actor_id)
            if row is None:
                row = MemberPositionDB(actor_id=position.actor_id)
                session.add(row)
            for column, value in values.items():
                setattr(row, column, value)
            session.commit()
        return position

    def get_position(self, actor_id: str) -> ActorPosition | None:
        with self.SessionLocal() as session:
            row = session.get(MemberPositionDB, actor_id)
            return self._to_position(row) if row else None

    def positions(self) -> list[ActorPosition]:
        with self.SessionLocal() as session:
            rows = session.execute(select(MemberPositionDB)).scalars().all()
            return [self._to_position(row) for row in rows]

    def query_positions(self, predicate: Predicate) -> list[ActorPosition]:
        """Positions matching a predicate over member position columns."""
        with self.SessionLocal() as session:
            rows = session.execute(
                select(MemberPositionDB).where(predicate.to_sqlalchemy(MemberPositionDB))
            ).scalars().all()
            return [self._to_position(row) for row in rows]

    def count_members(self, node_id: str) -> int:
        columns = [getattr(MemberPositionDB, column) for column in POSITION_COLUMNS]
        columns += [MemberPositionDB.original_leaf_id, MemberPositionDB.sector_leaf_id]
        with self.SessionLocal() as session:
            return session.execute(
                select(func.count())
                .select_from(MemberPositionDB)
                .where(or_(*(column == node_id for column in columns)))
            ).scalar() or 0

    # ── Internal ────────────────────────────────────────────────

    @staticmethod
    def _node_values(node: HierarchyNode) -> dict[str, Any]:
        return {field: _enum_value(getattr(node, field)) for field in NODE_FIELDS}

    @staticmethod
    def _to_node(row: HierarchyNodeDB) -> HierarchyNode:
        return HierarchyNode(
            id=row.id,
            name=row.name,
            code=row.code,
            description=row.description,
            tree_kind=TreeKind(row.tree_kind),
            level=HierarchyLevel(row.level),
            parent_id=row.parent_id,
            active=row.active,
            sector_type=SectorType(row.sector_type) if row.sector_type else None,
            source_node_id=row.source_node_id,
            needs_reconciliation=row.needs_reconciliation,
            version=row.version,
            created_at=_as_utc(row.created_at),
            updated_at=_as_utc(row.updated_at),
        )

    @staticmethod
    def _to_position(row: MemberPositionDB) -> ActorPosition:
        position = ActorPosition(
            actor_id=row.actor_id,
            admin_level=AdminLevel.from_legacy(row.admin_level),
            active_hierarchy=TreeKind(row.active_hierarchy),
            original_leaf_id=row.original_leaf_id,
            expatriate_region_id=row.expatriate_region_id,
            sector_leaf_id=row.sector_leaf_id,
        )
        ancestors: dict[TreeKind, AncestorChain] = {}
        for tree in position.participating_trees():
            links = [
                ChainLink(level=level, node_id=getattr(row, position_field(tree, level)))
                for level in tree.levels
                if getattr(row, position_field(tree, level))
            ]
            ancestors[tree] = AncestorChain(tree_kind=tree, links=links)
        position.ancestors = ancestors
        return position


class ContentRepository:
    """Stores content items and answers visibility queries."""

    def __init__(self, store: SqlHierarchyStore) -> None:
        self.SessionLocal = store.SessionLocal

    def add(self, record: ContentRecord) -> ContentRecord:
        with self.SessionLocal() as session:
            session.add(
                ContentItemDB(
                    id=record.id,
                    kind=record.kind.value,
                    title=record.title,
                    creator_id=record.creator_id,
                    is_approved=record.is_approved,
                    published=record.published,
                    **record.targets.model_dump(),
                )
            )
            session.commit()
        logger.debug("Content stored: %s %s", record.kind.value, record.id[:8])
        return record

    def get(self, content_id: str) -> ContentRecord | None:
        with self.SessionLocal() as session:
            row = session.get(ContentItemDB, content_id)
            return self._to_record(row) if row else None

    def set_approval(self, content_id: str, approved: bool) -> ContentRecord:
        with self.SessionLocal() as session:
            row = session.get(ContentItemDB, content_id)
            if row is None:
                raise NotFoundError(content_id, f"Content item not found: {content_id}")
            row.is_approved = approved
            session.commit()
            return self._to_record(row)

    def visible(
        self,
        predicate: Predicate,
        kind: ContentKind | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[ContentRecord]:
        """
        Content items matching a visibility predicate, newest first.

        Args:
            predicate: Built by ContentTargetFilterBuilder.
            kind: Optional content type filter.
            limit: Maximum results.
            offset: Rows to skip.
        """
        stmt = select(ContentItemDB).where(predicate.to_sqlalchemy(ContentItemDB))
        if kind is not None:
            stmt = stmt.where(ContentItemDB.kind == kind.value)
        stmt = stmt.order_by(ContentItemDB.created_at.desc()).limit(limit).offset(offset)
        with self.SessionLocal() as session:
            return [self._to_record(row) for row in session.execute(stmt).scalars().all()]

    @staticmethod
    def _to_record(row: ContentItemDB) -> ContentRecord:
        targets = {
            field: getattr(row, field) for field in ContentTargetSpec.model_fields
        }
        return ContentRecord(
            id=row.id,
            kind=ContentKind(row.kind),
            title=row.title,
            creator_id=row.creator_id,
            is_approved=row.is_approved,
            published=row.published,
            targets=ContentTargetSpec(**targets),
        )
