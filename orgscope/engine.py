"""
OrgScope — Hierarchy scope and content-targeting engine facade.

Request handlers hold one HierarchyEngine over a HierarchyStore and call it
with explicit actor positions; there is no ambient "current user". The
engine:

1. Derives ancestor chains from leaf assignments
2. Resolves actors' authority scopes (fail-closed)
3. Answers permission questions as booleans
4. Builds content visibility predicates for the persistence layer
5. Mirrors new ORIGINAL nodes into the SECTOR tree

Usage:
    configure_logging()
    engine = HierarchyEngine(SqlHierarchyStore())
    scope = engine.resolve_scope(position)
    if not engine.can_modify(scope, node_id):
        ...
"""

from __future__ import annotations

import logging
from typing import Mapping, Sequence

import structlog

from orgscope.config import OrgScopeSettings, settings as default_settings
from orgscope.governance.permissions import PermissionGuard
from orgscope.governance.scope import ScopeResolver
from orgscope.hierarchy.deriver import HierarchyDeriver
from orgscope.hierarchy.management import HierarchyManager
from orgscope.hierarchy.schema import (
    ActorPosition,
    AncestorChain,
    ContentKind,
    ContentRecord,
    ContentTargetSpec,
    HierarchyLevel,
    HierarchyNode,
    Scope,
    SectorType,
    TreeKind,
)
from orgscope.hierarchy.sector_linker import SectorLinker
from orgscope.hierarchy.store import HierarchyStore
from orgscope.targeting.filters import ContentTargetFilterBuilder
from orgscope.targeting.predicate import Predicate
from orgscope.targeting.validation import TargetValidator, initial_approval

log = structlog.get_logger()


def configure_logging(settings: OrgScopeSettings | None = None) -> None:
    """Configure structured logging."""
    settings = settings or default_settings
    logging.basicConfig(level=logging.getLevelName(settings.log_level), format="%(message)s")
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.dev.set_exc_info,
            structlog.processors.TimeStamper(fmt="iso"),
            (
                structlog.dev.ConsoleRenderer()
                if settings.log_format != "json"
                else structlog.processors.JSONRenderer()
            ),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.getLevelName(settings.log_level)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


class HierarchyEngine:
    """Entry point for request handlers; wires the components over one store."""

    def __init__(
        self,
        store: HierarchyStore,
        settings: OrgScopeSettings | None = None,
    ) -> None:
        self.store = store
        self.settings = settings or default_settings
        self.deriver = HierarchyDeriver(store)
        self.resolver = ScopeResolver(self.deriver)
        self.guard = PermissionGuard(self.deriver, self.settings.conceal_out_of_scope)
        self.filters = ContentTargetFilterBuilder(self.deriver)
        self.validator = TargetValidator(self.deriver)
        self.linker = SectorLinker(store, self.settings)
        self.manager = HierarchyManager(
            store, self.settings, guard=self.guard, linker=self.linker
        )

    # ── Derivation and scope ────────────────────────────────────

    def derive_ancestors(self, tree_kind: TreeKind, leaf_id: str) -> AncestorChain:
        return self.deriver.derive(tree_kind, leaf_id)

    def resolve_scope(self, position: ActorPosition) -> Scope:
        scope = self.resolver.resolve(position)
        log.debug(
            "orgscope.engine.scope_resolved",
            actor_id=position.actor_id,
            admin_level=position.admin_level.value,
            authority_root_id=scope.authority_root_id,
            empty=scope.is_empty,
        )
        return scope

    # ── Permissions ─────────────────────────────────────────────

    def can_create_under(
        self, scope: Scope, parent_node_id: str | None, target_level: HierarchyLevel
    ) -> bool:
        return self.guard.can_create_under(scope, parent_node_id, target_level)

    def can_modify(self, scope: Scope, node_id: str) -> bool:
        return self.guard.can_modify(scope, node_id)

    def can_assign_admin(self, scope: Scope, candidate: ActorPosition) -> bool:
        return self.guard.can_assign_admin(scope, candidate)

    def can_manage_user(self, scope: Scope, target: ActorPosition) -> bool:
        return self.guard.can_manage_user(scope, target)

    def can_manage_content(self, scope: Scope, content: ContentRecord) -> bool:
        return self.guard.can_manage_content(scope, content)

    # ── Content visibility ──────────────────────────────────────

    def build_visibility_predicate(
        self,
        viewer: ActorPosition,
        content_tree_levels: Mapping[TreeKind, Sequence[HierarchyLevel]],
        approval_overlay: bool = False,
    ) -> Predicate:
        predicate = self.filters.build_visibility_predicate(
            viewer, content_tree_levels, approval_overlay=approval_overlay
        )
        log.debug(
            "orgscope.engine.visibility_predicate",
            viewer_id=viewer.actor_id,
            predicate=predicate.to_dict(),
        )
        return predicate

    def visibility_for(self, viewer: ActorPosition, kind: ContentKind) -> Predicate:
        """Visibility predicate for published items of one content type."""
        return self.filters.build_for_content(viewer, kind)

    # ── Content creation ────────────────────────────────────────

    def prepare_content(
        self,
        creator: ActorPosition,
        kind: ContentKind,
        title: str,
        targets: ContentTargetSpec | None = None,
    ) -> ContentRecord:
        """
        Validate targets and approval state for a new content item.

        Targets default to the creator's own position in their active
        hierarchy. The caller persists the returned record.

        Raises:
            InvalidTargetError: If the targets are empty, mixed or inconsistent.
            NotFoundError: If the leaf target does not resolve.
        """
        if targets is None:
            targets = self.validator.auto_fill(creator, kind)
        else:
            self.validator.validate(targets, kind)

        record = ContentRecord(
            kind=kind,
            title=title,
            creator_id=creator.actor_id,
            is_approved=initial_approval(creator, kind),
            targets=targets,
        )
        log.info(
            "orgscope.engine.content_prepared",
            content_id=record.id,
            kind=kind.value,
            creator_id=creator.actor_id,
            approved=record.is_approved,
        )
        return record

    # ── Sector mirroring ────────────────────────────────────────

    def on_node_created(
        self,
        node: HierarchyNode,
        parent_sector_ids: Mapping[SectorType, str] | None = None,
    ) -> dict[SectorType, str]:
        """Mirror a committed ORIGINAL node; failures are logged, never raised."""
        try:
            created = self.linker.on_node_created(node, parent_sector_ids)
        except Exception as e:
            log.exception("orgscope.engine.sector_mirroring_failed", node_id=node.id, error=str(e))
            return {}
        if created:
            log.info(
                "orgscope.engine.sector_mirrors_ready",
                node_id=node.id,
                level=node.level.value,
                mirrors={t.value: i for t, i in created.items()},
            )
        return created
