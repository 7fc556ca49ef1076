"""
Sector Linker — keeps the SECTOR tree mirrored to the ORIGINAL tree.

Every ORIGINAL node below NationalLevel gets four SECTOR nodes at the same
level, one per sector type, named "{node name} - {sector label}". Each mirror
is linked to the same-type mirror of the ORIGINAL parent:

    ORIGINAL   Region R ──────────── Locality L
                 │                      │
    SECTOR     R - Social  ◄── parent ── L - Social
               R - Economic ◄─────────── L - Economic
               ...

Parent mirrors are resolved from explicit ids first (passed down by the
caller, then by ``source_node_id``). A legacy name-prefix lookup is used only
when enabled and only when it yields exactly one candidate. When nothing
resolves, the mirror is created unlinked and flagged for reconciliation;
the triggering ORIGINAL node is never rolled back.
"""

from __future__ import annotations

import logging
from typing import Mapping

from orgscope.config import OrgScopeSettings, settings as default_settings
from orgscope.hierarchy.schema import (
    HierarchyLevel,
    HierarchyNode,
    SectorType,
    TreeKind,
)
from orgscope.hierarchy.store import HierarchyStore

logger = logging.getLogger(__name__)

FIXED_SECTOR_TYPES: tuple[SectorType, ...] = (
    SectorType.SOCIAL,
    SectorType.ECONOMIC,
    SectorType.ORGANIZATIONAL,
    SectorType.POLITICAL,
)


def sector_node_name(original_name: str, sector_type: SectorType, language: str = "ar") -> str:
    return f"{original_name} - {sector_type.label(language)}"


class SectorLinker:
    """Creates and links the four sector mirrors of a new ORIGINAL node."""

    def __init__(
        self,
        store: HierarchyStore,
        settings: OrgScopeSettings | None = None,
    ) -> None:
        self.store = store
        self.settings = settings or default_settings

    def on_node_created(
        self,
        node: HierarchyNode,
        parent_sector_ids: Mapping[SectorType, str] | None = None,
    ) -> dict[SectorType, str]:
        """
        Create the sector mirrors of a committed ORIGINAL node.

        Args:
            node: The newly created ORIGINAL node.
            parent_sector_ids: Known sector mirrors of the node's parent, by
                type. Takes precedence over any lookup.

        Returns:
            The ids of the created mirrors by sector type. Empty for nodes
            that are not mirrored (other trees, NationalLevel).
        """
        if node.tree_kind != TreeKind.ORIGINAL or node.level == HierarchyLevel.NATIONAL_LEVEL:
            return {}

        existing = self.mirrors_of(node.id)
        created: dict[SectorType, str] = {}
        for sector_type in FIXED_SECTOR_TYPES:
            if sector_type in existing:
                logger.debug(
                    "Sector mirror already exists: node=%s type=%s", node.id, sector_type.value
                )
                created[sector_type] = existing[sector_type].id
                continue

            parent_sector_id = None
            needs_reconciliation = False
            # Region mirrors are top-level in the SECTOR tree
            if node.level != HierarchyLevel.REGION:
                parent_sector_id = self.resolve_parent_sector(
                    node, sector_type, parent_sector_ids
                )
                if parent_sector_id is None:
                    needs_reconciliation = True
                    logger.warning(
                        "No parent sector for %s mirror of %s %s (%s); "
                        "created unlinked and flagged for reconciliation",
                        sector_type.value, node.level.value, node.id, node.name,
                    )

            mirror = HierarchyNode(
                name=sector_node_name(node.name, sector_type, self.settings.sector_label_language),
                tree_kind=TreeKind.SECTOR,
                level=node.level,
                parent_id=parent_sector_id,
                active=True,
                sector_type=sector_type,
                source_node_id=node.id,
                needs_reconciliation=needs_reconciliation,
            )
            self.store.add_node(mirror)
            created[sector_type] = mirror.id

        logger.info(
            "Sector mirrors ready for %s %s: %d created",
            node.level.value, node.id, len(created) - len(existing),
        )
        return created

    def mirrors_of(self, original_id: str) -> dict[SectorType, HierarchyNode]:
        """Existing sector mirrors of an ORIGINAL node, by type."""
        return {
            mirror.sector_type: mirror
            for mirror in self.store.find_nodes(TreeKind.SECTOR, source_node_id=original_id)
        }

    def resolve_parent_sector(
        self,
        node: HierarchyNode,
        sector_type: SectorType,
        parent_sector_ids: Mapping[SectorType, str] | None = None,
    ) -> str | None:
        """
        Find the same-type mirror of the node's ORIGINAL parent.

        Returns:
            The parent mirror id, or None if it cannot be resolved unambiguously.
        """
        if parent_sector_ids and parent_sector_ids.get(sector_type):
            return parent_sector_ids[sector_type]
        if not node.parent_id:
            return None

        parent_level = node.level.parent
        by_source = self.store.find_nodes(
            TreeKind.SECTOR,
            parent_level,
            sector_type=sector_type,
            source_node_id=node.parent_id,
        )
        if len(by_source) == 1:
            return by_source[0].id
        if len(by_source) > 1:
            logger.warning(
                "Ambiguous %s mirrors for parent %s: %d found",
                sector_type.value, node.parent_id, len(by_source),
            )
            return None

        if not self.settings.sector_name_fallback:
            return None
        parent = self.store.get_node(node.parent_id)
        if parent is None:
            return None
        by_name = self.store.find_nodes(
            TreeKind.SECTOR,
            parent_level,
            name_prefix=f"{parent.name} -",
            sector_type=sector_type,
        )
        if len(by_name) == 1:
            logger.info(
                "Linked %s mirror of %s by legacy name prefix %r",
                sector_type.value, node.id, parent.name,
            )
            return by_name[0].id
        if len(by_name) > 1:
            logger.warning(
                "Name prefix %r matches %d %s mirrors; refusing to guess",
                parent.name, len(by_name), sector_type.value,
            )
        return None
