"""
Hierarchy Reconciliation Audit — consistency checks over a live store.

Sector mirroring and ancestor denormalization are repaired lazily: a mirror
whose parent could not be resolved is created unlinked, and member positions
are only re-derived when they are reassigned. This tool finds what drifted:

- ORIGINAL nodes below NationalLevel without exactly four sector mirrors
- sector mirrors linked to the wrong parent mirror, or flagged for
  reconciliation
- member positions whose stored ancestors differ from a fresh derivation,
  or whose leaf no longer resolves

Usage:
    python -m orgscope.hierarchy.audit
    python -m orgscope.hierarchy.audit --database-url sqlite:///orgscope.db
    python -m orgscope.hierarchy.audit --fix --verbose

Exit code is 1 when findings remain.
"""

from __future__ import annotations

import argparse
import sys
import time
from collections import defaultdict
from dataclasses import dataclass

from rich.console import Console
from rich.table import Table

from orgscope.config import settings
from orgscope.errors import HierarchyError
from orgscope.hierarchy.deriver import HierarchyDeriver
from orgscope.hierarchy.schema import HierarchyLevel, HierarchyNode, SectorType, TreeKind
from orgscope.hierarchy.sector_linker import FIXED_SECTOR_TYPES, SectorLinker
from orgscope.hierarchy.store import HierarchyStore

console = Console()


@dataclass
class AuditFinding:
    """One inconsistency found by the audit."""

    category: str
    subject_id: str
    detail: str
    fixed: bool = False


class HierarchyAuditor:
    """Runs the reconciliation checks, optionally repairing what it can."""

    def __init__(self, store: HierarchyStore) -> None:
        self.store = store
        self.deriver = HierarchyDeriver(store)
        self.linker = SectorLinker(store)

    def run(self, fix: bool = False) -> list[AuditFinding]:
        return self.check_sector_mirrors(fix) + self.check_positions(fix)

    # ── Sector mirrors ──────────────────────────────────────────

    def check_sector_mirrors(self, fix: bool = False) -> list[AuditFinding]:
        findings: list[AuditFinding] = []
        for node in self.store.find_nodes(TreeKind.ORIGINAL):
            if node.level == HierarchyLevel.NATIONAL_LEVEL:
                continue

            by_type: dict[SectorType, list[HierarchyNode]] = defaultdict(list)
            for mirror in self.store.find_nodes(TreeKind.SECTOR, source_node_id=node.id):
                by_type[mirror.sector_type].append(mirror)

            missing = [t for t in FIXED_SECTOR_TYPES if not by_type.get(t)]
            if missing:
                finding = AuditFinding(
                    "missing_mirror", node.id,
                    f"{node.level.value} {node.name!r} lacks "
                    + ", ".join(t.value for t in missing),
                )
                if fix and node.active:
                    self.linker.on_node_created(node)
                    finding.fixed = True
                findings.append(finding)

            for sector_type, mirrors in by_type.items():
                if len(mirrors) > 1:
                    findings.append(AuditFinding(
                        "duplicate_mirror", node.id,
                        f"{len(mirrors)} {sector_type.value} mirrors of {node.name!r}",
                    ))
                    continue
                finding = self._check_link(node, mirrors[0], fix)
                if finding:
                    findings.append(finding)
        return findings

    def _check_link(
        self, node: HierarchyNode, mirror: HierarchyNode, fix: bool
    ) -> AuditFinding | None:
        expected = None
        if node.level != HierarchyLevel.REGION:
            expected = self.linker.resolve_parent_sector(node, mirror.sector_type)
            if expected is None:
                return AuditFinding(
                    "unlinked_mirror", mirror.id,
                    f"{mirror.name!r} has no resolvable parent mirror "
                    f"(currently {mirror.parent_id})",
                )

        if mirror.parent_id == expected and not mirror.needs_reconciliation:
            return None

        finding = AuditFinding(
            "mislinked_mirror" if mirror.parent_id != expected else "flagged_mirror",
            mirror.id,
            f"{mirror.name!r} parent is {mirror.parent_id}, expected {expected}",
        )
        if fix:
            self.store.update_node(
                mirror.model_copy(
                    update={"parent_id": expected, "needs_reconciliation": False}
                ),
                mirror.version,
            )
            finding.fixed = True
        return finding

    # ── Member positions ────────────────────────────────────────

    def check_positions(self, fix: bool = False) -> list[AuditFinding]:
        findings: list[AuditFinding] = []
        for position in self.store.positions():
            try:
                derived = self.deriver.derive_position(position)
            except HierarchyError as e:
                findings.append(AuditFinding("broken_position", position.actor_id, str(e)))
                continue

            stale = [
                tree.value
                for tree in TreeKind
                if _chain_ids(position, tree) != _chain_ids(derived, tree)
            ]
            if not stale:
                continue
            finding = AuditFinding(
                "stale_position", position.actor_id,
                "stored ancestors differ in " + ", ".join(stale),
            )
            if fix:
                self.store.save_position(derived)
                finding.fixed = True
            findings.append(finding)
        return findings


def _chain_ids(position, tree: TreeKind) -> list[str]:
    chain = position.ancestors.get(tree)
    return chain.ids if chain else []


def run_audit(store: HierarchyStore, verbose: bool = False, fix: bool = False) -> bool:
    """
    Run every reconciliation check and print a report.

    Args:
        store: The hierarchy store to audit.
        verbose: Also list repaired findings.
        fix: Repair what can be repaired automatically.

    Returns:
        True if no unrepaired findings remain.
    """
    console.print("\n[bold blue]═══ Hierarchy Reconciliation Audit ═══[/bold blue]\n")

    start_time = time.time()
    findings = HierarchyAuditor(store).run(fix=fix)
    elapsed = time.time() - start_time

    open_findings = [f for f in findings if not f.fixed]
    shown = findings if verbose else open_findings

    if shown:
        table = Table(show_lines=True)
        table.add_column("Category", style="yellow", width=18)
        table.add_column("Subject", style="cyan", width=38)
        table.add_column("Detail")
        table.add_column("Fixed", width=6)
        for finding in shown:
            table.add_row(
                finding.category,
                finding.subject_id,
                finding.detail,
                "✓" if finding.fixed else "—",
            )
        console.print(table)

    if open_findings:
        console.print(f"[bold red]✗ {len(open_findings)} finding(s)[/bold red]")
    else:
        console.print("[bold green]✓ CONSISTENT[/bold green]")
    if fix:
        console.print(f"  Repaired: {len(findings) - len(open_findings)}")
    console.print(f"  Audit time: {elapsed:.3f}s")
    console.print("\n[bold blue]═══ Audit Complete ═══[/bold blue]\n")
    return not open_findings


def main() -> None:
    from orgscope.hierarchy.sql_store import SqlHierarchyStore

    parser = argparse.ArgumentParser(
        description="OrgScope hierarchy reconciliation auditor"
    )
    parser.add_argument(
        "--database-url",
        default=None,
        help="Database connection string (defaults to .env settings)",
    )
    parser.add_argument(
        "--fix",
        action="store_true",
        help="Create missing mirrors, relink mirrors and re-derive stale positions",
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Also list findings that were repaired",
    )
    args = parser.parse_args()

    store = SqlHierarchyStore(args.database_url or settings.database_url_sync)
    store.initialize()
    is_consistent = run_audit(store, verbose=args.verbose, fix=args.fix)
    sys.exit(0 if is_consistent else 1)


if __name__ == "__main__":
    main()
