"""
Structural audit and repair for one website's site tree.

Validation only reports: it never raises for corrupt data and never writes.
Repair fixes what validation reports, in a single transaction, and never
deletes a node.
"""
from collections import deque
from datetime import timezone
from typing import Any, Dict, List, Optional, TypedDict

from flask import current_app

from sitetree.extensions import db
from sitetree.domain.paths import compute_depth, compute_path, recalculate_descendant_paths
from sitetree.domain.slugs import SlugRules, is_valid_slug, with_suffix
from sitetree.domain.tree import build_children_index, sibling_sort_key
from sitetree.models.base import utc_now
from sitetree.models.site_node import SiteNode
from sitetree.repositories.site_node_repository import SiteNodeRepository
from sitetree.utils.audit import log_action
from sitetree.utils.order import compact_order
from sitetree.utils.transaction import mark_tree_changed, transactional


class ValidationReport(TypedDict):
    valid: bool
    errors: List[str]
    warnings: List[str]
    summary: Dict[str, Any]


# Parent values seeded for root-level nodes in path checks
ROOT_PARENT = (None, 0)


def _creation_order(node):
    created = node.created_at or utc_now()
    # SQLite hands timestamps back without tzinfo
    if created.tzinfo is None:
        created = created.replace(tzinfo=timezone.utc)
    return (created, node.id)


class _Snapshot:
    """All rows of one website plus the lookups every check needs."""

    def __init__(self, nodes: List[SiteNode]):
        self.nodes = nodes
        self.by_id = {node.id: node for node in nodes}
        self.children = build_children_index(nodes)

    @property
    def roots(self) -> List[SiteNode]:
        return list(self.children.get(None, []))

    def orphans(self) -> List[SiteNode]:
        return [
            node for node in self.nodes
            if node.parent_id is not None and node.parent_id not in self.by_id
        ]

    def cycles(self) -> List[List[SiteNode]]:
        """Each parent-pointer cycle once, as the list of its members."""
        state: Dict[str, int] = {}
        found: List[List[SiteNode]] = []

        for start in self.nodes:
            if start.id in state:
                continue

            trail: List[str] = []
            position: Dict[str, int] = {}
            current: Optional[str] = start.id

            while current is not None and current in self.by_id and current not in state:
                position[current] = len(trail)
                trail.append(current)
                state[current] = 1
                current = self.by_id[current].parent_id

                if current in position:
                    found.append([self.by_id[member] for member in trail[position[current]:]])
                    break

            for member in trail:
                state[member] = 2

        return found

    def reachable_ids(self, heads: List[SiteNode]) -> set:
        seen = {head.id for head in heads}
        queue = deque(heads)
        while queue:
            node = queue.popleft()
            for child in self.children.get(node.id, ()):
                if child.id not in seen:
                    seen.add(child.id)
                    queue.append(child)
        return seen


class TreeValidator:
    def __init__(self, rules: Optional[SlugRules] = None):
        self.rules = rules or SlugRules()

    @property
    def repository(self) -> SiteNodeRepository:
        return SiteNodeRepository(db.session)

    def _snapshot(self, website_id: str) -> _Snapshot:
        return _Snapshot(self.repository.list_by_website(website_id))

    # -------------------------------------------------
    # Detection
    # -------------------------------------------------
    def find_orphaned_nodes(self, website_id: str) -> List[SiteNode]:
        return self._snapshot(website_id).orphans()

    def find_cycles(self, website_id: str) -> List[str]:
        snapshot = self._snapshot(website_id)
        return sorted(member.id for cycle in snapshot.cycles() for member in cycle)

    def _path_report(self, snapshot: _Snapshot) -> ValidationReport:
        errors: List[str] = []
        inconsistent = set()
        checked = 0

        queue = deque((root, ROOT_PARENT) for root in snapshot.roots)
        seen = {root.id for root in snapshot.roots}

        while queue:
            node, (parent_full_path, parent_depth) = queue.popleft()
            checked += 1

            expected_path = compute_path(parent_full_path, node.slug)
            expected_depth = compute_depth(parent_depth)

            if node.full_path != expected_path:
                inconsistent.add(node.id)
                errors.append(
                    f"Node {node.id} has full_path '{node.full_path}', expected '{expected_path}'"
                )
            if node.path_depth != expected_depth:
                inconsistent.add(node.id)
                errors.append(
                    f"Node {node.id} has path_depth {node.path_depth}, expected {expected_depth}"
                )

            for child in snapshot.children.get(node.id, ()):
                if child.id not in seen:
                    seen.add(child.id)
                    queue.append((child, (expected_path, expected_depth)))

        return {
            "valid": not errors,
            "errors": errors,
            "warnings": [],
            "summary": {"checked_nodes": checked, "path_inconsistencies": len(inconsistent)},
        }

    def validate_paths(self, website_id: str) -> ValidationReport:
        """Compare stored full_path/path_depth with what the parent chain implies."""
        return self._path_report(self._snapshot(website_id))

    def validate_tree(self, website_id: str) -> ValidationReport:
        snapshot = self._snapshot(website_id)
        errors: List[str] = []
        warnings: List[str] = []

        orphans = snapshot.orphans()
        for node in orphans:
            errors.append(f"Orphaned node {node.id} ({node.slug}): parent {node.parent_id} does not exist")

        cycles = snapshot.cycles()
        cycle_ids = set()
        for cycle in cycles:
            members = sorted(member.id for member in cycle)
            cycle_ids.update(members)
            errors.append(f"Circular reference between nodes: {', '.join(members)}")

        reachable = snapshot.reachable_ids(snapshot.roots + orphans)
        for node in snapshot.nodes:
            if node.id not in reachable and node.id not in cycle_ids:
                errors.append(f"Node {node.id} ({node.slug}) is detached: its ancestors form a cycle")

        duplicate_slugs = 0
        duplicate_positions = 0
        for parent_id, siblings in snapshot.children.items():
            where = f"parent {parent_id}" if parent_id else "root level"

            by_slug: Dict[str, List[SiteNode]] = {}
            for sibling in siblings:
                by_slug.setdefault(sibling.slug.lower(), []).append(sibling)
            for slug, holders in by_slug.items():
                if len(holders) > 1:
                    duplicate_slugs += 1
                    errors.append(
                        f"Duplicate slug '{slug}' under {where}: {', '.join(sorted(h.id for h in holders))}"
                    )

            positions = [sibling.position for sibling in siblings]
            if len(positions) != len(set(positions)):
                duplicate_positions += 1
                warnings.append(f"Duplicate sibling positions under {where}: {sorted(positions)}")

        invalid_slugs = [node for node in snapshot.nodes if not is_valid_slug(node.slug, self.rules)]
        for node in invalid_slugs:
            warnings.append(f"Node {node.id} has slug {node.slug!r} that breaks the slug rules")

        paths = self._path_report(snapshot)
        errors.extend(paths["errors"])

        if orphans or cycles:
            current_app.logger.warning(
                "Site tree %s is corrupt: %d orphaned node(s), %d cycle(s)",
                website_id, len(orphans), len(cycles),
            )

        return {
            "valid": not errors,
            "errors": errors,
            "warnings": warnings,
            "summary": {
                "total_nodes": len(snapshot.nodes),
                "root_nodes": len(snapshot.roots),
                "orphaned_nodes": len(orphans),
                "cycle_nodes": len(cycle_ids),
                "duplicate_slugs": duplicate_slugs,
                "duplicate_positions": duplicate_positions,
                "invalid_slugs": len(invalid_slugs),
                "path_inconsistencies": paths["summary"]["path_inconsistencies"],
            },
        }

    def statistics(self, website_id: str) -> Dict[str, Any]:
        snapshot = self._snapshot(website_id)
        total = len(snapshot.nodes)
        parents = [node for node in snapshot.nodes if snapshot.children.get(node.id)]
        child_links = sum(len(snapshot.children[node.id]) for node in parents)

        return {
            "total_nodes": total,
            "max_depth": max((node.path_depth for node in snapshot.nodes), default=0),
            "root_nodes": len(snapshot.roots),
            "leaf_nodes": total - len(parents),
            "average_children_per_node": round(child_links / len(parents), 2) if parents else 0,
            "orphaned_nodes": len(snapshot.orphans()),
            "path_inconsistencies": self._path_report(snapshot)["summary"]["path_inconsistencies"],
        }

    # -------------------------------------------------
    # Repair
    # -------------------------------------------------
    def repair_tree(self, website_id: str) -> ValidationReport:
        """
        Fix orphans, cycles, duplicate sibling slugs, path drift and duplicate
        positions, then re-validate.

        Steps, in order:
        - orphans become root-level nodes
        - each cycle is broken by promoting its oldest member to root
        - later duplicates of a sibling slug get a numeric suffix
        - paths and depths are recomputed from the roots down
        - sibling groups holding duplicate positions are compacted
        """
        repairs: List[str] = []

        with transactional():
            snapshot = self._snapshot(website_id)

            for node in snapshot.orphans():
                repairs.append(f"Promoted orphaned node {node.id} ({node.slug}) to root")
                node.parent_id = None

            for cycle in snapshot.cycles():
                breaker = min(cycle, key=_creation_order)
                repairs.append(f"Broke circular reference by promoting node {breaker.id} ({breaker.slug}) to root")
                breaker.parent_id = None

            # Parent links changed, so group again
            snapshot = _Snapshot(snapshot.nodes)

            for parent_id, siblings in snapshot.children.items():
                taken = {sibling.slug.lower() for sibling in siblings}
                kept = set()
                for sibling in sorted(siblings, key=_creation_order):
                    slug = sibling.slug.lower()
                    if slug not in kept:
                        kept.add(slug)
                        continue

                    suffix = 1
                    candidate = with_suffix(sibling.slug, suffix, self.rules.max_length)
                    while candidate.lower() in taken:
                        suffix += 1
                        candidate = with_suffix(sibling.slug, suffix, self.rules.max_length)

                    repairs.append(f"Renamed duplicate slug of node {sibling.id}: '{sibling.slug}' -> '{candidate}'")
                    taken.add(candidate.lower())
                    kept.add(candidate.lower())
                    sibling.slug = candidate

            for root in snapshot.roots:
                for node in recalculate_descendant_paths(root, None, 0, snapshot.children):
                    repairs.append(f"Recomputed path of node {node.id}: {node.full_path} (depth {node.path_depth})")

            for parent_id, siblings in snapshot.children.items():
                positions = [sibling.position for sibling in siblings]
                if len(positions) != len(set(positions)):
                    where = f"parent {parent_id}" if parent_id else "root level"
                    repairs.append(f"Compacted sibling positions under {where}")
                    compact_order(sorted(siblings, key=sibling_sort_key))

            db.session.flush()

            if repairs:
                log_action(
                    website_id=website_id,
                    action="site_tree.repair",
                    entity_type="site_tree",
                    entity_id=None,
                    payload={"repairs": repairs},
                )
                mark_tree_changed(website_id)

        current_app.logger.info("Repaired site tree %s: %d change(s)", website_id, len(repairs))

        report = self.validate_tree(website_id)
        report["warnings"] = repairs + report["warnings"]
        report["summary"]["repairs"] = len(repairs)
        return report
