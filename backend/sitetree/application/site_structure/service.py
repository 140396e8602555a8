"""
Site structure service: every create/update/delete/move on the site tree.

Each mutating operation runs in exactly one transactional() block. Bulk
operations open the outer block and call the single-node operations inside
it, so a batch is written completely or not at all.
"""
from typing import Any, Dict, Iterable, List, Optional

from flask import current_app
from sqlalchemy.exc import IntegrityError

from sitetree.extensions import db
from sitetree.domain.exceptions import (
    CircularReferenceError,
    ConflictError,
    InvalidSlugError,
    NodeNotFoundError,
    ReservedSlugError,
    SlugConflictError,
    ValidationError,
)
from sitetree.domain.invariants.site_node import assert_sibling_positions, assert_site_node
from sitetree.domain.paths import (
    compute_depth,
    compute_path,
    normalize_path,
    recalculate_descendant_paths,
)
from sitetree.domain.slugs import SlugRules
from sitetree.domain.tree import (
    assemble_tree,
    build_children_index,
    iter_ancestor_ids,
    sibling_sort_key,
)
from sitetree.models.site_node import SiteNode
from sitetree.normalizers.site_node import normalize_breadcrumb, normalize_site_node, virtual_root
from sitetree.repositories.site_node_repository import SiteNodeRepository
from sitetree.utils.audit import log_action
from sitetree.utils.order import compact_order
from sitetree.utils.transaction import mark_tree_changed, transactional

from .content_linkage import ContentItemLinkage, NullContentLinkage
from .slug_validator import SlugValidator
from .tree_integrity import TreeValidator, ValidationReport

DEFAULT_MAX_DEPTH = 64

CREATE_FIELDS = {"id", "website_id", "parent_id", "slug", "title", "content_item_id", "weight", "position"}
UPDATE_FIELDS = {"slug", "title", "weight", "content_item_id"}

SIBLING_SLUG_INDEX = "uq_site_nodes_sibling_slug"

_UNSET = object()


def _is_sibling_slug_violation(exc: IntegrityError) -> bool:
    return SIBLING_SLUG_INDEX in str(exc.orig)


def _check_position(position):
    if isinstance(position, bool) or not isinstance(position, int) or position < 0:
        raise ValidationError(f"Position must be a non-negative integer, got {position!r}")


def _check_weight(weight):
    if isinstance(weight, bool) or not isinstance(weight, int):
        raise ValidationError(f"Weight must be an integer, got {weight!r}")


def _check_fields(item: Dict[str, Any], allowed: set, what: str):
    unknown = set(item) - allowed
    if unknown:
        raise ValidationError(f"Unknown {what} field(s): {', '.join(sorted(unknown))}")


class SiteStructureService:
    def __init__(
        self,
        *,
        rules: Optional[SlugRules] = None,
        content_linkage: Optional[ContentItemLinkage] = None,
        max_depth: int = DEFAULT_MAX_DEPTH,
    ):
        self.rules = rules or SlugRules()
        self.max_depth = max_depth
        self.slugs = SlugValidator(self.rules)
        self.integrity = TreeValidator(self.rules)
        self.content_linkage = content_linkage or NullContentLinkage()

    @property
    def repository(self) -> SiteNodeRepository:
        return SiteNodeRepository(db.session)

    # -------------------------------------------------
    # Lookups shared by the operations below
    # -------------------------------------------------
    def _get_node(self, node_id: str) -> SiteNode:
        node = self.repository.get_by_id(node_id) if node_id else None
        if node is None:
            raise NodeNotFoundError(node_id)
        return node

    def _get_parent(self, website_id: str, parent_id: Optional[str]) -> Optional[SiteNode]:
        if parent_id is None:
            return None

        parent = self.repository.get_by_id(parent_id)
        if parent is None:
            raise NodeNotFoundError(parent_id, kind="Parent node")
        if parent.website_id != website_id:
            raise ValidationError(f"Parent node {parent_id} belongs to a different website")
        return parent

    def _validate_slug(self, slug: str):
        errors = self.slugs.validation_errors(slug)
        if not errors:
            return
        if len(errors) == 1 and self.rules.is_reserved(slug):
            raise ReservedSlugError(slug)
        raise InvalidSlugError(slug, errors)

    def _ensure_slug_free(self, slug, *, website_id, parent_id, exclude_id=None):
        if self.slugs.check_slug_uniqueness(
            slug, website_id=website_id, parent_id=parent_id, exclude_id=exclude_id
        ):
            return
        raise SlugConflictError(
            slug,
            parent_id,
            website_id,
            suggestions=self.slugs.suggest_alternatives(
                slug, website_id=website_id, parent_id=parent_id, exclude_id=exclude_id
            ),
        )

    def _check_depth(self, depth: int):
        if depth > self.max_depth:
            raise ValidationError(f"Tree depth would exceed the maximum of {self.max_depth}")

    def _place_in_group(self, node: SiteNode, position: Optional[int]):
        """
        Give `node` a position among the siblings of its (current) parent.

        No position appends after the last sibling. An explicit position
        shifts every sibling at or after it down by one.
        """
        if position is None:
            last = self.repository.max_sibling_position(
                node.website_id, node.parent_id, exclude_id=node.id
            )
            node.position = 0 if last is None else last + 1
            return

        _check_position(position)
        siblings = [
            sibling for sibling in self.repository.list_children(node.website_id, node.parent_id)
            if sibling.id != node.id
        ]
        for sibling in siblings:
            if sibling.position >= position:
                sibling.position += 1
        node.position = position

    def _recalculate_subtree(self, node: SiteNode, parent: Optional[SiteNode]) -> List[SiteNode]:
        """Rewrite full_path/path_depth for `node` and its descendants. Returns the changed rows."""
        descendants = self.repository.list_descendants(node, self.max_depth)
        index = build_children_index([node] + descendants)

        changed = recalculate_descendant_paths(
            node,
            parent.full_path if parent else None,
            parent.path_depth if parent else 0,
            index,
        )
        self._check_depth(max(row.path_depth for row in [node] + descendants))
        return changed

    # -------------------------------------------------
    # Create
    # -------------------------------------------------
    def create(
        self,
        *,
        website_id: str,
        slug: str,
        title: str,
        parent_id: Optional[str] = None,
        content_item_id: Optional[str] = None,
        weight: int = 0,
        position: Optional[int] = None,
        id: Optional[str] = None,
    ) -> SiteNode:
        """
        Create a node under `parent_id`, or at root level when it is None.

        Responsibilities:
        - Parent exists and belongs to the same website
        - Slug format and sibling uniqueness
        - full_path, path_depth and position derived here, never by callers
        - Audit logging
        """
        if not website_id:
            raise ValidationError("website_id is required")
        if not title:
            raise ValidationError("title is required")
        _check_weight(weight)
        self._validate_slug(slug)

        try:
            with transactional():
                if id is not None and self.repository.get_by_id(id) is not None:
                    raise ConflictError(f"Node {id} already exists")

                parent = self._get_parent(website_id, parent_id)
                self._ensure_slug_free(slug, website_id=website_id, parent_id=parent_id)

                node = SiteNode()
                if id is not None:
                    node.id = id
                node.website_id = website_id
                node.parent_id = parent_id
                node.slug = slug
                node.title = title
                node.weight = weight
                node.content_item_id = content_item_id
                node.full_path = compute_path(parent.full_path if parent else None, slug)
                node.path_depth = compute_depth(parent.path_depth if parent else 0)
                self._check_depth(node.path_depth)

                self._place_in_group(node, position)

                db.session.add(node)
                db.session.flush()

                assert_site_node(node, parent)

                log_action(
                    website_id=website_id,
                    action="site_node.create",
                    entity_type="site_node",
                    entity_id=node.id,
                    payload={
                        "slug": node.slug,
                        "full_path": node.full_path,
                        "parent_id": node.parent_id,
                        "position": node.position,
                    },
                )
                mark_tree_changed(website_id)

            return node

        except IntegrityError as exc:
            # Another writer took the slug between our check and the flush
            if _is_sibling_slug_violation(exc):
                raise SlugConflictError(slug, parent_id, website_id) from exc
            raise

    def bulk_create(self, items: Iterable[Dict[str, Any]]) -> List[SiteNode]:
        """
        Create many nodes in one transaction.

        Items are applied in order, so an item may name a parent created
        earlier in the same batch through its `id`. Any failure persists
        nothing.
        """
        items = list(items)
        for item in items:
            _check_fields(item, CREATE_FIELDS, "create")

        created: List[SiteNode] = []
        with transactional():
            for item in items:
                created.append(self.create(**item))

            for website_id in sorted({node.website_id for node in created}):
                ids = [node.id for node in created if node.website_id == website_id]
                log_action(
                    website_id=website_id,
                    action="site_node.bulk_create",
                    entity_type="site_node",
                    entity_id=None,
                    payload={"count": len(ids), "ids": ids},
                )

        return created

    # -------------------------------------------------
    # Update
    # -------------------------------------------------
    def update(
        self,
        node_id: str,
        *,
        slug: Optional[str] = None,
        title: Optional[str] = None,
        weight: Optional[int] = None,
        content_item_id: Any = _UNSET,
    ) -> SiteNode:
        """
        Change slug, title, weight or content link of one node.

        A slug change is checked against the node's current siblings and
        rewrites the paths of the whole subtree. Passing no field at all is
        rejected; values equal to the stored ones are not written.
        """
        requested: Dict[str, Any] = {}
        if slug is not None:
            requested["slug"] = slug
        if title is not None:
            requested["title"] = title
        if weight is not None:
            requested["weight"] = weight
        if content_item_id is not _UNSET:
            requested["content_item_id"] = content_item_id

        if not requested:
            raise ValidationError("No fields to update")
        if "title" in requested and not requested["title"]:
            raise ValidationError("title cannot be empty")
        if "weight" in requested:
            _check_weight(requested["weight"])
        if "slug" in requested:
            self._validate_slug(requested["slug"])

        node = None
        try:
            with transactional():
                node = self._get_node(node_id)
                changes = {
                    field: [getattr(node, field), value]
                    for field, value in requested.items()
                    if getattr(node, field) != value
                }
                if not changes:
                    return node

                old_path = node.full_path

                for field, (_, value) in changes.items():
                    if field != "slug":
                        setattr(node, field, value)

                # Only a slug change touches the path
                rewritten = []
                if "slug" in changes:
                    parent = self._get_parent(node.website_id, node.parent_id)
                    self._ensure_slug_free(
                        slug, website_id=node.website_id, parent_id=node.parent_id, exclude_id=node.id
                    )
                    node.slug = slug
                    rewritten = self._recalculate_subtree(node, parent)

                db.session.flush()
                if "slug" in changes:
                    assert_site_node(node, parent)

                log_action(
                    website_id=node.website_id,
                    action="site_node.update",
                    entity_type="site_node",
                    entity_id=node.id,
                    payload={
                        "changes": changes,
                        "old_path": old_path,
                        "new_path": node.full_path,
                        "paths_rewritten": len(rewritten),
                    },
                )
                mark_tree_changed(node.website_id)

            return node

        except IntegrityError as exc:
            if node is not None and _is_sibling_slug_violation(exc):
                raise SlugConflictError(slug, node.parent_id, node.website_id) from exc
            raise

    def bulk_update(self, updates: Iterable[Dict[str, Any]]) -> List[SiteNode]:
        """Apply many updates in one transaction. Each item is {"id": ..., <field>: ...}."""
        updates = list(updates)
        for item in updates:
            if not item.get("id"):
                raise ValidationError("Every update needs an id")
            _check_fields(item, UPDATE_FIELDS | {"id"}, "update")

        updated: List[SiteNode] = []
        with transactional():
            for item in updates:
                fields = {key: value for key, value in item.items() if key != "id"}
                updated.append(self.update(item["id"], **fields))

            for website_id in sorted({node.website_id for node in updated}):
                ids = [node.id for node in updated if node.website_id == website_id]
                log_action(
                    website_id=website_id,
                    action="site_node.bulk_update",
                    entity_type="site_node",
                    entity_id=None,
                    payload={"count": len(ids), "ids": ids},
                )

        return updated

    # -------------------------------------------------
    # Delete
    # -------------------------------------------------
    def delete(self, node_id: str) -> List[str]:
        """
        Hard-delete a node and its whole subtree.

        Notes:
        - Deepest level first, flushed level by level
        - Linked content is released through the content linkage first;
          if that fails nothing is deleted
        - Remaining siblings are compacted

        Returns the deleted ids, the node itself first.
        """
        with transactional():
            node = self._get_node(node_id)
            website_id, parent_id, full_path = node.website_id, node.parent_id, node.full_path

            levels = self.repository.descendant_levels(node, self.max_depth)
            doomed = [node] + [row for level in levels for row in level]

            for row in doomed:
                if row.content_item_id is None:
                    continue
                try:
                    self.content_linkage.unlink_content_item(row.id)
                except Exception:
                    current_app.logger.error(
                        "Unlinking content item %s of node %s failed, aborting delete of %s",
                        row.content_item_id, row.id, full_path,
                    )
                    raise

            for level in reversed(levels):
                for row in level:
                    db.session.delete(row)
                db.session.flush()

            db.session.delete(node)
            db.session.flush()

            compact_order(self.repository.list_children(website_id, parent_id))

            deleted_ids = [row.id for row in doomed]
            log_action(
                website_id=website_id,
                action="site_node.delete",
                entity_type="site_node",
                entity_id=node_id,
                payload={"full_path": full_path, "deleted_ids": deleted_ids},
            )
            mark_tree_changed(website_id)

        current_app.logger.info("Deleted %s and %d descendant(s)", full_path, len(deleted_ids) - 1)
        return deleted_ids

    def bulk_delete(self, node_ids: Iterable[str]) -> List[str]:
        """Delete several subtrees in one transaction. Ids already removed as descendants are skipped."""
        node_ids = list(dict.fromkeys(node_ids))
        deleted: List[str] = []

        with transactional():
            nodes = [self._get_node(node_id) for node_id in node_ids]
            websites = sorted({node.website_id for node in nodes})

            for node_id in node_ids:
                if node_id in deleted:
                    continue
                deleted.extend(self.delete(node_id))

            for website_id in websites:
                log_action(
                    website_id=website_id,
                    action="site_node.bulk_delete",
                    entity_type="site_node",
                    entity_id=None,
                    payload={"requested_ids": node_ids, "deleted_count": len(deleted)},
                )

        return deleted

    # -------------------------------------------------
    # Move
    # -------------------------------------------------
    def would_create_cycle(self, node_id: str, target_parent_id: Optional[str]) -> bool:
        """True when `target_parent_id` is the node itself or one of its descendants."""
        if target_parent_id is None:
            return False
        if node_id == target_parent_id:
            return True

        node = self._get_node(node_id)
        parent_of = self.repository.parent_map(node.website_id)
        try:
            return node_id in iter_ancestor_ids(target_parent_id, parent_of, self.max_depth)
        except CircularReferenceError:
            current_app.logger.warning(
                "Ancestor walk from %s tripped on corrupt data, refusing move of %s",
                target_parent_id, node_id,
            )
            return True

    def validate_move(self, node_id: str, target_parent_id: Optional[str]) -> bool:
        if node_id == target_parent_id:
            return False
        if target_parent_id is None:
            return True
        return not self.would_create_cycle(node_id, target_parent_id)

    def move_node(
        self,
        node_id: str,
        new_parent_id: Optional[str],
        position: Optional[int] = None,
    ) -> SiteNode:
        """
        Re-parent a node and rewrite the paths of its whole subtree.

        Responsibilities:
        - Refuse moves under the node itself or its descendants
        - Slug uniqueness in the target sibling scope
        - Append to the target group unless a position is given
        - Compact the group the node left
        """
        if position is not None:
            _check_position(position)

        with transactional():
            node = self._get_node(node_id)
            old_parent_id = node.parent_id

            if new_parent_id == old_parent_id and position is None:
                return node

            new_parent = self._get_parent(node.website_id, new_parent_id)
            if not self.validate_move(node_id, new_parent_id):
                raise CircularReferenceError(
                    f"Cannot move node {node_id} under itself or its descendant {new_parent_id}"
                )

            if new_parent_id != old_parent_id:
                self._ensure_slug_free(
                    node.slug, website_id=node.website_id, parent_id=new_parent_id, exclude_id=node.id
                )

            old_path = node.full_path
            node.parent_id = new_parent_id
            self._place_in_group(node, position)
            rewritten = self._recalculate_subtree(node, new_parent)

            db.session.flush()
            compact_order(self.repository.list_children(node.website_id, old_parent_id))

            assert_site_node(node, new_parent)

            log_action(
                website_id=node.website_id,
                action="site_node.move",
                entity_type="site_node",
                entity_id=node.id,
                payload={
                    "from_parent_id": old_parent_id,
                    "to_parent_id": new_parent_id,
                    "old_path": old_path,
                    "new_path": node.full_path,
                    "position": node.position,
                    "paths_rewritten": len(rewritten),
                },
            )
            mark_tree_changed(node.website_id)

        current_app.logger.info(
            "Moved %s to %s (%d path(s) rewritten)", old_path, node.full_path, len(rewritten)
        )
        return node

    def bulk_move(self, moves: Iterable[Dict[str, Any]]) -> List[SiteNode]:
        """
        Apply several moves in one transaction.

        Each item is {"id", "parent_id", "position"?}. The combined result is
        checked for cycles before anything is written, then moves are applied
        shallowest final depth first so no intermediate state is cyclic.
        """
        moves = list(moves)
        for move in moves:
            if not move.get("id"):
                raise ValidationError("Every move needs an id")
            _check_fields(move, {"id", "parent_id", "position"}, "move")
        if len({move["id"] for move in moves}) != len(moves):
            raise ValidationError("A node can only be moved once per batch")

        moved: List[SiteNode] = []
        with transactional():
            nodes = {move["id"]: self._get_node(move["id"]) for move in moves}

            planned: Dict[str, Dict[str, Optional[str]]] = {}
            for move in moves:
                node = nodes[move["id"]]
                self._get_parent(node.website_id, move.get("parent_id"))
                if node.website_id not in planned:
                    planned[node.website_id] = self.repository.parent_map(node.website_id)
                planned[node.website_id][node.id] = move.get("parent_id")

            final_depth: Dict[str, int] = {}
            for move in moves:
                node = nodes[move["id"]]
                parent_of = planned[node.website_id]
                try:
                    final_depth[node.id] = sum(1 for _ in iter_ancestor_ids(node.id, parent_of, self.max_depth))
                except CircularReferenceError as exc:
                    raise CircularReferenceError(
                        f"Moving node {node.id} under {move.get('parent_id')} would create a cycle"
                    ) from exc

            for move in sorted(moves, key=lambda item: final_depth[item["id"]]):
                moved.append(self.move_node(move["id"], move.get("parent_id"), move.get("position")))

            for website_id in sorted(planned):
                log_action(
                    website_id=website_id,
                    action="site_node.bulk_move",
                    entity_type="site_node",
                    entity_id=None,
                    payload={
                        "moves": [move for move in moves if nodes[move["id"]].website_id == website_id],
                    },
                )

        return moved

    # -------------------------------------------------
    # Ordering
    # -------------------------------------------------
    def reorder_siblings(
        self,
        *,
        website_id: str,
        parent_id: Optional[str],
        positions: Iterable[Dict[str, Any]],
    ) -> List[SiteNode]:
        """
        Apply requested positions to children of `parent_id`, then compact
        the whole group to 0..N-1. Requested nodes win ties.
        """
        positions = list(positions)
        if not positions:
            raise ValidationError("No sibling positions given")

        requested: Dict[str, int] = {}
        for entry in positions:
            _check_position(entry.get("position"))
            if entry.get("id") in requested:
                raise ValidationError(f"Node {entry.get('id')} listed more than once")
            requested[entry.get("id")] = entry["position"]

        with transactional():
            self._get_parent(website_id, parent_id)
            siblings = self.repository.list_children(website_id, parent_id)
            sibling_ids = {sibling.id for sibling in siblings}

            strangers = [node_id for node_id in requested if node_id not in sibling_ids]
            if strangers:
                raise ValidationError(
                    f"Nodes are not children of {parent_id or 'the root level'}: {', '.join(map(str, strangers))}"
                )

            ordered = sorted(
                siblings,
                key=lambda sibling: (
                    requested.get(sibling.id, sibling.position),
                    0 if sibling.id in requested else 1,
                    sibling_sort_key(sibling),
                ),
            )
            compact_order(ordered)
            assert_sibling_positions(ordered)

            log_action(
                website_id=website_id,
                action="site_node.reorder",
                entity_type="site_node",
                entity_id=parent_id,
                payload={"parent_id": parent_id, "order": [sibling.id for sibling in ordered]},
            )
            mark_tree_changed(website_id)

        return ordered

    def insert_at_position(self, node_id: str, position: int) -> SiteNode:
        """Put a node at `position` in its current group, shifting later siblings down."""
        _check_position(position)

        with transactional():
            node = self._get_node(node_id)
            self._place_in_group(node, position)
            db.session.flush()

            log_action(
                website_id=node.website_id,
                action="site_node.reorder",
                entity_type="site_node",
                entity_id=node.id,
                payload={"parent_id": node.parent_id, "position": position},
            )
            mark_tree_changed(node.website_id)

        return node

    def swap_positions(self, first_id: str, second_id: str):
        with transactional():
            first = self._get_node(first_id)
            second = self._get_node(second_id)

            if first.website_id != second.website_id or first.parent_id != second.parent_id:
                raise ValidationError("Only siblings can swap positions")

            first.position, second.position = second.position, first.position
            db.session.flush()

            log_action(
                website_id=first.website_id,
                action="site_node.reorder",
                entity_type="site_node",
                entity_id=first.parent_id,
                payload={"swapped": [first.id, second.id]},
            )
            mark_tree_changed(first.website_id)

        return first, second

    # -------------------------------------------------
    # Reads
    # -------------------------------------------------
    def get_node(self, node_id: str) -> SiteNode:
        return self._get_node(node_id)

    def get_children(self, *, website_id: str, parent_id: Optional[str] = None) -> List[SiteNode]:
        return self.repository.list_children(website_id, parent_id)

    def get_siblings(self, node_id: str) -> List[SiteNode]:
        node = self._get_node(node_id)
        return [
            sibling for sibling in self.repository.list_children(node.website_id, node.parent_id)
            if sibling.id != node.id
        ]

    def resolve_path(self, website_id: str, path: str) -> Optional[SiteNode]:
        return self.repository.get_by_path(website_id, normalize_path(path))

    def get_tree(self, website_id: str) -> Dict[str, Any]:
        """
        Nested projection of the website's tree.

        A single root is returned as is. Zero or several roots are wrapped in
        a virtual root with id "root", full_path "/" and depth 0.
        """
        nodes = self.repository.list_by_website(website_id)
        index = build_children_index(nodes)
        roots = assemble_tree(index.get(None, []), index, normalize_site_node, self.max_depth)

        if len(roots) == 1:
            return roots[0]
        return virtual_root(website_id, roots)

    def get_descendants(self, node_id: str) -> List[SiteNode]:
        """Breadth-first, nearest level first."""
        return self.repository.list_descendants(self._get_node(node_id), self.max_depth)

    def get_ancestors(self, node_id: str) -> List[SiteNode]:
        """Root first, excluding the node itself."""
        node = self._get_node(node_id)
        parent_of = self.repository.parent_map(node.website_id)

        ancestor_ids: List[str] = []
        try:
            for ancestor_id in iter_ancestor_ids(node.id, parent_of, self.max_depth):
                ancestor_ids.append(ancestor_id)
        except CircularReferenceError as exc:
            current_app.logger.warning("Ancestors of %s are incomplete: %s", node.id, exc.message)

        rows = self.repository.get_many(ancestor_ids)
        return [rows[ancestor_id] for ancestor_id in reversed(ancestor_ids)]

    def get_breadcrumbs(self, node_id: str) -> List[Dict[str, Any]]:
        node = self._get_node(node_id)
        return [normalize_breadcrumb(row) for row in self.get_ancestors(node_id) + [node]]

    def get_tree_statistics(self, website_id: str) -> Dict[str, Any]:
        return self.integrity.statistics(website_id)

    # -------------------------------------------------
    # Integrity
    # -------------------------------------------------
    def validate_tree(self, website_id: str) -> ValidationReport:
        return self.integrity.validate_tree(website_id)

    def validate_paths(self, website_id: str) -> ValidationReport:
        return self.integrity.validate_paths(website_id)

    def repair_tree(self, website_id: str) -> ValidationReport:
        return self.integrity.repair_tree(website_id)


def get_site_structure_service() -> SiteStructureService:
    """The service configured for the current app by create_app()."""
    return current_app.extensions["site_tree"]
