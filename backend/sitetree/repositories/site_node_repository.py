"""
Repository for SiteNode rows.

Keeps query construction out of the service layer. Every method runs on the
session it was built with, so reads made during a mutation see that
mutation's own pending writes and share its transaction.
"""
from typing import Dict, Iterable, List, Optional

from sqlalchemy import String, func, or_, select
from sqlalchemy.orm import Session

from sitetree.models.site_node import SiteNode


class SiteNodeRepository:
    """Repository for SiteNode operations."""

    def __init__(self, session: Session):
        self.session = session

    @staticmethod
    def _sibling_scope(website_id: str, parent_id: Optional[str]):
        if parent_id is None:
            return (SiteNode.website_id == website_id, SiteNode.parent_id.is_(None))
        return (SiteNode.website_id == website_id, SiteNode.parent_id == parent_id)

    def get_by_id(self, node_id: str) -> Optional[SiteNode]:
        """Get node by ID."""
        return self.session.get(SiteNode, node_id)

    def get_many(self, node_ids: Iterable[str]) -> Dict[str, SiteNode]:
        ids = list(node_ids)
        if not ids:
            return {}
        rows = self.session.scalars(select(SiteNode).where(SiteNode.id.in_(ids))).all()
        return {row.id: row for row in rows}

    def get_by_path(self, website_id: str, full_path: str) -> Optional[SiteNode]:
        return self.session.scalars(
            select(SiteNode)
            .where(SiteNode.website_id == website_id, SiteNode.full_path == full_path)
            .order_by(SiteNode.created_at, SiteNode.id)
        ).first()

    def list_by_website(self, website_id: str) -> List[SiteNode]:
        """All nodes of a website, shallow first."""
        return list(self.session.scalars(
            select(SiteNode)
            .where(SiteNode.website_id == website_id)
            .order_by(SiteNode.path_depth, SiteNode.position, SiteNode.weight, SiteNode.id)
        ))

    def list_children(self, website_id: str, parent_id: Optional[str]) -> List[SiteNode]:
        """Direct children of `parent_id` (top level when None), in sibling order."""
        return list(self.session.scalars(
            select(SiteNode)
            .where(*self._sibling_scope(website_id, parent_id))
            .order_by(SiteNode.position, SiteNode.weight, SiteNode.slug, SiteNode.id)
        ))

    def max_sibling_position(
        self,
        website_id: str,
        parent_id: Optional[str],
        exclude_id: Optional[str] = None,
    ) -> Optional[int]:
        query = select(func.max(SiteNode.position)).where(*self._sibling_scope(website_id, parent_id))
        if exclude_id is not None:
            query = query.where(SiteNode.id != exclude_id)
        return self.session.scalar(query)

    def find_sibling_slugs(
        self,
        website_id: str,
        parent_id: Optional[str],
        *,
        slugs: Optional[Iterable[str]] = None,
        prefix: Optional[str] = None,
        exclude_id: Optional[str] = None,
    ) -> List[str]:
        """
        Slugs in one sibling scope, compared case-insensitively.

        `slugs` restricts to exact matches, `prefix` to the slug itself plus
        its "-N" variants. Without either, every sibling slug is returned.
        """
        lowered = func.lower(SiteNode.slug, type_=String)
        query = select(SiteNode.slug).where(*self._sibling_scope(website_id, parent_id))

        if slugs is not None:
            wanted = sorted({slug.lower() for slug in slugs})
            if not wanted:
                return []
            query = query.where(lowered.in_(wanted))

        if prefix is not None:
            base = prefix.lower()
            query = query.where(or_(lowered == base, lowered.startswith(f"{base}-", autoescape=True)))

        if exclude_id is not None:
            query = query.where(SiteNode.id != exclude_id)

        return list(self.session.scalars(query))

    def parent_map(self, website_id: str) -> Dict[str, Optional[str]]:
        """id -> parent_id for the whole website, from a single narrow query."""
        rows = self.session.execute(
            select(SiteNode.id, SiteNode.parent_id).where(SiteNode.website_id == website_id)
        ).all()
        return {node_id: parent_id for node_id, parent_id in rows}

    def descendant_levels(self, node: SiteNode, max_depth: int) -> List[List[SiteNode]]:
        """
        Descendants of `node` grouped by distance, nearest level first.

        One query per level. Rows already seen are skipped and the walk stops
        after `max_depth` levels, so corrupt parent links cannot loop.
        """
        levels: List[List[SiteNode]] = []
        seen = {node.id}
        frontier = [node.id]

        while frontier and len(levels) < max_depth:
            children = [
                child for child in self.session.scalars(
                    select(SiteNode)
                    .where(SiteNode.website_id == node.website_id, SiteNode.parent_id.in_(frontier))
                    .order_by(SiteNode.position, SiteNode.weight, SiteNode.id)
                )
                if child.id not in seen
            ]
            if not children:
                break
            seen.update(child.id for child in children)
            levels.append(children)
            frontier = [child.id for child in children]

        return levels

    def list_descendants(self, node: SiteNode, max_depth: int) -> List[SiteNode]:
        """Descendants in breadth-first order."""
        return [child for level in self.descendant_levels(node, max_depth) for child in level]
