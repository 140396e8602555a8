from sitetree.extensions import db
from .base import BaseModel
from .website_mixin import WebsiteMixin

class SiteNode(BaseModel, WebsiteMixin):
    __tablename__ = "site_nodes"

    parent_id = db.Column(db.String(36), db.ForeignKey("site_nodes.id"), nullable=True, index=True)
    slug = db.Column(db.String(255), nullable=False)
    title = db.Column(db.String(255), nullable=False)

    # Derived from the parent chain; rewritten on every slug change or move
    full_path = db.Column(db.Text, nullable=False)
    path_depth = db.Column(db.Integer, nullable=False, default=1)

    position = db.Column(db.Integer, nullable=False, default=0)
    weight = db.Column(db.Integer, nullable=False, default=0)
    content_item_id = db.Column(db.String(36), nullable=True, index=True)

    __table_args__ = (
        db.Index("ix_site_nodes_website_path", "website_id", "full_path"),
        db.Index("ix_site_nodes_sibling_order", "website_id", "parent_id", "position"),
    )

    @property
    def is_root(self) -> bool:
        return self.parent_id is None

    def __repr__(self):
        return f"<SiteNode(id={self.id}, path={self.full_path}, position={self.position})>"


# Case-insensitive sibling slug uniqueness, backing the in-transaction check.
# Root rows have parent_id NULL and never collide in a unique index, so root
# level uniqueness rests on the check running under SERIALIZABLE isolation.
db.Index(
    "uq_site_nodes_sibling_slug",
    SiteNode.website_id,
    SiteNode.parent_id,
    db.func.lower(SiteNode.slug),
    unique=True,
)
