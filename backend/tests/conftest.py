"""
Pytest configuration and global fixtures.
"""
import pytest

from sitetree import create_app
from sitetree.extensions import db
from sitetree.models.site_node import SiteNode
from sitetree.application.site_structure.service import get_site_structure_service


class RecordingContentLinkage:
    """Remembers every unlink call; raises for node ids listed in fail_on."""

    def __init__(self):
        self.unlinked = []
        self.fail_on = set()

    def unlink_content_item(self, node_id):
        if node_id in self.fail_on:
            raise RuntimeError(f"content store refused to unlink {node_id}")
        self.unlinked.append(node_id)


@pytest.fixture
def content_linkage():
    return RecordingContentLinkage()


@pytest.fixture
def app(content_linkage):
    """App on in-memory SQLite with fresh tables and an active app context."""
    app = create_app("testing", content_linkage=content_linkage)

    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def service(app):
    return get_site_structure_service()


@pytest.fixture
def website_id():
    return "site-1"


@pytest.fixture
def make_node(service, website_id):
    """Create a node through the service: make_node("about", parent=home)."""

    def _make(slug, parent=None, **fields):
        fields.setdefault("website_id", website_id)
        fields.setdefault("title", slug.replace("-", " ").title())
        return service.create(
            slug=slug,
            parent_id=parent.id if parent is not None else None,
            **fields,
        )

    return _make


@pytest.fixture
def raw_node(app, website_id):
    """Insert a row directly, skipping every check, to simulate corrupt data."""

    def _raw(slug, *, parent_id=None, full_path=None, path_depth=1, position=0, **fields):
        fields.setdefault("website_id", website_id)
        fields.setdefault("title", slug)
        node = SiteNode(
            slug=slug,
            parent_id=parent_id,
            full_path=full_path or f"/{slug}",
            path_depth=path_depth,
            position=position,
            **fields,
        )
        db.session.add(node)
        db.session.commit()
        return node

    return _raw


@pytest.fixture
def home_tree(make_node):
    """/home, /home/about, /home/about/team and /home/contact."""
    home = make_node("home")
    about = make_node("about", parent=home)
    team = make_node("team", parent=about)
    contact = make_node("contact", parent=home)
    return {"home": home, "about": about, "team": team, "contact": contact}
