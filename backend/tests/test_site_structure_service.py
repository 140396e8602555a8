"""
Tests for SiteStructureService mutations and reads.
"""
import pytest
from flask import g
from sqlalchemy.exc import IntegrityError

from sitetree.application.site_structure.service import SiteStructureService
from sitetree.domain.exceptions import (
    CircularReferenceError,
    ConflictError,
    InvalidSlugError,
    NodeNotFoundError,
    ReservedSlugError,
    SlugConflictError,
    ValidationError,
)
from sitetree.extensions import db
from sitetree.models.audit_log import AuditLog
from sitetree.models.site_node import SiteNode
from sitetree.signals import tree_changed


def children_of(service, website_id, parent=None):
    return service.get_children(website_id=website_id, parent_id=parent.id if parent else None)


def slugs_and_positions(nodes):
    return [(node.slug, node.position) for node in nodes]


class TestCreate:
    def test_root_node(self, make_node):
        home = make_node("home")

        assert home.parent_id is None
        assert home.full_path == "/home"
        assert home.path_depth == 1
        assert home.position == 0

    def test_child_nodes_append(self, make_node):
        home = make_node("home")
        about = make_node("about", parent=home)
        contact = make_node("contact", parent=home)

        assert about.full_path == "/home/about"
        assert about.path_depth == 2
        assert (about.position, contact.position) == (0, 1)

    def test_explicit_position_shifts_later_siblings(self, service, make_node, website_id):
        make_node("a")
        make_node("b")
        make_node("c", position=0)

        assert slugs_and_positions(children_of(service, website_id)) == [("c", 0), ("a", 1), ("b", 2)]

    def test_append_after_highest_position(self, make_node, raw_node):
        raw_node("a")
        raw_node("b", position=5)

        assert make_node("c").position == 6

    def test_caller_supplied_id(self, make_node):
        node = make_node("home", id="fixed-id")

        assert node.id == "fixed-id"

    def test_duplicate_id(self, make_node):
        make_node("home", id="fixed-id")

        with pytest.raises(ConflictError):
            make_node("other", id="fixed-id")

    def test_missing_parent(self, service, website_id):
        with pytest.raises(NodeNotFoundError):
            service.create(website_id=website_id, slug="about", title="About", parent_id="nope")

    def test_parent_from_other_website(self, make_node):
        home = make_node("home", website_id="site-2")

        with pytest.raises(ValidationError):
            make_node("about", parent=home)

    def test_duplicate_slug_offers_suggestions(self, make_node):
        make_node("home")

        with pytest.raises(SlugConflictError) as info:
            make_node("home")

        assert info.value.suggestions == ["home-1", "home-2", "home-3"]
        assert info.value.status_code == 409

    def test_duplicate_slug_ignores_case(self, make_node, raw_node):
        raw_node("Home")

        with pytest.raises(SlugConflictError):
            make_node("home")

    def test_same_slug_under_other_parent(self, make_node):
        home = make_node("home")
        blog = make_node("blog")
        make_node("team", parent=home)

        assert make_node("team", parent=blog).full_path == "/blog/team"

    def test_reserved_slug(self, make_node):
        with pytest.raises(ReservedSlugError):
            make_node("admin")

    def test_malformed_slug(self, make_node):
        with pytest.raises(InvalidSlugError) as info:
            make_node("About Us")

        assert not isinstance(info.value, ReservedSlugError)

    def test_trailing_newline_slug(self, service, make_node, website_id):
        make_node("about")

        for slug in ("about\n", "api\n"):
            with pytest.raises(InvalidSlugError):
                make_node(slug)

        assert [node.full_path for node in children_of(service, website_id)] == ["/about"]
        assert service.validate_tree(website_id)["valid"]

    def test_sibling_index_rejects_duplicate_child_rows(self, make_node, raw_node):
        home = make_node("home")
        raw_node("team", parent_id=home.id, full_path="/home/team", path_depth=2)

        with pytest.raises(IntegrityError):
            raw_node("TEAM", parent_id=home.id, full_path="/home/TEAM", path_depth=2, position=1)
        db.session.rollback()

    def test_root_rows_are_outside_the_sibling_index(self, make_node, raw_node, website_id):
        raw_node("home")
        raw_node("HOME", position=1)

        assert SiteNode.query.filter_by(website_id=website_id, parent_id=None).count() == 2
        with pytest.raises(SlugConflictError):
            make_node("home")

    def test_title_required(self, make_node):
        with pytest.raises(ValidationError):
            make_node("home", title="")

    def test_depth_limit(self, app, website_id):
        shallow = SiteStructureService(max_depth=2)
        top = shallow.create(website_id=website_id, slug="a", title="A")
        middle = shallow.create(website_id=website_id, slug="b", title="B", parent_id=top.id)

        with pytest.raises(ValidationError):
            shallow.create(website_id=website_id, slug="c", title="C", parent_id=middle.id)

    def test_audited_with_actor(self, make_node):
        g.actor_id = "user-1"

        home = make_node("home")

        log = AuditLog.query.filter_by(action="site_node.create").one()
        assert log.entity_id == home.id
        assert log.actor_id == "user-1"
        assert log.payload["full_path"] == "/home"


class TestBulkCreate:
    def test_hundred_siblings(self, service, make_node, website_id):
        home = make_node("home")

        created = service.bulk_create([
            {"website_id": website_id, "slug": f"page-{i}", "title": f"Page {i}", "parent_id": home.id}
            for i in range(100)
        ])

        assert len(created) == 100
        assert sorted(node.position for node in created) == list(range(100))
        assert len({node.slug for node in created}) == 100

    def test_one_duplicate_persists_nothing(self, service, website_id):
        items = [
            {"website_id": website_id, "slug": "a", "title": "A"},
            {"website_id": website_id, "slug": "b", "title": "B"},
            {"website_id": website_id, "slug": "a", "title": "A again"},
        ]

        with pytest.raises(SlugConflictError):
            service.bulk_create(items)

        assert SiteNode.query.filter_by(website_id=website_id).count() == 0
        assert AuditLog.query.count() == 0

    def test_parent_created_in_same_batch(self, service, website_id):
        created = service.bulk_create([
            {"id": "n-home", "website_id": website_id, "slug": "home", "title": "Home"},
            {"website_id": website_id, "slug": "about", "title": "About", "parent_id": "n-home"},
        ])

        assert created[1].full_path == "/home/about"

    def test_duplicate_explicit_positions_last_wins(self, service, website_id):
        service.bulk_create([
            {"website_id": website_id, "slug": "a", "title": "A", "position": 0},
            {"website_id": website_id, "slug": "b", "title": "B", "position": 0},
        ])

        assert slugs_and_positions(children_of(service, website_id)) == [("b", 0), ("a", 1)]

    def test_unknown_field(self, service, website_id):
        with pytest.raises(ValidationError):
            service.bulk_create([{"website_id": website_id, "slug": "a", "title": "A", "colour": "red"}])

    def test_one_audit_entry_per_batch(self, service, website_id):
        service.bulk_create([
            {"website_id": website_id, "slug": "a", "title": "A"},
            {"website_id": website_id, "slug": "b", "title": "B"},
        ])

        log = AuditLog.query.filter_by(action="site_node.bulk_create").one()
        assert log.payload["count"] == 2


class TestUpdate:
    def test_slug_change_rewrites_subtree(self, service, home_tree):
        service.update(home_tree["about"].id, slug="company")

        assert service.get_node(home_tree["about"].id).full_path == "/home/company"
        assert service.get_node(home_tree["team"].id).full_path == "/home/company/team"
        assert service.get_node(home_tree["team"].id).path_depth == 3

    def test_title_only(self, service, home_tree):
        about = service.update(home_tree["about"].id, title="About us")

        assert about.title == "About us"
        assert about.full_path == "/home/about"

    def test_title_on_orphaned_node(self, service, raw_node):
        lost = raw_node("lost", parent_id="ghost", full_path="/ghost/lost", path_depth=2)

        renamed = service.update(lost.id, title="Renamed")

        assert renamed.title == "Renamed"
        assert renamed.full_path == "/ghost/lost"

    def test_slug_on_orphaned_node(self, service, raw_node):
        lost = raw_node("lost", parent_id="ghost", full_path="/ghost/lost", path_depth=2)

        with pytest.raises(NodeNotFoundError):
            service.update(lost.id, slug="found")

    def test_weight_and_content_link(self, service, make_node):
        home = make_node("home", content_item_id="content-1")

        service.update(home.id, weight=5, content_item_id=None)

        home = service.get_node(home.id)
        assert home.weight == 5
        assert home.content_item_id is None

    def test_no_fields(self, service, make_node):
        home = make_node("home")

        with pytest.raises(ValidationError):
            service.update(home.id)

    def test_unchanged_values_are_not_written(self, service, make_node):
        home = make_node("home")

        service.update(home.id, slug="home", title=home.title)

        assert AuditLog.query.filter_by(action="site_node.update").count() == 0

    def test_slug_conflict_with_sibling(self, service, home_tree):
        with pytest.raises(SlugConflictError) as info:
            service.update(home_tree["about"].id, slug="contact")

        assert info.value.parent_id == home_tree["home"].id
        assert service.get_node(home_tree["about"].id).slug == "about"

    def test_missing_node(self, service):
        with pytest.raises(NodeNotFoundError):
            service.update("nope", title="x")

    def test_audit_records_changes(self, service, make_node):
        home = make_node("home")

        service.update(home.id, slug="start")

        log = AuditLog.query.filter_by(action="site_node.update").one()
        assert log.payload["changes"] == {"slug": ["home", "start"]}
        assert log.payload["new_path"] == "/start"


class TestBulkUpdate:
    def test_applies_all(self, service, make_node):
        a = make_node("a")
        b = make_node("b")

        service.bulk_update([{"id": a.id, "title": "First"}, {"id": b.id, "slug": "second"}])

        assert service.get_node(a.id).title == "First"
        assert service.get_node(b.id).full_path == "/second"

    def test_failure_rolls_back_everything(self, service, make_node):
        a = make_node("a", title="A")
        b = make_node("b")

        with pytest.raises(SlugConflictError):
            service.bulk_update([{"id": a.id, "title": "Changed"}, {"id": b.id, "slug": "a"}])

        assert service.get_node(a.id).title == "A"
        assert service.get_node(b.id).slug == "b"

    def test_unknown_field(self, service, make_node):
        a = make_node("a")

        with pytest.raises(ValidationError):
            service.bulk_update([{"id": a.id, "full_path": "/hacked"}])


class TestDelete:
    def test_deletes_subtree(self, service, home_tree):
        deleted = service.delete(home_tree["about"].id)

        assert deleted == [home_tree["about"].id, home_tree["team"].id]
        with pytest.raises(NodeNotFoundError):
            service.get_node(home_tree["team"].id)
        assert service.get_node(home_tree["contact"].id).full_path == "/home/contact"

    def test_compacts_remaining_siblings(self, service, make_node, website_id):
        make_node("a")
        b = make_node("b")
        make_node("c")

        service.delete(b.id)

        assert slugs_and_positions(children_of(service, website_id)) == [("a", 0), ("c", 1)]

    def test_unlinks_content(self, service, make_node, content_linkage):
        home = make_node("home")
        about = make_node("about", parent=home, content_item_id="content-about")
        make_node("plain", parent=about)
        team = make_node("team", parent=about, content_item_id="content-team")

        service.delete(about.id)

        assert content_linkage.unlinked == [about.id, team.id]

    def test_unlink_failure_aborts(self, service, make_node, content_linkage):
        about = make_node("about", content_item_id="content-about")
        team = make_node("team", parent=about, content_item_id="content-team")
        content_linkage.fail_on.add(team.id)

        with pytest.raises(RuntimeError):
            service.delete(about.id)

        assert service.get_node(about.id)
        assert service.get_node(team.id)

    def test_missing_node(self, service):
        with pytest.raises(NodeNotFoundError):
            service.delete("nope")

    def test_bulk_delete_skips_already_removed_descendants(self, service, home_tree, website_id):
        deleted = service.bulk_delete([home_tree["about"].id, home_tree["team"].id])

        assert sorted(deleted) == sorted([home_tree["about"].id, home_tree["team"].id])
        assert SiteNode.query.filter_by(website_id=website_id).count() == 2

    def test_bulk_delete_missing_id_deletes_nothing(self, service, home_tree, website_id):
        with pytest.raises(NodeNotFoundError):
            service.bulk_delete([home_tree["contact"].id, "nope"])

        assert SiteNode.query.filter_by(website_id=website_id).count() == 4


class TestMove:
    def test_move_to_root(self, service, home_tree):
        about = service.move_node(home_tree["about"].id, None)

        assert about.full_path == "/about"
        assert about.path_depth == 1
        assert about.position == 1

        team = service.get_node(home_tree["team"].id)
        assert team.full_path == "/about/team"
        assert team.path_depth == 2

    def test_descendants_follow(self, service, home_tree, make_node):
        blog = make_node("blog")

        service.move_node(home_tree["home"].id, blog.id)

        for key, path in (
            ("home", "/blog/home"),
            ("about", "/blog/home/about"),
            ("team", "/blog/home/about/team"),
            ("contact", "/blog/home/contact"),
        ):
            node = service.get_node(home_tree[key].id)
            assert node.full_path == path
            assert node.path_depth == path.count("/")

    def test_move_under_descendant(self, service, home_tree):
        with pytest.raises(CircularReferenceError):
            service.move_node(home_tree["home"].id, home_tree["team"].id)

        home = service.get_node(home_tree["home"].id)
        assert home.parent_id is None
        assert home.full_path == "/home"
        assert service.get_node(home_tree["team"].id).full_path == "/home/about/team"

    def test_move_under_itself(self, service, home_tree):
        with pytest.raises(CircularReferenceError):
            service.move_node(home_tree["about"].id, home_tree["about"].id)

    def test_same_parent_without_position_is_noop(self, service, home_tree):
        about = service.move_node(home_tree["about"].id, home_tree["home"].id)

        assert about.full_path == "/home/about"
        assert AuditLog.query.filter_by(action="site_node.move").count() == 0

    def test_slug_taken_in_target(self, service, home_tree, make_node):
        make_node("team")

        with pytest.raises(SlugConflictError):
            service.move_node(home_tree["team"].id, None)

    def test_explicit_position(self, service, home_tree, make_node, website_id):
        faq = make_node("faq")

        service.move_node(faq.id, home_tree["home"].id, position=0)

        assert slugs_and_positions(children_of(service, website_id, home_tree["home"])) == [
            ("faq", 0),
            ("about", 1),
            ("contact", 2),
        ]

    def test_old_group_compacted(self, service, make_node, website_id):
        home = make_node("home")
        contact = make_node("contact")
        make_node("faq")

        service.move_node(contact.id, home.id)

        assert slugs_and_positions(children_of(service, website_id)) == [("home", 0), ("faq", 1)]

    def test_reposition_within_parent(self, service, make_node, website_id):
        make_node("a")
        make_node("b")
        c = make_node("c")

        service.move_node(c.id, None, position=0)

        assert slugs_and_positions(children_of(service, website_id)) == [("c", 0), ("a", 1), ("b", 2)]

    def test_missing_target(self, service, home_tree):
        with pytest.raises(NodeNotFoundError):
            service.move_node(home_tree["about"].id, "nope")

    def test_target_in_other_website(self, service, home_tree, make_node):
        other = make_node("other", website_id="site-2")

        with pytest.raises(ValidationError):
            service.move_node(home_tree["about"].id, other.id)

    def test_depth_limit(self, app, website_id):
        shallow = SiteStructureService(max_depth=3)
        a = shallow.create(website_id=website_id, slug="a", title="A")
        b = shallow.create(website_id=website_id, slug="b", title="B", parent_id=a.id)
        d = shallow.create(website_id=website_id, slug="d", title="D")
        shallow.create(website_id=website_id, slug="e", title="E", parent_id=d.id)

        with pytest.raises(ValidationError):
            shallow.move_node(d.id, b.id)

        assert shallow.get_node(d.id).full_path == "/d"

    def test_would_create_cycle(self, service, home_tree):
        assert service.would_create_cycle(home_tree["home"].id, home_tree["team"].id)
        assert not service.would_create_cycle(home_tree["team"].id, home_tree["contact"].id)
        assert not service.would_create_cycle(home_tree["team"].id, None)

    def test_validate_move(self, service, home_tree):
        assert service.validate_move(home_tree["team"].id, None)
        assert service.validate_move(home_tree["team"].id, home_tree["contact"].id)
        assert not service.validate_move(home_tree["about"].id, home_tree["about"].id)
        assert not service.validate_move(home_tree["about"].id, home_tree["team"].id)


class TestBulkMove:
    def test_order_independent(self, service, make_node):
        r = make_node("r")
        a = make_node("a", parent=r)
        b = make_node("b", parent=a)

        service.bulk_move([{"id": a.id, "parent_id": b.id}, {"id": b.id, "parent_id": r.id}])

        assert service.get_node(b.id).full_path == "/r/b"
        assert service.get_node(a.id).full_path == "/r/b/a"
        assert service.get_node(a.id).path_depth == 3

    def test_cycle_rejected_before_any_move(self, service, home_tree, make_node):
        blog = make_node("blog")

        with pytest.raises(CircularReferenceError):
            service.bulk_move([
                {"id": home_tree["contact"].id, "parent_id": blog.id},
                {"id": home_tree["home"].id, "parent_id": home_tree["team"].id},
            ])

        assert service.get_node(home_tree["contact"].id).full_path == "/home/contact"

    def test_conflict_rolls_back(self, service, home_tree, make_node):
        blog = make_node("blog")
        make_node("team", parent=blog)

        with pytest.raises(SlugConflictError):
            service.bulk_move([
                {"id": home_tree["contact"].id, "parent_id": blog.id},
                {"id": home_tree["team"].id, "parent_id": blog.id},
            ])

        assert service.get_node(home_tree["contact"].id).parent_id == home_tree["home"].id

    def test_node_listed_twice(self, service, home_tree):
        with pytest.raises(ValidationError):
            service.bulk_move([
                {"id": home_tree["team"].id, "parent_id": None},
                {"id": home_tree["team"].id, "parent_id": home_tree["home"].id},
            ])


class TestOrdering:
    @pytest.fixture
    def abc(self, make_node):
        return make_node("a"), make_node("b"), make_node("c")

    def test_reorder_siblings(self, service, abc, website_id):
        a, b, c = abc

        service.reorder_siblings(website_id=website_id, parent_id=None, positions=[{"id": c.id, "position": 0}])

        assert slugs_and_positions(children_of(service, website_id)) == [("c", 0), ("a", 1), ("b", 2)]

    def test_requested_node_wins_tie(self, service, abc, website_id):
        a, b, c = abc

        service.reorder_siblings(website_id=website_id, parent_id=None, positions=[{"id": c.id, "position": 1}])

        assert slugs_and_positions(children_of(service, website_id)) == [("a", 0), ("c", 1), ("b", 2)]

    def test_full_reorder_is_compacted(self, service, abc, website_id):
        a, b, c = abc

        service.reorder_siblings(
            website_id=website_id,
            parent_id=None,
            positions=[{"id": a.id, "position": 30}, {"id": b.id, "position": 10}, {"id": c.id, "position": 20}],
        )

        assert slugs_and_positions(children_of(service, website_id)) == [("b", 0), ("c", 1), ("a", 2)]

    def test_reorder_rejects_non_children(self, service, abc, make_node, website_id):
        home = make_node("home")
        about = make_node("about", parent=home)

        with pytest.raises(ValidationError):
            service.reorder_siblings(
                website_id=website_id, parent_id=None, positions=[{"id": about.id, "position": 0}]
            )

    def test_reorder_requires_positions(self, service, website_id):
        with pytest.raises(ValidationError):
            service.reorder_siblings(website_id=website_id, parent_id=None, positions=[])

    def test_insert_at_position(self, service, abc, website_id):
        a, b, c = abc

        service.insert_at_position(c.id, 0)

        assert [node.slug for node in children_of(service, website_id)] == ["c", "a", "b"]

    def test_negative_position(self, service, abc):
        with pytest.raises(ValidationError):
            service.insert_at_position(abc[0].id, -1)

    def test_swap_positions(self, service, abc, website_id):
        a, b, c = abc

        service.swap_positions(a.id, c.id)

        assert slugs_and_positions(children_of(service, website_id)) == [("c", 0), ("b", 1), ("a", 2)]

    def test_swap_requires_siblings(self, service, home_tree):
        with pytest.raises(ValidationError):
            service.swap_positions(home_tree["home"].id, home_tree["about"].id)


class TestReads:
    def test_tree_with_single_root(self, service, home_tree, website_id):
        tree = service.get_tree(website_id)

        assert tree["id"] == home_tree["home"].id
        assert [child["slug"] for child in tree["children"]] == ["about", "contact"]
        assert tree["children"][0]["children"][0]["full_path"] == "/home/about/team"

    def test_tree_with_several_roots(self, service, make_node, website_id):
        make_node("home")
        make_node("blog")

        tree = service.get_tree(website_id)

        assert tree["id"] == "root"
        assert tree["full_path"] == "/"
        assert tree["path_depth"] == 0
        assert [child["slug"] for child in tree["children"]] == ["home", "blog"]

    def test_empty_tree(self, service, website_id):
        tree = service.get_tree(website_id)

        assert tree["id"] == "root"
        assert tree["children"] == []

    def test_descendants_breadth_first(self, service, home_tree):
        descendants = service.get_descendants(home_tree["home"].id)

        assert [node.slug for node in descendants] == ["about", "contact", "team"]

    def test_ancestors_root_first(self, service, home_tree):
        ancestors = service.get_ancestors(home_tree["team"].id)

        assert [node.slug for node in ancestors] == ["home", "about"]

    def test_breadcrumbs_rebuild_path(self, service, home_tree):
        crumbs = service.get_breadcrumbs(home_tree["team"].id)

        assert "/" + "/".join(crumb["slug"] for crumb in crumbs) == home_tree["team"].full_path
        assert crumbs[-1] == {
            "id": home_tree["team"].id,
            "title": "Team",
            "slug": "team",
            "path": "/home/about/team",
        }

    def test_ancestors_of_corrupt_chain_are_partial(self, app, service, make_node):
        from sitetree.extensions import db

        a = make_node("a")
        b = make_node("b", parent=a)
        a.parent_id = b.id
        db.session.commit()

        assert [node.id for node in service.get_ancestors(b.id)] == [a.id]

    def test_siblings_and_children(self, service, home_tree, website_id):
        assert [node.slug for node in service.get_siblings(home_tree["about"].id)] == ["contact"]
        assert [node.slug for node in service.get_children(website_id=website_id)] == ["home"]

    def test_resolve_path(self, service, home_tree, website_id):
        assert service.resolve_path(website_id, "home/about/").id == home_tree["about"].id
        assert service.resolve_path(website_id, "/home/missing") is None
        assert service.resolve_path("site-2", "/home") is None

    def test_statistics(self, service, home_tree, website_id):
        assert service.get_tree_statistics(website_id) == {
            "total_nodes": 4,
            "max_depth": 3,
            "root_nodes": 1,
            "leaf_nodes": 2,
            "average_children_per_node": 1.5,
            "orphaned_nodes": 0,
            "path_inconsistencies": 0,
        }


class TestTreeChangedSignal:
    @pytest.fixture
    def received(self):
        calls = []

        def receiver(sender, **kwargs):
            calls.append(sender)

        with tree_changed.connected_to(receiver):
            yield calls

    def test_sent_after_commit(self, received, make_node, website_id):
        make_node("home")

        assert received == [website_id]

    def test_sent_once_per_batch(self, received, service, website_id):
        service.bulk_create([
            {"website_id": website_id, "slug": "a", "title": "A"},
            {"website_id": website_id, "slug": "b", "title": "B"},
        ])

        assert received == [website_id]

    def test_not_sent_on_failure(self, received, service, website_id):
        with pytest.raises(SlugConflictError):
            service.bulk_create([
                {"website_id": website_id, "slug": "a", "title": "A"},
                {"website_id": website_id, "slug": "a", "title": "A"},
            ])

        assert received == []
