from sitetree.domain.paths import ROOT_PATH

VIRTUAL_ROOT_ID = "root"


def normalize_site_node(node):
    return {
        "id": node.id,
        "website_id": node.website_id,
        "parent_id": node.parent_id,
        "slug": node.slug,
        "title": node.title,
        "full_path": node.full_path,
        "path_depth": node.path_depth,
        "position": node.position,
        "weight": node.weight,
        "content_item_id": node.content_item_id,
    }


def virtual_root(website_id, children=None):
    """Synthetic top node used when a website has zero or several roots."""
    return {
        "id": VIRTUAL_ROOT_ID,
        "website_id": website_id,
        "parent_id": None,
        "slug": "",
        "title": "Root",
        "full_path": ROOT_PATH,
        "path_depth": 0,
        "position": 0,
        "weight": 0,
        "content_item_id": None,
        "children": list(children or []),
    }


def normalize_breadcrumb(node):
    return {
        "id": node.id,
        "title": node.title,
        "slug": node.slug,
        "path": node.full_path,
    }
