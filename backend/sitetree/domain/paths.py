"""
Materialized path arithmetic.

A node's full_path is its parent's full_path plus "/" plus its slug, and its
path_depth is the parent's depth plus one. Root-level nodes hang off the
implicit "/" at depth 0.
"""
from collections import deque
from typing import Any, List, Mapping, Optional, Sequence

ROOT_PATH = "/"


def compute_path(parent_path: Optional[str], slug: str) -> str:
    if not parent_path or parent_path == ROOT_PATH:
        return f"/{slug}"
    return f"{parent_path.rstrip('/')}/{slug}"


def compute_depth(parent_depth: Optional[int] = 0) -> int:
    return (parent_depth or 0) + 1


def recalculate_descendant_paths(
    root: Any,
    new_ancestor_path: Optional[str],
    new_ancestor_depth: Optional[int],
    children_index: Mapping[Optional[str], Sequence[Any]],
) -> List[Any]:
    """
    Re-derive full_path/path_depth for `root` and everything below it.

    `new_ancestor_path`/`new_ancestor_depth` describe the root's (new) parent,
    or None/0 when the root sits at the top level. Descendants are visited
    breadth-first, so every child is computed from a parent that has already
    been rewritten in this pass.

    Returns the nodes whose stored values actually changed, in visit order.
    """
    changed: List[Any] = []

    def apply(node, path, depth):
        if node.full_path != path or node.path_depth != depth:
            node.full_path = path
            node.path_depth = depth
            changed.append(node)

    apply(
        root,
        compute_path(new_ancestor_path, root.slug),
        compute_depth(new_ancestor_depth),
    )

    queue = deque([root])
    seen = {root.id}

    while queue:
        parent = queue.popleft()
        for child in children_index.get(parent.id, ()):
            if child.id in seen:
                continue
            seen.add(child.id)
            apply(
                child,
                compute_path(parent.full_path, child.slug),
                compute_depth(parent.path_depth),
            )
            queue.append(child)

    return changed


# -------------------------------------------------
# Path string helpers
# -------------------------------------------------
def normalize_path(path: Optional[str]) -> str:
    """Leading slash, no doubled or trailing slashes: "a//b/" -> "/a/b"."""
    if not path:
        return ROOT_PATH

    segments = [segment for segment in path.split("/") if segment]
    return ROOT_PATH + "/".join(segments)

