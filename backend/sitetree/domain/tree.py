"""
Tree helpers over flat node rows.

Nodes are never linked to each other in memory. Everything here works from
an id-keyed collection plus a parent_id -> children index built per read.
"""
from collections import defaultdict
from typing import Any, Callable, Dict, Iterator, List, Mapping, Optional, Sequence

from .exceptions import CircularReferenceError


def sibling_sort_key(node: Any):
    return (node.position, node.weight, node.slug.lower(), node.id)


def build_children_index(nodes: Sequence[Any]) -> Dict[Optional[str], List[Any]]:
    """Group nodes by parent_id, each group in sibling order."""
    index: Dict[Optional[str], List[Any]] = defaultdict(list)
    for node in nodes:
        index[node.parent_id].append(node)

    for siblings in index.values():
        siblings.sort(key=sibling_sort_key)

    return dict(index)


def iter_ancestor_ids(
    start_id: str,
    parent_of: Mapping[str, Optional[str]],
    max_depth: int,
) -> Iterator[str]:
    """
    Yield the ids above `start_id`, nearest parent first.

    Stops at a root or at a parent id that has no row. Raises
    CircularReferenceError when an id repeats or the chain runs deeper than
    `max_depth`, so a corrupt parent chain can never loop forever.
    """
    seen = {start_id}
    current = parent_of.get(start_id)
    steps = 0

    while current is not None:
        if current not in parent_of:
            return
        if current in seen:
            raise CircularReferenceError(f"Parent chain of {start_id} loops through {current}")
        steps += 1
        if steps > max_depth:
            raise CircularReferenceError(
                f"Parent chain of {start_id} exceeds maximum depth of {max_depth}"
            )
        seen.add(current)
        yield current
        current = parent_of[current]


def assemble_tree(
    roots: Sequence[Any],
    children_index: Mapping[Optional[str], Sequence[Any]],
    project: Callable[[Any], Dict[str, Any]],
    max_depth: int,
) -> List[Dict[str, Any]]:
    """
    Nest projected nodes under their parents, starting from `roots`.

    Iterative, so deep trees do not hit the recursion limit. A node is
    emitted at most once and nothing deeper than `max_depth` is expanded,
    which keeps residual cycles in stored data from hanging the caller.
    """
    result: List[Dict[str, Any]] = []
    stack = []
    seen = set()

    for root in roots:
        item = project(root)
        item["children"] = []
        result.append(item)
        stack.append((root, item, 1))
        seen.add(root.id)

    while stack:
        node, item, depth = stack.pop()
        if depth >= max_depth:
            continue
        for child in children_index.get(node.id, ()):
            if child.id in seen:
                continue
            seen.add(child.id)
            child_item = project(child)
            child_item["children"] = []
            item["children"].append(child_item)
            stack.append((child, child_item, depth + 1))

    return result
