from sitetree.domain.exceptions import InvariantViolation
from sitetree.domain.paths import compute_depth, compute_path


def assert_site_node(node, parent=None):
    if node.parent_id is not None and node.parent_id == node.id:
        raise InvariantViolation(f"Node {node.id} cannot be its own parent.")

    if parent is not None:
        if parent.id != node.parent_id:
            raise InvariantViolation(
                f"Node {node.id} checked against {parent.id} but points at {node.parent_id}."
            )
        if parent.website_id != node.website_id:
            raise InvariantViolation(
                f"Node {node.id} and its parent belong to different websites."
            )

    expected_path = compute_path(parent.full_path if parent else None, node.slug)
    expected_depth = compute_depth(parent.path_depth if parent else 0)

    if node.full_path != expected_path:
        raise InvariantViolation(
            f"Node {node.id} has path {node.full_path!r}, expected {expected_path!r}."
        )

    if node.path_depth != expected_depth:
        raise InvariantViolation(
            f"Node {node.id} has depth {node.path_depth}, expected {expected_depth}."
        )


def assert_sibling_positions(siblings):
    positions = [sibling.position for sibling in siblings]
    if len(positions) != len(set(positions)):
        raise InvariantViolation(
            f"Sibling positions are not unique: {sorted(positions)}"
        )
