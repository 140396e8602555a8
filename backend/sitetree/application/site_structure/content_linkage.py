from typing import Protocol


class ContentItemLinkage(Protocol):
    """
    Collaborator that owns the content records site nodes point at.

    Called inside the delete transaction, once per removed node that carries
    a content_item_id. Raising aborts the delete.
    """

    def unlink_content_item(self, node_id: str) -> None:
        ...


class NullContentLinkage:
    """Used when the host application does not manage content items."""

    def unlink_content_item(self, node_id: str) -> None:
        return None
