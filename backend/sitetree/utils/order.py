from sitetree.extensions import db

def compact_order(items, order_field="position", start=0):
    """
    Re-assigns sequential order values (start..start+N-1) to items that are
    already in their intended order.
    """
    for index, item in enumerate(items, start=start):
        if getattr(item, order_field) != index:
            setattr(item, order_field, index)

    db.session.flush()
