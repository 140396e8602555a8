from contextlib import contextmanager
from sqlalchemy.exc import DBAPIError
from sitetree.extensions import db
from sitetree.domain.exceptions import TransactionConflictError
from sitetree.signals import tree_changed

_DEPTH_KEY = "site_tree.transaction_depth"
_CHANGED_KEY = "site_tree.changed_websites"

# SQLSTATEs for "could not serialize access" and deadlock victims
RETRYABLE_SQLSTATES = {"40001", "40P01"}


def is_serialization_failure(exc: DBAPIError) -> bool:
    orig = exc.orig
    code = getattr(orig, "pgcode", None) or getattr(orig, "sqlstate", None)
    if code in RETRYABLE_SQLSTATES:
        return True
    # SQLite reports lock contention instead of a SQLSTATE
    return "database is locked" in str(orig).lower()


def mark_tree_changed(website_id: str) -> None:
    """Queue a tree_changed notification for when the outer transaction commits."""
    session = db.session()
    session.info.setdefault(_CHANGED_KEY, set()).add(website_id)


@contextmanager
def transactional():
    """
    Context manager for database transactions.

    Blocks nest: only the outermost block commits or rolls back, so a bulk
    operation that calls single-node operations still writes everything in
    one transaction or nothing at all.
    """
    session = db.session()
    depth = session.info.get(_DEPTH_KEY, 0)
    session.info[_DEPTH_KEY] = depth + 1

    try:
        yield session
        if depth == 0:
            session.commit()
    except DBAPIError as exc:
        if depth == 0:
            session.rollback()
            session.info.pop(_CHANGED_KEY, None)
        if is_serialization_failure(exc):
            raise TransactionConflictError(
                "Concurrent update detected, retry the operation"
            ) from exc
        raise
    except Exception:
        if depth == 0:
            session.rollback()
            session.info.pop(_CHANGED_KEY, None)
        raise
    finally:
        session.info[_DEPTH_KEY] = depth

    if depth == 0:
        for website_id in sorted(session.info.pop(_CHANGED_KEY, set())):
            tree_changed.send(website_id)
