import logging
from contextlib import contextmanager
from decimal import Decimal, ROUND_HALF_UP

from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError
from sqlalchemy.orm.exc import StaleDataError

from errors import ConflictError, RetryableError

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")


def money(value) -> Decimal:
    if value is None:
        return Decimal("0.00")
    return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)


@contextmanager
def transaction(session):
    """
    Commits on success, rolls back on any exception. Datastore failures are
    translated into the reservation error kinds.
    """
    try:
        yield session
        session.commit()
    except IntegrityError as exc:
        session.rollback()
        logger.info("Integrity conflict: %s", exc.orig)
        raise ConflictError("Resource already exists or is in use") from exc
    except StaleDataError as exc:
        session.rollback()
        raise ConflictError("Booking was modified by another request, reload and retry") from exc
    except OperationalError as exc:
        session.rollback()
        logger.warning("Transient datastore failure: %s", exc.orig)
        raise RetryableError() from exc
    except DBAPIError as exc:
        session.rollback()
        if exc.connection_invalidated:
            raise RetryableError() from exc
        raise
    except BaseException:
        session.rollback()
        raise


def conditional_update(session, stmt) -> int:
    """
    Executes an UPDATE whose WHERE clause encodes the expected current
    state and returns the number of rows it changed. Zero means another
    transaction got there first.
    """
    result = session.execute(stmt.execution_options(synchronize_session=False))
    session.expire_all()
    return result.rowcount
