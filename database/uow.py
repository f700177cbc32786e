import contextlib
import logging
from typing import Optional

from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import sessionmaker

from core.exceptions import PipelineUnavailableError
from database.database import SessionLocal
from database.repository import PipelineRepository

logger = logging.getLogger(__name__)


@contextlib.contextmanager
def pipeline_uow(session_factory: Optional[sessionmaker] = None):
    """Per-unit-of-work transaction scope.

    Yields a PipelineRepository bound to a fresh Session. Commits on success,
    rolls back on exception, always closes. A store that cannot be reached
    surfaces as PipelineUnavailableError.

    Usage:
        with pipeline_uow(ctx.session_factory) as repo:
            record = repo.deliveries.get(record_id)
            # perform operations...
        # commit happens automatically on successful exit
    """
    session = (session_factory or SessionLocal)()
    try:
        repo = PipelineRepository(session)
        yield repo
        session.commit()
    except OperationalError as e:
        session.rollback()
        logger.error(f"Store unavailable: {e}")
        raise PipelineUnavailableError(f"Store unavailable: {e}") from e
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
