from contextlib import contextmanager
from typing import Iterator, Optional
import logging

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from lib.config import get_settings
from lib.error_handler import PersistenceError
from lib.models import Base

logger = logging.getLogger(__name__)


class Database:
    def __init__(self, database_url: Optional[str] = None, engine: Optional[Engine] = None):
        if engine is None:
            database_url = database_url or get_settings().database_url
            engine = create_engine(database_url, **self._engine_options(database_url))
        self.engine = engine
        self.SessionLocal = sessionmaker(bind=self.engine, expire_on_commit=False)
        logger.info(f"Database initialized: {self.engine.url.render_as_string(hide_password=True)}")

    @staticmethod
    def _engine_options(database_url: str) -> dict:
        if not database_url.startswith('sqlite'):
            return {'pool_pre_ping': True}
        options = {'connect_args': {'check_same_thread': False}}
        if database_url in ('sqlite://', 'sqlite:///:memory:'):
            # One shared connection, otherwise every session sees an empty database
            options['poolclass'] = StaticPool
        return options

    def create_all(self) -> None:
        """Create any missing tables"""
        Base.metadata.create_all(self.engine)

    def drop_all(self) -> None:
        Base.metadata.drop_all(self.engine)

    @contextmanager
    def session_scope(self) -> Iterator[Session]:
        """Unit of work: commit on success, roll back and raise PersistenceError on failure"""
        session = self.SessionLocal()
        try:
            yield session
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            logger.error(f"Database error, transaction rolled back: {str(e)}")
            raise PersistenceError(f"Database error: {str(e)}") from e
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()
