from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool
from fastapi import Request
import logging
import os

from .base import Base
from . import models  # noqa: F401  registers tables on Base.metadata

logger = logging.getLogger(__name__)


class DatabaseManager:
    def __init__(self, db_path=None, url=None):
        if url is None:
            if db_path is None:
                # Default to the project root (two levels up from this file)
                project_root = os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
                db_path = os.path.join(project_root, 'cassius.db')
            url = f'sqlite:///{db_path}'

        self.url = url
        engine_kwargs = {}
        if url.startswith('sqlite'):
            # Sessions are handed across FastAPI worker threads
            engine_kwargs['connect_args'] = {'check_same_thread': False}
            if url in ('sqlite://', 'sqlite:///:memory:'):
                engine_kwargs['poolclass'] = StaticPool
        else:
            engine_kwargs.update(pool_size=10, max_overflow=20, pool_timeout=30, pool_recycle=1800)

        self.engine = create_engine(url, **engine_kwargs)

        if url.startswith('sqlite'):
            @event.listens_for(self.engine, 'connect')
            def configure_sqlite(dbapi_connection, connection_record):
                # pysqlite's own transaction handling breaks SAVEPOINT
                dbapi_connection.isolation_level = None
                cursor = dbapi_connection.cursor()
                cursor.execute('PRAGMA foreign_keys=ON')
                cursor.close()

            @event.listens_for(self.engine, 'begin')
            def begin_sqlite(conn):
                conn.exec_driver_sql('BEGIN')

        self.SessionLocal = sessionmaker(
            autocommit=False,
            autoflush=False,
            expire_on_commit=False,
            bind=self.engine
        )

    def init_database(self):
        """Create all tables"""
        Base.metadata.create_all(bind=self.engine)
        logger.info("Database tables created successfully")

    def drop_database(self):
        Base.metadata.drop_all(bind=self.engine)

    def get_session(self):
        return self.SessionLocal()


def get_db(request: Request):
    """FastAPI dependency that provides a database session"""
    db = request.app.state.db_manager.get_session()
    try:
        yield db
    finally:
        db.close()
