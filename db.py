# db.py
"""
Process-wide engine for code running outside a Flask app (schema bootstrap,
scripts). Inside requests the blueprints prefer `current_app.engine`.
"""
import os
from sqlalchemy import create_engine, event


_engine = None


def create_sqlite_engine(database_url, busy_timeout_s=30):
    """
    SQLite engine whose transactions start with BEGIN IMMEDIATE.

    pysqlite defers BEGIN until the first write, which leaves the reads a
    transaction validates against unlocked. Taking the write lock up front
    makes each unit of work see and change the database alone.
    """
    engine = create_engine(
        database_url,
        connect_args={"check_same_thread": False, "timeout": busy_timeout_s},
        future=True,
    )

    @event.listens_for(engine, "connect")
    def _disable_pysqlite_begin(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    return engine


def get_engine():
    global _engine
    if _engine is None:
        database_url = os.environ.get("DATABASE_URL")
        if not database_url:
            raise RuntimeError("DATABASE_URL is not set")
        if database_url.startswith("mysql://"):
            database_url = "mysql+pymysql://" + database_url[len("mysql://"):]
        if database_url.startswith("sqlite"):
            _engine = create_sqlite_engine(database_url)
        else:
            _engine = create_engine(
                database_url,
                pool_pre_ping=True,
                pool_recycle=1800, # recycle connections every 30m
                pool_size=5,
                max_overflow=5,
                future=True,
            )
    return _engine
