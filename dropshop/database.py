"""Database configuration and initialization."""
from flask import current_app
from sqlalchemy import create_engine, event
from sqlalchemy.orm import scoped_session, sessionmaker, declarative_base

# Create SQLAlchemy base
Base = declarative_base()


class Database:
    """Engine and session registry owned by one Flask application."""

    def __init__(self, database_uri, echo=False, pool_size=10, max_overflow=20):
        self.is_sqlite = database_uri.startswith('sqlite')

        engine_kwargs = {'echo': echo, 'pool_pre_ping': True}
        if self.is_sqlite:
            engine_kwargs['connect_args'] = {'check_same_thread': False, 'timeout': 30}
        else:
            engine_kwargs['pool_size'] = pool_size
            engine_kwargs['max_overflow'] = max_overflow

        self.engine = create_engine(database_uri, **engine_kwargs)

        if self.is_sqlite:
            _enable_sqlite_write_transactions(self.engine)

        self.session_factory = sessionmaker(autocommit=False, autoflush=False, bind=self.engine)
        # One session per thread, like one per request under the WSGI server
        self.session = scoped_session(self.session_factory)

    def create_all(self):
        """Create missing tables."""
        import dropshop.models  # noqa: F401 - registers every mapper on Base
        Base.metadata.create_all(bind=self.engine)

    def drop_all(self):
        import dropshop.models  # noqa: F401
        Base.metadata.drop_all(bind=self.engine)

    def dispose(self):
        self.session.remove()
        self.engine.dispose()


def _enable_sqlite_write_transactions(engine):
    """
    Make pysqlite behave like a real transactional store.

    pysqlite defers BEGIN and silently drops SAVEPOINT semantics. We take over
    transaction control and open every transaction with BEGIN IMMEDIATE so
    concurrent writers serialize on the database lock instead of failing.
    """
    @event.listens_for(engine, "connect")
    def set_sqlite_pragma(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine, "begin")
    def begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def init_db(app):
    """Initialize database connection and bind it to the app."""
    database = Database(
        app.config['SQLALCHEMY_DATABASE_URI'],
        echo=app.config.get('SQLALCHEMY_ECHO', False),
        pool_size=app.config.get('SQLALCHEMY_POOL_SIZE', 10),
        max_overflow=app.config.get('SQLALCHEMY_MAX_OVERFLOW', 20),
    )
    app.extensions['database'] = database

    # Register teardown
    @app.teardown_appcontext
    def shutdown_session(exception=None):
        """Close database session and rollback on error."""
        if exception:
            database.session.rollback()
        database.session.remove()

    return database


def get_database() -> Database:
    return current_app.extensions['database']


def get_session():
    """Get database session for the current thread."""
    return get_database().session
