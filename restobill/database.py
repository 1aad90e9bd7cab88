"""Database configuration and initialization."""
from sqlalchemy import BigInteger, Integer, create_engine, event
from sqlalchemy.orm import scoped_session, sessionmaker, declarative_base

# Create SQLAlchemy base
Base = declarative_base()

# Global session and engine
engine = None
db_session = None


def _configure_sqlite(sqlite_engine):
    """
    Make SQLite take the write lock when a transaction begins.

    pysqlite defers BEGIN until the first write, so two readers can both try to
    upgrade and one fails immediately with "database is locked". Emitting
    BEGIN IMMEDIATE serializes writers and lets the busy timeout do its job.
    """

    @event.listens_for(sqlite_engine, 'connect')
    def _disable_pysqlite_transactions(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(sqlite_engine, 'begin')
    def _begin_immediate(conn):
        conn.exec_driver_sql('BEGIN IMMEDIATE')


def build_engine(database_uri, echo=False, sqlite_timeout=30.0):
    """Create the engine with the pool settings for the target backend."""
    if database_uri.startswith('sqlite'):
        sqlite_engine = create_engine(
            database_uri,
            echo=echo,
            connect_args={'timeout': sqlite_timeout, 'check_same_thread': False},
        )
        _configure_sqlite(sqlite_engine)
        return sqlite_engine

    return create_engine(
        database_uri,
        echo=echo,
        pool_pre_ping=True,  # Enable connection health checks
        pool_size=10,
        max_overflow=20
    )


def init_db(app):
    """Initialize database connection."""
    global engine, db_session

    engine = build_engine(
        app.config['SQLALCHEMY_DATABASE_URI'],
        echo=app.config.get('SQLALCHEMY_ECHO', False),
        sqlite_timeout=app.config.get('SQLITE_BUSY_TIMEOUT', 30.0),
    )

    db_session = scoped_session(
        sessionmaker(autocommit=False, autoflush=False, bind=engine)
    )

    Base.query = db_session.query_property()

    # Register teardown
    @app.teardown_appcontext
    def shutdown_session(exception=None):
        """Close database session and rollback on error."""
        if exception:
            db_session.rollback()
        db_session.remove()


def create_schema():
    """Create every table known to the models package."""
    import restobill.models  # noqa: F401  (registers mappers)
    Base.metadata.create_all(bind=engine)


def get_session():
    """Get database session."""
    return db_session


# BIGINT primary keys do not autoincrement on SQLite; it needs INTEGER there.
BigIntPK = BigInteger().with_variant(Integer, 'sqlite')
