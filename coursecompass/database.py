from sqlalchemy import create_engine, event
from sqlalchemy.orm import declarative_base, sessionmaker
from coursecompass.config import get_settings

settings = get_settings()

is_sqlite = settings.database_url.startswith("sqlite")

# Chunk requests write from several threadpool workers at once; wait for the lock instead of failing.
connect_args = {"check_same_thread": False, "timeout": 30} if is_sqlite else {}

engine = create_engine(
    settings.database_url,
    connect_args=connect_args,
    pool_pre_ping=not is_sqlite,
    echo=False,
)

if is_sqlite:
    @event.listens_for(engine, "connect")
    def _sqlite_pragmas(dbapi_connection, connection_record):
        # upload_chunks rows go away with their session (ON DELETE CASCADE)
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.close()


SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
Base = declarative_base()


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
