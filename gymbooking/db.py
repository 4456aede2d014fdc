from sqlalchemy import event
from sqlmodel import Session, SQLModel, create_engine

from gymbooking.settings import settings
from gymbooking import models

is_sqlite = settings.database_url.startswith("sqlite")
# Concurrent reservations wait for the writer lock instead of failing with "database is locked".
connect_args = (
    {"check_same_thread": False, "timeout": settings.sqlite_busy_timeout_seconds} if is_sqlite else {}
)
engine = create_engine(settings.database_url, echo=False, connect_args=connect_args)

if is_sqlite:

    @event.listens_for(engine, "connect")
    def _sqlite_pragmas(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


def create_db_and_tables() -> None:
    SQLModel.metadata.create_all(engine)


def get_session():
    with Session(engine) as session:
        yield session
