# server/database/db.py

import  os
from    sqlalchemy      import event
from    sqlalchemy.pool import StaticPool
from    sqlmodel        import SQLModel, Session, create_engine


def create_db_engine(database_url: str, echo: bool = False):
    connect_args = {}
    kwargs = {}
    if database_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False                       # Telemetry and ticks run on other threads
        if database_url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool                            # One shared in-memory database
        else:
            # Ensure the database directory exists
            db_path = database_url.replace("sqlite:///", "", 1)
            directory = os.path.dirname(db_path)
            if directory:
                os.makedirs(directory, exist_ok=True)

    engine = create_engine(database_url, echo=echo, connect_args=connect_args, **kwargs)

    if database_url.startswith("sqlite"):
        @event.listens_for(engine, "connect")
        def _enable_foreign_keys(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

    return engine


def init_db(engine):
    # Import so both tables are registered on the metadata
    from database import models  # noqa: F401
    SQLModel.metadata.create_all(engine)


def get_session(engine):
    return Session(engine, expire_on_commit=False)
