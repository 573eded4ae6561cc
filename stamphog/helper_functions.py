import os
from contextlib import contextmanager
from typing import Iterator

import pandas as pd
from google.cloud import secretmanager
from google.cloud.sql.connector import Connector
from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session
from sqlalchemy.pool import StaticPool

from stamphog import cloud_logging as logging


LOCAL_CREDS = os.getenv("LOCAL_CREDS")

if LOCAL_CREDS is not None:
    os.environ.setdefault("GOOGLE_APPLICATION_CREDENTIALS", LOCAL_CREDS)


def get_secret_value(project_id, secret_id, version_id="latest"):
    """
    Retrieve a secret value from Google Cloud Secret Manager.

    This function accesses a secret stored in Google Cloud Secret Manager
    and returns its value as a string. It uses Application Default Credentials (ADC)
    from the environment for authentication.

    Parameters
    ----------
    project_id : str
        The Google Cloud project ID where the secret is stored
    secret_id : str
        The ID of the secret to retrieve
    version_id : str, optional
        The version of the secret to retrieve, defaults to "latest"

    Returns
    -------
    str
        The secret payload as a UTF-8 decoded string
    """
    # Never include the secret payload itself in logs.
    logging.log_text(
        f"Fetching secret '{secret_id}' from project '{project_id}' (version '{version_id}').",
        severity="DEBUG",
    )
    client = secretmanager.SecretManagerServiceClient()
    name = f"projects/{project_id}/secrets/{secret_id}/versions/{version_id}"
    response = client.access_secret_version(request={"name": name})
    payload = response.payload.data.decode("UTF-8")

    logging.log_text(f"Successfully fetched secret '{secret_id}'.", severity="INFO")
    return payload


CLOUD_SQL_CONNECTION_STRING = "postgresql+pg8000://"


def build_engine(
    database_url: str | None = None,
    *,
    instance_connection_name: str | None = None,
    db_user: str | None = None,
    db_password: str | None = None,
    db_name: str = "postgres",
) -> Engine:
    """
    Create the SQLAlchemy engine backing the stamp store.

    When *instance_connection_name* is given the engine connects to Cloud SQL
    through the Cloud SQL Python Connector (pg8000 driver).  Otherwise
    *database_url* is used verbatim; in-memory SQLite URLs get a
    :class:`~sqlalchemy.pool.StaticPool` so every session shares one database.

    Parameters
    ----------
    database_url : str, optional
        SQLAlchemy URL, e.g. ``sqlite:///stamphog.db``.
    instance_connection_name : str, optional
        ``project:region:instance`` of the Cloud SQL instance.
    db_user, db_password, db_name : str, optional
        Credentials used by the Connector.

    Returns
    -------
    sqlalchemy.engine.Engine
    """
    if instance_connection_name:
        connector = Connector()
        engine = create_engine(
            CLOUD_SQL_CONNECTION_STRING,
            creator=lambda: connector.connect(
                instance_connection_name,
                "pg8000",
                user=db_user,
                password=db_password,
                db=db_name,
            ),
        )
        logging.log_text("Database engine created via Connector.", severity="DEBUG")
        return engine

    url = database_url or "sqlite:///stamphog.db"
    if not url.startswith("sqlite"):
        engine = create_engine(url)
        logging.log_text(f"Database engine created for {engine.url.drivername}.", severity="DEBUG")
        return engine

    if ":memory:" in url or url == "sqlite://":
        engine = create_engine(
            url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    else:
        engine = create_engine(url, connect_args={"check_same_thread": False})

    # pysqlite defers BEGIN until the first DML statement, which breaks the
    # SAVEPOINTs used for duplicate detection.  Emit BEGIN ourselves.
    @event.listens_for(engine, "connect")
    def _disable_pysqlite_transactions(dbapi_connection, _connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _emit_begin(connection):
        connection.exec_driver_sql("BEGIN")

    logging.log_text("Database engine created for sqlite.", severity="DEBUG")
    return engine


@contextmanager
def session_scope(engine: Engine) -> Iterator[Session]:
    """
    Provide a transactional scope around a series of operations.

    Commits when the block exits cleanly and rolls back on any exception, so
    each mutation built on top of it is all-or-nothing.

    Yields
    ------
    sqlalchemy.orm.Session
    """
    session = Session(engine, expire_on_commit=False)
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def run_query(engine: Engine, query: str, params: dict | None = None):
    """
    Execute a parameterized SQL query and return the results as records.

    Parameters
    ----------
    engine : sqlalchemy.engine.Engine
        Engine to run the query against
    query : str
        The SQL query to execute, which may contain ``:name`` placeholders
    params : dict, optional
        Dictionary of parameter values to bind to the query, defaults to None

    Returns
    -------
    list
        A list of dictionaries representing the query results, where each
        dictionary corresponds to a row and keys are column names.  SQL NULLs
        come back as ``None``.
    """
    if params is None:
        params = {}

    # Log the parameter names only; values may include user ids.
    logging.log_text(
        f"Executing SQL query. Params provided: {list(params.keys())}",
        severity="DEBUG",
    )

    with engine.connect() as connection:
        try:
            df = pd.read_sql(text(query), connection, params=params)
        except Exception as exc:
            logging.log_text(f"Database query failed: {exc}", severity="ERROR")
            raise

    logging.log_text(f"Query returned {len(df)} rows.", severity="DEBUG")
    df = df.astype(object).where(pd.notna(df), None)
    return df.to_dict("records")
