# enrollbot/db_connection.py
import logging
import os
from typing import Callable

from google.cloud import secretmanager
from google.oauth2 import service_account
from google.auth import default as google_auth_default

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, Session

from enrollbot import settings
from enrollbot.entities import Base

logger = logging.getLogger("enrollbot")


class DbConnection:
    def __init__(self, database_url: str | None = None) -> None:
        # ---- env config (shared) ----
        self.PROJECT_ID   = settings.PROJECT_ID
        self.DB_HOST      = settings.DB_HOST
        self.DB_PORT      = settings.DB_PORT
        self.DB_NAME      = settings.DB_NAME
        self.DB_USER      = settings.DB_USER
        self.DB_PASSWORD  = settings.DB_PASSWORD
        self.DB_SECRET_ID = settings.DB_SECRET_ID

        # !###############################################
        # !   EITHER AN EXPLICIT DATABASE_URL (local runs,
        # !   sqlite, tests) OR host/user/password parts
        # !###############################################
        self.DATABASE_URL = database_url or settings.DATABASE_URL
        self.IS_LOCAL = bool(self.DATABASE_URL)
        self._engine: Engine | None = None
        self._sessionmaker: sessionmaker | None = None

    # -------- GCP auth / creds --------
    def _build_creds(self):
        key_path = os.environ.get("GOOGLE_APPLICATION_CREDENTIALS")
        scopes = ["https://www.googleapis.com/auth/cloud-platform"]
        if key_path and os.path.exists(key_path):
            return service_account.Credentials.from_service_account_file(key_path, scopes=scopes)
        creds, _ = google_auth_default(scopes=scopes)
        return creds

    # -------- DB password (Secret Manager) --------
    def _get_db_password_lazy(self) -> str:
        if self.DB_PASSWORD:
            return self.DB_PASSWORD
        if self.DB_SECRET_ID:
            client = secretmanager.SecretManagerServiceClient(credentials=self._build_creds())
            name = client.secret_version_path(self.PROJECT_ID, self.DB_SECRET_ID, "latest")
            resp = client.access_secret_version(request={"name": name})
            self.DB_PASSWORD = resp.payload.data.decode("utf-8")
            return self.DB_PASSWORD
        raise RuntimeError("No DB_PASSWORD and no Secret Manager configured")

    def _database_url(self) -> str:
        if self.DATABASE_URL:
            return self.DATABASE_URL
        pw = self._get_db_password_lazy()
        return f"postgresql+pg8000://{self.DB_USER}:{pw}@{self.DB_HOST}:{self.DB_PORT}/{self.DB_NAME}"

    # -------- Engine --------
    def get_engine(self) -> Engine:
        if self._engine is None:
            self._engine = build_engine(self._database_url())
        return self._engine

    def create_schema(self) -> None:
        Base.metadata.create_all(self.get_engine())

    # -------- SQLAlchemy Session factory --------
    def build_db_session_factory(self) -> Callable[[], Session]:
        if self._sessionmaker is None:
            self._sessionmaker = sessionmaker(
                bind=self.get_engine(),
                autoflush=False,
                autocommit=False,
                expire_on_commit=False,
                future=True,
            )

        def _factory() -> Session:
            return self._sessionmaker()

        return _factory


def build_engine(url: str) -> Engine:
    if url.startswith("sqlite"):
        logger.info(f"[DB] Using SQLite URL: {url}")
        engine = create_engine(
            url,
            future=True,
            connect_args={"check_same_thread": False, "timeout": 30},
        )
        _serialize_sqlite_writers(engine)
        return engine

    logger.info("[DB] Connecting to Postgres host=%s", url.rsplit("@", 1)[-1])
    # pg8000 supports 'timeout' in seconds
    return create_engine(
        url,
        future=True,
        pool_pre_ping=True,
        connect_args={"timeout": settings.DB_CONNECT_TIMEOUT},  # fail fast instead of hanging forever
    )


def _serialize_sqlite_writers(engine: Engine) -> None:
    """
    SQLite ignores FOR UPDATE. Starting every transaction with BEGIN IMMEDIATE takes the
    database write lock up front, so check-then-write sequences serialize like row locks do on Postgres.
    """

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        # let SQLAlchemy emit BEGIN itself
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")
