"""
auth/store.py -- SQLAlchemy Core schema, engine setup, and the user/credential repositories.

Pattern: Repository + Data Mapper. UserStore and CredentialStore are the
repositories; _row_to_user / _row_to_credential are the mappers. Route,
controller and dependency code never touches SQL directly. SessionStore
(auth/sessions.py) and PairingStore (auth/pairing.py) share the schema and
engine defined here.

Security:
  All queries use bound parameters. No f-strings in SQL.
  Provider API keys are stored only as EncryptionService ciphertext.

Timestamps:
  DateTime columns. SQLite hands values back without tzinfo, so every mapper
  runs them through as_utc(). All writes are UTC.

Layer rule: no imports from api/.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    event,
    select,
)
from sqlalchemy.engine import Engine

from auth.encryption import EncryptionService
from auth.models import ProviderCredential, User, utcnow

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

metadata = MetaData()

users = Table(
    "users",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(255), nullable=False, unique=True),
    Column("hashed_password", Text),
    Column("role", String(30), nullable=False, server_default="user"),
    Column("subscription_tier", String(30), nullable=False, server_default="free"),
    Column("full_name", String(255)),
    Column("is_active", Boolean, nullable=False, server_default="1"),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("last_sign_in_at", DateTime(timezone=True)),
)

sessions = Table(
    "sessions",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
    # UNIQUE: at most one row per issued refresh token.
    Column("refresh_token", Text, nullable=False, unique=True),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("expires_at", DateTime(timezone=True), nullable=False),
    Column("invalidated_at", DateTime(timezone=True)),
    Index("ix_sessions_user_id", "user_id"),
    Index("ix_sessions_expires_at", "expires_at"),
    Index("ix_sessions_created_at", "created_at"),
)

pairing_requests = Table(
    "pairing_requests",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("auth_code", String(64), nullable=False, unique=True),
    Column("device_name", String(255), nullable=False),
    Column("device_id", String(255), nullable=False),
    Column("status", String(20), nullable=False, server_default="pending"),
    Column("user_id", Integer, ForeignKey("users.id", ondelete="CASCADE")),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("expires_at", DateTime(timezone=True), nullable=False),
    Column("authorized_at", DateTime(timezone=True)),
    # Device tokens minted at authorization, held until the device exchanges the code.
    Column("access_token", Text),
    Column("refresh_token", Text),
)

provider_credentials = Table(
    "provider_credentials",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("name", String(100), nullable=False, unique=True),
    Column("encrypted_key", Text, nullable=False),  # "<ivHex>:<ciphertextHex>"
    Column("created_by", Integer, ForeignKey("users.id", ondelete="SET NULL")),
    Column("created_at", DateTime(timezone=True), nullable=False),
)


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode so readers do not block during writes.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


def create_db_engine(db_url: str) -> Engine:
    """Create the engine shared by all auth stores and ensure the schema exists."""
    connect_args: dict = {}
    if db_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
    engine = create_engine(db_url, connect_args=connect_args)
    if db_url.startswith("sqlite"):
        event.listen(engine, "connect", _set_wal_mode)
    metadata.create_all(engine)
    return engine


def as_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to a naive datetime read back from SQLite."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------


class UserStore:
    """Repository for User records.

    The surrounding application owns users; this subsystem reads identity and
    role, creates accounts on registration, and stamps last_sign_in_at.

    Usage:
        store = UserStore(create_db_engine("sqlite:///:memory:"))
        uid = store.create_user(User(email="a@example.com", hashed_password=hash_password("secret")))
        user = store.get_by_email("a@example.com")
    """

    def __init__(self, engine: Engine, clock: Callable[[], datetime] = utcnow) -> None:
        self.engine = engine
        self._clock = clock

    def create_user(self, user: User) -> int:
        """Insert a new user and return its assigned database ID.

        Raises sqlalchemy.exc.IntegrityError if the email already exists.
        Callers catch IntegrityError to report a 409.
        """
        with self.engine.begin() as conn:
            result = conn.execute(
                users.insert().values(
                    email=user.email.strip().lower(),
                    hashed_password=user.hashed_password,
                    role=user.role,
                    subscription_tier=user.subscription_tier,
                    full_name=user.full_name,
                    is_active=user.is_active,
                    created_at=self._clock(),
                )
            )
            return result.inserted_primary_key[0]

    def get_by_email(self, email: str) -> User | None:
        """Look up a user by email (case-insensitive). Returns None if not found."""
        with self.engine.connect() as conn:
            row = conn.execute(users.select().where(users.c.email == email.strip().lower())).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_id(self, user_id: int) -> User | None:
        with self.engine.connect() as conn:
            row = conn.execute(users.select().where(users.c.id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def update_last_sign_in(self, user_id: int) -> None:
        with self.engine.begin() as conn:
            conn.execute(users.update().where(users.c.id == user_id).values(last_sign_in_at=self._clock()))

    def delete_user(self, user_id: int) -> bool:
        """Permanently delete a user record. Returns True if deleted, False if not found."""
        with self.engine.begin() as conn:
            result = conn.execute(users.delete().where(users.c.id == user_id))
        return result.rowcount > 0

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Provider credentials (encrypted at rest)
# ---------------------------------------------------------------------------


class CredentialStore:
    """Repository for third-party API keys, stored as EncryptionService ciphertext.

    The plaintext goes in through add() and comes out only through reveal().
    Listing returns ciphertext-bearing records; the route masks them.
    """

    def __init__(self, engine: Engine, encryption: EncryptionService, clock: Callable[[], datetime] = utcnow) -> None:
        self.engine = engine
        self._encryption = encryption
        self._clock = clock

    def add(self, name: str, api_key: str, created_by: int | None = None) -> int:
        """Encrypt and store an API key. Raises IntegrityError on duplicate name."""
        with self.engine.begin() as conn:
            result = conn.execute(
                provider_credentials.insert().values(
                    name=name,
                    encrypted_key=self._encryption.encrypt(api_key),
                    created_by=created_by,
                    created_at=self._clock(),
                )
            )
            return result.inserted_primary_key[0]

    def get(self, credential_id: int) -> ProviderCredential | None:
        with self.engine.connect() as conn:
            row = conn.execute(
                provider_credentials.select().where(provider_credentials.c.id == credential_id)
            ).fetchone()
        return _row_to_credential(row) if row is not None else None

    def list_all(self) -> list[ProviderCredential]:
        with self.engine.connect() as conn:
            rows = conn.execute(select(provider_credentials).order_by(provider_credentials.c.name)).fetchall()
        return [_row_to_credential(r) for r in rows]

    def reveal(self, credential_id: int) -> str | None:
        """Return the decrypted API key, or None if the record does not exist.

        Raises MalformedCiphertext / DecryptionFailure if the stored value
        cannot be decrypted with the configured key.
        """
        credential = self.get(credential_id)
        if credential is None:
            return None
        return self.decrypt(credential)

    def decrypt(self, credential: ProviderCredential) -> str:
        return self._encryption.decrypt(credential.encrypted_key)

    def delete(self, credential_id: int) -> bool:
        with self.engine.begin() as conn:
            result = conn.execute(provider_credentials.delete().where(provider_credentials.c.id == credential_id))
        return result.rowcount > 0


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        email=row.email,
        hashed_password=row.hashed_password,
        role=row.role,
        subscription_tier=row.subscription_tier,
        full_name=row.full_name,
        is_active=bool(row.is_active),
        created_at=as_utc(row.created_at),
        last_sign_in_at=as_utc(row.last_sign_in_at),
    )


def _row_to_credential(row) -> ProviderCredential:
    return ProviderCredential(
        id=row.id,
        name=row.name,
        encrypted_key=row.encrypted_key,
        created_by=row.created_by,
        created_at=as_utc(row.created_at),
    )
