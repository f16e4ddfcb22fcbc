"""
auth/store.py -- SQLAlchemy Core persistence layer for identities, profiles and audit events.

Pattern: Repository + Data Mapper. ProfileStore is the repository;
_row_to_identity / _row_to_profile / _row_to_audit_event are the mappers.
Route and service code never touches SQL directly.

Row-level rules:
  Every profile and audit read or write takes the caller's Subject and
  appends auth.policy.predicate() to the statement. A caller who is not
  allowed to see a row gets the same answer as if the row did not exist --
  the rules live at this boundary, not only in route code.

  The profile insert is an INSERT ... SELECT FROM identities guarded by the
  insert predicate, so "profile without identity" and "profile for someone
  else" are both impossible in a single statement. The FOREIGN KEY with
  ON DELETE CASCADE removes the profile when the identity goes.

Concurrency:
  Duplicate first-time creation is resolved by the profiles primary key. The
  losing INSERT raises IntegrityError, which get_or_create_profile() turns
  into a re-read and a FOUND result. No in-process locks.

  updated_at is strictly monotonic per row: each update writes
  max(now, previous + 1us) and is conditional on the previous value, retried
  on a lost race.

Security:
  All queries use bound parameters. No f-strings in SQL.

Layer rule: no imports from api/ or web/.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any

from sqlalchemy import (
    JSON,
    Column,
    ForeignKey,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    event,
    literal,
    select,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from auth.models import AuditEvent, Identity, ProcedureResult, Profile, Subject
from auth.policy import Permission, predicate

_DEFAULT_DB_URL = "sqlite:///authgate.db"

# Fields a caller may change through update_profile(). Anything else in the
# partial is ignored (subject_id and timestamps are owned by the store).
PROFILE_FIELDS: tuple[str, ...] = ("email", "full_name", "avatar_url")

# Attempts for the conditional UPDATE before giving up on a hot row.
_UPDATE_RETRIES = 3

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_identities = Table(
    "identities",
    _metadata,
    Column("subject_id", String(64), primary_key=True),  # provider's user id
    Column("email", Text, nullable=False, server_default=""),
    Column("user_metadata", JSON),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
)

_profiles = Table(
    "profiles",
    _metadata,
    Column(
        "subject_id",
        String(64),
        ForeignKey("identities.subject_id", ondelete="CASCADE"),
        primary_key=True,
    ),
    Column("email", Text, nullable=False, server_default=""),
    Column("full_name", Text, nullable=False, server_default=""),
    Column("avatar_url", Text, nullable=False, server_default=""),
    Column("created_at", String(32), nullable=False, index=True),
    Column("updated_at", String(32), nullable=False, index=True),
)

_audit_logs = Table(
    "audit_logs",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    # No FK: events for since-deleted identities and anonymous actors stay.
    Column("actor_id", String(64), index=True),
    Column("action", String(100), nullable=False),
    Column("resource_type", String(50)),
    Column("resource_id", Text),
    Column("before", JSON),
    Column("after", JSON),
    Column("ip_address", String(45)),
    Column("user_agent", Text),
    Column("created_at", String(32), nullable=False, index=True),
)


# ---------------------------------------------------------------------------
# SQLite connection setup
# ---------------------------------------------------------------------------


def _configure_sqlite(dbapi_conn, connection_record) -> None:
    """Enable WAL and foreign keys on every new SQLite connection.

    Both are per-connection PRAGMAs; pooled connections do not inherit them.
    Without foreign_keys=ON SQLite ignores the ON DELETE CASCADE entirely.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")
    dbapi_conn.execute("PRAGMA foreign_keys=ON")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _next_timestamp(previous: str | None) -> str:
    """Return an ISO timestamp strictly later than previous.

    Wall clocks can stand still (coarse resolution) or step backwards (NTP);
    bumping by one microsecond keeps updated_at monotonic either way.
    """
    now = datetime.now(timezone.utc)
    if previous:
        prev = datetime.fromisoformat(previous)
        if now <= prev:
            now = prev + timedelta(microseconds=1)
    return now.isoformat()


def _profile_defaults(identity: Identity) -> dict[str, str]:
    metadata = identity.user_metadata or {}
    return {
        "email": identity.email or "",
        "full_name": metadata.get("full_name") or "",
        "avatar_url": metadata.get("avatar_url") or "",
    }


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class ProfileStore:
    """Repository for Identity, Profile and AuditEvent records.

    Usage:
        store = ProfileStore("sqlite:///:memory:")
        store.upsert_identity(Identity(subject_id="u1", email="a@b.com"))
        result = store.get_or_create_profile(Subject(id="u1"), "u1")
        store.close()
    """

    def __init__(self, db_url: str = _DEFAULT_DB_URL) -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _configure_sqlite)
        _metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # Identity mirror (not row-guarded: written by the system only)
    # ------------------------------------------------------------------

    def get_identity(self, subject_id: str) -> Identity | None:
        with self.engine.connect() as conn:
            row = conn.execute(_identities.select().where(_identities.c.subject_id == subject_id)).fetchone()
        return _row_to_identity(row) if row is not None else None

    def upsert_identity(self, identity: Identity) -> Identity:
        """Insert or refresh the mirror of a provider user record.

        Insert first; on a primary key conflict (already mirrored, or a
        concurrent notification won) fall back to an update.
        """
        now = _now_iso()
        values = {"email": identity.email or "", "user_metadata": identity.user_metadata or {}}
        try:
            with self.engine.begin() as conn:
                conn.execute(
                    _identities.insert().values(
                        subject_id=identity.subject_id,
                        created_at=now,
                        updated_at=now,
                        **values,
                    )
                )
        except IntegrityError:
            with self.engine.begin() as conn:
                conn.execute(
                    _identities.update()
                    .where(_identities.c.subject_id == identity.subject_id)
                    .values(updated_at=now, **values)
                )
        stored = self.get_identity(identity.subject_id)
        if stored is None:
            # Deleted between our write and read -- report what we were given.
            return identity
        return stored

    def delete_identity(self, subject_id: str) -> bool:
        """Delete the identity mirror row; the profile goes with it (ON DELETE CASCADE)."""
        with self.engine.begin() as conn:
            result = conn.execute(_identities.delete().where(_identities.c.subject_id == subject_id))
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Profiles (row-guarded)
    # ------------------------------------------------------------------

    def get_profile(self, caller: Subject | None, subject_id: str) -> Profile | None:
        """Return the profile if it exists AND the caller may read it; None otherwise."""
        guard = predicate(caller, Permission.READ, "profiles", _profiles.c.subject_id)
        with self.engine.connect() as conn:
            row = conn.execute(_profiles.select().where((_profiles.c.subject_id == subject_id) & guard)).fetchone()
        return _row_to_profile(row) if row is not None else None

    def get_or_create_profile(self, caller: Subject | None, subject_id: str) -> ProcedureResult:
        """Storage procedure: return the existing profile or create it from the identity mirror.

        Result codes:
          FOUND          -- profile existed (or a concurrent caller created it first)
          CREATED        -- this call inserted it
          USER_NOT_FOUND -- no identity record for subject_id
          FORBIDDEN      -- identity exists but the caller may not create its profile
        """
        existing = self.get_profile(caller, subject_id)
        if existing is not None:
            return ProcedureResult(True, "FOUND", "Profile found", existing)

        identity = self.get_identity(subject_id)
        if identity is None:
            return ProcedureResult(False, "USER_NOT_FOUND", "User not found in identities")

        now = _now_iso()
        defaults = _profile_defaults(identity)
        guard = predicate(caller, Permission.INSERT, "profiles", _identities.c.subject_id)
        source = select(
            _identities.c.subject_id,
            literal(defaults["email"]),
            literal(defaults["full_name"]),
            literal(defaults["avatar_url"]),
            literal(now),
            literal(now),
        ).where((_identities.c.subject_id == subject_id) & guard)
        stmt = _profiles.insert().from_select(
            ["subject_id", "email", "full_name", "avatar_url", "created_at", "updated_at"],
            source,
        )
        try:
            with self.engine.begin() as conn:
                inserted = conn.execute(stmt).rowcount
        except IntegrityError:
            # Lost the race to a concurrent creator. Their row is ours too.
            winner = self.get_profile(caller, subject_id)
            if winner is not None:
                return ProcedureResult(True, "FOUND", "Profile found", winner)
            return ProcedureResult(False, "FORBIDDEN", "Profile is not accessible to this caller")

        if not inserted:
            if self.get_identity(subject_id) is None:
                return ProcedureResult(False, "USER_NOT_FOUND", "User not found in identities")
            return ProcedureResult(False, "FORBIDDEN", "Caller may not create this profile")

        created = self.get_profile(caller, subject_id)
        if created is None:
            # Readable insert but unreadable row would mean the rule table is
            # inconsistent; surface it rather than pretend it was created.
            return ProcedureResult(False, "FORBIDDEN", "Profile created but not readable by caller")
        return ProcedureResult(True, "CREATED", "Profile created successfully", created)

    def update_profile(self, caller: Subject | None, subject_id: str, partial: dict[str, Any]) -> ProcedureResult:
        """Storage procedure: merge partial into the profile.

        Keys in PROFILE_FIELDS with a non-None value overwrite; every other
        column is left as it is. updated_at always advances strictly.
        Returns NOT_FOUND when the row is missing or invisible to the caller.
        """
        changes = {k: v for k, v in partial.items() if k in PROFILE_FIELDS and v is not None}
        guard = predicate(caller, Permission.UPDATE, "profiles", _profiles.c.subject_id)

        for _attempt in range(_UPDATE_RETRIES):
            with self.engine.begin() as conn:
                row = conn.execute(
                    select(_profiles.c.updated_at).where((_profiles.c.subject_id == subject_id) & guard)
                ).fetchone()
                if row is None:
                    return ProcedureResult(False, "NOT_FOUND", "User profile not found")
                previous = row.updated_at
                result = conn.execute(
                    _profiles.update()
                    .where((_profiles.c.subject_id == subject_id) & (_profiles.c.updated_at == previous) & guard)
                    .values(updated_at=_next_timestamp(previous), **changes)
                )
            if result.rowcount:
                break
        else:
            return ProcedureResult(False, "CONFLICT", "Profile changed concurrently; retry the update")

        updated = self.get_profile(caller, subject_id)
        if updated is None:
            # Deleted (identity cascade) right after our update.
            return ProcedureResult(False, "NOT_FOUND", "User profile not found")
        return ProcedureResult(True, "UPDATED", "Profile updated successfully", updated)

    # ------------------------------------------------------------------
    # Audit events (append-only, reads row-guarded)
    # ------------------------------------------------------------------

    def log_audit_event(self, audit_event: AuditEvent) -> int:
        """Storage procedure: append one audit event and return its ID."""
        with self.engine.begin() as conn:
            result = conn.execute(
                _audit_logs.insert().values(
                    actor_id=audit_event.actor_id,
                    action=audit_event.action,
                    resource_type=audit_event.resource_type,
                    resource_id=audit_event.resource_id,
                    before=audit_event.before,
                    after=audit_event.after,
                    ip_address=audit_event.ip_address,
                    user_agent=audit_event.user_agent,
                    created_at=_now_iso(),
                )
            )
        return result.inserted_primary_key[0]

    def list_audit_events(self, caller: Subject | None, limit: int = 100) -> list[AuditEvent]:
        """Return the newest audit events the caller may read.

        A regular subject sees only events they performed; an elevated caller
        sees all of them.
        """
        guard = predicate(caller, Permission.READ, "audit_logs", _audit_logs.c.actor_id)
        with self.engine.connect() as conn:
            rows = conn.execute(
                _audit_logs.select().where(guard).order_by(_audit_logs.c.id.desc()).limit(limit)
            ).fetchall()
        return [_row_to_audit_event(r) for r in rows]

    def ping(self) -> bool:
        """True if the database answers a trivial query."""
        try:
            with self.engine.connect() as conn:
                conn.execute(select(literal(1)))
        except SQLAlchemyError:
            return False
        return True

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_identity(row) -> Identity:
    return Identity(
        subject_id=row.subject_id,
        email=row.email or "",
        user_metadata=row.user_metadata or {},
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _row_to_profile(row) -> Profile:
    return Profile(
        subject_id=row.subject_id,
        email=row.email or "",
        full_name=row.full_name or "",
        avatar_url=row.avatar_url or "",
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _row_to_audit_event(row) -> AuditEvent:
    return AuditEvent(
        id=row.id,
        actor_id=row.actor_id,
        action=row.action,
        resource_type=row.resource_type,
        resource_id=row.resource_id,
        before=row.before,
        after=row.after,
        ip_address=row.ip_address,
        user_agent=row.user_agent,
        created_at=row.created_at,
    )
