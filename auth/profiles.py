"""
auth/profiles.py -- Keep one local profile per identity, in step with the provider.

Three entry points:

  get_or_create(caller, subject_id)
      Lazy provisioning on first authentication. If the local identity mirror
      has never heard of the subject, the provider's admin API is asked once
      and the answer mirrored. not_found means the provider itself has no
      such user -- it is never used for "profile not created yet".

  update(caller, subject_id, partial)
      Explicit edits. Merge semantics: provided fields overwrite, omitted or
      None fields stay. Audited with before/after snapshots.

  handle_identity_event(event)
      Passive sync from upstream user-record notifications (created, updated,
      deleted). Runs as SYSTEM_SUBJECT. On update the e-mail is always taken
      from upstream; display name and avatar only when upstream sends a
      non-empty value, so a provider that drops metadata does not wipe what
      the user set locally. Every create, update and delete is audited.

Audit writes go through the optional defer callable (FastAPI's
BackgroundTasks.add_task in request handlers) so they run after the response.

Layer rule: no imports from api/ or web/.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable

from auth import audit
from auth.audit import AuditRecorder
from auth.models import Identity, Profile, Subject
from auth.provider import IdentityProviderClient, ProviderError, SubjectNotFound
from auth.store import ProfileStore

logger = logging.getLogger("authgate.auth.profiles")

# The caller used for provider-driven writes. Elevated, so the rule table
# admits it on every profile; it has no subject id of its own.
SYSTEM_SUBJECT = Subject(id=None, role="service_role", elevated=True)

Defer = Callable[..., Any]

IDENTITY_CREATED = "identity.created"
IDENTITY_UPDATED = "identity.updated"
IDENTITY_DELETED = "identity.deleted"

# Database-webhook operation names -> our event types.
_WEBHOOK_TYPES = {
    "INSERT": IDENTITY_CREATED,
    "UPDATE": IDENTITY_UPDATED,
    "DELETE": IDENTITY_DELETED,
}


@dataclass
class SyncResult:
    """Outcome of a synchronizer call.

    status: found | created | updated | deleted | not_found | forbidden | error
    """

    status: str
    profile: Profile | None = None
    message: str = ""

    @property
    def ok(self) -> bool:
        return self.status in ("found", "created", "updated", "deleted")


@dataclass
class IdentityEvent:
    """An upstream notification that a provider user record changed."""

    type: str
    subject_id: str
    email: str = ""
    user_metadata: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_webhook(cls, payload: dict[str, Any]) -> "IdentityEvent":
        """Parse a database-webhook body: {"type": "INSERT", "record": {...}, "old_record": {...}}.

        Raises ValueError for unknown operations or records without an id.
        """
        event_type = _WEBHOOK_TYPES.get(str(payload.get("type", "")).upper())
        if event_type is None:
            raise ValueError(f"Unsupported identity webhook type: {payload.get('type')!r}")
        record = payload.get("old_record") if event_type == IDENTITY_DELETED else payload.get("record")
        if not isinstance(record, dict) or not record.get("id"):
            raise ValueError("Identity webhook record is missing an id")
        return cls(
            type=event_type,
            subject_id=str(record["id"]),
            email=record.get("email") or "",
            user_metadata=record.get("raw_user_meta_data") or record.get("user_metadata") or {},
        )


def identity_from_provider_user(user: dict[str, Any]) -> Identity:
    return Identity(
        subject_id=str(user["id"]),
        email=user.get("email") or "",
        user_metadata=user.get("user_metadata") or user.get("raw_user_meta_data") or {},
    )


_STATUS_BY_CODE = {
    "FOUND": "found",
    "CREATED": "created",
    "UPDATED": "updated",
    "USER_NOT_FOUND": "not_found",
    "NOT_FOUND": "not_found",
    "FORBIDDEN": "forbidden",
    "CONFLICT": "error",
}


class ProfileSynchronizer:
    def __init__(
        self,
        store: ProfileStore,
        provider: IdentityProviderClient | None = None,
        recorder: AuditRecorder | None = None,
    ) -> None:
        self.store = store
        self.provider = provider
        self.recorder = recorder

    # ------------------------------------------------------------------
    # Lazy provisioning
    # ------------------------------------------------------------------

    def get_or_create(self, caller: Subject | None, subject_id: str, defer: Defer | None = None) -> SyncResult:
        result = self.store.get_or_create_profile(caller, subject_id)
        if result.code == "USER_NOT_FOUND":
            mirrored = self._mirror_from_provider(subject_id)
            if mirrored is not None:
                return mirrored
            result = self.store.get_or_create_profile(caller, subject_id)

        status = _STATUS_BY_CODE.get(result.code, "error")
        if status == "created":
            logger.info("Provisioned profile for subject %s", subject_id)
            self._audit(
                defer,
                caller,
                audit.PROFILE_CREATE,
                "profiles",
                subject_id,
                after=result.profile.snapshot() if result.profile else None,
            )
        return SyncResult(status=status, profile=result.profile, message=result.message)

    def _mirror_from_provider(self, subject_id: str) -> SyncResult | None:
        """Copy the provider's user record into the identity mirror.

        Returns a terminal SyncResult when the lookup settles the question
        (unknown subject, provider down), or None when the mirror was filled
        and the caller should retry the procedure.
        """
        if self.provider is None:
            return SyncResult(status="not_found", message="User not found in identities")
        try:
            user = self.provider.get_user_by_id(subject_id)
        except SubjectNotFound:
            logger.info("Subject %s unknown to the identity provider", subject_id)
            return SyncResult(status="not_found", message="User not found at identity provider")
        except ProviderError as exc:
            logger.warning("Identity lookup for %s failed: %s", subject_id, exc)
            return SyncResult(status="error", message="Identity provider unavailable")
        self.store.upsert_identity(identity_from_provider_user(user))
        return None

    # ------------------------------------------------------------------
    # Explicit updates
    # ------------------------------------------------------------------

    def update(
        self,
        caller: Subject | None,
        subject_id: str,
        partial: dict[str, Any],
        defer: Defer | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> SyncResult:
        before = self.store.get_profile(caller, subject_id)
        result = self.store.update_profile(caller, subject_id, partial)
        status = _STATUS_BY_CODE.get(result.code, "error")
        if status != "updated":
            return SyncResult(status=status, message=result.message)
        self._audit(
            defer,
            caller,
            audit.PROFILE_UPDATE,
            "profiles",
            subject_id,
            before=before.snapshot() if before else None,
            after=result.profile.snapshot() if result.profile else None,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        return SyncResult(status="updated", profile=result.profile, message=result.message)

    # ------------------------------------------------------------------
    # Passive sync
    # ------------------------------------------------------------------

    def handle_identity_event(self, event: IdentityEvent, defer: Defer | None = None) -> SyncResult:
        if event.type == IDENTITY_DELETED:
            deleted = self.store.delete_identity(event.subject_id)
            if deleted:
                self._audit(defer, SYSTEM_SUBJECT, audit.IDENTITY_DELETED, "identities", event.subject_id)
            return SyncResult(status="deleted" if deleted else "not_found")

        self.store.upsert_identity(
            Identity(subject_id=event.subject_id, email=event.email, user_metadata=event.user_metadata)
        )

        if event.type == IDENTITY_UPDATED:
            partial: dict[str, Any] = {"email": event.email or ""}
            for key in ("full_name", "avatar_url"):
                value = event.user_metadata.get(key)
                if value:
                    partial[key] = value
            updated = self.update(SYSTEM_SUBJECT, event.subject_id, partial, defer=defer)
            if updated.status != "not_found":
                return updated

        # identity.created, or an update for a subject with no profile yet.
        # A concurrent creator winning is reported as FOUND by the store.
        result = self.store.get_or_create_profile(SYSTEM_SUBJECT, event.subject_id)
        status = _STATUS_BY_CODE.get(result.code, "error")
        if status == "created":
            self._audit(
                defer,
                SYSTEM_SUBJECT,
                audit.PROFILE_CREATE,
                "profiles",
                event.subject_id,
                after=result.profile.snapshot() if result.profile else None,
            )
        return SyncResult(status=status, profile=result.profile, message=result.message)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _audit(self, defer: Defer | None, *args, **kwargs) -> None:
        if self.recorder is None:
            return
        if defer is None:
            self.recorder.record(*args, **kwargs)
        else:
            defer(self.recorder.record, *args, **kwargs)
