"""
auth/audit.py -- Best-effort recording of sensitive actions.

AuditRecorder.record() never raises and never returns a value. A failed write
is reported through the "authgate.audit" logger (with traceback) and the
caller carries on: an unavailable audit table must not turn a successful
profile update into a 500.

HTTP handlers do not call record() inline. They schedule it with FastAPI's
BackgroundTasks so the response is sent first:

    background_tasks.add_task(recorder.record, actor, "profile.update", ...)

Read access is not handled here. ProfileStore.list_audit_events() filters by
the audit_logs rule in auth.policy.RULE_TABLE.

Layer rule: no imports from api/ or web/.
"""

from __future__ import annotations

import logging
from typing import Any

from auth.models import AuditEvent, Subject
from auth.store import ProfileStore

logger = logging.getLogger("authgate.audit")

# Action names used across the codebase. Free-form strings are accepted, but
# keeping the known ones here makes grep and dashboards easier.
PROFILE_CREATE = "profile.create"
PROFILE_UPDATE = "profile.update"
ACCESS_DENIED = "access.denied"
SIGN_OUT = "auth.sign_out"
IDENTITY_DELETED = "identity.deleted"


class AuditRecorder:
    def __init__(self, store: ProfileStore) -> None:
        self.store = store

    def record(
        self,
        actor: Subject | str | None,
        action: str,
        resource_type: str | None = None,
        resource_id: str | None = None,
        before: dict[str, Any] | None = None,
        after: dict[str, Any] | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> None:
        """Append an audit event. Failures are logged, never raised."""
        actor_id = actor.id if isinstance(actor, Subject) else actor
        audit_event = AuditEvent(
            action=action,
            actor_id=actor_id,
            resource_type=resource_type,
            resource_id=resource_id,
            before=before,
            after=after,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        try:
            self.store.log_audit_event(audit_event)
        except Exception:
            logger.exception(
                "Audit write failed (action=%s actor=%s resource=%s/%s)",
                action,
                actor_id,
                resource_type,
                resource_id,
            )
