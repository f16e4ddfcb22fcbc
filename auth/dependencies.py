"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

Components are built once in lifespan and live on app.state:
  app.state.store         -- ProfileStore
  app.state.resolver      -- SessionResolver
  app.state.synchronizer  -- ProfileSynchronizer
  app.state.recorder      -- AuditRecorder
  app.state.reconciler    -- OAuthCallbackReconciler

The getters below hand them to route handlers, so tests can swap any of them
with app.dependency_overrides.

try_get_current_session() is the soft variant (returns None on failure).
get_current_session() wraps it and raises HTTP 401 if unauthenticated.
get_current_subject() returns the policy Subject for the caller: a verified
user session, or a signed service credential.
require_elevated() wraps get_current_subject() and raises HTTP 403 unless the
subject holds an elevated role.

Layer rule: no imports from api/ or web/.
  auth/dependencies.py may import from fastapi (for Depends/HTTPException/Request)
  because this module is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

from fastapi import Depends, HTTPException, Request

from auth.audit import AuditRecorder
from auth.callback import OAuthCallbackReconciler
from auth.models import Session, Subject
from auth.profiles import ProfileSynchronizer
from auth.session import SessionResolver
from auth.store import ProfileStore


def get_store(request: Request) -> ProfileStore:
    return request.app.state.store


def get_resolver(request: Request) -> SessionResolver:
    return request.app.state.resolver


def get_synchronizer(request: Request) -> ProfileSynchronizer:
    return request.app.state.synchronizer


def get_recorder(request: Request) -> AuditRecorder:
    return request.app.state.recorder


def get_reconciler(request: Request) -> OAuthCallbackReconciler:
    return request.app.state.reconciler


def try_get_current_session(
    request: Request,
    resolver: SessionResolver = Depends(get_resolver),
) -> Session | None:
    """Resolve the request to a verified Session, or None. Never raises."""
    return resolver.resolve(request)


def get_current_session(session: Session | None = Depends(try_get_current_session)) -> Session:
    """Require authentication. Raises HTTP 401 if the request is not authenticated.

    Use as a FastAPI dependency:
        @router.get("/protected")
        async def route(session: Session = Depends(get_current_session)): ...
    """
    if session is None:
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthorized", "message": "Authentication required."},
        )
    return session


def get_current_subject(
    request: Request,
    resolver: SessionResolver = Depends(get_resolver),
) -> Subject:
    """Require a user session or a signed service credential. Raises HTTP 401 otherwise."""
    subject = resolver.subject(request)
    if subject is None:
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthorized", "message": "Authentication required."},
        )
    return subject


def require_elevated(subject: Subject = Depends(get_current_subject)) -> Subject:
    """Require an elevated role. Raises HTTP 401 if unauthenticated, HTTP 403 if not elevated.

    Use as a FastAPI dependency:
        @router.post("/hooks/x")
        async def route(subject: Subject = Depends(require_elevated)): ...
    """
    if not subject.elevated:
        raise HTTPException(
            status_code=403,
            detail={"code": "forbidden", "message": "Elevated access required."},
        )
    return subject
