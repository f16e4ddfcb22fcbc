"""
web/routes.py -- Browser-facing OAuth routes for AuthGate.

These routes serve the redirect legs of the OAuth flow. They share app.state
with the API routes (same store, resolver, reconciler) but speak in
redirects and one small HTML page instead of JSON.

Routes:
  GET  /login/oauth/{provider}  -- start the PKCE flow, redirect to the provider
  GET  /auth/callback           -- reconcile the landing, render the status page

PKCE verifier handling:
  The verifier is stored in the signed SessionMiddleware cookie when the flow
  starts and popped when the callback lands. A second landing with the same
  URL finds no verifier, its exchange fails, and the reconciler falls back to
  looking up the session the first landing established.
"""

import logging
from pathlib import Path

from fastapi import APIRouter, BackgroundTasks, Depends, Request
from fastapi.responses import HTMLResponse, RedirectResponse
from fastapi.templating import Jinja2Templates
from starlette.concurrency import run_in_threadpool

from auth.callback import OAuthCallbackReconciler
from auth.dependencies import get_reconciler, get_resolver, get_synchronizer
from auth.profiles import ProfileSynchronizer
from auth.provider import IdentityProviderClient, get_provider_client
from auth.session import SessionResolver, read_credentials, set_session_cookies
from core.config import get_settings

logger = logging.getLogger("authgate.web")

templates = Jinja2Templates(directory=str(Path(__file__).parent / "templates"))
router = APIRouter()

_VERIFIER_KEY = "pkce_verifier"


def _safe_redirect(target: str, fallback: str = "/") -> str:
    """Only accept relative, same-site paths as post-callback targets. [C2]

    Rejects absolute URLs and protocol-relative //host paths, which would
    send the browser off-site.
    """
    if target and target.startswith("/") and not target.startswith("//"):
        return target
    return fallback


@router.get("/login/oauth/{provider}")
def oauth_redirect(
    request: Request,
    provider: str,
    client: IdentityProviderClient = Depends(get_provider_client),
) -> RedirectResponse:
    """Redirect the browser to the identity provider's authorization page.

    Validates the provider name against OAUTH_PROVIDERS before redirecting so
    a crafted name cannot start a flow the deployment did not enable.
    """
    cfg = get_settings()
    if provider not in cfg.oauth_providers:
        logger.info("OAuth start rejected for unknown provider %r", provider)
        failure = _safe_redirect(cfg.callback_failure_redirect, "/login")
        return RedirectResponse(f"{failure}?error=oauth_failed", status_code=302)

    url, code_verifier = client.start_oauth(provider, cfg.callback_url)
    request.session[_VERIFIER_KEY] = code_verifier
    resp = RedirectResponse(url, status_code=302)
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


@router.get(get_settings().callback_path, response_class=HTMLResponse, name="auth_callback")
async def auth_callback(
    request: Request,
    background_tasks: BackgroundTasks,
    reconciler: OAuthCallbackReconciler = Depends(get_reconciler),
    resolver: SessionResolver = Depends(get_resolver),
    synchronizer: ProfileSynchronizer = Depends(get_synchronizer),
) -> HTMLResponse:
    """Finish an OAuth (or e-mail link) landing.

    Flow:
      1. Pop the PKCE verifier -- a replayed landing has none.
      2. Reconcile: error param -> Failed; code -> exchange, falling back to
         session lookup; neither -> session lookup.
      3. On success, provision the profile and set the token cookies.
      4. Render the status page. It strips code/error params from the
         visible URL and navigates on after the configured delay.
    """
    code_verifier = request.session.pop(_VERIFIER_KEY, None)
    outcome = await reconciler.reconcile(str(request.url), code_verifier, read_credentials(request))

    if outcome.succeeded and outcome.session is not None:
        result = await run_in_threadpool(
            synchronizer.get_or_create,
            resolver.subject_for(outcome.session),
            outcome.session.subject_id,
            background_tasks.add_task,
        )
        if not result.ok:
            logger.warning(
                "Signed in %s but profile provisioning returned %s", outcome.session.subject_id, result.status
            )

    resp = templates.TemplateResponse(
        request,
        "callback.html",
        {
            "succeeded": outcome.succeeded,
            "message": outcome.message,
            "clean_url": outcome.clean_url,
            "redirect_to": _safe_redirect(outcome.redirect_to),
            "delay_ms": int(outcome.delay_seconds * 1000),
            "delay_seconds": outcome.delay_seconds,
        },
    )
    tokens = outcome.tokens
    if tokens is not None:
        set_session_cookies(resp, tokens)
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp
