from typing import Optional
from urllib.parse import urlencode

from fastapi import Depends, FastAPI, Query, Request, Response, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, RedirectResponse
from sqlalchemy.orm import Session
import structlog

import models
import schemas
import crud
import logic
import job_feed
from auth import (
    CurrentUser,
    authenticate,
    clear_session_cookie,
    get_optional_user,
    get_session_token,
    register_user,
    set_session_cookie,
    start_session,
)
from database import create_db_and_tables, get_db
from errors import AppError, ConfigurationError, NotFound, TokenExchangeError, InvalidOAuthState
from job_cache import JobCache
from prompt_settings import load_prompt_settings, save_prompt_settings
from settings import get_settings
from request_id_middleware import RequestIdMiddleware
from observability import init_observability
from upwork_client import UpworkClient
from upwork_oauth import (
    RefreshCoordinator,
    UpworkOAuth,
    build_authorization_url,
    extract_upwork_user_id,
    issue_state,
    verify_state,
)


# Initialise observability before creating app
init_observability()
logger = structlog.get_logger(__name__)

# Create DB tables on startup
create_db_and_tables()

app = FastAPI(
    title="Upwork Proposal Assistant",
    description="Backend API for browsing Upwork jobs and drafting proposals",
    version="0.1.0",
)

# --- CORS Middleware ---
app.add_middleware(
    CORSMiddleware,
    allow_origins=get_settings().cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.add_middleware(RequestIdMiddleware)


# --- Process-wide collaborators, overridable in tests --- #
_job_cache = JobCache(ttl_seconds=get_settings().job_cache_ttl_seconds)
_refresh_coordinator = RefreshCoordinator()


def get_job_cache() -> JobCache:
    return _job_cache


def get_refresh_coordinator() -> RefreshCoordinator:
    return _refresh_coordinator


def get_upwork_client() -> UpworkClient:
    return UpworkClient(get_settings())


def get_upwork_oauth() -> UpworkOAuth:
    return UpworkOAuth(get_settings())


# --- Error handlers --- #
@app.exception_handler(AppError)
async def app_error_handler(request: Request, exc: AppError):
    log = logger.warning if exc.status_code < 500 else logger.error
    log("Request failed", error=exc.message, status=exc.status_code, error_type=type(exc).__name__)
    return JSONResponse(status_code=exc.status_code, content=exc.to_payload())


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    fields = sorted({str(err["loc"][-1]) for err in exc.errors() if err.get("loc")})
    message = "Missing or invalid fields: " + ", ".join(fields) if fields else "Invalid request"
    logger.info("Request validation failed", fields=fields)
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"success": False, "error": message, "fields": fields},
    )


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error", error_type=type(exc).__name__)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"success": False, "error": "Internal server error"},
    )


@app.get("/health", include_in_schema=False)
def health():
    return {"status": "ok"}


# --- Auth Endpoints --- #
def _user_json(user: models.User) -> dict:
    return schemas.User.model_validate(user).model_dump()


@app.post("/api/auth/signup", tags=["Auth"])
def signup(request: schemas.SignupRequest, response: Response, db: Session = Depends(get_db)):
    user = register_user(db, request)
    set_session_cookie(response, start_session(db, user))
    return {"success": True, "message": "Account created", "user": _user_json(user)}


@app.post("/api/auth/login", tags=["Auth"])
def login(request: schemas.LoginRequest, response: Response, db: Session = Depends(get_db)):
    user = authenticate(db, request.email, request.password)
    set_session_cookie(response, start_session(db, user))
    logger.info("User logged in", user_id=user.id)
    return {"success": True, "message": "Login successful", "user": _user_json(user)}


@app.post("/api/auth/logout", tags=["Auth"])
def logout(
    response: Response,
    token: Optional[str] = Depends(get_session_token),
    db: Session = Depends(get_db),
):
    if token:
        crud.delete_session(db, token)
    clear_session_cookie(response)
    return {"success": True, "message": "Logged out"}


@app.get("/api/auth/me", tags=["Auth"])
def whoami(user: Optional[models.User] = Depends(get_optional_user)):
    # Logged-out callers get 200 so the UI can branch without error handling
    if user is None:
        return {"authenticated": False, "error": "Not authenticated"}
    return {"authenticated": True, "user": _user_json(user)}


# --- Upwork connection Endpoints --- #
def _require_upwork_config():
    settings = get_settings()
    if not settings.upwork_configured or not settings.upwork_redirect_uri:
        raise ConfigurationError()
    return settings


async def _connect_account(db: Session, user: models.User, code: str, oauth: UpworkOAuth, cache: JobCache):
    tokens = await oauth.exchange_code(code)
    account = crud.upsert_upwork_account(
        db,
        user.id,
        access_token=tokens.access_token,
        refresh_token=tokens.refresh_token,
        token_type=tokens.token_type,
        expires_at=tokens.expires_at(),
        upwork_user_id=extract_upwork_user_id(tokens.access_token),
    )
    cache.invalidate(user.id)
    logger.info("Upwork account connected", user_id=user.id)
    return account


@app.get("/api/upwork/auth", tags=["Upwork"])
def upwork_authorization_url(current_user: CurrentUser):
    settings = _require_upwork_config()
    state = issue_state(current_user.id, settings)
    url = build_authorization_url(
        settings.upwork_client_id,
        settings.upwork_redirect_uri,
        settings.upwork_scopes,
        state,
        settings.upwork_authorize_url,
    )
    logger.info("Upwork authorization URL issued", user_id=current_user.id)
    return {"success": True, "url": url, "state": state, "message": "Upwork authorization URL generated"}


@app.get("/api/upwork/callback", tags=["Upwork"])
async def upwork_callback(
    code: Optional[str] = None,
    state: Optional[str] = None,
    error: Optional[str] = None,
    user: Optional[models.User] = Depends(get_optional_user),
    db: Session = Depends(get_db),
    oauth: UpworkOAuth = Depends(get_upwork_oauth),
    cache: JobCache = Depends(get_job_cache),
):
    dashboard = f"{get_settings().app_base_url.rstrip('/')}/dashboard"

    def redirect(**params) -> RedirectResponse:
        return RedirectResponse(f"{dashboard}?{urlencode(params)}", status_code=status.HTTP_302_FOUND)

    if error:
        logger.warning("Upwork returned an OAuth error", error=error)
        return redirect(error="oauth_failed", message=error)
    if user is None:
        return redirect(error="not_authenticated")
    if not code:
        return redirect(error="no_authorization_code")
    try:
        verify_state(state, user.id)
        await _connect_account(db, user, code, oauth, cache)
    except InvalidOAuthState:
        return redirect(error="invalid_state")
    except TokenExchangeError as exc:
        return redirect(error="token_exchange_failed", message=exc.message)
    return redirect(success="upwork_connected")


@app.post("/api/upwork/connect", tags=["Upwork"])
async def upwork_connect(
    request: schemas.ConnectRequest,
    current_user: CurrentUser,
    db: Session = Depends(get_db),
    oauth: UpworkOAuth = Depends(get_upwork_oauth),
    cache: JobCache = Depends(get_job_cache),
):
    verify_state(request.state, current_user.id)
    account = await _connect_account(db, current_user, request.code, oauth, cache)
    return {
        "success": True,
        "message": "Upwork account connected successfully",
        "upworkConnected": True,
        "connectionDate": account.created_at,
    }


@app.post("/api/upwork/refresh-token", tags=["Upwork"])
async def upwork_refresh_token(
    current_user: CurrentUser,
    db: Session = Depends(get_db),
    oauth: UpworkOAuth = Depends(get_upwork_oauth),
    coordinator: RefreshCoordinator = Depends(get_refresh_coordinator),
):
    result = await coordinator.refresh(db, current_user.id, oauth)
    if not result.ok:
        return {"success": False, "message": result.reason, "requiresReconnect": True}
    return {"success": True, "message": "Token refreshed successfully"}


@app.get("/api/upwork/status", tags=["Upwork"])
async def upwork_status(
    current_user: CurrentUser,
    db: Session = Depends(get_db),
    client: UpworkClient = Depends(get_upwork_client),
):
    settings = get_settings()
    account = crud.get_upwork_account(db, current_user.id)
    token_valid = False
    if account is not None:
        token_valid = await client.check_token(account.access_token)
    if account is None:
        message = "Upwork account not connected"
    elif token_valid:
        message = "Upwork account connected & token valid"
    else:
        message = "Upwork connected but token expired"
    return {
        "success": True,
        "configured": settings.upwork_configured,
        "connected": account is not None,
        "upworkConnected": account is not None,
        "tokenValid": token_valid,
        "connectionDate": account.created_at if account else None,
        "message": message,
    }


@app.post("/api/upwork/disconnect", tags=["Upwork"])
def upwork_disconnect(
    current_user: CurrentUser,
    db: Session = Depends(get_db),
    cache: JobCache = Depends(get_job_cache),
):
    if not crud.delete_upwork_account(db, current_user.id):
        raise NotFound("No Upwork account connected")
    cache.invalidate(current_user.id)
    logger.info("Upwork account disconnected", user_id=current_user.id)
    return {"success": True, "message": "Upwork account disconnected successfully"}


# --- Job Endpoints --- #
@app.get("/api/jobs", tags=["Jobs"])
async def list_jobs(
    current_user: CurrentUser,
    search: Optional[str] = None,
    category: Optional[str] = None,
    page: int = Query(1, ge=1),
    page_size: Optional[int] = Query(None, alias="pageSize", ge=1, le=100),
    refresh: bool = False,
    db: Session = Depends(get_db),
    cache: JobCache = Depends(get_job_cache),
    client: UpworkClient = Depends(get_upwork_client),
    oauth: UpworkOAuth = Depends(get_upwork_oauth),
    coordinator: RefreshCoordinator = Depends(get_refresh_coordinator),
):
    return await job_feed.load_jobs(
        db,
        current_user,
        cache=cache,
        client=client,
        oauth=oauth,
        coordinator=coordinator,
        query=schemas.JobQuery(search=search, category=category),
        page=page,
        page_size=page_size or get_settings().default_page_size,
        force_refresh=refresh,
    )


@app.post("/api/jobs/cache/clear", tags=["Jobs"])
def clear_job_cache(current_user: CurrentUser, cache: JobCache = Depends(get_job_cache)):
    cache.invalidate(current_user.id)
    return {"success": True, "message": "Cache cleared successfully"}


# --- Prompt settings Endpoints --- #
@app.get("/api/prompts", tags=["Prompts"])
def get_prompts(current_user: CurrentUser, db: Session = Depends(get_db)):
    settings = load_prompt_settings(db, current_user.id)
    return {"success": True, "settings": settings.to_json()}


@app.post("/api/prompts", tags=["Prompts"])
def update_prompts(
    request: schemas.PromptSettingsUpdate,
    current_user: CurrentUser,
    db: Session = Depends(get_db),
    cache: JobCache = Depends(get_job_cache),
):
    settings = save_prompt_settings(db, current_user.id, request.settings)
    # Cached batches were filtered with the old job preferences
    cache.invalidate(current_user.id)
    return {"success": True, "message": "Settings saved successfully", "settings": settings.to_json()}


# --- Proposal Endpoints --- #
def _proposal_json(proposal: models.Proposal) -> dict:
    return schemas.ProposalOut.model_validate(proposal).model_dump(mode="json")


@app.post("/api/proposals/generate", tags=["Proposals"])
async def generate_proposal_endpoint(
    request: schemas.GenerateProposalRequest,
    current_user: CurrentUser,
    db: Session = Depends(get_db),
):
    result = await logic.generate_proposal(db, current_user, request)
    return {
        "success": True,
        "proposal": result.proposal,
        "status": result.status.value,
        "proposalId": result.proposal_id,
        "fallback": result.used_fallback,
        "message": result.fallback_reason or "Proposal generated",
        "details": {
            "model": result.model,
            "length": len(result.proposal),
            "source": "fallback" if result.used_fallback else "llm",
        },
    }


@app.post("/api/proposals/save", tags=["Proposals"])
def save_proposal_endpoint(
    request: schemas.SaveProposalRequest,
    current_user: CurrentUser,
    db: Session = Depends(get_db),
):
    proposal, is_new = logic.save_proposal(db, current_user, request)
    return {
        "success": True,
        "message": "Proposal saved to history!" if is_new else "Proposal updated with your changes!",
        "proposalId": proposal.id,
        "isNew": is_new,
        "status": proposal.status.value,
    }


@app.post("/api/proposals/send", tags=["Proposals"])
async def send_proposal_endpoint(
    request: schemas.SendProposalRequest,
    current_user: CurrentUser,
    db: Session = Depends(get_db),
    client: UpworkClient = Depends(get_upwork_client),
    oauth: UpworkOAuth = Depends(get_upwork_oauth),
    coordinator: RefreshCoordinator = Depends(get_refresh_coordinator),
):
    outcome = await logic.send_proposal(db, current_user, request, client, oauth, coordinator)
    return {
        "success": True,
        "message": outcome.message,
        "proposalId": outcome.proposal.id,
        "isNew": outcome.is_new,
        "status": outcome.proposal.status.value,
        "sentAt": outcome.proposal.sent_at,
        "upworkSubmitted": outcome.upwork_submitted,
        "upworkProposalId": outcome.upwork_proposal_id,
    }


@app.get("/api/proposals/history", tags=["Proposals"])
def proposal_history(
    current_user: CurrentUser,
    limit: int = Query(50, ge=1, le=200),
    db: Session = Depends(get_db),
):
    proposals = crud.get_proposals_for_user(db, current_user.id, limit=limit)
    return {
        "success": True,
        "proposals": [_proposal_json(proposal) for proposal in proposals],
        "total": len(proposals),
    }


@app.get("/api/proposals/patterns", tags=["Proposals"])
def proposal_patterns(current_user: CurrentUser, db: Session = Depends(get_db)):
    edits = crud.get_recent_edits(db, current_user.id, limit=logic.PATTERN_SAMPLE_SIZE)
    return {"success": True, "patterns": logic.summarize_patterns(edits), "totalSamples": len(edits)}


@app.put("/api/proposals/{proposal_id}", tags=["Proposals"])
def update_proposal_endpoint(
    proposal_id: int,
    request: schemas.UpdateProposalRequest,
    current_user: CurrentUser,
    db: Session = Depends(get_db),
):
    proposal = crud.get_proposal(db, proposal_id, current_user.id)
    if proposal is None:
        raise NotFound("Proposal not found")
    proposal = crud.update_proposal_text(db, proposal, request.edited_proposal)
    logic.record_edit(db, current_user.id, proposal.job_id, proposal.generated_proposal, request.edited_proposal)
    return {"success": True, "message": "Proposal updated", "proposal": _proposal_json(proposal)}


@app.delete("/api/proposals/{proposal_id}", tags=["Proposals"])
def delete_proposal_endpoint(proposal_id: int, current_user: CurrentUser, db: Session = Depends(get_db)):
    if not crud.delete_proposal(db, proposal_id, current_user.id):
        raise NotFound("Proposal not found")
    logger.info("Proposal deleted", user_id=current_user.id, proposal_id=proposal_id)
    return {"success": True, "message": "Proposal deleted", "proposalId": proposal_id}


# --- Main execution --- (for running with uvicorn)
if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)
