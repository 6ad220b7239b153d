"""Job listing flow: cache, upstream fetch with one token refresh, stale fallback."""
from __future__ import annotations

from typing import List, Optional

import structlog
from sqlalchemy.orm import Session

import crud
import models
from errors import PersistenceError
from job_cache import MISS, CachedBatch, JobCache
from job_normalizer import filter_jobs, matches_query
from observability import METRICS_NAMESPACE, metric_scope
from prompt_settings import load_job_preferences
from schemas import JobQuery, JobRecord
from upwork_client import ErrorKind, JobBatch, UpworkClient
from upwork_oauth import RefreshCoordinator, UpworkOAuth

logger = structlog.get_logger(__name__)

NOT_CONNECTED_MESSAGE = "Connect your Upwork account to see real job listings"


def _payload(
    jobs: List[JobRecord],
    total: int,
    page: int,
    page_size: int,
    *,
    success: bool = True,
    cached: bool = False,
    message: str = "",
    **extra,
) -> dict:
    return {
        "success": success,
        "jobs": [job.to_json() for job in jobs],
        "count": len(jobs),
        "total": total,
        "page": page,
        "pageSize": page_size,
        "hasMore": page * page_size < total,
        "upworkConnected": True,
        "cached": cached,
        "message": message,
        **extra,
    }


def _from_cache(hit: CachedBatch, page: int, page_size: int, message: str, **extra) -> dict:
    return _payload(hit.jobs, hit.total, page, page_size, cached=True, message=message, **extra)


def _store_rows(db: Session, user_id: int, jobs: List[JobRecord]) -> None:
    try:
        crud.upsert_jobs(db, user_id, jobs)
    except PersistenceError as exc:
        logger.warning("Could not persist fetched jobs", user_id=user_id, error=exc.message)


@metric_scope
async def load_jobs(
    db: Session,
    user: models.User,
    *,
    cache: JobCache,
    client: UpworkClient,
    oauth: UpworkOAuth,
    coordinator: RefreshCoordinator,
    query: Optional[JobQuery] = None,
    page: int = 1,
    page_size: int = 50,
    force_refresh: bool = False,
    metrics=None,
) -> dict:
    """Return the JSON body for the jobs listing. Expected failures never raise."""
    metrics.set_namespace(METRICS_NAMESPACE)
    metrics.set_property("user_id", user.id)
    log = logger.bind(user_id=user.id, page=page, page_size=page_size)

    account = crud.get_upwork_account(db, user.id)
    if account is None:
        return {
            "success": True,
            "jobs": [],
            "count": 0,
            "total": 0,
            "page": page,
            "pageSize": page_size,
            "hasMore": False,
            "upworkConnected": False,
            "cached": False,
            "message": NOT_CONNECTED_MESSAGE,
        }

    key = cache.key(user.id, page, page_size)
    if not force_refresh:
        hit = cache.get(key, query)
        if hit is not MISS:
            log.info("Serving jobs from cache", jobs=len(hit.jobs))
            return _from_cache(hit, page, page_size, f"{len(hit.jobs)} jobs loaded (from cache)")

    access_token = account.access_token
    seen_refresh_token = account.refresh_token
    refreshed = False

    if account.expires_at is not None and account.expires_at <= models.utcnow():
        log.info("Stored Upwork token expired, refreshing before fetch")
        result = await coordinator.refresh(db, user.id, oauth, seen_refresh_token)
        if not result.ok:
            return _reconnect(cache, key, query, page, page_size, result.reason)
        access_token = result.tokens.access_token
        refreshed = True

    batch: JobBatch = await client.fetch_jobs(access_token, page, page_size)

    if batch.error_kind == ErrorKind.UNAUTHORIZED and not refreshed:
        log.info("Upwork rejected token, refreshing once")
        result = await coordinator.refresh(db, user.id, oauth, seen_refresh_token)
        if not result.ok:
            return _reconnect(cache, key, query, page, page_size, result.reason)
        batch = await client.fetch_jobs(result.tokens.access_token, page, page_size)

    if not batch.ok:
        metrics.put_metric("job_fetch_failed", 1, "Count")
        metrics.set_property("error_kind", batch.error_kind)
        if batch.error_kind == ErrorKind.UNAUTHORIZED:
            return _reconnect(cache, key, query, page, page_size, batch.error)
        stale = cache.get_stale(key, query)
        if stale is not MISS:
            log.warning("Serving stale jobs after upstream failure", error=batch.error)
            return _from_cache(stale, page, page_size, f"Using cached data (Upwork error: {batch.error})")
        log.warning("Job fetch failed with nothing cached", error=batch.error, error_kind=batch.error_kind)
        return _payload(
            [], 0, page, page_size, success=False, message=f"Failed to fetch jobs: {batch.error}"
        )

    preferences = load_job_preferences(db, user.id)
    jobs = filter_jobs(batch.jobs, preferences)
    cache.put(key, jobs, batch.total)
    _store_rows(db, user.id, jobs)
    metrics.put_metric("jobs_fetched", len(batch.jobs), "Count")

    visible = [job for job in jobs if matches_query(job, query)]
    message = (
        f"Loaded {len(visible)} jobs from Upwork"
        if visible
        else "No jobs found. Try different search terms or check Upwork directly."
    )
    return _payload(visible, batch.total, page, page_size, message=message)


def _reconnect(cache: JobCache, key, query, page: int, page_size: int, reason: Optional[str]) -> dict:
    message = reason or "Upwork authorization expired. Please reconnect Upwork."
    stale = cache.get_stale(key, query)
    if stale is not MISS:
        return _from_cache(stale, page, page_size, message, requiresReconnect=True)
    return _payload([], 0, page, page_size, success=False, message=message, requiresReconnect=True)
