"""Client for the Upwork GraphQL marketplace API and proposal submission."""
from __future__ import annotations

from typing import Any, List, Optional

import httpx
import structlog
from pydantic import BaseModel, Field

from job_normalizer import normalize_all
from schemas import JobRecord
from settings import Settings, get_settings
from upwork_oauth import extract_upwork_user_id

logger = structlog.get_logger(__name__)

COVER_LETTER_LIMIT = 4000

JOBS_QUERY = """
query MarketplaceJobs($filter: MarketplaceJobPostingsSearchFilter) {
  marketplaceJobPostingsSearch(marketPlaceJobFilter: $filter) {
    totalCount
    edges {
      node {
        id
        title
        description
        amount { rawValue currency displayValue }
        hourlyBudgetMin { rawValue currency displayValue }
        hourlyBudgetMax { rawValue currency displayValue }
        skills { name }
        totalApplicants
        category
        subcategory
        createdDateTime
        publishedDateTime
        experienceLevel
        engagement
        duration
        durationLabel
        client {
          totalHires
          totalFeedback
          totalSpent { rawValue currency }
          verificationStatus
          location { country }
        }
      }
    }
  }
}
"""

# Known places the job edges have lived across API revisions, tried in order
EDGE_PATHS = (
    ("marketplaceJobPostingsSearch", "edges"),
    ("marketplaceJobPostings", "edges"),
    ("jobs", "search", "edges"),
    ("graphql", "jobs", "search", "edges"),
)
TOTAL_PATHS = (
    ("marketplaceJobPostingsSearch", "totalCount"),
    ("marketplaceJobPostings", "totalCount"),
    ("jobs", "search", "totalCount"),
    ("graphql", "jobs", "search", "totalCount"),
)


class ErrorKind:
    TIMEOUT = "timeout"
    UNAVAILABLE = "unavailable"
    UNAUTHORIZED = "unauthorized"
    SCHEMA_MISMATCH = "schema_mismatch"
    UPSTREAM_ERROR = "upstream_error"


class JobBatch(BaseModel):
    jobs: List[JobRecord] = Field(default_factory=list)
    total: int = 0
    page: int = 1
    page_size: int = 50
    has_more: bool = False
    error: Optional[str] = None
    error_kind: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def failed(cls, page: int, page_size: int, error: str, kind: str) -> "JobBatch":
        return cls(page=page, page_size=page_size, error=error, error_kind=kind)


class SubmissionResult(BaseModel):
    ok: bool
    proposal_id: Optional[str] = None
    status: Optional[str] = None
    message: str
    status_code: Optional[int] = None


def _lookup(data: Any, path: tuple) -> Any:
    for key in path:
        if not isinstance(data, dict):
            return None
        data = data.get(key)
    return data


def locate_edges(data: Any) -> Optional[list]:
    for path in EDGE_PATHS:
        edges = _lookup(data, path)
        if isinstance(edges, list):
            return edges
    return None


def locate_total(data: Any) -> Optional[int]:
    for path in TOTAL_PATHS:
        total = _lookup(data, path)
        if isinstance(total, int) and not isinstance(total, bool):
            return total
    return None


_SUBMISSION_ERRORS = {
    400: "Invalid request. Please check job ID and proposal content.",
    401: "Upwork authorization expired. Please reconnect Upwork.",
    403: "Permission denied. Please check your Upwork account permissions.",
    429: "Rate limit exceeded. Please try again later.",
}


class UpworkClient:
    """Thin async wrapper over Upwork's HTTP APIs.

    ``fetch_jobs`` and ``submit_proposal`` never raise; every failure is
    reported through the returned object.
    """

    def __init__(self, settings: Optional[Settings] = None, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.settings = settings or get_settings()
        self._transport = transport

    def _client(self, access_token: str, extra_headers: Optional[dict] = None) -> httpx.AsyncClient:
        headers = {
            "Authorization": f"Bearer {access_token}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        }
        headers.update(extra_headers or {})
        return httpx.AsyncClient(
            transport=self._transport,
            timeout=self.settings.upstream_timeout_seconds,
            headers=headers,
        )

    async def _graphql(self, access_token: str, query: str, variables: Optional[dict] = None) -> httpx.Response:
        async with self._client(access_token) as client:
            return await client.post(
                self.settings.upwork_graphql_url,
                json={"query": query, "variables": variables or {}},
            )

    async def fetch_jobs(self, access_token: str, page: int = 1, page_size: int = 50) -> JobBatch:
        page = max(page, 1)
        offset = (page - 1) * page_size
        variables = {"filter": {"pagination_eq": {"first": page_size, "after": str(offset)}}}
        log = logger.bind(page=page, page_size=page_size)

        try:
            response = await self._graphql(access_token, JOBS_QUERY, variables)
        except httpx.TimeoutException:
            log.warning("Upwork job search timed out")
            return JobBatch.failed(page, page_size, "Upwork did not respond in time", ErrorKind.TIMEOUT)
        except httpx.HTTPError as exc:
            log.warning("Upwork job search transport error", error=str(exc))
            return JobBatch.failed(page, page_size, "Could not reach Upwork", ErrorKind.UNAVAILABLE)

        if response.status_code in (401, 403):
            log.info("Upwork rejected access token", status=response.status_code)
            return JobBatch.failed(
                page, page_size, "Upwork rejected the access token", ErrorKind.UNAUTHORIZED
            )
        if response.status_code >= 500:
            log.warning("Upwork job search failed", status=response.status_code)
            return JobBatch.failed(
                page, page_size, f"Upwork API error: {response.status_code}", ErrorKind.UNAVAILABLE
            )
        if response.status_code >= 400:
            log.warning("Upwork job search refused", status=response.status_code, body=response.text[:300])
            return JobBatch.failed(
                page, page_size, f"Upwork API error: {response.status_code}", ErrorKind.UPSTREAM_ERROR
            )

        try:
            body = response.json()
        except ValueError:
            return JobBatch.failed(page, page_size, "Upwork returned invalid JSON", ErrorKind.SCHEMA_MISMATCH)

        if isinstance(body, dict) and body.get("errors"):
            first = body["errors"][0] if isinstance(body["errors"], list) and body["errors"] else {}
            message = first.get("message") if isinstance(first, dict) else None
            log.warning("Upwork GraphQL errors", errors=str(body["errors"])[:300])
            kind = ErrorKind.UPSTREAM_ERROR
            if message and any(word in message.lower() for word in ("unauthorized", "expired", "token")):
                kind = ErrorKind.UNAUTHORIZED
            return JobBatch.failed(page, page_size, message or "Upwork GraphQL error", kind)

        data = body.get("data") if isinstance(body, dict) else None
        edges = locate_edges(data)
        if edges is None:
            log.warning("Unrecognised job search response shape", keys=list((data or {}).keys()))
            return JobBatch.failed(
                page, page_size, "Unexpected response shape from Upwork", ErrorKind.SCHEMA_MISMATCH
            )

        jobs = normalize_all(edge.get("node", edge) if isinstance(edge, dict) else edge for edge in edges)
        total = locate_total(data)
        if total is None:
            total = offset + len(jobs)
        log.info("Fetched Upwork jobs", jobs=len(jobs), total=total)
        return JobBatch(
            jobs=jobs,
            total=total,
            page=page,
            page_size=page_size,
            has_more=page * page_size < total,
        )

    async def check_token(self, access_token: str) -> bool:
        """One-item search used as a liveness probe for the stored token."""
        variables = {"filter": {"pagination_eq": {"first": 1, "after": "0"}}}
        try:
            response = await self._graphql(access_token, JOBS_QUERY, variables)
        except httpx.HTTPError as exc:
            logger.info("Upwork token probe failed", error=str(exc))
            return False
        return response.is_success

    async def submit_proposal(
        self,
        access_token: str,
        job_id: str,
        cover_letter: str,
        bid_amount: Optional[float] = None,
    ) -> SubmissionResult:
        """Best-effort submission of a cover letter to Upwork."""
        extra_headers = {}
        tenant_id = extract_upwork_user_id(access_token)
        if tenant_id:
            extra_headers["X-Upwork-Tenant-Id"] = tenant_id
        payload = {
            "cover_letter": cover_letter[:COVER_LETTER_LIMIT],
            "bid_amount": bid_amount,
            "estimated_time": None,
            "attachments": [],
            "terms_and_conditions_accepted": True,
        }
        url = self.settings.upwork_proposal_url_template.format(job_id=job_id)
        log = logger.bind(job_id=job_id)

        try:
            async with self._client(access_token, extra_headers) as client:
                response = await client.post(url, json=payload)
        except httpx.TimeoutException:
            log.warning("Upwork proposal submission timed out")
            return SubmissionResult(ok=False, message="Upwork did not respond in time")
        except httpx.HTTPError as exc:
            log.warning("Upwork proposal submission failed", error=str(exc))
            return SubmissionResult(ok=False, message="Could not reach Upwork")

        if not response.is_success:
            log.warning("Upwork refused proposal", status=response.status_code, body=response.text[:300])
            message = _SUBMISSION_ERRORS.get(
                response.status_code, f"Upwork API error: {response.status_code}"
            )
            return SubmissionResult(ok=False, message=message, status_code=response.status_code)

        try:
            body = response.json()
        except ValueError:
            body = {}
        if not isinstance(body, dict):
            body = {}
        proposal_id = body.get("proposal_id") or body.get("id")
        log.info("Proposal submitted to Upwork", upwork_proposal_id=proposal_id)
        return SubmissionResult(
            ok=True,
            proposal_id=str(proposal_id) if proposal_id is not None else None,
            status=body.get("status") or "submitted",
            message="Proposal successfully submitted to Upwork",
            status_code=response.status_code,
        )
