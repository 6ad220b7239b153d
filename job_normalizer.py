"""Normalization of Upwork job nodes into ``schemas.JobRecord``.

Upwork's GraphQL schema drifts between revisions, so every canonical field
is resolved by an ordered list of extractors kept in ``FIELD_EXTRACTORS``.
Each extractor takes the raw node and returns a value or ``None``; the first
non-empty result wins and an extractor that trips over a malformed node is
simply skipped.
"""
from __future__ import annotations

import re
import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Iterable, List, NamedTuple, Optional

import structlog

from schemas import ClientInfo, JobPreferences, JobQuery, JobRecord

logger = structlog.get_logger(__name__)

HOURS_PER_MONTH = 160
MAX_SKILLS = 5
CURRENCY_SYMBOLS = {"USD": "$", "EUR": "€", "GBP": "£"}
_FIRST_NUMBER = re.compile(r"\d[\d,]*(?:\.\d+)?")

Extractor = Callable[[dict], Any]


class Budget(NamedTuple):
    text: str
    value: Optional[float]


def _dig(node: Any, *path: str) -> Any:
    for key in path:
        if not isinstance(node, dict):
            return None
        node = node.get(key)
    return node


def _to_float(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, dict):
        value = value.get("rawValue", value.get("amount"))
    try:
        number = float(str(value).replace(",", "").strip())
    except (TypeError, ValueError):
        return None
    return number if number > 0 else None


def _symbol(currency: Optional[str]) -> str:
    currency = (currency or "USD").upper()
    return CURRENCY_SYMBOLS.get(currency, f"{currency} ")


def format_money(amount: float, currency: Optional[str] = "USD") -> str:
    return f"{_symbol(currency)}{amount:.2f}"


def format_hourly(minimum: Optional[float], maximum: Optional[float], currency: Optional[str] = "USD") -> str:
    low = minimum or maximum or 0.0
    high = maximum or low
    symbol = _symbol(currency)
    if low == high:
        return f"{symbol}{low:.2f}/hr"
    return f"{symbol}{low:.2f}-{high:.2f}/hr"


def _clean_label(value: Any) -> Optional[str]:
    if not isinstance(value, str) or not value.strip():
        return None
    return re.sub(r"\b\w", lambda m: m.group(0).upper(), value.replace("_", " ").strip().lower())


def format_posted_date(value: Any) -> Optional[str]:
    """``"Jan 5, 2025"`` from an ISO string or epoch milliseconds."""
    if value in (None, ""):
        return None
    if isinstance(value, (int, float)):
        moment = datetime.fromtimestamp(value / 1000, tz=timezone.utc)
    else:
        text = str(value).strip()
        if text.isdigit():
            moment = datetime.fromtimestamp(int(text) / 1000, tz=timezone.utc)
        else:
            moment = datetime.fromisoformat(text.replace("Z", "+00:00"))
    return f"{moment.strftime('%b')} {moment.day}, {moment.year}"


# --- Budget extractors ---
def _fixed_amount(node: dict) -> Optional[Budget]:
    amount = _to_float(_dig(node, "amount", "rawValue"))
    if amount is None:
        return None
    return Budget(format_money(amount, _dig(node, "amount", "currency")), amount)


def _hourly_range(node: dict) -> Optional[Budget]:
    low = _to_float(_dig(node, "hourlyBudgetMin", "rawValue"))
    high = _to_float(_dig(node, "hourlyBudgetMax", "rawValue"))
    if low is None and high is None:
        return None
    currency = _dig(node, "hourlyBudgetMin", "currency") or _dig(node, "hourlyBudgetMax", "currency")
    return Budget(format_hourly(low, high, currency), (low or high) * HOURS_PER_MONTH)


def _budget_amount(node: dict) -> Optional[Budget]:
    amount = _to_float(_dig(node, "budget", "amount"))
    if amount is None:
        return None
    return Budget(format_money(amount, _dig(node, "budget", "currency")), amount)


def _hourly_budget(node: dict) -> Optional[Budget]:
    hourly = node.get("hourlyBudget")
    if isinstance(hourly, dict):
        low, high = _to_float(hourly.get("min")), _to_float(hourly.get("max"))
        currency = hourly.get("currency")
    else:
        low, high, currency = _to_float(hourly), None, None
    if low is None and high is None:
        return None
    return Budget(format_hourly(low, high, currency), (low or high) * HOURS_PER_MONTH)


def _display_value(node: dict) -> Optional[Budget]:
    display = _dig(node, "amount", "displayValue")
    if not isinstance(display, str) or not display.strip():
        return None
    # Ranges like "$500 - $1,000" are valued at their lower bound
    first = _FIRST_NUMBER.search(display)
    value = _to_float(first.group().replace(",", "")) if first else None
    if any(symbol in display for symbol in CURRENCY_SYMBOLS.values()):
        return Budget(display.strip(), value)
    if value is not None:
        return Budget(format_money(value), value)
    return None


# --- Client ---
def _client(node: dict) -> Optional[ClientInfo]:
    raw = node.get("client") or node.get("buyer")
    if not isinstance(raw, dict):
        return None
    verification = raw.get("verificationStatus")
    verified = bool(
        raw.get("verified")
        or raw.get("paymentVerified")
        or raw.get("paymentVerificationStatus") == "VERIFIED"
        or verification == "VERIFIED"
    )
    return ClientInfo(
        name=raw.get("name") or raw.get("companyName") or "Upwork Client",
        rating=_to_float(raw.get("totalFeedback") or raw.get("rating") or raw.get("feedback")) or 0.0,
        country=_dig(raw, "location", "country") or raw.get("country") or "Not specified",
        total_spent=_to_float(raw.get("totalSpent") or raw.get("total_spent")) or 0.0,
        total_hires=int(_to_float(raw.get("totalHires") or raw.get("total_hires")) or 0),
        verified=verified,
    )


def _skill_names(items: Any) -> Optional[List[str]]:
    if not isinstance(items, list):
        return None
    names = []
    for item in items:
        if isinstance(item, str):
            name = item
        elif isinstance(item, dict):
            name = item.get("name") or item.get("prettyName") or item.get("prefLabel")
        else:
            name = None
        if name and name not in names:
            names.append(name)
    return names[:MAX_SKILLS] or None


def _contract_type(node: dict) -> Optional[str]:
    kind = _dig(node, "contractTerms", "contractType") or node.get("type")
    if not isinstance(kind, str):
        return None
    kind = kind.upper()
    if "HOURLY" in kind:
        return "Hourly"
    if "FIXED" in kind:
        return "Fixed"
    return None


def _job_type_from_budget(node: dict) -> Optional[str]:
    if _fixed_amount(node) or _budget_amount(node):
        return "Fixed"
    if _hourly_range(node) or _hourly_budget(node):
        return "Hourly"
    return None


FIELD_EXTRACTORS: dict[str, List[Extractor]] = {
    "id": [
        lambda n: n.get("id"),
        lambda n: n.get("ciphertext"),
        lambda n: n.get("jobId"),
    ],
    "title": [
        lambda n: n.get("title"),
        lambda n: n.get("jobTitle"),
        lambda n: _dig(n, "content", "title"),
    ],
    "description": [
        lambda n: n.get("description"),
        lambda n: _dig(n, "content", "description"),
        lambda n: n.get("snippet"),
    ],
    "budget": [_fixed_amount, _hourly_range, _budget_amount, _hourly_budget, _display_value],
    "posted_date": [
        lambda n: format_posted_date(n.get("createdDateTime")),
        lambda n: format_posted_date(n.get("publishedDateTime")),
        lambda n: format_posted_date(n.get("postedOn")),
        lambda n: format_posted_date(n.get("createdOn")),
    ],
    "client": [_client],
    "skills": [
        lambda n: _skill_names(n.get("skills")),
        lambda n: _skill_names(n.get("ontologySkills")),
        lambda n: _skill_names(_dig(n, "classification", "skills")),
    ],
    "proposals": [
        lambda n: int(n["totalApplicants"]) if n.get("totalApplicants") is not None else None,
        lambda n: int(n["proposalsCount"]) if n.get("proposalsCount") is not None else None,
        lambda n: int(_dig(n, "applicants", "total")) if _dig(n, "applicants", "total") is not None else None,
    ],
    "category": [
        lambda n: _clean_label(n.get("category")),
        lambda n: _clean_label(_dig(n, "occupations", "category", "prefLabel")),
        lambda n: _clean_label(n.get("subcategory")),
    ],
    "job_type": [
        _contract_type,
        _job_type_from_budget,
        lambda n: _clean_label(n.get("engagement")),
        lambda n: n.get("durationLabel"),
    ],
    "experience_level": [
        lambda n: _clean_label(n.get("experienceLevel")),
        lambda n: _clean_label(n.get("contractorTier")),
    ],
}


def _is_empty(value: Any) -> bool:
    return value is None or value == "" or value == [] or value == {}


def extract(node: dict, field: str) -> Any:
    """Run the extractor chain for ``field`` and return the first non-empty value."""
    for extractor in FIELD_EXTRACTORS[field]:
        try:
            value = extractor(node)
        except (AttributeError, KeyError, IndexError, TypeError, ValueError, OverflowError, OSError):
            continue
        if not _is_empty(value):
            return value
    return None


def normalize(raw_node: Any) -> JobRecord:
    """Map one upstream job node onto the canonical job shape. Never raises."""
    node = raw_node if isinstance(raw_node, dict) else {}
    if isinstance(node.get("node"), dict):
        node = node["node"]

    fields: dict[str, Any] = {}
    for field in FIELD_EXTRACTORS:
        value = extract(node, field)
        if value is not None:
            fields[field] = value

    budget = fields.pop("budget", None)
    if budget is not None:
        fields["budget"] = budget.text
        fields["budget_value"] = budget.value
    fields["id"] = str(fields.get("id") or f"job_{uuid.uuid4().hex[:12]}")
    client = fields.get("client")
    fields["verified"] = bool(client and client.verified)
    return JobRecord(**fields)


def normalize_all(nodes: Iterable[Any]) -> List[JobRecord]:
    """Normalize and de-duplicate by id, keeping the first occurrence."""
    jobs: List[JobRecord] = []
    seen = set()
    for node in nodes:
        job = normalize(node)
        if job.id in seen:
            continue
        seen.add(job.id)
        jobs.append(job)
    return jobs


def budget_value(job: JobRecord) -> Optional[float]:
    return job.budget_value


# --- Preference filtering ---
def _in_allow_list(value: str, allowed: Iterable[str]) -> bool:
    value = (value or "").lower()
    return any(item.strip().lower() in value for item in allowed if item and item.strip())


def _matches_preferences(job: JobRecord, preferences: JobPreferences) -> bool:
    value = budget_value(job)
    if preferences.min_budget is not None and (value is None or value < preferences.min_budget):
        return False
    if preferences.max_budget is not None and (value is None or value > preferences.max_budget):
        return False
    if preferences.categories and not _in_allow_list(job.category, preferences.categories):
        return False
    if preferences.only_verified_clients and not (job.verified or job.client.verified):
        return False
    if preferences.job_types and job.job_type.lower() not in {t.lower() for t in preferences.job_types}:
        return False
    if preferences.experience_levels and job.experience_level.lower() not in {
        level.lower() for level in preferences.experience_levels
    }:
        return False
    return True


def filter_jobs(jobs: Iterable[JobRecord], preferences: Optional[JobPreferences]) -> List[JobRecord]:
    """Keep jobs satisfying every configured preference; unset preferences are skipped."""
    jobs = list(jobs)
    if preferences is None:
        return jobs
    return [job for job in jobs if _matches_preferences(job, preferences)]


def matches_query(job: JobRecord, query: Optional[JobQuery]) -> bool:
    if query is None:
        return True
    if query.category and query.category.lower() != "all":
        if query.category.lower() not in job.category.lower():
            return False
    if query.search and query.search.strip():
        needle = query.search.strip().lower()
        haystack = [job.title, job.description, job.category, *job.skills]
        if not any(needle in (text or "").lower() for text in haystack):
            return False
    return True
