from datetime import datetime
from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from proposal_lifecycle import ProposalStatus


class CamelModel(BaseModel):
    """Request/response model using the camelCase keys the dashboard speaks."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_json(self) -> dict:
        return self.model_dump(by_alias=True, mode="json")


# --- Auth ---
class SignupRequest(CamelModel):
    email: str = Field(min_length=3)
    password: str = Field(min_length=1)
    name: str = Field(min_length=1)
    company_name: Optional[str] = ""


class LoginRequest(BaseModel):
    email: str = Field(min_length=3)
    password: str = Field(min_length=1)


class User(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    email: str
    name: Optional[str] = None
    company_name: Optional[str] = None


# --- Jobs ---
class ClientInfo(CamelModel):
    name: str = "Upwork Client"
    rating: float = 0.0
    country: str = "Not specified"
    total_spent: float = 0.0
    total_hires: int = 0
    verified: bool = False


class JobRecord(CamelModel):
    """Canonical job shape every upstream node is normalized into."""

    id: str
    title: str = "Upwork Job"
    description: str = "No description available"
    budget: str = "Budget not specified"
    budget_value: Optional[float] = None
    posted_date: str = "Recently"
    client: ClientInfo = Field(default_factory=ClientInfo)
    skills: List[str] = Field(default_factory=lambda: ["General"])
    proposals: int = 0
    verified: bool = False
    category: str = "General"
    job_type: str = "Not specified"
    experience_level: str = "Not specified"
    source: str = "upwork"


class JobQuery(CamelModel):
    search: Optional[str] = None
    category: Optional[str] = None


class JobPreferences(CamelModel):
    """Job filters; a field left unset disables its filter."""

    min_budget: Optional[float] = None
    max_budget: Optional[float] = None
    categories: Optional[List[str]] = None
    only_verified_clients: Optional[bool] = None
    job_types: Optional[List[str]] = None
    experience_levels: Optional[List[str]] = None


# --- Prompt settings ---
class BasicInfo(CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    feed_name: str = "Professional Development Feed"
    keywords: str = (
        '"web development" OR "react" OR "node.js" OR "javascript" OR "typescript" OR '
        '"python" OR "full stack" OR "frontend" OR "backend" OR "software engineer" OR "web developer"'
    )
    specialty: str = "Full Stack Web Development"
    provisions: str = (
        "React Applications, Node.js APIs, MongoDB Databases, REST APIs, Frontend Development, Backend Services"
    )
    hourly_rate: str = "$25-50"
    location: str = "Worldwide"
    experience: str = "5+ years in web development"
    portfolio: str = "Multiple successful projects in React and Node.js"
    name: Optional[str] = None
    company: Optional[str] = None


DEFAULT_VALIDATION_PROMPT = """Evaluate if this job matches our criteria:
- Budget between $100 and $10,000
- Client rating 4.0+
- Fixed or Hourly payment
- Requires web development skills
- Clear project requirements
- Professional client history

Return: APPROVE if matches, REJECT if doesn't match."""


class ValidationRules(CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    min_budget: float = 100
    max_budget: float = 10000
    job_types: List[str] = Field(default_factory=lambda: ["Fixed", "Hourly"])
    client_rating: float = 4.0
    required_skills: List[str] = Field(
        default_factory=lambda: ["JavaScript", "React", "Node.js", "TypeScript", "HTML", "CSS"]
    )
    excluded_skills: List[str] = Field(default_factory=lambda: ["WordPress", "PHP", "Java"])
    validation_prompt: str = DEFAULT_VALIDATION_PROMPT


class ProposalTemplate(CamelModel):
    id: str
    title: str
    content: str


def _default_templates() -> List[ProposalTemplate]:
    return [
        ProposalTemplate(
            id="1",
            title="Main Professional Proposal",
            content="""Write a professional Upwork proposal that:
1. Shows understanding of the specific job requirements
2. Highlights 3-4 relevant skills and experiences
3. Mentions one similar project from portfolio with results
4. Includes specific questions about the project requirements
5. Clear call-to-action for next steps
6. Professional but friendly tone
7. Maximum 250-300 words

Focus on client's pain points and how you can solve them.""",
        ),
        ProposalTemplate(
            id="2",
            title="Quick Application Template",
            content="""Short and effective proposal for quick applications:
- Directly address the main requirement
- Highlight most relevant experience (2-3 points)
- Quick call-to-action
- Maximum 150 words

Keep it concise and to the point.""",
        ),
        ProposalTemplate(
            id="3",
            title="Detailed Proposal Template",
            content="""Comprehensive proposal for high-value projects:
- Detailed analysis of requirements
- Multiple relevant case studies
- Step-by-step approach with timeline
- Deliverables and milestones
- Questions to clarify requirements
- Maximum 400-500 words

Show expertise and attention to detail.""",
        ),
    ]


class AISettings(CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    model: str = "gpt-4"
    temperature: float = Field(default=0.3, ge=0, le=2)
    max_tokens: int = Field(default=800, gt=0)
    creativity: str = "medium"


class PromptSettingsData(CamelModel):
    basic_info: BasicInfo = Field(default_factory=BasicInfo)
    validation_rules: ValidationRules = Field(default_factory=ValidationRules)
    proposal_templates: List[ProposalTemplate] = Field(default_factory=_default_templates)
    ai_settings: AISettings = Field(default_factory=AISettings)
    job_preferences: JobPreferences = Field(default_factory=JobPreferences)


class PromptSettingsPayload(CamelModel):
    basic_info: Optional[BasicInfo] = None
    validation_rules: Optional[ValidationRules] = None
    proposal_templates: Optional[List[ProposalTemplate]] = None
    ai_settings: Optional[AISettings] = None
    job_preferences: Optional[JobPreferences] = None


class PromptSettingsUpdate(BaseModel):
    settings: PromptSettingsPayload


# --- Proposals ---
class GenerateProposalRequest(CamelModel):
    job_id: str = Field(min_length=1)
    job_title: str = Field(min_length=1)
    job_description: str = Field(min_length=1)
    budget: Optional[str] = None
    skills: Optional[List[str]] = None
    category: Optional[str] = None
    posted_date: Optional[str] = None
    client_info: Optional[dict[str, Any]] = None

    def as_job(self) -> JobRecord:
        return JobRecord(
            id=self.job_id,
            title=self.job_title,
            description=self.job_description,
            budget=self.budget or "Budget not specified",
            posted_date=self.posted_date or "Recently",
            skills=self.skills or ["General"],
            category=self.category or "General",
        )


class SaveProposalRequest(CamelModel):
    job_id: str = Field(min_length=1)
    proposal_text: str = Field(min_length=1)
    job_title: Optional[str] = None
    job_description: Optional[str] = None
    client_info: Optional[dict[str, Any]] = None
    budget: Optional[str] = None
    skills: Optional[List[str]] = None
    generated_proposal: Optional[str] = None
    status: str = "saved"


class SendProposalRequest(CamelModel):
    job_id: str = Field(min_length=1)
    proposal_text: str = Field(min_length=1)
    job_title: Optional[str] = None
    original_proposal: Optional[str] = None
    edit_reason: Optional[str] = None
    bid_amount: Optional[float] = None


class UpdateProposalRequest(CamelModel):
    edited_proposal: str = Field(min_length=1)


class ProposalOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    job_id: str
    job_title: Optional[str] = None
    job_description: Optional[str] = None
    client_info: Optional[dict[str, Any]] = None
    budget: Optional[str] = "Not specified"
    skills: Optional[List[str]] = None
    generated_proposal: Optional[str] = None
    edited_proposal: Optional[str] = None
    status: ProposalStatus
    ai_model: Optional[str] = None
    sent_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


# --- Upwork OAuth ---
class ConnectRequest(CamelModel):
    code: str = Field(min_length=1)
    state: str = Field(min_length=1)
