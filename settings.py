from functools import lru_cache
from typing import List, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        # `.env.prod` takes priority over `.env`
        env_file=(".env", ".env.prod"),
        extra="ignore",
    )

    # LLM provider keys; OpenRouter is used only when no OpenAI key is set
    openai_api_key: Optional[str] = None
    openrouter_api_key: Optional[str] = None
    llm_base_url: Optional[str] = None
    llm_timeout_seconds: float = 60.0

    # Session cookies
    jwt_secret: str = "change-me-in-production"
    session_expire_days: int = 7
    session_cookie_name: str = "session-token"
    cookie_secure: bool = False

    # Upwork OAuth / API
    upwork_client_id: Optional[str] = None
    upwork_client_secret: Optional[str] = None
    upwork_redirect_uri: str = "http://localhost:8000/api/upwork/callback"
    upwork_scopes: str = "r_basic r_work r_proposals r_jobs_browse"
    upwork_authorize_url: str = "https://www.upwork.com/ab/account-security/oauth2/authorize"
    upwork_token_url: str = "https://www.upwork.com/api/v3/oauth2/token"
    upwork_graphql_url: str = "https://api.upwork.com/graphql"
    upwork_proposal_url_template: str = (
        "https://www.upwork.com/api/profiles/v3/proposals/jobs/{job_id}/apply"
    )
    oauth_state_ttl_seconds: int = 600
    upstream_timeout_seconds: float = 20.0

    # Job feed
    job_cache_ttl_seconds: int = 300
    default_page_size: int = 50

    cors_origins: List[str] = [
        "http://localhost",
        "http://localhost:3000",
        "http://localhost:8000",
        "http://127.0.0.1:8000",
    ]

    # Application base URL (for dashboard redirects after the OAuth callback)
    app_base_url: str = "http://localhost:3000"

    @property
    def upwork_configured(self) -> bool:
        return bool(self.upwork_client_id and self.upwork_client_secret)


@lru_cache()
def get_settings() -> Settings:
    return Settings()
