from datetime import timedelta
from unittest.mock import AsyncMock, patch

import pytest
from fastapi import status
from fastapi.testclient import TestClient
from sqlalchemy.orm import Session

import crud
import logic
import models
import schemas
from errors import UpstreamUnavailable
from proposal_lifecycle import ProposalStatus

JOB = {
    "jobId": "~01job",
    "jobTitle": "Build a React dashboard",
    "jobDescription": "We need a sales dashboard with charts.",
    "budget": "$500.00",
    "skills": ["React", "Chart.js"],
}


def _proposals(db: Session):
    db.expire_all()
    return db.query(models.Proposal).all()


# --- Text helpers ---
def test_clean_proposal_text_strips_markdown():
    raw = "```\n## Proposal\n**Hello**, I am [Your Name].\n\n\n\nSee [my work](https://example.com)\n```"
    cleaned = logic.clean_proposal_text(raw, "Sam Carter")

    assert "**" not in cleaned
    assert "#" not in cleaned
    assert "```" not in cleaned
    assert "I am Sam Carter." in cleaned
    assert "my work (https://example.com)" in cleaned
    assert "\n\n\n" not in cleaned


def test_clean_proposal_text_keeps_existing_signature():
    text = "Hi there,\n\nI can help.\n\nThanks,\nSam Carter"
    assert logic.clean_proposal_text(text, "Sam Carter") == text


def test_clean_proposal_text_empty():
    assert logic.clean_proposal_text("```\n```", "Sam") == ""


def test_select_template_prefers_main():
    templates = [
        schemas.ProposalTemplate(id="a", title="Quick", content="q"),
        schemas.ProposalTemplate(id="b", title="Main Professional", content="m"),
    ]
    assert logic.select_template(templates).id == "b"
    assert logic.select_template(templates[:1]).id == "a"
    assert logic.select_template([]) is logic.DEFAULT_TEMPLATE


def test_analyze_edit_tags():
    original = "I can build this dashboard."
    edited = "I can build this dashboard. I have 6 years of experience, see my portfolio. Let's schedule a call."
    tags = logic.analyze_edit(original, edited)
    assert "user_adds_more_details" in tags
    assert "user_adds_portfolio_links" in tags
    assert "user_adds_call_to_action" in tags
    assert "user_emphasizes_experience" in tags
    assert logic.analyze_edit("a long original draft text", "short") == ["user_prefers_conciseness"]


def test_fallback_proposal_mentions_job_and_name():
    job = schemas.JobRecord(id="1", title="Data pipeline", skills=["Python", "Airflow"])
    text = logic.fallback_proposal(job, schemas.BasicInfo(), "Sam Carter")
    assert '"Data pipeline"' in text
    assert "Python, Airflow" in text
    assert text.endswith("Best regards,\nSam Carter")


# --- Generation ---
def test_generate_with_llm(auth_client: TestClient, db_session: Session):
    with patch(
        "llm_interaction.call_llm", new_callable=AsyncMock, return_value="**Hi!** I build dashboards daily."
    ) as mock_llm:
        response = auth_client.post("/api/proposals/generate", json=JOB)

    assert response.status_code == status.HTTP_200_OK
    body = response.json()
    assert body["status"] == "generated"
    assert body["fallback"] is False
    assert body["proposal"].startswith("Hi! I build dashboards daily.")
    assert body["proposal"].endswith("Best regards,\nSam Carter")
    mock_llm.assert_awaited_once()
    user_prompt = mock_llm.await_args.kwargs["user_prompt"]
    assert "Build a React dashboard" in user_prompt
    assert "Sam Carter" in user_prompt

    [proposal] = _proposals(db_session)
    assert proposal.id == body["proposalId"]
    assert proposal.status == ProposalStatus.GENERATED
    assert proposal.ai_model == "gpt-4"


def test_generate_falls_back_when_llm_fails(auth_client: TestClient, db_session: Session):
    with patch(
        "llm_interaction.call_llm", new_callable=AsyncMock, side_effect=UpstreamUnavailable("Text generation timed out")
    ):
        response = auth_client.post("/api/proposals/generate", json=JOB)

    assert response.status_code == status.HTTP_200_OK
    body = response.json()
    assert body["success"] is True
    assert body["status"] == "generated_fallback"
    assert body["fallback"] is True
    assert body["message"] == "Text generation timed out"
    assert "Build a React dashboard" in body["proposal"]
    assert "Sam Carter" in body["proposal"]
    assert _proposals(db_session)[0].status == ProposalStatus.GENERATED_FALLBACK


def test_generate_falls_back_on_empty_response(auth_client: TestClient):
    with patch("llm_interaction.call_llm", new_callable=AsyncMock, return_value="   "):
        body = auth_client.post("/api/proposals/generate", json=JOB).json()
    assert body["status"] == "generated_fallback"


def test_generate_twice_keeps_one_row(auth_client: TestClient, db_session: Session):
    with patch("llm_interaction.call_llm", new_callable=AsyncMock, side_effect=["First draft.", "Second draft."]):
        first = auth_client.post("/api/proposals/generate", json=JOB).json()
        second = auth_client.post("/api/proposals/generate", json=JOB).json()

    assert first["proposalId"] == second["proposalId"]
    [proposal] = _proposals(db_session)
    assert proposal.generated_proposal.startswith("Second draft.")


def test_generate_requires_job_fields(auth_client: TestClient):
    response = auth_client.post("/api/proposals/generate", json={"jobId": "x"})
    assert response.status_code == status.HTTP_400_BAD_REQUEST
    assert set(response.json()["fields"]) >= {"jobTitle", "jobDescription"}


def test_generate_after_send_leaves_sent_row(auth_client: TestClient, db_session: Session):
    auth_client.post("/api/proposals/send", json={"jobId": JOB["jobId"], "proposalText": "Sent text"})

    with patch("llm_interaction.call_llm", new_callable=AsyncMock, return_value="New draft."):
        response = auth_client.post("/api/proposals/generate", json=JOB)

    assert response.status_code == status.HTTP_200_OK
    assert response.json()["proposalId"] is None
    [proposal] = _proposals(db_session)
    assert proposal.status == ProposalStatus.SENT
    assert proposal.edited_proposal == "Sent text"


def test_generate_after_save_keeps_saved_status(auth_client: TestClient, db_session: Session):
    auth_client.post(
        "/api/proposals/save",
        json={"jobId": JOB["jobId"], "jobTitle": JOB["jobTitle"], "proposalText": "My edited text"},
    )

    with patch("llm_interaction.call_llm", new_callable=AsyncMock, return_value="Fresh draft."):
        body = auth_client.post("/api/proposals/generate", json=JOB).json()

    assert body["status"] == "generated"
    [proposal] = _proposals(db_session)
    assert body["proposalId"] == proposal.id
    assert proposal.status == ProposalStatus.SAVED
    assert proposal.edited_proposal == "My edited text"
    assert proposal.generated_proposal.startswith("Fresh draft.")


# --- Save ---
def test_save_new_and_update(auth_client: TestClient, db_session: Session):
    payload = {"jobId": "job-save", "jobTitle": "API work", "proposalText": "My draft"}
    first = auth_client.post("/api/proposals/save", json=payload).json()
    assert first["isNew"] is True
    assert first["status"] == "saved"

    payload["proposalText"] = "My draft, now with a link to my portfolio and GitHub profile"
    second = auth_client.post("/api/proposals/save", json=payload).json()
    assert second["isNew"] is False
    assert second["proposalId"] == first["proposalId"]

    [proposal] = _proposals(db_session)
    assert proposal.generated_proposal == "My draft"
    assert proposal.edited_proposal.endswith("GitHub profile")
    edits = crud.get_recent_edits(db_session, auth_client.user_id)
    assert len(edits) == 1
    assert "user_adds_portfolio_links" in edits[0].learned_patterns


def test_save_rejects_sent_status(auth_client: TestClient):
    response = auth_client.post(
        "/api/proposals/save", json={"jobId": "j", "proposalText": "t", "status": "sent"}
    )
    assert response.status_code == status.HTTP_400_BAD_REQUEST


def test_save_after_send_conflicts(auth_client: TestClient):
    auth_client.post("/api/proposals/send", json={"jobId": "j", "proposalText": "sent"})
    response = auth_client.post("/api/proposals/save", json={"jobId": "j", "proposalText": "again"})

    assert response.status_code == status.HTTP_409_CONFLICT
    body = response.json()
    assert body["currentStatus"] == "sent"
    assert body["requestedStatus"] == "saved"


# --- Send ---
def test_send_without_upwork_connection(auth_client: TestClient, db_session: Session, fake_upwork):
    response = auth_client.post(
        "/api/proposals/send",
        json={"jobId": "job-send", "jobTitle": "Scraper", "proposalText": "Final text", "originalProposal": "Draft"},
    )

    assert response.status_code == status.HTTP_200_OK
    body = response.json()
    assert body["status"] == "sent"
    assert body["sentAt"] is not None
    assert body["upworkSubmitted"] is False
    assert fake_upwork.calls["proposal"] == 0

    [proposal] = _proposals(db_session)
    assert proposal.sent_at is not None
    assert proposal.generated_proposal == "Draft"
    assert len(crud.get_recent_edits(db_session, auth_client.user_id)) == 1


def test_send_submits_to_upwork(auth_client: TestClient, db_session: Session, fake_upwork):
    crud.upsert_upwork_account(db_session, auth_client.user_id, "access-1", "refresh-1")

    body = auth_client.post(
        "/api/proposals/send", json={"jobId": "job-up", "proposalText": "Hello client", "bidAmount": 450}
    ).json()

    assert body["upworkSubmitted"] is True
    assert body["upworkProposalId"] == "upwork-proposal-1"
    submitted = [r for r in fake_upwork.requests if "/proposals/jobs/" in str(r.url)][0]
    assert "/proposals/jobs/job-up/apply" in str(submitted.url)
    assert submitted.headers["Authorization"] == "Bearer access-1"
    assert _proposals(db_session)[0].upwork_proposal_id == "upwork-proposal-1"


def test_send_refreshes_expired_token_first(auth_client: TestClient, db_session: Session, fake_upwork):
    crud.upsert_upwork_account(
        db_session,
        auth_client.user_id,
        "old-token",
        "refresh-1",
        expires_at=models.utcnow() - timedelta(hours=1),
    )
    fake_upwork.token_body = {"access_token": "fresh-token", "refresh_token": "refresh-2", "expires_in": 3600}

    body = auth_client.post("/api/proposals/send", json={"jobId": "job-exp", "proposalText": "Hello"}).json()

    assert body["upworkSubmitted"] is True
    assert fake_upwork.calls["token"] == 1
    submitted = [r for r in fake_upwork.requests if "/proposals/jobs/" in str(r.url)][0]
    assert submitted.headers["Authorization"] == "Bearer fresh-token"


def test_send_with_expired_token_and_failed_refresh(auth_client: TestClient, db_session: Session, fake_upwork):
    crud.upsert_upwork_account(
        db_session,
        auth_client.user_id,
        "old-token",
        "refresh-1",
        expires_at=models.utcnow() - timedelta(hours=1),
    )
    fake_upwork.token_status = 400

    body = auth_client.post("/api/proposals/send", json={"jobId": "job-exp", "proposalText": "Hello"}).json()

    assert body["status"] == "sent"
    assert body["upworkSubmitted"] is False
    assert "reconnect" in body["message"]
    assert not [r for r in fake_upwork.requests if "/proposals/jobs/" in str(r.url)]


def test_send_keeps_local_record_when_upwork_refuses(auth_client: TestClient, db_session: Session, fake_upwork):
    crud.upsert_upwork_account(db_session, auth_client.user_id, "access-1", "refresh-1")
    fake_upwork.proposal_status = 403

    body = auth_client.post("/api/proposals/send", json={"jobId": "job-x", "proposalText": "Hello"}).json()

    assert body["success"] is True
    assert body["status"] == "sent"
    assert body["upworkSubmitted"] is False
    assert "Permission denied" in body["message"]
    assert _proposals(db_session)[0].status == ProposalStatus.SENT


def test_resend_keeps_first_sent_at(auth_client: TestClient):
    first = auth_client.post("/api/proposals/send", json={"jobId": "j2", "proposalText": "one"}).json()
    second = auth_client.post("/api/proposals/send", json={"jobId": "j2", "proposalText": "two"}).json()
    assert second["sentAt"] == first["sentAt"]
    assert second["isNew"] is False


# --- History / edits ---
def test_history_update_and_delete(auth_client: TestClient):
    saved = auth_client.post(
        "/api/proposals/save", json={"jobId": "h1", "jobTitle": "History", "proposalText": "draft"}
    ).json()
    proposal_id = saved["proposalId"]

    history = auth_client.get("/api/proposals/history").json()
    assert history["total"] == 1
    assert history["proposals"][0]["status"] == "saved"

    updated = auth_client.put(f"/api/proposals/{proposal_id}", json={"editedProposal": "edited draft"})
    assert updated.status_code == status.HTTP_200_OK
    assert updated.json()["proposal"]["edited_proposal"] == "edited draft"

    assert auth_client.delete(f"/api/proposals/{proposal_id}").status_code == status.HTTP_200_OK
    assert auth_client.delete(f"/api/proposals/{proposal_id}").status_code == status.HTTP_404_NOT_FOUND
    assert auth_client.get("/api/proposals/history").json()["total"] == 0


def test_patterns_summarize_recorded_edits(auth_client: TestClient):
    for job_id in ("p1", "p2"):
        auth_client.post(
            "/api/proposals/send",
            json={
                "jobId": job_id,
                "originalProposal": "Short draft.",
                "proposalText": "Short draft. I am excited to discuss this on a call, see my portfolio.",
            },
        )

    body = auth_client.get("/api/proposals/patterns").json()
    assert body["totalSamples"] == 2
    counts = {entry["pattern"]: entry["count"] for entry in body["patterns"]}
    assert counts["user_adds_more_details"] == 2
    assert counts["user_adds_portfolio_links"] == 2


@pytest.mark.asyncio
async def test_learned_patterns_reach_the_prompt(db_session: Session, make_user):
    user = make_user()
    logic.record_edit(db_session, user.id, "j", "Draft.", "Draft. See my portfolio on GitHub.")
    request = schemas.GenerateProposalRequest(job_id="j", job_title="T", job_description="D")

    with patch("llm_interaction.call_llm", new_callable=AsyncMock, return_value="Proposal body.") as mock_llm:
        result = await logic.generate_proposal(db_session, user, request)

    assert result.status == ProposalStatus.GENERATED
    assert "reference portfolio" in mock_llm.await_args.kwargs["user_prompt"]
