import httpx
import pytest
import pytest_asyncio

from hangjegyzet.main import create_app
from hangjegyzet.schemas.organization import OrganizationCreate

from fakes import ORG_ID, ScriptedProvider, make_transcript

API = "/api/v1"


@pytest_asyncio.fixture
async def pipeline(make_pipeline, organization):
    return make_pipeline(ScriptedProvider([make_transcript("jó napot")]))


@pytest_asyncio.fixture
async def client(pipeline):
    transport = httpx.ASGITransport(app=create_app(pipeline))
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


def submission(**overrides) -> dict:
    payload = {
        "meeting_id": "meeting-1",
        "source_audio_path": "/uploads/meeting-1.wav",
        "organization_id": ORG_ID,
        "mode": "balanced",
        "estimated_duration_minutes": 2.0,
    }
    payload.update(overrides)
    return payload


async def test_health_echoes_request_id(client):
    response = await client.get("/health", headers={"X-Request-ID": "req-1"})
    assert response.status_code == 200
    assert response.json()["status"] == "healthy"
    assert response.headers["X-Request-ID"] == "req-1"
    assert "X-Process-Time" in response.headers


async def test_pipeline_not_ready(config):
    transport = httpx.ASGITransport(app=create_app(config=config))
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        response = await client.get(f"{API}/organizations/{ORG_ID}")
    assert response.status_code == 503
    assert response.json()["code"] == "service_unavailable"


class TestOrganizations:

    async def test_create_and_read(self, client):
        response = await client.post(f"{API}/organizations", json={"name": "Új Zrt", "subscription_tier": "indulo"})
        assert response.status_code == 201
        org_id = response.json()["id"]

        fetched = await client.get(f"{API}/organizations/{org_id}")
        assert fetched.json()["subscription_tier"] == "indulo"

        usage = (await client.get(f"{API}/organizations/{org_id}/usage")).json()
        by_mode = {m["mode"]: m for m in usage["modes"]}
        assert by_mode["balanced"]["remaining"] == 100
        assert by_mode["precision"]["limit"] == 0

    async def test_unknown_organization(self, client):
        response = await client.get(f"{API}/organizations/nincs")
        assert response.status_code == 404
        assert response.json()["code"] == "not_found"


class TestTranscriptions:

    async def test_submit_poll_and_cancel(self, client):
        response = await client.post(f"{API}/transcriptions", json=submission())
        assert response.status_code == 202
        body = response.json()
        assert body["state"] == "queued"
        assert body["progress"] == 0
        assert body["segments"] is None

        polled = await client.get(f"{API}/transcriptions/{body['job_id']}")
        assert polled.json()["job_id"] == body["job_id"]

        cancelled = await client.delete(f"{API}/transcriptions/{body['job_id']}")
        assert cancelled.status_code == 200
        assert cancelled.json()["state"] == "cancelled"

        usage = (await client.get(f"{API}/organizations/{ORG_ID}/usage")).json()
        assert {m["mode"]: m["used"] for m in usage["modes"]}["balanced"] == 0

    async def test_unknown_job(self, client):
        response = await client.get(f"{API}/transcriptions/nincs")
        assert response.status_code == 404

    async def test_organization_limit(self, client, store):
        await store.create_organization(
            OrganizationCreate(name="Kicsi Bt", subscription_tier="profi", mode_limits={"balanced": 1}),
            organization_id="org-small",
        )
        response = await client.post(f"{API}/transcriptions", json=submission(organization_id="org-small"))
        assert response.status_code == 402
        body = response.json()
        assert body["code"] == "organization_limit_exceeded"
        assert body["detail"]["limit"] == 1
        assert body["detail"]["requested"] == 2

    async def test_concurrency_limit(self, client):
        for index in range(3):
            response = await client.post(f"{API}/transcriptions", json=submission(meeting_id=f"meeting-{index}"))
            assert response.status_code == 202

        response = await client.post(f"{API}/transcriptions", json=submission(meeting_id="meeting-4"))

        assert response.status_code == 429
        assert response.json()["code"] == "concurrency_limit_exceeded"
        assert "Retry-After" in response.headers

    async def test_mode_not_in_plan(self, client, store):
        await store.create_organization(OrganizationCreate(name="Próba Kft"), organization_id="org-trial")
        response = await client.post(
            f"{API}/transcriptions", json=submission(organization_id="org-trial", mode="precision")
        )
        assert response.status_code == 403
        assert response.json()["code"] == "mode_not_available"

    async def test_unknown_organization(self, client):
        response = await client.post(f"{API}/transcriptions", json=submission(organization_id="nincs"))
        assert response.status_code == 404

    async def test_unsupported_language(self, client):
        response = await client.post(f"{API}/transcriptions", json=submission(language="de"))
        assert response.status_code == 422
        assert response.json()["code"] == "LANGUAGE_NOT_SUPPORTED"

    async def test_ai_not_offered_in_fast_mode(self, client):
        response = await client.post(f"{API}/transcriptions", json=submission(
            mode="fast", processing_options={"enable_ai_post_processing": True}
        ))
        assert response.status_code == 403
        assert response.json()["code"] == "MODE_NOT_AVAILABLE"


class TestAdmission:

    async def test_preview_charges_nothing(self, client):
        payload = {"organization_id": ORG_ID, "mode": "precision", "estimated_duration_minutes": 12.4}
        preview = (await client.post(f"{API}/admission/preview", json=payload)).json()
        assert preview["allowed"]
        assert preview["requested"] == 13
        assert preview["remaining"] == 50

        admitted = (await client.post(f"{API}/admission", json=payload)).json()
        assert admitted["allowed"]
        assert admitted["used"] == 13
        assert admitted["remaining"] == 37
        assert admitted["admission_id"]
        assert admitted["expires_at"]

    async def test_admission_redeemed_by_submission(self, client):
        payload = {"organization_id": ORG_ID, "mode": "balanced", "estimated_duration_minutes": 2.0}
        for index in range(3):
            admitted = (await client.post(f"{API}/admission", json=payload)).json()
            response = await client.post(f"{API}/transcriptions", json=submission(
                meeting_id=f"meeting-{index}", admission_id=admitted["admission_id"]
            ))
            assert response.status_code == 202

        usage = (await client.get(f"{API}/organizations/{ORG_ID}/usage")).json()
        assert {m["mode"]: m["used"] for m in usage["modes"]}["balanced"] == 6

    async def test_unknown_admission_rejected(self, client):
        response = await client.post(f"{API}/transcriptions", json=submission(admission_id="nincs"))
        assert response.status_code == 404

    async def test_admission_for_other_mode_rejected(self, client):
        payload = {"organization_id": ORG_ID, "mode": "fast", "estimated_duration_minutes": 2.0}
        admitted = (await client.post(f"{API}/admission", json=payload)).json()

        response = await client.post(f"{API}/transcriptions", json=submission(admission_id=admitted["admission_id"]))

        assert response.status_code == 422
        assert response.json()["code"] == "admission_mismatch"


class TestVocabulary:

    async def test_crud(self, client):
        base = f"{API}/organizations/{ORG_ID}/vocabulary"
        created = await client.post(base, json={"term": "Kubernetes", "variations": ["kubernétesz"], "category": "it"})
        assert created.status_code == 201
        term_id = created.json()["id"]

        duplicate = await client.post(base, json={"term": "kubernetes"})
        assert duplicate.status_code == 422
        assert duplicate.json()["code"] == "duplicate_term"

        patched = await client.patch(f"{base}/{term_id}", json={"variations": ["kubernétesz", "k8s"]})
        assert patched.json()["variations"] == ["kubernétesz", "k8s"]

        assert [t["term"] for t in (await client.get(base)).json()] == ["Kubernetes"]

        deleted = await client.delete(f"{base}/{term_id}")
        assert deleted.json()["is_active"] is False
        assert (await client.get(base)).json() == []
        assert (await client.delete(f"{base}/nincs")).status_code == 404

    async def test_import_and_export(self, client):
        base = f"{API}/organizations/{ORG_ID}/vocabulary"
        content = "term,variations,category\nJira,dzsíra;zsira,it\nEBITDA,ebitda,finance\n,üres,it\n"

        imported = await client.post(
            f"{base}/import", files={"file": ("szotar.csv", content.encode("utf-8"), "text/csv")}
        )
        assert imported.status_code == 200
        assert sorted(t["term"] for t in imported.json()) == ["EBITDA", "Jira"]

        exported = await client.get(f"{base}/export", params={"category": "it"})
        assert exported.headers["content-type"].startswith("text/csv")
        assert "attachment" in exported.headers["content-disposition"]
        lines = exported.text.strip().split("\n")
        assert lines[0].startswith("term,variations,category")
        assert lines[1].startswith("Jira,dzsíra;zsira,it")
        assert len(lines) == 2

    async def test_import_without_term_column(self, client):
        response = await client.post(
            f"{API}/organizations/{ORG_ID}/vocabulary/import",
            files={"file": ("szotar.csv", b"szo\nJira\n", "text/csv")},
        )
        assert response.status_code == 422
        assert response.json()["code"] == "invalid_csv"

    async def test_seed(self, client):
        response = await client.post(f"{API}/organizations/{ORG_ID}/vocabulary/seed")
        assert response.json()["added"] > 0
        again = await client.post(f"{API}/organizations/{ORG_ID}/vocabulary/seed")
        assert again.json()["added"] == 0


class TestCorrectionsAndAccuracy:

    async def test_correction_is_scored(self, client):
        response = await client.post(f"{API}/corrections", json={
            "organization_id": ORG_ID,
            "original_text": "indítsd el a tems hívást",
            "corrected_text": "indítsd el a Teams hívást",
        })
        assert response.status_code == 201
        assert response.json()["wer"] == pytest.approx(0.2)

    async def test_report_needs_samples(self, client):
        response = await client.get(f"{API}/accuracy/{ORG_ID}/report")
        assert response.status_code == 404

    async def test_report_period_validated(self, client):
        response = await client.get(f"{API}/accuracy/{ORG_ID}/report", params={"period": "daily"})
        assert response.status_code == 422
