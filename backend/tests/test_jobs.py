import pytest
from factories import seed_credential, seed_job, seed_user
from fastapi import HTTPException
from fastapi.testclient import TestClient

from app.models.enums import DataCategory, JobStatus
from app.repositories.job_repository import JobRepository
from app.schemas.job import JobCreateRequest
from app.services.jobs import JobService
from app.services.reconciler import SubscriptionReconciler


def _create_credential(client: TestClient, headers) -> int:
    response = client.post(
        "/api/credentials",
        json={"host": "db.example.com", "db_name": "warehouse", "username": "indexer", "password": "pw"},
        headers=headers,
    )
    assert response.status_code == 201
    return response.json()["id"]


def _create_job(client: TestClient, headers, credential_id: int, mint: str, table: str = "mint_events"):
    return client.post(
        "/api/jobs",
        json={
            "credential_id": credential_id,
            "data_category": "MINT_ACTIVITY",
            "category_params": {"mintAddress": mint},
            "target_table_name": table,
        },
        headers=headers,
    )


def test_first_job_sets_subscription_to_its_address(client: TestClient, auth_headers, subscription) -> None:
    credential_id = _create_credential(client, auth_headers)

    response = _create_job(client, auth_headers, credential_id, "M3")

    assert response.status_code == 201
    assert response.json()["status"] == "active"
    assert subscription.addresses == ["M3"]


def test_subscription_is_union_of_active_jobs(client: TestClient, auth_headers, subscription) -> None:
    credential_id = _create_credential(client, auth_headers)
    _create_job(client, auth_headers, credential_id, "M3")
    _create_job(client, auth_headers, credential_id, "M4", table="m4_events")
    _create_job(client, auth_headers, credential_id, "M3", table="m3_copy")

    assert subscription.addresses == ["M3", "M4"]
    assert len(client.get("/api/jobs", headers=auth_headers).json()) == 3


def test_deleting_only_job_removes_address(client: TestClient, auth_headers, subscription) -> None:
    credential_id = _create_credential(client, auth_headers)
    job = _create_job(client, auth_headers, credential_id, "M3").json()

    response = client.delete(f"/api/jobs/{job['id']}", headers=auth_headers)

    assert response.status_code == 204
    assert subscription.addresses == []
    assert client.get("/api/jobs", headers=auth_headers).json() == []


def test_deleting_one_of_two_jobs_keeps_shared_address(client: TestClient, auth_headers, subscription) -> None:
    credential_id = _create_credential(client, auth_headers)
    first = _create_job(client, auth_headers, credential_id, "M3").json()
    _create_job(client, auth_headers, credential_id, "M3", table="m3_copy")
    edits_before = len(subscription.calls)

    response = client.delete(f"/api/jobs/{first['id']}", headers=auth_headers)

    assert response.status_code == 204
    assert len(subscription.calls) == edits_before
    assert "M3" in subscription.addresses


def test_delete_proceeds_when_subscription_edit_fails(client: TestClient, auth_headers, subscription) -> None:
    credential_id = _create_credential(client, auth_headers)
    job = _create_job(client, auth_headers, credential_id, "M3").json()
    subscription.fail_next()

    response = client.delete(f"/api/jobs/{job['id']}", headers=auth_headers)

    assert response.status_code == 204
    assert client.get("/api/jobs", headers=auth_headers).json() == []


def test_create_fails_with_502_when_subscription_edit_fails(client: TestClient, auth_headers, subscription) -> None:
    credential_id = _create_credential(client, auth_headers)
    subscription.fail_next()

    response = _create_job(client, auth_headers, credential_id, "M3")

    assert response.status_code == 502
    assert client.get("/api/jobs", headers=auth_headers).json() == []


def test_create_validates_address_and_table(client: TestClient, auth_headers, subscription) -> None:
    credential_id = _create_credential(client, auth_headers)

    missing = client.post(
        "/api/jobs",
        json={
            "credential_id": credential_id,
            "data_category": "PROGRAM_INTERACTIONS",
            "category_params": {"mintAddress": "M3"},
            "target_table_name": "calls",
        },
        headers=auth_headers,
    )
    bad_table = _create_job(client, auth_headers, credential_id, "M3", table="drop table;")

    assert missing.status_code == 400
    assert "programId" in missing.json()["detail"]
    assert bad_table.status_code == 400
    assert subscription.calls == []


def test_create_rejects_foreign_credential(client: TestClient, auth_headers) -> None:
    credential_id = _create_credential(client, auth_headers)
    client.post("/api/auth/register", json={"email": "other@example.com", "password": "0ther-pass"})
    token = client.post("/api/auth/login", json={"email": "other@example.com", "password": "0ther-pass"}).json()
    other_headers = {"Authorization": f"Bearer {token['access_token']}"}

    response = _create_job(client, other_headers, credential_id, "M3")

    assert response.status_code == 403


def test_delete_checks_existence_and_ownership(client: TestClient, auth_headers) -> None:
    credential_id = _create_credential(client, auth_headers)
    job = _create_job(client, auth_headers, credential_id, "M3").json()
    client.post("/api/auth/register", json={"email": "other@example.com", "password": "0ther-pass"})
    token = client.post("/api/auth/login", json={"email": "other@example.com", "password": "0ther-pass"}).json()
    other_headers = {"Authorization": f"Bearer {token['access_token']}"}

    assert client.delete("/api/jobs/9999", headers=auth_headers).status_code == 404
    assert client.delete(f"/api/jobs/{job['id']}", headers=other_headers).status_code == 403


def test_table_schema_endpoint(client: TestClient, auth_headers) -> None:
    credential_id = _create_credential(client, auth_headers)
    job = _create_job(client, auth_headers, credential_id, "M3").json()

    response = client.get(f"/api/jobs/{job['id']}/table-schema", headers=auth_headers)

    assert response.status_code == 200
    assert '"public"."mint_events"' in response.json()["sql"]


@pytest.mark.asyncio
async def test_failed_insert_rolls_subscription_back(session, subscription, monkeypatch) -> None:
    user = await seed_user(session)
    credential = await seed_credential(session, user)
    await seed_job(session, user, credential.id, address="M1")

    async def broken_create(self, **kwargs):
        raise RuntimeError("insert failed")

    monkeypatch.setattr(JobRepository, "create", broken_create)
    payload = JobCreateRequest(
        credential_id=credential.id,
        data_category=DataCategory.MINT_ACTIVITY,
        category_params={"mintAddress": "M3"},
        target_table_name="m3_events",
    )

    with pytest.raises(HTTPException) as exc_info:
        await JobService(session, subscription).create_job(user, payload)

    assert exc_info.value.status_code == 500
    assert subscription.calls == [["M1", "M3"], ["M1"]]


@pytest.mark.asyncio
async def test_failed_rollback_does_not_mask_insert_error(session, subscription, monkeypatch) -> None:
    user = await seed_user(session)
    credential = await seed_credential(session, user)

    async def broken_create(self, **kwargs):
        raise RuntimeError("insert failed")

    original_edit = subscription.edit_webhook

    async def edit_then_fail_rollback(addresses):
        if subscription.calls:
            subscription.fail_next()
        return await original_edit(addresses)

    monkeypatch.setattr(JobRepository, "create", broken_create)
    monkeypatch.setattr(subscription, "edit_webhook", edit_then_fail_rollback)
    payload = JobCreateRequest(
        credential_id=credential.id,
        data_category=DataCategory.MINT_ACTIVITY,
        category_params={"mintAddress": "M3"},
        target_table_name="m3_events",
    )

    with pytest.raises(HTTPException) as exc_info:
        await JobService(session, subscription).create_job(user, payload)

    assert exc_info.value.status_code == 500
    assert subscription.calls == [["M3"], []]


@pytest.mark.asyncio
async def test_reconciler_ignores_inactive_jobs(session, subscription) -> None:
    user = await seed_user(session)
    credential = await seed_credential(session, user)
    active = await seed_job(session, user, credential.id, address="M1")
    await seed_job(session, user, credential.id, address="M2", status=JobStatus.error)
    reconciler = SubscriptionReconciler(session, subscription)

    assert await reconciler.active_addresses() == ["M1"]
    assert await reconciler.active_addresses(exclude_job_id=active.id) == []
    assert await reconciler.sync_all() == ["M1"]
    assert subscription.addresses == ["M1"]

    with pytest.raises(ValueError):
        await reconciler.add_address("  ")
