import pytest
from fastapi.testclient import TestClient

from clipforge.main import create_app

from _testutil import balance, make_upload, make_user, run_instance


@pytest.fixture
def client(settings, pipeline):
    with TestClient(create_app(settings, pipeline)) as test_client:
        yield test_client


def _as(user_id):
    return {"X-User-Id": user_id}


def test_health(client):
    assert client.get("/health").json() == {"status": "ok"}


def test_requests_without_user_are_unauthorized(client):
    assert client.get("/credits").status_code == 401


def test_upload_url_creates_project_and_queued_file(client, session_factory):
    user_id = make_user(session_factory, credits=1)

    response = client.post(
        "/uploads/url",
        json={"filename": "talk.mp4", "contentType": "video/mp4", "projectName": "Keynote"},
        headers=_as(user_id),
    )

    assert response.status_code == 200
    body = response.json()
    assert body["key"].startswith(f"{user_id}/{body['project']['id']}/{body['uploadedFileId']}/")
    assert body["key"].endswith("/talk.mp4")
    assert body["signedUrl"].startswith("https://signed.test/upload/test-bucket/")
    assert body["project"]["name"] == "Keynote"

    status = client.get(f"/projects/{body['project']['id']}/status", headers=_as(user_id)).json()
    assert status["status"] == "queued"
    assert status["uploaded"] is False


def test_upload_url_for_unknown_user(client):
    response = client.post(
        "/uploads/url", json={"filename": "talk.mp4", "contentType": "video/mp4"}, headers=_as("ghost")
    )
    assert response.status_code == 404
    assert response.json()["error"] == "User not found"


def test_generate_without_credits_is_forbidden(client, session_factory, store, scheduled):
    user_id = make_user(session_factory, credits=0)
    project_id, key = make_upload(session_factory, store, user_id)

    response = client.post(
        "/clips/generate", json={"s3_key": key, "projectId": project_id}, headers=_as(user_id)
    )

    assert response.status_code == 403
    assert response.json()["code"] == "INSUFFICIENT_CREDITS"
    assert scheduled == []


def test_generate_then_poll_until_completed(client, pipeline, session_factory, store, scheduled):
    user_id = make_user(session_factory, credits=2)
    project_id, key = make_upload(session_factory, store, user_id)

    response = client.post(
        "/clips/generate",
        json={"s3_key": key, "projectId": project_id, "max_clips": 3},
        headers=_as(user_id),
    )

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "queued"
    assert scheduled == [body["instanceId"]]
    assert balance(session_factory, user_id) == 1

    run_instance(pipeline, body["instanceId"])

    status = client.get(f"/projects/{project_id}/status", headers=_as(user_id)).json()
    assert status["status"] == "completed"
    assert status["uploaded"] is True

    clips = client.get(f"/projects/{project_id}/clips", headers=_as(user_id)).json()
    assert len(clips["clips"]) == 3
    assert clips["hasMore"] is False
    first = clips["clips"][0]
    assert first["url"] == f"https://signed.test/test-bucket/{first['r2Key']}?expires=3600"
    assert first["name"].startswith("clip_")


def test_clips_are_backfilled_from_storage(client, session_factory, store):
    user_id = make_user(session_factory, credits=0)
    project_id, key = make_upload(session_factory, store, user_id)
    folder = key.rsplit("/", 1)[0]
    store.objects.update({f"{folder}/clip_a.mp4", f"{folder}/clip_b.mp4", f"{folder}/clip_c.mp4"})

    page = client.get(f"/projects/{project_id}/clips?limit=2", headers=_as(user_id)).json()
    assert len(page["clips"]) == 2
    assert page["hasMore"] is True

    listings = store.listings
    rest = client.get(f"/projects/{project_id}/clips?limit=2&offset=2", headers=_as(user_id)).json()
    assert len(rest["clips"]) == 1
    # rows exist now, storage is not listed again
    assert store.listings == listings


def test_clips_limit_is_bounded(client, session_factory, store):
    user_id = make_user(session_factory, credits=0)
    project_id, _ = make_upload(session_factory, store, user_id)
    assert client.get(f"/projects/{project_id}/clips?limit=101", headers=_as(user_id)).status_code == 422


def test_revalidate_derives_status_from_storage(client, session_factory, store):
    user_id = make_user(session_factory, credits=0)
    project_id, key = make_upload(session_factory, store, user_id)

    failed = client.post(f"/projects/{project_id}/revalidate", headers=_as(user_id)).json()
    assert failed["status"] == "failed"

    store.objects.add(key.rsplit("/", 1)[0] + "/clip_0.mp4")
    completed = client.post(f"/projects/{project_id}/revalidate", headers=_as(user_id)).json()
    assert completed["status"] == "completed"
    assert completed["uploaded"] is True


def test_revalidate_leaves_an_active_job_alone(client, pipeline, session_factory, store, processor):
    user_id = make_user(session_factory, credits=1)
    project_id, key = make_upload(session_factory, store, user_id)
    seen = []
    process = processor.process

    def process_and_revalidate(s3_key, max_clips):
        seen.append(client.post(f"/projects/{project_id}/revalidate", headers=_as(user_id)).json())
        return process(s3_key, max_clips)

    processor.process = process_and_revalidate
    body = client.post(
        "/clips/generate", json={"s3_key": key, "projectId": project_id}, headers=_as(user_id)
    ).json()

    queued = client.post(f"/projects/{project_id}/revalidate", headers=_as(user_id)).json()
    assert queued["status"] == "queued"

    run_instance(pipeline, body["instanceId"])

    assert seen[0]["status"] == "processing"
    assert seen[0]["uploaded"] is True
    status = client.get(f"/projects/{project_id}/status", headers=_as(user_id)).json()
    assert status["status"] == "completed"
    assert status["uploaded"] is True


def test_other_users_project_is_not_found(client, session_factory, store):
    owner = make_user(session_factory, credits=0)
    project_id, _ = make_upload(session_factory, store, owner)
    stranger = make_user(session_factory, credits=0)

    response = client.get(f"/projects/{project_id}/status", headers=_as(stranger))

    assert response.status_code == 404
    assert response.json()["error"] == "Project not found"


@pytest.mark.parametrize(
    "plan, credits, max_credits, message",
    [
        ("pro", 5, 20, "5 credits remaining"),
        ("max", 2, 100, "You're running low on credits (2 remaining). Consider upgrading your plan."),
        ("unknown", 0, 0, "You've run out of credits. Upgrade your plan to continue creating clips."),
    ],
)
def test_credits(client, session_factory, plan, credits, max_credits, message):
    user_id = make_user(session_factory, credits=credits, plan=plan)

    body = client.get("/credits", headers=_as(user_id)).json()

    assert body["credits"] == credits
    assert body["maxCredits"] == max_credits
    assert body["message"] == message
    assert body["plan"] == (plan if plan != "unknown" else "free")
