import re
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient

from eatsome.auth import issue_token
from eatsome.config import Settings
from eatsome.main import Services, app
from eatsome.models import EnrichmentStatus

from test_auth import BOT_TOKEN, init_data_fields, sign_init_data

JWT_SECRET = "test-secret"


@pytest.fixture
def services(storage):
    return Services(
        settings=Settings(
            jwt_secret=JWT_SECRET,
            telegram_bot_token=BOT_TOKEN,
            telegram_webhook_secret="wh-secret",
        ),
        storage=storage,
        runner=MagicMock(),
        supervisor=MagicMock(),
    )


@pytest.fixture
def client(services):
    app.state.services = services
    yield TestClient(app)
    app.state.services = None


@pytest.fixture
def headers(user):
    return {"Authorization": f"Bearer {issue_token(user.id, user.chat_id, JWT_SECRET)}"}


def test_health(client):
    assert client.get("/health").json() == {"status": "ok"}


def test_requires_token(client):
    assert client.get("/api/posts").status_code == 401
    assert client.get("/api/posts", headers={"Authorization": "Bearer nope"}).status_code == 401


def test_telegram_login_creates_user_once(client, services):
    query = sign_init_data(init_data_fields())

    first = client.post(f"/auth/telegram?{query}")
    assert first.status_code == 200
    body = first.json()
    assert body["user"]["chat_id"] == 1001
    assert body["user"]["language"] == "ru"
    assert body["token"]

    second = client.post(f"/auth/telegram?{query}").json()
    assert second["user"]["id"] == body["user"]["id"]


def test_telegram_login_rejects_bad_signature(client):
    query = sign_init_data(init_data_fields(), bot_token="999:wrong")
    assert client.post(f"/auth/telegram?{query}").status_code == 401


def test_create_post_starts_enrichment(client, services, headers, user):
    response = client.post("/api/posts", json={"photo_url": "https://cdn/1.jpg", "text": "hi"}, headers=headers)

    assert response.status_code == 201
    post = response.json()
    assert post["enrichment_status"] == EnrichmentStatus.PENDING
    assert post["hidden_at"] is None
    services.runner.submit.assert_called_once_with(post["id"], user.id, "en")


def test_rerun_enrichment_is_forced(client, services, headers, user, storage):
    post = storage.create_post(user.id, "https://cdn/1.jpg")

    async def run():
        return storage.get_post(post.id)

    services.runner.submit.side_effect = lambda *args, **kwargs: run()
    response = client.post(f"/api/posts/{post.id}/ai", headers=headers)

    assert response.status_code == 200
    assert response.json()["id"] == post.id
    assert services.runner.submit.call_args.kwargs["force"] is True


def test_missing_post(client, headers):
    assert client.get("/api/posts/12345", headers=headers).status_code == 404


def test_feed_and_reactions(client, headers, storage, user):
    post = storage.create_post(user.id, "https://cdn/1.jpg", hidden=False)

    assert client.post(f"/api/posts/{post.id}/react/smile", headers=headers).status_code == 204
    assert client.post(f"/api/posts/{post.id}/react/love", headers=headers).status_code == 400

    feed = client.get("/api/posts", headers=headers).json()
    assert feed[0]["reactions"]["smile"] == 1
    assert feed[0]["user_reaction"] == "smile"

    assert client.delete(f"/api/posts/{post.id}/react", headers=headers).status_code == 204
    assert client.delete(f"/api/posts/{post.id}/react", headers=headers).status_code == 404


def test_update_post_with_unknown_tag(client, headers, storage, user):
    post = storage.create_post(user.id, "https://cdn/1.jpg")
    response = client.put(
        f"/api/posts/{post.id}",
        json={"photo_url": "https://cdn/1.jpg", "tag_ids": [424242]},
        headers=headers,
    )
    assert response.status_code == 400


def test_presigned_url(client, services, headers, user):
    services.media = MagicMock()
    services.media.presigned_upload_url.return_value = "https://s3/signed"
    services.media.public_url.side_effect = lambda key: f"https://cdn/{key}"

    body = client.post("/api/presigned-url", json={"filename": "lunch.PNG"}, headers=headers).json()

    assert body["url"] == "https://s3/signed"
    assert re.fullmatch(rf"{user.id}/\d{{4}}-\d{{2}}-\d{{2}}/[A-Za-z0-9]{{10}}\.png", body["key"])
    assert body["public_url"] == f"https://cdn/{body['key']}"
    services.media.presigned_upload_url.assert_called_once_with(body["key"], 900)

    bad = client.post("/api/presigned-url", json={"filename": "virus.exe"}, headers=headers)
    assert bad.status_code == 400


def test_presigned_url_without_storage(client, headers):
    assert client.post("/api/presigned-url", json={"filename": "a.jpg"}, headers=headers).status_code == 503


def test_user_settings(client, headers):
    response = client.put("/api/users/me", json={"language": "ru", "weight": 72.5}, headers=headers)
    assert response.status_code == 200
    assert response.json()["language"] == "ru"

    me = client.get("/api/users/me", headers=headers).json()
    assert me["weight"] == 72.5

    assert client.post("/api/users/me/join", headers=headers).status_code == 204
    assert client.get("/api/users/me", headers=headers).json()["requested_to_join_at"] is not None


def test_webhook_secret(client, services):
    services.bot_handler = MagicMock()
    services.bot_handler.handle_update = AsyncMock()
    payload = {"update_id": 1}

    assert client.post("/wh/telegram", json=payload).status_code == 403

    response = client.post(
        "/wh/telegram", json=payload, headers={"X-Telegram-Bot-Api-Secret-Token": "wh-secret"}
    )
    assert response.status_code == 200
    services.bot_handler.handle_update.assert_awaited_once_with(payload)
