"""Test suite for the API endpoints."""

import pytest
from httpx import ASGITransport, AsyncClient

from campus_dm.api.rate_limiter import SlidingWindowRateLimiter
from campus_dm.api.app import create_app
from campus_dm.domain.errors import StorageUnavailable

from conftest import auth_headers, make_token


async def start(client, sender, receiver, content="hi there"):
    return await client.post(
        "/conversations",
        json={"receiverId": receiver.id, "messageContent": content},
        headers=auth_headers(sender),
    )


@pytest.mark.asyncio
async def test_requires_authentication(client):
    """Every messaging route answers 401 without a valid token."""
    requests = [
        ("get", "/conversations", None),
        ("post", "/conversations", {"receiverId": "x", "messageContent": "hi"}),
        ("get", "/conversations/abc/messages", None),
        ("patch", "/conversations/abc", {"markRead": True}),
        ("post", "/messages", {"conversationId": "abc", "content": "hi"}),
    ]
    for method, url, body in requests:
        kwargs = {"json": body} if body is not None else {}
        response = await client.request(method.upper(), url, **kwargs)
        assert response.status_code == 401, url
        assert response.json()["kind"] == "UNAUTHENTICATED"

    response = await client.get(
        "/conversations", headers={"Authorization": "Bearer not-a-jwt"}
    )
    assert response.status_code == 401


@pytest.mark.asyncio
async def test_expired_token_is_rejected(client, alice):
    token = make_token(alice.user_id, expires_in=-60)
    response = await client.get("/conversations", headers={"Authorization": f"Bearer {token}"})
    assert response.status_code == 401
    assert response.json()["error"] == "Token has expired"


@pytest.mark.asyncio
async def test_unknown_profile_is_not_found(client):
    token = make_token("auth-nobody")
    response = await client.get("/conversations", headers={"Authorization": f"Bearer {token}"})
    assert response.status_code == 404
    assert "create your profile" in response.json()["error"]


@pytest.mark.asyncio
async def test_start_requires_confirmed_email(client, alice, bob):
    response = await client.post(
        "/conversations",
        json={"receiverId": bob.id, "messageContent": "hi"},
        headers=auth_headers(alice, email_confirmed=False),
    )
    assert response.status_code == 403
    assert response.json()["kind"] == "FORBIDDEN"


@pytest.mark.asyncio
async def test_create_conversation(client, alice, bob):
    response = await start(client, alice, bob, "  hi there ")
    assert response.status_code == 201
    data = response.json()
    assert "conversationId" in data
    assert data["message"]["content"] == "hi there"
    assert data["message"]["sender_id"] == alice.id
    assert data["message"]["conversation_id"] == data["conversationId"]


@pytest.mark.asyncio
async def test_create_conversation_validation(client, alice, bob):
    response = await start(client, alice, bob, "   ")
    assert response.status_code == 400
    assert response.json()["kind"] == "INVALID_ARGUMENT"

    response = await start(client, alice, alice, "me again")
    assert response.status_code == 400
    assert response.json()["error"] == "You cannot send a message to yourself."

    response = await client.post(
        "/conversations",
        json={"receiverId": "no-such-profile", "messageContent": "hi"},
        headers=auth_headers(alice),
    )
    assert response.status_code == 404

    response = await client.post(
        "/conversations", json={"receiverId": bob.id}, headers=auth_headers(alice)
    )
    assert response.status_code == 400


@pytest.mark.asyncio
async def test_existing_conversation_returns_conflict_with_redirect(client, alice, bob):
    created = (await start(client, alice, bob)).json()

    response = await start(client, bob, alice, "hello?")
    assert response.status_code == 409
    data = response.json()
    assert data["kind"] == "CONVERSATION_ALREADY_EXISTS"
    assert data["conversationId"] == created["conversationId"]
    assert data["status"] == "pending"


@pytest.mark.asyncio
async def test_full_handshake_flow(client, alice, bob):
    conversation_id = (await start(client, alice, bob)).json()["conversationId"]

    # Pending: nobody can send
    response = await client.post(
        "/messages",
        json={"conversationId": conversation_id, "content": "are you free?"},
        headers=auth_headers(alice),
    )
    assert response.status_code == 409
    assert "wait for the user" in response.json()["error"]

    response = await client.post(
        "/messages",
        json={"conversationId": conversation_id, "content": "sure"},
        headers=auth_headers(bob),
    )
    assert response.status_code == 409
    assert "accept the request" in response.json()["error"]

    # Initiator cannot accept their own request
    response = await client.patch(
        f"/conversations/{conversation_id}",
        json={"status": "active"},
        headers=auth_headers(alice),
    )
    assert response.status_code == 403
    assert response.json()["error"] == "Only the recipient can accept or ignore a request."

    # Recipient accepts and reads
    response = await client.patch(
        f"/conversations/{conversation_id}",
        json={"status": "active", "markRead": True},
        headers=auth_headers(bob),
    )
    assert response.status_code == 200
    conversation = response.json()["conversation"]
    assert conversation["status"] == "active"
    assert conversation["unread_count_recipient"] == 0

    response = await client.post(
        "/messages",
        json={"conversationId": conversation_id, "content": "yes, what's up"},
        headers=auth_headers(bob),
    )
    assert response.status_code == 201
    assert response.json()["message"]["content"] == "yes, what's up"

    inbox = (await client.get("/conversations", headers=auth_headers(alice))).json()
    assert inbox["totalUnreadCount"] == 1
    summary = inbox["conversations"][0]
    assert summary["id"] == conversation_id
    assert summary["is_initiator"] is True
    assert summary["other_party"]["id"] == bob.id
    assert summary["last_message"]["content"] == "yes, what's up"

    response = await client.patch(
        f"/conversations/{conversation_id}",
        json={"markRead": True},
        headers=auth_headers(alice),
    )
    assert response.status_code == 200
    assert response.json()["conversation"]["unread_count_initiator"] == 0

    inbox = (await client.get("/conversations", headers=auth_headers(alice))).json()
    assert inbox["totalUnreadCount"] == 0


@pytest.mark.asyncio
async def test_get_thread(client, alice, bob):
    conversation_id = (await start(client, alice, bob, "m1")).json()["conversationId"]
    await client.patch(
        f"/conversations/{conversation_id}", json={"status": "active"}, headers=auth_headers(bob)
    )
    for sender, content in ((bob, "m2"), (alice, "m3")):
        await client.post(
            "/messages",
            json={"conversationId": conversation_id, "content": content},
            headers=auth_headers(sender),
        )

    response = await client.get(
        f"/conversations/{conversation_id}/messages", headers=auth_headers(bob)
    )
    assert response.status_code == 200
    data = response.json()
    assert [m["content"] for m in data["messages"]] == ["m1", "m2", "m3"]
    assert data["conversation"]["is_recipient"] is True
    assert data["conversation"]["is_initiator"] is False
    assert data["conversation"]["other_party"]["id"] == alice.id

    response = await client.get(
        f"/conversations/{conversation_id}/messages?limit=2&offset=1",
        headers=auth_headers(bob),
    )
    assert [m["content"] for m in response.json()["messages"]] == ["m2", "m3"]


@pytest.mark.asyncio
async def test_outsider_sees_not_found(client, alice, bob, carol):
    conversation_id = (await start(client, alice, bob)).json()["conversationId"]

    hidden = await client.get(
        f"/conversations/{conversation_id}/messages", headers=auth_headers(carol)
    )
    missing = await client.get(
        "/conversations/00000000-0000-0000-0000-000000000000/messages",
        headers=auth_headers(carol),
    )
    assert hidden.status_code == missing.status_code == 404
    assert hidden.json() == missing.json()

    response = await client.patch(
        f"/conversations/{conversation_id}", json={"status": "active"}, headers=auth_headers(carol)
    )
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_ignore_blocks_messages_and_further_responses(client, alice, bob):
    conversation_id = (await start(client, alice, bob)).json()["conversationId"]
    response = await client.patch(
        f"/conversations/{conversation_id}", json={"status": "ignored"}, headers=auth_headers(bob)
    )
    assert response.json()["conversation"]["status"] == "ignored"

    response = await client.post(
        "/messages",
        json={"conversationId": conversation_id, "content": "please?"},
        headers=auth_headers(alice),
    )
    assert response.status_code == 409
    assert response.json()["kind"] == "INVALID_STATE_TRANSITION"

    response = await client.patch(
        f"/conversations/{conversation_id}", json={"status": "active"}, headers=auth_headers(bob)
    )
    assert response.status_code == 409
    assert response.json()["error"] == "Conversation is not in a pending state."


@pytest.mark.asyncio
async def test_invalid_status_value(client, alice, bob):
    conversation_id = (await start(client, alice, bob)).json()["conversationId"]
    response = await client.patch(
        f"/conversations/{conversation_id}", json={"status": "blocked"}, headers=auth_headers(bob)
    )
    assert response.status_code == 400


@pytest.mark.asyncio
async def test_malformed_body(client, alice):
    response = await client.post(
        "/messages", json={"conversationId": ["not", "a", "string"]}, headers=auth_headers(alice)
    )
    assert response.status_code == 422


@pytest.mark.asyncio
async def test_rate_limit(settings, repository, alice):
    limiter = SlidingWindowRateLimiter(rate_limit=3, time_window=60)
    app = create_app(settings=settings, repository=repository, rate_limiter=limiter)

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        statuses = [
            (await client.get("/conversations", headers=auth_headers(alice))).status_code
            for _ in range(4)
        ]
        assert statuses == [200, 200, 200, 429]

        limited = await client.get("/conversations", headers=auth_headers(alice))
        assert limited.json()["kind"] == "RATE_LIMITED"
        assert limited.headers["Retry-After"] == "60"
        assert limited.json()["error"] == "Too many requests. Please slow down."
        assert "X-Request-ID" in limited.headers

        # Health and metrics are not limited
        assert (await client.get("/health")).status_code == 200


@pytest.mark.asyncio
async def test_metrics_and_request_id(client, alice, bob):
    response = await start(client, alice, bob)
    assert "X-Request-ID" in response.headers

    response = await client.get("/conversations", headers={"X-Request-ID": "req-123", **auth_headers(alice)})
    assert response.headers["X-Request-ID"] == "req-123"

    metrics = await client.get("/metrics")
    assert metrics.status_code == 200
    assert "conversations_started_total" in metrics.text
    assert "requests_total" in metrics.text


@pytest.mark.asyncio
async def test_accept_and_read_is_retryable(client, repository, alice, bob, monkeypatch):
    conversation_id = (await start(client, alice, bob)).json()["conversationId"]
    body = {"status": "active", "markRead": True}

    async def broken_transition(*args, **kwargs):
        raise StorageUnavailable("Storage is temporarily unavailable.")

    with monkeypatch.context() as patch:
        patch.setattr(repository, "transition_status", broken_transition)
        response = await client.patch(
            f"/conversations/{conversation_id}", json=body, headers=auth_headers(bob)
        )
    assert response.status_code == 503
    assert (await repository.get_conversation(conversation_id)).status == "pending"

    async def broken_mark_read(*args, **kwargs):
        raise StorageUnavailable("Storage is temporarily unavailable.")

    monkeypatch.setattr(repository, "mark_read", broken_mark_read)
    response = await client.patch(
        f"/conversations/{conversation_id}", json=body, headers=auth_headers(bob)
    )
    assert response.status_code == 200
    conversation = response.json()["conversation"]
    assert conversation["status"] == "active"
    assert conversation["unread_count_recipient"] == 0


@pytest.mark.asyncio
@pytest.mark.parametrize("query", ["offset=-1", "limit=-1", "limit=0", "limit=2&offset=-3"])
async def test_get_thread_rejects_bad_paging(client, alice, bob, query):
    conversation_id = (await start(client, alice, bob)).json()["conversationId"]

    response = await client.get(
        f"/conversations/{conversation_id}/messages?{query}", headers=auth_headers(bob)
    )
    assert response.status_code == 400
    assert response.json()["kind"] == "INVALID_ARGUMENT"
