# backend/tests/integration/test_api.py
import hmac
import hashlib
import json
from datetime import datetime, timezone
from unittest.mock import AsyncMock

from shopchat.config.settings import settings
from shopchat.models.conversation import CustomerToken, Message, QuantityIncrementRule
from shopchat.services.conversation_engine import TurnOutcome

API_PREFIX = f"/api/{settings.api_version}"
ADMIN_HEADERS = {"X-API-KEY": settings.api_key}


def _signed(payload):
    payload_bytes = json.dumps(payload).encode('utf-8')
    signature = "sha256=" + hmac.new(settings.whatsapp_app_secret.encode('utf-8'), payload_bytes, hashlib.sha256).hexdigest()
    return payload_bytes, {"X-Hub-Signature-256": signature, "Content-Type": "application/json"}


# --- WhatsApp webhook ---

def test_webhook_verification_success(test_client):
    params = {
        "hub.mode": "subscribe", "hub.challenge": "12345",
        "hub.verify_token": settings.whatsapp_verify_token
    }
    response = test_client.get(f"{API_PREFIX}/webhooks/whatsapp", params=params)
    assert response.status_code == 200
    assert response.text == "12345"


def test_webhook_verification_failure(test_client):
    params = {
        "hub.mode": "subscribe", "hub.challenge": "12345",
        "hub.verify_token": "wrong_token"
    }
    response = test_client.get(f"{API_PREFIX}/webhooks/whatsapp", params=params)
    assert response.status_code == 403


def test_handle_webhook_success(test_client, mocker):
    """A signed text message is handed to the WhatsApp channel handler."""
    mock_handler = mocker.patch("shopchat.routes.webhooks.chat_service.handle_whatsapp_message", new_callable=AsyncMock)

    payload = {"entry": [{"changes": [{"field": "messages", "value": {"messages": [
        {"from": "15551234567", "id": "wamid.ID", "text": {"body": "Hello"}, "type": "text"},
        {"from": "15551234567", "id": "wamid.IMG", "type": "image"},
    ]}}]}]}
    payload_bytes, headers = _signed(payload)

    response = test_client.post(f"{API_PREFIX}/webhooks/whatsapp", content=payload_bytes, headers=headers)

    assert response.status_code == 200
    assert response.json() == {"status": "ok", "messages": 1}
    mock_handler.assert_awaited_once_with("15551234567", "Hello")


def test_handle_webhook_invalid_signature(test_client, mocker):
    mock_handler = mocker.patch("shopchat.routes.webhooks.chat_service.handle_whatsapp_message", new_callable=AsyncMock)
    payload_bytes = json.dumps({"entry": []}).encode('utf-8')
    headers = {"X-Hub-Signature-256": "sha256=invalid", "Content-Type": "application/json"}

    response = test_client.post(f"{API_PREFIX}/webhooks/whatsapp", content=payload_bytes, headers=headers)

    assert response.status_code == 403
    mock_handler.assert_not_awaited()


# --- Web chat ---

def test_chat_returns_turn_outcome(test_client, mocker):
    outcome = TurnOutcome(
        conversation_id="web_anon_abc",
        reply="You need to authorize the app.",
        iterations=1,
        auth_required=True,
        auth_url="https://shopify.com/authentication/oauth/authorize?state=s",
    )
    mock_handler = mocker.patch("shopchat.routes.chat.chat_service.handle_web_message", new_callable=AsyncMock, return_value=outcome)

    response = test_client.post("/chat", json={"message": "Where is my order?", "anonymous_id": "abc"})

    assert response.status_code == 200
    body = response.json()
    assert body["conversation_id"] == "web_anon_abc"
    assert body["auth_required"] is True
    assert body["auth_url"] == outcome.auth_url
    assert mock_handler.await_args.args[0] == "Where is my order?"
    assert mock_handler.await_args.kwargs["conversation_id"] == "web_anon_abc"


def test_chat_rejects_empty_message(test_client, mocker):
    mock_handler = mocker.patch("shopchat.routes.chat.chat_service.handle_web_message", new_callable=AsyncMock)

    response = test_client.post("/chat", json={"message": ""})

    assert response.status_code == 422
    mock_handler.assert_not_awaited()


def test_chat_history(test_client, mocker):
    mocker.patch("shopchat.routes.chat.db_service.get_history", new_callable=AsyncMock, return_value=[
        Message(role="user", content=[{"type": "text", "text": "Hi"}]),
        Message(role="assistant", content=[{"type": "text", "text": "Hello!"}]),
    ])

    response = test_client.get("/chat/history", params={"conversation_id": "web_anon_abc"})

    assert response.status_code == 200
    messages = response.json()["data"]["messages"]
    assert [m["role"] for m in messages] == ["user", "assistant"]


def test_chat_reset(test_client, mocker):
    mock_reset = mocker.patch("shopchat.routes.chat.chat_service.reset_conversation", new_callable=AsyncMock, return_value=4)

    response = test_client.post("/chat/reset", json={"conversation_id": "web_anon_abc"})

    assert response.status_code == 200
    assert response.json()["data"] == {"conversation_id": "web_anon_abc", "deleted_messages": 4}
    mock_reset.assert_awaited_once_with("web_anon_abc")


def test_chat_reset_requires_conversation_id(test_client, mocker):
    mock_reset = mocker.patch("shopchat.routes.chat.chat_service.reset_conversation", new_callable=AsyncMock)

    assert test_client.post("/chat/reset", json={}).status_code == 422
    mock_reset.assert_not_awaited()


def test_chat_reset_failure_is_500(test_client, mocker):
    mocker.patch("shopchat.routes.chat.chat_service.reset_conversation", new_callable=AsyncMock, return_value=None)

    response = test_client.post("/chat/reset", json={"conversation_id": "web_anon_abc"})

    assert response.status_code == 500


# --- OAuth callback ---

def test_auth_callback_success(test_client, mocker):
    token = CustomerToken(conversation_id="whatsapp_15551234567", access_token="tok", expires_at=datetime.now(timezone.utc))
    mocker.patch("shopchat.routes.auth.oauth_callback_handler.exchange", new_callable=AsyncMock,
                 return_value=("whatsapp_15551234567", token))
    mock_send = mocker.patch("shopchat.routes.auth.whatsapp_service.send_message", new_callable=AsyncMock)
    mock_resume = mocker.patch("shopchat.routes.auth.chat_service.resume_after_authorization", new_callable=AsyncMock)

    response = test_client.get(f"{API_PREFIX}/auth/callback", params={"code": "c", "state": "s"})

    assert response.status_code == 200
    assert "Authorization successful" in response.text
    assert mock_send.await_args.args[0] == "15551234567"
    mock_resume.assert_awaited_once_with("whatsapp_15551234567")


def test_auth_callback_without_code(test_client, mocker):
    mock_exchange = mocker.patch("shopchat.routes.auth.oauth_callback_handler.exchange", new_callable=AsyncMock)

    response = test_client.get(f"{API_PREFIX}/auth/callback", params={"error": "<script>access_denied</script>"})

    assert response.status_code == 400
    assert "<script>" not in response.text
    mock_exchange.assert_not_awaited()


# --- Admin ---

def test_quantity_sync_requires_api_key(test_client):
    response = test_client.post(f"{API_PREFIX}/admin/quantity-increments/sync")
    assert response.status_code == 403


def test_quantity_sync(test_client, mocker):
    rules = [
        QuantityIncrementRule(entity_id="gid://shopify/Product/1", increment=5, entity_type="product"),
        QuantityIncrementRule(entity_id="gid://shopify/ProductVariant/11", increment=10, entity_type="variant"),
    ]
    mocker.patch("shopchat.routes.admin.shopify_service.fetch_quantity_increment_rules", new_callable=AsyncMock, return_value=rules)
    mock_upsert = mocker.patch("shopchat.routes.admin.db_service.upsert_increments", new_callable=AsyncMock, return_value=2)

    response = test_client.post(f"{API_PREFIX}/admin/quantity-increments/sync", headers=ADMIN_HEADERS)

    assert response.status_code == 200
    data = response.json()["data"]
    assert (data["fetched"], data["upserted"], data["products"], data["variants"]) == (2, 2, 1, 1)
    mock_upsert.assert_awaited_once_with(rules)


def test_quantity_sync_upstream_failure(test_client, mocker):
    mocker.patch("shopchat.routes.admin.shopify_service.fetch_quantity_increment_rules", new_callable=AsyncMock,
                 side_effect=RuntimeError("SHOPIFY_ADMIN_ACCESS_TOKEN is not configured"))

    response = test_client.post(f"{API_PREFIX}/admin/quantity-increments/sync", headers=ADMIN_HEADERS)

    assert response.status_code == 502


# --- Public ---

def test_health(test_client):
    response = test_client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "healthy"


def test_metrics_require_api_key(test_client):
    assert test_client.get("/metrics").status_code == 403
    response = test_client.get("/metrics", headers=ADMIN_HEADERS)
    assert response.status_code == 200
    assert "tool_calls_total" in response.text
