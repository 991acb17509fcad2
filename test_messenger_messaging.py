import asyncio
import json

import httpx

from messenger_messaging import MetaMessengerClient, verify_subscription


def test_verify_subscription_echoes_challenge():
    assert verify_subscription("secret", "1158201444", "secret") == "1158201444"
    assert verify_subscription("secret", "", "secret") == ""


def test_verify_subscription_rejects():
    assert verify_subscription("wrong", "1158201444", "secret") is None
    assert verify_subscription(None, "1158201444", "secret") is None
    assert verify_subscription("secret", None, "secret") is None
    assert verify_subscription(None, "abc", None) is None


def make_client(handler, token="page-token"):
    return MetaMessengerClient(token, api_version="v19.0", transport=httpx.MockTransport(handler))


def test_send_text_posts_to_send_api():
    requests = []

    def handler(request):
        requests.append(request)
        return httpx.Response(200, json={"recipient_id": "42", "message_id": "m1"})

    client = make_client(handler)
    assert asyncio.run(client.send_text("42", "مرحباً")) is True

    (request,) = requests
    assert request.method == "POST"
    assert request.url.path == "/v19.0/me/messages"
    assert request.url.params["access_token"] == "page-token"
    assert json.loads(request.content) == {"recipient": {"id": "42"}, "message": {"text": "مرحباً"}}


def test_send_text_reports_api_errors():
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(400, json={"error": {"message": "Invalid OAuth access token"}})

    client = make_client(handler)
    assert asyncio.run(client.send_text("42", "hi")) is False
    assert len(calls) == 1


def test_send_text_swallows_transport_errors():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    client = make_client(handler)
    assert asyncio.run(client.send_text("42", "hi")) is False


def test_disabled_client_does_not_send():
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(200)

    client = make_client(handler, token=None)
    assert not client.enabled
    assert asyncio.run(client.send_text("42", "hi")) is False
    assert calls == []


def test_verify_subscription_ignores_mode():
    assert verify_subscription("secret", "abc", "secret") == "abc"
