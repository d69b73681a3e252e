import pytest
import requests

from notifier import (
    PRIORITY_HIGH, RIDE_REQUEST, Delivery, LoggingNotifier, NotificationError,
    PushGatewayNotifier, build_payload, create_notifier, fan_out,
)

from conftest import RecordingNotifier


class FakeResponse:
    def __init__(self, status):
        self.status_code = status

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} Server Error")


class FakeSession:
    def __init__(self, status=200):
        self.status = status
        self.calls = []

    def post(self, url, json=None, headers=None, timeout=None):
        self.calls.append({"url": url, "json": json, "headers": headers, "timeout": timeout})
        return FakeResponse(self.status)


def test_build_payload():
    payload = build_payload(RIDE_REQUEST, {"rideId": "r1"}, title="t", body="b", emergency=True)
    assert payload["type"] == RIDE_REQUEST
    assert payload["emergency"] is True
    assert payload["data"]["rideId"] == "r1"
    assert payload["data"]["type"] == RIDE_REQUEST
    assert "timestamp" in payload["data"]
    assert payload["notification"] == {"title": "t", "body": "b"}
    assert "notification" not in build_payload(RIDE_REQUEST, {})


@pytest.mark.asyncio
async def test_gateway_posts_message():
    session = FakeSession()
    notifier = PushGatewayNotifier("https://push.example/send", api_key="secret", timeout=3, session=session)
    await notifier.send("token-1", build_payload(RIDE_REQUEST, {"rideId": "r1"}, title="t"), PRIORITY_HIGH)

    [call] = session.calls
    assert call["url"] == "https://push.example/send"
    assert call["headers"]["Authorization"] == "Bearer secret"
    assert call["timeout"] == 3
    assert call["json"]["to"] == "token-1"
    assert call["json"]["priority"] == PRIORITY_HIGH
    assert call["json"]["data"]["rideId"] == "r1"


@pytest.mark.asyncio
async def test_gateway_error_raises():
    notifier = PushGatewayNotifier("https://push.example/send", session=FakeSession(status=502))
    with pytest.raises(NotificationError):
        await notifier.send("token-1", build_payload(RIDE_REQUEST, {}))


@pytest.mark.asyncio
async def test_fan_out_isolates_failures():
    notifier = RecordingNotifier(failing={"bad"})
    payload = build_payload(RIDE_REQUEST, {})
    sent = await fan_out(notifier, [
        Delivery("good-1", payload), Delivery("bad", payload, label="driver bad"), Delivery("good-2", payload),
    ])
    assert sent == 2
    assert notifier.addresses(RIDE_REQUEST) == {"good-1", "good-2"}
    assert await fan_out(notifier, []) == 0


def test_create_notifier():
    assert isinstance(create_notifier(None), LoggingNotifier)
    assert isinstance(create_notifier("https://push.example/send"), PushGatewayNotifier)
