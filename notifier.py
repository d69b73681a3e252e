"""
Push notification delivery.

Notifiers are best-effort: each send may fail on its own. fan_out sends a
batch concurrently and never lets one recipient's failure reach another or
the caller.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Optional, Protocol

import requests

logger = logging.getLogger(__name__)

LOCATION_UPDATE = "LOCATION_UPDATE"
RIDE_REQUEST = "RIDE_REQUEST"
RIDE_ACCEPTED = "RIDE_ACCEPTED"

PRIORITY_HIGH = "high"
PRIORITY_NORMAL = "normal"


class NotificationError(Exception):
    pass


class Notifier(Protocol):
    async def send(self, address: str, payload: Dict[str, Any], priority: str = PRIORITY_NORMAL) -> None: ...


@dataclass
class Delivery:
    address: str
    payload: Dict[str, Any]
    priority: str = PRIORITY_NORMAL
    label: str = ""


def build_payload(kind: str, data: Dict[str, Any], title: Optional[str] = None,
                  body: Optional[str] = None, emergency: bool = False) -> Dict[str, Any]:
    payload: Dict[str, Any] = {
        "type": kind,
        "emergency": emergency,
        "data": {**data, "type": kind, "timestamp": datetime.now(timezone.utc).isoformat()},
    }
    if title or body:
        payload["notification"] = {"title": title, "body": body}
    return payload


class PushGatewayNotifier:
    """Posts notifications to an HTTP push gateway (FCM relay or similar)."""

    def __init__(self, url: str, api_key: Optional[str] = None, timeout: float = 10.0,
                 session: Optional[requests.Session] = None):
        self.url = url
        self.api_key = api_key
        self.timeout = timeout
        self.session = session or requests.Session()

    def _post(self, address: str, payload: Dict[str, Any], priority: str) -> None:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        body = {
            "to": address,
            "priority": priority,
            "data": payload.get("data", {}),
            "notification": payload.get("notification"),
        }
        try:
            r = self.session.post(self.url, json=body, headers=headers, timeout=self.timeout)
            r.raise_for_status()
        except requests.RequestException as e:
            raise NotificationError(f"Push gateway error: {str(e)[:120]}") from e

    async def send(self, address, payload, priority=PRIORITY_NORMAL):
        await asyncio.to_thread(self._post, address, payload, priority)


class LoggingNotifier:
    """Used when no push gateway is configured; records intent in the log only."""

    async def send(self, address, payload, priority=PRIORITY_NORMAL):
        logger.info(f"[push:{priority}] {payload.get('type')} -> {address[:12]}...")


async def fan_out(notifier: Notifier, deliveries: Iterable[Delivery]) -> int:
    """Send every delivery concurrently. Returns how many succeeded; never raises."""
    batch = list(deliveries)
    if not batch:
        return 0
    results = await asyncio.gather(
        *(notifier.send(d.address, d.payload, d.priority) for d in batch),
        return_exceptions=True,
    )
    sent = 0
    for delivery, result in zip(batch, results):
        if isinstance(result, BaseException):
            logger.warning(f"Notification {delivery.payload.get('type')} to {delivery.label or 'recipient'} failed: {result}")
        else:
            sent += 1
    return sent


def create_notifier(url: Optional[str], api_key: Optional[str] = None, timeout: float = 10.0) -> Notifier:
    if url:
        return PushGatewayNotifier(url, api_key, timeout)
    logger.warning("PUSH_GATEWAY_URL not set; notifications will only be logged")
    return LoggingNotifier()
