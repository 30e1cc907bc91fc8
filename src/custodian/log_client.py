"""
Public append-only log clients.

The commitment chain talks to the log through ``AuditLogPublisher``:
create a topic, submit a message, read a message back by sequence number.
``HttpLogPublisher`` speaks a mirror-node style REST API:

    POST /api/v1/topics                           {"memo"}    -> {"topic_id"}
    POST /api/v1/topics/{topic_id}/messages       {"message"} -> {"sequence_number", "consensus_timestamp"}
    GET  /api/v1/topics/{topic_id}/messages/{n}               -> {"sequence_number", "message" (base64), "consensus_timestamp"}

Requests carry a short-lived HS256 bearer token signed with the operator
secret. Submissions are never retried here: a resubmitted message would
occupy a second sequence number. Reads are retried on transport errors.
"""

from __future__ import annotations

import base64
import json
import logging
import secrets
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional, Protocol

import httpx
import jwt

from .errors import LogServiceError

logger = logging.getLogger(__name__)


LOG_AUDIENCE = "custodian-audit-log"


@dataclass
class PublishReceipt:
    topic_id: str
    sequence_number: int
    consensus_timestamp: str


@dataclass
class TopicMessage:
    topic_id: str
    sequence_number: int
    consensus_timestamp: str
    message: dict


class AuditLogPublisher(Protocol):
    def create_topic(self, memo: str) -> str: ...

    def submit(self, topic_id: str, message: dict) -> PublishReceipt: ...

    def read(self, topic_id: str, sequence_number: int) -> Optional[TopicMessage]: ...


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _json_object(response: httpx.Response, what: str) -> dict:
    """Decode a response body that must be a JSON object."""
    try:
        body = response.json()
    except ValueError as exc:
        raise LogServiceError(f"{what} returned non-JSON body") from exc
    if not isinstance(body, dict):
        raise LogServiceError(f"{what} returned {type(body).__name__}, expected an object")
    return body


class HttpLogPublisher:
    """REST client for the public topic service."""

    def __init__(
        self,
        base_url: str,
        operator_id: str,
        operator_secret: str,
        timeout_seconds: float = 10.0,
        token_ttl_seconds: int = 120,
        max_read_retries: int = 2,
        retry_delay: float = 0.5,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        if not operator_secret:
            raise ValueError("Log service operator secret is required")
        self.base_url = base_url.rstrip("/")
        self.operator_id = operator_id
        self._secret = operator_secret
        self.token_ttl_seconds = token_ttl_seconds
        self.max_read_retries = max_read_retries
        self.retry_delay = retry_delay
        self._http = httpx.Client(
            base_url=self.base_url,
            timeout=timeout_seconds,
            transport=transport,
        )

    def close(self) -> None:
        self._http.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()

    def _auth_headers(self, method: str, path: str) -> dict[str, str]:
        now = int(time.time())
        claims = {
            "sub": self.operator_id,
            "aud": LOG_AUDIENCE,
            "nbf": now,
            "exp": now + self.token_ttl_seconds,
            "uri": f"{method} {path}",
            "jti": secrets.token_hex(8),
        }
        token = jwt.encode(claims, self._secret, algorithm="HS256")
        return {"Authorization": f"Bearer {token}"}

    def _request(self, method: str, path: str, **kwargs) -> dict:
        try:
            response = self._http.request(
                method, path, headers=self._auth_headers(method, path), **kwargs
            )
        except httpx.HTTPError as exc:
            raise LogServiceError(f"{method} {path} failed: {exc}") from exc
        if response.status_code >= 400:
            raise LogServiceError(
                f"{method} {path} returned {response.status_code}: {response.text[:200]}"
            )
        return _json_object(response, f"{method} {path}")

    def create_topic(self, memo: str) -> str:
        body = self._request("POST", "/api/v1/topics", json={"memo": memo})
        topic_id = body.get("topic_id")
        if not topic_id:
            raise LogServiceError("Topic service response missing topic_id")
        return str(topic_id)

    def submit(self, topic_id: str, message: dict) -> PublishReceipt:
        body = self._request(
            "POST",
            f"/api/v1/topics/{topic_id}/messages",
            json={"message": json.dumps(message, separators=(",", ":"))},
        )
        try:
            return PublishReceipt(
                topic_id=topic_id,
                sequence_number=int(body["sequence_number"]),
                consensus_timestamp=str(body.get("consensus_timestamp") or _utc_now_iso()),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise LogServiceError(f"Malformed submit receipt: {body}") from exc

    def read(self, topic_id: str, sequence_number: int) -> Optional[TopicMessage]:
        path = f"/api/v1/topics/{topic_id}/messages/{sequence_number}"
        last_error: Optional[Exception] = None
        for attempt in range(self.max_read_retries + 1):
            try:
                response = self._http.get(path, headers=self._auth_headers("GET", path))
            except (httpx.TimeoutException, httpx.ConnectError) as exc:
                last_error = exc
                if attempt < self.max_read_retries:
                    logger.info(
                        "Log read retry (attempt %d/%d): %s",
                        attempt + 1,
                        self.max_read_retries + 1,
                        exc,
                    )
                    time.sleep(self.retry_delay * (attempt + 1))
                    continue
                break
            except httpx.HTTPError as exc:
                raise LogServiceError(f"GET {path} failed: {exc}") from exc
            if response.status_code == 404:
                return None
            if response.status_code >= 400:
                raise LogServiceError(f"GET {path} returned {response.status_code}")
            body = _json_object(response, f"GET {path}")
            try:
                message = json.loads(base64.b64decode(body["message"], validate=True).decode("utf-8"))
                if not isinstance(message, dict):
                    raise TypeError(f"message is {type(message).__name__}, not an object")
                return TopicMessage(
                    topic_id=topic_id,
                    sequence_number=int(body["sequence_number"]),
                    consensus_timestamp=str(body.get("consensus_timestamp", "")),
                    message=message,
                )
            except (KeyError, TypeError, ValueError) as exc:
                raise LogServiceError(f"Malformed message at {path}: {exc}") from exc
        raise LogServiceError(f"GET {path} failed after retries: {last_error}")


class InMemoryLogPublisher:
    """Process-local public log for development and tests.

    Set ``available = False`` to simulate an unreachable service.
    """

    def __init__(self, prefix: str = "0.0."):
        self.prefix = prefix
        self.available = True
        self._topics: dict[str, list[TopicMessage]] = {}
        self._memos: dict[str, str] = {}
        self._next_topic = 1000
        self._lock = threading.Lock()

    def _ensure_available(self) -> None:
        if not self.available:
            raise LogServiceError("Log service unreachable")

    def create_topic(self, memo: str) -> str:
        self._ensure_available()
        with self._lock:
            self._next_topic += 1
            topic_id = f"{self.prefix}{self._next_topic}"
            self._topics[topic_id] = []
            self._memos[topic_id] = memo
            return topic_id

    def submit(self, topic_id: str, message: dict) -> PublishReceipt:
        self._ensure_available()
        with self._lock:
            if topic_id not in self._topics:
                raise LogServiceError(f"Unknown topic {topic_id}")
            messages = self._topics[topic_id]
            entry = TopicMessage(
                topic_id=topic_id,
                sequence_number=len(messages) + 1,
                consensus_timestamp=_utc_now_iso(),
                message=json.loads(json.dumps(message)),
            )
            messages.append(entry)
            return PublishReceipt(topic_id, entry.sequence_number, entry.consensus_timestamp)

    def read(self, topic_id: str, sequence_number: int) -> Optional[TopicMessage]:
        self._ensure_available()
        with self._lock:
            messages = self._topics.get(topic_id, [])
            if 1 <= sequence_number <= len(messages):
                return messages[sequence_number - 1]
            return None

    def messages(self, topic_id: str) -> list[TopicMessage]:
        with self._lock:
            return list(self._topics.get(topic_id, []))

