"""MindfulAI — QStash Managed Queue.

Publishing goes through QStash's REST API; QStash then calls the worker
webhook with an `Upstash-Signature` JWT that `QStashReceiver` verifies.
"""

import base64
import hashlib
import json
from typing import Any, Dict, Optional

import httpx
import jwt

from app.config import settings
from app.core.logging import get_logger

logger = get_logger("queue.qstash")

WORKER_PATH = "/api/meta-marketing-worker"

INITIAL_RETRIES = 3
INITIAL_DELAY = 5  # seconds
FOLLOW_UP_RETRIES = 3
FOLLOW_UP_DELAY = 2


class QStashError(Exception):
    """Raised when a message could not be published."""

    def __init__(self, message: str, status_code: int = 0):
        self.status_code = status_code
        super().__init__(message)


class SignatureError(Exception):
    """Raised when an incoming QStash signature does not verify."""


class QStashClient:
    """Minimal async publisher for the QStash v2 API."""

    def __init__(
        self,
        token: str | None = None,
        base_url: str | None = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.token = token or settings.qstash_token
        self.base_url = (base_url or settings.qstash_url).rstrip("/")
        self._transport = transport

    async def publish_json(
        self,
        url: str,
        body: Dict[str, Any],
        retries: int = INITIAL_RETRIES,
        delay: Optional[int] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> str:
        """Publish a JSON body to `url`. Returns the QStash messageId."""
        request_headers = {
            "Authorization": f"Bearer {self.token}",
            "Content-Type": "application/json",
            "Upstash-Retries": str(retries),
        }
        if delay:
            request_headers["Upstash-Delay"] = f"{int(delay)}s"
        for name, value in (headers or {}).items():
            if name.lower() == "content-type":
                continue
            request_headers[f"Upstash-Forward-{name}"] = str(value)

        try:
            async with httpx.AsyncClient(timeout=15.0, transport=self._transport) as client:
                resp = await client.post(
                    f"{self.base_url}/v2/publish/{url}",
                    content=json.dumps(body),
                    headers=request_headers,
                )
        except httpx.RequestError as e:
            raise QStashError(f"QStash publish failed: {e}") from e

        if resp.status_code >= 400:
            raise QStashError(
                f"QStash publish failed ({resp.status_code}): {resp.text[:300]}",
                resp.status_code,
            )
        message_id = resp.json().get("messageId", "")
        logger.info(f"📤 Published to {url}: {message_id}")
        return message_id


def _body_hash(body: bytes) -> str:
    return base64.urlsafe_b64encode(hashlib.sha256(body).digest()).decode().rstrip("=")


class QStashReceiver:
    """Verifies `Upstash-Signature` JWTs (HS256) with current/next keys."""

    def __init__(
        self,
        current_signing_key: str | None = None,
        next_signing_key: str | None = None,
        leeway: int = 0,
    ):
        self.current_signing_key = current_signing_key or settings.qstash_current_signing_key
        self.next_signing_key = next_signing_key or settings.qstash_next_signing_key
        self.leeway = leeway

    def _verify_with_key(
        self, key: str, signature: str, body: bytes, url: Optional[str]
    ) -> Dict[str, Any]:
        try:
            claims = jwt.decode(
                signature,
                key,
                algorithms=["HS256"],
                issuer="Upstash",
                leeway=self.leeway,
                options={"require": ["exp", "iss", "sub", "body"], "verify_aud": False},
            )
        except jwt.ExpiredSignatureError as e:
            raise SignatureError("Signature expired") from e
        except jwt.InvalidTokenError as e:
            raise SignatureError(f"Invalid signature: {e}") from e

        if url is not None and claims.get("sub") != url:
            raise SignatureError(f"Signature subject {claims.get('sub')!r} does not match {url!r}")
        if str(claims.get("body", "")).rstrip("=") != _body_hash(body):
            raise SignatureError("Body hash does not match signature")
        return claims

    def verify(
        self, signature: Optional[str], body: bytes | str, url: Optional[str] = None
    ) -> Dict[str, Any]:
        """Return the verified claims, trying the current key then the next."""
        if not signature:
            raise SignatureError("Missing Upstash-Signature header")
        raw = body.encode() if isinstance(body, str) else body
        keys = [k for k in (self.current_signing_key, self.next_signing_key) if k]
        if not keys:
            raise SignatureError("No QStash signing keys configured")

        last_error: Optional[SignatureError] = None
        for key in keys:
            try:
                return self._verify_with_key(key, signature, raw, url)
            except SignatureError as e:
                last_error = e
        raise last_error


def worker_url() -> str:
    return f"{settings.worker_base_url}{WORKER_PATH}"


async def enqueue_sync(
    payload: Dict[str, Any],
    follow_up: bool = False,
    client: Optional[QStashClient] = None,
) -> str:
    """Queue one worker invocation for a sync payload (camelCase keys)."""
    client = client or QStashClient()
    headers = {
        "Content-Type": "application/json",
        "X-Job-Type": "meta-marketing-sync-chunk" if follow_up else "meta-marketing-sync",
        "X-Request-ID": payload.get("requestId", ""),
        "X-Phase": payload.get("phase") or "account",
        "X-Account-ID": payload.get("accountId", ""),
    }
    return await client.publish_json(
        worker_url(),
        payload,
        retries=FOLLOW_UP_RETRIES if follow_up else INITIAL_RETRIES,
        delay=FOLLOW_UP_DELAY if follow_up else INITIAL_DELAY,
        headers=headers,
    )
