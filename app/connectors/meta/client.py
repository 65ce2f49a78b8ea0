"""MindfulAI — Meta Graph API Client.

Handles authentication, retry logic, rate limiting, and cursor pagination.
Every call is paced by a token bucket sized to the API tier and reported to
optional metrics / usage recorders.
"""

import hashlib
import hmac
import json
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

import httpx

from app.config import settings
from app.core.logging import get_logger
from app.core.rate_limit import (
    BACKOFF_MAX,
    MAX_RETRIES,
    POINTS,
    RateLimitTracker,
    RateLimitUsage,
    TokenBucket,
    backoff_delay,
    dynamic_delay,
    is_rate_limit_error,
    parse_usage_headers,
    pause,
)

logger = get_logger("meta.client")

META_BASE = f"{settings.meta_base_url}/{settings.meta_api_version}"
MAX_TRANSIENT_RETRIES = 3

MetricsRecorder = Callable[..., Any]
UsageRecorder = Callable[[str, str, RateLimitUsage], Any]


def to_act_id(account_id: str) -> str:
    """`123` or `act_123` → `act_123`."""
    return account_id if account_id.startswith("act_") else f"act_{account_id}"


def strip_act_prefix(account_id: str) -> str:
    return account_id[4:] if account_id.startswith("act_") else account_id


class MetaAPIError(Exception):
    """Raised when Meta API returns an error."""

    def __init__(
        self,
        message: str,
        status_code: int = 0,
        error_code: int = 0,
        error_subcode: int = 0,
    ):
        self.status_code = status_code
        self.error_code = error_code
        self.error_subcode = error_subcode
        super().__init__(message)

    @property
    def is_rate_limit(self) -> bool:
        return is_rate_limit_error(self.error_code) or self.status_code == 429


@dataclass
class Page:
    """One page of a cursor-paginated edge."""

    data: List[Dict[str, Any]] = field(default_factory=list)
    after: Optional[str] = None
    has_next: bool = False


class MetaClient:
    """Async HTTP client for Meta Marketing API."""

    def __init__(
        self,
        access_token: str | None = None,
        ad_account_id: str | None = None,
        app_secret: str | None = None,
        metrics_recorder: Optional[MetricsRecorder] = None,
        usage_recorder: Optional[UsageRecorder] = None,
        bucket: Optional[TokenBucket] = None,
        tracker: Optional[RateLimitTracker] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        base_url: str = META_BASE,
    ):
        self.access_token = access_token or settings.meta_access_token
        self.ad_account_id = to_act_id(ad_account_id) if ad_account_id else ""
        self.app_secret = settings.meta_app_secret if app_secret is None else app_secret
        self.metrics_recorder = metrics_recorder
        self.usage_recorder = usage_recorder
        self.bucket = bucket or TokenBucket.for_tier()
        self.tracker = tracker or RateLimitTracker()
        self.base_url = base_url.rstrip("/")
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=30.0, transport=self._transport)
        return self._client

    async def close(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()

    async def __aenter__(self) -> "MetaClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    # ── Auth ──

    @property
    def appsecret_proof(self) -> Optional[str]:
        """HMAC-SHA256 of the access token keyed by the app secret."""
        if not self.app_secret:
            return None
        return hmac.new(
            self.app_secret.encode(), self.access_token.encode(), hashlib.sha256
        ).hexdigest()

    def _auth_params(self) -> Dict[str, Any]:
        params: Dict[str, Any] = {"access_token": self.access_token}
        proof = self.appsecret_proof
        if proof:
            params["appsecret_proof"] = proof
        return params

    def _url(self, path: str) -> str:
        if path.startswith("http"):
            return path
        return f"{self.base_url}/{path.lstrip('/')}"

    # ── Reporting ──

    def _report_call(
        self,
        endpoint: str,
        call_type: str,
        points: int,
        success: bool,
        error: Optional[MetaAPIError] = None,
    ) -> None:
        if self.metrics_recorder is None:
            return
        self.metrics_recorder(
            account_id=self.ad_account_id,
            endpoint=endpoint,
            call_type=call_type,
            points=points,
            success=success,
            error_code=str(error.error_code) if error else None,
            error_message=str(error) if error else None,
        )

    async def _observe_usage(self, endpoint: str, headers: httpx.Headers) -> RateLimitUsage:
        usage = parse_usage_headers(headers)
        if usage.is_empty:
            return usage
        if self.usage_recorder is not None:
            self.usage_recorder(self.ad_account_id, endpoint, usage)
        if usage.is_high:
            wait = dynamic_delay(endpoint, POINTS["INSIGHTS"] if "insights" in endpoint else POINTS["READ"])
            logger.warning(
                f"⚠️ High API usage ({usage.usage_percent:.0f}%) on {endpoint}, pausing {wait:.2f}s",
                extra={"endpoint": endpoint},
            )
            await pause(wait)
        return usage

    # ── Core Request Method ──

    async def _request(
        self,
        method: str,
        path: str,
        params: Dict[str, Any] | None = None,
        data: Dict[str, Any] | None = None,
        call_type: str = "READ",
        endpoint: str | None = None,
    ) -> Dict[str, Any]:
        """Make a request with pacing, retry + rate-limit handling."""
        url = self._url(path)
        label = endpoint or path
        points = POINTS.get(call_type, 1)
        query = {**(params or {}), **self._auth_params()}
        client = await self._get_client()

        retries = 0
        transient = 0
        while True:
            await self.bucket.acquire(points)
            await pause(self.tracker.remaining_cooldown())

            try:
                resp = await client.request(method, url, params=query, data=data)
            except httpx.RequestError as e:
                if transient < MAX_TRANSIENT_RETRIES:
                    wait = backoff_delay(transient)
                    transient += 1
                    logger.warning(f"Request error on {label}: {e}. Retrying in {wait:.1f}s")
                    await pause(wait)
                    continue
                err = MetaAPIError(
                    f"Connection failed after {MAX_TRANSIENT_RETRIES} retries: {e}"
                )
                self._report_call(label, call_type, points, False, err)
                raise err from e

            usage = await self._observe_usage(label, resp.headers)

            try:
                body = resp.json()
            except ValueError:
                body = {}
            if not isinstance(body, dict):
                body = {"data": body}

            if resp.status_code < 400 and "error" not in body:
                self.tracker.record_success()
                self._report_call(label, call_type, points, True)
                return body

            error = body.get("error") or {}
            err = MetaAPIError(
                error.get("message") or f"HTTP {resp.status_code} from {label}",
                resp.status_code,
                int(error.get("code") or 0),
                int(error.get("error_subcode") or 0),
            )
            self._report_call(label, call_type, points, False, err)

            if err.is_rate_limit and retries < MAX_RETRIES:
                # The cool-down is honoured at the top of the loop
                wait = self.tracker.record_rate_limit(retries)
                if usage.estimated_time_to_regain_access:
                    self.tracker.block_for(
                        min(usage.estimated_time_to_regain_access * 60, BACKOFF_MAX)
                    )
                retries += 1
                logger.warning(
                    f"⏳ Rate limited on {label} (code {err.error_code}). "
                    f"Retrying in {max(wait, self.tracker.remaining_cooldown()):.1f}s "
                    f"(attempt {retries}/{MAX_RETRIES})",
                    extra={"endpoint": label, "status_code": resp.status_code},
                )
                if "insights" in label:
                    await pause(settings.insights_delay)
                continue

            if resp.status_code >= 500 and transient < MAX_TRANSIENT_RETRIES:
                wait = backoff_delay(transient)
                transient += 1
                logger.warning(f"Server error {resp.status_code} on {label}. Retrying in {wait:.1f}s")
                await pause(wait)
                continue

            raise err

    # ── Pagination ──

    async def get_page(
        self,
        path: str,
        params: Dict[str, Any] | None = None,
        call_type: str = "READ",
        endpoint: str | None = None,
    ) -> Page:
        """Fetch a single page of an edge."""
        result = await self._request("GET", path, params, call_type=call_type, endpoint=endpoint)
        paging = result.get("paging") or {}
        return Page(
            data=result.get("data") or [],
            after=(paging.get("cursors") or {}).get("after"),
            has_next=bool(paging.get("next")),
        )

    async def paginate(
        self,
        path: str,
        params: Dict[str, Any] | None = None,
        max_pages: int = 50,
        call_type: str = "READ",
        endpoint: str | None = None,
    ) -> List[Dict[str, Any]]:
        """Fetch all pages of a paginated endpoint by following `after` cursors."""
        all_data: List[Dict[str, Any]] = []
        params = dict(params or {})

        for _ in range(max_pages):
            page = await self.get_page(path, params, call_type=call_type, endpoint=endpoint)
            all_data.extend(page.data)
            if not page.has_next or not page.after:
                break
            params["after"] = page.after

        logger.info(f"Fetched {len(all_data)} records from {endpoint or path}")
        return all_data

    # ── Objects ──

    async def read_object(
        self, object_id: str, fields: List[str] | str, endpoint: str | None = None
    ) -> Dict[str, Any]:
        """Read a single node (account, campaign, creative, ...)."""
        field_list = fields if isinstance(fields, str) else ",".join(fields)
        return await self._request("GET", object_id, {"fields": field_list}, endpoint=endpoint)

    async def post(
        self, path: str, data: Dict[str, Any], endpoint: str | None = None
    ) -> Dict[str, Any]:
        """Create/update through the Graph API. Costs WRITE points."""
        form = {
            key: json.dumps(value) if isinstance(value, (dict, list)) else value
            for key, value in data.items()
            if value is not None
        }
        return await self._request("POST", path, data=form, call_type="WRITE", endpoint=endpoint)

    # ── Token Validation ──

    async def validate_token(self) -> Dict[str, Any]:
        """Check if the access token is valid and return metadata."""
        result = await self._request(
            "GET", "debug_token", {"input_token": self.access_token}, endpoint="debug_token"
        )
        token_data = result.get("data", {})
        return {
            "valid": token_data.get("is_valid", False),
            "expires_at": token_data.get("expires_at", 0),
            "scopes": token_data.get("scopes", []),
            "app_id": token_data.get("app_id", ""),
        }

    # ── Account Info ──

    async def get_account_info(
        self, account_id: str | None = None, fields: List[str] | None = None
    ) -> Dict[str, Any]:
        """Fetch ad account details."""
        target = to_act_id(account_id) if account_id else self.ad_account_id
        return await self.read_object(
            target,
            fields or ["name", "account_id", "account_status", "currency", "timezone_name", "balance"],
            endpoint="account_info",
        )
