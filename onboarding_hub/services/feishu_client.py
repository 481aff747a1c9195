"""
Feishu Open Platform client.
Covers the three Feishu surfaces the bot needs: the CoreHR pre-hire roster,
the contacts directory (work email lookup and write), and IM messages for
bot cards. Vendor error codes are translated here and never leak further.
"""

import asyncio
import json
import time
from collections.abc import Awaitable, Callable
from datetime import date, datetime, timedelta, tzinfo
from typing import Any
from zoneinfo import ZoneInfo

import httpx

from onboarding_hub.features.provisioning.domain.errors import (
    TransientUpstreamError,
    UpstreamError,
)
from onboarding_hub.features.provisioning.domain.models import (
    COMPLETED,
    PREBOARDING,
    UNKNOWN_LOCATION,
    CommitResult,
    RosterCategory,
    RosterRecord,
)
from onboarding_hub.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

# Feishu API configuration
FEISHU_API_BASE_URL = "https://open.feishu.cn/open-apis"
TOKEN_PATH = "/auth/v3/tenant_access_token/internal"
TOKEN_EXPIRY_MARGIN_SECONDS = 300

# Request timeouts and retry configuration
REQUEST_TIMEOUT = 15  # seconds
MAX_RETRIES = 3
MAX_BACKOFF_SECONDS = 5
RETRY_STATUS_CODES = {429, 500, 502, 503, 504}
TOKEN_EXPIRED_CODES = {99991663, 99991664}
DUPLICATE_EMAIL_CODES = {1119, 1161038}

# Roster paging
SEARCH_PAGE_SIZE = 100
QUERY_BATCH_SIZE = 10
QUERY_CONCURRENCY = 3
ROSTER_LIMITS = {
    PREBOARDING: {"max_pages": 10, "max_records": 200, "cutoff_days": 90},
    COMPLETED: {"max_pages": 1, "max_records": 50, "cutoff_days": 180},
}
QUERY_FIELDS = ["person_info", "employment_info", "onboarding_info", "offer_info"]
LOCATION_CACHE_TTL_SECONDS = 30 * 60

EMAIL_TASK_NAME = "IT 填写工作邮箱"
INTERN_TYPE_ID = "7193602311107724832"
EMPLOYEE_TYPE_MAP = {
    "7193602309958436385": "regular",
    INTERN_TYPE_ID: "intern",
    "7193602323535480324": "contract",
    "7193602529916372492": "outsourced",
    "7193602238470964748": "consultant",
}


def _backoff(attempt: int) -> float:
    return min(2 ** (attempt - 1), MAX_BACKOFF_SECONDS)


def _parse_date(value: Any) -> date | None:
    if not value:
        return None
    try:
        return date.fromisoformat(str(value)[:10])
    except ValueError:
        return None


class FeishuClient:
    """
    Async Feishu client implementing RosterSource, EmailDirectory and Messenger.

    The tenant access token is cached until shortly before it expires and is
    refreshed immediately when Feishu reports it expired.
    """

    def __init__(
        self,
        app_id: str | None,
        app_secret: str | None,
        email_domain: str,
        chat_id: str | None = None,
        webhook_url: str | None = None,
        timezone: tzinfo | str = "Asia/Shanghai",
        base_url: str = FEISHU_API_BASE_URL,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        monotonic: Callable[[], float] = time.monotonic,
    ):
        self.app_id = app_id
        self.app_secret = app_secret
        self.email_domain = email_domain.lstrip("@")
        self.chat_id = chat_id
        self.webhook_url = webhook_url
        self.timezone = ZoneInfo(timezone) if isinstance(timezone, str) else timezone
        self.base_url = base_url.rstrip("/")
        self._sleep = sleep
        self._monotonic = monotonic
        self._client = self._create_client(transport)

        self._token: str | None = None
        self._token_expires_at = 0.0
        self._locations: dict[str, str] | None = None
        self._locations_expires_at = 0.0

    def _create_client(self, transport: httpx.AsyncBaseTransport | None) -> httpx.AsyncClient:
        """Create async HTTP client for the Open Platform."""
        timeout = httpx.Timeout(REQUEST_TIMEOUT)
        limits = httpx.Limits(max_keepalive_connections=10, max_connections=20)
        return httpx.AsyncClient(timeout=timeout, limits=limits, transport=transport)

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.aclose()

    # ==================== Transport ====================

    async def get_tenant_access_token(self) -> str:
        if self._token and self._monotonic() < self._token_expires_at:
            return self._token

        if not self.app_id or not self.app_secret:
            raise UpstreamError(
                "Feishu app credentials are not configured", error_code="not_configured"
            )

        data = await self._send(
            "POST",
            f"{self.base_url}{TOKEN_PATH}",
            json={"app_id": self.app_id, "app_secret": self.app_secret},
        )
        if data.get("code") != 0:
            raise UpstreamError(
                f"Feishu auth failed: {data.get('msg', 'unknown error')}",
                error_code=str(data.get("code")),
                response_data=data,
            )

        self._token = data["tenant_access_token"]
        expire = int(data.get("expire", 7200))
        self._token_expires_at = self._monotonic() + max(expire - TOKEN_EXPIRY_MARGIN_SECONDS, 0)
        logger.debug("Feishu tenant token refreshed", expires_in=expire)
        return self._token

    def invalidate_token(self) -> None:
        self._token = None
        self._token_expires_at = 0.0

    async def _send(self, method: str, url: str, auth: bool = False, **kwargs) -> dict:
        """
        Execute a request with retry and backoff and return the JSON body.

        Retries 429/5xx, network errors and expired tokens. Feishu business
        codes other than token expiry are returned to the caller.

        Raises:
            TransientUpstreamError: If every attempt failed transiently
            UpstreamError: If the response is not JSON
        """
        last_error = "no attempt made"
        status_code = None

        for attempt in range(1, MAX_RETRIES + 1):
            headers = {"Content-Type": "application/json; charset=utf-8"}
            if auth:
                headers["Authorization"] = f"Bearer {await self.get_tenant_access_token()}"

            try:
                response = await self._client.request(method, url, headers=headers, **kwargs)
            except httpx.RequestError as e:
                last_error, status_code = f"network error: {e}", None
            else:
                status_code = response.status_code
                try:
                    data = response.json() if response.content else {}
                except ValueError:
                    data = None

                code = data.get("code") if isinstance(data, dict) else None
                if code in TOKEN_EXPIRED_CODES:
                    self.invalidate_token()
                    last_error = f"access token expired (code {code})"
                elif status_code in RETRY_STATUS_CODES or status_code >= 500:
                    last_error = f"HTTP {status_code}"
                elif data is None:
                    raise UpstreamError(
                        f"Feishu returned a non-JSON response (HTTP {status_code})",
                        error_code="invalid_response",
                        status_code=status_code,
                    )
                else:
                    return data

            if attempt < MAX_RETRIES:
                backoff = _backoff(attempt)
                logger.warning(
                    "Feishu request failed, retrying",
                    url=url,
                    attempt=attempt,
                    reason=last_error,
                    backoff_seconds=backoff,
                )
                await self._sleep(backoff)

        logger.error("Feishu request failed after retries", url=url, reason=last_error)
        raise TransientUpstreamError(
            f"Feishu request failed: {last_error}",
            error_code="retries_exhausted",
            status_code=status_code,
        )

    async def request(
        self, method: str, path: str, json_body: dict | None = None, params: dict | None = None
    ) -> dict:
        """Authenticated Open Platform call returning the raw response body."""
        kwargs: dict[str, Any] = {}
        if json_body is not None:
            kwargs["json"] = json_body
        if params:
            kwargs["params"] = params
        return await self._send(method, f"{self.base_url}{path}", auth=True, **kwargs)

    @staticmethod
    def _expect_ok(data: dict, operation: str) -> dict:
        if data.get("code") == 0:
            return data.get("data") or {}
        logger.error(
            f"Feishu {operation} failed",
            error_code=data.get("code"),
            error_message=data.get("msg"),
        )
        raise UpstreamError(
            f"Feishu {operation} failed: {data.get('msg', 'unknown error')}",
            error_code=str(data.get("code")),
            response_data=data,
        )

    # ==================== Roster ====================

    async def get_location_map(self) -> dict[str, str]:
        """Location id -> display name, cached for half an hour."""
        if self._locations is not None and self._monotonic() < self._locations_expires_at:
            return self._locations

        locations: dict[str, str] = {}
        page_token = ""
        while True:
            params: dict[str, Any] = {"page_size": 100}
            if page_token:
                params["page_token"] = page_token
            data = self._expect_ok(
                await self.request("GET", "/corehr/v1/locations", params=params), "location list"
            )
            for item in data.get("items") or []:
                names = (item.get("hiberarchy_common") or {}).get("name") or []
                name = names[0].get("value") if names else None
                locations[item["id"]] = name or UNKNOWN_LOCATION
            page_token = data.get("page_token") or ""
            if not page_token or not data.get("has_more", True):
                break

        self._locations = locations
        self._locations_expires_at = self._monotonic() + LOCATION_CACHE_TTL_SECONDS
        logger.info("Location map refreshed", locations=len(locations))
        return locations

    async def search_pre_hire_ids(self, category: RosterCategory) -> list[str]:
        limits = ROSTER_LIMITS[category]
        ids: list[str] = []
        page_token = ""

        for _ in range(limits["max_pages"]):
            params: dict[str, Any] = {"page_size": SEARCH_PAGE_SIZE}
            if page_token:
                params["page_token"] = page_token
            data = self._expect_ok(
                await self.request(
                    "POST", "/corehr/v2/pre_hires/search", {"onboarding_status": category}, params
                ),
                "pre-hire search",
            )
            ids.extend(item["pre_hire_id"] for item in data.get("items") or [])
            page_token = data.get("page_token") or ""
            if not page_token:
                break

        logger.info("Pre-hires found", category=category, count=len(ids))
        return ids[: limits["max_records"]]

    async def query_pre_hires(self, ids: list[str]) -> list[dict]:
        """
        Full pre-hire details, fetched in pages of 10 with 3 pages per wave.

        A single failed page fails the whole query. A partial roster would
        look like hires had left it.

        Raises:
            TransientUpstreamError: If any page failed or was rejected
        """
        batches = [ids[i : i + QUERY_BATCH_SIZE] for i in range(0, len(ids), QUERY_BATCH_SIZE)]
        hires: list[dict] = []

        for start in range(0, len(batches), QUERY_CONCURRENCY):
            wave = batches[start : start + QUERY_CONCURRENCY]
            results = await asyncio.gather(
                *(
                    self.request(
                        "POST",
                        "/corehr/v2/pre_hires/query",
                        {"fields": QUERY_FIELDS, "pre_hire_ids": batch},
                        {"page_size": len(batch)},
                    )
                    for batch in wave
                ),
                return_exceptions=True,
            )
            failed_ids = 0
            for batch, result in zip(wave, results, strict=True):
                if isinstance(result, BaseException):
                    logger.warning("Pre-hire query page failed", ids=len(batch), error=str(result))
                    failed_ids += len(batch)
                    continue
                if result.get("code") != 0:
                    logger.warning(
                        "Pre-hire query page rejected",
                        ids=len(batch),
                        error_code=result.get("code"),
                    )
                    failed_ids += len(batch)
                    continue
                hires.extend((result.get("data") or {}).get("items") or [])

            if failed_ids:
                raise TransientUpstreamError(
                    f"Pre-hire query failed for {failed_ids} id(s)", error_code="query_page_failed"
                )

        return hires

    async def fetch_roster(self, category: RosterCategory) -> list[RosterRecord]:
        """
        Current roster for a category.

        Stale entries past the category's cutoff are dropped; pre-boarding
        hires whose email task is already completed are dropped too.
        """
        ids, locations = await asyncio.gather(
            self.search_pre_hire_ids(category), self.get_location_map()
        )
        if not ids:
            return []

        hires = await self.query_pre_hires(ids)
        cutoff_days = ROSTER_LIMITS[category]["cutoff_days"]
        cutoff = datetime.now(self.timezone).date() - timedelta(days=cutoff_days)

        records = []
        for hire in hires:
            record = self.to_record(hire, locations)
            if record.onboarding_date and record.onboarding_date < cutoff:
                continue
            if category == PREBOARDING and record.email_task_status == "completed":
                continue
            records.append(record)

        logger.info("Roster fetched", category=category, fetched=len(hires), kept=len(records))
        return records

    @staticmethod
    def to_record(hire: dict, locations: dict[str, str]) -> RosterRecord:
        person = hire.get("person_info") or {}
        employment = hire.get("employment_info") or {}
        onboarding = hire.get("onboarding_info") or {}
        offer = hire.get("offer_info") or {}

        email_task = next(
            (
                task
                for task in onboarding.get("onboarding_task_list") or []
                if task.get("task_name") == EMAIL_TASK_NAME
            ),
            {},
        )
        work_emails = offer.get("work_emails") or []
        location_id = employment.get("work_location_id")
        employee_type_id = employment.get("employee_type_id") or ""

        return RosterRecord(
            id=hire["pre_hire_id"],
            name=person.get("legal_name") or person.get("preferred_name") or "",
            phone=(person.get("phone_number") or "").removeprefix("+86"),
            location=locations.get(location_id) or UNKNOWN_LOCATION,
            location_id=location_id,
            employee_type_id=employee_type_id,
            employee_type=EMPLOYEE_TYPE_MAP.get(employee_type_id, "unknown"),
            is_intern=employee_type_id == INTERN_TYPE_ID,
            onboarding_status=onboarding.get("onboarding_status") or PREBOARDING,
            onboarding_date=_parse_date(onboarding.get("onboarding_date")),
            work_email=work_emails[0].get("email", "") if work_emails else "",
            email_task_status=email_task.get("task_status") or "unknown",
        )

    def matching_location_label(self, record: RosterRecord) -> str:
        """City label as used in ride rule names ("北京市" -> "北京")."""
        if record.location == UNKNOWN_LOCATION:
            return ""
        return record.location.strip().removesuffix("市")

    # ==================== Directory ====================

    async def is_email_taken(self, candidate: str) -> bool:
        """Whether an active directory user already owns the address."""
        data = self._expect_ok(
            await self.request("POST", "/contact/v3/users/batch_get_id", {"emails": [candidate]}),
            "email lookup",
        )
        return any(user.get("user_id") for user in data.get("user_list") or [])

    async def commit_email(self, record_id: str, candidate: str) -> CommitResult:
        """Write the work email onto a pre-hire."""
        data = await self.request(
            "PATCH",
            f"/corehr/v2/pre_hires/{record_id}",
            {
                "standard_update_fields": ["offer_info_update.work_emails"],
                "offer_info_update": {
                    "work_emails": [
                        {
                            "email": candidate,
                            "is_primary": True,
                            "is_public": True,
                            "email_usage": "work",
                        }
                    ]
                },
            },
        )
        code = data.get("code")
        if code == 0:
            logger.info("Work email written", record_id=record_id, email=candidate)
            return CommitResult.ok()
        if code in DUPLICATE_EMAIL_CODES:
            return CommitResult.duplicate(data.get("msg"))
        return CommitResult.failed(data.get("msg") or f"code {code}")

    # ==================== Messaging ====================

    async def send_card(self, card: dict) -> str | None:
        """Post an interactive card to the bot chat, or the webhook if no chat is set."""
        if self.chat_id:
            data = self._expect_ok(
                await self.request(
                    "POST",
                    "/im/v1/messages",
                    {
                        "receive_id": self.chat_id,
                        "msg_type": "interactive",
                        "content": json.dumps(card, ensure_ascii=False),
                    },
                    {"receive_id_type": "chat_id"},
                ),
                "message send",
            )
            return data.get("message_id")

        if self.webhook_url:
            data = await self._send(
                "POST", self.webhook_url, json={"msg_type": "interactive", "card": card}
            )
            code = data.get("code", data.get("StatusCode", 0))
            if code != 0:
                raise UpstreamError(
                    f"Webhook rejected card: {data.get('msg') or data.get('StatusMessage')}",
                    error_code=str(code),
                    response_data=data,
                )
            return None

        logger.warning("No bot chat or webhook configured, card dropped")
        return None

    async def send_notification(self, group_key: str | None, payload: dict) -> str | None:
        message_id = await self.send_card(payload)
        logger.debug("Notification sent", group_key=group_key, message_id=message_id)
        return message_id

    async def send_followup(self, payload: dict) -> None:
        await self.send_card(payload)
