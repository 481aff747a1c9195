"""
Ride-service enterprise API client.
Signs every request, spaces calls through a shared ThrottleGate and maps
``errno`` failures to provisioning errors.
"""

import asyncio
import hashlib
import re
import time
import uuid
from collections.abc import Awaitable, Callable
from typing import Any

import httpx

from onboarding_hub.features.provisioning.domain.errors import (
    RideProvisioningError,
    TransientUpstreamError,
    UpstreamError,
)
from onboarding_hub.features.provisioning.domain.models import RideProvisionResult, RideRule
from onboarding_hub.infrastructure.observability.logging import get_logger
from onboarding_hub.services.infrastructure.throttle_gate import ThrottleGate

logger = get_logger(__name__)

RIDE_API_BASE_URL = "https://api.es.xiaojukeji.com"

REQUEST_TIMEOUT = 15  # seconds
MAX_RETRIES = 3
MAX_BACKOFF_SECONDS = 5
RETRY_STATUS_CODES = {429, 500, 502, 503, 504}
ACTIVE_STATUSES = {"1", "active", "enabled"}

_NON_DIGITS = re.compile(r"\D")


def clean_phone(phone: str | None) -> str:
    return _NON_DIGITS.sub("", (phone or "").strip().removeprefix("+86"))


class RideServiceClient:
    """Implements RideProvisioner against the ride-service enterprise API."""

    def __init__(
        self,
        client_id: str | None,
        client_secret: str | None,
        access_token: str | None,
        default_rule_id: str | None = None,
        gate: ThrottleGate | None = None,
        base_url: str = RIDE_API_BASE_URL,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.client_id = client_id
        self.client_secret = client_secret
        self.access_token = access_token
        self.default_rule_id = default_rule_id
        self.gate = gate or ThrottleGate(1.0)
        self.base_url = base_url.rstrip("/")
        self._sleep = sleep
        self._client = httpx.AsyncClient(
            timeout=httpx.Timeout(REQUEST_TIMEOUT),
            limits=httpx.Limits(max_keepalive_connections=5, max_connections=10),
            transport=transport,
        )

    @property
    def configured(self) -> bool:
        return bool(self.client_id and self.client_secret and self.access_token)

    async def close(self) -> None:
        await self._client.aclose()

    def sign(
        self, params: dict[str, Any], timestamp: int | None = None, nonce: str | None = None
    ) -> dict[str, Any]:
        """
        Add credentials, timestamp, nonce and the MD5 ``sign`` to request params.

        The signature covers every parameter sorted by key, joined as
        ``k=v&...`` with ``&client_secret=<secret>`` appended, upper-cased.
        """
        signed = {
            **params,
            "client_id": self.client_id,
            "access_token": self.access_token,
            "timestamp": str(timestamp if timestamp is not None else int(time.time())),
            "nonce": nonce or uuid.uuid4().hex[:16],
        }
        base = "&".join(f"{key}={signed[key]}" for key in sorted(signed))
        digest = hashlib.md5(f"{base}&client_secret={self.client_secret}".encode())
        signed["sign"] = digest.hexdigest().upper()
        return signed

    async def request(self, method: str, path: str, params: dict[str, Any] | None = None) -> dict:
        """
        Signed call with retry. Returns the ``data`` member of the response.

        Raises:
            TransientUpstreamError: If every attempt failed transiently
            UpstreamError: If the service answered with a non-zero errno
        """
        if not self.configured:
            raise UpstreamError("Ride service is not configured", error_code="not_configured")

        url = f"{self.base_url}{path}"
        last_error = "no attempt made"
        status_code = None

        for attempt in range(1, MAX_RETRIES + 1):
            signed = self.sign(params or {})
            kwargs = {"params": signed} if method.upper() == "GET" else {"json": signed}

            async with self.gate:
                try:
                    response = await self._client.request(method, url, **kwargs)
                except httpx.RequestError as e:
                    response, last_error, status_code = None, f"network error: {e}", None

            if response is not None:
                status_code = response.status_code
                if status_code not in RETRY_STATUS_CODES and status_code < 500:
                    return self._handle_response(response, path)
                last_error = f"HTTP {status_code}"

            if attempt < MAX_RETRIES:
                backoff = min(2 ** (attempt - 1), MAX_BACKOFF_SECONDS)
                logger.warning(
                    "Ride service request failed, retrying",
                    path=path,
                    attempt=attempt,
                    reason=last_error,
                    backoff_seconds=backoff,
                )
                await self._sleep(backoff)

        raise TransientUpstreamError(
            f"Ride service request failed: {last_error}",
            error_code="retries_exhausted",
            status_code=status_code,
        )

    @staticmethod
    def _handle_response(response: httpx.Response, path: str) -> dict:
        try:
            body = response.json()
        except ValueError:
            raise UpstreamError(
                f"Ride service returned a non-JSON response (HTTP {response.status_code})",
                error_code="invalid_response",
                status_code=response.status_code,
            ) from None

        if body.get("errno") != 0:
            logger.error(
                "Ride service call failed",
                path=path,
                errno=body.get("errno"),
                errmsg=body.get("errmsg"),
            )
            raise UpstreamError(
                f"Ride service error: {body.get('errmsg') or 'unknown error'}",
                error_code=str(body.get("errno")),
                status_code=response.status_code,
                response_data=body,
            )
        return body.get("data") or {}

    # ==================== Rules ====================

    async def fetch_rules(self) -> list[RideRule]:
        data = await self.request(
            "GET", "/river/Auth/getRegulationList", {"page": 1, "page_size": 100}
        )
        rules = [self.to_rule(item) for item in data.get("list") or []]
        logger.info("Ride rules fetched", count=len(rules))
        return rules

    def to_rule(self, item: dict) -> RideRule:
        rule_id = str(item.get("regulation_id", ""))
        name = (item.get("regulation_name") or "").strip()
        category = item.get("category") or (name.rsplit("-", 1)[1] if "-" in name else "")
        status = item.get("status")
        return RideRule(
            id=rule_id,
            name=name,
            category=category.strip(),
            active=status is None or str(status).lower() in ACTIVE_STATUSES,
            is_default=bool(self.default_rule_id) and rule_id == self.default_rule_id,
            city_code=str(item["city_code"]) if item.get("city_code") is not None else None,
            description=item.get("description") or "",
        )

    # ==================== Members ====================

    async def find_member_id(self, phone: str) -> str | None:
        """Existing member id for a phone number, None if not a member."""
        try:
            data = await self.request(
                "GET", "/river/Member/getMemberByPhone", {"phone": clean_phone(phone)}
            )
        except UpstreamError as e:
            logger.debug("No ride member for phone", error_code=e.error_code)
            return None
        member_id = data.get("member_id")
        return str(member_id) if member_id else None

    async def provision_ride_account(
        self, name: str, phone: str, rule_id: str | None, extras: dict[str, Any] | None = None
    ) -> RideProvisionResult:
        """
        Create a member bound to a rule. An existing member counts as success.

        Raises:
            RideProvisioningError: If the member cannot be created
        """
        phone = clean_phone(phone)
        if not name or not phone:
            raise RideProvisioningError("Name and phone are required", error_code="missing_fields")

        existing = await self.find_member_id(phone)
        if existing:
            logger.info("Ride member already exists", subject=name, member_id=existing)
            return RideProvisionResult(success=True, already_exists=True, member_id=existing)

        params = {
            "name": name,
            "phone": phone,
            "regulation_ids": rule_id or self.default_rule_id or "",
            "employee_number": "",
            "department_id": "",
            "cost_center": "",
            **(extras or {}),
        }
        try:
            data = await self.request("POST", "/river/Member/addMember", params)
        except UpstreamError as e:
            raise RideProvisioningError(str(e), error_code=e.error_code) from e

        member_id = data.get("member_id")
        logger.info("Ride member added", subject=name, member_id=member_id)
        return RideProvisionResult(success=True, member_id=str(member_id) if member_id else None)
