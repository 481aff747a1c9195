import hashlib
import json

import httpx
import pytest
import pytest_asyncio

from onboarding_hub.features.provisioning.domain.errors import (
    RideProvisioningError,
    TransientUpstreamError,
    UpstreamError,
)
from onboarding_hub.services.infrastructure.throttle_gate import ThrottleGate
from onboarding_hub.services.ride_client import RideServiceClient, clean_phone

BASE_URL = "https://ride.test"


class RideStub:
    def __init__(self):
        self.routes: dict[str, object] = {}
        self.requests: list[httpx.Request] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        route = self.routes.get(request.url.path)
        if route is None:
            return httpx.Response(404, json={"errno": 404, "errmsg": "no route"})
        if callable(route):
            return route(request)
        return httpx.Response(200, json=route)

    def calls(self, path):
        return [request for request in self.requests if request.url.path == path]


def sent_params(request: httpx.Request) -> dict:
    if request.method == "GET":
        return dict(request.url.params)
    return json.loads(request.content)


@pytest.fixture
def stub():
    return RideStub()


@pytest.fixture
def sleeps():
    return []


@pytest_asyncio.fixture
async def ride(stub, sleeps):
    async def fake_sleep(seconds):
        sleeps.append(seconds)

    client = RideServiceClient(
        client_id="cid",
        client_secret="csecret",
        access_token="tok",
        default_rule_id="1",
        gate=ThrottleGate(0),
        base_url=BASE_URL,
        transport=httpx.MockTransport(stub.handler),
        sleep=fake_sleep,
    )
    yield client
    await client.close()


@pytest.mark.parametrize(
    "raw, cleaned",
    [("+8613800000000", "13800000000"), ("138-0000-0000", "13800000000"), ("", ""), (None, "")],
)
def test_clean_phone(raw, cleaned):
    assert clean_phone(raw) == cleaned


@pytest.mark.asyncio
async def test_sign_sorts_params_and_appends_secret(ride):
    signed = ride.sign(
        {"phone": "13800000000", "name": "张三"}, timestamp=1760000000, nonce="abcdef0123456789"
    )

    base = (
        "access_token=tok&client_id=cid&name=张三&nonce=abcdef0123456789"
        "&phone=13800000000&timestamp=1760000000&client_secret=csecret"
    )
    assert signed["sign"] == hashlib.md5(base.encode()).hexdigest().upper()
    assert signed["timestamp"] == "1760000000"
    assert signed["client_id"] == "cid"


@pytest.mark.asyncio
async def test_nonce_changes_per_signature(ride):
    first = ride.sign({})
    second = ride.sign({})

    assert len(first["nonce"]) == 16
    assert first["nonce"] != second["nonce"]


@pytest.mark.asyncio
async def test_fetch_rules(ride, stub):
    stub.routes["/river/Auth/getRegulationList"] = {
        "errno": 0,
        "data": {
            "list": [
                {"regulation_id": 1, "regulation_name": "公司通用", "status": "1"},
                {"regulation_id": 2, "regulation_name": "武汉-commute"},
                {
                    "regulation_id": 3,
                    "regulation_name": "北京差旅",
                    "category": "business",
                    "status": "0",
                },
            ]
        },
    }

    rules = await ride.fetch_rules()

    assert [(r.id, r.category, r.active, r.is_default) for r in rules] == [
        ("1", "", True, True),
        ("2", "commute", True, False),
        ("3", "business", False, False),
    ]
    [request] = stub.requests
    params = sent_params(request)
    assert params["page_size"] == "100"
    assert "sign" in params


@pytest.mark.asyncio
async def test_existing_member_is_success(ride, stub):
    stub.routes["/river/Member/getMemberByPhone"] = {"errno": 0, "data": {"member_id": 991}}

    result = await ride.provision_ride_account("张三", "+86 138 0000 0000", "2")

    assert result.success is True
    assert result.already_exists is True
    assert result.member_id == "991"
    assert stub.calls("/river/Member/addMember") == []
    assert sent_params(stub.requests[0])["phone"] == "13800000000"


@pytest.mark.asyncio
async def test_new_member_is_added_with_rule(ride, stub):
    stub.routes["/river/Member/getMemberByPhone"] = {"errno": 50202, "errmsg": "member not found"}
    stub.routes["/river/Member/addMember"] = {"errno": 0, "data": {"member_id": 1001}}

    result = await ride.provision_ride_account(
        "张三", "13800000000", None, extras={"employee_number": "E1"}
    )

    assert (result.success, result.already_exists, result.member_id) == (True, False, "1001")
    [add] = stub.calls("/river/Member/addMember")
    params = sent_params(add)
    assert params["regulation_ids"] == "1"
    assert params["employee_number"] == "E1"
    assert params["name"] == "张三"


@pytest.mark.asyncio
async def test_add_member_rejection(ride, stub):
    stub.routes["/river/Member/getMemberByPhone"] = {"errno": 0, "data": {}}
    stub.routes["/river/Member/addMember"] = {"errno": 50001, "errmsg": "invalid regulation"}

    with pytest.raises(RideProvisioningError) as exc:
        await ride.provision_ride_account("张三", "13800000000", "9")

    assert exc.value.error_code == "50001"
    assert "invalid regulation" in exc.value.user_message


@pytest.mark.asyncio
async def test_missing_phone_is_rejected(ride, stub):
    with pytest.raises(RideProvisioningError):
        await ride.provision_ride_account("张三", "", "2")

    assert stub.requests == []


@pytest.mark.asyncio
async def test_rate_limit_is_retried(ride, stub, sleeps):
    responses = [
        httpx.Response(429, json={}),
        httpx.Response(200, json={"errno": 0, "data": {"list": []}}),
    ]
    stub.routes["/river/Auth/getRegulationList"] = lambda request: responses.pop(0)

    assert await ride.fetch_rules() == []
    assert sleeps == [1]
    first, second = stub.requests
    assert sent_params(first)["nonce"] != sent_params(second)["nonce"]


@pytest.mark.asyncio
async def test_lookup_outage_is_not_mistaken_for_missing_member(ride, stub, sleeps):
    stub.routes["/river/Member/getMemberByPhone"] = lambda request: httpx.Response(
        502, text="bad gateway"
    )

    with pytest.raises(TransientUpstreamError):
        await ride.provision_ride_account("张三", "13800000000", "2")

    assert sleeps == [1, 2]
    assert stub.calls("/river/Member/addMember") == []


@pytest.mark.asyncio
async def test_unconfigured_client_refuses_requests():
    client = RideServiceClient(
        client_id=None, client_secret=None, access_token=None, base_url=BASE_URL
    )
    try:
        assert client.configured is False
        with pytest.raises(UpstreamError) as exc:
            await client.fetch_rules()
    finally:
        await client.close()

    assert exc.value.error_code == "not_configured"
