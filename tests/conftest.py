"""Pytest configuration and fixtures for collector and API tests."""

from datetime import datetime, time as dt_time, timedelta, timezone
from typing import Dict, Optional
from urllib.parse import parse_qs
from zoneinfo import ZoneInfo
import itertools

import httpx
import pytest

from dorm_collector.main import Collector
from dorm_collector.models import DeviceInfo, MonitoredEntity, Snapshot
from dorm_collector.portal_client import PortalClient
from dorm_collector.registry import EntityRegistry
from dorm_collector.scheduler import DailySchedule
from dorm_collector.store import SnapshotStore

TZ = ZoneInfo("Asia/Shanghai")
PORTAL_URL = "https://portal.test"
SESSION_COOKIE = "ASP.NET_SessionId"


def device_record(balance: float = 96.28, price: float = 0.5441, **overrides) -> dict:
    """Device entry shaped like the portal's DevicesList items."""
    record = {
        "RoomId": "878680437252165632",
        "DeviceName": "003101003732-电表",
        "DeviceTypeName": "电表",
        "DeviceNo": "003101003732",
        "DeviceBalance": balance,
        "UpdateTime": "2026-02-04 04:03:00",
        "IsOnline": 1,
        "DevicePrice": price,
        "RoomInfo": "桂园公寓13-513",
    }
    record.update(overrides)
    return record


def devices_payload(*devices: dict, tag: int = 1) -> dict:
    return {"Tag": tag, "Data": {"RoomName": "桂园公寓13-513", "DevicesList": list(devices)}}


def user_payload(real_name: str = "测试用户") -> dict:
    return {"Tag": 1, "Data": {"RealName": real_name, "Mobile": "199****6925", "GenderStr": "女"}}


class FakePortal:
    """In-memory metering portal behind an httpx.MockTransport.

    Mimics the cookie-scoped login: GET /Login/Login hands out a session
    cookie, POST /Login/LoginJson binds it to an account, and the /Home
    endpoints only answer JSON for bound sessions.
    """

    def __init__(self):
        self.accounts: Dict[str, str] = {}
        self.devices: Dict[str, dict] = {}
        self.sessions: Dict[str, Optional[str]] = {}
        self.calls = []
        self.fail_login_page = False
        self._ids = itertools.count(1)

    def add_account(self, account: str, password: str, devices: Optional[dict] = None):
        self.accounts[account] = password
        self.devices[account] = devices if devices is not None else devices_payload(device_record())

    def _session_of(self, request: httpx.Request) -> Optional[str]:
        for part in request.headers.get("cookie", "").split(";"):
            name, _, value = part.strip().partition("=")
            if name == SESSION_COOKIE:
                return value
        return None

    def handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        self.calls.append((request.method, path))

        if path == "/Login/Login" and request.method == "GET":
            if self.fail_login_page:
                raise httpx.ConnectTimeout("portal unreachable", request=request)
            session_id = f"s{next(self._ids)}"
            self.sessions[session_id] = None
            return httpx.Response(
                200,
                text="<html>login</html>",
                headers={"Set-Cookie": f"{SESSION_COOKIE}={session_id}; Path=/"},
            )

        session_id = self._session_of(request)

        if path == "/Login/LoginJson":
            form = {k: v[0] for k, v in parse_qs(request.content.decode()).items()}
            account = form.get("account")
            if session_id not in self.sessions:
                return httpx.Response(200, json={"Tag": 0, "Message": "会话无效"})
            if account in self.accounts and self.accounts[account] == form.get("password"):
                self.sessions[session_id] = account
                return httpx.Response(200, json={"Tag": 1, "Message": "登录成功"})
            return httpx.Response(200, json={"Tag": 0, "Message": "账号或密码错误"})

        account = self.sessions.get(session_id) if session_id else None
        if account is None:
            # Unauthenticated calls bounce to the HTML login page
            return httpx.Response(200, text="<html>login</html>")

        if path == "/Home/GetUserInfo":
            return httpx.Response(200, json=user_payload())
        if path == "/Home/GetUserBindDevices":
            return httpx.Response(200, json=self.devices[account])
        return httpx.Response(404)

    def client(self, timeout: float = 5.0) -> PortalClient:
        return PortalClient(PORTAL_URL, timeout=timeout, transport=httpx.MockTransport(self.handler))


@pytest.fixture
def tz():
    return TZ


@pytest.fixture
def fake_portal():
    return FakePortal()


@pytest.fixture
def make_entity():
    def _make(entity_id: str = "13-513", account: Optional[str] = None, password: str = "secret", **fields):
        data = {
            "id": entity_id,
            "name": f"Room {entity_id}",
            "building": "13栋",
            "room_number": entity_id.split("-")[-1],
            "floor": "5楼",
            "user_name": "测试用户",
            "account": account or f"acct-{entity_id}",
            "password": password,
        }
        data.update(fields)
        return MonitoredEntity(**data)

    return _make


@pytest.fixture
def make_snapshot():
    def _make(
        when: datetime,
        balance: float = 100.0,
        price: float = 0.5,
        entity_id: str = "13-513",
        online: bool = True,
        update_time: Optional[str] = None,
    ) -> Snapshot:
        local = when.astimezone(TZ)
        return Snapshot(
            entity_id=entity_id,
            timestamp=when,
            date=local.strftime("%Y-%m-%d"),
            time=local.strftime("%H:%M"),
            hour=local.hour,
            device_info=DeviceInfo(
                device_no="003101003732",
                device_balance=balance,
                device_price=price,
                is_online=online,
                update_time=update_time,
            ),
        )

    return _make


@pytest.fixture
def store(tmp_path):
    return SnapshotStore(tmp_path / "data", retention_max=100)


@pytest.fixture
def fixed_now():
    return datetime(2026, 2, 4, 6, 0, tzinfo=TZ).astimezone(timezone.utc)


@pytest.fixture
def make_collector(store, fake_portal, fixed_now):
    """Collector wired to the fake portal with a controllable clock."""

    def _make(*entities: MonitoredEntity, clock=None, pacing_seconds: float = 0) -> Collector:
        ticks = itertools.count()
        if clock is None:
            # Each capture one minute after the previous keeps (date, time) keys unique
            def clock():
                return fixed_now + timedelta(minutes=next(ticks))

        return Collector(
            registry=EntityRegistry(entities),
            store=store,
            portal_client=fake_portal.client(),
            schedule=DailySchedule([dt_time(6), dt_time(12), dt_time(18)], TZ),
            tz=TZ,
            pacing_seconds=pacing_seconds,
            run_on_startup=False,
            clock=clock,
        )

    return _make
