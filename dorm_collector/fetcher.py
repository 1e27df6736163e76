"""Snapshot fetching and normalization.

Turns the portal's user-info and bound-devices payloads into one canonical
Snapshot. The portal is inconsistent about field naming: the meter serial has
shipped both as ``DeviceNo`` and as the misspelled ``DevcieNo``, so both are
accepted indefinitely.
"""

import logging
from datetime import datetime, timezone, tzinfo
from typing import Optional, Tuple

from .errors import FetchError
from .models import DeviceInfo, MonitoredEntity, RoomInfo, Snapshot, UserInfo
from .portal_client import SUCCESS_TAG, PortalSession, upstream_message

logger = logging.getLogger("dorm-collector.fetcher")

USER_INFO_ENDPOINT = "/Home/GetUserInfo"
DEVICES_ENDPOINT = "/Home/GetUserBindDevices"

# IsOnline value the portal uses for a reachable meter
ONLINE = 1

# Serial number spellings, in order of precedence
DEVICE_NO_FIELDS = ("DeviceNo", "DevcieNo")


def canonical_device_no(device: dict) -> str:
    """Return the meter serial regardless of which spelling the portal used.

    The correctly spelled ``DeviceNo`` wins when both are present.
    """
    for field in DEVICE_NO_FIELDS:
        value = device.get(field)
        if value is not None:
            return str(value)
    return ""


def capture_fields(now: datetime, tz: tzinfo) -> Tuple[str, str, int]:
    """Derive (date, time-of-day, hour) from the capture wall clock."""
    local = now.astimezone(tz)
    return local.strftime("%Y-%m-%d"), local.strftime("%H:%M"), local.hour


def _text(value) -> str:
    return "" if value is None else str(value)


def normalize_snapshot(
    entity: MonitoredEntity,
    user_payload: Optional[dict],
    devices_payload: Optional[dict],
    now: datetime,
    tz: tzinfo,
) -> Snapshot:
    """Build a Snapshot from raw portal payloads.

    Args:
        entity: Dormitory the payloads belong to
        user_payload: Body of GetUserInfo (may be missing fields)
        devices_payload: Body of GetUserBindDevices
        now: Capture time (timezone-aware)
        tz: Timezone for the date/time/hour fields

    Raises:
        FetchError: If no usable device entry is present
    """
    if not isinstance(devices_payload, dict) or devices_payload.get("Tag") != SUCCESS_TAG:
        raise FetchError(f"Device data unavailable: {upstream_message(devices_payload)}")

    data = devices_payload.get("Data")
    if not isinstance(data, dict):
        raise FetchError("Device data unavailable: missing Data object")

    devices = data.get("DevicesList") or []
    if not isinstance(devices, list):
        raise FetchError("Device data unavailable: DevicesList is not a list")
    if not devices:
        raise FetchError("Device data unavailable: no bound devices")

    # One meter per room
    device = devices[0]
    if not isinstance(device, dict):
        raise FetchError("Device data unavailable: malformed device entry")

    try:
        balance = float(device["DeviceBalance"])
        price = float(device.get("DevicePrice") or 0)
    except (KeyError, TypeError, ValueError) as e:
        raise FetchError(f"Malformed device record: {e}")

    user = user_payload.get("Data") if isinstance(user_payload, dict) else None
    if not isinstance(user, dict):
        user = {}
    date, time_of_day, hour = capture_fields(now, tz)

    return Snapshot(
        entity_id=entity.id,
        timestamp=now,
        date=date,
        time=time_of_day,
        hour=hour,
        user_info=UserInfo(
            real_name=user.get("RealName") or entity.user_name,
            mobile=user.get("Mobile") or "",
            gender=user.get("GenderStr") or "",
        ),
        room_info=RoomInfo(
            room_name=_text(data.get("RoomName")),
            room_id=_text(device.get("RoomId")),
            building=entity.building,
            floor=entity.floor,
            room_number=entity.room_number,
        ),
        device_info=DeviceInfo(
            device_name=_text(device.get("DeviceName")),
            device_type=_text(device.get("DeviceTypeName")),
            device_no=canonical_device_no(device),
            device_balance=balance,
            device_price=price,
            is_online=device.get("IsOnline") == ONLINE,
            update_time=device.get("UpdateTime"),
            room_id=_text(device.get("RoomId")),
            room_info=_text(device.get("RoomInfo")),
        ),
    )


async def fetch_snapshot(
    session: PortalSession,
    entity: MonitoredEntity,
    tz: tzinfo,
    now: Optional[datetime] = None,
) -> Snapshot:
    """Fetch user and device state over an authenticated session.

    Raises:
        FetchError: On transport failure or unusable device data. Not retried.
    """
    user_payload = await session.post_json(USER_INFO_ENDPOINT)
    devices_payload = await session.post_json(DEVICES_ENDPOINT)

    if now is None:
        now = datetime.now(timezone.utc)

    snapshot = normalize_snapshot(entity, user_payload, devices_payload, now, tz)
    logger.debug(
        f"[{entity.id}] Meter {snapshot.device_info.device_no}: "
        f"balance={snapshot.balance:.2f}, online={snapshot.device_info.is_online}"
    )
    return snapshot
