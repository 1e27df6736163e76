"""Data models for dormitory snapshots, derived metrics and collection runs."""

from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, SecretStr, field_validator

# Entity ids end up in file names, so keep them to a safe character set
ENTITY_ID_PATTERN = r"^[A-Za-z0-9][A-Za-z0-9_.-]*$"


# =============================================================================
# Monitored Dormitories
# =============================================================================

class EntitySummary(BaseModel):
    """Public view of a monitored dormitory (no credentials)."""

    id: str
    name: str
    building: str = ""
    room_number: str = ""
    floor: str = ""
    user_name: str = ""


class MonitoredEntity(BaseModel):
    """A metered dormitory room and the portal account that reads it."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(min_length=1, max_length=64, pattern=ENTITY_ID_PATTERN)
    name: str = Field(min_length=1)
    building: str = ""
    room_number: str = ""
    floor: str = ""
    user_name: str = ""
    account: str = Field(min_length=1)
    password: SecretStr

    @field_validator("password")
    @classmethod
    def _password_not_blank(cls, value: SecretStr) -> SecretStr:
        if not value.get_secret_value():
            raise ValueError("password must not be empty")
        return value

    def public(self) -> EntitySummary:
        """Credential-free representation served to the dashboard."""
        return EntitySummary(
            id=self.id,
            name=self.name,
            building=self.building,
            room_number=self.room_number,
            floor=self.floor,
            user_name=self.user_name,
        )


# =============================================================================
# Snapshots
# =============================================================================

class UserInfo(BaseModel):
    """Owner of the portal account."""

    model_config = ConfigDict(frozen=True)

    real_name: str = ""
    mobile: str = ""  # masked by the portal, e.g. 199****6925
    gender: str = ""


class RoomInfo(BaseModel):
    """Room labels, partly from the portal and partly from configuration."""

    model_config = ConfigDict(frozen=True)

    room_name: str = ""
    room_id: str = ""
    building: str = ""
    floor: str = ""
    room_number: str = ""


class DeviceInfo(BaseModel):
    """State of the room's electricity meter."""

    model_config = ConfigDict(frozen=True)

    device_name: str = ""
    device_type: str = ""
    device_no: str = ""
    device_balance: float = 0.0  # currency, 2 decimals
    device_price: float = 0.0  # currency per kWh
    is_online: bool = False
    # Portal-reported refresh time; informational only, never the capture time
    update_time: Optional[str] = None
    room_id: str = ""
    room_info: str = ""

    @field_validator("device_balance")
    @classmethod
    def _round_balance(cls, value: float) -> float:
        return round(value, 2)


class Snapshot(BaseModel):
    """One point-in-time reading of a dormitory's meter."""

    model_config = ConfigDict(frozen=True)

    entity_id: str
    timestamp: datetime  # capture wall clock (timezone-aware)
    date: str  # YYYY-MM-DD in the collector timezone
    time: str  # HH:MM, truncated to the minute
    hour: int = Field(ge=0, le=23)
    user_info: UserInfo = Field(default_factory=UserInfo)
    room_info: RoomInfo = Field(default_factory=RoomInfo)
    device_info: DeviceInfo = Field(default_factory=DeviceInfo)

    @property
    def key(self) -> tuple:
        """De-duplication key within one dormitory's series."""
        return (self.date, self.time)

    @property
    def balance(self) -> float:
        return self.device_info.device_balance

    @property
    def tariff(self) -> float:
        return self.device_info.device_price


# =============================================================================
# Derived Metrics (computed on read)
# =============================================================================

class DailyConsumption(BaseModel):
    """Consumption between the previous recorded day and this one."""

    date: str
    consumption: float = 0.0  # kWh
    cost: float = 0.0  # balance drop; negative when a recharge happened


class HourlyBucket(BaseModel):
    """Hour-of-day profile bucket."""

    hour: int
    count: int = 0
    avg_balance: float = 0.0
    avg_consumption: float = 0.0


class ComparisonEntry(BaseModel):
    """One dormitory in the cross-room comparison."""

    entity_id: str
    name: str
    building: str = ""
    room_number: str = ""
    current_balance: float = 0.0
    device_price: float = 0.0
    consumption_7d: float = 0.0
    update_time: Optional[str] = None
    is_online: bool = False
    rank: int = 0


class MonthlyStats(BaseModel):
    """Rolling 30-day statistics for one dormitory."""

    entity_id: str
    days_covered: int = 0
    total_consumption: float = 0.0
    total_cost: float = 0.0
    avg_daily_consumption: float = 0.0
    avg_daily_cost: float = 0.0
    current_balance: Optional[float] = None
    estimated_days: Optional[int] = None  # days until the balance runs out
    ranking: Optional[int] = None
    total_rooms: int = 0


class SummaryStats(BaseModel):
    """Overview across all monitored dormitories."""

    total_dormitories: int = 0
    online_count: int = 0
    total_balance: float = 0.0
    avg_balance: float = 0.0
    low_balance_count: int = 0
    last_update: Optional[datetime] = None


# =============================================================================
# Collection Runs
# =============================================================================

class RunState(str, Enum):
    """Lifecycle of a collection run."""

    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    PARTIALLY_FAILED = "partially_failed"


class EntityRunResult(BaseModel):
    """Outcome of collecting one dormitory."""

    entity_id: str
    success: bool
    stored: bool = False  # False for failures and for already-recorded readings
    error_type: Optional[str] = None  # auth, fetch, store, internal
    message: Optional[str] = None
    snapshot: Optional[Snapshot] = None


class RunResult(BaseModel):
    """Summary of one collection run."""

    trigger: str
    status: RunState
    started_at: datetime
    finished_at: datetime
    results: List[EntityRunResult] = Field(default_factory=list)

    @property
    def succeeded(self) -> int:
        return sum(1 for r in self.results if r.success)

    @property
    def failed(self) -> List[EntityRunResult]:
        return [r for r in self.results if not r.success]
