"""API request and response models."""

from datetime import datetime, timezone
from typing import Generic, Optional, TypeVar

from pydantic import BaseModel, ConfigDict, Field

from dorm_collector.models import ENTITY_ID_PATTERN, MonitoredEntity

T = TypeVar("T")


class Envelope(BaseModel, Generic[T]):
    """Uniform response wrapper used by every endpoint."""

    success: bool = True
    data: Optional[T] = None
    message: Optional[str] = None


class RegisterDormitoryRequest(BaseModel):
    """New dormitory submitted by an operator.

    Accepts both the dashboard's camelCase names and snake_case.
    """

    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(min_length=1, max_length=64, pattern=ENTITY_ID_PATTERN)
    name: str = Field(min_length=1)
    building: str = ""
    room_number: str = Field(default="", alias="roomNumber")
    floor: str = ""
    user_name: str = Field(default="", alias="userName")
    account: str = Field(min_length=1)
    password: str = Field(min_length=1)

    def to_entity(self) -> MonitoredEntity:
        return MonitoredEntity(
            id=self.id,
            name=self.name,
            building=self.building,
            room_number=self.room_number,
            floor=self.floor,
            user_name=self.user_name,
            account=self.account,
            password=self.password,
        )


class ScrapeRequest(BaseModel):
    """Manual collection trigger; no dormitory id means all dormitories."""

    model_config = ConfigDict(populate_by_name=True)

    dormitory_id: Optional[str] = Field(default=None, alias="dormitoryId")


class HealthStatus(BaseModel):
    """API health status."""

    status: str = "healthy"
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    version: str = "1.0.0"
    dormitories: int = 0
    collector_state: str = "idle"
    scheduler_running: bool = False
    active_runs: int = 0
