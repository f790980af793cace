"""
Pydantic models for the slot monitoring domain.

Pydantic-модели: мониторы, слоты, настройки, статистика, риск, подписка.
Сохраняемое состояние сериализуется в camelCase (by_alias=True).
"""

from __future__ import annotations

import re
import uuid
from datetime import date, datetime
from enum import Enum
from typing import Optional

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    field_validator,
    model_validator,
)
from pydantic.alias_generators import to_camel


_LICENCE_RE = re.compile(r"^[A-Z0-9]+$")
_CENTRE_RE = re.compile(r"^[a-zA-Z0-9\s\-,.()']+$")
_TIME_RE = re.compile(r"^([01]?\d|2[0-3]):[0-5]\d$")


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class MonitorStatus(str, Enum):
    ACTIVE = "active"
    PAUSED = "paused"


class SlotKind(str, Enum):
    NEW = "new"
    CANCELLATION = "cancellation"


class PageKind(str, Enum):
    UNKNOWN = "unknown"
    LOGIN = "login"
    LISTING = "listing"
    CALENDAR = "calendar"
    CONFIRM = "confirm"
    CHANGE_BOOKING = "change-booking"
    SELECT_CENTRE = "select-centre"
    CHOOSE_APPOINTMENT = "choose-appointment"


class RiskLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

    @classmethod
    def from_percentage(cls, percentage: int) -> "RiskLevel":
        if percentage >= 70:
            return cls.HIGH
        if percentage >= 40:
            return cls.MEDIUM
        return cls.LOW


class SubscriptionTier(str, Enum):
    ONE_OFF = "one-off"
    STARTER = "starter"
    PREMIUM = "premium"
    PROFESSIONAL = "professional"


class Slot(CamelModel):
    """Single appointment slot. Identity is (date, time, location)."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    date: date
    time: str
    location: str
    location_code: Optional[str] = None
    kind: SlotKind = SlotKind.NEW
    detected_at: datetime = Field(default_factory=datetime.now)

    @field_validator("time")
    @classmethod
    def _check_time(cls, value: str) -> str:
        value = value.strip()
        if not _TIME_RE.match(value):
            raise ValueError(f"time must look like HH:MM, got {value!r}")
        hh, mm = value.split(":")
        return f"{int(hh):02d}:{mm}"

    @property
    def key(self) -> tuple[date, str, str]:
        return self.date, self.time, self.location

    def summary(self) -> str:
        return f"{self.date.strftime('%d.%m.%Y')} {self.time}, {self.location}"


class NotificationPrefs(CamelModel):
    push: bool = Field(default=True, validation_alias=AliasChoices("push", "browser"))
    email: bool = False
    sms: bool = False
    whatsapp: bool = False


class Monitor(CamelModel):
    """Named watch request: one licence, a set of centres, a date window."""

    id: str = Field(default_factory=lambda: uuid.uuid4().hex[:12])
    name: str
    licence: str = ""
    date_from: Optional[date] = None
    date_to: Optional[date] = None
    test_centres: list[str]
    notifications: NotificationPrefs = NotificationPrefs()
    status: MonitorStatus = MonitorStatus.ACTIVE
    found_slots: list[Slot] = Field(default_factory=list)
    slots_found: int = 0
    last_update: Optional[datetime] = None

    @field_validator("name")
    @classmethod
    def _check_name(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("name is required")
        return value

    @field_validator("licence")
    @classmethod
    def _check_licence(cls, value: str) -> str:
        cleaned = re.sub(r"[\s-]", "", value).upper()
        if len(cleaned) > 20:
            raise ValueError("Licence number too long (max 20 characters)")
        if cleaned and not _LICENCE_RE.match(cleaned):
            raise ValueError("Licence number can only contain letters and numbers")
        return cleaned

    @field_validator("test_centres")
    @classmethod
    def _check_centres(cls, value: list[str]) -> list[str]:
        centres = [c.strip() for c in value if c and c.strip()]
        if not centres:
            raise ValueError("at least one test centre is required")
        for centre in centres:
            if len(centre) > 100 or not _CENTRE_RE.match(centre):
                raise ValueError(f"invalid test centre name: {centre!r}")
        return centres

    @model_validator(mode="after")
    def _check_window(self) -> "Monitor":
        if self.date_from and self.date_to and self.date_from > self.date_to:
            raise ValueError("dateFrom must not be after dateTo")
        return self

    @property
    def is_active(self) -> bool:
        return self.status is MonitorStatus.ACTIVE

    def wants_date(self, day: date) -> bool:
        if self.date_from and day < self.date_from:
            return False
        if self.date_to and day > self.date_to:
            return False
        return True

    def merge_slots(self, slots: list[Slot], now: Optional[datetime] = None) -> list[Slot]:
        """Add unseen slots, return the ones that were actually new."""
        known = {s.key for s in self.found_slots}
        added: list[Slot] = []
        for slot in slots:
            if slot.key in known:
                continue
            known.add(slot.key)
            added.append(slot)
        if added:
            self.found_slots.extend(added)
            self.slots_found += len(added)
        self.last_update = now or datetime.now()
        return added


class MonitorPatch(CamelModel):
    """Partial update for a monitor; only set fields are applied."""

    name: Optional[str] = None
    licence: Optional[str] = None
    date_from: Optional[date] = None
    date_to: Optional[date] = None
    test_centres: Optional[list[str]] = None
    notifications: Optional[NotificationPrefs] = None
    status: Optional[MonitorStatus] = None

    def apply(self, monitor: Monitor) -> Monitor:
        data = monitor.model_dump()
        data.update(self.model_dump(exclude_unset=True))
        return Monitor.model_validate(data)


class UserSettings(CamelModel):
    auto_check: bool = True
    check_interval: int = Field(
        default=30,
        ge=5,
        alias="checkIntervalSeconds",
        validation_alias=AliasChoices("checkIntervalSeconds", "checkInterval", "check_interval"),
    )
    sound_alerts: bool = True
    push_notifications: bool = Field(
        default=True,
        alias="browserNotifications",
        validation_alias=AliasChoices(
            "browserNotifications", "pushNotifications", "push_notifications"
        ),
    )


class SettingsPatch(CamelModel):
    auto_check: Optional[bool] = None
    check_interval: Optional[int] = Field(
        default=None,
        ge=5,
        validation_alias=AliasChoices("checkIntervalSeconds", "checkInterval", "check_interval"),
    )
    sound_alerts: Optional[bool] = None
    push_notifications: Optional[bool] = Field(
        default=None,
        validation_alias=AliasChoices(
            "browserNotifications", "pushNotifications", "push_notifications"
        ),
    )

    def apply(self, settings: UserSettings) -> UserSettings:
        data = settings.model_dump()
        data.update(self.model_dump(exclude_unset=True))
        return UserSettings.model_validate(data)


class Subscription(CamelModel):
    tier: SubscriptionTier = SubscriptionTier.ONE_OFF
    rebooks_total: int = Field(default=5, ge=0)

    @property
    def unlimited(self) -> bool:
        return self.tier is SubscriptionTier.PROFESSIONAL


class Stats(CamelModel):
    monitors_count: int = Field(default=0, ge=0)
    slots_found: int = Field(default=0, ge=0)
    rebooks_used: int = Field(default=0, ge=0)
    rebooks_total: int = Field(default=5, ge=0)
    last_check: Optional[datetime] = Field(
        default=None,
        alias="lastCheckISO",
        validation_alias=AliasChoices("lastCheckISO", "lastCheck", "last_check"),
    )


class RiskAssessment(CamelModel):
    level: RiskLevel = RiskLevel.LOW
    percentage: int = Field(default=0, ge=0, le=100)
    factors: list[str] = Field(default_factory=list)


class RiskState(CamelModel):
    """Rolling check metrics plus the derived assessment."""

    total_checks: int = 0
    successful_checks: int = 0
    failed_checks: int = 0
    checks_last_hour: int = 0
    suspicious_patterns: int = 0
    last_check_at: Optional[datetime] = None
    level: RiskLevel = RiskLevel.LOW
    percentage: int = Field(default=0, ge=0, le=100)


__all__ = [
    "Monitor",
    "MonitorPatch",
    "MonitorStatus",
    "NotificationPrefs",
    "PageKind",
    "RiskAssessment",
    "RiskLevel",
    "RiskState",
    "SettingsPatch",
    "Slot",
    "SlotKind",
    "Stats",
    "Subscription",
    "SubscriptionTier",
    "UserSettings",
]
