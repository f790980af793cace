"""
Notification dispatcher.

Рассылка уведомлений о найденных слотах и о заполненной форме бронирования.
Канал выбирается как (настройка монитора) И (возможность тарифа):
- push: мгновенное сообщение в Telegram, доступно на всех тарифах
- email / sms / whatsapp: через внешний сервис отправки, с ретраями
Ошибки отдельных каналов собираются в `errors` и не пробрасываются.
"""

from __future__ import annotations

import html
import logging
from dataclasses import dataclass, field
from typing import Any, Optional, Protocol

from aiogram import Bot

from .models import Monitor, Slot, Subscription, SubscriptionTier
from .utils import async_retry

logger = logging.getLogger(__name__)


PUSH = "push"
EMAIL = "email"
SMS = "sms"
WHATSAPP = "whatsapp"
BACKEND_CHANNELS = (EMAIL, SMS, WHATSAPP)

TIER_CAPABILITIES: dict[SubscriptionTier, dict[str, bool]] = {
    SubscriptionTier.ONE_OFF: {PUSH: True, EMAIL: True, SMS: False, WHATSAPP: False},
    SubscriptionTier.STARTER: {PUSH: True, EMAIL: True, SMS: True, WHATSAPP: False},
    SubscriptionTier.PREMIUM: {PUSH: True, EMAIL: True, SMS: True, WHATSAPP: False},
    SubscriptionTier.PROFESSIONAL: {PUSH: True, EMAIL: True, SMS: True, WHATSAPP: True},
}


class PushSender(Protocol):
    async def send(self, text: str, *, sound: bool = True) -> None: ...


class BackendSender(Protocol):
    """External email/SMS/WhatsApp service. Returns the channels it delivered."""

    async def send(self, kind: str, payload: dict[str, Any], channels: list[str]) -> set[str]: ...


class SystemNotifier(Protocol):
    """Operator-facing surface for emergencies and dispatch failures."""

    async def notify(self, title: str, message: str) -> None: ...


class TelegramPush:
    """Push channel: a Telegram message to the admin chat."""

    def __init__(self, bot: Bot, chat_id: int) -> None:
        self.bot = bot
        self.chat_id = chat_id

    async def send(self, text: str, *, sound: bool = True) -> None:
        await self.bot.send_message(
            chat_id=self.chat_id,
            text=text,
            disable_notification=not sound,
        )


@dataclass
class NotificationResult:
    push: bool = False
    email: bool = False
    sms: bool = False
    whatsapp: bool = False
    errors: list[dict[str, str]] = field(default_factory=list)

    @property
    def delivered(self) -> bool:
        return self.push or self.email or self.sms or self.whatsapp


def slot_found_text(monitor: Monitor, slot: Slot) -> str:
    kind = "отмена" if slot.kind.value == "cancellation" else "новый"
    return (
        f"🎉 <b>Слот найден для {html.escape(monitor.name)}</b>\n"
        f"{slot.date.strftime('%d.%m.%Y')} в {slot.time}\n"
        f"{html.escape(slot.location)} ({kind})"
    )


def booking_text(monitor: Monitor, slot: Slot) -> str:
    return (
        f"✅ <b>Форма заполнена для {html.escape(monitor.name)}</b>\n"
        f"{slot.date.strftime('%d.%m.%Y')} в {slot.time}, {html.escape(slot.location)}\n"
        "Проверьте данные и подтвердите запись вручную."
    )


class NotificationDispatcher:
    def __init__(
        self,
        push: Optional[PushSender] = None,
        backend: Optional[BackendSender] = None,
        *,
        retry_attempts: int = 3,
        retry_delay: float = 1.0,
    ) -> None:
        self.push = push
        self.backend = backend
        self.retry_attempts = retry_attempts
        self.retry_delay = retry_delay

    def available_channels(
        self,
        monitor: Monitor,
        subscription: Optional[Subscription],
        push_enabled: bool = True,
    ) -> list[str]:
        tier = subscription.tier if subscription else SubscriptionTier.ONE_OFF
        caps = TIER_CAPABILITIES.get(tier, TIER_CAPABILITIES[SubscriptionTier.ONE_OFF])
        prefs = monitor.notifications

        channels: list[str] = []
        if prefs.push and push_enabled and self.push is not None:
            channels.append(PUSH)
        if self.backend is not None:
            for name in BACKEND_CHANNELS:
                if getattr(prefs, name) and caps[name]:
                    channels.append(name)
        return channels

    async def send_slot_found(
        self,
        monitor: Monitor,
        slot: Slot,
        subscription: Optional[Subscription] = None,
        *,
        sound: bool = True,
        push_enabled: bool = True,
    ) -> NotificationResult:
        logger.info("Sending slot found notification for %s", monitor.name)
        channels = self.available_channels(monitor, subscription, push_enabled)
        payload = {
            "type": "slot_found",
            "monitorId": monitor.id,
            "studentName": monitor.name,
            "slot": {"date": slot.date.isoformat(), "time": slot.time, "centre": slot.location},
        }
        return await self._dispatch(channels, slot_found_text(monitor, slot), payload, sound)

    async def send_booking_confirmation(
        self,
        monitor: Monitor,
        slot: Slot,
        subscription: Optional[Subscription] = None,
        *,
        push_enabled: bool = True,
    ) -> NotificationResult:
        logger.info("Sending booking confirmation for %s", monitor.name)
        channels = self.available_channels(monitor, subscription, push_enabled)
        payload = {
            "type": "booking_confirmed",
            "monitorId": monitor.id,
            "studentName": monitor.name,
            "bookingDetails": {
                "date": slot.date.isoformat(),
                "time": slot.time,
                "centre": slot.location,
            },
        }
        return await self._dispatch(channels, booking_text(monitor, slot), payload, sound=True)

    async def _dispatch(
        self,
        channels: list[str],
        text: str,
        payload: dict[str, Any],
        sound: bool,
    ) -> NotificationResult:
        result = NotificationResult()

        if PUSH in channels and self.push is not None:
            try:
                await self.push.send(text, sound=sound)
                result.push = True
            except Exception as e:  # noqa: BLE001
                logger.warning("Failed to send push notification: %s", e)
                result.errors.append({"channel": PUSH, "error": str(e)})

        backend_channels = [c for c in channels if c in BACKEND_CHANNELS]
        if backend_channels and self.backend is not None:
            send = async_retry(attempts=self.retry_attempts, base_delay=self.retry_delay)(
                self.backend.send
            )
            try:
                sent = await send(payload["type"], payload, backend_channels)
            except Exception as e:  # noqa: BLE001
                logger.warning("Backend notification failed: %s", e)
                result.errors.append({"channel": "backend", "error": str(e)})
            else:
                result.email = EMAIL in sent
                result.sms = SMS in sent
                result.whatsapp = WHATSAPP in sent

        return result


__all__ = [
    "NotificationDispatcher",
    "NotificationResult",
    "TelegramPush",
    "SystemNotifier",
    "PushSender",
    "BackendSender",
    "TIER_CAPABILITIES",
]
