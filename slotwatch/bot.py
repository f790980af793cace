"""
Telegram bot entrypoint built with aiogram 3.

Telegram-бот поверх оркестратора:
- кнопки: запуск/остановка мониторинга, экстренная остановка, ручная проверка, статус, мониторы
- команды /add, /pause, /resume, /delete, /interval, /book
- мидлвара, которая пускает только админа по chat_id
Все действия идут через командную поверхность оркестратора.
"""

from __future__ import annotations

import asyncio
import html
import logging
from datetime import date
from typing import Any, Awaitable, Callable, Dict

from aiogram import BaseMiddleware, Bot, Dispatcher, F
from aiogram.client.default import DefaultBotProperties
from aiogram.enums import ParseMode
from aiogram.filters import Command, CommandObject
from aiogram.types import CallbackQuery, InlineKeyboardButton, InlineKeyboardMarkup, Message, TelegramObject

from .behavior import BackoffPolicy, HumanPacing
from .booking import BookingEngine
from .browser import SiteBrowser
from .config import get_settings
from .detector import SlotDetector
from .models import Monitor, MonitorStatus, Slot, Subscription, SubscriptionTier
from .notifications import NotificationDispatcher, TelegramPush
from .orchestrator import Orchestrator
from .protocol import (
    AddMonitor,
    BookSlot,
    Channel,
    DeleteMonitor,
    EmergencyStop,
    GetMonitors,
    GetRisk,
    GetStats,
    ManualCheck,
    Response,
    StartMonitoring,
    StopMonitoring,
    ToggleMonitor,
    UpdateSettings,
)
from .risk import RiskModel
from .storage import JsonFileStore
from .utils import setup_logging


logger = logging.getLogger(__name__)

ADD_USAGE = (
    "Формат: <code>/add Имя; НОМЕР_ПРАВ; Центр1, Центр2; 2026-11-01..2026-12-31</code>\n"
    "Номер прав и диапазон дат можно не указывать."
)


class AdminOnlyMiddleware(BaseMiddleware):
    """Allow only admin user to interact with bot."""

    def __init__(self, admin_chat_id: int) -> None:
        super().__init__()
        self.admin_chat_id = admin_chat_id

    async def __call__(
        self,
        handler: Callable[[TelegramObject, Dict[str, Any]], Awaitable[Any]],
        event: TelegramObject,
        data: Dict[str, Any],
    ) -> Any:
        user = getattr(event, "from_user", None)
        if user is not None and user.id != self.admin_chat_id:
            if isinstance(event, Message):
                await event.answer("Этот бот предназначен только для владельца.")
            elif isinstance(event, CallbackQuery):
                await event.answer("Нет доступа", show_alert=True)
            return None
        return await handler(event, data)


class TelegramSystemNotifier:
    """System notification surface: plain admin messages."""

    def __init__(self, bot: Bot, chat_id: int) -> None:
        self.bot = bot
        self.chat_id = chat_id

    async def notify(self, title: str, message: str) -> None:
        await self.bot.send_message(
            chat_id=self.chat_id,
            text=f"⚠️ <b>{html.escape(title)}</b>\n{html.escape(message)}",
        )


def parse_monitor_args(text: str) -> dict[str, Any]:
    """
    Parse `/add` arguments into a monitor payload.

    "Sarah; AB123456C; Manchester, Leeds; 2026-11-01..2026-12-31"
    Raises ValueError with a user-facing message.
    """
    parts = [p.strip() for p in (text or "").split(";")]
    if len(parts) < 2 or not parts[0]:
        raise ValueError("Нужно указать имя и хотя бы один тест-центр")

    payload: dict[str, Any] = {"name": parts[0]}
    if len(parts) == 2:
        centres_part, rest = parts[1], []
    else:
        payload["licence"] = parts[1]
        centres_part, rest = parts[2], parts[3:]

    payload["testCentres"] = [c.strip() for c in centres_part.split(",") if c.strip()]
    if not payload["testCentres"]:
        raise ValueError("Нужно указать хотя бы один тест-центр")

    if rest and rest[0]:
        window = rest[0]
        if ".." not in window:
            raise ValueError("Диапазон дат должен выглядеть как 2026-11-01..2026-12-31")
        start, end = (s.strip() for s in window.split("..", 1))
        try:
            if start:
                payload["dateFrom"] = date.fromisoformat(start)
            if end:
                payload["dateTo"] = date.fromisoformat(end)
        except ValueError as e:
            raise ValueError(f"Неверная дата: {e}") from e
    return payload


def format_monitor(monitor: dict[str, Any]) -> str:
    icon = "🟢" if monitor["status"] == MonitorStatus.ACTIVE.value else "⏸"
    window = ""
    if monitor.get("dateFrom") or monitor.get("dateTo"):
        window = f"\n   даты: {monitor.get('dateFrom') or '…'} .. {monitor.get('dateTo') or '…'}"
    return (
        f"{icon} <b>{html.escape(monitor['name'])}</b> <code>{monitor['id']}</code>\n"
        f"   центры: {html.escape(', '.join(monitor['testCentres']))}\n"
        f"   найдено слотов: {monitor['slotsFound']}{window}"
    )


def format_status(stats: dict[str, Any], risk: dict[str, Any], monitoring: bool) -> str:
    text = (
        f"📊 <b>Статус мониторинга</b>\n"
        f"Состояние: {'запущен' if monitoring else 'остановлен'}\n"
        f"Мониторов: {stats['monitorsCount']}\n"
        f"Всего найдено слотов: {stats['slotsFound']}\n"
        f"Перебронирований: {stats['rebooksUsed']}/{stats['rebooksTotal']}\n"
        f"Риск: {risk['level']} ({risk['percentage']}%)\n"
    )
    if stats.get("lastCheckISO"):
        text += f"Последняя проверка: {stats['lastCheckISO']}\n"
    return text


def _reply_text(response: Response, ok_text: str | None = None) -> str:
    if response.success:
        return ok_text or f"✅ {response.message or 'Готово'}"
    return f"❌ {html.escape(response.error or 'Ошибка')}"


def main_keyboard() -> InlineKeyboardMarkup:
    return InlineKeyboardMarkup(
        inline_keyboard=[
            [InlineKeyboardButton(text="▶️ Запустить мониторинг", callback_data="start_monitoring")],
            [InlineKeyboardButton(text="⏹ Остановить", callback_data="stop_monitoring")],
            [InlineKeyboardButton(text="🔎 Проверить сейчас", callback_data="manual_check")],
            [
                InlineKeyboardButton(text="ℹ️ Статус", callback_data="status"),
                InlineKeyboardButton(text="📋 Мониторы", callback_data="monitors"),
            ],
            [InlineKeyboardButton(text="🛑 Экстренная остановка", callback_data="emergency_stop")],
        ]
    )


def build_orchestrator(bot: Bot) -> tuple[Orchestrator, SiteBrowser]:
    """Wire the production collaborators together."""
    settings = get_settings()
    defaults = settings.monitor

    risk = RiskModel()
    behavior = HumanPacing(
        risk=lambda: risk.assessment,
        max_risk_percentage=defaults.max_risk_percentage,
    )
    detector = SlotDetector(
        behavior,
        settings.site.change_url,
        max_dates=defaults.max_dates_per_check,
    )
    booking = BookingEngine(behavior, settings.site.change_url)
    channel = Channel(
        detector,
        booking,
        check_timeout=defaults.check_timeout,
        booking_timeout=defaults.booking_timeout,
    )
    browser = SiteBrowser(settings.browser, settings.site, settings.storage)
    dispatcher = NotificationDispatcher(push=TelegramPush(bot, settings.bot.admin_chat_id))

    try:
        tier = SubscriptionTier(settings.plan.tier)
    except ValueError:
        logger.warning("Unknown subscription tier %r, using one-off", settings.plan.tier)
        tier = SubscriptionTier.ONE_OFF

    orchestrator = Orchestrator(
        store=JsonFileStore(settings.storage.state_path),
        channel=channel,
        contexts=browser,
        notifier=dispatcher,
        system=TelegramSystemNotifier(bot, settings.bot.admin_chat_id),
        behavior=behavior,
        risk=risk,
        backoff=BackoffPolicy(),
        defaults=defaults,
        subscription=Subscription(tier=tier, rebooks_total=settings.plan.rebooks_total),
    )
    return orchestrator, browser


def register_handlers(dp: Dispatcher, orchestrator: Orchestrator) -> None:
    @dp.message(Command("start"))
    async def cmd_start(message: Message) -> None:
        await message.answer(
            "👋 Привет! Я слежу за свободными слотами на практический экзамен.\n\n"
            "Используй кнопки ниже для управления мониторингом.\n"
            f"Добавить монитор: /add\n{ADD_USAGE}\n\n"
            "Другие команды: /pause ID, /resume ID, /delete ID, /interval СЕК, "
            "/book ID ГГГГ-ММ-ДД ЧЧ:ММ",
            reply_markup=main_keyboard(),
        )

    @dp.message(Command("add"))
    async def cmd_add(message: Message, command: CommandObject) -> None:
        try:
            payload = parse_monitor_args(command.args or "")
            monitor = Monitor.model_validate(payload)
        except ValueError as e:
            # ValidationError тоже наследует ValueError
            await message.answer(f"❌ {html.escape(str(e))}\n\n{ADD_USAGE}")
            return
        response = await orchestrator.handle(AddMonitor(monitor=monitor))
        await message.answer(_reply_text(response))

    async def _toggle(message: Message, command: CommandObject, status: MonitorStatus) -> None:
        monitor_id = (command.args or "").strip()
        if not monitor_id:
            await message.answer("Укажите ID монитора, список: кнопка «Мониторы»")
            return
        response = await orchestrator.handle(ToggleMonitor(monitor_id=monitor_id, status=status))
        await message.answer(_reply_text(response))

    @dp.message(Command("pause"))
    async def cmd_pause(message: Message, command: CommandObject) -> None:
        await _toggle(message, command, MonitorStatus.PAUSED)

    @dp.message(Command("resume"))
    async def cmd_resume(message: Message, command: CommandObject) -> None:
        await _toggle(message, command, MonitorStatus.ACTIVE)

    @dp.message(Command("delete"))
    async def cmd_delete(message: Message, command: CommandObject) -> None:
        monitor_id = (command.args or "").strip()
        response = await orchestrator.handle(DeleteMonitor(monitor_id=monitor_id))
        await message.answer(_reply_text(response))

    @dp.message(Command("interval"))
    async def cmd_interval(message: Message, command: CommandObject) -> None:
        raw = (command.args or "").strip()
        if not raw.isdigit():
            await message.answer("Формат: /interval 45 (секунды, минимум 5)")
            return
        response = await orchestrator.handle(UpdateSettings(settings={"checkInterval": int(raw)}))
        await message.answer(_reply_text(response, f"✅ Интервал проверок: {raw} с"))

    @dp.message(Command("book"))
    async def cmd_book(message: Message, command: CommandObject) -> None:
        args = (command.args or "").split()
        if len(args) != 3:
            await message.answer("Формат: /book ID ГГГГ-ММ-ДД ЧЧ:ММ")
            return
        monitor_id, day, time_str = args
        monitor = next((m for m in orchestrator.monitors if m.id == monitor_id), None)
        if monitor is None:
            await message.answer(f"❌ Monitor not found: {html.escape(monitor_id)}")
            return
        slot = next(
            (s for s in monitor.found_slots if s.date.isoformat() == day and s.time == time_str),
            None,
        )
        if slot is None:
            try:
                slot = Slot(date=day, time=time_str, location=monitor.test_centres[0])
            except ValueError as e:
                await message.answer(f"❌ {html.escape(str(e))}")
                return
        await message.answer("Заполняю форму бронирования, подождите...")
        response = await orchestrator.handle(BookSlot(slot=slot, monitor_id=monitor_id))
        await message.answer(_reply_text(response))

    @dp.callback_query(F.data == "start_monitoring")
    async def on_start_monitoring(callback: CallbackQuery) -> None:
        await callback.answer()
        response = await orchestrator.handle(StartMonitoring())
        await callback.message.edit_text(_reply_text(response, "Мониторинг запущен ✅"), reply_markup=main_keyboard())

    @dp.callback_query(F.data == "stop_monitoring")
    async def on_stop_monitoring(callback: CallbackQuery) -> None:
        await callback.answer()
        response = await orchestrator.handle(StopMonitoring())
        await callback.message.edit_text(_reply_text(response, "Мониторинг остановлен ⏹️"), reply_markup=main_keyboard())

    @dp.callback_query(F.data == "emergency_stop")
    async def on_emergency_stop(callback: CallbackQuery) -> None:
        await callback.answer()
        response = await orchestrator.handle(EmergencyStop())
        await callback.message.edit_text(
            _reply_text(response, "🛑 Экстренная остановка: все мониторы на паузе"),
            reply_markup=main_keyboard(),
        )

    @dp.callback_query(F.data == "manual_check")
    async def on_manual_check(callback: CallbackQuery) -> None:
        await callback.answer("Проверяю...")
        response = await orchestrator.handle(ManualCheck())
        text = _reply_text(response, f"🔎 Проверка завершена, новых слотов: {response.data.get('slotsFound', 0)}")
        await callback.message.answer(text, reply_markup=main_keyboard())

    @dp.callback_query(F.data == "status")
    async def on_status(callback: CallbackQuery) -> None:
        await callback.answer()
        stats = await orchestrator.handle(GetStats())
        risk = await orchestrator.handle(GetRisk())
        text = format_status(stats.data["stats"], risk.data["risk"], orchestrator.is_monitoring)
        await callback.message.edit_text(text, reply_markup=main_keyboard())

    @dp.callback_query(F.data == "monitors")
    async def on_monitors(callback: CallbackQuery) -> None:
        await callback.answer()
        response = await orchestrator.handle(GetMonitors())
        monitors = response.data["monitors"]
        if not monitors:
            text = f"Мониторов пока нет.\n{ADD_USAGE}"
        else:
            text = "📋 <b>Мониторы</b>\n\n" + "\n\n".join(format_monitor(m) for m in monitors)
        await callback.message.edit_text(text, reply_markup=main_keyboard())


def main() -> None:
    """Entry point for running the bot."""
    settings = get_settings()
    setup_logging()

    bot = Bot(
        settings.bot.token,
        default=DefaultBotProperties(parse_mode=ParseMode.HTML),
    )
    dp = Dispatcher()

    orchestrator, browser = build_orchestrator(bot)

    middleware = AdminOnlyMiddleware(settings.bot.admin_chat_id)
    dp.message.middleware(middleware)
    dp.callback_query.middleware(middleware)

    register_handlers(dp, orchestrator)

    async def on_startup() -> None:
        await orchestrator.open()

    async def on_shutdown() -> None:
        await orchestrator.close()
        await browser.close()

    dp.startup.register(on_startup)
    dp.shutdown.register(on_shutdown)

    logger.info("Starting polling")
    asyncio.run(_run_polling(dp, bot))


async def _run_polling(dp: Dispatcher, bot: Bot) -> None:
    try:
        await dp.start_polling(bot)
    finally:
        await bot.session.close()


if __name__ == "__main__":
    main()
