from __future__ import annotations

import asyncio
import logging
from collections import OrderedDict
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Optional, Set

from playwright.async_api import BrowserContext, Page, Playwright, async_playwright
from pydantic import BaseModel, Field

from whatsapp.scripts import (
    BINDING_NAME,
    CHAT_LIST_SELECTOR,
    COMPOSER_SELECTOR,
    OBSERVER_JS,
    QR_CANVAS_SELECTOR,
    QR_DATA_URL_JS,
    UNREAD_CHATS_JS,
    WHATSAPP_URL,
)


logger = logging.getLogger("relay.whatsapp")

STATUS_BROADCAST = "status@broadcast"
POLL_INTERVAL_SEC = 2.0
# Message ids remembered for de-duplication, oldest dropped first.
SEEN_LIMIT = 5000
NAVIGATION_TIMEOUT_MS = 120_000

QrHandler = Callable[[str], Awaitable[None]]
ReadyHandler = Callable[[], Awaitable[None]]
DisconnectedHandler = Callable[[str], Awaitable[None]]
MessageHandler = Callable[["InboundMessage"], Awaitable[None]]


class InboundMessage(BaseModel):
    message_id: str
    sender_id: str = Field(..., description="Chat JID the message came from")
    chat_title: str = ""
    body: str = ""
    is_self_sent: bool = False
    is_status_update: bool = False


def parse_sender_from_msg_id(msg_id: str) -> Optional[str]:
    # msg ids look like "false_5511999999999@c.us_3EB0..." (group ids carry
    # a trailing participant, the chat JID is still the first one)
    for part in msg_id.split("_"):
        if "@" in part:
            return part
    return None


def message_from_payload(payload: Dict[str, Any]) -> Optional[InboundMessage]:
    msg_id = str(payload.get("msgId") or "")
    if not msg_id:
        return None
    chat_title = str(payload.get("chatTitle") or "").strip()
    sender = parse_sender_from_msg_id(msg_id) or chat_title
    if not sender:
        return None
    return InboundMessage(
        message_id=msg_id,
        sender_id=sender,
        chat_title=chat_title,
        body=str(payload.get("text") or "").strip(),
        is_self_sent=bool(payload.get("isOutgoing")) or msg_id.startswith("true_"),
        is_status_update=STATUS_BROADCAST in msg_id,
    )


async def _noop(*_args: Any) -> None:
    return None


class WhatsAppWebClient:
    """
    Playwright automation for WhatsApp Web
    - Persistent browser profile, so a scanned QR survives restarts
    - QR capture from the login canvas
    - Incoming messages via an in-page MutationObserver
    - Typing indicator and text replies through the chat composer
    """

    def __init__(
        self,
        data_dir: str,
        headless: bool = True,
        on_qr: Optional[QrHandler] = None,
        on_ready: Optional[ReadyHandler] = None,
        on_disconnected: Optional[DisconnectedHandler] = None,
        on_message: Optional[MessageHandler] = None,
    ) -> None:
        self.profile_dir = Path(data_dir) / "session"
        self.headless = headless
        self.on_qr = on_qr or _noop
        self.on_ready = on_ready or _noop
        self.on_disconnected = on_disconnected or _noop
        self.on_message = on_message or _noop

        self.playwright: Optional[Playwright] = None
        self.ctx: Optional[BrowserContext] = None
        self.page: Optional[Page] = None
        self.connected = False
        self._last_qr: Optional[str] = None
        self._seen: "OrderedDict[str, None]" = OrderedDict()
        self._page_lock = asyncio.Lock()
        self._stop = asyncio.Event()
        self._tasks: Set[asyncio.Task] = set()
        self._watch_task: Optional[asyncio.Task] = None

    async def start(self) -> None:
        logger.info("Starting WhatsApp Web client (profile=%s)", self.profile_dir)
        self.profile_dir.mkdir(parents=True, exist_ok=True)
        self.playwright = await async_playwright().start()
        await self._launch()
        self._watch_task = asyncio.create_task(self._watch_loop())

    async def stop(self) -> None:
        self._stop.set()
        if self._watch_task:
            self._watch_task.cancel()
        for task in list(self._tasks):
            task.cancel()
        if self.ctx:
            await self.ctx.close()
        if self.playwright:
            await self.playwright.stop()
        logger.info("WhatsApp Web client stopped")

    async def _launch(self) -> None:
        self.ctx = await self.playwright.chromium.launch_persistent_context(
            user_data_dir=str(self.profile_dir),
            headless=self.headless,
            args=["--no-sandbox", "--disable-setuid-sandbox"],
        )
        await self.ctx.expose_binding(BINDING_NAME, self._on_binding)
        await self.ctx.add_init_script(OBSERVER_JS)
        self.page = self.ctx.pages[0] if self.ctx.pages else await self.ctx.new_page()
        self.page.set_default_timeout(NAVIGATION_TIMEOUT_MS)
        await self._navigate()

    async def _navigate(self) -> None:
        try:
            await self.page.goto(WHATSAPP_URL, wait_until="domcontentloaded")
        except Exception as exc:
            # The page often keeps loading after a slow first navigation.
            logger.warning("Initial WhatsApp Web navigation failed; continuing: %s", exc)

    async def initialize(self) -> None:
        """Reload WhatsApp Web after a disconnect, relaunching the browser if it died."""
        self.connected = False
        self._last_qr = None
        if self.page is None or self.page.is_closed():
            if self.ctx:
                try:
                    await self.ctx.close()
                except Exception as exc:
                    logger.warning("Closing dead browser context failed: %s", exc)
            await self._launch()
        else:
            await self._navigate()

    async def _on_binding(self, _source: Any, payload: Dict[str, Any]) -> None:
        message = message_from_payload(payload or {})
        if message is None or message.message_id in self._seen:
            return
        self._remember(message.message_id)
        self._spawn(self.on_message(message))

    def _remember(self, message_id: str) -> None:
        self._seen[message_id] = None
        while len(self._seen) > SEEN_LIMIT:
            self._seen.popitem(last=False)

    def _spawn(self, coro: Awaitable[None]) -> None:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _watch_loop(self) -> None:
        while not self._stop.is_set():
            try:
                await self._poll_once()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.exception("WhatsApp Web watcher error: %s", exc)
            await asyncio.sleep(POLL_INTERVAL_SEC)

    async def _poll_once(self) -> None:
        if self.page is None or self.page.is_closed():
            await self._handle_disconnect("page closed")
            return

        if await self.page.locator(CHAT_LIST_SELECTOR).count() > 0:
            if not self.connected:
                self.connected = True
                self._last_qr = None
                await self.on_ready()
            await self._scan_unread()
            return

        qr_canvas = self.page.locator(QR_CANVAS_SELECTOR)
        if await qr_canvas.count() == 0:
            return
        if self.connected:
            await self._handle_disconnect("LOGOUT")
            return
        data_url = await qr_canvas.first.evaluate(QR_DATA_URL_JS)
        if data_url and data_url.startswith("data:image/png") and data_url != self._last_qr:
            self._last_qr = data_url
            await self.on_qr(data_url)

    async def _handle_disconnect(self, reason: str) -> None:
        self.connected = False
        await self.on_disconnected(reason)
        await self.initialize()

    async def _scan_unread(self) -> None:
        if self._page_lock.locked():
            return
        chats = await self.page.evaluate(UNREAD_CHATS_JS)
        for chat in chats or []:
            title = chat.get("title")
            if title:
                async with self._page_lock:
                    await self._open_chat(title, unread=int(chat.get("unread") or 1))

    async def _unread_count(self, title: str) -> int:
        """Unread badge count of a chat in the list, 0 when it has none."""
        chats = await self.page.evaluate(UNREAD_CHATS_JS)
        for chat in chats or []:
            if chat.get("title") == title:
                return int(chat.get("unread") or 1)
        return 0

    async def _enter_chat(self, title: str) -> bool:
        return await self._open_chat(title, unread=await self._unread_count(title))

    async def _open_chat(self, title: str, unread: int = 0) -> bool:
        """Open a chat by its list title. Caller must hold the page lock.

        ``unread`` newest incoming messages are delivered, older ones are
        only marked seen; callers pass the chat's badge count so messages
        that arrived while another chat was open are not skipped.
        """
        await self.page.evaluate("window.__relay_disarm && window.__relay_disarm()")
        try:
            row = self.page.locator("#pane-side").get_by_title(title, exact=True).first
            await row.click()
            await self.page.locator(COMPOSER_SELECTOR).first.wait_for(timeout=10_000)
            return True
        except Exception as exc:
            logger.warning("Could not open chat %r: %s", title, exc)
            return False
        finally:
            await self.page.evaluate(
                "(n) => window.__relay_openChat && window.__relay_openChat(n)", unread
            )

    async def send_typing_indicator(self, chat_title: str) -> bool:
        async with self._page_lock:
            if not await self._enter_chat(chat_title):
                return False
            try:
                composer = self.page.locator(COMPOSER_SELECTOR).first
                await composer.click()
                await self.page.keyboard.type(" ")
                return True
            except Exception as exc:
                logger.warning("send_typing_indicator failed for %r: %s", chat_title, exc)
                return False

    async def clear_typing_indicator(self, chat_title: str) -> bool:
        async with self._page_lock:
            if not await self._enter_chat(chat_title):
                return False
            try:
                await self.page.locator(COMPOSER_SELECTOR).first.fill("")
                return True
            except Exception as exc:
                logger.warning("clear_typing_indicator failed for %r: %s", chat_title, exc)
                return False

    async def reply(self, message: InboundMessage, text: str) -> bool:
        """
        Type ``text`` in the originating chat's composer and send it.
        """
        async with self._page_lock:
            if not await self._enter_chat(message.chat_title):
                return False
            try:
                composer = self.page.locator(COMPOSER_SELECTOR).first
                await composer.click()
                await composer.fill(text)
                await self.page.keyboard.press("Enter")
                return True
            except Exception as exc:
                logger.warning("reply failed for %s: %s", message.sender_id, exc)
                return False
