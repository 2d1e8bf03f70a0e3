from __future__ import annotations

import asyncio
import logging
import sys
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import HTMLResponse

from agent.agent import GeminiModelClient, ReplyOrchestrator
from agent.core.memory import ConversationStore
from app.status import ConnectionStatus, render_status_page
from config.settings import get_settings
from whatsapp.client import InboundMessage, WhatsAppWebClient


settings = get_settings()

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="[%(asctime)s] %(levelname)s - %(message)s",
)
logger = logging.getLogger("relay")

status = ConnectionStatus()


class MessageRelay:
    """Glue between the WhatsApp client and the reply orchestrator."""

    def __init__(self, adapter: Any, orchestrator: ReplyOrchestrator) -> None:
        self.adapter = adapter
        self.orchestrator = orchestrator

    async def on_message(self, message: InboundMessage) -> None:
        # Skip our own messages and status broadcasts
        if message.is_self_sent or message.is_status_update:
            return
        if not message.body:
            return

        # Anyone who writes gets an answer; there is no allow-list.
        logger.info("Question received from %s, processing...", message.sender_id)
        try:
            await self.adapter.send_typing_indicator(message.chat_title)
            reply = await self.orchestrator.handle(message.sender_id, message.body)
            sent = await self.adapter.reply(message, reply)
            if not sent:
                logger.warning("Reply to %s was not delivered", message.sender_id)
            await self.adapter.clear_typing_indicator(message.chat_title)
        except Exception as e:
            logger.exception("Failed to answer %s: %s", message.sender_id, e)


async def on_qr(data_url: str) -> None:
    logger.info("QR received, scan it from the status page")
    status.set_qr(data_url)


async def on_ready() -> None:
    logger.info("Bot online and open to everyone")
    status.set_connected()


async def on_disconnected(reason: str) -> None:
    logger.warning("Client disconnected (%s), reconnecting...", reason)
    status.reset()


def _loop_exception_handler(loop: asyncio.AbstractEventLoop, context: Dict[str, Any]) -> None:
    exc: Optional[BaseException] = context.get("exception")
    logger.critical("Unhandled error in event loop: %s", context.get("message"), exc_info=exc)


def _excepthook(exc_type, exc, tb) -> None:
    logger.critical("Uncaught exception", exc_info=(exc_type, exc, tb))


def install_crash_guards(loop: asyncio.AbstractEventLoop) -> None:
    """Log unhandled faults instead of letting them take the process down."""
    loop.set_exception_handler(_loop_exception_handler)
    sys.excepthook = _excepthook


@asynccontextmanager
async def lifespan(_app: FastAPI):
    install_crash_guards(asyncio.get_running_loop())
    logger.info(
        "Config: model=%s key_set=%s history_max=%s",
        settings.gemini_model,
        bool(settings.google_api_key),
        settings.history_max_entries,
    )
    store = ConversationStore(max_entries=settings.history_max_entries)
    orchestrator = ReplyOrchestrator(store, GeminiModelClient.from_settings(settings))
    client = WhatsAppWebClient(
        data_dir=settings.data_dir,
        headless=settings.whatsapp_headless,
        on_qr=on_qr,
        on_ready=on_ready,
        on_disconnected=on_disconnected,
    )
    client.on_message = MessageRelay(client, orchestrator).on_message
    await client.start()
    try:
        yield
    finally:
        await client.stop()


app = FastAPI(title="Bot Médico WhatsApp Relay", version="1.0.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/", response_class=HTMLResponse)
def index() -> HTMLResponse:
    return HTMLResponse(render_status_page(status))


def main() -> None:
    import uvicorn

    logger.info("Server listening on port %s", settings.port)
    uvicorn.run(app, host=settings.host, port=settings.port, log_level=settings.log_level.lower())


if __name__ == "__main__":
    main()
