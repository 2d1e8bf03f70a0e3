import asyncio
import gc
import sys
import unittest

from fastapi.testclient import TestClient

from agent.agent import ReplyOrchestrator
from agent.core.memory import ConversationStore
from agent.core.prompt import FALLBACK_REPLY
from app import main
from app.status import ConnectionState, ConnectionStatus
from whatsapp.client import InboundMessage


class FakeAdapter:
    def __init__(self, reply_ok=True, typing_error=None):
        self.reply_ok = reply_ok
        self.typing_error = typing_error
        self.events = []

    async def send_typing_indicator(self, chat_title):
        if self.typing_error is not None:
            raise self.typing_error
        self.events.append(("typing", chat_title))
        return True

    async def clear_typing_indicator(self, chat_title):
        self.events.append(("clear", chat_title))
        return True

    async def reply(self, message, text):
        self.events.append(("reply", message.message_id, text))
        return self.reply_ok


class FakeModelClient:
    def __init__(self, reply="resposta", error=None):
        self.reply = reply
        self.error = error
        self.calls = 0

    async def generate(self, transcript, new_input):
        self.calls += 1
        if self.error is not None:
            raise self.error
        return self.reply


def make_message(**overrides):
    base = {
        "message_id": "false_5511999999999@c.us_3EB0A1",
        "sender_id": "5511999999999@c.us",
        "chat_title": "Dr. João",
        "body": "hello",
    }
    base.update(overrides)
    return InboundMessage(**base)


class MessageRelayTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.store = ConversationStore()
        self.model = FakeModelClient(reply="hi")
        self.adapter = FakeAdapter()
        self.relay = main.MessageRelay(self.adapter, ReplyOrchestrator(self.store, self.model))

    async def test_answers_incoming_message(self):
        await self.relay.on_message(make_message())
        self.assertEqual(
            self.adapter.events,
            [
                ("typing", "Dr. João"),
                ("reply", "false_5511999999999@c.us_3EB0A1", "hi"),
                ("clear", "Dr. João"),
            ],
        )
        self.assertEqual(self.store.length("5511999999999@c.us"), 4)

    async def test_ignores_self_sent_and_status(self):
        await self.relay.on_message(make_message(is_self_sent=True))
        await self.relay.on_message(make_message(is_status_update=True))
        self.assertEqual(self.adapter.events, [])
        self.assertEqual(self.model.calls, 0)
        self.assertEqual(len(self.store), 0)

    async def test_ignores_empty_body(self):
        await self.relay.on_message(make_message(body=""))
        self.assertEqual(self.model.calls, 0)

    async def test_model_failure_sends_fallback(self):
        self.relay.orchestrator.model_client = FakeModelClient(error=TimeoutError("slow"))
        with self.assertLogs("relay", level="ERROR"):
            await self.relay.on_message(make_message())
        self.assertIn(("reply", "false_5511999999999@c.us_3EB0A1", FALLBACK_REPLY), self.adapter.events)
        self.assertEqual(self.store.length("5511999999999@c.us"), 2)

    async def test_adapter_fault_is_logged_not_raised(self):
        self.relay.adapter = FakeAdapter(typing_error=RuntimeError("page crashed"))
        with self.assertLogs("relay", level="ERROR") as logs:
            await self.relay.on_message(make_message())
        self.assertTrue(any("Failed to answer" in line for line in logs.output))

    async def test_undelivered_reply_is_logged(self):
        self.relay.adapter = FakeAdapter(reply_ok=False)
        with self.assertLogs("relay", level="WARNING") as logs:
            await self.relay.on_message(make_message())
        self.assertTrue(any("not delivered" in line for line in logs.output))


class ConnectionStatusTests(unittest.TestCase):
    def test_transitions(self):
        status = ConnectionStatus()
        self.assertIs(status.state, ConnectionState.NO_CODE)
        status.set_qr("data:image/png;base64,AAAA")
        self.assertIs(status.state, ConnectionState.PENDING_CODE)
        status.set_connected()
        self.assertIs(status.state, ConnectionState.CONNECTED)
        status.reset()
        self.assertIs(status.state, ConnectionState.NO_CODE)


class StatusPageTests(unittest.TestCase):
    def setUp(self):
        main.status.reset()
        self.client = TestClient(main.app)

    def tearDown(self):
        main.status.reset()

    def test_waiting_for_code(self):
        response = self.client.get("/")
        self.assertEqual(response.status_code, 200)
        self.assertIn("text/html", response.headers["content-type"])
        self.assertIn("Aguardando QR Code...", response.text)
        self.assertIn('http-equiv="refresh" content="3"', response.text)

    def test_pending_code_shows_image(self):
        main.status.set_qr("data:image/png;base64,iVBORw0KGgo=")
        response = self.client.get("/")
        self.assertIn('<img src="data:image/png;base64,iVBORw0KGgo="', response.text)
        self.assertIn('http-equiv="refresh" content="3"', response.text)

    def test_connected_has_no_refresh(self):
        main.status.set_connected()
        response = self.client.get("/")
        self.assertIn("Bot Médico Online!", response.text)
        self.assertNotIn("http-equiv", response.text)

    def test_callbacks_drive_status(self):
        asyncio.run(main.on_qr("data:image/png;base64,QQ=="))
        self.assertIs(main.status.state, ConnectionState.PENDING_CODE)
        asyncio.run(main.on_ready())
        self.assertIs(main.status.state, ConnectionState.CONNECTED)
        asyncio.run(main.on_disconnected("LOGOUT"))
        self.assertIs(main.status.state, ConnectionState.NO_CODE)

    def test_only_root_route(self):
        self.assertEqual(self.client.get("/health").status_code, 404)


class CrashGuardTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.loop = asyncio.get_running_loop()
        self.addCleanup(setattr, sys, "excepthook", sys.excepthook)
        main.install_crash_guards(self.loop)

    async def test_unretrieved_task_error_is_logged_and_loop_survives(self):
        async def explode():
            raise RuntimeError("adapter exploded")

        with self.assertLogs("relay", level="CRITICAL") as logs:
            task = self.loop.create_task(explode())
            await asyncio.sleep(0)
            await asyncio.sleep(0)
            self.assertTrue(task.done())
            del task
            gc.collect()

        self.assertTrue(any("Unhandled error in event loop" in line for line in logs.output))
        await asyncio.sleep(0)
        self.assertFalse(self.loop.is_closed())

    async def test_callback_error_is_logged(self):
        def explode():
            raise ValueError("bad callback")

        with self.assertLogs("relay", level="CRITICAL") as logs:
            self.loop.call_soon(explode)
            await asyncio.sleep(0)
            await asyncio.sleep(0)

        self.assertIn("bad callback", "\n".join(logs.output))

    async def test_uncaught_exception_hook_logs(self):
        try:
            raise KeyError("boom")
        except KeyError:
            exc_info = sys.exc_info()

        with self.assertLogs("relay", level="CRITICAL") as logs:
            sys.excepthook(*exc_info)

        self.assertTrue(any("Uncaught exception" in line for line in logs.output))


if __name__ == "__main__":
    unittest.main()
