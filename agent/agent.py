from __future__ import annotations

import asyncio
import logging
from typing import Dict, List, Optional, Protocol, Sequence

from langchain_core.language_models import BaseChatModel
from langchain_core.messages import AIMessage, BaseMessage, HumanMessage
from langchain_core.output_parsers import StrOutputParser
from langchain_core.prompts import ChatPromptTemplate, MessagesPlaceholder
from langchain_core.runnables import Runnable
from langchain_google_genai import ChatGoogleGenerativeAI

from agent.core.memory import (
    ROLE_MODEL,
    ROLE_SYSTEM,
    ROLE_USER,
    ConversationEntry,
    ConversationStore,
)
from agent.core.prompt import FALLBACK_REPLY, SYSTEM_PROMPT_LABEL
from config.settings import Settings, get_settings


logger = logging.getLogger("relay.agent")


class ModelClientError(RuntimeError):
    """Raised when the model answers with something we cannot forward."""


class ModelClient(Protocol):
    async def generate(self, transcript: Sequence[ConversationEntry], new_input: str) -> str:
        ...


def build_llm(settings: Optional[Settings] = None) -> ChatGoogleGenerativeAI:
    settings = settings or get_settings()
    if not settings.google_api_key:
        raise RuntimeError(
            "GEMINI_API_KEY not set. Please configure it in environment or .env"
        )

    return ChatGoogleGenerativeAI(
        model=settings.gemini_model,
        google_api_key=settings.google_api_key,
        temperature=settings.temperature,
        top_p=settings.top_p,
    )


def to_lc_messages(transcript: Sequence[ConversationEntry]) -> List[BaseMessage]:
    messages: List[BaseMessage] = []
    for entry in transcript:
        if entry.role == ROLE_SYSTEM:
            messages.append(HumanMessage(content=f"{SYSTEM_PROMPT_LABEL}: {entry.text}"))
        elif entry.role == ROLE_MODEL:
            messages.append(AIMessage(content=entry.text))
        else:
            messages.append(HumanMessage(content=entry.text))
    return messages


class GeminiModelClient:
    """Runs one chat turn against the configured chat model.

    The transcript is replayed as ``chat_history`` and the new text goes in
    as the human turn; nothing is streamed.
    """

    def __init__(self, llm: BaseChatModel) -> None:
        prompt = ChatPromptTemplate.from_messages(
            [
                MessagesPlaceholder("chat_history"),
                ("human", "{input}"),
            ]
        )
        self.chain: Runnable = prompt | llm | StrOutputParser()

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "GeminiModelClient":
        return cls(build_llm(settings))

    async def generate(self, transcript: Sequence[ConversationEntry], new_input: str) -> str:
        output = await self.chain.ainvoke(
            {"chat_history": to_lc_messages(transcript), "input": new_input}
        )
        text = (output or "").strip()
        if not text:
            raise ModelClientError("Model returned an empty response")
        return text


class ReplyOrchestrator:
    """Turns one inbound message into one reply, keeping the sender's history.

    Calls for the same user are serialized so that two overlapping messages
    cannot interleave their history updates.
    """

    def __init__(self, store: ConversationStore, model_client: ModelClient) -> None:
        self.store = store
        self.model_client = model_client
        self._locks: Dict[str, asyncio.Lock] = {}

    def _lock_for(self, user_id: str) -> asyncio.Lock:
        lock = self._locks.get(user_id)
        if lock is None:
            lock = self._locks[user_id] = asyncio.Lock()
        return lock

    async def handle(self, user_id: str, inbound_text: str) -> str:
        async with self._lock_for(user_id):
            transcript = self.store.get_or_create(user_id)
            try:
                reply = await self.model_client.generate(transcript, inbound_text)
            except Exception as exc:
                logger.exception("Model call failed for user=%s: %s", user_id, exc)
                return FALLBACK_REPLY

            self.store.append(user_id, ROLE_USER, inbound_text)
            self.store.append(user_id, ROLE_MODEL, reply)
            logger.info(
                "Model responded to user=%s with %s chars (history=%s)",
                user_id,
                len(reply),
                self.store.length(user_id),
            )
            return reply
