"""Server-side conversation memory.

Each WhatsApp sender gets one transcript that lives for the lifetime of the
process. A transcript always opens with the instruction preamble followed by
the model's acknowledgment; everything after that is a sliding window of
user/model turns capped at ``MAX_HISTORY_ENTRIES``.
"""

from __future__ import annotations

from typing import Dict, List, Literal

from pydantic import BaseModel, ConfigDict

from agent.core.prompt import ACKNOWLEDGEMENT, SYSTEM_PROMPT


ROLE_SYSTEM = "system-setup"
ROLE_USER = "user"
ROLE_MODEL = "model"

Role = Literal["system-setup", "user", "model"]

MAX_HISTORY_ENTRIES = 30
# Entries 0 and 1 (preamble + acknowledgment) are pinned.
PINNED_ENTRIES = 2
# One user turn plus one model turn.
EVICTION_WIDTH = 2


class ConversationEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    role: Role
    text: str


Transcript = List[ConversationEntry]


class ConversationStore:
    """Maps a user identifier to its bounded transcript.

    The store is the only owner of transcripts: ``get_or_create`` hands out
    a copy, and all writes go through ``append``.
    """

    def __init__(
        self,
        max_entries: int = MAX_HISTORY_ENTRIES,
        system_prompt: str = SYSTEM_PROMPT,
        acknowledgement: str = ACKNOWLEDGEMENT,
    ) -> None:
        if max_entries < PINNED_ENTRIES + EVICTION_WIDTH:
            raise ValueError(
                f"max_entries must be >= {PINNED_ENTRIES + EVICTION_WIDTH}, got {max_entries}"
            )
        self.max_entries = max_entries
        self.system_prompt = system_prompt
        self.acknowledgement = acknowledgement
        self._transcripts: Dict[str, Transcript] = {}

    def __len__(self) -> int:
        return len(self._transcripts)

    def __contains__(self, user_id: object) -> bool:
        return user_id in self._transcripts

    def _seed(self) -> Transcript:
        return [
            ConversationEntry(role=ROLE_SYSTEM, text=self.system_prompt),
            ConversationEntry(role=ROLE_MODEL, text=self.acknowledgement),
        ]

    def _transcript(self, user_id: str) -> Transcript:
        transcript = self._transcripts.get(user_id)
        if transcript is None:
            transcript = self._seed()
            self._transcripts[user_id] = transcript
        return transcript

    def get_or_create(self, user_id: str) -> Transcript:
        return list(self._transcript(user_id))

    def length(self, user_id: str) -> int:
        transcript = self._transcripts.get(user_id)
        return len(transcript) if transcript is not None else 0

    def append(self, user_id: str, role: Role, text: str) -> None:
        transcript = self._transcript(user_id)
        transcript.append(ConversationEntry(role=role, text=text))
        if len(transcript) > self.max_entries:
            del transcript[PINNED_ENTRIES:PINNED_ENTRIES + EVICTION_WIDTH]
