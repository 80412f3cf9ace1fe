"""Typed host boundary: turns, character profile, and the events a host pushes into the engine."""
from __future__ import annotations

import hashlib
from enum import Enum
from typing import Annotated, Literal, Union

from pydantic import BaseModel, Field


class AuthorKind(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


class Turn(BaseModel):
    """One chat turn as the host sees it."""
    index: int
    author_kind: AuthorKind
    text: str = ""
    speaker: str = ""  # display name; falls back to the user/character name

    @property
    def is_assistant(self) -> bool:
        return self.author_kind == AuthorKind.ASSISTANT


def hash_text(text: str) -> str:
    """Stable short hash used for calibration invalidation and content fingerprints."""
    return hashlib.sha256((text or "").encode("utf-8")).hexdigest()[:16]


class CharacterProfile(BaseModel):
    """Character card sections; full_text() is what calibration and scoring read."""
    name: str = ""
    description: str = ""
    personality: str = ""
    scenario: str = ""
    example_messages: str = ""
    system_prompt: str = ""
    post_history_instructions: str = ""
    first_message: str = ""
    user_name: str = "User"

    def full_text(self) -> str:
        sections = [
            ("Character Name", self.name),
            ("Description", self.description),
            ("Personality", self.personality),
            ("Scenario", self.scenario),
            ("Example Messages", self.example_messages),
            ("System Prompt", self.system_prompt),
            ("Post-History Instructions", self.post_history_instructions),
        ]
        return "\n\n".join(
            f"[{label}]\n{text.strip()}" for label, text in sections if text and text.strip()
        )

    def display_name(self) -> str:
        return self.name or "the character"

    def character_key(self) -> str:
        """Identity + profile-text hash; keys the pinned calibration."""
        return f"{self.name or 'unknown'}_{hash_text(self.full_text())}"


# --- Events pushed by the host ---


class TurnRendered(BaseModel):
    """A new assistant turn finished rendering."""
    kind: Literal["turn_rendered"] = "turn_rendered"
    index: int


class TurnSwiped(BaseModel):
    """The host regenerated (swiped) the turn at `index`."""
    kind: Literal["turn_swiped"] = "turn_swiped"
    index: int


class ChatChanged(BaseModel):
    """The host switched to another chat (or reloaded the current one)."""
    kind: Literal["chat_changed"] = "chat_changed"
    chat_id: str


HostEvent = Annotated[Union[TurnRendered, TurnSwiped, ChatChanged], Field(discriminator="kind")]
