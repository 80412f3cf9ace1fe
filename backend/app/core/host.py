"""Host boundary: what the engine needs from the chat application it monitors.

The engine never talks to a UI directly. A host supplies the turns of the current chat,
the character profile, the active model identity and a prompt-injection sink; the
in-memory implementation below backs the HTTP API, the replay command and the tests.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol, runtime_checkable

from backend.app.models.events import AuthorKind, CharacterProfile, Turn

logger = logging.getLogger(__name__)

POSITION_IN_PROMPT = "in_prompt"
ROLE_SYSTEM = "system"


@runtime_checkable
class ChatHost(Protocol):
    """Turn source, profile accessor and injection sink for one chat."""

    def turns(self) -> List[Turn]:
        ...

    def profile(self) -> Optional[CharacterProfile]:
        ...

    def model_id(self) -> str:
        ...

    def set_injection(self, key: str, text: str, position: str, depth: int, role: str) -> None:
        ...

    def clear_injection(self, key: str) -> None:
        ...


@runtime_checkable
class KeyValueStore(Protocol):
    """Global settings store (get/set by key) with debounced persistence."""

    def get(self, key: str, default: Any = None) -> Any:
        ...

    def set(self, key: str, value: Any) -> None:
        ...

    def flush(self) -> None:
        ...


@runtime_checkable
class ChatMetadataStore(Protocol):
    """Per-chat session metadata (the serialized SessionState)."""

    def load(self, chat_id: str) -> Optional[Dict[str, Any]]:
        ...

    def save(self, chat_id: str, data: Dict[str, Any]) -> None:
        ...

    def flush(self) -> None:
        ...


@dataclass
class Injection:
    text: str
    position: str = POSITION_IN_PROMPT
    depth: int = 0
    role: str = ROLE_SYSTEM


@dataclass
class InMemoryHost:
    """A host whose chat lives in memory; callers append turns as they happen."""

    chat_turns: List[Turn] = field(default_factory=list)
    character: Optional[CharacterProfile] = None
    model: str = "unknown"
    injections: Dict[str, Injection] = field(default_factory=dict)

    def turns(self) -> List[Turn]:
        return list(self.chat_turns)

    def profile(self) -> Optional[CharacterProfile]:
        return self.character

    def model_id(self) -> str:
        return self.model or "unknown"

    def set_injection(self, key: str, text: str, position: str = POSITION_IN_PROMPT, depth: int = 0, role: str = ROLE_SYSTEM) -> None:
        self.injections[key] = Injection(text=text, position=position, depth=depth, role=role)
        logger.debug("Injection %s set at depth %d", key, depth)

    def clear_injection(self, key: str) -> None:
        self.injections.pop(key, None)

    def add_turn(self, author_kind: AuthorKind | str, text: str, speaker: str = "") -> Turn:
        turn = Turn(index=len(self.chat_turns), author_kind=AuthorKind(author_kind), text=text, speaker=speaker)
        self.chat_turns.append(turn)
        return turn

    def replace_turn(self, index: int, text: str) -> Turn:
        """Swap the text of an existing turn (a swipe/regeneration)."""
        old = self.chat_turns[index]
        turn = old.model_copy(update={"text": text})
        self.chat_turns[index] = turn
        return turn

    def load_turns(self, turns: List[Turn]) -> None:
        self.chat_turns = list(turns)


class MemoryKeyValueStore:
    """Dict-backed settings store."""

    def __init__(self, data: Optional[Dict[str, Any]] = None):
        self.data: Dict[str, Any] = dict(data or {})

    def get(self, key: str, default: Any = None) -> Any:
        return self.data.get(key, default)

    def set(self, key: str, value: Any) -> None:
        self.data[key] = value

    def flush(self) -> None:
        return None


class MemoryChatMetadataStore:
    """Dict-backed per-chat metadata store."""

    def __init__(self):
        self.data: Dict[str, Dict[str, Any]] = {}

    def load(self, chat_id: str) -> Optional[Dict[str, Any]]:
        return self.data.get(chat_id)

    def save(self, chat_id: str, data: Dict[str, Any]) -> None:
        self.data[chat_id] = data

    def flush(self) -> None:
        return None
