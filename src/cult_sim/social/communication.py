"""Inter-cult messaging: public broadcasts, whispers, leaks, memes and bribe offers."""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass, replace
from typing import TYPE_CHECKING, Callable, Literal, Protocol

from cult_sim.db.writer import BestEffortWriter
from cult_sim.memory.trust_memory import MemoryModel
from cult_sim.utils.types import now_ms

if TYPE_CHECKING:
    from cult_sim.db.repository import CultRepository
    from cult_sim.events.bus import EventBus

Visibility = Literal["public", "private", "leaked"]
BribeStatus = Literal["accepted", "rejected", "failed"]

MAX_MESSAGES = 200
PUBLIC_MIN_INTERVAL_MS = 120_000
PRIVATE_MIN_INTERVAL_MS = 180_000
SIMILARITY_THRESHOLD = 0.72
SIMILARITY_WINDOW = 25
LEAK_MAX_MESSAGES = 3


class TextGenerator(Protocol):
    async def generate_text(self, prompt: str, fallback: str = "") -> str: ...


@dataclass
class Message:
    id: int
    kind: str
    from_cult_id: int
    from_cult_name: str
    content: str
    visibility: Visibility
    timestamp: float
    to_cult_id: int | None = None
    to_cult_name: str | None = None


@dataclass(frozen=True)
class BribeOffer:
    id: int
    from_cult_id: int
    from_cult_name: str
    to_cult_id: int
    to_cult_name: str
    amount: float
    status: BribeStatus
    timestamp: float
    tx_hash: str | None = None


_NON_WORD = re.compile(r"[^a-z0-9\s]")
_SPACES = re.compile(r"\s+")


def normalize_text(value: str) -> str:
    return _SPACES.sub(" ", _NON_WORD.sub(" ", value.lower())).strip()


def _tokens(value: str) -> set[str]:
    return {t for t in normalize_text(value).split(" ") if len(t) >= 2}


def jaccard(a: set[str], b: set[str]) -> float:
    if not a or not b:
        return 0.0
    inter = len(a & b)
    union = len(a) + len(b) - inter
    return inter / union if union > 0 else 0.0


class CommunicationHub:
    def __init__(
        self,
        memory: MemoryModel,
        llm: TextGenerator | None = None,
        clock: Callable[[], float] = now_ms,
        public_interval_ms: float = PUBLIC_MIN_INTERVAL_MS,
        private_interval_ms: float = PRIVATE_MIN_INTERVAL_MS,
        store: "CultRepository | None" = None,
        writer: BestEffortWriter | None = None,
        bus: "EventBus | None" = None,
    ) -> None:
        self.logger = logging.getLogger("cult_sim.communication")
        self.memory = memory
        self.llm = llm
        self.clock = clock
        self.public_interval_ms = public_interval_ms
        self.private_interval_ms = private_interval_ms
        self.store = store
        self.writer = writer
        self.bus = bus
        self._messages: list[Message] = []
        self._bribes: list[BribeOffer] = []
        self._next_id = 0
        self._last_public: dict[int, float] = {}
        self._last_private: dict[tuple[int, int], float] = {}

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    async def broadcast(
        self,
        from_cult_id: int,
        from_cult_name: str,
        content: str | None = None,
        kind: str = "propaganda",
        system_prompt: str = "",
        target: tuple[int, str] | None = None,
    ) -> Message | None:
        """Post a public message; ``None`` when on cooldown or a near-duplicate."""
        now = self.clock()
        last = self._last_public.get(from_cult_id)
        if last is not None and now - last < self.public_interval_ms:
            self.logger.info(
                "message SUPPRESS cult=%s visibility=public reason=cooldown left=%.0fs",
                from_cult_name, (self.public_interval_ms - (now - last)) / 1000.0,
            )
            return None

        if not content:
            snapshot = self.memory.get_snapshot(from_cult_id)
            prompt = (
                f"{system_prompt}\n\nYou are {from_cult_name}. Write a short, charismatic "
                f"{kind.replace('_', ' ')} message. Max 2 sentences."
                + (f" Target: {target[1]}." if target else "")
                + (f" Context: {snapshot.summary}" if snapshot.summary else "")
            )
            content = await self._generate(prompt, f"{from_cult_name} rises. Join the faithful.")

        content = _sanitize(content)
        if self._is_duplicate(from_cult_id, content, "public"):
            self.logger.info(
                "message SUPPRESS cult=%s visibility=public reason=similar_content", from_cult_name
            )
            return None

        message = self._append(
            kind=kind,
            from_cult_id=from_cult_id,
            from_cult_name=from_cult_name,
            content=content,
            visibility="public",
            to=target,
        )
        self._last_public[from_cult_id] = now
        self._publish("global_chat", message)
        return message

    async def whisper(
        self,
        from_cult_id: int,
        from_cult_name: str,
        to_cult_id: int,
        to_cult_name: str,
        content: str | None = None,
        system_prompt: str = "",
    ) -> Message | None:
        now = self.clock()
        pair = _pair(from_cult_id, to_cult_id)
        last = self._last_private.get(pair)
        if last is not None and now - last < self.private_interval_ms:
            self.logger.info(
                "message SUPPRESS cult=%s to=%s visibility=private reason=cooldown",
                from_cult_name, to_cult_name,
            )
            return None

        if not content:
            prompt = (
                f"{system_prompt}\n\nYou are {from_cult_name}. Send a secret, private message to "
                f"{to_cult_name}. Be cunning and strategic. Max 2 sentences."
            )
            content = await self._generate(prompt, "Let us discuss terms privately...")

        content = _sanitize(content)
        if self._is_duplicate(from_cult_id, content, "private", to_cult_id):
            self.logger.info(
                "message SUPPRESS cult=%s to=%s visibility=private reason=similar_content",
                from_cult_name, to_cult_name,
            )
            return None

        message = self._append(
            kind="whisper",
            from_cult_id=from_cult_id,
            from_cult_name=from_cult_name,
            content=content,
            visibility="private",
            to=(to_cult_id, to_cult_name),
        )
        self._last_private[pair] = now
        self._publish("private_message", message)
        return message

    async def leak(
        self,
        leaker_id: int,
        leaker_name: str,
        cult_a: tuple[int, str],
        cult_b: tuple[int, str],
        system_prompt: str = "",
    ) -> tuple[list[Message], Message] | None:
        """Expose private messages between two other cults; ``None`` when they never whispered."""
        private = self.get_private_messages(cult_a[0], cult_b[0], limit=LEAK_MAX_MESSAGES)
        if not private:
            self.logger.info(
                "leak NOTHING leaker=%s between=%s,%s", leaker_name, cult_a[1], cult_b[1]
            )
            return None

        quoted = " | ".join(f'"{m.content}"' for m in private)
        prompt = (
            f"{system_prompt}\n\nYou are {leaker_name}. You have intercepted secret messages "
            f"between {cult_a[1]} and {cult_b[1]}. The messages say: {quoted}. Write a dramatic "
            "public announcement exposing this secret communication. Max 3 sentences."
        )
        text = await self._generate(
            prompt,
            f"{leaker_name} has intercepted secret communications between "
            f"{cult_a[1]} and {cult_b[1]}! Their treachery is exposed!",
        )

        leaked: list[Message] = []
        for original in private:
            original.visibility = "leaked"
            leaked.append(original)
            self._persist(leaker_id, original)

        announcement = self._append(
            kind="leak",
            from_cult_id=leaker_id,
            from_cult_name=leaker_name,
            content=f"LEAKED: {_sanitize(text)}",
            visibility="public",
        )
        self._publish("message_leaked", announcement)
        return leaked, announcement

    async def send_meme(
        self,
        from_cult_id: int,
        from_cult_name: str,
        to_cult_id: int,
        to_cult_name: str,
        caption: str | None = None,
        system_prompt: str = "",
    ) -> Message:
        if not caption:
            prompt = (
                f"{system_prompt}\n\nYou are {from_cult_name}. Write a one-line meme caption "
                f"roasting {to_cult_name}. Max 15 words."
            )
            caption = await self._generate(prompt, f"{to_cult_name} paper hands, ngmi.")
        message = self._append(
            kind="meme",
            from_cult_id=from_cult_id,
            from_cult_name=from_cult_name,
            content=f"MEME: {_sanitize(caption)}",
            visibility="public",
            to=(to_cult_id, to_cult_name),
        )
        self._publish("agent_meme", message)
        return message

    # ------------------------------------------------------------------
    # Bribes
    # ------------------------------------------------------------------

    def record_bribe(
        self,
        from_cult: tuple[int, str],
        to_cult: tuple[int, str],
        amount: float,
        status: BribeStatus,
        tx_hash: str | None = None,
    ) -> BribeOffer:
        offer = BribeOffer(
            id=len(self._bribes),
            from_cult_id=from_cult[0],
            from_cult_name=from_cult[1],
            to_cult_id=to_cult[0],
            to_cult_name=to_cult[1],
            amount=amount,
            status=status,
            timestamp=self.clock(),
            tx_hash=tx_hash,
        )
        self._bribes.append(offer)
        if self.bus is not None:
            self.bus.publish(
                "token_transfer",
                {
                    "from": from_cult[1],
                    "to": to_cult[1],
                    "amount": amount,
                    "purpose": "bribe",
                    "status": status,
                    "tx_hash": tx_hash,
                },
            )
        self.logger.info(
            "bribe %s from=%s to=%s amount=%.4f", status.upper(), from_cult[1], to_cult[1], amount
        )
        return offer

    def get_bribe_offers(
        self, cult_id: int | None = None, status: BribeStatus | None = None, limit: int = 20
    ) -> list[BribeOffer]:
        offers = [
            b
            for b in self._bribes
            if (cult_id is None or cult_id in (b.from_cult_id, b.to_cult_id))
            and (status is None or b.status == status)
        ]
        return list(reversed(offers[-limit:])) if limit > 0 else []

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_messages(self, limit: int = 50) -> list[Message]:
        visible = [m for m in self._messages if m.visibility != "private"]
        return [replace(m) for m in reversed(visible[-limit:])] if limit > 0 else []

    def get_cult_messages(self, cult_id: int, limit: int = 20) -> list[Message]:
        rows = [m for m in self._messages if cult_id in (m.from_cult_id, m.to_cult_id)]
        return [replace(m) for m in reversed(rows[-limit:])] if limit > 0 else []

    def get_private_messages(self, cult_a: int, cult_b: int, limit: int = 20) -> list[Message]:
        pair = _pair(cult_a, cult_b)
        rows = [
            m
            for m in self._messages
            if m.visibility == "private"
            and m.to_cult_id is not None
            and _pair(m.from_cult_id, m.to_cult_id) == pair
        ]
        return rows[-limit:] if limit > 0 else []

    def private_pairs(self) -> list[tuple[int, int]]:
        seen: list[tuple[int, int]] = []
        for m in self._messages:
            if m.visibility == "private" and m.to_cult_id is not None:
                pair = _pair(m.from_cult_id, m.to_cult_id)
                if pair not in seen:
                    seen.append(pair)
        return seen

    def recent_lines_for(self, cult_id: int, limit: int = 5) -> list[str]:
        """Short text lines of what a cult has heard lately, for planning context."""
        lines: list[str] = []
        for m in reversed(self._messages):
            if m.from_cult_id == cult_id:
                continue
            if m.visibility == "private" and m.to_cult_id != cult_id:
                continue
            prefix = "(whisper) " if m.visibility == "private" else ""
            lines.append(f"{prefix}{m.from_cult_name}: {m.content[:160]}")
            if len(lines) >= limit:
                break
        return lines

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    async def _generate(self, prompt: str, fallback: str) -> str:
        if self.llm is None:
            return fallback
        return await self.llm.generate_text(prompt, fallback=fallback) or fallback

    def _is_duplicate(
        self, from_cult_id: int, content: str, visibility: Visibility, to_cult_id: int | None = None
    ) -> bool:
        normalized = normalize_text(content)
        if not normalized:
            return True
        candidate = _tokens(content)
        recent = [
            m
            for m in self._messages
            if m.from_cult_id == from_cult_id
            and m.visibility == visibility
            and (visibility != "private" or m.to_cult_id == to_cult_id)
        ][-SIMILARITY_WINDOW:]
        for m in recent:
            existing = normalize_text(m.content)
            if existing == normalized:
                return True
            if jaccard(candidate, _tokens(m.content)) > SIMILARITY_THRESHOLD:
                return True
        return False

    def _append(
        self,
        kind: str,
        from_cult_id: int,
        from_cult_name: str,
        content: str,
        visibility: Visibility,
        to: tuple[int, str] | None = None,
    ) -> Message:
        message = Message(
            id=self._next_id,
            kind=kind,
            from_cult_id=from_cult_id,
            from_cult_name=from_cult_name,
            content=content,
            visibility=visibility,
            timestamp=self.clock(),
            to_cult_id=to[0] if to else None,
            to_cult_name=to[1] if to else None,
        )
        self._next_id += 1
        self._messages.append(message)
        if len(self._messages) > MAX_MESSAGES:
            del self._messages[: len(self._messages) - MAX_MESSAGES]
        self._persist(from_cult_id, message)
        return message

    def _persist(self, key: int, message: Message) -> None:
        if self.store is None or self.writer is None:
            return
        self.writer.submit(key, self.store.save_message, replace(message), label="save_message")

    def _publish(self, name: str, message: Message) -> None:
        if self.bus is None:
            return
        self.bus.publish(
            name,
            {
                "id": message.id,
                "from_cult_id": message.from_cult_id,
                "from_cult_name": message.from_cult_name,
                "to_cult_id": message.to_cult_id,
                "content": message.content,
                "visibility": message.visibility,
            },
        )


def _pair(a: int, b: int) -> tuple[int, int]:
    return (a, b) if a <= b else (b, a)


def _sanitize(content: str) -> str:
    return content.strip().strip("\"'").strip()
