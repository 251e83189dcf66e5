"""Tracks a user's outstanding contact/email request between two updates."""

import time
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Optional

from flowrouter.logging_config import get_logger
from flowrouter.services.state_store import HybridStore

logger = get_logger("pending_input")


class PendingKind(str, Enum):
    CONTACT = "contact"
    EMAIL = "email"


@dataclass
class PendingInput:
    kind: PendingKind
    target_state: str
    origin_state: str
    timestamp: float

    def to_dict(self) -> dict:
        data = asdict(self)
        data["kind"] = self.kind.value
        return data

    @classmethod
    def from_dict(cls, data: dict) -> Optional["PendingInput"]:
        try:
            return cls(
                kind=PendingKind(data["kind"]),
                target_state=str(data["target_state"]),
                origin_state=str(data.get("origin_state") or ""),
                timestamp=float(data.get("timestamp") or 0),
            )
        except (KeyError, TypeError, ValueError):
            return None


def pending_key(bot_id: str, user_id: int) -> str:
    return f"bot:{bot_id}:user:{user_id}:pending"


class PendingInputTracker:
    def __init__(self, store: HybridStore, ttl_seconds: int = 3600):
        self.store = store
        self.ttl_seconds = ttl_seconds

    async def set(
        self,
        bot_id: str,
        user_id: int,
        kind: PendingKind,
        target_state: str,
        origin_state: str,
    ) -> PendingInput:
        pending = PendingInput(kind=kind, target_state=target_state, origin_state=origin_state, timestamp=time.time())
        await self.store.set_json(pending_key(bot_id, user_id), pending.to_dict(), self.ttl_seconds)
        logger.debug(
            "Pending input set",
            extra={"context": {"bot_id": bot_id, "user_id": user_id, "kind": kind.value, "target": target_state}},
        )
        return pending

    async def get(self, bot_id: str, user_id: int) -> Optional[PendingInput]:
        data = await self.store.get_json(pending_key(bot_id, user_id))
        if not isinstance(data, dict):
            return None
        return PendingInput.from_dict(data)

    async def clear(self, bot_id: str, user_id: int) -> None:
        await self.store.delete(pending_key(bot_id, user_id))
