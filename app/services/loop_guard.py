import time
from dataclasses import dataclass
from typing import Callable, Dict, Tuple

from app.config import settings
from app.logging_config import get_logger
from app.schemas.message import InboundMessage, MessageKind
from app.services.text_utils import normalize_for_matching

logger = get_logger("loop_guard")

PRUNE_AFTER_SECONDS = 600.0


@dataclass
class LoopTrackEntry:
    count: int
    last_seen: float


def message_fingerprint(message: InboundMessage) -> Tuple[str, str]:
    """(key, normalized text) for text; (key, kind) for media."""
    if message.kind == MessageKind.TEXT and message.text:
        content = normalize_for_matching(message.text) or message.text.strip()
    else:
        content = f"<{message.kind.value}>"
    return message.conversation_key, content


class LoopGuard:
    """Counts repeats of the same fingerprint inside a sliding cool-off window."""

    def __init__(
        self,
        *,
        window_seconds: float = settings.loop_window_seconds,
        max_repeats: int = settings.loop_max_repeats,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.window_seconds = window_seconds
        self.max_repeats = max_repeats
        self._clock = clock
        self._entries: Dict[Tuple[str, str], LoopTrackEntry] = {}

    def should_suppress(self, message: InboundMessage) -> bool:
        fingerprint = message_fingerprint(message)
        now = self._clock()
        entry = self._entries.get(fingerprint)

        if entry is None or now - entry.last_seen > self.window_seconds:
            self._entries[fingerprint] = LoopTrackEntry(count=1, last_seen=now)
            return False

        entry.count += 1
        entry.last_seen = now
        if entry.count > self.max_repeats:
            logger.warning(
                "Message loop suppressed",
                extra={"context": {"conversation_key": message.conversation_key, "count": entry.count}},
            )
            return True
        return False

    def prune(self, max_age_seconds: float = PRUNE_AFTER_SECONDS) -> int:
        now = self._clock()
        stale = [fp for fp, entry in self._entries.items() if now - entry.last_seen > max_age_seconds]
        for fingerprint in stale:
            del self._entries[fingerprint]
        return len(stale)

    def __len__(self) -> int:
        return len(self._entries)
