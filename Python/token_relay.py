"""
Streaming Token Relay
Forwards model output fragments to the client as they arrive.

One relay serves both delivery strategies; a BoundaryPolicy selects between
them. With no markers every fragment is forwarded immediately. With markers,
text outside a marker-bounded block is still forwarded immediately, while a
block is withheld from its start marker until its end marker arrives and is
then delivered in one message, so a consumer never sees a marker split
across deliveries.
"""
import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

logger = logging.getLogger(__name__)


class ClientEventKind(str, Enum):
    MESSAGE = "message"
    RETRY = "retry"
    COMPLETE = "complete"
    ERROR = "error"


@dataclass
class ClientEvent:
    """One server-sent event for the client push stream."""
    kind: ClientEventKind
    data: Dict[str, Any] = field(default_factory=dict)

    @property
    def terminal(self) -> bool:
        return self.kind in (ClientEventKind.COMPLETE, ClientEventKind.ERROR)

    def to_sse(self) -> str:
        # JSON encoding escapes quotes, newlines and control characters for the wire
        return f"event: {self.kind.value}\ndata: {json.dumps(self.data, ensure_ascii=False)}\n\n"


@dataclass(frozen=True)
class BoundaryPolicy:
    """Marker pairs whose enclosed text must be delivered atomically."""
    markers: Tuple[Tuple[str, str], ...] = ()

    @property
    def buffered(self) -> bool:
        return bool(self.markers)

    @classmethod
    def passthrough(cls) -> 'BoundaryPolicy':
        return cls()

    @classmethod
    def assessment_blocks(cls, delimiter: str = "§") -> 'BoundaryPolicy':
        return cls(markers=((delimiter, delimiter),))


class TokenRelay:
    """
    Incremental relay from model fragments to client `message` events.

    Args:
        emit: Callback receiving each ClientEvent
        policy: Boundary policy; passthrough by default
        drop_blocks: Discard closed blocks instead of delivering them
    """

    def __init__(self, emit: Callable[[ClientEvent], None],
                 policy: Optional[BoundaryPolicy] = None,
                 drop_blocks: bool = False):
        self.emit = emit
        self.policy = policy or BoundaryPolicy.passthrough()
        self.drop_blocks = drop_blocks
        self.reset()

    def reset(self):
        """Forget everything from the current attempt."""
        self._parts: List[str] = []
        self._pending = ""
        self._open: Optional[Tuple[str, str]] = None
        self.delivered = 0

    @property
    def full_text(self) -> str:
        return "".join(self._parts)

    @property
    def in_block(self) -> bool:
        return self._open is not None

    def _forward(self, text: str):
        if text:
            self.emit(ClientEvent(ClientEventKind.MESSAGE, {"content": text}))
            self.delivered += 1

    def feed(self, fragment: str):
        if not fragment:
            return
        self._parts.append(fragment)

        if not self.policy.buffered:
            self._forward(fragment)
            return

        self._pending += fragment
        self._drain()

    def _drain(self):
        while self._pending:
            if self._open is None:
                hit = self._find_start()
                if hit is None:
                    keep = self._partial_start_suffix()
                    self._forward(self._pending[:len(self._pending) - keep])
                    self._pending = self._pending[len(self._pending) - keep:]
                    return
                index, pair = hit
                self._forward(self._pending[:index])
                self._pending = self._pending[index:]
                self._open = pair
            else:
                start, end = self._open
                pos = self._pending.find(end, len(start))
                if pos == -1:
                    return
                block_end = pos + len(end)
                if not self.drop_blocks:
                    self._forward(self._pending[:block_end])
                self._pending = self._pending[block_end:]
                self._open = None

    def _find_start(self) -> Optional[Tuple[int, Tuple[str, str]]]:
        best = None
        for pair in self.policy.markers:
            index = self._pending.find(pair[0])
            if index != -1 and (best is None or index < best[0]):
                best = (index, pair)
        return best

    def _partial_start_suffix(self) -> int:
        """Length of the longest pending suffix that could begin a start marker."""
        longest = 0
        for start, _ in self.policy.markers:
            for size in range(min(len(start) - 1, len(self._pending)), 0, -1):
                if start.startswith(self._pending[-size:]):
                    longest = max(longest, size)
                    break
        return longest

    def finish(self) -> str:
        """Flush withheld text and return the full concatenated response."""
        if self._pending:
            if self._open is not None:
                logger.warning("Stream ended inside an unclosed block; flushing it as narrative")
            self._forward(self._pending)
            self._pending = ""
            self._open = None
        return self.full_text
