# mcp_oauth_gateway/sessions/event_log.py
import logging
from collections import deque
from typing import Deque, Optional, Tuple

from mcp.server.streamable_http import (
    EventCallback,
    EventId,
    EventMessage,
    EventStore,
    StreamId,
)
from mcp.types import JSONRPCMessage

logger = logging.getLogger(__name__)

DEFAULT_MAX_EVENTS = 1000


class InMemoryEventLog(EventStore):
    """
    Append-only event log for one session, used by the transport to resume
    SSE streams after a reconnect.

    Event ids come from a per-log counter and are never reused. Only the most
    recent ``max_events`` entries are retained; a cursor that has been evicted
    (or was never issued) replays nothing.
    """

    def __init__(self, max_events: int = DEFAULT_MAX_EVENTS):
        if max_events < 1:
            raise ValueError("max_events must be at least 1.")
        self.max_events = max_events
        self._next_seq = 1
        self._events: Deque[Tuple[int, StreamId, Optional[JSONRPCMessage]]] = deque(maxlen=max_events)

    def __len__(self) -> int:
        return len(self._events)

    async def store_event(self, stream_id: StreamId, message: Optional[JSONRPCMessage]) -> EventId:
        seq = self._next_seq
        self._next_seq += 1
        self._events.append((seq, stream_id, message))
        return str(seq)

    async def replay_events_after(
        self,
        last_event_id: EventId,
        send_callback: EventCallback,
    ) -> Optional[StreamId]:
        try:
            cursor = int(last_event_id)
        except (TypeError, ValueError):
            logger.warning(f"Ignoring malformed Last-Event-ID '{last_event_id}'.")
            return None

        stream_id = None
        for seq, event_stream_id, _ in self._events:
            if seq == cursor:
                stream_id = event_stream_id
                break
        if stream_id is None:
            logger.info(f"Last-Event-ID '{last_event_id}' is unknown or evicted; nothing to replay.")
            return None

        # Snapshot first: the callback may suspend while new events are appended
        pending = [
            (seq, message) for seq, event_stream_id, message in list(self._events)
            if seq > cursor and event_stream_id == stream_id
        ]
        for seq, message in pending:
            if message is None:
                continue
            await send_callback(EventMessage(message, str(seq)))
        logger.debug(f"Replayed {len(pending)} event(s) after {last_event_id} on stream '{stream_id}'.")
        return stream_id
