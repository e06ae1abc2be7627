"""Server-sent event streams and server-initiated pushes to sessions."""

from __future__ import annotations

import json
import logging
import queue
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Iterator

from .handlers import ToolResult
from .server import MCPServer, Tool
from .session import generate_session_id

log = logging.getLogger(__name__)

_POLL_INTERVAL = 0.05


def _frame(event: str, data: str) -> str:
    return f"event: {event}\ndata: {data}\n\n"


@dataclass
class _Stream:
    events: queue.Queue
    closed: threading.Event = field(default_factory=threading.Event)


class SSEServer:
    """Per-session event streams fed by the server's notification queues."""

    message_endpoint = "/mcp/message"
    push_count = 5
    push_interval = 3.0

    def __init__(self, server: MCPServer) -> None:
        self.server = server
        self._streams: dict[str, _Stream] = {}
        self._lock = threading.Lock()

    def _endpoint(self, session_id: str) -> str:
        return f"{self.message_endpoint}?sessionId={session_id}"

    def open_stream(self, session_id: str = "") -> str:
        """Open a stream for a session and return its message endpoint."""
        session_id = session_id or generate_session_id()
        events = self.server.register_session(session_id)
        with self._lock:
            self._streams[session_id] = _Stream(events)
        return self._endpoint(session_id)

    def close_stream(self, session_id: str) -> None:
        """Close a stream and unregister its session from the server."""
        with self._lock:
            stream = self._streams.pop(session_id, None)
        if stream is not None:
            stream.closed.set()
            self.server.unregister_session(session_id)

    def send_event_to_session(self, session_id: str, event: Any) -> None:
        """Queue a JSON-serialisable event for an open stream."""
        json.dumps(event)
        with self._lock:
            stream = self._streams.get(session_id)
        if stream is None:
            raise LookupError(f"session not found: {session_id}")
        try:
            stream.events.put_nowait(event)
        except queue.Full as exc:
            raise RuntimeError("event queue full") from exc

    def events(self, session_id: str, timeout: float | None = None) -> Iterator[str]:
        """Yield SSE frames: the endpoint first, then each queued message.

        Ends when the stream is closed or no message arrives within ``timeout``.
        """
        with self._lock:
            stream = self._streams.get(session_id)
        if stream is None:
            raise LookupError(f"session not found: {session_id}")
        yield _frame("endpoint", self._endpoint(session_id))
        deadline = None if timeout is None else time.monotonic() + timeout
        while not stream.closed.is_set():
            wait = _POLL_INTERVAL
            if deadline is not None:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return
                wait = min(wait, remaining)
            try:
                item = stream.events.get(timeout=wait)
            except queue.Empty:
                continue
            yield _frame("message", json.dumps(item, ensure_ascii=False))
            if timeout is not None:
                deadline = time.monotonic() + timeout

    def register_per_session_tool(self, session_id: str) -> None:
        """Give one session a tool of its own."""
        tool = Tool("my_custom_tool", "会话专属工具")

        def handler(arguments: dict, caller: str) -> ToolResult:
            return ToolResult.success("你访问了专属工具，sessionID: " + session_id)

        self.server.add_session_tool(session_id, tool, handler)

    def register_push_tool(self) -> None:
        """Add the ``start_sse_push`` tool that sends a series of notifications."""
        tool = Tool(
            "start_sse_push",
            "Starts a background task that pushes notifications to the client via SSE.",
        )

        def handler(arguments: dict, session_id: str) -> ToolResult:
            for index in range(1, self.push_count + 1):
                message = {
                    "message": f"SSE推送消息：第{index}条",
                    "index": index,
                    "timestamp": int(time.time()),
                }
                try:
                    self.server.send_notification(session_id, "start_sse_push", message)
                except (LookupError, RuntimeError) as exc:
                    log.error("[MCP-SSE] Failed to send notification: %s", exc)
                else:
                    log.info("[MCP-SSE] Notification %d sent successfully", index)
                time.sleep(self.push_interval)
            log.info("[MCP-SSE] All notifications sent for start_sse_push")
            return ToolResult.success(
                "SSE push notifications sent. You will receive 5 messages over 15 seconds."
            )

        self.server.add_tool(tool, handler)


def start_push_notifications(
    session_id: str, sse_server: SSEServer, count: int = 5, interval: float = 3.0
) -> threading.Thread:
    """Push ``count`` messages to a session in the background, stopping on failure."""

    def run() -> None:
        for index in range(count):
            time.sleep(interval)
            payload = {
                "message": "This is a push from the server.",
                "timestamp": datetime.now().astimezone().replace(microsecond=0).isoformat(),
                "count": index + 1,
            }
            log.info("[MCP-SSE-PUSH] Pushing message to session: %s", session_id)
            try:
                sse_server.send_event_to_session(session_id, payload)
            except (LookupError, RuntimeError, TypeError) as exc:
                log.error(
                    "[MCP-SSE-PUSH] Failed to send notification to session %s: %s. Stopping push.",
                    session_id,
                    exc,
                )
                return
        log.info("[MCP-SSE-PUSH] Finished pushing messages for session: %s", session_id)

    thread = threading.Thread(target=run, name=f"push-{session_id}", daemon=True)
    thread.start()
    return thread