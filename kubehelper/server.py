"""Tool registry, role-based tool filtering and JSON-RPC message handling."""

from __future__ import annotations

import json
import logging
import queue
import sys
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Iterable, Mapping, TextIO

from .handlers import TOOL_DESCRIPTIONS, ToolResult
from .session import SessionUserRegistry

SERVER_NAME = "k8s-helper"
SERVER_VERSION = "1.0.0"
JSONRPC_VERSION = "2.0"
LATEST_PROTOCOL_VERSION = "2025-03-26"
SUPPORTED_PROTOCOL_VERSIONS = ("2025-03-26", "2024-11-05")

PARSE_ERROR = -32700
INVALID_REQUEST = -32600
METHOD_NOT_FOUND = -32601
INVALID_PARAMS = -32602
INTERNAL_ERROR = -32603

NOTIFICATION_BUFFER = 10
STDIO_SESSION_ID = "stdio"

USER_TOOLS = frozenset({"get_clusters", "get_pods", "get_deployments", "get_daemonsets"})
GUEST_TOOLS = frozenset({"get_clusters"})

HTTP_TOOL_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "method": {
            "type": "string",
            "description": "HTTP method: GET/POST/PUT/DELETE",
            "enum": ["GET", "POST", "PUT", "DELETE"],
        },
        "url": {
            "type": "string",
            "description": "API 路径，如 /clusters /namespaces?cluster_name=xxx 等",
        },
        "body": {"type": "string", "description": "请求体（POST/PUT 时可选)"},
    },
    "required": ["method", "url"],
}

log = logging.getLogger(__name__)

ToolHandler = Callable[[dict, str], ToolResult]
HTTPHandler = Callable[[str, str, str], ToolResult]


def _empty_schema() -> dict[str, Any]:
    return {"type": "object", "properties": {}}


@dataclass(frozen=True)
class Tool:
    """A callable tool as advertised to clients."""

    name: str
    description: str = ""
    input_schema: dict[str, Any] = field(default_factory=_empty_schema)

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "inputSchema": self.input_schema,
        }


def filter_tools(tools: Iterable[Tool], role: str) -> list[Tool]:
    """Keep only the tools the given role may see."""
    tools = list(tools)
    if role == "admin":
        return tools
    if role == "user":
        allowed = USER_TOOLS
    elif role == "guest":
        allowed = GUEST_TOOLS
    else:
        allowed = frozenset()
    filtered = [tool for tool in tools if tool.name in allowed]
    log.info(
        "[TOOL_FILTER] role=%s, all_tools=%s, filtered_tools=%s",
        role,
        [tool.name for tool in tools],
        [tool.name for tool in filtered],
    )
    return filtered


def _response(request_id: Any, result: Any) -> dict[str, Any]:
    return {"jsonrpc": JSONRPC_VERSION, "id": request_id, "result": result}


def _error(request_id: Any, code: int, message: str) -> dict[str, Any]:
    return {
        "jsonrpc": JSONRPC_VERSION,
        "id": request_id,
        "error": {"code": code, "message": message},
    }


class MCPServer:
    """Holds tools and client sessions and answers JSON-RPC requests."""

    def __init__(self, registry: SessionUserRegistry | None = None, transport: str = "") -> None:
        self.registry = registry if registry is not None else SessionUserRegistry()
        self.transport = transport
        self._tools: dict[str, tuple[Tool, ToolHandler]] = {}
        self._session_tools: dict[str, dict[str, tuple[Tool, ToolHandler]]] = {}
        self._sessions: dict[str, queue.Queue] = {}
        self._lock = threading.RLock()

    def add_tool(self, tool: Tool, handler: ToolHandler) -> None:
        """Register a tool for every session; ``handler(arguments, session_id)``."""
        with self._lock:
            self._tools[tool.name] = (tool, handler)

    def add_session_tool(self, session_id: str, tool: Tool, handler: ToolHandler) -> None:
        """Register a tool visible to one registered session only."""
        with self._lock:
            if session_id not in self._sessions:
                raise LookupError(f"session not found: {session_id}")
            self._session_tools.setdefault(session_id, {})[tool.name] = (tool, handler)

    def visible_tools(self, session_id: str = "") -> list[Tool]:
        """Return the tools the session's role may see, sorted by name."""
        with self._lock:
            merged = {name: tool for name, (tool, _) in self._tools.items()}
            merged.update(
                {name: tool for name, (tool, _) in self._session_tools.get(session_id, {}).items()}
            )
        role = self.registry.role_of(session_id)
        return filter_tools(sorted(merged.values(), key=lambda tool: tool.name), role)

    def register_session(self, session_id: str) -> queue.Queue:
        """Register a session and return its notification queue."""
        with self._lock:
            existing = self._sessions.get(session_id)
            if existing is not None:
                log.info("[MCP-SERVER] session already registered: %s", session_id)
                return existing
            notifications: queue.Queue = queue.Queue(maxsize=NOTIFICATION_BUFFER)
            self._sessions[session_id] = notifications
        log.info("[MCP-SERVER] Successfully registered session: %s", session_id)
        return notifications

    def unregister_session(self, session_id: str) -> None:
        """Forget a session together with its session tools."""
        with self._lock:
            self._sessions.pop(session_id, None)
            self._session_tools.pop(session_id, None)
        log.info("[MCP-SERVER] Successfully unregistered session: %s", session_id)

    def send_notification(self, session_id: str, method: str, params: Any = None) -> None:
        """Queue a JSON-RPC notification for a registered session."""
        with self._lock:
            notifications = self._sessions.get(session_id)
        if notifications is None:
            raise LookupError(f"session not found: {session_id}")
        message = {"jsonrpc": JSONRPC_VERSION, "method": method, "params": params or {}}
        try:
            notifications.put_nowait(message)
        except queue.Full as exc:
            raise RuntimeError(
                "notification channel queue is full - "
                "client may not be processing notifications fast enough"
            ) from exc

    def _lookup(self, session_id: str, name: str) -> tuple[Tool, ToolHandler] | None:
        with self._lock:
            entry = self._session_tools.get(session_id, {}).get(name)
            return entry if entry is not None else self._tools.get(name)

    def handle_message(self, message: Any, session_id: str = "") -> dict[str, Any] | None:
        """Answer one JSON-RPC message; notifications yield ``None``."""
        if isinstance(message, (str, bytes, bytearray)):
            try:
                message = json.loads(message)
            except ValueError as exc:
                return _error(None, PARSE_ERROR, f"Parse error: {exc}")
        if not isinstance(message, dict) or message.get("jsonrpc") != JSONRPC_VERSION:
            request_id = message.get("id") if isinstance(message, dict) else None
            return _error(request_id, INVALID_REQUEST, "Invalid Request")
        if "id" not in message:
            log.info("[MCP-SERVER] notification %s from %s", message.get("method"), session_id)
            return None
        request_id = message["id"]
        method = message.get("method")
        if not isinstance(method, str):
            return _error(request_id, INVALID_REQUEST, "Invalid Request")
        params = message.get("params") or {}
        if not isinstance(params, dict):
            return _error(request_id, INVALID_PARAMS, "invalid params")

        if method == "initialize":
            return _response(request_id, self._initialize(params))
        if method == "ping":
            return _response(request_id, {})
        if method == "tools/list":
            tools = [tool.to_dict() for tool in self.visible_tools(session_id)]
            return _response(request_id, {"tools": tools})
        if method == "tools/call":
            return self._call_tool(request_id, params, session_id)
        return _error(request_id, METHOD_NOT_FOUND, f"Method {method} not found")

    @staticmethod
    def _initialize(params: dict[str, Any]) -> dict[str, Any]:
        requested = params.get("protocolVersion")
        version = requested if requested in SUPPORTED_PROTOCOL_VERSIONS else LATEST_PROTOCOL_VERSION
        return {
            "protocolVersion": version,
            "capabilities": {"tools": {"listChanged": True}},
            "serverInfo": {"name": SERVER_NAME, "version": SERVER_VERSION},
        }

    def _call_tool(self, request_id: Any, params: dict[str, Any], session_id: str) -> dict[str, Any]:
        name = params.get("name")
        arguments = params.get("arguments") or {}
        if not isinstance(name, str) or not isinstance(arguments, dict):
            return _error(request_id, INVALID_PARAMS, "invalid tool call parameters")
        entry = self._lookup(session_id, name)
        if entry is None:
            return _error(request_id, INVALID_PARAMS, f"tool '{name}' not found: tool not found")
        _, handler = entry
        try:
            result = handler(arguments, session_id)
        except Exception as exc:  # a failing tool must not bring the server down
            log.exception("[MCP-SERVER] tool %s failed", name)
            return _error(
                request_id, INTERNAL_ERROR, f"panic recovered in {name} tool handler: {exc}"
            )
        return _response(request_id, result.to_dict())

    def serve_stdio(self, stdin: TextIO | None = None, stdout: TextIO | None = None) -> None:
        """Serve newline-delimited JSON-RPC until ``stdin`` is exhausted."""
        stdin = stdin if stdin is not None else sys.stdin
        stdout = stdout if stdout is not None else sys.stdout
        notifications = self.register_session(STDIO_SESSION_ID)
        write_lock = threading.Lock()
        stop = threading.Event()

        def write(message: dict[str, Any]) -> None:
            with write_lock:
                stdout.write(json.dumps(message, ensure_ascii=False) + "\n")
                stdout.flush()

        def pump() -> None:
            while not stop.is_set():
                try:
                    item = notifications.get(timeout=0.1)
                except queue.Empty:
                    continue
                write(item)

        writer = threading.Thread(target=pump, name="stdio-notifications", daemon=True)
        writer.start()
        try:
            for line in stdin:
                line = line.strip()
                if not line:
                    continue
                response = self.handle_message(line, STDIO_SESSION_ID)
                if response is not None:
                    write(response)
        finally:
            stop.set()
            writer.join()
            while True:
                try:
                    write(notifications.get_nowait())
                except queue.Empty:
                    break
            self.unregister_session(STDIO_SESSION_ID)


def _string_arg(arguments: Mapping[str, Any], key: str) -> str:
    value = arguments.get(key)
    return value if isinstance(value, str) else ""


def _http_tool_handler(server: MCPServer, name: str, handler: HTTPHandler) -> ToolHandler:
    def call(arguments: dict, session_id: str) -> ToolResult:
        log.info(
            "[%s][%s][sessionid:%s]-%s-%s",
            datetime.now().strftime("%Y-%m-%d %H:%M:%S"),
            server.transport,
            session_id,
            name,
            json.dumps(arguments, ensure_ascii=False, default=str),
        )
        return handler(
            _string_arg(arguments, "method"),
            _string_arg(arguments, "url"),
            _string_arg(arguments, "body"),
        )

    return call


def build_server(
    handlers: Mapping[str, HTTPHandler],
    registry: SessionUserRegistry | None = None,
    transport: str = "",
) -> MCPServer:
    """Create a server exposing each ``(method, url, body)`` handler as a tool."""
    server = MCPServer(registry, transport)
    for name, handler in handlers.items():
        tool = Tool(name, TOOL_DESCRIPTIONS.get(name, ""), HTTP_TOOL_SCHEMA)
        server.add_tool(tool, _http_tool_handler(server, name, handler))
    return server