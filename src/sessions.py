"""
Session/transport multiplexer.

Two transport styles share one session registry:

- stream: Streamable HTTP on a single path. A request without an `mcp-session-id`
  header must carry an `initialize` message; the multiplexer then mints the id,
  builds a protocol server bound to the new session and registers it. Later requests
  carrying a registered id are routed to that session's transport.
- push: legacy HTTP+SSE. Opening the event stream creates and registers the session
  immediately; client messages arrive on a side-channel path keyed by `sessionId`.

Every session runs inside its own cancel scope whose deadline is the idle deadline.
Closing a session (client close, idle expiry, explicit close, shutdown sweep) removes
it from the registry and cancels that scope, so no timer outlives its session.
"""
from __future__ import annotations

import logging
import math
from contextlib import asynccontextmanager
from enum import Enum
from typing import AsyncIterator, Callable
from uuid import uuid4

import anyio
from anyio.abc import TaskGroup, TaskStatus
from mcp.server.fastmcp import FastMCP
from mcp.server.streamable_http import MCP_SESSION_ID_HEADER, StreamableHTTPServerTransport
from mcp.server.transport_security import TransportSecurityMiddleware, TransportSecuritySettings
from mcp.types import InitializeRequestParams, JSONRPCMessage, JSONRPCRequest
from pydantic import ValidationError
from starlette.requests import Request
from starlette.responses import JSONResponse, Response
from starlette.types import Message, Receive, Scope, Send

from protocol_server import run_protocol_server
from push_transport import SESSION_ID_PARAM, PushStreamTransport

DEFAULT_IDLE_TIMEOUT_S = 60 * 60
logger = logging.getLogger("graphql-mcp.sessions")


class TransportKind(str, Enum):
    STREAM = "stream"
    PUSH = "push"


class SessionState(str, Enum):
    UNINITIALIZED = "uninitialized"
    ACTIVE = "active"
    CLOSING = "closing"
    REMOVED = "removed"


class Session:
    """One agent connection: an id, its transport and the protocol server it owns."""

    kind: TransportKind

    def __init__(self, session_id: str, server: FastMCP, idle_timeout_s: float):
        self.id = session_id
        self.server = server
        self.idle_timeout_s = idle_timeout_s
        self.state = SessionState.UNINITIALIZED
        self.close_reason: str | None = None
        self.cancel_scope = anyio.CancelScope()
        self._in_flight = 0

    @property
    def idle_deadline(self) -> float:
        return self.cancel_scope.deadline

    def activate(self) -> None:
        self.state = SessionState.ACTIVE
        self.touch()

    def touch(self) -> None:
        self.cancel_scope.deadline = anyio.current_time() + self.idle_timeout_s

    async def handle(self, scope: Scope, receive: Receive, send: Send) -> None:
        # The idle countdown is suspended while a request is being served.
        self._in_flight += 1
        self.cancel_scope.deadline = math.inf
        try:
            await self.deliver(scope, receive, send)
        finally:
            self._in_flight -= 1
            if not self._in_flight and self.state is SessionState.ACTIVE:
                self.touch()

    async def deliver(self, scope: Scope, receive: Receive, send: Send) -> None:
        raise NotImplementedError

    async def close_transport(self) -> None:
        raise NotImplementedError

    @property
    def transport_closed(self) -> bool:
        raise NotImplementedError


class StreamSession(Session):
    kind = TransportKind.STREAM

    def __init__(self, session_id: str, server: FastMCP, idle_timeout_s: float, *, json_response: bool = False):
        super().__init__(session_id, server, idle_timeout_s)
        self.transport = StreamableHTTPServerTransport(
            mcp_session_id=session_id,
            is_json_response_enabled=json_response,
        )

    async def deliver(self, scope: Scope, receive: Receive, send: Send) -> None:
        await self.transport.handle_request(scope, receive, send)

    async def close_transport(self) -> None:
        await self.transport.terminate()

    @property
    def transport_closed(self) -> bool:
        return self.transport.is_terminated


class PushSession(Session):
    kind = TransportKind.PUSH

    def __init__(self, session_id: str, server: FastMCP, idle_timeout_s: float, *, message_path: str):
        super().__init__(session_id, server, idle_timeout_s)
        self.transport = PushStreamTransport(session_id, message_path)

    async def deliver(self, scope: Scope, receive: Receive, send: Send) -> None:
        await self.transport.handle_post_message(scope, receive, send)

    async def close_transport(self) -> None:
        await self.transport.close()

    @property
    def transport_closed(self) -> bool:
        return self.transport.is_closed


class SessionRegistry:
    """Live sessions by id. At most one session per id."""

    def __init__(self) -> None:
        self._sessions: dict[str, Session] = {}

    def add(self, session: Session) -> None:
        if session.id in self._sessions:
            raise KeyError(f"Session {session.id} is already registered")
        self._sessions[session.id] = session

    def get(self, session_id: str | None, kind: TransportKind | None = None) -> Session | None:
        if not session_id:
            return None
        session = self._sessions.get(session_id)
        if session is None or (kind is not None and session.kind is not kind):
            return None
        return session

    def remove(self, session: Session) -> bool:
        if self._sessions.get(session.id) is session:
            del self._sessions[session.id]
            return True
        return False

    def sessions(self, kind: TransportKind | None = None) -> list[Session]:
        return [s for s in self._sessions.values() if kind is None or s.kind is kind]

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)


def is_initialize_request(body: bytes) -> bool:
    try:
        message = JSONRPCMessage.model_validate_json(body)
    except ValidationError:
        return False
    root = message.root
    if not isinstance(root, JSONRPCRequest) or root.method != "initialize":
        return False
    try:
        InitializeRequestParams.model_validate(root.params or {})
    except ValidationError:
        return False
    return True


def _bad_request(message: str) -> Response:
    return JSONResponse(
        {"jsonrpc": "2.0", "error": {"code": -32000, "message": message}, "id": None},
        status_code=400,
    )


def _replay_body(body: bytes, receive: Receive) -> Receive:
    """A receive callable that hands back an already-read body before deferring to `receive`."""
    replayed = False

    async def replay() -> Message:
        nonlocal replayed
        if not replayed:
            replayed = True
            return {"type": "http.request", "body": body, "more_body": False}
        return await receive()

    return replay


class SessionMultiplexer:
    def __init__(
        self,
        server_factory: Callable[[], FastMCP],
        *,
        message_path: str = "/messages",
        idle_timeout_s: float = DEFAULT_IDLE_TIMEOUT_S,
        json_response: bool = False,
        security_settings: TransportSecuritySettings | None = None,
    ):
        if not (math.isfinite(idle_timeout_s) and idle_timeout_s > 0):
            raise ValueError("idle_timeout_s must be a positive, finite number of seconds")
        self._server_factory = server_factory
        self.message_path = message_path
        self.idle_timeout_s = idle_timeout_s
        self.json_response = json_response
        self.registry = SessionRegistry()
        self._task_group: TaskGroup | None = None
        self._security = TransportSecurityMiddleware(security_settings)

    @asynccontextmanager
    async def run(self) -> AsyncIterator[None]:
        """Own the task group stream sessions run in; sweep every session on exit."""
        async with anyio.create_task_group() as tg:
            self._task_group = tg
            logger.info("Session multiplexer started")
            try:
                yield
            finally:
                logger.info("Session multiplexer shutting down (%s sessions)", len(self.registry))
                with anyio.CancelScope(shield=True):
                    for session in self.registry.sessions():
                        await self.close_session(session.id, reason="shutdown")
                tg.cancel_scope.cancel()
                self._task_group = None

    async def close_session(self, session_id: str, *, reason: str = "closed") -> bool:
        session = self.registry.get(session_id)
        if session is None:
            return False
        session.close_reason = reason
        await self._discard(session)
        return True

    async def _discard(self, session: Session) -> None:
        # Unregister before any await so the id is unknown from here on.
        removed = self.registry.remove(session)
        if session.state is SessionState.REMOVED:
            return
        session.state = SessionState.CLOSING
        if session.close_reason is None:
            expired = session.cancel_scope.cancel_called
            session.close_reason = "idle timeout" if expired else "transport closed"
        reason = session.close_reason
        session.cancel_scope.cancel()
        with anyio.CancelScope(shield=True):
            try:
                await session.close_transport()
            except (anyio.ClosedResourceError, anyio.BrokenResourceError):
                logger.debug("Transport for session %s was already closed", session.id)
        session.state = SessionState.REMOVED
        if removed:
            logger.info("%s session %s removed (%s)", session.kind.value, session.id, reason)

    async def _refused(self, request: Request, scope: Scope, receive: Receive, send: Send) -> bool:
        """Apply the Host/Origin/Content-Type checks; answer and return True on refusal."""
        error = await self._security.validate_request(request, is_post=request.method == "POST")
        if error is None:
            return False
        await error(scope, receive, send)
        return True

    # -- stream style -------------------------------------------------------

    async def handle_stream_request(self, scope: Scope, receive: Receive, send: Send) -> None:
        if self._task_group is None:
            raise RuntimeError("Session multiplexer is not running. Use run() in the app lifespan.")

        request = Request(scope, receive)
        if await self._refused(request, scope, receive, send):
            return
        session_id = request.headers.get(MCP_SESSION_ID_HEADER)

        if session_id:
            session = self.registry.get(session_id, TransportKind.STREAM)
            if session is None:
                logger.warning("Unknown or expired stream session id: %s", session_id[:64])
                await _bad_request("Bad Request: No valid session ID provided")(scope, receive, send)
                return
            logger.debug("Reusing stream transport for session %s", session_id)
            await self._deliver(session, scope, receive, send)
            if session.transport_closed:
                await self.close_session(session.id, reason="client closed")
            return

        body = await request.body() if request.method == "POST" else b""
        if not is_initialize_request(body):
            logger.warning("Invalid stream handshake request (%s without session id)", request.method)
            await _bad_request("Bad Request: invalid MCP handshake")(scope, receive, send)
            return

        session = StreamSession(
            uuid4().hex,
            self._server_factory(),
            self.idle_timeout_s,
            json_response=self.json_response,
        )
        self.registry.add(session)
        logger.info("Creating new stream session %s", session.id)

        status: int | None = None

        async def send_with_status(message: Message) -> None:
            nonlocal status
            if message["type"] == "http.response.start":
                status = message["status"]
            await send(message)

        try:
            await self._task_group.start(self._serve_stream_session, session)
            await self._deliver(session, scope, _replay_body(body, receive), send_with_status)
        finally:
            if status is None or status >= 400:
                # The handshake was refused by the transport; nothing was established.
                session.close_reason = "handshake refused"
                with anyio.CancelScope(shield=True):
                    await self._discard(session)

    async def _serve_stream_session(
        self, session: StreamSession, *, task_status: TaskStatus[None] = anyio.TASK_STATUS_IGNORED
    ) -> None:
        with session.cancel_scope:
            async with session.transport.connect() as (read_stream, write_stream):
                session.activate()
                task_status.started()
                try:
                    await run_protocol_server(session.server, read_stream, write_stream)
                except Exception:
                    logger.exception("Stream session %s crashed", session.id)
                finally:
                    await self._discard(session)

    async def _deliver(self, session: Session, scope: Scope, receive: Receive, send: Send) -> None:
        try:
            await session.handle(scope, receive, send)
        except Exception:
            logger.exception("Transport failure on %s session %s", session.kind.value, session.id)
            session.close_reason = "transport failure"
            with anyio.CancelScope(shield=True):
                await self._discard(session)
            raise

    # -- push style ---------------------------------------------------------

    async def serve_push_stream(self, scope: Scope, receive: Receive, send: Send) -> None:
        if await self._refused(Request(scope, receive), scope, receive, send):
            return
        session = PushSession(
            uuid4().hex,
            self._server_factory(),
            self.idle_timeout_s,
            message_path=self.message_path,
        )
        self.registry.add(session)
        logger.info("Push stream session created: %s", session.id)
        try:
            with session.cancel_scope:
                async with session.transport.connect(scope, receive, send) as (read_stream, write_stream):
                    session.activate()
                    try:
                        await run_protocol_server(session.server, read_stream, write_stream)
                    except Exception:
                        logger.exception("Push session %s crashed", session.id)
                    finally:
                        await self._discard(session)
        finally:
            with anyio.CancelScope(shield=True):
                await self._discard(session)

    async def handle_push_message(self, scope: Scope, receive: Receive, send: Send) -> None:
        request = Request(scope, receive)
        if await self._refused(request, scope, receive, send):
            return
        session_id = request.query_params.get(SESSION_ID_PARAM)
        session = self.registry.get(session_id, TransportKind.PUSH)
        if session is None:
            logger.warning("Unknown or expired push session id: %s", (session_id or "")[:64])
            response = Response("Unknown or expired sessionId", status_code=400)
            await response(scope, receive, send)
            return
        await self._deliver(session, scope, receive, send)

    def stats(self) -> dict[str, int]:
        return {
            TransportKind.STREAM.value: len(self.registry.sessions(TransportKind.STREAM)),
            TransportKind.PUSH.value: len(self.registry.sessions(TransportKind.PUSH)),
        }
