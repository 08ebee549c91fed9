"""
Legacy HTTP+SSE ("push") transport for a single session.

The server-to-client direction is one long-lived SSE response; its first event
(`endpoint`) tells the client where to POST its messages, with the session id as the
`sessionId` query parameter. Client-to-server messages arrive as separate POSTs that
the session multiplexer routes here once it has resolved the id.
"""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator
from urllib.parse import quote

import anyio
from anyio.streams.memory import MemoryObjectReceiveStream, MemoryObjectSendStream
from mcp import types
from mcp.shared.message import SessionMessage
from pydantic import ValidationError
from sse_starlette import EventSourceResponse
from starlette.requests import Request
from starlette.responses import Response
from starlette.types import Receive, Scope, Send

SESSION_ID_PARAM = "sessionId"
logger = logging.getLogger("graphql-mcp.sessions")


class PushStreamTransport:
    def __init__(self, session_id: str, message_path: str):
        if not message_path.startswith("/"):
            message_path = "/" + message_path
        self.session_id = session_id
        self.message_path = message_path
        self._read_stream_writer: MemoryObjectSendStream[SessionMessage | Exception] | None = None
        self._write_stream_reader: MemoryObjectReceiveStream[SessionMessage] | None = None
        self._closed = False

    @property
    def is_closed(self) -> bool:
        return self._closed

    def endpoint_uri(self, root_path: str = "") -> str:
        path = root_path.rstrip("/") + self.message_path
        return f"{quote(path)}?{SESSION_ID_PARAM}={self.session_id}"

    @asynccontextmanager
    async def connect(
        self, scope: Scope, receive: Receive, send: Send
    ) -> AsyncIterator[
        tuple[MemoryObjectReceiveStream[SessionMessage | Exception], MemoryObjectSendStream[SessionMessage]]
    ]:
        """Open the SSE response and yield the (read, write) streams for the protocol server."""
        read_stream_writer, read_stream = anyio.create_memory_object_stream[SessionMessage | Exception](0)
        write_stream, write_stream_reader = anyio.create_memory_object_stream[SessionMessage](0)
        sse_stream_writer, sse_stream_reader = anyio.create_memory_object_stream[dict[str, Any]](0)
        self._read_stream_writer = read_stream_writer
        self._write_stream_reader = write_stream_reader
        endpoint = self.endpoint_uri(scope.get("root_path", ""))

        async def sse_writer() -> None:
            async with sse_stream_writer, write_stream_reader:
                await sse_stream_writer.send({"event": "endpoint", "data": endpoint})
                logger.debug("Sent endpoint event for session %s: %s", self.session_id, endpoint)
                async for session_message in write_stream_reader:
                    await sse_stream_writer.send(
                        {
                            "event": "message",
                            "data": session_message.message.model_dump_json(by_alias=True, exclude_none=True),
                        }
                    )

        async def stream_response() -> None:
            # The response returning means the client went away.
            await EventSourceResponse(content=sse_stream_reader, data_sender_callable=sse_writer)(
                scope, receive, send
            )
            logger.info("Push stream disconnected for session %s", self.session_id)
            await self.close()
            await sse_stream_reader.aclose()

        async with anyio.create_task_group() as tg:
            tg.start_soon(stream_response)
            yield read_stream, write_stream

    async def handle_post_message(self, scope: Scope, receive: Receive, send: Send) -> None:
        request = Request(scope, receive)
        writer = self._read_stream_writer
        if writer is None or self._closed:
            response = Response("Unknown or expired sessionId", status_code=400)
            await response(scope, receive, send)
            return

        body = await request.body()
        try:
            message = types.JSONRPCMessage.model_validate_json(body)
        except ValidationError as err:
            logger.warning("Could not parse message for session %s", self.session_id)
            response = Response("Could not parse message", status_code=400)
            await response(scope, receive, send)
            await writer.send(err)
            return

        response = Response("Accepted", status_code=202)
        await response(scope, receive, send)
        await writer.send(SessionMessage(message))

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._read_stream_writer is not None:
            await self._read_stream_writer.aclose()
        if self._write_stream_reader is not None:
            await self._write_stream_reader.aclose()
