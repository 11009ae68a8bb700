#
#  Copyright (C) 2017-2025 Dremio Corporation
#
#  Licensed under the Apache License, Version 2.0 (the "License");
#  you may not use this file except in compliance with the License.
#  You may obtain a copy of the License at
#
#      http://www.apache.org/licenses/LICENSE-2.0
#
#  Unless required by applicable law or agreed to in writing, software
#  distributed under the License is distributed on an "AS IS" BASIS,
#  WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
#  See the License for the specific language governing permissions and
#  limitations under the License.
#
import asyncio
import re
from contextlib import asynccontextmanager
from dataclasses import dataclass
from enum import StrEnum, auto
from pathlib import Path
from shutil import which
from typing import (
    Any,
    AsyncContextManager,
    AsyncIterator,
    Callable,
    Dict,
    List,
    Optional,
    TypeAlias,
    Union,
)

from mcp import ClientSession, StdioServerParameters
from mcp.client.stdio import stdio_client
from mcp.shared.exceptions import McpError
from mcp.types import INVALID_PARAMS, METHOD_NOT_FOUND

from ga4ai.log import logger
from ga4ai.config import settings
from ga4ai.analytics.errors import TransportUnavailable

_NOT_FOUND = re.compile(r"unknown tool|tool\s+(\S+\s+)?not found", re.IGNORECASE)


class ConnectionState(StrEnum):
    UNCONNECTED = auto()
    CONNECTING = auto()
    READY = auto()
    FAILED = auto()


class ToolErrorKind(StrEnum):
    TRANSPORT = auto()
    NOT_FOUND = auto()
    VALIDATION = auto()
    TIMEOUT = auto()


@dataclass(frozen=True)
class ToolResult:
    operation: str
    payload: Any
    ok = True


@dataclass(frozen=True)
class ToolError:
    operation: str
    kind: ToolErrorKind
    message: str
    ok = False

    def __str__(self) -> str:
        return f"{self.operation}: {self.kind} - {self.message}"


InvokeResult: TypeAlias = Union[ToolResult, ToolError]
SessionFactory: TypeAlias = Callable[[], AsyncContextManager[ClientSession]]


@asynccontextmanager
async def stdio_session(
    server: Optional[settings.AnalyticsServer] = None,
) -> AsyncIterator[ClientSession]:
    """Spawn the analytics MCP server and yield an initialized session"""
    if server is None:
        server = settings.instance().analytics_server

    if server.credentials_path and not Path(server.credentials_path).is_file():
        raise TransportUnavailable(
            f"credentials file {server.credentials_path} does not exist"
        )
    if (command := which(server.command)) is None:
        raise TransportUnavailable(f"command {server.command} not found on PATH")

    params = StdioServerParameters(
        command=command, args=list(server.args or []), env=server.server_env
    )
    logger("connector").info(f"Starting analytics server: {command} {params.args}")
    async with stdio_client(params) as (read, write):
        async with ClientSession(read, write) as session:
            await session.initialize()
            yield session


def _content_item(item: Any) -> Dict[str, Any]:
    if hasattr(item, "model_dump"):
        return item.model_dump(exclude_none=True)
    return dict(item)


def _error_text(result: Any) -> str:
    texts = [
        getattr(c, "text", "")
        for c in (getattr(result, "content", None) or [])
        if getattr(c, "type", None) == "text"
    ]
    return " ".join(t for t in texts if t) or "operation reported an error"


def _payload(result: Any) -> Any:
    if (structured := getattr(result, "structuredContent", None)) is not None:
        return structured
    return {"content": [_content_item(c) for c in (result.content or [])]}


class ToolConnector:
    """Owns the single connection to the analytics tool.

    The connection is established on first use. Concurrent first callers
    share the same in-flight attempt, and a failed attempt is forgotten so
    the next caller starts over. The MCP session multiplexes requests by id,
    so ``invoke`` may be called concurrently without a queue.
    """

    def __init__(
        self,
        session_factory: Optional[SessionFactory] = None,
        connect_timeout: Optional[float] = None,
        call_timeout: Optional[float] = None,
    ):
        server = settings.instance().analytics_server
        self._session_factory = session_factory or (lambda: stdio_session(server))
        self.connect_timeout = (
            connect_timeout if connect_timeout is not None else server.connect_timeout
        )
        self.call_timeout = (
            call_timeout if call_timeout is not None else server.call_timeout
        )
        self.state = ConnectionState.UNCONNECTED
        self._session: Optional[ClientSession] = None
        self._connecting: Optional[asyncio.Future] = None
        self._runner: Optional[asyncio.Task] = None
        self._shutdown: Optional[asyncio.Event] = None

    async def _run(self, ready: asyncio.Future, shutdown: asyncio.Event):
        # the session contexts are entered and exited in this one task
        try:
            async with asyncio.timeout(self.connect_timeout) as deadline:
                async with self._session_factory() as session:
                    deadline.reschedule(None)
                    self._session = session
                    self.state = ConnectionState.READY
                    ready.set_result(session)
                    logger("connector").info("Analytics tool connection ready")
                    await shutdown.wait()
        except asyncio.CancelledError:
            if not ready.done():
                ready.set_exception(TransportUnavailable("connection attempt cancelled"))
            self._forget(ready)
            raise
        except Exception as e:
            if not ready.done():
                logger("connector").error(f"Unable to connect to analytics tool: {e}")
                ready.set_exception(
                    e
                    if isinstance(e, TransportUnavailable)
                    else TransportUnavailable(f"unable to connect: {e!r}")
                )
            else:
                logger("connector").error(f"Analytics tool connection lost: {e}")
            self._forget(ready)
            return
        self._forget(ready, failed=False)

    def _forget(self, attempt: asyncio.Future, failed: bool = True):
        if self._connecting is attempt:
            self._connecting = None
            self._session = None
            self._runner = None
            self.state = (
                ConnectionState.FAILED if failed else ConnectionState.UNCONNECTED
            )

    async def connect(self) -> ClientSession:
        if self._connecting is None:
            loop = asyncio.get_running_loop()
            self._connecting = loop.create_future()
            # retrieved here so an attempt nobody awaits does not warn
            self._connecting.add_done_callback(
                lambda f: f.cancelled() or f.exception()
            )
            self._shutdown = asyncio.Event()
            self.state = ConnectionState.CONNECTING
            self._runner = loop.create_task(
                self._run(self._connecting, self._shutdown)
            )
        return await asyncio.shield(self._connecting)

    async def close(self):
        runner, self._runner = self._runner, None
        if self._shutdown is not None:
            self._shutdown.set()
        if runner is not None:
            try:
                await runner
            except asyncio.CancelledError:
                pass
        self._connecting = None
        self._session = None
        self.state = ConnectionState.UNCONNECTED

    async def list_operations(self) -> List[str]:
        try:
            session = await self.connect()
            result = await asyncio.wait_for(session.list_tools(), self.call_timeout)
            return list(dict.fromkeys(t.name for t in result.tools))
        except Exception as e:
            logger("connector").warning(f"Unable to list operations: {e}")
            return []

    async def invoke(
        self,
        name: str,
        args: Dict[str, Any],
        timeout: Optional[float] = None,
    ) -> InvokeResult:
        """Call one operation; failures come back as ``ToolError``.

        Raises ``TransportUnavailable`` only when no connection can be made.
        """
        session = await self.connect()
        timeout = timeout if timeout is not None else self.call_timeout
        try:
            result = await asyncio.wait_for(session.call_tool(name, args), timeout)
        except asyncio.TimeoutError:
            logger("connector").warning(f"{name} timed out after {timeout}s")
            return ToolError(name, ToolErrorKind.TIMEOUT, f"timed out after {timeout}s")
        except McpError as e:
            code, message = e.error.code, e.error.message
            if code == METHOD_NOT_FOUND or _NOT_FOUND.search(message or ""):
                kind = ToolErrorKind.NOT_FOUND
            elif code == INVALID_PARAMS:
                kind = ToolErrorKind.VALIDATION
            else:
                kind = ToolErrorKind.TRANSPORT
            return ToolError(name, kind, message or str(e))
        except Exception as e:
            logger("connector").error(f"{name} failed in transport: {e!r}")
            return ToolError(name, ToolErrorKind.TRANSPORT, str(e) or repr(e))

        if result.isError:
            text = _error_text(result)
            kind = (
                ToolErrorKind.NOT_FOUND
                if _NOT_FOUND.search(text)
                else ToolErrorKind.VALIDATION
            )
            return ToolError(name, kind, text)
        return ToolResult(name, _payload(result))
