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

"""
Unit tests for the analytics tool connector
"""

import asyncio
from json import dumps

import pytest
from mcp.shared.exceptions import McpError
from mcp.types import INVALID_PARAMS, METHOD_NOT_FOUND, ErrorData

from ga4ai.analytics.errors import TransportUnavailable
from ga4ai.api.connector import ConnectionState, ToolConnector, ToolErrorKind
from ga4ai.config import settings

from mocks.mcp_mock import FakeSession, FakeSessionFactory, text_result


class TestConnectionLifecycle:
    """Test connect memoization and reset on failure"""

    @pytest.mark.asyncio
    async def test_concurrent_connects_share_one_attempt(self, fake_session):
        factory = FakeSessionFactory(fake_session, delay=0.05)
        connector = ToolConnector(session_factory=factory)
        try:
            assert connector.state == ConnectionState.UNCONNECTED
            sessions = await asyncio.gather(*(connector.connect() for _ in range(5)))
            assert all(s is fake_session for s in sessions)
            assert factory.opened == 1
            assert connector.state == ConnectionState.READY

            assert await connector.connect() is fake_session
            assert factory.opened == 1
        finally:
            await connector.close()

    @pytest.mark.asyncio
    async def test_failed_attempt_is_forgotten(self, fake_session):
        factory = FakeSessionFactory(fake_session, failures=1)
        connector = ToolConnector(session_factory=factory)
        try:
            with pytest.raises(TransportUnavailable):
                await connector.connect()
            assert connector.state == ConnectionState.FAILED

            assert await connector.connect() is fake_session
            assert factory.opened == 2
            assert connector.state == ConnectionState.READY
        finally:
            await connector.close()

    @pytest.mark.asyncio
    async def test_unexpected_connect_error_is_wrapped(self, fake_session):
        def factory():
            raise OSError("spawn failed")

        connector = ToolConnector(session_factory=factory)
        with pytest.raises(TransportUnavailable) as exc_info:
            await connector.connect()
        assert "spawn failed" in str(exc_info.value)
        assert connector.state == ConnectionState.FAILED
        await connector.close()

    @pytest.mark.asyncio
    async def test_close_exits_session(self, fake_session):
        factory = FakeSessionFactory(fake_session)
        connector = ToolConnector(session_factory=factory)
        await connector.connect()
        await connector.close()
        assert factory.closed == 1
        assert connector.state == ConnectionState.UNCONNECTED

    def test_timeouts_default_to_settings(self):
        settings.instance().analytics_server.call_timeout = 7.0
        connector = ToolConnector(session_factory=lambda: None)
        assert connector.call_timeout == 7.0
        assert ToolConnector(session_factory=lambda: None, call_timeout=1.0).call_timeout == 1.0


class TestListOperations:
    """Test best-effort catalog listing"""

    @pytest.mark.asyncio
    async def test_list_operations(self):
        session = FakeSession(tools=["run_report", "get_account_summaries", "run_report"])
        connector = ToolConnector(session_factory=FakeSessionFactory(session))
        try:
            assert await connector.list_operations() == [
                "run_report",
                "get_account_summaries",
            ]
        finally:
            await connector.close()

    @pytest.mark.asyncio
    async def test_list_operations_is_empty_on_failure(self, fake_session):
        connector = ToolConnector(
            session_factory=FakeSessionFactory(fake_session, failures=1)
        )
        try:
            assert await connector.list_operations() == []
        finally:
            await connector.close()


class TestInvoke:
    """Test invoke results and error classification"""

    async def _invoke(self, handler, name="run_report", **kwargs):
        session = FakeSession(handler=handler, **kwargs)
        connector = ToolConnector(session_factory=FakeSessionFactory(session))
        try:
            return await connector.invoke(name, {"property_id": "123456789"})
        finally:
            await connector.close()

    @pytest.mark.asyncio
    async def test_success_carries_content(self):
        payload = {"rows": [], "row_count": 0}
        result = await self._invoke(lambda name, args: payload)
        assert result.ok
        assert result.operation == "run_report"
        assert result.payload["content"][0]["text"] == dumps(payload)

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "text,kind",
        [
            ("Unknown tool: run_report", ToolErrorKind.NOT_FOUND),
            ("Tool run_report not found", ToolErrorKind.NOT_FOUND),
            ("Invalid metric: pageviews", ToolErrorKind.VALIDATION),
        ],
    )
    async def test_error_results_are_classified(self, text, kind):
        result = await self._invoke(lambda name, args: text_result(text, is_error=True))
        assert not result.ok
        assert result.kind == kind
        assert result.message == text

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "code,kind",
        [
            (METHOD_NOT_FOUND, ToolErrorKind.NOT_FOUND),
            (INVALID_PARAMS, ToolErrorKind.VALIDATION),
            (-32000, ToolErrorKind.TRANSPORT),
        ],
    )
    async def test_protocol_errors_are_classified(self, code, kind):
        error = McpError(ErrorData(code=code, message="rejected"))
        result = await self._invoke(lambda name, args: error)
        assert not result.ok
        assert result.kind == kind

    @pytest.mark.asyncio
    async def test_unexpected_exception_is_transport_error(self):
        result = await self._invoke(lambda name, args: ConnectionResetError("pipe closed"))
        assert result.kind == ToolErrorKind.TRANSPORT
        assert "pipe closed" in result.message

    @pytest.mark.asyncio
    async def test_timeout(self):
        session = FakeSession(delay=0.5)
        connector = ToolConnector(session_factory=FakeSessionFactory(session))
        try:
            result = await connector.invoke("run_report", {}, timeout=0.01)
        finally:
            await connector.close()
        assert result.kind == ToolErrorKind.TIMEOUT

    @pytest.mark.asyncio
    async def test_invoke_raises_when_unavailable(self, fake_session):
        connector = ToolConnector(
            session_factory=FakeSessionFactory(fake_session, failures=1)
        )
        with pytest.raises(TransportUnavailable):
            await connector.invoke("run_report", {})
        await connector.close()

    @pytest.mark.asyncio
    async def test_concurrent_invokes_share_the_session(self):
        session = FakeSession(delay=0.05)
        factory = FakeSessionFactory(session)
        connector = ToolConnector(session_factory=factory)
        try:
            results = await asyncio.gather(
                *(connector.invoke("run_report", {"n": i}) for i in range(5))
            )
        finally:
            await connector.close()
        assert all(r.ok for r in results)
        assert factory.opened == 1
        assert session.max_in_flight == 5
