"""
Tests for the refinement loop.
"""

from unittest.mock import AsyncMock, MagicMock

import pytest

from ga4ai.analytics.errors import (
    InterpretationFailed,
    RefinementExhausted,
    RemoteValidationError,
    TransportUnavailable,
)
from ga4ai.analytics.refinement import RefinementLoop
from ga4ai.analytics.resolver import Capability, Resolution
from ga4ai.api.connector import ToolError, ToolErrorKind

TEXT = "pageviews for 123456789 last week"


def rejected(message="Invalid metric: pageViews"):
    return RemoteValidationError(
        "run_report", [ToolError("run_report", ToolErrorKind.VALIDATION, message)]
    )


def mock_resolver(*outcomes):
    resolver = MagicMock()
    resolver.resolve = AsyncMock(side_effect=list(outcomes))
    return resolver


def mock_interpreter(reply=None, available=True):
    interpreter = MagicMock()
    interpreter.available = available
    interpreter.refine = AsyncMock(return_value=reply or {"metrics": ["sessions"]})
    return interpreter


@pytest.fixture
def spec(extractor):
    return extractor.build(extractor.parse(TEXT))


class TestRefinementLoop:
    @pytest.mark.asyncio
    async def test_first_attempt_succeeds(self, extractor, spec):
        resolver = mock_resolver(Resolution({"rows": []}, "run_report", 1))
        interpreter = mock_interpreter()
        loop = RefinementLoop(resolver, extractor, interpreter)

        outcome = await loop.execute(TEXT, spec)

        assert outcome.attempts == 1
        assert outcome.spec is spec
        assert outcome.operation == "run_report"
        resolver.resolve.assert_awaited_once_with(
            Capability.RUN_REPORT, spec.to_tool_args(), timeout=None
        )
        interpreter.refine.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_stops_after_max_attempts(self, extractor, spec):
        resolver = MagicMock()
        resolver.resolve = AsyncMock(side_effect=rejected())
        interpreter = mock_interpreter()
        loop = RefinementLoop(resolver, extractor, interpreter, max_attempts=3)

        with pytest.raises(RefinementExhausted) as exc_info:
            await loop.execute(TEXT, spec)

        assert resolver.resolve.await_count == 3
        assert interpreter.refine.await_count == 2
        assert exc_info.value.attempts == 3
        assert isinstance(exc_info.value.last_error, RemoteValidationError)
        assert "tried 3 times" in exc_info.value.user_message

    @pytest.mark.asyncio
    async def test_refined_spec_is_retried(self, extractor, spec):
        resolver = mock_resolver(rejected(), Resolution({"rows": []}, "run_report", 1))
        interpreter = mock_interpreter({"metrics": ["screenPageView", "activeUser"]})
        loop = RefinementLoop(resolver, extractor, interpreter)

        outcome = await loop.execute(TEXT, spec)

        assert outcome.attempts == 2
        assert outcome.spec.metrics == ("screenPageViews", "activeUsers")
        assert outcome.spec.target_id == "123456789"
        assert outcome.spec.date_ranges == spec.date_ranges
        interpreter.refine.assert_awaited_once_with(
            TEXT, spec.to_tool_args(), "Invalid metric: pageViews"
        )
        second_args = resolver.resolve.await_args_list[1].args[1]
        assert second_args["metrics"] == ["screenPageViews", "activeUsers"]

    @pytest.mark.asyncio
    async def test_refinement_disabled(self, extractor, spec):
        resolver = mock_resolver(rejected(), rejected())
        interpreter = mock_interpreter()
        loop = RefinementLoop(resolver, extractor, interpreter, refinement_enabled=False)

        with pytest.raises(RefinementExhausted) as exc_info:
            await loop.execute(TEXT, spec)

        assert exc_info.value.attempts == 1
        assert resolver.resolve.await_count == 1
        interpreter.refine.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_no_interpretation_service(self, extractor, spec):
        resolver = mock_resolver(rejected())
        loop = RefinementLoop(resolver, extractor, mock_interpreter(available=False))
        with pytest.raises(RefinementExhausted) as exc_info:
            await loop.execute(TEXT, spec)
        assert exc_info.value.attempts == 1

    @pytest.mark.asyncio
    async def test_failed_refinement_ends_the_loop(self, extractor, spec):
        resolver = mock_resolver(rejected(), rejected())
        interpreter = mock_interpreter()
        interpreter.refine.side_effect = InterpretationFailed("no JSON")
        loop = RefinementLoop(resolver, extractor, interpreter)

        with pytest.raises(RefinementExhausted) as exc_info:
            await loop.execute(TEXT, spec)

        assert exc_info.value.attempts == 1
        assert isinstance(exc_info.value.__cause__, InterpretationFailed)
        assert isinstance(exc_info.value.last_error, RemoteValidationError)

    @pytest.mark.asyncio
    async def test_transport_unavailable_propagates(self, extractor, spec):
        resolver = mock_resolver(TransportUnavailable("no server"))
        loop = RefinementLoop(resolver, extractor, mock_interpreter())
        with pytest.raises(TransportUnavailable):
            await loop.execute(TEXT, spec)

    def test_max_attempts_must_be_positive(self):
        with pytest.raises(ValueError):
            RefinementLoop(MagicMock(), max_attempts=0)
