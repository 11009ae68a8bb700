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
Tests for the GA4 HTTP endpoints
"""

from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient

from ga4ai.activity import ActivityLogger
from ga4ai.analytics.errors import (
    AllCandidatesFailed,
    AnalyticsError,
    ExtractionFailed,
    RefinementExhausted,
    RemoteValidationError,
    TransportUnavailable,
)
from ga4ai.analytics.orchestrator import QueryResponse
from ga4ai.api.connector import ToolError, ToolErrorKind
from ga4ai.api.endpoints import create_app, status_for


@pytest.fixture
def orchestrator():
    mock = MagicMock()
    mock.activity = ActivityLogger()
    mock.process_query = AsyncMock(
        return_value=QueryResponse(
            "**GA4 Analytics Report**",
            {"type": "report", "totals": {"sessions": 420}},
            trace_id="trace-1",
        )
    )
    return mock


@pytest.fixture
def client(orchestrator):
    return TestClient(create_app(orchestrator))


def rejected():
    return RemoteValidationError(
        "run_report",
        [ToolError("run_report", ToolErrorKind.VALIDATION, "Invalid metric: views")],
    )


class TestQuery:
    def test_answer(self, client, orchestrator):
        response = client.post(
            "/ga4/query",
            json={"prompt": "sessions last week", "property_id": "123456789"},
            headers={"X-Caller-Id": "alice"},
        )
        assert response.status_code == 200
        assert response.json() == {
            "status": "ok",
            "summary_text": "**GA4 Analytics Report**",
            "structured_data": {"type": "report", "totals": {"sessions": 420}},
            "trace_id": "trace-1",
        }
        orchestrator.process_query.assert_awaited_once_with(
            "sessions last week", "alice", default_target_id="123456789"
        )

    def test_anonymous_caller(self, client, orchestrator):
        client.post("/ga4/query", json={"prompt": "help"})
        orchestrator.process_query.assert_awaited_once_with(
            "help", "anonymous", default_target_id=None
        )

    def test_empty_prompt_is_rejected(self, client, orchestrator):
        response = client.post("/ga4/query", json={"prompt": ""})
        assert response.status_code == 422
        orchestrator.process_query.assert_not_awaited()

    @pytest.mark.parametrize(
        "error,status",
        [
            (ExtractionFailed("nothing recognized"), 422),
            (TransportUnavailable("no server"), 503),
            (AllCandidatesFailed("run_report", []), 502),
            (RefinementExhausted(rejected(), 3), 502),
            (AnalyticsError("unexpected"), 500),
        ],
    )
    def test_error_status(self, client, orchestrator, error, status):
        orchestrator.process_query.side_effect = error
        response = client.post("/ga4/query", json={"prompt": "sessions last week"})
        assert response.status_code == status
        assert response.json()["detail"] == {
            "error": type(error).__name__,
            "message": error.user_message,
        }


def test_status_for_subclasses():
    assert status_for(rejected()) == 502


class TestActivity:
    def test_recent_activity(self, client, orchestrator):
        orchestrator.activity.record("alice", "GA4_QUERY", {"prompt": "a"})
        orchestrator.activity.record("bob", "GA4_QUERY", {"prompt": "b"})
        orchestrator.activity.record("alice", "GA4_QUERY_PROCESSED", {"status": "ok"})

        body = client.get("/ga4/activity", params={"caller": "alice"}).json()
        assert [r["action"] for r in body["records"]] == [
            "GA4_QUERY_PROCESSED",
            "GA4_QUERY",
        ]
        assert body["stats"]["total_actions"] == 3
        assert body["stats"]["unique_callers"] == 2

        body = client.get("/ga4/activity", params={"limit": 1}).json()
        assert len(body["records"]) == 1
        assert body["records"][0]["caller"] == "alice"

    def test_limit_is_bounded(self, client):
        assert client.get("/ga4/activity", params={"limit": 0}).status_code == 422


def test_healthz(client):
    response = client.get("/healthz")
    assert response.status_code == 200
    assert response.text == "OK"
