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
Tests for the caller activity log
"""

from unittest.mock import AsyncMock, MagicMock

import pytest

from ga4ai.activity import GA4_QUERY, GA4_QUERY_PROCESSED, ActivityLogger
from ga4ai.api.transport import ActivityHttpClient
from ga4ai.config import settings


def test_record_and_recent():
    activity = ActivityLogger()
    first = activity.record("alice", GA4_QUERY, {"prompt": "sessions"})
    activity.record("bob", GA4_QUERY)
    activity.record("alice", GA4_QUERY_PROCESSED, {"status": "ok"})

    assert first.caller == "alice"
    assert first.timestamp.tzinfo is not None
    assert [r.action for r in activity.recent("alice")] == [
        GA4_QUERY_PROCESSED,
        GA4_QUERY,
    ]
    assert [r.caller for r in activity.recent(limit=2)] == ["alice", "bob"]
    assert activity.recent(limit=0) == []
    assert activity.recent("carol") == []


def test_stats():
    activity = ActivityLogger()
    for caller, action in [
        ("alice", GA4_QUERY),
        ("alice", GA4_QUERY_PROCESSED),
        ("bob", GA4_QUERY),
    ]:
        activity.record(caller, action)

    assert activity.stats() == {
        "total_actions": 3,
        "unique_callers": 2,
        "actions_by_caller": {"alice": 2, "bob": 1},
        "actions_by_type": {GA4_QUERY: 2, GA4_QUERY_PROCESSED: 1},
    }


def test_oldest_records_are_dropped():
    activity = ActivityLogger(max_entries=2)
    for i in range(3):
        activity.record("alice", GA4_QUERY, {"n": i})
    assert [r.details["n"] for r in activity.recent()] == [2, 1]


def test_max_entries_from_settings():
    settings.instance().activity.max_entries = 1
    activity = ActivityLogger()
    activity.record("alice", GA4_QUERY)
    activity.record("bob", GA4_QUERY)
    assert activity.stats()["total_actions"] == 1


def test_invalid_record_is_dropped():
    activity = ActivityLogger()
    assert activity.record(None, GA4_QUERY) is None
    assert activity.stats()["total_actions"] == 0


def test_sink_from_settings():
    settings.instance().activity.uri = "http://collector.example.com"
    assert isinstance(ActivityLogger().sink, ActivityHttpClient)


def test_no_sink_without_running_loop():
    sink = MagicMock()
    sink.send = AsyncMock()
    activity = ActivityLogger(sink=sink)
    assert activity.record("alice", GA4_QUERY) is not None
    sink.send.assert_not_called()


@pytest.mark.asyncio
async def test_records_are_posted():
    sink = MagicMock()
    sink.send = AsyncMock()
    activity = ActivityLogger(sink=sink)

    activity.record("alice", GA4_QUERY, {"prompt": "sessions"})
    await activity.drain()

    sink.send.assert_awaited_once()
    body = sink.send.await_args.args[0]
    assert body["caller"] == "alice"
    assert body["action"] == GA4_QUERY
    assert body["details"] == {"prompt": "sessions"}
    assert isinstance(body["timestamp"], str)


@pytest.mark.asyncio
async def test_post_failure_is_only_logged():
    sink = MagicMock()
    sink.send = AsyncMock(side_effect=RuntimeError("collector down"))
    activity = ActivityLogger(sink=sink)

    entry = activity.record("alice", GA4_QUERY)
    await activity.drain()

    assert entry is not None
    assert activity.recent() == [entry]
    sink.send.assert_awaited_once()
