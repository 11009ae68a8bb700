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
from collections import Counter, deque
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Set

from pydantic import BaseModel, Field

from ga4ai.log import logger
from ga4ai.config import settings
from ga4ai.api.transport import ActivityHttpClient

GA4_QUERY = "GA4_QUERY"
GA4_QUERY_PROCESSED = "GA4_QUERY_PROCESSED"


class ActivityRecord(BaseModel):
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    caller: str
    action: str
    details: Dict[str, Any] = Field(default_factory=dict)


class ActivityLogger:
    """Bounded, fire-and-forget audit trail of caller actions.

    ``record`` never raises: records are kept in memory and, when a
    collector is configured, posted in a background task whose failures are
    only logged.
    """

    def __init__(
        self,
        max_entries: Optional[int] = None,
        sink: Optional[ActivityHttpClient] = None,
    ):
        cfg = settings.instance().activity
        self._records: deque[ActivityRecord] = deque(
            maxlen=max_entries or cfg.max_entries
        )
        if sink is None and cfg.uri is not None:
            sink = ActivityHttpClient(cfg)
        self.sink = sink
        self._pending: Set[asyncio.Task] = set()

    def record(
        self, caller: str, action: str, details: Optional[Dict[str, Any]] = None
    ) -> Optional[ActivityRecord]:
        try:
            entry = ActivityRecord(caller=caller, action=action, details=details or {})
        except Exception as e:
            logger("activity").warning(f"Dropping activity record {action}: {e}")
            return None

        self._records.append(entry)
        logger("activity").info(f"{entry.caller} | {entry.action} | {entry.details}")
        if self.sink is not None:
            self._post(entry)
        return entry

    def _post(self, entry: ActivityRecord):
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger("activity").debug("No running loop, activity not posted")
            return
        task = loop.create_task(self._send(entry))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _send(self, entry: ActivityRecord):
        try:
            await self.sink.send(entry.model_dump(mode="json"))
        except Exception as e:
            logger("activity").warning(f"Unable to post activity {entry.action}: {e}")

    def recent(self, caller: Optional[str] = None, limit: int = 100) -> List[ActivityRecord]:
        """Most recent first, optionally for one caller only"""
        records = [r for r in self._records if caller is None or r.caller == caller]
        return list(reversed(records[-limit:])) if limit > 0 else []

    def stats(self) -> Dict[str, Any]:
        by_caller = Counter(r.caller for r in self._records)
        return {
            "total_actions": len(self._records),
            "unique_callers": len(by_caller),
            "actions_by_caller": dict(by_caller),
            "actions_by_type": dict(Counter(r.action for r in self._records)),
        }

    async def drain(self):
        """Wait for posts still in flight"""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
