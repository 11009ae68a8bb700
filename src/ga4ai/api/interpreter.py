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
from json import dumps, loads, JSONDecodeError
from typing import Any, Dict, Optional

from openai import AsyncOpenAI

from ga4ai.log import logger
from ga4ai.config import settings
from ga4ai.analytics.errors import InterpretationFailed

_JSON_BLOCK = re.compile(r"\{[\s\S]*\}")

SYSTEM_INSTRUCTIONS = """\
You turn natural language questions about Google Analytics 4 into the
parameters of a run_report call. Reply with ONE JSON object and nothing else.

Fields (omit what the question does not imply):
  "property_id": string of 9+ digits. Known names: {aliases}.
  "date_ranges": [{{"start_date", "end_date", "name"}}]. Dates are
      YYYY-MM-DD or relative tokens such as "7daysAgo" and "yesterday".
      Relative ranges always end at "yesterday".
      Default: {{"start_date": "30daysAgo", "end_date": "yesterday",
      "name": "Last30Days"}}.
  "metrics": GA4 metric api names, e.g. activeUsers, sessions,
      screenPageViews, bounceRate, eventCount, totalRevenue, engagementRate,
      engagedSessions, averageSessionDuration, newUsers.
  "dimensions": GA4 dimension api names, e.g. date, country, city,
      deviceCategory, browser, operatingSystem, sessionSource,
      sessionMedium, sessionDefaultChannelGroup, pagePath, pageTitle,
      newVsReturning, eventName, customEvent:article_author.
  "dimension_filter": {{"filter": {{"field_name", "string_filter":
      {{"match_type", "value", "case_sensitive"}}}}}} where match_type is
      1 exact, 2 begins with, 3 ends with, 4 contains. Combine several
      with {{"and_group": {{"expressions": [...]}}}}.
  "limit": positive integer, at most 250000.
  "chartType": one of line, bar, pie, doughnut.
  "isComprehensiveReport": true when a full breakdown, complete analysis
      or comprehensive report is requested.
"""

REFINEMENT_TEMPLATE = """\
The previous report request failed with this error: {error}

Original question: "{text}"
Parameters that failed:
{params}

Correct the parameters so the request succeeds. Typical causes are an
invalid property id, unknown metric or dimension names, malformed dates or
filter syntax. Reply with the corrected JSON object only."""


def parse_json_object(content: Optional[str]) -> Dict[str, Any]:
    """Parse a reply that should be a JSON object.

    A reply wrapped in prose or markdown fences is accepted when it holds a
    single ``{...}`` block; anything else is an ``InterpretationFailed``.
    """
    if not content:
        raise InterpretationFailed("interpretation service returned no content")
    try:
        value = loads(content)
    except JSONDecodeError:
        if (m := _JSON_BLOCK.search(content)) is None:
            raise InterpretationFailed(
                f"interpretation service returned non-JSON: {content[:200]}"
            )
        try:
            value = loads(m.group(0))
        except JSONDecodeError as e:
            raise InterpretationFailed(
                f"interpretation service returned malformed JSON: {e}"
            ) from e
    if not isinstance(value, dict):
        raise InterpretationFailed(
            f"interpretation service returned {type(value).__name__}, not an object"
        )
    return value


class Interpreter:
    """Client for the natural-language interpretation service"""

    def __init__(
        self,
        client: Optional[AsyncOpenAI] = None,
        cfg: Optional[settings.OpenAi] = None,
    ):
        self.cfg = cfg or settings.instance().openai or settings.OpenAi()
        if client is None and self.cfg.api_key:
            client = AsyncOpenAI(api_key=self.cfg.api_key, organization=self.cfg.org)
        self.client = client

    @property
    def available(self) -> bool:
        return self.client is not None

    def system_instructions(self) -> str:
        aliases = settings.instance().properties.aliases or {}
        return SYSTEM_INSTRUCTIONS.format(
            aliases=", ".join(f'"{k}" -> {v}' for k, v in aliases.items()) or "none"
        )

    async def complete(
        self,
        system_instructions: str,
        user_text: str,
        temperature: Optional[float] = None,
    ) -> Dict[str, Any]:
        if self.client is None:
            raise InterpretationFailed("no interpretation service is configured")

        temperature = self.cfg.temperature if temperature is None else temperature
        try:
            completion = await asyncio.wait_for(
                self.client.chat.completions.create(
                    model=self.cfg.model,
                    messages=[
                        {"role": "system", "content": system_instructions},
                        {"role": "user", "content": user_text},
                    ],
                    temperature=temperature,
                    response_format={"type": "json_object"},
                ),
                self.cfg.timeout,
            )
        except asyncio.TimeoutError as e:
            raise InterpretationFailed(
                f"interpretation service timed out after {self.cfg.timeout}s"
            ) from e
        except Exception as e:
            logger("interpreter").error(f"Interpretation service call failed: {e}")
            raise InterpretationFailed(f"interpretation service failed: {e}") from e

        content = completion.choices[0].message.content if completion.choices else None
        logger("interpreter").debug(f"Interpretation reply: {content}")
        return parse_json_object(content)

    async def extract(self, text: str) -> Dict[str, Any]:
        return await self.complete(self.system_instructions(), text)

    async def refine(
        self, text: str, failed_args: Dict[str, Any], error: str
    ) -> Dict[str, Any]:
        prompt = REFINEMENT_TEMPLATE.format(
            error=error, text=text, params=dumps(failed_args, indent=2)
        )
        return await self.complete(
            self.system_instructions(),
            prompt,
            temperature=self.cfg.refinement_temperature,
        )
