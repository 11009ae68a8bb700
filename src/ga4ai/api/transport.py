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
import logging
from http import HTTPStatus
from json import JSONDecodeError, loads
from typing import Any, AnyStr, Dict, Optional

from aiohttp import ClientHandlerType, ClientRequest, ClientResponse, ClientSession

from ga4ai.config import settings
from ga4ai.log import logger


class Backoff:
    """Delays between retries of a rate-limited request.

    The n-th retry waits ``initial_delay * backoff_multiplier**n``, shortened
    to the server's ``Retry-After`` when that is sooner, and never longer
    than ``max_delay``.
    """

    def __init__(self, cfg: Optional[settings.HttpRetry] = None):
        self.cfg = cfg or settings.HttpRetry()

    @property
    def max_retries(self) -> int:
        return self.cfg.max_retries or 0

    def delay(self, retry: int, retry_after: Optional[str] = None) -> float:
        wait = self.cfg.initial_delay * self.cfg.backoff_multiplier**retry
        if retry_after is not None:
            try:
                wait = min(wait, float(retry_after))
            except ValueError:
                logger(f"{__name__}.retry").debug(
                    f"Ignoring Retry-After {retry_after!r}, not a number of seconds"
                )
        return min(wait, self.cfg.max_delay)

    def middleware(self):
        """An aiohttp client middleware that retries 429 responses"""

        async def retry_rate_limited(
            req: ClientRequest, handler: ClientHandlerType
        ) -> ClientResponse:
            retry = 0
            while True:
                response = await handler(req)
                if (
                    response.status != HTTPStatus.TOO_MANY_REQUESTS
                    or retry >= self.max_retries
                ):
                    return response
                wait = self.delay(retry, response.headers.get("Retry-After"))
                logger(f"{__name__}.retry").warning(
                    f"{req.method} {req.url.path} rate limited, "
                    f"retry {retry + 1}/{self.max_retries} in {wait:.2f}s"
                )
                response.release()
                await asyncio.sleep(wait)
                retry += 1

        return retry_rate_limited


class AsyncHttpClient:
    """JSON over HTTP with bearer auth; 429 responses are retried with backoff"""

    def __init__(
        self,
        uri: AnyStr,
        token: Optional[AnyStr] = None,
        retry: Optional[settings.HttpRetry] = None,
    ):
        self.uri = uri.rstrip("/")
        self.token = token
        self.backoff = Backoff(retry)
        self.headers = {"content-type": "application/json"}
        if token:
            self.headers["Authorization"] = f"Bearer {token}"

    def _redacted_headers(self) -> Dict[str, str]:
        return {
            k: ("Bearer <redacted>" if k == "Authorization" else v)
            for k, v in self.headers.items()
        }

    async def post(self, endpoint: AnyStr, body: Optional[Any] = None) -> Any:
        """POST ``body`` as JSON; the decoded response, or ``None`` if it is empty"""
        if logger().isEnabledFor(logging.DEBUG):
            logger().debug(
                f"POST {self.uri}{endpoint}, headers={self._redacted_headers()}"
            )
        async with ClientSession(middlewares=(self.backoff.middleware(),)) as session:
            async with session.post(
                f"{self.uri}{endpoint}", headers=self.headers, json=body
            ) as response:
                response.raise_for_status()
                text = await response.text()
                if not text:
                    return None
                try:
                    return loads(text)
                except JSONDecodeError:
                    logger().debug(f"Non JSON reply from {endpoint}: {text[:200]}")
                    return text


class ActivityHttpClient(AsyncHttpClient):
    """Posts activity records to the configured collector"""

    def __init__(self, cfg: Optional[settings.Activity] = None):
        cfg = cfg or settings.instance().activity
        if cfg is None or cfg.uri is None:
            raise RuntimeError("activity.uri is required for the HTTP sink")
        super().__init__(str(cfg.uri), cfg.token, cfg.http_retry)

    async def send(self, record: Dict[str, Any]):
        return await self.post("/activity", body=record)
