"""
Refinement Loop - bounded retry with spec correction.

A failed report call is retried up to ``max_attempts`` times in total.
Between attempts the interpretation service is shown the original text,
the failed arguments and the error, and its corrected reply becomes a new
``QuerySpec``. Attempts are strictly sequential.
"""

from dataclasses import dataclass
from typing import Any, Optional

import structlog

from ga4ai.analytics.errors import (
    AllCandidatesFailed,
    AnalyticsError,
    RefinementExhausted,
)
from ga4ai.analytics.resolver import Capability, OperationResolver
from ga4ai.analytics.spec import QuerySpec

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class RefinedOutcome:
    """The successful call together with the spec that produced it."""

    payload: Any
    operation: str
    spec: QuerySpec
    attempts: int


class RefinementLoop:
    """Runs a report spec through the resolver, refining it on failure."""

    def __init__(
        self,
        resolver: OperationResolver,
        extractor=None,
        interpreter=None,
        max_attempts: int = 3,
        refinement_enabled: bool = True,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.resolver = resolver
        self.extractor = extractor
        self.interpreter = interpreter
        self.max_attempts = max_attempts
        self.refinement_enabled = refinement_enabled

    @property
    def can_refine(self) -> bool:
        return (
            self.refinement_enabled
            and self.extractor is not None
            and self.interpreter is not None
            and self.interpreter.available
        )

    async def execute(
        self, text: str, spec: QuerySpec, timeout: Optional[float] = None
    ) -> RefinedOutcome:
        """
        Run ``spec``, refining and retrying until it succeeds.

        Args:
            text: The original question, passed unchanged to every refinement
            spec: The first spec to try
            timeout: Per-call timeout handed to the resolver

        Returns:
            RefinedOutcome with the payload and the spec that succeeded

        Raises:
            RefinementExhausted: If every attempt failed, or refinement is
                off or itself failed; carries the last error and the count
            TransportUnavailable: If the analytics tool cannot be reached
        """
        attempts = 0
        while True:
            attempts += 1
            try:
                resolution = await self.resolver.resolve(
                    Capability.RUN_REPORT, spec.to_tool_args(), timeout=timeout
                )
                logger.info(
                    "report_succeeded",
                    operation=resolution.operation,
                    attempts=attempts,
                )
                return RefinedOutcome(
                    resolution.payload, resolution.operation, spec, attempts
                )
            except AllCandidatesFailed as e:
                last_error: AnalyticsError = e
                logger.warning("report_attempt_failed", attempt=attempts, error=str(e))

            if attempts >= self.max_attempts or not self.can_refine:
                raise RefinementExhausted(last_error, attempts)

            try:
                spec = await self._refine(text, spec, last_error)
            except AnalyticsError as e:
                logger.warning("refinement_failed", attempt=attempts, error=str(e))
                raise RefinementExhausted(last_error, attempts) from e

    async def _refine(
        self, text: str, spec: QuerySpec, error: AnalyticsError
    ) -> QuerySpec:
        reason = str(error)
        if isinstance(error, AllCandidatesFailed) and error.last_error:
            reason = error.last_error.message
        reply = await self.interpreter.refine(text, spec.to_tool_args(), reason)
        refined = self.extractor.merge(reply, text, spec, apply_defaults=False)
        logger.info(
            "spec_refined",
            metrics=list(refined.metrics),
            dimensions=list(refined.dimensions),
            target_id=refined.target_id,
        )
        return refined
