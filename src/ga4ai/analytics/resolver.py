"""
Operation Resolver - Capability to Remote Operation Name.

Deployments of the analytics server expose the same operations under
different names (``run_report``, ``analytics-mcp_run_report``, ...). The
resolver turns a logical capability into a priority-ordered list of
candidate names and tries each until one succeeds.
"""

import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional

import structlog

from ga4ai.analytics.errors import AllCandidatesFailed, RemoteValidationError
from ga4ai.api.connector import ToolConnector, ToolError, ToolErrorKind

logger = structlog.get_logger(__name__)


class Capability(str, Enum):
    """Logical operations the pipeline needs from the analytics server."""

    RUN_REPORT = "run_report"
    LIST_ACCOUNTS = "list_accounts"
    CUSTOM_DIMENSIONS = "custom_dimensions"
    PROPERTY_DETAILS = "property_details"


def _prefixed(name: str) -> list[str]:
    return [name, f"mcp_analytics-mcp_{name}", f"analytics-mcp_{name}"]


@dataclass(frozen=True)
class Resolution:
    """A successful invocation and the operation name that served it."""

    payload: Any
    operation: str
    attempts: int


class OperationResolver:
    """
    Resolves capabilities against the live operation catalog.

    Catalog entries matching a capability's keyword patterns are ranked
    ahead of the static fallback names, tier by tier. A list built from a
    non-empty catalog is cached for the resolver's lifetime; a static-only
    list is not, so a catalog that shows up later is still used.
    """

    STATIC_CANDIDATES = {
        Capability.RUN_REPORT: _prefixed("run_report"),
        Capability.LIST_ACCOUNTS: _prefixed("get_account_summaries"),
        Capability.CUSTOM_DIMENSIONS: _prefixed("get_custom_dimensions_and_metrics"),
        Capability.PROPERTY_DETAILS: _prefixed("get_property_details"),
    }

    # each inner list is a priority tier; a name must match every pattern in it
    CATALOG_PATTERNS = {
        Capability.RUN_REPORT: [
            [r"run_report"],
            [r"report|run"],
        ],
        Capability.LIST_ACCOUNTS: [
            [r"account", r"summar"],
            [r"account", r"list"],
        ],
        Capability.CUSTOM_DIMENSIONS: [
            [r"custom", r"dimension|metric"],
        ],
        Capability.PROPERTY_DETAILS: [
            [r"property", r"detail"],
        ],
    }

    EXCLUDE_PATTERNS = {
        Capability.RUN_REPORT: r"realtime|real_time",
    }

    def __init__(self, connector: ToolConnector):
        self.connector = connector
        self._candidates: dict[Capability, list[str]] = {}

    async def candidates(self, capability: Capability) -> list[str]:
        """Build, or return the cached, candidate list for ``capability``."""
        if cached := self._candidates.get(capability):
            return cached

        static = self.STATIC_CANDIDATES[capability]
        catalog = await self.connector.list_operations()
        if not catalog:
            return list(static)

        exclude = self.EXCLUDE_PATTERNS.get(capability)
        ranked: list[str] = []
        for tier in self.CATALOG_PATTERNS[capability]:
            for name in catalog:
                lowered = name.lower()
                if exclude and re.search(exclude, lowered):
                    continue
                if all(re.search(p, lowered) for p in tier):
                    ranked.append(name)

        candidates = list(dict.fromkeys(ranked + static))
        self._candidates[capability] = candidates
        logger.info(
            "candidates_built",
            capability=capability.value,
            candidates=candidates,
            catalog_size=len(catalog),
        )
        return candidates

    async def resolve(
        self,
        capability: Capability,
        args: dict[str, Any],
        timeout: Optional[float] = None,
    ) -> Resolution:
        """
        Invoke the first candidate operation that succeeds.

        Args:
            capability: The logical operation wanted
            args: Arguments passed unchanged to every candidate
            timeout: Per-call timeout, the connector default if omitted

        Returns:
            Resolution with the payload and the operation name used

        Raises:
            RemoteValidationError: If every candidate failed and at least
                one of them rejected the parameter values
            AllCandidatesFailed: If every candidate failed otherwise
            TransportUnavailable: If no connection could be made
        """
        errors: list[ToolError] = []
        for name in await self.candidates(capability):
            outcome = await self.connector.invoke(name, args, timeout=timeout)
            if outcome.ok:
                logger.info(
                    "operation_resolved",
                    capability=capability.value,
                    operation=name,
                    attempts=len(errors) + 1,
                )
                return Resolution(outcome.payload, name, len(errors) + 1)

            logger.warning(
                "operation_candidate_failed",
                capability=capability.value,
                operation=name,
                kind=outcome.kind.value,
                error=outcome.message,
            )
            errors.append(outcome)

        # a parameter rejection outranks "not found" from the other spellings
        rejected = [e for e in errors if e.kind == ToolErrorKind.VALIDATION]
        if rejected:
            raise RemoteValidationError(capability.value, errors, last_error=rejected[-1])
        raise AllCandidatesFailed(capability.value, errors)
