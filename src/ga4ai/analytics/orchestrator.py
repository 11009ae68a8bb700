"""
Analytics Orchestrator - Main Pipeline Coordinator.

This module is the single entry point for a question: it routes the text
to the right intent, runs the report pipeline (extraction, resolution and
refinement, or the comprehensive fan-out), reduces the result and records
the caller's activity.
"""

import re
import uuid
from dataclasses import dataclass, field
from typing import Any, Optional

import structlog

from ga4ai.activity import GA4_QUERY, GA4_QUERY_PROCESSED, ActivityLogger
from ga4ai.analytics.admin import (
    CUSTOM_DEFINITIONS_HELP,
    HELP_TEXT,
    format_account_summaries,
    format_custom_definitions,
    format_known_properties,
    format_property_details,
)
from ga4ai.analytics.composite import ReportOrchestrator
from ga4ai.analytics.errors import AllCandidatesFailed, TransportUnavailable
from ga4ai.analytics.extractor import ParameterExtractor
from ga4ai.analytics.refinement import RefinementLoop
from ga4ai.analytics.resolver import Capability, OperationResolver
from ga4ai.analytics.results import ResultReducer
from ga4ai.api.connector import ToolConnector
from ga4ai.api.interpreter import Interpreter
from ga4ai.config import settings

logger = structlog.get_logger(__name__)


@dataclass
class QueryResponse:
    """What the caller gets back for one question."""

    summary_text: str
    structured_data: dict[str, Any] = field(default_factory=dict)
    trace_id: str = ""
    kind: str = "report"
    status: str = "ok"
    operation: Optional[str] = None
    attempts: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "summary_text": self.summary_text,
            "structured_data": self.structured_data,
            "trace_id": self.trace_id,
        }


class AnalyticsOrchestrator:
    """
    Main orchestrator for the analytics pipeline.

    Flow:
    1. Intent routing: help, property listing, property details, custom
       definitions, or a report
    2. Extractor: text to QuerySpec
    3. Composite specs go to the ReportOrchestrator; others to the
       RefinementLoop, which resolves the report operation
    4. Reducer: raw payload to summary and structured data
    """

    LIST_PROPERTIES = re.compile(
        r"\blist\b.*\b(propert|account)|\bshow\b.*\b(all|my)\s+(propert|account)",
        re.IGNORECASE,
    )
    PROPERTY_DETAILS = re.compile(
        r"\bproperty\b.*\b(details?|info)\b|\b(details?|info)\b.*\bproperty\b",
        re.IGNORECASE,
    )
    CUSTOM_DEFINITIONS = re.compile(
        r"\bcustom\b.*\b(dimension|metric)s?\b", re.IGNORECASE
    )
    HELP = re.compile(r"^\s*(help|what can you do)\b", re.IGNORECASE)
    PROPERTY_ID = re.compile(r"\b(\d{9,})\b")

    def __init__(
        self,
        connector: Optional[ToolConnector] = None,
        interpreter: Optional[Interpreter] = None,
        extractor: Optional[ParameterExtractor] = None,
        activity: Optional[ActivityLogger] = None,
        reducer: Optional[ResultReducer] = None,
    ):
        """
        Initialize the Analytics Orchestrator.

        Args:
            connector: Connection to the analytics tool, one per process
            interpreter: Interpretation service client
            extractor: Text to QuerySpec; built around ``interpreter`` if omitted
            activity: Activity log; built from settings if omitted
            reducer: Payload to artifact
        """
        cfg = settings.instance()
        self.connector = connector or ToolConnector()
        self.interpreter = interpreter or Interpreter()
        self.extractor = extractor or ParameterExtractor(interpreter=self.interpreter)
        self.activity = activity or ActivityLogger()

        aliases = cfg.properties.aliases or {}
        self.property_names = {v: k.title() for k, v in aliases.items()}
        self.reducer = reducer or ResultReducer(property_names=self.property_names)

        self.resolver = OperationResolver(self.connector)
        self.refinement = RefinementLoop(
            self.resolver,
            extractor=self.extractor,
            interpreter=self.interpreter,
            max_attempts=cfg.refinement.max_attempts,
            refinement_enabled=cfg.refinement.enabled,
        )
        self.composite = ReportOrchestrator(
            self.resolver,
            reducer=self.reducer,
            section_timeout=cfg.composite.section_timeout,
        )

    async def process_query(
        self,
        text: str,
        caller_id: str,
        default_target_id: Optional[str] = None,
    ) -> QueryResponse:
        """
        Answer one question.

        Args:
            text: The question as typed
            caller_id: Who asked, for the activity log
            default_target_id: The caller's preferred property, if any

        Returns:
            QueryResponse with the summary and structured data

        Raises:
            ExtractionFailed: If the text cannot be turned into a report
            TransportUnavailable: If the analytics tool cannot be reached
            RefinementExhausted: If the report kept failing
        """
        trace_id = str(uuid.uuid4())
        logger.info(
            "analytics_query_start",
            text=text,
            caller_id=caller_id,
            trace_id=trace_id,
        )
        self._notify(
            caller_id,
            GA4_QUERY,
            {"prompt": text, "property": default_target_id, "trace_id": trace_id},
        )

        try:
            response = await self._route(text, default_target_id)
        except Exception as e:
            logger.error(
                "analytics_query_failed",
                error=str(e),
                text=text,
                trace_id=trace_id,
            )
            self._notify(
                caller_id,
                GA4_QUERY_PROCESSED,
                {"trace_id": trace_id, "status": "error", "error": type(e).__name__},
            )
            raise

        response.trace_id = trace_id
        self._notify(
            caller_id,
            GA4_QUERY_PROCESSED,
            {
                "trace_id": trace_id,
                "kind": response.kind,
                "operation": response.operation,
                "status": response.status,
                "attempts": response.attempts,
            },
        )
        logger.info(
            "analytics_query_complete",
            kind=response.kind,
            status=response.status,
            trace_id=trace_id,
        )
        return response

    def _notify(self, caller_id: str, action: str, details: dict[str, Any]):
        try:
            self.activity.record(caller_id, action, dict(details))
        except Exception as e:
            logger.warning("activity_record_failed", action=action, error=str(e))

    async def _route(self, text: str, default_target_id: Optional[str]) -> QueryResponse:
        if self.HELP.search(text):
            return QueryResponse(HELP_TEXT, {"type": "help"}, kind="help")
        if self.LIST_PROPERTIES.search(text):
            return await self._list_properties()
        if self.CUSTOM_DEFINITIONS.search(text):
            return await self._custom_definitions(text)
        if self.PROPERTY_DETAILS.search(text):
            return await self._property_details(text, default_target_id)
        return await self._report(text, default_target_id)

    async def _report(self, text: str, default_target_id: Optional[str]) -> QueryResponse:
        spec = await self.extractor.extract(text, default_target_id)

        if spec.is_composite:
            report = await self.composite.build_composite(spec.target_id, spec.date_range)
            return QueryResponse(
                report.summary_text,
                report.structured(),
                kind="composite",
                status=report.status.value,
                attempts=1,
            )

        outcome = await self.refinement.execute(text, spec)
        artifact = self.reducer.reduce(outcome.payload, outcome.spec, outcome.operation)
        structured = artifact.structured()
        structured.update(
            type="report",
            query=outcome.spec.to_tool_args(),
            attempts=outcome.attempts,
        )
        return QueryResponse(
            artifact.summary_text,
            structured,
            kind="report",
            operation=outcome.operation,
            attempts=outcome.attempts,
        )

    async def _list_properties(self) -> QueryResponse:
        try:
            resolution = await self.resolver.resolve(Capability.LIST_ACCOUNTS, {})
        except (AllCandidatesFailed, TransportUnavailable) as e:
            logger.warning("list_properties_fallback", error=str(e))
            resolution = None

        summary = (
            format_account_summaries(resolution.payload) if resolution else None
        )
        if summary is None:
            aliases = settings.instance().properties.aliases or {}
            return QueryResponse(
                format_known_properties(aliases),
                {"type": "list_properties", "source": "configured", "properties": aliases},
                kind="list_properties",
            )
        return QueryResponse(
            summary,
            {"type": "list_properties", "source": "live", "data": resolution.payload},
            kind="list_properties",
            operation=resolution.operation,
            attempts=resolution.attempts,
        )

    async def _custom_definitions(self, text: str) -> QueryResponse:
        if (m := self.PROPERTY_ID.search(text)) is None:
            return QueryResponse(
                CUSTOM_DEFINITIONS_HELP, {"type": "help"}, kind="custom_definitions"
            )
        property_id = m.group(1)
        resolution = await self.resolver.resolve(
            Capability.CUSTOM_DIMENSIONS, {"property_id": property_id}
        )
        return QueryResponse(
            format_custom_definitions(resolution.payload, property_id),
            {
                "type": "custom_definitions",
                "property_id": property_id,
                "data": resolution.payload,
            },
            kind="custom_definitions",
            operation=resolution.operation,
            attempts=resolution.attempts,
        )

    async def _property_details(
        self, text: str, default_target_id: Optional[str]
    ) -> QueryResponse:
        parsed = self.extractor.parse(text)
        property_id = (
            parsed.target_id or default_target_id or self.extractor.fallback_target_id
        )
        resolution = await self.resolver.resolve(
            Capability.PROPERTY_DETAILS, {"property_id": property_id}
        )
        return QueryResponse(
            format_property_details(resolution.payload, property_id),
            {
                "type": "property_details",
                "property_id": property_id,
                "data": resolution.payload,
            },
            kind="property_details",
            operation=resolution.operation,
            attempts=resolution.attempts,
        )

    async def close(self):
        await self.activity.drain()
        await self.connector.close()
