"""
Report Orchestrator - Comprehensive Reports from Parallel Sub-Queries.

A comprehensive report is a fixed battery of independent report calls run
concurrently over the same property and date range. Every section settles
on its own: a failure or timeout becomes a ``SubQueryFailure`` marker and
the remaining sections carry on. A report with no successful section is
still returned so the caller can render a "no data" state.
"""

import asyncio
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional, Union

import structlog

from ga4ai.analytics.errors import TransportUnavailable
from ga4ai.analytics.resolver import Capability, OperationResolver
from ga4ai.analytics.results import ReportArtifact, ResultReducer
from ga4ai.analytics.spec import DateRange, OrderRule, QuerySpec

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class Section:
    """One sub-query of the battery."""

    name: str
    title: str
    metrics: tuple[str, ...]
    dimensions: tuple[str, ...] = ()
    order_bys: tuple[OrderRule, ...] = ()
    limit: Optional[int] = None

    def spec(self, target_id: str, date_range: DateRange) -> QuerySpec:
        return QuerySpec(
            target_id=target_id,
            date_ranges=(date_range,),
            metrics=self.metrics,
            dimensions=self.dimensions,
            order_bys=self.order_bys,
            limit=self.limit,
        )


_BY_SESSIONS = (OrderRule(field="sessions", desc=True, is_metric=True),)

BATTERY: tuple[Section, ...] = (
    Section(
        "overview",
        "Overview",
        (
            "sessions",
            "activeUsers",
            "newUsers",
            "screenPageViews",
            "averageSessionDuration",
        ),
        limit=1,
    ),
    Section(
        "engagement",
        "Engagement",
        ("engagementRate", "bounceRate", "engagedSessions"),
        limit=1,
    ),
    Section(
        "channels",
        "Traffic by Channel",
        ("sessions", "activeUsers"),
        ("sessionDefaultChannelGroup",),
        _BY_SESSIONS,
        10,
    ),
    Section(
        "countries",
        "Top Countries",
        ("sessions", "activeUsers", "engagementRate"),
        ("country",),
        _BY_SESSIONS,
        10,
    ),
    Section("browsers", "Browsers", ("sessions",), ("browser",), _BY_SESSIONS, 10),
    Section(
        "devices",
        "Devices",
        ("sessions", "averageSessionDuration"),
        ("deviceCategory",),
        _BY_SESSIONS,
        10,
    ),
    Section(
        "daily_trend",
        "Daily Trend",
        ("sessions",),
        ("date",),
        (OrderRule(field="date"),),
        100,
    ),
)


@dataclass(frozen=True)
class SubQuerySuccess:
    section: str
    artifact: ReportArtifact
    operation: str
    ok = True


@dataclass(frozen=True)
class SubQueryFailure:
    section: str
    reason: str
    ok = False


SubQueryResult = Union[SubQuerySuccess, SubQueryFailure]


class CompositeStatus(str, Enum):
    COMPLETE = "complete"
    PARTIAL = "partial"
    EMPTY = "empty"


@dataclass
class CompositeReport:
    """Ordered outcomes of every section, successful or not."""

    target_id: str
    date_range: DateRange
    results: list[SubQueryResult] = field(default_factory=list)
    summary_text: str = ""

    @property
    def sections(self) -> list[SubQuerySuccess]:
        return [r for r in self.results if r.ok]

    @property
    def failures(self) -> list[SubQueryFailure]:
        return [r for r in self.results if not r.ok]

    @property
    def missing_sections(self) -> list[str]:
        return [r.section for r in self.failures]

    @property
    def status(self) -> CompositeStatus:
        if not self.sections:
            return CompositeStatus.EMPTY
        if self.failures:
            return CompositeStatus.PARTIAL
        return CompositeStatus.COMPLETE

    def structured(self) -> dict[str, Any]:
        return {
            "composite": True,
            "status": self.status.value,
            "property_id": self.target_id,
            "date_range": self.date_range.to_wire(),
            "sections": {
                r.section: r.artifact.structured() for r in self.sections
            },
            "missing_sections": self.missing_sections,
            "failures": {r.section: r.reason for r in self.failures},
        }


class ReportOrchestrator:
    """Builds comprehensive reports by fanning out the section battery."""

    def __init__(
        self,
        resolver: OperationResolver,
        reducer: Optional[ResultReducer] = None,
        section_timeout: float = 90.0,
        battery: tuple[Section, ...] = BATTERY,
    ):
        """
        Initialize the Report Orchestrator.

        Args:
            resolver: Resolves and invokes the report operation per section
            reducer: Turns each section's payload into an artifact
            section_timeout: Upper bound for any one section, covering every
                candidate operation it tries
            battery: Sections to run, in display order
        """
        self.resolver = resolver
        self.reducer = reducer or ResultReducer()
        self.section_timeout = section_timeout
        self.battery = battery

    async def build_composite(
        self, target_id: str, date_range: DateRange
    ) -> CompositeReport:
        """
        Run every section concurrently and collect all outcomes.

        Never raises for a section failure. An unreachable analytics tool
        is not a section failure: TransportUnavailable cancels the rest and
        propagates. Cancelling the caller cancels the sections still in
        flight; settled ones are left untouched.
        """
        logger.info(
            "composite_start",
            target_id=target_id,
            date_range=date_range.label,
            sections=len(self.battery),
        )
        tasks = [
            asyncio.create_task(
                self._run_section(section, section.spec(target_id, date_range)),
                name=f"composite-{section.name}",
            )
            for section in self.battery
        ]
        try:
            done, pending = await asyncio.wait(
                tasks, return_when=asyncio.FIRST_EXCEPTION
            )
        except asyncio.CancelledError:
            for task in tasks:
                if not task.done():
                    task.cancel()
            raise

        if pending:
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
        errors = [e for e in (task.exception() for task in done) if e is not None]
        if errors:
            logger.error("composite_aborted", target_id=target_id, error=str(errors[0]))
            raise errors[0]

        report = CompositeReport(
            target_id=target_id,
            date_range=date_range,
            results=[task.result() for task in tasks],
        )
        report.summary_text = self.summarize(report)
        logger.info(
            "composite_done",
            status=report.status.value,
            succeeded=len(report.sections),
            missing=report.missing_sections,
        )
        return report

    async def _run_section(self, section: Section, spec: QuerySpec) -> SubQueryResult:
        try:
            async with asyncio.timeout(self.section_timeout):
                resolution = await self.resolver.resolve(
                    Capability.RUN_REPORT, spec.to_tool_args()
                )
        except TimeoutError:
            logger.warning("composite_section_timeout", section=section.name)
            return SubQueryFailure(
                section.name, f"timed out after {self.section_timeout}s"
            )
        except TransportUnavailable:
            raise
        except Exception as e:
            logger.warning("composite_section_failed", section=section.name, error=str(e))
            return SubQueryFailure(section.name, getattr(e, "user_message", str(e)))

        try:
            artifact = self.reducer.reduce(
                resolution.payload, spec, resolution.operation
            )
        except Exception as e:
            logger.error("composite_section_unreadable", section=section.name, error=str(e))
            return SubQueryFailure(section.name, f"unreadable result: {e}")
        return SubQuerySuccess(section.name, artifact, resolution.operation)

    def summarize(self, report: CompositeReport) -> str:
        titles = {s.name: s.title for s in self.battery}
        lines = [
            "**Comprehensive GA4 Report**",
            "",
            f"**Property:** {report.target_id}",
            f"**Date Range:** {report.date_range.describe()}",
        ]
        if report.status == CompositeStatus.EMPTY:
            lines += ["", "No data could be retrieved for any section of this report."]
        for result in report.sections:
            lines += [
                "",
                f"### {titles.get(result.section, result.section)}",
                "",
                self.reducer.render_body(result.artifact, with_metadata=False),
            ]
        if report.missing_sections:
            missing = ", ".join(titles.get(s, s) for s in report.missing_sections)
            lines += ["", f"_Sections unavailable: {missing}_"]
        return "\n".join(lines)
