"""
Natural-language query pipeline for GA4 reports.

This package contains the core components for the analytics pipeline:
- Spec: The validated QuerySpec and its filter, date and order types
- Extractor: Free text to QuerySpec, rules first, interpretation fallback
- Resolver: Capability to remote operation name, tried in priority order
- Refinement: Bounded retry that corrects the spec from the error text
- Composite: Comprehensive reports fanned out as parallel sub-queries
- Results: Raw payloads reduced to summaries, rows, totals and series
- Orchestrator: The single ``process_query`` entry point

Only the leaf modules are re-exported here; the resolver and everything
above it import the connector, which itself depends on ``errors``.
"""

from .errors import (
    AnalyticsError,
    ExtractionFailed,
    InterpretationFailed,
    TransportUnavailable,
    AllCandidatesFailed,
    RemoteValidationError,
    RefinementExhausted,
)
from .spec import QuerySpec, DateRange, FilterLeaf, FilterGroup, MatchKind, OrderRule
from .extractor import ParameterExtractor
from .results import ResultReducer, ReportArtifact

__all__ = [
    "AnalyticsError",
    "ExtractionFailed",
    "InterpretationFailed",
    "TransportUnavailable",
    "AllCandidatesFailed",
    "RemoteValidationError",
    "RefinementExhausted",
    "QuerySpec",
    "DateRange",
    "FilterLeaf",
    "FilterGroup",
    "MatchKind",
    "OrderRule",
    "ParameterExtractor",
    "ResultReducer",
    "ReportArtifact",
]
