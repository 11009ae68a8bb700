"""
Result Reducer - Raw Report Payloads to Display-Ready Artifacts.

This module turns whatever the analytics server returned into a
``ReportArtifact``: a markdown summary, normalized rows, totals and a
chart-ready series. Raw payloads come in several shapes (a rows/totals
object, JSON wrapped in text content, or plain text); a single ordered
decoder unwraps them before anything else looks at the data.
"""

import re
from dataclasses import asdict, dataclass, field
from json import JSONDecodeError, dumps, loads
from typing import Any, Optional, Union

import structlog

from ga4ai.analytics.spec import ChartHint, FilterExpr, FilterLeaf, QuerySpec

logger = structlog.get_logger(__name__)

Number = Union[int, float]

_INTEGER = re.compile(r"^-?\d+$")
_DECIMAL = re.compile(r"^-?(\d+\.\d*|\.\d+|\d+)([eE][-+]?\d+)?$")
_CAMEL_BOUNDARY = re.compile(r"(?<=[a-z0-9])(?=[A-Z])")

DURATION_METRICS = frozenset(
    {"averageSessionDuration", "userEngagementDuration", "sessionDuration"}
)


@dataclass(frozen=True)
class DecodedTable:
    """A payload that carries rows and/or totals."""

    data: dict[str, Any]


@dataclass(frozen=True)
class DecodedText:
    """A payload that could not be read as a table."""

    text: str


Decoded = Union[DecodedTable, DecodedText]


@dataclass
class NormalizedRow:
    dimension_values: dict[str, str]
    metric_values: dict[str, Any]


@dataclass
class ChartSeries:
    chart_type: str
    labels: list[str]
    series: dict[str, list[Any]]


@dataclass
class ReportArtifact:
    """Display-ready output of one report call."""

    summary_text: str
    normalized_rows: list[NormalizedRow] = field(default_factory=list)
    totals: Optional[dict[str, Any]] = None
    chart_series: Optional[ChartSeries] = None
    dimensions: list[str] = field(default_factory=list)
    metrics: list[str] = field(default_factory=list)
    row_count: int = 0
    metadata: dict[str, Any] = field(default_factory=dict)
    operation: Optional[str] = None
    raw_text: Optional[str] = None

    @property
    def headers(self) -> list[str]:
        return self.dimensions + self.metrics

    def structured(self) -> dict[str, Any]:
        return {
            "rows": [asdict(r) for r in self.normalized_rows],
            "totals": self.totals,
            "headers": self.headers,
            "chart": asdict(self.chart_series) if self.chart_series else None,
            "row_count": self.row_count,
            "metadata": self.metadata,
            "operation": self.operation,
        }


def _get(d: dict[str, Any], snake: str) -> Any:
    """Read ``snake`` or its camelCase spelling from ``d``."""
    if snake in d:
        return d[snake]
    head, *rest = snake.split("_")
    return d.get(head + "".join(p.title() for p in rest))


def unwrap(raw: Any) -> Any:
    """
    Strip transport wrappers and return the innermost JSON value or text.

    The shapes are tried in order: rows/totals object, ``result`` wrapper,
    ``text``/``raw`` string field, MCP ``content`` list, JSON string.
    """
    if raw is None:
        return ""

    if isinstance(raw, (bytes, bytearray)):
        raw = raw.decode("utf-8", errors="replace")

    if isinstance(raw, str):
        stripped = raw.strip()
        if stripped[:1] in ("{", "["):
            try:
                return unwrap(loads(stripped))
            except JSONDecodeError:
                pass
        return raw

    if isinstance(raw, dict):
        if "rows" in raw or "totals" in raw:
            return raw
        if "result" in raw:
            return unwrap(raw["result"])
        for key in ("text", "raw"):
            if isinstance(raw.get(key), str):
                return unwrap(raw[key])
        if isinstance(raw.get("content"), list):
            texts = [
                c.get("text", "")
                for c in raw["content"]
                if isinstance(c, dict) and c.get("type", "text") == "text"
            ]
            if len(texts) == 1:
                return unwrap(texts[0])
            return "\n".join(t for t in texts if t)

    return raw


def decode(raw: Any) -> Decoded:
    """Unwrap a raw payload into a table, or a text blob passed through as is."""
    value = unwrap(raw)
    if isinstance(value, dict) and ("rows" in value or "totals" in value):
        return DecodedTable(value)
    if isinstance(value, str):
        return DecodedText(value)
    return DecodedText(dumps(value, indent=2, default=str))


def coerce_number(value: Any) -> Any:
    """Numeric strings become int or float; anything else is returned as is."""
    if isinstance(value, bool) or not isinstance(value, str):
        return value
    text = value.strip()
    if _INTEGER.match(text):
        return int(text)
    if _DECIMAL.match(text):
        return float(text)
    return value


def display_label(name: str) -> str:
    """``activeUsers`` -> ``Active Users``, ``customEvent:article_author`` -> ``Article Author``"""
    name = name.rsplit(":", 1)[-1].replace("_", " ")
    spaced = _CAMEL_BOUNDARY.sub(" ", name)
    return " ".join(w[:1].upper() + w[1:] for w in spaced.split())


def format_duration(seconds: Number) -> str:
    """Seconds as ``m:ss``."""
    total = int(round(float(seconds)))
    return f"{total // 60}:{total % 60:02d}"


def describe_filter(expr: FilterExpr) -> str:
    if isinstance(expr, FilterLeaf):
        verb = expr.match_kind.name.lower().replace("_", " ")
        return f"{expr.field} {verb} '{expr.value}'"
    joiner = f" {expr.combinator.value} "
    return joiner.join(describe_filter(c) for c in expr.children)


def _values(items: Any) -> list[Any]:
    values = []
    for item in items or []:
        if isinstance(item, dict):
            values.append(item.get("value", ""))
        else:
            values.append(item)
    return values


def _header_names(data: dict[str, Any], key: str, fallback: list[str]) -> list[str]:
    headers = _get(data, key)
    if not headers:
        return list(fallback)
    names = [h.get("name") if isinstance(h, dict) else str(h) for h in headers]
    if not all(names):
        return list(fallback)
    return names


def _cell(value: Any) -> str:
    if isinstance(value, float):
        return f"{value:,.2f}" if abs(value) >= 1 else f"{value:.4f}"
    if isinstance(value, int):
        return f"{value:,}"
    return str(value)


class ResultReducer:
    """
    Reduces raw report payloads to ``ReportArtifact`` objects.

    The reducer never fails on an unexpected shape: a payload it cannot read
    as rows is passed through verbatim under a plain header.
    """

    def __init__(
        self,
        max_table_rows: int = 50,
        property_names: Optional[dict[str, str]] = None,
    ):
        """
        Initialize the Result Reducer.

        Args:
            max_table_rows: Rows shown in the markdown table; the rest are
                counted in a trailing note
            property_names: Property id to display name, for the header
        """
        self.max_table_rows = max_table_rows
        self.property_names = property_names or {}

    def reduce(
        self, raw: Any, spec: QuerySpec, operation: Optional[str] = None
    ) -> ReportArtifact:
        """
        Reduce one raw payload.

        Args:
            raw: The payload returned by the analytics server
            spec: The spec the payload answers
            operation: The operation name that produced it

        Returns:
            ReportArtifact for the presentation layer
        """
        decoded = decode(raw)
        if isinstance(decoded, DecodedText):
            logger.info("result_passthrough", operation=operation, length=len(decoded.text))
            return ReportArtifact(
                summary_text=self._header(spec)
                + ("\n\n" + decoded.text if decoded.text else "\n\nNo data returned."),
                operation=operation,
                raw_text=decoded.text,
            )

        data = decoded.data
        dimensions = _header_names(data, "dimension_headers", list(spec.dimensions))
        metrics = _header_names(data, "metric_headers", list(spec.metrics))
        rows = self._rows(data, dimensions, metrics)
        totals = self._totals(data, metrics, rows)
        metadata = dict(_get(data, "metadata") or {})
        row_count = coerce_number(_get(data, "row_count"))
        if not isinstance(row_count, int) or isinstance(row_count, bool):
            row_count = len(rows)

        artifact = ReportArtifact(
            summary_text="",
            normalized_rows=rows,
            totals=totals,
            chart_series=self._chart(spec, dimensions, metrics, rows),
            dimensions=dimensions,
            metrics=metrics,
            row_count=row_count,
            metadata=metadata,
            operation=operation,
        )
        artifact.summary_text = (
            self._header(spec) + "\n\n" + self.render_body(artifact)
        )
        logger.info(
            "result_reduced",
            operation=operation,
            rows=len(rows),
            server_totals=bool(_get(data, "totals")),
        )
        return artifact

    def _rows(
        self, data: dict[str, Any], dimensions: list[str], metrics: list[str]
    ) -> list[NormalizedRow]:
        rows = []
        for row in data.get("rows") or []:
            dims = [str(v) for v in _values(_get(row, "dimension_values"))]
            mets = [coerce_number(v) for v in _values(_get(row, "metric_values"))]
            rows.append(
                NormalizedRow(
                    dimension_values=dict(zip(dimensions, dims)),
                    metric_values=dict(zip(metrics, mets)),
                )
            )
        return rows

    @staticmethod
    def _totals(
        data: dict[str, Any], metrics: list[str], rows: list[NormalizedRow]
    ) -> Optional[dict[str, Any]]:
        server = _get(data, "totals")
        if server:
            first = server[0] if isinstance(server, list) else server
            values = [coerce_number(v) for v in _values(_get(first, "metric_values"))]
            if values:
                return dict(zip(metrics, values))

        if not rows:
            return None
        totals: dict[str, Any] = {}
        for metric in metrics:
            column = [r.metric_values.get(metric) for r in rows]
            numbers = [
                v
                for v in column
                if isinstance(v, (int, float)) and not isinstance(v, bool)
            ]
            if numbers:
                totals[metric] = sum(numbers)
        return totals or None

    @staticmethod
    def _chart(
        spec: QuerySpec,
        dimensions: list[str],
        metrics: list[str],
        rows: list[NormalizedRow],
    ) -> Optional[ChartSeries]:
        if not rows or not dimensions:
            return None
        if spec.chart_hint is not None:
            chart_type = spec.chart_hint.value
        elif "date" in dimensions:
            chart_type = ChartHint.LINE.value
        else:
            chart_type = ChartHint.BAR.value
        return ChartSeries(
            chart_type=chart_type,
            labels=[" / ".join(r.dimension_values.values()) for r in rows],
            series={m: [r.metric_values.get(m) for r in rows] for m in metrics},
        )

    def _header(self, spec: QuerySpec) -> str:
        name = self.property_names.get(spec.target_id)
        lines = [
            "**GA4 Analytics Report**",
            "",
            f"**Property:** {spec.target_id}" + (f" ({name})" if name else ""),
            f"**Date Range:** {spec.date_range.describe()}",
            f"**Metrics:** {', '.join(display_label(m) for m in spec.metrics)}",
        ]
        if spec.dimensions:
            lines.append(
                f"**Dimensions:** {', '.join(display_label(d) for d in spec.dimensions)}"
            )
        if spec.dimension_filter is not None:
            lines.append(f"**Filters:** {describe_filter(spec.dimension_filter)}")
        if spec.metric_filter is not None:
            lines.append(f"**Metric Filters:** {describe_filter(spec.metric_filter)}")
        if spec.limit is not None:
            lines.append(f"**Limit:** {spec.limit}")
        return "\n".join(lines)

    def render_body(self, artifact: ReportArtifact, with_metadata: bool = True) -> str:
        """Table, totals and metadata of an artifact, without the report header."""
        if artifact.raw_text is not None:
            return artifact.raw_text or "No data returned."

        parts = []
        rows = artifact.normalized_rows
        if rows:
            headers = [display_label(h) for h in artifact.headers]
            table = [
                "| " + " | ".join(headers) + " |",
                "| " + " | ".join("---" for _ in headers) + " |",
            ]
            for row in rows[: self.max_table_rows]:
                cells = list(row.dimension_values.values()) + [
                    _cell(row.metric_values.get(m, "")) for m in artifact.metrics
                ]
                table.append("| " + " | ".join(cells) + " |")
            parts.append("**Report Data:**\n\n" + "\n".join(table))
            if len(rows) > self.max_table_rows:
                parts.append(f"... and {len(rows) - self.max_table_rows} more rows")
        else:
            parts.append("No rows returned for this period.")

        if artifact.totals:
            lines = ["**Totals:**"]
            for metric, value in artifact.totals.items():
                shown = _cell(value)
                if metric in DURATION_METRICS and isinstance(value, (int, float)):
                    shown = f"{shown} ({format_duration(value)})"
                lines.append(f"- {display_label(metric)}: {shown}")
            parts.append("\n".join(lines))

        meta = artifact.metadata
        if with_metadata and (meta or rows):
            parts.append(
                "\n".join(
                    [
                        "**Metadata:**",
                        f"- Time Zone: {_get(meta, 'time_zone') or 'N/A'}",
                        f"- Currency: {_get(meta, 'currency_code') or 'N/A'}",
                        f"- Total Rows: {artifact.row_count}",
                    ]
                )
            )
        return "\n\n".join(parts)
