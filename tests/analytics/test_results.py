"""
Tests for the result reducer.
"""

from json import dumps

import pytest

from ga4ai.analytics.results import (
    DecodedTable,
    DecodedText,
    ResultReducer,
    coerce_number,
    decode,
    display_label,
    format_duration,
)
from ga4ai.analytics.spec import ChartHint, FilterLeaf, MatchKind, QuerySpec

from mocks.mcp_mock import report_payload

METRICS = ["sessions", "activeUsers"]
ROWS = [(["United States"], [100, 50]), (["Saudi Arabia"], [20, 30])]


@pytest.fixture
def spec():
    return QuerySpec(
        target_id="123456789", metrics=tuple(METRICS), dimensions=("country",)
    )


@pytest.fixture
def reducer():
    return ResultReducer(property_names={"123456789": "Test Site"})


class TestDecode:
    """Every wrapper shape unwraps to the same table"""

    @pytest.mark.parametrize(
        "wrap",
        [
            pytest.param(lambda p: p, id="object"),
            pytest.param(lambda p: dumps(p), id="json-string"),
            pytest.param(lambda p: {"result": p}, id="result-wrapper"),
            pytest.param(lambda p: {"text": dumps(p)}, id="text-field"),
            pytest.param(
                lambda p: {"content": [{"type": "text", "text": dumps(p)}]},
                id="content-list",
            ),
        ],
    )
    def test_table_shapes(self, wrap):
        payload = report_payload(["country"], METRICS, ROWS)
        decoded = decode(wrap(payload))
        assert isinstance(decoded, DecodedTable)
        assert decoded.data == payload

    @pytest.mark.parametrize(
        "raw,text",
        [
            ("quota exceeded for property", "quota exceeded for property"),
            ({"content": [{"type": "text", "text": "no access"}]}, "no access"),
            ("{not json", "{not json"),
            (None, ""),
        ],
    )
    def test_text_shapes(self, raw, text):
        assert decode(raw) == DecodedText(text)


class TestReduce:
    def test_totals_are_column_sums(self, reducer, spec):
        artifact = reducer.reduce(report_payload(["country"], METRICS, ROWS), spec)
        assert artifact.totals == {"sessions": 120, "activeUsers": 80}

    def test_server_totals_win(self, reducer, spec):
        payload = report_payload(["country"], METRICS, ROWS, totals=[999, 888])
        assert reducer.reduce(payload, spec).totals == {"sessions": 999, "activeUsers": 888}

    def test_rows_are_normalized(self, reducer, spec):
        artifact = reducer.reduce(
            report_payload(["country"], METRICS, ROWS), spec, "run_report"
        )
        assert artifact.row_count == 2
        assert artifact.headers == ["country", "sessions", "activeUsers"]
        first = artifact.normalized_rows[0]
        assert first.dimension_values == {"country": "United States"}
        assert first.metric_values == {"sessions": 100, "activeUsers": 50}

        structured = artifact.structured()
        assert structured["operation"] == "run_report"
        assert structured["rows"][1]["metric_values"] == {"sessions": 20, "activeUsers": 30}
        assert structured["chart"] == {
            "chart_type": "bar",
            "labels": ["United States", "Saudi Arabia"],
            "series": {"sessions": [100, 20], "activeUsers": [50, 30]},
        }

    def test_camel_case_payload(self, reducer, spec):
        payload = {
            "dimensionHeaders": [{"name": "country"}],
            "metricHeaders": [{"name": "sessions"}, {"name": "activeUsers"}],
            "rows": [
                {
                    "dimensionValues": [{"value": "Egypt"}],
                    "metricValues": [{"value": "7"}, {"value": "5"}],
                }
            ],
            "rowCount": 1,
        }
        artifact = reducer.reduce(payload, spec)
        assert artifact.normalized_rows[0].metric_values == {"sessions": 7, "activeUsers": 5}
        assert artifact.totals == {"sessions": 7, "activeUsers": 5}

    @pytest.mark.parametrize(
        "row_count,expected",
        [("1250", 1250), (7, 7), ("abc", 2), (None, 2), ("2.5", 2)],
    )
    def test_row_count(self, reducer, spec, row_count, expected):
        payload = report_payload(["country"], METRICS, ROWS)
        payload["row_count"] = row_count
        assert reducer.reduce(payload, spec).row_count == expected

    def test_summary_table(self, reducer, spec):
        artifact = reducer.reduce(report_payload(["country"], METRICS, ROWS), spec)
        summary = artifact.summary_text
        assert summary.startswith("**GA4 Analytics Report**")
        assert "**Property:** 123456789 (Test Site)" in summary
        assert "**Date Range:** Last 30 days" in summary
        assert "| Country | Sessions | Active Users |" in summary
        assert "| United States | 100 | 50 |" in summary
        assert "- Sessions: 120" in summary
        assert "- Time Zone: Asia/Riyadh" in summary

    def test_filters_in_header(self, reducer):
        spec = QuerySpec(
            target_id="123456789",
            metrics=("sessions",),
            dimension_filter=FilterLeaf(
                field="country", match_kind=MatchKind.CONTAINS, value="Egypt"
            ),
            limit=5,
        )
        summary = reducer.reduce({"rows": []}, spec).summary_text
        assert "**Filters:** country contains 'Egypt'" in summary
        assert "**Limit:** 5" in summary
        assert "No rows returned for this period." in summary

    def test_table_is_capped(self, spec):
        rows = [([f"Country {i}"], [i, i]) for i in range(5)]
        artifact = ResultReducer(max_table_rows=2).reduce(
            report_payload(["country"], METRICS, rows), spec
        )
        assert "... and 3 more rows" in artifact.summary_text
        assert len(artifact.normalized_rows) == 5
        assert artifact.totals == {"sessions": 10, "activeUsers": 10}

    def test_numbers_and_durations(self, reducer):
        spec = QuerySpec(
            target_id="123456789", metrics=("averageSessionDuration", "engagementRate")
        )
        payload = report_payload([], list(spec.metrics), [([], ["125.0", "0.5234"])])
        artifact = reducer.reduce(payload, spec)

        assert artifact.normalized_rows[0].metric_values == {
            "averageSessionDuration": 125.0,
            "engagementRate": 0.5234,
        }
        assert artifact.chart_series is None
        assert "- Average Session Duration: 125.00 (2:05)" in artifact.summary_text
        assert "- Engagement Rate: 0.5234" in artifact.summary_text

    def test_text_is_passed_through(self, reducer, spec):
        artifact = reducer.reduce("Property 123456789 has no data yet", spec)
        assert artifact.raw_text == "Property 123456789 has no data yet"
        assert artifact.normalized_rows == []
        assert artifact.totals is None
        assert artifact.summary_text.endswith("Property 123456789 has no data yet")

    @pytest.mark.parametrize(
        "dimensions,hint,expected",
        [
            (("date",), None, "line"),
            (("country",), ChartHint.PIE, "pie"),
            (("browser",), None, "bar"),
        ],
    )
    def test_chart_type(self, reducer, dimensions, hint, expected):
        spec = QuerySpec(
            target_id="123456789",
            metrics=("sessions",),
            dimensions=dimensions,
            chart_hint=hint,
        )
        payload = report_payload(list(dimensions), ["sessions"], [(["x"], [1])])
        assert reducer.reduce(payload, spec).chart_series.chart_type == expected


@pytest.mark.parametrize(
    "name,label",
    [
        ("activeUsers", "Active Users"),
        ("screenPageViews", "Screen Page Views"),
        ("customEvent:article_author", "Article Author"),
        ("date", "Date"),
    ],
)
def test_display_label(name, label):
    assert display_label(name) == label


@pytest.mark.parametrize(
    "value,expected",
    [("120", 120), ("0.5", 0.5), ("-3", -3), ("1e3", 1000.0), ("(not set)", "(not set)"), (7, 7)],
)
def test_coerce_number(value, expected):
    assert coerce_number(value) == expected


def test_format_duration():
    assert format_duration(125) == "2:05"
    assert format_duration(59.6) == "1:00"
