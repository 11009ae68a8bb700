"""
Parameter Extractor - Natural Language to QuerySpec.

This module turns a free-form analytics question into a validated
``QuerySpec``. A deterministic rule pass runs first; only when it finds
nothing it recognizes is the text sent to the interpretation service, whose
JSON reply is normalized with the same smart defaults.
"""

import calendar
import re
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Callable, Optional

import structlog
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from rapidfuzz import fuzz

from ga4ai.analytics.errors import ExtractionFailed, InterpretationFailed
from ga4ai.analytics.spec import (
    MAX_LIMIT,
    ChartHint,
    DateRange,
    FilterLeaf,
    MatchKind,
    OrderRule,
    QuerySpec,
    combine_filters,
    default_date_range,
    filter_from_wire,
    parse_date_token,
)
from ga4ai.config import settings

logger = structlog.get_logger(__name__)

Clock = Callable[[], date]

AUTHOR_DIMENSION = "customEvent:article_author"

ENGAGEMENT_METRICS = ("engagementRate", "engagedSessions", "eventCount", "screenPageViews")
CHANNEL_METRICS = ("sessions", "activeUsers")
PAGEVIEW_METRICS = ("screenPageViews", "sessions")
DEFAULT_METRICS = ("activeUsers", "sessions", "screenPageViews")

# dimensions that already aggregate meaningfully without a date axis
CATEGORICAL_DIMENSIONS = frozenset(
    {
        "sessionDefaultChannelGroup",
        "sessionSource",
        "country",
        "deviceCategory",
        "browser",
        "operatingSystem",
    }
)

DOUGHNUT_DIMENSIONS = frozenset(
    {"sessionDefaultChannelGroup", "sessionSource", "country", "deviceCategory"}
)

MONTHS = {
    "january": 1,
    "february": 2,
    "march": 3,
    "april": 4,
    "may": 5,
    "june": 6,
    "july": 7,
    "august": 8,
    "september": 9,
    "october": 10,
    "november": 11,
    "december": 12,
    "jan": 1,
    "feb": 2,
    "mar": 3,
    "apr": 4,
    "jun": 6,
    "jul": 7,
    "aug": 8,
    "sep": 9,
    "sept": 9,
    "oct": 10,
    "nov": 11,
    "dec": 12,
}
FULL_MONTH_NAMES = frozenset(n.lower() for n in calendar.month_name if n)


@dataclass
class RuleParse:
    """What the rule pass recognized, before defaults are applied."""

    target_id: Optional[str] = None
    date_range: Optional[DateRange] = None
    metrics: list[str] = field(default_factory=list)
    dimensions: list[str] = field(default_factory=list)
    filters: list[FilterLeaf] = field(default_factory=list)
    limit: Optional[int] = None
    chart_hint: Optional[ChartHint] = None
    is_composite: bool = False
    engagement_intent: bool = False
    channel_intent: bool = False
    pageview_intent: bool = False
    no_date: bool = False
    report_keywords: bool = False

    @property
    def confident(self) -> bool:
        return any(
            (
                self.date_range,
                self.metrics,
                self.dimensions,
                self.filters,
                self.chart_hint,
                self.is_composite,
                self.engagement_intent,
                self.channel_intent,
                self.pageview_intent,
                self.report_keywords,
            )
        )


class InterpretedQuery(BaseModel):
    """The subset of a QuerySpec the interpretation service may return."""

    model_config = ConfigDict(
        populate_by_name=True, extra="ignore", coerce_numbers_to_str=True
    )

    property_id: Optional[str] = Field(default=None, alias="propertyId")
    date_ranges: Optional[list[dict[str, Any]]] = Field(default=None, alias="dateRanges")
    metrics: Optional[list[str]] = None
    dimensions: Optional[list[str]] = None
    dimension_filter: Optional[dict[str, Any]] = Field(
        default=None, alias="dimensionFilter"
    )
    metric_filter: Optional[dict[str, Any]] = Field(default=None, alias="metricFilter")
    limit: Optional[int] = None
    chart_type: Optional[ChartHint] = Field(default=None, alias="chartType")
    is_comprehensive_report: Optional[bool] = Field(
        default=None, alias="isComprehensiveReport"
    )

    @field_validator("chart_type", mode="before")
    @classmethod
    def _known_chart(cls, v: Any) -> Any:
        if isinstance(v, str) and v.lower() in {h.value for h in ChartHint}:
            return v.lower()
        return None if isinstance(v, str) else v


def _mask(text: str, spans: list[tuple[int, int]]) -> str:
    chars = list(text)
    for start, end in spans:
        chars[start:end] = " " * (end - start)
    return "".join(chars)


def _phrase(phrase: str) -> re.Pattern:
    return re.compile(rf"\b{re.escape(phrase)}\b")


class ParameterExtractor:
    """
    Parameter extractor for report questions.

    Fields are filled in a fixed order where the first match wins: target,
    date range, metrics, dimensions, filters, then limit, chart hint and the
    composite flag. Matched text is blanked out as it is consumed so a phrase
    is never counted twice (the "week" in "last week" is not a dimension).
    """

    TARGET_ID_PATTERN = re.compile(r"\b(\d{9,})\b")

    METRIC_SYNONYMS = {
        "average session duration": "averageSessionDuration",
        "avg session duration": "averageSessionDuration",
        "session duration": "averageSessionDuration",
        "time on site": "averageSessionDuration",
        "engagement rate": "engagementRate",
        "engaged sessions": "engagedSessions",
        "bounce rate": "bounceRate",
        "bounces": "bounces",
        "active users": "activeUsers",
        "new users": "newUsers",
        "total users": "totalUsers",
        "users": "activeUsers",
        "user": "activeUsers",
        "sessions": "sessions",
        "session": "sessions",
        "page views": "screenPageViews",
        "page view": "screenPageViews",
        "pageviews": "screenPageViews",
        "pageview": "screenPageViews",
        "views": "screenPageViews",
        "event count": "eventCount",
        "events": "eventCount",
        "revenue": "totalRevenue",
    }

    DIMENSION_SYNONYMS = {
        "date": "date",
        "daily": "date",
        "day": "date",
        "week": "week",
        "weekly": "week",
        "month": "month",
        "monthly": "month",
        "year": "year",
        "yearly": "year",
        "hour": "hour",
        "hourly": "hour",
        "country": "country",
        "countries": "country",
        "city": "city",
        "cities": "city",
        "region": "region",
        "regions": "region",
        "continent": "continent",
        "continents": "continent",
        "device category": "deviceCategory",
        "device": "deviceCategory",
        "devices": "deviceCategory",
        "operating system": "operatingSystem",
        "operating systems": "operatingSystem",
        "os": "operatingSystem",
        "browser": "browser",
        "browsers": "browser",
        "language": "language",
        "languages": "language",
        "traffic source": "sessionSource",
        "traffic sources": "sessionSource",
        "source": "sessionSource",
        "sources": "sessionSource",
        "referrer": "sessionSource",
        "referrers": "sessionSource",
        "medium": "sessionMedium",
        "mediums": "sessionMedium",
        "campaign": "sessionCampaignName",
        "campaigns": "sessionCampaignName",
        "channel": "sessionDefaultChannelGroup",
        "channels": "sessionDefaultChannelGroup",
        "organic": "sessionDefaultChannelGroup",
        "paid": "sessionDefaultChannelGroup",
        "page path": "pagePath",
        "page paths": "pagePath",
        "url": "pagePath",
        "urls": "pagePath",
        "pages": "pagePath",
        "page": "pagePath",
        "page title": "pageTitle",
        "page titles": "pageTitle",
        "user type": "newVsReturning",
        "new vs returning": "newVsReturning",
        "event name": "eventName",
        "event names": "eventName",
        "content group": "contentGroup1",
        "article author": "customEvent:article_author",
        "article authors": "customEvent:article_author",
        "author": "customEvent:article_author",
        "authors": "customEvent:article_author",
        "writer": "customEvent:article_author",
        "writers": "customEvent:article_author",
    }

    EXTRA_METRICS = (
        "conversions",
        "keyEvents",
        "sessionsPerUser",
        "screenPageViewsPerSession",
        "userEngagementDuration",
    )
    EXTRA_DIMENSIONS = ("landingPage", "languageCode", "sessionSourceMedium")

    COUNTRIES = {
        "saudi arabia": "Saudi Arabia",
        "ksa": "Saudi Arabia",
        "united states": "United States",
        "usa": "United States",
        "united kingdom": "United Kingdom",
        "uk": "United Kingdom",
        "united arab emirates": "United Arab Emirates",
        "uae": "United Arab Emirates",
        "egypt": "Egypt",
        "jordan": "Jordan",
        "lebanon": "Lebanon",
        "kuwait": "Kuwait",
        "qatar": "Qatar",
        "bahrain": "Bahrain",
        "oman": "Oman",
        "iraq": "Iraq",
        "morocco": "Morocco",
        "algeria": "Algeria",
        "tunisia": "Tunisia",
        "turkey": "Turkey",
        "pakistan": "Pakistan",
        "canada": "Canada",
        "australia": "Australia",
        "france": "France",
        "germany": "Germany",
        "italy": "Italy",
        "spain": "Spain",
        "india": "India",
        "china": "China",
        "japan": "Japan",
        "brazil": "Brazil",
    }

    CITIES = (
        "riyadh",
        "jeddah",
        "mecca",
        "makkah",
        "medina",
        "dammam",
        "khobar",
        "dubai",
        "abu dhabi",
        "sharjah",
        "doha",
        "kuwait city",
        "manama",
        "muscat",
        "amman",
        "beirut",
        "cairo",
        "alexandria",
        "baghdad",
        "casablanca",
        "istanbul",
        "london",
        "paris",
        "new york",
    )

    DEVICES = ("mobile", "desktop", "tablet")

    ISO_RANGE = re.compile(
        r"(?:\b(?:from|between)\s+)?(\d{4}-\d{2}-\d{2})\s*"
        r"(?:till|to|until|through|and|-)\s*(\d{4}-\d{2}-\d{2})"
    )
    DMY_RANGE = re.compile(
        r"(?:\b(?:from|between)\s+)?(\d{1,2})[/.](\d{1,2})[/.](\d{4})\s*"
        r"(?:till|to|until|through|and|-)\s*(\d{1,2})[/.](\d{1,2})[/.](\d{4})"
    )
    MONTH_NAME = re.compile(
        r"\b(?P<prefix>(?:for\s+)?(?:the\s+)?month\s+of\s+|in\s+|during\s+)?"
        r"(?P<name>january|february|march|april|may|june|july|august|september|"
        r"october|november|december|jan|feb|mar|apr|jun|jul|aug|sept|sep|oct|"
        r"nov|dec)\b(?:\s*,?\s*(?P<year>\d{4})\b)?"
    )

    RELATIVE_PATTERNS = [
        (re.compile(r"\b(?:last|past|previous)\s+(\d+)\s+days?\b"), None),
        (re.compile(r"\b(\d+)\s+days?\s+ago\b"), None),
        (re.compile(r"\b(?:last|past|previous|this)\s+week\b"), 7),
        (re.compile(r"\b(?:last|past|previous|this)\s+month\b"), 30),
        (re.compile(r"\b(?:last|past|previous|this)\s+year\b"), 365),
        (re.compile(r"\byesterday\b"), 0),
    ]

    ENGAGEMENT_INTENT = re.compile(r"\bengagement\b")
    CHANNEL_INTENT = re.compile(
        r"\b(?:traffic\s+sources?|sources?|channels?|medium|campaigns?|"
        r"referrers?|organic|paid)\b"
    )
    PAGEVIEW_INTENT = re.compile(r"\bpage\s?views?\b|\bviews?\b")
    NO_DATE = re.compile(r"\b(?:no|without|excluding)\s+(?:the\s+)?dates?\b")
    REPORT_KEYWORDS = re.compile(
        r"\b(?:report|traffic|analytics|stats|statistics|performance|overview|"
        r"visitors|audience|metrics)\b"
    )

    LIMIT_PATTERNS = [
        re.compile(r"\b(?:only\s+)?(?:top|limit|first|show)\s+(\d+)\b"),
        re.compile(r"\bonly\s+(\d+)\b"),
    ]

    CHART_PATTERNS = [
        (re.compile(r"\b(?:doughnut|donut)(?:\s+chart)?\b"), ChartHint.DOUGHNUT),
        (re.compile(r"\bpie(?:\s+chart)?\b"), ChartHint.PIE),
        (re.compile(r"\bbar\s+(?:chart|graph)\b"), ChartHint.BAR),
        (re.compile(r"\bline\s+(?:chart|graph)\b"), ChartHint.LINE),
    ]

    COMPOSITE_PATTERN = re.compile(
        r"\b(?:full\s+breakdown|comprehensive\s+(?:traffic\s+)?report|"
        r"complete\s+report|full\s+analysis|detailed\s+report|"
        r"complete\s+analysis|complete\s+breakdown|give\s+me\s+everything|"
        r"breakdown\s+of\s+my\s+traffic|traffic\s+metrics\s+breakdown)\b"
    )

    GROUNDING_THRESHOLD = 0.9

    def __init__(
        self,
        interpreter=None,
        clock: Clock = date.today,
        aliases: Optional[dict[str, str]] = None,
        fallback_target_id: Optional[str] = None,
    ):
        """
        Initialize the Parameter Extractor.

        Args:
            interpreter: Interpretation service client used when the rules
                recognize nothing; ``None`` disables the fallback
            clock: Returns "today"; injected so relative dates are testable
            aliases: Display name to property id map, from settings if omitted
            fallback_target_id: Property used when nothing else names one
        """
        props = settings.instance().properties
        self.interpreter = interpreter
        self.clock = clock
        self.aliases = {
            k.lower(): v for k, v in (aliases if aliases is not None else props.aliases).items()
        }
        self.fallback_target_id = fallback_target_id or props.default_property_id

        self._phrases = sorted(
            [(p, "metric", n) for p, n in self.METRIC_SYNONYMS.items()]
            + [(p, "dimension", n) for p, n in self.DIMENSION_SYNONYMS.items()],
            key=lambda t: len(t[0]),
            reverse=True,
        )
        self._phrase_patterns = {p: _phrase(p) for p, _, _ in self._phrases}
        self.known_metrics = sorted(
            set(self.METRIC_SYNONYMS.values()) | set(self.EXTRA_METRICS)
        )
        self.known_dimensions = sorted(
            set(self.DIMENSION_SYNONYMS.values()) | set(self.EXTRA_DIMENSIONS)
        )

    async def extract(self, text: str, default_target_id: Optional[str] = None) -> QuerySpec:
        """
        Extract a QuerySpec from free text.

        Args:
            text: The question as typed
            default_target_id: The caller's preferred property, if any

        Returns:
            A validated QuerySpec

        Raises:
            ExtractionFailed: If neither the rules nor the interpretation
                service produce a usable spec
        """
        parsed = self.parse(text)
        if parsed.confident:
            spec = self.build(parsed, default_target_id)
            logger.info(
                "spec_extracted",
                source="rules",
                target_id=spec.target_id,
                metrics=list(spec.metrics),
                dimensions=list(spec.dimensions),
                composite=spec.is_composite,
            )
            return spec

        if self.interpreter is None or not self.interpreter.available:
            raise ExtractionFailed(f"no recognizable report request in {text!r}")

        logger.info("spec_extraction_fallback", text=text)
        data = await self.interpreter.extract(text)
        base = self.build(parsed, default_target_id)
        spec = self.merge(data, text, base, explicit_target=parsed.target_id)
        logger.info(
            "spec_extracted",
            source="interpretation",
            target_id=spec.target_id,
            metrics=list(spec.metrics),
            dimensions=list(spec.dimensions),
            composite=spec.is_composite,
        )
        return spec

    def parse(self, text: str) -> RuleParse:
        """Run the deterministic rule pass over ``text``."""
        lowered = " ".join(text.lower().split())
        parsed = RuleParse()
        spans: list[tuple[int, int]] = []

        parsed.target_id = self._target(lowered, spans)
        parsed.date_range = self._date_range(lowered, spans)

        working = _mask(lowered, spans)
        parsed.filters = self._filters(working, spans)
        if m := self.NO_DATE.search(working):
            parsed.no_date = True
            spans.append(m.span())
        parsed.chart_hint = self._chart_hint(working)
        parsed.limit = self._limit(working, spans)
        parsed.is_composite = bool(self.COMPOSITE_PATTERN.search(working))

        # intent phrases are read from the text before phrase masking
        parsed.engagement_intent = bool(self.ENGAGEMENT_INTENT.search(working))
        parsed.channel_intent = bool(self.CHANNEL_INTENT.search(working))
        parsed.pageview_intent = bool(self.PAGEVIEW_INTENT.search(working))
        parsed.report_keywords = bool(self.REPORT_KEYWORDS.search(working))

        parsed.metrics, parsed.dimensions = self._scan_phrases(_mask(lowered, spans))
        return parsed

    def build(
        self, parsed: RuleParse, default_target_id: Optional[str] = None
    ) -> QuerySpec:
        """Apply smart defaults to a rule parse and validate the result."""
        metrics = self._metrics(parsed)
        dimensions = self._dimensions(parsed, parsed.dimensions, parsed.chart_hint)
        limit = parsed.limit
        return QuerySpec(
            target_id=parsed.target_id or default_target_id or self.fallback_target_id,
            date_ranges=(parsed.date_range or default_date_range(),),
            metrics=metrics,
            dimensions=dimensions,
            dimension_filter=combine_filters(parsed.filters),
            order_bys=self._order_bys(parsed, metrics, dimensions, limit),
            limit=limit,
            chart_hint=self._auto_chart(parsed.chart_hint, dimensions),
            is_composite=parsed.is_composite,
        )

    def merge(
        self,
        data: dict[str, Any],
        text: str,
        base: QuerySpec,
        explicit_target: Optional[str] = None,
        apply_defaults: bool = True,
    ) -> QuerySpec:
        """
        Overlay an interpretation-service reply on ``base``.

        Fields the reply leaves out keep their ``base`` values. With
        ``apply_defaults`` the date-dimension and ordering rules are applied
        to the reply's dimensions, as for a rule parse; refinement passes
        ``False`` so a deliberately removed date stays removed.

        Raises:
            InterpretationFailed: If the reply cannot be read as a QuerySpec
        """
        try:
            reply = InterpretedQuery.model_validate(data)
            parsed = self.parse(text)

            target = explicit_target or base.target_id
            if reply.property_id and self.TARGET_ID_PATTERN.fullmatch(
                reply.property_id.strip()
            ):
                target = explicit_target or reply.property_id.strip()

            date_ranges = base.date_ranges
            if reply.date_ranges:
                date_ranges = tuple(self._reply_date_range(d) for d in reply.date_ranges)

            metrics = list(base.metrics)
            if reply.metrics:
                metrics = [self.ground(m, self.known_metrics) for m in reply.metrics]

            chart = reply.chart_type or (
                parsed.chart_hint if apply_defaults else base.chart_hint
            )
            dimensions = list(base.dimensions)
            if reply.dimensions is not None:
                dimensions = [
                    self.ground(d, self.known_dimensions) for d in reply.dimensions
                ]
                if apply_defaults:
                    dimensions = self._dimensions(parsed, dimensions, chart)

            dimension_filter = base.dimension_filter
            if reply.dimension_filter:
                dimension_filter = filter_from_wire(reply.dimension_filter)
            metric_filter = base.metric_filter
            if reply.metric_filter:
                metric_filter = filter_from_wire(reply.metric_filter)

            limit = reply.limit if reply.limit is not None else base.limit
            order_bys = base.order_bys
            if (
                apply_defaults
                or tuple(dimensions) != base.dimensions
                or tuple(metrics) != base.metrics
            ):
                order_bys = self._order_bys(parsed, metrics, dimensions, limit)
            if apply_defaults:
                chart = self._auto_chart(chart, dimensions)

            composite = base.is_composite
            if reply.is_comprehensive_report is not None:
                composite = composite or reply.is_comprehensive_report

            return QuerySpec(
                target_id=target,
                date_ranges=date_ranges,
                metrics=metrics,
                dimensions=dimensions,
                dimension_filter=dimension_filter,
                metric_filter=metric_filter,
                order_bys=order_bys,
                limit=limit,
                chart_hint=chart,
                is_composite=composite,
            )
        except (ValidationError, ValueError, KeyError, TypeError) as e:
            raise InterpretationFailed(f"unusable interpretation reply: {e}") from e

    def ground(self, name: str, vocabulary: list[str]) -> str:
        """Snap a near-miss api name onto the known vocabulary."""
        name = name.strip()
        if name in vocabulary:
            return name

        best_match, best_score = None, 0.0
        for candidate in vocabulary:
            score = fuzz.ratio(name.lower(), candidate.lower()) / 100.0
            if score > best_score:
                best_match, best_score = candidate, score

        if best_match and best_score >= self.GROUNDING_THRESHOLD:
            logger.info("name_grounded", name=name, grounded=best_match, score=best_score)
            return best_match
        return name

    def _target(self, text: str, spans: list[tuple[int, int]]) -> Optional[str]:
        if m := self.TARGET_ID_PATTERN.search(text):
            spans.append(m.span())
            return m.group(1)
        for alias in sorted(self.aliases, key=len, reverse=True):
            if m := _phrase(alias).search(text):
                spans.append(m.span())
                return self.aliases[alias]
        return None

    def _date_range(self, text: str, spans: list[tuple[int, int]]) -> Optional[DateRange]:
        # outranked date phrases are consumed too, so "last week" never reads as a dimension
        spans.extend(self._date_phrase_spans(text))
        for resolve in (self._absolute_range, self._month_range, self._relative_range):
            if (found := resolve(text)) is not None:
                return found[0]
        return None

    def _date_phrase_spans(self, text: str) -> list[tuple[int, int]]:
        found = [m.span() for m in self.ISO_RANGE.finditer(text)]
        found += [m.span() for m in self.DMY_RANGE.finditer(text)]
        for m in self.MONTH_NAME.finditer(text):
            if m.group("year") is not None or (
                m.group("prefix") is not None and m.group("name") in FULL_MONTH_NAMES
            ):
                found.append(m.span())
        for pattern, _ in self.RELATIVE_PATTERNS:
            found += [m.span() for m in pattern.finditer(text)]
        return found

    def _absolute_range(self, text: str) -> Optional[tuple[DateRange, tuple[int, int]]]:
        if m := self.ISO_RANGE.search(text):
            try:
                start = date.fromisoformat(m.group(1))
                end = date.fromisoformat(m.group(2))
            except ValueError:
                start = end = None
            if start and end and start <= end:
                return self._custom_range(start, end), m.span()

        for m in self.DMY_RANGE.finditer(text):
            a1, b1, y1, a2, b2, y2 = (int(g) for g in m.groups())
            for order in ("day_first", "month_first"):
                try:
                    if order == "day_first":
                        start, end = date(y1, b1, a1), date(y2, b2, a2)
                    else:
                        start, end = date(y1, a1, b1), date(y2, a2, b2)
                except ValueError:
                    continue
                if start <= end:
                    return self._custom_range(start, end), m.span()
        return None

    @staticmethod
    def _custom_range(start: date, end: date) -> DateRange:
        s, e = start.isoformat(), end.isoformat()
        return DateRange(start=s, end=e, label=f"CustomRange_{s}_{e}")

    def _month_range(self, text: str) -> Optional[tuple[DateRange, tuple[int, int]]]:
        today = self.clock()
        for m in self.MONTH_NAME.finditer(text):
            name, year = m.group("name"), m.group("year")
            # without a year only a spelled-out month after "in"/"month of" counts
            if year is None and (
                m.group("prefix") is None or name not in FULL_MONTH_NAMES
            ):
                continue
            month = MONTHS[name]
            if year is None:
                y = today.year if month <= today.month else today.year - 1
            else:
                y = int(year)
            last = calendar.monthrange(y, month)[1]
            return (
                DateRange(
                    start=date(y, month, 1).isoformat(),
                    end=date(y, month, last).isoformat(),
                    label=f"{calendar.month_name[month]}{y}",
                ),
                m.span(),
            )
        return None

    def _relative_range(self, text: str) -> Optional[tuple[DateRange, tuple[int, int]]]:
        for pattern, days in self.RELATIVE_PATTERNS:
            if m := pattern.search(text):
                if days is None:
                    days = int(m.group(1))
                if days == 0:
                    return (
                        DateRange(start="yesterday", end="yesterday", label="Yesterday"),
                        m.span(),
                    )
                return (
                    DateRange(
                        start=f"{days}daysAgo", end="yesterday", label=f"Last{days}Days"
                    ),
                    m.span(),
                )
        return None

    def _filters(self, text: str, spans: list[tuple[int, int]]) -> list[FilterLeaf]:
        leaves: list[FilterLeaf] = []
        working = text

        city = re.compile(
            r"\b(?:in|from)\s+(" + "|".join(re.escape(c) for c in self.CITIES) + r")\b"
        )
        explicit_city = re.compile(
            r"\bcity\s+(?:is|=)\s+([a-z][a-z ]*?)(?=\s+(?:for|in|on|till|to|last|and|by)\b|[,.?!]|$)"
        )
        for pattern in (explicit_city, city):
            if m := pattern.search(working):
                leaves.append(
                    FilterLeaf(
                        field="city",
                        match_kind=MatchKind.EXACT,
                        value=m.group(1).strip().title(),
                    )
                )
                spans.append(m.span())
                working = _mask(working, [m.span()])
                break

        device_patterns = [
            re.compile(r"\bon\s+(mobile|desktop|tablet)s?\b"),
            re.compile(r"\b(mobile|desktop|tablet)\s+(?:devices?|only)\b"),
            re.compile(r"\b(mobile|desktop|tablet)(?=\s+users?\b)"),
        ]
        for pattern in device_patterns:
            if m := pattern.search(working):
                leaves.append(
                    FilterLeaf(
                        field="deviceCategory",
                        match_kind=MatchKind.EXACT,
                        value=m.group(1),
                    )
                )
                spans.append(m.span())
                working = _mask(working, [m.span()])
                break

        country = re.compile(
            r"\b(?:from|in|country\s+(?:is|=))\s+(?:the\s+)?("
            + "|".join(re.escape(c) for c in sorted(self.COUNTRIES, key=len, reverse=True))
            + r")\b"
        )
        explicit_country = re.compile(
            r"\bcountry\s+(?:is|=)\s+([a-z][a-z ]*?)(?=\s+(?:for|in|on|till|to|last|and|by)\b|[,.?!]|$)"
        )
        for pattern in (country, explicit_country):
            if m := pattern.search(working):
                value = m.group(1).strip()
                leaves.append(
                    FilterLeaf(
                        field="country",
                        match_kind=MatchKind.CONTAINS,
                        value=self.COUNTRIES.get(value, value.title()),
                    )
                )
                spans.append(m.span())
                break

        return leaves

    def _chart_hint(self, text: str) -> Optional[ChartHint]:
        for pattern, hint in self.CHART_PATTERNS:
            if pattern.search(text):
                return hint
        return None

    def _limit(self, text: str, spans: list[tuple[int, int]]) -> Optional[int]:
        for pattern in self.LIMIT_PATTERNS:
            if m := pattern.search(text):
                n = int(m.group(1))
                if 0 < n <= MAX_LIMIT:
                    # the number is consumed, the keyword may still name a dimension
                    spans.append(m.span(1))
                    return n
        return None

    def _scan_phrases(self, text: str) -> tuple[list[str], list[str]]:
        found: list[tuple[int, str, str]] = []
        for phrase, kind, name in self._phrases:
            matches = list(self._phrase_patterns[phrase].finditer(text))
            if not matches:
                continue
            found.extend((m.start(), kind, name) for m in matches)
            text = _mask(text, [m.span() for m in matches])

        found.sort(key=lambda t: t[0])
        metrics = list(dict.fromkeys(n for _, k, n in found if k == "metric"))
        dimensions = list(dict.fromkeys(n for _, k, n in found if k == "dimension"))
        return metrics, dimensions

    def _metrics(self, parsed: RuleParse) -> list[str]:
        explicit = parsed.metrics
        # a lone pageview mention reads as pageview phrasing, not a metric choice
        lone_pageviews = explicit == ["screenPageViews"] and parsed.pageview_intent
        if explicit and not lone_pageviews:
            return list(explicit)
        if parsed.engagement_intent:
            return list(ENGAGEMENT_METRICS)
        if parsed.channel_intent:
            return list(CHANNEL_METRICS)
        if parsed.pageview_intent:
            return list(PAGEVIEW_METRICS)
        return list(DEFAULT_METRICS)

    def _dimensions(
        self,
        parsed: RuleParse,
        dimensions: list[str],
        chart_hint: Optional[ChartHint],
    ) -> list[str]:
        dimensions = list(dict.fromkeys(dimensions))
        if "date" in dimensions:
            return dimensions

        wants_pie = chart_hint in (ChartHint.PIE, ChartHint.DOUGHNUT)
        categorical = any(d in CATEGORICAL_DIMENSIONS for d in dimensions)
        per_entity = parsed.engagement_intent and AUTHOR_DIMENSION in dimensions
        if wants_pie or categorical or per_entity or parsed.no_date:
            return dimensions
        return ["date"] + dimensions

    def _order_bys(
        self,
        parsed: RuleParse,
        metrics: list[str],
        dimensions: list[str],
        limit: Optional[int],
    ) -> tuple[OrderRule, ...]:
        if parsed.engagement_intent and "engagementRate" in metrics:
            return (OrderRule(field="engagementRate", desc=True, is_metric=True),)
        if limit is not None and dimensions and "date" not in dimensions:
            return (OrderRule(field=metrics[0], desc=True, is_metric=True),)
        if dimensions:
            primary = "date" if "date" in dimensions else dimensions[0]
            return (OrderRule(field=primary),)
        return ()

    @staticmethod
    def _auto_chart(
        chart_hint: Optional[ChartHint], dimensions: list[str]
    ) -> Optional[ChartHint]:
        if chart_hint is not None:
            return chart_hint
        if dimensions and dimensions[0] in DOUGHNUT_DIMENSIONS and "date" not in dimensions:
            return ChartHint.DOUGHNUT
        return None

    def _reply_date_range(self, d: dict[str, Any]) -> DateRange:
        start = d.get("start_date") or d.get("startDate")
        end = d.get("end_date") or d.get("endDate")
        if not start or not end:
            raise ValueError(f"date range without bounds: {d!r}")
        today = self.clock()
        # both bounds must be tokens the analytics server understands
        parse_date_token(start, today)
        parse_date_token(end, today)
        label = d.get("name") or f"CustomRange_{start}_{end}"
        return DateRange(start=start, end=end, label=label)
