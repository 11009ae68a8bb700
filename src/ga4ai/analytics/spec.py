"""
Query Specification - the validated, immutable shape of a report request.

A ``QuerySpec`` is produced by the extractor for each request and handed
downstream untouched; refinement produces a new copy with ``model_copy``.
The ``to_tool_args`` method renders it as the argument map of the
analytics server's ``run_report`` operation.
"""

import re
from datetime import date, timedelta
from enum import Enum, IntEnum
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

MAX_LIMIT = 250_000

_DAYS_AGO = re.compile(r"^(\d+)daysAgo$")


class MatchKind(IntEnum):
    """String match types, numbered as the Data API numbers them."""

    EXACT = 1
    BEGINS_WITH = 2
    ENDS_WITH = 3
    CONTAINS = 4
    FULL_REGEXP = 5
    PARTIAL_REGEXP = 6


class Combinator(str, Enum):
    AND = "and"
    OR = "or"


class ChartHint(str, Enum):
    LINE = "line"
    BAR = "bar"
    PIE = "pie"
    DOUGHNUT = "doughnut"


class FilterLeaf(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["leaf"] = "leaf"
    field: str
    match_kind: MatchKind = MatchKind.EXACT
    value: str
    case_sensitive: bool = False


class FilterGroup(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["group"] = "group"
    combinator: Combinator = Combinator.AND
    children: tuple["FilterExpr", ...] = Field(min_length=1)


FilterExpr = Annotated[Union[FilterLeaf, FilterGroup], Field(discriminator="kind")]
FilterGroup.model_rebuild()


def combine_filters(
    leaves: list[FilterLeaf], combinator: Combinator = Combinator.AND
) -> Optional[FilterExpr]:
    """A single leaf stands alone; several are grouped under ``combinator``."""
    if not leaves:
        return None
    if len(leaves) == 1:
        return leaves[0]
    return FilterGroup(combinator=combinator, children=tuple(leaves))


def filter_to_wire(expr: FilterExpr) -> dict[str, Any]:
    if isinstance(expr, FilterLeaf):
        return {
            "filter": {
                "field_name": expr.field,
                "string_filter": {
                    "match_type": int(expr.match_kind),
                    "value": expr.value,
                    "case_sensitive": expr.case_sensitive,
                },
            }
        }
    key = f"{expr.combinator.value}_group"
    return {key: {"expressions": [filter_to_wire(c) for c in expr.children]}}


def filter_from_wire(obj: dict[str, Any]) -> FilterExpr:
    """Parse the wire form back into a filter expression.

    Accepts both snake_case and camelCase keys. Raises ``ValueError`` for
    shapes that carry no string filter.
    """
    if not isinstance(obj, dict):
        raise ValueError(f"filter expression must be an object, got {obj!r}")

    for combinator in Combinator:
        group = obj.get(f"{combinator.value}_group") or obj.get(
            f"{combinator.value}Group"
        )
        if group is not None:
            expressions = group.get("expressions") or []
            return FilterGroup(
                combinator=combinator,
                children=tuple(filter_from_wire(e) for e in expressions),
            )

    leaf = obj.get("filter", obj)
    field = leaf.get("field_name") or leaf.get("fieldName")
    string_filter = leaf.get("string_filter") or leaf.get("stringFilter")
    if not field or not isinstance(string_filter, dict):
        raise ValueError(f"unsupported filter expression: {obj!r}")

    match_type = string_filter.get("match_type", string_filter.get("matchType", 1))
    if isinstance(match_type, str):
        match_kind = MatchKind[match_type.upper()]
    else:
        match_kind = MatchKind(int(match_type))
    return FilterLeaf(
        field=field,
        match_kind=match_kind,
        value=str(string_filter.get("value", "")),
        case_sensitive=bool(
            string_filter.get(
                "case_sensitive", string_filter.get("caseSensitive", False)
            )
        ),
    )


def parse_date_token(token: str, today: date) -> date:
    if token == "today":
        return today
    if token == "yesterday":
        return today - timedelta(days=1)
    if m := _DAYS_AGO.match(token):
        return today - timedelta(days=int(m.group(1)))
    return date.fromisoformat(token)


class DateRange(BaseModel):
    """A reporting window; bounds are ISO dates or relative tokens."""

    model_config = ConfigDict(frozen=True)

    start: str
    end: str
    label: str

    def resolve(self, today: date) -> tuple[date, date]:
        """Concrete (start, end) dates relative to ``today``."""
        return parse_date_token(self.start, today), parse_date_token(
            self.end, today
        )

    def describe(self) -> str:
        if (m := _DAYS_AGO.match(self.start)) and self.end == "yesterday":
            return f"Last {m.group(1)} days"
        if self.start == self.end == "yesterday":
            return "Yesterday"
        if m := re.match(r"^([A-Z][a-z]+)(\d{4})$", self.label):
            return f"{m.group(1)} {m.group(2)}"
        return f"{self.start} to {self.end}"

    def to_wire(self) -> dict[str, str]:
        return {"start_date": self.start, "end_date": self.end, "name": self.label}


def default_date_range() -> DateRange:
    return DateRange(start="30daysAgo", end="yesterday", label="Last30Days")


class OrderRule(BaseModel):
    model_config = ConfigDict(frozen=True)

    field: str
    desc: bool = False
    is_metric: bool = False

    def to_wire(self) -> dict[str, Any]:
        if self.is_metric:
            return {"metric": {"metric_name": self.field}, "desc": self.desc}
        return {"dimension": {"dimension_name": self.field}, "desc": self.desc}


def _unique(values: tuple[str, ...]) -> tuple[str, ...]:
    return tuple(dict.fromkeys(v for v in values if v))


class QuerySpec(BaseModel):
    """Structured, validated representation of a report request."""

    model_config = ConfigDict(frozen=True)

    target_id: str
    date_ranges: tuple[DateRange, ...] = Field(
        default_factory=lambda: (default_date_range(),), min_length=1
    )
    metrics: tuple[str, ...] = Field(min_length=1)
    dimensions: tuple[str, ...] = ()
    dimension_filter: Optional[FilterExpr] = None
    metric_filter: Optional[FilterExpr] = None
    order_bys: tuple[OrderRule, ...] = ()
    limit: Optional[int] = Field(default=None, gt=0, le=MAX_LIMIT)
    chart_hint: Optional[ChartHint] = None
    is_composite: bool = False

    @field_validator("metrics", "dimensions", mode="after")
    @classmethod
    def _dedupe(cls, v: tuple[str, ...]) -> tuple[str, ...]:
        return _unique(v)

    @property
    def date_range(self) -> DateRange:
        return self.date_ranges[0]

    def to_tool_args(self) -> dict[str, Any]:
        args: dict[str, Any] = {
            "property_id": self.target_id,
            "date_ranges": [dr.to_wire() for dr in self.date_ranges],
            "metrics": list(self.metrics),
            "dimensions": list(self.dimensions),
        }
        if self.dimension_filter is not None:
            args["dimension_filter"] = filter_to_wire(self.dimension_filter)
        if self.metric_filter is not None:
            args["metric_filter"] = filter_to_wire(self.metric_filter)
        if self.order_bys:
            args["order_bys"] = [o.to_wire() for o in self.order_bys]
        if self.limit is not None:
            args["limit"] = self.limit
        return args
