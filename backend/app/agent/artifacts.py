from datetime import date
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator
from typing_extensions import Self


class WidgetType(str, Enum):
    CHART = "chart"
    TABLE = "table"
    CARD = "card"
    TILE = "tile"


QueryOperation = Literal["aggregate", "filter", "sort", "timeseries"]
QueryField = Literal["pnl", "allocation", "returns", "holdings", "performance"]
GroupBy = Literal["sector", "asset_type", "symbol", "date"]
AssetType = Literal["equity", "mutual_fund", "etf", "bond"]


class QueryFilters(BaseModel):
    symbol: list[str] | None = Field(default=None, description="Restrict to these trading symbols")
    sector: list[str] | None = Field(default=None, description="Restrict to these sectors")
    asset_type: list[AssetType] | None = Field(default=None, description="Restrict to these asset types")
    min_value: float | None = Field(default=None, ge=0, description="Minimum current holding value")
    max_value: float | None = Field(default=None, ge=0, description="Maximum current holding value")

    @model_validator(mode="after")
    def _check_value_range(self) -> Self:
        if self.min_value is not None and self.max_value is not None and self.min_value > self.max_value:
            raise ValueError("min_value must not exceed max_value")
        return self


class TimeRange(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    from_: date = Field(alias="from", description="Inclusive start date (ISO 8601)")
    to: date = Field(description="Inclusive end date (ISO 8601)")

    @model_validator(mode="after")
    def _check_order(self) -> Self:
        if self.from_ > self.to:
            raise ValueError("time_range.from must not be after time_range.to")
        return self


class WidgetQuery(BaseModel):
    operation: QueryOperation = Field(description="How holdings are combined")
    field: QueryField = Field(description="The portfolio metric the widget shows")
    filters: QueryFilters | None = None
    time_range: TimeRange | None = None
    group_by: GroupBy | None = None
    sort_by: str | None = Field(default=None, description="Holding attribute or metric to order by")
    sort_order: Literal["asc", "desc"] | None = None
    limit: int | None = Field(default=None, ge=1, le=100)

    @model_validator(mode="after")
    def _check_timeseries_grouping(self) -> Self:
        if self.operation == "timeseries" and self.group_by not in (None, "date"):
            raise ValueError("timeseries queries can only be grouped by date")
        return self


class Visualization(BaseModel):
    chart_type: Literal["line", "bar", "pie", "scatter", "area"] | None = None
    x_axis: str | None = None
    y_axis: str | None = None
    colors: list[str] | None = None
    show_legend: bool | None = None
    show_grid: bool | None = None


class RefreshPolicy(BaseModel):
    automatic: bool = False
    frequency: Literal["daily", "hourly", "manual"] | None = None


class WidgetDSL(BaseModel):
    """Declarative widget description: what to read from the portfolio and how to draw it."""
    model_config = ConfigDict(populate_by_name=True)

    type: WidgetType = Field(description="Widget kind: chart, table, card or tile")
    query: WidgetQuery
    visualization: Visualization = Field(default_factory=Visualization)
    refresh: RefreshPolicy = Field(default_factory=RefreshPolicy)

    @model_validator(mode="after")
    def _check_chart_type(self) -> Self:
        if self.type == WidgetType.CHART and not self.visualization.chart_type:
            raise ValueError("chart widgets require visualization.chart_type")
        return self

    def to_config(self) -> dict:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class ClarificationRequest(BaseModel):
    question: str
    options: list[str] = Field(default_factory=list)


class QueryPlan(BaseModel):
    """Artifact produced by the Query Agent."""
    reply: str = Field(description="Short assistant message shown to the user")
    title: str | None = Field(default=None, description="Widget title when a widget is produced")
    dsl: dict[str, Any] | None = Field(
        default=None,
        description="Widget DSL object answering the question, if any (validated separately)",
    )
    clarification: ClarificationRequest | None = Field(
        default=None,
        description="Follow-up question when the request is too ambiguous to answer",
    )
