"""Pydantic schemas for the monthly usage summary."""

from datetime import datetime

from pydantic import BaseModel, Field

from app.services.admission import CategoryUsage, UsageSummary


class CategoryUsageResponse(BaseModel):
    """Usage of one quota counter this month."""

    used: int = Field(..., ge=0)
    limit: int | None = Field(None, description="None when the plan is unlimited")
    remaining: int | None = None

    @classmethod
    def from_usage(cls, usage: CategoryUsage) -> "CategoryUsageResponse":
        return cls(
            used=usage.used,
            limit=usage.limit,
            remaining=None if usage.limit is None else max(usage.limit - usage.used, 0),
        )


class UsageResponse(BaseModel):
    """Plan, total and per-category usage for the current month."""

    plan: str = Field(..., examples=["free", "outil", "studio", "pilot"])
    period: str = Field(..., examples=["2026-10"])
    renews_on: datetime
    total: CategoryUsageResponse
    categories: dict[str, CategoryUsageResponse]

    @classmethod
    def from_summary(cls, summary: UsageSummary) -> "UsageResponse":
        return cls(
            plan=summary.plan,
            period=summary.period,
            renews_on=summary.renews_on,
            total=CategoryUsageResponse.from_usage(summary.total),
            categories={
                category: CategoryUsageResponse.from_usage(usage)
                for category, usage in summary.categories.items()
            },
        )
