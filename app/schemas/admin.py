"""
Admin API request bodies. Field names follow the admin frontend (camelCase).
"""
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field


class VerifyPaymentIn(BaseModel):
    action: Literal["verify", "reject"]
    notes: str | None = None


class BudgetSettingsIn(BaseModel):
    """Range checks live in BudgetSettingsService.update so the service and the route agree on messages."""
    model_config = ConfigDict(populate_by_name=True)

    total_credits: int = Field(alias="totalCredits")
    cost_per_minute: float = Field(alias="costPerMinute")
    monthly_limit: int = Field(alias="monthlyLimit")


class AdjustCreditsIn(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    user_id: str = Field(alias="userId", min_length=1)
    action: Literal["add", "remove", "set"]
    credits: int
    reason: str = Field(min_length=1)


class PaginatedResponse(BaseModel):
    """Paginated response wrapper."""
    items: list[dict]
    total: int
    page: int
    pages: int
