from datetime import datetime

from pydantic import BaseModel

from registry.schemas.gift import FundingStatePublic


class ReportContribution(BaseModel):
    contribution_id: int
    user_id: int
    username: str | None
    amount: float
    created_at: datetime
    receipt_file: str | None
    note: str | None


class GiftContributionReport(BaseModel):
    gift_id: int
    gift_name: str
    price: float
    is_contributed: bool
    total_contributed: float
    is_fully_funded: bool
    is_consistent: bool
    contributions: list[ReportContribution]


class OrphanPublic(BaseModel):
    contribution_id: int
    gift_id: int
    user_id: int
    amount: float
    created_at: datetime


class ContributionReport(BaseModel):
    gifts: list[GiftContributionReport]
    orphaned_contributions: list[OrphanPublic]


class SummaryRow(BaseModel):
    gift_id: int
    gift_name: str
    price: float
    is_contributed: bool
    total_contributed: float
    contribution_count: int
    remaining: float
    percentage: float


class ReconcileResponse(BaseModel):
    checked: int
    corrected: list[FundingStatePublic]
    orphaned_contributions: list[OrphanPublic]
