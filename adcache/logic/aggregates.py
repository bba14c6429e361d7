"""Account-level aggregates computed from campaign metrics."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field, fields
from typing import Any, Iterable, Mapping, Sequence

from adcache.ingest.models import CampaignMetric

ACTIVE_STATUSES = {"ACTIVE", "ENABLED"}

SUMMED_FIELDS = (
    "spend",
    "impressions",
    "clicks",
    "conversions",
    "click_to_call",
    "email_contacts",
    "booking_step_1",
    "booking_step_2",
    "booking_step_3",
    "reservations",
    "reservation_value",
)


def ratio(numerator: float, denominator: float) -> float:
    if not denominator:
        return 0.0
    return numerator / denominator


@dataclass(slots=True)
class AccountTotals:
    spend: float = 0.0
    impressions: int = 0
    clicks: int = 0
    conversions: float = 0.0
    ctr: float = 0.0
    cpc: float = 0.0
    click_to_call: int = 0
    email_contacts: int = 0
    booking_step_1: int = 0
    booking_step_2: int = 0
    booking_step_3: int = 0
    reservations: int = 0
    reservation_value: float = 0.0
    roas: float = 0.0
    cost_per_reservation: float = 0.0
    active_campaigns: int = 0
    total_campaigns: int = 0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "AccountTotals":
        known = {f.name for f in fields(cls)}
        return cls(**{key: value for key, value in data.items() if key in known and value is not None})


def derive(sums: Mapping[str, float], *, active_campaigns: int = 0, total_campaigns: int = 0) -> AccountTotals:
    """Build totals from summed base metrics, filling in CTR, CPC, ROAS and cost per reservation."""
    spend = float(sums.get("spend", 0) or 0)
    impressions = int(sums.get("impressions", 0) or 0)
    clicks = int(sums.get("clicks", 0) or 0)
    reservations = int(sums.get("reservations", 0) or 0)
    reservation_value = float(sums.get("reservation_value", 0) or 0)
    return AccountTotals(
        spend=spend,
        impressions=impressions,
        clicks=clicks,
        conversions=float(sums.get("conversions", 0) or 0),
        ctr=ratio(clicks, impressions),
        cpc=ratio(spend, clicks),
        click_to_call=int(sums.get("click_to_call", 0) or 0),
        email_contacts=int(sums.get("email_contacts", 0) or 0),
        booking_step_1=int(sums.get("booking_step_1", 0) or 0),
        booking_step_2=int(sums.get("booking_step_2", 0) or 0),
        booking_step_3=int(sums.get("booking_step_3", 0) or 0),
        reservations=reservations,
        reservation_value=reservation_value,
        roas=ratio(reservation_value, spend),
        cost_per_reservation=ratio(spend, reservations),
        active_campaigns=active_campaigns,
        total_campaigns=total_campaigns,
    )


def summarize(campaigns: Sequence[CampaignMetric]) -> AccountTotals:
    sums = {name: sum(getattr(campaign, name) for campaign in campaigns) for name in SUMMED_FIELDS}
    active = sum(1 for campaign in campaigns if campaign.status.upper() in ACTIVE_STATUSES)
    return derive(sums, active_campaigns=active, total_campaigns=len(campaigns))


@dataclass(slots=True)
class MetricsPayload:
    campaigns: list[CampaignMetric] = field(default_factory=list)
    totals: AccountTotals = field(default_factory=AccountTotals)

    @classmethod
    def from_campaigns(cls, campaigns: Iterable[CampaignMetric]) -> "MetricsPayload":
        campaigns = list(campaigns)
        return cls(campaigns=campaigns, totals=summarize(campaigns))

    @property
    def is_empty(self) -> bool:
        return not self.campaigns and not self.totals.spend

    def to_dict(self) -> dict[str, Any]:
        return {
            "campaigns": [campaign.to_dict() for campaign in self.campaigns],
            "totals": self.totals.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any] | None) -> "MetricsPayload":
        data = data or {}
        return cls(
            campaigns=[CampaignMetric.from_dict(item) for item in data.get("campaigns", [])],
            totals=AccountTotals.from_dict(data.get("totals", {})),
        )
