"""Ingestion data models."""

from __future__ import annotations

import enum
from dataclasses import asdict, dataclass, fields
from typing import Any, Mapping


class Platform(str, enum.Enum):
    META = "meta"
    GOOGLE = "google"


@dataclass(slots=True)
class Account:
    account_id: str
    name: str
    meta_ad_account_id: str | None = None
    meta_access_token: str | None = None
    google_customer_id: str | None = None
    google_refresh_token: str | None = None
    active: bool = True

    @property
    def platforms(self) -> list[Platform]:
        configured = []
        if self.meta_ad_account_id and self.meta_access_token:
            configured.append(Platform.META)
        if self.google_customer_id and self.google_refresh_token:
            configured.append(Platform.GOOGLE)
        return configured

    def supports(self, platform: Platform) -> bool:
        return platform in self.platforms


@dataclass(slots=True)
class CampaignMetric:
    campaign_id: str
    campaign_name: str
    status: str = "ACTIVE"
    spend: float = 0.0
    impressions: int = 0
    clicks: int = 0
    conversions: float = 0.0
    click_to_call: int = 0
    email_contacts: int = 0
    booking_step_1: int = 0
    booking_step_2: int = 0
    booking_step_3: int = 0
    reservations: int = 0
    reservation_value: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "CampaignMetric":
        known = {f.name for f in fields(cls)}
        return cls(**{key: value for key, value in data.items() if key in known})
