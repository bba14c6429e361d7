"""Google Ads REST (searchStream) source."""

from __future__ import annotations

import logging
import os
from collections import defaultdict
from datetime import date
from typing import Any

import httpx

from adcache.errors import UpstreamAuthInvalid, UpstreamUnavailable
from adcache.ingest.base import error_for_status, transport_error
from adcache.ingest.models import Account, CampaignMetric, Platform
from adcache.utils.rate_limit import RateLimiter
from adcache.utils.retry import retry_async

logger = logging.getLogger(__name__)

GOOGLE_ADS_API_VERSION = os.environ.get("GOOGLE_ADS_API_VERSION", "v17")
GOOGLE_ADS_URL = f"https://googleads.googleapis.com/{GOOGLE_ADS_API_VERSION}"
TOKEN_URL = "https://oauth2.googleapis.com/token"

CAMPAIGN_QUERY = """
    SELECT campaign.id, campaign.name, campaign.status,
           metrics.cost_micros, metrics.impressions, metrics.clicks,
           metrics.conversions, metrics.conversions_value
    FROM campaign
    WHERE segments.date BETWEEN '{start}' AND '{end}'
"""

CONVERSION_QUERY = """
    SELECT campaign.id, segments.conversion_action_name,
           metrics.all_conversions, metrics.all_conversions_value
    FROM campaign
    WHERE segments.date BETWEEN '{start}' AND '{end}'
"""

CALL_KEYWORDS = ("click to call", "click_to_call", "telefon", "phone", "połączenie")
CONTACT_KEYWORDS = ("mail", "contact", "kontakt", "formularz")
STEP_KEYWORDS = {
    "booking_step_1": ("step 1", "step1", "krok 1", "1 krok", "pierwszy krok", "booking_step_1"),
    "booking_step_2": ("step 2", "step2", "krok 2", "2 krok", "drugi krok", "booking_step_2"),
    "booking_step_3": ("step 3", "step3", "krok 3", "3 krok", "trzeci krok", "booking_step_3"),
}
RESERVATION_KEYWORDS = ("rezerwacja", "reservation", "zakup", "purchase", "complete")
NOT_RESERVATION_KEYWORDS = ("krok", "step", "booking engine", "booking_step")


def classify_conversion(name: str) -> list[str]:
    """Funnel fields a conversion action name contributes to."""
    lowered = name.lower()
    matched = []
    if any(keyword in lowered for keyword in CALL_KEYWORDS):
        matched.append("click_to_call")
    if any(keyword in lowered for keyword in CONTACT_KEYWORDS):
        matched.append("email_contacts")
    for field_name, keywords in STEP_KEYWORDS.items():
        if any(keyword in lowered for keyword in keywords):
            matched.append(field_name)
    if any(k in lowered for k in RESERVATION_KEYWORDS) and not any(k in lowered for k in NOT_RESERVATION_KEYWORDS):
        matched.append("reservations")
    return matched


class GoogleAdsSource:
    platform = Platform.GOOGLE

    def __init__(
        self,
        *,
        developer_token: str | None = None,
        client_id: str | None = None,
        client_secret: str | None = None,
        login_customer_id: str | None = None,
        session: httpx.AsyncClient | None = None,
        rate_limiter: RateLimiter | None = None,
    ) -> None:
        self.developer_token = developer_token or os.environ.get("GOOGLE_ADS_DEVELOPER_TOKEN", "")
        self.client_id = client_id or os.environ.get("GOOGLE_ADS_CLIENT_ID", "")
        self.client_secret = client_secret or os.environ.get("GOOGLE_ADS_CLIENT_SECRET", "")
        self.login_customer_id = login_customer_id or os.environ.get("GOOGLE_ADS_LOGIN_CUSTOMER_ID")
        self.session = session or httpx.AsyncClient(timeout=60.0)
        self._rate_limiter = rate_limiter or RateLimiter()
        self._access_tokens: dict[str, str] = {}

    async def close(self) -> None:
        await self.session.aclose()

    async def fetch(self, account: Account, start: date, end: date) -> list[CampaignMetric]:
        if not account.supports(Platform.GOOGLE):
            raise UpstreamAuthInvalid(
                f"Account {account.account_id} has no Google Ads credentials",
                platform=self.platform.value,
                account_id=account.account_id,
            )
        bounds = {"start": start.isoformat(), "end": end.isoformat()}
        campaign_rows = await self._search(account, CAMPAIGN_QUERY.format(**bounds))
        conversion_rows = await self._search(account, CONVERSION_QUERY.format(**bounds))
        funnels = _funnels_by_campaign(conversion_rows)
        metrics = [_parse_campaign(row, funnels) for row in campaign_rows]
        logger.info(
            "Fetched %s Google Ads campaigns for %s (%s to %s)", len(metrics), account.account_id, start, end
        )
        return metrics

    async def _search(self, account: Account, query: str) -> list[dict[str, Any]]:
        customer_id = (account.google_customer_id or "").replace("-", "")
        url = f"{GOOGLE_ADS_URL}/customers/{customer_id}/googleAds:searchStream"
        batches = await retry_async(self._post_json)(account, url, {"query": query})
        rows: list[dict[str, Any]] = []
        for batch in batches or []:
            rows.extend(batch.get("results", []))
        return rows

    async def _post_json(self, account: Account, url: str, payload: dict[str, Any]) -> Any:
        token = await self._access_token(account)
        headers = {"Authorization": f"Bearer {token}", "developer-token": self.developer_token}
        if self.login_customer_id:
            headers["login-customer-id"] = self.login_customer_id.replace("-", "")
        await self._rate_limiter.wait_for(account.google_customer_id or account.account_id)
        try:
            response = await self.session.post(url, json=payload, headers=headers)
        except httpx.TransportError as exc:
            raise transport_error(exc, platform=self.platform, account_id=account.account_id) from exc
        if response.status_code == 401:
            # Access tokens live for an hour; drop it so the next attempt refreshes.
            self._access_tokens.pop(account.account_id, None)
        error = error_for_status(response, platform=self.platform, account_id=account.account_id)
        if error:
            raise error
        return self._decode(response, account)

    async def _access_token(self, account: Account) -> str:
        cached = self._access_tokens.get(account.account_id)
        if cached:
            return cached
        data = {
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "refresh_token": account.google_refresh_token,
            "grant_type": "refresh_token",
        }
        try:
            response = await self.session.post(TOKEN_URL, data=data)
        except httpx.TransportError as exc:
            raise transport_error(exc, platform=self.platform, account_id=account.account_id) from exc
        if response.status_code in {400, 401}:
            raise UpstreamAuthInvalid(
                f"Google rejected refresh token for {account.account_id}",
                platform=self.platform.value,
                account_id=account.account_id,
            )
        error = error_for_status(response, platform=self.platform, account_id=account.account_id)
        if error:
            raise error
        body = self._decode(response, account)
        token = body.get("access_token") if isinstance(body, dict) else None
        if not token:
            raise UpstreamUnavailable(
                f"Google token response for {account.account_id} has no access_token",
                platform=self.platform.value,
                account_id=account.account_id,
            )
        self._access_tokens[account.account_id] = token
        return token

    def _decode(self, response: httpx.Response, account: Account) -> Any:
        try:
            return response.json()
        except ValueError as exc:
            raise UpstreamUnavailable(
                f"Google returned an unreadable body for {account.account_id}: {exc}",
                platform=self.platform.value,
                account_id=account.account_id,
            ) from exc


def _funnels_by_campaign(rows: list[dict[str, Any]]) -> dict[str, dict[str, float]]:
    funnels: dict[str, dict[str, float]] = defaultdict(lambda: defaultdict(float))
    for row in rows:
        campaign_id = str((row.get("campaign") or {}).get("id", ""))
        name = (row.get("segments") or {}).get("conversionActionName", "")
        metrics = row.get("metrics") or {}
        conversions = float(metrics.get("allConversions", 0) or 0)
        for field_name in classify_conversion(name):
            funnels[campaign_id][field_name] += conversions
            if field_name == "reservations":
                funnels[campaign_id]["reservation_value"] += float(metrics.get("allConversionsValue", 0) or 0)
    return funnels


def _parse_campaign(row: dict[str, Any], funnels: dict[str, dict[str, float]]) -> CampaignMetric:
    campaign = row.get("campaign") or {}
    metrics = row.get("metrics") or {}
    campaign_id = str(campaign.get("id", ""))
    funnel = funnels.get(campaign_id, {})
    return CampaignMetric(
        campaign_id=campaign_id,
        campaign_name=campaign.get("name", ""),
        status=campaign.get("status", "UNKNOWN"),
        spend=int(metrics.get("costMicros", 0) or 0) / 1_000_000,
        impressions=int(metrics.get("impressions", 0) or 0),
        clicks=int(metrics.get("clicks", 0) or 0),
        conversions=float(metrics.get("conversions", 0) or 0),
        click_to_call=round(funnel.get("click_to_call", 0)),
        email_contacts=round(funnel.get("email_contacts", 0)),
        booking_step_1=round(funnel.get("booking_step_1", 0)),
        booking_step_2=round(funnel.get("booking_step_2", 0)),
        booking_step_3=round(funnel.get("booking_step_3", 0)),
        reservations=round(funnel.get("reservations", 0)),
        reservation_value=funnel.get("reservation_value", 0.0),
    )
