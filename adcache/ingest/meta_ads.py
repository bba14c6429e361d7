"""Meta Marketing API insights source."""

from __future__ import annotations

import json
import logging
import os
from datetime import date
from typing import Any, Iterable

import httpx

from adcache.errors import MetricsSourceError, UpstreamAuthInvalid, UpstreamRateLimited, UpstreamUnavailable
from adcache.ingest.base import error_for_status, transport_error
from adcache.ingest.models import Account, CampaignMetric, Platform
from adcache.utils.rate_limit import RateLimiter
from adcache.utils.retry import retry_async

logger = logging.getLogger(__name__)

META_API_VERSION = os.environ.get("META_API_VERSION", "v18.0")
META_GRAPH_URL = f"https://graph.facebook.com/{META_API_VERSION}"
INSIGHT_FIELDS = "campaign_id,campaign_name,spend,impressions,clicks,actions,action_values"

AUTH_ERROR_CODES = {102, 190}
RATE_LIMIT_ERROR_CODES = {4, 17, 32, 613, 80004}

# Each funnel stage maps to a preferred action type and the pixel duplicate used when it is absent.
FUNNEL_ACTIONS = {
    "booking_step_1": ("omni_search", "offsite_conversion.fb_pixel_search"),
    "booking_step_2": ("omni_view_content", "offsite_conversion.fb_pixel_view_content"),
    "booking_step_3": ("omni_initiated_checkout", "offsite_conversion.fb_pixel_initiate_checkout"),
    "reservations": ("omni_purchase", "offsite_conversion.fb_pixel_purchase"),
}
CALL_ACTIONS = ("click_to_call_call_confirm",)
LEAD_ACTIONS = ("lead", "onsite_conversion.lead_grouped")


class MetaAdsSource:
    platform = Platform.META

    def __init__(
        self,
        *,
        session: httpx.AsyncClient | None = None,
        rate_limiter: RateLimiter | None = None,
    ) -> None:
        self.session = session or httpx.AsyncClient(timeout=30.0)
        self._rate_limiter = rate_limiter or RateLimiter()

    async def close(self) -> None:
        await self.session.aclose()

    async def fetch(self, account: Account, start: date, end: date) -> list[CampaignMetric]:
        if not account.supports(Platform.META):
            raise UpstreamAuthInvalid(
                f"Account {account.account_id} has no Meta credentials",
                platform=self.platform.value,
                account_id=account.account_id,
            )
        ad_account = _normalize_ad_account(account.meta_ad_account_id or "")
        params = {
            "level": "campaign",
            "time_range": json.dumps({"since": start.isoformat(), "until": end.isoformat()}),
            "fields": INSIGHT_FIELDS,
            "limit": 500,
            "access_token": account.meta_access_token,
        }
        rows = await self._paginate(account, f"{META_GRAPH_URL}/act_{ad_account}/insights", params)
        statuses = await self._campaign_statuses(account, ad_account)
        metrics = [parse_insight(row, statuses.get(str(row.get("campaign_id")))) for row in rows]
        logger.info(
            "Fetched %s Meta campaigns for %s (%s to %s)", len(metrics), account.account_id, start, end
        )
        return metrics

    async def _campaign_statuses(self, account: Account, ad_account: str) -> dict[str, str]:
        params = {"fields": "id,effective_status", "limit": 500, "access_token": account.meta_access_token}
        rows = await self._paginate(account, f"{META_GRAPH_URL}/act_{ad_account}/campaigns", params)
        return {str(row["id"]): row.get("effective_status", "UNKNOWN") for row in rows if "id" in row}

    async def _paginate(self, account: Account, url: str, params: dict[str, Any]) -> list[dict[str, Any]]:
        rows: list[dict[str, Any]] = []
        next_url: str | None = url
        next_params: dict[str, Any] | None = params
        while next_url:
            data = await retry_async(self._get_json)(account, next_url, next_params)
            rows.extend(data.get("data", []))
            # Paging links already carry every query parameter.
            next_url = (data.get("paging") or {}).get("next")
            next_params = None
        return rows

    async def _get_json(self, account: Account, url: str, params: dict[str, Any] | None) -> dict[str, Any]:
        await self._rate_limiter.wait_for(account.meta_ad_account_id or account.account_id)
        try:
            response = await self.session.get(url, params=params)
        except httpx.TransportError as exc:
            raise transport_error(exc, platform=self.platform, account_id=account.account_id) from exc
        if response.status_code >= 400:
            raise _meta_error(response, account.account_id)
        try:
            return response.json()
        except ValueError as exc:
            raise UpstreamUnavailable(
                f"Meta returned an unreadable body for {account.account_id}: {exc}",
                platform=self.platform.value,
                account_id=account.account_id,
            ) from exc


def _normalize_ad_account(ad_account_id: str) -> str:
    return ad_account_id[4:] if ad_account_id.startswith("act_") else ad_account_id


def _meta_error(response: httpx.Response, account_id: str) -> MetricsSourceError:
    try:
        error = response.json().get("error") or {}
    except ValueError:
        error = {}
    code = error.get("code")
    message = error.get("message") or f"HTTP {response.status_code}"
    if code in AUTH_ERROR_CODES:
        return UpstreamAuthInvalid(f"Meta rejected token: {message}", platform="meta", account_id=account_id)
    if code in RATE_LIMIT_ERROR_CODES:
        return UpstreamRateLimited(f"Meta rate limit: {message}", platform="meta", account_id=account_id)
    return error_for_status(response, platform=Platform.META, account_id=account_id) or MetricsSourceError(
        message, platform="meta", account_id=account_id
    )


def _action_map(actions: Iterable[dict[str, Any]] | None) -> dict[str, float]:
    result: dict[str, float] = {}
    for action in actions or []:
        action_type = str(action.get("action_type", "")).lower()
        try:
            result[action_type] = float(action.get("value", 0) or 0)
        except (TypeError, ValueError):
            logger.debug("Ignoring non-numeric value for action %s", action_type)
    return result


def _pick(values: dict[str, float], preferred: str, fallback: str) -> float:
    if preferred in values:
        return values[preferred]
    return values.get(fallback, 0.0)


def parse_insight(row: dict[str, Any], status: str | None = None) -> CampaignMetric:
    actions = _action_map(row.get("actions"))
    action_values = _action_map(row.get("action_values"))
    funnel = {name: int(_pick(actions, *types)) for name, types in FUNNEL_ACTIONS.items()}
    click_to_call = int(sum(actions.get(name, 0.0) for name in CALL_ACTIONS))
    email_contacts = int(sum(actions.get(name, 0.0) for name in LEAD_ACTIONS))
    return CampaignMetric(
        campaign_id=str(row.get("campaign_id", "")),
        campaign_name=row.get("campaign_name", ""),
        status=status or "UNKNOWN",
        spend=float(row.get("spend", 0) or 0),
        impressions=int(row.get("impressions", 0) or 0),
        clicks=int(row.get("clicks", 0) or 0),
        conversions=float(click_to_call + email_contacts + funnel["reservations"]),
        click_to_call=click_to_call,
        email_contacts=email_contacts,
        reservation_value=_pick(action_values, *FUNNEL_ACTIONS["reservations"]),
        **funnel,
    )
