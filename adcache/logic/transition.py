"""Retire current-cache rows once their period rolls over."""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Mapping

from adcache.db.store import SqlPeriodStore, run_sync
from adcache.errors import CacheEngineError
from adcache.logic.archive import TRANSITION_ARCHIVE, ensure_summary
from adcache.logic.periods import Granularity, Period, current_id, parse_period
from adcache.logic.smart_cache import CURRENT_CACHE, CachedSnapshot, SmartCache
from adcache.utils.dates import now_in_tz

logger = logging.getLogger(__name__)


class TransitionState(str, enum.Enum):
    UNKNOWN = "unknown"
    ALIGNED = "aligned"
    TRANSITIONED = "transitioned"


@dataclass(slots=True)
class TransitionResult:
    granularity: Granularity
    live_id: str
    state: TransitionState = TransitionState.ALIGNED
    archived: int = 0
    already_archived: int = 0
    removed: int = 0
    errors: int = 0
    warmed: int = 0
    outgoing: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "granularity": self.granularity.value,
            "live_id": self.live_id,
            "state": self.state.value,
            "archived": self.archived,
            "already_archived": self.already_archived,
            "removed": self.removed,
            "errors": self.errors,
            "warmed": self.warmed,
            "outgoing": self.outgoing,
        }


class PeriodTransitionHandler:
    def __init__(
        self,
        store: SqlPeriodStore,
        cache: SmartCache | None = None,
        *,
        clock: Callable[[], datetime] = now_in_tz,
    ) -> None:
        self.store = store
        self.cache = cache
        self.clock = clock
        self.states = {Granularity.MONTH: TransitionState.UNKNOWN, Granularity.WEEK: TransitionState.UNKNOWN}

    async def handle(self, granularity: Granularity, *, warm: bool = False) -> TransitionResult:
        granularity = Granularity(granularity)
        now = self.clock()
        result = TransitionResult(granularity=granularity, live_id=current_id(granularity, now))
        rows = await run_sync(
            self.store.select,
            CURRENT_CACHE,
            {"granularity": granularity.value, "period_id__ne": result.live_id},
        )
        retired: set[tuple[str, str]] = set()
        for row in rows:
            snapshot = CachedSnapshot.from_row(row)
            context = f"{snapshot.account_id}/{snapshot.platform.value}/{snapshot.period_id}"
            try:
                period = parse_period(snapshot.period_id)
                if not period.has_ended(now):
                    logger.warning("Cache row %s is ahead of live period %s, leaving it", context, result.live_id)
                    continue
                written, deleted = await run_sync(self._retire, snapshot, period, now)
            except (CacheEngineError, ValueError) as exc:
                result.errors += 1
                logger.error("Transition failed for %s: %s", context, exc)
                continue
            if written:
                result.archived += 1
            else:
                result.already_archived += 1
            result.removed += deleted
            result.outgoing.append(context)
            retired.add((snapshot.account_id, snapshot.platform.value))

        if retired:
            result.state = TransitionState.TRANSITIONED
            logger.info(
                "%s transition to %s: %s archived, %s already archived, %s removed, %s errors",
                granularity.value,
                result.live_id,
                result.archived,
                result.already_archived,
                result.removed,
                result.errors,
            )
        elif not result.errors:
            result.state = TransitionState.ALIGNED
        else:
            result.state = self.states.get(granularity, TransitionState.UNKNOWN)
        self.states[granularity] = result.state

        if warm and retired and self.cache is not None:
            result.warmed = await self._warm(granularity, sorted(retired))
        return result

    def _retire(self, snapshot: CachedSnapshot, period: Period, now: datetime) -> tuple[bool, int]:
        written = ensure_summary(
            self.store,
            snapshot.account_id,
            snapshot.platform,
            period,
            snapshot.payload,
            data_source=TRANSITION_ARCHIVE,
            now=now,
        )
        deleted = self.store.delete_where(
            CURRENT_CACHE,
            {
                "account_id": snapshot.account_id,
                "platform": snapshot.platform.value,
                "period_id": snapshot.period_id,
                "granularity": snapshot.granularity.value,
            },
        )
        return written, deleted

    async def _warm(self, granularity: Granularity, keys: list[tuple[str, str]]) -> int:
        warmed = 0
        for account_id, platform in keys:
            try:
                outcome = await self.cache.get(account_id, platform, granularity=granularity)
            except (CacheEngineError, ValueError) as exc:
                logger.warning("Could not warm %s/%s after transition: %s", account_id, platform, exc)
                continue
            if outcome.error is None:
                warmed += 1
        return warmed

    async def handle_transition(self, *, warm: bool = False) -> Mapping[str, TransitionResult]:
        """Run the monthly then the weekly transition."""
        results = {}
        for granularity in (Granularity.MONTH, Granularity.WEEK):
            results[granularity.value] = await self.handle(granularity, warm=warm)
        return results
