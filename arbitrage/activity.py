"""Per-run activity tracking and the summary analytics derived from it.

Phases emit :class:`ActivityEvent` records into the run's collector as they
work. Events stay in memory until :meth:`ActivityCollector.finalize`, which
writes them in one batch together with the computed summary.
"""
from __future__ import annotations

import logging
import time
from collections import Counter
from datetime import UTC, datetime
from typing import Any, Awaitable, Callable

from arbitrage.schemas import (
    ActivityEvent,
    ActivityFunnel,
    ActivitySummary,
    ActivityTiming,
    ApiMetrics,
    PhaseTiming,
    Rejections,
    SourcesDiscovered,
)

log = logging.getLogger(__name__)

PHASES = ("signal_hunter", "global_vetting", "gap_analysis", "report_generation")


def _ms(start: datetime, end: datetime) -> int:
    return max(0, int((end - start).total_seconds() * 1000))


def _plural(n: int, singular: str, plural: str | None = None) -> str:
    return singular if n == 1 else (plural or f"{singular}s")


class ActivityCollector:
    def __init__(
        self,
        run_id: str,
        insert_activities: Callable[[list[ActivityEvent]], None] | None = None,
        update_summary: Callable[[str, ActivitySummary], None] | None = None,
    ):
        self.run_id = run_id
        self.events: list[ActivityEvent] = []
        self.started_at = datetime.now(UTC)
        self._insert_activities = insert_activities
        self._update_summary = update_summary
        self._finalized = False

    @property
    def finalized(self) -> bool:
        return self._finalized

    def emit(self, phase: str, event_type: str, **fields: Any) -> ActivityEvent:
        event = ActivityEvent(run_id=self.run_id, phase=phase, event_type=event_type, **fields)
        self.events.append(event)
        return event

    def _count(self, event_type: str, phase: str | None = None) -> int:
        return sum(
            1 for e in self.events
            if e.event_type == event_type and (phase is None or e.phase == phase)
        )

    # -----------------------------------------------------------------------
    # Summary
    # -----------------------------------------------------------------------

    def _timing(self) -> ActivityTiming:
        phase_timings: dict[str, PhaseTiming] = {}
        for phase in PHASES:
            phase_events = [e for e in self.events if e.phase == phase]
            if not phase_events:
                continue
            started = next((e.timestamp for e in phase_events if e.event_type == "phase_started"), None)
            started = started or phase_events[0].timestamp
            completed = [e.timestamp for e in phase_events if e.event_type == "phase_completed"]
            ended = completed[-1] if completed else phase_events[-1].timestamp
            phase_timings[phase] = PhaseTiming(
                started_at=started, ended_at=ended, duration_ms=_ms(started, ended),
            )
        total = _ms(self.started_at, max(e.timestamp for e in self.events)) if self.events else 0
        return ActivityTiming(total_duration_ms=total, phase_timings=phase_timings)

    def _funnel(self) -> tuple[ActivityFunnel, Rejections]:
        found = self._count("signal_found", "signal_hunter")
        at_vetting = self._count("signal_rejected", "global_vetting") + self._count("item_filtered", "global_vetting")
        at_gap = self._count("item_filtered", "gap_analysis")
        low_opportunity = sum(
            1 for e in self.events
            if e.event_type == "item_filtered" and e.phase == "report_generation"
            and "opportunity" in (e.rejection_reason or "").lower()
        )
        vetted = max(0, found - at_vetting)
        analyzed = max(0, vetted - at_gap)
        funnel = ActivityFunnel(
            signals_found=found,
            signals_vetted=vetted,
            signals_analyzed=analyzed,
            policies_reported=self._count("signal_found", "report_generation"),
        )
        return funnel, Rejections(at_vetting=at_vetting, at_gap_analysis=at_gap, low_opportunity=low_opportunity)

    def _api_metrics(self) -> ApiMetrics:
        return ApiMetrics(
            total_calls=self._count("query_sent"),
            cache_hits=self._count("cache_hit"),
            cache_misses=self._count("cache_miss"),
            total_tokens_used=sum(e.tokens_used or 0 for e in self.events),
        )

    def _sources(self) -> SourcesDiscovered:
        found = [e for e in self.events if e.event_type == "evidence_found"]
        by_type = Counter(str(e.metadata.get("source_type") or "unknown") for e in found)
        by_country = Counter(e.target_country or "unknown" for e in found)
        return SourcesDiscovered(total=len(found), by_type=dict(by_type), by_country=dict(by_country))

    def _outcome(self, funnel: ActivityFunnel) -> tuple[str, str]:
        errors = [e for e in self.events if e.event_type == "api_error"]
        if errors:
            message = errors[-1].metadata.get("error") or "Unknown error"
            return "error", f"Pipeline encountered an error: {message}"
        if funnel.policies_reported > 0:
            n = funnel.policies_reported
            return "policies_found", f"Found {n} policy {_plural(n, 'implementation')} worth reporting."
        if funnel.signals_found == 0:
            return "no_implementations", (
                "No implementations of this policy concept were found in the selected countries. "
                "Try expanding your search to more countries or refining your policy description."
            )
        if funnel.signals_vetted == 0:
            n = funnel.signals_found
            return "no_evidence", (
                f"Found {n} potential {_plural(n, 'signal')}, but none passed evidence quality "
                "thresholds. The sources may lack sufficient documentation of outcomes."
            )
        if funnel.signals_analyzed == 0:
            n = funnel.signals_vetted
            return "no_evidence", (
                f"Found {n} vetted {_plural(n, 'policy', 'policies')}, but none had sufficient data "
                "for gap analysis."
            )
        n = funnel.signals_analyzed
        return "no_evidence", (
            f"Analyzed {n} {_plural(n, 'policy', 'policies')}, but none represented high-value "
            "opportunities (either already exists or low success evidence)."
        )

    def get_summary(self) -> ActivitySummary:
        """Recompute the summary from the buffered events. Safe to call any number of times."""
        funnel, rejections = self._funnel()
        outcome, reason = self._outcome(funnel)
        return ActivitySummary(
            timing=self._timing(),
            funnel=funnel,
            api_metrics=self._api_metrics(),
            sources_discovered=self._sources(),
            rejections=rejections,
            outcome=outcome,
            outcome_reason=reason,
        )

    def finalize(self) -> ActivitySummary | None:
        """Persist all events and the summary. Only the first call writes."""
        if self._finalized:
            log.debug("Activity for run %s already finalized", self.run_id)
            return None
        self._finalized = True
        summary = self.get_summary()
        if self.events and self._insert_activities is not None:
            self._insert_activities(list(self.events))
        if self._update_summary is not None:
            self._update_summary(self.run_id, summary)
        log.info(
            "Run %s activity: %d events, outcome=%s", self.run_id, len(self.events), summary.outcome,
        )
        return summary


async def tracked_search(
    activity: ActivityCollector,
    phase: str,
    call: Callable[[], Awaitable[Any]],
    *,
    query_text: str,
    target_country: str | None = None,
    item_name: str | None = None,
    metadata: dict[str, Any] | None = None,
) -> Any:
    """Await a search call, recording ``query_sent`` and the cache outcome around it."""
    activity.emit(
        phase, "query_sent",
        query_text=query_text, target_country=target_country, item_name=item_name,
        metadata=metadata or {},
    )
    start = time.monotonic()
    response = await call()
    usage = getattr(response, "usage", None)
    from_cache = bool(getattr(response, "from_cache", False))
    activity.emit(
        phase, "cache_hit" if from_cache else "cache_miss",
        query_text=query_text, target_country=target_country, item_name=item_name,
        api_call_duration_ms=int((time.monotonic() - start) * 1000),
        tokens_used=usage.total_tokens if usage else None,
        cache_hit=from_cache,
    )
    return response
