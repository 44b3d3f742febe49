"""Scan lifecycle: start, batch loop, cancel, progress and self-healing.

A scan is a queue of work plus a `ScanState` record. Each call to `handle()`
is one batch: it takes the site lock, consumes groups from the queue in
category order until the queue is empty or the batch budget runs out, then
releases the lock and either completes the scan or schedules the next batch.
A periodic health check re-dispatches batches that were lost.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Iterable

from .cache import StatusCache, cache_key
from .config import ScanConfig
from .constants import (
    EPOCH_DATE,
    MAINTENANCE_RETRY_SECONDS,
    QUEUE_DESCRIPTION_DELIMITER,
    STATUS_NOT_APPLICABLE,
    STATUS_REFRESH_RETRY_SECONDS,
)
from .errors import (
    AuthorizationError,
    InvalidScanTypeError,
    NoWorkFoundError,
    ScanAlreadyRunningError,
    ScanBusyError,
    StaleTokenError,
)
from .extractor import ReferenceExtractor, seed_results_from
from .lock import ScanLock
from .notify import LogNotifier, Notifier
from .queue import QueueEntry, QueueManager
from .redirects import RedirectCorrelator, RedirectStore
from .repository import ContentRepository
from .resources import ResourceMonitor
from .scheduler import (
    CONTINUE_JOB,
    HEALTH_CHECK_JOB,
    MAINTENANCE_JOB,
    STATUS_REFRESH_JOB,
    Scheduler,
    ThreadingScheduler,
    next_status_refresh_time,
)
from .state import ScanState, ScanStateStore
from .stats import StatsCollector
from .status import StatusChecker
from .storage import OptionStore, ReferenceIndex
from .types import (
    CATEGORY_LABELS,
    PROCESSING_ORDER,
    Entity,
    EntityKind,
    Progress,
    QueueCategory,
    Reference,
    ScanType,
    format_date,
    utc_now,
)
from .url import normalize


LOGGER = logging.getLogger(__name__)

_CATEGORY_KINDS = {
    QueueCategory.MENUS: EntityKind.MENU,
    QueueCategory.USERS: EntityKind.USER,
    QueueCategory.POSTS: EntityKind.POST,
    QueueCategory.TERMS: EntityKind.TERM,
}

_SCAN_LABELS = {
    ScanType.FULL_SCAN: "full scan",
    ScanType.CHECK_STATUS: "status check",
    ScanType.MAINTENANCE_CHECK_STATUS: "maintenance status check",
}


class BatchOutcome(str, Enum):
    LOCKED = "locked"
    IDLE = "idle"
    COMPLETED = "completed"
    SUSPENDED = "suspended"
    CONTINUED = "continued"
    CANCELLED = "cancelled"


@dataclass(slots=True)
class BatchResult:
    """What one call to `ScanOrchestrator.handle()` did."""

    outcome: BatchOutcome
    processed: int = 0
    remaining: int = 0
    errors: int = 0
    stats: dict[str, Any] = field(default_factory=dict)

    def to_json(self) -> dict[str, Any]:
        return {
            "outcome": self.outcome.value,
            "processed": self.processed,
            "remaining": self.remaining,
            "errors": self.errors,
            "stats": self.stats,
        }


class ScanOrchestrator:
    """Drive full scans, status scans and incremental updates for one site.

    Every collaborator is injectable. Anything left out is built from the
    config under `config.data_path`.
    """

    def __init__(
        self,
        config: ScanConfig,
        repository: ContentRepository,
        *,
        options: OptionStore | None = None,
        index: ReferenceIndex | None = None,
        queue: QueueManager | None = None,
        checker: StatusChecker | None = None,
        redirect_store: RedirectStore | None = None,
        scheduler: Scheduler | None = None,
        notifier: Notifier | None = None,
        monitor_factory: Callable[[], ResourceMonitor] | None = None,
        clock: Callable[[], datetime] = utc_now,
        token: str | None = None,
    ) -> None:
        self.config = config
        self.repository = repository
        self.site_id = config.current_site_id

        data_path = config.data_path
        data_path.mkdir(parents=True, exist_ok=True)
        self.options = options or OptionStore(data_path / "options.json")
        self.index = index or ReferenceIndex(data_path / "references.sqlite3")
        self.queue = queue or QueueManager(data_path / "queue", self.site_id)
        self.checker = checker or StatusChecker(config)
        self.scheduler: Scheduler = scheduler or ThreadingScheduler()
        self.notifier: Notifier = notifier or LogNotifier()
        self.stats = StatsCollector()
        self.correlator = RedirectCorrelator(config, redirect_store)
        self.extractor = ReferenceExtractor(
            config,
            repository,
            self.index,
            self.correlator,
            stats=self.stats,
        )
        self.state_store = ScanStateStore(self.options, self.site_id)
        self.lock = ScanLock(self.options, self.site_id, ttl_seconds=config.lock_ttl_seconds)
        self._monitor_factory = monitor_factory or (lambda: ResourceMonitor(config))
        self._clock = clock
        self.token = token

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _now(self) -> str:
        return format_date(self._clock())

    def _scan_cache(self, *, reset: bool = False) -> StatusCache:
        return StatusCache(
            self.options,
            cache_key("scan", self.site_id),
            self.checker,
            ttl_seconds=self.config.cache_ttl_seconds,
            clock=self._clock,
            reset=reset,
        )

    def _entity_cache(self, entity: Entity) -> StatusCache:
        return StatusCache(
            self.options,
            cache_key(f"scan_{entity.kind.value}", entity.site_id, entity.id),
            self.checker,
            ttl_seconds=self.config.cache_ttl_seconds,
            clock=self._clock,
        )

    def load_state(self) -> ScanState:
        return self.state_store.load()

    def can_start(self) -> bool:
        """True when no batch holds the lock and nothing is queued."""

        return not self.lock.is_locked() and not self.queue.has_work()

    # ------------------------------------------------------------------
    # Start
    # ------------------------------------------------------------------
    def start(
        self,
        scan_type: ScanType | str,
        *,
        user_id: int = -1,
        token: str | None = None,
        can_manage: bool = True,
    ) -> Progress:
        """Queue a new scan and dispatch its first batch.

        Raises InvalidScanTypeError, StaleTokenError, AuthorizationError,
        ScanAlreadyRunningError (ScanBusyError while a cancelled or finished
        scan's batch still holds the lock) or NoWorkFoundError. Nothing is
        changed when one of them is raised.
        """

        try:
            scan = ScanType(scan_type)
        except ValueError as exc:
            raise InvalidScanTypeError(f"Unknown scan type: {scan_type!r}") from exc
        if self.token is not None and token != self.token:
            raise StaleTokenError("The request token is missing or has expired.")
        if not can_manage:
            raise AuthorizationError("You are not allowed to start a scan.")

        if not self.can_start():
            if self.load_state().is_running:
                raise ScanAlreadyRunningError(
                    "There is already a scan running.",
                    progress=self.progress(),
                )
            if self.lock.is_locked():
                raise ScanBusyError(
                    "The previous scan is still finishing a batch. Try again shortly.",
                    progress=self.progress(),
                )
            LOGGER.warning("Clearing leftover queue from an earlier scan")
            self.queue.drain_all()

        queued = self._produce(scan)
        if queued == 0:
            raise self._no_work_error(scan)

        state = self.load_state()
        state.reset(scan, started_by=user_id, total=queued, now=self._now())
        self.state_store.save(state)

        if scan == ScanType.FULL_SCAN:
            removed = self.index.purge()
            LOGGER.info("Purged %d reference(s) before the full scan", removed)
            self.notifier.notify("info", "A full scan has started.")

        self._scan_cache(reset=True)
        LOGGER.info("Started %s with %d queued item(s)", _SCAN_LABELS[scan], queued)
        self._schedule_health_check()
        self._dispatch()
        return self.progress()

    def _produce(self, scan: ScanType) -> int:
        if scan == ScanType.FULL_SCAN:
            return self._produce_full_scan()
        urls = self.index.distinct_urls(only_unchecked=scan == ScanType.MAINTENANCE_CHECK_STATUS)
        return self.queue.push(QueueCategory.STATUSES, self._queueable(urls))

    def _produce_full_scan(self) -> int:
        queued = 0
        if self.config.scan_menus:
            queued += self.queue.push(
                QueueCategory.MENUS,
                self.repository.list_ids(EntityKind.MENU),
            )
        if self.config.scan_users:
            queued += self.queue.push(
                QueueCategory.USERS,
                self.repository.list_ids(EntityKind.USER),
            )
        if self.config.post_types:
            queued += self.queue.push(
                QueueCategory.POSTS,
                self.repository.list_ids(
                    EntityKind.POST,
                    subtypes=self.config.post_types,
                    statuses=self.config.post_statuses,
                ),
            )
        if self.config.taxonomies:
            queued += self.queue.push(
                QueueCategory.TERMS,
                self.repository.list_ids(EntityKind.TERM, subtypes=self.config.taxonomies),
            )
        return queued

    @staticmethod
    def _queueable(urls: Iterable[str]) -> list[str]:
        kept = []
        for url in urls:
            if QUEUE_DESCRIPTION_DELIMITER in url or "\n" in url or "\r" in url:
                LOGGER.debug("Not queueing URL with reserved characters: %r", url)
                continue
            kept.append(url)
        return kept

    @staticmethod
    def _no_work_error(scan: ScanType) -> NoWorkFoundError:
        if scan == ScanType.FULL_SCAN:
            return NoWorkFoundError(
                "The scan could not find any content to scan that matches your settings.",
                remedy="Check Settings",
            )
        if scan == ScanType.CHECK_STATUS:
            return NoWorkFoundError(
                "There are no URLs to check.",
                remedy="Run a full scan first",
            )
        return NoWorkFoundError("There are no unchecked URLs to check.")

    def _dispatch(self) -> None:
        self.scheduler.schedule(CONTINUE_JOB, self.config.continuation_delay_seconds, self.handle)

    def _schedule_health_check(self) -> None:
        self.scheduler.schedule(
            HEALTH_CHECK_JOB,
            self.config.health_check_seconds,
            self.health_check,
        )

    # ------------------------------------------------------------------
    # Batch loop
    # ------------------------------------------------------------------
    def handle(self) -> BatchResult:
        """Run one batch. Safe to call at any time from any trigger."""

        if not self.lock.acquire():
            LOGGER.debug("Batch skipped: another batch holds the lock")
            return BatchResult(BatchOutcome.LOCKED, remaining=self.queue.count())

        monitor = self._monitor_factory()
        monitor.start()
        batch_stats = StatsCollector()
        self.extractor.stats = batch_stats
        cache = self._scan_cache()
        processed = 0
        errors = 0
        cancelled = False
        lost = False
        exhausted = False

        try:
            for category in PROCESSING_ORDER:
                size = self.config.group_size_for(category)
                while True:
                    group = self.queue.peek_group(category, size)
                    if not group:
                        break
                    if group[0].is_sentinel:
                        self.queue.advance(category, group)
                        continue

                    self._set_currently(CATEGORY_LABELS[category])
                    for entry in group:
                        if not self._process_entry(category, entry, cache, batch_stats):
                            errors += 1
                    self.queue.advance(category, group)
                    processed += len(group)

                    if self._record_progress(len(group)).is_cancelled:
                        cancelled = True
                        break
                    if not self.lock.renew():
                        lost = True
                        break
                    if monitor.exceeded():
                        exhausted = True
                        break
                if cancelled or lost or exhausted:
                    break
        finally:
            self.lock.release()
            self.stats.merge(batch_stats)
            self.extractor.stats = self.stats

        remaining = self.queue.count()
        result = BatchResult(
            BatchOutcome.IDLE,
            processed=processed,
            remaining=remaining,
            errors=errors,
            stats=batch_stats.to_json(),
        )

        if cancelled:
            LOGGER.info("Scan was cancelled; stopping after %d item(s)", processed)
            self.queue.drain_all()
            cache.clear()
            result.outcome = BatchOutcome.CANCELLED
        elif lost:
            LOGGER.warning(
                "Scan lock expired after %d item(s); leaving the queue to its new holder",
                processed,
            )
            result.outcome = BatchOutcome.LOCKED
        elif remaining == 0:
            self.queue.drain_all()
            if processed or self.load_state().is_running:
                self.complete()
                result.outcome = BatchOutcome.COMPLETED
        elif exhausted:
            LOGGER.info(
                "Batch budget used after %d item(s) in %.1fs; %d left",
                processed,
                monitor.elapsed_seconds,
                remaining,
            )
            self.scheduler.schedule(CONTINUE_JOB, self.config.resume_delay_seconds, self.handle)
            result.outcome = BatchOutcome.SUSPENDED
        else:
            self._dispatch()
            result.outcome = BatchOutcome.CONTINUED
        return result

    def _process_entry(
        self,
        category: QueueCategory,
        entry: QueueEntry,
        cache: StatusCache,
        stats: StatsCollector,
    ) -> bool:
        try:
            if category == QueueCategory.STATUSES:
                self._check_status(entry.value, cache, stats)
            else:
                self._scan_entity(_CATEGORY_KINDS[category], entry, cache, stats)
        except Exception as exc:
            self._record_entry_error(category, entry, exc, stats)
            return False
        return True

    def _scan_entity(
        self,
        kind: EntityKind,
        entry: QueueEntry,
        cache: StatusCache,
        stats: StatsCollector,
    ) -> None:
        entity = self.repository.get(kind, int(entry.value))
        if entity is None:
            LOGGER.debug("%s %s no longer exists; skipping", kind.value, entry.value)
            stats.increment("entities_missing")
            return
        self.extractor.scan(entity, cache=cache)

    def _check_status(self, url: str, cache: StatusCache, stats: StatsCollector) -> None:
        result = cache.get_or_check(url)
        if result.attempts:
            stats.record_status(result)
        else:
            stats.increment("status_cache_hits")
        updated = self.index.update_status(result)
        LOGGER.debug("Status %s for %s (%d reference(s))", result.status_code, url, updated)

    def _record_entry_error(
        self,
        category: QueueCategory,
        entry: QueueEntry,
        exc: Exception,
        stats: StatsCollector,
    ) -> None:
        stats.record_error(category.value, exc)
        LOGGER.exception("Failed to process %s item %s", category.value, entry.value)

    def _set_currently(self, label: str) -> None:
        def _update(current):
            state = ScanState.from_json(current)
            state.currently = label
            return state.to_json()

        self.options.update(self.state_store.key, _update)

    def _record_progress(self, done: int) -> ScanState:
        """Add `done` items to the stored progress and return the stored state.

        The state is re-read so a cancel issued by another caller is seen.
        """

        updated: ScanState | None = None

        def _update(current):
            nonlocal updated
            state = ScanState.from_json(current)
            if not state.is_cancelled:
                state.set_progress(state.progress + done)
            updated = state
            return state.to_json()

        self.options.update(self.state_store.key, _update)
        if updated is None:
            raise RuntimeError(f"Progress update for {self.state_store.key} was not applied")
        return updated

    # ------------------------------------------------------------------
    # Completion, cancel and progress
    # ------------------------------------------------------------------
    def complete(self) -> ScanState:
        """Finalize the current scan once its queue is empty."""

        state = self.load_state()
        if not state.end_date:
            state.end_date = self._now()
        state.currently = ""
        if state.type == ScanType.FULL_SCAN.value and not state.is_cancelled:
            state.needed = False
        self.state_store.save(state)

        self.scheduler.cancel(HEALTH_CHECK_JOB)
        self.scheduler.cancel(CONTINUE_JOB)
        self._scan_cache().clear()

        label = _SCAN_LABELS.get(ScanType(state.type), "scan") if state.type else "scan"
        if state.is_cancelled:
            self.notifier.notify("warning", f"The {label} was cancelled by user {state.cancelled_by}.")
        else:
            self.notifier.notify("success", f"The {label} has completed.")
            LOGGER.info(
                "Completed %s: %d item(s), stats=%s",
                label,
                state.progress_total,
                self.stats.to_json(),
            )
            if state.type != ScanType.MAINTENANCE_CHECK_STATUS.value:
                self.schedule_status_refresh()
        return state

    def cancel(self, *, user_id: int = -1, notes: str | None = None) -> Progress:
        """Stop the running scan at its next group boundary and drop its queue."""

        state = self.load_state()
        if not state.is_running:
            LOGGER.info("Cancel requested but no scan is running")
            return self.progress()

        self.queue.drain_all()
        self.scheduler.cancel(CONTINUE_JOB)
        self.scheduler.cancel(HEALTH_CHECK_JOB)

        state.cancelled_by = user_id
        state.end_date = self._now()
        state.currently = ""
        if notes:
            state.notes.append(notes)
        if state.type == ScanType.FULL_SCAN.value:
            state.needed = True
        self.state_store.save(state)
        self._scan_cache().clear()

        label = _SCAN_LABELS.get(ScanType(state.type), "scan") if state.type else "scan"
        self.notifier.notify("warning", f"The {label} was cancelled by user {user_id}.")
        LOGGER.info("Cancelled %s at %d/%d", label, state.progress, state.progress_total)
        return self.progress()

    def progress(self) -> Progress:
        state = self.load_state()
        total = state.progress_total
        done = min(state.progress, total)
        if total:
            percent = round(done / total * 100, 1)
        else:
            percent = 100.0 if state.is_complete else 0.0
        return Progress(
            done=done,
            total=total,
            remaining=max(0, total - done),
            percent=percent,
            start_date=state.start_date,
            end_date=state.end_date,
            currently=state.currently,
            type=state.type,
            is_running=state.is_running,
        )

    def health_check(self) -> bool:
        """Re-dispatch a scan whose batch chain was lost; True when it dispatched."""

        if not self.queue.has_work():
            self.scheduler.cancel(HEALTH_CHECK_JOB)
            if self.load_state().is_running and not self.lock.is_locked():
                LOGGER.warning("Found a running scan with an empty queue; completing it")
                self.complete()
            return False

        self._schedule_health_check()
        if self.lock.is_locked():
            LOGGER.debug("Health check: a batch is running")
            return False
        LOGGER.info("Health check: re-dispatching the scan")
        self._dispatch()
        return True

    def mark_needed(self) -> None:
        """Flag that a full scan is needed, e.g. after an extraction setting changed."""

        state = self.load_state()
        if not state.needed:
            state.needed = True
            self.state_store.save(state)
            self.notifier.notify(
                "warning",
                "Your settings changed. A full scan is needed to update references.",
                remedy="Run a full scan",
            )

    def apply_config(self, config: ScanConfig) -> bool:
        """Swap in a new config; returns True when it requires a new full scan."""

        changed = config.extraction_signature() != self.config.extraction_signature()
        self.config = config
        self.extractor.config = config
        self.correlator.config = config
        if changed:
            self.mark_needed()
        return changed

    # ------------------------------------------------------------------
    # Incremental updates
    # ------------------------------------------------------------------
    def on_entity_changed(self, entity: Entity) -> list[Reference]:
        """Rescan one saved entity without live status checks.

        Statuses come from the entity's previous references when fresh.
        Everything else is stored with the epoch date and a maintenance status
        check is scheduled to fill it in.
        """

        if entity.is_revision:
            return []

        cache = self._entity_cache(entity)
        previous = self.index.references_from(entity.kind, entity.id, entity.site_id)
        cache.seed(seed_results_from(previous))
        try:
            references = self.extractor.scan(entity, cache=cache, defer_status=True)
        finally:
            cache.clear()

        if self.config.check_status_codes and any(
            ref.to_url_status != STATUS_NOT_APPLICABLE and ref.to_url_status_date == EPOCH_DATE
            for ref in references
        ):
            self.schedule_maintenance()
        return references

    def on_entity_deleted(self, entity: Entity) -> int:
        """Drop a deleted entity's references and rescan whatever pointed at it.

        Returns the number of referring entities rescanned.
        """

        referrers = [
            (ref.from_kind, ref.from_id)
            for ref in self.index.references_to(entity.id, entity.site_id)
            if ref.from_site_id == self.site_id
        ]
        self.index.delete_outgoing(entity.kind, entity.id, entity.site_id)
        return self._rescan_sources(referrers, skip=(entity.kind, entity.id))

    def on_redirect_changed(self, rule_id: int, site_id: int | None = None) -> int:
        """Rescan entities affected by a redirect rule that was added, edited or removed."""

        site_id = self.site_id if site_id is None else site_id
        affected = [
            (ref.from_kind, ref.from_id)
            for ref in self.index.references_with_redirect(rule_id, site_id)
            if ref.from_site_id == self.site_id
        ]
        for rule in self.correlator.rules():
            if rule.id != rule_id or rule.site_id != site_id:
                continue
            for raw in (rule.url, rule.action_data):
                if rule.regex or not raw or "$" in raw:
                    continue
                target = normalize(
                    raw,
                    sites=self.config.sites,
                    current_site_id=site_id,
                )
                if not target.is_local:
                    continue
                entity = self.repository.resolve_url(target.absolute_url)
                if entity is not None:
                    affected.append((entity.kind, entity.id))
        return self._rescan_sources(affected)

    def _rescan_sources(
        self,
        sources: Iterable[tuple[EntityKind, int]],
        skip: tuple[EntityKind, int] | None = None,
    ) -> int:
        grouped: dict[EntityKind, set[int]] = defaultdict(set)
        for kind, entity_id in sources:
            if (kind, entity_id) != skip:
                grouped[kind].add(entity_id)

        rescanned = 0
        for kind, ids in grouped.items():
            for entity_id in sorted(ids):
                entity = self.repository.get(kind, entity_id)
                if entity is None:
                    self.index.delete_outgoing(kind, entity_id, self.site_id)
                    continue
                self.on_entity_changed(entity)
                rescanned += 1
        if rescanned:
            LOGGER.info("Rescanned %d referring entit(ies)", rescanned)
        return rescanned

    # ------------------------------------------------------------------
    # Maintenance and periodic status refresh
    # ------------------------------------------------------------------
    def schedule_maintenance(self, delay_seconds: float | None = None) -> None:
        if delay_seconds is None:
            delay_seconds = self.config.maintenance_delay_seconds
        self.scheduler.schedule(MAINTENANCE_JOB, delay_seconds, self.run_maintenance)

    def run_maintenance(self) -> bool:
        """Check the statuses that incremental updates left unchecked."""

        try:
            self.start(ScanType.MAINTENANCE_CHECK_STATUS)
        except ScanAlreadyRunningError:
            LOGGER.info(
                "Maintenance status check postponed by %ss: a scan is running",
                MAINTENANCE_RETRY_SECONDS,
            )
            self.schedule_maintenance(MAINTENANCE_RETRY_SECONDS)
            return False
        except NoWorkFoundError:
            LOGGER.debug("Maintenance status check: nothing to check")
            return False
        return True

    def schedule_status_refresh(self) -> datetime | None:
        """Schedule the next periodic status refresh; None when it is off."""

        now = self._clock()
        when = next_status_refresh_time(self.config.status_refresh, now)
        if when is None:
            self.scheduler.cancel(STATUS_REFRESH_JOB)
            return None
        self.scheduler.schedule(
            STATUS_REFRESH_JOB,
            (when - now).total_seconds(),
            self.run_status_refresh,
        )
        LOGGER.debug("Next status refresh at %s", format_date(when))
        return when

    def run_status_refresh(self) -> bool:
        """Periodic job: re-check every URL once a full scan has completed."""

        if not self.load_state().has_full_scan_ran():
            LOGGER.info("Status refresh skipped: no completed full scan")
            self.schedule_status_refresh()
            return False
        try:
            self.start(ScanType.CHECK_STATUS)
        except ScanAlreadyRunningError:
            LOGGER.info("Status refresh postponed by %ss: a scan is running", STATUS_REFRESH_RETRY_SECONDS)
            self.scheduler.schedule(
                STATUS_REFRESH_JOB,
                STATUS_REFRESH_RETRY_SECONDS,
                self.run_status_refresh,
            )
            return False
        except NoWorkFoundError:
            self.schedule_status_refresh()
            return False
        return True

    def next_status_refresh(self) -> datetime | None:
        return next_status_refresh_time(self.config.status_refresh, self._clock())

    def close(self) -> None:
        self.checker.close()
        self.index.close()


__all__ = ["BatchOutcome", "BatchResult", "ScanOrchestrator"]
