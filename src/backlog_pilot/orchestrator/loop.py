"""Timer-driven orchestrator loop: gates, scheduling and item state machine."""

from __future__ import annotations

import logging
import threading
from dataclasses import replace
from datetime import timedelta

from backlog_pilot.orchestrator.cancellation import CancellationToken
from backlog_pilot.orchestrator.gates import (
    SystemClock,
    is_budget_exhausted,
    is_in_quiet_hours,
    roll_over_daily_budget,
)
from backlog_pilot.orchestrator.models import (
    CycleStopReason,
    CycleSummary,
    ExecutionOutcome,
    ExecutionResponse,
    ItemRunSummary,
    OrchestratorSettings,
    OrchestratorState,
    OrchestratorStats,
    TransformationType,
    WorkItem,
    WorkItemStatus,
)
from backlog_pilot.orchestrator.pipeline import TransformationPipeline
from backlog_pilot.orchestrator.ports import Clock, SettingsRepository, WorkItemRepository
from backlog_pilot.orchestrator.resolver import DependencyResolver
from backlog_pilot.orchestrator.state import OrchestratorStateMachine

logger = logging.getLogger(__name__)

DEFAULT_SHUTDOWN_TIMEOUT_SECONDS = 30.0
_FALLBACK_INTERVAL_SECONDS = 60.0


class OrchestratorLoop:
    """Advance ready work items one phase at a time on a fixed interval.

    At most one cycle runs at a time. A cycle that is requested while another is
    in flight is skipped, not queued. ``run_cycle`` can be called directly by a
    host that wants exactly one cycle without the timer thread.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        resolver: DependencyResolver,
        pipeline: TransformationPipeline,
        work_items: WorkItemRepository,
        settings: SettingsRepository,
        clock: Clock | None = None,
        shutdown_timeout_seconds: float = DEFAULT_SHUTDOWN_TIMEOUT_SECONDS,
    ) -> None:
        self.resolver = resolver
        self.pipeline = pipeline
        self.work_items = work_items
        self.settings = settings
        self.clock = clock or SystemClock()
        self.shutdown_timeout_seconds = shutdown_timeout_seconds

        self._machine = OrchestratorStateMachine()
        self._guard = threading.BoundedSemaphore(1)
        self._lifecycle_lock = threading.Lock()
        self._wake = threading.Event()
        self._cancellation = CancellationToken()
        self._thread: threading.Thread | None = None

    @property
    def state(self) -> OrchestratorState:
        return self._machine.state

    @property
    def stats(self) -> OrchestratorStats:
        return self._machine.stats()

    @property
    def cancellation(self) -> CancellationToken:
        return self._cancellation

    def start(self) -> None:
        """Start the timer thread; the first cycle runs immediately."""

        with self._lifecycle_lock:
            if not self._machine.transition(OrchestratorState.STARTING):
                logger.info("Orchestrator already running (state=%s)", self.state.value)
                return
            self._cancellation = CancellationToken()
            self._wake.clear()
            self._machine.reset_stats(self.clock.utc_now())
            try:
                settings = self.settings.get()
                if roll_over_daily_budget(settings, self.clock.utc_now().date()):
                    self.settings.save(settings)
                self._publish_budget(settings)
            except Exception:
                logger.exception("Orchestrator failed to initialize")
                self._machine.force(OrchestratorState.STOPPED)
                raise

            self._machine.transition(OrchestratorState.IDLE)
            self._thread = threading.Thread(
                target=self._timer_loop,
                daemon=True,
                name="backlog-orchestrator",
            )
            self._thread.start()
            logger.info("Orchestrator started")

    def stop(self) -> None:
        """Cancel in-flight work, wait a bounded time and always end Stopped."""

        with self._lifecycle_lock:
            if not self._machine.is_running():
                return
            self._machine.transition(OrchestratorState.STOPPING)
            try:
                self._cancellation.cancel()
                self._wake.set()
                thread = self._thread
                if thread is not None and thread is not threading.current_thread():
                    thread.join(timeout=self.shutdown_timeout_seconds)
                    if thread.is_alive():
                        logger.warning(
                            "Orchestrator cycle did not finish within %.1fs; stopping anyway",
                            self.shutdown_timeout_seconds,
                        )
            except Exception:
                logger.exception("Error while stopping orchestrator")
            finally:
                self._thread = None
                self._machine.force(OrchestratorState.STOPPED)
                logger.info("Orchestrator stopped")

    def trigger(self) -> None:
        """Make the next timer fire happen now; a trigger during a cycle is dropped."""

        if not self._machine.is_running():
            logger.debug("Trigger ignored: orchestrator is not running")
            return
        self._wake.set()

    def run_cycle(self) -> CycleSummary:
        """Run one gated scheduling cycle unless another one is in flight."""

        if not self._guard.acquire(blocking=False):
            logger.info("Scheduling cycle already in progress; skipping")
            self._increment("cycles_skipped")
            return CycleSummary(skipped=True)
        try:
            self._increment("cycles_run")
            return self._run_gated_cycle()
        finally:
            self._guard.release()

    def _timer_loop(self) -> None:
        token = self._cancellation
        while not token.is_cancelled:
            try:
                self.run_cycle()
            except Exception:
                logger.exception("Scheduling cycle failed")
            # Triggers that fired during the cycle are dropped.
            self._wake.clear()
            if token.is_cancelled:
                break
            interval = self._interval_seconds()
            self._update_stats(next_cycle_at=self.clock.utc_now() + timedelta(seconds=interval))
            self._wake.wait(timeout=interval)

    def _interval_seconds(self) -> float:
        try:
            minutes = self.settings.get().interval_minutes
        except Exception:
            logger.exception("Failed to read orchestrator interval; using fallback")
            return _FALLBACK_INTERVAL_SECONDS
        return max(1, minutes) * 60.0

    def _run_gated_cycle(self) -> CycleSummary:
        token = self._cancellation
        settings = self.settings.get()
        if not settings.enabled:
            logger.info("Orchestrator disabled; skipping cycle")
            return CycleSummary(stop_reason=CycleStopReason.DISABLED)

        if roll_over_daily_budget(settings, self.clock.utc_now().date()):
            self.settings.save(settings)
        self._publish_budget(settings)

        if is_in_quiet_hours(settings.quiet_hours, self.clock.local_now().time()):
            logger.info("Inside quiet hours; no work started")
            self._set_state(OrchestratorState.QUIET_HOURS)
            return CycleSummary(stop_reason=CycleStopReason.QUIET_HOURS)

        if is_budget_exhausted(settings.token_budget):
            logger.info(
                "Daily token budget exhausted (%d/%d)",
                settings.token_budget.used_today,
                settings.token_budget.daily_cap,
            )
            self._set_state(OrchestratorState.BUDGET_EXHAUSTED)
            return CycleSummary(stop_reason=CycleStopReason.BUDGET_EXHAUSTED)

        ready = self.resolver.get_ready_items()
        if not ready:
            logger.info("No ready work items")
            self._set_state(OrchestratorState.IDLE)
            return CycleSummary(stop_reason=CycleStopReason.NO_READY_ITEMS)

        self._set_state(OrchestratorState.WORKING)
        summary = CycleSummary(stop_reason=CycleStopReason.FINISHED)
        try:
            for item in ready[: max(1, settings.max_concurrent_items)]:
                if token.is_cancelled:
                    summary.stop_reason = CycleStopReason.CANCELLED
                    break
                current = self.settings.get()
                if is_budget_exhausted(current.token_budget):
                    logger.info("Token budget exhausted mid-cycle; deferring remaining items")
                    summary.stop_reason = CycleStopReason.BUDGET_EXHAUSTED
                    break
                summary.items.append(self._process_item(item, current, token))
        finally:
            self._update_stats(current_item_id=None)
            self._set_state(OrchestratorState.IDLE)
        return summary

    def _process_item(
        self,
        item: WorkItem,
        settings: OrchestratorSettings,
        token: CancellationToken,
    ) -> ItemRunSummary:
        self._update_stats(current_item_id=item.item_id)
        try:
            if item.attempt_count >= settings.max_retry_attempts:
                message = (
                    f"Exceeded maximum retry attempts ({item.attempt_count}/"
                    f"{settings.max_retry_attempts})."
                )
                logger.warning("Work item %s failed: %s", item.item_id, message)
                self._apply_status(item.item_id, WorkItemStatus.FAILED, error_message=message)
                self._increment("items_failed")
                return ItemRunSummary(
                    item_id=item.item_id,
                    status=WorkItemStatus.FAILED,
                    error_message=message,
                )

            self._apply_status(item.item_id, WorkItemStatus.IN_PROGRESS)
            phase = self.pipeline.next_phase(item.item_id)
            context = self.pipeline.build_context(item.item_id, phase)
            if context is None:
                message = "Failed to build execution context"
                self._apply_status(item.item_id, WorkItemStatus.FAILED, error_message=message)
                self._increment("items_failed")
                return ItemRunSummary(
                    item_id=item.item_id,
                    status=WorkItemStatus.FAILED,
                    phase=phase,
                    error_message=message,
                )

            response = self.pipeline.execute(context, token)
            self._record_tokens(response.tokens_used)
            status = self._resolve_status(item, response, settings)
            self._apply_status(
                item.item_id,
                status,
                error_message=response.error_message,
                previous_status=item.status,
            )
            return ItemRunSummary(
                item_id=item.item_id,
                status=status,
                phase=response.phase,
                tokens_used=response.tokens_used,
                error_message=response.error_message,
            )
        except Exception as error:
            logger.exception("Error processing work item %s", item.item_id)
            message = f"Processing error: {error}"
            try:
                self._apply_status(item.item_id, WorkItemStatus.READY, error_message=message)
            except Exception:
                logger.exception("Failed to return work item %s to ready", item.item_id)
            return ItemRunSummary(
                item_id=item.item_id,
                status=WorkItemStatus.READY,
                error_message=message,
            )

    def _resolve_status(
        self,
        item: WorkItem,
        response: ExecutionResponse,
        settings: OrchestratorSettings,
    ) -> WorkItemStatus:
        if response.outcome == ExecutionOutcome.COMPLETED:
            if response.phase == TransformationType.FINALIZE:
                self._increment("items_completed")
                return WorkItemStatus.COMPLETE
            return WorkItemStatus.READY

        if response.outcome in (ExecutionOutcome.BLOCKED, ExecutionOutcome.NEEDS_MORE_CONTEXT):
            self._increment("items_blocked")
            return WorkItemStatus.BLOCKED

        fresh = self.work_items.get_by_id(item.item_id)
        attempts = fresh.attempt_count if fresh is not None else item.attempt_count + 1
        if attempts >= settings.max_retry_attempts:
            logger.warning(
                "Work item %s reached retry limit (%d/%d)",
                item.item_id,
                attempts,
                settings.max_retry_attempts,
            )
            self._increment("items_failed")
            return WorkItemStatus.FAILED
        return WorkItemStatus.READY

    def _apply_status(
        self,
        item_id: str,
        status: WorkItemStatus,
        *,
        error_message: str | None = None,
        previous_status: WorkItemStatus | None = None,
    ) -> None:
        current = self.work_items.get_by_id(item_id)
        if current is None:
            logger.warning("Work item %s disappeared before status %s", item_id, status.value)
            return
        if current.status == status and current.error_message == error_message:
            return

        updated = replace(
            current,
            status=status,
            error_message=error_message,
            updated_at=self.clock.utc_now(),
        )
        if status == WorkItemStatus.BLOCKED:
            updated.previous_status = previous_status or current.status
        self.work_items.update(updated)
        logger.info("Work item %s %s -> %s", item_id, current.status.value, status.value)

    def _record_tokens(self, tokens: int) -> None:
        if tokens <= 0:
            return
        settings = self.settings.get()
        settings.token_budget.used_today += tokens
        self.settings.save(settings)
        self._increment("tokens_this_session", tokens)
        self._publish_budget(settings)

    def _publish_budget(self, settings: OrchestratorSettings) -> None:
        budget = settings.token_budget
        self._update_stats(
            tokens_today=budget.used_today,
            remaining_budget=budget.remaining if budget.enabled else None,
        )

    def _set_state(self, target: OrchestratorState) -> None:
        if self._machine.is_running():
            self._machine.transition(target)

    def _increment(self, name: str, amount: int = 1) -> None:
        def mutate(stats: OrchestratorStats) -> None:
            setattr(stats, name, getattr(stats, name) + amount)

        self._machine.update_stats(mutate)

    def _update_stats(self, **changes: object) -> None:
        def mutate(stats: OrchestratorStats) -> None:
            for name, value in changes.items():
                setattr(stats, name, value)

        self._machine.update_stats(mutate)
