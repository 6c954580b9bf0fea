"""Scheduler that invokes reconcile passes for every stored object.

The store is rescanned periodically. Each object carries a due time derived
from the disposition of its last pass; a spec edit (generation change) or a
deletion request makes it due immediately. Failed passes back off
exponentially with jitter. An object never has more than one pass in
flight, while different objects are reconciled concurrently.
"""

from __future__ import annotations

import asyncio
import logging
import math
import random
from collections.abc import Iterable
from dataclasses import dataclass

from .config import Config
from .models import ObjectKey
from .reconciler import Disposition, ReconcileResult, Reconciler
from .store import DesiredStateStore, StoreError

logger = logging.getLogger(__name__)

ScheduleKey = tuple[str, ObjectKey]


@dataclass
class Schedule:
    """Scheduling state of one object."""

    due_at: float
    generation: int
    deleting: bool
    failures: int = 0


class ControllerManager:
    """Runs one control loop per resource kind over a shared store."""

    def __init__(
        self,
        reconcilers: Iterable[Reconciler],
        store: DesiredStateStore,
        config: Config,
    ) -> None:
        self._reconcilers = {r.kind: r for r in reconcilers}
        self._store = store
        self._config = config
        self._schedules: dict[ScheduleKey, Schedule] = {}
        self._in_flight: dict[ScheduleKey, asyncio.Task[ReconcileResult]] = {}
        self._shutdown_event = asyncio.Event()
        self._wakeup = asyncio.Event()

    @property
    def kinds(self) -> list[str]:
        return list(self._reconcilers)

    def schedule_for(self, kind: str, key: ObjectKey) -> Schedule | None:
        return self._schedules.get((kind, key))

    def backoff_seconds(self, failures: int) -> float:
        """Exponential backoff with jitter for the given failure count."""
        base = self._config.retry_backoff_base_seconds
        backoff = base * (2 ** max(failures - 1, 0))
        jitter = random.uniform(0, backoff * 0.2)
        return min(backoff + jitter, self._config.retry_backoff_max_seconds)

    def resync(self, now: float | None = None) -> None:
        """Rescan the store and update due times."""
        now = self._now() if now is None else now
        seen: set[ScheduleKey] = set()

        for kind in self._reconcilers:
            try:
                objects = self._store.list_objects(kind)
            except StoreError as e:
                logger.error("Failed to list objects", extra={"kind": kind, "error": str(e)})
                # Keep existing schedules of this kind until the store is readable again
                seen.update(entry for entry in self._schedules if entry[0] == kind)
                continue

            for obj in objects:
                entry = (kind, obj.key)
                seen.add(entry)
                generation = obj.metadata.generation
                deleting = obj.deletion_requested
                schedule = self._schedules.get(entry)

                if schedule is None:
                    self._schedules[entry] = Schedule(
                        due_at=now, generation=generation, deleting=deleting
                    )
                    logger.debug("Object discovered", extra={"kind": kind, "key": str(obj.key)})
                elif schedule.generation != generation or schedule.deleting != deleting:
                    schedule.generation = generation
                    schedule.deleting = deleting
                    schedule.due_at = now
                    schedule.failures = 0
                    logger.info(
                        "Object changed, reconciling now",
                        extra={
                            "kind": kind,
                            "key": str(obj.key),
                            "generation": generation,
                            "deleting": deleting,
                        },
                    )

        for entry in list(self._schedules):
            if entry not in seen and entry not in self._in_flight:
                del self._schedules[entry]

    def trigger(self, kind: str, key: ObjectKey) -> None:
        """Make an object due immediately."""
        schedule = self._schedules.get((kind, key))
        if schedule is not None:
            schedule.due_at = self._now()
        self._wakeup.set()

    async def run_once(self) -> list[ReconcileResult]:
        """Resync, run every due pass and wait for them to finish."""
        now = self._now()
        self.resync(now)
        tasks = self._dispatch_due(now)
        if not tasks:
            return []
        return list(await asyncio.gather(*tasks))

    async def run(self) -> None:
        """Run until shutdown is requested, then wait for in-flight passes."""
        logger.info(
            "Starting controller manager",
            extra={
                "kinds": self.kinds,
                "resync_interval_seconds": self._config.resync_interval_seconds,
            },
        )

        next_resync = self._now()
        while not self._shutdown_event.is_set():
            now = self._now()
            if now >= next_resync:
                self.resync(now)
                next_resync = now + self._config.resync_interval_seconds

            self._dispatch_due(now)

            timeout = max(min(self._next_due(), next_resync) - self._now(), 0.0)
            try:
                await asyncio.wait_for(self._wakeup.wait(), timeout=timeout)
            except TimeoutError:
                pass
            self._wakeup.clear()

        if self._in_flight:
            logger.info(
                "Waiting for in-flight passes", extra={"in_flight": len(self._in_flight)}
            )
            await asyncio.gather(*self._in_flight.values(), return_exceptions=True)

        logger.info("Controller manager shutdown complete")

    def shutdown(self) -> None:
        """Signal the manager to stop."""
        logger.info("Shutdown requested")
        self._shutdown_event.set()
        self._wakeup.set()

    def _dispatch_due(self, now: float) -> list[asyncio.Task[ReconcileResult]]:
        tasks = []
        for entry, schedule in self._schedules.items():
            if entry in self._in_flight or schedule.due_at > now:
                continue
            task = asyncio.create_task(self._run_pass(entry))
            self._in_flight[entry] = task
            tasks.append(task)
        return tasks

    async def _run_pass(self, entry: ScheduleKey) -> ReconcileResult:
        kind, key = entry
        try:
            result = await self._reconcilers[kind].reconcile(key)
        except Exception as e:
            logger.exception(
                "Unexpected error during reconciliation",
                extra={"kind": kind, "key": str(key), "error": str(e)},
            )
            result = ReconcileResult(kind=kind, key=key, disposition=Disposition.RETRY, error=e)
        finally:
            self._in_flight.pop(entry, None)
            self._wakeup.set()

        self._apply_result(entry, result)
        return result

    def _apply_result(self, entry: ScheduleKey, result: ReconcileResult) -> None:
        schedule = self._schedules.get(entry)
        if schedule is None:
            return

        now = self._now()
        if result.disposition in (Disposition.RETRY, Disposition.FAIL):
            schedule.failures += 1
            delay = self.backoff_seconds(schedule.failures)
            logger.warning(
                "Pass failed, backing off",
                extra={
                    "kind": entry[0],
                    "key": str(entry[1]),
                    "disposition": result.disposition.value,
                    "failures": schedule.failures,
                    "wait_seconds": delay,
                },
            )
            schedule.due_at = now + delay
            return

        schedule.failures = 0
        if result.requeue_after is None:
            # Nothing more to do until the object changes
            schedule.due_at = math.inf
        else:
            schedule.due_at = now + result.requeue_after

    def _next_due(self) -> float:
        pending = [
            s.due_at for entry, s in self._schedules.items() if entry not in self._in_flight
        ]
        return min(pending, default=math.inf)

    @staticmethod
    def _now() -> float:
        return asyncio.get_running_loop().time()
