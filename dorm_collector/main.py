"""Main entry point for the dormitory balance collector."""

import asyncio
import logging
import signal
import sys
from datetime import datetime, timezone, tzinfo
from typing import Callable, List, Optional

from .config import Settings, secret_passwords, settings
from .errors import AuthError, FetchError, StoreError
from .fetcher import fetch_snapshot
from .models import EntityRunResult, MonitoredEntity, RunResult, RunState
from .portal_client import PortalClient
from .registry import EntityRegistry, load_entities
from .scheduler import DailySchedule, KeyedLock
from .store import SnapshotStore

logger = logging.getLogger("dorm-collector")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Collector:
    """Collects meter readings for every registered dormitory.

    A run visits dormitories one at a time with a pacing delay in between.
    A failure for one dormitory is logged and recorded, never allowed to
    abort the rest of the run. Periodic and on-demand collection of the
    same dormitory are serialized by a per-dormitory lock.
    """

    def __init__(
        self,
        registry: EntityRegistry,
        store: SnapshotStore,
        portal_client: PortalClient,
        schedule: DailySchedule,
        tz: tzinfo,
        pacing_seconds: float = 5.0,
        run_on_startup: bool = True,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.registry = registry
        self.store = store
        self.portal_client = portal_client
        self.schedule = schedule
        self.tz = tz
        self.pacing_seconds = pacing_seconds
        self.run_on_startup = run_on_startup
        self.clock = clock

        self.locks = KeyedLock()
        self.running = False
        self.state = RunState.IDLE
        self.last_run: Optional[RunResult] = None
        self._active_runs = 0
        self._stop_event = asyncio.Event()

    # =========================================================================
    # Single dormitory
    # =========================================================================

    async def collect_entity(self, entity: MonitoredEntity, trigger: str) -> EntityRunResult:
        """Log in, fetch and store one reading for a dormitory.

        Auth, fetch and store failures are caught here and returned as a
        failed result. Nothing is retried; the next run is the retry.
        """
        async with self.locks.get(entity.id):
            logger.info(f"[{entity.id}] Collecting {entity.name} ({trigger})")
            try:
                session = await self.portal_client.establish_session(
                    entity.account, entity.password.get_secret_value()
                )
                async with session:
                    snapshot = await fetch_snapshot(session, entity, self.tz, now=self.clock())
                result = self.store.append(snapshot)

            except AuthError as e:
                logger.error(f"[{entity.id}] Login failed: {e}")
                return EntityRunResult(entity_id=entity.id, success=False, error_type="auth", message=str(e))

            except FetchError as e:
                logger.error(f"[{entity.id}] Fetch failed: {e}")
                return EntityRunResult(entity_id=entity.id, success=False, error_type="fetch", message=str(e))

            except StoreError as e:
                logger.error(f"[{entity.id}] Store failed: {e}")
                return EntityRunResult(entity_id=entity.id, success=False, error_type="store", message=str(e))

        logger.info(
            f"[{entity.id}] Balance: {snapshot.balance:.2f} "
            f"({'stored' if result.stored else 'already recorded'})"
        )
        return EntityRunResult(
            entity_id=entity.id,
            success=True,
            stored=result.stored,
            snapshot=snapshot,
        )

    async def _collect_isolated(self, entity: MonitoredEntity, trigger: str) -> EntityRunResult:
        """collect_entity() with a last-resort guard so one dormitory cannot sink a run."""
        try:
            return await self.collect_entity(entity, trigger)
        except Exception as e:
            logger.exception(f"[{entity.id}] Unexpected error during collection")
            return EntityRunResult(
                entity_id=entity.id,
                success=False,
                error_type="internal",
                message=f"Unexpected error: {type(e).__name__}",
            )

    # =========================================================================
    # Runs
    # =========================================================================

    @property
    def active_runs(self) -> int:
        """Number of runs currently in flight."""
        return self._active_runs

    async def _run(self, entities: List[MonitoredEntity], trigger: str) -> RunResult:
        """Run one batch.

        Scheduled and on-demand runs may overlap. ``state`` stays RUNNING
        until the last in-flight run finishes; ``last_run`` is the most
        recently finished run.
        """
        started_at = self.clock()
        self._active_runs += 1
        self.state = RunState.RUNNING

        try:
            results = []
            for index, entity in enumerate(entities):
                if index > 0 and self.pacing_seconds > 0:
                    # Space out logins to stay polite with the portal
                    await asyncio.sleep(self.pacing_seconds)
                results.append(await self._collect_isolated(entity, trigger))

            failed = [r for r in results if not r.success]
            run = RunResult(
                trigger=trigger,
                status=RunState.PARTIALLY_FAILED if failed else RunState.COMPLETED,
                started_at=started_at,
                finished_at=self.clock(),
                results=results,
            )
            self.last_run = run
        finally:
            self._active_runs -= 1
            if not self._active_runs:
                self.state = self.last_run.status if self.last_run else RunState.IDLE
        return run

    async def run_all(self, trigger: str = "manual") -> RunResult:
        """Collect every registered dormitory sequentially."""
        entities = self.registry.list()
        logger.info("=" * 60)
        logger.info(f"Collection run ({trigger}): {len(entities)} dormitories")
        logger.info("=" * 60)

        run = await self._run(entities, trigger)

        logger.info("=" * 60)
        logger.info(f"Collection run finished: {run.succeeded}/{len(entities)} succeeded")
        for failure in run.failed:
            logger.warning(f"  [{failure.entity_id}] {failure.error_type}: {failure.message}")
        logger.info("=" * 60)
        return run

    async def run_entity(self, entity_id: str, trigger: str = "manual") -> RunResult:
        """Collect a single dormitory on demand.

        Raises:
            UnknownEntityError: If the id is not registered
        """
        entity = self.registry.require(entity_id)
        return await self._run([entity], trigger)

    async def register_entity(self, entity: MonitoredEntity) -> RunResult:
        """Add a dormitory and collect its first reading right away.

        Raises:
            ValidationError: If the dormitory is already registered
        """
        self.registry.add(entity)
        return await self.run_entity(entity.id, trigger="registration")

    # =========================================================================
    # Scheduling
    # =========================================================================

    async def run_forever(self):
        """Run at every scheduled time until stop() is called."""
        self.running = True
        self._stop_event.clear()
        logger.info(f"Scheduled collection at {self.schedule.describe()}")

        if self.run_on_startup:
            await self.run_all("startup")

        while self.running:
            now = self.clock()
            fire_at = self.schedule.next_fire(now)
            delay = max(0.0, (fire_at - now).total_seconds())
            logger.info(f"Next collection at {fire_at.strftime('%Y-%m-%d %H:%M %Z')} (in {delay / 3600:.1f}h)")

            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=delay)
            except asyncio.TimeoutError:
                pass

            if not self.running:
                break
            await self.run_all("scheduled")

    async def stop(self):
        """Stop the scheduling loop (an in-flight run finishes first)."""
        logger.info("Stopping collector service...")
        self.running = False
        self._stop_event.set()


def build_collector(config: Settings = settings) -> Collector:
    """Wire a Collector from settings."""
    entities = load_entities(config.entities_path, secret_passwords())
    tz = config.timezone
    return Collector(
        registry=EntityRegistry(entities),
        store=SnapshotStore(config.data_path, retention_max=config.retention_max),
        portal_client=PortalClient(config.portal_base_url, timeout=config.portal_timeout),
        schedule=DailySchedule(config.schedule_times, tz),
        tz=tz,
        pacing_seconds=config.pacing_seconds,
        run_on_startup=config.run_on_startup,
    )


def configure_logging():
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
    )


async def main():
    """Main entry point."""
    configure_logging()
    logger.info("=" * 60)
    logger.info("Dormitory Electricity Dashboard - Collector Service")
    logger.info("=" * 60)

    collector = build_collector()
    logger.info(f"Monitoring {len(collector.registry)} dormitories, data in {settings.data_path}")

    # Handle shutdown signals
    loop = asyncio.get_running_loop()

    def shutdown_handler():
        logger.info("Shutdown signal received")
        asyncio.create_task(collector.stop())

    for sig in (signal.SIGTERM, signal.SIGINT):
        try:
            loop.add_signal_handler(sig, shutdown_handler)
        except NotImplementedError:
            # Windows doesn't support add_signal_handler
            pass

    try:
        await collector.run_forever()
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
    finally:
        await collector.stop()
        logger.info("Collector service stopped")


def run():
    """Console script entry point."""
    asyncio.run(main())


if __name__ == "__main__":
    run()
