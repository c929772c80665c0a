"""
app/jobs/refresh.py
Periodic snapshot refresh.

  • Runs only when refresh_interval_seconds > 0
  • A refresh still in flight is joined, never duplicated
  • Blocked manager → cycle skipped until an administrator resets it
  • Failures are recorded in the manager state; the loop keeps going
"""

from __future__ import annotations

import asyncio
import logging

from app.services.snapshot_manager import SnapshotManager

log = logging.getLogger("refresh")


async def run_refresh_cycle(manager: SnapshotManager) -> None:
    state = manager.get_state()
    if state.credits_exhausted:
        log.info("Snapshot manager blocked - skipping refresh cycle")
        return
    state = await manager.fetch_snapshot()
    if state.error:
        log.warning(f"Refresh cycle finished with error: {state.error}")
    else:
        log.info(f"Refresh cycle complete ({state.status})")


async def run_refresh_loop(manager: SnapshotManager, interval_seconds: float) -> None:
    """Called once at startup. Runs until cancelled."""
    log.info(f"Snapshot refresher started (every {interval_seconds:.0f}s)")
    while True:
        try:
            await run_refresh_cycle(manager)
        except Exception as ex:
            log.error(f"Refresh cycle error (continuing): {ex}")
        await asyncio.sleep(interval_seconds)
