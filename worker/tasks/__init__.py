"""Background task definitions."""

from worker.tasks.reaper import run_stale_run_sweep, run_stale_run_sweep_sync

__all__ = [
    "run_stale_run_sweep",
    "run_stale_run_sweep_sync",
]
