"""Background workers."""
from .sweep_worker import run_sweep, start_sweep_worker

__all__ = ["run_sweep", "start_sweep_worker"]
