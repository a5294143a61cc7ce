"""Background workers for async processing."""
from .supervisor_worker import start_supervisor_worker

__all__ = ["start_supervisor_worker"]
