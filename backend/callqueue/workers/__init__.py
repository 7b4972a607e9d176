"""
Workers Package
Background worker that dispatches claimed call jobs
"""
from callqueue.workers.dialer_worker import DialerWorker

__all__ = [
    "DialerWorker",
]
