"""
Agent worker package — concurrent event processing.

Routes inbound events to per-user single-writer workers so different users
are scored in parallel while each user's events stay ordered.
"""

from backend_credit.agent_worker.worker import EventWorkerPool, WorkerConfig

__all__ = ["EventWorkerPool", "WorkerConfig"]
