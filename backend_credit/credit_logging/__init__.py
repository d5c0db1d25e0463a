"""
Structured logging for the credit scoring engine.

get_logger() in every module; event_context() around per-event work.
"""

from backend_credit.credit_logging.logger import configure_logging, event_context, get_logger

__all__ = ["configure_logging", "event_context", "get_logger"]
