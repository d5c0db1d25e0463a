"""
Backend Credit — real-time multi-dimensional credit scoring engine.

Consumes pre-categorized on-chain events and maintains per-user credit
profiles across five dimensions, with confidence estimates, trend
analysis, anomaly review and SLA-bound publication of score updates.
Modular architecture with clear separation between analysis engine,
scheduler, profile store, worker pool and API server.
"""

__version__ = "0.1.0"
