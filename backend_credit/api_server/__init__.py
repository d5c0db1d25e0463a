"""
API server package — HTTP interface over the scoring engine.

Accepts categorized events and exposes profiles, history, confidence,
anomalies and status. Delegates all scoring to ScoringEngineService.
"""
