"""
Core utilities — exceptions and shared concurrency helpers.

Provides the engine's error taxonomy and the settled fan-out helper used by
the scoring engine when it loads state from the profile store.
"""
