"""
Configuration management for the credit scoring engine.

Loads settings from environment variables and the project .env file.
Exposes a single source of truth for all engine configuration.
"""

from backend_credit.config.settings import EngineSettings, get_settings  # noqa: F401

__all__ = ["EngineSettings", "get_settings"]
