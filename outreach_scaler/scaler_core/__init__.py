"""Core package for the Outreach Scaler phase progression engine."""

from .config import EngineConfig, load_config, resolve_config

__all__ = ["EngineConfig", "load_config", "resolve_config"]
