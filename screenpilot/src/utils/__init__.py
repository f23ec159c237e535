"""Utility helpers shared across screenpilot components."""

from screenpilot.src.utils.config import CONFIG, AppConfig, GeneralConfig

__all__ = ["CONFIG", "AppConfig", "GeneralConfig"]
