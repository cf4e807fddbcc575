"""
Trade FE Engine

Python sidecar for the Trade FE dashboard:
- Live market data acquisition (push stream with pull fallback)
- Market session awareness with periodic re-checks
- FastAPI surface for the browser dashboard
"""

__version__ = "0.4.0"
__author__ = "Trade FE Development Team"

from tradefe_engine.config import Settings, get_settings

__all__ = ["__version__", "Settings", "get_settings"]
