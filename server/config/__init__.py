"""
Tablefill Server Configuration Module
Manages all configuration for the enrichment worker and API
"""

from .settings import settings, get_settings
from .logging_config import setup_logging

__all__ = ["settings", "get_settings", "setup_logging"]
