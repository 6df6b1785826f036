# Utilities Module
"""
Error handling, configuration, encoding helpers and session persistence.

The persistence classes live in whisper.utils.state_manager and are imported
from there, since they depend on whisper.core.
"""

from .error_handler import ErrorHandler
from .config import WhisperConfig

__all__ = ['ErrorHandler', 'WhisperConfig']
