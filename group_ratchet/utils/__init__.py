# Utilities Module
"""
Error handling, encoding and memory helpers.

The session codec lives in ``utils.session_codec`` and is imported from
there directly, since it depends on ``core``.
"""

from .error_handler import ErrorHandler
from .memory import secure_erase

__all__ = ['ErrorHandler', 'secure_erase']
