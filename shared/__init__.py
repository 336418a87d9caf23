"""
Log Pulse - Shared Library
==========================

Common utilities and constants used by the log engine service.
"""

__version__ = "0.1.0"
__author__ = "Log Pulse Team"
