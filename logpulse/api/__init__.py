"""
Log Pulse - API Package
"""
