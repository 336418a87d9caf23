"""
Log Pulse - Core Engine Package
"""
