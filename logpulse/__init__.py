"""
Log Pulse - Log Intelligence Engine
===================================

Turns raw, multi-line application log text into structured, deduplicated,
queryable error records. Two modes:
- live tailing of a growing file, indexing errors into groups
- bulk import of a complete file into a queryable session
"""
