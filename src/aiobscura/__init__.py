"""
aiobscura - local observability for AI coding assistants.

Discovers assistant session logs on disk, parses them incrementally into a
canonical event model, stores them in SQLite, computes per-session metrics
and optionally pushes events to a remote collector.
"""

__version__ = "0.1.0"
