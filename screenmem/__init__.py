"""
screenmem - screen-capture memory ingestion with a SQLite keyword store
and an eventually consistent vector overlay.
"""

__version__ = "1.0.0"
