"""
Core ingestion pipeline: configuration, storage, deduplication and orchestration.
"""
