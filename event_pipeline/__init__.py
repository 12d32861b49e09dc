"""
Event Analytics Pipeline

Event ingestion, deduplication, enrichment, hierarchical metric
aggregation and realtime metrics.
"""

__version__ = "1.0.0"
