"""Ingestion of knowledge bundles."""

from kisanmitra.ingestion.loader import IngestReport, KnowledgeLoader, day_timestamp

__all__ = ["IngestReport", "KnowledgeLoader", "day_timestamp"]
