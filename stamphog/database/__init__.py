"""Persistence layer: models, ingestion mutations, maintenance jobs."""
