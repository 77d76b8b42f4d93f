"""Bulk CSV enrichment: identifier dedup, chunked enrichment, checkpointed resume."""
