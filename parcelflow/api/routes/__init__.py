"""Parcelflow API Routes Package."""
from . import alerts, batches, errors, health, jobs, quality, rules, sources, suggestions

__all__ = [
    "alerts", "batches", "errors", "health", "jobs", "quality", "rules", "sources", "suggestions",
]
