"""OSINT collection pipeline: collect, deduplicate, extract, enrich, store and alert."""

__version__ = "1.0.0"
