"""Per-symbol enrichment."""

from screener.enrichment.enricher import Enricher

__all__ = ["Enricher"]
