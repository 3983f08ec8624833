"""
Coordinator package.

This package implements run orchestration:
- Bulk import pipeline (list, skip, enrich, persist)
- Rotation refresh of stored symbols
- Profile-based pipeline configuration
"""

from screener.coordinator.pipeline import (
    ImportPipeline,
    PipelineConfig,
    build_pipeline,
)
from screener.coordinator.rotation import RotationRefresher

__all__ = [
    "ImportPipeline",
    "PipelineConfig",
    "RotationRefresher",
    "build_pipeline",
]
