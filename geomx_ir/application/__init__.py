"""
Application layer: orchestrates domain services into the processing pipeline.
"""

from .geomx_processing_service import GeoMxProcessingService

__all__ = ["GeoMxProcessingService"]
