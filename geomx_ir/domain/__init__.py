"""
This package contains the domain layer for the GeoMx processing pipeline.

The domain layer is responsible for the business logic of the pipeline.
"""

from .models import ExpressionSet, ProcessingConfig, ProcessingResult

__all__ = ["ExpressionSet", "ProcessingConfig", "ProcessingResult"]
