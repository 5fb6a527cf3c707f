"""
Infrastructure package for the GeoMx processing pipeline.

This package contains infrastructure components including data access, logging,
configuration management, and other cross-cutting concerns.
"""
