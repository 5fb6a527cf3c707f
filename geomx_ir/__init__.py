"""
GeoMx Processing Pipeline Package

Quality control, normalization, mixed-model differential expression and
cell-type deconvolution for NanoString GeoMx DSP counts from a liver
ischemia-reperfusion model. Layered like a small service application:
domain services hold the analysis, infrastructure handles logging, CLI and
tables, and the application layer sequences the stages.
"""

__version__ = "0.1.0"
