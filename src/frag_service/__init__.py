"""
IFC to Fragments conversion service package.

This module provides a FastAPI application that converts uploaded IFC models
into the Fragments binary format at `/api/convert`.
"""

__all__ = ["__version__"]

__version__ = "1.0.0"
