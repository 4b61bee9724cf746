"""Semantic audio segment cache service for meditation generation."""

__version__ = "0.1.0"
