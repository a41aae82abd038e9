"""Batch orchestration for multi-tenant classroom content analysis."""

__version__ = "0.1.0"
