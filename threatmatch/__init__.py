"""Threat intelligence indicator match correlation engine."""

__version__ = "0.1.0"
