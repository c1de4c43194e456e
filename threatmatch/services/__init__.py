"""Threatmatch services package.

Contains services for:
- Indicator match engine: Rule execution against events and indicators
- Alert generator: Alert documents from enriched matches
- Alert writer: Bulk persistence of alerts
- Telemetry: Fire-and-forget execution reports
"""
