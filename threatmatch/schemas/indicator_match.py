"""Schemas for indicator match rule parameters."""

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_validator, model_validator


class MissingFieldsStrategy(str, Enum):
    """How suppression treats events lacking a group-by field."""

    SUPPRESS = "suppress"
    DO_NOT_SUPPRESS = "doNotSuppress"


# =============================================================================
# Threat Mapping Schemas
# =============================================================================


class ThreatMappingEntry(BaseModel):
    """One equality comparison between an event field and an indicator field."""

    field: str = Field(..., description="Event field path (e.g., 'source.ip')")
    value: str = Field(..., description="Indicator field path (e.g., 'threat.indicator.ip')")

    @field_validator("field", "value")
    @classmethod
    def validate_path(cls, v: str) -> str:
        """Validate field path format."""
        if not v or not v.strip():
            raise ValueError("Field path cannot be empty")
        return v.strip()


class ThreatMappingGroup(BaseModel):
    """Entries ANDed together; groups are ORed with each other."""

    entries: list[ThreatMappingEntry] = Field(..., min_length=1)


class AlertSuppressionConfig(BaseModel):
    """Alert suppression settings for a rule."""

    group_by: list[str] = Field(default_factory=list)
    duration: str | None = Field(
        None,
        pattern=r"^\d+[smhdw]$",
        description="Suppression window, e.g. '1h'; one rule execution when omitted",
    )
    missing_fields_strategy: MissingFieldsStrategy = MissingFieldsStrategy.SUPPRESS


# =============================================================================
# Rule Parameter Schemas
# =============================================================================


class TimeWindow(BaseModel):
    """Execution window of a single rule run."""

    start: datetime
    end: datetime

    @model_validator(mode="after")
    def validate_order(self) -> "TimeWindow":
        if self.start > self.end:
            raise ValueError("Time window start must not be after its end")
        return self


class IndicatorMatchRuleParams(BaseModel):
    """Parameters of an indicator match rule execution."""

    rule_id: str = Field(..., description="Rule identifier")
    name: str = Field("", description="Rule display name")
    severity: str = "medium"
    risk_score: int = Field(50, ge=0, le=100)

    # Event side
    index: list[str] = Field(..., min_length=1, description="Event indices")
    query: dict[str, Any] | None = Field(None, description="Event query DSL")
    filters: list[dict[str, Any]] = Field(default_factory=list)
    primary_timestamp: str = "@timestamp"
    tiebreaker_field: str | None = Field(
        None, description="Unique keyword field breaking timestamp ties between pages"
    )
    exception_filter: dict[str, Any] | None = None

    # Indicator side
    threat_index: list[str] = Field(..., min_length=1, description="Indicator indices")
    threat_query: dict[str, Any] | None = Field(None, description="Indicator query DSL")
    threat_filters: list[dict[str, Any]] = Field(default_factory=list)
    threat_indicator_path: str | None = None
    threat_mapping: list[ThreatMappingGroup] = Field(..., min_length=1)

    # Paging and limits
    items_per_search: int | None = Field(None, ge=1)
    concurrent_searches: int | None = Field(None, ge=1)
    max_signals: int | None = Field(None, ge=1)

    alert_suppression: AlertSuppressionConfig | None = None
    interval: str = Field("5m", description="Schedule interval, e.g. '5m'")

    @property
    def is_suppression_configured(self) -> bool:
        """True when the rule declares at least one group-by field."""
        return bool(self.alert_suppression and self.alert_suppression.group_by)

    def event_fields(self) -> list[str]:
        """Event-side fields referenced by the mapping, in mapping order."""
        return [entry.field for group in self.threat_mapping for entry in group.entries]

    def indicator_fields(self) -> list[str]:
        """Indicator-side fields referenced by the mapping, in mapping order."""
        return [entry.value for group in self.threat_mapping for entry in group.entries]
