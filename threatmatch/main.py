"""Threatmatch - entry point used by the rule scheduler."""

import logging
from datetime import datetime
from typing import Any

from threatmatch.config import get_settings
from threatmatch.database import elasticsearch_context
from threatmatch.detection.indicator_match.ordering import LicenseTier
from threatmatch.detection.indicator_match.types import CrossMatchResult
from threatmatch.schemas.indicator_match import IndicatorMatchRuleParams, TimeWindow
from threatmatch.services.indicator_match_engine import IndicatorMatchEngine
from threatmatch.services.telemetry import HttpTelemetrySink, NullTelemetrySink, TelemetrySink

settings = get_settings()

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper()),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


def build_telemetry_sink() -> TelemetrySink:
    if settings.telemetry_enabled and settings.telemetry_url:
        return HttpTelemetrySink(settings.telemetry_url, timeout=settings.telemetry_timeout_seconds)
    return NullTelemetrySink()


async def run_indicator_match_rule(
    rule: dict[str, Any],
    start: datetime,
    end: datetime,
    license_tier: LicenseTier | str = LicenseTier.BASIC,
) -> CrossMatchResult:
    """Validate a rule definition and execute it once over ``[start, end]``.

    Args:
        rule: Raw indicator match rule parameters
        start: Window start
        end: Window end
        license_tier: Active license tier

    Returns:
        Aggregated execution result
    """
    params = IndicatorMatchRuleParams.model_validate(rule)
    window = TimeWindow(start=start, end=end)
    telemetry = build_telemetry_sink()

    logger.info("Executing indicator match rule %s", params.rule_id)
    async with elasticsearch_context() as es:
        engine = IndicatorMatchEngine(es, settings=settings, telemetry=telemetry)
        try:
            result = await engine.execute(params, window, license_tier=license_tier)
        finally:
            await telemetry.close()

    for message in result.warning_messages:
        logger.warning("Rule %s: %s", params.rule_id, message)
    for error in result.errors:
        logger.error("Rule %s: %s", params.rule_id, error)
    logger.info(
        "Rule %s created %d alerts (%d suppressed)",
        params.rule_id,
        result.created_signals_count,
        result.suppressed_alerts_count,
    )
    return result
