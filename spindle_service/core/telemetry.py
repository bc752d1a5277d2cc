import json
from enum import StrEnum
from typing import Any, Dict

from spindle_service.core.interfaces import TelemetrySink
from spindle_service.core.logging import logger


class AnalyticsEvent(StrEnum):
    TOOL_USE = "tool_use"
    MALFORMED_TOOL_CALL_JSON = "malformed_tool_call_json"
    UNKNOWN_TOOL_CALL = "unknown_tool_call"


class LoggingTelemetrySink(TelemetrySink):
    """Writes one structured log line per telemetry event."""

    def __init__(self, level: str = "INFO"):
        self.level = level.upper()

    def report(self, event: str, properties: Dict[str, Any]) -> None:
        payload = json.dumps({"event": str(event), "properties": properties}, default=str)
        if self.level == "DEBUG":
            logger.debug("telemetry %s", payload)
        else:
            logger.info("telemetry %s", payload)


class NullTelemetrySink(TelemetrySink):
    def report(self, event: str, properties: Dict[str, Any]) -> None:
        pass
