import structlog
import logging
import sys
from typing import Dict, Any, Optional
from datetime import datetime
import os


def setup_logging(
    log_level: str = "INFO",
    log_format: str = "json",
    service_name: str = "companion-core"
) -> None:
    """Setup structured logging configuration"""

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper(), logging.INFO)
    )

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        add_conversation_context,
    ]

    if log_format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    structlog.contextvars.bind_contextvars(
        service=service_name,
        environment=os.getenv("ENVIRONMENT", "development"),
        version=os.getenv("SERVICE_VERSION", "unknown")
    )


def add_conversation_context(logger: logging.Logger, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Add conversation and session ids bound for the current request"""

    if "timestamp" not in event_dict:
        event_dict["timestamp"] = datetime.utcnow().isoformat()

    bound = structlog.contextvars.get_contextvars()
    for key in ("conversation_id", "session_id"):
        if key not in event_dict and bound.get(key):
            event_dict[key] = bound[key]

    return event_dict


class ConversationLogger:
    """Logger for the recurring conversation-core event shapes"""

    def __init__(self, name: str):
        self.logger = structlog.get_logger(name)

    def log_provider_attempt(
        self,
        provider: str,
        success: bool,
        duration_ms: Optional[float] = None,
        error: Optional[str] = None,
        model: Optional[str] = None
    ):
        """Log one provider call in the fallback chain"""

        log = self.logger.info if success else self.logger.warning
        log(
            "provider_attempt",
            provider=provider,
            model=model,
            success=success,
            duration_ms=duration_ms,
            error=error
        )

    def log_reasoning_step(
        self,
        iteration: int,
        action: str,
        confidence: float,
        target: Optional[str] = None,
        parsed: bool = True
    ):
        self.logger.info(
            "reasoning_step",
            iteration=iteration,
            action=action,
            confidence=confidence,
            target=target,
            parsed=parsed
        )

    def log_memory_event(
        self,
        action: str,
        session_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        self.logger.info(
            "memory_event",
            action=action,
            session_id=session_id,
            details=details or {}
        )

    def log_compaction(
        self,
        session_id: str,
        removed_count: int,
        remaining_tokens: int,
        consolidated: bool
    ):
        self.logger.info(
            "history_compacted",
            session_id=session_id,
            removed_count=removed_count,
            remaining_tokens=remaining_tokens,
            consolidated=consolidated
        )

    def log_gate_decision(self, conversation_id: str, decision: str):
        self.logger.info("gate_decision", conversation_id=conversation_id, decision=decision)

    def log_background_failure(self, task_name: str, error: BaseException):
        """Every failed fire-and-forget task ends up here"""

        self.logger.error(
            "background_task_failed",
            task_name=task_name,
            error=str(error),
            error_type=type(error).__name__,
            exc_info=error
        )


# Global logger instance
conversation_logger = ConversationLogger("companion")


class MetricsCollector:
    """Process-local metrics, mirrored to the log stream"""

    def __init__(self):
        self.metrics: Dict[str, Any] = {}

    def record_latency(self, operation: str, duration_ms: float, tags: Optional[Dict[str, str]] = None):
        """Record operation latency"""

        key = f"latency.{operation}"
        if key not in self.metrics:
            self.metrics[key] = {
                "count": 0,
                "sum": 0,
                "min": float('inf'),
                "max": 0
            }

        entry = self.metrics[key]
        entry["count"] += 1
        entry["sum"] += duration_ms
        entry["min"] = min(entry["min"], duration_ms)
        entry["max"] = max(entry["max"], duration_ms)

        conversation_logger.logger.debug(
            "metric",
            metric_type="latency",
            operation=operation,
            duration_ms=duration_ms,
            tags=tags or {}
        )

    def increment_counter(self, name: str, value: int = 1, tags: Optional[Dict[str, str]] = None):
        """Increment a counter metric"""

        self.metrics[name] = self.metrics.get(name, 0) + value

        conversation_logger.logger.debug(
            "metric",
            metric_type="counter",
            name=name,
            value=value,
            tags=tags or {}
        )

    def set_gauge(self, name: str, value: float, tags: Optional[Dict[str, str]] = None):
        self.metrics[name] = value

        conversation_logger.logger.debug(
            "metric",
            metric_type="gauge",
            name=name,
            value=value,
            tags=tags or {}
        )

    def get_counter(self, name: str) -> int:
        value = self.metrics.get(name, 0)
        return value if isinstance(value, int) else 0

    def get_metrics_summary(self) -> Dict[str, Any]:
        """Get summary of all metrics"""

        summary = {}
        for key, value in self.metrics.items():
            if isinstance(value, dict) and "count" in value:
                summary[key] = {
                    "count": value["count"],
                    "avg": value["sum"] / value["count"] if value["count"] > 0 else 0,
                    "min": value["min"] if value["min"] != float('inf') else 0,
                    "max": value["max"]
                }
            else:
                summary[key] = value

        return summary

    def reset(self):
        self.metrics.clear()


# Global metrics collector
metrics = MetricsCollector()
