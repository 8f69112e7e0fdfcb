import structlog
import logging
import sys
from typing import Dict, Any, Optional, List
from datetime import datetime
import os


def setup_logging(
    log_level: str = "INFO",
    log_format: str = "json",
    service_name: str = "canvas-engine"
) -> None:
    """Setup structured logging configuration"""

    # Configure Python logging
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper(), logging.INFO)
    )

    # Processors for structlog
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
        add_canvas_context,
    ]

    # Add appropriate renderer based on format
    if log_format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    # Configure structlog
    structlog.configure(
        processors=processors,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    # Set service name in context
    structlog.contextvars.bind_contextvars(
        service=service_name,
        environment=os.getenv("ENVIRONMENT", "development"),
        version=os.getenv("SERVICE_VERSION", "unknown")
    )


def add_canvas_context(logger: logging.Logger, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Add canvas context to all log entries"""

    if "timestamp" not in event_dict:
        event_dict["timestamp"] = datetime.utcnow().isoformat()

    # Canvas id is bound by whoever switches canvases
    canvas_id = structlog.contextvars.get_contextvars().get("canvas_id")
    if canvas_id:
        event_dict["canvas_id"] = canvas_id

    return event_dict


class CanvasLogger:
    """Specialized logger for engine-level events"""

    def __init__(self, name: str):
        self.logger = structlog.get_logger(name)

    def log_regeneration_transition(
        self,
        run_id: int,
        from_state: str,
        to_state: str,
        level: Optional[int] = None,
        card_ids: Optional[List[str]] = None
    ):
        """Log batch regeneration state transitions"""

        self.logger.info(
            "regeneration_transition",
            run_id=run_id,
            from_state=from_state,
            to_state=to_state,
            level=level,
            card_ids=card_ids or []
        )

    def log_history_step(
        self,
        action: str,
        undo_depth: int,
        redo_depth: int,
        vanished: Optional[List[str]] = None,
        resurrected: Optional[List[str]] = None
    ):
        """Log history captures and jumps"""

        self.logger.info(
            "history_step",
            action=action,
            undo_depth=undo_depth,
            redo_depth=redo_depth,
            vanished=vanished or [],
            resurrected=resurrected or []
        )

    def log_index_sync(
        self,
        operation: str,
        card_id: str,
        success: bool = True,
        error: Optional[str] = None
    ):
        """Log search index / embedding store reconciliation"""

        if success:
            self.logger.debug("index_sync", operation=operation, card_id=card_id, success=True)
        else:
            self.logger.error("index_sync", operation=operation, card_id=card_id, success=False, error=error)


# Global logger instance
canvas_logger = CanvasLogger("canvas")


class MetricsCollector:
    """Collect and export metrics"""

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

        self.metrics[key]["count"] += 1
        self.metrics[key]["sum"] += duration_ms
        self.metrics[key]["min"] = min(self.metrics[key]["min"], duration_ms)
        self.metrics[key]["max"] = max(self.metrics[key]["max"], duration_ms)

        canvas_logger.logger.debug(
            "metric",
            metric_type="latency",
            operation=operation,
            duration_ms=duration_ms,
            tags=tags or {}
        )

    def increment_counter(self, name: str, value: int = 1, tags: Optional[Dict[str, str]] = None):
        """Increment a counter metric"""

        if name not in self.metrics:
            self.metrics[name] = 0
        self.metrics[name] += value

        canvas_logger.logger.debug(
            "metric",
            metric_type="counter",
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
                # Latency metric
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
