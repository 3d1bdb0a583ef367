"""
Production Logging
Structured business-event logging and in-process metrics for billing, deploys and admin actions

Events go to the standard logging tree (rendered as JSON by the server's formatter)
with their context attached as extras. Counters and duration histograms are kept
in memory and reported by the health endpoint.
"""

import logging
import threading
from collections import defaultdict, deque
from enum import Enum
from typing import Deque, Dict, Optional, Any

# AUDIT sits between INFO and WARNING
AUDIT_LEVEL = 25
logging.addLevelName(AUDIT_LEVEL, 'AUDIT')

HISTOGRAM_SAMPLES = 500


class EventLevel(Enum):
    INFO = logging.INFO
    AUDIT = AUDIT_LEVEL
    ERROR = logging.ERROR


class ProductionLogger:
    """Emits structured events and aggregates counters and durations per component"""

    def __init__(self):
        self._lock = threading.Lock()
        self.counters: Dict[str, float] = defaultdict(float)
        self.durations: Dict[str, Deque[float]] = defaultdict(lambda: deque(maxlen=HISTOGRAM_SAMPLES))

    def emit(self, level: EventLevel, component: str, message: str, context: Optional[Dict[str, Any]] = None,
             user_id: Optional[str] = None, order_id: Optional[Any] = None) -> None:
        logging.getLogger(f"ozvps.{component}").log(level.value, message, extra={
            'component': component,
            'user_id': user_id,
            'order_id': order_id,
            'context': context or {},
        })

    def increment(self, component: str, name: str, amount: float = 1.0) -> None:
        with self._lock:
            self.counters[f"{component}.{name}"] += amount

    def observe(self, component: str, name: str, value: float) -> None:
        with self._lock:
            self.durations[f"{component}.{name}"].append(value)

    def get_metrics_snapshot(self) -> Dict[str, Any]:
        with self._lock:
            histograms = {}
            for key, samples in self.durations.items():
                values = list(samples)
                histograms[key] = {
                    'count': len(values),
                    'avg': round(sum(values) / len(values), 2) if values else 0.0,
                    'max': max(values) if values else 0.0,
                }
            return {'counters': dict(self.counters), 'histograms': histograms}


_production_logger: Optional[ProductionLogger] = None


def get_production_logger() -> ProductionLogger:
    global _production_logger
    if _production_logger is None:
        _production_logger = ProductionLogger()
    return _production_logger


def log_business_event(component: str, event: str, details: Dict, user_id: Optional[str] = None,
                       order_id: Optional[Any] = None):
    """Log a business event (top-up, deploy, suspension...) and count it"""
    logger = get_production_logger()
    logger.emit(EventLevel.INFO, component, f"Business event: {event}", details, user_id, order_id)
    logger.increment(component, f"{event}_count")


def log_audit_event(component: str, action: str, details: Dict, user_id: Optional[str] = None):
    get_production_logger().emit(EventLevel.AUDIT, component, f"Audit: {action}", details, user_id)


def log_performance_metric(component: str, operation: str, duration_ms: float, success: bool = True):
    logger = get_production_logger()
    logger.observe(component, f"{operation}_duration_ms", duration_ms)
    logger.increment(component, f"{operation}_{'success' if success else 'failure'}_count")


def log_error_with_context(component: str, error: Exception, context: Dict, user_id: Optional[str] = None,
                           order_id: Optional[Any] = None):
    logger = get_production_logger()
    logger.emit(
        EventLevel.ERROR,
        component,
        f"Error occurred: {error}",
        {'error_type': type(error).__name__, 'error_message': str(error), **context},
        user_id,
        order_id,
    )
    logger.increment(component, 'error_count')
