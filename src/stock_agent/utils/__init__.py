"""Utils package."""

from .metrics import PrometheusObserver, start_metrics_server

__all__ = ["PrometheusObserver", "start_metrics_server"]
