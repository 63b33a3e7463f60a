from .prometheus_metrics import REGISTRY, prometheus_metrics

__all__ = ["REGISTRY", "prometheus_metrics"]
