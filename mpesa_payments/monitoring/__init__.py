"""Monitoring and observability package."""
from .metrics import metrics

__all__ = ["metrics"]
