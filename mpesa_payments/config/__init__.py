"""Configuration package for the M-Pesa payment service."""
from .settings import MPESA_BASE_URLS, Settings, get_settings

__all__ = ["MPESA_BASE_URLS", "Settings", "get_settings"]
