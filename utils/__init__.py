"""Utility modules for the onboarding reminder service."""

from .log_sanitizer import mask_destination, sanitize_log, sanitize_for_log

__all__ = ["mask_destination", "sanitize_log", "sanitize_for_log"]
