"""Utility modules for pg-upsert-sync."""

from pg_upsert_sync.utils.logger import setup_logging, get_logger

__all__ = ["setup_logging", "get_logger"]
