"""Core utilities for configuration, logging and Firestore access."""

from .config import AppSettings, get_env, load_settings
from .firebase_client_manager import FirebaseClientManager
from .logging_config import get_logger, setup_logging

__all__ = [
    "AppSettings",
    "get_env",
    "load_settings",
    "FirebaseClientManager",
    "get_logger",
    "setup_logging",
]
