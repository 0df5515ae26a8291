"""
Configuration Management

Simple utility for loading and validating environment configuration.
"""

import os
from typing import Optional
from dotenv import load_dotenv


def load_config(env_path: Optional[str] = None) -> bool:
    """
    Load environment configuration from .env file.

    Args:
        env_path: Optional path to .env file. If None, searches in current directory.

    Returns:
        bool: True if .env file was found and loaded, False otherwise
    """
    if env_path:
        return load_dotenv(env_path)
    return load_dotenv()


def get_database_config() -> dict:
    """
    Get connection settings for the UPH database.

    Returns:
        dict: Database configuration

    Raises:
        ValueError: If required configuration is missing
    """
    config = {
        "host": os.getenv("UPH_DB_HOST"),
        "port": os.getenv("UPH_DB_PORT", "5432"),
        "database": os.getenv("UPH_DB_NAME"),
        "user": os.getenv("UPH_DB_USER"),
        "password": os.getenv("UPH_DB_PASS"),
    }

    # Validate
    missing = [k for k, v in config.items() if not v]
    if missing:
        raise ValueError(
            f"Missing UPH database configuration: {missing}. "
            f"Please check your .env file."
        )

    return config


def get_app_config() -> dict:
    """
    Get application configuration settings.

    Returns:
        dict: Application settings
    """
    return {
        "timezone": os.getenv("TIMEZONE", "UTC"),
        "log_level": os.getenv("LOG_LEVEL", "INFO"),
        "default_window_days": int(os.getenv("UPH_DEFAULT_WINDOW_DAYS", "30")),
        "scheduler_interval_hours": float(os.getenv("UPH_SCHEDULER_INTERVAL_HOURS", "6")),
        "batch_size": int(os.getenv("UPH_BATCH_SIZE", "1000")),
        "pass_timeout_seconds": float(os.getenv("UPH_PASS_TIMEOUT_SECONDS", "3600")),
    }


def validate_config() -> list:
    """
    Validate all required configuration is present.

    Returns:
        list: List of missing configuration items (empty if all valid)
    """
    missing = []

    try:
        get_database_config()
    except ValueError as e:
        missing.append(f"UPH DB: {str(e)}")

    try:
        app_config = get_app_config()
    except ValueError as e:
        missing.append(f"APP: invalid numeric setting ({e})")
    else:
        if app_config["batch_size"] <= 0:
            missing.append("APP: UPH_BATCH_SIZE must be positive")
        if app_config["scheduler_interval_hours"] <= 0:
            missing.append("APP: UPH_SCHEDULER_INTERVAL_HOURS must be positive")

    return missing
