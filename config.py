"""
Configuration Management
Loads and validates environment variables
"""
import os
from dotenv import load_dotenv

load_dotenv()

class Config:
    """Application configuration"""

    # UPH Database
    UPH_DB_HOST = os.getenv("UPH_DB_HOST")
    UPH_DB_PORT = int(os.getenv("UPH_DB_PORT", 5432))
    UPH_DB_NAME = os.getenv("UPH_DB_NAME")
    UPH_DB_USER = os.getenv("UPH_DB_USER")
    UPH_DB_PASS = os.getenv("UPH_DB_PASS")

    # Tables owned by the ingestion and ERP sync subsystems
    EVENTS_TABLE = os.getenv("UPH_EVENTS_TABLE", "work_cycles")
    ORDERS_TABLE = os.getenv("UPH_ORDERS_TABLE", "production_orders")
    OPERATORS_TABLE = os.getenv("UPH_OPERATORS_TABLE", "operators")

    # Tables owned by this engine
    RATES_TABLE = os.getenv("UPH_RATES_TABLE", "uph_rates")
    STATE_TABLE = os.getenv("UPH_STATE_TABLE", "uph_calculation_state")

    # Application Settings
    TIMEZONE = os.getenv("TIMEZONE", "UTC")
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

    # Calculation defaults
    DEFAULT_WINDOW_DAYS = int(os.getenv("UPH_DEFAULT_WINDOW_DAYS", 30))
    MIN_DURATION_SECONDS = float(os.getenv("UPH_MIN_DURATION_SECONDS", 120))
    RATE_CEILINGS = {
        'Assembly': float(os.getenv("UPH_CEILING_ASSEMBLY", 150)),
        'Cutting': float(os.getenv("UPH_CEILING_CUTTING", 500)),
        'Packaging': float(os.getenv("UPH_CEILING_PACKAGING", 300)),
    }
    OUTLIER_SIGMA = float(os.getenv("UPH_OUTLIER_SIGMA", 2.0))
    OUTLIER_MAX_REJECTION = float(os.getenv("UPH_OUTLIER_MAX_REJECTION", 0.30))
    OUTLIER_MIN_GROUP = int(os.getenv("UPH_OUTLIER_MIN_GROUP", 3))
    ROUTING_POLICY = os.getenv("UPH_ROUTING_POLICY", "bucket")  # 'bucket' or 'reject'
    UNKNOWN_ROUTING = os.getenv("UPH_UNKNOWN_ROUTING", "Unknown")

    # Scheduler
    SCHEDULER_INTERVAL_HOURS = float(os.getenv("UPH_SCHEDULER_INTERVAL_HOURS", 6))
    BATCH_SIZE = int(os.getenv("UPH_BATCH_SIZE", 1000))
    PASS_TIMEOUT_SECONDS = float(os.getenv("UPH_PASS_TIMEOUT_SECONDS", 3600))

    @classmethod
    def validate(cls):
        """Validate required database configuration"""
        required = ['UPH_DB_HOST', 'UPH_DB_NAME', 'UPH_DB_USER', 'UPH_DB_PASS']

        missing = [field for field in required if not getattr(cls, field)]

        if missing:
            raise ValueError(f"Missing required configuration: {', '.join(missing)}")

        if cls.ROUTING_POLICY not in ('bucket', 'reject'):
            raise ValueError(
                f"Invalid UPH_ROUTING_POLICY: '{cls.ROUTING_POLICY}'. "
                f"Must be 'bucket' or 'reject'"
            )

        return True
