"""
Configuration Module
====================
Centralized environment variable loading, validation, and access.
Validates all required configuration at startup to fail fast.

NO BUSINESS LOGIC - Pure configuration management only.
"""

import os
import logging
from typing import Optional, Dict, Any
from pathlib import Path

import structlog
from dotenv import load_dotenv


# ============================================================================
# LOGGING
# ============================================================================

logger = logging.getLogger(__name__)


# ============================================================================
# ENVIRONMENT LOADING
# ============================================================================

def load_environment():
    """
    Load environment variables from .env file if present.
    Safe to call multiple times.
    """
    env_path = Path(".env")
    if env_path.exists():
        load_dotenv(env_path)
        logger.info("Loaded environment from .env file")
    else:
        logger.info("No .env file found, using system environment variables")


# Load on module import
load_environment()


# ============================================================================
# CONFIGURATION EXCEPTION
# ============================================================================

class ConfigurationError(Exception):
    """Raised when configuration is invalid or missing."""
    pass


# ============================================================================
# VALIDATION HELPERS
# ============================================================================

VALID_ENVIRONMENTS = ("development", "staging", "production")
VALID_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


def _get_required_env(key: str, description: str = None) -> str:
    """
    Get required environment variable.

    Args:
        key: Environment variable name
        description: Optional description for error message

    Returns:
        Environment variable value

    Raises:
        ConfigurationError: If variable is missing or empty
    """
    value = os.getenv(key)

    if not value or value.strip() == "":
        desc = f" ({description})" if description else ""
        raise ConfigurationError(
            f"Missing required environment variable: {key}{desc}"
        )

    return value.strip()


def _get_optional_env(key: str, default: str = None) -> Optional[str]:
    """Get optional environment variable, falling back to default."""
    value = os.getenv(key, default)
    return value.strip() if value else default


def _get_bool_env(key: str, default: bool = False) -> bool:
    """Get boolean environment variable."""
    value = os.getenv(key, str(default)).lower()
    return value in ("true", "1", "yes", "on", "enabled")


def _get_int_env(key: str, default: int = None) -> Optional[int]:
    """
    Get integer environment variable.

    Raises:
        ConfigurationError: If value is not a valid integer
    """
    value = os.getenv(key)

    if not value:
        return default

    try:
        return int(value)
    except ValueError:
        raise ConfigurationError(
            f"Invalid integer value for {key}: {value}"
        )


# ============================================================================
# SUPABASE CONFIGURATION
# ============================================================================

class SupabaseConfig:
    """Supabase database configuration."""

    def __init__(self):
        self.url = _get_required_env(
            "SUPABASE_URL",
            "Supabase project URL"
        )

        self.key = _get_required_env(
            "SUPABASE_KEY",
            "Supabase anon or service role key"
        )

        # Validate URL format
        if not self.url.startswith("https://"):
            raise ConfigurationError(
                f"SUPABASE_URL must start with https://: {self.url}"
            )

        # Per-request timeout (seconds)
        self.timeout = get_supabase_timeout()


# ============================================================================
# CHECKOUT CONFIGURATION
# ============================================================================

class CheckoutConfig:
    """Checkout, pricing and catalog settings."""

    def __init__(self):
        self.order_number_prefix = get_order_number_prefix()

        # Allowed |server total - client total|, in the smallest currency unit
        self.total_tolerance = get_total_tolerance()

        # Recorded on orders paid through the payment widget
        self.payment_method = get_payment_method()

        self.products_per_page = get_products_per_page()


# ============================================================================
# RUNTIME CONFIGURATION
# ============================================================================

class RuntimeConfig:
    """Environment, logging and metrics settings."""

    def __init__(self):
        self.environment = get_environment()

        if self.environment not in VALID_ENVIRONMENTS:
            raise ConfigurationError(
                f"Invalid APP_ENV: {self.environment}. "
                f"Must be one of {', '.join(VALID_ENVIRONMENTS)}"
            )

        self.log_level = get_log_level()
        self.metrics_enabled = is_metrics_enabled()


# ============================================================================
# MAIN CONFIGURATION CLASS
# ============================================================================

class Config:
    """
    Main configuration container.
    Loads and validates all configuration on initialization.
    """

    def __init__(self):
        """
        Initialize and validate all configuration.

        Raises:
            ConfigurationError: If any required configuration is missing or invalid
        """
        try:
            self.supabase = SupabaseConfig()
            self.checkout = CheckoutConfig()
            self.runtime = RuntimeConfig()

            logger.info("Configuration loaded and validated successfully")

        except ConfigurationError as e:
            logger.error(f"Configuration error: {str(e)}")
            raise
        except Exception as e:
            logger.error(f"Unexpected error loading configuration: {str(e)}")
            raise ConfigurationError(f"Configuration initialization failed: {str(e)}")

    def get_safe_summary(self) -> Dict[str, Any]:
        """
        Get safe configuration summary (no secrets).

        Returns:
            Dictionary with non-sensitive configuration
        """
        return {
            "environment": self.runtime.environment,
            "log_level": self.runtime.log_level,
            "metrics_enabled": self.runtime.metrics_enabled,
            "supabase": {
                "url": self.supabase.url,
                "timeout": self.supabase.timeout,
            },
            "checkout": {
                "order_number_prefix": self.checkout.order_number_prefix,
                "total_tolerance": self.checkout.total_tolerance,
                "payment_method": self.checkout.payment_method,
                "products_per_page": self.checkout.products_per_page,
            },
        }


# ============================================================================
# SINGLETON INSTANCE
# ============================================================================

# Global configuration instance
_config: Optional[Config] = None


def get_config() -> Config:
    """
    Get global configuration instance.
    Initializes on first call.

    Raises:
        ConfigurationError: If configuration is invalid
    """
    global _config

    if _config is None:
        _config = Config()

    return _config


def reload_config():
    """
    Reload configuration from environment.
    Useful for testing or dynamic reconfiguration.
    """
    global _config
    load_environment()
    _config = Config()
    logger.info("Configuration reloaded")


# ============================================================================
# CONVENIENCE GETTERS
# ============================================================================
# Single source for every setting: the section classes above and runtime
# callers both go through these. They read the environment directly so
# error paths and tests never depend on Supabase credentials being present.

def get_supabase_timeout() -> int:
    """
    Get per-request store timeout (seconds).

    Raises:
        ConfigurationError: If not a positive integer
    """
    timeout = _get_int_env("SUPABASE_TIMEOUT", 10)
    if timeout <= 0:
        raise ConfigurationError(
            f"SUPABASE_TIMEOUT must be positive: {timeout}"
        )
    return timeout


def get_log_level() -> str:
    """Get validated log level name."""
    level = (_get_optional_env("LOG_LEVEL", "INFO") or "INFO").upper()
    if level not in VALID_LOG_LEVELS:
        raise ConfigurationError(f"Invalid LOG_LEVEL: {level}")
    return level


def get_environment() -> str:
    """Get deployment environment name."""
    return (_get_optional_env("APP_ENV", "production") or "production").lower()


def is_development() -> bool:
    """True when detailed diagnostics may be logged."""
    return get_environment() == "development"


def is_metrics_enabled() -> bool:
    """Check if Prometheus metrics should be recorded."""
    return _get_bool_env("METRICS_ENABLED", True)


def get_total_tolerance() -> int:
    """Get checkout total tolerance (smallest currency unit)."""
    tolerance = _get_int_env("ORDER_TOTAL_TOLERANCE", 1)
    if tolerance < 0:
        raise ConfigurationError(
            f"ORDER_TOTAL_TOLERANCE must be >= 0: {tolerance}"
        )
    return tolerance


def get_order_number_prefix() -> str:
    """Get display prefix for order numbers."""
    return _get_optional_env("ORDER_NUMBER_PREFIX", "ORD")


def get_payment_method() -> str:
    """Get payment method recorded for widget payments."""
    return _get_optional_env("PAYMENT_METHOD", "toss_payments")


def get_products_per_page() -> int:
    """Get default catalog page size."""
    per_page = _get_int_env("PRODUCTS_PER_PAGE", 12)
    if per_page < 1:
        raise ConfigurationError(
            f"PRODUCTS_PER_PAGE must be >= 1: {per_page}"
        )
    return per_page


# ============================================================================
# LOGGING SETUP
# ============================================================================

def configure_logging(level: Optional[str] = None):
    """
    Configure stdlib logging and structlog.

    Args:
        level: Log level name (defaults to LOG_LEVEL env, INFO)
    """
    level_name = level.upper() if level else get_log_level()

    if level_name not in VALID_LOG_LEVELS:
        raise ConfigurationError(f"Invalid LOG_LEVEL: {level_name}")

    logging.basicConfig(
        level=getattr(logging, level_name),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    renderer = (
        structlog.dev.ConsoleRenderer()
        if is_development()
        else structlog.processors.JSONRenderer()
    )

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.format_exc_info,
            renderer,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level_name)
        ),
        cache_logger_on_first_use=True,
    )


# ============================================================================
# VALIDATION FUNCTION
# ============================================================================

def validate_configuration():
    """
    Validate configuration and log summary.
    Useful for startup checks.

    Raises:
        ConfigurationError: If configuration is invalid
    """
    config = get_config()
    summary = config.get_safe_summary()

    logger.info("Configuration Summary:")
    logger.info(f"  Environment: {summary['environment']}")
    logger.info(f"  Log Level: {summary['log_level']}")
    logger.info(f"  Supabase: {summary['supabase']['url']}")
    logger.info(f"  Order prefix: {summary['checkout']['order_number_prefix']}")
    logger.info(f"  Total tolerance: {summary['checkout']['total_tolerance']}")
    logger.info(f"  Metrics: {'enabled' if summary['metrics_enabled'] else 'disabled'}")

    logger.info("Configuration validation complete")


if __name__ == "__main__":
    configure_logging()

    try:
        validate_configuration()
        print("\n✓ Configuration is valid!")

    except ConfigurationError as e:
        print(f"\n✗ Configuration Error: {e}")
        exit(1)
