"""Configuration for the index queue worker.

Usage:
    from search_index_queue.config import Config

    database_url = Config.INDEX_QUEUE_DATABASE_URL
    batch_size = Config.INDEX_QUEUE_BATCH_SIZE
"""

import os


class Config:
    """Centralized configuration for the index queue.

    All configuration values are class variables that can be accessed directly.
    Values are loaded from environment variables with sensible defaults.

    Example:
        from search_index_queue.config import Config

        print(Config.ELASTICSEARCH_URL)
        print(Config.INDEX_QUEUE_CLASS_NAMES)
    """

    # ========================================================================
    # Helper methods (static)
    # ========================================================================

    @staticmethod
    def _get_value(key: str, default: str) -> str:
        """Get configuration value from environment with optional default."""
        return os.getenv(key, default)

    @staticmethod
    def _get_int(key: str, default: int) -> int:
        """Get integer configuration value."""
        return int(os.getenv(key, str(default)))

    @staticmethod
    def _get_float(key: str, default: float) -> float:
        """Get float configuration value."""
        return float(os.getenv(key, str(default)))

    @staticmethod
    def _get_bool(key: str, default: bool = False) -> bool:
        """Get boolean configuration value."""
        return os.getenv(key, str(default)).lower() in ("true", "1", "yes")

    @staticmethod
    def _get_list(key: str, default: str, separator: str = ",") -> list[str]:
        """Get list configuration value, skipping empty items."""
        return [item.strip() for item in os.getenv(key, default).split(separator) if item.strip()]

    # ========================================================================
    # Queue Configuration
    # ========================================================================

    # "sqlalchemy" or "memory"
    INDEX_QUEUE_BACKEND: str = _get_value("INDEX_QUEUE_BACKEND", "sqlalchemy")
    INDEX_QUEUE_DATABASE_URL: str = _get_value(
        "INDEX_QUEUE_DATABASE_URL", "sqlite:///index_queue.db"
    )
    INDEX_QUEUE_RETRY_INTERVAL: float = _get_float("INDEX_QUEUE_RETRY_INTERVAL", 60)
    INDEX_QUEUE_BATCH_SIZE: int = _get_int("INDEX_QUEUE_BATCH_SIZE", 100)
    INDEX_QUEUE_CLASS_NAMES: list[str] = _get_list("INDEX_QUEUE_CLASS_NAMES", "")

    # Class=module:attribute pairs, comma separated
    INDEX_QUEUE_LOADERS: str = _get_value("INDEX_QUEUE_LOADERS", "")

    # ========================================================================
    # Search Engine Configuration
    # ========================================================================

    ELASTICSEARCH_URL: str = _get_value("ELASTICSEARCH_URL", "http://localhost:9200")
    ELASTICSEARCH_INDEX_PREFIX: str = _get_value("ELASTICSEARCH_INDEX_PREFIX", "")

    # ========================================================================
    # Worker Configuration
    # ========================================================================

    LOG_LEVEL: str = _get_value("LOG_LEVEL", "INFO")
    WORKER_POLL_INTERVAL: float = _get_float("WORKER_POLL_INTERVAL", 5)

    # ========================================================================
    # MQTT Configuration
    # ========================================================================

    BROADCAST_TYPE: str = _get_value("BROADCAST_TYPE", "mqtt")
    MQTT_BROKER: str = _get_value("MQTT_BROKER", "localhost")
    MQTT_PORT: int = _get_int("MQTT_PORT", 1883)
    MQTT_TOPIC: str = _get_value("MQTT_TOPIC", "index_queue/events")
