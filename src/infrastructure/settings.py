"""Application Settings.

Application-wide values combined with the audit and database configuration
loaded through the ConfigManager.
"""

import os
from typing import Optional

from src.infrastructure.config_manager import AuditConfig, ConfigManager, DatabaseConfig

APP_NAME = "txn-audit"
APP_VERSION = "1.0.0"


class Settings:
    """Application settings loaded from the environment.

    Database and audit configuration load lazily on first access, so
    importing this module never touches the environment's credentials.
    """

    def __init__(self):
        self._config_manager: Optional[ConfigManager] = None
        self._db_config: Optional[DatabaseConfig] = None
        self._audit_config: Optional[AuditConfig] = None

        self.app_name = os.getenv("TA_APP_NAME", APP_NAME)
        self.log_level = os.getenv("TA_LOG_LEVEL", "INFO")
        self.log_json = os.getenv("TA_LOG_JSON", "false").lower() == "true"

    @property
    def config_manager(self) -> ConfigManager:
        if self._config_manager is None:
            self._config_manager = ConfigManager.from_environment()
        return self._config_manager

    @property
    def db_config(self) -> DatabaseConfig:
        if self._db_config is None:
            self._db_config = self.config_manager.get_database_config()
        return self._db_config

    @property
    def audit_config(self) -> AuditConfig:
        if self._audit_config is None:
            self._audit_config = self.config_manager.get_audit_config()
        return self._audit_config


# Global settings instance
settings = Settings()
