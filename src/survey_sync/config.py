"""
Configuración del servicio de sincronización de encuestas
"""

from pathlib import Path
from typing import Optional, Any
from pydantic import field_validator
from pydantic_settings import BaseSettings
import structlog

APP_DIR = Path(__file__).resolve().parent
SRC_DIR = APP_DIR.parent
PROJECT_ROOT = SRC_DIR.parent
ENV_PATH = PROJECT_ROOT / ".env"


class Settings(BaseSettings):
    """Configuración de la aplicación"""

    # Salesforce - la sesión la entrega el módulo de autenticación externo
    salesforce_instance_url: str = ""
    salesforce_access_token: Optional[str] = None
    salesforce_api_version: str = "v49.0"
    salesforce_timeout_seconds: int = 30

    # Reintentos de transporte
    salesforce_max_attempts: int = 3
    salesforce_initial_backoff_seconds: float = 1.0

    # Objeto de encuestas y campos de fondo
    survey_object: str = "Survey__c"
    user_contact_field: str = "Survey_Taker__c"
    survey_date_field: str = "Survey_Date__c"
    user_contact_id: Optional[str] = None

    # Base de datos local
    local_database_url: str = f"sqlite:///{PROJECT_ROOT / 'data' / 'survey.db'}"
    sync_state_path: str = str(PROJECT_ROOT / "data" / "state" / "survey_sync_state.json")

    # Application Configuration
    app_env: str = "development"
    log_level: str = "INFO"
    api_host: str = "0.0.0.0"
    api_port: int = 8000

    # Logging
    log_file_path: str = str(PROJECT_ROOT / "logs" / "survey_sync.log")
    log_backup_count: int = 30  # Equivalente a 30 días de retención cuando se rota diariamente

    class Config:
        env_file = str(ENV_PATH)
        env_file_encoding = "utf-8"
        case_sensitive = False
        extra = "ignore"  # Ignorar campos extra del .env

    @field_validator('log_level')
    def validate_log_level(cls, v: str) -> str:
        """Validar nivel de logging"""
        valid_levels = ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']
        if v.upper() not in valid_levels:
            raise ValueError(f'Log level must be one of: {valid_levels}')
        return v.upper()

    @field_validator('app_env')
    def validate_app_env(cls, v: str) -> str:
        """Validar entorno de aplicación"""
        valid_envs = ['development', 'staging', 'production']
        if v.lower() not in valid_envs:
            raise ValueError(f'App env must be one of: {valid_envs}')
        return v.lower()

    @field_validator('salesforce_instance_url')
    def strip_instance_url(cls, v: str) -> str:
        """Quitar la diagonal final de la URL de instancia"""
        return v.rstrip("/")

    def model_post_init(self, __context: Any) -> None:  # noqa: D401
        """Normaliza rutas relativas después de cargar el .env."""
        for field_name in ('sync_state_path', 'log_file_path'):
            value = getattr(self, field_name, None)
            if not value:
                continue

            path = Path(value)
            if not path.is_absolute():
                path = PROJECT_ROOT / path

            object.__setattr__(self, field_name, str(path))


def get_settings() -> Settings:
    """Obtener configuración de la aplicación"""
    return Settings()


def configure_logging(settings: Settings):
    """Configurar logging estructurado con separación por servicio."""
    import logging.config

    log_path = Path(settings.log_file_path)
    log_dir = log_path.parent
    log_dir.mkdir(parents=True, exist_ok=True)

    service_log_paths = {
        "app": log_dir / "application.log",
        "survey_sync": log_path,
        "salesforce_client": log_dir / "salesforce_client.log",
    }

    structlog.contextvars.clear_contextvars()
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso", key="timestamp_utc"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter(
                structlog.processors.JSONRenderer()
            ),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    formatter_name = "structlog_json"
    foreign_pre_chain = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso", key="timestamp_utc"),
    ]

    handlers: dict = {
        "console": {
            "class": "logging.StreamHandler",
            "formatter": formatter_name,
            "stream": "ext://sys.stdout",
        },
    }
    filters: dict = {}
    loggers: dict = {}

    for service_name, path in service_log_paths.items():
        filters[f"{service_name}_filter"] = {"()": "logging.Filter", "name": service_name}
        handlers[f"{service_name}_file"] = {
            "class": "logging.handlers.TimedRotatingFileHandler",
            "formatter": formatter_name,
            "filename": str(path),
            "when": "midnight",
            "backupCount": settings.log_backup_count,
            "encoding": "utf-8",
            "utc": True,
            "filters": [f"{service_name}_filter"],
        }
        loggers[service_name] = {
            "handlers": [f"{service_name}_file"],
            "level": settings.log_level,
            "propagate": True,
        }

    log_config = {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            formatter_name: {
                "()": structlog.stdlib.ProcessorFormatter,
                "processor": structlog.processors.JSONRenderer(),
                "foreign_pre_chain": foreign_pre_chain,
            },
        },
        "filters": filters,
        "handlers": handlers,
        "loggers": loggers,
        "root": {
            "handlers": ["console"],
            "level": settings.log_level,
        },
    }

    logging.config.dictConfig(log_config)
