# sendbox/config/loader.py
"""
Загрузчик конфигурации проекта.
Единственный источник истины: config/config.json.
Секретные данные переопределяются из переменных окружения.
"""

from __future__ import annotations

import json
import os
from decimal import Decimal
from functools import lru_cache
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from sendbox.common.constants import PaymentsMode


# =============================================================================
# ОПРЕДЕЛЕНИЕ ПУТЕЙ
# =============================================================================

def get_project_root() -> Path:
    """Возвращает корневую директорию проекта."""
    return Path(__file__).parent.parent.parent


def get_config_path() -> Path:
    """Возвращает путь к файлу конфигурации."""
    return get_project_root() / "config" / "config.json"


def load_config_json() -> dict[str, Any]:
    """Загружает config.json и возвращает словарь."""
    config_path = get_config_path()
    if not config_path.exists():
        raise FileNotFoundError(f"Файл конфигурации не найден: {config_path}")

    with open(config_path, "r", encoding="utf-8") as f:
        return json.load(f)


def _env_bool(name: str, default: bool) -> bool:
    """Читает булев флаг из окружения ("true"/"false")."""
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


# =============================================================================
# PYDANTIC МОДЕЛИ КОНФИГУРАЦИИ
# =============================================================================

class SystemSettings(BaseModel):
    """Системные настройки."""
    PROJECT_NAME: str = "sendbox"
    VERSION: str = "1.0.0"
    DEBUG: bool = True
    ENVIRONMENT: str = "development"
    RUN_DEV_MODE: bool = True
    COMPONENT_MODE: str = "all"
    DEFAULT_LANGUAGE: str = "fr"
    SUPPORTED_LANGUAGES: list[str] = Field(default_factory=lambda: ["fr", "en"])


class DeploymentSettings(BaseModel):
    """Настройки развертывания компонентов."""
    BOOKINGS_SERVICE_HOST: str = "0.0.0.0"
    BOOKINGS_SERVICE_PORT: int = 8090
    BOOKINGS_SERVICE_INSTANCES_COUNT: int = 1
    WORKER_INSTANCES_COUNT: int = 1


class LoggingSettings(BaseModel):
    """Настройки логирования."""
    LOG_LEVEL: str = "DEBUG"
    LOG_TO_FILE: bool = True
    LOG_FILE_PATH: str = "logs/app.log"
    LOG_FORMAT: str = "colored"
    LOG_MAX_BYTES: int = 10485760


class DatabaseSettings(BaseModel):
    """Настройки PostgreSQL."""
    DB_HOST: str = "localhost"
    DB_PORT: int = 5432
    DB_NAME: str = "sendbox"
    DB_USER: str = "postgres"
    DB_PASSWORD: str = ""
    DB_MIN_POOL_SIZE: int = 5
    DB_MAX_POOL_SIZE: int = 20
    DB_COMMAND_TIMEOUT: int = 60

    @field_validator("DB_PASSWORD", mode="before")
    @classmethod
    def get_from_env(cls, v: str) -> str:
        """Получает пароль из переменных окружения."""
        if not v:
            return os.getenv("DB_PASSWORD", "")
        return v

    @property
    def dsn(self) -> str:
        """Возвращает DSN для подключения к PostgreSQL."""
        return (
            f"postgresql://{self.DB_USER}:{self.DB_PASSWORD}"
            f"@{self.DB_HOST}:{self.DB_PORT}/{self.DB_NAME}"
        )


class RedisSettings(BaseModel):
    """Настройки Redis."""
    REDIS_HOST: str = "localhost"
    REDIS_PORT: int = 6379
    REDIS_DB: int = 0
    REDIS_PASSWORD: str = ""
    REDIS_NAMESPACE: str = "sendbox"
    REDIS_MAX_CONNECTIONS: int = 50

    @field_validator("REDIS_PASSWORD", mode="before")
    @classmethod
    def get_from_env(cls, v: str) -> str:
        """Получает пароль из переменных окружения."""
        if not v:
            return os.getenv("REDIS_PASSWORD", "")
        return v

    @property
    def url(self) -> str:
        """Возвращает URL для подключения к Redis."""
        auth = f":{self.REDIS_PASSWORD}@" if self.REDIS_PASSWORD else ""
        return f"redis://{auth}{self.REDIS_HOST}:{self.REDIS_PORT}/{self.REDIS_DB}"


class RedisTTLSettings(BaseModel):
    """Настройки TTL ключей."""
    WEBHOOK_EVENT_TTL: int = 7 * 24 * 3600


class RabbitMQSettings(BaseModel):
    """Настройки RabbitMQ."""
    RABBITMQ_HOST: str = "localhost"
    RABBITMQ_PORT: int = 5672
    RABBITMQ_USER: str = "guest"
    RABBITMQ_PASSWORD: str = "guest"
    RABBITMQ_VHOST: str = "/"
    RABBITMQ_EXCHANGE: str = "sendbox.events"
    RABBITMQ_PREFETCH_COUNT: int = 10

    @field_validator("RABBITMQ_PASSWORD", mode="before")
    @classmethod
    def get_from_env(cls, v: str) -> str:
        """Пароль из окружения имеет приоритет."""
        env_pass = os.getenv("RABBITMQ_PASSWORD", "")
        if env_pass:
            return env_pass
        return v

    @property
    def url(self) -> str:
        """Возвращает URL для подключения к RabbitMQ."""
        return (
            f"amqp://{self.RABBITMQ_USER}:{self.RABBITMQ_PASSWORD}"
            f"@{self.RABBITMQ_HOST}:{self.RABBITMQ_PORT}{self.RABBITMQ_VHOST}"
        )


class PaymentSettings(BaseModel):
    """Настройки платёжного провайдера."""
    PAYMENTS_MODE: PaymentsMode = PaymentsMode.SIMULATION
    STRIPE_SECRET_KEY: str = ""
    STRIPE_WEBHOOK_SECRET: str = ""
    STRIPE_API_VERSION: str | None = None
    STRIPE_MAX_NETWORK_RETRIES: int = 0
    CURRENCY: str = "eur"
    CONNECT_COUNTRIES: list[str] = Field(default_factory=lambda: ["FR", "BJ"])
    CONNECT_DEFAULT_COUNTRY: str = "FR"
    CONNECT_RETURN_URL: str = "https://sendbox.example.com/dashboard/reglages/paiements"
    CONNECT_REFRESH_URL: str = "https://sendbox.example.com/dashboard/reglages/paiements?refresh=1"

    @field_validator("STRIPE_SECRET_KEY", "STRIPE_WEBHOOK_SECRET", mode="before")
    @classmethod
    def get_from_env(cls, v: str, info) -> str:
        """Секреты Stripe берутся из окружения, если не заданы."""
        if not v:
            return os.getenv(info.field_name, "")
        return v

    @field_validator("CURRENCY")
    @classmethod
    def lower_currency(cls, v: str) -> str:
        return v.lower()

    @property
    def payouts_enforced(self) -> bool:
        """Реальные выплаты требуют активного Connect-аккаунта."""
        return self.PAYMENTS_MODE == PaymentsMode.STRIPE


class FeatureSettings(BaseModel):
    """Флаги функциональности."""
    KYC_ENABLED: bool = True


class PricingSettings(BaseModel):
    """Тарифы: комиссия платформы и страховка посылки."""
    COMMISSION_RATE: Decimal = Decimal("0.12")
    INSURANCE_RATE: Decimal = Decimal("0.015")
    INSURANCE_BASE_FEE: Decimal = Decimal("2.00")
    MAX_INSURANCE_COVERAGE: Decimal = Decimal("500.00")


class BookingSettings(BaseModel):
    """Правила бронирования и таймеры жизненного цикла."""
    MIN_KILOS: Decimal = Decimal("0.5")
    MAX_KILOS: Decimal = Decimal("30")
    DESCRIPTION_MIN_LENGTH: int = 10
    DESCRIPTION_MAX_LENGTH: int = 500
    MAX_PACKAGE_VALUE: Decimal = Decimal("10000")
    MAX_PENDING_BOOKINGS: int = 5
    REFUSAL_REASON_MIN_LENGTH: int = 5
    AUTO_RELEASE_DAYS: int = 7
    PENDING_PAYMENT_TIMEOUT_HOURS: int = 48
    SWEEP_INTERVAL_SECONDS: int = 300
    SWEEP_BATCH_SIZE: int = 100


# =============================================================================
# ГЛАВНЫЙ КЛАСС НАСТРОЕК
# =============================================================================

class Settings(BaseSettings):
    """
    Главный класс настроек приложения.
    Агрегирует все секции конфигурации.
    """
    system: SystemSettings = Field(default_factory=SystemSettings)
    deployment: DeploymentSettings = Field(default_factory=DeploymentSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    redis: RedisSettings = Field(default_factory=RedisSettings)
    redis_ttl: RedisTTLSettings = Field(default_factory=RedisTTLSettings)
    rabbitmq: RabbitMQSettings = Field(default_factory=RabbitMQSettings)
    payments: PaymentSettings = Field(default_factory=PaymentSettings)
    features: FeatureSettings = Field(default_factory=FeatureSettings)
    pricing: PricingSettings = Field(default_factory=PricingSettings)
    bookings: BookingSettings = Field(default_factory=BookingSettings)

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @classmethod
    def from_config_json(cls) -> "Settings":
        """
        Создаёт объект Settings из config.json.
        Секреты и адреса инфраструктуры переопределяются из окружения.
        """
        return cls.from_dict(load_config_json())

    @classmethod
    def from_dict(cls, config_data: dict[str, Any]) -> "Settings":
        """Раскладывает плоский словарь конфигурации по секциям."""
        # Ключи _comment_* служат комментариями в JSON
        data = {k: v for k, v in config_data.items() if not k.startswith("_comment_")}

        return cls(
            system=SystemSettings(
                PROJECT_NAME=data.get("PROJECT_NAME", "sendbox"),
                VERSION=data.get("VERSION", "1.0.0"),
                DEBUG=data.get("DEBUG", True),
                ENVIRONMENT=os.getenv("ENVIRONMENT", data.get("ENVIRONMENT", "development")),
                RUN_DEV_MODE=data.get("RUN_DEV_MODE", True),
                COMPONENT_MODE=os.getenv("COMPONENT_MODE", data.get("COMPONENT_MODE", "all")),
                DEFAULT_LANGUAGE=data.get("DEFAULT_LANGUAGE", "fr"),
                SUPPORTED_LANGUAGES=data.get("SUPPORTED_LANGUAGES", ["fr", "en"]),
            ),
            deployment=DeploymentSettings(
                BOOKINGS_SERVICE_HOST=os.getenv("BOOKINGS_SERVICE_HOST", data.get("BOOKINGS_SERVICE_HOST", "0.0.0.0")),
                BOOKINGS_SERVICE_PORT=int(os.getenv("BOOKINGS_SERVICE_PORT", data.get("BOOKINGS_SERVICE_PORT", 8090))),
                BOOKINGS_SERVICE_INSTANCES_COUNT=data.get("BOOKINGS_SERVICE_INSTANCES_COUNT", 1),
                WORKER_INSTANCES_COUNT=data.get("WORKER_INSTANCES_COUNT", 1),
            ),
            logging=LoggingSettings(
                LOG_LEVEL=data.get("LOG_LEVEL", "DEBUG"),
                LOG_TO_FILE=data.get("LOG_TO_FILE", True),
                LOG_FILE_PATH=data.get("LOG_FILE_PATH", "logs/app.log"),
                LOG_FORMAT=data.get("LOG_FORMAT", "json"),
                LOG_MAX_BYTES=data.get("LOG_MAX_BYTES", 10485760),
            ),
            database=DatabaseSettings(
                DB_HOST=os.getenv("DB_HOST", data.get("DB_HOST", "localhost")),
                DB_PORT=int(os.getenv("DB_PORT", data.get("DB_PORT", 5432))),
                DB_NAME=os.getenv("DB_NAME", data.get("DB_NAME", "sendbox")),
                DB_USER=os.getenv("DB_USER", data.get("DB_USER", "postgres")),
                DB_PASSWORD=os.getenv("DB_PASSWORD", data.get("DB_PASSWORD", "")),
                DB_MIN_POOL_SIZE=data.get("DB_MIN_POOL_SIZE", 5),
                DB_MAX_POOL_SIZE=data.get("DB_MAX_POOL_SIZE", 20),
                DB_COMMAND_TIMEOUT=data.get("DB_COMMAND_TIMEOUT", 60),
            ),
            redis=RedisSettings(
                REDIS_HOST=os.getenv("REDIS_HOST", data.get("REDIS_HOST", "localhost")),
                REDIS_PORT=int(os.getenv("REDIS_PORT", data.get("REDIS_PORT", 6379))),
                REDIS_DB=data.get("REDIS_DB", 0),
                REDIS_PASSWORD=os.getenv("REDIS_PASSWORD", data.get("REDIS_PASSWORD", "")),
                REDIS_NAMESPACE=data.get("REDIS_NAMESPACE", "sendbox"),
                REDIS_MAX_CONNECTIONS=data.get("REDIS_MAX_CONNECTIONS", 50),
            ),
            redis_ttl=RedisTTLSettings(
                WEBHOOK_EVENT_TTL=data.get("WEBHOOK_EVENT_TTL", 7 * 24 * 3600),
            ),
            rabbitmq=RabbitMQSettings(
                RABBITMQ_HOST=os.getenv("RABBITMQ_HOST", data.get("RABBITMQ_HOST", "localhost")),
                RABBITMQ_PORT=int(os.getenv("RABBITMQ_PORT", data.get("RABBITMQ_PORT", 5672))),
                RABBITMQ_USER=os.getenv("RABBITMQ_USER", data.get("RABBITMQ_USER", "guest")),
                RABBITMQ_PASSWORD=os.getenv("RABBITMQ_PASSWORD", data.get("RABBITMQ_PASSWORD", "guest")),
                RABBITMQ_VHOST=data.get("RABBITMQ_VHOST", "/"),
                RABBITMQ_EXCHANGE=data.get("RABBITMQ_EXCHANGE", "sendbox.events"),
                RABBITMQ_PREFETCH_COUNT=data.get("RABBITMQ_PREFETCH_COUNT", 10),
            ),
            payments=PaymentSettings(
                PAYMENTS_MODE=os.getenv("PAYMENTS_MODE", data.get("PAYMENTS_MODE", PaymentsMode.SIMULATION.value)),
                STRIPE_SECRET_KEY=os.getenv("STRIPE_SECRET_KEY", data.get("STRIPE_SECRET_KEY", "")),
                STRIPE_WEBHOOK_SECRET=os.getenv("STRIPE_WEBHOOK_SECRET", data.get("STRIPE_WEBHOOK_SECRET", "")),
                STRIPE_API_VERSION=data.get("STRIPE_API_VERSION"),
                STRIPE_MAX_NETWORK_RETRIES=data.get("STRIPE_MAX_NETWORK_RETRIES", 0),
                CURRENCY=data.get("CURRENCY", "eur"),
                CONNECT_COUNTRIES=data.get("CONNECT_COUNTRIES", ["FR", "BJ"]),
                CONNECT_DEFAULT_COUNTRY=data.get("CONNECT_DEFAULT_COUNTRY", "FR"),
                CONNECT_RETURN_URL=data.get("CONNECT_RETURN_URL", PaymentSettings().CONNECT_RETURN_URL),
                CONNECT_REFRESH_URL=data.get("CONNECT_REFRESH_URL", PaymentSettings().CONNECT_REFRESH_URL),
            ),
            features=FeatureSettings(
                KYC_ENABLED=_env_bool("KYC_ENABLED", data.get("KYC_ENABLED", True)),
            ),
            pricing=PricingSettings(
                COMMISSION_RATE=Decimal(str(data.get("COMMISSION_RATE", "0.12"))),
                INSURANCE_RATE=Decimal(str(data.get("INSURANCE_RATE", "0.015"))),
                INSURANCE_BASE_FEE=Decimal(str(data.get("INSURANCE_BASE_FEE", "2.00"))),
                MAX_INSURANCE_COVERAGE=Decimal(str(data.get("MAX_INSURANCE_COVERAGE", "500.00"))),
            ),
            bookings=BookingSettings(
                MIN_KILOS=Decimal(str(data.get("MIN_KILOS", "0.5"))),
                MAX_KILOS=Decimal(str(data.get("MAX_KILOS", "30"))),
                DESCRIPTION_MIN_LENGTH=data.get("DESCRIPTION_MIN_LENGTH", 10),
                DESCRIPTION_MAX_LENGTH=data.get("DESCRIPTION_MAX_LENGTH", 500),
                MAX_PACKAGE_VALUE=Decimal(str(data.get("MAX_PACKAGE_VALUE", "10000"))),
                MAX_PENDING_BOOKINGS=data.get("MAX_PENDING_BOOKINGS", 5),
                REFUSAL_REASON_MIN_LENGTH=data.get("REFUSAL_REASON_MIN_LENGTH", 5),
                AUTO_RELEASE_DAYS=data.get("AUTO_RELEASE_DAYS", 7),
                PENDING_PAYMENT_TIMEOUT_HOURS=data.get("PENDING_PAYMENT_TIMEOUT_HOURS", 48),
                SWEEP_INTERVAL_SECONDS=data.get("SWEEP_INTERVAL_SECONDS", 300),
                SWEEP_BATCH_SIZE=data.get("SWEEP_BATCH_SIZE", 100),
            ),
        )


@lru_cache()
def get_settings() -> Settings:
    """
    Возвращает синглтон настроек приложения.
    Использует кэширование для производительности.
    """
    from dotenv import load_dotenv

    env_path = get_project_root() / ".env"
    if env_path.exists():
        load_dotenv(env_path)

    return Settings.from_config_json()


# Экспорт синглтона для удобного импорта
settings = get_settings()
