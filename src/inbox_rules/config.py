"""
Runtime configuration read from the environment
"""
import os
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field, ValidationError


class ConfigError(Exception):
    """Raised when the environment holds an invalid setting"""


class Settings(BaseModel):
    database_url: str = 'sqlite:///inbox_rules.db'
    rules_file: str = 'config/rules.json'
    log_level: str = 'INFO'

    openai_api_key: Optional[str] = None
    openai_model: str = 'gpt-4o-mini'
    llm_timeout_seconds: float = Field(30.0, gt=0)

    provider_timeout_seconds: float = Field(30.0, gt=0)
    webhook_timeout_seconds: float = Field(1.0, gt=0)
    outlook_access_token: Optional[str] = None

    cron_secret: Optional[str] = None
    sweep_interval_seconds: int = Field(300, gt=0)
    sweep_batch_size: int = Field(100, gt=0)
    processing_timeout_minutes: int = Field(15, gt=0)

    max_action_retries: int = Field(3, ge=1)
    retry_base_delay_seconds: float = Field(1.0, ge=0)


# Settings field -> environment variable
_ENV_VARS = {
    'database_url': 'DATABASE_URL',
    'rules_file': 'RULES_FILE',
    'log_level': 'LOG_LEVEL',
    'openai_api_key': 'OPENAI_API_KEY',
    'openai_model': 'OPENAI_MODEL',
    'llm_timeout_seconds': 'LLM_TIMEOUT_SECONDS',
    'provider_timeout_seconds': 'PROVIDER_TIMEOUT_SECONDS',
    'webhook_timeout_seconds': 'WEBHOOK_TIMEOUT_SECONDS',
    'outlook_access_token': 'OUTLOOK_ACCESS_TOKEN',
    'cron_secret': 'CRON_SECRET',
    'sweep_interval_seconds': 'SWEEP_INTERVAL_SECONDS',
    'sweep_batch_size': 'SWEEP_BATCH_SIZE',
    'processing_timeout_minutes': 'PROCESSING_TIMEOUT_MINUTES',
    'max_action_retries': 'MAX_ACTION_RETRIES',
    'retry_base_delay_seconds': 'RETRY_BASE_DELAY_SECONDS',
}


def load_settings(env_file: Optional[str] = None) -> Settings:
    """Load .env (if present) and build Settings from the environment"""
    load_dotenv(env_file)
    values = {}
    for field_name, env_var in _ENV_VARS.items():
        value = os.getenv(env_var)
        if value not in (None, ''):
            values[field_name] = value
    try:
        return Settings(**values)
    except ValidationError as e:
        raise ConfigError(f"Invalid configuration: {e}") from e
