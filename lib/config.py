from functools import lru_cache
from typing import Optional

from dotenv import load_dotenv
from pydantic_settings import BaseSettings, SettingsConfigDict

load_dotenv()

class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file='.env', extra='ignore')

    # OpenAI settings
    openai_api_key: str = ''
    openai_model: str = 'gpt-4o-audio-preview'

    # Supabase settings
    supabase_url: str = ''
    supabase_key: str = ''

    # Flask settings
    secret_key: str = 'dev-change-this'
    site_url: str = 'http://localhost:8000'
    log_level: str = 'INFO'

    # Quota settings
    max_anonymous_checks: int = 5
    max_free_monthly_checks: int = 30

    # Recording settings
    max_recording_seconds: float = 60.0
    sample_rate: int = 16000
    input_device: Optional[str] = None

    # Anonymous local storage
    local_storage_path: str = 'local_storage.db'

@lru_cache
def get_settings() -> Settings:
    return Settings()
