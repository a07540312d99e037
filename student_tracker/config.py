"""Runtime configuration loaded from the environment and an optional .env file."""

import os
from dataclasses import dataclass, field
from typing import List, Optional

from dotenv import load_dotenv

DEFAULT_SYNC_ROUTES = "/,/dashboard,/settings"
DELETE_ALL_PHRASE = "DELETE ALL STUDENTS"


def _parse_list(value: str) -> List[str]:
    return [item.strip() for item in value.split(',') if item.strip()]


@dataclass
class Settings:
    """Settings shared by the client controller and the reference backend."""
    api_base_url: str = "http://localhost:5000/api"
    request_timeout: float = 10.0
    refresh_debounce_ms: int = 100
    notification_duration_ms: int = 5000
    sync_allowed_routes: List[str] = field(default_factory=lambda: _parse_list(DEFAULT_SYNC_ROUTES))
    max_upload_size_mb: int = 10
    delete_all_phrase: str = DELETE_ALL_PHRASE
    ml_api_url: Optional[str] = None
    allow_origins: List[str] = field(default_factory=lambda: ['*'])
    advisor_name: str = "Academic Advisor"
    advisor_email: str = "advisor@example.com"
    debug: bool = False
    api_tokens: str = ""

    @property
    def max_upload_size(self) -> int:
        return self.max_upload_size_mb * 1024 * 1024


def load_settings(env_file: Optional[str] = None) -> Settings:
    """
    Build Settings from environment variables.

    Args:
        env_file: Optional path to a .env file; defaults to the nearest .env

    Returns:
        Populated Settings instance
    """
    load_dotenv(env_file)

    return Settings(
        api_base_url=os.getenv('API_BASE_URL', 'http://localhost:5000/api').rstrip('/'),
        request_timeout=float(os.getenv('REQUEST_TIMEOUT_SECONDS', '10')),
        refresh_debounce_ms=int(os.getenv('REFRESH_DEBOUNCE_MS', '100')),
        notification_duration_ms=int(os.getenv('NOTIFICATION_DURATION_MS', '5000')),
        sync_allowed_routes=_parse_list(os.getenv('SYNC_ALLOWED_ROUTES', DEFAULT_SYNC_ROUTES)),
        max_upload_size_mb=int(os.getenv('MAX_UPLOAD_SIZE_MB', '10')),
        delete_all_phrase=os.getenv('DELETE_ALL_PHRASE', DELETE_ALL_PHRASE),
        ml_api_url=os.getenv('ML_API_URL') or None,
        allow_origins=_parse_list(os.getenv('ALLOW_ORIGINS', '*')),
        advisor_name=os.getenv('ADVISOR_NAME', 'Academic Advisor'),
        advisor_email=os.getenv('ADVISOR_EMAIL', 'advisor@example.com'),
        debug=os.getenv('DEBUG', 'False').lower() == 'true',
        api_tokens=os.getenv('API_TOKENS', ''),
    )
