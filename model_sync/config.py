"""
Model Sync Configuration
Environment driven settings for the transfer and QC engines.
"""

import os
import re
from pathlib import Path
from typing import Dict, Optional


_SIZE_PATTERN = re.compile(r'^\s*(\d+(?:\.\d+)?)\s*(B|KB|MB|GB)?\s*(?:/S)?\s*$', re.IGNORECASE)
_SIZE_UNITS = {
    'B': 1,
    'KB': 1024,
    'MB': 1024 ** 2,
    'GB': 1024 ** 3,
}


def parse_size(value: str) -> int:
    """Parse a size or rate string such as '512MB', '10 KB' or '2GB/s' into bytes"""
    match = _SIZE_PATTERN.match(value or '')
    if not match:
        raise ValueError(f"Invalid size '{value}', expected a number followed by B, KB, MB or GB")
    number, unit = match.groups()
    size = int(float(number) * _SIZE_UNITS[(unit or 'B').upper()])
    if size <= 0:
        raise ValueError(f"Size must be positive: '{value}'")
    return size


def normalize_base_url(url: str) -> str:
    """Add a scheme to host:port style addresses and drop trailing slashes"""
    url = url.strip()
    if not url.startswith(('http://', 'https://')):
        url = f"http://{url}"
    return url.rstrip('/')


class SyncSettings:
    """Settings for model sync, read from overrides then the environment"""

    def __init__(self, overrides: Optional[Dict[str, str]] = None):
        self.config = dict(overrides or {})

    def get_config_value(self, key: str, default: str = '') -> str:
        """Get configuration value with fallback to environment variables"""
        return self.config.get(key, os.getenv(key, default))

    @property
    def host(self):
        return self.get_config_value('MODEL_SYNC_HOST', 'localhost')

    @property
    def port(self):
        return int(self.get_config_value('MODEL_SYNC_PORT', '8011'))

    @property
    def debug(self):
        return self.get_config_value('DEBUG', 'false').lower() == 'true'

    @property
    def log_level(self):
        return self.get_config_value('LOG_LEVEL', 'INFO')

    @property
    def log_format(self):
        return self.get_config_value('LOG_FORMAT', 'text')

    @property
    def ollama_host(self) -> str:
        return normalize_base_url(self.get_config_value('OLLAMA_HOST', 'http://localhost:11434'))

    @property
    def models_dir(self) -> Path:
        default = str(Path.home() / '.ollama' / 'models')
        return Path(self.get_config_value('OLLAMA_MODELS', default)).expanduser()

    @property
    def registry_url(self) -> str:
        return self.get_config_value('MODEL_SYNC_REGISTRY_URL', 'https://registry.ollama.ai').rstrip('/')

    @property
    def buffer_size(self) -> int:
        return parse_size(self.get_config_value('MODEL_SYNC_BUFFER_SIZE', '512MB'))

    @property
    def throttle(self) -> Optional[int]:
        value = self.get_config_value('MODEL_SYNC_THROTTLE', '')
        return parse_size(value) if value else None

    @property
    def request_timeout(self) -> int:
        return int(self.get_config_value('MODEL_SYNC_REQUEST_TIMEOUT', '600'))

    @property
    def qc_output_dir(self) -> Path:
        return Path(self.get_config_value('MODEL_SYNC_QC_OUTPUT_DIR', '.'))

    @property
    def huggingface_token(self):
        return self.get_config_value('HF_TOKEN', self.get_config_value('HUGGINGFACE_TOKEN', '')) or None


def get_settings(overrides: Optional[Dict[str, str]] = None) -> SyncSettings:
    """Get model sync settings instance"""
    return SyncSettings(overrides)


Settings = SyncSettings

__all__ = [
    'Settings', 'get_settings', 'SyncSettings', 'parse_size', 'normalize_base_url'
]
