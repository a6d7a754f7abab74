"""
Manages loading, saving, and validating the application configuration using Pydantic.

This module defines the configuration schema as a Pydantic model (`Settings`)
and provides a manager class (`ConfigManager`) to handle persistence to a JSON file.
"""

import json
import time
import logging
from pathlib import Path
from typing import Any, Dict, List

from pydantic import BaseModel, Field, ValidationError as PydanticValidationError, field_validator

from .exceptions import ValidationError

VIDEO_QUALITIES: Dict[str, str] = {
    'no-limit': 'No limit',
    '720p': '720p',
    '1080p': '1080p',
    '1440p': '1440p',
    '2160p': '2160p (4K)',
}
RATE_LIMITS: Dict[str, str] = {
    'no-limit': 'No limit',
    '180K': '180 KB/s',
    '360K': '360 KB/s',
    '720K': '720 KB/s',
    '1440K': '1.4 MB/s',
}
SUB_LANGUAGES: Dict[str, str] = {
    'en': 'English', 'es': 'Spanish', 'fr': 'French', 'de': 'German', 'it': 'Italian',
    'pt': 'Portuguese', 'ru': 'Russian', 'ja': 'Japanese', 'ko': 'Korean', 'zh': 'Chinese',
}


class TitleEnhancementSettings(BaseModel):
    """Tuning knobs for the background metadata backfill."""
    enabled: bool = True
    max_title_checks: int = Field(default=2, ge=1, le=10)
    poll_interval: float = Field(default=2.0, gt=0)
    timeout: float = Field(default=15.0, gt=0)


class Settings(BaseModel):
    """
    Defines the application's configuration schema using Pydantic.

    This class provides type hints, default values, and validation logic for all
    configuration settings.
    """
    video_quality: str = 'no-limit'
    rate_limit: str = '180K'
    subtitles: bool = True
    auto_subs: bool = True
    sub_language: str = 'en'
    max_concurrent_downloads: int = Field(default=1, ge=1, le=10)
    poll_interval: float = Field(default=5.0, gt=0)
    max_retries: int = Field(default=3, ge=1)
    log_level: str = 'INFO'
    check_for_updates_on_startup: bool = True
    skipped_update_version: str = ''
    host: str = '127.0.0.1'
    port: int = Field(default=3001, ge=1, le=65535)
    title_enhancement: TitleEnhancementSettings = Field(default_factory=TitleEnhancementSettings)

    @field_validator('video_quality')
    @classmethod
    def validate_video_quality(cls, value: str) -> str:
        if value not in VIDEO_QUALITIES:
            raise ValueError(f"'{value}' is not a valid quality. Must be one of {list(VIDEO_QUALITIES)}.")
        return value

    @field_validator('rate_limit')
    @classmethod
    def validate_rate_limit(cls, value: str) -> str:
        if value not in RATE_LIMITS:
            raise ValueError(f"'{value}' is not a valid rate limit. Must be one of {list(RATE_LIMITS)}.")
        return value

    @field_validator('sub_language')
    @classmethod
    def validate_sub_language(cls, value: str) -> str:
        value = value.strip()
        if not value or not value.replace('-', '').isalnum():
            raise ValueError("Subtitle language must be a language code such as 'en'.")
        return value

    @field_validator('log_level')
    @classmethod
    def validate_log_level(cls, value: str) -> str:
        """Ensures log_level is a valid logging level string."""
        upper_value = value.upper()
        allowed_levels: List[str] = ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']
        if upper_value not in allowed_levels:
            raise ValueError(f"'{value}' is not a valid log level. Must be one of {allowed_levels}.")
        return upper_value


def available_options() -> Dict[str, List[Dict[str, str]]]:
    """Returns the selectable values for the choice-type settings."""
    def as_options(choices: Dict[str, str]) -> List[Dict[str, str]]:
        return [{'value': value, 'label': label} for value, label in choices.items()]
    return {
        'video_qualities': as_options(VIDEO_QUALITIES),
        'rate_limits': as_options(RATE_LIMITS),
        'sub_languages': as_options(SUB_LANGUAGES),
    }


def _describe_validation_error(e: PydanticValidationError) -> str:
    error_details = e.errors()[0]
    field_name = '.'.join(str(part) for part in error_details['loc'])
    return f"Error in field '{field_name}': {error_details['msg']}"


class ConfigManager:
    """Handles loading and saving the application configuration file."""
    def __init__(self, config_path: Path):
        """
        Initializes the ConfigManager.

        Args:
            config_path: The path to the configuration file.
        """
        self.config_path = config_path
        self.logger = logging.getLogger(__name__)
        # Ensure the configuration directory exists
        self.config_path.parent.mkdir(parents=True, exist_ok=True)

    def load(self) -> Settings:
        """
        Loads config from file, merges with defaults, validates, and returns it.

        If the file doesn't exist, is invalid, or an error occurs, a default
        configuration is returned. Invalid files are backed up.

        Returns:
            A validated Settings object.
        """
        if not self.config_path.exists():
            self.logger.info("Config file not found. Creating with default settings.")
            default_settings = Settings()
            self.save(default_settings)
            return default_settings

        try:
            config_data = json.loads(self.config_path.read_text(encoding='utf-8'))
            return Settings.model_validate(config_data)
        except (PydanticValidationError, json.JSONDecodeError, IOError) as e:
            self.logger.error(f"Error loading {self.config_path}: {e}. Backing up and using defaults.")
            try:
                backup_path = self.config_path.with_suffix(f".{int(time.time())}.bak")
                self.config_path.rename(backup_path)
                self.logger.info(f"Backed up corrupted config to {backup_path}")
            except IOError as backup_e:
                self.logger.error(f"Could not back up corrupted config file: {backup_e}")
            return Settings()

    def save(self, settings: Settings):
        """
        Saves the provided settings object to the config file.

        Args:
            settings: The Settings object to save.
        """
        try:
            self.config_path.write_text(settings.model_dump_json(indent=4), encoding='utf-8')
        except IOError as e:
            self.logger.error(f"Error saving config file to {self.config_path}: {e}")

    def update(self, settings: Settings, data: Dict[str, Any]) -> Settings:
        """
        Validates a partial update against ``settings`` and saves the result.

        Raises:
            ValidationError: If any field fails validation.
        """
        merged = {**settings.model_dump(), **data}
        if isinstance(data.get('title_enhancement'), dict):
            merged['title_enhancement'] = {**settings.title_enhancement.model_dump(), **data['title_enhancement']}
        try:
            new_settings = Settings.model_validate(merged)
        except PydanticValidationError as e:
            raise ValidationError(_describe_validation_error(e)) from e
        self.save(new_settings)
        self.logger.info("Settings updated")
        return new_settings
