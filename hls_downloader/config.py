"""
Manages loading, saving, and validating the application configuration using Pydantic.

This module defines the configuration schema as a Pydantic model (`Settings`)
and provides a manager class (`ConfigManager`) to handle persistence to a JSON file.
"""

import json
import time
import logging
from pathlib import Path
from typing import List

from pydantic import BaseModel, Field, ValidationError, field_validator

from .constants import (
    DEFAULT_CONCURRENCY, DEFAULT_OUTPUT_FORMAT, MAX_CONCURRENCY, MIN_CONCURRENCY,
    OUTPUT_FORMATS, CONNECT_TIMEOUT, READ_TIMEOUT, REQUEST_HEADERS,
)


class Settings(BaseModel):
    """
    Defines the application's configuration schema using Pydantic.

    This class provides type hints, default values, and validation logic for all
    configuration settings.
    """
    max_concurrent_downloads: int = Field(default=DEFAULT_CONCURRENCY, ge=MIN_CONCURRENCY, le=MAX_CONCURRENCY)
    output_format: str = DEFAULT_OUTPUT_FORMAT
    last_output_path: Path = Field(default_factory=Path.home)
    log_level: str = 'INFO'
    retry_delay: float = Field(default=1.0, ge=0)
    connect_timeout: float = Field(default=CONNECT_TIMEOUT, gt=0)
    request_timeout: float = Field(default=READ_TIMEOUT, gt=0)
    ffmpeg_timeout: float = Field(default=600, gt=0)
    user_agent: str = REQUEST_HEADERS['User-Agent']

    @field_validator('log_level')
    @classmethod
    def validate_log_level(cls, value: str) -> str:
        """Ensures log_level is a valid logging level string."""
        upper_value = value.upper()
        allowed_levels: List[str] = ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']
        if upper_value not in allowed_levels:
            raise ValueError(f"'{value}' is not a valid log level. Must be one of {allowed_levels}.")
        return upper_value

    @field_validator('output_format')
    @classmethod
    def validate_output_format(cls, value: str) -> str:
        """Ensures the output format is one of the supported containers."""
        lower_value = value.lower().lstrip('.')
        if lower_value not in OUTPUT_FORMATS:
            raise ValueError(f"'{value}' is not a supported output format. Must be one of {list(OUTPUT_FORMATS)}.")
        return lower_value

    @field_validator('last_output_path', mode='before')
    @classmethod
    def validate_last_output_path(cls, value) -> Path:
        """Ensures the last output path exists and is a directory."""
        path = Path(value)
        if not path.is_dir():
            return Path.home()
        return path


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
        except (ValidationError, json.JSONDecodeError, IOError) as e:
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
