"""
Extractor Configuration

``ExtractorConfig`` holds every setting the extractor accepts from a JSON
config file or the command line. Keys in the file are matched
case-insensitively and without underscores, so ``"MaxMessageSizeMB"`` and
``"max_message_size_mb"`` both work. Blank (empty or whitespace-only)
strings count as "not provided" everywhere.
"""

from __future__ import annotations

import json
import os
from typing import Optional

from pydantic import BaseModel, ConfigDict, ValidationError, field_validator

from archival.compressors import COMPRESSORS, DEFAULT_COMPRESSION
from utils.console import safe_print

DEFAULT_CONFIG_PATHS = ("config.json", "gmail-extractor.json", os.path.join("~", ".gmail-extractor.json"))
DEFAULT_MAX_MESSAGE_SIZE_MB = 10

MAX_SEARCH_LENGTH = 1000
TIMEOUT_RANGE = (1, 60)
MAX_MESSAGE_SIZE_RANGE = (1, 1000)
INVALID_FILE_NAME_CHARACTERS = frozenset('<>:"|?*\x00')


class ConfigError(ValueError):
    """Configuration file could not be read or holds invalid values."""


class ExtractorConfig(BaseModel):
    model_config = ConfigDict(extra="ignore")

    email: Optional[str] = None
    password: Optional[str] = None
    search: Optional[str] = None
    label: Optional[str] = None
    output: Optional[str] = None
    compression: Optional[str] = None
    timeout_minutes: Optional[int] = None
    max_message_size_mb: Optional[int] = None

    @field_validator("email", "password", "search", "label", "output", "compression", mode="before")
    @classmethod
    def _blank_to_none(cls, value):
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("email")
    @classmethod
    def _validate_email(cls, value):
        if value is not None and ("@" not in value or len(value) < 3):
            raise ValueError("Email must be a valid email address format")
        return value

    @field_validator("search")
    @classmethod
    def _validate_search(cls, value):
        if value is not None and len(value) > MAX_SEARCH_LENGTH:
            raise ValueError(f"Search query must not exceed {MAX_SEARCH_LENGTH} characters")
        return value

    @field_validator("output")
    @classmethod
    def _validate_output(cls, value):
        if value is None:
            return value
        full_path = os.path.abspath(os.path.expanduser(value))
        directory = os.path.dirname(full_path)
        if directory and not os.path.isdir(directory):
            raise ValueError(f"Output directory does not exist: {directory}")
        file_name = os.path.basename(full_path)
        if not file_name or any(ch in INVALID_FILE_NAME_CHARACTERS for ch in file_name):
            raise ValueError(f"Output file name is not valid: {file_name!r}")
        return value

    @field_validator("compression")
    @classmethod
    def _validate_compression(cls, value):
        if value is not None and value.strip().lower() not in COMPRESSORS:
            raise ValueError(f"Compression must be one of: {', '.join(COMPRESSORS)}")
        return value.strip().lower() if value is not None else value

    @field_validator("timeout_minutes")
    @classmethod
    def _validate_timeout(cls, value):
        low, high = TIMEOUT_RANGE
        if value is not None and not low <= value <= high:
            raise ValueError(f"Timeout must be between {low} and {high} minutes")
        return value

    @field_validator("max_message_size_mb")
    @classmethod
    def _validate_max_message_size(cls, value):
        low, high = MAX_MESSAGE_SIZE_RANGE
        if value is not None and not low <= value <= high:
            raise ValueError(f"Max message size must be between {low} and {high} MB")
        return value

    @property
    def effective_compression(self) -> str:
        return self.compression or DEFAULT_COMPRESSION

    @property
    def effective_max_message_size_mb(self) -> int:
        return self.max_message_size_mb or DEFAULT_MAX_MESSAGE_SIZE_MB

    def merge_with_command_line(self, **overrides) -> ExtractorConfig:
        """Return a new config where non-blank command-line values win."""
        merged = self.model_dump()
        for key, value in overrides.items():
            if key not in merged:
                raise TypeError(f"Unknown configuration option: {key}")
            if value is None or (isinstance(value, str) and not value.strip()):
                continue
            merged[key] = value
        return build_config(merged)


def _normalize_key(key: str) -> str:
    return key.replace("_", "").replace("-", "").lower()


_FIELD_LOOKUP = {_normalize_key(name): name for name in ExtractorConfig.model_fields}


def build_config(values: dict) -> ExtractorConfig:
    """Validate a mapping of settings, raising ConfigError on bad values."""
    try:
        return ExtractorConfig.model_validate(values)
    except ValidationError as e:
        messages = "; ".join(err["msg"].removeprefix("Value error, ") for err in e.errors())
        raise ConfigError(f"Invalid configuration: {messages}") from e


def load_config(path: str, log_fn=safe_print) -> ExtractorConfig:
    """Load settings from a JSON file.

    A missing file logs a warning and yields an empty config; unreadable or
    invalid files raise ConfigError.
    """
    path = os.path.expanduser(path)
    if not os.path.exists(path):
        log_fn(f"Warning: Configuration file not found: {path}")
        return ExtractorConfig()

    try:
        with open(path, encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        raise ConfigError(f"Error loading configuration from {path}: {e}") from e

    if not isinstance(data, dict):
        raise ConfigError(f"Configuration file {path} must contain a JSON object")

    values = {}
    for key, value in data.items():
        field = _FIELD_LOOKUP.get(_normalize_key(str(key)))
        if field is not None:
            values[field] = value
    return build_config(values)


def find_default_config(search_paths=DEFAULT_CONFIG_PATHS) -> Optional[str]:
    """Return the first existing default config file, if any."""
    for candidate in search_paths:
        path = os.path.expanduser(candidate)
        if os.path.isfile(path):
            return path
    return None
