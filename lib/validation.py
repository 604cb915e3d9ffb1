"""Validation helpers shared by the HTTP routes."""

from __future__ import annotations

from typing import Any, Dict

from lib.models import AddRecordRequest, AppConfig
from utils.errors import ValidationError


def require_param(name: str, value: str | None) -> str:
    """Return a stripped query parameter, or raise when it is missing."""
    cleaned = (value or "").strip()
    if not cleaned:
        raise ValidationError(f"{name} is required")
    return cleaned


def validate_credentials_payload(config: AppConfig) -> AppConfig:
    """
    Check that a configuration update carries an app id and secret.

    Raises:
        ValidationError: If either credential is empty.
    """
    if not config.app_id.strip() or not config.app_secret.strip():
        raise ValidationError("app_id and app_secret are required")
    for table in config.tables:
        if not table.app_token or not table.table_id:
            raise ValidationError("Every table needs app_token and table_id")
    return config


def validate_record_request(request: AddRecordRequest) -> Dict[str, Any]:
    """
    Validate an insert request and return the fields to write.

    Raises:
        ValidationError: If the table identity or the fields are missing.
    """
    require_param("app_token", request.app_token)
    require_param("table_id", request.table_id)
    if not request.fields:
        raise ValidationError("fields cannot be empty")
    return dict(request.fields)


def validate_parse_content(content: str, *, max_length: int = 20000) -> str:
    """
    Validate text submitted for AI parsing.

    Raises:
        ValidationError: If the content is empty or exceeds the limit.
    """
    cleaned = content.strip()
    if not cleaned:
        raise ValidationError("content cannot be empty")
    if len(cleaned) > max_length:
        raise ValidationError(f"content exceeds {max_length} characters")
    return cleaned
