"""Persisted credential and table-watch configuration."""

from __future__ import annotations

import json
import os
from typing import Optional

from pydantic import ValidationError as PydanticValidationError

from lib.models import DEFAULT_TABLE_NAME, AppConfig, TableConfig, TableKey, TableWatchConfig
from utils.locks import ReadWriteLock
from utils.logging import logger


class ConfigurationStore:
    """
    Owns the application configuration and its JSON file.

    Readers always receive copies, so nothing outside the store can observe
    or cause a partially written configuration.
    """

    def __init__(self, path: Optional[str] = None, config: Optional[AppConfig] = None) -> None:
        self._path = path
        self._config = config.model_copy(deep=True) if config else AppConfig()
        self._lock = ReadWriteLock()

    @property
    def path(self) -> Optional[str]:
        return self._path

    def load(self) -> None:
        """Load the configuration file. A missing or unreadable file leaves an empty config."""
        if not self._path or not os.path.exists(self._path):
            logger.info("Config file not found, using defaults: %s", self._path)
            return
        try:
            with open(self._path, "r", encoding="utf-8") as fh:
                raw = json.load(fh)
            loaded = AppConfig.model_validate(raw)
        except (OSError, ValueError, PydanticValidationError) as exc:
            logger.error("Failed to load config file %s: %s", self._path, exc)
            return
        with self._lock.write():
            self._config = loaded
        logger.info("Config file loaded: %s (%d tables)", self._path, len(loaded.tables))

    def get(self) -> AppConfig:
        with self._lock.read():
            return self._config.model_copy(deep=True)

    def is_configured(self) -> bool:
        with self._lock.read():
            return bool(self._config.app_id and self._config.app_secret)

    def replace(self, config: AppConfig) -> None:
        with self._lock.write():
            updated = config.model_copy(deep=True)
            self._save_locked(updated)
            self._config = updated

    def merge(self, update: AppConfig) -> AppConfig:
        """
        Merge an incremental update: non-empty scalars overwrite, tables are
        upserted by (app_token, table_id) and replaced as a whole.
        """
        with self._lock.write():
            merged = self._config.model_copy(deep=True)
            for attr in ("app_id", "app_secret", "group_chat_id", "table_id"):
                value = getattr(update, attr)
                if value:
                    setattr(merged, attr, value)
            if update.write_fields:
                merged.write_fields = list(update.write_fields)
            if update.check_fields:
                merged.check_fields = list(update.check_fields)
            if update.siliconflow.api_key:
                merged.siliconflow = update.siliconflow.model_copy()

            index = {table.key: i for i, table in enumerate(merged.tables)}
            for table in update.tables:
                if table.key in index:
                    merged.tables[index[table.key]] = table.model_copy(deep=True)
                    logger.info("Updated table config: %s", table.name or table.table_id)
                else:
                    index[table.key] = len(merged.tables)
                    merged.tables.append(table.model_copy(deep=True))
                    logger.info("Added table config: %s", table.name or table.table_id)

            self._save_locked(merged)
            self._config = merged
            return merged.model_copy(deep=True)

    def find_table(self, key: TableKey) -> Optional[TableConfig]:
        with self._lock.read():
            for table in self._config.tables:
                if table.key == key:
                    return table.model_copy(deep=True)
        return None

    def table_watch_config(self, key: TableKey) -> TableWatchConfig:
        """Snapshot the watch settings for a table; unknown tables watch nothing."""
        with self._lock.read():
            config = self._config
            if not config.tables:
                return TableWatchConfig(
                    table_key=key,
                    table_name=DEFAULT_TABLE_NAME,
                    watch_fields=tuple(config.check_fields),
                    notification_target=config.group_chat_id or None,
                )
            for table in config.tables:
                if table.key == key:
                    return TableWatchConfig(
                        table_key=key,
                        table_name=table.name or DEFAULT_TABLE_NAME,
                        watch_fields=tuple(table.check_fields),
                        notification_target=(table.group_chat_id or config.group_chat_id) or None,
                        task_rule=table.effective_task_rule(),
                    )
        return TableWatchConfig(table_key=key, table_name=DEFAULT_TABLE_NAME)

    def _save_locked(self, config: AppConfig) -> None:
        """Write ``config`` to disk; callers swap it in only after this returns."""
        if not self._path:
            return
        directory = os.path.dirname(os.path.abspath(self._path))
        os.makedirs(directory, exist_ok=True)
        tmp_path = f"{self._path}.tmp"
        with open(tmp_path, "w", encoding="utf-8") as fh:
            json.dump(config.model_dump(), fh, ensure_ascii=False, indent=2)
        os.replace(tmp_path, self._path)
        logger.info("Config saved to %s", self._path)
