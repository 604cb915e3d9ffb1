"""Record insertion followed by a background completion watch."""

from __future__ import annotations

import asyncio
from typing import Any, Callable, Dict, Iterable, Mapping, Optional

from lib.client_registry import ClientRegistry
from lib.config_store import ConfigurationStore
from lib.lark_client import LarkClient
from lib.lark_message import LarkMessenger
from lib.lark_task import LarkTaskCreator, derive_task
from lib.models import RecordHandle, TableKey, TableWatchConfig
from lib.values import FieldValue, render_value
from lib.watcher import FieldCompletionWatcher, OnComplete, Sleep, TaskSpawner, WatchPolicy
from utils.errors import ConfigurationMissing
from utils.logging import log_error, log_event, logger


def format_notification(
    table_name: str, record_id: str, watch_fields: Iterable[str], values: Mapping[str, FieldValue]
) -> str:
    lines = [
        f"📊 表格：{table_name}",
        "",
        f"📢 记录ID {record_id} 的指定字段已全部有数据！",
        "",
        "检测字段内容：",
    ]
    for name in watch_fields:
        lines.append(f"{name}: {render_value(name, values.get(name))}")
    return "\n".join(lines) + "\n"


class RecordOrchestrator:
    """
    Inserts records and, when the table has watched fields, starts a watcher
    whose completion sends the notification and creates the task.

    The watch settings are snapshotted when the record is inserted, so later
    configuration changes never reach a watch that is already running.
    """

    def __init__(
        self,
        store: ConfigurationStore,
        clients: Optional[ClientRegistry] = None,
        spawner: Optional[TaskSpawner] = None,
        policy: Optional[WatchPolicy] = None,
        sleep: Sleep = asyncio.sleep,
        messenger_factory: Callable[[LarkClient], LarkMessenger] = LarkMessenger,
        task_creator_factory: Callable[[LarkClient], LarkTaskCreator] = LarkTaskCreator,
    ) -> None:
        self.store = store
        self.clients = clients or ClientRegistry()
        self.spawner = spawner or TaskSpawner()
        self.policy = policy or WatchPolicy()
        self._sleep = sleep
        self._messenger_factory = messenger_factory
        self._task_creator_factory = task_creator_factory

    def client(self) -> LarkClient:
        """Client for the configured credentials; raises ConfigurationMissing when there are none."""
        config = self.store.get()
        if not (config.app_id and config.app_secret):
            raise ConfigurationMissing("Lark credentials are not configured")
        return self.clients.get(config.app_id, config.app_secret)

    def insert_and_watch(self, table_key: TableKey, fields: Dict[str, Any]) -> str:
        """
        Insert a record and return its id without waiting for the watch.

        Raises:
            ConfigurationMissing: If no credentials are configured.
            RemoteError: If the insert fails. Inserts are never retried here.
        """
        client = self.client()
        record_id = client.add_record(table_key.app_token, table_key.table_id, fields)
        log_event("orchestrator", record_id, "record_inserted", {"table_id": table_key.table_id})

        watch_config = self.store.table_watch_config(table_key)
        if not watch_config.watch_fields:
            logger.info("No watched fields for table %s, record %s is not watched", table_key.table_id, record_id)
            return record_id

        handle = RecordHandle(table_key.app_token, table_key.table_id, record_id)
        watcher = FieldCompletionWatcher(
            client.fetch_field_values, policy=self.policy, spawner=self.spawner, sleep=self._sleep
        )
        watcher.watch(handle, watch_config.watch_fields, self.completion_callback(client, handle, watch_config))
        return record_id

    def check_record(self, app_token: str, table_id: str, record_id: str) -> bool:
        """One-shot completion check against the table's current watched fields."""
        client = self.client()
        watch_config = self.store.table_watch_config(TableKey(app_token, table_id))
        completed, _ = client.check_fields_completed(
            RecordHandle(app_token, table_id, record_id), list(watch_config.watch_fields)
        )
        return completed

    def completion_callback(
        self, client: LarkClient, handle: RecordHandle, watch_config: TableWatchConfig
    ) -> OnComplete:
        def on_complete(values: Dict[str, FieldValue]) -> None:
            self._notify(client, handle, watch_config, values)
            self._create_task(client, handle, watch_config, values)

        return on_complete

    def _notify(
        self,
        client: LarkClient,
        handle: RecordHandle,
        watch_config: TableWatchConfig,
        values: Mapping[str, FieldValue],
    ) -> None:
        if not watch_config.notification_target:
            logger.info("No chat configured for table %s, skipping notification", watch_config.table_name)
            return
        text = format_notification(watch_config.table_name, handle.record_id, watch_config.watch_fields, values)
        try:
            self._messenger_factory(client).send_text(watch_config.notification_target, text)
        except Exception as exc:
            log_error("orchestrator", handle.record_id, exc, {"stage": "notification"})

    def _create_task(
        self,
        client: LarkClient,
        handle: RecordHandle,
        watch_config: TableWatchConfig,
        values: Mapping[str, FieldValue],
    ) -> None:
        rule = watch_config.task_rule
        if rule is None:
            return
        task = derive_task(rule, values)
        if task is None:
            logger.warning("No assignee found for record %s, task not created", handle.record_id)
            return
        try:
            task_id = self._task_creator_factory(client).create_task(task)
        except Exception as exc:
            log_error("orchestrator", handle.record_id, exc, {"stage": "task"})
            return
        log_event("orchestrator", handle.record_id, "task_created", {"task_id": task_id})
