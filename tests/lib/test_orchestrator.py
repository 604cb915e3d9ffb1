"""Tests for lib.orchestrator with in-memory fakes for the remote services."""

import asyncio
from typing import Any, Dict, List, Optional

import pytest

from lib.config_store import ConfigurationStore
from lib.lark_task import TaskSpec
from lib.models import AppConfig, RecordHandle, TableConfig, TableKey, TaskConfig
from lib.orchestrator import RecordOrchestrator, format_notification
from lib.values import is_incomplete, to_field_values
from lib.watcher import TaskSpawner, WatchPolicy
from utils.errors import ConfigurationMissing, NotificationError, RemoteFatal, TaskCreationError

KEY = TableKey("app_1", "tbl_1")
POLICY = WatchPolicy(initial_delay=10, base_interval=10, max_interval=300, cap_exponent=6, max_attempts=20)


class FakeClient:
    def __init__(self, records: List[Dict[str, Any]]) -> None:
        self.records = records
        self.fetches = 0
        self.inserted: List[Dict[str, Any]] = []
        self.insert_error: Optional[Exception] = None

    def add_record(self, app_token: str, table_id: str, fields: Dict[str, Any]) -> str:
        if self.insert_error:
            raise self.insert_error
        self.inserted.append(fields)
        return "rec_1"

    def fetch_field_values(self, handle: RecordHandle):
        raw = self.records[min(self.fetches, len(self.records) - 1)]
        self.fetches += 1
        return to_field_values(raw)

    def check_fields_completed(self, handle: RecordHandle, check_fields: List[str]):
        values = self.fetch_field_values(handle)
        return all(not is_incomplete(values.get(name)) for name in check_fields), values


class FakeRegistry:
    def __init__(self, client: FakeClient) -> None:
        self.client = client
        self.requested: List[tuple] = []

    def get(self, app_id: str, app_secret: str) -> FakeClient:
        self.requested.append((app_id, app_secret))
        return self.client


class FakeMessenger:
    sent: List[tuple] = []
    fail = False

    def __init__(self, client) -> None:
        pass

    def send_text(self, chat_id: str, text: str) -> str:
        if FakeMessenger.fail:
            raise NotificationError("chat unavailable")
        FakeMessenger.sent.append((chat_id, text))
        return "om_1"


class FakeTaskCreator:
    created: List[TaskSpec] = []
    fail = False

    def __init__(self, client) -> None:
        pass

    def create_task(self, task: TaskSpec) -> str:
        if FakeTaskCreator.fail:
            raise TaskCreationError("task api down")
        FakeTaskCreator.created.append(task)
        return "task_1"


@pytest.fixture(autouse=True)
def reset_sinks():
    FakeMessenger.sent = []
    FakeMessenger.fail = False
    FakeTaskCreator.created = []
    FakeTaskCreator.fail = False
    yield


async def no_sleep(delay: float) -> None:
    return None


def _store(**table_overrides) -> ConfigurationStore:
    table = TableConfig(app_token="app_1", table_id="tbl_1", name="需求表", check_fields=["Status"])
    table = table.model_copy(update=table_overrides)
    return ConfigurationStore(config=AppConfig(app_id="cli_1234567890", app_secret="secret_1234567890", tables=[table]))


def _orchestrator(store: ConfigurationStore, client: FakeClient) -> RecordOrchestrator:
    return RecordOrchestrator(
        store,
        clients=FakeRegistry(client),
        spawner=TaskSpawner(),
        policy=POLICY,
        sleep=no_sleep,
        messenger_factory=FakeMessenger,
        task_creator_factory=FakeTaskCreator,
    )


def _insert_and_drain(orchestrator: RecordOrchestrator, fields: Dict[str, Any], before_drain=None) -> str:
    async def main() -> str:
        record_id = orchestrator.insert_and_watch(KEY, fields)
        if before_drain:
            before_drain()
        await orchestrator.spawner.drain()
        return record_id

    return asyncio.run(main())


def test_format_notification_lists_watched_fields_in_order() -> None:
    values = to_field_values({"Status": "Done", "截止": 1700000000000, "数量": 42, "Other": "ignored"})

    text = format_notification("需求表", "rec_1", ["Status", "截止", "数量"], values)

    assert text == (
        "📊 表格：需求表\n\n"
        "📢 记录ID rec_1 的指定字段已全部有数据！\n\n"
        "检测字段内容：\n"
        "Status: Done\n"
        "截止: 2023-11-15 06:13:20\n"
        "数量: 42\n"
    )


def test_insert_requires_configuration() -> None:
    orchestrator = _orchestrator(ConfigurationStore(), FakeClient([{}]))

    with pytest.raises(ConfigurationMissing):
        orchestrator.insert_and_watch(KEY, {"Title": "x"})


def test_insert_error_propagates_without_watch() -> None:
    client = FakeClient([{}])
    client.insert_error = RemoteFatal("Failed to add record: bad field (Code: 1254045)", code=1254045)
    orchestrator = _orchestrator(_store(group_chat_id="oc_1"), client)

    with pytest.raises(RemoteFatal):
        orchestrator.insert_and_watch(KEY, {"Title": "x"})
    assert client.fetches == 0


def test_completion_sends_notification_once() -> None:
    client = FakeClient([{"Status": ""}, {"Status": ""}, {"Status": "Done"}])
    orchestrator = _orchestrator(_store(group_chat_id="oc_1"), client)

    record_id = _insert_and_drain(orchestrator, {"Title": "x"})

    assert record_id == "rec_1"
    assert client.fetches == 3
    assert len(FakeMessenger.sent) == 1
    chat_id, text = FakeMessenger.sent[0]
    assert chat_id == "oc_1"
    assert "Status: Done" in text
    assert "📊 表格：需求表" in text


def test_no_target_and_no_rule_means_no_side_effects() -> None:
    client = FakeClient([{"Status": "Done"}])
    orchestrator = _orchestrator(_store(), client)

    _insert_and_drain(orchestrator, {"Title": "x"})

    assert client.fetches == 1
    assert FakeMessenger.sent == []
    assert FakeTaskCreator.created == []


def test_table_without_watch_fields_is_not_polled() -> None:
    client = FakeClient([{"Status": "Done"}])
    orchestrator = _orchestrator(_store(check_fields=[], group_chat_id="oc_1"), client)

    _insert_and_drain(orchestrator, {"Title": "x"})

    assert client.fetches == 0
    assert FakeMessenger.sent == []


def test_task_created_from_completed_values() -> None:
    rule = TaskConfig(enabled=True, summary_field="Title", assignee_field="Owner", due_field="Due")
    record = {"Status": "Done", "Title": "Fix bug", "Owner": [{"id": "u_1", "name": "A"}], "Due": 1700000000000}
    orchestrator = _orchestrator(_store(task=rule), FakeClient([record]))

    _insert_and_drain(orchestrator, {"Title": "Fix bug"})

    assert FakeTaskCreator.created == [
        TaskSpec(title="Fix bug", due_ms=1700000000000, is_all_day=True, assignee_ids=("u_1",))
    ]


def test_task_skipped_without_assignee() -> None:
    rule = TaskConfig(enabled=True, summary_field="Title")
    orchestrator = _orchestrator(_store(task=rule), FakeClient([{"Status": "Done", "Title": "x"}]))

    _insert_and_drain(orchestrator, {"Title": "x"})

    assert FakeTaskCreator.created == []


def test_notification_failure_does_not_block_task() -> None:
    FakeMessenger.fail = True
    rule = TaskConfig(enabled=True, assignee_field="Owner")
    record = {"Status": "Done", "Owner": {"id": "u_1", "name": "A"}}
    orchestrator = _orchestrator(_store(task=rule, group_chat_id="oc_1"), FakeClient([record]))

    _insert_and_drain(orchestrator, {"Title": "x"})

    assert len(FakeTaskCreator.created) == 1


def test_task_failure_does_not_block_notification() -> None:
    FakeTaskCreator.fail = True
    rule = TaskConfig(enabled=True, assignee_field="Owner")
    record = {"Status": "Done", "Owner": {"id": "u_1", "name": "A"}}
    orchestrator = _orchestrator(_store(task=rule, group_chat_id="oc_1"), FakeClient([record]))

    _insert_and_drain(orchestrator, {"Title": "x"})

    assert len(FakeMessenger.sent) == 1


def test_config_change_after_insert_does_not_affect_running_watch() -> None:
    store = _store(group_chat_id="oc_1")
    client = FakeClient([{"Status": "Done"}])
    orchestrator = _orchestrator(store, client)

    def reconfigure() -> None:
        changed = TableConfig(
            app_token="app_1", table_id="tbl_1", name="改名", check_fields=["Status", "Never"], group_chat_id="oc_2"
        )
        store.merge(AppConfig(tables=[changed]))

    _insert_and_drain(orchestrator, {"Title": "x"}, before_drain=reconfigure)

    assert client.fetches == 1
    assert FakeMessenger.sent[0][0] == "oc_1"
    assert "需求表" in FakeMessenger.sent[0][1]


def test_check_record_uses_current_watch_fields() -> None:
    orchestrator = _orchestrator(_store(), FakeClient([{"Status": "Done"}]))

    assert orchestrator.check_record("app_1", "tbl_1", "rec_1") is True
