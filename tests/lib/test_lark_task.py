"""Tests for task derivation and the task / message sinks."""

import json

import pytest

from lib.lark_message import LarkMessenger
from lib.lark_task import DAY_MS, LarkTaskCreator, TaskSpec, derive_assignees, derive_due_ms, derive_task, derive_title
from lib.models import TaskConfig
from lib.values import to_field_values
from utils.errors import NotificationError, RemoteFatal, TaskCreationError

NOW = 1_700_000_000_000


class FakeClient:
    def __init__(self, data=None, error=None) -> None:
        self.data = data or {}
        self.error = error
        self.calls = []

    def call(self, method, path, *, params=None, payload=None, context=""):
        self.calls.append({"method": method, "path": path, "params": params, "payload": payload})
        if self.error:
            raise self.error
        return self.data


def test_title_from_field_or_default() -> None:
    rule = TaskConfig(enabled=True, summary_field="Title", default_summary="默认")

    assert derive_title(rule, to_field_values({"Title": ["a", "b"]})) == "a, b"
    assert derive_title(rule, to_field_values({"Title": ""})) == "默认"
    assert derive_title(TaskConfig(default_summary=""), {}) == "来自多维表格的任务"


def test_due_from_field_timestamp() -> None:
    rule = TaskConfig(due_field="Due", default_due_days=3)

    assert derive_due_ms(rule, to_field_values({"Due": 1710000000000}), NOW) == 1710000000000


def test_due_defaults_to_now_plus_offset() -> None:
    rule = TaskConfig(due_field="Due", default_due_days=2)

    assert derive_due_ms(rule, to_field_values({"Due": "soon"}), NOW) == NOW + 2 * DAY_MS
    assert derive_due_ms(TaskConfig(), {}, NOW) == NOW


def test_due_ignores_small_numbers() -> None:
    rule = TaskConfig(due_field="Due", default_due_days=1)

    assert derive_due_ms(rule, to_field_values({"Due": 42}), NOW) == NOW + DAY_MS


def test_assignees_from_configured_field() -> None:
    rule = TaskConfig(assignee_field="Owner")
    values = to_field_values({"Owner": [{"id": "u_1", "name": "A"}, {"id": "u_2", "name": "B"}]})

    assert derive_assignees(rule, values) == ("u_1", "u_2")


def test_assignees_fall_back_to_first_user_like_value() -> None:
    rule = TaskConfig(assignee_field="Owner")
    values = to_field_values({"Owner": "", "Title": "x", "记录人": {"id": "u_9"}})

    assert derive_assignees(rule, values) == ("u_9",)


def test_derive_task_without_assignee_is_none() -> None:
    assert derive_task(TaskConfig(enabled=True), to_field_values({"Title": "x"}), NOW) is None


def test_derive_task_from_completed_values() -> None:
    rule = TaskConfig(enabled=True, summary_field="Title", assignee_field="Owner", all_day=False)
    values = to_field_values({"Title": "Ship", "Owner": {"id": "u_1", "name": "A"}})

    assert derive_task(rule, values, NOW) == TaskSpec("Ship", NOW, False, ("u_1",))


def test_create_task_payload() -> None:
    client = FakeClient(data={"task": {"task_id": "t_1", "guid": "g_1"}})

    task_id = LarkTaskCreator(client).create_task(TaskSpec("Ship", NOW, True, ("u_1",)))

    assert task_id == "t_1"
    call = client.calls[0]
    assert call["path"] == "/open-apis/task/v2/tasks"
    assert call["params"] == {"user_id_type": "user_id"}
    assert call["payload"]["due"] == {"timestamp": NOW, "is_all_day": True}
    assert call["payload"]["members"][0]["id"] == "u_1"
    assert call["payload"]["members"][0]["role"] == "assignee"


def test_create_task_requires_assignee() -> None:
    with pytest.raises(TaskCreationError):
        LarkTaskCreator(FakeClient()).create_task(TaskSpec("Ship", NOW, True, ()))


def test_create_task_wraps_remote_errors() -> None:
    client = FakeClient(error=RemoteFatal("Failed to create task: denied (Code: 1470403)", code=1470403))

    with pytest.raises(TaskCreationError) as excinfo:
        LarkTaskCreator(client).create_task(TaskSpec("Ship", NOW, True, ("u_1",)))
    assert excinfo.value.code == 1470403


def test_send_text_payload() -> None:
    client = FakeClient(data={"message_id": "om_1"})

    assert LarkMessenger(client).send_text("oc_1", "你好") == "om_1"
    payload = client.calls[0]["payload"]
    assert payload["receive_id"] == "oc_1"
    assert json.loads(payload["content"]) == {"text": "你好"}
    assert client.calls[0]["params"] == {"receive_id_type": "chat_id"}


def test_send_text_wraps_remote_errors() -> None:
    with pytest.raises(NotificationError):
        LarkMessenger(FakeClient(error=RemoteFatal("bot not in chat"))).send_text("oc_1", "hi")
