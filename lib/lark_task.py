"""Task sink: derive a task from completed field values and create it in Lark."""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Dict, Mapping, Optional, Tuple

from lib.lark_client import LarkClient
from lib.models import DEFAULT_TASK_SUMMARY, TaskConfig
from lib.values import FieldValue, NumberValue, first_user_id, plain_text, timestamp_ms, user_ids
from utils.errors import RemoteError, TaskCreationError
from utils.logging import logger

DAY_MS = 24 * 60 * 60 * 1000


@dataclass(frozen=True)
class TaskSpec:
    title: str
    due_ms: int
    is_all_day: bool
    assignee_ids: Tuple[str, ...]


def _now_ms() -> int:
    return int(time.time() * 1000)


def derive_title(rule: TaskConfig, values: Mapping[str, FieldValue]) -> str:
    title = plain_text(values.get(rule.summary_field)) if rule.summary_field else ""
    return title or rule.default_summary or DEFAULT_TASK_SUMMARY


def derive_due_ms(rule: TaskConfig, values: Mapping[str, FieldValue], now_ms: int) -> int:
    """Due time from the configured field, else now plus the default offset."""
    value = values.get(rule.due_field) if rule.due_field else None
    if isinstance(value, NumberValue):
        ms = timestamp_ms(value.number)
        if ms is not None:
            return ms
    return now_ms + rule.default_due_days * DAY_MS


def derive_assignees(rule: TaskConfig, values: Mapping[str, FieldValue]) -> Tuple[str, ...]:
    """
    Users from the configured assignee field. When that yields nobody, fall
    back to the first value that looks like a user reference.
    """
    if rule.assignee_field:
        found = user_ids(values.get(rule.assignee_field))
        if found:
            return found
    for name, value in values.items():
        user_id = first_user_id(value)
        if user_id:
            logger.info("Assignee %s taken from field '%s'", user_id, name)
            return (user_id,)
    return ()


def derive_task(
    rule: TaskConfig, values: Mapping[str, FieldValue], now_ms: Optional[int] = None
) -> Optional[TaskSpec]:
    """Build the task to create, or None when no assignee can be found."""
    assignees = derive_assignees(rule, values)
    if not assignees:
        return None
    return TaskSpec(
        title=derive_title(rule, values),
        due_ms=derive_due_ms(rule, values, _now_ms() if now_ms is None else now_ms),
        is_all_day=rule.all_day,
        assignee_ids=assignees,
    )


class LarkTaskCreator:
    def __init__(self, client: LarkClient) -> None:
        self.client = client

    def create_task(self, task: TaskSpec) -> str:
        """
        Create a task with the given assignees.

        Returns:
            The new task's id.

        Raises:
            TaskCreationError: If there is no assignee or the remote call fails.
        """
        if not task.assignee_ids:
            raise TaskCreationError("No valid assignee id")
        members = [{"id": user_id, "type": "user", "role": "assignee", "name": ""} for user_id in task.assignee_ids]
        payload: Dict[str, object] = {
            "summary": task.title,
            "due": {"timestamp": task.due_ms, "is_all_day": task.is_all_day},
            "members": members,
        }
        try:
            data = self.client.call(
                "POST",
                "/open-apis/task/v2/tasks",
                params={"user_id_type": "user_id"},
                payload=payload,
                context="Failed to create task",
            )
        except RemoteError as exc:
            raise TaskCreationError(str(exc), code=exc.code, msg=exc.msg, body=exc.body) from exc
        created = data.get("task") or {}
        task_id = created.get("task_id") or created.get("guid") or ""
        logger.info("Task created: id=%s guid=%s url=%s", task_id, created.get("guid"), created.get("url"))
        return task_id
