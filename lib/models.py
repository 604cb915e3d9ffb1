"""Data models shared by the API, the configuration store and the watcher."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, NamedTuple, Optional, Tuple

from pydantic import BaseModel, Field

DEFAULT_TASK_SUMMARY = "来自多维表格的任务"
DEFAULT_TABLE_NAME = "未命名表格"


class TableKey(NamedTuple):
    """Identity of a configured table: workspace token plus table id."""

    app_token: str
    table_id: str


@dataclass(frozen=True)
class RecordHandle:
    app_token: str
    table_id: str
    record_id: str

    @property
    def table_key(self) -> TableKey:
        return TableKey(self.app_token, self.table_id)


class WriteField(BaseModel):
    field_name: str
    field_type: str = ""
    ui_type: str = ""


class TaskConfig(BaseModel):
    """Rule describing how a task is derived from a completed record."""

    enabled: bool = False
    summary_field: str = ""
    due_field: str = ""
    assignee_field: str = ""
    default_summary: str = DEFAULT_TASK_SUMMARY
    default_due_days: int = 0
    all_day: bool = True


class TableConfig(BaseModel):
    app_token: str
    table_id: str
    name: str = ""
    write_fields: List[WriteField] = Field(default_factory=list)
    check_fields: List[str] = Field(default_factory=list)
    group_chat_id: str = ""
    task: TaskConfig = Field(default_factory=TaskConfig)

    # Older clients send the task rule as flat fields.
    create_task: bool = False
    task_summary_field: str = ""
    task_due_field: str = ""
    task_assignee_field: str = ""

    @property
    def key(self) -> TableKey:
        return TableKey(self.app_token, self.table_id)

    def effective_task_rule(self) -> Optional[TaskConfig]:
        if self.task.enabled:
            return self.task.model_copy()
        if self.create_task:
            return TaskConfig(
                enabled=True,
                summary_field=self.task_summary_field,
                due_field=self.task_due_field,
                assignee_field=self.task_assignee_field,
                default_summary=DEFAULT_TASK_SUMMARY,
                default_due_days=1,
            )
        return None


class SiliconFlowConfig(BaseModel):
    api_key: str = ""
    model: str = ""
    default_prompt: str = ""


class AppConfig(BaseModel):
    """Everything persisted in the JSON configuration document."""

    app_id: str = ""
    app_secret: str = ""
    group_chat_id: str = ""
    tables: List[TableConfig] = Field(default_factory=list)
    siliconflow: SiliconFlowConfig = Field(default_factory=SiliconFlowConfig)

    # Single-table layout used before `tables` existed.
    table_id: str = ""
    write_fields: List[str] = Field(default_factory=list)
    check_fields: List[str] = Field(default_factory=list)


@dataclass(frozen=True)
class TableWatchConfig:
    """Immutable snapshot of everything a watcher needs for one table."""

    table_key: TableKey
    table_name: str
    watch_fields: Tuple[str, ...] = ()
    notification_target: Optional[str] = None
    task_rule: Optional[TaskConfig] = None


class BitableInfo(BaseModel):
    app_token: str
    table_id: str = ""
    name: str


class TableInfo(BaseModel):
    table_id: str
    name: str


class FieldInfo(BaseModel):
    field_name: str
    field_type: str
    field_id: str
    is_primary: bool = False
    ui_type: str = ""


class AddRecordRequest(BaseModel):
    app_token: str
    table_id: str
    fields: Dict[str, Any]


class AIParseRequest(BaseModel):
    content: str
    prompt: str = ""
