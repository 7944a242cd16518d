"""Jira / Xray issue 資料模型"""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, Iterator, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class IssueKind(str, Enum):
    """可展開為 test cases 的 issue 類型"""

    TEST = "test"
    SET = "set"
    PLAN = "plan"
    EXECUTION = "execution"
    UNKNOWN = "unknown"


class Issue(BaseModel):
    """遠端 issue 的輕量包裝（保留原始 JSON 以便後續查找自訂欄位）"""

    model_config = ConfigDict(extra="ignore")

    id: str = Field("", description="伺服器指派的 issue id")
    key: str = Field("", description="issue key，例如 XT-101")
    self_link: str = Field("", description="issue REST 連結")
    type_name: str = Field("", description="issue 類型名稱")
    fields: Dict[str, Any] = Field(default_factory=dict, description="issue 欄位")
    steps: Optional[List[Dict[str, Any]]] = Field(None, description="Xray 測試步驟")
    raw: Dict[str, Any] = Field(default_factory=dict, description="原始回應")

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "Issue":
        fields = payload.get("fields") if isinstance(payload.get("fields"), dict) else {}
        issue_type = fields.get("issuetype") if isinstance(fields.get("issuetype"), dict) else {}
        steps = payload.get("steps")
        return cls(
            id=str(payload.get("id") or ""),
            key=str(payload.get("key") or ""),
            self_link=str(payload.get("self") or ""),
            type_name=str(issue_type.get("name") or ""),
            fields=fields,
            steps=steps if isinstance(steps, list) else None,
            raw=payload,
        )

    @property
    def description(self) -> str:
        return str(self.fields.get("description") or "")

    def find(self, name: str) -> Any:
        """遞迴搜尋第一個名稱相符的欄位（找不到回傳 None）"""
        return find_first(self.raw, name)


def iter_named(node: Any, name: str) -> Iterator[Any]:
    if isinstance(node, dict):
        if name in node:
            yield node[name]
        for value in node.values():
            yield from iter_named(value, name)
    elif isinstance(node, list):
        for item in node:
            yield from iter_named(item, name)


def find_first(node: Any, name: str) -> Any:
    if not name:
        return None
    return next(iter_named(node, name), None)


def as_list(value: Any) -> List[Any]:
    """將自訂欄位值統一轉為 list（None 視為空）"""
    if value is None:
        return []
    if isinstance(value, list):
        return value
    return [value]
