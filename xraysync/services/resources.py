"""內嵌請求範本載入"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Dict

from xraysync.services.markdown_table import LITERAL_BREAK

RESOURCES_DIR = Path(__file__).resolve().parent.parent / "resources"

GET_TOKEN_TEMPLATE = "get_token.txt"
CREATE_TEST_EXECUTION_TEMPLATE = "create_test_execution.txt"
CREATE_BUG_TEMPLATE = "create_bug.txt"


class ResourceTemplateError(RuntimeError):
    """內嵌範本遺失或無法讀取（代表打包錯誤，不應被吞掉）"""

    def __init__(self, name: str, cause: Exception | None = None):
        self.name = name
        super().__init__(f"找不到內嵌範本: {name}")
        self.__cause__ = cause


def read_template(name: str, resources_dir: Path | None = None) -> str:
    path = (resources_dir or RESOURCES_DIR) / name
    try:
        return path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ResourceTemplateError(name, exc) from exc


def json_text(value: str) -> str:
    """轉為可直接放進 JSON 字串的內容；字面 "\\r\\n" 會還原為真正的換行"""
    text = str(value or "").replace(LITERAL_BREAK, "\r\n")
    return json.dumps(text, ensure_ascii=False)[1:-1]


def render_template(
    name: str,
    replacements: Dict[str, str],
    raw_replacements: Dict[str, str] | None = None,
    resources_dir: Path | None = None,
) -> str:
    """
    以 [placeholder] 取代範本內容。

    replacements 會做 JSON 字串跳脫，raw_replacements 原樣放入（例如 JSON 陣列）。
    """
    body = read_template(name, resources_dir)
    for placeholder, value in (raw_replacements or {}).items():
        body = body.replace(placeholder, value)
    for placeholder, value in replacements.items():
        body = body.replace(placeholder, json_text(value))
    return body
