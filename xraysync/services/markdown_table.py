"""
Jira wiki markdown 表格編解碼

格式：
- 標題列以雙直線包圍：||col||col||
- 資料列以單直線分隔：|v|v|
- 列與列之間使用字面上的 "\\r\\n"（兩個跳脫序列字元），因為 Jira 文字欄位不保留真正的換行
"""

from __future__ import annotations

import json
import re
from typing import Any, List

from xraysync.models.test_case import DataRow, DataTable

LITERAL_BREAK = "\\r\\n"

_REAL_BREAK_PATTERN = re.compile(r"\r\n|\r|\n")


def normalize_breaks(text: str) -> str:
    """將真正的換行轉為字面 "\\r\\n"，讓兩種來源的文字可以用同一套規則處理"""
    return _REAL_BREAK_PATTERN.sub(lambda _: LITERAL_BREAK, text or "")


def split_rows(text: str) -> List[str]:
    rows = normalize_breaks(text).split(LITERAL_BREAK)
    return [row.strip() for row in rows if row.strip()]


def _is_header(line: str) -> bool:
    return line.startswith("||")


def _is_data_row(line: str) -> bool:
    return line.startswith("|") and not line.startswith("||")


def _split_cells(line: str, separator: str) -> List[str]:
    body = line.strip()
    if body.startswith(separator):
        body = body[len(separator):]
    if body.endswith(separator):
        body = body[: -len(separator)]
    return [cell.strip() for cell in body.split(separator)]


def parse(text: str) -> DataTable:
    """
    將 markdown 表格解析為資料列清單。

    找不到標題列、或標題沒有欄位時回傳空表，不拋例外。
    標題列之後遇到第一個非表格行即停止。
    """
    lines = split_rows(text)
    header_index = next((i for i, line in enumerate(lines) if _is_header(line)), None)
    if header_index is None:
        return []

    columns = [column for column in _split_cells(lines[header_index], "||")]
    if not any(columns):
        return []

    table: DataTable = []
    for line in lines[header_index + 1:]:
        if not _is_data_row(line):
            break
        cells = _split_cells(line, "|")
        row: DataRow = {}
        for position, column in enumerate(columns):
            row[column] = cells[position] if position < len(cells) else ""
        table.append(row)
    return table


def columns_of(table: DataTable) -> List[str]:
    """依出現順序取得所有欄位名稱（聯集）"""
    columns: List[str] = []
    seen = set()
    for row in table:
        for column in row.keys():
            if column not in seen:
                seen.add(column)
                columns.append(column)
    return columns


def format_value(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        text = value
    else:
        text = json.dumps(value, ensure_ascii=False, sort_keys=True)
    return _REAL_BREAK_PATTERN.sub(" ", text)


def render(table: DataTable) -> str:
    """將資料列清單輸出為 markdown 表格；空表回傳空字串"""
    if not table:
        return ""
    columns = columns_of(table)
    if not columns:
        return ""

    markdown = "||" + "||".join(columns) + "||" + LITERAL_BREAK
    for row in table:
        # 空值輸出為單一空白，避免 "||" 被誤判為標題列
        cells = [format_value(row.get(column)) or " " for column in columns]
        markdown += "|" + "|".join(cells) + "|" + LITERAL_BREAK
    return markdown.strip()
