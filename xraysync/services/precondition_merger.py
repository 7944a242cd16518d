"""前置條件（Pre-Condition）資料表合併"""

from __future__ import annotations

import logging
from typing import Iterable, List, Sequence

from xraysync.models.test_case import DataRow, DataTable
from xraysync.services import markdown_table

logger = logging.getLogger(__name__)


def parse_precondition(description: str) -> DataTable:
    """將 Pre-Condition 的 description 解析為資料表（格式錯誤時為空表）"""
    return markdown_table.parse((description or "").strip())


def merge(tables: Sequence[DataTable]) -> DataTable:
    """
    將多個資料表逐列對齊合併為一個。

    - 欄位取聯集（依出現順序）
    - 列數取最大者；列數較少的表以最後一列補齊，因此單列的「全域」前置條件會套用到每個迭代
    - 同名欄位以後面的表為準
    - 空表不參與合併；全部為空時回傳空表
    """
    effective = [table for table in tables if table]
    if not effective:
        return []
    if len(effective) == 1:
        return [dict(row) for row in effective[0]]

    columns = markdown_table.columns_of([row for table in effective for row in table])
    row_count = max(len(table) for table in effective)

    merged: DataTable = []
    for index in range(row_count):
        row: DataRow = {column: "" for column in columns}
        for table in effective:
            source = table[index] if index < len(table) else table[-1]
            row.update(source)
        merged.append(row)
    return merged


def merge_descriptions(descriptions: Iterable[str]) -> DataTable:
    tables: List[DataTable] = []
    for description in descriptions:
        table = parse_precondition(description)
        if not table:
            logger.debug("前置條件內容無法解析為資料表，略過")
            continue
        tables.append(table)
    return merge(tables)
