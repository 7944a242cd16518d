"""
Bug 建立與去重

Bug 的 description 是唯一持久化的執行環境紀錄（沒有額外索引），
因此比對時會從 description 重新解析出：
- 迭代序號（*On Iteration*）
- driver 名稱（環境表格中的 |Driver| 列）
- Capabilities 區塊
- Local Data Source 區塊
再與目前 test case 以相同方式正規化後比較。
description 的輸出格式一旦改變，舊 bug 將無法再被比對到。
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

from xraysync.config import XrayConfig, get_settings
from xraysync.models.issue import Issue
from xraysync.models.test_case import (
    CONTEXT_JIRA_BUG,
    CONTEXT_PROJECT_KEY,
    CONTEXT_SCREENSHOTS,
    DataTable,
    TestCase,
    TestStep,
)
from xraysync.services import markdown_table
from xraysync.services.jira_client import JiraClient
from xraysync.services.markdown_table import LITERAL_BREAK as BR
from xraysync.services.resources import CREATE_BUG_TEMPLATE, render_template

logger = logging.getLogger(__name__)

CAPABILITIES_HEADING = "*Capabilities*"
DATA_SOURCE_HEADING = "*Local Data Source*"
GO_TO_URL = "go_to_url"
BLOCKS_LINK = "Blocks"

_ITERATION_PATTERN = re.compile(r"On Iteration\W+(\d+)")
_DRIVER_PATTERN = re.compile(r"\|Driver\|(\w+)\|")
_PRIORITY_ID_PATTERN = re.compile(r"\d+")


# ---------- fingerprint ----------
def canonicalize(table: DataTable) -> str:
    """資料表的標準化字串：不分大小寫、鍵值排序"""
    if not table:
        return ""
    rows = [
        {str(column).casefold(): markdown_table.format_value(value).casefold() for column, value in row.items()}
        for row in table
    ]
    return json.dumps(rows, sort_keys=True, ensure_ascii=False)


def canonicalize_markdown(markdown: str) -> str:
    return canonicalize(markdown_table.parse(markdown))


def capabilities_table(capabilities: Dict[str, Any]) -> DataTable:
    return [dict(capabilities)] if capabilities else []


@dataclass(frozen=True)
class Fingerprint:
    driver: str
    capabilities: str
    data_source: str
    iteration: int

    def serialize(self) -> str:
        return json.dumps(
            {
                "capabilities": self.capabilities,
                "data_source": self.data_source,
                "driver": self.driver.casefold(),
                "iteration": self.iteration,
            },
            sort_keys=True,
            ensure_ascii=False,
        )

    def matches(self, other: "Fingerprint") -> bool:
        return self.serialize() == other.serialize()


def fingerprint_of_test(test_case: TestCase) -> Fingerprint:
    # 與 bug 端走同一條 render -> parse 路徑，確保兩邊的值型別一致
    capabilities = markdown_table.render(capabilities_table(test_case.capabilities))
    data_source = markdown_table.render(test_case.data_source)
    return Fingerprint(
        driver=str(test_case.driver_params.get("driver") or ""),
        capabilities=canonicalize_markdown(capabilities),
        data_source=canonicalize_markdown(data_source),
        iteration=test_case.iteration,
    )


def bug_text(bug: Union[str, Dict[str, Any]]) -> str:
    """取得 bug 的 description 文字，並將換行統一為字面 "\\r\\n" """
    if isinstance(bug, dict):
        text = Issue.from_payload(bug).description or json.dumps(bug, ensure_ascii=False)
    else:
        text = str(bug or "")
    return markdown_table.normalize_breaks(text)


def extract_block(text: str, heading: str) -> str:
    """取出 heading 之後的表格列，遇到空行、下一個標題或非表格文字即結束"""
    position = text.find(heading)
    if position < 0:
        return ""

    rows: List[str] = []
    for line in text[position + len(heading):].split(BR):
        stripped = line.strip()
        if not stripped:
            if rows:
                break
            continue
        if not stripped.startswith("|"):
            break
        rows.append(stripped)
    return BR.join(rows)


def fingerprint_of_bug(bug: Union[str, Dict[str, Any]]) -> Fingerprint:
    text = bug_text(bug)
    iteration = _ITERATION_PATTERN.search(text)
    driver = _DRIVER_PATTERN.search(text)
    return Fingerprint(
        driver=driver.group(1) if driver else "",
        capabilities=canonicalize_markdown(extract_block(text, CAPABILITIES_HEADING)),
        data_source=canonicalize_markdown(extract_block(text, DATA_SOURCE_HEADING)),
        iteration=int(iteration.group(1)) if iteration else 0,
    )


def is_match(test_case: TestCase, bug: Union[str, Dict[str, Any]]) -> bool:
    """driver、迭代序號、capabilities 與資料來源皆相同時視為同一個 bug"""
    return fingerprint_of_test(test_case).matches(fingerprint_of_bug(bug))


# ---------- description ----------
def _escape_braces(text: str) -> str:
    return text.replace("{", "\\{")


def step_markdown(step: TestStep) -> str:
    action = "*" + _escape_braces(step.action) + "*" + BR
    if not step.failed_on:
        return action

    markdown = action + "||Result||Assertion||" + BR
    for position, assertion in enumerate(step.expected_lines()):
        outcome = "(x)" if position in step.failed_on else "(/)"
        markdown += "|" + outcome + "|" + _escape_braces(assertion) + "|" + BR
    return markdown


def application_under_test(test_case: TestCase) -> str:
    steps = test_case.steps
    is_web_app = bool(steps) and steps[0].command == GO_TO_URL
    capabilities = test_case.capabilities
    if not is_web_app and "app" in capabilities:
        return str(capabilities["app"])
    step = next((item for item in steps if item.command == GO_TO_URL), None)
    return str(step.argument or "") if step else ""


def platform_markdown(test_case: TestCase) -> str:
    params = test_case.driver_params
    driver = str(params.get("driver") or "")
    header = BR + "----" + BR + "*On Platform*: " + driver + BR + "----" + BR
    environment = (
        "*Application Under Test*" + BR
        + "||Name||Value||" + BR
        + "|Driver|" + driver + "|" + BR
        + "|Driver Server|" + str(params.get("driverBinaries") or "") + "|" + BR
        + "|Application|" + application_under_test(test_case) + "|" + BR
    )

    capabilities = ""
    if test_case.capabilities:
        capabilities = (
            CAPABILITIES_HEADING + BR
            + markdown_table.render(capabilities_table(test_case.capabilities)) + BR + BR
        )

    data_source = ""
    if test_case.data_source:
        data_source = DATA_SOURCE_HEADING + BR + markdown_table.render(test_case.data_source)

    return header + environment + capabilities + data_source


def render_description(test_case: TestCase, now: Optional[datetime] = None) -> str:
    timestamp = (now or datetime.now(timezone.utc)).strftime("%Y-%m-%d %H:%M:%S")
    header = (
        BR + "----" + BR
        + "*" + timestamp + " UTC*" + BR
        + "*On Iteration*: " + str(test_case.iteration) + BR
        + "Bug filed on '" + test_case.scenario + "'" + BR
        + "----" + BR
    )
    steps = (BR + BR).join(step_markdown(step) for step in test_case.steps)
    return header + steps + platform_markdown(test_case)


class BugService:
    """在 Jira 建立 bug，並避免重複建立相同環境的 bug"""

    def __init__(self, jira_client: JiraClient, config: Optional[XrayConfig] = None):
        self.jira_client = jira_client
        self.config = config or get_settings().xray

    def _priority_id(self, test_case: TestCase) -> str:
        match = _PRIORITY_ID_PATTERN.search(test_case.priority or "")
        return match.group(0) if match else ""

    def build_bug_request(self, test_case: TestCase) -> Dict[str, Any]:
        body = render_template(
            CREATE_BUG_TEMPLATE,
            {
                "[project-key]": str(test_case.context.get(CONTEXT_PROJECT_KEY) or self.jira_client.project),
                "[test-scenario]": test_case.scenario,
                "[test-priority]": self._priority_id(test_case),
                "[test-actions]": render_description(test_case),
                "[test-environment]": application_under_test(test_case),
                "[test-id]": test_case.key,
                "[issue-type]": self.config.bug_type,
            },
        )
        payload = json.loads(body)
        if not payload["fields"]["priority"]["id"]:
            payload["fields"].pop("priority")
        return payload

    def create_bug(self, test_case: TestCase) -> Optional[Dict[str, Any]]:
        """建立 bug、以 Blocks 連結到 test、上傳截圖"""
        response = self.jira_client.create_issue(self.build_bug_request(test_case))
        if not response:
            logger.error("為 [%s] 建立 bug 失敗", test_case.key)
            return None

        bug_key = str(response.get("key"))
        self.jira_client.create_issue_link(BLOCKS_LINK, inward=bug_key, outward=test_case.key)
        self.jira_client.add_attachments(bug_key, test_case.context.get(CONTEXT_SCREENSHOTS) or [])
        test_case.context[CONTEXT_JIRA_BUG] = response
        logger.info("已為 [%s] 建立 bug [%s]", test_case.key, bug_key)
        return response

    def get_bugs(self, test_case: TestCase) -> List[Dict[str, Any]]:
        """取得以 Blocks 連結到此 test 的 bugs"""
        issue = self.jira_client.get_issue(test_case.key)
        if not issue:
            return []

        bug_type = self.config.bug_type.casefold()
        keys: List[str] = []
        for link in Issue.from_payload(issue).fields.get("issuelinks") or []:
            link_type = (link.get("type") or {}).get("name", "")
            linked = link.get("inwardIssue") or {}
            linked_type = ((linked.get("fields") or {}).get("issuetype") or {}).get("name", "")
            if link_type.casefold() == BLOCKS_LINK.casefold() and linked_type.casefold() == bug_type:
                keys.append(str(linked.get("key")))
        return self.jira_client.get_issues(self.config.effective_bucket_size(), keys)

    def find_matching_bug(
        self, test_case: TestCase, bugs: Optional[List[Dict[str, Any]]] = None
    ) -> Optional[Dict[str, Any]]:
        candidates = self.get_bugs(test_case) if bugs is None else bugs
        return next((bug for bug in candidates if is_match(test_case, bug)), None)

    def file_bug(
        self, test_case: TestCase, bugs: Optional[List[Dict[str, Any]]] = None
    ) -> Optional[Dict[str, Any]]:
        """已有相同環境的 bug 時直接沿用，否則建立新的 bug"""
        existing = self.find_matching_bug(test_case, bugs)
        if existing:
            logger.info("[%s] 已有相同的 bug [%s]，不重複建立", test_case.key, existing.get("key"))
            test_case.context[CONTEXT_JIRA_BUG] = existing
            return existing
        return self.create_bug(test_case)
