"""
Test Plan / Test Set / Test Execution / Test 階層展開

依 root issue 類型決定展開方式（明確的類型對照表，不使用反射）：
- Test：一筆 TestCase
- Test Set：讀取自訂欄位中的成員 tests
- Test Plan：成員可能是 Test 或 Test Set，Test Set 再展開一層
- Test Execution：成員為 {test, 執行關聯} 組合，只取 test 的部分
無法辨識的類型或找不到的 issue 一律回傳空清單並記錄 log。
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Dict, Iterable, List, Optional

from xraysync.config import XrayConfig, get_settings
from xraysync.models.issue import Issue, IssueKind, as_list
from xraysync.models.test_case import TestCase
from xraysync.services import precondition_merger
from xraysync.services.jira_client import JiraClient
from xraysync.services.test_case_converter import to_test_case
from xraysync.services.xpand_client import XpandClient

logger = logging.getLogger(__name__)


def _unique(keys: Iterable[Any]) -> List[str]:
    return list(dict.fromkeys(str(key) for key in keys if key))


class HierarchyResolver:
    """將 root issue 展開為扁平的 TestCase 清單"""

    def __init__(
        self,
        jira_client: JiraClient,
        fetcher: XpandClient,
        config: Optional[XrayConfig] = None,
    ):
        self.jira_client = jira_client
        self.fetcher = fetcher
        self.config = config or get_settings().xray
        self.tests_repository: List[str] = []
        self._handlers: Dict[IssueKind, Callable[[Issue], List[TestCase]]] = {
            IssueKind.TEST: self._resolve_test,
            IssueKind.SET: self._resolve_set,
            IssueKind.PLAN: self._resolve_plan,
            IssueKind.EXECUTION: self._resolve_execution,
        }

    @property
    def bucket_size(self) -> int:
        return self.config.effective_bucket_size()

    def kind_of(self, type_name: str) -> IssueKind:
        normalized = (type_name or "").strip().casefold()
        names = {
            self.config.test_type.casefold(): IssueKind.TEST,
            self.config.set_type.casefold(): IssueKind.SET,
            self.config.plan_type.casefold(): IssueKind.PLAN,
            self.config.execution_type.casefold(): IssueKind.EXECUTION,
        }
        return names.get(normalized, IssueKind.UNKNOWN)

    def resolve(self, root_key: str) -> List[TestCase]:
        """
        展開 root issue。

        展開 Test Execution 時，tests_repository 會記錄其成員 tests，
        供建立新的 Test Execution 時取代原本的 root key。
        """
        self.tests_repository = []
        payload = self.jira_client.get_issue(root_key)
        if not payload:
            logger.warning("找不到 issue [%s]，無法載入 tests", root_key)
            return []

        issue = Issue.from_payload(payload)
        kind = self.kind_of(issue.type_name)
        handler = self._handlers.get(kind)
        if handler is None:
            logger.error(
                "無法載入 tests：找不到 [%s] 的 issue 類型 [%s] 對應的展開方式",
                root_key,
                issue.type_name,
            )
            return []
        return handler(issue)

    # ---------- handlers ----------
    def _resolve_test(self, issue: Issue) -> List[TestCase]:
        return self.build_test_cases([issue.key])

    def _resolve_set(self, issue: Issue) -> List[TestCase]:
        keys = self._set_members(issue)
        logger.debug("Test Set [%s] 底下共 %s 個 tests", issue.key, len(keys))
        return self.build_test_cases(keys)

    def _resolve_plan(self, issue: Issue) -> List[TestCase]:
        member_keys = self._member_keys(issue, self.config.schemas.test_plan_tests)
        logger.debug("Test Plan [%s] 底下共 %s 個成員", issue.key, len(member_keys))

        test_keys: List[str] = []
        for payload in self.jira_client.get_issues(self.bucket_size, member_keys):
            member = Issue.from_payload(payload)
            kind = self.kind_of(member.type_name)
            if kind == IssueKind.TEST:
                test_keys.append(member.key)
            elif kind == IssueKind.SET:
                test_keys.extend(self._set_members(member))
            else:
                logger.debug("Test Plan [%s] 的成員 [%s] 不是 Test 或 Test Set，略過", issue.key, member.key)
        return self.build_test_cases(_unique(test_keys))

    def _resolve_execution(self, issue: Issue) -> List[TestCase]:
        field_id = self.jira_client.get_custom_field(self.config.schemas.test_execution_tests)
        entries = as_list(issue.find(field_id)) if field_id else []
        keys = _unique(entry.get("b") for entry in entries if isinstance(entry, dict))
        logger.debug("Test Execution [%s] 底下共 %s 個 tests", issue.key, len(keys))
        self.tests_repository = keys
        return self.build_test_cases(keys)

    # ---------- helpers ----------
    def _member_keys(self, issue: Issue, schema: str) -> List[str]:
        field_id = self.jira_client.get_custom_field(schema)
        if not field_id:
            return []
        return _unique(as_list(issue.find(field_id)))

    def _set_members(self, issue: Issue) -> List[str]:
        return self._member_keys(issue, self.config.schemas.test_set_tests)

    def build_test_cases(self, keys: List[str]) -> List[TestCase]:
        """批次取得 tests（含 steps），並載入 Test Set 與前置條件資料"""
        if not keys:
            return []
        payloads = self.fetcher.fetch_issues(self.bucket_size, keys)
        if not payloads:
            return []

        workers = max(1, min(self.bucket_size, len(payloads)))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="xray-tests") as pool:
            test_cases = list(pool.map(self._load_test_case, payloads))

        order = {key: position for position, key in enumerate(keys)}
        return sorted(test_cases, key=lambda test: order.get(test.key, len(order)))

    def _load_test_case(self, payload: Dict[str, Any]) -> TestCase:
        test_case = to_test_case(payload)
        issue = Issue.from_payload(payload)

        test_sets = self._member_keys(issue, self.config.schemas.test_sets)
        if test_sets:
            test_case.test_suite = test_sets[0]

        precondition_keys = self._member_keys(issue, self.config.schemas.preconditions)
        if precondition_keys:
            preconditions = [
                Issue.from_payload(item) for item in self.jira_client.get_issues(self.bucket_size, precondition_keys)
            ]
            precondition_type = self.config.precondition_type.casefold()
            test_case.data_source = precondition_merger.merge_descriptions(
                item.description for item in preconditions if item.type_name.casefold() == precondition_type
            )
        return test_case
