"""Xray 同步流程 facade。

此模組負責：
- 建立並持有 JiraClient / XpandClient 與各個 service
- `get_test_cases(*keys)`：以 bucket_size 分批、平行展開多個 root issue
- 轉發 test run 建立、結果回寫、收尾與 bug 建立
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Dict, List, Optional, Tuple

from xraysync.config import Settings, get_settings
from xraysync.models.test_case import TestCase, TestRun
from xraysync.services.bug_service import BugService, is_match
from xraysync.services.hierarchy_resolver import HierarchyResolver
from xraysync.services.jira_client import JiraClient
from xraysync.services.result_sync_service import ResultSyncService
from xraysync.services.xpand_client import XpandClient

logger = logging.getLogger(__name__)


def chunk(keys: List[str], size: int) -> List[List[str]]:
    return [keys[start:start + size] for start in range(0, len(keys), size)]


class XraySyncService:
    def __init__(
        self,
        settings: Optional[Settings] = None,
        jira_client: Optional[JiraClient] = None,
        fetcher: Optional[XpandClient] = None,
    ):
        self.settings = settings or get_settings()
        self.config = self.settings.xray
        self.jira_client = jira_client or JiraClient(self.settings.jira, self.config)
        self.fetcher = fetcher or XpandClient(self.jira_client, self.config)
        self.results = ResultSyncService(self.jira_client, self.config)
        self.bugs = BugService(self.jira_client, self.config)
        self.tests_repository: List[str] = []

    def __enter__(self) -> "XraySyncService":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def close(self) -> None:
        self.jira_client.close()

    @property
    def bucket_size(self) -> int:
        return self.config.effective_bucket_size()

    def resolver(self) -> HierarchyResolver:
        return HierarchyResolver(self.jira_client, self.fetcher, self.config)

    def _resolve_root(self, key: str) -> Tuple[List[TestCase], List[str]]:
        resolver = self.resolver()
        test_cases = resolver.resolve(key)
        return test_cases, resolver.tests_repository or [key]

    def get_test_cases(self, *keys: str) -> List[TestCase]:
        """展開 Test / Test Set / Test Plan / Test Execution 為 test cases（依輸入順序）"""
        unique_keys = list(dict.fromkeys(str(key) for key in keys if key))
        if not unique_keys:
            return []

        test_cases: List[TestCase] = []
        repository: List[str] = []
        for bucket in chunk(unique_keys, self.bucket_size):
            workers = max(1, min(self.bucket_size, len(bucket)))
            with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="xray-resolve") as pool:
                for resolved, keys in pool.map(self._resolve_root, bucket):
                    test_cases.extend(resolved)
                    repository.extend(keys)
        # Test Execution 以其成員 tests 取代 root key
        self.tests_repository = list(dict.fromkeys(repository))

        logger.info("共展開 %s 個 test cases（來源 %s 個 issues）", len(test_cases), len(unique_keys))
        return test_cases

    # ---------- results ----------
    def create_test_run(self, title: str, test_cases: List[TestCase]) -> Optional[TestRun]:
        return self.results.create_test_run(title, test_cases)

    def update_test_result(self, test_case: TestCase) -> bool:
        return self.results.update_test_result(test_case)

    def complete_test_run(self, test_run: TestRun) -> int:
        return self.results.complete_test_run(test_run, self.tests_repository)

    # ---------- bugs ----------
    def file_bug(self, test_case: TestCase) -> Optional[Dict[str, Any]]:
        return self.bugs.file_bug(test_case)

    def is_bug_match(self, test_case: TestCase, bug_key: str) -> bool:
        bug = self.jira_client.get_issue(bug_key)
        if not bug:
            logger.warning("找不到 bug [%s]", bug_key)
            return False
        return is_match(test_case, bug)
