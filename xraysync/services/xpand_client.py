"""
Xray Cloud (xpand-it) 客戶端

提供 Test issue 與其 steps 的批次讀取：
- 以 bucket_size 限制同時進行的 worker 數量
- token 過期（"Authentication request has expired"）的項目重新排入佇列
- 其他失敗的項目直接丟棄，不影響同批其他項目
- 總嘗試次數上限為 佇列長度 x retry_factor，避免無限重試
- 每輪仍有待處理項目時，重新取得 token 並建立新的 session
"""

from __future__ import annotations

import json
import logging
import threading
from collections import deque
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Deque, Dict, List, Optional

import requests

from xraysync.config import XrayConfig, get_settings
from xraysync.models.issue import find_first
from xraysync.models.sync_result import CallOutcome, CallResult
from xraysync.services.jira_client import MEDIA_TYPE, JiraClient
from xraysync.services.resources import GET_TOKEN_TEMPLATE, render_template

logger = logging.getLogger(__name__)

STEPS_FORMAT = "/api/internal/test/{0}/steps?startAt=0&maxResults=100"
SETS_FROM_TEST_FORMAT = "/api/internal/issuelinks/testset/{0}/tests?direction=inward"
PLANS_FROM_TEST_FORMAT = "/api/internal/issuelinks/testPlan/{0}/tests?direction=inward"
PRECONDITIONS_FORMAT = "/api/internal/issuelinks/test/{0}/preConditions"
TESTS_BY_SET_FORMAT = "/api/internal/issuelinks/testset/{0}/tests"
TESTS_BY_PLAN_FORMAT = "/api/internal/testplan/{0}/tests"
TOKEN_ROUTE = "/rest/gira/1/"


class XpandSession:
    """帶有 Xray context token 的 HTTP session（token 更換時整個 session 一併更換）"""

    def __init__(self, base_url: str, token: str, session: requests.Session, timeout: int = 30):
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.timeout = timeout
        self._session = session
        self._session.headers.update({"X-acpt": token, "Accept": MEDIA_TYPE})

    def get(self, route: str) -> CallResult:
        try:
            response = self._session.get(f"{self.base_url}/{route.lstrip('/')}", timeout=self.timeout)
        except requests.RequestException as exc:
            return CallResult.failed(str(exc))
        return CallResult.from_response(response)

    def close(self) -> None:
        self._session.close()

    def __enter__(self) -> "XpandSession":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


class _FetchLedger:
    """批次讀取的共用狀態：結果只增不減、嘗試次數只增不減"""

    def __init__(self, issues: List[Dict[str, Any]], retry_factor: int):
        self.queue: Deque[Dict[str, Any]] = deque(issues)
        self.budget = len(issues) * max(1, retry_factor)
        self.max_item_attempts = max(1, retry_factor)
        self.attempts = 0
        self.results: List[Dict[str, Any]] = []
        self.dropped: List[str] = []
        self._item_attempts: Dict[str, int] = {}
        self._lock = threading.Lock()

    def has_work(self) -> bool:
        with self._lock:
            return bool(self.queue) and self.attempts < self.budget

    def drain(self) -> List[Dict[str, Any]]:
        with self._lock:
            batch = list(self.queue)
            self.queue.clear()
            return batch

    def pending(self) -> int:
        with self._lock:
            return len(self.queue)

    def record(self, issue: Dict[str, Any], result: CallResult) -> None:
        key = str(issue.get("key") or issue.get("id"))
        with self._lock:
            if result.ok:
                enriched = dict(issue)
                payload = result.payload if isinstance(result.payload, dict) else {}
                enriched["steps"] = payload.get("steps") or []
                self.results.append(enriched)
                return

            self.attempts += 1
            self._item_attempts[key] = self._item_attempts.get(key, 0) + 1
            if (
                result.outcome == CallOutcome.AUTH_EXPIRED
                and self._item_attempts[key] < self.max_item_attempts
            ):
                self.queue.append(issue)
                return
            self.dropped.append(key)


class XpandClient:
    """Xray Cloud issue fetcher"""

    def __init__(
        self,
        jira_client: JiraClient,
        config: Optional[XrayConfig] = None,
        session_factory: Callable[[], requests.Session] = requests.Session,
    ):
        self.jira_client = jira_client
        self.config = config or get_settings().xray
        self._session_factory = session_factory

    # ---------- authentication ----------
    def get_token(self, issue_key: str) -> str:
        """取得指定 issue 範圍的 Xray context token；失敗時回傳空字串"""
        body = render_template(
            GET_TOKEN_TEMPLATE,
            {"[project-key]": self.jira_client.project, "[issue-key]": issue_key},
        )
        try:
            response = self.jira_client.post(TOKEN_ROUTE, data=body.encode("utf-8"))
            if not response.ok:
                logger.error("無法取得 Xray token（issue=%s）: HTTP %s", issue_key, response.status_code)
                return ""
            options = find_first(response.json(), "options")
        except (requests.RequestException, ValueError) as exc:
            logger.error("無法取得 Xray token（issue=%s）: %s", issue_key, exc)
            return ""

        if isinstance(options, str):
            try:
                options = json.loads(options)
            except ValueError:
                options = {}
        token = options.get("contextJwt") if isinstance(options, dict) else None
        if not token:
            logger.error("Xray token 回應中找不到 contextJwt（issue=%s）", issue_key)
            return ""
        return str(token)

    def open_session(self, issue_key: str) -> XpandSession:
        """每個 API 週期建立新的 session（token 會變動）"""
        session = self._session_factory()
        session.auth = self.jira_client.authentication
        return XpandSession(
            base_url=self.config.cloud_url,
            token=self.get_token(issue_key),
            session=session,
            timeout=self.jira_client.config.timeout,
        )

    # ---------- tests ----------
    def fetch_issues(self, bucket_size: int, issue_keys: List[str]) -> List[Dict[str, Any]]:
        """
        取得 Test issues 並附上 steps。

        用盡重試次數的項目會被略過並記錄 warning，不會拋出例外；
        整批失敗時回傳空清單。
        """
        keys = [str(key) for key in issue_keys if key]
        if not keys:
            return []

        bucket_size = bucket_size if bucket_size and bucket_size > 0 else self.config.effective_bucket_size()
        issues = self.jira_client.get_issues(bucket_size, keys)
        if not issues:
            logger.warning("找不到任何 Test 類型的 issue: %s", ", ".join(keys))
            return []

        ledger = _FetchLedger(issues, self.config.retry_factor)
        token_key = str(issues[0].get("key") or "")
        session = self.open_session(token_key)
        try:
            while ledger.has_work():
                batch = ledger.drain()
                workers = max(1, min(bucket_size, len(batch)))
                with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="xray-steps") as pool:
                    list(pool.map(lambda issue: self._fetch_steps(session, issue, ledger), batch))

                # 仍有待處理項目時重新取得 token 與 session
                if ledger.has_work():
                    session.close()
                    session = self.open_session(token_key)
        finally:
            session.close()

        exhausted = ledger.dropped + [str(issue.get("key")) for issue in ledger.drain()]
        if exhausted:
            logger.warning(
                "有 %s 筆 Test 無法取得 steps（已略過）: %s",
                len(exhausted),
                ", ".join(exhausted),
            )
        logger.debug("共嘗試失敗 %s 次（上限 %s）", ledger.attempts, ledger.budget)
        return ledger.results

    def _fetch_steps(self, session: XpandSession, issue: Dict[str, Any], ledger: _FetchLedger) -> None:
        route = STEPS_FORMAT.format(issue.get("id"))
        ledger.record(issue, session.get(route))

    def get_test_case(self, issue_key: str) -> Optional[Dict[str, Any]]:
        results = self.fetch_issues(1, [issue_key])
        return results[0] if results else None

    def get_tests_by_sets(self, bucket_size: int, issue_keys: List[str]) -> List[Dict[str, Any]]:
        return self._get_by_plan_or_set(bucket_size, TESTS_BY_SET_FORMAT, issue_keys)

    def get_tests_by_plans(self, bucket_size: int, issue_keys: List[str]) -> List[Dict[str, Any]]:
        return self._get_by_plan_or_set(bucket_size, TESTS_BY_PLAN_FORMAT, issue_keys)

    def _get_by_plan_or_set(
        self, bucket_size: int, endpoint_format: str, issue_keys: List[str]
    ) -> List[Dict[str, Any]]:
        containers = self.jira_client.get_issues(bucket_size, issue_keys)
        if not containers:
            logger.warning("無法從 Test Set / Test Plan 取得 tests（找不到 issue 或發生錯誤）")
            return []

        test_ids: List[str] = []
        lock = threading.Lock()

        def _collect(container: Dict[str, Any]) -> None:
            with self.open_session(str(container.get("key"))) as session:
                result = session.get(endpoint_format.format(container.get("id")))
            if not result.ok or not isinstance(result.payload, list):
                logger.warning("讀取 %s 底下的 tests 失敗: %s", container.get("key"), result.outcome.value)
                return
            with lock:
                test_ids.extend(str(item.get("id")) for item in result.payload if isinstance(item, dict))

        workers = max(1, min(bucket_size, len(containers)))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="xray-members") as pool:
            list(pool.map(_collect, containers))

        tests = self.jira_client.get_issues(bucket_size, test_ids)
        return self.fetch_issues(bucket_size, [str(test.get("key")) for test in tests])

    # ---------- relationships ----------
    def get_sets_by_test(self, test_case: Dict[str, Any]) -> List[str]:
        return self._get_linked_ids(test_case, SETS_FROM_TEST_FORMAT, "test sets")

    def get_plans_by_test(self, test_case: Dict[str, Any]) -> List[str]:
        return self._get_linked_ids(test_case, PLANS_FROM_TEST_FORMAT, "test plans")

    def get_preconditions_by_test(self, test_case: Dict[str, Any]) -> List[str]:
        return self._get_linked_ids(test_case, PRECONDITIONS_FORMAT, "preconditions")

    def _get_linked_ids(self, test_case: Dict[str, Any], endpoint_format: str, label: str) -> List[str]:
        key = str(test_case.get("key") or "")
        with self.open_session(key) as session:
            result = session.get(endpoint_format.format(test_case.get("id")))

        if not result.ok:
            logger.error("無法取得 [%s] 的 %s", key, label)
            return []
        items = result.payload if isinstance(result.payload, list) else []
        if not items:
            logger.debug("[%s] 沒有 %s", key, label)
            return []
        return [str(item.get("id")) for item in items if isinstance(item, dict)]
