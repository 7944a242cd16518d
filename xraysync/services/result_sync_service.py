"""
測試結果回寫 Xray

建立 Test Execution 後，每個 test 會拿到自己的 test run runtime id，
之後的 outcome、截圖證據與失敗留言都寫到該 test run 上。
單一 test 回寫失敗只記錄 log，不會中斷其他 test。
"""

from __future__ import annotations

import base64
import json
import logging
import re
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

import requests

from xraysync.config import XrayConfig, get_settings
from xraysync.models.issue import Issue
from xraysync.models.sync_result import CallResult
from xraysync.models.test_case import (
    CONTEXT_DRIVER_PARAMS,
    CONTEXT_RUNTIME_ID,
    CONTEXT_SCREENSHOTS,
    CONTEXT_TEST_RUN_KEY,
    TestCase,
    TestRun,
    TestStep,
)
from xraysync.services.jira_client import JiraClient
from xraysync.services.resources import CREATE_TEST_EXECUTION_TEMPLATE, render_template

logger = logging.getLogger(__name__)

EXECUTION_FORMAT = "/rest/raven/2.0/api/testrun/?testExecIssueKey={0}&testIssueKey={1}"
RUN_FORMAT = "/rest/raven/2.0/api/testrun/{0}"
ATTACHMENT_FORMAT = "/rest/raven/2.0/api/testrun/{0}/step/{1}/attachment"
EXECUTION_TESTS_FORMAT = "/rest/raven/1.0/api/testexec/{0}/test"
PLAN_EXECUTIONS_FORMAT = "/rest/raven/1.0/testplan/{0}/testexec"

# 未完成的執行不上傳截圖
NOT_FOR_UPLOAD_OUTCOMES = frozenset({"TODO", "EXECUTING", "ABORTED"})
INCOMPLETE_OUTCOMES = frozenset({"TODO", "EXECUTING"})

ASSERT_COMMAND = "assert"
CLOSE_BROWSER_COMMAND = "close_browser"

_STEP_REFERENCE_PATTERN = re.compile(r"(?<=-)\d+(?=-)")


def step_update_request(step: TestStep, status: str) -> Dict[str, Any]:
    lines = step.expected_lines()
    actual = "\n".join(
        ("(x) " if position in step.failed_on else "(/) ") + line for position, line in enumerate(lines)
    )
    return {
        "id": step.runtime_id,
        "status": status,
        "actualResult": actual,
    }


def step_statuses(test_case: TestCase, outcome: str) -> List[str]:
    """
    依 test 的 outcome 決定每個 step 回寫的狀態。

    - TODO / EXECUTING / ABORTED：所有 step 直接使用該狀態
    - FAIL：失敗的 step 為 FAIL；若沒有任何 step 被標記失敗，最後一個 step 為 FAIL
    - 其他：依 step 本身的結果為 PASS 或 FAIL
    """
    normalized = (outcome or "TODO").upper()
    if normalized in NOT_FOR_UPLOAD_OUTCOMES:
        return [normalized for _ in test_case.steps]

    statuses = ["PASS" if step.actual else "FAIL" for step in test_case.steps]
    if normalized == "FAIL" and statuses and "FAIL" not in statuses:
        statuses[-1] = "FAIL"
    return statuses


def _as_runtime_id(value: Any) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def step_reference(steps: List[TestStep], reference: int) -> int:
    """
    截圖檔名中的序號對應到哪個 step。

    assert 步驟沒有自己的截圖，往前找最近的非 assert 步驟；
    關閉瀏覽器的步驟或超出範圍時回傳 -1。
    """
    while 0 <= reference < len(steps):
        command = steps[reference].command
        if command == CLOSE_BROWSER_COMMAND:
            return -1
        if command != ASSERT_COMMAND:
            return reference
        reference -= 1
    return -1


def evidence_body(screenshot: Path) -> Dict[str, str]:
    return {
        "filename": screenshot.name,
        "contentType": "image/png",
        "data": base64.b64encode(screenshot.read_bytes()).decode("ascii"),
    }


def get_fail_comment(test_case: TestCase, now: Optional[datetime] = None) -> str:
    """失敗留言：失敗的步驟、driver 參數與資料來源"""
    failed = [str(step.index) for step in test_case.failed_steps()]
    if not failed:
        return ""

    timestamp = (now or datetime.now()).strftime("%Y-%m-%d %H:%M:%S")
    lines = [
        f"{{noformat}}{timestamp}: Test [{test_case.key}] Failed on iteration [{test_case.iteration}] "
        f"Steps [{','.join(failed)}]",
        "",
        "[Driver Parameters]",
        json.dumps(test_case.context.get(CONTEXT_DRIVER_PARAMS) or {}, ensure_ascii=False),
        "",
        "[Local Data Source]",
        json.dumps(test_case.data_source, ensure_ascii=False) + "{noformat}",
    ]
    return "\n".join(lines)


class ResultSyncService:
    """Test Execution 建立、結果回寫與收尾"""

    def __init__(self, jira_client: JiraClient, config: Optional[XrayConfig] = None):
        self.jira_client = jira_client
        self.config = config or get_settings().xray

    @property
    def bucket_size(self) -> int:
        return self.config.effective_bucket_size()

    def _call(self, method: str, route: str, **kwargs) -> CallResult:
        try:
            response = getattr(self.jira_client, method)(route, **kwargs)
        except requests.RequestException as exc:
            return CallResult.failed(str(exc))
        return CallResult.from_response(response)

    # ---------- runtime ids ----------
    def set_runtime_keys(self, test_case: TestCase, execution_key: str) -> bool:
        """將 Test Execution 中此 test 的 test run id 與各 step id 寫回 test case"""
        result = self._call("get", EXECUTION_FORMAT.format(execution_key, test_case.key))
        if not result.ok or not isinstance(result.payload, dict):
            logger.warning("無法取得 [%s] 在 [%s] 的 test run", test_case.key, execution_key)
            return False

        remote_steps = result.payload.get("steps") or []
        for step, remote in zip(test_case.steps, remote_steps):
            runtime_id = _as_runtime_id(remote.get("id")) if isinstance(remote, dict) else None
            if runtime_id is None:
                logger.warning("[%s] 的 step %s 沒有可用的 runtime id，略過", test_case.key, step.index)
                continue
            step.runtime_id = runtime_id
            step.context[CONTEXT_RUNTIME_ID] = runtime_id

        test_case.context[CONTEXT_TEST_RUN_KEY] = execution_key
        test_case.context[CONTEXT_RUNTIME_ID] = result.payload.get("id")
        return True

    # ---------- push ----------
    def push_outcome(self, test_case: TestCase, outcome: Optional[str] = None) -> CallResult:
        runtime_id = test_case.context.get(CONTEXT_RUNTIME_ID)
        if not runtime_id:
            return CallResult.failed(f"[{test_case.key}] 尚未指派 test run runtime id")

        if outcome:
            test_case.context["outcome"] = outcome
        statuses = step_statuses(test_case, test_case.outcome)
        body = {"steps": [step_update_request(step, status) for step, status in zip(test_case.steps, statuses)]}
        return self._call("put", RUN_FORMAT.format(runtime_id), json=body)

    def push_evidence(self, test_case: TestCase) -> List[CallResult]:
        run = test_case.context.get(CONTEXT_RUNTIME_ID) or 0
        results: List[CallResult] = []
        for screenshot in test_case.context.get(CONTEXT_SCREENSHOTS) or []:
            match = _STEP_REFERENCE_PATTERN.search(Path(screenshot).name)
            if not match:
                continue

            reference = step_reference(test_case.steps, int(match.group(0)))
            step_runtime = test_case.steps[reference].runtime_id if reference >= 0 else None
            path = Path(screenshot)
            if not path.is_file():
                logger.warning("[%s] 截圖不存在，略過: %s", test_case.key, screenshot)
                continue

            route = ATTACHMENT_FORMAT.format(run, step_runtime if step_runtime is not None else -1)
            results.append(self._call("post", route, json=evidence_body(path)))
        return results

    def push_comment(self, test_case: TestCase, text: str) -> CallResult:
        runtime_id = test_case.context.get(CONTEXT_RUNTIME_ID)
        if not runtime_id:
            return CallResult.failed(f"[{test_case.key}] 尚未指派 test run runtime id")
        return self._call("put", RUN_FORMAT.format(runtime_id), json={"comment": text})

    def update_test_result(self, test_case: TestCase) -> bool:
        """回寫單一 test 的結果；任何錯誤只記錄 log 並回傳 False"""
        try:
            outcome = test_case.outcome
            result = self.push_outcome(test_case, outcome)
            if not result.ok:
                logger.error(
                    "更新 [%s] 的測試結果失敗: %s %s", test_case.key, result.outcome.value, result.message
                )
                return False

            if outcome.upper() not in NOT_FOR_UPLOAD_OUTCOMES:
                self.push_evidence(test_case)

            if outcome.upper() == "FAIL" or test_case.has_exceptions():
                comment = get_fail_comment(test_case)
                if comment:
                    self.push_comment(test_case, comment)
            return True
        except (requests.RequestException, OSError, ValueError) as exc:
            logger.error("更新 [%s] 的測試結果失敗: %s", test_case.key, exc)
            return False

    def update_test_results(self, test_cases: Iterable[TestCase]) -> int:
        """逐筆回寫，回傳成功筆數"""
        return sum(1 for test_case in test_cases if self.update_test_result(test_case))

    # ---------- test run ----------
    def create_test_run(self, title: str, test_cases: List[TestCase]) -> Optional[TestRun]:
        field_id = self.jira_client.get_custom_field(self.config.schemas.test_execution_tests)
        body = render_template(
            CREATE_TEST_EXECUTION_TEMPLATE,
            {
                "[project-key]": self.jira_client.project,
                "[run-title]": title,
                "[issue-type]": self.config.execution_type,
                "[assignee]": self.jira_client.config.username,
                "[custom-1]": field_id,
            },
            raw_replacements={"[tests-repository]": json.dumps([test.key for test in test_cases])},
        )
        response = self.jira_client.create_issue(body)
        if not response:
            logger.error("建立 Test Execution [%s] 失敗", title)
            return None

        test_run = TestRun(
            title=title,
            key=str(response.get("key") or ""),
            link=str(response.get("self") or ""),
            runtime_id=str(response.get("id") or ""),
            test_cases=test_cases,
        )
        for test_case in test_cases:
            self.set_runtime_keys(test_case, test_run.key)
        logger.info("已建立 Test Execution [%s]，共 %s 個 tests", test_run.key, len(test_cases))
        return test_run

    def get_run_tests(self, run_key: str) -> List[Dict[str, Any]]:
        result = self._call("get", EXECUTION_TESTS_FORMAT.format(run_key))
        if not result.ok or not isinstance(result.payload, list):
            logger.warning("無法取得 Test Execution [%s] 的 tests", run_key)
            return []
        return [item for item in result.payload if isinstance(item, dict)]

    def complete_test_run(
        self, test_run: TestRun, tests_repository: Optional[List[str]] = None
    ) -> int:
        """
        補回寫伺服器上仍為 TODO/EXECUTING 的 tests，並將 Test Execution 加入 Test Plans。

        回傳補回寫的筆數。
        """
        incomplete = {
            str(item.get("key"))
            for item in self.get_run_tests(test_run.key)
            if str(item.get("status")).upper() in INCOMPLETE_OUTCOMES
        }
        retried = [test for test in test_run.test_cases if test.key in incomplete]
        if retried:
            logger.info("Test Execution [%s] 有 %s 個 tests 需要補回寫", test_run.key, len(retried))
        self.update_test_results(retried)
        self.attach_to_test_plans(test_run, tests_repository or [])
        return len(retried)

    def attach_to_test_plans(self, test_run: TestRun, tests_repository: List[str]) -> List[str]:
        """將 Test Execution 加入 tests_repository 中所有 Test Plan，回傳成功的 plan keys"""
        plan_type = self.config.plan_type.casefold()
        plans = [
            issue.key
            for issue in map(Issue.from_payload, self.jira_client.get_issues(self.bucket_size, tests_repository))
            if issue.type_name.casefold() == plan_type
        ]
        if not plans:
            return []

        body = {"assignee": self.jira_client.config.username, "keys": [test_run.key]}

        def _attach(plan: str) -> bool:
            result = self._call("post", PLAN_EXECUTIONS_FORMAT.format(plan), json=body)
            if not result.ok:
                logger.warning("無法將 [%s] 加入 Test Plan [%s]", test_run.key, plan)
            return result.ok

        workers = max(1, min(self.bucket_size, len(plans)))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="xray-plans") as pool:
            attached = list(pool.map(_attach, plans))
        return [plan for plan, ok in zip(plans, attached) if ok]
