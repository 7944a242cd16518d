from pathlib import Path
import base64
import json
import sys
from types import SimpleNamespace

import requests

PROJECT_ROOT = Path(__file__).resolve().parents[2]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from xraysync.config import XrayConfig
from xraysync.models.sync_result import CallOutcome
from xraysync.models.test_case import (
    CONTEXT_DRIVER_PARAMS,
    CONTEXT_RUNTIME_ID,
    CONTEXT_SCREENSHOTS,
    CONTEXT_TEST_RUN_KEY,
    TestCase,
    TestRun,
    TestStep,
)
from xraysync.services.result_sync_service import (
    ResultSyncService,
    get_fail_comment,
    step_reference,
    step_statuses,
    step_update_request,
)

CONFIG = XrayConfig()


class FakeResponse:
    def __init__(self, status_code=200, payload=None):
        self.status_code = status_code
        self._payload = payload
        self.text = json.dumps(payload) if payload is not None else ""
        self.content = self.text.encode("utf-8")

    @property
    def ok(self):
        return 200 <= self.status_code < 400

    def json(self):
        if self._payload is None:
            raise ValueError("no json")
        return self._payload


class FakeJiraClient:
    def __init__(self, routes=None, issues=None):
        self.project = "XT"
        self.config = SimpleNamespace(username="automation", timeout=5)
        self.routes = routes or {}
        self.issues = {item["key"]: item for item in issues or []}
        self.calls = []
        self.created = []

    def _respond(self, method, route, kwargs):
        self.calls.append((method, route, kwargs))
        handler = self.routes.get((method, route))
        if isinstance(handler, Exception):
            raise handler
        return handler if handler is not None else FakeResponse(200, {})

    def get(self, route, **kwargs):
        return self._respond("get", route, kwargs)

    def put(self, route, **kwargs):
        return self._respond("put", route, kwargs)

    def post(self, route, **kwargs):
        return self._respond("post", route, kwargs)

    def get_issues(self, bucket_size, keys):
        return [self.issues[key] for key in keys if key in self.issues]

    def get_custom_field(self, schema):
        return "customfield_400"

    def create_issue(self, body):
        self.created.append(body)
        return {"key": "XT-50", "id": "50", "self": "https://jira.test/rest/api/2/issue/50"}


def make_test_case(key="XT-11", outcome="FAIL"):
    test_case = TestCase(
        key=key,
        scenario="Login",
        steps=[
            TestStep(index=1, action="open", command="go_to_url", runtime_id=101),
            TestStep(index=2, action="check", command="assert", expected="a\nb", runtime_id=102, actual=False, failed_on=[1]),
            TestStep(index=3, action="close", command="close_browser", runtime_id=103),
        ],
        data_source=[{"user": "alice"}],
    )
    test_case.context.update({
        "outcome": outcome,
        CONTEXT_RUNTIME_ID: 7001,
        CONTEXT_DRIVER_PARAMS: {"driver": "ChromeDriver"},
    })
    return test_case


def test_step_update_request_marks_failed_assertions():
    step = make_test_case().steps[1]
    assert step_update_request(step, "FAIL") == {"id": 102, "status": "FAIL", "actualResult": "(/) a\n(x) b"}


def test_step_statuses_follow_step_results_for_failed_outcome():
    assert step_statuses(make_test_case(), "FAIL") == ["PASS", "FAIL", "PASS"]


def test_failed_outcome_marks_last_step_when_no_step_failed():
    jira = FakeJiraClient()
    test_case = TestCase(key="XT-11", steps=[TestStep(index=1, action="open", command="go_to_url", runtime_id=5)])
    test_case.context[CONTEXT_RUNTIME_ID] = 77

    result = ResultSyncService(jira, CONFIG).push_outcome(test_case, "FAIL")

    assert result.outcome == CallOutcome.SUCCESS
    assert jira.calls[0][1] == "/rest/raven/2.0/api/testrun/77"
    assert jira.calls[0][2]["json"]["steps"][0]["status"] == "FAIL"
    assert test_case.outcome == "FAIL"


def test_incomplete_outcome_is_sent_as_step_status():
    jira = FakeJiraClient()
    test_case = make_test_case(outcome="PASS")

    ResultSyncService(jira, CONFIG).push_outcome(test_case, "EXECUTING")

    statuses = [step["status"] for step in jira.calls[0][2]["json"]["steps"]]
    assert statuses == ["EXECUTING", "EXECUTING", "EXECUTING"]


def test_step_reference_walks_back_over_asserts():
    steps = make_test_case().steps
    assert step_reference(steps, 0) == 0
    assert step_reference(steps, 1) == 0
    assert step_reference(steps, 2) == -1
    assert step_reference(steps, 9) == -1


def test_fail_comment_lists_failed_steps_and_environment():
    comment = get_fail_comment(make_test_case())
    assert comment.startswith("{noformat}")
    assert "Test [XT-11] Failed on iteration [0] Steps [2]" in comment
    assert '"driver": "ChromeDriver"' in comment
    assert '[{"user": "alice"}]{noformat}' in comment


def test_set_runtime_keys_assigns_step_and_run_ids():
    route = "/rest/raven/2.0/api/testrun/?testExecIssueKey=XT-50&testIssueKey=XT-11"
    jira = FakeJiraClient({("get", route): FakeResponse(200, {"id": 9001, "steps": [{"id": 1}, {"id": 2}, {"id": 3}]})})
    test_case = make_test_case()

    assert ResultSyncService(jira, CONFIG).set_runtime_keys(test_case, "XT-50")
    assert [step.runtime_id for step in test_case.steps] == [1, 2, 3]
    assert test_case.context[CONTEXT_TEST_RUN_KEY] == "XT-50"
    assert test_case.context[CONTEXT_RUNTIME_ID] == 9001


def test_update_failed_result_pushes_outcome_evidence_and_comment(tmp_path):
    screenshot = tmp_path / "shot-1-001.png"
    screenshot.write_bytes(b"png-bytes")
    jira = FakeJiraClient()
    test_case = make_test_case()
    test_case.context[CONTEXT_SCREENSHOTS] = [str(screenshot)]

    assert ResultSyncService(jira, CONFIG).update_test_result(test_case)

    methods = [(method, route) for method, route, _ in jira.calls]
    assert methods == [
        ("put", "/rest/raven/2.0/api/testrun/7001"),
        ("post", "/rest/raven/2.0/api/testrun/7001/step/101/attachment"),
        ("put", "/rest/raven/2.0/api/testrun/7001"),
    ]
    evidence = jira.calls[1][2]["json"]
    assert evidence["filename"] == "shot-1-001.png"
    assert base64.b64decode(evidence["data"]) == b"png-bytes"
    assert "comment" in jira.calls[2][2]["json"]


def test_incomplete_outcome_skips_evidence_and_comment(tmp_path):
    screenshot = tmp_path / "shot-0-001.png"
    screenshot.write_bytes(b"png")
    jira = FakeJiraClient()
    test_case = make_test_case(outcome="EXECUTING")
    test_case.steps[1].actual = True
    test_case.context[CONTEXT_SCREENSHOTS] = [str(screenshot)]

    assert ResultSyncService(jira, CONFIG).update_test_result(test_case)
    assert [method for method, _, _ in jira.calls] == ["put"]


def test_push_outcome_without_runtime_id_fails():
    test_case = make_test_case()
    test_case.context.pop(CONTEXT_RUNTIME_ID)
    result = ResultSyncService(FakeJiraClient(), CONFIG).push_outcome(test_case)
    assert result.outcome == CallOutcome.FAILED


def test_one_failing_test_does_not_abort_batch(caplog):
    jira = FakeJiraClient({
        ("put", "/rest/raven/2.0/api/testrun/7001"): requests.ConnectionError("connection reset"),
    })
    failing = make_test_case("XT-11", outcome="PASS")
    passing = make_test_case("XT-12", outcome="PASS")
    passing.context[CONTEXT_RUNTIME_ID] = 7002

    assert ResultSyncService(jira, CONFIG).update_test_results([failing, passing]) == 1
    assert "XT-11" in caplog.text


def test_create_test_run_posts_tests_repository_and_assigns_runtime_keys():
    jira = FakeJiraClient()
    test_case = make_test_case()

    test_run = ResultSyncService(jira, CONFIG).create_test_run("nightly", [test_case])

    body = json.loads(jira.created[0])
    assert body["fields"]["summary"] == "nightly"
    assert body["fields"]["customfield_400"] == ["XT-11"]
    assert body["fields"]["assignee"] == {"name": "automation"}
    assert test_run.key == "XT-50"
    assert jira.calls[0][1] == "/rest/raven/2.0/api/testrun/?testExecIssueKey=XT-50&testIssueKey=XT-11"


def test_complete_test_run_retries_incomplete_tests_and_attaches_plans():
    jira = FakeJiraClient(
        routes={
            ("get", "/rest/raven/1.0/api/testexec/XT-50/test"): FakeResponse(200, [
                {"key": "XT-11", "status": "TODO"},
                {"key": "XT-12", "status": "PASS"},
            ]),
        },
        issues=[
            {"key": "XT-1", "fields": {"issuetype": {"name": "Test Plan"}}},
            {"key": "XT-11", "fields": {"issuetype": {"name": "Test"}}},
        ],
    )
    retried = make_test_case("XT-11", outcome="PASS")
    done = make_test_case("XT-12", outcome="PASS")
    test_run = TestRun(title="nightly", key="XT-50", test_cases=[retried, done])

    assert ResultSyncService(jira, CONFIG).complete_test_run(test_run, ["XT-1", "XT-11"]) == 1

    plan_calls = [call for call in jira.calls if call[1] == "/rest/raven/1.0/testplan/XT-1/testexec"]
    assert len(plan_calls) == 1
    assert plan_calls[0][2]["json"] == {"assignee": "automation", "keys": ["XT-50"]}


def test_create_test_run_skips_remote_steps_without_id(caplog):
    jira = FakeJiraClient({
        ("get", "/rest/raven/2.0/api/testrun/?testExecIssueKey=XT-50&testIssueKey=XT-1"): FakeResponse(
            200, {"id": 9001, "steps": [{"index": 1}]}
        ),
        ("get", "/rest/raven/2.0/api/testrun/?testExecIssueKey=XT-50&testIssueKey=XT-2"): FakeResponse(
            200, {"id": 9002, "steps": [{"index": 1}]}
        ),
    })
    first = make_test_case("XT-1")
    second = make_test_case("XT-2")

    test_run = ResultSyncService(jira, CONFIG).create_test_run("run", [first, second])

    assert isinstance(test_run, TestRun)
    assert first.context[CONTEXT_TEST_RUN_KEY] == "XT-50"
    assert second.context[CONTEXT_RUNTIME_ID] == 9002
    assert first.steps[0].runtime_id == 101
    assert "XT-1" in caplog.text


def test_push_comment_without_runtime_id_fails():
    jira = FakeJiraClient()
    test_case = make_test_case()
    test_case.context.pop(CONTEXT_RUNTIME_ID)

    result = ResultSyncService(jira, CONFIG).push_comment(test_case, "boom")

    assert result.outcome == CallOutcome.FAILED
    assert jira.calls == []
