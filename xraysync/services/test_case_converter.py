"""Xray Test issue -> TestCase 轉換"""

import re
from typing import Any, Dict, List

from xraysync.models.issue import Issue
from xraysync.models.test_case import TestCase, TestStep

_AUTO_LINK_PATTERN = re.compile(r"(?<=\{\[)[^\]]*(?=]\})")


def unescape_step_text(text: str) -> str:
    """還原 Xray 的大括號/中括號跳脫"""
    return (
        str(text or "")
        .replace("{{", "{")
        .replace("}}", "}")
        .replace("\\{", "{")
        .replace("\\[", "[")
    )


def normalize_auto_link(text: str) -> str:
    """將 {[顯示文字|網址]} 形式的自動連結還原為 {網址}"""
    match = _AUTO_LINK_PATTERN.search(text)
    while match:
        segments = match.group(0).split("|")
        if len(segments) <= 1:
            return text
        text = text.replace(f"[{match.group(0)}]", segments[1], 1)
        match = _AUTO_LINK_PATTERN.search(text)
    return text


def get_priority(issue: Issue) -> str:
    priority = issue.fields.get("priority")
    if not isinstance(priority, dict):
        return ""
    return f"{priority.get('id')} - {priority.get('name')}"


def _to_step(position: int, payload: Dict[str, Any]) -> TestStep:
    action = normalize_auto_link(unescape_step_text(payload.get("action")))
    expected = normalize_auto_link(unescape_step_text(payload.get("result") or payload.get("expected")))
    # Xray 的換行可能是 \r\n 或 \n，統一為 \n
    expected = "\n".join(expected.splitlines())
    index = payload.get("index")
    return TestStep(
        index=int(index) if str(index or "").isdigit() else position,
        action=action,
        expected=expected,
        context={"testStep": payload},
    )


def to_test_case(payload: Dict[str, Any]) -> TestCase:
    """轉換單一 issue（需已附上 steps）"""
    issue = Issue.from_payload(payload)
    steps = issue.steps if issue.steps is not None else issue.find("steps")
    parsed: List[TestStep] = [
        _to_step(position, step)
        for position, step in enumerate(steps if isinstance(steps, list) else [], start=1)
        if isinstance(step, dict)
    ]
    return TestCase(
        key=issue.key,
        scenario=str(issue.fields.get("summary") or ""),
        priority=get_priority(issue),
        link=issue.self_link,
        steps=parsed,
        context={"testCase": payload},
    )
