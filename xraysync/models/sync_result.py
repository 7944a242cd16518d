"""遠端呼叫結果型別"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional

import requests

AUTH_EXPIRED_MARKER = "Authentication request has expired"


class CallOutcome(str, Enum):
    SUCCESS = "success"
    AUTH_EXPIRED = "auth_expired"
    FAILED = "failed"
    NOT_FOUND = "not_found"


@dataclass
class CallResult:
    outcome: CallOutcome
    status_code: Optional[int] = None
    payload: Any = None
    message: str = ""

    @property
    def ok(self) -> bool:
        return self.outcome == CallOutcome.SUCCESS

    @classmethod
    def success(cls, payload: Any = None, status_code: Optional[int] = None) -> "CallResult":
        return cls(CallOutcome.SUCCESS, status_code=status_code, payload=payload)

    @classmethod
    def failed(cls, message: str, status_code: Optional[int] = None) -> "CallResult":
        return cls(CallOutcome.FAILED, status_code=status_code, message=message)

    @classmethod
    def from_response(cls, response: requests.Response) -> "CallResult":
        """依 HTTP 回應分類：2xx 成功、404 找不到、token 過期可重試，其餘視為失敗"""
        if response.ok:
            try:
                payload = response.json() if response.content else None
            except ValueError:
                payload = response.text
            return cls.success(payload, response.status_code)

        body = response.text or ""
        if AUTH_EXPIRED_MARKER in body:
            return cls(CallOutcome.AUTH_EXPIRED, status_code=response.status_code, message=body)
        if response.status_code == 404:
            return cls(CallOutcome.NOT_FOUND, status_code=404, message=body)
        return cls.failed(body, response.status_code)
