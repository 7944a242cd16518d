"""
Jira REST 客戶端

- 每個 JiraClient 擁有自己的 requests.Session（不使用全域共用連線）
- 明確的生命週期：close() 或 with 區塊結束時釋放連線
- 單筆失敗只影響該筆，不會讓批次中斷
"""

import json
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Union

import requests

from xraysync.config import JiraConfig, XrayConfig, get_settings
from xraysync.models.issue import Issue
from xraysync.services.tls_utils import resolve_verify

logger = logging.getLogger(__name__)

MEDIA_TYPE = "application/json"


class JiraClient:
    """Jira issue store（issue 查詢、建立、連結與附件）"""

    def __init__(
        self,
        config: Optional[JiraConfig] = None,
        xray_config: Optional[XrayConfig] = None,
        session: Optional[requests.Session] = None,
    ):
        settings = get_settings() if config is None or xray_config is None else None
        self.config = config or settings.jira
        self.xray_config = xray_config or settings.xray
        self.base_url = (self.config.server_url or "").rstrip("/")
        self._session = session or self._create_session()
        self._custom_fields: Dict[str, str] = {}
        self._custom_fields_lock = threading.Lock()

    def _create_session(self) -> requests.Session:
        session = requests.Session()
        if self.config.username or self.config.api_token:
            session.auth = (self.config.username, self.config.api_token)
        session.headers.update({"Accept": MEDIA_TYPE, "Content-Type": MEDIA_TYPE})
        session.verify = resolve_verify(self.config.ca_cert_path)
        return session

    def __enter__(self) -> "JiraClient":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def close(self) -> None:
        """關閉底層連線"""
        self._session.close()

    @property
    def authentication(self):
        return self._session.auth

    @property
    def project(self) -> str:
        return self.config.project

    # ---------- raw HTTP ----------
    def url(self, route: str) -> str:
        if route.startswith("http://") or route.startswith("https://"):
            return route
        return f"{self.base_url}/{route.lstrip('/')}"

    def get(self, route: str, **kwargs) -> requests.Response:
        kwargs.setdefault("timeout", self.config.timeout)
        return self._session.get(self.url(route), **kwargs)

    def post(self, route: str, **kwargs) -> requests.Response:
        kwargs.setdefault("timeout", self.config.timeout)
        return self._session.post(self.url(route), **kwargs)

    def put(self, route: str, **kwargs) -> requests.Response:
        kwargs.setdefault("timeout", self.config.timeout)
        return self._session.put(self.url(route), **kwargs)

    # ---------- issues ----------
    def get_issue(self, issue_key: str, fields: Optional[List[str]] = None) -> Optional[Dict[str, Any]]:
        """取得單一 issue；找不到或呼叫失敗時回傳 None"""
        if not issue_key:
            return None
        params = {"fields": ",".join(fields)} if fields else None
        try:
            response = self.get(f"/rest/api/2/issue/{issue_key}", params=params)
        except requests.RequestException as exc:
            logger.warning("取得 issue %s 失敗: %s", issue_key, exc)
            return None

        if not response.ok:
            logger.debug("取得 issue %s 失敗: HTTP %s", issue_key, response.status_code)
            return None
        try:
            return response.json()
        except ValueError:
            logger.warning("issue %s 回應不是合法 JSON", issue_key)
            return None

    def get_issues(self, bucket_size: int, issue_keys: Iterable[str]) -> List[Dict[str, Any]]:
        """以最多 bucket_size 個 worker 平行取得多個 issue，找不到的直接略過"""
        keys = [str(key) for key in issue_keys if key]
        if not keys:
            return []

        workers = max(1, min(bucket_size or 1, len(keys)))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="jira-issues") as pool:
            results = list(pool.map(self.get_issue, keys))
        return [issue for issue in results if issue]

    def get_issue_type(self, issue_key: str) -> str:
        issue = self.get_issue(issue_key, ["issuetype"])
        if not issue:
            return ""
        return Issue.from_payload(issue).type_name

    def get_custom_field(self, schema: str) -> str:
        """依 Xray schema 名稱查詢 customfield id（結果快取）；找不到回傳空字串"""
        with self._custom_fields_lock:
            if schema in self._custom_fields:
                return self._custom_fields[schema]

        try:
            response = self.get("/rest/api/2/field")
            fields = response.json() if response.ok else []
        except (requests.RequestException, ValueError) as exc:
            logger.warning("查詢自訂欄位 %s 失敗: %s", schema, exc)
            return ""

        field_id = ""
        for field in fields if isinstance(fields, list) else []:
            field_schema = field.get("schema") if isinstance(field, dict) else None
            if isinstance(field_schema, dict) and field_schema.get("custom") == schema:
                field_id = str(field.get("id") or "")
                break

        if not field_id:
            logger.warning("找不到 schema 為 %s 的自訂欄位", schema)
            return ""

        with self._custom_fields_lock:
            self._custom_fields[schema] = field_id
        return field_id

    def create_issue(self, body: Union[str, Dict[str, Any]]) -> Optional[Dict[str, Any]]:
        """建立 issue；失敗回傳 None"""
        data = body if isinstance(body, str) else json.dumps(body, ensure_ascii=False)
        try:
            response = self.post("/rest/api/2/issue", data=data.encode("utf-8"))
        except requests.RequestException as exc:
            logger.error("建立 issue 失敗: %s", exc)
            return None
        if not response.ok:
            logger.error("建立 issue 失敗: HTTP %s %s", response.status_code, response.text)
            return None
        return response.json()

    def create_issue_link(self, link_type: str, inward: str, outward: str) -> bool:
        payload = {
            "type": {"name": link_type},
            "inwardIssue": {"key": inward},
            "outwardIssue": {"key": outward},
        }
        try:
            response = self.post("/rest/api/2/issueLink", json=payload)
        except requests.RequestException as exc:
            logger.error("建立 issue 連結 %s -> %s 失敗: %s", inward, outward, exc)
            return False
        if not response.ok:
            logger.error("建立 issue 連結 %s -> %s 失敗: HTTP %s", inward, outward, response.status_code)
        return response.ok

    def add_attachments(self, issue_key: str, files: Iterable[str]) -> int:
        """上傳附件，回傳成功上傳的檔案數"""
        uploaded = 0
        for file_path in files:
            path = Path(file_path)
            if not path.is_file():
                logger.warning("附件不存在，略過: %s", file_path)
                continue
            try:
                with open(path, "rb") as handle:
                    response = self._session.post(
                        self.url(f"/rest/api/2/issue/{issue_key}/attachments"),
                        files={"file": (path.name, handle, "application/octet-stream")},
                        headers={"X-Atlassian-Token": "no-check", "Content-Type": None},
                        timeout=self.config.timeout,
                    )
            except requests.RequestException as exc:
                logger.warning("上傳附件 %s 到 %s 失敗: %s", path.name, issue_key, exc)
                continue
            if response.ok:
                uploaded += 1
            else:
                logger.warning("上傳附件 %s 到 %s 失敗: HTTP %s", path.name, issue_key, response.status_code)
        return uploaded
