import os
from typing import Optional

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel

# 載入 .env 檔案（如果存在）
load_dotenv()

DEFAULT_BUCKET_SIZE = 15
DEFAULT_RETRY_FACTOR = 5


class JiraConfig(BaseModel):
    server_url: str = ""
    username: str = ""
    api_token: str = ""
    project: str = ""
    ca_cert_path: str = ""
    timeout: int = 30

    @classmethod
    def from_env(cls, fallback: 'JiraConfig' = None) -> 'JiraConfig':
        """從環境變數載入設定，如果環境變數為空則使用 fallback"""
        return cls(
            server_url=os.getenv('JIRA_SERVER_URL') or (fallback.server_url if fallback else ''),
            username=os.getenv('JIRA_USERNAME') or (fallback.username if fallback else ''),
            api_token=os.getenv('JIRA_API_TOKEN') or (fallback.api_token if fallback else ''),
            project=os.getenv('JIRA_PROJECT') or (fallback.project if fallback else ''),
            ca_cert_path=os.getenv('JIRA_CA_CERT_PATH') or (fallback.ca_cert_path if fallback else ''),
            timeout=int(os.getenv('JIRA_TIMEOUT', str(fallback.timeout if fallback else 30))),
        )


class XraySchemaConfig(BaseModel):
    """Xray 自訂欄位 schema 名稱（用於查詢實際的 customfield id）"""
    test_plan_tests: str = "com.xpandit.plugins.xray:tests-associated-with-test-plan-custom-field"
    test_set_tests: str = "com.xpandit.plugins.xray:test-sets-tests-custom-field"
    test_sets: str = "com.xpandit.plugins.xray:test-sets-custom-field"
    test_execution_tests: str = "com.xpandit.plugins.xray:testexec-tests-custom-field"
    preconditions: str = "com.xpandit.plugins.xray:test-precondition-custom-field"


class XrayConfig(BaseModel):
    cloud_url: str = "https://xray.cloud.xpand-it.com"
    bucket_size: int = DEFAULT_BUCKET_SIZE
    retry_factor: int = DEFAULT_RETRY_FACTOR
    test_type: str = "Test"
    set_type: str = "Test Set"
    plan_type: str = "Test Plan"
    execution_type: str = "Test Execution"
    precondition_type: str = "Pre-Condition"
    bug_type: str = "Bug"
    schemas: XraySchemaConfig = XraySchemaConfig()

    def effective_bucket_size(self) -> int:
        """bucket_size 未設定或不合法時回退為預設值 15"""
        return self.bucket_size if self.bucket_size and self.bucket_size > 0 else DEFAULT_BUCKET_SIZE

    @classmethod
    def from_env(cls, fallback: 'XrayConfig' = None) -> 'XrayConfig':
        base = fallback or cls()
        return cls(
            cloud_url=os.getenv('XRAY_CLOUD_URL', base.cloud_url),
            bucket_size=int(os.getenv('XRAY_BUCKET_SIZE', str(base.bucket_size))),
            retry_factor=int(os.getenv('XRAY_RETRY_FACTOR', str(base.retry_factor))),
            test_type=base.test_type,
            set_type=base.set_type,
            plan_type=base.plan_type,
            execution_type=base.execution_type,
            precondition_type=base.precondition_type,
            bug_type=base.bug_type,
            schemas=base.schemas,
        )


class AppConfig(BaseModel):
    debug: bool = False
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, fallback: 'AppConfig' = None) -> 'AppConfig':
        """從環境變數載入設定，如果環境變數為空則使用 fallback"""
        return cls(
            debug=os.getenv('DEBUG', str(fallback.debug).lower() if fallback else 'false').lower() == 'true',
            log_level=os.getenv('LOG_LEVEL', fallback.log_level if fallback else 'INFO').upper(),
        )


class Settings(BaseModel):
    app: AppConfig = AppConfig()
    jira: JiraConfig = JiraConfig()
    xray: XrayConfig = XrayConfig()

    @classmethod
    def from_env_and_file(cls, config_path: str = "config.yaml") -> 'Settings':
        """從環境變數和 YAML 檔案載入設定（環境變數優先）"""
        # 先載入檔案設定
        if os.path.exists(config_path):
            with open(config_path, 'r', encoding='utf-8') as file:
                config_data = yaml.safe_load(file) or {}
            base_settings = cls(**config_data)
        else:
            base_settings = cls()

        # 環境變數覆蓋檔案設定（僅當環境變數存在時）
        return cls(
            app=AppConfig.from_env(base_settings.app),
            jira=JiraConfig.from_env(base_settings.jira),
            xray=XrayConfig.from_env(base_settings.xray),
        )


def load_config(config_path: str = "config.yaml") -> Settings:
    """讀取 YAML 設定檔"""
    return Settings.from_env_and_file(config_path)


def create_default_config(config_path: str = "config.yaml") -> None:
    """建立預設設定檔"""
    default_config = {
        "app": {
            "debug": False,
            "log_level": "INFO",
        },
        "jira": {
            "server_url": "",
            "username": "",
            "api_token": "",
            "project": "",
            "ca_cert_path": "",
            "timeout": 30,
        },
        "xray": XrayConfig().model_dump(),
    }

    with open(config_path, 'w', encoding='utf-8') as file:
        yaml.dump(default_config, file, default_flow_style=False, allow_unicode=True)


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """取得設定實例（第一次呼叫時才載入）"""
    global _settings
    if _settings is None:
        _settings = Settings.from_env_and_file()
    return _settings
