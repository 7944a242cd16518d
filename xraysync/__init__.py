"""Xray / Jira 測試管理同步工具。"""

__version__ = "0.1.0"
