import hashlib
import logging
import os
import tempfile
from typing import Union

import certifi

logger = logging.getLogger(__name__)


def build_ca_bundle(custom_ca_path: str) -> str:
    """Combine the certifi CA bundle with a custom Jira CA certificate."""
    if not custom_ca_path:
        return custom_ca_path

    digest = hashlib.sha256(custom_ca_path.encode("utf-8")).hexdigest()[:12]
    bundle_path = os.path.join(tempfile.gettempdir(), f"xraysync_ca_bundle_{digest}.pem")

    try:
        with open(certifi.where(), "rb") as base, open(custom_ca_path, "rb") as extra, open(
            bundle_path, "wb"
        ) as out:
            out.write(base.read())
            out.write(b"\n")
            out.write(extra.read())
    except OSError as exc:
        logger.warning("無法合併自訂 CA 憑證 %s，改用原檔: %s", custom_ca_path, exc)
        return custom_ca_path

    return bundle_path


def resolve_verify(custom_ca_path: str) -> Union[bool, str]:
    """requests 的 verify 參數：未設定自訂 CA 時使用系統預設"""
    bundle = build_ca_bundle(custom_ca_path)
    return bundle if bundle else True
