from pathlib import Path
import sys

import certifi

PROJECT_ROOT = Path(__file__).resolve().parents[2]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from xraysync.services.tls_utils import build_ca_bundle, resolve_verify


def test_without_custom_ca_uses_default_verification():
    assert resolve_verify("") is True


def test_custom_ca_is_appended_to_certifi_bundle(tmp_path):
    custom = tmp_path / "corp.pem"
    custom.write_bytes(b"-----BEGIN CERTIFICATE-----\nCORP\n-----END CERTIFICATE-----\n")

    bundle = Path(build_ca_bundle(str(custom)))

    content = bundle.read_bytes()
    assert content.startswith(Path(certifi.where()).read_bytes())
    assert content.endswith(custom.read_bytes())


def test_unreadable_custom_ca_falls_back_to_original_path(tmp_path):
    missing = str(tmp_path / "missing.pem")
    assert build_ca_bundle(missing) == missing
