import argparse
import json
import logging
import os
import sys

# --- 環境設定：確保能從專案根目錄導入 xraysync ---
project_root = os.path.abspath(os.path.join(os.path.dirname(__file__), '..'))
if project_root not in sys.path:
    sys.path.insert(0, project_root)
# --- 環境設定結束 ---

from xraysync.config import load_config
from xraysync.models.test_case import CONTEXT_DRIVER_PARAMS
from xraysync.services.xray_sync_service import XraySyncService

# --- 日誌設定 ---
logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(levelname)s - %(message)s')
logger = logging.getLogger(__name__)
# --- 日誌設定結束 ---


def cmd_resolve(service: XraySyncService, args: argparse.Namespace) -> int:
    test_cases = service.get_test_cases(*args.keys)
    print(json.dumps([test.model_dump(exclude={"context"}) for test in test_cases], ensure_ascii=False, indent=2))
    return 0 if test_cases else 1


def cmd_match(service: XraySyncService, args: argparse.Namespace) -> int:
    test_cases = service.get_test_cases(args.test)
    if not test_cases:
        logger.error("找不到 test [%s]", args.test)
        return 1

    test_case = test_cases[0]
    test_case.iteration = args.iteration
    test_case.context[CONTEXT_DRIVER_PARAMS] = {
        "driver": args.driver,
        "capabilities": json.loads(args.capabilities) if args.capabilities else {},
    }
    if args.data_source:
        test_case.data_source = json.loads(args.data_source)

    matched = service.is_bug_match(test_case, args.bug)
    print(f"{args.test} {'符合' if matched else '不符合'} {args.bug}")
    return 0 if matched else 2


def main() -> int:
    """主執行函式"""
    parser = argparse.ArgumentParser(
        description="Xray / Jira 測試管理同步工具",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
使用範例:
  # 展開 Test Plan 並輸出 test cases
  python scripts/sync_xray.py resolve XT-100

  # 檢查 test 在指定環境下是否已有相同的 bug
  python scripts/sync_xray.py match --bug XT-900 --test XT-101 --driver ChromeDriver --iteration 0
        """
    )
    parser.add_argument('--config', default=os.getenv('XRAYSYNC_CONFIG', 'config.yaml'), help="設定檔路徑")
    subparsers = parser.add_subparsers(dest='command', required=True)

    resolve = subparsers.add_parser('resolve', help="展開 Test / Test Set / Test Plan / Test Execution")
    resolve.add_argument('keys', nargs='+', help="issue keys")

    match = subparsers.add_parser('match', help="比對 test 與既有 bug 是否為同一個問題")
    match.add_argument('--bug', required=True, help="bug issue key")
    match.add_argument('--test', required=True, help="test issue key")
    match.add_argument('--driver', default='', help="driver 名稱")
    match.add_argument('--iteration', type=int, default=0, help="迭代序號")
    match.add_argument('--capabilities', help="capabilities（JSON 物件）")
    match.add_argument('--data-source', help="資料來源（JSON 陣列），預設使用前置條件")
    args = parser.parse_args()

    settings = load_config(args.config)
    logging.getLogger().setLevel(settings.app.log_level)

    handlers = {'resolve': cmd_resolve, 'match': cmd_match}
    with XraySyncService(settings) as service:
        return handlers[args.command](service, args)


if __name__ == "__main__":
    sys.exit(main())
