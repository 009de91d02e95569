"""Command line interface for runbox."""

from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path

from .config import load_settings
from .coordinator import ExecutionCoordinator
from .errors import ConfigurationError
from .logging_utils import configure_logging


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="runbox", description="runbox 程式碼執行沙盒 CLI")
    parser.add_argument("--config", default=None, help="YAML 設定檔路徑（預設讀取 RUNBOX_CONFIG）")

    subparsers = parser.add_subparsers(dest="command")

    subparsers.add_parser("serve", help="啟動 HTTP 服務")

    run_parser = subparsers.add_parser("run", help="執行一段程式碼並輸出 JSON 結果")
    run_parser.add_argument("--language", "-l", required=True, help="程式語言，例如 python、javascript")
    run_parser.add_argument("source", help="原始碼檔案路徑，使用 - 代表 stdin")

    subparsers.add_parser("languages", help="列出支援的程式語言")
    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        return 1

    try:
        settings = load_settings(config_path=Path(args.config).expanduser() if args.config else None)
    except ConfigurationError as exc:
        print(f"設定錯誤：{exc}", file=sys.stderr)
        return 1
    configure_logging(settings.log_level, settings.log_json)

    if args.command == "serve":
        from .app import create_app

        import uvicorn

        uvicorn.run(create_app(settings), host=settings.host, port=settings.port)
        return 0

    coordinator = ExecutionCoordinator(settings)

    if args.command == "languages":
        print(json.dumps(coordinator.registry.describe(), ensure_ascii=False, indent=2))
        return 0

    from .app import execute_payload

    if args.source == "-":
        code = sys.stdin.read()
    else:
        try:
            code = Path(args.source).read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as exc:
            print(f"讀取原始碼失敗：{exc}", file=sys.stderr)
            return 1

    status_code, body = execute_payload(coordinator, {"language": args.language, "code": code})
    print(json.dumps(body, ensure_ascii=False, indent=2))
    if status_code == 200:
        return 0
    if status_code == 400:
        return 2
    return 1


if __name__ == "__main__":
    raise SystemExit(main())
