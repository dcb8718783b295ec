#!/usr/bin/env python3
"""
Export WeChat chat history from an iTunes/Finder backup to HTML pages.

The backup must be unencrypted.  Pass either a single backup folder or the
folder holding several backups (e.g. ``~/Library/Application Support/
MobileSync/Backup``); when several backups are found you are asked to pick
one.

Usage:
    python export_chat_html.py --backup path/to/Backup \
                               --output path/to/export \
                               --incremental

Re-running with ``--incremental`` against the same output directory only
renders messages received since the previous export.
"""

import argparse
import json
import logging
import os
from pathlib import Path
from typing import List, Optional

from chat_export import Exporter, ExportNotifier, ExportStatus, load_chat_catalog
from export_state import ExportOptions, StateStore
from itunes_index import BackupLoadError
from itunes_manifest import BackupManifest, discover

logger = logging.getLogger(__name__)

CONFIG_FILE = Path.home() / ".wechattobook_config.json"

_LOG_FORMAT = "%(asctime)s - %(message)s"


def configure_logging(log_file: Optional[str] = None, level: int = logging.INFO) -> None:
    """Send log records to the console and, optionally, to ``log_file``."""

    root = logging.getLogger()
    root.setLevel(level)
    console = logging.StreamHandler()
    console.setFormatter(logging.Formatter(_LOG_FORMAT))
    root.addHandler(console)
    if log_file:
        handler = logging.FileHandler(log_file, encoding="utf-8")
        handler.setFormatter(logging.Formatter(_LOG_FORMAT))
        root.addHandler(handler)


def load_config() -> dict:
    """Load persisted options from :data:`CONFIG_FILE`."""

    try:
        with CONFIG_FILE.open("r", encoding="utf-8") as fh:
            return json.load(fh)
    except (OSError, json.JSONDecodeError):
        return {}


def save_config(data: dict) -> None:
    """Persist ``data`` to :data:`CONFIG_FILE`.

    Errors are ignored; failing to store configuration should not break the
    export itself.
    """

    try:
        CONFIG_FILE.write_text(json.dumps(data, indent=2), encoding="utf-8")
    except OSError:
        pass


def fail(message: str) -> None:
    """Abort execution with an error message."""
    raise SystemExit(message)


class ConsoleNotifier(ExportNotifier):
    """Print a progress line every few hundred messages."""

    def __init__(self, every: int = 500) -> None:
        self.every = every

    def on_session_progress(self, usr_name: str, done: int, total: int) -> None:
        if done % self.every == 0:
            print(f"  {done}/{total} messages")

    def on_tasks_start(self, account: str, total: int) -> None:
        if total:
            print(f"Waiting for {total} background task(s)...")


def select_backup(backups: List[BackupManifest], default_path: Optional[str]) -> BackupManifest:
    if len(backups) == 1:
        return backups[0]

    print("Available backups:")
    for idx, backup in enumerate(backups, 1):
        print(f"{idx}: {backup}")
    default_idx = next(
        (i for i, b in enumerate(backups, 1) if b.path == default_path), None
    )
    while True:
        prompt = "Select backup number"
        if default_idx:
            prompt += f" [{default_idx}]"
        choice = input(prompt + ": ").strip()
        if not choice and default_idx:
            return backups[default_idx - 1]
        if choice.isdigit() and 1 <= int(choice) <= len(backups):
            return backups[int(choice) - 1]
        print("Please enter a valid number.")


def build_options(args: argparse.Namespace) -> ExportOptions:
    extra = dict(
        descending=args.desc,
        incremental=args.incremental,
        support_filter=args.filter,
        files_in_session_folder=args.files_in_chat_folder,
        loading_data_on_scroll=args.on_scroll,
        page_size=args.page_size,
    )
    if args.text:
        return ExportOptions.for_text(**extra)
    return ExportOptions(pdf_mode=args.pdf, sync_loading=args.sync, **extra)


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Export WeChat chats from an iTunes backup")
    parser.add_argument("--backup", help="Backup folder or folder holding several backups")
    parser.add_argument("--output", help="Output directory")
    parser.add_argument("--list-backups", action="store_true", help="List backups and exit")
    parser.add_argument("--list-chats", action="store_true", help="List accounts and chats and exit")
    parser.add_argument("--account", action="append", help="Only export this account (md5 id)")
    parser.add_argument("--desc", action="store_true", help="Newest messages first")
    parser.add_argument("--text", action="store_true", help="Plain text output")
    parser.add_argument("--pdf", action="store_true", help="Also convert every chat to PDF")
    parser.add_argument("--sync", action="store_true", help="Put all messages into one page")
    parser.add_argument("--on-scroll", action="store_true", help="Load further pages while scrolling")
    parser.add_argument("--files-in-chat-folder", action="store_true",
                        help="Copy pictures into each chat's _files folder")
    parser.add_argument("--filter", action="store_true", help="Add a text filter to chat pages")
    parser.add_argument("--incremental", action="store_true", help="Only export new messages")
    parser.add_argument("--page-size", type=int, default=1000, help="Messages per page")
    parser.add_argument("--log-file", help="Also write the log to this file")
    args = parser.parse_args(argv)

    configure_logging(args.log_file)
    config = load_config()

    backup_root = args.backup or input(
        f"Backup folder [{config.get('backup_root', '')}]: "
    ).strip() or config.get("backup_root")
    if not backup_root:
        fail("Backup folder is required.")

    backups = discover(backup_root)
    if not backups:
        fail(f"No complete backup found in {backup_root}")
    if args.list_backups:
        for backup in backups:
            flag = " (encrypted)" if backup.encrypted else ""
            print(f"{backup}{flag}")
        return 0

    backup = select_backup(backups, config.get("backup_path"))
    if backup.encrypted:
        fail(f"Backup {backup.path} is encrypted; only unencrypted backups are supported.")

    if args.list_chats:
        try:
            catalog = load_chat_catalog(backup.path)
        except BackupLoadError as exc:
            fail(str(exc))
        for account in catalog.accounts:
            print(f"{account.display_name} ({account.usr_hash})")
            for conversation in account.conversations:
                print(f"  {conversation.display_name} [{conversation.record_count}]")
        return 0

    output = args.output or input(
        f"Output directory [{config.get('output', '')}]: "
    ).strip() or config.get("output")
    if not output:
        fail("Output directory is required.")
    os.makedirs(output, exist_ok=True)

    previous = StateStore(output).has_previous_export()
    if previous is not None:
        logger.info("Previous export found from %s", previous[1])

    selection = {account: None for account in args.account} if args.account else None
    exporter = Exporter(
        backup.path,
        output,
        build_options(args),
        notifier=ConsoleNotifier(),
        selection=selection,
    )
    if not exporter.start():
        fail("Export could not be started.")
    try:
        status = exporter.wait_for_completion()
    except KeyboardInterrupt:
        print("Cancelling...")
        exporter.cancel()
        status = exporter.wait_for_completion()

    config.update({"backup_root": backup_root, "backup_path": backup.path, "output": output})
    save_config(config)

    if status is ExportStatus.FAILED:
        fail(exporter.failure_reason)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
