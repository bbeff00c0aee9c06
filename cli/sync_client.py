"""CLI front end for packsync."""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Any
from urllib.parse import urlparse

from packsync.config import Settings
from packsync.exceptions import SyncError
from packsync.network.remote_metadata import RemoteMetadata
from packsync.progress import LoggingProgressReceiver
from packsync.services.diff_service import SyncPlan, compute_sync_plan
from packsync.services.inventory_service import LocalInventory
from packsync.services.sync_service import SyncOrchestrator

CONFIG_FILE = ".packsync.json"
_LOCALHOST_HOSTS = {"localhost", "127.0.0.1", "::1"}


def _configure_logging(debug: bool) -> None:
    """Configure CLI logging."""
    level = logging.DEBUG if debug else logging.WARNING
    fmt = "%(asctime)s %(levelname)-8s %(name)s: %(message)s"
    logging.basicConfig(
        level=level,
        format=fmt,
        stream=sys.stderr,
        force=True,
    )
    # Quiet noisy libraries
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


class ConsoleProgressReceiver:
    """Prints sync log lines to stdout.

    The most recent line is held back until the next line arrives so that
    ``amend_last_log`` can complete it in place ("Scanning local files ... Done").
    """

    def __init__(self) -> None:
        self._pending: str | None = None
        self.error: BaseException | None = None

    def _flush(self) -> None:
        if self._pending is not None:
            print(self._pending, flush=True)
            self._pending = None

    def print_log(self, line: str) -> None:
        self._flush()
        self._pending = line

    def amend_last_log(self, text: str) -> None:
        self._pending = (self._pending or "") + text
        self._flush()

    def set_progress(self, primary: float, secondary: float) -> None:
        return None

    def set_info(self, label: str, detail: str) -> None:
        return None

    def set_exception(self, error: BaseException) -> None:
        self._flush()
        self.error = error
        print(f"Error: {error}", file=sys.stderr)

    def close(self) -> None:
        self._flush()


def validate_server_url(server_url: str, allow_insecure_http: bool = False) -> str:
    """Validate server URL and enforce HTTPS for non-localhost hosts by default."""
    normalized = server_url.strip().rstrip("/")
    parsed = urlparse(normalized)
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        raise ValueError("Server URL must include scheme and host (e.g. https://example.com)")

    hostname = parsed.hostname
    if parsed.scheme == "http" and not allow_insecure_http and hostname not in _LOCALHOST_HOSTS:
        raise ValueError(
            "HTTPS is required for non-localhost servers. "
            "Use --allow-insecure-http only on trusted networks."
        )

    return normalized


def load_config(dir_path: Path) -> dict[str, Any]:
    """Load CLI config from file."""
    config_path = dir_path / CONFIG_FILE
    if not config_path.exists():
        return {}
    config: dict[str, Any] = json.loads(config_path.read_text())
    return config


def save_config(dir_path: Path, config: dict[str, Any]) -> None:
    """Save CLI config to file."""
    config_path = dir_path / CONFIG_FILE
    config_path.write_text(json.dumps(config, indent=2))


def build_settings(args: argparse.Namespace, config: dict[str, Any]) -> Settings:
    """Merge command line flags over the saved config over the environment."""
    overrides: dict[str, Any] = {}
    server = args.server or config.get("server")
    if server:
        overrides["base_url"] = validate_server_url(server, args.allow_insecure_http)
    target = args.target or config.get("target_dir")
    if target:
        overrides["target_dir"] = Path(target)
    if args.archive or config.get("archive_mode"):
        overrides["archive_mode"] = True
    if args.no_dir_checksum or config.get("has_dir_checksum") is False:
        overrides["has_dir_checksum"] = False
    if args.debug:
        overrides["debug"] = True
    return Settings(**overrides)


def compute_status(settings: Settings) -> SyncPlan:
    """Fetch the remote manifest and diff it against the target without changing anything."""
    settings.validate_source()
    with SyncOrchestrator(settings, LoggingProgressReceiver()) as orchestrator:
        remote = RemoteMetadata(settings.base_url, orchestrator.client, settings)
        remote.fetch()
        key = orchestrator.encryption_key_for(remote.encrypt)
        local = LocalInventory.scan(Path(settings.target_dir), encrypt=remote.encrypt, key=key)
        return compute_sync_plan(local.files, remote.files)


def _print_status(plan: SyncPlan) -> None:
    print("Sync Status:")
    print(f"  New directories: {len(plan.dirs_to_create)}")
    print(f"  Stale dirs:      {len(plan.dirs_to_delete)}")
    print(f"  To download:     {len(plan.files_to_create)}")
    print(f"  To update:       {len(plan.files_to_update)}")
    print(f"  To delete:       {len(plan.files_to_delete)}")
    print(f"  Unchanged:       {len(plan.no_change)}")

    for f in plan.files_to_create:
        print(f"    + {f} (new)")
    for f in plan.files_to_update:
        print(f"    ~ {f} (update)")
    for f in plan.files_to_delete:
        print(f"    - {f} (delete)")


def main(argv: list[str] | None = None) -> None:
    """CLI entry point."""
    parser = argparse.ArgumentParser(
        prog="packsync",
        description="Keep a local pack directory in sync with a remote server",
    )
    parser.add_argument("--dir", "-d", default=".", help="Config directory (default: current)")
    parser.add_argument("--server", "-s", help="Base URL, or manifest URL in archive mode")
    parser.add_argument("--target", "-t", help="Target pack directory")
    parser.add_argument("--archive", action="store_true", help="Use archive-manifest mode")
    parser.add_argument(
        "--no-dir-checksum",
        action="store_true",
        help="Server does not publish an aggregate directory checksum",
    )
    parser.add_argument(
        "--allow-insecure-http",
        action="store_true",
        help="Allow http:// server URLs for non-localhost hosts",
    )
    parser.add_argument("--debug", action="store_true", help="Verbose logging")

    subparsers = parser.add_subparsers(dest="command")
    subparsers.add_parser("init", help="Save sync configuration")
    subparsers.add_parser("status", help="Show what would change")
    subparsers.add_parser("sync", help="Synchronize the target directory")

    args = parser.parse_args(argv)
    config_dir = Path(args.dir).resolve()
    _configure_logging(args.debug)

    if args.command == "init":
        if not args.server:
            print("Error: --server required for init")
            sys.exit(1)
        try:
            server_url = validate_server_url(args.server, args.allow_insecure_http)
        except ValueError as exc:
            print(f"Error: {exc}")
            sys.exit(1)
        config: dict[str, Any] = {
            "server": server_url,
            "target_dir": str(Path(args.target).resolve() if args.target else config_dir / "pack"),
            "archive_mode": args.archive,
            "has_dir_checksum": not args.no_dir_checksum,
        }
        save_config(config_dir, config)
        print(f"Initialized sync config in {config_dir / CONFIG_FILE}")
        return

    if args.command not in ("status", "sync"):
        parser.print_help()
        return

    try:
        settings = build_settings(args, load_config(config_dir))
        settings.validate_source()
    except (ValueError, SyncError) as exc:
        print(f"Error: {exc}")
        sys.exit(1)

    if args.command == "status":
        if settings.archive_mode:
            print("Error: status is only available in metadata mode")
            sys.exit(1)
        try:
            plan = compute_status(settings)
        except SyncError as exc:
            print(f"Error: {exc}")
            sys.exit(1)
        _print_status(plan)
        return

    receiver = ConsoleProgressReceiver()
    with SyncOrchestrator(settings, receiver) as orchestrator:
        result = orchestrator.run()
    receiver.close()
    if not result.ok or result.failed_files:
        sys.exit(1)
    print(f"Sync complete. {len(result.downloaded_files)} file(s) downloaded.")


if __name__ == "__main__":
    main()
