from __future__ import annotations

import argparse
import contextlib
import json
import logging
import os
import signal
import sys
import textwrap
from dataclasses import asdict, replace
from typing import Any, Iterator

from ._version import __version__
from .cancel import CancelToken
from .client import GitHubClient
from .config import Config, apply_env, config_path, load_config, redact_token, save_config
from .errors import GskillsError, OperationCancelledError
from .installer import Installer
from .linker import Linker
from .logs import Logger, NoOpLogger, StdLogger
from .registry import Registry, format_ts
from .tidy import Tidier
from .updater import UpdateStatus, Updater

EXIT_INTERRUPTED = 130


def _print_table(rows: list[list[str]]) -> None:
    if not rows:
        return
    widths = [0] * len(rows[0])
    for r in rows:
        for i, c in enumerate(r):
            widths[i] = max(widths[i], len(c))
    for r in rows:
        line = "  ".join(c.ljust(widths[i]) for i, c in enumerate(r))
        print(line.rstrip())


def _short(revision: str) -> str:
    return revision[:7] if revision else "-"


def _prompt_yes_no(prompt: str) -> bool:
    try:
        answer = input(f"{prompt} [y/N] ")
    except EOFError:
        return False
    return answer.strip().lower() in ("y", "yes")


def _confirm_for(args: argparse.Namespace):
    if getattr(args, "yes", False):
        return lambda prompt: True
    return _prompt_yes_no


def _merge_cfg(base: Config, args: argparse.Namespace) -> Config:
    # Env overrides config; CLI overrides both.
    cfg = apply_env(base)
    token = getattr(args, "token", None) or cfg.github_token
    proxy = getattr(args, "proxy", None) or cfg.proxy
    home_dir = getattr(args, "home", None) or cfg.home_dir
    timeout_s = getattr(args, "timeout_s", None) or cfg.timeout_s
    return replace(cfg, github_token=token, proxy=proxy, home_dir=home_dir, timeout_s=float(timeout_s))


def _make_logger(args: argparse.Namespace) -> Logger:
    if not getattr(args, "verbose", False):
        return NoOpLogger()
    logging.basicConfig(level=logging.DEBUG, format="%(levelname)s %(name)s: %(message)s", stream=sys.stderr)
    return StdLogger("gskills")


def _client_from_cfg(cfg: Config, logger: Logger) -> GitHubClient:
    return GitHubClient(token=cfg.github_token, timeout_s=cfg.timeout_s, proxy=cfg.proxy, logger=logger)


@contextlib.contextmanager
def _cancel_on_sigint() -> Iterator[CancelToken]:
    """Turn the first Ctrl-C into a cooperative cancel; a second one interrupts as usual."""
    token = CancelToken()
    try:
        previous = signal.getsignal(signal.SIGINT)
    except ValueError:  # pragma: no cover - not the main thread
        yield token
        return

    def _handler(signum: int, frame: Any) -> None:
        if token.cancelled:
            signal.signal(signal.SIGINT, previous)
            raise KeyboardInterrupt
        print("Cancelling...", file=sys.stderr)
        token.cancel()

    try:
        signal.signal(signal.SIGINT, _handler)
    except ValueError:  # pragma: no cover - not the main thread
        yield token
        return
    try:
        yield token
    finally:
        signal.signal(signal.SIGINT, previous)


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="gskills",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        description="Install skills from GitHub directories and link them into projects.",
        epilog=textwrap.dedent(
            """\
            Environment variables:
              GSKILLS_GITHUB_TOKEN (or GITHUB_TOKEN), GSKILLS_PROXY, GSKILLS_HOME,
              GSKILLS_TIMEOUT_S, GSKILLS_CONFIG_PATH
            """
        ),
    )

    def _add_runtime_overrides(parser: argparse.ArgumentParser) -> None:
        # Accepted both before and after the subcommand, e.g.:
        #   gskills --home /tmp/gs list
        #   gskills list --home /tmp/gs
        parser.add_argument("--token", default=argparse.SUPPRESS, help="GitHub token (overrides config/env)")
        parser.add_argument("--proxy", default=argparse.SUPPRESS, help="HTTP(S) proxy URL")
        parser.add_argument("--home", default=argparse.SUPPRESS, help="Directory holding skills/ and skills.json")
        parser.add_argument("--timeout-s", type=float, default=argparse.SUPPRESS, help="HTTP timeout in seconds")
        parser.add_argument("-v", "--verbose", action="store_true", default=argparse.SUPPRESS, help="Log progress to stderr")
        parser.add_argument("-y", "--yes", action="store_true", default=argparse.SUPPRESS, help="Answer yes to every prompt")

    _add_runtime_overrides(p)
    p.add_argument("--version", action="version", version=f"gskills {__version__}")

    sub = p.add_subparsers(dest="cmd", required=True)

    # config
    cfg = sub.add_parser("config", help="Manage local config")
    cfg_sub = cfg.add_subparsers(dest="subcmd", required=True)
    cfg_sub.add_parser("path", help="Print config path")
    cfg_sub.add_parser("show", help="Show config (token redacted)")

    cfg_set = cfg_sub.add_parser("set", help="Set config fields")
    cfg_set.add_argument("--github-token")
    cfg_set.add_argument("--proxy")
    cfg_set.add_argument("--timeout-s", type=float)
    cfg_set.add_argument("--home-dir")
    cfg_set.add_argument("--link-namespace", help='Link directory inside projects (default: ".opencode/skills")')

    add = sub.add_parser("add", help="Download a skill from a GitHub directory URL")
    _add_runtime_overrides(add)
    add.add_argument("url", help="https://github.com/<owner>/<repo>/tree/<branch>/<path>")
    add.add_argument("--json", action="store_true", help="Output JSON")

    ls = sub.add_parser("list", aliases=["ls"], help="List installed skills")
    _add_runtime_overrides(ls)
    ls.add_argument("--json", action="store_true", help="Output JSON")

    rm = sub.add_parser("remove", aliases=["rm"], help="Remove a skill, its files and its links")
    _add_runtime_overrides(rm)
    rm.add_argument("name")

    upd = sub.add_parser("update", help="Update one or all skills")
    _add_runtime_overrides(upd)
    upd.add_argument("name", nargs="?", help="Skill name (default: all)")
    upd.add_argument("--check", action="store_true", help="Only report which skills have updates")

    ln = sub.add_parser("link", help="Symlink a skill into a project")
    _add_runtime_overrides(ln)
    ln.add_argument("name")
    ln.add_argument("project", nargs="?", default=".", help="Project directory (default: current directory)")

    uln = sub.add_parser("unlink", help="Remove a skill's symlink from a project")
    _add_runtime_overrides(uln)
    uln.add_argument("name")
    uln.add_argument("project", nargs="?", default=".", help="Project directory (default: current directory)")

    info = sub.add_parser("info", help="Show a skill's record and links")
    _add_runtime_overrides(info)
    info.add_argument("name")
    info.add_argument("--json", action="store_true", help="Output JSON")

    tidy = sub.add_parser("tidy", help="Drop stale link records and orphaned symlinks")
    _add_runtime_overrides(tidy)

    mig = sub.add_parser("migrate", help="Fold legacy link entries into their skills")
    _add_runtime_overrides(mig)

    return p


def cmd_config(args: argparse.Namespace) -> int:
    if args.subcmd == "path":
        print(str(config_path()))
        return 0

    if args.subcmd == "show":
        cfg = load_config()
        d = asdict(cfg)
        d["github_token"] = redact_token(cfg.github_token)
        print(json.dumps(d, indent=2, sort_keys=True))
        return 0

    if args.subcmd == "set":
        cfg = load_config()
        new_cfg = Config(
            github_token=args.github_token if args.github_token is not None else cfg.github_token,
            proxy=args.proxy if args.proxy is not None else cfg.proxy,
            timeout_s=args.timeout_s if args.timeout_s is not None else cfg.timeout_s,
            home_dir=args.home_dir if args.home_dir is not None else cfg.home_dir,
            link_namespace=args.link_namespace or cfg.link_namespace,
        )
        path = save_config(new_cfg)
        print(f"Saved: {path}")
        return 0

    raise AssertionError("unreachable")


def cmd_add(args: argparse.Namespace, cfg: Config, logger: Logger) -> int:
    registry = Registry(cfg.registry_path, logger=logger)
    with _client_from_cfg(cfg, logger) as client, _cancel_on_sigint() as cancel:
        installer = Installer(client=client, registry=registry, store_dir=cfg.store_dir, logger=logger)
        result = installer.add(args.url, confirm=_confirm_for(args), cancel=cancel)

    if result.cancelled or result.record is None:
        print("Download cancelled.")
        return 0

    record = result.record
    if args.json:
        payload = {"record": record.to_dict(), "files": result.stats.files, "dirs": result.stats.dirs, "bytes": result.stats.bytes}
        print(json.dumps(payload, indent=2, sort_keys=True))
        return 0

    print(f"Installed {record.name} ({_short(record.revision)}) to {record.store_path}")
    print(f"files: {result.stats.files}  dirs: {result.stats.dirs}  bytes: {result.stats.bytes}")
    return 0


def cmd_list(args: argparse.Namespace, cfg: Config, logger: Logger) -> int:
    records = Registry(cfg.registry_path, logger=logger).load()
    if args.json:
        print(json.dumps([r.to_dict() for r in records], indent=2, sort_keys=True))
        return 0
    if not records:
        print("No skills installed.")
        return 0

    rows = [["NAME", "REVISION", "UPDATED", "LINKS", "SOURCE"]]
    for r in sorted(records, key=lambda x: x.name):
        rows.append([r.name, _short(r.revision), format_ts(r.updated_at), str(len(r.linked_projects)), r.source_url])
    _print_table(rows)
    return 0


def cmd_remove(args: argparse.Namespace, cfg: Config, logger: Logger) -> int:
    installer = Installer(registry=Registry(cfg.registry_path, logger=logger), store_dir=cfg.store_dir, logger=logger)
    result = installer.remove(args.name, confirm=_confirm_for(args))

    if result.cancelled:
        print("Removal cancelled.")
        return 0
    for path in result.removed_links:
        print(f"unlinked: {path}")
    print(f"Removed {args.name}")
    return 0


def cmd_update(args: argparse.Namespace, cfg: Config, logger: Logger) -> int:
    registry = Registry(cfg.registry_path, logger=logger)
    records = [registry.find_by_name(args.name)] if args.name else registry.load()
    if not records:
        print("No skills installed.")
        return 0

    with _client_from_cfg(cfg, logger) as client, _cancel_on_sigint() as cancel:
        updater = Updater(client=client, registry=registry, logger=logger)
        checks = updater.check_all_updates(records, cancel=cancel)
        cancel.raise_if_cancelled("update")

        rows = [["NAME", "CURRENT", "LATEST", "STATUS"]]
        for c in checks:
            status = c.status.value if c.error is None else f"failed: {c.error}"
            rows.append([c.record.name, _short(c.record.revision), _short(c.new_revision), status])
        _print_table(rows)

        failed_checks = sum(1 for c in checks if c.status is UpdateStatus.FAILED)
        available = [c for c in checks if c.status is UpdateStatus.AVAILABLE]
        if args.check or not available:
            if not available:
                print("All skills are up to date.")
            return 1 if failed_checks else 0

        stats = updater.apply_all_updates(
            [c.record for c in available],
            revisions={c.record.id: c.new_revision for c in available},
            cancel=cancel,
        )

    print(f"updated: {stats.updated}  skipped: {stats.skipped}  failed: {stats.failed}  ({stats.duration:.1f}s)")
    for name, err in sorted(stats.failures.items()):
        print(f"error: {name}: {err}", file=sys.stderr)
    return 1 if (stats.failed or failed_checks) else 0


def cmd_link(args: argparse.Namespace, cfg: Config, logger: Logger) -> int:
    linker = Linker(registry=Registry(cfg.registry_path, logger=logger), link_namespace=cfg.link_namespace, logger=logger)
    with _cancel_on_sigint() as cancel:
        target = linker.link(args.name, args.project, cancel=cancel)
    print(f"Linked {args.name} -> {target}")
    return 0


def cmd_unlink(args: argparse.Namespace, cfg: Config, logger: Logger) -> int:
    linker = Linker(registry=Registry(cfg.registry_path, logger=logger), link_namespace=cfg.link_namespace, logger=logger)
    linker.unlink(args.name, args.project)
    print(f"Unlinked {args.name} from {os.path.abspath(args.project)}")
    return 0


def cmd_info(args: argparse.Namespace, cfg: Config, logger: Logger) -> int:
    linker = Linker(registry=Registry(cfg.registry_path, logger=logger), link_namespace=cfg.link_namespace, logger=logger)
    record = linker.link_info(args.name)
    if args.json:
        print(json.dumps(record.to_dict(), indent=2, sort_keys=True))
        return 0

    print(f"name: {record.name}")
    print(f"id: {record.id}")
    print(f"source: {record.source_url}")
    print(f"revision: {record.revision or '-'}")
    print(f"store_path: {record.store_path}")
    print(f"updated_at: {format_ts(record.updated_at)}")
    if not record.linked_projects:
        print("linked_projects: none")
        return 0
    rows = [["PROJECT", "SYMLINK", "LINKED_AT"]]
    for project, link in sorted(record.linked_projects.items()):
        rows.append([project, link.symlink_path, format_ts(link.linked_at)])
    _print_table(rows)
    return 0


def cmd_tidy(args: argparse.Namespace, cfg: Config, logger: Logger) -> int:
    tidier = Tidier(registry=Registry(cfg.registry_path, logger=logger), link_namespace=cfg.link_namespace, logger=logger)
    with _cancel_on_sigint() as cancel:
        report = tidier.tidy(cancel=cancel)
    _print_table(
        [
            ["CHECK", "COUNT"],
            ["skills_checked", str(report.skills_checked)],
            ["projects_scanned", str(report.projects_scanned)],
            ["stale_registry_entries", str(report.stale_registry_entries)],
            ["orphaned_symlinks", str(report.orphaned_symlinks)],
        ]
    )
    return 0


def cmd_migrate(args: argparse.Namespace, cfg: Config, logger: Logger) -> int:
    migrated = Registry(cfg.registry_path, logger=logger).migrate_legacy_links()
    print(f"Migrated {migrated} legacy link entr{'y' if migrated == 1 else 'ies'}.")
    return 0


_COMMANDS = {
    "add": cmd_add,
    "list": cmd_list,
    "ls": cmd_list,
    "remove": cmd_remove,
    "rm": cmd_remove,
    "update": cmd_update,
    "link": cmd_link,
    "unlink": cmd_unlink,
    "info": cmd_info,
    "tidy": cmd_tidy,
    "migrate": cmd_migrate,
}


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        if args.cmd == "config":
            return cmd_config(args)
        handler = _COMMANDS.get(args.cmd)
        if handler is None:
            raise AssertionError("unreachable")
        logger = _make_logger(args)
        cfg = _merge_cfg(load_config(), args)
        return handler(args, cfg, logger)
    except OperationCancelledError as e:
        print(f"cancelled: {e}", file=sys.stderr)
        return EXIT_INTERRUPTED
    except GskillsError as e:
        subject = f" [{e.bundle}]" if e.bundle else ""
        print(f"error{subject}: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
