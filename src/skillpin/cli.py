from __future__ import annotations

import argparse
import json
import logging
import sys
import textwrap
from dataclasses import asdict
from typing import Any

from ._version import __version__
from .config import config_keys, config_path, get_value, load_config, save_config, set_value
from .context import CACHE_DIR_ENV, CONFIG_DIR_ENV, Context
from .doctor import Doctor, DoctorReport
from .errors import ConfigurationError, SkillpinError
from .git import GitCLI
from .lockfile import LOCKFILE_NAME, LockEntry
from .manager import SkillManager, UpgradeResult, short_sha
from .publish import Publisher
from .repos import RepoRegistry
from .review import AUTO_MERGE_POLL_ENV, AUTO_MERGE_TIMEOUT_ENV
from .tools import Toolset


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


def _print_json(payload: Any) -> None:
    print(json.dumps(payload, indent=2, sort_keys=True))


def _warn(messages: Any) -> None:
    for w in messages:
        print(f"warning: {w}", file=sys.stderr)


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="skillpin",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        description="Vendor skills from git repositories into this project, pinned by a lockfile.",
        epilog=textwrap.dedent(
            f"""\
            Environment variables:
              {CACHE_DIR_ENV}, {CONFIG_DIR_ENV}, {AUTO_MERGE_TIMEOUT_ENV}, {AUTO_MERGE_POLL_ENV}
            """
        ),
    )
    p.add_argument("--version", action="version", version=f"skillpin {__version__}")
    p.add_argument("-C", "--directory", help="Run as if started in this directory")
    p.add_argument("--root", help="Install root relative to the project (default: config default_root)")
    p.add_argument("-v", "--verbose", action="count", default=0, help="More logging (-vv for git commands)")

    sub = p.add_subparsers(dest="cmd", required=True)

    sub.add_parser("init", help="Create the install root and an empty lockfile")

    install = sub.add_parser("install", aliases=["i"], help="Install a skill from a repository")
    install.add_argument("repo", help="@owner/repo, a git URL, a local path or a registered alias")
    install.add_argument("name", help="Skill name declared in SKILL.md")
    install.add_argument("--ref", help="Branch (tracked), tag or commit (pinned)")
    install.add_argument("--alias", help="Install under a different directory name")
    install.add_argument("--path", help="Path of the skill inside the repository, to disambiguate")
    install.add_argument("--https", action="store_true", help="Use https for @owner/repo shorthand")
    install.add_argument("--json", action="store_true", help="Output JSON")

    ls = sub.add_parser("list", aliases=["ls"], help="List installed skills")
    ls.add_argument("--json", action="store_true", help="Output JSON")

    where = sub.add_parser("where", help="Print the install path of a skill")
    where.add_argument("name")

    for cmd, help_text in (
        ("check", "Report ok|modified|missing for installed skills"),
        ("status", "Show digests and available upgrades"),
    ):
        sp = sub.add_parser(cmd, help=help_text)
        sp.add_argument("names", nargs="*", help="Limit to these install names")
        sp.add_argument("--json", action="store_true", help="Output JSON")

    doctor = sub.add_parser("doctor", help="Diagnose (and with --apply repair) lockfile, cache and installs")
    doctor.add_argument("names", nargs="*", help="Limit to these install names")
    mode = doctor.add_mutually_exclusive_group()
    mode.add_argument("--summary", action="store_true", help="Same as 'check'")
    mode.add_argument("--status", action="store_true", help="Same as 'status'")
    mode.add_argument("--diff", action="store_true", help="Diff installs against upstream")
    mode.add_argument("--apply", action="store_true", help="Apply safe repairs")
    doctor.add_argument("--yes", action="store_true", help="Drop unrecoverable entries without asking")
    doctor.add_argument("--json", action="store_true", help="Output JSON")

    diff = sub.add_parser("diff", help="Diff an install against its upstream tip")
    diff.add_argument("name")

    update = sub.add_parser("update", help="Refresh cached repositories (never touches the project)")
    update.add_argument("--json", action="store_true", help="Output JSON")

    upgrade = sub.add_parser("upgrade", help="Move clean installs to the tip of what they track")
    upgrade.add_argument("name", nargs="?")
    upgrade.add_argument("--all", action="store_true", help="Upgrade every installed skill")
    upgrade.add_argument("--dry-run", action="store_true", help="Report old -> new without changing anything")
    upgrade.add_argument("--include-pinned", action="store_true", help="Also re-resolve tag/commit pins")
    upgrade.add_argument("--json", action="store_true", help="Output JSON")

    remove = sub.add_parser("remove", aliases=["rm"], help="Remove an installed skill")
    remove.add_argument("name")
    remove.add_argument("--force", action="store_true", help="Discard local modifications")

    sync = sub.add_parser("sync-back", help="Publish local edits (or a new skill) upstream")
    sync.add_argument("name")
    sync.add_argument("--repo", help="Destination repository for a skill without a lock entry")
    sync.add_argument("--path", help="Path inside the destination repository")
    sync.add_argument("--branch", help="Branch to push (default: skillpin/sync/<name>/<timestamp>)")
    sync.add_argument("--message", "-m", help="Commit message")
    sync.add_argument("--https", action="store_true", help="Use https for @owner/repo shorthand")
    sync.add_argument("--no-pr", action="store_true", help="Push only; skip pull request automation")
    sync.add_argument("--json", action="store_true", help="Output JSON")

    repo = sub.add_parser("repo", help="Manage registered source repositories")
    repo_sub = repo.add_subparsers(dest="subcmd", required=True)
    repo_add = repo_sub.add_parser("add", help="Register a repository")
    repo_add.add_argument("repo")
    repo_add.add_argument("--alias")
    repo_add.add_argument("--https", action="store_true")
    repo_list = repo_sub.add_parser("list", help="List registered repositories")
    repo_list.add_argument("--json", action="store_true", help="Output JSON")
    repo_rm = repo_sub.add_parser("remove", help="Unregister a repository")
    repo_rm.add_argument("alias")
    repo_search = repo_sub.add_parser("search", help="Search skills in registered repositories")
    repo_search.add_argument("query")
    repo_search.add_argument("--repo", help="Only search this alias")
    repo_search.add_argument("--json", action="store_true", help="Output JSON")
    repo_catalog = repo_sub.add_parser("catalog", help="List skills available in a repository")
    repo_catalog.add_argument("repo")
    repo_catalog.add_argument("--json", action="store_true", help="Output JSON")

    precommit = sub.add_parser("precommit", help="Fail when the lockfile references sources only this machine can fetch")
    precommit.add_argument("--allow-local", action="store_true", help="Report local sources but do not fail")

    cfg = sub.add_parser("config", help="Manage user config")
    cfg_sub = cfg.add_subparsers(dest="subcmd", required=True)
    cfg_sub.add_parser("path", help="Print config path")
    cfg_sub.add_parser("show", help="Show config")
    cfg_get = cfg_sub.add_parser("get", help="Print one config value")
    cfg_get.add_argument("key", choices=config_keys())
    cfg_set = cfg_sub.add_parser("set", help="Set one config value")
    cfg_set.add_argument("key", choices=config_keys())
    cfg_set.add_argument("value")

    return p


def _context(args: argparse.Namespace) -> Context:
    return Context.from_env(args.directory)


def _manager(args: argparse.Namespace) -> SkillManager:
    return SkillManager(_context(args), GitCLI(), root=args.root)


def _entry_payload(entry: LockEntry) -> dict[str, Any]:
    return entry.to_dict()


def cmd_init(args: argparse.Namespace) -> int:
    result = _manager(args).init()
    print(f"install root: {result.install_root}")
    if result.created_lockfile:
        print(f"created: {result.lockfile_path}")
    else:
        print(f"lockfile: {result.lockfile_path} (exists)")
    if result.config_path is not None:
        print(f"config: {result.config_path}")
    return 0


def cmd_install(args: argparse.Namespace) -> int:
    result = _manager(args).install(
        args.repo,
        args.name,
        ref=args.ref,
        alias=args.alias,
        path=args.path,
        https=args.https,
    )
    if args.json:
        _print_json({"entry": _entry_payload(result.entry), "path": str(result.install_dir), "warnings": list(result.warnings)})
        return 0
    e = result.entry
    print(f"installed: {e.install_name} ({e.source.label}:{e.source.skill_path}@{short_sha(e.commit)})")
    print(f"path: {result.install_dir}")
    _warn(result.warnings)
    return 0


def cmd_list(args: argparse.Namespace) -> int:
    items = _manager(args).list_installed()
    if args.json:
        _print_json(
            [
                {
                    "installName": s.entry.install_name,
                    "name": s.declared_name,
                    "description": s.description,
                    "repo": s.entry.source.label,
                    "path": s.entry.source.skill_path,
                    "commit": s.entry.commit,
                }
                for s in items
            ]
        )
        return 0
    if not items:
        print("No skills installed.")
        return 0
    rows = [["INSTALL", "NAME", "REPO", "PATH", "DESCRIPTION"]]
    for s in items:
        rows.append([s.entry.install_name, s.declared_name or "-", s.entry.source.label, s.entry.source.skill_path, s.description])
    _print_table(rows)
    return 0


def cmd_where(args: argparse.Namespace) -> int:
    print(str(_manager(args).where(args.name)))
    return 0


def _check_state(state: str) -> str:
    return "ok" if state == "clean" else state


def cmd_check(args: argparse.Namespace) -> int:
    rows = _manager(args).check(args.names)
    if args.json:
        _print_json([{"installName": r.install_name, "state": _check_state(r.state.value)} for r in rows])
        return 0
    if not rows:
        print("No skills installed.")
        return 0
    _print_table([["INSTALL", "STATE"]] + [[r.install_name, _check_state(r.state.value)] for r in rows])
    return 0


def cmd_status(args: argparse.Namespace) -> int:
    rows = _manager(args).status(args.names)
    if args.json:
        _print_json(
            [
                {
                    "installName": r.install_name,
                    "state": r.state.value,
                    "commit": r.commit,
                    "lockedDigest": r.locked_digest,
                    "currentDigest": r.current_digest,
                    "latest": r.latest,
                    "pinned": r.pinned,
                }
                for r in rows
            ]
        )
        return 0
    if not rows:
        print("No skills installed.")
        return 0
    table = [["INSTALL", "STATE", "LOCKED", "CURRENT", "UPGRADE"]]
    for r in rows:
        if r.pinned:
            upgrade = "pinned"
        elif r.latest is not None and r.latest != r.commit:
            upgrade = f"{short_sha(r.commit)} -> {short_sha(r.latest)}"
        else:
            upgrade = "-"
        table.append([r.install_name, r.state.value, r.locked_digest[:19], (r.current_digest or "-")[:19], upgrade])
    _print_table(table)
    return 0


def _report_payload(report: DoctorReport) -> dict[str, Any]:
    return {
        "ok": report.ok,
        "applied": report.applied,
        "lockfileChanged": report.lockfile_changed,
        "findings": [asdict(f) for f in report.findings],
    }


def cmd_doctor(args: argparse.Namespace) -> int:
    if args.summary:
        return cmd_check(args)
    if args.status:
        return cmd_status(args)
    manager = _manager(args)
    if args.diff:
        names = args.names or [e.install_name for e in manager.load_lock().skills]
        for name in names:
            out = manager.diff(name)
            if out:
                sys.stdout.write(out if out.endswith("\n") else out + "\n")
            elif not args.json:
                print(f"{name}: no differences")
        return 0

    confirm = None
    if args.apply and not args.yes and not args.json and sys.stdin.isatty():

        def confirm(entry: LockEntry) -> bool:
            answer = input(f"Drop unrecoverable lock entry '{entry.install_name}'? [y/N] ")
            return answer.strip().lower() in ("y", "yes")

    report = Doctor(manager).run(apply=args.apply, names=args.names or None, confirm=confirm)
    if args.json:
        _print_json(_report_payload(report))
        return 0

    for f in report.findings:
        if f.resolved:
            print(f"fixed: [{f.kind}] {f.subject}: {f.message}")
        elif f.is_note:
            print(f"note: [{f.kind}] {f.subject}: {f.message} {f.action}")
        else:
            print(f"[{f.kind}] {f.subject}: {f.message}")
            print(f"  -> {f.action}")
    if report.ok:
        print("All checks passed.")
    return 0


def cmd_diff(args: argparse.Namespace) -> int:
    out = _manager(args).diff(args.name)
    if not out:
        print(f"{args.name}: no differences")
        return 0
    sys.stdout.write(out if out.endswith("\n") else out + "\n")
    return 0


def cmd_update(args: argparse.Namespace) -> int:
    result = _manager(args).update()
    if args.json:
        _print_json(
            {
                "refreshed": list(result.refreshed),
                "stale": list(result.stale),
                "failures": [asdict(f) for f in result.failures],
            }
        )
    else:
        for label in result.refreshed:
            print(f"refreshed: {label}")
        for f in result.failures:
            print(f"failed: {f.repo}: {f.message}", file=sys.stderr)
        if not result.refreshed and not result.failures:
            print("Nothing to update.")
    return 1 if result.failures else 0


def _upgrade_payload(result: UpgradeResult) -> dict[str, Any]:
    return {
        "dryRun": result.dry_run,
        "changes": [asdict(c) for c in result.changes],
        "relocked": [asdict(c) for c in result.refreshed],
        "upToDate": list(result.up_to_date),
        "skipped": [asdict(s) for s in result.skipped],
        "failures": [asdict(f) for f in result.failures],
        "warnings": list(result.warnings),
    }


def cmd_upgrade(args: argparse.Namespace) -> int:
    if args.name and args.all:
        raise SkillpinError("Pass either a skill name or --all, not both.")
    if not args.name and not args.all:
        raise SkillpinError("Nothing to upgrade. Pass a skill name or --all.")
    result = _manager(args).upgrade(args.name, dry_run=args.dry_run, include_pinned=args.include_pinned)
    if args.json:
        _print_json(_upgrade_payload(result))
        return 1 if result.failures else 0

    verb = "would upgrade" if result.dry_run else "upgraded"
    for c in result.changes:
        print(f"{verb}: {c.install_name} {short_sha(c.old_commit)} -> {short_sha(c.new_commit)}")
    relock = "would relock" if result.dry_run else "relocked"
    for c in result.refreshed:
        print(f"{relock}: {c.install_name} {short_sha(c.old_commit)} -> {short_sha(c.new_commit)} (edits match upstream)")
    for name in result.up_to_date:
        print(f"up to date: {name}")
    for s in result.skipped:
        print(f"skipped: {s.install_name}: {s.reason}")
        if s.diff:
            sys.stdout.write(s.diff if s.diff.endswith("\n") else s.diff + "\n")
    for f in result.failures:
        print(f"failed: {f.repo}: {f.message}", file=sys.stderr)
    _warn(result.warnings)
    return 1 if result.failures else 0


def cmd_remove(args: argparse.Namespace) -> int:
    result = _manager(args).remove(args.name, force=args.force)
    print(f"removed: {result.install_name}")
    if not result.removed_dir:
        print("(install directory was already missing; lock entry dropped)")
    return 0


def cmd_sync_back(args: argparse.Namespace) -> int:
    publisher = Publisher(_manager(args), tools=Toolset.detect())
    result = publisher.sync_back(
        args.name,
        repo=args.repo,
        path=args.path,
        branch=args.branch,
        message=args.message,
        https=args.https,
        open_pr=not args.no_pr,
    )
    if args.json:
        _print_json(asdict(result))
        return 0
    if result.status == "unchanged":
        print(f"No changes to sync for '{result.install_name}'.")
    else:
        for m in result.messages:
            print(m)
        print(f"locked: {result.install_name} @ {short_sha(result.commit)}")
    _warn(result.warnings)
    return 0


def cmd_repo(args: argparse.Namespace) -> int:
    registry = RepoRegistry(_manager(args))

    if args.subcmd == "add":
        entry, count = registry.add(args.repo, alias=args.alias, https=args.https)
        print(f"added: {entry.alias} ({entry.url}), {count} skill(s) available")
        return 0

    if args.subcmd == "list":
        rows = registry.list_repos()
        if args.json:
            _print_json([asdict(r) for r in rows])
            return 0
        if not rows:
            print("No repositories registered. Run 'skillpin repo add @owner/repo'.")
            return 0
        table = [["ALIAS", "REPO", "SKILLS", "URL"]]
        for r in rows:
            count = "?" if r.skills is None else str(r.skills)
            table.append([r.alias, r.label, count + ("*" if r.stale else ""), r.url])
        _print_table(table)
        if any(r.stale for r in rows):
            print("* cached copy could not be refreshed")
        return 0

    if args.subcmd == "remove":
        entry = registry.remove(args.alias)
        print(f"removed: {entry.alias}")
        return 0

    if args.subcmd == "search":
        hits = registry.search(args.query, repo=args.repo)
        if args.json:
            _print_json([{"repo": h.repo, **asdict(h.skill)} for h in hits])
            return 0
        if not hits:
            print("No matches.")
            return 0
        _print_table([["REPO", "NAME", "PATH", "DESCRIPTION"]] + [[h.repo, h.skill.name, h.skill.path, h.skill.description] for h in hits])
        return 0

    if args.subcmd == "catalog":
        skills = registry.catalog(args.repo)
        if args.json:
            _print_json([asdict(s) for s in skills])
            return 0
        if not skills:
            print("No skills found.")
            return 0
        _print_table([["NAME", "PATH", "DESCRIPTION"]] + [[s.name, s.path, s.description] for s in skills])
        return 0

    raise AssertionError("unreachable")


def cmd_precommit(args: argparse.Namespace) -> int:
    local = _manager(args).local_sources()
    if not local:
        return 0
    print(f"{LOCKFILE_NAME} references local (file:// or localhost) sources:", file=sys.stderr)
    for e in local:
        print(f"  - {e.install_name} -> {e.source.url} (path: {e.source.skill_path})", file=sys.stderr)
    print(
        "Collaborators cannot fetch these. Reinstall them from ssh/https URLs, or pass --allow-local.",
        file=sys.stderr,
    )
    if args.allow_local:
        return 0
    raise ConfigurationError(f"{len(local)} local source(s) in {LOCKFILE_NAME}; refusing the commit.")


def cmd_config(args: argparse.Namespace) -> int:
    ctx = _context(args)
    if args.subcmd == "path":
        print(str(config_path(ctx.config_dir)))
        return 0

    cfg = load_config(ctx.config_dir)
    if args.subcmd == "show":
        _print_json(asdict(cfg))
        return 0

    if args.subcmd == "get":
        print(get_value(cfg, args.key))
        return 0

    if args.subcmd == "set":
        path = save_config(set_value(cfg, args.key, args.value), ctx.config_dir)
        print(f"Saved: {path}")
        return 0

    raise AssertionError("unreachable")


def _configure_logging(verbose: int) -> None:
    level = logging.WARNING
    if verbose == 1:
        level = logging.INFO
    elif verbose >= 2:
        level = logging.DEBUG
    logging.basicConfig(level=level, format="%(levelname)s: %(message)s")


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    _configure_logging(args.verbose)
    try:
        if args.cmd == "init":
            return cmd_init(args)
        if args.cmd in ("install", "i"):
            return cmd_install(args)
        if args.cmd in ("list", "ls"):
            return cmd_list(args)
        if args.cmd == "where":
            return cmd_where(args)
        if args.cmd == "check":
            return cmd_check(args)
        if args.cmd == "status":
            return cmd_status(args)
        if args.cmd == "doctor":
            return cmd_doctor(args)
        if args.cmd == "diff":
            return cmd_diff(args)
        if args.cmd == "update":
            return cmd_update(args)
        if args.cmd == "upgrade":
            return cmd_upgrade(args)
        if args.cmd in ("remove", "rm"):
            return cmd_remove(args)
        if args.cmd == "sync-back":
            return cmd_sync_back(args)
        if args.cmd == "repo":
            return cmd_repo(args)
        if args.cmd == "config":
            return cmd_config(args)
        if args.cmd == "precommit":
            return cmd_precommit(args)
        raise AssertionError("unreachable")
    except SkillpinError as e:
        print(f"error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
