"""
cli.py — Smart Bookmarks command line.

  python cli.py import bookmarks.html
  python cli.py organize [--strategy clone|move] [--reclassify]
  python cli.py status | reset | dedupe | view | events
  python cli.py add URL [--title T] [--category SLUG]
  python cli.py categories [list | set FILE | rename SLUG NAME [--emoji E]]
  python cli.py settings [show | set key=value ... | export [-o FILE] | import FILE]
  python cli.py export [-o FILE]

Global options --work-dir / --config override SMARTMARKS_WORK_DIR discovery.
Output is JSON on stdout; logs go to stderr and {work_dir}/logs/smartmarks.log.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any

import yaml

from config import Config, ConfigError, load_config
from smartmarks.db import get_connection
from smartmarks.organizer import Organizer
from smartmarks.tree import TreeError

logger = logging.getLogger("smartmarks.cli")


def _setup_logging(cfg_obj: Config) -> None:
    cfg_obj.ensure_dirs()
    logging.basicConfig(
        level=getattr(logging, cfg_obj.log_level, logging.INFO),
        format="%(asctime)s %(levelname)-7s %(name)s — %(message)s",
        handlers=[
            logging.StreamHandler(sys.stderr),
            logging.FileHandler(cfg_obj.get_log_dir() / "smartmarks.log", encoding="utf-8"),
        ],
    )


def _emit(data: Any) -> None:
    print(json.dumps(data, indent=2, ensure_ascii=False))


def _parse_assignments(pairs: list[str]) -> dict[str, Any]:
    """key=value pairs; values parsed as YAML scalars (ints, bools, strings)."""
    out: dict[str, Any] = {}
    for pair in pairs:
        key, sep, raw = pair.partition("=")
        if not sep or not key:
            raise ValueError(f"expected key=value, got {pair!r}")
        out[key.strip()] = yaml.safe_load(raw) if raw.strip() else ""
    return out


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

def _cmd_import(org: Organizer, args: argparse.Namespace) -> Any:
    return org.import_bookmarks(Path(args.file).read_text(encoding="utf-8"))


def _cmd_export(org: Organizer, args: argparse.Namespace) -> Any:
    html_text = org.export_bookmarks()
    if args.output:
        Path(args.output).write_text(html_text, encoding="utf-8")
        return {"written": args.output}
    sys.stdout.write(html_text)
    return None


def _cmd_organize(org: Organizer, args: argparse.Namespace) -> Any:
    if args.reclassify:
        logger.info("marked %d entries for reclassification", org.mark_stale())

    def _print_progress(payload: dict[str, Any]) -> None:
        print(f"\r{payload.get('status')}: {payload.get('done')}/{payload.get('total')}",
              end="", file=sys.stderr, flush=True)

    org.channel.add_listener(_print_progress)
    try:
        result = asyncio.run(org.run_job(args.strategy))
    finally:
        org.channel.remove_listener(_print_progress)
        print(file=sys.stderr)
    return result


def _cmd_add(org: Organizer, args: argparse.Namespace) -> Any:
    override = {"category": args.category} if args.category else None
    return asyncio.run(org.classify_and_place(args.url, args.title or "", override))


def _cmd_categories(org: Organizer, args: argparse.Namespace) -> Any:
    if args.action == "set":
        data = yaml.safe_load(Path(args.file).read_text(encoding="utf-8"))
        return org.update_taxonomy(data)
    if args.action == "rename":
        return org.rename_category(args.slug, args.name, args.emoji)
    return org.get_categories()


def _cmd_settings(org: Organizer, args: argparse.Namespace) -> Any:
    if args.action == "set":
        return org.save_settings(_parse_assignments(args.pairs))
    if args.action == "export":
        data = org.export_settings()
        if args.output:
            Path(args.output).write_text(json.dumps(data, indent=2, ensure_ascii=False),
                                         encoding="utf-8")
            return {"written": args.output}
        return data
    if args.action == "import":
        data = json.loads(Path(args.file).read_text(encoding="utf-8"))
        return {"imported": org.import_settings(data)}
    return org.get_settings()


_COMMANDS = {
    "import":     _cmd_import,
    "export":     _cmd_export,
    "organize":   _cmd_organize,
    "status":     lambda org, a: {"state": org.get_job_state(), "stats": org.get_stats()},
    "reset":      lambda org, a: org.reset_job_state(),
    "dedupe":     lambda org, a: org.remove_duplicates(),
    "view":       lambda org, a: org.get_organized_view(),
    "events":     lambda org, a: org.recent_events(a.limit),
    "add":        _cmd_add,
    "categories": _cmd_categories,
    "settings":   _cmd_settings,
}


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------

def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(prog="smartmarks", description="Organize bookmarks by category")
    ap.add_argument("--work-dir", default=None, help="Override SMARTMARKS_WORK_DIR")
    ap.add_argument("--config", default=None, help="Explicit config.yaml path")
    sub = ap.add_subparsers(dest="command", required=True)

    p = sub.add_parser("import", help="Import a Netscape bookmarks.html")
    p.add_argument("file")

    p = sub.add_parser("export", help="Export the tree as Netscape HTML")
    p.add_argument("-o", "--output", default=None)

    p = sub.add_parser("organize", help="Run an organization job to completion")
    p.add_argument("--strategy", choices=("clone", "move"), default=None)
    p.add_argument("--reclassify", action="store_true",
                   help="Ignore stored categories and classify everything again")

    sub.add_parser("status", help="Show job state and stats")
    sub.add_parser("reset", help="Reset job state to idle")
    sub.add_parser("dedupe", help="Remove duplicates inside the organized folder")
    sub.add_parser("view", help="Organized view grouped by category")

    p = sub.add_parser("events", help="Recent audit events")
    p.add_argument("--limit", type=int, default=50)

    p = sub.add_parser("add", help="Classify and file one url")
    p.add_argument("url")
    p.add_argument("--title", default="")
    p.add_argument("--category", default=None, help="Force a category slug")

    p = sub.add_parser("categories", help="List or edit categories")
    csub = p.add_subparsers(dest="action")
    csub.add_parser("list")
    c = csub.add_parser("set", help="Replace all categories from a YAML/JSON file")
    c.add_argument("file")
    c = csub.add_parser("rename")
    c.add_argument("slug")
    c.add_argument("name")
    c.add_argument("--emoji", default=None)

    p = sub.add_parser("settings", help="Show or change runtime settings")
    ssub = p.add_subparsers(dest="action")
    ssub.add_parser("show")
    s = ssub.add_parser("set")
    s.add_argument("pairs", nargs="+", metavar="key=value")
    s = ssub.add_parser("export")
    s.add_argument("-o", "--output", default=None)
    s = ssub.add_parser("import")
    s.add_argument("file")

    return ap


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        cfg_obj = load_config(
            config_file=Path(args.config) if args.config else None,
            work_dir=Path(args.work_dir).resolve() if args.work_dir else None,
        )
    except (ConfigError, FileNotFoundError) as e:
        print(f"config error: {e}", file=sys.stderr)
        return 2
    _setup_logging(cfg_obj)

    conn = get_connection(cfg_obj.get_db_path())
    try:
        org = Organizer(conn, cfg_obj)
        result = _COMMANDS[args.command](org, args)
        if result is not None:
            _emit(result)
        return 0
    except KeyError as e:
        print(f"not found: {e}", file=sys.stderr)
        return 1
    except (ValueError, TreeError) as e:
        print(f"error: {e}", file=sys.stderr)
        return 1
    finally:
        conn.close()


if __name__ == "__main__":
    sys.exit(main())
