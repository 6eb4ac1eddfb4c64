"""
Operator CLI (cron-friendly, JSON output).

  python -m intake.cli start <number> [--address --date --name]
  python -m intake.cli tick [--now ISO]
  python -m intake.cli show <number>
  python -m intake.cli reset <number>
"""

from __future__ import annotations

import argparse
import json
import sys
from typing import Any, List, Optional

from .engine import IntakeEngine, build_engine
from .errors import InvalidIdentity
from .runtime import parse_iso


def _emit(payload: Any) -> None:
    print(json.dumps(payload, ensure_ascii=False, indent=2, default=str))


def _parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    p = argparse.ArgumentParser(prog="intake", description="WhatsApp claim intake operator commands.")
    sub = p.add_subparsers(dest="command", required=True)

    start = sub.add_parser("start", help="Start (or restart) a conversation with the insured.")
    start.add_argument("number")
    start.add_argument("--address", default=None)
    start.add_argument("--date", default=None, help="Incident date as given in the claim.")
    start.add_argument("--name", default=None, help="Insured name.")

    tick = sub.add_parser("tick", help="Run one sweep tick.")
    tick.add_argument("--now", default=None, help="ISO-8601 instant to evaluate timers at.")

    show = sub.add_parser("show", help="Print a conversation record.")
    show.add_argument("number")

    reset = sub.add_parser("reset", help="Delete a conversation record.")
    reset.add_argument("number")
    return p.parse_args(argv)


def run(args: argparse.Namespace, engine: IntakeEngine) -> int:
    if args.command == "start":
        fields = {"direccion": args.address, "fecha": args.date, "nombre": args.name}
        _emit(engine.start_conversation(args.number, fields))
        return 0

    if args.command == "tick":
        now = parse_iso(args.now) if args.now else None
        if args.now and now is None:
            _emit({"ok": False, "error": f"invalid --now {args.now!r}"})
            return 2
        actions = engine.tick(now)
        _emit({"ok": True, "count": len(actions), "actions": [a.to_dict() for a in actions]})
        return 0

    if args.command == "show":
        record = engine.get(args.number)
        if record is None:
            _emit({"ok": False, "error": "not found"})
            return 1
        _emit(record.to_dict())
        return 0

    if args.command == "reset":
        _emit({"ok": True, "deleted": engine.reset(args.number)})
        return 0

    return 2


def main(argv: Optional[List[str]] = None, engine: Optional[IntakeEngine] = None) -> int:
    args = _parse_args(argv)
    try:
        return run(args, engine or build_engine())
    except InvalidIdentity as exc:
        _emit({"ok": False, "error": str(exc)})
        return 2


if __name__ == "__main__":
    sys.exit(main())
