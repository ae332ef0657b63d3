# backend/repairflow/cli/__main__.py
from __future__ import annotations

import argparse

from repairflow.cli.seed_demo import seed_demo
from repairflow.workers.escalation_tasks import run_once
from repairflow.workers.scheduler_loop import main as scheduler_main


def main() -> None:
    p = argparse.ArgumentParser(prog="repairflow")
    sub = p.add_subparsers(dest="cmd", required=True)

    seed = sub.add_parser("seed", help="create a demo org, users, property and escalation ladder")
    seed.add_argument("--org-slug", default="demo")
    seed.add_argument("--org-name", default="Demo Property Co")

    sub.add_parser("tick", help="run one scheduler tick (sweep, expiry, outbox)")

    loop = sub.add_parser("scheduler", help="run the scheduler loop")
    loop.add_argument("--max-ticks", type=int, default=None)

    args = p.parse_args()

    if args.cmd == "seed":
        out = seed_demo(org_slug=args.org_slug, org_name=args.org_name)
        print(
            {
                "ok": True,
                "org_slug": out.org_slug,
                "property_id": out.property_id,
                "users": out.users,
                "rule_levels": out.rule_levels,
            }
        )
    elif args.cmd == "tick":
        print({"ok": True, **run_once()})
    else:
        scheduler_main(max_ticks=args.max_ticks)


if __name__ == "__main__":
    main()
