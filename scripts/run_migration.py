#!/usr/bin/env python3
# =========================================
# 📄 File: scripts/run_migration.py
# Purpose: Command-line entry point for the EAV -> relational migration
# =========================================

import argparse
import logging
import sys

from config.config_loader import get_config
from src.pipeline.orchestrator import STEP_REGISTRY, Orchestrator

log = logging.getLogger(__name__)


# -----------------------
# CLI interface
# -----------------------
def parse_args(argv=None):
    """
    --steps             : comma-separated subset of steps (prepare always runs first)
    --step              : run prepare plus exactly one step
    --list-steps        : print the step registry and exit
    --check-connections : ping both databases and exit
    --echo              : print SQL statements being executed
    """
    p = argparse.ArgumentParser(description="Migrate the EAV store database into the relational schema")
    group = p.add_mutually_exclusive_group()
    group.add_argument("--steps", type=str, help="Comma-separated list of steps to run")
    group.add_argument("--step", type=str, help="Run a single step (after prepare)")
    group.add_argument("--list-steps", action="store_true", help="List available steps")
    group.add_argument("--check-connections", action="store_true", help="Test database connectivity")
    p.add_argument("--echo", action="store_true", help="Print SQL statements")
    return p.parse_args(argv)


def list_steps(cfg) -> None:
    for name, cls in STEP_REGISTRY.items():
        enabled = (cfg.get("steps", {}).get(name) or {}).get("enabled", True)
        print(f"{'✔' if enabled else ' '} {name:<30} {cls.description}")


def main(argv=None):
    args = parse_args(argv)
    cfg = get_config()
    logging.basicConfig(
        level=cfg["log_level"],
        format="%(asctime)s [%(levelname)s] %(message)s",
    )

    if args.list_steps:
        list_steps(cfg)
        return 0

    try:
        orchestrator = Orchestrator(cfg, echo=args.echo)
        if args.check_connections:
            status = orchestrator.check_connections()
            return 0 if all(status.values()) else 1
        # Per-batch failures are reported in the summary; only a stage that threw fails the run
        if args.step:
            results = {args.step: orchestrator.run_step(args.step)}
        else:
            steps = [s.strip() for s in args.steps.split(",") if s.strip()] if args.steps else None
            results = orchestrator.run(steps)
        partial = [name for name, r in results.items() if not r.get("success")]
        if partial:
            log.warning(f"⚠️ Migration complete with failed records in: {', '.join(partial)}")
        else:
            log.info("✅ Migration complete.")
        return 0
    except Exception as e:
        log.exception(f"❌ Migration failed: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
