"""
Command-line entry point.

    python -m spa_harness diagnose [URL] [--policy NAME] [--selector CSS]
    python -m spa_harness policies
    python -m spa_harness reports [--test NAME] [--limit N] [--show DIR]
"""

from __future__ import annotations

import argparse
import dataclasses
import json
import logging
import sys

from .artifacts import ReportStore
from .config import HarnessConfig
from .errors import CdpError, HarnessError
from .orchestrator import Harness
from .readiness import DEFAULT_POLICY, POLICIES, RACE, ReadinessPolicy, resolve_policy, selector_present
from .reporter import render_summary

logger = logging.getLogger("spa_harness.main")


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="spa_harness", description="Browser-session diagnostics for SPA tests.")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging and event echo.")
    sub = parser.add_subparsers(dest="command", required=True)

    diag = sub.add_parser("diagnose", help="Navigate once and always write a diagnostic report.")
    diag.add_argument("url", nargs="?", default=None, help="URL or route (default: BASE_URL root).")
    diag.add_argument("--policy", default=DEFAULT_POLICY, help=f"Readiness policy (default: {DEFAULT_POLICY}).")
    diag.add_argument("--selector", default=None, help="Wait for this CSS selector instead of a catalog policy.")
    diag.add_argument("--timeout", type=float, default=None, help="Readiness bound in seconds.")
    diag.add_argument("--name", default="diagnose", help="Test name used for the report directory.")
    diag.add_argument("--json", action="store_true", help="Print the report as JSON instead of a summary.")

    sub.add_parser("policies", help="List the readiness policy catalog.")

    rep = sub.add_parser("reports", help="List recent diagnostic reports, newest first.")
    rep.add_argument("--test", default=None, help="Only reports written for this test name.")
    rep.add_argument("--limit", type=int, default=20, help="Maximum number of reports to list.")
    rep.add_argument("--show", default=None, metavar="DIR", help="Print one report.json instead of the listing.")
    return parser


def _selector_policy(selector: str, timeout: float) -> ReadinessPolicy:
    return ReadinessPolicy(
        f"selector:{selector}",
        (selector_present(selector, timeout=timeout),),
        mode=RACE,
        timeout=timeout,
        rationale="Ad-hoc selector requested on the command line.",
    )


def _cmd_policies() -> int:
    for name, policy in POLICIES.items():
        strategies = f" {policy.mode} ".join(s.name for s in policy.strategies)
        print(f"{name:<22} {policy.timeout:>5g}s  {strategies}")
        print(f"{'':<22} {policy.rationale}")
    return 0


def _cmd_reports(args: argparse.Namespace, config: HarnessConfig) -> int:
    store = ReportStore(config.reports_dir)
    if args.show:
        try:
            data = store.load(args.show)
        except (OSError, ValueError) as exc:
            logger.error("cannot read report %s: %s", args.show, exc)
            return 1
        print(json.dumps(data, ensure_ascii=False, indent=2))
        return 0

    found = store.list_reports(test_name=args.test, limit=args.limit)
    if not found:
        print(f"no reports under {config.reports_dir}")
        return 0
    for report_dir in found:
        try:
            data = store.load(report_dir)
        except (OSError, ValueError) as exc:
            print(f"{'?':<20}  {'unreadable':<18}  {report_dir}  ({exc})")
            continue
        created = str(data.get("createdAt") or "?")
        kind = str(data.get("errorKind") or "-")
        print(f"{created:<20}  {kind:<18}  {data.get('testName') or '?'}  {report_dir}")
    return 0


def _cmd_diagnose(args: argparse.Namespace, config: HarnessConfig) -> int:
    if args.selector:
        policy = _selector_policy(args.selector, args.timeout or config.navigation_timeout)
    else:
        policy = resolve_policy(args.policy)
        if args.timeout:
            policy = dataclasses.replace(policy, timeout=args.timeout)

    harness = Harness(config)
    try:
        report = harness.diagnose(args.url, policy=policy, test_name=args.name)
    except (HarnessError, CdpError) as exc:
        logger.error("%s", exc)
        return 1
    finally:
        harness.stop()

    if args.json:
        print(json.dumps(report.to_dict(), ensure_ascii=False, indent=2))
    else:
        print(render_summary(report))
    return 0 if report.error_kind is None else 1


def main(argv: list[str] | None = None) -> int:
    args = _build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(message)s",
    )
    if args.command == "policies":
        return _cmd_policies()

    try:
        config = HarnessConfig.from_env()
    except ValueError as exc:
        logger.error("invalid configuration: %s", exc)
        return 2
    if args.verbose:
        config = dataclasses.replace(config, verbose=True)
    if args.command == "reports":
        return _cmd_reports(args, config)
    try:
        return _cmd_diagnose(args, config)
    except ValueError as exc:
        logger.error("%s", exc)
        return 2


if __name__ == "__main__":
    sys.exit(main())
