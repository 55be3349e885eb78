from __future__ import annotations

import argparse
import asyncio
import json
from pathlib import Path
import sys
from typing import Any, Sequence

from playwright.async_api import async_playwright

from .errors import ImproveError, is_missing_browser_error
from .page_handle import PlaywrightPageHandle
from .policy import ImproveOptions, policy_preset
from .report import ImproveReport
from .runner import build_logger, improve_steps, log_report
from .steps import steps_from_payload

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_MISSING_BROWSER = 2


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="improvescript",
        description="Improve selectors and propose assertions for a recorded step file.",
    )
    parser.add_argument("steps", type=Path, help="JSON step file (a list of steps or an object with 'steps').")
    parser.add_argument("--url", dest="base_url", default=None, help="Base URL for relative navigate steps.")
    parser.add_argument("--apply-selectors", action="store_true", help="Write recommended selectors back.")
    parser.add_argument("--apply-assertions", action="store_true", help="Validate and insert assertions.")
    parser.add_argument("--assertions", choices=("none", "candidates"), default="candidates")
    parser.add_argument(
        "--assertion-source",
        choices=("deterministic", "snapshot_native", "snapshot_cli"),
        default="snapshot_native",
    )
    parser.add_argument("--policy", choices=("reliable", "balanced", "aggressive"), default="reliable")
    parser.add_argument("--output", type=Path, default=None, help="Where to write the improved step file.")
    parser.add_argument("--report", type=Path, default=None, help="Where to write the JSON report.")
    parser.add_argument("--headed", action="store_true", help="Show the browser window.")
    return parser


def _read_payload(path: Path) -> tuple[Any, list[Any]]:
    payload = json.loads(path.read_text(encoding="utf-8"))
    if isinstance(payload, dict):
        steps = payload.get("steps")
        if not isinstance(steps, list):
            raise ImproveError(f"{path}: expected a 'steps' list.")
        return payload, steps
    if not isinstance(payload, list):
        raise ImproveError(f"{path}: expected a list of steps.")
    return payload, payload


def _write_outputs(args: argparse.Namespace, payload: Any, report: ImproveReport) -> None:
    improved = report.output_payload()
    if args.output is not None:
        document = dict(payload, steps=improved) if isinstance(payload, dict) else improved
        args.output.write_text(json.dumps(document, indent=2) + "\n", encoding="utf-8")
    report_payload = json.dumps(report.to_dict(), indent=2)
    if args.report is not None:
        args.report.write_text(report_payload + "\n", encoding="utf-8")
    else:
        print(report_payload)


async def run(args: argparse.Namespace) -> int:
    logger = build_logger()
    payload, raw_steps = _read_payload(args.steps)
    steps = steps_from_payload(raw_steps)
    options = ImproveOptions.from_env(
        apply_selectors=args.apply_selectors,
        apply_assertions=args.apply_assertions,
        assertions=args.assertions,
        assertion_source=args.assertion_source,
        policy=policy_preset(args.policy),
        base_url=args.base_url,
    )

    async with async_playwright() as playwright:
        try:
            browser = await playwright.chromium.launch(headless=not args.headed)
        except Exception as exc:
            if not is_missing_browser_error(exc):
                raise
            logger.error("Chromium launch failed: %s", exc)
            print(
                "Chromium not installed. Run: python -m playwright install chromium",
                file=sys.stderr,
            )
            return EXIT_MISSING_BROWSER
        try:
            context = await browser.new_context()
            page = await context.new_page()
            report = await improve_steps(steps, PlaywrightPageHandle(page), options)
        finally:
            await browser.close()

    log_report(report, logger)
    _write_outputs(args, payload, report)
    return EXIT_OK


def main(argv: Sequence[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        return asyncio.run(run(args))
    except (ImproveError, OSError, ValueError) as exc:
        print(f"improvescript: {exc}", file=sys.stderr)
        return EXIT_FAILED


if __name__ == "__main__":
    raise SystemExit(main())
