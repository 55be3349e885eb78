from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Sequence

from .assertion_pass import run_assertion_pass
from .diagnostics import DiagnosticsCollector
from .models import PassCounters, Step, StepFinding, StepSnapshot
from .page_handle import PageHandle
from .policy import ImproveOptions
from .report import ImproveReport
from .selector_pass import run_selector_pass

_LOG_FORMAT = "%(asctime)s %(levelname)s %(message)s"
_DIAGNOSTIC_LOG_LEVELS = {"info": logging.INFO, "warn": logging.WARNING, "error": logging.ERROR}


def build_logger(name: str = "improvescript.cli", log_dir: Path | None = None) -> logging.Logger:
    logger = logging.getLogger(name)
    if logger.handlers:
        return logger

    logger.setLevel(logging.INFO)
    logger.propagate = False
    try:
        directory = log_dir or Path.home() / ".improvescript"
        directory.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(directory / "cli.log", encoding="utf-8")
        file_handler.setFormatter(logging.Formatter(_LOG_FORMAT))
        logger.addHandler(file_handler)
    except Exception:
        # Fall back to stderr when the log directory is not writable.
        stream_handler = logging.StreamHandler()
        stream_handler.setFormatter(logging.Formatter(_LOG_FORMAT))
        logger.addHandler(stream_handler)
    return logger


def log_report(report: ImproveReport, logger: logging.Logger) -> None:
    for diagnostic in report.diagnostics:
        level = _DIAGNOSTIC_LOG_LEVELS.get(diagnostic.level, logging.INFO)
        logger.log(level, "%s: %s", diagnostic.code, diagnostic.message)
    summary = report.summary
    logger.info(
        "improve finished: steps=%s selectors_applied=%s assertions_applied=%s assertions_skipped=%s",
        summary["steps_total"],
        summary["selectors_applied"],
        summary["assertions_applied"],
        summary["assertions_skipped"],
    )


@dataclass(slots=True)
class FailedStepRemoval:
    steps: list[Step]
    original_indexes: list[int]
    snapshots: list[StepSnapshot]
    findings: list[StepFinding]
    runtime_findings: list[StepFinding]
    removed: list[int] = field(default_factory=list)


def remove_failed_steps(
    steps: Sequence[Step],
    failed_step_indexes: Sequence[int],
    snapshots: Sequence[StepSnapshot],
    findings: Sequence[StepFinding],
    diagnostics: DiagnosticsCollector,
) -> FailedStepRemoval:
    """Drop non-navigate steps that failed during replay.

    Snapshot and finding indexes are remapped onto the remaining steps; `findings` keeps the
    recorded indexes for the report while `runtime_findings` is indexed for the assertion pass.
    """
    removed = sorted(
        {index for index in failed_step_indexes if 0 <= index < len(steps) and steps[index].action != "navigate"}
    )
    for index in removed:
        diagnostics.info("runtime_failing_step_removed", f"Step {index + 1}: removed because it failed at runtime.")

    dropped = set(removed)
    kept = [index for index in range(len(steps)) if index not in dropped]
    position = {original: runtime for runtime, original in enumerate(kept)}
    kept_findings = [finding for finding in findings if finding.index in position]
    return FailedStepRemoval(
        steps=[steps[index] for index in kept],
        original_indexes=kept,
        snapshots=[replace(item, index=position[item.index]) for item in snapshots if item.index in position],
        findings=kept_findings,
        runtime_findings=[replace(finding, index=position[finding.index]) for finding in kept_findings],
        removed=removed,
    )


def _merge_counters(selector: PassCounters, assertion: PassCounters) -> PassCounters:
    merged = PassCounters(
        steps_total=selector.steps_total,
        steps_with_target=selector.steps_with_target,
        candidates_generated=selector.candidates_generated,
        selector_repairs_generated=selector.selector_repairs_generated,
        selector_repairs_adopted=selector.selector_repairs_adopted,
        selectors_recommended=selector.selectors_recommended,
        selectors_applied=selector.selectors_applied,
        assertion_candidates=assertion.assertion_candidates,
        assertions_filtered_volatile=assertion.assertions_filtered_volatile,
        assertions_applied=assertion.assertions_applied,
        assertions_skipped=assertion.assertions_skipped,
    )
    merged.extra.update(selector.extra)
    merged.extra.update(assertion.extra)
    return merged


async def improve_steps(
    steps: Sequence[Step],
    page: PageHandle | None,
    options: ImproveOptions | None = None,
) -> ImproveReport:
    """Run the selector pass, then the assertion pass over its output, sharing one diagnostics sink."""
    options = options or ImproveOptions()
    diagnostics = DiagnosticsCollector()
    capture = options.assertions != "none" and options.assertion_source != "deterministic"

    selector = await run_selector_pass(
        steps,
        page,
        options,
        diagnostics=diagnostics,
        capture_snapshots=capture,
    )
    wants_write = options.apply_selectors or options.apply_assertions
    removal = remove_failed_steps(
        selector.output_steps,
        selector.failed_step_indexes if wants_write else (),
        selector.snapshots,
        selector.findings,
        diagnostics,
    )
    assertion = await run_assertion_pass(
        removal.steps,
        page,
        options,
        findings=removal.runtime_findings,
        snapshots=removal.snapshots if page is not None else None,
        diagnostics=diagnostics,
        original_indexes=removal.original_indexes,
    )
    return ImproveReport(
        source_steps=removal.steps,
        output_steps=assertion.output_steps,
        counters=_merge_counters(selector.counters, assertion.counters),
        findings=removal.findings,
        assertion_candidates=assertion.assertion_candidates,
        diagnostics=diagnostics.snapshot(),
        failed_step_indexes=selector.failed_step_indexes,
        source_step_indexes=removal.original_indexes,
        removed_step_indexes=removal.removed,
    )
