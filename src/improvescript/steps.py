from __future__ import annotations

from dataclasses import replace
from typing import Any, Iterable, Mapping, Sequence

from .errors import InvalidStepSequenceError
from .models import STEP_REQUIRED_FIELDS, TARGET_KINDS, TARGET_SOURCES, Step, Target

_OPTIONAL_STEP_FIELDS = ("description", "timeout_ms", "checked", "enabled")


def target_from_dict(payload: Mapping[str, Any]) -> Target:
    if not isinstance(payload, Mapping):
        raise InvalidStepSequenceError(f"Target must be an object, got {type(payload).__name__}.")
    value = str(payload.get("value") or "").strip()
    if not value:
        raise InvalidStepSequenceError("Target value must be a non-empty string.")
    kind = str(payload.get("kind") or "unknown")
    if kind not in TARGET_KINDS:
        raise InvalidStepSequenceError(f"Unsupported target kind: {kind}")
    source = str(payload.get("source") or "manual")
    if source not in TARGET_SOURCES:
        raise InvalidStepSequenceError(f"Unsupported target source: {source}")
    frame_path = tuple(str(item) for item in payload.get("frame_path") or () if str(item).strip())
    fallbacks = tuple(target_from_dict(item) for item in payload.get("fallbacks") or ())
    return Target(
        value=value,
        kind=kind,  # type: ignore[arg-type]
        source=source,  # type: ignore[arg-type]
        frame_path=frame_path,
        fallbacks=fallbacks,
    )


def target_to_dict(target: Target) -> dict[str, Any]:
    payload: dict[str, Any] = {"value": target.value, "kind": target.kind, "source": target.source}
    if target.frame_path:
        payload["frame_path"] = list(target.frame_path)
    if target.fallbacks:
        payload["fallbacks"] = [target_to_dict(item) for item in target.fallbacks]
    return payload


def step_from_dict(payload: Mapping[str, Any]) -> Step:
    if not isinstance(payload, Mapping):
        raise InvalidStepSequenceError(f"Step must be an object, got {type(payload).__name__}.")
    action = str(payload.get("action") or "")
    required = STEP_REQUIRED_FIELDS.get(action)
    if required is None:
        raise InvalidStepSequenceError(f"Unsupported step action: {action or '(missing)'}")

    values: dict[str, Any] = {}
    for name in required:
        raw = payload.get(name)
        if raw is None or (isinstance(raw, str) and name != "text" and not raw.strip()):
            raise InvalidStepSequenceError(f"Step '{action}' requires field '{name}'.")
        values[name] = target_from_dict(raw) if name == "target" else str(raw)

    for name in _OPTIONAL_STEP_FIELDS:
        if payload.get(name) is None:
            continue
        raw = payload[name]
        if name == "timeout_ms":
            if isinstance(raw, bool) or not isinstance(raw, int) or raw <= 0:
                raise InvalidStepSequenceError("timeout_ms must be a positive integer.")
            values[name] = raw
        elif name in {"checked", "enabled"}:
            values[name] = bool(raw)
        else:
            values[name] = str(raw)
    return Step(action=action, **values)  # type: ignore[arg-type]


def step_to_dict(step: Step) -> dict[str, Any]:
    payload: dict[str, Any] = {"action": step.action}
    for name in STEP_REQUIRED_FIELDS[step.action]:
        value = getattr(step, name)
        payload[name] = target_to_dict(value) if name == "target" else value
    for name in _OPTIONAL_STEP_FIELDS:
        value = getattr(step, name)
        if value is not None:
            payload[name] = value
    return payload


def steps_from_payload(payload: Iterable[Mapping[str, Any]]) -> list[Step]:
    steps: list[Step] = []
    for index, item in enumerate(payload):
        try:
            steps.append(step_from_dict(item))
        except InvalidStepSequenceError as exc:
            raise InvalidStepSequenceError(f"Step {index + 1}: {exc}") from exc
    return steps


def validate_steps(steps: Sequence[Step]) -> list[Step]:
    """Check an in-memory sequence the same way a parsed payload is checked."""
    if isinstance(steps, (str, bytes)) or not isinstance(steps, Sequence):
        raise InvalidStepSequenceError("Steps must be an ordered sequence.")
    validated: list[Step] = []
    for index, step in enumerate(steps):
        if not isinstance(step, Step):
            raise InvalidStepSequenceError(f"Step {index + 1} is not a Step instance.")
        required = STEP_REQUIRED_FIELDS.get(step.action)
        if required is None:
            raise InvalidStepSequenceError(f"Step {index + 1}: unsupported action {step.action}.")
        for name in required:
            value = getattr(step, name)
            if value is None or (isinstance(value, str) and name != "text" and not value.strip()):
                raise InvalidStepSequenceError(f"Step {index + 1}: '{step.action}' requires field '{name}'.")
            if isinstance(value, Target) and not value.value.strip():
                raise InvalidStepSequenceError(f"Step {index + 1}: target value must be non-empty.")
        validated.append(step)
    return validated


def with_target(step: Step, target: Target) -> Step:
    return replace(step, target=target)


def target_key(target: Target | None) -> str:
    if target is None:
        return ""
    frames = ">".join(target.frame_path)
    return f"{target.kind}|{target.value}|{frames}"
