from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
import json
import re
from typing import Iterable

from .models import SnapshotNode

_ROLE_PATTERN = re.compile(r"^([a-zA-Z][a-zA-Z0-9_-]*)")
_NAME_PATTERN = re.compile(r'^\s*"((?:[^"\\]|\\.)*)"')
_ATTRIBUTE_PATTERN = re.compile(r"\[([a-zA-Z][\w-]*)(?:=([^\]]*))?\]")
_TAIL_PATTERN = re.compile(r"^((?:\s*\[[^\]]*\])*)\s*(?::\s*(.*))?$")


@dataclass(frozen=True, slots=True)
class SnapshotTextChange:
    before: SnapshotNode
    after: SnapshotNode


@dataclass(frozen=True, slots=True)
class SnapshotStateChange:
    before: SnapshotNode
    after: SnapshotNode
    changed: tuple[str, ...]


@dataclass(frozen=True, slots=True)
class SnapshotDiff:
    appeared: tuple[SnapshotNode, ...] = ()
    disappeared: tuple[SnapshotNode, ...] = ()
    text_changes: tuple[SnapshotTextChange, ...] = ()
    state_changes: tuple[SnapshotStateChange, ...] = ()
    stable: tuple[SnapshotNode, ...] = ()

    @property
    def has_changes(self) -> bool:
        return bool(self.appeared or self.disappeared or self.text_changes or self.state_changes)


def normalize_text(value: str | None) -> str:
    if not value:
        return ""
    return re.sub(r"\s+", " ", value).strip()


def parse_snapshot(text: str | None) -> list[SnapshotNode]:
    """Parse an ARIA snapshot dump into nodes; lines that do not parse are skipped."""
    nodes: list[SnapshotNode] = []
    for raw_line in str(text or "").splitlines():
        node = parse_snapshot_line(raw_line)
        if node is not None:
            nodes.append(node)
    return nodes


def parse_snapshot_line(raw_line: str) -> SnapshotNode | None:
    stripped = raw_line.lstrip(" ")
    if not stripped.startswith("- "):
        return None
    indent = len(raw_line) - len(stripped)
    content = stripped[2:].strip()
    if not content or content.startswith("/"):
        return None

    role_match = _ROLE_PATTERN.match(content)
    if not role_match:
        return None
    role = role_match.group(1)
    rest = content[role_match.end():]

    name: str | None = None
    name_match = _NAME_PATTERN.match(rest)
    if name_match:
        name = _decode_quoted(name_match.group(1))
        rest = rest[name_match.end():]

    tail_match = _TAIL_PATTERN.match(rest)
    if not tail_match:
        return None
    attributes = dict(
        (key, (value or "").strip()) for key, value in _ATTRIBUTE_PATTERN.findall(tail_match.group(1) or "")
    )
    node_text = _clean_text(tail_match.group(2))

    expanded: bool | None = None
    if "expanded" in attributes:
        expanded = attributes["expanded"] in {"", "true"}

    return SnapshotNode(
        role=role,
        name=name or None,
        text=node_text,
        ref=attributes.get("ref") or None,
        visible="hidden" not in attributes,
        enabled=not ("disabled" in attributes and attributes["disabled"] in {"", "true"}),
        expanded=expanded,
        level=indent // 2,
    )


def identity_key(node: SnapshotNode) -> str:
    if node.ref:
        return f"ref:{node.ref}"
    return f"{node.role}|{normalize_text(node.name).lower()}"


def node_signature(node: SnapshotNode) -> str:
    return "|".join(
        (
            node.role,
            normalize_text(node.name).lower(),
            normalize_text(node.text),
            "v" if node.visible else "h",
            "e" if node.enabled else "d",
            "" if node.expanded is None else ("x" if node.expanded else "c"),
        )
    )


def diff_snapshots(before: Iterable[SnapshotNode], after: Iterable[SnapshotNode]) -> SnapshotDiff:
    before_groups: dict[str, list[SnapshotNode]] = defaultdict(list)
    for node in before:
        before_groups[identity_key(node)].append(node)

    after_nodes = list(after)
    after_groups: dict[str, list[SnapshotNode]] = defaultdict(list)
    for node in after_nodes:
        after_groups[identity_key(node)].append(node)

    appeared: list[SnapshotNode] = []
    disappeared: list[SnapshotNode] = []
    text_changes: list[SnapshotTextChange] = []
    state_changes: list[SnapshotStateChange] = []
    stable: list[SnapshotNode] = []

    keys = list(before_groups)
    keys.extend(key for key in after_groups if key not in before_groups)
    for key in keys:
        old_nodes = list(before_groups.get(key, ()))
        new_nodes = list(after_groups.get(key, ()))

        # Exact signature matches pair first so repeated siblings never look edited.
        unmatched_new: list[SnapshotNode] = []
        for node in new_nodes:
            signature = node_signature(node)
            match_index = next(
                (index for index, old in enumerate(old_nodes) if node_signature(old) == signature),
                None,
            )
            if match_index is None:
                unmatched_new.append(node)
                continue
            old_nodes.pop(match_index)
            stable.append(node)

        for old, new in zip(old_nodes, unmatched_new):
            if old.visible != new.visible:
                if new.visible:
                    appeared.append(new)
                else:
                    disappeared.append(old)
                continue
            old_text = normalize_text(old.text)
            new_text = normalize_text(new.text)
            if old_text and new_text and old_text != new_text:
                text_changes.append(SnapshotTextChange(before=old, after=new))
            changed = []
            if old.enabled != new.enabled:
                changed.append("enabled")
            if old.expanded != new.expanded and old.expanded is not None and new.expanded is not None:
                changed.append("expanded")
            if changed:
                state_changes.append(SnapshotStateChange(before=old, after=new, changed=tuple(changed)))
            elif not old_text and new_text:
                appeared.append(new)

        appeared.extend(unmatched_new[len(old_nodes):])
        disappeared.extend(old_nodes[len(unmatched_new):])

    order = {id(node): index for index, node in enumerate(after_nodes)}
    appeared.sort(key=lambda node: order.get(id(node), len(order)))
    return SnapshotDiff(
        appeared=tuple(appeared),
        disappeared=tuple(disappeared),
        text_changes=tuple(text_changes),
        state_changes=tuple(state_changes),
        stable=tuple(stable),
    )


def _decode_quoted(value: str) -> str:
    try:
        return str(json.loads(f'"{value}"'))
    except ValueError:
        return value


def _clean_text(value: str | None) -> str | None:
    text = normalize_text(value)
    if not text:
        return None
    if len(text) >= 2 and text[0] == text[-1] == '"':
        text = _decode_quoted(text[1:-1])
    return text or None
