"""Span model and a mutable span tree whose visits tolerate edits."""

from __future__ import annotations

import string
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Iterable

CHILD_OF = "CHILD_OF"

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


@dataclass(frozen=True)
class TraceID:
    """A 128-bit trace identifier split into two 64-bit halves."""

    high: int = 0
    low: int = 0

    def __str__(self) -> str:
        if self.high == 0:
            return f"{self.low:x}"
        return f"{self.high:x}{self.low:016x}"

    @classmethod
    def from_string(cls, text: str) -> TraceID:
        """Parse the hexadecimal form produced by ``str``."""
        if len(text) > 32:
            raise ValueError(f"TraceID cannot be longer than 32 hex characters: {text}")
        if not text or any(ch not in string.hexdigits for ch in text):
            raise ValueError(f"cannot parse TraceID from string {text!r}")
        if len(text) > 16:
            return cls(high=int(text[:-16], 16), low=int(text[-16:], 16))
        return cls(high=0, low=int(text, 16))


@dataclass
class KeyValue:
    """A typed tag or log field."""

    key: str
    value: Any = ""

    @property
    def v_str(self) -> str:
        """The value if it is a string, otherwise the empty string."""
        return self.value if isinstance(self.value, str) else ""

    def as_string(self) -> str:
        """Render the value as text whatever its type."""
        value = self.value
        if isinstance(value, str):
            return value
        if isinstance(value, bool):
            return "true" if value else "false"
        if isinstance(value, int):
            return str(value)
        if isinstance(value, float):
            return format(value, ".10g")
        if isinstance(value, (bytes, bytearray)):
            return bytes(value).hex()
        return str(value)


def find_tag(tags: Iterable[KeyValue], key: str) -> KeyValue | None:
    """Return the first entry with the given key, or None."""
    return next((tag for tag in tags if tag.key == key), None)


@dataclass
class SpanRef:
    """A reference from a span to another span."""

    trace_id: TraceID
    span_id: int
    ref_type: str = CHILD_OF


@dataclass
class Process:
    service_name: str = ""


@dataclass
class Log:
    timestamp: datetime = _EPOCH
    fields: list[KeyValue] = field(default_factory=list)


@dataclass(eq=False)
class Span:
    """A span; spans compare and hash by identity."""

    trace_id: TraceID = field(default_factory=TraceID)
    span_id: int = 0
    operation_name: str = ""
    references: list[SpanRef] = field(default_factory=list)
    flags: int = 0
    start_time: datetime = _EPOCH
    duration: timedelta = timedelta(0)
    tags: list[KeyValue] = field(default_factory=list)
    logs: list[Log] = field(default_factory=list)
    process: Process | None = None
    process_id: str = ""


@dataclass
class Trace:
    spans: list[Span] = field(default_factory=list)
    process_map: dict[str, Process] = field(default_factory=dict)


class TreeError(Exception):
    """Raised when a tree operation would break the tree's invariants."""


class TreeVisitor:
    """Base visitor: ``enter`` returns the visitor used for the children."""

    def enter(self, tree: SpanTree, span: Span) -> TreeVisitor:
        """Called before the descendants of ``span``; may edit the tree."""
        return self

    def exit(self, tree: SpanTree, span: Span) -> None:
        """Called after the descendants of ``span`` have been visited."""


class _SpanIdCollector(TreeVisitor):
    def __init__(self) -> None:
        self.span_ids: set[int] = set()

    def enter(self, tree: SpanTree, span: Span) -> TreeVisitor:
        self.span_ids.add(span.span_id)
        return self


class SpanTree:
    """Spans of a trace indexed by id and arranged by their first reference."""

    def __init__(self, trace: Trace) -> None:
        self._spans: dict[int, Span] = {}
        self._children: dict[int, dict[int, None]] = {}
        self._pending: dict[int, list[int]] = {}
        self._exited: set[int] = set()
        self.root: Span | None = None

        for span in trace.spans:
            self._spans[span.span_id] = span
            if not span.references:
                self.root = span
            else:
                parent_id = span.references[0].span_id
                self._children.setdefault(parent_id, {})[span.span_id] = None

    def span(self, span_id: int) -> Span | None:
        return self._spans.get(span_id)

    def children(self, span_id: int) -> list[int]:
        """Ids of the direct children of a span, as a snapshot."""
        return list(self._children.get(span_id, ()))

    def get_spans(self) -> list[Span]:
        return list(self._spans.values())

    def set_root(self, span_id: int) -> None:
        """Make a span the root and drop every span not beneath it."""
        if self._pending:
            raise TreeError("Cannot call SetRoot")
        new_root = self._spans.get(span_id)
        if new_root is None:
            raise TreeError("SetRoot can only be used on nodes in the tree")

        self.root = new_root
        collector = _SpanIdCollector()
        self.visit(collector)

        for sid in [sid for sid in self._spans if sid not in collector.span_ids]:
            del self._spans[sid]
        for sid in [sid for sid in self._children if sid not in collector.span_ids]:
            del self._children[sid]

    def visit(self, visitor: TreeVisitor) -> None:
        """Walk the tree from the root, depth first."""
        if self.root is not None:
            self._visit(self.root, visitor)

    def _visit(self, node: Span, visitor: TreeVisitor) -> None:
        subvisitor = visitor.enter(self, node)
        node_id = node.span_id

        if node_id not in self._spans:
            # deleted during enter
            return

        pending = list(self._children.get(node_id, ()))
        self._pending[node_id] = pending

        while pending:
            batch = list(pending)
            pending.clear()
            for child_id in batch:
                child = self._spans.get(child_id)
                if child is None:
                    continue
                if child.span_id == node_id:
                    raise TreeError(
                        f"childrenMap is not a tree (spanId {child.span_id:x} duplicated)"
                    )
                self._visit(child, subvisitor)

        del self._pending[node_id]

        visitor.exit(self, node)
        self._exited.add(node_id)

        if not self._pending:
            self._exited.clear()

    def add(self, new_span: Span, parent_id: int) -> None:
        """Add a span as a child of a span that has not been exited yet."""
        if parent_id in self._exited:
            raise TreeError("cannot add under already-exited span")
        if self.root is None:
            raise TreeError("cannot add to a tree without a root")

        self._spans[new_span.span_id] = new_span
        new_span.references = [
            SpanRef(trace_id=self.root.trace_id, span_id=parent_id, ref_type=CHILD_OF)
        ]
        self._children.setdefault(parent_id, {})[new_span.span_id] = None

        pending = self._pending.get(parent_id)
        if pending is not None:
            pending.append(new_span.span_id)

    def move(self, moved_span_id: int, new_parent_id: int) -> None:
        """Move a not yet entered span under a parent not yet exited."""
        if new_parent_id in self._exited:
            raise TreeError("cannot move already-exited span")

        moved = self._spans.get(moved_span_id)
        if moved is None:
            raise TreeError("cannot move a span that is not in the tree")
        if not moved.references:
            raise TreeError("cannot move root span")

        ref = moved.references[0]
        old_parent_id = ref.span_id
        ref.span_id = new_parent_id

        self._children.setdefault(new_parent_id, {})[moved_span_id] = None
        self._children.get(old_parent_id, {}).pop(moved_span_id, None)

        pending = self._pending.get(new_parent_id)
        if pending is not None:
            pending.append(moved_span_id)

    def delete(self, span_id: int) -> None:
        """Remove a span and all its remaining descendants.

        Only the span being entered or descendants of entered spans may be
        deleted; a span deleted while being entered is not exited.
        """
        if span_id not in self._spans:
            raise TreeError("cannot delete a deleted span")
        if span_id in self._pending:
            raise TreeError("cannot delete a parent span")
        if span_id in self._exited:
            raise TreeError("cannot delete an exited span")

        span = self._spans.pop(span_id)

        if span.references:
            parent_id = span.references[0].span_id
            self._children.get(parent_id, {}).pop(span_id, None)

        children = self._children.get(span_id)
        if children is not None:
            for child_id in list(children):
                self.delete(child_id)
            self._children.pop(span_id, None)