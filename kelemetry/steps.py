"""Tree visitors that reshape a trace for display."""

from __future__ import annotations

import random
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable

from kelemetry.tree import KeyValue, Log, Process, Span, SpanTree, TreeVisitor, find_tag

PREFIX = "zzz-"
NEST_LEVEL = PREFIX + "nestingLevel"
TRACE_SOURCE = PREFIX + "traceSource"
LOG_TYPE_ATTR = PREFIX + "logType"
SPAN_NAME = PREFIX + "spanName"

# Width given to a log entry when computing the extent of a nesting span.
DUMMY_DURATION = timedelta(seconds=1)

PSEUDO_SPAN_NEST_LEVEL = "groupByTraceSource"


class LogType(str, Enum):
    """Kinds of log entries attached to spans."""

    OBJECT_DIFF = "diff"
    EVENT_MESSAGE = "message"
    OBJECT_SNAPSHOT = "snapshot"
    REAL_ERROR = "realError"
    REAL_VERBOSE = "realVerbose"
    KELEMETRY_ERROR = "kelemetryError"


@dataclass(frozen=True)
class TagMapping:
    """Copies a span tag into a log field of the same value."""

    from_span_tag: str
    to_log_field: str


@dataclass(frozen=True)
class AuditDiffClass:
    should_display: bool
    name: str
    priority: int = 0


@dataclass
class AuditDiffClassification:
    """Classes of diff lines, keyed by the JSON path that starts the line."""

    default_class: AuditDiffClass
    specific_fields: dict[str, AuditDiffClass] = field(default_factory=dict)

    def add_class(
        self, diff_class: AuditDiffClass, fields: list[str]
    ) -> AuditDiffClassification:
        for name in fields:
            self.specific_fields[name] = diff_class
        return self

    def get(self, prefix: str) -> AuditDiffClass:
        return self.specific_fields.get(prefix, self.default_class)


def _default_classification() -> AuditDiffClassification:
    return AuditDiffClassification(AuditDiffClass(should_display=True, name="diff"))


@dataclass(frozen=True)
class ClusterNameVisitor(TreeVisitor):
    """Shows the cluster as service name where it differs from the parent's."""

    parent_cluster: str = ""

    def enter(self, tree: SpanTree, span: Span) -> TreeVisitor:
        cluster = ""
        for tag in span.tags:
            if tag.key == "cluster":
                cluster = tag.v_str

        is_root = tree.root is not None and span.span_id == tree.root.span_id
        if not is_root and cluster != self.parent_cluster:
            if span.process is None:
                span.process = Process(service_name=cluster)
            else:
                span.process.service_name = cluster

        return ClusterNameVisitor(parent_cluster=cluster)

    def exit(self, tree: SpanTree, span: Span) -> None:
        pass


@dataclass
class CollapseNestingVisitor(TreeVisitor):
    """Folds child spans with a trace source into logs of the nesting span.

    Should be followed by PruneTagsVisitor in the last step.
    """

    should_collapse: Callable[[str], bool] = lambda trace_source: True
    tag_mappings: dict[str, list[TagMapping]] = field(default_factory=dict)
    audit_diff_classes: AuditDiffClassification = field(
        default_factory=_default_classification
    )
    log_type_mapping: dict[LogType, str] = field(default_factory=dict)

    def enter(self, tree: SpanTree, span: Span) -> TreeVisitor:
        if find_tag(span.tags, NEST_LEVEL) is None:
            return self
        for child_id in tree.children(span.span_id):
            self._process_child(tree, span, child_id)
        return self

    def exit(self, tree: SpanTree, span: Span) -> None:
        pass

    def _process_child(self, tree: SpanTree, span: Span, child_id: int) -> None:
        child = tree.span(child_id)
        if child is None or find_tag(child.tags, NEST_LEVEL) is not None:
            return
        source_tag = find_tag(child.tags, TRACE_SOURCE)
        if source_tag is None:
            return
        trace_source = source_tag.v_str
        if not self.should_collapse(trace_source):
            return

        fields = [
            KeyValue(TRACE_SOURCE, trace_source),
            KeyValue(trace_source, child.operation_name),
        ]
        for mapping in self.tag_mappings.get(trace_source, ()):
            tag = find_tag(child.tags, mapping.from_span_tag)
            if tag is not None:
                mapped = KeyValue(mapping.to_log_field, tag.value)
                if mapped.as_string() != "":
                    fields.append(mapped)

        class_lines: dict[str, list[str]] = {}
        class_priorities: dict[str, int] = {}
        other_logs: list[KeyValue] = []

        for child_log in child.logs:
            type_tag = find_tag(child_log.fields, LOG_TYPE_ATTR)
            log_type = type_tag.v_str if type_tag is not None else ""
            event_tag = find_tag(child_log.fields, "event")
            event = event_tag.v_str if event_tag is not None else ""

            if log_type == LogType.OBJECT_DIFF.value:
                self._classify_diff(event, class_lines, class_priorities)
            else:
                try:
                    kind = LogType(log_type)
                except ValueError:
                    continue
                if kind in self.log_type_mapping:
                    other_logs.append(KeyValue(self.log_type_mapping[kind], event))

        diff_fields = sorted(
            (KeyValue(name, "\n".join(lines)) for name, lines in class_lines.items()),
            key=lambda kv: class_priorities[kv.key],
        )
        fields.extend(diff_fields)
        fields.extend(other_logs)

        span.logs.append(Log(timestamp=child.start_time, fields=fields))
        tree.delete(child_id)

    def _classify_diff(
        self, message: str, lines: dict[str, list[str]], priorities: dict[str, int]
    ) -> None:
        for line in message.split("\n"):
            prefix_length = line.find(" ")
            if prefix_length > 0:
                diff_class = self.audit_diff_classes.get(line[:prefix_length])
                if diff_class.should_display:
                    lines.setdefault(diff_class.name, []).append(line)
                    priorities[diff_class.name] = diff_class.priority


class CompactDurationVisitor(TreeVisitor):
    """Shrinks nesting spans to the extent of their children and logs."""

    def enter(self, tree: SpanTree, span: Span) -> TreeVisitor:
        return self

    def exit(self, tree: SpanTree, span: Span) -> None:
        # runs on exit so that children are already compacted
        if tree.root is span:
            return
        if find_tag(span.tags, NEST_LEVEL) is None:
            return

        start: datetime | None = None
        end: datetime | None = None

        def union(lo: datetime, hi: datetime) -> None:
            nonlocal start, end
            if start is None or start > lo:
                start = lo
            if end is None or end < hi:
                end = hi

        for child_id in tree.children(span.span_id):
            child = tree.span(child_id)
            if child is not None:
                union(child.start_time, child.start_time + child.duration)
        for log in span.logs:
            union(log.timestamp, log.timestamp + DUMMY_DURATION)

        if start is not None and end is not None:
            span.start_time = start
            span.duration = end - start


@dataclass
class ExtractNestingVisitor(TreeVisitor):
    """Deletes matching nesting spans and lifts their children one level."""

    matches_nest_level: Callable[[str], bool] = lambda level: True

    def enter(self, tree: SpanTree, span: Span) -> TreeVisitor:
        if not span.references:
            # the root cannot be extracted
            return self

        nest_level = find_tag(span.tags, NEST_LEVEL)
        if nest_level is not None and self.matches_nest_level(nest_level.as_string()):
            parent_id = span.references[0].span_id
            for child_id in tree.children(span.span_id):
                tree.move(child_id, parent_id)
            tree.delete(span.span_id)

        return self

    def exit(self, tree: SpanTree, span: Span) -> None:
        pass


def _random_span_id() -> int:
    return random.getrandbits(64)


@dataclass
class GroupByTraceSourceVisitor(TreeVisitor):
    """Moves span logs into pseudo spans, one per trace source."""

    should_be_grouped: Callable[[str], bool] = lambda trace_source: True
    new_span_id: Callable[[], int] = _random_span_id

    def enter(self, tree: SpanTree, span: Span) -> TreeVisitor:
        nest_level = find_tag(span.tags, NEST_LEVEL)
        if nest_level is not None and nest_level.as_string() == PSEUDO_SPAN_NEST_LEVEL:
            # already grouped
            return self

        remaining: list[Log] = []
        groups: dict[str, list[Log]] = {}
        for log in span.logs:
            source = find_tag(log.fields, TRACE_SOURCE)
            if source is not None and self.should_be_grouped(source.as_string()):
                groups.setdefault(source.as_string(), []).append(log)
            else:
                remaining.append(log)

        span.logs = remaining

        for trace_source, logs in groups.items():
            pseudo = Span(
                trace_id=span.trace_id,
                span_id=self.new_span_id(),
                operation_name=trace_source,
                flags=0,
                start_time=span.start_time,
                duration=span.duration,
                tags=[KeyValue(NEST_LEVEL, PSEUDO_SPAN_NEST_LEVEL)],
                logs=logs,
                process=Process(service_name=trace_source),
                process_id="1",
            )
            tree.add(pseudo, span.span_id)

        return self

    def exit(self, tree: SpanTree, span: Span) -> None:
        pass


class ReplaceNameVisitor(TreeVisitor):
    """Uses the span-name tag as operation name and labels the root's time range."""

    def enter(self, tree: SpanTree, span: Span) -> TreeVisitor:
        name_tag = find_tag(span.tags, SPAN_NAME)
        if name_tag is not None:
            span.operation_name = name_tag.v_str

        if span is tree.root:
            end = span.start_time + span.duration
            span.operation_name = (
                f"{span.operation_name} / {span.start_time:%H:%M}..{end:%H:%M}"
            )

        return self

    def exit(self, tree: SpanTree, span: Span) -> None:
        pass


def _without_internal_keys(tags: list[KeyValue]) -> list[KeyValue]:
    return [tag for tag in tags if not tag.key.startswith(PREFIX)]


class PruneTagsVisitor(TreeVisitor):
    """Removes internal tags and log fields."""

    def enter(self, tree: SpanTree, span: Span) -> TreeVisitor:
        span.tags = _without_internal_keys(span.tags)
        for log in span.logs:
            log.fields = _without_internal_keys(log.fields)
        return self

    def exit(self, tree: SpanTree, span: Span) -> None:
        pass