from datetime import datetime, timedelta, timezone

import pytest

from kelemetry.steps import (
    DUMMY_DURATION,
    LOG_TYPE_ATTR,
    NEST_LEVEL,
    PREFIX,
    PSEUDO_SPAN_NEST_LEVEL,
    SPAN_NAME,
    TRACE_SOURCE,
    AuditDiffClass,
    AuditDiffClassification,
    ClusterNameVisitor,
    CollapseNestingVisitor,
    CompactDurationVisitor,
    ExtractNestingVisitor,
    GroupByTraceSourceVisitor,
    LogType,
    PruneTagsVisitor,
    ReplaceNameVisitor,
    TagMapping,
)
from kelemetry.tree import KeyValue, Log, Process, Span, SpanRef, SpanTree, Trace, TraceID

T0 = datetime(2023, 1, 1, 10, 0, tzinfo=timezone.utc)
TID = TraceID(high=0, low=1)


def make_span(span_id, parent=None, tags=(), logs=(), start=T0, duration=timedelta(minutes=5)):
    refs = [SpanRef(trace_id=TID, span_id=parent)] if parent is not None else []
    return Span(
        trace_id=TID,
        span_id=span_id,
        operation_name=f"op{span_id}",
        references=refs,
        start_time=start,
        duration=duration,
        tags=list(tags),
        logs=list(logs),
        process=Process(service_name="svc"),
    )


def make_tree(*spans):
    return SpanTree(Trace(spans=list(spans)))


def test_classification_get_and_chain():
    default = AuditDiffClass(True, "diff", 0)
    verbose = AuditDiffClass(True, "verbose diff", 10)
    classes = AuditDiffClassification(default)
    assert classes.add_class(verbose, ["metadata.generation"]) is classes
    assert classes.get("metadata.generation") == verbose
    assert classes.get("spec.replicas") == default


def test_cluster_name_visitor():
    root = make_span(1, tags=[KeyValue("cluster", "a")])
    same = make_span(2, parent=1, tags=[KeyValue("cluster", "a")])
    other = make_span(3, parent=1, tags=[KeyValue("cluster", "b")])
    tree = make_tree(root, same, other)
    tree.visit(ClusterNameVisitor())
    assert root.process.service_name == "svc"
    assert same.process.service_name == "svc"
    assert other.process.service_name == "b"


def test_replace_name_visitor():
    root = make_span(1, tags=[KeyValue(SPAN_NAME, "pod")])
    child = make_span(2, parent=1, tags=[KeyValue(SPAN_NAME, "update")])
    tree = make_tree(root, child)
    tree.visit(ReplaceNameVisitor())
    assert child.operation_name == "update"
    assert root.operation_name == "pod / 10:00..10:05"


def test_prune_tags_visitor():
    root = make_span(
        1,
        tags=[KeyValue(NEST_LEVEL, "object"), KeyValue("cluster", "a")],
        logs=[Log(timestamp=T0, fields=[KeyValue(TRACE_SOURCE, "audit"), KeyValue("event", "x")])],
    )
    tree = make_tree(root)
    tree.visit(PruneTagsVisitor())
    assert [t.key for t in root.tags] == ["cluster"]
    assert [f.key for f in root.logs[0].fields] == ["event"]
    assert all(not t.key.startswith(PREFIX) for t in root.tags)


def test_extract_nesting_lifts_children():
    root = make_span(1)
    nest = make_span(2, parent=1, tags=[KeyValue(NEST_LEVEL, "object")])
    leaf = make_span(3, parent=2)
    tree = make_tree(root, nest, leaf)
    tree.visit(ExtractNestingVisitor(matches_nest_level=lambda level: True))
    assert tree.span(2) is None
    assert tree.children(1) == [3]
    assert leaf.references[0].span_id == 1
    assert set(tree.get_spans()) == {root, leaf}


def test_extract_nesting_keeps_unmatched():
    root = make_span(1)
    nest = make_span(2, parent=1, tags=[KeyValue(NEST_LEVEL, "object")])
    leaf = make_span(3, parent=2)
    tree = make_tree(root, nest, leaf)
    tree.visit(ExtractNestingVisitor(matches_nest_level=lambda level: level != "object"))
    assert tree.children(1) == [2]
    assert tree.children(2) == [3]


def test_compact_duration_visitor():
    root = make_span(1, duration=timedelta(hours=1))
    nest = make_span(2, parent=1, tags=[KeyValue(NEST_LEVEL, "object")], duration=timedelta(hours=1))
    child_start = T0 + timedelta(minutes=10)
    child = make_span(3, parent=2, start=child_start, duration=timedelta(minutes=2))
    log_time = T0 + timedelta(minutes=20)
    nest.logs.append(Log(timestamp=log_time))
    tree = make_tree(root, nest, child)
    tree.visit(CompactDurationVisitor())
    assert nest.start_time == child_start
    assert nest.start_time + nest.duration == log_time + DUMMY_DURATION
    assert root.start_time == T0
    assert root.duration == timedelta(hours=1)


def test_compact_duration_ignores_non_nesting():
    root = make_span(1)
    plain = make_span(2, parent=1, duration=timedelta(hours=2))
    child = make_span(3, parent=2, duration=timedelta(minutes=1))
    tree = make_tree(root, plain, child)
    tree.visit(CompactDurationVisitor())
    assert plain.duration == timedelta(hours=2)


def test_group_by_trace_source():
    audit_log = Log(timestamp=T0, fields=[KeyValue(TRACE_SOURCE, "audit")])
    event_log = Log(timestamp=T0, fields=[KeyValue(TRACE_SOURCE, "event")])
    plain_log = Log(timestamp=T0, fields=[KeyValue("event", "hello")])
    root = make_span(1, logs=[audit_log, event_log, plain_log])
    tree = make_tree(root)
    visitor = GroupByTraceSourceVisitor(
        should_be_grouped=lambda source: source != "event", new_span_id=lambda: 42
    )
    tree.visit(visitor)

    assert root.logs == [event_log, plain_log]
    assert tree.children(1) == [42]
    pseudo = tree.span(42)
    assert pseudo.operation_name == "audit"
    assert pseudo.logs == [audit_log]
    assert pseudo.process.service_name == "audit"
    assert pseudo.tags[0].value == PSEUDO_SPAN_NEST_LEVEL
    assert pseudo.references[0].span_id == 1

    tree.visit(visitor)
    assert tree.children(1) == [42]
    assert pseudo.logs == [audit_log]


def _collapse_visitor(should_collapse=lambda source: True):
    classes = AuditDiffClassification(AuditDiffClass(True, "diff", 0)).add_class(
        AuditDiffClass(True, "verbose diff", 10), ["metadata.resourceVersion"]
    )
    return CollapseNestingVisitor(
        should_collapse=should_collapse,
        tag_mappings={
            "event": [
                TagMapping("action", "action"),
                TagMapping("source", "source"),
            ]
        },
        audit_diff_classes=classes,
        log_type_mapping={LogType.EVENT_MESSAGE: "message"},
    )


def _collapse_tree():
    root = make_span(1, tags=[KeyValue(NEST_LEVEL, "object")])
    child_start = T0 + timedelta(minutes=1)
    child = make_span(
        2,
        parent=1,
        start=child_start,
        tags=[
            KeyValue(TRACE_SOURCE, "event"),
            KeyValue("action", "Scale"),
            KeyValue("source", ""),
        ],
        logs=[
            Log(fields=[KeyValue(LOG_TYPE_ATTR, LogType.EVENT_MESSAGE.value), KeyValue("event", "scaled")]),
            Log(
                fields=[
                    KeyValue(LOG_TYPE_ATTR, LogType.OBJECT_DIFF.value),
                    KeyValue("event", "metadata.resourceVersion 1 -> 2\nspec.replicas 1 -> 2"),
                ]
            ),
        ],
    )
    return root, child, make_tree(root, child)


def test_collapse_nesting_folds_child():
    root, child, tree = _collapse_tree()
    tree.visit(_collapse_visitor())

    assert tree.span(2) is None
    assert tree.children(1) == []
    assert len(root.logs) == 1
    log = root.logs[0]
    assert log.timestamp == child.start_time
    assert [f.key for f in log.fields] == [
        TRACE_SOURCE, "event", "action", "diff", "verbose diff", "message",
    ]
    values = {f.key: f.value for f in log.fields}
    assert values["event"] == "op2"
    assert values["action"] == "Scale"
    assert values["diff"] == "spec.replicas 1 -> 2"
    assert values["verbose diff"] == "metadata.resourceVersion 1 -> 2"
    assert values["message"] == "scaled"


def test_collapse_nesting_respects_should_collapse():
    root, _child, tree = _collapse_tree()
    tree.visit(_collapse_visitor(should_collapse=lambda source: False))
    assert tree.children(1) == [2]
    assert root.logs == []


@pytest.mark.parametrize("child_tags", [[KeyValue(NEST_LEVEL, "x"), KeyValue(TRACE_SOURCE, "event")], []])
def test_collapse_nesting_skips_ineligible_children(child_tags):
    root = make_span(1, tags=[KeyValue(NEST_LEVEL, "object")])
    child = make_span(2, parent=1, tags=child_tags)
    tree = make_tree(root, child)
    tree.visit(_collapse_visitor())
    assert tree.span(2) is child
    assert root.logs == []