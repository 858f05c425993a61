# kelemetry

Building blocks for presenting the history of Kubernetes objects as traces:
comparing object versions, caching the resulting patches, reshaping span
trees for display, and answering trace queries over a span store you supply.
The package has no dependencies outside the standard library.

## Modules

- `kelemetry.diffcmp`: `compare(old_obj, new_obj)` compares two decoded JSON
  values and returns a `DiffList` whose `diffs` are `Diff` entries with a
  dotted `json_path` (list items appear as `[0]`, `[1]`, ...), `old` and `new`.
  Map keys are visited in sorted order. A key present only in the new value is
  recorded twice.
- `kelemetry.tree`: the trace model (`TraceID`, `KeyValue`, `SpanRef`,
  `Process`, `Log`, `Span`, `Trace`), `find_tag(tags, key)`, and `SpanTree`.
  A `TreeVisitor` walks a `SpanTree` depth first with `enter` and `exit`;
  during the walk it may `add`, `move` and `delete` spans. `set_root` keeps
  only the spans below a chosen span. Invalid operations raise `TreeError`.
- `kelemetry.steps`: visitors that reshape a trace for display:
  `ReplaceNameVisitor`, `ClusterNameVisitor`, `ExtractNestingVisitor`,
  `CollapseNestingVisitor` (with `TagMapping`, `AuditDiffClass` and
  `AuditDiffClassification`), `GroupByTraceSourceVisitor`,
  `CompactDurationVisitor` and `PruneTagsVisitor`. Log kinds are given by the
  `LogType` enum.
- `kelemetry.tfconfig`: `Config` and `Step`, and `DefaultProvider`, which holds
  the display modes `tree`, `timeline`, `tracing` (the default) and `grouped`,
  each with a `(exclusive)` variant that shows only the subtree of the matched
  span.
- `kelemetry.transform`: `Transformer.transform(trace, root_span, config_id)`
  rewrites a trace in place with the steps of a display mode; an unknown id
  falls back to the default mode.
- `kelemetry.tracecache`: `LocalTraceCache` stores `Entry` identifiers as JSON
  text in memory under the low half of a trace id; `fetch` of an unknown id
  raises `TraceCacheError`.
- `kelemetry.diffcache`: `Patch`, `Snapshot`, `CommonOptions` (with
  `choose_resource_version`, which raises `NoNewResourceVersionError` when the
  new resource version is needed and missing), the in-memory `LocalDiffCache`
  (`store`, `fetch`, `store_snapshot`, `fetch_snapshot`, `list`, `trim`) and
  `CacheWrapper`, a time-limited in-memory layer in front of another cache.
  `snapshot_name_for_verb("delete")` returns `"deletion"`.
  `LocalDiffCache.list` does not apply its `limit`.
- `kelemetry.backend`: `StorageBackend` wraps a span store object with
  `find_traces(params)` and `get_trace(trace_id)`. `list` turns found traces
  into `TraceThumbnail`s, one per root span; `get` fetches a trace back from a
  thumbnail's JSON identifier. Helpers: `filter_spans_by_tags` and
  `get_root_spans`. Failures raise `BackendError`.
- `kelemetry.reader`: `SpanReader` answers queries: `get_services` (display
  mode names, default first), `get_operations` (one `Operation` per cluster
  from a `StaticClusterList`), `find_traces`, `find_trace_ids` and
  `get_trace`. Generated trace ids carry the display mode
  (`generate_cache_id`, `extract_display_mode`). Failures raise `ReaderError`.
- `kelemetry.objectfilter`: `Filter` decides whether a resource type
  (`test_gvr`) or an `AuditEvent` (`test_audit_event`) should be traced, by
  excluded types, excluded user-agent substrings and an optional
  `exclude-regex` set with `set_config`.

## Example

```python
from kelemetry.diffcmp import compare

diffs = compare({"spec": {"replicas": 1}}, {"spec": {"replicas": 3}})
for diff in diffs.diffs:
    print(diff.json_path, diff.old, "->", diff.new)
# spec.replicas 1 -> 3
```

## What it does not do

There is no command, server or network API here. The package does not watch
a cluster, receive audit events, talk to etcd or any other shared store, or
read traces from a tracing database: caches live in process memory, and
`StorageBackend` and `SpanReader` work with whatever span store and backend
objects the caller passes in.

## Installation

```
pip install .
```

## Running the tests

```
pip install .[test]
pytest
```