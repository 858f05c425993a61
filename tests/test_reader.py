import json
from datetime import datetime, timedelta, timezone

import pytest

from kelemetry.backend import BackendError, TraceQueryParameters, TraceThumbnail
from kelemetry.reader import (
    CACHE_ID_HIGH_MASK,
    Operation,
    ReaderError,
    SpanReader,
    StaticClusterList,
    extract_display_mode,
    generate_cache_id,
)
from kelemetry.tfconfig import DefaultProvider
from kelemetry.tracecache import LocalTraceCache
from kelemetry.tree import KeyValue, Span, SpanRef, Trace, TraceID

START = datetime(2023, 1, 1, tzinfo=timezone.utc)
IDENTIFIER = {"traceId": "abc", "spanId": 1}


def make_spans():
    root = Span(
        trace_id=TraceID(0, 7),
        span_id=1,
        operation_name="root",
        start_time=START,
        duration=timedelta(minutes=5),
        tags=[KeyValue("cluster", "c1"), KeyValue("resource", "pods")],
    )
    child = Span(
        trace_id=TraceID(0, 7),
        span_id=2,
        operation_name="child",
        references=[SpanRef(trace_id=TraceID(0, 7), span_id=1)],
        start_time=START,
        duration=timedelta(minutes=1),
        tags=[KeyValue("cluster", "c1")],
    )
    return [root, child]


class FakeBackend:
    def __init__(self, thumbnails=None, fail=False):
        self.thumbnails = thumbnails if thumbnails is not None else []
        self.fail = fail
        self.queries = []
        self.gets = []

    def list(self, params):
        self.queries.append(params)
        if self.fail:
            raise BackendError("boom")
        return self.thumbnails

    def get(self, identifier_json, trace_id):
        self.gets.append((identifier_json, trace_id))
        return Trace(spans=make_spans()), 1


def thumbnail():
    return TraceThumbnail(
        identifier=IDENTIFIER, cluster="c1", resource="pods", spans=make_spans(), root_span=1
    )


def test_cache_id_round_trip_for_every_mode():
    provider = DefaultProvider()
    for name in provider.names():
        mode = provider.get_by_name(name).id
        cache_id = generate_cache_id(mode)
        assert extract_display_mode(cache_id) == mode
        assert cache_id.high & CACHE_ID_HIGH_MASK == CACHE_ID_HIGH_MASK
        assert 0 <= cache_id.low < 2**64


def test_mask_alone_encodes_mode_zero():
    assert extract_display_mode(TraceID(high=CACHE_ID_HIGH_MASK, low=5)) == 0


def test_get_services_default_first_then_sorted():
    reader = SpanReader(FakeBackend())
    services = reader.get_services()
    assert services[0] == "tracing"
    assert services[1:] == sorted(services[1:])
    assert set(services) == set(DefaultProvider().names())


def test_get_operations_lists_clusters():
    reader = SpanReader(FakeBackend(), cluster_list=StaticClusterList(["a", "b"]))
    assert reader.get_operations("server") == [Operation("server", "a"), Operation("server", "b")]


def test_static_cluster_list():
    assert StaticClusterList(["x"]).list() == ["x"]


def test_find_traces_assigns_cache_ids_and_persists():
    cache = LocalTraceCache()
    backend = FakeBackend([thumbnail()])
    reader = SpanReader(backend, trace_cache=cache)
    traces = reader.find_traces(TraceQueryParameters(service_name="tracing"))

    assert len(traces) == 1
    trace = traces[0]
    trace_ids = {span.trace_id for span in trace.spans}
    assert len(trace_ids) == 1
    (cache_id,) = trace_ids
    assert extract_display_mode(cache_id) == DefaultProvider().get_by_name("tracing").id
    assert json.loads(cache.fetch(cache_id.low)) == IDENTIFIER
    assert trace.process_map["0"].service_name == "c1 pods"
    for span in trace.spans:
        for ref in span.references:
            assert ref.trace_id == cache_id
    assert backend.queries[0].service_name == "tracing"


def test_find_traces_strips_star_prefix():
    reader = SpanReader(FakeBackend([thumbnail()]))
    traces = reader.find_traces(TraceQueryParameters(service_name="* tree"))
    mode = extract_display_mode(traces[0].spans[0].trace_id)
    assert mode == DefaultProvider().get_by_name("tree").id


def test_find_traces_invalid_mode():
    reader = SpanReader(FakeBackend([thumbnail()]))
    with pytest.raises(ReaderError, match="invalid display mode"):
        reader.find_traces(TraceQueryParameters(service_name="nonexistent"))


def test_find_traces_empty_persists_nothing():
    cache = LocalTraceCache()
    reader = SpanReader(FakeBackend([]), trace_cache=cache)
    assert reader.find_traces(TraceQueryParameters(service_name="tracing")) == []
    assert cache._data == {}


def test_find_trace_ids_match_traces():
    reader = SpanReader(FakeBackend([thumbnail(), thumbnail()]))
    ids = reader.find_trace_ids(TraceQueryParameters(service_name="tracing"))
    assert len(ids) == 2
    assert ids[0] != ids[1]
    assert all(extract_display_mode(i) == DefaultProvider().default_id() for i in ids)


def test_find_trace_ids_wraps_backend_errors():
    reader = SpanReader(FakeBackend(fail=True))
    with pytest.raises(ReaderError, match="FindTrace error"):
        reader.find_trace_ids(TraceQueryParameters(service_name="tracing"))


def test_get_trace_uses_cached_identifier():
    backend = FakeBackend([thumbnail()])
    reader = SpanReader(backend)
    (cache_id,) = reader.find_trace_ids(TraceQueryParameters(service_name="tree"))
    trace = reader.get_trace(cache_id)
    identifier_json, passed_id = backend.gets[0]
    assert json.loads(identifier_json) == IDENTIFIER
    assert passed_id == cache_id
    assert len(trace.spans) == 2


def test_get_trace_unknown_id():
    reader = SpanReader(FakeBackend())
    with pytest.raises(ReaderError, match="cannot lookup trace"):
        reader.get_trace(TraceID(high=CACHE_ID_HIGH_MASK, low=42))