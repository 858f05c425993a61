"""Trace listing and lookup on top of a span store."""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Protocol

from kelemetry.tree import Process, Span, SpanTree, Trace, TraceID, find_tag


@dataclass
class TraceQueryParameters:
    """Search criteria for traces."""

    service_name: str = ""
    operation_name: str = ""
    tags: dict[str, str] = field(default_factory=dict)
    start_time_min: datetime | None = None
    start_time_max: datetime | None = None
    duration_min: timedelta | None = None
    duration_max: timedelta | None = None
    num_traces: int = 0


@dataclass
class TraceThumbnail:
    """A preview of one object trace found by a search.

    ``identifier`` is a JSON-serialisable value that locates the trace again
    in a later ``get`` call.
    """

    identifier: Any
    cluster: str
    resource: str
    spans: list[Span] = field(default_factory=list)
    root_span: int = 0


class BackendError(Exception):
    """Raised when traces cannot be listed or fetched."""


class _SpanStore(Protocol):
    def find_traces(self, params: TraceQueryParameters) -> list[Trace]: ...

    def get_trace(self, trace_id: TraceID) -> Trace: ...


def _tag_str(span: Span, key: str) -> str:
    tag = find_tag(span.tags, key)
    return tag.v_str if tag is not None else ""


def filter_spans_by_tags(spans: list[Span], tags: dict[str, str]) -> list[Span]:
    """Keep spans whose tags agree with every filter tag they carry.

    A filter value containing ``*`` is matched as a regular expression.
    """
    if not tags:
        return spans

    result: list[Span] = []
    for span in spans:
        if all(_tag_matches(span, key, wanted) for key, wanted in tags.items()):
            result.append(span)
    return result


def _tag_matches(span: Span, key: str, wanted: str) -> bool:
    tag = find_tag(span.tags, key)
    if tag is None:
        return True
    if "*" in wanted:
        try:
            return re.search(wanted, tag.v_str) is not None
        except re.error:
            return False
    return tag.v_str == wanted


def get_root_spans(spans: list[Span]) -> list[Span]:
    """Spans without a parent, or whose parent is not among ``spans``."""
    known = {span.span_id for span in spans}
    return [
        span
        for span in spans
        if not span.references or span.references[0].span_id not in known
    ]


class StorageBackend:
    """Lists object traces and fetches them back from a span store."""

    def __init__(self, reader: _SpanStore) -> None:
        self.reader = reader

    def list(self, params: TraceQueryParameters) -> list[TraceThumbnail]:
        filter_tags = dict(params.tags)
        if params.operation_name:
            filter_tags["cluster"] = params.operation_name

        new_params = TraceQueryParameters(
            service_name="object",
            tags=filter_tags,
            start_time_min=params.start_time_min,
            start_time_max=params.start_time_max,
            duration_min=params.duration_min,
            duration_max=params.duration_max,
            num_traces=params.num_traces,
        )

        try:
            traces = self.reader.find_traces(new_params)
        except Exception as exc:
            raise BackendError(f"find traces from backend err: {exc}") from exc

        thumbnails: list[TraceThumbnail] = []
        for trace in traces:
            for span in trace.spans:
                span.process = Process(service_name=_tag_str(span, "resource"))
                parts = span.operation_name.split("/")
                if len(parts) > 1:
                    span.operation_name = parts[1]

            trace_id = str(trace.spans[0].trace_id) if trace.spans else ""

            trace_spans = trace.spans
            if "exclusive" in params.service_name:
                trace_spans = filter_spans_by_tags(trace.spans, new_params.tags)

            for root in get_root_spans(trace_spans):
                cluster = _tag_str(root, "cluster")
                resource = _tag_str(root, "resource")
                root.process = Process(service_name=f"{cluster} {resource}")
                root.references = []

                tree = SpanTree(trace)
                tree.set_root(root.span_id)

                thumbnails.append(
                    TraceThumbnail(
                        identifier={"traceId": trace_id, "spanId": root.span_id},
                        cluster=cluster,
                        resource=resource,
                        spans=tree.get_spans(),
                        root_span=root.span_id,
                    )
                )

        return thumbnails

    def get(self, identifier_json: str | bytes, trace_id: TraceID) -> tuple[Trace, int]:
        """Fetch the trace an identifier points to, with its root span id."""
        try:
            identifier = json.loads(identifier_json)
            if not isinstance(identifier, dict):
                raise ValueError("identifier is not an object")
            raw_trace_id = identifier.get("traceId", "")
            span_id = identifier.get("spanId", 0)
            if not isinstance(raw_trace_id, str) or isinstance(span_id, bool) or not isinstance(span_id, int):
                raise ValueError("identifier fields have wrong types")
        except ValueError as exc:
            raise BackendError(f"persisted invalid trace identifier: {exc}") from exc

        try:
            stored_trace_id = TraceID.from_string(raw_trace_id)
        except ValueError as exc:
            raise BackendError(f"failed to convert the provided trace id: {exc}") from exc

        try:
            trace = self.reader.get_trace(stored_trace_id)
        except Exception as exc:
            raise BackendError(f"failed to get trace from backend: {exc}") from exc

        for span in trace.spans:
            cluster = _tag_str(span, "cluster")
            resource = _tag_str(span, "resource")
            if span.span_id == span_id:
                span.process = Process(service_name=f"{cluster} {resource}")
            else:
                span.process = Process(service_name=resource)

        return trace, span_id