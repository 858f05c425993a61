"""Trace search and lookup for the query frontend."""

from __future__ import annotations

import logging
import random
from dataclasses import dataclass, field
from typing import Any, Protocol

from kelemetry.backend import BackendError, TraceQueryParameters, TraceThumbnail
from kelemetry.tfconfig import DefaultProvider
from kelemetry.tracecache import Entry, LocalTraceCache, TraceCacheError
from kelemetry.transform import Transformer
from kelemetry.tree import Process, Trace, TraceID

CACHE_ID_HIGH_MASK = 0xFF00000000E1E3E7
CACHE_ID_HIGH_BIT_SHIFT = 6 * 4

_UINT32 = 0xFFFF_FFFF
_UINT64 = 0xFFFF_FFFF_FFFF_FFFF

_logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Operation:
    """An operation offered for search; here, one per cluster."""

    span_kind: str
    name: str


@dataclass
class StaticClusterList:
    """Cluster names fixed by configuration."""

    clusters: list[str] = field(default_factory=list)

    def list(self) -> list[str]:
        return self.clusters


class ReaderError(Exception):
    """Raised when traces cannot be searched or loaded."""


class _Backend(Protocol):
    def list(self, params: TraceQueryParameters) -> list[TraceThumbnail]: ...

    def get(self, identifier_json: str, trace_id: TraceID) -> tuple[Trace, int]: ...


class _TraceCache(Protocol):
    def persist(self, entries: list[Entry]) -> None: ...

    def fetch(self, low_id: int) -> str: ...


class _ClusterList(Protocol):
    def list(self) -> list[str]: ...


def generate_cache_id(mode: int) -> TraceID:
    """A fresh cache id: random low half, display mode encoded in the high half."""
    high = (CACHE_ID_HIGH_MASK | ((mode & _UINT32) << CACHE_ID_HIGH_BIT_SHIFT)) & _UINT64
    return TraceID(high=high, low=random.getrandbits(64))


def extract_display_mode(cache_id: TraceID) -> int:
    """The display mode id encoded in a cache id."""
    return (cache_id.high >> CACHE_ID_HIGH_BIT_SHIFT) & _UINT32


class SpanReader:
    """Answers trace queries, caching identifiers under generated trace ids."""

    def __init__(
        self,
        backend: _Backend,
        trace_cache: _TraceCache | None = None,
        cluster_list: _ClusterList | None = None,
        transformer: Transformer | None = None,
        transform_configs: DefaultProvider | None = None,
    ) -> None:
        self.backend = backend
        self.trace_cache = trace_cache if trace_cache is not None else LocalTraceCache()
        self.cluster_list = cluster_list if cluster_list is not None else StaticClusterList()
        self.transformer = transformer if transformer is not None else Transformer(transform_configs)
        self.transform_configs = (
            transform_configs if transform_configs is not None else self.transformer.configs
        )

    def get_services(self) -> list[str]:
        """Display mode names, the default first and the rest sorted."""
        default = self.transform_configs.default_name()
        others = sorted(name for name in self.transform_configs.names() if name != default)
        services = [default, *others]
        _logger.info("query display mode list: %s", services)
        return services

    def get_operations(self, span_kind: str = "") -> list[Operation]:
        return [Operation(span_kind=span_kind, name=name) for name in self.cluster_list.list()]

    def find_trace_ids(self, query: TraceQueryParameters) -> list[TraceID]:
        try:
            traces = self.find_traces(query)
        except (ReaderError, BackendError, TraceCacheError) as exc:
            raise ReaderError(f"FindTrace error: {exc}") from exc
        return [trace.spans[0].trace_id for trace in traces if trace.spans]

    def find_traces(self, query: TraceQueryParameters) -> list[Trace]:
        thumbnails = self.backend.list(query)

        config_name = query.service_name.removeprefix("* ")
        config = self.transform_configs.get_by_name(config_name)
        if config is None:
            raise ReaderError(f'invalid display mode "{query.service_name}"')

        entries: list[Entry] = []
        traces: list[Trace] = []
        for thumbnail in thumbnails:
            cache_id = generate_cache_id(config.id)
            entries.append(Entry(low_id=cache_id.low, identifier=thumbnail.identifier))

            for span in thumbnail.spans:
                span.trace_id = cache_id
                for ref in span.references:
                    ref.trace_id = cache_id

            trace = Trace(
                spans=thumbnail.spans,
                process_map={
                    "0": Process(service_name=f"{thumbnail.cluster} {thumbnail.resource}")
                },
            )
            self.transformer.transform(trace, thumbnail.root_span, extract_display_mode(cache_id))
            traces.append(trace)

        if entries:
            try:
                self.trace_cache.persist(entries)
            except TraceCacheError as exc:
                raise ReaderError(f"cannot persist trace cache: {exc}") from exc

        return traces

    def get_trace(self, cache_id: TraceID) -> Trace:
        try:
            identifier: Any = self.trace_cache.fetch(cache_id.low)
        except TraceCacheError as exc:
            raise ReaderError(f"cannot lookup trace: {exc}") from exc

        try:
            trace, root_span = self.backend.get(identifier, cache_id)
        except BackendError as exc:
            raise ReaderError(f"cannot fetch trace pointed by the cache: {exc}") from exc

        self.transformer.transform(trace, root_span, extract_display_mode(cache_id))
        _logger.info("query trace tree: %d transformed spans", len(trace.spans))
        return trace