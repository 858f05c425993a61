"""Decides which objects and audit events are traced."""

from __future__ import annotations

import logging
import re
import threading
from dataclasses import dataclass
from typing import Callable, Iterable, Mapping

EXCLUDE_REGEX_KEY = "exclude-regex"

DEFAULT_EXCLUDED_TYPES = (
    "events",
    "events.k8s.io/events",
    "coordination.k8s.io/leases",
)
DEFAULT_EXCLUDED_USER_AGENTS = (
    "/leader-election",
    "local-path-provisioner/",
)

_logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GroupResource:
    group: str
    resource: str


@dataclass(frozen=True)
class GroupVersionResource:
    group: str
    version: str
    resource: str

    @property
    def group_resource(self) -> GroupResource:
        return GroupResource(self.group, self.resource)


@dataclass(frozen=True)
class AuditObjectRef:
    api_group: str = ""
    api_version: str = ""
    resource: str = ""
    namespace: str = ""
    name: str = ""


@dataclass(frozen=True)
class AuditEvent:
    object_ref: AuditObjectRef | None = None
    user_agent: str = ""


@dataclass(frozen=True)
class FilterConfig:
    """Settings read from the filter ConfigMap."""

    exclude_regex: re.Pattern[str] | None = None


def parse_excluded_types(types: Iterable[str]) -> set[GroupResource]:
    """Parse ``resource`` or ``group/resource`` entries."""
    parsed: set[GroupResource] = set()
    for entry in types:
        parts = entry.split("/")
        if len(parts) == 1:
            parsed.add(GroupResource("", parts[0]))
        elif len(parts) == 2:
            parsed.add(GroupResource(parts[0], parts[1]))
        else:
            raise ValueError(f'cannot parse "{entry}" as a GVR')
    return parsed


def parse_config_map(data: Mapping[str, str]) -> FilterConfig:
    """Build a config from ConfigMap data; raises ``re.error`` on a bad pattern."""
    pattern = data.get(EXCLUDE_REGEX_KEY)
    if pattern is None:
        return FilterConfig()
    return FilterConfig(exclude_regex=re.compile(pattern))


def _log_invalid_config(data: Mapping[str, str], error: Exception) -> None:
    _logger.warning("InvalidConfig: %s", error)


class Filter:
    """Excludes resource types, user agents and objects matching a pattern."""

    def __init__(
        self,
        excluded_types: Iterable[str] = DEFAULT_EXCLUDED_TYPES,
        excluded_user_agents: Iterable[str] = DEFAULT_EXCLUDED_USER_AGENTS,
        on_invalid_config: Callable[[Mapping[str, str], Exception], None] = _log_invalid_config,
    ) -> None:
        self.excluded_types = parse_excluded_types(excluded_types)
        self.excluded_user_agents = list(excluded_user_agents)
        self._on_invalid_config = on_invalid_config
        self._lock = threading.Lock()
        self._config: FilterConfig | None = None

    @property
    def config(self) -> FilterConfig | None:
        with self._lock:
            return self._config

    def set_config(self, data: Mapping[str, str] | None) -> None:
        """Replace the config from ConfigMap data; None or invalid data clears it."""
        config: FilterConfig | None = None
        if data is not None:
            try:
                config = parse_config_map(data)
            except re.error as exc:
                self._on_invalid_config(data, exc)
        with self._lock:
            self._config = config

    def test_gvr(self, gvr: GroupVersionResource) -> bool:
        return gvr.group_resource not in self.excluded_types

    def test_audit_event(self, event: AuditEvent) -> bool:
        ref = event.object_ref
        if ref is None:
            return False

        if not self.test_gvr(GroupVersionResource(ref.api_group, ref.api_version, ref.resource)):
            return False

        config = self.config
        if config is not None and config.exclude_regex is not None:
            subject = f"{ref.api_group}/{ref.api_version}/{ref.resource}/{ref.namespace}/{ref.name}"
            if config.exclude_regex.search(subject):
                return False

        return not any(banned in event.user_agent for banned in self.excluded_user_agents)