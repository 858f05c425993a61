"""Display-mode configurations for trace transformation."""

from __future__ import annotations

from dataclasses import dataclass, field

from kelemetry.steps import (
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
from kelemetry.tree import TreeVisitor

EXCLUSIVE_ID_BIT = 0x0100_0000


@dataclass
class Step:
    """One pass over the span tree."""

    visitor: TreeVisitor


@dataclass
class Config:
    """A named display mode.

    ``id`` is encoded into cache ids; ``use_subtree`` limits the display to
    the spans below the matched span.
    """

    id: int
    name: str
    use_subtree: bool = False
    steps: list[Step] = field(default_factory=list)


def _extract_non_object(level: str) -> bool:
    return level != "object"


def _collapse_step() -> Step:
    classes = AuditDiffClassification(
        AuditDiffClass(should_display=True, name="diff", priority=0)
    ).add_class(
        AuditDiffClass(should_display=True, name="verbose diff", priority=10),
        [
            "metadata.resourceVersion",
            "metadata.generation",
            "metadata.annotations.latest-update",
            "metadata.annotations.tce.kubernetes.io/lastUpdate",
        ],
    )
    return Step(
        CollapseNestingVisitor(
            should_collapse=lambda trace_source: True,
            tag_mappings={
                "audit": [],
                "event": [
                    TagMapping(from_span_tag="action", to_log_field="action"),
                    TagMapping(from_span_tag="source", to_log_field="source"),
                ],
            },
            audit_diff_classes=classes,
            log_type_mapping={
                LogType.EVENT_MESSAGE: "message",
                LogType.OBJECT_SNAPSHOT: "snapshot",
                LogType.REAL_ERROR: "error",
                LogType.REAL_VERBOSE: "",
                LogType.KELEMETRY_ERROR: "_debug",
            },
        )
    )


class DefaultProvider:
    """Holds the built-in display modes and their exclusive variants."""

    def __init__(self) -> None:
        self._configs: dict[int, Config] = {}
        self._name_to_id: dict[str, int] = {}
        self._default_id = 0x2000_0000
        self._register_defaults()

    def register(self, config: Config) -> None:
        self._configs[config.id] = config
        self._name_to_id[config.name] = config.id

    def _register_defaults(self) -> None:
        self.register(
            Config(
                id=0x0000_0000,
                name="tree",
                steps=[
                    Step(ReplaceNameVisitor()),
                    Step(ClusterNameVisitor()),
                    Step(PruneTagsVisitor()),
                ],
            )
        )
        self.register(
            Config(
                id=0x1000_0000,
                name="timeline",
                steps=[
                    Step(ReplaceNameVisitor()),
                    Step(ExtractNestingVisitor(matches_nest_level=lambda level: True)),
                    Step(ClusterNameVisitor()),
                    Step(PruneTagsVisitor()),
                ],
            )
        )
        self.register(
            Config(
                id=0x2000_0000,
                name="tracing",
                steps=[
                    Step(ReplaceNameVisitor()),
                    Step(ExtractNestingVisitor(matches_nest_level=_extract_non_object)),
                    _collapse_step(),
                    Step(CompactDurationVisitor()),
                    Step(ClusterNameVisitor()),
                    Step(PruneTagsVisitor()),
                ],
            )
        )
        self.register(
            Config(
                id=0x3000_0000,
                name="grouped",
                steps=[
                    Step(ReplaceNameVisitor()),
                    Step(ExtractNestingVisitor(matches_nest_level=_extract_non_object)),
                    _collapse_step(),
                    Step(
                        GroupByTraceSourceVisitor(
                            should_be_grouped=lambda trace_source: trace_source != "event"
                        )
                    ),
                    Step(CompactDurationVisitor()),
                    Step(ClusterNameVisitor()),
                    Step(PruneTagsVisitor()),
                ],
            )
        )

        exclusive = [
            Config(
                id=config.id | EXCLUSIVE_ID_BIT,
                name=f"{config.name} (exclusive)",
                use_subtree=True,
                steps=list(config.steps),
            )
            for config in self._configs.values()
        ]
        for config in exclusive:
            self.register(config)

    def names(self) -> list[str]:
        return list(self._name_to_id)

    def default_name(self) -> str:
        return self._configs[self._default_id].name

    def default_id(self) -> int:
        return self._default_id

    def get_by_name(self, name: str) -> Config | None:
        config_id = self._name_to_id.get(name)
        if config_id is None:
            return None
        return self._configs.get(config_id)

    def get_by_id(self, config_id: int) -> Config | None:
        return self._configs.get(config_id)