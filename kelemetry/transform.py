"""Applies a display mode to a trace."""

from __future__ import annotations

from kelemetry.tfconfig import DefaultProvider
from kelemetry.tree import SpanTree, Trace


class Transformer:
    """Reshapes traces with the steps of a configuration."""

    def __init__(self, configs: DefaultProvider | None = None) -> None:
        self.configs = configs if configs is not None else DefaultProvider()

    def transform(self, trace: Trace, root_span: int, config_id: int) -> None:
        """Transform ``trace`` in place; unknown ids use the default mode."""
        config = self.configs.get_by_id(config_id)
        if config is None:
            config = self.configs.get_by_id(self.configs.default_id())

        tree = SpanTree(trace)
        if config.use_subtree:
            tree.set_root(root_span)

        for step in config.steps:
            tree.visit(step.visitor)

        trace.spans = tree.get_spans()