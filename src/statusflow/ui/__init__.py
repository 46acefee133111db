"""Operator-facing surfaces: the argparse CLI and its plain-text renderer."""

from statusflow.ui.render import CLIRenderer, create_renderer, state_label

__all__ = ["CLIRenderer", "create_renderer", "state_label"]
