"""Public API for mermaidhtml."""
from .mermaidhtml import (
    DocumentFile,
    MermaidMessage,
    MermaidOptions,
    MermaidTransformer,
    StrategyError,
    render_html,
    render_html_async,
)
from .renderer import RenderError, RenderOptions, RenderResult, create_mermaid_renderer

__all__ = [
    "DocumentFile",
    "MermaidMessage",
    "MermaidOptions",
    "MermaidTransformer",
    "RenderError",
    "RenderOptions",
    "RenderResult",
    "StrategyError",
    "create_mermaid_renderer",
    "render_html",
    "render_html_async",
]
