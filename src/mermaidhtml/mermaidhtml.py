"""Replace Mermaid code blocks in an HTML tree with rendered diagrams."""
from __future__ import annotations

import asyncio
import logging
import re
import xml.etree.ElementTree as ET
from dataclasses import dataclass, field, fields
from typing import Any, Callable, Dict, List, Optional, Sequence, Set, Tuple, Union

from . import hast
from .hast import Element, Node, Parent, Root
from .renderer import (
    Outcome,
    RenderFunction,
    RenderOptions,
    RendererOptions,
    RenderResult,
    create_mermaid_renderer,
    to_data_uri,
)

logger = logging.getLogger(__name__)

STRATEGIES = ("img-png", "img-svg", "inline-svg", "pre-mermaid")
DEFAULT_STRATEGY = "inline-svg"
COLOR_SCHEMES = ("light", "dark")

CONTAINER_CLASS = "mermaid"
# "lang-mermaid" is the older spelling some highlighters still emit.
INLINE_CLASSES = ("language-mermaid", "lang-mermaid")

MESSAGE_SOURCE = "mermaidhtml"
MESSAGE_RULE_ID = "mermaidhtml"
MESSAGE_URL = "https://mermaid.js.org/intro/syntax-reference.html"

# Text siblings without any word character count as formatting whitespace.
_NON_WHITESPACE = re.compile(r"\w", re.ASCII)
_TOKEN_SEPARATOR = re.compile(r"[ \t\n\r\f]+")

_OPTION_ALIASES = {
    "colorScheme": "color_scheme",
    "errorFallback": "error_fallback",
    "mermaidConfig": "mermaid_config",
    "mmdcPath": "mmdc_path",
    "puppeteerConfig": "puppeteer_config",
}


class StrategyError(ValueError):
    """Raised when an unknown output strategy is configured."""


class MermaidMessage(Exception):
    """Fatal diagnostic for a diagram that could not be rendered.

    ``ancestors`` is the inclusive chain from the document root to the
    element that failed; ``line``/``column`` are filled in when the HTML
    parser recorded a source position for that element.
    """

    def __init__(
        self,
        reason: str,
        *,
        ancestors: Sequence[Parent],
        file: Optional["DocumentFile"] = None,
        source: str = MESSAGE_SOURCE,
        rule_id: str = MESSAGE_RULE_ID,
        url: str = MESSAGE_URL,
        fatal: bool = True,
    ) -> None:
        super().__init__(reason)
        self.reason = reason
        self.ancestors = list(ancestors)
        self.file = file
        self.source = source
        self.rule_id = rule_id
        self.url = url
        self.fatal = fatal
        self.line: Optional[int] = None
        self.column: Optional[int] = None
        node = self.ancestors[-1] if self.ancestors else None
        if isinstance(node, Element) and node.position is not None:
            self.line, self.column = node.position

    def __str__(self) -> str:
        return self.reason


@dataclass
class DocumentFile:
    """The document being processed, as seen by fallbacks and messages."""

    path: Optional[str] = None
    value: Optional[str] = None
    messages: List[MermaidMessage] = field(default_factory=list)

    def message(self, reason: str, *, ancestors: Sequence[Parent]) -> MermaidMessage:
        msg = MermaidMessage(reason, ancestors=ancestors, file=self)
        self.messages.append(msg)
        return msg


ErrorFallback = Callable[[Element, str, BaseException, DocumentFile], Optional[Node]]


@dataclass
class MermaidOptions:
    strategy: Optional[str] = None
    dark: Union[bool, Dict[str, Any], None] = None
    color_scheme: Optional[str] = None
    error_fallback: Optional[ErrorFallback] = None
    prefix: Optional[str] = None
    mermaid_config: Optional[Dict[str, Any]] = None
    css: Optional[str] = None
    mmdc_path: Optional[str] = None
    puppeteer_config: Optional[Dict[str, Any]] = None
    background: Optional[str] = None
    scale: float = 1.0
    concurrency: Optional[int] = None
    timeout: float = 60.0

    @classmethod
    def from_mapping(cls, data: Dict[str, Any]) -> "MermaidOptions":
        """Build options from a JSON-style mapping (camelCase or snake_case keys)."""
        known = {f.name for f in fields(cls)}
        kwargs: Dict[str, Any] = {}
        for key, value in data.items():
            name = _OPTION_ALIASES.get(key, key)
            if name not in known:
                raise ValueError(f"unknown option: {key}")
            kwargs[name] = value
        return cls(**kwargs)

    def renderer_options(self) -> RendererOptions:
        opts = RendererOptions(
            mmdc_path=self.mmdc_path,
            puppeteer_config=self.puppeteer_config,
            background=self.background,
            scale=self.scale,
            timeout=self.timeout,
        )
        if self.concurrency is not None:
            opts.concurrency = self.concurrency
        return opts


@dataclass
class DiagramInstance:
    diagram: str
    ancestors: List[Parent]

    @property
    def node(self) -> Element:
        return self.ancestors[-1]

    @property
    def parent(self) -> Parent:
        return self.ancestors[-2]


@dataclass
class Collection:
    instances: List[DiagramInstance]
    color_scheme: Optional[str] = None


def validate_strategy(strategy: Optional[str] = None) -> str:
    if strategy is None:
        return DEFAULT_STRATEGY
    if strategy in STRATEGIES:
        return strategy
    raise StrategyError(
        f"Expected strategy to be one of {', '.join(STRATEGIES)}, got: {strategy}"
    )


def _parse_tokens(value: str) -> List[str]:
    return [token for token in _TOKEN_SEPARATOR.split(value) if token]


def _class_tokens(value: Any) -> Optional[List[str]]:
    if isinstance(value, str):
        return _parse_tokens(value)
    if isinstance(value, (list, tuple)):
        return list(value)
    return None


def is_mermaid_element(element: Element, strategy: str) -> bool:
    """Whether ``element`` is a Mermaid block for the given strategy.

    ``pre`` needs the ``mermaid`` class, except under ``pre-mermaid`` where
    that markup is already the desired output. ``code`` needs
    ``language-mermaid`` (or ``lang-mermaid``).
    """
    if element.tag_name == "pre":
        if strategy == "pre-mermaid":
            return False
        wanted: Tuple[str, ...] = (CONTAINER_CLASS,)
    elif element.tag_name == "code":
        wanted = INLINE_CLASSES
    else:
        return False

    tokens = _class_tokens(element.properties.get("class"))
    if tokens is None:
        return False
    return any(token in tokens for token in wanted)


def get_color_scheme(element: Element) -> Optional[str]:
    """First ``light``/``dark`` token of a ``color-scheme`` meta element."""
    content = element.properties.get("content")
    if not isinstance(content, str):
        return None
    for token in _parse_tokens(content):
        if token in COLOR_SCHEMES:
            return token
    return None


def _is_color_scheme_meta(element: Element) -> bool:
    return element.tag_name == "meta" and element.properties.get("name") == "color-scheme"


def _resolve_ancestors(node: Element, ancestors: List[Parent]) -> Optional[List[Parent]]:
    parent = ancestors[-1]
    if not hast.is_element(parent, "pre"):
        return ancestors + [node]

    # <code> inside <pre>: the <pre> is replaced, but only if it holds
    # nothing else besides formatting whitespace.
    for child in parent.children:
        if isinstance(child, hast.Text):
            if _NON_WHITESPACE.search(child.value):
                return None
        elif child is not node:
            return None
    return ancestors


def collect_instances(
    tree: Root, strategy: str, color_scheme: Optional[str] = None
) -> Collection:
    """Walk ``tree`` once and collect every Mermaid block without mutating it.

    When ``color_scheme`` is not given, the first ``color-scheme`` meta
    element carrying ``light`` or ``dark`` sets it.
    """
    collection = Collection(instances=[], color_scheme=color_scheme)
    claimed: Set[int] = set()

    def _visit(node: Element, ancestors: List[Parent]) -> None:
        if collection.color_scheme is None and _is_color_scheme_meta(node):
            collection.color_scheme = get_color_scheme(node)

        if not is_mermaid_element(node, strategy):
            return
        inclusive = _resolve_ancestors(node, ancestors)
        if inclusive is None:
            logger.debug("skipping <%s> with non-whitespace siblings", node.tag_name)
            return
        # e.g. <code class="language-mermaid"> inside an already collected <pre class="mermaid">
        if any(id(ancestor) in claimed for ancestor in inclusive):
            return
        claimed.add(id(inclusive[-1]))
        collection.instances.append(
            DiagramInstance(diagram=hast.to_text(node), ancestors=inclusive)
        )

    hast.visit_parents(tree, _visit)
    logger.debug("collected %d mermaid diagram(s)", len(collection.instances))
    return collection


def pre_mermaid_element(diagram: str) -> Element:
    return Element(
        tag_name="pre",
        properties={"class": [CONTAINER_CLASS]},
        children=[hast.Text(diagram)],
    )


def invert_color_scheme(color_scheme: Optional[str]) -> str:
    return "light" if color_scheme == "dark" else "dark"


def _compact(properties: Dict[str, Any]) -> Dict[str, Any]:
    return {key: value for key, value in properties.items() if value is not None}


def to_image_element(
    light: RenderResult, dark: Optional[RenderResult], color_scheme: Optional[str]
) -> Element:
    """Build an ``<img>``, or a ``<picture>`` when a dark render exists.

    The ``<img>`` shows the default color scheme; the ``<source>`` carries
    the other one behind a ``prefers-color-scheme`` media query.
    """
    if color_scheme == "dark":
        img_result = dark or light
        picture_result = light
    else:
        img_result = light
        picture_result = dark

    img = Element(
        tag_name="img",
        properties=_compact(
            {
                "alt": img_result.description or "",
                "height": img_result.height,
                "id": img_result.id,
                "src": to_data_uri(img_result),
                "title": img_result.title,
                "width": img_result.width,
            }
        ),
    )
    if dark is None:
        return img

    source = Element(
        tag_name="source",
        properties=_compact(
            {
                "height": picture_result.height,
                "id": picture_result.id,
                "media": f"(prefers-color-scheme: {invert_color_scheme(color_scheme)})",
                "srcset": to_data_uri(picture_result, is_srcset=True),
                "width": picture_result.width,
            }
        ),
    )
    return Element(tag_name="picture", children=[source, img])


def apply_replacements(pending: Sequence[Tuple[List[Parent], Optional[Node]]]) -> None:
    """Swap each recorded node for its replacement, or drop it for ``None``.

    Indices are looked up by identity at application time, so several
    replacements inside one parent do not disturb each other.
    """
    for ancestors, replacement in pending:
        node = ancestors[-1]
        parent = ancestors[-2]
        idx = hast.index_of(parent.children, node)
        if replacement is None:
            del parent.children[idx]
        else:
            parent.children[idx] = replacement


class MermaidTransformer:
    """Reusable transformation configured once with :class:`MermaidOptions`."""

    def __init__(
        self,
        options: Optional[MermaidOptions] = None,
        *,
        create_renderer: Callable[[RendererOptions], RenderFunction] = create_mermaid_renderer,
    ) -> None:
        self.options = options or MermaidOptions()
        self.strategy = validate_strategy(self.options.strategy)
        if self.options.color_scheme is not None and self.options.color_scheme not in COLOR_SCHEMES:
            raise ValueError(
                f"Expected color scheme to be one of {', '.join(COLOR_SCHEMES)}, "
                f"got: {self.options.color_scheme}"
            )
        self._create_renderer = create_renderer
        self._render: Optional[RenderFunction] = None

    @property
    def dark_requested(self) -> bool:
        # An empty mapping still asks for a dark batch, rendered with no config overrides.
        return self.options.dark is not None and self.options.dark is not False

    @property
    def dark_enabled(self) -> bool:
        return self.dark_requested and self.strategy in ("img-png", "img-svg")

    async def transform(self, tree: Root, file: Optional[DocumentFile] = None) -> Root:
        collection = self._prepare(tree)
        if collection is not None:
            await self._render_and_apply(collection, file or DocumentFile())
        return tree

    def transform_sync(self, tree: Root, file: Optional[DocumentFile] = None) -> Root:
        """Run :meth:`transform` to completion; ``pre-mermaid`` needs no event loop."""
        collection = self._prepare(tree)
        if collection is not None:
            asyncio.run(self._render_and_apply(collection, file or DocumentFile()))
        return tree

    def _prepare(self, tree: Root) -> Optional[Collection]:
        """Collect diagrams; return ``None`` when no rendering is left to do."""
        collection = collect_instances(tree, self.strategy, self.options.color_scheme)
        if not collection.instances:
            return None

        if self.strategy == "pre-mermaid":
            apply_replacements(
                [
                    (instance.ancestors, pre_mermaid_element(instance.diagram))
                    for instance in collection.instances
                ]
            )
            return None
        return collection

    def _renderer(self) -> RenderFunction:
        if self._render is None:
            self._render = self._create_renderer(self.options.renderer_options())
        return self._render

    async def _render_batches(
        self, diagrams: List[str]
    ) -> Tuple[List[Outcome], Optional[List[Outcome]]]:
        render = self._renderer()
        screenshot = self.strategy == "img-png"
        batches = [
            render(
                diagrams,
                RenderOptions(
                    screenshot=screenshot,
                    prefix=self.options.prefix,
                    mermaid_config=self.options.mermaid_config,
                    css=self.options.css,
                ),
            )
        ]
        if self.dark_enabled:
            dark = self.options.dark
            batches.append(
                render(
                    diagrams,
                    RenderOptions(
                        screenshot=screenshot,
                        prefix=f"{self.options.prefix or 'mermaid'}-dark",
                        mermaid_config={"theme": "dark"} if dark is True else dark,
                        css=self.options.css,
                    ),
                )
            )
        elif self.dark_requested:
            logger.debug("dark mode is not supported by strategy %s; ignoring", self.strategy)

        results = await asyncio.gather(*batches)
        light = results[0]
        dark_results = results[1] if len(results) > 1 else None
        return light, dark_results

    async def _render_and_apply(self, collection: Collection, file: DocumentFile) -> None:
        instances = collection.instances
        light_results, dark_results = await self._render_batches(
            [instance.diagram for instance in instances]
        )

        pending: List[Tuple[List[Parent], Optional[Node]]] = []
        for index, instance in enumerate(instances):
            light = light_results[index]
            dark = dark_results[index] if dark_results is not None else None
            replacement = self._merge(instance, light, dark, collection.color_scheme, file)
            pending.append((instance.ancestors, replacement))

        # Only reached when no instance raised, so the tree is never half-rendered.
        apply_replacements(pending)

    def _merge(
        self,
        instance: DiagramInstance,
        light: Outcome,
        dark: Optional[Outcome],
        color_scheme: Optional[str],
        file: DocumentFile,
    ) -> Optional[Node]:
        if isinstance(light, BaseException):
            return self._handle_error(light, instance, file)
        if isinstance(dark, BaseException):
            return self._handle_error(dark, instance, file)

        if self.strategy == "inline-svg":
            try:
                return hast.from_svg(light.svg)
            except ET.ParseError as exc:
                return self._handle_error(exc, instance, file)
        return to_image_element(light, dark, color_scheme)

    def _handle_error(
        self, error: BaseException, instance: DiagramInstance, file: DocumentFile
    ) -> Optional[Node]:
        if self.options.error_fallback is not None:
            logger.warning("mermaid diagram failed, using fallback: %s", error)
            return self.options.error_fallback(instance.node, instance.diagram, error, file)

        message = file.message(str(error), ancestors=instance.ancestors)
        raise message from error


async def render_html_async(
    html: str,
    options: Optional[MermaidOptions] = None,
    *,
    path: Optional[str] = None,
    create_renderer: Callable[[RendererOptions], RenderFunction] = create_mermaid_renderer,
) -> str:
    transformer = MermaidTransformer(options, create_renderer=create_renderer)
    tree = hast.from_html(html)
    await transformer.transform(tree, DocumentFile(path=path, value=html))
    return hast.to_html(tree)


def render_html(
    html: str,
    options: Optional[MermaidOptions] = None,
    *,
    path: Optional[str] = None,
    create_renderer: Callable[[RendererOptions], RenderFunction] = create_mermaid_renderer,
) -> str:
    """Parse ``html``, render its Mermaid blocks and serialize the result."""
    transformer = MermaidTransformer(options, create_renderer=create_renderer)
    tree = hast.from_html(html)
    transformer.transform_sync(tree, DocumentFile(path=path, value=html))
    return hast.to_html(tree)


__all__ = [
    "COLOR_SCHEMES",
    "Collection",
    "DEFAULT_STRATEGY",
    "DiagramInstance",
    "DocumentFile",
    "ErrorFallback",
    "MermaidMessage",
    "MermaidOptions",
    "MermaidTransformer",
    "STRATEGIES",
    "StrategyError",
    "apply_replacements",
    "collect_instances",
    "get_color_scheme",
    "invert_color_scheme",
    "is_mermaid_element",
    "pre_mermaid_element",
    "render_html",
    "render_html_async",
    "to_image_element",
    "validate_strategy",
]
