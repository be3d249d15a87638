"""Render Mermaid diagrams through the Mermaid CLI (``mmdc``)."""
from __future__ import annotations

import asyncio
import base64
import json
import logging
import math
import os
import re
import shutil
import tempfile
import weakref
import urllib.parse
import xml.etree.ElementTree as ET
from dataclasses import dataclass, field
from io import BytesIO
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple, Union

from PIL import Image

logger = logging.getLogger(__name__)

_ERROR_LINE = re.compile(r"^\s*(?:\w*Error|Parse error):\s*(.+)$")


class RenderError(Exception):
    """Raised (and returned as an outcome) when one diagram fails to render."""


@dataclass
class RenderResult:
    svg: str
    id: str
    screenshot: Optional[bytes] = None
    width: Optional[int] = None
    height: Optional[int] = None
    title: Optional[str] = None
    description: Optional[str] = None


@dataclass
class RenderOptions:
    """Per-batch options."""

    screenshot: bool = False
    prefix: Optional[str] = None
    mermaid_config: Optional[Dict[str, Any]] = None
    css: Optional[str] = None


@dataclass
class RendererOptions:
    """Options shared by every batch of one renderer."""

    mmdc_path: Optional[str] = None
    puppeteer_config: Optional[Dict[str, Any]] = None
    background: Optional[str] = None
    scale: float = 1.0
    concurrency: int = field(default_factory=lambda: os.cpu_count() or 1)
    timeout: float = 60.0


Outcome = Union[RenderResult, BaseException]
RenderFunction = Callable[[Sequence[str], RenderOptions], Awaitable[List[Outcome]]]


def find_mmdc(configured: Optional[str] = None) -> Optional[str]:
    """Locate the Mermaid CLI: explicit path, ``MMDC_PATH``, then ``PATH``."""
    if configured:
        return configured
    env_path = os.environ.get("MMDC_PATH")
    if env_path and os.path.isfile(env_path):
        return env_path
    return shutil.which("mmdc")


def create_mermaid_renderer(options: Optional[RendererOptions] = None) -> RenderFunction:
    """Return a coroutine function rendering a batch of diagrams.

    Outcomes come back in input order. A diagram that fails yields its
    exception in place of a ``RenderResult``; the batch itself never raises.

    ``concurrency`` bounds the diagrams in flight across every batch running
    on the same event loop, so light and dark batches share one limit. A
    diagram that needs a screenshot runs ``mmdc`` twice (SVG, then PNG)
    while holding a single slot.
    """
    opts = options or RendererOptions()
    limits: weakref.WeakKeyDictionary = weakref.WeakKeyDictionary()

    def _limit() -> asyncio.Semaphore:
        loop = asyncio.get_running_loop()
        semaphore = limits.get(loop)
        if semaphore is None:
            semaphore = limits[loop] = asyncio.Semaphore(max(opts.concurrency, 1))
        return semaphore

    async def render(diagrams: Sequence[str], render_options: RenderOptions) -> List[Outcome]:
        semaphore = _limit()
        prefix = render_options.prefix or "mermaid"

        async def _one(index: int, diagram: str) -> RenderResult:
            async with semaphore:
                return await _render_one(diagram, f"{prefix}-{index}", render_options, opts)

        logger.debug("rendering %d diagram(s) with prefix %s", len(diagrams), prefix)
        return list(
            await asyncio.gather(
                *(_one(index, diagram) for index, diagram in enumerate(diagrams)),
                return_exceptions=True,
            )
        )

    return render


async def _render_one(
    diagram: str, svg_id: str, render_options: RenderOptions, opts: RendererOptions
) -> RenderResult:
    mmdc = find_mmdc(opts.mmdc_path)
    if not mmdc:
        raise RenderError(
            "Mermaid CLI (mmdc) not found; install @mermaid-js/mermaid-cli or set MMDC_PATH"
        )
    with tempfile.TemporaryDirectory(prefix="mermaidhtml-") as td:
        workdir = Path(td)
        source = workdir / "diagram.mmd"
        source.write_text(diagram, encoding="utf-8")
        base_args = _mmdc_args(mmdc, source, svg_id, render_options, opts, workdir)

        svg_path = workdir / "diagram.svg"
        await _run_mmdc(base_args + ["-o", str(svg_path)], opts.timeout)
        svg = svg_path.read_text(encoding="utf-8")

        screenshot = None
        if render_options.screenshot:
            png_path = workdir / "diagram.png"
            await _run_mmdc(
                base_args + ["-o", str(png_path), "-s", _fmt(opts.scale)], opts.timeout
            )
            screenshot = png_path.read_bytes()

    width, height, title, description = _svg_metadata(svg)
    if screenshot is not None and (width is None or height is None):
        width, height = png_size(screenshot, opts.scale)
    return RenderResult(
        svg=svg,
        id=svg_id,
        screenshot=screenshot,
        width=width,
        height=height,
        title=title,
        description=description,
    )


def _mmdc_args(
    mmdc: str,
    source: Path,
    svg_id: str,
    render_options: RenderOptions,
    opts: RendererOptions,
    workdir: Path,
) -> List[str]:
    args = [mmdc, "-q", "-i", str(source), "-I", svg_id]
    if render_options.mermaid_config:
        config_path = workdir / "mermaid-config.json"
        config_path.write_text(json.dumps(render_options.mermaid_config), encoding="utf-8")
        args += ["-c", str(config_path)]
    if render_options.css:
        css_path = workdir / "mermaid.css"
        css_path.write_text(render_options.css, encoding="utf-8")
        args += ["-C", str(css_path)]
    if opts.puppeteer_config:
        puppeteer_path = workdir / "puppeteer-config.json"
        puppeteer_path.write_text(json.dumps(opts.puppeteer_config), encoding="utf-8")
        args += ["-p", str(puppeteer_path)]
    if opts.background:
        args += ["-b", opts.background]
    return args


async def _run_mmdc(args: List[str], timeout: float) -> None:
    logger.debug("running %s", " ".join(args))
    try:
        proc = await asyncio.create_subprocess_exec(
            *args,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as exc:
        raise RenderError(f"failed to execute Mermaid CLI: {exc}") from exc
    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except asyncio.TimeoutError as exc:
        proc.kill()
        await proc.wait()
        raise RenderError(f"Mermaid CLI timed out after {_fmt(timeout)}s") from exc
    if proc.returncode != 0:
        detail = stderr.decode("utf-8", errors="replace") or stdout.decode("utf-8", errors="replace")
        raise RenderError(mmdc_error_reason(detail))


def mmdc_error_reason(output: str) -> str:
    """Pick the Mermaid error message out of ``mmdc`` output."""
    for line in output.splitlines():
        match = _ERROR_LINE.match(line)
        if match:
            return match.group(1).strip()
    detail = output.strip()
    if len(detail) > 240:
        detail = detail[:240] + "..."
    return detail or "unknown Mermaid CLI error"


def _svg_metadata(
    svg: str,
) -> Tuple[Optional[int], Optional[int], Optional[str], Optional[str]]:
    try:
        root = ET.fromstring(svg)
    except ET.ParseError:
        return None, None, None, None

    width = height = None
    view_box = (root.get("viewBox") or "").replace(",", " ").split()
    if len(view_box) == 4:
        try:
            width = math.ceil(float(view_box[2]))
            height = math.ceil(float(view_box[3]))
        except ValueError:
            width = height = None

    title = description = None
    for child in root:
        local = _local_name(child.tag) if isinstance(child.tag, str) else ""
        if local == "title" and title is None:
            title = "".join(child.itertext()).strip() or None
        elif local == "desc" and description is None:
            description = "".join(child.itertext()).strip() or None
    return width, height, title, description


def png_size(blob: bytes, scale: float = 1.0) -> Tuple[int, int]:
    """Return the CSS pixel size of a PNG rendered at ``scale``."""
    with Image.open(BytesIO(blob)) as image:
        width, height = image.size
    if scale and scale != 1.0:
        return math.ceil(width / scale), math.ceil(height / scale)
    return width, height


def _collapse_whitespace(value: str) -> str:
    return re.sub(r"\s+", " ", value.strip())


def _special_hex(match: "re.Match[str]") -> str:
    code = match.group(0)
    return {"%20": " ", "%3D": "=", "%3A": ":", "%2F": "/"}.get(code, code.lower())


def svg_to_data_uri(svg: str) -> str:
    """Encode SVG markup as a compact, mostly unescaped ``data:`` URI."""
    if svg.startswith("\ufeff"):
        svg = svg[1:]
    body = _collapse_whitespace(svg).replace('"', "'")
    encoded = urllib.parse.quote(body, safe="-_.!~*'()")
    return "data:image/svg+xml," + re.sub(r"%[0-9A-F]{2}", _special_hex, encoded)


def svg_to_srcset(svg: str) -> str:
    """Like :func:`svg_to_data_uri`, but safe inside a ``srcset`` list."""
    return svg_to_data_uri(svg).replace(" ", "%20")


def png_to_data_uri(blob: bytes) -> str:
    return "data:image/png;base64," + base64.b64encode(blob).decode("ascii")


def to_data_uri(result: RenderResult, is_srcset: bool = False) -> str:
    if result.screenshot:
        return png_to_data_uri(result.screenshot)
    return svg_to_srcset(result.svg) if is_srcset else svg_to_data_uri(result.svg)


def _fmt(value: float) -> str:
    if math.isclose(value, round(value)):
        return str(int(round(value)))
    return f"{value:.3f}".rstrip("0").rstrip(".")


def _local_name(tag: str) -> str:
    if tag.startswith("{"):
        return tag.split("}", 1)[1]
    return tag


__all__ = [
    "Outcome",
    "RenderError",
    "RenderFunction",
    "RenderOptions",
    "RenderResult",
    "RendererOptions",
    "create_mermaid_renderer",
    "find_mmdc",
    "mmdc_error_reason",
    "png_size",
    "png_to_data_uri",
    "svg_to_data_uri",
    "svg_to_srcset",
    "to_data_uri",
]
