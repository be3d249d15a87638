from __future__ import annotations

import asyncio
import os
import stat
import sys
import tempfile
import unittest
from io import BytesIO
from pathlib import Path
from unittest import mock

TESTS_DIR = Path(__file__).resolve().parent
PROJECT_ROOT = TESTS_DIR.parent
sys.path.insert(0, str(PROJECT_ROOT / "src"))

from PIL import Image

from mermaidhtml import hast, renderer
from mermaidhtml.renderer import (
    RenderError,
    RenderOptions,
    RendererOptions,
    RenderResult,
    create_mermaid_renderer,
    mmdc_error_reason,
    png_size,
    png_to_data_uri,
    svg_to_data_uri,
    svg_to_srcset,
    to_data_uri,
)

FAKE_MMDC = """#!/bin/sh
out=""
id=""
src=""
while [ $# -gt 0 ]; do
  case "$1" in
    -o) out="$2"; shift 2 ;;
    -I) id="$2"; shift 2 ;;
    -i) src="$2"; shift 2 ;;
    *) shift ;;
  esac
done
if grep -q "not a diagram" "$src"; then
  echo "Generating single mermaid chart" >&2
  echo "UnknownDiagramError: No diagram type detected matching given configuration for text: not a diagram" >&2
  exit 1
fi
printf '<svg xmlns="http://www.w3.org/2000/svg" id="%s" viewBox="0 0 80.2 40"><title>Flow</title><desc>A to B</desc></svg>' "$id" > "$out"
"""


class DataUriTests(unittest.TestCase):
    def test_svg_data_uri_is_compact(self) -> None:
        svg = '<svg xmlns="http://www.w3.org/2000/svg">\n  <path d="M0 0"/>\n</svg>\n'
        self.assertEqual(
            svg_to_data_uri(svg),
            "data:image/svg+xml,%3csvg xmlns='http://www.w3.org/2000/svg'%3e"
            " %3cpath d='M0 0'/%3e %3c/svg%3e",
        )

    def test_srcset_escapes_spaces(self) -> None:
        uri = svg_to_srcset('<svg viewBox="0 0 1 1"></svg>')
        self.assertEqual(uri, "data:image/svg+xml,%3csvg%20viewBox='0%200%201%201'%3e%3c/svg%3e")

    def test_byte_order_mark_is_dropped(self) -> None:
        self.assertEqual(svg_to_data_uri("\ufeff<svg/>"), svg_to_data_uri("<svg/>"))

    def test_png_data_uri(self) -> None:
        self.assertEqual(png_to_data_uri(b"abc"), "data:image/png;base64,YWJj")

    def test_to_data_uri_prefers_screenshot(self) -> None:
        result = RenderResult(svg="<svg/>", id="m-0", screenshot=b"abc")
        self.assertEqual(to_data_uri(result, is_srcset=True), "data:image/png;base64,YWJj")
        result.screenshot = None
        self.assertEqual(to_data_uri(result), "data:image/svg+xml,%3csvg/%3e")


class MetadataTests(unittest.TestCase):
    def test_png_size_reads_image_header(self) -> None:
        buffer = BytesIO()
        Image.new("RGB", (40, 21)).save(buffer, format="PNG")
        self.assertEqual(png_size(buffer.getvalue()), (40, 21))
        self.assertEqual(png_size(buffer.getvalue(), scale=2.0), (20, 11))

    def test_svg_metadata_from_view_box_title_and_desc(self) -> None:
        svg = (
            '<svg xmlns="http://www.w3.org/2000/svg" viewBox="0 0 100.5 50">'
            "<title>Chart</title><desc>Two nodes</desc><g/></svg>"
        )
        self.assertEqual(renderer._svg_metadata(svg), (101, 50, "Chart", "Two nodes"))

    def test_svg_metadata_tolerates_garbage(self) -> None:
        self.assertEqual(renderer._svg_metadata("not svg"), (None, None, None, None))

    def test_error_reason_is_extracted(self) -> None:
        output = (
            "Generating single mermaid chart\n"
            "\n"
            "UnknownDiagramError: No diagram type detected matching given configuration for text: oops\n"
            "    at detectType (file:///mermaid.js:1:1)\n"
        )
        self.assertEqual(
            mmdc_error_reason(output),
            "No diagram type detected matching given configuration for text: oops",
        )
        self.assertEqual(mmdc_error_reason(""), "unknown Mermaid CLI error")


class FromSvgTests(unittest.TestCase):
    def test_namespaced_attributes_keep_prefixes(self) -> None:
        svg = (
            '<svg xmlns="http://www.w3.org/2000/svg" xmlns:xlink="http://www.w3.org/1999/xlink" '
            'viewBox="0 0 1 1"><use xlink:href="#a"/> <foreignObject><div '
            'xmlns="http://www.w3.org/1999/xhtml">Hi</div></foreignObject></svg>'
        )
        node = hast.from_svg(svg)
        self.assertEqual(node.tag_name, "svg")
        use, space, foreign = node.children
        self.assertEqual(use.properties, {"xlink:href": "#a"})
        self.assertEqual(space, hast.Text(" "))
        self.assertEqual(foreign.children[0].tag_name, "div")
        self.assertIn('viewBox="0 0 1 1"', hast.to_html(node))


class MermaidCliRendererTests(unittest.TestCase):
    def test_missing_mmdc_is_reported_per_diagram(self) -> None:
        render = create_mermaid_renderer()
        with mock.patch.object(renderer, "find_mmdc", return_value=None):
            outcomes = asyncio.run(render(["graph TD;", "graph LR;"], RenderOptions()))
        self.assertEqual(len(outcomes), 2)
        for outcome in outcomes:
            self.assertIsInstance(outcome, RenderError)
            self.assertIn("mmdc", str(outcome))

    def test_unexecutable_mmdc_becomes_render_error(self) -> None:
        render = create_mermaid_renderer(RendererOptions(mmdc_path="/nonexistent/mmdc"))
        (outcome,) = asyncio.run(render(["graph TD;"], RenderOptions()))
        self.assertIsInstance(outcome, RenderError)
        self.assertIn("failed to execute Mermaid CLI", str(outcome))

    def test_concurrency_is_shared_between_batches(self) -> None:
        active = 0
        peak = 0

        async def fake_render_one(diagram, svg_id, render_options, opts):
            nonlocal active, peak
            active += 1
            peak = max(peak, active)
            await asyncio.sleep(0.01)
            active -= 1
            return RenderResult(svg="<svg/>", id=svg_id)

        render = create_mermaid_renderer(RendererOptions(concurrency=2))

        async def both_batches():
            return await asyncio.gather(
                render(["a", "b", "c"], RenderOptions()),
                render(["a", "b", "c"], RenderOptions(prefix="mermaid-dark")),
            )

        with mock.patch.object(renderer, "_render_one", fake_render_one):
            light, dark = asyncio.run(both_batches())
            # A fresh event loop gets its own limit.
            asyncio.run(render(["d"], RenderOptions()))

        self.assertEqual(peak, 2)
        self.assertEqual([result.id for result in light], ["mermaid-0", "mermaid-1", "mermaid-2"])
        self.assertEqual(
            [result.id for result in dark], ["mermaid-dark-0", "mermaid-dark-1", "mermaid-dark-2"]
        )

    @unittest.skipIf(os.name == "nt", "fake mmdc is a POSIX shell script")
    def test_fake_mmdc_outcomes_keep_order(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            script = Path(td) / "mmdc"
            script.write_text(FAKE_MMDC)
            script.chmod(script.stat().st_mode | stat.S_IEXEC)
            render = create_mermaid_renderer(RendererOptions(mmdc_path=str(script), concurrency=2))

            outcomes = asyncio.run(
                render(
                    ["graph TD;", "not a diagram", "graph LR;"],
                    RenderOptions(prefix="doc", mermaid_config={"theme": "dark"}),
                )
            )

        first, second, third = outcomes
        self.assertIsInstance(first, RenderResult)
        self.assertEqual(first.id, "doc-0")
        self.assertEqual((first.width, first.height), (81, 40))
        self.assertEqual(first.title, "Flow")
        self.assertEqual(first.description, "A to B")
        self.assertIsNone(first.screenshot)
        self.assertIsInstance(second, RenderError)
        self.assertEqual(
            str(second),
            "No diagram type detected matching given configuration for text: not a diagram",
        )
        self.assertEqual(third.id, "doc-2")


if __name__ == "__main__":
    unittest.main()
