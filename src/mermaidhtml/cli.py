"""Command-line interface for rendering Mermaid diagrams inside HTML files."""
from __future__ import annotations

import argparse
import json
import logging
import os
import sys
import traceback
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterable, Optional

from . import hast
from .mermaidhtml import (
    COLOR_SCHEMES,
    STRATEGIES,
    DocumentFile,
    MermaidMessage,
    MermaidOptions,
    MermaidTransformer,
    StrategyError,
    collect_instances,
    validate_strategy,
)
from .renderer import create_mermaid_renderer


@dataclass
class CliError(Exception):
    code: str
    message: str
    hint: Optional[str] = None
    exit_code: int = 1
    file: Optional[str] = None
    line: Optional[int] = None
    column: Optional[int] = None
    retryable: bool = True


class UsageError(Exception):
    pass


class FriendlyArgumentParser(argparse.ArgumentParser):
    def error(self, message: str) -> None:  # pragma: no cover - argparse callback
        raise UsageError(message)


def _build_parser() -> argparse.ArgumentParser:
    parser = FriendlyArgumentParser(
        prog="mermaidhtml",
        description="Render Mermaid diagrams embedded in HTML documents.",
    )
    parser.add_argument("--error-format", choices=["text", "json"], default="text")
    parser.add_argument("--debug", action="store_true")

    subparsers = parser.add_subparsers(dest="command")

    render_parser = subparsers.add_parser("render", help="Replace Mermaid blocks with diagrams")
    render_parser.add_argument("input", nargs="?", help="Input .html file")
    render_parser.add_argument("--text", help="Raw HTML source")
    render_parser.add_argument("--stdout", action="store_true", help="Write HTML to stdout")
    render_parser.add_argument("-o", "--output", help="Output .html path")
    render_parser.add_argument("--config", help="JSON file with rendering options")
    render_parser.add_argument("--strategy", help=f"One of: {', '.join(STRATEGIES)}")
    render_parser.add_argument("--dark", action="store_true", help="Add a dark variant (img-png, img-svg)")
    render_parser.add_argument("--dark-config", metavar="FILE", help="Mermaid config JSON file for the dark variant")
    render_parser.add_argument("--color-scheme", choices=list(COLOR_SCHEMES))
    render_parser.add_argument("--prefix", help="Prefix for generated diagram ids")
    render_parser.add_argument("--mermaid-config", metavar="FILE", help="Mermaid config JSON file")
    render_parser.add_argument("--css", metavar="FILE", help="CSS file applied to diagrams")
    render_parser.add_argument("--mmdc", help="Path to the Mermaid CLI executable")
    render_parser.add_argument("--scale", type=float, help="Scale factor for PNG output")
    render_parser.add_argument(
        "--on-error",
        choices=["fail", "remove", "keep"],
        default="fail",
        help="What to do with diagrams that fail to render",
    )

    extract_parser = subparsers.add_parser("extract", help="Print Mermaid sources found in HTML")
    extract_parser.add_argument("input", nargs="?", help="Input .html file")
    extract_parser.add_argument("--text", help="Raw HTML source")

    return parser


def _read_input(path: Optional[str], text: Optional[str]) -> tuple[str, str, Optional[Path]]:
    if path and text is not None:
        raise CliError(
            "E_ARGS",
            "--text cannot be combined with file input",
            hint="Use either FILE or --text.",
            exit_code=2,
        )

    if text is not None:
        return text, "<text>", None

    if path:
        input_path = Path(path)
        if not input_path.exists():
            raise CliError(
                "E_IO_READ",
                f"input file not found: {input_path}",
                exit_code=2,
                file=str(input_path),
            )
        try:
            return input_path.read_text(encoding="utf-8"), str(input_path), input_path
        except OSError as exc:
            raise CliError(
                "E_IO_READ",
                f"failed to read input file: {input_path}",
                hint=str(exc),
                exit_code=2,
                file=str(input_path),
            )

    if sys.stdin.isatty():
        raise CliError(
            "E_ARGS",
            "no input provided",
            hint="Use a subcommand with FILE, --text, or pipe stdin.",
            exit_code=2,
        )

    data = sys.stdin.read()
    if not data.strip():
        raise CliError(
            "E_ARGS",
            "stdin was empty",
            hint="Pipe HTML content into stdin.",
            exit_code=2,
        )
    return data, "<stdin>", None


def _read_file(path: str, *, what: str) -> str:
    try:
        return Path(path).read_text(encoding="utf-8")
    except OSError as exc:
        raise CliError(
            "E_IO_READ",
            f"failed to read {what}: {path}",
            hint=str(exc),
            exit_code=2,
            file=path,
        )


def _load_json(text: str, *, what: str, file: Optional[str] = None) -> Any:
    try:
        return json.loads(text)
    except json.JSONDecodeError as exc:
        raise CliError(
            "E_CONFIG",
            f"invalid JSON in {what}: {exc.msg}",
            hint="Check the JSON syntax.",
            exit_code=2,
            file=file,
            line=exc.lineno,
            column=exc.colno,
        )


def _build_options(args: argparse.Namespace) -> MermaidOptions:
    data: Dict[str, Any] = {}
    if args.config:
        loaded = _load_json(_read_file(args.config, what="config file"), what="config file", file=args.config)
        if not isinstance(loaded, dict):
            raise CliError(
                "E_CONFIG",
                "config file must contain a JSON object",
                exit_code=2,
                file=args.config,
            )
        data.update(loaded)
    try:
        options = MermaidOptions.from_mapping(data)
    except (TypeError, ValueError) as exc:
        raise CliError("E_CONFIG", str(exc), hint="Remove unknown keys from the config file.", exit_code=2)

    if args.strategy is not None:
        options.strategy = args.strategy
    if args.dark_config:
        options.dark = _load_json(
            _read_file(args.dark_config, what="dark Mermaid config"),
            what="dark Mermaid config",
            file=args.dark_config,
        )
    elif args.dark:
        options.dark = True
    if args.color_scheme is not None:
        options.color_scheme = args.color_scheme
    if args.prefix is not None:
        options.prefix = args.prefix
    if args.mermaid_config:
        options.mermaid_config = _load_json(
            _read_file(args.mermaid_config, what="Mermaid config"),
            what="Mermaid config",
            file=args.mermaid_config,
        )
    if args.css:
        options.css = _read_file(args.css, what="CSS file")
    if args.mmdc:
        options.mmdc_path = args.mmdc
    if args.scale is not None:
        if args.scale <= 0:
            raise CliError(
                "E_ARGS",
                "--scale must be > 0",
                hint="Use a positive scale factor like 1 or 2.",
                exit_code=2,
            )
        options.scale = args.scale

    if args.on_error == "remove":
        options.error_fallback = lambda node, diagram, error, file: None
    elif args.on_error == "keep":
        options.error_fallback = lambda node, diagram, error, file: node
    return options


def _write_text(path: Path, content: str) -> None:
    try:
        path.write_text(content, encoding="utf-8")
    except OSError as exc:
        raise CliError(
            "E_IO_WRITE",
            f"failed to write output file: {path}",
            hint=str(exc),
            exit_code=4,
            file=str(path),
        )


def _error_from_exception(exc: Exception) -> CliError:
    if isinstance(exc, CliError):
        return exc
    if isinstance(exc, StrategyError):
        return CliError(
            "E_STRATEGY",
            str(exc),
            hint=f"Use --strategy with one of: {', '.join(STRATEGIES)}.",
            exit_code=2,
        )
    if isinstance(exc, MermaidMessage):
        file = exc.file.path if exc.file is not None else None
        return CliError(
            "E_RENDER",
            exc.reason,
            hint=f"Fix the diagram syntax or pass --on-error remove|keep. See {exc.url}",
            exit_code=3,
            file=file,
            line=exc.line,
            column=exc.column,
            retryable=True,
        )
    if isinstance(exc, ValueError):
        return CliError(
            "E_CONFIG",
            str(exc),
            hint="Check the rendering options.",
            exit_code=2,
        )
    return CliError(
        "E_INTERNAL",
        str(exc) or exc.__class__.__name__,
        hint="Re-run with --debug to see traceback.",
        exit_code=1,
        retryable=False,
    )


def _emit_error(err: CliError, *, error_format: str) -> None:
    if error_format == "json":
        payload = {
            "ok": False,
            "code": err.code,
            "message": err.message,
            "file": err.file,
            "line": err.line,
            "column": err.column,
            "hint": err.hint,
            "retryable": err.retryable,
        }
        sys.stderr.write(json.dumps(payload) + "\n")
        return

    location = ""
    if err.file:
        location = f" ({err.file}"
        if err.line is not None:
            location += f":{err.line}"
            if err.column is not None:
                location += f":{err.column}"
        location += ")"
    sys.stderr.write(f"error[{err.code}]: {err.message}{location}\n")
    if err.hint:
        sys.stderr.write(f"hint: {err.hint}\n")


def _handle_render(args: argparse.Namespace) -> int:
    if args.stdout and args.output:
        raise CliError(
            "E_ARGS",
            "--stdout and --output are mutually exclusive",
            hint="Choose either --stdout or --output.",
            exit_code=2,
        )

    options = _build_options(args)
    transformer = MermaidTransformer(options, create_renderer=create_mermaid_renderer)
    source, source_name, source_path = _read_input(args.input, args.text)

    tree = hast.from_html(source)
    transformer.transform_sync(tree, DocumentFile(path=source_name, value=source))
    html_text = hast.to_html(tree)

    if args.stdout or (source_path is None and not args.output):
        sys.stdout.write(html_text)
        if not html_text.endswith("\n"):
            sys.stdout.write("\n")
        return 0

    if args.output:
        output_path = Path(args.output)
    else:
        output_path = source_path.with_name(f"{source_path.stem}.rendered.html")
    _write_text(output_path, html_text)
    print(f"Wrote {output_path}")
    return 0


def _handle_extract(args: argparse.Namespace) -> int:
    source, _source_name, _source_path = _read_input(args.input, args.text)
    collection = collect_instances(hast.from_html(source), validate_strategy(None))
    payload = {
        "colorScheme": collection.color_scheme,
        "diagrams": [instance.diagram for instance in collection.instances],
    }
    print(json.dumps(payload, indent=2))
    return 0


def main(argv: Optional[Iterable[str]] = None) -> int:
    raw_argv = list(argv) if argv is not None else sys.argv[1:]
    parser = _build_parser()

    if not raw_argv:
        err = CliError(
            "E_ARGS",
            "missing subcommand",
            hint="Use one of: render, extract.",
            exit_code=2,
        )
        _emit_error(err, error_format="text")
        return err.exit_code

    debug_enabled = "--debug" in raw_argv or os.getenv("MERMAIDHTML_DEBUG") == "1"
    if debug_enabled:
        logging.basicConfig(level=logging.DEBUG, stream=sys.stderr)
    error_format = "text"
    if "--error-format" in raw_argv:
        idx = raw_argv.index("--error-format")
        if idx + 1 < len(raw_argv):
            error_format = raw_argv[idx + 1]

    try:
        args = parser.parse_args(raw_argv)
        error_format = args.error_format

        if args.command == "render":
            return _handle_render(args)
        if args.command == "extract":
            return _handle_extract(args)

        raise CliError(
            "E_ARGS",
            "missing subcommand",
            hint="Use one of: render, extract.",
            exit_code=2,
        )
    except UsageError as exc:
        err = CliError(
            "E_ARGS",
            str(exc),
            hint="Use subcommands: render, extract.",
            exit_code=2,
        )
        _emit_error(err, error_format=error_format)
        return err.exit_code
    except Exception as exc:  # pragma: no cover - exercised in integration tests
        err = _error_from_exception(exc)
        _emit_error(err, error_format=error_format)
        if debug_enabled:
            traceback.print_exc(file=sys.stderr)
        return err.exit_code


if __name__ == "__main__":
    raise SystemExit(main())
