from __future__ import annotations

import argparse
import asyncio
import subprocess
import sys
from pathlib import Path
from typing import Awaitable, Callable

from ink2md.core.cancellation import CancellationToken
from ink2md.core.config import Settings
from ink2md.core.errors import ConversionCancelled, format_error


CommandFn = Callable[["NoteConverter", CancellationToken], Awaitable[int]]


def build_parser() -> argparse.ArgumentParser:
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--config", default=None, help="YAML run config with settings overrides")
    common.add_argument(
        "--log-level",
        default=None,
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Override INK2MD_LOG_LEVEL",
    )

    parser = argparse.ArgumentParser(description="ink2md: transcribe handwritten note pages to Markdown")
    subparsers = parser.add_subparsers(dest="command", required=False)

    convert_parser = subparsers.add_parser(
        "convert",
        parents=[common],
        help="Transcribe a note's embedded images and insert the text below its frontmatter",
    )
    convert_parser.add_argument("note", help="Markdown note with ![[...]] or ![...](...) image embeds")
    convert_parser.add_argument("--title", action="store_true", help="Generate a title and rename the note")

    images_parser = subparsers.add_parser(
        "images",
        parents=[common],
        help="Transcribe loose image/PDF files or folders",
    )
    images_parser.add_argument("paths", nargs="+", help="Image files, PDFs or folders")
    images_parser.add_argument("--output", default=None, help="Write Markdown here instead of stdout")

    title_parser = subparsers.add_parser("title", parents=[common], help="Generate a title for a Markdown file")
    title_parser.add_argument("file", help="Markdown file")
    title_parser.add_argument("--apply", action="store_true", help="Rename the file to the generated title")

    attach_parser = subparsers.add_parser(
        "attach",
        parents=[common],
        help="Copy images beside a note and append embeds for them",
    )
    attach_parser.add_argument("note", help="Markdown note (created when missing)")
    attach_parser.add_argument("images", nargs="+", help="Image files to embed")

    subparsers.add_parser("test-connection", parents=[common], help="Send a minimal request to the provider")

    test_parser = subparsers.add_parser("test", help="Run all tests with pytest")
    test_parser.add_argument(
        "pytest_args",
        nargs=argparse.REMAINDER,
        help="Optional extra pytest args; use `--` before args (e.g. ink2md test -- -k segmentation)",
    )

    return parser


def run_tests(args: argparse.Namespace) -> int:
    cmd = [sys.executable, "-m", "pytest"]
    if args.pytest_args:
        cmd.extend(arg for arg in args.pytest_args if arg != "--")
    print("Running:", " ".join(cmd))
    return subprocess.call(cmd)


def load_settings(args: argparse.Namespace) -> Settings:
    from ink2md.core.config import get_settings
    from ink2md.core.run_configs import load_run_config

    settings = get_settings()
    if getattr(args, "config", None):
        settings = load_run_config(args.config, base=settings)
    return settings


def run_command(settings: Settings, command: CommandFn) -> int:
    """Run one async command; Ctrl-C cancels the token and aborts in-flight requests."""
    from ink2md.runtime.conversion import NoteConverter

    token = CancellationToken()

    async def runner() -> int:
        converter = NoteConverter(settings)
        try:
            return await command(converter, token)
        except asyncio.CancelledError:
            token.cancel()
            raise
        finally:
            await converter.close()

    try:
        return asyncio.run(runner())
    except KeyboardInterrupt:
        token.cancel()
        print(format_error(ConversionCancelled()), file=sys.stderr)
        return 1
    except Exception as exc:  # noqa: BLE001
        print(format_error(exc), file=sys.stderr)
        return 1


async def _convert(args: argparse.Namespace, converter, token: CancellationToken) -> int:
    result = await converter.convert_note(args.note, token, auto_title=args.title)
    if result is None:
        print("No transcribable text was inserted.")
        return 0
    print(f"Inserted Markdown transcription ({result.page_count} pages) into {result.note_path}")
    if result.title:
        print(f'Renamed note to "{result.title}".')
    return 0


async def _images(args: argparse.Namespace, converter, token: CancellationToken) -> int:
    result = await converter.convert_images(args.paths, token)
    if args.output:
        output = Path(args.output).expanduser()
        output.write_text(f"{result.markdown}\n", encoding="utf-8")
        print(f"Wrote {result.page_count} pages to {output}")
    else:
        print(result.markdown)
    return 0


async def _title(args: argparse.Namespace, converter, token: CancellationToken) -> int:
    path = Path(args.file).expanduser()
    title = await converter.generate_title(path.read_text(encoding="utf-8"), token)
    if not title:
        print("Title generation returned an empty title.", file=sys.stderr)
        return 1
    print(title)
    if args.apply:
        renamed = converter.apply_title(path, title)
        print(f"Renamed to {renamed}")
    return 0


async def _attach(args: argparse.Namespace, converter, token: CancellationToken) -> int:
    for embed in converter.embed_images(Path(args.note).expanduser(), args.images):
        print(f"Embedded {embed}")
    return 0


async def _test_connection(args: argparse.Namespace, converter, token: CancellationToken) -> int:
    await converter.test_connection(token)
    print("Connection successful.")
    return 0


COMMANDS = {
    "convert": _convert,
    "images": _images,
    "title": _title,
    "attach": _attach,
    "test-connection": _test_connection,
}


def main(argv: list[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command == "test":
        raise SystemExit(run_tests(args))

    handler = COMMANDS.get(args.command)
    if handler is None:
        parser.print_help()
        return

    from ink2md.core.logging_config import setup_logging

    try:
        settings = load_settings(args)
    except Exception as exc:  # noqa: BLE001
        print(f"Invalid configuration: {exc}", file=sys.stderr)
        raise SystemExit(1)

    setup_logging(level=args.log_level or settings.log_level, log_file=settings.log_file)
    raise SystemExit(run_command(settings, lambda converter, token: handler(args, converter, token)))


if __name__ == "__main__":
    main()
