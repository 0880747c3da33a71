"""Offline mixdown: instrumental + supplied vocals -> stereo WAV.

Run with: python -m mixdown.main BEAT VOCALS [-o my-song.wav] [--debug]

BEAT may be a local file or an http(s) link. No microphone is opened.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path

from rich.console import Console

from .config import settings
from .session import MIX_READY, StudioSession

console = Console()


def _setup_logging(debug: bool) -> None:
    level = logging.DEBUG if debug else logging.WARNING
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(name)-10s %(levelname)-7s %(message)s",
        datefmt="%H:%M:%S",
    )
    if debug:
        logging.getLogger("httpx").setLevel(logging.WARNING)
        logging.getLogger("httpcore").setLevel(logging.WARNING)


def _on_status(message: str) -> None:
    style = "green" if message == MIX_READY else "dim"
    console.print(f"  [{style}]{message}[/]")


async def _run(args) -> int:
    session = StudioSession(settings=settings, on_status=_on_status)
    try:
        if not session.set_instrumental_gain(args.beat_gain):
            return 1
        if not session.set_vocals_gain(args.vocals_gain):
            return 1

        if args.beat.startswith(("http://", "https://")):
            loaded = await session.load_instrumental_from_url(args.beat)
        else:
            beat = Path(args.beat)
            loaded = await session.load_instrumental(beat.read_bytes(), beat.name)
        if not loaded:
            return 1

        vocals = Path(args.vocals)
        if not await session.load_supplied_vocals(vocals.read_bytes(), vocals.name):
            return 1

        with console.status("[dim]Rendering...[/]", spinner="dots"):
            url = await session.use_supplied_vocals()
        if url is None:
            return 1

        artifact = session.artifact(url)
        out = Path(args.output)
        out.write_bytes(artifact.data)
        console.print(
            f"[bold]Wrote[/] {out} [dim]({artifact.size} bytes, "
            f"{session.instrumental.duration:.1f}s beat)[/]"
        )
        return 0
    finally:
        await session.close()


def main() -> None:
    parser = argparse.ArgumentParser(description="Mix an instrumental with a vocals file")
    parser.add_argument("beat", metavar="BEAT", help="Instrumental file or URL")
    parser.add_argument("vocals", metavar="VOCALS", help="Vocals file")
    parser.add_argument("-o", "--output", default=settings.mix_filename, help="Output WAV path")
    parser.add_argument("--beat-gain", type=float, default=settings.instrumental_gain)
    parser.add_argument("--vocals-gain", type=float, default=settings.vocals_gain)
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")
    args = parser.parse_args()

    _setup_logging(args.debug)
    try:
        code = asyncio.run(_run(args))
    except OSError as e:
        console.print(f"[red]Error: {e}[/]")
        code = 1
    sys.exit(code)


if __name__ == "__main__":
    main()
