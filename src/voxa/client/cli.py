#!/usr/bin/env python3
"""voxa-say - speak typed text through the Voxa server.

Each line typed at the prompt is synthesized by the server and played on
the selected output device. Ctrl+C stops the current playback.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import signal
from contextlib import suppress
from typing import Optional

import httpx
from rich.console import Console
from rich.panel import Panel
from rich.prompt import Prompt
from rich.style import Style
from rich.table import Table

from voxa.client.api import TTSSpeakRequest
from voxa.client.playback import (
    OutputDevice,
    OutputDeviceWatcher,
    PlaybackClient,
    PlaybackState,
    SoundDeviceOutput,
    find_output_device,
    list_output_devices,
)
from voxa.schemas.tts import OPENAI_VOICES

DEFAULT_SERVER = "http://localhost:4000"
VOICES = tuple(OPENAI_VOICES)

ERROR_STYLE = Style(color="red", bold=True)
INFO_STYLE = Style(color="cyan")
STATE_LABELS = {
    PlaybackState.GENERATING: "[yellow]Generating...[/yellow]",
    PlaybackState.PLAYING: "[bright_green]Playing...[/bright_green]",
    PlaybackState.SUCCESS: "[green]Done.[/green]",
}


class VoxaSay:
    """Interactive speak loop."""

    def __init__(
        self,
        server_url: str,
        *,
        token: Optional[str] = None,
        voice: str = "alloy",
        language: Optional[str] = None,
    ) -> None:
        self.server_url = server_url.rstrip("/")
        self.token = token
        self.voice = voice
        self.language = language
        self.speed: Optional[float] = None
        self.pitch: Optional[float] = None
        self.console = Console()
        self.running = True
        self.devices: list[OutputDevice] = []
        self.playback = PlaybackClient(
            self.server_url,
            output=SoundDeviceOutput(),
            token_provider=self._token,
            on_state_change=self._show_state,
        )
        self.watcher = OutputDeviceWatcher(self._devices_changed)

    async def _token(self) -> Optional[str]:
        return self.token

    def _show_state(self, state: PlaybackState) -> None:
        label = STATE_LABELS.get(state)
        if label is not None:
            self.console.print(label)

    def _devices_changed(self, devices: list[OutputDevice]) -> None:
        previous = {device.index for device in self.devices}
        self.devices = devices
        if previous and previous != {device.index for device in devices}:
            self.console.print("[dim]Output devices changed.[/dim]")
        selected = self.playback.device
        if selected is not None and all(device.index != selected for device in devices):
            self.playback.select_device(None)
            self.console.print(
                "[dim]Selected output device disappeared; using the system default.[/dim]"
            )

    async def _check_health(self) -> bool:
        try:
            async with httpx.AsyncClient(timeout=5.0) as client:
                resp = await client.get(f"{self.server_url}/api/health")
        except httpx.HTTPError as e:
            self.console.print(f"Cannot connect to server: {e}", style=ERROR_STYLE)
            return False
        if resp.status_code != 200:
            self.console.print(
                f"Server health check failed ({resp.status_code})", style=ERROR_STYLE
            )
            return False
        database = resp.json().get("database", "unknown")
        self.console.print(f"[dim]Connected to {self.server_url} (database: {database})[/dim]")
        return True

    def _show_help(self) -> None:
        help_text = """
[bold]Commands:[/bold]
  /help              Show this help message
  /voice [name]      Show or set the voice
  /speed [value]     Show or set speed (0.25 - 4.0, 'off' to reset)
  /pitch [value]     Show or set pitch hint ('off' to reset)
  /devices           List output devices
  /device [n|name]   Select an output device ('default' to reset)
  /quit              Exit voxa-say

[bold]Shortcuts:[/bold]
  Ctrl+C             Stop current playback
  Ctrl+D             Exit voxa-say
"""
        self.console.print(Panel(help_text.strip(), title="voxa-say", border_style="blue"))

    def _list_devices(self) -> None:
        self.watcher.refresh()
        if not self.watcher.devices:
            self.console.print("[dim]No output devices detected; using the system default.[/dim]")
            return
        table = Table(title="Output devices", show_header=True, header_style="bold")
        table.add_column("#", justify="right")
        table.add_column("Name")
        table.add_column("Channels", justify="right")
        table.add_column("")
        for device in self.watcher.devices:
            marks = []
            if device.is_default:
                marks.append("default")
            if device.index == self.playback.device:
                marks.append("selected")
            table.add_row(str(device.index), device.name, str(device.channels), ", ".join(marks))
        self.console.print(table)

    def _select_device(self, query: str) -> None:
        if query.lower() == "default":
            self.playback.select_device(None)
            self.console.print("Using the system default output.", style=INFO_STYLE)
            return
        self.watcher.refresh()
        device = find_output_device(query, self.watcher.devices)
        if device is None:
            self.console.print(f"No output device matches '{query}'", style=ERROR_STYLE)
            return
        self.playback.select_device(device)
        self.console.print(f"Output device: {device.name}", style=INFO_STYLE)

    def _parse_optional_float(self, label: str, value: str) -> tuple[bool, Optional[float]]:
        if value.lower() in ("off", "none", "reset"):
            return True, None
        try:
            return True, float(value)
        except ValueError:
            self.console.print(f"{label} must be a number", style=ERROR_STYLE)
            return False, None

    def _handle_command(self, cmd: str) -> bool:
        """Handle slash commands. Returns True if handled."""
        parts = cmd.strip().split(maxsplit=1)
        if not parts:
            return False

        command = parts[0].lower()
        arg = parts[1].strip() if len(parts) > 1 else ""

        if command == "/help":
            self._show_help()
        elif command == "/quit":
            self.running = False
        elif command == "/voice":
            if not arg:
                self.console.print(f"Voice: {self.voice}", style=INFO_STYLE)
            elif arg.lower() not in VOICES:
                self.console.print(
                    f"Unknown voice '{arg}'. Choose from: {', '.join(VOICES)}", style=ERROR_STYLE
                )
            else:
                self.voice = arg.lower()
                self.console.print(f"Voice: {self.voice}", style=INFO_STYLE)
        elif command in ("/speed", "/pitch"):
            attr = command[1:]
            if arg:
                ok, value = self._parse_optional_float(attr.capitalize(), arg)
                if ok:
                    setattr(self, attr, value)
            current = getattr(self, attr)
            self.console.print(
                f"{attr.capitalize()}: {current if current is not None else 'default'}",
                style=INFO_STYLE,
            )
        elif command == "/devices":
            self._list_devices()
        elif command == "/device":
            if arg:
                self._select_device(arg)
            else:
                self.console.print(
                    f"Output device: {self.playback.device if self.playback.device is not None else 'default'}",
                    style=INFO_STYLE,
                )
        else:
            return False
        return True

    async def _speak(self, text: str) -> None:
        request = TTSSpeakRequest(
            input=text,
            voice=self.voice,
            language=self.language,
            speed=self.speed,
            pitch=self.pitch,
        )
        loop = asyncio.get_running_loop()
        installed = False
        with suppress(NotImplementedError, RuntimeError):
            loop.add_signal_handler(signal.SIGINT, self.playback.stop)
            installed = True
        try:
            finished = await self.playback.speak(request)
            if not finished:
                self.console.print("[dim]Stopped.[/dim]")
        except Exception as exc:
            logging.getLogger(__name__).debug("Speak failed: %s", exc)
            self.console.print(self.playback.error_message or str(exc), style=ERROR_STYLE)
        finally:
            if installed:
                loop.remove_signal_handler(signal.SIGINT)

    async def run(self) -> None:
        if not await self._check_health():
            return

        self.watcher.refresh()
        self.watcher.start()
        self.console.print()
        self.console.print(
            "[bold]voxa-say[/bold] - Type text to speak, /help for commands, Ctrl+D to exit",
            style=INFO_STYLE,
        )
        self.console.print()

        try:
            while self.running:
                try:
                    user_input = Prompt.ask("[bold blue]Say[/bold blue]")
                except EOFError:
                    self.console.print("\n[dim]Goodbye![/dim]")
                    break
                except KeyboardInterrupt:
                    self.console.print()
                    continue

                if not user_input.strip():
                    continue
                if user_input.startswith("/") and self._handle_command(user_input):
                    continue
                await self._speak(user_input)
        finally:
            await self.watcher.stop()
            await self.playback.aclose()


def main() -> None:
    """CLI entry point."""
    parser = argparse.ArgumentParser(
        description="voxa-say - speak text through a Voxa server",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  voxa-say                                 Connect to localhost:4000
  voxa-say --server http://pi:4000         Connect to a remote server
  voxa-say --voice nova --language French  Pick voice and language

Environment Variables:
  VOXA_SERVER_URL     Default server URL
  VOXA_ACCESS_TOKEN   Bearer token for an authenticated session
""",
    )
    parser.add_argument(
        "--server",
        "-s",
        default=os.environ.get("VOXA_SERVER_URL", DEFAULT_SERVER),
        help=f"Voxa server URL (default: {DEFAULT_SERVER})",
    )
    parser.add_argument("--voice", "-v", default="alloy", choices=VOICES)
    parser.add_argument("--language", "-l", default=None, help="Language hint, e.g. French")
    parser.add_argument(
        "--token",
        default=os.environ.get("VOXA_ACCESS_TOKEN"),
        help="Access token (default: $VOXA_ACCESS_TOKEN)",
    )
    parser.add_argument(
        "--list-devices",
        action="store_true",
        help="Print output devices and exit",
    )

    args = parser.parse_args()

    if args.list_devices:
        console = Console()
        devices = list_output_devices()
        if not devices:
            console.print("No output devices detected.")
        for device in devices:
            suffix = " (default)" if device.is_default else ""
            console.print(f"{device.index}: {device.name}{suffix}")
        return

    app = VoxaSay(args.server, token=args.token, voice=args.voice, language=args.language)
    try:
        asyncio.run(app.run())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
