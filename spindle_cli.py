"""
Command line client for the Spindle service.
"""
import asyncio
import json
from pathlib import Path
from typing import Any, Dict, Optional

import requests
import typer
import yaml
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

# --- Configuration ---
API_BASE_URL = "http://127.0.0.1:8080/api/v1"


console = Console()
app = typer.Typer(
    name="spindle-cli",
    help="Stream agent turns from a Spindle server or replay scripted model output locally.",
    add_completion=False,
)


class EventRenderer:
    """Prints turn events as they arrive."""

    def __init__(self, debug: bool = False):
        self.debug = debug
        self.in_text = False

    def _newline(self):
        if self.in_text:
            console.print()
            self.in_text = False

    def render(self, event: Dict[str, Any]):
        evt_type = event.get("type")
        evt_data = event.get("data", {})
        if self.debug:
            console.print(f"[dim]Received event: {event}[/dim]")

        if evt_type == "text":
            if not self.in_text:
                console.print("\n[bold green]Assistant:[/bold green]")
                self.in_text = True
            console.print(evt_data.get("delta", ""), end="", style="green")
        elif evt_type == "reasoning_delta":
            console.print(evt_data.get("delta", ""), end="", style="dim italic")
        elif evt_type == "tool_call":
            self._newline()
            flag = " [dim](autocompleted)[/dim]" if evt_data.get("autocompleted") else ""
            console.print(
                Panel(
                    f"[bold yellow]{evt_data.get('tool_name')}[/bold yellow]{flag}\n{json.dumps(evt_data.get('input', {}))}",
                    title=f"Tool call {evt_data.get('tool_call_id')}",
                    expand=False,
                    border_style="yellow",
                )
            )
        elif evt_type == "tool_result":
            self._newline()
            error = evt_data.get("error")
            style = "red" if error else "dim yellow"
            output_str = str(error or evt_data.get("output"))
            console.print(
                Panel(output_str[:300], title=f"Result of {evt_data.get('tool_name')}", expand=False, border_style=style)
            )
        elif evt_type == "error":
            self._newline()
            console.print(Panel(evt_data.get("message", ""), title=evt_data.get("kind", "error"), border_style="bold red"))
        elif evt_type == "done":
            self._newline()
            status = "aborted" if evt_data.get("aborted") else "complete"
            console.print(
                f"[dim]Turn {status}: {evt_data.get('steps')} step(s), message_id={evt_data.get('message_id')}[/dim]"
            )


@app.command()
def stream(
    prompt: str = typer.Argument(..., help="Prompt to send."),
    turn_id: Optional[str] = typer.Option(None, help="Turn id, usable with the abort endpoint."),
    debug: bool = typer.Option(False, "--debug", help="Print raw events."),
):
    """Send a prompt to a running server and render the streamed turn."""
    renderer = EventRenderer(debug=debug)
    try:
        with requests.post(
            f"{API_BASE_URL}/turns/stream",
            json={"prompt": prompt, "turn_id": turn_id},
            stream=True,
        ) as response:
            response.raise_for_status()
            for line in response.iter_lines():
                if not line:
                    continue
                try:
                    event = json.loads(line)
                except json.JSONDecodeError:
                    console.print(f"[red]Error parsing JSON: {line.decode('utf-8', errors='replace')}[/red]")
                    continue
                renderer.render(event)
    except requests.RequestException as e:
        console.print(f"[bold red]Error:[/bold red] Could not reach the service at {API_BASE_URL}.")
        console.print("Please ensure the service is running: [bold]python -m spindle_service.app[/bold]")
        console.print(f"Details: {e}")
        raise typer.Exit(1)


@app.command()
def replay(
    script: Path = typer.Argument(..., exists=True, readable=True, help="YAML file with 'prompt' and 'responses'."),
    chunk_size: int = typer.Option(7, help="Characters per replayed chunk."),
    debug: bool = typer.Option(False, "--debug", help="Print raw events."),
):
    """Run scripted model output through the tool-call pipeline locally."""
    from spindle_service.core.config import load_settings
    from spindle_service.core.factory import ServiceFactory
    from spindle_service.providers.scripted.provider import ScriptedProvider

    data = yaml.safe_load(script.read_text(encoding="utf-8")) or {}
    provider = ScriptedProvider(responses=data.get("responses", []), chunk_size=chunk_size)
    service = ServiceFactory(load_settings(), provider=provider).get_turn_service()
    renderer = EventRenderer(debug=debug)

    async def _run():
        async for line in service.stream(data.get("prompt", "")):
            renderer.render(json.loads(line))

    asyncio.run(_run())


@app.command()
def tools():
    """List the tools the server exposes."""
    try:
        response = requests.get(f"{API_BASE_URL}/tools")
        response.raise_for_status()
    except requests.RequestException as e:
        console.print(f"[bold red]Error:[/bold red] {e}")
        raise typer.Exit(1)
    table = Table(title="Tools", border_style="blue")
    table.add_column("Name", style="bold cyan")
    table.add_column("Description")
    for schema in response.json().get("tools", []):
        fn = schema.get("function", {})
        table.add_row(fn.get("name", ""), fn.get("description", ""))
    console.print(table)


if __name__ == "__main__":
    app()
