"""CLI entrypoint (Typer + Rich).

- `specflow serve`: run the API server
- `specflow threads`: list threads
- `specflow tail THREAD_ID`: follow a thread's output stream, reattaching at any offset
- `specflow retrigger JOB_ID`: start a fresh worker run for a job

All commands except `serve` talk to a running server over HTTP.
"""

from __future__ import annotations

import json

import httpx
import typer
from rich.console import Console
from rich.table import Table

from specflow.config import get_settings

app = typer.Typer(help="Specflow CLI.")
console = Console()


def _api_url(api_url: str | None) -> str:
    if api_url:
        return api_url.rstrip("/")
    return f"http://localhost:{get_settings().api_port}"


def _fail(response: httpx.Response) -> None:
    try:
        detail = response.json().get("detail", response.text)
    except ValueError:
        detail = response.text
    console.print(f"[red]Error {response.status_code}:[/red] {detail}")
    raise typer.Exit(code=1)


@app.command()
def serve(
    host: str | None = typer.Option(None, help="Bind address"),
    port: int | None = typer.Option(None, help="Bind port"),
    reload: bool = typer.Option(False, help="Reload on code changes"),
):
    """Run the API server."""
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "specflow.api.main:app",
        host=host or settings.api_host,
        port=port or settings.api_port,
        reload=reload or settings.debug,
    )


@app.command()
def threads(api_url: str | None = typer.Option(None, "--api", help="API base URL")):
    """List threads, most recently updated first."""
    response = httpx.get(f"{_api_url(api_url)}/api/threads", timeout=30.0)
    if response.status_code != 200:
        _fail(response)

    table = Table(title="Threads")
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("Title")
    table.add_column("State", style="magenta")
    table.add_column("Updated")
    for thread in response.json():
        table.add_row(thread["id"], thread["title"], thread["state"], thread["updatedAt"])
    console.print(table)


@app.command()
def tail(
    thread_id: str = typer.Argument(..., help="Thread id (or run id)"),
    start_index: int = typer.Option(0, "--start-index", help="First chunk to read; negative counts from the end"),
    raw: bool = typer.Option(False, help="Print raw chunks as JSON"),
    api_url: str | None = typer.Option(None, "--api", help="API base URL"),
):
    """Follow a thread's output until its run finishes."""
    url = f"{_api_url(api_url)}/api/thread/{thread_id}/stream"
    with httpx.stream("GET", url, params={"startIndex": start_index}, timeout=None) as response:
        if response.status_code != 200:
            response.read()
            _fail(response)

        console.print(f"[dim]run {response.headers.get('x-workflow-run-id')}[/dim]")
        for line in response.iter_lines():
            if not line.startswith("data: "):
                continue
            data = line[6:]
            if data == "[DONE]":
                break
            chunk = json.loads(data)
            if raw:
                console.print_json(data=chunk)
            elif chunk["type"] == "text-delta":
                console.print(chunk["delta"], end="", markup=False, highlight=False)
            elif chunk["type"] == "text-end":
                console.print()
            elif chunk["type"] == "tool-input-available":
                console.print(f"[yellow]→ {chunk['toolName']}[/yellow] {json.dumps(chunk['input'])}")
            elif chunk["type"] == "tool-output-available":
                console.print(f"[green]← {json.dumps(chunk['output'])[:500]}[/green]", markup=True)
    console.print("[dim]stream closed[/dim]")


@app.command()
def retrigger(
    job_id: str = typer.Argument(..., help="Job id"),
    api_url: str | None = typer.Option(None, "--api", help="API base URL"),
):
    """Start a fresh worker run for an existing job."""
    response = httpx.put(f"{_api_url(api_url)}/api/job/{job_id}", timeout=30.0)
    if response.status_code != 200:
        _fail(response)
    console.print(f"Job {job_id} queued in run [cyan]{response.json()['run_id']}[/cyan]")


if __name__ == "__main__":
    app()
