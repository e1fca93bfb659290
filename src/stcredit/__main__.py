"""CLI entry point for the ICMS-ST credit engine."""

from enum import Enum
from typing import Optional

import typer

from stcredit.cli import app as cli_app
from stcredit.config import get_config


class RunMode(str, Enum):
    cli = "cli"
    api = "api"


app = typer.Typer(
    help="ICMS-ST credit engine - CLI or API mode.",
    no_args_is_help=False,
)
app.add_typer(cli_app, name="", help="ICMS-ST credit CLI commands.")


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    mode: RunMode = typer.Option(
        RunMode.cli,
        "--mode",
        help="Run mode: cli (default) or api",
    ),
    host: Optional[str] = typer.Option(
        None, "--host", help="API host (default: API_HOST from config)"
    ),
    port: Optional[int] = typer.Option(
        None, "--port", min=1, max=65535, help="API port (default: API_PORT from config)"
    ),
) -> None:
    """ICMS-ST credit engine - CLI or API mode."""
    if mode is RunMode.api:
        import uvicorn

        config = get_config()
        uvicorn.run(
            "stcredit.api:app",
            host=host or config.api_host,
            port=port or config.api_port,
            reload=False,
        )
        raise typer.Exit()

    if ctx.invoked_subcommand is None:
        typer.echo(ctx.get_help())


if __name__ == "__main__":
    app()
