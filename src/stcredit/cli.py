"""CLI interface for the ICMS-ST credit engine."""

import json
import logging
from pathlib import Path
from typing import Any, Optional

import typer
from pydantic import TypeAdapter, ValidationError
from rich.console import Console
from rich.table import Table

from .auth import SupabaseClientProvider
from .config import SERVICE_VERSION, StCreditConfig, get_config
from .dependencies import build_repository
from .exceptions import ContractError
from .models import AllocationInputRow, AllocationResult, Competencia, Invoice, PaymentRecord
from .services.fifo import allocate_fifo, allocation_to_csv
from .services.workflow import WorkflowSession
from .stock_movement import parse_stock_movement_csv

app = typer.Typer(
    name="stcredit",
    help="""
    [bold]ICMS-ST Credit CLI[/bold]

    Enrich guias with invoice data, parse stock movement reports and
    allocate stock exits to notes oldest first.

    [cyan]Examples:[/cyan]
      stcredit enrich guias.json notas.json --company 42 --year 2025 --month 1
      stcredit parse-stock movimento.csv
      stcredit allocate saldos.json --stock-file movimento.csv --format csv
    """,
    no_args_is_help=True,
)

console = Console()
logger = logging.getLogger(__name__)

_payments_adapter = TypeAdapter(list[PaymentRecord])
_invoices_adapter = TypeAdapter(list[Invoice])
_balances_adapter = TypeAdapter(list[AllocationInputRow])


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


def _fail(error: Exception, verbose: bool) -> None:
    if isinstance(error, ContractError):
        console.print(f"\n[bold red]✗ {error.code}:[/bold red] {error.message}")
    else:
        console.print(f"\n[bold red]✗ Error:[/bold red] {error}")
    if verbose:
        import traceback

        console.print(f"[dim white]{traceback.format_exc()}[/dim white]")
    raise typer.Exit(code=1)


def _read_json(path: Path) -> Any:
    with open(path, encoding="utf-8") as f:
        return json.load(f)


def _read_report(path: Path, config: StCreditConfig) -> str:
    encoding = config.stock_report_encoding
    if encoding.lower().replace("_", "-") == "utf-8":
        encoding = "utf-8-sig"
    return path.read_text(encoding=encoding)


def _emit(text: str, output_file: Optional[Path]) -> None:
    if output_file:
        output_file.write_text(text, encoding="utf-8")
        console.print(f"[dim]Saved output to {output_file}[/dim]")
    else:
        print(text)


@app.command()
def enrich(
    payments_file: Path = typer.Argument(..., help="JSON list of guias", exists=True),
    invoices_file: Path = typer.Argument(..., help="JSON list of invoices", exists=True),
    company: str = typer.Option(..., "--company", "-c", help="Company id"),
    year: int = typer.Option(..., "--year", min=2000, max=2100, help="Competência year"),
    month: int = typer.Option(..., "--month", min=1, max=12, help="Competência month"),
    output_format: str = typer.Option(
        "table", "--format", "-f", help="Output format: table or json"
    ),
    output_file: Optional[Path] = typer.Option(
        None, "--output", "-o", help="Output file (default: stdout)", resolve_path=True
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging"),
):
    """Join usable guias with their invoices and show per-unit credits."""
    _configure_logging(verbose)
    try:
        config = get_config()
        payments = _payments_adapter.validate_python(_read_json(payments_file))
        invoices = _invoices_adapter.validate_python(_read_json(invoices_file))

        repository = build_repository(config, SupabaseClientProvider(config))
        session = WorkflowSession(
            repository,
            config.operator_id,
            strict_opening_balance=config.strict_opening_balance,
        )
        session.select_competencia(company, Competencia(year=year, month=month))
        rows = session.load(payments, invoices)
    except (ContractError, ValidationError, OSError, ValueError) as e:
        _fail(e, verbose)
        return

    if output_format == "json":
        _emit(json.dumps([r.model_dump(mode="json") for r in rows], indent=2), output_file)
        return

    table = Table(title=f"Guias utilizáveis {year:04d}-{month:02d}")
    for column in ("Guia", "Nota", "Qtd", "Saldo ant.", "Saldo atual", "ICMS-ST/un", "Avisos"):
        table.add_column(column)
    for row in rows:
        table.add_row(
            row.guia_id,
            row.note_number,
            f"{row.quantity:g}",
            f"{row.opening_balance:g}",
            f"{row.current_balance:g}",
            f"{row.icms_st_per_unit:.4f}",
            ", ".join(row.warnings),
        )
    console.print(table)
    console.print(f"\n[bold green]✓ {len(rows)} guias enriched[/bold green]")


@app.command("parse-stock")
def parse_stock(
    report_file: Path = typer.Argument(..., help="Stock movement CSV report", exists=True),
    output_format: str = typer.Option(
        "table", "--format", "-f", help="Output format: table or json"
    ),
    output_file: Optional[Path] = typer.Option(
        None, "--output", "-o", help="Output file (default: stdout)", resolve_path=True
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging"),
):
    """Parse a stock movement report and show period totals."""
    _configure_logging(verbose)
    try:
        report = parse_stock_movement_csv(_read_report(report_file, get_config()))
    except (ContractError, OSError, ValueError) as e:
        _fail(e, verbose)
        return

    if output_format == "json":
        _emit(json.dumps(report.model_dump(mode="json"), indent=2), output_file)
        return

    console.print(f"[bold]{report.product or report_file.name}[/bold] {report.period}")
    console.print(f"  Movements: {len(report.movements)}")
    console.print(f"  Opening quantity: {report.opening_quantity:g}")
    console.print(f"  Total entries: {report.total_entries:g}")
    console.print(f"  Total exits: {report.total_exits:g}")
    console.print(f"  Closing quantity: {report.closing_quantity:g}")


@app.command()
def allocate(
    balances_file: Path = typer.Argument(
        ..., help="JSON list of {guia_id, note_number, current_balance}", exists=True
    ),
    total_exits: Optional[float] = typer.Option(
        None, "--total-exits", help="Exits to allocate", min=0
    ),
    stock_file: Optional[Path] = typer.Option(
        None, "--stock-file", help="Take exits from a stock movement report", exists=True
    ),
    output_format: str = typer.Option(
        "table", "--format", "-f", help="Output format: table, csv or json"
    ),
    output_file: Optional[Path] = typer.Option(
        None, "--output", "-o", help="Output file (default: stdout)", resolve_path=True
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging"),
):
    """Allocate stock exits to notes, oldest note first."""
    _configure_logging(verbose)
    if (total_exits is None) == (stock_file is None):
        console.print("[bold red]✗ Pass exactly one of --total-exits or --stock-file[/bold red]")
        raise typer.Exit(code=2)

    try:
        rows = _balances_adapter.validate_python(_read_json(balances_file))
        if stock_file is not None:
            report = parse_stock_movement_csv(_read_report(stock_file, get_config()))
            exits = report.total_exits
        else:
            exits = total_exits
        result = allocate_fifo(exits, rows)
    except (ContractError, ValidationError, OSError, ValueError) as e:
        _fail(e, verbose)
        return

    if output_format == "csv":
        _emit(allocation_to_csv(result), output_file)
    elif output_format == "json":
        _emit(json.dumps(result.model_dump(mode="json"), indent=2), output_file)
    else:
        _print_allocation(result)


def _print_allocation(result: AllocationResult) -> None:
    table = Table(title=f"FIFO: {result.total_exits:g} saídas")
    for column in ("Guia", "Nota", "Saldo inicial", "Consumido", "Saldo final", "Status"):
        table.add_column(column)
    for row in result.rows:
        table.add_row(
            row.guia_id,
            row.note_number,
            f"{row.opening:g}",
            f"{row.consumed:g}",
            f"{row.closing:g}",
            row.status,
        )
    console.print(table)
    console.print(
        f"  Fully consumed: {result.fully_consumed_count}  "
        f"Total consumed: {result.total_consumed:g}"
    )
    if result.unallocated_exits > 0:
        console.print(
            f"[bold yellow]⚠️  {result.unallocated_exits:g} exits left unallocated[/bold yellow]"
        )


@app.command()
def version():
    """Show version information."""
    console.print(f"stcredit version {SERVICE_VERSION}")


if __name__ == "__main__":
    app()
