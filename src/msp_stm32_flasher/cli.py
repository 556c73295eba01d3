"""
MSP STM32 Flasher CLI

Command-line front end for flashing STM32 targets behind an MSP flight
controller.
"""

import sys
import logging
import threading
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.logging import RichHandler
from rich.progress import Progress, BarColumn, TextColumn

from msp_stm32_flasher.protocol import list_serial_ports
from msp_stm32_flasher.core.config import FlashConfig, WRITE_CHUNK
from msp_stm32_flasher.core.events import EventLevel, FlashEvent, FlashPhase
from msp_stm32_flasher.core.parsing import (
    parse_int as _parse_int_core,
    parse_erase_strategy as _parse_erase_strategy_core,
    get_valid_erase_strategies,
)
from msp_stm32_flasher.core.results import OperationResult
from msp_stm32_flasher.core.actions import (
    flash_hex_file as core_flash_hex_file,
    identify_target as core_identify_target,
    inspect_hex as core_inspect_hex,
)

# Setup logging
logging.basicConfig(
    level=logging.INFO,
    format="%(message)s",
    handlers=[RichHandler(rich_tracebacks=True)],
)
logger = logging.getLogger("msp_stm32_flasher")

# Setup Rich console
console = Console()

app = typer.Typer(help="STM32 flasher over MSP serial passthrough")

ERASE_HELP = f"Erase strategy: {'|'.join(get_valid_erase_strategies())}"

EVENT_STYLES = {
    EventLevel.INFO: "white",
    EventLevel.TX: "cyan",
    EventLevel.RX: "magenta",
    EventLevel.ERROR: "red",
    EventLevel.SUCCESS: "green",
}


def print_header(text: str) -> None:
    """Print fancy header."""
    console.print(Panel(text, expand=False, style="bold blue"))


def print_success(text: str) -> None:
    """Print success message."""
    console.print(f"✓ {text}", style="green")


def print_warning(text: str) -> None:
    """Print warning message."""
    console.print(f"⚠️  {text}", style="yellow")


def print_error(text: str) -> None:
    """Print error message."""
    console.print(f"❌ {text}", style="red")


def print_event(event: FlashEvent) -> None:
    """Print a single engine event, skipping per-chunk noise."""
    if event.phase == FlashPhase.PROGRAM and event.level == EventLevel.TX:
        return
    console.print(str(event), style=EVENT_STYLES.get(event.level, "white"))


def print_result(result: OperationResult) -> None:
    """Print warnings/errors and the final status line of a result."""
    for warning in result.warnings:
        print_warning(warning)
    if result.ok:
        print_success(f"{result.operation} succeeded")
    else:
        phase = result.metadata.get("failed_phase")
        where = f" ({phase})" if phase else ""
        for err in result.errors:
            print_error(f"{result.operation} failed{where}: {err}")


def print_json(result: OperationResult) -> None:
    """Print a result as JSON for scripting."""
    console.print_json(data=result.to_dict())


def parse_int(value: Optional[str], label: str) -> Optional[int]:
    """
    Parse an integer option (decimal, 0x-hex or h-suffix hex).

    CLI wrapper around core.parsing.parse_int that converts
    ValueError to typer.BadParameter for proper CLI error handling.
    """
    try:
        return _parse_int_core(value, label)
    except ValueError as e:
        raise typer.BadParameter(str(e))


def build_config(
    baud: int = 115200,
    chunk_size: str = "32",
    erase: str = "page",
    settle: float = 1.0,
    flash_base: Optional[str] = None,
    page_size: Optional[str] = None,
    verify_checksums: bool = True,
) -> FlashConfig:
    """
    Build a FlashConfig from raw CLI option values.

    Raises:
        typer.BadParameter: If any value is invalid.
    """
    try:
        strategy = _parse_erase_strategy_core(erase)
    except ValueError as e:
        raise typer.BadParameter(str(e))

    chunk = parse_int(chunk_size, "chunk size")
    config = FlashConfig(
        baudrate=baud,
        write_chunk=WRITE_CHUNK if chunk is None else chunk,
        erase_strategy=strategy,
        settle_delay=settle,
        verify_checksums=verify_checksums,
    )
    base = parse_int(flash_base, "flash base")
    if base is not None:
        config.flash_base = base
    size = parse_int(page_size, "page size")
    if size is not None:
        config.page_size = size

    try:
        config.validate()
    except ValueError as e:
        raise typer.BadParameter(str(e))
    return config


@app.command()
def ports() -> None:
    """List available serial ports."""
    print_header("Available Serial Ports")

    ports_list = list_serial_ports()
    if not ports_list:
        print_warning("No serial ports found")
        return

    table = Table(title="Serial Ports")
    table.add_column("Port", style="cyan")
    table.add_column("Description", style="green")

    for device, description in ports_list:
        table.add_row(device, description)

    console.print(table)


@app.command("inspect-hex")
def inspect_hex(
    hex_file: str = typer.Argument(..., help="Path to Intel HEX file"),
    chunk_size: str = typer.Option("32", "--chunk-size", "-c", help="Write chunk size (1-256)"),
    erase: str = typer.Option("page", "--erase", "-e", help=ERASE_HELP),
    flash_base: Optional[str] = typer.Option(None, "--flash-base", help="Flash base address (default 0x08000000)"),
    page_size: Optional[str] = typer.Option(None, "--page-size", help="Flash page size (default 2048)"),
    no_verify_checksums: bool = typer.Option(False, "--no-verify-checksums", help="Accept records with bad checksums"),
    output_json: bool = typer.Option(False, "--json", "-j", help="Output as JSON for scripting"),
) -> None:
    """Show address range, pages and write plan for a HEX file."""
    if not output_json:
        print_header("HEX Inspection")

    config = build_config(
        chunk_size=chunk_size,
        erase=erase,
        flash_base=flash_base,
        page_size=page_size,
        verify_checksums=not no_verify_checksums,
    )
    result = core_inspect_hex(hex_file, config)

    if output_json:
        print_json(result)
        if not result.ok:
            raise typer.Exit(1)
        return

    if not result.ok:
        print_result(result)
        raise typer.Exit(1)

    meta = result.metadata
    start_page, end_page = meta["page_range"]

    table = Table(title=Path(hex_file).name)
    table.add_column("Property", style="cyan")
    table.add_column("Value", style="green")
    table.add_row("Address range", result.region)
    table.add_row("Data bytes", f"{result.bytes_len:,}")
    table.add_row("Span", f"{meta['span']:,}")
    table.add_row("Pages", f"{start_page} - {end_page} ({meta['page_count']})")
    table.add_row("Erase", meta["erase_strategy"])
    table.add_row("Write chunks", f"{meta['chunk_count']} x {meta['chunk_size']} bytes")
    table.add_row("SHA256", result.hashes["sha256"])
    console.print(table)

    for warning in result.warnings:
        print_warning(warning)


@app.command()
def identify(
    port: str = typer.Option(..., "--port", "-p", help="Serial port (e.g., /dev/ttyACM0)"),
    baud: int = typer.Option(115200, "--baud", "-b", help="Baud rate"),
    settle: float = typer.Option(1.0, "--settle", help="Seconds to wait after each MSP frame"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log raw serial traffic"),
    output_json: bool = typer.Option(False, "--json", "-j", help="Output as JSON for scripting"),
) -> None:
    """Enter the bootloader through MSP and read the device ID."""
    if verbose:
        logger.setLevel(logging.DEBUG)

    config = build_config(baud=baud, settle=settle)

    if output_json:
        result = core_identify_target(port, config)
        print_json(result)
        if not result.ok:
            raise typer.Exit(1)
        return

    print_header("Identify Target")
    console.print(f"Port: {port}")

    result = core_identify_target(port, config, on_event=print_event)

    if result.ok:
        console.print(f"PID: [bold]0x{result.metadata['pid']:X}[/bold] ({result.metadata['family']})")
    print_result(result)
    if not result.ok:
        raise typer.Exit(1)


@app.command()
def flash(
    hex_file: str = typer.Argument(..., help="Path to Intel HEX file"),
    port: str = typer.Option(..., "--port", "-p", help="Serial port (e.g., /dev/ttyACM0)"),
    baud: int = typer.Option(115200, "--baud", "-b", help="Baud rate"),
    chunk_size: str = typer.Option("32", "--chunk-size", "-c", help="Write chunk size (1-256)"),
    erase: str = typer.Option("page", "--erase", "-e", help=ERASE_HELP),
    settle: float = typer.Option(1.0, "--settle", help="Seconds to wait after each MSP frame"),
    flash_base: Optional[str] = typer.Option(None, "--flash-base", help="Flash base address (default 0x08000000)"),
    page_size: Optional[str] = typer.Option(None, "--page-size", help="Flash page size (default 2048)"),
    no_verify_checksums: bool = typer.Option(False, "--no-verify-checksums", help="Accept records with bad checksums"),
    dry_run: bool = typer.Option(False, "--dry-run", help="Parse and plan only, no serial traffic"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log raw serial traffic"),
    output_json: bool = typer.Option(False, "--json", "-j", help="Output as JSON for scripting"),
) -> None:
    """
    Complete workflow: passthrough → bootloader → sync → erase → program.

    Steps:
    1. Parse HEX file
    2. Enable MSP passthrough and start the bootloader
    3. Sync and read the device ID
    4. Erase pages (or mass erase)
    5. Program in fixed-size chunks
    """
    if not output_json:
        print_header("Flash STM32 via MSP Passthrough")

    if verbose:
        logger.setLevel(logging.DEBUG)

    if not Path(hex_file).exists():
        print_error(f"HEX file not found: {hex_file}")
        raise typer.Exit(1)

    config = build_config(
        baud=baud,
        chunk_size=chunk_size,
        erase=erase,
        settle=settle,
        flash_base=flash_base,
        page_size=page_size,
        verify_checksums=not no_verify_checksums,
    )

    if dry_run:
        result = core_flash_hex_file(port, hex_file, config, dry_run=True)
        if output_json:
            print_json(result)
            if not result.ok:
                raise typer.Exit(1)
            return
        if result.ok:
            console.print(f"Region: {result.region}")
            console.print(
                f"Would erase {result.metadata['page_count']} page(s) and write "
                f"{result.metadata['chunk_count']} chunk(s)"
            )
        print_result(result)
        if not result.ok:
            raise typer.Exit(1)
        return

    if not output_json:
        console.print(f"Port: {port}")
        console.print(f"File: {hex_file}")

    cancel_event = threading.Event()
    outcome = {}

    with Progress(
        TextColumn("[{task.description}]"),
        BarColumn(),
        TextColumn("[{task.percentage:.0f}%]"),
        console=console,
        disable=output_json,
    ) as progress:
        task = progress.add_task("Connecting...", total=None)

        def on_progress(phase: FlashPhase, done: int, total: int) -> None:
            label = "Erasing" if phase == FlashPhase.ERASE else "Programming"
            progress.update(task, description=label, completed=done, total=total)

        def worker() -> None:
            outcome["result"] = core_flash_hex_file(
                port,
                hex_file,
                config,
                on_event=None if output_json else print_event,
                on_progress=on_progress,
                cancel_event=cancel_event,
            )

        thread = threading.Thread(target=worker, name="flash", daemon=True)
        thread.start()
        try:
            while thread.is_alive():
                thread.join(0.2)
        except KeyboardInterrupt:
            console.print("\n[yellow]Cancelling after the current step...[/yellow]")
            cancel_event.set()
            thread.join()

    result = outcome.get("result")
    if result is None:
        print_error("Flash worker exited without a result")
        raise typer.Exit(1)

    if output_json:
        print_json(result)
        if not result.ok:
            raise typer.Exit(1)
        return

    if result.device:
        console.print(f"Device: {result.device}")
    print_result(result)
    if not result.ok:
        console.print("[dim]Flash contents are undefined; re-run the whole flash.[/dim]")
        raise typer.Exit(1)


def main() -> None:
    """Main entry point."""
    try:
        app()
    except KeyboardInterrupt:
        console.print("\n[yellow]Operation cancelled by user[/yellow]")
        sys.exit(0)
    except Exception as e:
        console.print(f"\n[red bold]Fatal error:[/red bold] {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
