"""Command-line entry points for Shop Ledger.

The CLI is a local stand-in for a chat transport: ``run`` and ``shell`` feed
command text to :mod:`shop_ledger.dispatcher` exactly as a message would,
``report`` prints or exports a financial report, and ``init`` creates the
ledger workbook. Everything here is argparse wiring; the business layer does
the work.
"""

from __future__ import annotations

import argparse
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, Iterable, Mapping, MutableMapping, Optional, Sequence, TextIO

from . import core_logic, data_manager, dispatcher, financials, log, setup_excel
from .constants import ReportPeriod
from .messages import ReplyFormatter
from .report_export import XlsxReportRenderer, report_filename

SHELL_EXIT_WORDS = frozenset({"exit", "quit"})


@dataclass(frozen=True)
class CommandSpec:
    """Describe how a CLI sub-command is configured and executed."""

    name: str
    help_text: str
    register: Callable[[argparse._SubParsersAction[argparse.ArgumentParser]], argparse.ArgumentParser]
    execute: Callable[[Optional[core_logic.RuntimeContext], argparse.Namespace], int]
    requires_workbook: bool = True


def build_parser() -> argparse.ArgumentParser:
    """Construct the top-level CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="shop-ledger",
        description="Text-command business ledger for small retail shops.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Optional path to config.ini (defaults to the nearest config.ini upwards from here).",
    )
    return parser


def configure_subcommands(parser: argparse.ArgumentParser) -> Mapping[str, CommandSpec]:
    """Wire all CLI sub-commands onto the supplied parser."""
    subparsers = parser.add_subparsers(dest="command", required=True, title="commands")
    specs = [
        register_init_command(subparsers),
        register_run_command(subparsers),
        register_shell_command(subparsers),
        register_report_command(subparsers),
    ]
    for spec in specs:
        spec.register(subparsers)
    return build_command_table(specs)


def register_init_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``init``."""
    name = "init"
    help_text = "Create the ledger workbook named in config.ini."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--force", action="store_true", help="Overwrite an existing workbook.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_init, requires_workbook=False)


def register_run_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``run``."""
    name = "run"
    help_text = "Execute one ledger command, e.g. run --shop corner sell 2 bread."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--shop", required=True, help="Shop identifier the command runs for.")
        parser.add_argument("text", nargs=argparse.REMAINDER, help="Command text.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_text_command)


def register_shell_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``shell``."""
    name = "shell"
    help_text = "Read ledger commands line by line from stdin."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--shop", required=True, help="Shop identifier the commands run for.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_shell)


def register_report_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``report``."""
    name = "report"
    help_text = "Display or export the cash-flow and profit report."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--shop", required=True)
        parser.add_argument(
            "--period",
            default=ReportPeriod.DAILY.value,
            help="today, yesterday, week or month (default: today).",
        )
        parser.add_argument("--export", action="store_true", help="Write an .xlsx report to ReportDir.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_report)


def load_runtime_context(config_path: Optional[Path] = None) -> core_logic.RuntimeContext:
    """Resolve the runtime context for CLI operations and check its schema."""
    context = core_logic.load_runtime_context(config_path)
    core_logic.ensure_schema_version(context)
    return context


def dispatch_command(
    context: Optional[core_logic.RuntimeContext],
    args: argparse.Namespace,
    command_table: Mapping[str, CommandSpec],
) -> int:
    """Dispatch the parsed arguments to the configured executor."""
    if not hasattr(args, "command") or args.command is None:
        raise KeyError("No command specified")
    spec = command_table.get(args.command)
    if spec is None:
        raise KeyError(f"Unknown command: {args.command}")
    return spec.execute(context, args)


def build_command_table(specs: Iterable[CommandSpec]) -> MutableMapping[str, CommandSpec]:
    """Build an index of command specifications keyed by command name."""
    table: Dict[str, CommandSpec] = {}
    for spec in specs:
        if spec.name in table:
            raise ValueError(f"Duplicate command name: {spec.name}")
        table[spec.name] = spec
    return table


def print_reply(reply: dispatcher.Reply, stream: Optional[TextIO] = None) -> None:
    """Write a dispatcher reply to ``stream`` (stdout by default)."""
    stream = stream or sys.stdout
    if isinstance(reply, dispatcher.DocumentReply):
        print(f"{reply.caption}: {reply.path}", file=stream)
    else:
        print(reply.text, file=stream)


def run_init(context: Optional[core_logic.RuntimeContext], args: argparse.Namespace) -> int:
    """Create the workbook configured in ``config.ini``."""
    config_path = data_manager.find_config_file(getattr(args, "config", None))
    output = setup_excel.run_from_config(config_path, overwrite=args.force)
    print(f"Created ledger workbook at '{output}'.")
    return 0


def run_text_command(context: Optional[core_logic.RuntimeContext], args: argparse.Namespace) -> int:
    """Execute one command and print its reply."""
    text = " ".join(args.text).strip()
    if not text:
        print("Nothing to run. Try: run --shop <id> help", file=sys.stderr)
        return 2
    print_reply(dispatcher.handle_command(context, args.shop, text))
    return 0


def run_shell(
    context: Optional[core_logic.RuntimeContext],
    args: argparse.Namespace,
    stream: Optional[TextIO] = None,
) -> int:
    """Run commands from ``stream`` (stdin by default), saving after each change."""
    source = stream or sys.stdin
    interactive = source.isatty()
    log.info("Starting shell for shop '%s'", args.shop)
    while True:
        if interactive:
            print(f"{args.shop}> ", end="", flush=True)
        line = source.readline()
        if not line:
            break
        text = line.strip()
        if not text:
            continue
        if text.lower() in SHELL_EXIT_WORDS:
            break
        print_reply(dispatcher.handle_command(context, args.shop, text, autosave=True))
    return 0


def run_report(context: Optional[core_logic.RuntimeContext], args: argparse.Namespace) -> int:
    """Print the financial report, or export it with ``--export``."""
    period = financials.parse_period(args.period)
    report = financials.report_for_period(context, args.shop, period)
    formatter = ReplyFormatter(context.settings.currency_symbol)
    if args.export:
        destination = context.settings.report_dir / report_filename(args.shop, "cashflow", period)
        path = XlsxReportRenderer(formatter).render(report, destination)
        print(f"{formatter.export_caption('cashflow', period)}: {path}")
    else:
        print(formatter.cash_flow_report(report))
    return 0


def handle_cli_error(error: Exception) -> int:
    """Convert raised exceptions into user-friendly exit codes."""
    if isinstance(error, core_logic.BusinessRuleViolation):
        log.error("%s", error)
        return 2
    if isinstance(error, (FileNotFoundError, FileExistsError)):
        log.error("%s", error)
        return 3
    log.error("%s", error)
    return 1


def persist_workbook(context: core_logic.RuntimeContext) -> None:
    """Persist workbook changes after successful execution."""
    core_logic.persist_context(context)


def main(argv: Sequence[str] | None = None) -> int:
    """CLI entry point that orchestrates parsing and execution."""
    parser = build_parser()
    command_table = configure_subcommands(parser)
    args = parser.parse_args(argv)
    spec = command_table[args.command]
    try:
        context = load_runtime_context(getattr(args, "config", None)) if spec.requires_workbook else None
        exit_code = dispatch_command(context, args, command_table)
        if exit_code == 0 and context is not None:
            persist_workbook(context)
        return exit_code
    except Exception as error:  # pragma: no cover - centralised error handler tested separately
        return handle_cli_error(error)


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
