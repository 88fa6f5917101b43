"""Command-line entry points for the supply trace ledger.

All orchestration in this module is limited to argparse wiring, translating
command-line arguments into the command objects consumed by the business
layer, and printing read results. The caller identity comes from ``--as``;
authenticating that identity is the job of whatever invokes the CLI.
"""

from __future__ import annotations

import argparse
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, Iterable, Mapping, MutableMapping, Optional, Sequence

from . import core_logic, log, notifications
from .constants import Role


@dataclass(frozen=True)
class CommandSpec:
    """Describe how a CLI sub-command is configured and executed."""

    name: str
    help_text: str
    register: Callable[[argparse._SubParsersAction[argparse.ArgumentParser]], argparse.ArgumentParser]
    execute: Callable[[core_logic.RuntimeContext, argparse.Namespace], int]
    mutates: bool = False


def build_parser() -> argparse.ArgumentParser:
    """Construct the top-level CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="trace-cli",
        description="Command-line tools for the Supply Trace batch ledger.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Optional path to config.ini (defaults to ./config.ini).",
    )
    parser.add_argument(
        "--as",
        dest="caller",
        default=None,
        help="Identity performing the command (defaults to the configured admin).",
    )
    return parser


def configure_subcommands(
    parser: argparse.ArgumentParser,
) -> Mapping[str, CommandSpec]:
    """Wire all CLI sub-commands onto the supplied parser."""
    subparsers = parser.add_subparsers(dest="command", required=True, title="commands")
    write_specs = register_write_commands(subparsers)
    read_specs = register_read_commands(subparsers)
    return build_command_table([*write_specs.values(), *read_specs.values()])


def register_write_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare mutating CLI commands."""
    specs = {
        "register-participant": register_participant_command(subparsers),
        "create-batch": register_create_batch_command(subparsers),
        "transfer-batch": register_transfer_batch_command(subparsers),
        "recall": register_recall_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_read_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare read-only CLI commands."""
    specs = {
        "status": register_status_command(subparsers),
        "history": register_history_command(subparsers),
        "participant": register_participant_lookup_command(subparsers),
        "lot": register_lot_command(subparsers),
        "events": register_events_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_participant_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``register-participant``."""
    name = "register-participant"
    help_text = "Register a supply chain participant (admin only)."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--identifier", required=True)
        parser.add_argument("--name", required=True)
        parser.add_argument(
            "--role",
            choices=[member.value for member in Role],
            required=True,
        )
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_register_participant, mutates=True)


def register_create_batch_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``create-batch``."""
    name = "create-batch"
    help_text = "Create a batch under a lot code (farms only)."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--lot-code", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_create_batch, mutates=True)


def register_transfer_batch_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``transfer-batch``."""
    name = "transfer-batch"
    help_text = "Transfer a batch you own to another registered participant."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--product-id", type=int, required=True)
        parser.add_argument("--to", dest="new_owner", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_transfer_batch, mutates=True)


def register_recall_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``recall``."""
    name = "recall"
    help_text = "Recall every batch in a lot (admin only)."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--lot-code", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_recall, mutates=True)


def register_status_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``status``."""
    name = "status"
    help_text = "Display the status of a batch."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--product-id", type=int, required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_status_report)


def register_history_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``history``."""
    name = "history"
    help_text = "Display the provenance trail of a batch."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--product-id", type=int, required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_history_report)


def register_participant_lookup_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``participant``."""
    name = "participant"
    help_text = "Display a participant, or all registered participants."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--identifier", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_participant_report)


def register_lot_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``lot``."""
    name = "lot"
    help_text = "Display the batches created under a lot code."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--lot-code", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_lot_report)


def register_events_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``events``."""
    name = "events"
    help_text = "Display the notification outbox."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_events_report)


def load_runtime_context(config_path: Optional[Path] = None) -> core_logic.RuntimeContext:
    """Resolve the runtime context for CLI operations."""
    target = Path(config_path) if config_path is not None else Path.cwd() / "config.ini"
    context = core_logic.load_runtime_context(target)
    core_logic.ensure_schema_version(context)
    return context


def dispatch_command(
    context: core_logic.RuntimeContext,
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


def build_command_table(
    specs: Iterable[CommandSpec],
) -> MutableMapping[str, CommandSpec]:
    """Build an index of command specifications keyed by command name."""
    table: Dict[str, CommandSpec] = {}
    for spec in specs:
        if spec.name in table:
            raise ValueError(f"Duplicate command name: {spec.name}")
        table[spec.name] = spec
    return table


def resolve_caller(context: core_logic.RuntimeContext, args: argparse.Namespace) -> str:
    """Return the ``--as`` identity, falling back to the configured admin."""
    caller = getattr(args, "caller", None)
    return caller if caller else context.settings.admin_identity


def translate_register_participant(
    context: core_logic.RuntimeContext, args: argparse.Namespace
) -> core_logic.RegisterParticipantCommand:
    """Translate CLI args into a registration command object."""
    return core_logic.RegisterParticipantCommand(
        identifier=args.identifier,
        name=args.name,
        role=Role(args.role),
        caller=resolve_caller(context, args),
    )


def translate_create_batch(
    context: core_logic.RuntimeContext, args: argparse.Namespace
) -> core_logic.CreateBatchCommand:
    """Translate CLI args into a batch creation command object."""
    return core_logic.CreateBatchCommand(
        lot_code=args.lot_code,
        caller=resolve_caller(context, args),
    )


def translate_transfer_batch(
    context: core_logic.RuntimeContext, args: argparse.Namespace
) -> core_logic.TransferBatchCommand:
    """Translate CLI args into a transfer command object."""
    return core_logic.TransferBatchCommand(
        product_id=args.product_id,
        new_owner=args.new_owner,
        caller=resolve_caller(context, args),
    )


def translate_recall(
    context: core_logic.RuntimeContext, args: argparse.Namespace
) -> core_logic.RecallCommand:
    """Translate CLI args into a recall command object."""
    return core_logic.RecallCommand(
        lot_code=args.lot_code,
        caller=resolve_caller(context, args),
    )


def run_register_participant(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the registration workflow in the BLL."""
    participant = core_logic.register_participant(context, translate_register_participant(context, args))
    print(f"Registered {participant.identifier} ({participant.name}) as {participant.role.value}")
    return 0


def run_create_batch(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the batch creation workflow in the BLL."""
    batch = core_logic.create_batch(context, translate_create_batch(context, args))
    print(f"Created product {batch.product_id} in lot {batch.lot_code}")
    return 0


def run_transfer_batch(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the transfer workflow in the BLL."""
    batch = core_logic.transfer_batch(context, translate_transfer_batch(context, args))
    print(f"Product {batch.product_id} now owned by {batch.current_owner}")
    return 0


def run_recall(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the recall cascade in the BLL."""
    result = core_logic.trigger_recall(context, translate_recall(context, args))
    print(
        f"Lot {result.lot_code}: recalled {len(result.recalled)}, "
        f"already inactive {len(result.unchanged)}"
    )
    return 0


def run_status_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print the status of a batch."""
    batch = core_logic.get_batch(context, args.product_id)
    if not batch.exists:
        print(f"Product {args.product_id} does not exist")
        return 0
    print(f"Product {batch.product_id} [{batch.lot_code}] {batch.status.value}, owner {batch.current_owner}")
    return 0


def run_history_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print the provenance trail of a batch."""
    for entry in core_logic.get_product_history(context, args.product_id):
        print(
            f"{entry.timestamp_iso}  {entry.action:<17} {entry.status.value:<9} "
            f"{entry.actor_name} ({entry.actor_identifier})"
        )
    return 0


def run_participant_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print one participant, or every registered participant."""
    if args.identifier:
        participants = [core_logic.get_participant(context, args.identifier)]
    else:
        participants = core_logic.list_participants(context)
    for participant in participants:
        state = "registered" if participant.registered else "not registered"
        print(f"{participant.identifier}  {participant.name}  {participant.role.value}  {state}")
    return 0


def run_lot_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print the batches of a lot with their current status."""
    for product_id in core_logic.get_lot_batches(context, args.lot_code):
        print(f"{product_id}  {core_logic.get_product_status(context, product_id).value}")
    return 0


def run_events_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print the notification outbox."""
    for record in core_logic.list_notifications(context):
        payload = notifications.decode_payload(record)
        print(f"#{record.event_id} {record.timestamp_iso} {record.event_name} {payload}")
    return 0


def handle_cli_error(error: Exception) -> int:
    """Convert raised exceptions into user-friendly exit codes."""
    if isinstance(error, core_logic.BusinessRuleViolation):
        log.error("%s: %s", type(error).__name__, error)
        return 2
    if isinstance(error, FileNotFoundError):
        log.error("%s", error)
        return 3
    log.error("%s", error)
    return 1


def persist_workbook(context: core_logic.RuntimeContext) -> None:
    """Persist workbook changes after successful execution."""
    try:
        core_logic.persist_context(context)
    except PermissionError as error:
        raise RuntimeError(str(error)) from error


def main(argv: Sequence[str] | None = None) -> int:
    """CLI entry point that orchestrates parsing and execution."""
    parser = build_parser()
    command_table = configure_subcommands(parser)
    args = parser.parse_args(argv)
    try:
        context = load_runtime_context(getattr(args, "config", None))
        exit_code = dispatch_command(context, args, command_table)
        if exit_code == 0 and command_table[args.command].mutates:
            persist_workbook(context)
        return exit_code
    except Exception as error:  # pragma: no cover - centralised error handler tested separately
        return handle_cli_error(error)
