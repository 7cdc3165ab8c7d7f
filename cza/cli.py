"""Command-line entry point for cza.

Examples::

    cza new noir-vite my-circuit
    cza new my-circuit --dry-run          # template from user.default_template
    cza list --detailed
    cza config set user.author "Ada Lovelace"
    cza update --check
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
import time
from collections.abc import Iterable, Sequence
from pathlib import Path
from typing import Any

from rich.prompt import Confirm
from rich.table import Table

from cza import __version__
from cza.config import ConfigStore, Configuration, format_value
from cza.errors import EXIT_FAILURE, EXIT_OK, CzaError, UsageError
from cza.pipeline import print_report
from cza.scaffolder import (
    DestinationExists,
    GenerationFlags,
    GenerationRequest,
    TemplateDescriptor,
    TemplateRegistry,
)
from cza.scaffolder.generator import (
    ProjectGenerator,
    build_variables,
    print_next_steps,
    print_plan,
)
from cza.updater import SelfUpdater, UpdateState
from cza.utils import (
    console,
    err_console,
    print_error,
    print_info,
    print_success,
    print_summary_table,
    setup_logging,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------


def _parse_key_value_pairs(pairs: Iterable[str]) -> dict[str, str]:
    context: dict[str, str] = {}
    for pair in pairs:
        if "=" not in pair:
            raise argparse.ArgumentTypeError(
                f"invalid key/value pair '{pair}'. Expected KEY=VALUE syntax."
            )
        key, value = pair.split("=", 1)
        key = key.strip()
        if not key:
            raise argparse.ArgumentTypeError("keys must not be empty")
        context[key] = value
    return context


def _global_flags(suppress: bool) -> argparse.ArgumentParser:
    """Flags accepted both before and after the sub-command."""
    default: Any = argparse.SUPPRESS if suppress else False
    flags = argparse.ArgumentParser(add_help=False)
    flags.add_argument(
        "-v", "--verbose", action="store_true", default=default, help="Enable debug logging"
    )
    flags.add_argument(
        "--no-color", action="store_true", default=default, help="Disable coloured output"
    )
    return flags


def build_parser() -> argparse.ArgumentParser:
    common = _global_flags(suppress=True)
    parser = argparse.ArgumentParser(
        prog="cza",
        description="Create zero-knowledge application projects from curated templates",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        parents=[_global_flags(suppress=False)],
        epilog=(
            "Examples:\n"
            "  cza new noir-vite my-circuit\n"
            "  cza list --detailed\n"
            "  cza config set user.default_template cairo-vite\n"
        ),
    )
    parser.add_argument("--version", action="version", version=f"cza {__version__}")
    subparsers = parser.add_subparsers(dest="command", required=True)

    new_parser = subparsers.add_parser("new", parents=[common], help="create a new project")
    new_parser.add_argument(
        "template",
        help="Template name, or the project name when user.default_template is set",
    )
    new_parser.add_argument("project_name", nargs="?", help="Name of the project to create")
    new_parser.add_argument("--no-git", action="store_true", help="Skip git initialisation")
    new_parser.add_argument(
        "--dry-run", action="store_true", help="Print the plan without writing anything"
    )
    new_parser.add_argument(
        "--force", action="store_true", help="Overwrite a non-empty destination"
    )
    new_parser.add_argument("--author", help="Author name for the generated project")
    new_parser.add_argument(
        "-D",
        "--define",
        action="append",
        default=[],
        metavar="KEY=VALUE",
        help="Extra template variable (repeatable)",
    )
    new_parser.add_argument(
        "-d",
        "--directory",
        type=Path,
        default=None,
        help="Destination directory (default: ./<project-name>)",
    )

    list_parser = subparsers.add_parser("list", parents=[common], help="list available templates")
    list_parser.add_argument("--detailed", action="store_true", help="Show sources and frameworks")
    list_parser.add_argument("--json", action="store_true", help="Machine-readable output")

    config_parser = subparsers.add_parser("config", parents=[common], help="manage configuration")
    config_sub = config_parser.add_subparsers(dest="config_command", required=True)
    config_sub.add_parser("path", help="print the configuration file location")
    config_sub.add_parser("list", help="show every key and its value")
    get_parser = config_sub.add_parser("get", help="print one value")
    get_parser.add_argument("key")
    set_parser = config_sub.add_parser("set", help="store one value")
    set_parser.add_argument("key")
    set_parser.add_argument("value")
    unset_parser = config_sub.add_parser("unset", help="revert one key to its default")
    unset_parser.add_argument("key")
    config_sub.add_parser("reset", help="delete the configuration file")

    update_parser = subparsers.add_parser(
        "update", parents=[common], help="update cza to the latest release"
    )
    update_parser.add_argument(
        "--check", action="store_true", help="Only report whether an update is available"
    )

    return parser


def _cli_overrides(args: argparse.Namespace) -> dict[str, Any]:
    overrides: dict[str, Any] = {}
    if args.verbose:
        overrides["development.verbose"] = True
    if args.no_color:
        overrides["development.color"] = False
    return overrides


# ---------------------------------------------------------------------------
# new
# ---------------------------------------------------------------------------


def _confirm_overwrite(destination: Path) -> bool:
    """Ask before rendering over existing files.  Never prompts without a TTY."""
    if not sys.stdin.isatty():
        return False
    return Confirm.ask(
        f"[yellow]{destination}[/yellow] already exists and is not empty. Overwrite?",
        default=False,
    )


def _handle_new(args: argparse.Namespace, config: Configuration) -> int:
    if args.project_name is None:
        template_name, project_name = None, args.template
    else:
        template_name, project_name = args.template, args.project_name

    try:
        defines = _parse_key_value_pairs(args.define)
    except argparse.ArgumentTypeError as exc:
        raise UsageError(str(exc)) from exc

    variables = build_variables(
        args.author,
        None,
        defines,
        config,
        read_git_config=not args.dry_run,
    )
    flags = GenerationFlags(no_git=args.no_git, dry_run=args.dry_run, force=args.force)
    request = GenerationRequest(
        template_name=template_name,
        project_name=project_name,
        destination=args.directory,
        variables=variables,
        flags=flags,
    )

    generator = ProjectGenerator()
    try:
        plan = generator.plan_for(request, config)
    except DestinationExists as exc:
        if flags.dry_run or not _confirm_overwrite(exc.destination):
            raise
        forced = flags.model_copy(update={"force": True})
        plan = generator.plan_for(request.model_copy(update={"flags": forced}), config)

    if flags.dry_run:
        print_plan(plan)
        return EXIT_OK

    started = time.monotonic()
    report = generator.generate(plan)
    print_report(report)
    if report.interrupted:
        # The project was rendered; only the remaining steps were dropped.
        return EXIT_OK
    print_next_steps(plan, report, time.monotonic() - started)
    return EXIT_OK


# ---------------------------------------------------------------------------
# list
# ---------------------------------------------------------------------------


def _template_as_dict(template: TemplateDescriptor) -> dict[str, Any]:
    return {
        "key": template.key,
        "name": template.name,
        "description": template.description,
        "repository": template.source.repository,
        "subfolder": template.source.subfolder,
        "frameworks": sorted(template.tags),
    }


def _handle_list(args: argparse.Namespace, registry: TemplateRegistry | None = None) -> int:
    registry = registry or TemplateRegistry.default()
    templates = registry.list(detailed=args.detailed)

    if args.json:
        payload = [_template_as_dict(t) for t in templates]
        sys.stdout.write(json.dumps(payload, indent=2) + "\n")
        return EXIT_OK

    table = Table(title="Available templates", show_header=True, header_style="bold cyan")
    table.add_column("Template", no_wrap=True)
    table.add_column("Description")
    if args.detailed:
        table.add_column("Frameworks")
        table.add_column("Source", style="dim")

    for template in templates:
        row = [template.key, template.description or template.name]
        if args.detailed:
            row.append(", ".join(sorted(template.tags)))
            row.append(f"{template.source.repository} ({template.source.subfolder})")
        table.add_row(*row)

    console.print(table)
    console.print("[dim]Create a project with: cza new <template> <project-name>[/dim]")
    return EXIT_OK


# ---------------------------------------------------------------------------
# config
# ---------------------------------------------------------------------------


def _handle_config(args: argparse.Namespace, store: ConfigStore) -> int:
    command = args.config_command

    if command == "path":
        console.print(str(store.path()), soft_wrap=True, highlight=False, markup=False)
    elif command == "list":
        print_summary_table(dict(store.list()), title=f"Configuration ({store.path()})")
    elif command == "get":
        value = format_value(store.get(args.key))
        console.print(value, soft_wrap=True, highlight=False, markup=False)
    elif command == "set":
        stored = store.set(args.key, args.value)
        print_success(f"Set {args.key} = {format_value(stored)}")
    elif command == "unset":
        store.unset(args.key)
        print_success(f"Reset {args.key} to its default")
    elif command == "reset":
        store.reset()
        print_success("Configuration reset to defaults")
    return EXIT_OK


# ---------------------------------------------------------------------------
# update
# ---------------------------------------------------------------------------


def _handle_update(args: argparse.Namespace) -> int:
    updater = SelfUpdater()

    if args.check:
        manifest = updater.check()
        if manifest is None:
            print_success(f"cza {updater.current_version} is up to date")
        else:
            print_info(
                f"Update available: {manifest.current_version} -> {manifest.latest_version} "
                "(run 'cza update')"
            )
        return EXIT_OK

    print_info(f"Checking for updates (current version {updater.current_version})...")
    result = updater.run()
    if result.state is UpdateState.UP_TO_DATE:
        print_success(f"cza {result.current_version} is up to date")
    else:
        print_success(f"Updated cza {result.current_version} -> {result.latest_version}")
    return EXIT_OK


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def main(argv: Sequence[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    setup_logging(verbose=args.verbose, color=not args.no_color)
    store = ConfigStore()

    try:
        if args.command == "config":
            return _handle_config(args, store)

        config = store.load(_cli_overrides(args))
        setup_logging(verbose=config.development.verbose, color=config.development.color)

        if args.command == "new":
            return _handle_new(args, config)
        if args.command == "list":
            return _handle_list(args)
        if args.command == "update":
            return _handle_update(args)
    except CzaError as exc:
        logger.debug("%s", type(exc).__name__, exc_info=True)
        print_error(str(exc))
        if exc.hint:
            err_console.print(f"[dim]{exc.hint}[/dim]", highlight=False)
        return exc.exit_code
    except KeyboardInterrupt:
        print_error("Interrupted")
        return EXIT_FAILURE

    parser.error(f"unknown command {args.command!r}")
    return EXIT_FAILURE


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
