"""memlimit - command line entry point."""

import logging
import os
import sys

import click
import structlog

from memlimit import __version__
from memlimit.bytesize import ByteSizeError, parse_byte_amount
from memlimit.models import Metric, WatchdogConfig
from memlimit.monitor import PsutilSnapshotSource
from memlimit.watchdog import Watchdog, cancel_on_signals, spawn_child

logger = structlog.get_logger()

# Shell conventions for commands that could not be started
EXIT_NOT_FOUND = 127
EXIT_NOT_EXECUTABLE = 126


class ByteSizeParamType(click.ParamType):
    """Click parameter type for byte sizes such as ``300KiB``."""

    name = "amount"

    def convert(self, value, param, ctx) -> int:
        if isinstance(value, int):
            return value
        try:
            return parse_byte_amount(value)
        except ByteSizeError as e:
            self.fail(f"{value!r}: {e}", param, ctx)


BYTE_SIZE = ByteSizeParamType()


class WatchCommand(click.Command):
    """
    Command accepting options anywhere before COMMAND.

    Options found between AMOUNT and COMMAND are moved in front of AMOUNT, so
    click stops option parsing exactly at COMMAND and everything after it is
    handed to the child untouched.
    """

    def parse_args(self, ctx: click.Context, args: list[str]) -> list[str]:
        return super().parse_args(ctx, self._hoist_options(args))

    def _hoist_options(self, args: list[str]) -> list[str]:
        takes_value = {
            name
            for param in self.params
            if isinstance(param, click.Option) and not param.is_flag and not param.count
            for name in param.opts
        }
        options: list[str] = []
        positionals: list[str] = []
        index = 0
        while index < len(args) and len(positionals) < 2:
            token = args[index]
            index += 1
            if token == "--":
                # Keep the marker only where click still reads options
                return options + (positionals or ["--"]) + args[index:]
            if token.startswith("-") and token != "-":
                options.append(token)
                if token in takes_value and index < len(args):
                    options.append(args[index])
                    index += 1
            else:
                positionals.append(token)
        return options + positionals + args[index:]


def configure_logging(level: str | int = logging.WARNING) -> None:
    """Render structured logs to stderr, keeping stdout for the breach report."""
    if isinstance(level, str):
        name = level
        level = logging.getLevelName(name.upper())
        if not isinstance(level, int):
            raise click.BadParameter(f"unknown log level {name!r}", param_hint="MEMLIMIT_LOG_LEVEL")

    structlog.configure(
        processors=[
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.dev.ConsoleRenderer(colors=False),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=False,
    )


@click.command(
    cls=WatchCommand,
    context_settings={"ignore_unknown_options": True, "allow_interspersed_args": False},
)
@click.argument("amount", type=BYTE_SIZE)
@click.argument("command")
@click.argument("args", nargs=-1, type=click.UNPROCESSED)
@click.option(
    "--virtual",
    "virtual_mem",
    is_flag=True,
    help="Monitor virtual memory instead of resident set memory.",
)
@click.option(
    "-c",
    "--children",
    is_flag=True,
    help="Monitor the sum of all memory consumption from all children of the process.",
)
@click.option(
    "-i",
    "--interval",
    type=click.FloatRange(min=0),
    default=0.1,
    show_default=True,
    envvar="MEMLIMIT_INTERVAL",
    help="Seconds to wait between memory checks.",
)
@click.option(
    "-v",
    "--verbose",
    is_flag=True,
    help="Log every poll cycle to stderr.",
)
@click.version_option(__version__, prog_name="memlimit")
def main(
    amount: int,
    command: str,
    args: tuple[str, ...],
    virtual_mem: bool,
    children: bool,
    interval: float,
    verbose: bool,
) -> None:
    """Run COMMAND and kill it once its memory usage exceeds AMOUNT.

    AMOUNT is either a raw byte count (e.g. "300") or an amount with a unit
    (e.g. "300B", "300KB" or "300KiB").
    """
    configure_logging("DEBUG" if verbose else os.environ.get("MEMLIMIT_LOG_LEVEL", "WARNING"))

    config = WatchdogConfig(
        limit=amount,
        metric=Metric.VIRTUAL if virtual_mem else Metric.RESIDENT,
        include_children=children,
        interval=interval,
    )
    logger.debug("limit_configured", limit=config.limit)

    try:
        child = spawn_child(command, args)
    except FileNotFoundError as e:
        click.echo(f"memlimit: {command}: {e.strerror}", err=True)
        sys.exit(EXIT_NOT_FOUND)
    except PermissionError as e:
        click.echo(f"memlimit: {command}: {e.strerror}", err=True)
        sys.exit(EXIT_NOT_EXECUTABLE)

    watchdog = Watchdog(child, PsutilSnapshotSource(), config)
    with cancel_on_signals(watchdog):
        outcome = watchdog.run()

    if outcome.memory is not None:
        logger.debug("last_memory_sample", memory=outcome.memory)
    sys.exit(outcome.exit_code)


if __name__ == "__main__":
    main()
