# Copyright (c) Syntropy Systems
"""Main CLI entry point for batchaccel."""

import typer

from batchaccel.cli.init_cmd import init
from batchaccel.cli.run_cmd import run
from batchaccel.cli.status import status

app = typer.Typer(
    name="batchaccel",
    help=(
        "Batch completion accelerator. Find nearly finished batches "
        "and push their stragglers through."
    ),
    no_args_is_help=True,
    add_completion=False,
)

# Register commands
_ = app.command()(init)
_ = app.command()(run)
_ = app.command()(status)


if __name__ == "__main__":
    app()
