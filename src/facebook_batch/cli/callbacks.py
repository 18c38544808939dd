from pathlib import Path

import typer


def requests_file_callback(ctx: typer.Context, value: Path):
    if ctx.resilient_parsing:
        return
    if not value.is_file():
        raise typer.BadParameter(
            message=f"'{value.as_posix()}' is not a JSONL file of batch requests",
        )
    return value


def delay_callback(ctx: typer.Context, value: float):
    if ctx.resilient_parsing:
        return
    if value <= 0:
        raise typer.BadParameter(
            message=f"'{value}' is not a valid delay, it must be a positive number of seconds",
            param_hint="--delay",
        )
    return value
