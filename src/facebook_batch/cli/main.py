import asyncio
import json
import typing as t
from importlib.metadata import PackageNotFoundError
from importlib.metadata import version as package_version
from pathlib import Path
from typing import Annotated

import typer
from dotenv import load_dotenv
from rich.console import Console
from rich.table import Table

from facebook_batch.cli.callbacks import delay_callback, requests_file_callback
from facebook_batch.client import DEFAULT_VERSION, GraphBatchClient
from facebook_batch.exceptions import BatchRequestError, is_error_613
from facebook_batch.models import BatchRequest, batch_request_list_adapter
from facebook_batch.queue import BatchQueue
from facebook_batch.utils.files import read_jsonl_file
from facebook_batch.utils.logging import batch_logging_context, setup_logging

app = typer.Typer(no_args_is_help=True)


@app.callback()
def main():
    """Send Facebook Graph API requests through batch calls"""
    load_dotenv()


async def send_all(
    client: GraphBatchClient,
    requests: list[BatchRequest],
    *,
    delay: float,
    retry_times: int,
    retry_on_rate_limit: bool,
    include_headers: bool,
) -> list[t.Any]:
    """Push every request through a batch queue and collect bodies or errors in order"""
    async with BatchQueue(
        client,
        delay=delay,
        retry_times=retry_times,
        should_retry=is_error_613 if retry_on_rate_limit else None,
        include_headers=include_headers,
    ) as queue:
        futures = [queue.push(request) for request in requests]
        return await asyncio.gather(*futures, return_exceptions=True)


def _describe_outcome(outcome: t.Any) -> tuple[str, str]:
    if isinstance(outcome, BatchRequestError):
        return f"[red]{outcome.response.code}[/red]", str(outcome)
    if isinstance(outcome, BaseException):
        return "[red]error[/red]", f"{type(outcome).__name__}: {outcome}"
    return "[green]200[/green]", json.dumps(outcome, ensure_ascii=False)


def print_outcomes(requests: list[BatchRequest], outcomes: list[t.Any]):
    table = Table("#", "Method", "Relative URL", "Status", "Result", title="Batch results")
    for index, (request, outcome) in enumerate(zip(requests, outcomes)):
        status, detail = _describe_outcome(outcome)
        table.add_row(str(index), request.method, request.relative_url, status, detail)
    console = Console()
    console.print(table)


@app.command(name="send")
def send_requests(
    requests_file: Annotated[
        Path,
        typer.Argument(
            help="JSONL file holding one batch request per line",
            callback=requests_file_callback,
        ),
    ],
    access_token: Annotated[
        str,
        typer.Option(envvar="FACEBOOK_ACCESS_TOKEN", help="The access token of the batch call"),
    ],
    app_secret: Annotated[
        str | None,
        typer.Option(
            envvar="FACEBOOK_APP_SECRET",
            help="Optional app secret used to add appsecret_proof to the requests",
        ),
    ] = None,
    graph_version: Annotated[
        str, typer.Option(help="The Graph API version, e.g. 12.0 or v12.0")
    ] = DEFAULT_VERSION,
    delay: Annotated[
        float,
        typer.Option(help="Seconds between two automatic flushes", callback=delay_callback),
    ] = 1.0,
    retry_times: Annotated[
        int, typer.Option(min=0, help="How many times a failed request is retried")
    ] = 0,
    retry_on_rate_limit: Annotated[
        bool,
        typer.Option(help="Only retry requests failing with the #613 rate limit error"),
    ] = False,
    include_headers: Annotated[
        bool,
        typer.Option(help="Ask Facebook to include the sub-response headers"),
    ] = True,
    verbose: Annotated[bool, typer.Option("-v", "--verbose", help="Enable debug logs")] = False,
):
    """Send the requests of a JSONL file and print the result of each one"""
    setup_logging(verbose=verbose)
    try:
        requests = batch_request_list_adapter.validate_python(read_jsonl_file(requests_file))
    # pydantic ValidationError is a ValueError too
    except ValueError as error:
        raise typer.BadParameter(
            message=f"invalid batch request file: {error}",
            param_hint="REQUESTS_FILE",
        ) from error

    client = GraphBatchClient(
        access_token=access_token,
        app_secret=app_secret,
        version=graph_version,
    )
    with batch_logging_context(
        command="send",
        requests_file=requests_file.as_posix(),
        graph_version=graph_version,
        request_count=len(requests),
        retry_times=retry_times or None,
    ):
        outcomes = asyncio.run(
            send_all(
                client,
                requests,
                delay=delay,
                retry_times=retry_times,
                retry_on_rate_limit=retry_on_rate_limit,
                include_headers=include_headers,
            )
        )
    print_outcomes(requests=requests, outcomes=outcomes)
    if any(isinstance(outcome, BaseException) for outcome in outcomes):
        raise typer.Exit(1)


@app.command()
def version():
    """Get the version of the package"""
    try:
        typer.echo(package_version("facebook-batch"))
    except PackageNotFoundError:
        typer.echo("unknown")
    raise typer.Exit()
