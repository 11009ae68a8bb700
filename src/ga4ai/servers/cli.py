#
#  Copyright (C) 2017-2025 Dremio Corporation
#
#  Licensed under the Apache License, Version 2.0 (the "License");
#  you may not use this file except in compliance with the License.
#  You may obtain a copy of the License at
#
#      http://www.apache.org/licenses/LICENSE-2.0
#
#  Unless required by applicable law or agreed to in writing, software
#  distributed under the License is distributed on an "AS IS" BASIS,
#  WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
#  See the License for the specific language governing permissions and
#  limitations under the License.
#
import asyncio
import logging
from json import JSONDecodeError, loads
from pathlib import Path
from typing import Annotated, Any, List, Optional, Tuple

import uvicorn
from click import Choice
from rich import console, table, print as pp
from rich.markdown import Markdown
from typer import Argument, BadParameter, Exit, Option, Typer
from yaml import dump

from ga4ai import log
from ga4ai.config import settings
from ga4ai.analytics.errors import AnalyticsError
from ga4ai.analytics.orchestrator import AnalyticsOrchestrator
from ga4ai.api.connector import ToolConnector
from ga4ai.api.endpoints import create_app

ty = Typer(context_settings=dict(help_option_names=["-h", "--help"]))

ConfigOption = Annotated[
    Optional[Path],
    Option("-c", "--cfg", help="The config yaml for various options"),
]
LogToFile = Annotated[Optional[bool], Option(help="Log to file")]
JsonLogs = Annotated[Optional[bool], Option(help="Enable JSON logs")]
LogLevel = Annotated[
    Optional[str],
    Option(help="The log level", click_type=Choice(list(logging._nameToLevel.keys()))),
]


def _setup(
    config_file: Optional[Path],
    log_to_file: bool,
    enable_json_logging: bool,
    log_level: str,
):
    log.configure(enable_json_logging=enable_json_logging, to_file=log_to_file)
    log.set_level(log_level)
    settings.configure(config_file)


@ty.command(name="ask", help="Answer one GA4 question")
def ask(
    text: Annotated[str, Argument(help="The question, in plain language")],
    property_id: Annotated[
        Optional[str],
        Option("-p", "--property", help="Property used when the question names none"),
    ] = None,
    caller: Annotated[
        str, Option(help="Caller id recorded in the activity log")
    ] = "cli",
    config_file: ConfigOption = None,
    log_to_file: LogToFile = True,
    enable_json_logging: JsonLogs = False,
    log_level: LogLevel = "INFO",
):
    _setup(config_file, log_to_file, enable_json_logging, log_level)

    async def _ask():
        orchestrator = AnalyticsOrchestrator()
        try:
            return await orchestrator.process_query(text, caller, property_id)
        finally:
            await orchestrator.close()

    try:
        response = asyncio.run(_ask())
    except AnalyticsError as e:
        log.logger("cli").error(f"{text!r} failed: {e}")
        pp(f"[red]{e.user_message}[/red]")
        raise Exit(code=1)
    console.Console().print(Markdown(response.summary_text))


@ty.command(name="serve", help="Run the GA4 query HTTP API")
def serve(
    host: Annotated[
        Optional[str], Option(help="Where uvicorn listens for requests")
    ] = "127.0.0.1",
    port: Annotated[Optional[int], Option(help="The port to listen on")] = 8000,
    config_file: ConfigOption = None,
    log_to_file: LogToFile = True,
    enable_json_logging: JsonLogs = False,
    log_level: LogLevel = "INFO",
):
    _setup(config_file, log_to_file, enable_json_logging, log_level)
    uvicorn.run(create_app(), host=host, port=port, log_level=log_level.lower())


tc = Typer(
    context_settings=dict(help_option_names=["-h", "--help"]),
    name="config",
    help="Configuration management",
)


@tc.command("list", help="Show default configuration, if it exists")
def show_default_config(
    show_filename: Annotated[
        bool, Option(help="Show the filename for default config file")
    ] = False,
):
    dc = settings.default_config()
    pp(f"Default config file: {dc!s} (exists = {dc.exists()!s})")
    if not show_filename:
        settings.configure(dc)
        pp(
            dump(
                settings.instance().model_dump(
                    exclude_none=True,
                    mode="json",
                    exclude_unset=True,
                    by_alias=True,
                )
            )
        )
    pp(f"Default log file: {log.get_log_file()!s}")


@tc.command("create", help="Create a default configuration file")
def create_default_config(
    credentials: Annotated[
        Optional[str],
        Option(help="Path of the Google service account credentials file"),
    ] = None,
    project_id: Annotated[
        Optional[str], Option(help="The Google Cloud project id")
    ] = None,
    openai_api_key: Annotated[
        Optional[str],
        Option(help="OpenAI API key, or @file to read it from a file"),
    ] = None,
    property_id: Annotated[
        Optional[str], Option(help="Property used when a question names none")
    ] = None,
    dry_run: Annotated[
        bool, Option(help="Dry run, do not overwrite the config file. Just print it")
    ] = False,
):
    server = settings.AnalyticsServer.model_validate(
        {"credentials_path": credentials, "project_id": project_id}
    )
    settings.configure(settings.default_config(), force=True)
    settings.instance().analytics_server = server
    if openai_api_key:
        settings.instance().openai = settings.OpenAi.model_validate(
            {"api_key": openai_api_key}
        )
    if property_id:
        settings.instance().properties = settings.Properties.model_validate(
            {"default_property_id": property_id}
        )
    if (d := settings.write_settings(dry_run=dry_run)) is not None and dry_run:
        pp(d)
    elif not dry_run:
        pp(f"Created default config file: {settings.default_config()!s}")


tl = Typer(
    context_settings=dict(help_option_names=["-h", "--help"]),
    name="tools",
    help="Support for testing the analytics tool directly",
)


@tl.command(
    name="list",
    help="List the operations the analytics tool exposes",
    context_settings=dict(help_option_names=["-h", "--help"]),
)
def tools_list(config_file: ConfigOption = None):
    settings.configure(config_file)

    async def _list():
        connector = ToolConnector()
        try:
            return await connector.list_operations()
        finally:
            await connector.close()

    tab = table.Table(
        table.Column("Operation", justify="left", style="cyan"),
        title="Operations",
        show_lines=True,
    )
    for name in asyncio.run(_list()):
        tab.add_row(name)
    console.Console().print(tab)


def _to_kw(arg: str) -> Tuple[str, Any]:
    if "=" not in arg:
        raise BadParameter(f"Argument {arg} is not in the form arg=value")
    key, value = arg.split("=", 1)
    try:
        return key, loads(value)
    except JSONDecodeError:
        return key, value


@tl.command(
    name="invoke",
    help="Call one operation of the analytics tool",
    context_settings=dict(help_option_names=["-h", "--help"]),
)
def tools_exec(
    tool: Annotated[str, Option("-t", "--tool", help="The operation to call")],
    config_file: ConfigOption = None,
    args: Annotated[
        Optional[List[str]],
        Argument(help="The arguments to pass to the operation (arg=value ...)"),
    ] = None,
):
    settings.configure(config_file)
    kwargs = dict(map(_to_kw, args or []))

    async def _invoke():
        connector = ToolConnector()
        try:
            return await connector.invoke(tool, kwargs)
        finally:
            await connector.close()

    try:
        result = asyncio.run(_invoke())
    except AnalyticsError as e:
        pp(f"[red]{e.user_message}[/red]")
        raise Exit(code=1)

    if not result.ok:
        pp(f"[red]{result}[/red]")
        raise Exit(code=1)
    pp(result.payload)


ty.add_typer(tl)
ty.add_typer(tc)


def cli():
    ty()


if __name__ == "__main__":
    cli()
