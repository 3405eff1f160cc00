from __future__ import annotations

import json
from dataclasses import fields
from typing import Any

import typer
from rich import print

from cmdportal.config import (
    CmdPortalConfig,
    get_config_path,
    load_config,
    read_config_file,
    write_config_file,
)

CONFIG_KEYS = frozenset(f.name for f in fields(CmdPortalConfig))


def read_config_or_exit() -> dict[str, Any]:
    try:
        return read_config_file()
    except ValueError as exc:
        print(f"[red]Invalid config file: {exc}[/red]")
        raise typer.Exit(code=1) from exc


def write_config_or_exit(data: dict[str, Any]) -> None:
    try:
        write_config_file(data)
    except OSError as exc:
        print(f"[red]Failed to write config: {exc}[/red]")
        raise typer.Exit(code=1) from exc


def config_show_cmd() -> None:
    """Print the effective configuration."""

    print(f"[bold]Config file[/bold]: {get_config_path()}")
    typer.echo(json.dumps(load_config().to_dict(), indent=2))


def config_set_cmd(*, key: str, value: str, unset: bool) -> None:
    """Write one key to the config file. Values are parsed as JSON when possible."""

    if key not in CONFIG_KEYS:
        print(f"[red]Unknown config key: {key}[/red]")
        raise typer.Exit(code=1)
    if not unset and not value:
        print("[red]A value is required (or pass --unset)[/red]")
        raise typer.Exit(code=1)
    data = read_config_or_exit()
    if unset:
        data.pop(key, None)
    else:
        try:
            data[key] = json.loads(value)
        except json.JSONDecodeError:
            data[key] = value
    write_config_or_exit(data)
    print(f"{'Unset' if unset else 'Set'} {key} in {get_config_path()}")
