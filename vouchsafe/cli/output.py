"""
Shared terminal output helpers for the vouchsafe CLI.
"""

import json
import sys
from typing import Any, Dict

import click


class _Color:
    """
    Minimal ANSI color wrapper.
    Auto-disables when not a TTY or --no-color is passed.
    """
    _on: bool = True

    @classmethod
    def configure(cls, enabled: bool) -> None:
        cls._on = enabled and sys.stdout.isatty()

    @classmethod
    def green(cls, s: str) -> str:
        return f"\033[32m{s}\033[0m" if cls._on else s

    @classmethod
    def red(cls, s: str) -> str:
        return f"\033[31m{s}\033[0m" if cls._on else s

    @classmethod
    def bold(cls, s: str) -> str:
        return f"\033[1m{s}\033[0m" if cls._on else s

    @classmethod
    def dim(cls, s: str) -> str:
        return f"\033[2m{s}\033[0m" if cls._on else s


BAR_HEAVY = "━" * 52


def row_ok(label: str, value: str) -> str:
    label_col = _Color.dim(f"{label:<16}")
    return f"  {label_col}  {_Color.green('✅')}  {value}"


def row_fail(label: str, value: str) -> str:
    label_col = _Color.dim(f"{label:<16}")
    return f"  {label_col}  {_Color.red('❌')}  {value}"


def row_info(label: str, value: str) -> str:
    label_col = _Color.dim(f"{label:<16}")
    return f"  {label_col}     {_Color.dim(value)}"


def header(title: str) -> None:
    click.echo()
    click.echo(_Color.bold(f"  {BAR_HEAVY}"))
    click.echo(_Color.bold(f"  Vouchsafe  ·  {title}"))
    click.echo(_Color.bold(f"  {BAR_HEAVY}"))
    click.echo()


def emit_json(data: Dict[str, Any]) -> None:
    click.echo(json.dumps(data, indent=2))


def emit_error(message: str, fmt: str) -> None:
    if fmt == "json":
        emit_json({"status": "error", "error": message})
    else:
        click.echo(_Color.red(f"  ❌  Error: {message}"), err=True)


def configure_color(enabled: bool) -> None:
    _Color.configure(enabled)
