"""Shared option handling for the CLI commands."""

from __future__ import annotations

from typing import Any

import typer

from keelhaul.config import KeelhaulSettings


def load_settings(**overrides: Any) -> KeelhaulSettings:
    """Settings from env/.env, with explicitly given CLI options on top."""
    return KeelhaulSettings(**{k: v for k, v in overrides.items() if v is not None})


def parse_port_mapping(value: str | None) -> tuple[int | None, int | None]:
    """``"80:8080"`` -> ``(80, 8080)``; ``None`` -> ``(None, None)``."""
    if value is None:
        return None, None
    host, sep, container = value.partition(":")
    try:
        if not sep:
            return int(host), None
        return int(host), int(container)
    except ValueError:
        raise typer.BadParameter(
            f"{value!r} is not HOST_PORT:CONTAINER_PORT", param_hint="--port"
        ) from None


def parse_env_pairs(values: list[str] | None) -> dict[str, str]:
    env: dict[str, str] = {}
    for item in values or []:
        key, sep, val = item.partition("=")
        if not sep or not key:
            raise typer.BadParameter(f"{item!r} is not KEY=VALUE", param_hint="--env")
        env[key] = val
    return env
