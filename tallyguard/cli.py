"""Command line interface for checking access and inspecting audit statistics."""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Any, List, Optional

import typer
import yaml
from pydantic import ValidationError

from tallyguard import AccessEngine
from tallyguard.capabilities import capability_matrix
from tallyguard.models import (
    AccessContext,
    AccessPolicy,
    PermissionAction,
    ResourceType,
    UserRole,
)

app = typer.Typer(help="CLI for the tallyguard access engine")

policy_app = typer.Typer(help="Commands for managing access policies")
app.add_typer(policy_app, name="policy")


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
) -> None:
    """Tallyguard CLI entry point."""
    if verbose:
        logging.basicConfig(level=logging.DEBUG)


def _parse_attributes(pairs: List[str]) -> dict[str, str]:
    attributes: dict[str, str] = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key:
            raise typer.BadParameter(f"expected key=value, got {pair!r}", param_hint="--attr")
        attributes[key] = value
    return attributes


@app.command("check")
def check(
    user_id: str = typer.Option(..., help="Acting user id"),
    role: UserRole = typer.Option(..., help="Acting user role"),
    resource_type: ResourceType = typer.Option(..., help="Resource type"),
    action: PermissionAction = typer.Option(..., help="Requested action"),
    resource_id: Optional[str] = typer.Option(None, help="Resource id"),
    attr: List[str] = typer.Option([], help="Resource attribute as key=value (repeatable)"),
    ip: Optional[str] = typer.Option(None, help="Client IP address"),
    device: Optional[str] = typer.Option(None, help="Client device id"),
    lat: Optional[float] = typer.Option(None, help="Client latitude"),
    lng: Optional[float] = typer.Option(None, help="Client longitude"),
) -> None:
    """
    Evaluate a single access request against the configured store.

    Prints the decision as JSON and exits with status 1 when access is denied.

    Example:
        tallyguard check --user-id u1 --role field_observer \\
            --resource-type election_result --action submit \\
            --attr countyId=047 --attr electionStatus=active
    """
    ctx = AccessContext(
        user_id=user_id,
        role=role,
        resource_type=resource_type,
        action=action,
        resource_id=resource_id,
        resource_attributes=_parse_attributes(attr),
        ip_address=ip,
        device_id=device,
        latitude=lat,
        longitude=lng,
    )

    async def _run():
        engine = AccessEngine.from_config()
        try:
            return await engine.evaluate(ctx)
        finally:
            await engine.close()

    decision = asyncio.run(_run())
    typer.echo(decision.model_dump_json(indent=2))
    if not decision.granted:
        raise typer.Exit(code=1)


@app.command("roles")
def roles() -> None:
    """Print the static role capability table as JSON."""
    typer.echo(json.dumps(capability_matrix(), indent=2))


@app.command("stats")
def stats(
    user_id: Optional[str] = typer.Option(None, help="Limit to a single user"),
    days: int = typer.Option(7, min=1, help="Look-back window in days"),
) -> None:
    """Print grant/deny statistics from recorded permission checks."""

    async def _run():
        engine = AccessEngine.from_config()
        try:
            if user_id:
                return await engine.user_stats(user_id, days)
            return await engine.system_stats(days)
        finally:
            await engine.close()

    typer.echo(asyncio.run(_run()).model_dump_json(indent=2))


def _load_policy_documents(path: Path) -> list[dict[str, Any]]:
    with open(path) as f:
        data = yaml.safe_load(f) or []
    if isinstance(data, dict):
        data = data.get("policies", [])
    if not isinstance(data, list):
        raise typer.BadParameter("policy file must contain a list of policies")
    return data


def _dropped_conditions(raw: dict[str, Any], policy: AccessPolicy) -> list[str]:
    conditions = raw.get("conditions") or {}
    dropped = []
    for key, attr in (("timeRange", "time_range"), ("geofence", "geofence")):
        if conditions.get(key) is not None and getattr(policy.conditions, attr) is None:
            dropped.append(key)
    return dropped


def _validate(path: Path) -> tuple[list[AccessPolicy], int]:
    valid: list[AccessPolicy] = []
    invalid = 0
    for index, raw in enumerate(_load_policy_documents(path)):
        name = raw.get("name", f"#{index}") if isinstance(raw, dict) else f"#{index}"
        try:
            policy = AccessPolicy.model_validate(raw)
        except ValidationError as exc:
            invalid += 1
            typer.echo(f"✗ {name}: {exc.error_count()} error(s)")
            for error in exc.errors():
                loc = ".".join(str(p) for p in error["loc"])
                typer.echo(f"    {loc}: {error['msg']}")
            continue
        dropped = _dropped_conditions(raw, policy)
        suffix = f" (ignored malformed: {', '.join(dropped)})" if dropped else ""
        typer.echo(f"✓ {policy.name}{suffix}")
        valid.append(policy)
    return valid, invalid


@policy_app.command("validate")
def policy_validate(path: Path) -> None:
    """Validate a YAML file of access policies without saving them."""
    if not path.exists():
        typer.echo(f"File not found: {path}")
        raise typer.Exit(code=1)
    _, invalid = _validate(path)
    if invalid:
        raise typer.Exit(code=1)


@policy_app.command("load")
def policy_load(path: Path) -> None:
    """Validate and save policies, then invalidate cached policy lists."""
    if not path.exists():
        typer.echo(f"File not found: {path}")
        raise typer.Exit(code=1)
    valid, invalid = _validate(path)
    if invalid:
        typer.echo("Nothing saved: fix invalid policies first")
        raise typer.Exit(code=1)

    async def _run() -> None:
        engine = AccessEngine.from_config()
        try:
            for policy in valid:
                await engine.store.save_policy(policy)
            await engine.invalidate_policies()
        finally:
            await engine.close()

    asyncio.run(_run())
    typer.echo(f"Saved {len(valid)} polic{'y' if len(valid) == 1 else 'ies'}")


if __name__ == "__main__":  # pragma: no cover
    app()
