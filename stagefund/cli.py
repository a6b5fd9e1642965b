#!/usr/bin/env python3
"""
StageFund CLI

Command-line interface for inspecting configuration and replaying campaign
operation scripts against a fresh escrow.

Usage:
    stagefund show-config [--config FILE]
    stagefund replay <script.json> [--config FILE] [--json]

A replay script is a JSON list of operations, for example:

    [
      {"op": "contribute", "caller": "alice", "amount": 60, "now": 1000},
      {"op": "closeFunding", "caller": "owner", "now": 5000},
      {"op": "startMilestone", "caller": "owner", "now": 5001},
      {"op": "castVote", "caller": "alice", "amount": 60, "favor": true, "now": 5002},
      {"op": "endMilestone", "caller": "owner", "now": 99999}
    ]
"""

import json
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import click

from . import __version__
from .config import load_config
from .escrow import Campaign
from .exceptions import StageFundError
from .logger import configure_logging


# op name → (campaign method, argument names taken from the script entry)
OPERATIONS: Dict[str, Tuple[str, Tuple[str, ...]]] = {
    "contribute":        ("contribute", ("amount",)),
    "closeFunding":      ("close_funding", ()),
    "delegate":          ("delegate", ("to", "amount")),
    "undelegate":        ("undelegate", ("to", "amount")),
    "insertMilestone":   ("insert_milestone", (
        "index", "duration", "quorum_bps", "threshold_bps", "instalment_bps", "donor_index",
    )),
    "startMilestone":    ("start_milestone", ()),
    "castVote":          ("cast_vote", ("amount", "favor", "via_delegated")),
    "endMilestone":      ("end_milestone", ()),
    "terminateCampaign": ("terminate_campaign", ()),
}

_OPTIONAL_ARGS = {"via_delegated": False}


def _load_campaign(config_path: Optional[str]) -> Campaign:
    config = load_config(config_path)
    try:
        config.validate()
    except StageFundError as e:
        raise click.ClickException(f"Invalid configuration: {e}")
    configure_logging(config.logging.level)
    return Campaign.from_config(config)


def _bind(entry: Dict[str, Any]) -> Tuple[str, str, Dict[str, Any]]:
    """Resolve a script entry into (method name, caller, kwargs)."""
    op = entry.get("op")
    if op not in OPERATIONS:
        raise click.ClickException(f"Unknown operation {op!r}; expected one of {sorted(OPERATIONS)}")
    method, arg_names = OPERATIONS[op]
    kwargs: Dict[str, Any] = {}
    for name in arg_names:
        if name in entry:
            kwargs[name] = entry[name]
        elif name in _OPTIONAL_ARGS:
            kwargs[name] = _OPTIONAL_ARGS[name]
        else:
            raise click.ClickException(f"Operation {op!r} is missing argument {name!r}")
    if "now" in entry:
        kwargs["now"] = entry["now"]
    return method, entry.get("caller", ""), kwargs


def _describe(result: Any) -> str:
    if hasattr(result, "to_dict"):
        return json.dumps(result.to_dict(), default=str)
    if hasattr(result, "name"):
        return result.name
    return str(result)


@click.group()
@click.version_option(version=__version__, prog_name="stagefund")
def cli():
    """StageFund Command Line Interface

    Staged-funding escrow with contributor-governed instalments.
    """
    pass


@cli.command("show-config")
@click.option("--config", "-c", "config_path", type=click.Path(), help="Path to config.toml")
def show_config_cmd(config_path: Optional[str]):
    """Print the resolved configuration as JSON.

    Examples:

        stagefund show-config --config config.toml
    """
    config = load_config(config_path)
    click.echo(json.dumps(config.to_dict(), indent=2))
    try:
        config.validate()
    except StageFundError as e:
        click.echo(click.style(f"Configuration is not valid: {e}", fg="yellow"))


@cli.command("replay")
@click.argument("script", type=click.Path(exists=True))
@click.option("--config", "-c", "config_path", type=click.Path(), help="Path to config.toml")
@click.option("--json", "as_json", is_flag=True, help="Print final campaign state as JSON")
def replay_cmd(script: str, config_path: Optional[str], as_json: bool):
    """Replay a JSON operation script against a new campaign.

    Failed operations are reported with their error kind; they leave the
    campaign unchanged and the replay continues.

    Examples:

        stagefund replay ops.json --config config.toml
    """
    try:
        entries: List[Dict[str, Any]] = json.loads(Path(script).read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        raise click.ClickException(f"Script is not valid JSON: {e}")
    if not isinstance(entries, list):
        raise click.ClickException("Script must be a JSON list of operations")

    campaign = _load_campaign(config_path)
    failures = 0

    for step, entry in enumerate(entries):
        method, caller, kwargs = _bind(entry)
        try:
            result = getattr(campaign, method)(caller, **kwargs)
        except StageFundError as e:
            failures += 1
            click.echo(click.style(f"[{step}] {entry['op']} by {caller}: {e.kind} - {e}", fg="red"))
            continue
        click.echo(click.style(f"[{step}] {entry['op']} by {caller}: ", fg="green") + _describe(result))

    if as_json:
        click.echo(json.dumps(campaign.to_dict(), indent=2, default=str))
    else:
        click.echo()
        click.echo(click.style("═══════════════════════════════════════", fg="cyan"))
        click.echo(click.style(f"       Audit log ({campaign.phase.name})", fg="cyan", bold=True))
        click.echo(click.style("═══════════════════════════════════════", fg="cyan"))
        for record in campaign.audit_log:
            amounts = ", ".join(f"{k}={v}" for k, v in record.amounts)
            click.echo(
                f"#{record.sequence:<3} {record.operation:<18} {record.caller:<12} "
                f"phase={record.phase} milestone={record.milestone_index} "
                f"pool={record.remaining_pool}  {amounts}"
            )
            for t in record.transfers:
                click.echo(click.style(f"      → {t.recipient}: {t.amount} ({t.reason})", fg="green"))
        click.echo()
        click.echo(f"Total raised: {campaign.total_raised}")
        click.echo(f"Remaining pool: {campaign.remaining_pool}")

    if failures:
        click.echo(click.style(f"{failures} operation(s) rejected", fg="yellow"))


if __name__ == "__main__":
    cli()
