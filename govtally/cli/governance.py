#!/usr/bin/env python3
"""
govtally CLI

Command-line front end to the governance service. Every command prints JSON.

Usage:
    govtally init
    govtally propose <title> --description TEXT --proposer ID --quorum WEIGHT [--deadline WHEN | --period SECONDS | --no-deadline]
    govtally vote <proposal_id> --voter ID --choice FOR|AGAINST|ABSTAIN --weight WEIGHT
    govtally evaluate <proposal_id>
    govtally evaluate-due
    govtally execute <proposal_id> --by ID [--tx REF]
    govtally proposals [--status STATUS] [--proposer ID] [--limit N] [--offset N]
    govtally votes <proposal_id> [--limit N] [--offset N]
    govtally metrics
    govtally audit [--proposal ID] [--actor ID] [--since WHEN] [--limit N] [--offset N]
    govtally parameters
"""

import asyncio
import json
import time
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional

import click

from .. import __version__
from ..chain.events import parse_timestamp
from ..config import GovtallyConfig, load_config
from ..database_sqlite import GovernanceStore
from ..exceptions import GovtallyException
from ..governance.service import GovernanceService
from ..logger import LogManager

CHOICES = ["FOR", "AGAINST", "ABSTAIN", "YES", "NO"]


def emit(payload: Any) -> None:
    click.echo(json.dumps(payload, indent=2, default=str))


def run_service(
    config: GovtallyConfig,
    action: Callable[[GovernanceService], Awaitable[Any]],
) -> Any:
    """Open the store, run *action* against a service, and always close both."""

    async def _run():
        store = await GovernanceStore.open(
            config.database.sqlite.path, wal_mode=config.database.sqlite.wal_mode
        )
        service = GovernanceService.from_config(store, config)
        try:
            return await action(service)
        finally:
            await service.close()
            await store.close()

    try:
        return asyncio.run(_run())
    except GovtallyException as e:
        raise click.ClickException(str(e))


@click.group()
@click.version_option(version=__version__, prog_name="govtally")
@click.option(
    "--config", "-c",
    "config_path",
    type=click.Path(dir_okay=False),
    default=None,
    help="Path to config.toml (default: $GOVTALLY_CONFIG or ./config.toml)"
)
@click.option("--db", "db_path", type=click.Path(dir_okay=False), help="Override the SQLite database path")
@click.pass_context
def cli(ctx: click.Context, config_path: Optional[str], db_path: Optional[str]):
    """govtally: weighted governance proposals, votes and audit trail."""
    try:
        config = load_config(config_path)
        if db_path:
            config.database.sqlite.path = db_path
        config.validate()
    except GovtallyException as e:
        raise click.ClickException(str(e))

    LogManager().configure(
        log_level=config.logging.level,
        log_file=Path(config.logging.file) if config.logging.file else None,
        file_output=config.logging.file_output,
        force=True,
    )
    ctx.obj = config


@cli.command("init")
@click.pass_obj
def init_cmd(config: GovtallyConfig):
    """Create the database and its schema."""

    async def action(service: GovernanceService):
        return {
            "database": config.database.sqlite.path,
            "proposals": await service.store.count_proposals(),
        }

    emit(run_service(config, action))


@cli.command("propose")
@click.argument("title")
@click.option("--description", "-d", required=True, help="Proposal description")
@click.option("--proposer", "-p", required=True, help="Proposer identity")
@click.option("--quorum", "-q", required=True, help="Minimum participating weight, e.g. 100 or 0.5")
@click.option("--deadline", help="End of voting: epoch seconds or ISO-8601")
@click.option("--period", type=int, help="Voting period in seconds from now")
@click.option("--no-deadline", is_flag=True, help="Keep the proposal open until evaluated manually")
@click.option("--contract-id", help="On-chain contract reference")
@click.pass_obj
def propose_cmd(
    config: GovtallyConfig,
    title: str,
    description: str,
    proposer: str,
    quorum: str,
    deadline: Optional[str],
    period: Optional[int],
    no_deadline: bool,
    contract_id: Optional[str],
):
    """Create a proposal.

    Without --deadline or --period the configured governance.voting_period
    applies.

    Examples:

        govtally propose "Raise fee cap" -d "Raise the cap to 2%" -p alice -q 100 --period 3600
    """
    if sum(bool(x) for x in (deadline, period is not None, no_deadline)) > 1:
        raise click.UsageError("Use only one of --deadline, --period, --no-deadline")

    when: Any = deadline
    if period is not None:
        if period <= 0:
            raise click.BadParameter("must be positive", param_hint="--period")
        when = time.time() + period
    elif not deadline and not no_deadline and config.governance.voting_period > 0:
        when = time.time() + config.governance.voting_period

    async def action(service: GovernanceService):
        created = await service.create_proposal(
            title=title,
            description=description,
            proposer_id=proposer,
            quorum=quorum,
            deadline=when,
            contract_id=contract_id,
        )
        return created.to_dict()

    emit(run_service(config, action))


@cli.command("vote")
@click.argument("proposal_id")
@click.option("--voter", "-v", required=True, help="Voter identity")
@click.option("--choice", type=click.Choice(CHOICES, case_sensitive=False), required=True)
@click.option("--weight", "-w", required=True, help="Attested voting weight")
@click.pass_obj
def vote_cmd(config: GovtallyConfig, proposal_id: str, voter: str, choice: str, weight: str):
    """Cast a weighted vote."""

    async def action(service: GovernanceService):
        cast = await service.submit_vote(proposal_id, voter, choice, weight)
        return cast.to_dict()

    emit(run_service(config, action))


@cli.command("evaluate")
@click.argument("proposal_id")
@click.pass_obj
def evaluate_cmd(config: GovtallyConfig, proposal_id: str):
    """Evaluate one proposal now."""

    async def action(service: GovernanceService):
        return (await service.evaluate(proposal_id)).to_dict()

    emit(run_service(config, action))


@cli.command("evaluate-due")
@click.pass_obj
def evaluate_due_cmd(config: GovtallyConfig):
    """Resolve every open proposal whose deadline has passed (for cron)."""

    async def action(service: GovernanceService):
        return [o.to_dict() for o in await service.evaluate_due()]

    emit(run_service(config, action))


@cli.command("execute")
@click.argument("proposal_id")
@click.option("--by", "executed_by", required=True, help="Identity confirming execution")
@click.option("--tx", "tx_ref", help="On-chain execution reference")
@click.pass_obj
def execute_cmd(config: GovtallyConfig, proposal_id: str, executed_by: str, tx_ref: Optional[str]):
    """Record that a PASSED proposal was executed."""

    async def action(service: GovernanceService):
        proposal = await service.confirm_execution(proposal_id, executed_by, tx_ref)
        return proposal.to_dict()

    emit(run_service(config, action))


@cli.command("proposals")
@click.option("--status", "-s", help="OPEN, PASSED, REJECTED or EXECUTED")
@click.option("--proposer", "-p", help="Only proposals by this identity")
@click.option("--limit", "-l", type=int)
@click.option("--offset", "-o", type=int)
@click.pass_obj
def proposals_cmd(config: GovtallyConfig, status, proposer, limit, offset):
    """List proposals, newest first."""
    filters = {"status": status, "proposer_id": proposer, "limit": limit, "offset": offset}

    async def action(service: GovernanceService):
        return (await service.list_proposals(filters)).to_dict()

    emit(run_service(config, action))


@cli.command("votes")
@click.argument("proposal_id")
@click.option("--limit", "-l", type=int)
@click.option("--offset", "-o", type=int)
@click.pass_obj
def votes_cmd(config: GovtallyConfig, proposal_id: str, limit, offset):
    """List the votes on a proposal, newest first."""

    async def action(service: GovernanceService):
        return (await service.get_proposal_votes(proposal_id, limit, offset)).to_dict()

    emit(run_service(config, action))


@cli.command("metrics")
@click.pass_obj
def metrics_cmd(config: GovtallyConfig):
    """Governance health metrics."""

    async def action(service: GovernanceService):
        return (await service.get_metrics()).to_dict()

    emit(run_service(config, action))


@cli.command("audit")
@click.option("--proposal", "proposal_id", help="Only entries for this proposal")
@click.option("--actor", "actor_id", help="Only entries by this actor")
@click.option("--since", help="Epoch seconds or ISO-8601")
@click.option("--limit", "-l", type=int)
@click.option("--offset", "-o", type=int)
@click.pass_obj
def audit_cmd(config: GovtallyConfig, proposal_id, actor_id, since, limit, offset):
    """Merged off-chain / on-chain audit trail, newest first."""
    if since:
        try:
            since = parse_timestamp(since)
        except ValueError:
            raise click.BadParameter(f"invalid timestamp {since!r}", param_hint="--since")
    filters = {"proposal_id": proposal_id, "actor_id": actor_id, "since": since}

    async def action(service: GovernanceService):
        return (await service.get_audit_log(filters, limit, offset)).to_dict()

    emit(run_service(config, action))


@cli.command("parameters")
@click.pass_obj
def parameters_cmd(config: GovtallyConfig):
    """Governance parameters, local and on-chain."""

    async def action(service: GovernanceService):
        return (await service.get_parameters()).to_dict()

    emit(run_service(config, action))


def main():
    cli()


if __name__ == "__main__":
    main()
