#!/usr/bin/env python3
"""
Display Management Module for Multichain Launchpad Sync
Rich tables and panels for the operator CLI

Version: 1.0.0
"""

from datetime import datetime

from rich import box
from rich.align import Align
from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from . import price_engine
from .constants import VERSION
from .models import DeploymentStatus, MigrationStatus
from .utils import (
    chain_name, format_bps, format_eth, format_price, format_token_amount, short_id
)

console = Console()

STATUS_STYLES = {
    DeploymentStatus.DEPLOYED: "green",
    DeploymentStatus.PENDING: "yellow",
    DeploymentStatus.FAILED: "red",
    MigrationStatus.ACTIVE: "green",
    MigrationStatus.MIGRATION_TRIGGERED: "yellow",
    MigrationStatus.MIGRATED: "cyan",
}


class RichDisplayManager:
    """Renders launches, deployments, dead letters and coordinator stats"""

    def __init__(self, config=None, output=None):
        self.config = config or {}
        self.console = output or console

    def create_header_panel(self):
        """Create a stylized header panel"""
        header_text = Text()
        header_text.append("MULTICHAIN LAUNCHPAD SYNC\n", style="bold cyan")
        header_text.append(f"Cross-chain bonding curve coordinator v{VERSION}", style="bright_white")

        return Panel(
            Align.center(header_text),
            box=box.DOUBLE_EDGE,
            style="blue",
            padding=(1, 2)
        )

    def _styled(self, status):
        return f"[{STATUS_STYLES.get(status, 'white')}]{status.value}[/]"

    def create_launch_table(self, db):
        """One row per launch with its unified price and migration status"""
        table = Table(
            title="Launches",
            box=box.ROUNDED,
            show_header=True,
            header_style="bold magenta",
            title_style="bold cyan",
            border_style="blue"
        )
        table.add_column("Launch", style="cyan")
        table.add_column("Token", style="yellow")
        table.add_column("Origin")
        table.add_column("Chains", justify="right")
        table.add_column("Price", justify="right")
        table.add_column("Supply", justify="right")
        table.add_column("Progress", justify="right")
        table.add_column("Status", justify="center")

        for launch in db.list_launches():
            states = db.list_curve_states(launch.launch_id)
            if states:
                price, total_supply = price_engine.unified_price(states)
                progress = max(price_engine.progress_bps(s) for s in states)
            else:
                price, total_supply, progress = 0, 0, 0
            migration = db.get_migration(launch.launch_id)
            status = self._styled(migration.status) if migration else "-"
            table.add_row(
                short_id(launch.launch_id),
                f"{launch.name} ({launch.symbol})",
                chain_name(launch.origin_chain_id),
                str(len(launch.all_chain_ids)),
                format_price(price),
                format_token_amount(total_supply),
                format_bps(progress),
                status
            )
        return table

    def create_curve_table(self, db, launch_id):
        """Chain-local curve states of one launch"""
        table = Table(title=f"Curves of {short_id(launch_id)}", box=box.ROUNDED, header_style="bold magenta")
        table.add_column("Chain", style="cyan")
        table.add_column("Virtual ETH", justify="right")
        table.add_column("Virtual tokens", justify="right")
        table.add_column("Supply", justify="right")
        table.add_column("Price", justify="right")
        table.add_column("Market cap", justify="right")
        table.add_column("Seq", justify="right")
        table.add_column("Paused", justify="center")

        for state in db.list_curve_states(launch_id):
            table.add_row(
                chain_name(state.chain_id),
                format_eth(state.virtual_eth),
                format_token_amount(state.virtual_tokens),
                format_token_amount(state.total_supply),
                format_price(price_engine.current_price(state)),
                format_eth(price_engine.market_cap(state)),
                str(state.last_update_seq),
                "[red]yes[/red]" if state.paused else "no"
            )
        return table

    def create_deployment_table(self, db, launch_id=None):
        table = Table(title="Deployments", box=box.ROUNDED, header_style="bold magenta")
        table.add_column("Launch", style="cyan")
        table.add_column("Chain")
        table.add_column("Status", justify="center")
        table.add_column("Token")
        table.add_column("Curve")
        table.add_column("Error", style="red")

        for record in db.list_deployments(launch_id):
            table.add_row(
                short_id(record.launch_id),
                chain_name(record.chain_id),
                self._styled(record.status),
                short_id(record.token_address),
                short_id(record.curve_address),
                record.error or ""
            )
        return table

    def create_dead_letter_table(self, db, include_resolved=False):
        table = Table(title="Dead letters", box=box.ROUNDED, header_style="bold magenta", border_style="red")
        table.add_column("ID", justify="right")
        table.add_column("Created")
        table.add_column("Kind", style="yellow")
        table.add_column("Launch", style="cyan")
        table.add_column("Chain")
        table.add_column("Attempts", justify="right")
        table.add_column("Error", style="red")

        for entry in db.list_dead_letters(include_resolved):
            table.add_row(
                str(entry["id"]),
                datetime.fromtimestamp(entry["created_at"]).strftime("%Y-%m-%d %H:%M:%S"),
                entry["kind"],
                short_id(entry["launch_id"]),
                chain_name(entry["chain_id"]),
                str(entry["attempts"]),
                entry["error"]
            )
        return table

    def create_stats_panel(self, stats):
        """Coordinator counters"""
        stats_text = Text()
        stats_text.append("📊 Coordinator\n\n", style="bold yellow")
        for key in ("events_received", "events_processed", "launches_created", "deployments",
                    "trades", "syncs_sent", "migrations"):
            stats_text.append(f"{key.replace('_', ' ').title()}: {stats.get(key, 0)}\n", style="white")

        problems = {k: stats.get(k, 0) for k in ("dead_letters", "unauthorized", "rejected",
                                                   "arithmetic_errors", "network_errors")}
        if any(problems.values()):
            stats_text.append("\n⚠️ Problems\n", style="bold red")
            for key, value in problems.items():
                if value:
                    stats_text.append(f"{key.replace('_', ' ').title()}: {value}\n", style="red")

        return Panel(stats_text, title="Stats", border_style="green", box=box.ROUNDED)

    def print_status(self, db, include_resolved=False):
        self.console.print(self.create_header_panel())
        self.console.print(self.create_launch_table(db))
        self.console.print(self.create_deployment_table(db))
        dead_letters = db.list_dead_letters(include_resolved)
        if dead_letters:
            self.console.print(self.create_dead_letter_table(db, include_resolved))
        else:
            self.console.print("[green]No open dead letters[/green]")

    def print_goodbye(self):
        goodbye_text = Text()
        goodbye_text.append("👋 COORDINATOR STOPPED\n", style="bold yellow")
        goodbye_text.append(f"Multichain Launchpad Sync v{VERSION}", style="white")
        self.console.print(Panel(
            Align.center(goodbye_text),
            box=box.DOUBLE_EDGE,
            style="yellow",
            padding=(1, 2)
        ))
