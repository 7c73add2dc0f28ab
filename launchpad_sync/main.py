#!/usr/bin/env python3
"""
Multichain Launchpad Sync - Main Entry Point
Cross-chain bonding curve coordinator

    launchpad-sync init                    write the default configuration
    launchpad-sync status                  launches, deployments, dead letters
    launchpad-sync quote buy|sell AMOUNT   quote a trade on a fresh or stored curve
    launchpad-sync run [--simulate]        start the coordinator
    launchpad-sync redispatch ID           re-run a dead-lettered fan-out leg

Version: 1.0.0
"""

import argparse
import json
import logging
import sys
import threading
import time
from decimal import Decimal, InvalidOperation

from rich.logging import RichHandler
from rich.panel import Panel

from . import price_engine
from .blockchain import AllowList, SimulatedChainClient, Web3ChainClient
from .config import load_config, save_config, validate_config
from .constants import (
    CONFIG_FILE, DEFAULT_CONFIG, DEFAULT_PLATFORM_FEE_BPS, VERSION, WAD
)
from .coordinator import CrossChainCoordinator
from .database import LaunchDatabase
from .display import RichDisplayManager, console
from .errors import LaunchpadError
from .events import QueueEventSource, Web3EventSource
from .models import CurveState, TokenCreated, TokenPurchase
from .utils import (
    compute_launch_id, format_bps, format_eth, format_price, format_token_amount
)

DEMO_IDENTITY = "0x000000000000000000000000000000000000dEaD"
DEMO_CHAINS = (11155111, 84532, 421614)


def setup_logging(config):
    """Install the root handler: rich by default, plain stream otherwise"""
    settings = config.get("logging", {})
    level = getattr(logging, str(settings.get("level", "INFO")).upper(), logging.INFO)
    if settings.get("rich", True):
        handler = RichHandler(console=console, rich_tracebacks=True, show_path=False)
        fmt = "%(message)s"
    else:
        handler = logging.StreamHandler()
        fmt = "%(asctime)s %(levelname)s %(name)s: %(message)s"
    logging.basicConfig(level=level, format=fmt, datefmt="[%X]", handlers=[handler], force=True)


def parse_amount(value):
    """Whole-unit decimal string to 18-decimal base units"""
    try:
        amount = Decimal(value)
    except InvalidOperation:
        raise argparse.ArgumentTypeError(f"not a number: {value}")
    if amount <= 0:
        raise argparse.ArgumentTypeError("amount must be positive")
    return int(amount * WAD)


def build_parser():
    parser = argparse.ArgumentParser(prog="launchpad-sync", description="Multichain launchpad coordinator")
    parser.add_argument("-c", "--config", default=CONFIG_FILE, help="configuration file")
    parser.add_argument("--version", action="version", version=f"%(prog)s {VERSION}")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("init", help="write the default configuration")

    status = sub.add_parser("status", help="show launches, deployments and dead letters")
    status.add_argument("--launch", help="also show the curves of this launch")
    status.add_argument("--all", action="store_true", help="include resolved dead letters")
    status.add_argument("--json", action="store_true", help="print records as JSON")

    quote = sub.add_parser("quote", help="quote a buy or sell")
    quote.add_argument("side", choices=["buy", "sell"])
    quote.add_argument("amount", type=parse_amount, help="ETH for buys, tokens for sells")
    quote.add_argument("--launch", help="quote against a stored curve")
    quote.add_argument("--chain", type=int, help="chain of the stored curve")

    run = sub.add_parser("run", help="start the coordinator")
    run.add_argument("--simulate", action="store_true", help="use in-memory chains and a demo feed")
    run.add_argument("--duration", type=float, default=0, help="stop after N seconds (0 runs until Ctrl+C)")

    redispatch = sub.add_parser("redispatch", help="re-run a dead-lettered leg")
    redispatch.add_argument("dead_letter_id", type=int)
    return parser


def cmd_init(args):
    save_config(DEFAULT_CONFIG, args.config)
    console.print(f"[green]✅ Wrote {args.config}[/green]")
    return 0


def export_records(db):
    records = []
    for launch in db.list_launches():
        entry = launch.to_dict()
        entry["curves"] = [s.to_dict() for s in db.list_curve_states(launch.launch_id)]
        entry["deployments"] = [d.to_dict() for d in db.list_deployments(launch.launch_id)]
        migration = db.get_migration(launch.launch_id)
        entry["migration"] = migration.to_dict() if migration else None
        records.append(entry)
    return records


def cmd_status(config, args):
    db = LaunchDatabase(config["db_path"])
    try:
        if args.json:
            print(json.dumps(export_records(db), indent=2, default=str))
            return 0
        display = RichDisplayManager(config)
        display.print_status(db, include_resolved=args.all)
        if args.launch:
            console.print(display.create_curve_table(db, args.launch))
    finally:
        db.close()
    return 0


def cmd_quote(config, args):
    if args.launch:
        db = LaunchDatabase(config["db_path"])
        try:
            state = db.get_curve_state(args.launch, args.chain)
        finally:
            db.close()
        if state is None:
            console.print(f"[red]❌ No curve for {args.launch} on chain {args.chain}[/red]")
            return 1
    else:
        curve = config.get("curve", {})
        state = CurveState.initial(
            "0x" + "00" * 32, 0,
            config["fees"]["default_creator_fee_bps"],
            int(curve["initial_virtual_eth"]), int(curve["initial_virtual_tokens"])
        )

    platform_fee_bps = config.get("fees", {}).get("platform_fee_bps", DEFAULT_PLATFORM_FEE_BPS)
    if args.side == "buy":
        result = price_engine.apply_buy(state, args.amount, platform_fee_bps=platform_fee_bps)
        lines = [
            f"ETH in:        {format_eth(args.amount)}",
            f"Fees:          {format_eth(result.fees.total)} "
            f"(platform {format_bps(platform_fee_bps)}, creator {format_bps(state.creator_fee_bps)})",
            f"Tokens out:    {format_token_amount(result.tokens_out)}",
            f"Refund:        {format_eth(result.eth_refund)}",
        ]
        if result.migration_triggered:
            lines.append("[yellow]This buy fills the curve and triggers migration[/yellow]")
    else:
        state = state.evolve(total_supply=max(state.total_supply, args.amount))
        result = price_engine.apply_sell(state, args.amount, platform_fee_bps=platform_fee_bps)
        lines = [
            f"Tokens in:     {format_token_amount(args.amount)}",
            f"ETH out:       {format_eth(result.eth_out)}",
            f"Platform fee:  {format_eth(result.fee)}",
        ]
    lines.append(f"Price:         {format_price(price_engine.current_price(state))} → "
                 f"{format_price(price_engine.current_price(result.state))}")
    console.print(Panel("\n".join(lines), title=f"Quote: {args.side}", border_style="cyan"))
    return 0


def build_simulation(config):
    """In-memory chains, queue sources and a demo launch with a few buys"""
    chain_ids = [c["chain_id"] for c in config.get("chains", [])] or list(DEMO_CHAINS)
    allow_list = AllowList([DEMO_IDENTITY], [DEMO_IDENTITY])
    config = dict(config, relay_identity=DEMO_IDENTITY)
    clients = {chain_id: SimulatedChainClient(chain_id, allow_list) for chain_id in chain_ids}
    sources = {chain_id: QueueEventSource(chain_id) for chain_id in chain_ids}

    origin = chain_ids[0]
    launch_id = compute_launch_id(DEMO_IDENTITY, 0, int(time.time()))
    sources[origin].publish(TokenCreated(
        launch_id=launch_id, name="Demo Token", symbol="DEMO", creator=DEMO_IDENTITY,
        origin_chain_id=origin, target_chain_ids=tuple(chain_ids[1:]),
        chain_id=origin, caller=DEMO_IDENTITY,
    ))
    # One queue keeps the demo ordered: creation first, then buys on every chain
    for seq, chain_id in enumerate(chain_ids * 2, start=1):
        sources[origin].publish(TokenPurchase(
            launch_id=launch_id, buyer=DEMO_IDENTITY, eth_in=WAD // 100,
            seq=seq, chain_id=chain_id, caller=DEMO_IDENTITY,
        ))
    return config, clients, allow_list, list(sources.values())


def build_live(config):
    clients = {}
    sources = []
    timeout = config.get("retry", {}).get("timeout", 30)
    for chain in config["chains"]:
        client = Web3ChainClient(chain, timeout=timeout)
        clients[chain["chain_id"]] = client
        if chain.get("emitter"):
            sources.append(Web3EventSource(chain, w3=client.w3, rl_call=client._rl_call))
    return clients, None, sources


def cmd_run(config, args):
    if args.simulate:
        config, clients, allow_list, sources = build_simulation(config)
        db = LaunchDatabase(":memory:")
    else:
        if not validate_config(config):
            console.print("[red]❌ Configuration validation failed[/red]")
            return 1
        if not config.get("relay_identity"):
            console.print("[red]❌ relay_identity must be set to send destination calls[/red]")
            return 1
        clients, allow_list, sources = build_live(config)
        db = LaunchDatabase(config["db_path"])

    display = RichDisplayManager(config)
    console.print(display.create_header_panel())
    coordinator = CrossChainCoordinator(config, db, clients, allow_list)
    stop_event = threading.Event()
    coordinator.run(sources, stop_event)

    started = time.time()
    try:
        while not stop_event.is_set():
            if args.duration and time.time() - started >= args.duration:
                break
            stop_event.wait(1)
    except KeyboardInterrupt:
        console.print("\n[yellow]👋 Stopped by user[/yellow]")
    finally:
        coordinator.stop()
        console.print(display.create_stats_panel(coordinator.get_stats()))
        if args.simulate:
            console.print(display.create_launch_table(db))
            console.print(display.create_deployment_table(db))
        display.print_goodbye()
        db.close()
    return 0


def cmd_redispatch(config, args):
    if not validate_config(config):
        console.print("[red]❌ Configuration validation failed[/red]")
        return 1
    clients, allow_list, _ = build_live(config)
    db = LaunchDatabase(config["db_path"])
    coordinator = CrossChainCoordinator(config, db, clients, allow_list)
    try:
        coordinator.redispatch(args.dead_letter_id)
    except LaunchpadError as e:
        console.print(f"[red]❌ Redispatch failed: {e}[/red]")
        return 1
    finally:
        coordinator.stop()
        db.close()
    console.print(f"[green]✅ Dead letter {args.dead_letter_id} resolved[/green]")
    return 0


def main(argv=None):
    args = build_parser().parse_args(argv)
    if args.command == "init":
        return cmd_init(args)

    config = load_config(args.config)
    if config is None:
        console.print(f"[yellow]📝 Edit {args.config} and run again[/yellow]")
        return 1
    setup_logging(config)

    try:
        if args.command == "status":
            return cmd_status(config, args)
        if args.command == "quote":
            return cmd_quote(config, args)
        if args.command == "run":
            return cmd_run(config, args)
        if args.command == "redispatch":
            return cmd_redispatch(config, args)
    except LaunchpadError as e:
        console.print(f"[red]❌ {e}[/red]")
        return 1
    return 1


if __name__ == "__main__":
    sys.exit(main())
