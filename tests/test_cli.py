"""
Tests for the command line entry point and the status display.
"""

import argparse
import copy
import json
from io import StringIO
from unittest.mock import patch

import pytest
from rich.console import Console

from launchpad_sync import main as cli
from launchpad_sync.config import save_config
from launchpad_sync.constants import DEFAULT_CONFIG, WAD
from launchpad_sync.database import LaunchDatabase
from launchpad_sync.display import RichDisplayManager
from launchpad_sync.models import Launch

from conftest import CREATOR, ORIGIN, TARGETS, purchase


@pytest.fixture(autouse=True)
def keep_logging():
    with patch.object(cli, "setup_logging"):
        yield


@pytest.fixture
def config_path(tmp_path):
    cfg = copy.deepcopy(DEFAULT_CONFIG)
    cfg["db_path"] = str(tmp_path / "launches.db")
    path = str(tmp_path / "config.json")
    save_config(cfg, path)
    return path


class TestParseAmount:

    def test_whole_units_become_base_units(self):
        assert cli.parse_amount("0.01") == WAD // 100
        assert cli.parse_amount("2") == 2 * WAD

    @pytest.mark.parametrize("value", ["abc", "0", "-1"])
    def test_rejects(self, value):
        with pytest.raises(argparse.ArgumentTypeError):
            cli.parse_amount(value)


class TestMain:

    def test_init_writes_defaults(self, tmp_path):
        path = tmp_path / "fresh.json"
        assert cli.main(["-c", str(path), "init"]) == 0
        assert json.loads(path.read_text())["fees"] == DEFAULT_CONFIG["fees"]

    def test_missing_config_is_created_first(self, tmp_path):
        path = tmp_path / "new.json"
        assert cli.main(["-c", str(path), "status"]) == 1
        assert path.exists()

    def test_quote_buy(self, config_path, capsys):
        assert cli.main(["-c", config_path, "quote", "buy", "0.01"]) == 0
        assert "Tokens out" in capsys.readouterr().out

    def test_quote_sell(self, config_path, capsys):
        assert cli.main(["-c", config_path, "quote", "sell", "1000"]) == 0
        assert "ETH out" in capsys.readouterr().out

    def test_quote_of_unknown_curve(self, config_path):
        args = ["-c", config_path, "quote", "buy", "1", "--launch", "0x" + "00" * 32, "--chain", "1"]
        assert cli.main(args) == 1

    def test_status_of_empty_database(self, config_path, capsys):
        assert cli.main(["-c", config_path, "status"]) == 0
        assert "No open dead letters" in capsys.readouterr().out

    def test_status_as_json(self, config_path, tmp_path, capsys):
        db = LaunchDatabase(str(tmp_path / "launches.db"))
        launch = Launch.create(CREATOR, "Moon Cat", "MCAT", ORIGIN, TARGETS, nonce=1, timestamp=1_700_000_000)
        db.insert_launch(launch)
        db.close()

        assert cli.main(["-c", config_path, "status", "--json"]) == 0
        [record] = json.loads(capsys.readouterr().out)
        assert record["launch_id"] == launch.launch_id
        assert record["target_chain_ids"] == sorted(TARGETS)
        assert record["migration"] is None

    def test_live_run_needs_chains(self, config_path):
        assert cli.main(["-c", config_path, "run"]) == 1
        assert cli.main(["-c", config_path, "redispatch", "1"]) == 1

    def test_simulated_run(self, config_path, capsys):
        assert cli.main(["-c", config_path, "run", "--simulate", "--duration", "0.1"]) == 0
        out = capsys.readouterr().out
        assert "Launches" in out
        assert "COORDINATOR STOPPED" in out


class TestDisplay:

    def test_tables_render_a_launch(self, created_event, launch_id, coordinator, db):
        coordinator.handle_event(created_event)
        coordinator.handle_event(purchase(launch_id, seq=1))

        buffer = StringIO()
        display = RichDisplayManager(output=Console(file=buffer, width=200))
        display.print_status(db)
        display.console.print(display.create_curve_table(db, launch_id))
        display.console.print(display.create_stats_panel(coordinator.get_stats()))

        out = buffer.getvalue()
        assert "Moon Cat (MCAT)" in out
        assert "deployed" in out
        assert "Base Sepolia" in out
        assert "Trades: 1" in out
