"""
Tests for the command line interface.
"""

import argparse
import json
import os
import sys

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

from cli import cmd_config, cmd_demo
from conftest import OWNER, SIGNATURE


def demo_args(**overrides):
    values = dict(provider="github", owner=OWNER, signature=SIGNATURE, publish=False, metrics=False)
    values.update(overrides)
    return argparse.Namespace(**values)


class TestConfigCommand:
    """Tests for the config command."""

    def test_show(self, capsys):
        assert cmd_config(argparse.Namespace(config_command="show")) == 0
        assert json.loads(capsys.readouterr().out)["url"].startswith("https://")

    def test_set_notary(self, capsys):
        args = argparse.Namespace(config_command="set-notary", url="https://notary.cli.test",
                                  timeout=12.0, max_retries=None)
        assert cmd_config(args) == 0
        output = json.loads(capsys.readouterr().out)
        assert output["url"] == "https://notary.cli.test"
        assert output["timeout"] == 12.0

    def test_set_notary_rejects_plain_http(self, capsys):
        args = argparse.Namespace(config_command="set-notary", url="http://notary.cli.test",
                                  timeout=None, max_retries=None)
        assert cmd_config(args) == 1
        assert "Invalid notary configuration" in capsys.readouterr().err


class TestDemoCommand:
    """Tests for the simulated end-to-end demo."""

    def test_demo_run_is_degraded_success(self, capsys):
        assert cmd_demo(demo_args()) == 0
        response = json.loads(capsys.readouterr().out)
        assert response["success"] is True
        assert response["data"]["status"] == "degraded_success"
        assert response["data"]["record"]["verificationMethod"] == "unattested"

    def test_demo_prints_metrics(self, capsys):
        assert cmd_demo(demo_args(metrics=True)) == 0
        assert "zktls_orchestration_runs_total" in capsys.readouterr().out

    def test_unknown_provider(self, capsys):
        assert cmd_demo(demo_args(provider="myspace")) == 1
        assert "unknown provider" in capsys.readouterr().err

    def test_refused_in_production(self, monkeypatch, capsys):
        monkeypatch.setenv("ZKTLS_ENV", "production")
        assert cmd_demo(demo_args()) == 1
        assert "disabled in production" in capsys.readouterr().err
