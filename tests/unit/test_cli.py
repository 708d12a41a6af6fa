"""
Unit tests for CLI commands.
"""

import asyncio

import click
import pytest
from unittest.mock import patch, AsyncMock
from click.testing import CliRunner

from switchyard.cli import _send, cli, main


# ══════════════════════════════════════════════════════════════
# Fixtures
# ══════════════════════════════════════════════════════════════


@pytest.fixture
def runner():
    """Create a CLI runner."""
    return CliRunner()


# ══════════════════════════════════════════════════════════════
# Main CLI Tests
# ══════════════════════════════════════════════════════════════


class TestMainCLI:
    """Test main CLI group."""

    def test_cli_version(self, runner):
        """Test CLI version option."""
        result = runner.invoke(cli, ["--version"])
        assert result.exit_code == 0
        assert "0.1.0" in result.output

    def test_cli_help(self, runner):
        """Test CLI help output."""
        result = runner.invoke(cli, ["--help"])
        assert result.exit_code == 0
        assert "Switchyard" in result.output
        assert "listen" in result.output
        assert "send" in result.output

    def test_cli_debug_mode(self, runner):
        """Test CLI debug mode."""
        result = runner.invoke(cli, ["--debug", "config"])
        assert result.exit_code == 0

    def test_main_function(self):
        """Test main entry point."""
        with patch("switchyard.cli.cli") as mock_cli:
            main()
            mock_cli.assert_called_once()


# ══════════════════════════════════════════════════════════════
# Channel Commands Tests
# ══════════════════════════════════════════════════════════════


class TestListenCommand:
    """Test listen command."""

    def test_listen_help(self, runner):
        """Test listen help output."""
        result = runner.invoke(cli, ["listen", "--help"])
        assert result.exit_code == 0
        assert "--event" in result.output
        assert "--filter" in result.output
        assert "--private" in result.output

    def test_listen_command(self, runner):
        """Test listen passes its options through."""
        with patch("switchyard.cli._listen", new_callable=AsyncMock) as mock_listen:
            result = runner.invoke(cli, ["listen", "room:1", "-e", "broadcast", "-f", "cursor", "--private"])

        assert result.exit_code == 0
        mock_listen.assert_awaited_once_with("room:1", "broadcast", "cursor", True)


class TestSendCommand:
    """Test send command."""

    def test_send_command(self, runner):
        """Test send parses the payload and prints the outcome."""
        with patch("switchyard.cli._send", new_callable=AsyncMock, return_value="ok") as mock_send:
            result = runner.invoke(cli, ["send", "room:1", "shout", '{"body": "hi"}'])

        assert result.exit_code == 0
        assert "ok" in result.output
        mock_send.assert_awaited_once_with("room:1", "shout", {"body": "hi"}, False)

    def test_send_nested_payload(self, runner):
        """Test nested and non-ASCII payloads reach the broadcast intact."""
        with patch("switchyard.cli._send", new_callable=AsyncMock, return_value="ok") as mock_send:
            result = runner.invoke(
                cli, ["send", "room:1", "shout", '{"body": "h\\u00e9llo", "meta": {"n": 1.5}}']
            )

        assert result.exit_code == 0
        mock_send.assert_awaited_once_with(
            "room:1", "shout", {"body": "héllo", "meta": {"n": 1.5}}, False
        )

    def test_send_invalid_json(self, runner):
        """Test malformed payloads are rejected before connecting."""
        with patch("switchyard.cli._send", new_callable=AsyncMock) as mock_send:
            result = runner.invoke(cli, ["send", "room:1", "shout", "{nope"])

        assert result.exit_code != 0
        assert "invalid JSON" in result.output
        mock_send.assert_not_called()

    def test_send_non_object_payload(self, runner):
        """Test payloads must be JSON objects."""
        result = runner.invoke(cli, ["send", "room:1", "shout", "[1, 2]"])

        assert result.exit_code != 0
        assert "JSON object" in result.output

    @pytest.mark.asyncio
    async def test_send_broadcasts_after_join(self, make_client, transports):
        """Test the send helper joins, broadcasts and disconnects."""
        with patch("switchyard.cli.ConnectionManager", lambda url, options: make_client()):
            task = asyncio.create_task(_send("room:1", "shout", {"body": "hi"}, False))
            await asyncio.sleep(0)

            transport = transports[0]
            transport.open()
            transport.reply(transport.last("phx_join"), "ok")

            assert await task == "ok"

        frame = transport.last("broadcast")
        assert frame.payload == {"type": "broadcast", "event": "shout", "payload": {"body": "hi"}}
        assert transport.close_calls == [(1000, None)]

    @pytest.mark.asyncio
    async def test_send_fails_when_join_rejected(self, make_client, transports):
        """Test a rejected join surfaces as a CLI error."""
        with patch("switchyard.cli.ConnectionManager", lambda url, options: make_client()):
            task = asyncio.create_task(_send("room:1", "shout", {}, True))
            await asyncio.sleep(0)

            transport = transports[0]
            transport.open()
            assert transport.last("phx_join").payload["config"]["private"] is True
            transport.reply(transport.last("phx_join"), "error", {"reason": "unauthorized"})

            with pytest.raises(click.ClickException) as exc_info:
                await task

        assert "CHANNEL_ERROR" in exc_info.value.message


# ══════════════════════════════════════════════════════════════
# Config Commands Tests
# ══════════════════════════════════════════════════════════════


class TestConfigCommand:
    """Test config command."""

    def test_config_command(self, runner, test_settings):
        """Test config output masks credentials."""
        with patch("switchyard.cli.settings", test_settings):
            result = runner.invoke(cli, ["config"])

        assert result.exit_code == 0
        assert "Switchyard Configuration" in result.output
        assert "ws://realtime.test/socket" in result.output
        assert "test-key" not in result.output
        assert "***" in result.output
        assert "0.5, 1.0, 2.0" in result.output

    def test_config_unset_token(self, runner, test_settings):
        """Test a missing access token is reported as not set."""
        with patch("switchyard.cli.settings", test_settings):
            result = runner.invoke(cli, ["config"])

        line = next(l for l in result.output.splitlines() if "Access Token" in l)
        assert "Not set" in line
