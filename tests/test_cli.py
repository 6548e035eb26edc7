from __future__ import annotations

import asyncio
import contextlib
import io
import ipaddress
import os
import signal
import unittest
from unittest import mock

from logblock import cli
from logblock.config import Settings
from logblock.errors import JournalError
from logblock.firewall import DryRunFirewall, NftFirewall


class StubSource:
    def __init__(self, *items) -> None:
        self.items = list(items)
        self.closed = False

    async def next(self, wait_limit=None):
        if self.items:
            item = self.items.pop(0)
            if isinstance(item, Exception):
                raise item
            return item
        os.kill(os.getpid(), signal.SIGTERM)
        await asyncio.Event().wait()

    async def close(self) -> None:
        self.closed = True


class TestParseArgs(unittest.TestCase):
    def test_flags_map_to_settings_fields(self) -> None:
        args = cli.parse_args([
            "--attempts-per-level", "5", "--unblock-delay", "10m", "--unit", "sshd.service",
            "--unit", "dropbear.service", "--reap-after", "off", "--dry-run",
        ])
        with mock.patch.dict(os.environ, {}, clear=True):
            settings = Settings.from_env(**vars(args))
        self.assertEqual(settings.attempts_per_level, 5)
        self.assertEqual(settings.base_unblock_delay, 600.0)
        self.assertEqual(settings.units, ("sshd.service", "dropbear.service"))
        self.assertIsNone(settings.reap_after)
        self.assertTrue(settings.dry_run)

    def test_unset_flags_are_none(self) -> None:
        args = vars(cli.parse_args([]))
        self.assertTrue(all(value is None for value in args.values()))

    def test_build_firewall(self) -> None:
        self.assertIsInstance(cli.build_firewall(Settings(dry_run=True)), DryRunFirewall)
        firewall = cli.build_firewall(Settings(table="guard"))
        self.assertIsInstance(firewall, NftFirewall)
        self.assertEqual(firewall.table, "guard")


class TestMain(unittest.TestCase):
    def test_invalid_configuration_exits_2(self) -> None:
        stderr = io.StringIO()
        with mock.patch.dict(os.environ, {}, clear=True), contextlib.redirect_stderr(stderr):
            self.assertEqual(cli.main(["--attempts-per-level", "0"]), 2)
        self.assertIn("invalid configuration", stderr.getvalue())

    def test_fatal_error_exits_1(self) -> None:
        serve = mock.AsyncMock(side_effect=JournalError("journalctl exited 6 times in a row"))
        with mock.patch.dict(os.environ, {}, clear=True), mock.patch.object(cli, "serve", new=serve):
            self.assertEqual(cli.main(["--dry-run"]), 1)
        serve.assert_awaited_once()


class TestServe(unittest.IsolatedAsyncioTestCase):
    async def test_source_error_cleans_up_and_propagates(self) -> None:
        source = StubSource(ipaddress.ip_address("203.0.113.5"), JournalError("gone"))
        firewall = DryRunFirewall()
        with mock.patch.object(cli.JournalSource, "for_units", return_value=source), \
                mock.patch.object(cli, "build_firewall", return_value=firewall), \
                mock.patch.object(firewall, "remove_tables", wraps=firewall.remove_tables) as remove:
            with self.assertLogs("logblock", level="INFO"):
                with self.assertRaises(JournalError):
                    await cli.serve(Settings(dry_run=True))
        self.assertTrue(source.closed)
        remove.assert_called_once_with()

    async def test_sigterm_stops_cleanly(self) -> None:
        source = StubSource()
        firewall = DryRunFirewall()
        with mock.patch.object(cli.JournalSource, "for_units", return_value=source), \
                mock.patch.object(cli, "build_firewall", return_value=firewall):
            with self.assertLogs("logblock", level="INFO") as logs:
                code = await cli.serve(Settings(dry_run=True))
        self.assertEqual(code, 0)
        self.assertTrue(source.closed)
        self.assertTrue(any("Shutting down" in line for line in logs.output))


if __name__ == "__main__":
    unittest.main()
