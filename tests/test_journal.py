from __future__ import annotations

import asyncio
import ipaddress
import json
import unittest
from unittest import mock

from logblock.errors import JournalError
from logblock.journal import (
    SSHD_MATCHER,
    JournalSource,
    address_from_entry,
    default_matchers,
)

MATCHERS = default_matchers(["ssh.service", "sshd.service"])


def entry(message, unit: str = "ssh.service", cursor: str | None = None) -> bytes:
    record = {"_SYSTEMD_UNIT": unit, "MESSAGE": message}
    if cursor is not None:
        record["__CURSOR"] = cursor
    return json.dumps(record).encode() + b"\n"


def fake_journal(*lines: bytes, eof: bool = False) -> mock.Mock:
    reader = asyncio.StreamReader()
    for line in lines:
        reader.feed_data(line)
    if eof:
        reader.feed_eof()
    proc = mock.Mock()
    proc.stdout = reader
    proc.returncode = None
    proc.wait = mock.AsyncMock(return_value=1)
    return proc


class TestSshdMatcher(unittest.TestCase):
    def test_failed_password_lines(self) -> None:
        cases = {
            "Failed password for invalid user admin from 203.0.113.5 port 51022 ssh2": "203.0.113.5",
            "Failed password for root from 2001:db8::7 port 40000 ssh2": "2001:db8::7",
            "Failed password for invalid user from from 203.0.113.9 port 22 ssh2": "203.0.113.9",
            "Connection closed by authenticating user root 198.51.100.7 port 4242 [preauth]": "198.51.100.7",
        }
        for message, expected in cases.items():
            with self.subTest(message=message):
                address = SSHD_MATCHER.extract(message)
                self.assertEqual(address, ipaddress.ip_address(expected) if expected else None)

    def test_unrelated_lines_are_ignored(self) -> None:
        for message in (
            "Accepted password for root from 192.0.2.1 port 22 ssh2",
            "Server listening on 0.0.0.0 port 22.",
            "pam_unix(sshd:session): session opened for user root",
        ):
            with self.subTest(message=message):
                self.assertIsNone(SSHD_MATCHER.extract(message))

    def test_text_that_is_not_an_address(self) -> None:
        self.assertIsNone(SSHD_MATCHER.extract("Failed password for root from deadbeef port 22 ssh2"))
        self.assertIsNone(SSHD_MATCHER.extract("Failed password for root from ::: port 22 ssh2"))


class TestAddressFromEntry(unittest.TestCase):
    def test_unit_selects_matcher(self) -> None:
        msg = "Failed password for root from 203.0.113.5 port 22 ssh2"
        self.assertEqual(
            address_from_entry({"_SYSTEMD_UNIT": "sshd.service", "MESSAGE": msg}, MATCHERS),
            ipaddress.ip_address("203.0.113.5"),
        )
        self.assertIsNone(address_from_entry({"_SYSTEMD_UNIT": "cron.service", "MESSAGE": msg}, MATCHERS))

    def test_missing_fields(self) -> None:
        self.assertIsNone(address_from_entry({"MESSAGE": "Failed password"}, MATCHERS))
        self.assertIsNone(address_from_entry({"_SYSTEMD_UNIT": "ssh.service"}, MATCHERS))

    def test_binary_message(self) -> None:
        raw = list(b"Failed password for root from 203.0.113.5 port 22 ssh2 \xff")
        found = address_from_entry({"_SYSTEMD_UNIT": "ssh.service", "MESSAGE": raw}, MATCHERS)
        self.assertEqual(found, ipaddress.ip_address("203.0.113.5"))


class TestJournalSource(unittest.IsolatedAsyncioTestCase):
    def test_requires_matchers(self) -> None:
        with self.assertRaises(ValueError):
            JournalSource({})

    def test_initial_command_starts_at_tail(self) -> None:
        source = JournalSource.for_units(["ssh.service", "sshd.service"])
        self.assertEqual(
            source.command(),
            [
                "journalctl", "--follow", "--output=json", "--system", "--lines=0",
                "_SYSTEMD_UNIT=ssh.service", "_SYSTEMD_UNIT=sshd.service",
            ],
        )

    async def test_returns_next_matching_address(self) -> None:
        proc = fake_journal(
            entry("Server listening on 0.0.0.0 port 22.", cursor="c1"),
            b"not json\n",
            entry("Failed password for root from 203.0.113.5 port 22 ssh2", cursor="c2"),
            entry("Failed password for root from 198.51.100.7 port 22 ssh2", cursor="c3"),
        )
        source = JournalSource(MATCHERS)
        with mock.patch("asyncio.create_subprocess_exec", new=mock.AsyncMock(return_value=proc)) as spawn:
            with self.assertLogs("logblock.journal", level="WARNING"):
                first = await source.next(1.0)
            second = await source.next(1.0)

        self.assertEqual(first, ipaddress.ip_address("203.0.113.5"))
        self.assertEqual(second, ipaddress.ip_address("198.51.100.7"))
        self.assertEqual(source.cursor, "c3")
        spawn.assert_awaited_once()

    async def test_timeout_returns_none(self) -> None:
        source = JournalSource(MATCHERS)
        with mock.patch("asyncio.create_subprocess_exec", new=mock.AsyncMock(return_value=fake_journal())):
            self.assertIsNone(await source.next(0.01))

    async def test_restart_resumes_after_cursor(self) -> None:
        first = fake_journal(entry("Server listening on :: port 22.", cursor="c7"), eof=True)
        second = fake_journal(entry("Failed password for root from 203.0.113.5 port 22 ssh2", cursor="c8"))
        spawn = mock.AsyncMock(side_effect=[first, second])
        source = JournalSource(MATCHERS)
        with mock.patch("asyncio.create_subprocess_exec", new=spawn), \
                mock.patch("logblock.journal.RESTART_DELAY", 0.0):
            with self.assertLogs("logblock.journal", level="WARNING") as logs:
                address = await source.next(1.0)

        self.assertEqual(address, ipaddress.ip_address("203.0.113.5"))
        self.assertIn("--after-cursor=c7", spawn.await_args_list[1].args)
        self.assertNotIn("--lines=0", spawn.await_args_list[1].args)
        self.assertTrue(any("restarting" in line for line in logs.output))

    async def test_repeated_exits_are_fatal(self) -> None:
        spawn = mock.AsyncMock(side_effect=lambda *args, **kwargs: fake_journal(eof=True))
        source = JournalSource(MATCHERS)
        with mock.patch("asyncio.create_subprocess_exec", new=spawn), \
                mock.patch("logblock.journal.RESTART_DELAY", 0.0):
            with self.assertLogs("logblock.journal", level="WARNING"):
                with self.assertRaises(JournalError):
                    await source.next(None)

    async def test_spawn_failure_is_fatal(self) -> None:
        spawn = mock.AsyncMock(side_effect=FileNotFoundError(2, "No such file or directory", "journalctl"))
        source = JournalSource(MATCHERS)
        with mock.patch("asyncio.create_subprocess_exec", new=spawn):
            with self.assertRaises(JournalError):
                await source.next(1.0)

    async def test_close_terminates_child(self) -> None:
        proc = fake_journal()
        source = JournalSource(MATCHERS)
        with mock.patch("asyncio.create_subprocess_exec", new=mock.AsyncMock(return_value=proc)):
            await source.next(0.01)
        await source.close()
        proc.terminate.assert_called_once_with()
        proc.wait.assert_awaited()
        await source.close()
        proc.terminate.assert_called_once_with()


if __name__ == "__main__":
    unittest.main()
