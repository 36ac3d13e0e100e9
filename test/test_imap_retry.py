"""
Tests for imap_retry.py

Tests cover:
- Transient error detection
- Retry with exponential backoff on transient errors
- ConnectionProxy transparent proxying
- Pass-through for non-retryable methods and non-transient errors
"""

import imaplib
import os
import sys

import pytest

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "../src")))
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "../tools")))

import imap_retry
from mock_imap_server import start_server_thread as start_mock_server


class FlakyConn:
    """Answers "Server Busy" for the first `failures` calls of each command."""

    def __init__(self, failures=0, busy=b"[UNAVAILABLE] Server Busy"):
        self.failures = failures
        self.busy = busy
        self.calls = []
        self.state = "SELECTED"

    def _answer(self, name, *args):
        self.calls.append((name, args))
        if len([c for c in self.calls if c[0] == name]) <= self.failures:
            return "NO", [self.busy]
        return "OK", [b"done"]

    def select(self, mailbox, readonly=False):
        return self._answer("select", mailbox, readonly)

    def append(self, mailbox, flags, date_time, message):
        return self._answer("append", mailbox)

    def uid(self, command, *args):
        return self._answer("uid", command, *args)

    def logout(self):
        return self._answer("logout")


class SleepRecorder:
    def __init__(self):
        self.waits = []

    def __call__(self, seconds):
        self.waits.append(seconds)


class TestIsTransientError:
    def test_unavailable(self):
        assert imap_retry._is_transient_error([b"[UNAVAILABLE] Server Busy"]) is True

    def test_try_again(self):
        assert imap_retry._is_transient_error([b"Please try again later"]) is True

    def test_throttled(self):
        assert imap_retry._is_transient_error([b"[THROTTLED]"]) is True

    def test_not_transient(self):
        assert imap_retry._is_transient_error([b"[AUTHENTICATIONFAILED]"]) is False

    def test_empty_data(self):
        assert imap_retry._is_transient_error([]) is False
        assert imap_retry._is_transient_error(None) is False

    def test_non_bytes_ignored(self):
        assert imap_retry._is_transient_error(["UNAVAILABLE", b"[AUTHENTICATIONFAILED]"]) is False

    def test_multiple_items_matches_second(self):
        assert imap_retry._is_transient_error([b"OK", b"NO [UNAVAILABLE]"]) is True


class TestCallWithRetry:
    def test_ok_returns_immediately(self):
        conn = FlakyConn()
        sleep = SleepRecorder()

        result = imap_retry.call_with_retry(conn.select, '"INBOX"', sleep_fn=sleep, log_fn=lambda m: None)

        assert result == ("OK", [b"done"])
        assert sleep.waits == []

    def test_exponential_backoff(self):
        conn = FlakyConn(failures=2)
        sleep = SleepRecorder()
        logged = []

        result = imap_retry.call_with_retry(
            conn.select, '"INBOX"', max_retries=3, initial_wait=5, sleep_fn=sleep, log_fn=logged.append
        )

        assert result[0] == "OK"
        assert sleep.waits == [5, 10]
        assert logged[0] == "Server busy, retrying in 5s... (attempt 1/3)"

    def test_exhausted_returns_last_error(self):
        conn = FlakyConn(failures=5)
        sleep = SleepRecorder()

        typ, data = imap_retry.call_with_retry(
            conn.select, '"INBOX"', max_retries=3, initial_wait=1, sleep_fn=sleep, log_fn=lambda m: None
        )

        assert typ == "NO"
        assert b"UNAVAILABLE" in data[0]
        assert len(conn.calls) == 3
        assert sleep.waits == [1, 2]

    def test_non_transient_not_retried(self):
        conn = FlakyConn(failures=5, busy=b"[NONEXISTENT] No such mailbox")
        sleep = SleepRecorder()

        typ, _data = imap_retry.call_with_retry(conn.select, '"Nope"', sleep_fn=sleep, log_fn=lambda m: None)

        assert typ == "NO"
        assert len(conn.calls) == 1
        assert sleep.waits == []

    def test_keyword_arguments_forwarded(self):
        conn = FlakyConn()

        imap_retry.call_with_retry(conn.select, '"INBOX"', readonly=True, sleep_fn=SleepRecorder())

        assert conn.calls == [("select", ('"INBOX"', True))]


class TestConnectionProxy:
    def _proxy(self, conn, **kwargs):
        self.sleep = SleepRecorder()
        return imap_retry.ConnectionProxy(conn, initial_wait=0.01, log_fn=lambda m: None, sleep_fn=self.sleep, **kwargs)

    def test_append_retried(self):
        conn = FlakyConn(failures=1)
        proxy = self._proxy(conn)

        typ, _data = proxy.append('"INBOX"', None, None, b"data")

        assert typ == "OK"
        assert len(conn.calls) == 2
        assert self.sleep.waits == [0.01]

    def test_uid_retried(self):
        conn = FlakyConn(failures=2)
        proxy = self._proxy(conn, max_retries=3)

        typ, _data = proxy.uid("search", None, "ALL")

        assert typ == "OK"
        assert conn.calls[-1] == ("uid", ("search", None, "ALL"))

    def test_logout_not_retried(self):
        conn = FlakyConn(failures=1)
        proxy = self._proxy(conn)

        typ, _data = proxy.logout()

        assert typ == "NO"
        assert len(conn.calls) == 1

    def test_non_callable_attribute_passes_through(self):
        proxy = self._proxy(FlakyConn())

        assert proxy.state == "SELECTED"

    def test_wrapped(self):
        conn = FlakyConn()

        assert self._proxy(conn).wrapped is conn

    def test_non_tuple_return_passes_through(self):
        class DummyConn:
            def noop(self):
                return "unexpected"

        assert imap_retry.ConnectionProxy(DummyConn()).noop() == "unexpected"

    def test_real_connection(self):
        server, port = start_mock_server(0, {"INBOX": []})
        try:
            client = imaplib.IMAP4("localhost", port)
            client.login("user", "pass")
            proxy = imap_retry.ConnectionProxy(client, initial_wait=0.01)

            typ, _data = proxy.select('"INBOX"', readonly=True)

            assert typ == "OK"
            assert proxy.state == "SELECTED"
            assert "UNSELECT" in proxy.capabilities
            proxy.logout()
        finally:
            server.shutdown()
            server.server_close()

    def test_max_retries_zero_raises(self):
        with pytest.raises(ValueError, match="max_retries must be >= 1"):
            imap_retry.ConnectionProxy(None, max_retries=0)

    def test_initial_wait_negative_raises(self):
        with pytest.raises(ValueError, match="initial_wait must be >= 0"):
            imap_retry.ConnectionProxy(None, initial_wait=-1)
