"""Tests for the marker-driven channel reader."""

from __future__ import annotations

import pytest

from bastion_fleet.errors import SessionIOError
from bastion_fleet.services.prompt import MarkerMatch, send_line, wait_for
from tests.fakes import FakeChannel, FakeClock


def _wait(channel, markers, timeout=10.0, clock=None, **kwargs):
    clock = clock or FakeClock()
    return wait_for(
        channel,
        markers,
        timeout,
        clock=clock.monotonic,
        sleep=clock.sleep,
        **kwargs,
    )


class TestWaitFor:
    def test_match_in_single_read(self):
        channel = FakeChannel([b"Welcome\r\nOpt> "])
        match = _wait(channel, ["Opt>"])
        assert match == MarkerMatch("Opt>", "Welcome\r\nOpt> ")
        assert match.matched

    def test_marker_split_at_every_offset(self):
        data = "日志收集 ready\r\nOpt>".encode("utf-8")
        for i in range(1, len(data)):
            channel = FakeChannel([data[:i], data[i:]])
            match = _wait(channel, ["Opt>"])
            assert match.marker == "Opt>", f"split at {i}"
            assert match.transcript == data.decode("utf-8"), f"split at {i}"

    def test_marker_split_with_no_data_gap(self):
        data = "é Opt>".encode("utf-8")
        for i in range(1, len(data)):
            clock = FakeClock()
            channel = FakeChannel([data[:i], None, None, data[i:]])
            match = _wait(channel, ["Opt>"], clock=clock)
            assert match.marker == "Opt>"
            assert match.transcript == "é Opt>"
            assert clock.sleeps == [0.3, 0.3]

    def test_multibyte_char_split_three_ways(self):
        channel = FakeChannel([b"\xe6", b"\x97", b"\xa5", b"Op", b"t>"])
        match = _wait(channel, ["Opt>"])
        assert match == MarkerMatch("Opt>", "日Opt>")

    def test_first_marker_in_iteration_order_wins(self):
        channel = FakeChannel([b"[ops@node ~]$ Opt> "])
        match = _wait(channel, ["Opt>", "$"])
        assert match.marker == "Opt>"

    def test_marker_not_contained_in_newest_fragment(self):
        channel = FakeChannel([b"[ops@10.1.0.", b"11 ~]$ "])
        match = _wait(channel, ["10.1.0.11"])
        assert match == MarkerMatch("10.1.0.11", "[ops@10.1.0.11 ~]$ ")

    def test_timeout_returns_partial_transcript(self):
        clock = FakeClock()
        channel = FakeChannel([b"still ", b"working"])
        match = _wait(channel, ["Opt>"], timeout=3.0, clock=clock)
        assert match == MarkerMatch("", "still working")
        assert not match.matched
        assert clock.now >= 1003.0

    def test_timeout_with_no_data_at_all(self):
        match = _wait(FakeChannel(), ["Opt>"], timeout=1.0)
        assert match == MarkerMatch("", "")

    def test_custom_poll_interval(self):
        clock = FakeClock()
        _wait(FakeChannel(), ["x"], timeout=1.0, clock=clock, poll_interval=0.5)
        assert clock.sleeps == [0.5, 0.5]

    def test_remote_eof_ends_wait(self):
        channel = FakeChannel([b"bye", b""])
        match = _wait(channel, ["Opt>"])
        assert match == MarkerMatch("", "bye", eof=True)
        assert not match.matched

    def test_marker_in_final_bytes_before_eof(self):
        channel = FakeChannel([b"logout\r\nOpt>", b""])
        match = _wait(channel, ["Opt>"])
        assert match.matched
        assert not match.eof

    def test_timeout_is_not_eof(self):
        clock = FakeClock()
        match = _wait(FakeChannel([b"partial"]), ["Opt>"], clock=clock)
        assert not match.eof

    def test_truncated_utf8_at_eof_is_replaced(self):
        channel = FakeChannel([b"ok \xe6\x97", b""])
        match = _wait(channel, ["Opt>"])
        assert match.transcript == "ok �"

    def test_reads_respect_chunk_size(self):
        channel = FakeChannel([b"abcdefghOpt>"])
        match = _wait(channel, ["Opt>"], chunk_size=4)
        assert match == MarkerMatch("Opt>", "abcdefghOpt>")

    def test_read_error_raises(self):
        channel = FakeChannel([b"partial", OSError("Socket is closed")])
        with pytest.raises(SessionIOError, match="Socket is closed"):
            _wait(channel, ["Opt>"])

    def test_blocking_io_error_is_retry(self):
        channel = FakeChannel([BlockingIOError(), b"Opt>"])
        assert _wait(channel, ["Opt>"]).matched

    def test_empty_marker_never_matches(self):
        match = _wait(FakeChannel([b"text"]), [""], timeout=1.0)
        assert match.marker == ""


class TestSendLine:
    def test_appends_carriage_return(self):
        channel = FakeChannel()
        send_line(channel, "tail -n 50 /var/log/app.log")
        assert channel.sent == [b"tail -n 50 /var/log/app.log\r"]

    def test_utf8_payload(self):
        channel = FakeChannel()
        send_line(channel, "echo 日志")
        assert channel.sent == ["echo 日志\r".encode("utf-8")]

    def test_write_error_raises(self):
        channel = FakeChannel()
        channel.send_error = OSError("Socket is closed")
        with pytest.raises(SessionIOError):
            send_line(channel, "uptime")
