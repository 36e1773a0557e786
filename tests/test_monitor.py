"""
Tests for the monitor loop and its supervisor.

The loop runs against a scripted FakePort, a recording hub and executor and
a ManualClock (see conftest). The script may carry timestamps so a whole
countdown scenario can be replayed without sleeping.
"""

from __future__ import annotations

import json
import logging
import os
import signal
import threading
from typing import List, Optional

import pytest
import serial

from conftest import FakePort, ManualClock
from w3p_ups.config import Config, SerialSettings
from w3p_ups.discovery import DeviceNotFoundError
from w3p_ups.monitor import MonitorLoop, MonitorResult, SignalWatcher, Supervisor, open_serial_source
from w3p_ups.parser import UPSSample
from w3p_ups.policy import Counting, Idle
from w3p_ups.source import TelemetrySource


def line(sd: int = 50, vi: int = 12000, soc: int = 50) -> bytes:
    return (json.dumps({"soc": soc, "sd": sd, "vi": vi}) + "\n").encode()


class ScriptedPort(FakePort):
    """FakePort whose items may be (timestamp, bytes); sets `cancel` when done."""

    def __init__(self, script, clock: ManualClock, cancel: threading.Event):
        super().__init__(script)
        self.clock = clock
        self.cancel = cancel

    def readline(self) -> bytes:
        if not self.script:
            self.cancel.set()
            return b""
        item = self.script[0]
        if isinstance(item, tuple):
            self.script[0] = item[1]
            self.clock.now = item[0]
        return super().readline()


class RecordingHub:
    def __init__(self) -> None:
        self.published: List[UPSSample] = []
        self.accepts = 0
        self.observer_count = 0

    def accept(self) -> int:
        self.accepts += 1
        return 0

    def publish(self, sample: UPSSample) -> int:
        self.published.append(sample)
        return 0


class RecordingExecutor:
    def __init__(self) -> None:
        self.calls = 0

    def execute(self) -> None:
        self.calls += 1


@pytest.fixture()
def cancel() -> threading.Event:
    return threading.Event()


@pytest.fixture()
def hub() -> RecordingHub:
    return RecordingHub()


@pytest.fixture()
def executor() -> RecordingExecutor:
    return RecordingExecutor()


def make_loop(config, script, clock, cancel, hub, executor) -> MonitorLoop:
    port = ScriptedPort(script, clock, cancel)
    source = TelemetrySource(port, "fake")
    return MonitorLoop(config, source, hub, executor, cancel, clock=clock)  # type: ignore[arg-type]


class TestMonitorLoop:
    def test_publishes_every_decoded_sample(self, config, clock, cancel, hub, executor) -> None:
        loop = make_loop(config, [line(soc=80), line(soc=79)], clock, cancel, hub, executor)
        assert loop.run() is MonitorResult.CANCELLED
        assert [s.soc for s in hub.published] == [80, 79]
        assert loop.samples_decoded == 2
        assert executor.calls == 0

    def test_malformed_lines_are_dropped(self, config, clock, cancel, hub, executor) -> None:
        script = [b"garbage\n", line(), b'{"soc":50}\n', b"\n", b"{\xff\n", line()]
        loop = make_loop(config, script, clock, cancel, hub, executor)
        assert loop.run() is MonitorResult.CANCELLED
        assert loop.samples_decoded == 2
        assert loop.lines_dropped == 3
        assert len(hub.published) == 2

    def test_accepts_observers_every_iteration(self, config, clock, cancel, hub, executor) -> None:
        loop = make_loop(config, [b"", line(), b""], clock, cancel, hub, executor)
        loop.run()
        assert hub.accepts >= 3

    def test_partial_line_survives_timeout(self, config, clock, cancel, hub, executor) -> None:
        loop = make_loop(config, [b'{"soc":33,', b'"vi":12000}\n'], clock, cancel, hub, executor)
        loop.run()
        assert [s.soc for s in hub.published] == [33]

    def test_fatal_read_error_propagates(self, config, clock, cancel, hub, executor) -> None:
        loop = make_loop(config, [line(), serial.SerialException("unplugged")], clock, cancel, hub, executor)
        with pytest.raises(OSError):
            loop.run()
        assert len(hub.published) == 1

    def test_cancel_before_start_returns_without_reading(self, config, clock, cancel, hub, executor) -> None:
        cancel.set()
        loop = make_loop(config, [line(sd=1, vi=0)], clock, cancel, hub, executor)
        assert loop.run() is MonitorResult.CANCELLED
        assert hub.published == []

    def test_end_of_stream_pauses_and_retries(self, config, clock, cancel, hub, executor, tmp_path) -> None:
        capture = tmp_path / "capture.log"
        capture.write_bytes(line(soc=12))
        source = TelemetrySource.replay(str(capture))
        waits: List[Optional[float]] = []

        class CountingEvent(threading.Event):
            def wait(self, timeout=None):
                waits.append(timeout)
                self.set()
                return True

        ev = CountingEvent()
        with source:
            loop = MonitorLoop(config, source, hub, executor, ev, clock=clock)  # type: ignore[arg-type]
            assert loop.run() is MonitorResult.CANCELLED
        assert [s.soc for s in hub.published] == [12]
        assert waits == [1.0]


class TestShutdownFlow:
    def test_countdown_scenario_fires_once(self, config, clock, cancel, hub, executor) -> None:
        script = [
            (0.0, line(sd=9, vi=7000)),
            (20.0, line(sd=9, vi=7000)),
            (25.0, line(sd=9, vi=9000)),
            (26.0, line(sd=9, vi=7000)),
            (50.0, line(sd=14, vi=7000)),
            (56.0, line(sd=9, vi=7000)),
            (57.0, line(sd=9, vi=7000)),
        ]
        loop = make_loop(config, script, clock, cancel, hub, executor)
        assert loop.run() is MonitorResult.SHUTDOWN
        assert executor.calls == 1
        # the sample after the firing one is never read
        assert len(hub.published) == 6
        assert loop.policy.fired

    def test_cancelled_countdown_returns_to_idle(self, config, clock, cancel, hub, executor) -> None:
        script = [(0.0, line(sd=9, vi=7000)), (5.0, line(sd=15, vi=7000))]
        loop = make_loop(config, script, clock, cancel, hub, executor)
        assert loop.run() is MonitorResult.CANCELLED
        assert isinstance(loop.policy.state, Idle)

    def test_countdown_in_progress_when_cancelled(self, config, clock, cancel, hub, executor) -> None:
        script = [(0.0, line(sd=9, vi=7000)), (5.0, line(sd=14, vi=7000))]
        loop = make_loop(config, script, clock, cancel, hub, executor)
        assert loop.run() is MonitorResult.CANCELLED
        assert loop.policy.state == Counting(started_at=0.0)
        assert executor.calls == 0


class TestStatusLogging:
    def test_status_logged_on_interval(self, config, clock, cancel, hub, executor, caplog) -> None:
        clock.now = 0.0
        script = [(10.0, line()), (59.0, line()), (60.0, line()), (90.0, line()), (121.0, line())]
        loop = make_loop(config, script, clock, cancel, hub, executor)
        with caplog.at_level(logging.INFO, logger="w3p_ups.monitor"):
            loop.run()
        status = [r for r in caplog.records if r.getMessage().startswith("Status:")]
        assert len(status) == 2
        assert "clients=0" in status[0].getMessage()


class FakeSession:
    def __init__(self, outcomes, cancel: threading.Event):
        self.outcomes = list(outcomes)
        self.cancel = cancel
        self.calls = 0

    def __call__(self) -> MonitorResult:
        self.calls += 1
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome


class TestSupervisor:
    def test_restarts_after_errors(self, config: Config, cancel, caplog) -> None:
        sup = Supervisor(config, cancel, executor=RecordingExecutor())  # type: ignore[arg-type]
        sup.run_session = FakeSession(  # type: ignore[method-assign]
            [OSError("port gone"), DeviceNotFoundError("no device"), MonitorResult.SHUTDOWN], cancel
        )
        with caplog.at_level(logging.ERROR, logger="w3p_ups.monitor"):
            assert sup.run() is MonitorResult.SHUTDOWN
        assert sup.restarts == 2
        assert "Retrying in" in caplog.text

    def test_no_restart_once_cancelled(self, config: Config, cancel) -> None:
        sup = Supervisor(config, cancel, executor=RecordingExecutor())  # type: ignore[arg-type]

        def failing() -> MonitorResult:
            cancel.set()
            raise OSError("read failed during shutdown")

        sup.run_session = failing  # type: ignore[method-assign]
        assert sup.run() is None
        assert sup.restarts == 0

    def test_session_releases_source_and_socket(self, config: Config, cancel, short_socket_path) -> None:
        ports: List[FakePort] = []

        def factory(_config, _locator) -> TelemetrySource:
            port = FakePort([line(), serial.SerialException("unplugged")])
            ports.append(port)
            if len(ports) == 2:
                cancel.set()
            return TelemetrySource(port, "fake")

        sup = Supervisor(config, cancel, executor=RecordingExecutor(),  # type: ignore[arg-type]
                         source_factory=factory)
        assert sup.run() is MonitorResult.CANCELLED
        assert len(ports) == 2
        assert sup.restarts == 1
        assert all(p.closed for p in ports)
        assert not os.path.exists(short_socket_path)


class TestOpenSerialSource:
    def test_auto_mode_resolves_every_session(self, config: Config, monkeypatch) -> None:
        calls = []

        class Locator:
            def resolve(self) -> str:
                calls.append(1)
                return "/dev/ttyACM7"

        opened = []
        monkeypatch.setattr(TelemetrySource, "open",
                            classmethod(lambda cls, p, b, t: opened.append((p, b, t)) or cls(FakePort(), p)))
        open_serial_source(config, Locator())  # type: ignore[arg-type]
        open_serial_source(config, Locator())  # type: ignore[arg-type]
        assert len(calls) == 2
        assert opened[0] == ("/dev/ttyACM7", 115200, 10.0)

    def test_fixed_port_skips_discovery(self, config: Config, monkeypatch) -> None:
        class Locator:
            def resolve(self) -> str:
                raise AssertionError("discovery must not run for a fixed port")

        opened = []
        monkeypatch.setattr(TelemetrySource, "open",
                            classmethod(lambda cls, p, b, t: opened.append(p) or cls(FakePort(), p)))
        fixed = Config(serial=SerialSettings(port="/dev/ttyUSB0"))
        open_serial_source(fixed, Locator())  # type: ignore[arg-type]
        assert opened == ["/dev/ttyUSB0"]


@pytest.fixture()
def restore_sigmask():
    original = signal.pthread_sigmask(signal.SIG_BLOCK, [])
    yield
    signal.pthread_sigmask(signal.SIG_SETMASK, original)


class TestSignalWatcher:
    @pytest.mark.parametrize("signum", [signal.SIGTERM, signal.SIGINT])
    def test_signal_sets_cancel(self, cancel, restore_sigmask, signum) -> None:
        watcher = SignalWatcher(cancel)
        watcher.start()
        assert signum in signal.pthread_sigmask(signal.SIG_BLOCK, [])
        # aimed at the watcher thread so no other thread can take it
        signal.pthread_kill(watcher._thread.ident, signum)
        assert cancel.wait(1)
        watcher._thread.join(timeout=1.0)
        assert not watcher._thread.is_alive()
