import codecs
import time
from typing import Callable, Iterator, List, Optional

from remote_runner.config import BUFFER_SIZE, POLL_INTERVAL, config
from remote_runner.errors import CommandFailure, ConnectError
from remote_runner.models import EventSequencer, OutputEvent
from remote_runner.utils import clean_line, iso_now, json_line, log_error


class LineSplitter:
    """Incremental bytes-to-lines splitter for one output channel."""

    def __init__(self):
        self.decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self.pending = ""

    def feed(self, data: bytes) -> List[str]:
        self.pending += self.decoder.decode(data)
        parts = self.pending.split("\n")
        self.pending = parts.pop()
        return parts

    def flush(self) -> List[str]:
        self.pending += self.decoder.decode(b"", final=True)
        tail, self.pending = self.pending, ""
        return [tail] if tail else []


class OutputStreamer:
    """Turns a running command's two output channels into an ordered event sequence.

    ``events()`` is lazy: each line is yielded as soon as its chunk arrives.
    Lines keep their per-channel order; nothing is promised about how stdout
    and stderr interleave. When the stream closes, exactly one terminal event
    (``success`` or ``error``) is yielded, and it is always the last one.

    The sentinel phrase is a stop-gap: when the setup script prints it, the
    channel is closed without waiting for the remote process to exit. Lines the
    remote side wrote after it may or may not show up.
    """

    def __init__(
        self,
        channel,
        sequencer: Optional[EventSequencer] = None,
        sentinel: Optional[str] = None,
        fault: Optional[Callable[[], Optional[ConnectError]]] = None,
        poll_interval: float = POLL_INTERVAL,
        run_log_path: str = "",
    ):
        self.channel = channel
        self.sequencer = sequencer or EventSequencer()
        self.sentinel = config.SENTINEL_PHRASE if sentinel is None else sentinel
        self.fault = fault
        self.poll_interval = poll_interval
        self.run_log_path = run_log_path

        self.stdout = LineSplitter()
        self.stderr = LineSplitter()
        self.sentinel_seen = False
        self.finished = False

    def _log(self, direction: str, payload) -> None:
        data = {"ts": iso_now(), "dir": direction}
        data.update(payload)
        json_line(self.run_log_path, data)

    def _line_event(self, kind: str, line: str) -> Optional[OutputEvent]:
        text = clean_line(line)
        if not text.strip():
            return None
        return self.sequencer.make(kind, text)

    def _close_early(self) -> None:
        self.sentinel_seen = True
        self._log("SYS", {"event": "sentinel_detected", "sentinel": self.sentinel})
        try:
            self.channel.close()
        except Exception as exc:
            log_error(f"channel close after sentinel failed: {exc}")

    def _watch_sentinel(self, text: str) -> None:
        if self.sentinel and not self.sentinel_seen and self.sentinel in text:
            self._close_early()

    def _stdout_events(self, data: bytes) -> Iterator[OutputEvent]:
        self._log("OUT", {"chunk": data.decode("utf-8", errors="replace")})
        for line in self.stdout.feed(data):
            event = self._line_event("stdout", line)
            if event is not None:
                yield event
            self._watch_sentinel(line)
        # The phrase may arrive without a newline while the process keeps running.
        self._watch_sentinel(self.stdout.pending)

    def _stderr_events(self, data: bytes) -> Iterator[OutputEvent]:
        self._log("ERR", {"chunk": data.decode("utf-8", errors="replace")})
        for line in self.stderr.feed(data):
            event = self._line_event("stderr", line)
            if event is not None:
                yield event

    def _pump(self) -> Iterator[OutputEvent]:
        channel = self.channel
        while True:
            progressed = False

            if channel.recv_ready():
                data = channel.recv(BUFFER_SIZE)
                if data:
                    progressed = True
                    yield from self._stdout_events(data)

            if not self.sentinel_seen and channel.recv_stderr_ready():
                data = channel.recv_stderr(BUFFER_SIZE)
                if data:
                    progressed = True
                    yield from self._stderr_events(data)

            if channel.closed:
                # Data buffered before the close stays readable; drain it unless
                # the sentinel closed the channel.
                if self.sentinel_seen or not progressed or not (channel.recv_ready() or channel.recv_stderr_ready()):
                    return
                continue
            if (
                channel.exit_status_ready()
                and not channel.recv_ready()
                and not channel.recv_stderr_ready()
            ):
                return

            if not progressed:
                time.sleep(self.poll_interval)

    def _flush(self) -> Iterator[OutputEvent]:
        for kind, splitter in (("stdout", self.stdout), ("stderr", self.stderr)):
            for line in splitter.flush():
                event = self._line_event(kind, line)
                if event is not None:
                    yield event

    def _exit_code(self) -> Optional[int]:
        if self.channel.exit_status_ready():
            return self.channel.recv_exit_status()
        if self.sentinel_seen:
            return 0
        return None

    def _terminal(self, exit_code: Optional[int]) -> OutputEvent:
        self.finished = True
        self._log("SYS", {"event": "stream_closed", "exit_status": exit_code, "sentinel": self.sentinel_seen})
        if exit_code == 0:
            return self.sequencer.make("success", "Command completed successfully")
        if exit_code is None:
            fault = self.fault() if self.fault else None
            if fault is not None:
                return self.sequencer.make("error", f"SSH connection error: {fault.describe()}")
            return self.sequencer.make("error", "Remote stream closed without an exit status")
        return self.sequencer.make("error", CommandFailure(exit_code).message)

    def events(self) -> Iterator[OutputEvent]:
        try:
            yield from self._pump()
            exit_code = self._exit_code()
        except Exception as exc:
            log_error(f"output stream error: {exc}")
            self._log("SYS", {"event": "stream_error", "error": str(exc)})
            yield from self._flush()
            self.finished = True
            yield self.sequencer.make("error", f"Stream error: {exc}")
            return
        yield from self._flush()
        yield self._terminal(exit_code)
