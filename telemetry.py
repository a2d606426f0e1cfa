"""
Telemetry and live parameters for the detection pipeline.

The parameter store stands in for the dashboard key/value table: the
operator writes to it at any time, the pipeline reads it once per frame.
Telemetry goes to a second table for the dashboard and, when enabled, to
the motion controller as one small UDP datagram per frame.
"""

import socket
import struct
import threading
from datetime import datetime
from typing import Any, Dict, Mapping, Optional, Tuple

from target_pipeline import (
    AimResult, ColorProbe, Config, Parameters,
    HUE_MIN, HUE_MAX, SAT_MIN, SAT_MAX, VAL_MIN, VAL_MAX, SET_HSV,
)

# Direction and distance as network-order signed 32-bit integers
DATAGRAM_FORMAT = "!ii"
DATAGRAM_SIZE = struct.calcsize(DATAGRAM_FORMAT)

# =============================================================================
# PARAMETER STORE
# =============================================================================

class ParameterStore:
    """
    Thread-safe key/value table of independent scalars.

    Read-many, write-any-time. There are no transactions across keys:
    a reader may see a mix of old and new values of different keys.
    """

    def __init__(self, initial: Optional[Mapping[str, Any]] = None):
        self._lock = threading.Lock()
        self._values: Dict[str, Any] = dict(initial or {})

    def set_default(self, key: str, value: Any) -> bool:
        """Set `key` only if it has no value yet. Returns True if it was set."""
        with self._lock:
            if key in self._values:
                return False
            self._values[key] = value
            return True

    def get_number(self, key: str, default: float = 0.0) -> float:
        with self._lock:
            value = self._values.get(key, default)
        if isinstance(value, bool):
            return float(default)
        try:
            return float(value)
        except (TypeError, ValueError):
            return float(default)

    def put_number(self, key: str, value: float) -> None:
        with self._lock:
            self._values[key] = value

    def get_boolean(self, key: str, default: bool = False) -> bool:
        with self._lock:
            value = self._values.get(key, default)
        return value if isinstance(value, bool) else default

    def put_boolean(self, key: str, value: bool) -> None:
        with self._lock:
            self._values[key] = bool(value)

    def take_boolean(self, key: str) -> bool:
        """
        Read a flag and reset it to False in one step.

        Each external set is observed as True exactly once.
        """
        with self._lock:
            value = self._values.get(key) is True
            if value:
                self._values[key] = False
            return value

    def update(self, values: Mapping[str, Any]) -> None:
        with self._lock:
            self._values.update(values)

    def snapshot(self) -> Dict[str, Any]:
        with self._lock:
            return dict(self._values)

# =============================================================================
# FRAME COUNTER
# =============================================================================

class FrameCounter:
    """Pipeline call counter, incremented per frame and sampled by the reporter"""

    def __init__(self):
        self._lock = threading.Lock()
        self._value = 0

    def increment(self) -> int:
        with self._lock:
            self._value += 1
            return self._value

    def get(self) -> int:
        with self._lock:
            return self._value

    def get_and_reset(self) -> int:
        with self._lock:
            value, self._value = self._value, 0
            return value

# =============================================================================
# DATAGRAM OUTPUT
# =============================================================================

def encode_aim_datagram(direction: int, distance: int) -> bytes:
    return struct.pack(DATAGRAM_FORMAT, int(direction), int(distance))


def decode_aim_datagram(data: bytes) -> Tuple[int, int]:
    """Unpack (direction, distance) from a received datagram"""
    return struct.unpack(DATAGRAM_FORMAT, data[:DATAGRAM_SIZE])


class UdpAimSender:
    """
    Fire-and-forget UDP output of the aim vector.

    The socket is created and connected here, so a bad address fails at
    startup rather than in the frame loop. Send errors are counted and
    otherwise ignored; the next frame supersedes a lost sample.
    """

    def __init__(self, host: str, port: int):
        self.address = (host, port)
        self.sent = 0
        self.dropped = 0
        self.sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        try:
            self.sock.connect(self.address)
            self.sock.setblocking(False)
        except OSError:
            self.sock.close()
            raise

    def send(self, direction: int, distance: int) -> bool:
        try:
            self.sock.send(encode_aim_datagram(direction, distance))
        except OSError as exc:
            self.dropped += 1
            if self.dropped == 1 or self.dropped % 100 == 0:
                print(f"[Telemetry] UDP send to {self.address[0]}:{self.address[1]} "
                      f"failed ({self.dropped} dropped): {exc}")
            return False
        self.sent += 1
        return True

    def close(self) -> None:
        self.sock.close()

# =============================================================================
# TELEMETRY PUBLISHER
# =============================================================================

def calibrate_from_probe(probe: ColorProbe,
                         hue_margin: Optional[int] = None,
                         margin: Optional[int] = None) -> Dict[str, float]:
    """
    HSV bounds around the color at the center of the frame.

    Hue wraps modulo 180, so a probe near the hue origin yields a wrapping
    range (min > max). Saturation and value are clamped to 0..255.
    """
    if hue_margin is None:
        hue_margin = Config.CALIBRATE_HUE_MARGIN
    if margin is None:
        margin = Config.CALIBRATE_MARGIN
    return {
        HUE_MIN: (probe.h - hue_margin) % 180,
        HUE_MAX: (probe.h + hue_margin) % 180,
        SAT_MIN: max(0, probe.s - margin),
        SAT_MAX: min(255, probe.s + margin),
        VAL_MIN: max(0, probe.v - margin),
        VAL_MAX: min(255, probe.v + margin),
    }


class TelemetryPublisher:
    """
    Publishes per-frame results to the dashboard table and the datagram channel.

    Publishing never raises into the frame loop: failures are counted in
    `dropped` and reported on the console now and then.
    """

    def __init__(self, params: ParameterStore, table: ParameterStore,
                 sender: Optional[UdpAimSender] = None):
        self.params = params
        self.table = table
        self.sender = sender
        self.dropped = 0

    def _failed(self, what: str, exc: Exception) -> None:
        self.dropped += 1
        if self.dropped == 1 or self.dropped % 100 == 0:
            print(f"[Telemetry] Failed to publish {what} ({self.dropped} dropped): {exc}")

    def check_auto_calibrate(self, probe: ColorProbe) -> bool:
        """
        If the operator set SetHSV, take the HSV bounds from the probe.

        The flag is reset in the same step it is read, so one set fires
        exactly once.
        """
        if not self.params.take_boolean(SET_HSV):
            return False
        bounds = calibrate_from_probe(probe)
        for key, value in bounds.items():
            self.params.put_number(key, value)
        print(f"[Telemetry] Auto-calibrated on center HSV {probe.h} {probe.s} {probe.v}: "
              f"H {bounds[HUE_MIN]}..{bounds[HUE_MAX]} "
              f"S {bounds[SAT_MIN]}..{bounds[SAT_MAX]} "
              f"V {bounds[VAL_MIN]}..{bounds[VAL_MAX]}")
        return True

    def publish_calls(self, calls: int) -> None:
        try:
            self.table.put_number("PipelineCalls", calls)
        except Exception as exc:  # noqa: BLE001
            self._failed("call count", exc)

    def publish_probe(self, probe: ColorProbe) -> None:
        try:
            self.table.put_number("Center B", probe.b)
            self.table.put_number("Center G", probe.g)
            self.table.put_number("Center R", probe.r)
            self.table.put_number("Center H", probe.h)
            self.table.put_number("Center S", probe.s)
            self.table.put_number("Center V", probe.v)
        except Exception as exc:  # noqa: BLE001
            self._failed("center probe", exc)

    def publish_frame(self, params: Parameters, aim: AimResult,
                      circularity: Optional[float], calls: int) -> None:
        """
        Echo the parameters used for this frame and publish its results.

        Circularity is the last value computed during selection, -1 when
        no candidate got that far.
        """
        try:
            for key, value in params.as_dict().items():
                self.table.put_number(key, value)
            self.table.put_number("Direction", aim.direction)
            self.table.put_number("Distance", aim.distance)
            self.table.put_number("Area", aim.area)
            self.table.put_number("Fullness", aim.fullness)
            self.table.put_number("Aspect", aim.aspect)
            self.table.put_number("Circularity", -1.0 if circularity is None else circularity)
            self.table.put_number("PipelineCalls", calls)
        except Exception as exc:  # noqa: BLE001
            self._failed("frame telemetry", exc)

    def send_aim(self, aim: AimResult) -> None:
        # Not found goes out as 0, 0, same as a centered target
        if self.sender is not None:
            self.sender.send(aim.direction, aim.distance)

# =============================================================================
# CALL RATE REPORTER
# =============================================================================

class CallRateReporter(threading.Thread):
    """Every `interval_s` seconds, publish how often the pipeline ran and reset the count"""

    def __init__(self, counter: FrameCounter, table: ParameterStore,
                 interval_s: Optional[float] = None, status=None):
        super().__init__(name="CallRateReporter", daemon=True)
        self.counter = counter
        self.table = table
        self.interval_s = interval_s if interval_s is not None else Config.REPORT_INTERVAL_S
        self.status = status
        self._stop_event = threading.Event()

    def report(self) -> int:
        calls = self.counter.get_and_reset()
        cps = int(calls // self.interval_s)
        self.table.put_number("PipelineCPS", cps)
        line = f"{datetime.now().isoformat(timespec='seconds')} - Pipeline: {cps} calls per second"
        if self.status is not None:
            line += f", {self.status()}"
        print(line)
        return cps

    def run(self) -> None:
        while not self._stop_event.wait(self.interval_s):
            self.report()

    def stop(self) -> None:
        self._stop_event.set()
