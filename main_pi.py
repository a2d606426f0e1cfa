#!/usr/bin/env python3
"""
Raspberry Pi frame loop for the color target pipeline
Feeds camera (USB, Pi camera) or video-file frames through TargetPipeline,
one frame at a time, and reports the pipeline call rate periodically.
"""

import argparse
import glob
import signal
import sys
import threading
import time

import cv2

from live_tuning import RuntimeParamWatcher
from target_pipeline import Config, PipelineMode, SET_HSV, TargetPipeline
from telemetry import (
    CallRateReporter, FrameCounter, ParameterStore, TelemetryPublisher, UdpAimSender,
)

# Set by the signal handler to leave the frame loop
shutdown_flag = threading.Event()


def signal_handler(sig, frame):
    """Handle Ctrl+C / SIGTERM gracefully"""
    print("\nShutdown signal received...")
    shutdown_flag.set()


def list_video_devices():
    """
    Print the video device nodes present.

    /dev/video10..12 exist on the Pi even without a camera; a plugged in
    USB camera adds a /dev/video0, /dev/video1 pair.
    """
    devices = sorted(glob.glob("/dev/video*"))
    for device in devices:
        print(f"Found {device}")
    if not devices:
        print("No /dev/video* devices found")


def parse_udp_target(value: str):
    """HOST:PORT -> (host, port)"""
    host, sep, port = value.rpartition(":")
    if not sep or not host:
        raise argparse.ArgumentTypeError(f"expected HOST:PORT, got {value!r}")
    try:
        return host, int(port)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid port in {value!r}") from None


class OpenCVSource:
    """Frames from cv2.VideoCapture (camera index or video file)"""

    def __init__(self, source):
        self.source = source
        self.is_file = isinstance(source, str)
        self.cap = cv2.VideoCapture(source)
        if not self.cap.isOpened():
            raise RuntimeError(f"Could not open video source {source!r}")
        if not self.is_file:
            self.cap.set(cv2.CAP_PROP_FRAME_WIDTH, Config.FRAME_WIDTH)
            self.cap.set(cv2.CAP_PROP_FRAME_HEIGHT, Config.FRAME_HEIGHT)
            self.cap.set(cv2.CAP_PROP_FPS, 30)
        print(f"[Camera] Opened {source!r}: "
              f"{int(self.cap.get(cv2.CAP_PROP_FRAME_WIDTH))}x"
              f"{int(self.cap.get(cv2.CAP_PROP_FRAME_HEIGHT))}"
              f"@{self.cap.get(cv2.CAP_PROP_FPS):.1f}")

    def read(self):
        """Returns (ok, frame); ok is False once a video file ends"""
        ret, frame = self.cap.read()
        if not ret:
            return (not self.is_file), None
        return True, frame

    def release(self):
        self.cap.release()


class PiCameraSource:
    """Frames from the Raspberry Pi camera via Picamera2"""

    def __init__(self):
        from picamera2 import Picamera2

        print("[Camera] Initializing Raspberry Pi camera...")
        self.picam2 = Picamera2()
        camera_config = self.picam2.create_video_configuration(
            main={"size": (Config.FRAME_WIDTH, Config.FRAME_HEIGHT), "format": "RGB888"},
            buffer_count=2
        )
        self.picam2.configure(camera_config)
        self.picam2.start()
        print("[Camera] Camera initialized successfully")

    def read(self):
        frame_rgb = self.picam2.capture_array("main")
        return True, cv2.cvtColor(frame_rgb, cv2.COLOR_RGB2BGR)

    def release(self):
        self.picam2.stop()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Color target detection pipeline")
    parser.add_argument("--source", type=str, help="Video file path or camera index")
    parser.add_argument("--picamera", action="store_true", help="Use the Raspberry Pi camera")
    parser.add_argument("--width", type=int, default=Config.FRAME_WIDTH, help="Frame width")
    parser.add_argument("--height", type=int, default=Config.FRAME_HEIGHT, help="Frame height")
    parser.add_argument("--mode", choices=[m.value for m in PipelineMode],
                        default=PipelineMode.DETECT.value, help="Pipeline stages to run")
    parser.add_argument("--udp", type=parse_udp_target, metavar="HOST:PORT",
                        help="Send the aim vector to HOST:PORT every frame")
    parser.add_argument("--params", type=str, default=Config.PARAMS_FILE,
                        help="JSON file with live-tunable parameters")
    parser.add_argument("--report-interval", type=float, default=Config.REPORT_INTERVAL_S,
                        help="Seconds between call-rate reports")
    parser.add_argument("--no-display", action="store_true", help="Run without display (headless)")
    parser.add_argument("--show-mask", action="store_true", help="Show the threshold mask")
    return parser


def main(argv=None):
    """Main application entry point"""
    args = build_parser().parse_args(argv)

    # Configure based on arguments
    Config.FRAME_WIDTH = args.width
    Config.FRAME_HEIGHT = args.height
    Config.REPORT_INTERVAL_S = args.report_interval
    Config.SHOW_MASK = args.show_mask
    Config.PARAMS_FILE = args.params
    if args.source is not None:
        Config.VIDEO_SOURCE = int(args.source) if args.source.isdigit() else args.source
    if args.udp:
        Config.UDP_OUTPUT = True
        Config.UDP_HOST, Config.UDP_PORT = args.udp

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    print("=" * 60)
    print("COLOR TARGET PIPELINE")
    print("=" * 60)
    list_video_devices()

    # Step 1: Build pipeline; failing to open the datagram channel is fatal
    params = ParameterStore()
    table = ParameterStore()
    counter = FrameCounter()
    sender = None
    if Config.UDP_OUTPUT:
        try:
            sender = UdpAimSender(Config.UDP_HOST, Config.UDP_PORT)
        except OSError as e:
            print(f"Failed to open UDP output to {Config.UDP_HOST}:{Config.UDP_PORT}: {e}")
            return 1
    publisher = TelemetryPublisher(params, table, sender)
    watcher = RuntimeParamWatcher(Config.PARAMS_FILE, params)
    pipeline = TargetPipeline(params, publisher, counter, PipelineMode(args.mode),
                              Config.FRAME_WIDTH, Config.FRAME_HEIGHT)
    print(f"** Pipeline: {pipeline.mode.name} {Config.FRAME_WIDTH}x{Config.FRAME_HEIGHT}, "
          f"UDP {'to %s:%d' % (Config.UDP_HOST, Config.UDP_PORT) if sender else 'OFF'}")

    # Step 2: Open frame source
    try:
        source = PiCameraSource() if args.picamera else OpenCVSource(Config.VIDEO_SOURCE)
    except Exception as e:  # noqa: BLE001
        print(f"Failed to initialize camera: {e}")
        if sender:
            sender.close()
        return 1

    # Step 3: Background threads: call-rate heartbeat and live tuning
    reporter = CallRateReporter(
        counter, table, Config.REPORT_INTERVAL_S,
        status=lambda: f"{sender.sent} datagrams, {sender.dropped} dropped" if sender else "UDP off",
    )
    reporter.start()
    watcher_thread = threading.Thread(target=watcher.watch, args=(shutdown_flag,),
                                      name="RuntimeParamWatcher", daemon=True)
    watcher_thread.start()

    show = not args.no_display
    if show:
        cv2.namedWindow("Target Pipeline", cv2.WINDOW_NORMAL)
        if Config.SHOW_MASK:
            cv2.namedWindow("Target Pipeline - Mask", cv2.WINDOW_NORMAL)
        print("Controls: 'q'=quit, 's'=save frame, 'c'=calibrate on center color")

    # Step 4: Frame loop, one frame fully processed before the next is read
    try:
        while not shutdown_flag.is_set():
            ok, frame = source.read()
            if not ok:
                print(f"End of video (frame {counter.get()})")
                break
            if frame is None:
                time.sleep(0.005)  # Camera hiccup, try again
                continue

            annotated = pipeline.process_frame(frame)
            if annotated is None or not show:
                continue

            cv2.imshow("Target Pipeline", annotated)
            if Config.SHOW_MASK:
                cv2.imshow("Target Pipeline - Mask", pipeline.get_debug_mask())

            key = cv2.waitKey(1) & 0xFF
            if key == ord('q'):
                print("Quit requested by user")
                break
            elif key == ord('s'):
                filename = f"snapshot_{counter.get():06d}.jpg"
                cv2.imwrite(filename, annotated)
                print(f"Saved snapshot: {filename}")
            elif key == ord('c'):
                params.put_boolean(SET_HSV, True)

    except KeyboardInterrupt:
        print("\nInterrupted by user (Ctrl+C)")

    finally:
        # Step 5: Cleanup
        print("Shutting down...")
        shutdown_flag.set()
        reporter.stop()
        reporter.join(timeout=1.0)
        watcher_thread.join(timeout=1.0)
        source.release()
        if sender:
            sender.close()
        if show:
            cv2.destroyAllWindows()
        print("Cleanup complete.")

    return 0


if __name__ == "__main__":
    sys.exit(main())
