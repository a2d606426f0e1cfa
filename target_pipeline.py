"""
Color Target Detection Pipeline
Per-frame HSV detection for a mobile robot: isolates a colored target,
picks the best blob and turns its screen position into an aim vector
(direction/distance from frame center) for the motion controller.

Single module containing the detection core; telemetry, live tuning and
the frame-delivery loop live in telemetry.py, live_tuning.py and main_pi.py.
"""

import math
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional, Tuple

import cv2
import numpy as np

# =============================================================================
# CONFIGURATION & PARAMETERS
# =============================================================================

class Config:
    """Configuration parameters for the detection pipeline"""

    # Video source configuration
    VIDEO_SOURCE = 0  # Camera index or path to a video file

    # Frame dimensions (fixed for the whole pipeline lifetime)
    FRAME_WIDTH = 320
    FRAME_HEIGHT = 240

    # Preprocessing
    # Detection degraded when the camera was still and in perfect focus,
    # blurring the image restores it
    BLUR_KERNEL = (8, 8)

    # Auto-calibrate margins around the center color probe
    CALIBRATE_HUE_MARGIN = 10
    CALIBRATE_MARGIN = 10

    # Overlay colors (BGR)
    OVERLAY_BGR = (200, 100, 255)
    CONTRAST_BGR = (0, 0, 0)

    # Low-latency datagram output to the motion controller
    UDP_OUTPUT = False
    UDP_HOST = "10.23.93.2"
    UDP_PORT = 5800

    # Heartbeat / live tuning
    REPORT_INTERVAL_S = 10
    PARAMS_FILE = "runtime_params.json"

    # Visualization
    SHOW_MASK = False


# Dashboard keys of the live-tunable parameters
HUE_MIN, HUE_MAX = "HueMin", "HueMax"
SAT_MIN, SAT_MAX = "SatMin", "SatMax"
VAL_MIN, VAL_MAX = "ValMin", "ValMax"
AREA_MIN, AREA_MAX = "AreaMin", "AreaMax"
ASPECT_MIN, ASPECT_MAX = "AspectMin", "AspectMax"
FULLNESS_MIN, FULLNESS_MAX = "FullnessMin", "FullnessMax"
CIRCULARITY_MIN = "CircularityMin"
SET_HSV = "SetHSV"


def default_parameters(width: int, height: int) -> dict:
    """Default value of every tunable key for a frame of the given size"""
    return {
        HUE_MIN: 75.0 - 20.0,
        HUE_MAX: 75.0 + 20.0,
        SAT_MIN: 30.0,
        SAT_MAX: 255.0,
        VAL_MIN: 50.0,
        VAL_MAX: 255.0,
        AREA_MIN: 0.0,
        AREA_MAX: float(width * height),
        ASPECT_MIN: 0.0,
        ASPECT_MAX: 20.0,
        FULLNESS_MIN: 0.0,
        FULLNESS_MAX: 100.0,
        CIRCULARITY_MIN: 0.0,
        SET_HSV: False,
    }

# =============================================================================
# DATA MODEL
# =============================================================================

@dataclass(frozen=True)
class ColorProbe:
    """Averaged BGR and HSV channel values at the center of the frame"""
    b: int = 0
    g: int = 0
    r: int = 0
    h: int = 0
    s: int = 0
    v: int = 0


@dataclass(frozen=True)
class HueRange:
    """
    Hue interval on OpenCV's 0..180 hue circle.

    min <= max is the plain interval [min, max]. min > max wraps around
    the hue origin and covers [0, max] and [min, 180), which is how red
    is selected.
    """
    min: float
    max: float

    @property
    def wraps(self) -> bool:
        return self.min > self.max

    def contains(self, hue: float) -> bool:
        if self.wraps:
            return 0 <= hue <= self.max or self.min <= hue < 180
        return self.min <= hue <= self.max


@dataclass(frozen=True)
class FilterBounds:
    """Geometric acceptance window for candidate blobs"""
    area_min: float = 0.0
    area_max: float = float("inf")
    aspect_min: float = 0.0
    aspect_max: float = 20.0
    fullness_min: float = 0.0
    fullness_max: float = 100.0
    circularity_min: float = 0.0


@dataclass(frozen=True)
class Parameters:
    """Snapshot of the tunable parameters used for one frame"""
    hue: HueRange
    sat_min: float
    sat_max: float
    val_min: float
    val_max: float
    filter: FilterBounds

    @classmethod
    def from_store(cls, store, width: int, height: int) -> "Parameters":
        """
        Read every parameter from the store, key by key.

        Keys are independent scalars; a concurrent operator write may be
        seen for some keys and not for others within the same frame.
        """
        defaults = default_parameters(width, height)

        def num(key):
            return store.get_number(key, defaults[key])

        return cls(
            hue=HueRange(num(HUE_MIN), num(HUE_MAX)),
            sat_min=num(SAT_MIN),
            sat_max=num(SAT_MAX),
            val_min=num(VAL_MIN),
            val_max=num(VAL_MAX),
            filter=FilterBounds(
                area_min=num(AREA_MIN),
                area_max=num(AREA_MAX),
                aspect_min=num(ASPECT_MIN),
                aspect_max=num(ASPECT_MAX),
                fullness_min=num(FULLNESS_MIN),
                fullness_max=num(FULLNESS_MAX),
                circularity_min=num(CIRCULARITY_MIN),
            ),
        )

    def as_dict(self) -> dict:
        """Parameters keyed by their dashboard names"""
        f = self.filter
        return {
            HUE_MIN: self.hue.min,
            HUE_MAX: self.hue.max,
            SAT_MIN: self.sat_min,
            SAT_MAX: self.sat_max,
            VAL_MIN: self.val_min,
            VAL_MAX: self.val_max,
            AREA_MIN: f.area_min,
            AREA_MAX: f.area_max,
            ASPECT_MIN: f.aspect_min,
            ASPECT_MAX: f.aspect_max,
            FULLNESS_MIN: f.fullness_min,
            FULLNESS_MAX: f.fullness_max,
            CIRCULARITY_MIN: f.circularity_min,
        }


@dataclass
class Candidate:
    """One connected blob of the thresholded mask"""
    area: float
    bounds: Tuple[int, int, int, int]  # x, y, w, h
    perimeter: float
    contour: Optional[np.ndarray] = None

    @classmethod
    def from_contour(cls, contour: np.ndarray) -> "Candidate":
        x, y, w, h = cv2.boundingRect(contour)
        return cls(
            area=cv2.contourArea(contour),
            bounds=(x, y, w, h),
            perimeter=cv2.arcLength(contour, True),
            contour=contour,
        )

    @property
    def degenerate(self) -> bool:
        """Bounding box without width or height"""
        return self.bounds[2] <= 0 or self.bounds[3] <= 0

    @property
    def aspect(self) -> float:
        """Width / height: 0 (tall) .. 1 (square) .. 20 (wide); -1 if degenerate"""
        if self.degenerate:
            return -1.0
        return self.bounds[2] / self.bounds[3]

    @property
    def fullness(self) -> float:
        """Percent of the bounding box covered: 0 (hollow) .. 100 (solid); -1 if degenerate"""
        if self.degenerate:
            return -1.0
        return 100.0 * self.area / (self.bounds[2] * self.bounds[3])

    @property
    def circularity(self) -> float:
        """Isoperimetric ratio, 1.0 for a circle and ~0.785 for a square"""
        if self.perimeter <= 0:
            return 0.0
        return 4.0 * math.pi * self.area / (self.perimeter * self.perimeter)


@dataclass(frozen=True)
class Selection:
    """Outcome of target selection for one frame"""
    index: int = -1
    winner: Optional[Candidate] = None
    # Last circularity computed while scoring, not necessarily the winner's
    circularity: Optional[float] = None

    @property
    def found(self) -> bool:
        return self.winner is not None


@dataclass(frozen=True)
class AimResult:
    """
    Aim vector handed to the motion controller.

    direction: pixels right of center (negative = left)
    distance:  pixels above center (negative = below)
    """
    found: bool
    direction: int
    distance: int
    area: float
    fullness: float
    aspect: float

    @classmethod
    def not_found(cls) -> "AimResult":
        # 0/0 means "no reason to move", same as a centered target
        return cls(found=False, direction=0, distance=0,
                   area=0.0, fullness=-1.0, aspect=-1.0)

# =============================================================================
# DETECTION STAGES
# =============================================================================

def probe_center(norm: np.ndarray, hsv: np.ndarray) -> ColorProbe:
    """
    Average BGR and HSV over the 3x3 pixels at the frame center.

    Args:
        norm: Normalized BGR frame
        hsv: HSV version of the same frame

    Returns:
        ColorProbe with per-channel integer (truncated) means
    """
    height, width = norm.shape[:2]
    cy, cx = height // 2, width // 2
    bgr = norm[cy - 1:cy + 2, cx - 1:cx + 2].reshape(-1, 3).astype(np.int32)
    hsv_px = hsv[cy - 1:cy + 2, cx - 1:cx + 2].reshape(-1, 3).astype(np.int32)
    b, g, r = (int(c) for c in bgr.sum(axis=0) // len(bgr))
    h, s, v = (int(c) for c in hsv_px.sum(axis=0) // len(hsv_px))
    return ColorProbe(b=b, g=g, r=r, h=h, s=s, v=v)


def segment_hsv(hsv: np.ndarray, params: Parameters,
                mask: np.ndarray, wrap_mask: np.ndarray) -> np.ndarray:
    """
    Create binary mask for the target color using HSV thresholding.
    Handles hue ranges that wrap around the hue origin (e.g. red).
    Uses pre-allocated buffers to avoid memory allocation overhead.

    Args:
        hsv: HSV frame
        params: Active parameters
        mask: Output buffer, fully overwritten
        wrap_mask: Scratch buffer for the second pass of a wrapping range

    Returns:
        mask, with target pixels set to 255
    """
    hue = params.hue
    if not hue.wraps:
        cv2.inRange(hsv,
                    (hue.min, params.sat_min, params.val_min),
                    (hue.max, params.sat_max, params.val_max),
                    dst=mask)
        return mask

    # A single inRange with min > max would select nothing,
    # so combine [0, max] and [min, 180)
    cv2.inRange(hsv,
                (0, params.sat_min, params.val_min),
                (hue.max, params.sat_max, params.val_max),
                dst=mask)
    cv2.inRange(hsv,
                (hue.min, params.sat_min, params.val_min),
                (180, params.sat_max, params.val_max),
                dst=wrap_mask)
    cv2.bitwise_or(mask, wrap_mask, dst=mask)
    return mask


def find_candidates(mask: np.ndarray, work: np.ndarray) -> List[Candidate]:
    """
    Enumerate all contours of the mask as a flat list (no hierarchy).

    The mask is copied into the work buffer first since older OpenCV
    releases modify the image passed to findContours.
    """
    np.copyto(work, mask)
    # OpenCV 3 returns (image, contours, hierarchy), OpenCV 4 (contours, hierarchy)
    contours = cv2.findContours(work, cv2.RETR_LIST, cv2.CHAIN_APPROX_SIMPLE)[-2]
    return [Candidate.from_contour(c) for c in contours]


def select_target(candidates: List[Candidate], bounds: FilterBounds) -> Selection:
    """
    Pick the largest candidate that passes all geometric filters.

    The running best area starts at area_min and a candidate is only
    rejected when its area is *below* it, so among equal-area candidates
    the last one in extraction order wins.

    Args:
        candidates: Candidates in extraction order
        bounds: Active filter bounds

    Returns:
        Selection with the winner (if any) and the last circularity computed
    """
    best_index = -1
    best_area = bounds.area_min
    circularity = None

    for i, candidate in enumerate(candidates):
        area = candidate.area
        if area < best_area or area > bounds.area_max:
            continue

        if candidate.degenerate:
            continue

        aspect = candidate.aspect
        if aspect < bounds.aspect_min or aspect > bounds.aspect_max:
            continue

        fullness = candidate.fullness
        if fullness < bounds.fullness_min or fullness > bounds.fullness_max:
            continue

        circularity = candidate.circularity
        if circularity < bounds.circularity_min:
            continue

        # Passed all tests: so far the largest area that we like
        best_area = area
        best_index = i

    if best_index < 0:
        return Selection(circularity=circularity)
    return Selection(index=best_index, winner=candidates[best_index],
                     circularity=circularity)


def compute_aim(winner: Optional[Candidate], width: int, height: int) -> AimResult:
    """
    Convert the winner's bounding box into an offset from the frame center.

    Args:
        winner: Selected candidate or None
        width, height: Frame dimensions

    Returns:
        AimResult; the not-found sentinel when there is no winner
    """
    if winner is None:
        return AimResult.not_found()

    x, y, w, h = winner.bounds
    horiz_pos = x + w // 2
    vert_pos = y + h // 2
    return AimResult(
        found=True,
        direction=horiz_pos - width // 2,
        distance=height // 2 - vert_pos,
        area=winner.area,
        fullness=winner.fullness,
        aspect=winner.aspect,
    )

# =============================================================================
# PIPELINE
# =============================================================================

class PipelineMode(Enum):
    """How far each frame is taken through the pipeline"""
    COPY = "copy"              # count and annotate only
    COLOR_INFO = "color"       # + preprocessing and center color probe
    DETECT = "detect"          # + segmentation, selection, aim and telemetry


class ScratchBuffers:
    """Pre-allocated per-pipeline buffers, each used for one purpose only"""

    def __init__(self, width: int, height: int):
        self.frame = np.zeros((height, width, 3), dtype=np.uint8)
        self.norm = np.zeros((height, width, 3), dtype=np.uint8)
        self.blur = np.zeros((height, width, 3), dtype=np.uint8)
        self.hsv = np.zeros((height, width, 3), dtype=np.uint8)
        self.mask = np.zeros((height, width), dtype=np.uint8)
        self.wrap_mask = np.zeros((height, width), dtype=np.uint8)
        self.contour_work = np.zeros((height, width), dtype=np.uint8)


def show_info(frame: np.ndarray, info: str) -> None:
    """
    Add info text at the bottom of the frame.

    Painted twice, overlay color on top of black, so it shows up
    on bright and dark images alike.
    """
    height = frame.shape[0]
    cv2.putText(frame, info, (1, height - 16), cv2.FONT_HERSHEY_SIMPLEX,
                0.4, Config.CONTRAST_BGR, 1)
    cv2.putText(frame, info, (2, height - 15), cv2.FONT_HERSHEY_SIMPLEX,
                0.4, Config.OVERLAY_BGR, 1)


def is_valid_frame(frame) -> bool:
    """True for a non-empty 3-channel 8-bit image"""
    return (isinstance(frame, np.ndarray)
            and frame.ndim == 3
            and frame.shape[2] == 3
            and frame.shape[0] >= 3
            and frame.shape[1] >= 3
            and frame.dtype == np.uint8)


class TargetPipeline:
    """
    Detection pipeline run once per frame by the frame-delivery loop.

    Reads the tunable parameters from the store every frame, publishes
    results through the telemetry publisher and, when given a sender,
    emits one aim datagram per frame.
    """

    def __init__(self, store, publisher, counter,
                 mode: PipelineMode = PipelineMode.DETECT,
                 width: Optional[int] = None, height: Optional[int] = None):
        self.store = store
        self.publisher = publisher
        self.counter = counter
        self.mode = mode
        self.width = width or Config.FRAME_WIDTH
        self.height = height or Config.FRAME_HEIGHT

        self.buffers = ScratchBuffers(self.width, self.height)

        # Last results, kept when a frame is skipped
        self.last_probe = ColorProbe()
        self.last_selection = Selection()
        self.last_aim = AimResult.not_found()
        self.last_candidates: List[Candidate] = []

        # Put initial values on dashboard
        for key, value in default_parameters(self.width, self.height).items():
            self.store.set_default(key, value)

    def preprocess(self, frame: np.ndarray) -> ColorProbe:
        """
        Normalize, blur and convert the frame to HSV, then probe its center.

        Draws the probe marker on `frame`.

        Args:
            frame: BGR frame of the configured size

        Returns:
            ColorProbe for this frame
        """
        buf = self.buffers

        # Scale colors to use full 0..255 range in case image was dark
        cv2.normalize(frame, buf.norm, 0.0, 255.0, cv2.NORM_MINMAX)
        cv2.blur(buf.norm, Config.BLUR_KERNEL, dst=buf.blur)
        cv2.cvtColor(buf.blur, cv2.COLOR_BGR2HSV, dst=buf.hsv)

        probe = probe_center(buf.norm, buf.hsv)

        # Show where the pixel info is probed
        cx, cy = self.width // 2, self.height // 2
        cv2.rectangle(frame, (cx - 2, cy - 2), (cx + 2, cy + 2), Config.OVERLAY_BGR)
        return probe

    def detect(self, params: Parameters) -> Tuple[Selection, AimResult]:
        """Segment the preprocessed frame, pick a winner and compute the aim"""
        buf = self.buffers
        mask = segment_hsv(buf.hsv, params, buf.mask, buf.wrap_mask)
        candidates = find_candidates(mask, buf.contour_work)
        selection = select_target(candidates, params.filter)
        aim = compute_aim(selection.winner, self.width, self.height)
        self.last_candidates = candidates
        return selection, aim

    def annotate(self, frame: np.ndarray, selection: Selection) -> None:
        """Draw the winning contour and an arrow from mid-bottom to its center"""
        winner = selection.winner
        if winner is None:
            return
        if winner.contour is not None:
            cv2.drawContours(frame, [winner.contour], 0, Config.OVERLAY_BGR)
        x, y, w, h = winner.bounds
        cv2.arrowedLine(frame,
                        (self.width // 2, self.height - 1),
                        (x + w // 2, y + h // 2),
                        Config.OVERLAY_BGR)

    def _fit(self, frame: np.ndarray) -> np.ndarray:
        """Resize frames of a different size into the pre-allocated frame buffer"""
        if frame.shape[0] == self.height and frame.shape[1] == self.width:
            return frame
        cv2.resize(frame, (self.width, self.height), dst=self.buffers.frame)
        return self.buffers.frame

    def process_frame(self, frame) -> Optional[np.ndarray]:
        """
        Process a single frame: preprocess, detect, publish and annotate.

        Args:
            frame: BGR frame

        Returns:
            Annotated frame, or None if the frame could not be processed
        """
        if not is_valid_frame(frame):
            shape = getattr(frame, "shape", None)
            print(f"[Pipeline] Skipping malformed frame (shape={shape})")
            return None

        frame = self._fit(frame)
        calls = self.counter.increment()

        if self.mode is PipelineMode.COPY:
            show_info(frame, f"Call # {calls:03d}")
            self.publisher.publish_calls(calls)
            return frame

        probe = self.preprocess(frame)
        self.last_probe = probe
        self.publisher.publish_probe(probe)

        if self.mode is PipelineMode.COLOR_INFO:
            show_info(frame, f"# {calls:3d} RGB {probe.r:3d} {probe.g:3d} {probe.b:3d} "
                             f"HSV {probe.h:3d} {probe.s:3d} {probe.v:3d}")
            self.publisher.publish_calls(calls)
            return frame

        # Operator may ask to calibrate on what is currently in the center
        self.publisher.check_auto_calibrate(probe)

        params = Parameters.from_store(self.store, self.width, self.height)
        selection, aim = self.detect(params)
        self.last_selection = selection
        self.last_aim = aim

        self.publisher.publish_frame(params, aim, selection.circularity, calls)
        self.publisher.send_aim(aim)

        self.annotate(frame, selection)
        show_info(frame, f"# {calls:3d} HSV {probe.h:3d} {probe.s:3d} {probe.v:3d}")
        return frame

    def get_aim(self) -> AimResult:
        """Aim result of the last processed frame"""
        return self.last_aim

    def get_debug_mask(self) -> np.ndarray:
        """Get the last computed mask for debug visualization"""
        return self.buffers.mask
