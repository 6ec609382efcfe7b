import logging
import math
from dataclasses import dataclass, field, fields, replace
from datetime import datetime, timezone
from typing import Any, Dict, List, NamedTuple, Optional, Sequence, Tuple

import numpy as np


EARTH_RADIUS_M = 6_371_000.0
UNNAMED_TRACK = "Unnamed Track"


# -----------------
# Data structures
# -----------------

@dataclass
class TrackPoint:
    lat: float
    lon: float
    ele: float
    time: datetime
    heart_rate: Optional[float] = None
    reported_speed: Optional[float] = None
    # Filled in by analyze()
    speed: Optional[float] = None
    distance: Optional[float] = None
    cumulative_distance: Optional[float] = None
    slope: Optional[float] = None
    is_descending: Optional[bool] = None

    @property
    def t(self) -> float:
        return epoch_seconds(self.time)

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "lat": self.lat,
            "lon": self.lon,
            "ele": self.ele,
            "time": ensure_utc(self.time).isoformat(),
        }
        if self.heart_rate is not None:
            out["heart_rate"] = self.heart_rate
        if self.reported_speed is not None:
            out["reported_speed"] = self.reported_speed
        return out

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TrackPoint":
        raw_time = data.get("time")
        if isinstance(raw_time, str):
            time = ensure_utc(datetime.fromisoformat(raw_time.replace("Z", "+00:00")))
        elif isinstance(raw_time, (int, float)):
            time = datetime.fromtimestamp(float(raw_time) / 1000.0, tz=timezone.utc)
        else:
            time = datetime.now(timezone.utc)
        hr = data.get("heart_rate")
        speed = data.get("reported_speed")
        return cls(
            lat=float(data["lat"]),
            lon=float(data["lon"]),
            ele=float(data.get("ele") or 0.0),
            time=time,
            heart_rate=float(hr) if hr is not None else None,
            reported_speed=float(speed) if speed is not None else None,
        )


@dataclass
class Run:
    id: int
    start_index: int
    end_index: int
    distance: float
    vertical_drop: float
    avg_speed: float
    max_speed: float
    duration: float
    start_elevation: float
    end_elevation: float
    avg_slope: float
    start_time: datetime
    end_time: datetime
    avg_heart_rate: Optional[float] = None
    max_heart_rate: Optional[float] = None


@dataclass
class Stats:
    total_distance: float = 0.0
    total_ascent: float = 0.0
    total_descent: float = 0.0
    max_speed: float = 0.0
    avg_speed: float = 0.0
    max_altitude: float = 0.0
    min_altitude: float = 0.0
    elevation_delta: float = 0.0
    duration: float = 0.0
    avg_slope: float = 0.0
    max_slope: float = 0.0
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    avg_heart_rate: Optional[float] = None
    max_heart_rate: Optional[float] = None
    # Aggregated over run ranges only
    ski_distance: float = 0.0
    ski_vertical: float = 0.0
    ski_duration: float = 0.0
    avg_ski_speed: float = 0.0
    run_count: int = 0


class Analysis(NamedTuple):
    points: List[TrackPoint]
    stats: Stats
    runs: List[Run]


@dataclass(frozen=True)
class Track:
    name: str
    points: Tuple[TrackPoint, ...]
    stats: Stats
    runs: Tuple[Run, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class SegmentationConfig:
    # Per-point metrics
    speed_window: int = 5
    max_valid_speed_kmh: float = 150.0
    slope_min_distance_m: float = 1.0
    descending_drop_m: float = 0.5
    descending_min_speed_kmh: float = 3.0
    # Trend classification
    elevation_smooth_window: int = 5
    trend_window: int = 20
    min_window_drop_m: float = 10.0
    min_ski_speed_kmh: float = 5.0
    max_ski_speed_kmh: float = 120.0
    lift_speed_kmh: float = 15.0
    lift_rise_m: float = 2.0
    # Segmentation / merging / filtering
    max_non_descending: int = 15
    max_gap_s: float = 120.0
    max_ascent_in_gap_m: float = 50.0
    min_vertical_drop_m: float = 30.0
    min_run_duration_s: float = 60.0

    @classmethod
    def from_mapping(cls, data: Dict[str, Any]) -> "SegmentationConfig":
        known = {f.name for f in fields(cls)}
        kwargs: Dict[str, Any] = {}
        for key, value in data.items():
            if key not in known:
                logging.warning("Ignoring unknown segmentation option: %s", key)
                continue
            default = getattr(cls, key)
            kwargs[key] = int(value) if isinstance(default, int) else float(value)
        return cls(**kwargs)


DEFAULT_SEGMENTATION = SegmentationConfig()


# -----------------
# Geodesy
# -----------------

def to_rad(deg: float) -> float:
    return deg * (math.pi / 180.0)


def to_deg(rad: float) -> float:
    return rad * (180.0 / math.pi)


def haversine_m(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance in meters between two WGS84 points."""
    d_lat = to_rad(lat2 - lat1)
    d_lon = to_rad(lon2 - lon1)
    a = (
        math.sin(d_lat / 2.0) ** 2
        + math.cos(to_rad(lat1)) * math.cos(to_rad(lat2)) * math.sin(d_lon / 2.0) ** 2
    )
    c = 2.0 * math.atan2(math.sqrt(a), math.sqrt(1.0 - a))
    return EARTH_RADIUS_M * c


def distance(p1: TrackPoint, p2: TrackPoint) -> float:
    return haversine_m(p1.lat, p1.lon, p2.lat, p2.lon)


def _step_distances(points: Sequence[TrackPoint]) -> np.ndarray:
    # steps[0] = 0, steps[i] = distance(points[i-1], points[i])
    n = len(points)
    steps = np.zeros(n, dtype=np.float64)
    for i in range(1, n):
        steps[i] = distance(points[i - 1], points[i])
    return steps


# -----------------
# Time helpers
# -----------------

def ensure_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def epoch_seconds(value: datetime) -> float:
    return ensure_utc(value).timestamp()


# -----------------
# Engine
# -----------------

def smooth_elevation(elevations: Sequence[float], window: int = 5) -> np.ndarray:
    """Centered moving average of `window` samples, truncated at the edges."""
    ele = np.asarray(elevations, dtype=np.float64)
    n = ele.size
    if n == 0:
        return ele.copy()
    half = max(0, int(window) // 2)
    csum = np.concatenate(([0.0], np.cumsum(ele)))
    idx = np.arange(n)
    lo = np.maximum(0, idx - half)
    hi = np.minimum(n, idx + half + 1)
    return (csum[hi] - csum[lo]) / (hi - lo)


def _valid_speed_mask(speeds: np.ndarray, cfg: SegmentationConfig) -> np.ndarray:
    return (speeds > 0.0) & (speeds < cfg.max_valid_speed_kmh)


def analyze(points: Sequence[TrackPoint], config: Optional[SegmentationConfig] = None) -> Analysis:
    """Compute derived per-point metrics, session statistics and runs.

    The input sequence is left untouched; derived fields are written onto
    copies returned in ``Analysis.points``.
    """
    cfg = config or DEFAULT_SEGMENTATION
    pts = [replace(p) for p in points]
    n = len(pts)
    if n == 0:
        return Analysis([], Stats(), [])

    times = np.array([p.t for p in pts], dtype=np.float64)
    ele = np.array([p.ele for p in pts], dtype=np.float64)

    # Pass 1: distances and elevation change
    steps = _step_distances(pts)
    cumulative = np.cumsum(steps)
    d_ele = np.diff(ele)
    total_ascent = float(d_ele[d_ele > 0].sum()) if d_ele.size else 0.0
    total_descent = float(np.abs(d_ele[d_ele < 0]).sum()) if d_ele.size else 0.0

    # Pass 2: windowed speed, slope, descending flag, heart rate
    window = max(1, int(cfg.speed_window))
    speeds = np.zeros(n, dtype=np.float64)
    slope_sum = 0.0
    slope_count = 0
    max_slope = 0.0
    hr_sum = 0.0
    hr_count = 0
    max_hr = 0.0
    for i in range(n):
        p = pts[i]
        if i > 0:
            if i < window:
                dt = times[i] - times[i - 1]
                dist = steps[i]
            else:
                dt = times[i] - times[i - window]
                dist = cumulative[i] - cumulative[i - window]
            if dt > 0:
                speeds[i] = dist / dt * 3.6
        speed = float(speeds[i])
        p.speed = speed
        p.distance = float(steps[i])
        p.cumulative_distance = float(cumulative[i])

        if p.heart_rate is not None and p.heart_rate > 0:
            hr_sum += p.heart_rate
            hr_count += 1
            max_hr = max(max_hr, p.heart_rate)

        if i == 0:
            p.is_descending = False
            continue
        step_ele = ele[i] - ele[i - 1]
        if steps[i] > cfg.slope_min_distance_m:
            slope = to_deg(math.atan2(-step_ele, steps[i]))
            p.slope = slope
            if slope > 0:
                slope_sum += slope
                slope_count += 1
                max_slope = max(max_slope, slope)
        p.is_descending = bool(step_ele < -cfg.descending_drop_m and speed > cfg.descending_min_speed_kmh)

    valid = speeds[_valid_speed_mask(speeds, cfg)]
    stats = Stats(
        total_distance=float(cumulative[-1]),
        total_ascent=total_ascent,
        total_descent=total_descent,
        max_speed=float(valid.max()) if valid.size else 0.0,
        avg_speed=float(valid.mean()) if valid.size else 0.0,
        max_altitude=float(ele.max()),
        min_altitude=float(ele.min()),
        elevation_delta=float(ele.max() - ele.min()),
        duration=float(times[-1] - times[0]),
        avg_slope=slope_sum / slope_count if slope_count else 0.0,
        max_slope=max_slope,
        start_time=pts[0].time,
        end_time=pts[-1].time,
        avg_heart_rate=hr_sum / hr_count if hr_count else None,
        max_heart_rate=max_hr if max_hr > 0 else None,
    )

    runs = detect_runs(pts, config=cfg)

    # Ski-only aggregates: strictly the union of run ranges
    ski_speeds: List[float] = []
    for run in runs:
        seg = speeds[run.start_index:run.end_index + 1]
        ski_speeds.extend(float(s) for s in seg[_valid_speed_mask(seg, cfg)])
    stats.ski_distance = sum(run.distance for run in runs)
    stats.ski_vertical = sum(run.vertical_drop for run in runs)
    stats.ski_duration = sum(run.duration for run in runs)
    stats.avg_ski_speed = sum(ski_speeds) / len(ski_speeds) if ski_speeds else 0.0
    stats.run_count = len(runs)

    return Analysis(pts, stats, runs)


@dataclass
class _Segment:
    start_index: int
    end_index: int
    high: float
    low: float
    start_t: float
    end_t: float


def _classify_descent(
    speeds: np.ndarray,
    smoothed: np.ndarray,
    cfg: SegmentationConfig,
) -> np.ndarray:
    n = smoothed.size
    tw = int(cfg.trend_window)
    flags = np.zeros(n, dtype=bool)

    def skiing_speed(s: float) -> bool:
        return cfg.min_ski_speed_kmh < s < cfg.max_ski_speed_kmh

    for i in range(tw, n - tw):
        back = smoothed[i - tw]
        ahead = smoothed[i + tw]
        speed = float(speeds[i])
        trending_down = back - ahead > cfg.min_window_drop_m
        on_lift = speed < cfg.lift_speed_kmh and smoothed[i] > back + cfg.lift_rise_m
        flags[i] = trending_down and skiing_speed(speed) and not on_lift

    # Margins inherit from the nearest classified index
    first, last = tw, n - tw - 1
    if 0 <= first < n and flags[first]:
        for i in range(0, first):
            # The first point has no measured speed of its own
            speed = float(speeds[i]) if i > 0 or n < 2 else float(speeds[1])
            if skiing_speed(speed):
                flags[i] = True
    if 0 <= last < n and flags[last]:
        for i in range(last + 1, n):
            if skiing_speed(float(speeds[i])):
                flags[i] = True
    return flags


def _raw_segments(
    flags: np.ndarray,
    ele: np.ndarray,
    times: np.ndarray,
    cfg: SegmentationConfig,
) -> List[_Segment]:
    n = flags.size
    segments: List[_Segment] = []
    start = -1
    misses = 0
    for i in range(n):
        if start < 0:
            if flags[i]:
                start = i
                misses = 0
            continue
        misses = 0 if flags[i] else misses + 1
        if misses >= cfg.max_non_descending or i == n - 1:
            end = i - misses
            if end > start:
                span = ele[start:end + 1]
                segments.append(
                    _Segment(start, end, float(span.max()), float(span.min()), float(times[start]), float(times[end]))
                )
            start = -1
            misses = 0
    return segments


def _merge_segments(
    segments: List[_Segment],
    ele: np.ndarray,
    smoothed: np.ndarray,
    cfg: SegmentationConfig,
) -> List[_Segment]:
    merged: List[_Segment] = []
    for seg in segments:
        if merged:
            last = merged[-1]
            gap_s = seg.start_t - last.end_t
            # Climb inside the gap, measured on the smoothed profile
            gap_profile = smoothed[last.end_index:seg.start_index + 1]
            ascent_in_gap = float(gap_profile.max() - smoothed[last.end_index]) if gap_profile.size else 0.0
            if (
                0 < gap_s < cfg.max_gap_s
                and ascent_in_gap < cfg.max_ascent_in_gap_m
                and seg.low <= last.high
            ):
                last.end_index = seg.end_index
                last.end_t = seg.end_t
                span = ele[last.start_index:last.end_index + 1]
                last.high = float(span.max())
                last.low = float(span.min())
                continue
        merged.append(replace(seg))
    return merged


def detect_runs(
    points: Sequence[TrackPoint],
    smoothed: Optional[Sequence[float]] = None,
    config: Optional[SegmentationConfig] = None,
) -> List[Run]:
    """Split a point sequence into filtered downhill runs.

    Points are expected to carry the per-point ``speed`` written by
    :func:`analyze`; missing speeds count as zero.
    """
    cfg = config or DEFAULT_SEGMENTATION
    n = len(points)
    if n < 2 * cfg.trend_window or n < 2:
        return []

    times = np.array([p.t for p in points], dtype=np.float64)
    ele = np.array([p.ele for p in points], dtype=np.float64)
    speeds = np.array([p.speed or 0.0 for p in points], dtype=np.float64)
    if smoothed is None:
        smooth = smooth_elevation(ele, cfg.elevation_smooth_window)
    else:
        smooth = np.asarray(smoothed, dtype=np.float64)

    flags = _classify_descent(speeds, smooth, cfg)
    segments = _merge_segments(_raw_segments(flags, ele, times, cfg), ele, smooth, cfg)

    steps = _step_distances(points)
    runs: List[Run] = []
    for seg in segments:
        duration = seg.end_t - seg.start_t
        vertical_drop = seg.high - seg.low
        if vertical_drop < cfg.min_vertical_drop_m or duration < cfg.min_run_duration_s:
            logging.debug(
                "Dropping segment %d-%d (drop=%.1fm, duration=%.0fs)",
                seg.start_index, seg.end_index, vertical_drop, duration,
            )
            continue
        s, e = seg.start_index, seg.end_index
        run_distance = float(steps[s + 1:e + 1].sum())
        run_speeds = speeds[s:e + 1]
        valid = run_speeds[_valid_speed_mask(run_speeds, cfg)]
        heart = [p.heart_rate for p in points[s:e + 1] if p.heart_rate is not None and p.heart_rate > 0]
        runs.append(
            Run(
                id=len(runs) + 1,
                start_index=s,
                end_index=e,
                distance=run_distance,
                vertical_drop=vertical_drop,
                avg_speed=float(valid.mean()) if valid.size else 0.0,
                max_speed=float(valid.max()) if valid.size else 0.0,
                duration=duration,
                start_elevation=seg.high,
                end_elevation=seg.low,
                avg_slope=to_deg(math.atan2(vertical_drop, run_distance)),
                start_time=points[s].time,
                end_time=points[e].time,
                avg_heart_rate=sum(heart) / len(heart) if heart else None,
                max_heart_rate=max(heart) if heart else None,
            )
        )
    return runs


def track_from_points(
    name: str,
    points: Sequence[TrackPoint],
    config: Optional[SegmentationConfig] = None,
) -> Track:
    result = analyze(points, config)
    return Track(name=name, points=tuple(result.points), stats=result.stats, runs=tuple(result.runs))


# -----------------
# Formatting
# -----------------

def format_duration(seconds: float) -> str:
    total = int(max(0.0, seconds))
    hrs, rem = divmod(total, 3600)
    mins, secs = divmod(rem, 60)
    return f"{hrs:02d}:{mins:02d}:{secs:02d}"


def format_duration_long(seconds: float) -> str:
    total = int(max(0.0, seconds))
    hrs, rem = divmod(total, 3600)
    mins, secs = divmod(rem, 60)
    if hrs > 0:
        return f"{hrs}h {mins}m {secs}s"
    if mins > 0:
        return f"{mins}m {secs}s"
    return f"{secs}s"


def meters_to_feet(m: float) -> float:
    return m * 3.28084


def meters_to_miles(m: float) -> float:
    return m / 1609.344


def kmh_to_mph(kmh: float) -> float:
    return kmh * 0.621371


# -----------------
# Logging
# -----------------

def _setup_logging(verbose: bool, log_file: Optional[str] = None) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    fmt = "%(asctime)s [%(levelname)s] %(message)s"
    datefmt = "%H:%M:%S"
    logging.basicConfig(level=level, format=fmt, datefmt=datefmt)
    if log_file:
        fh = logging.FileHandler(log_file, mode="w")
        fh.setLevel(level)
        fh.setFormatter(logging.Formatter(fmt, datefmt))
        logging.getLogger().addHandler(fh)
    # Suppress chatty third-party DEBUG logs
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("requests").setLevel(logging.WARNING)
