import io
import logging
import os
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

import gpxpy
import gpxpy.gpx
from fitparse import FitFile

from st_core import (
    UNNAMED_TRACK,
    SegmentationConfig,
    Track,
    TrackPoint,
    ensure_utc,
    track_from_points,
)


class ParseError(ValueError):
    """Raised when an input file yields no usable track points."""


SUPPORTED_TYPES = ("gpx", "fit")

# Local tag names carrying heart rate inside <extensions>
HEART_RATE_TAGS = ("hr", "heartrate")

# FIT message arrays checked before scanning the whole container
KNOWN_RECORD_KEYS = ("record", "records")

FIT_DEFAULT_NAME = "FIT Activity"
GPX_CREATOR = "slopetrace"


def _now() -> datetime:
    return datetime.now(timezone.utc)


# -----------------
# GPX
# -----------------

def _local_tag(tag: Any) -> str:
    name = str(tag)
    if "}" in name:
        name = name.rsplit("}", 1)[1]
    return name.split(":")[-1].lower()


def _extension_heart_rate(extensions: Iterable[Any]) -> Optional[float]:
    for ext in extensions or ():
        for el in ext.iter():
            if _local_tag(el.tag) not in HEART_RATE_TAGS:
                continue
            try:
                value = int((el.text or "").strip())
            except ValueError:
                return None
            return float(value) if value > 0 else None
    return None


def parse_gpx_points(text: str) -> Tuple[str, List[TrackPoint]]:
    try:
        gpx = gpxpy.parse(text)
    except (gpxpy.gpx.GPXException, ValueError) as exc:
        raise ParseError(f"Failed to parse GPX document: {exc}") from exc

    name = ""
    if gpx.tracks and gpx.tracks[0].name:
        name = gpx.tracks[0].name
    elif gpx.name:
        name = gpx.name
    name = name.strip() or UNNAMED_TRACK

    fallback = _now()
    points: List[TrackPoint] = []
    for track in gpx.tracks:
        for segment in track.segments:
            for p in segment.points:
                if p.latitude is None or p.longitude is None:
                    raise ParseError("GPX track point is missing lat/lon")
                points.append(
                    TrackPoint(
                        lat=float(p.latitude),
                        lon=float(p.longitude),
                        ele=float(p.elevation) if p.elevation is not None else 0.0,
                        time=ensure_utc(p.time) if p.time is not None else fallback,
                        heart_rate=_extension_heart_rate(p.extensions),
                    )
                )
    return name, points


def read_gpx(text: str, config: Optional[SegmentationConfig] = None) -> Track:
    """Parse a GPX document into a finalized Track.

    Points are taken in document order; no re-sort is done.
    """
    name, points = parse_gpx_points(text)
    if not points:
        raise ParseError("No track points found in GPX document")
    logging.debug("GPX '%s': %d points", name, len(points))
    return track_from_points(name, points, config)


def write_gpx(points: Sequence[TrackPoint], name: str, created: Optional[datetime] = None) -> str:
    if not points:
        raise ValueError("Cannot generate GPX from empty points array")
    gpx = gpxpy.gpx.GPX()
    gpx.creator = GPX_CREATOR
    gpx.name = name
    gpx.time = ensure_utc(created) if created is not None else _now()
    track = gpxpy.gpx.GPXTrack(name=name)
    segment = gpxpy.gpx.GPXTrackSegment()
    for p in points:
        segment.points.append(
            gpxpy.gpx.GPXTrackPoint(
                latitude=round(p.lat, 7),
                longitude=round(p.lon, 7),
                elevation=round(p.ele, 1),
                time=ensure_utc(p.time),
            )
        )
    track.segments.append(segment)
    gpx.tracks.append(track)
    return gpx.to_xml(version="1.1")


# -----------------
# FIT
# -----------------

def _semicircles_to_degrees(value: float) -> float:
    return value * (180.0 / 2 ** 31)


def _decode_fit(data: bytes) -> Dict[str, List[Dict[str, Any]]]:
    fit = FitFile(io.BytesIO(data))
    fit.parse()
    container: Dict[str, List[Dict[str, Any]]] = {}
    for msg in fit.get_messages():
        container.setdefault(msg.name, []).append(msg.get_values())
    return container


def _has_position(record: Any) -> bool:
    if not isinstance(record, dict):
        return False
    return record.get("position_lat") is not None or record.get("position_long") is not None


def _find_position_records(container: Dict[str, Any]) -> Optional[List[Dict[str, Any]]]:
    keys = [k for k in KNOWN_RECORD_KEYS if k in container]
    keys += [k for k in container if k not in KNOWN_RECORD_KEYS]
    for key in keys:
        value = container.get(key)
        if isinstance(value, list) and any(_has_position(r) for r in value):
            logging.debug("Found GPS records in '%s'", key)
            return value
    return None


def _coerce_time(value: Any, fallback: datetime) -> datetime:
    if isinstance(value, datetime):
        return ensure_utc(value)
    if isinstance(value, str):
        try:
            return ensure_utc(datetime.fromisoformat(value.strip().replace("Z", "+00:00")))
        except ValueError:
            return fallback
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        try:
            return datetime.fromtimestamp(float(value) / 1000.0, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return fallback
    return fallback


def _as_float(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _fit_point(record: Dict[str, Any], fallback: datetime) -> Optional[TrackPoint]:
    lat = _as_float(record.get("position_lat"))
    lon = _as_float(record.get("position_long"))
    if lat is None or lon is None:
        return None
    if abs(lat) > 180:
        lat = _semicircles_to_degrees(lat)
    if abs(lon) > 180:
        lon = _semicircles_to_degrees(lon)
    if not (-90.0 <= lat <= 90.0) or not (-180.0 <= lon <= 180.0):
        return None

    ele = _as_float(record.get("enhanced_altitude"))
    if ele is None:
        ele = _as_float(record.get("altitude"))
    hr = _as_float(record.get("heart_rate"))
    speed = _as_float(record.get("enhanced_speed"))
    if speed is None:
        speed = _as_float(record.get("speed"))
    return TrackPoint(
        lat=lat,
        lon=lon,
        ele=ele if ele is not None else 0.0,
        time=_coerce_time(record.get("timestamp"), fallback),
        heart_rate=hr if hr is not None and hr > 0 else None,
        # fitparse reports speed in m/s
        reported_speed=speed * 3.6 if speed is not None else None,
    )


def _fit_name(container: Dict[str, Any]) -> str:
    sessions = container.get("session") or container.get("sessions")
    if not isinstance(sessions, list) or not sessions or not isinstance(sessions[0], dict):
        return FIT_DEFAULT_NAME
    session = sessions[0]
    name = FIT_DEFAULT_NAME
    sport = session.get("sport")
    if isinstance(sport, str) and sport:
        label = sport.replace("_", " ")
        name = f"{label[0].upper()}{label[1:]} Activity"
    start = session.get("start_time")
    if start is not None:
        name += f" - {_coerce_time(start, _now()).date().isoformat()}"
    return name


def parse_fit_points(data: bytes) -> Tuple[str, List[TrackPoint]]:
    try:
        container = _decode_fit(data)
    except Exception as exc:
        raise ParseError(f"Failed to parse FIT file: {exc}") from exc
    if not container:
        raise ParseError("No data returned from FIT decoder")

    scanned = sum(len(v) for v in container.values() if isinstance(v, list))
    records = _find_position_records(container)
    if records is None:
        raise ParseError(f"No GPS records found in FIT file (scanned {scanned} records)")
    logging.debug("Found %d FIT records", len(records))

    fallback = _now()
    points: List[TrackPoint] = []
    for record in records:
        if not isinstance(record, dict):
            continue
        point = _fit_point(record, fallback)
        if point is not None:
            points.append(point)
    if not points:
        raise ParseError(f"No valid GPS points found in FIT file (checked {len(records)} records)")

    points.sort(key=lambda p: p.t)
    logging.debug("Extracted %d GPS points", len(points))
    return _fit_name(container), points


def read_fit(data: bytes, config: Optional[SegmentationConfig] = None) -> Track:
    """Decode a FIT activity into a finalized Track sorted by timestamp."""
    name, points = parse_fit_points(data)
    return track_from_points(name, points, config)


# -----------------
# Dispatch
# -----------------

def file_type(file_name: str) -> Optional[str]:
    base = os.path.basename(file_name.replace("\\", "/"))
    if "." not in base:
        return None
    ext = base.rsplit(".", 1)[1].lower()
    return ext if ext in SUPPORTED_TYPES else None


def is_supported_file(file_name: str) -> bool:
    return file_type(file_name) is not None


def read_track_file(path: str, config: Optional[SegmentationConfig] = None) -> Track:
    kind = file_type(path)
    if kind is None:
        raise ParseError("Unsupported file type. Please provide a .gpx or .fit file.")
    if kind == "gpx":
        with open(path, "r", encoding="utf-8") as fh:
            return read_gpx(fh.read(), config)
    with open(path, "rb") as fh:
        return read_fit(fh.read(), config)
