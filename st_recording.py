import json
import logging
import os
import re
import shutil
import threading
from concurrent.futures import Executor, ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, List, Optional, Protocol

import requests

from st_core import (
    Analysis,
    SegmentationConfig,
    Track,
    TrackPoint,
    analyze,
    ensure_utc,
    format_duration,
    track_from_points,
)
from st_ingest import write_gpx


# -----------------
# Errors
# -----------------

class SessionError(Exception):
    def __init__(self, message: str, tag: str = "") -> None:
        super().__init__(message)
        self.tag = tag


class PreconditionError(SessionError):
    """Start refused; the session state is unchanged."""


class AdvisoryError(SessionError):
    """Surfaced to the caller while the session keeps running."""


class FatalSessionError(SessionError):
    """The session was ended on the caller's behalf."""


SIGNAL_LOST = "signal_lost"
LOW_BATTERY = "low_battery"
CRITICAL_BATTERY = "critical_battery"
SAVE_FAILED = "save_failed"
CLEANUP_FAILED = "cleanup_failed"
LOW_STORAGE = "low_storage"
TOKEN_DENIED = "token_denied"
SENSOR_UNAVAILABLE = "sensor_unavailable"


# -----------------
# Data structures
# -----------------

class SessionState(Enum):
    IDLE = "idle"
    RECORDING = "recording"
    RECOVERING = "recovering"
    STOPPED = "stopped"


@dataclass
class Fix:
    lat: float
    lon: float
    timestamp: datetime
    elevation: Optional[float] = None
    accuracy: Optional[float] = None


@dataclass
class AutosaveSnapshot:
    points: List[TrackPoint]
    start_time: Optional[datetime]
    captured_at: datetime
    location_name: Optional[str] = None
    graceful_pause: bool = False

    def to_json(self) -> str:
        return json.dumps(
            {
                "points": [p.to_dict() for p in self.points],
                "start_time": ensure_utc(self.start_time).isoformat() if self.start_time else None,
                "location_name": self.location_name,
                "captured_at": ensure_utc(self.captured_at).isoformat(),
                "graceful_pause": self.graceful_pause,
            }
        )

    @classmethod
    def from_json(cls, text: str) -> "AutosaveSnapshot":
        data = json.loads(text)
        if not isinstance(data, dict):
            raise ValueError("autosave snapshot is not an object")

        def _dt(value: Any) -> Optional[datetime]:
            if not value:
                return None
            return ensure_utc(datetime.fromisoformat(str(value).replace("Z", "+00:00")))

        captured = _dt(data.get("captured_at")) or datetime.now(timezone.utc)
        return cls(
            points=[TrackPoint.from_dict(p) for p in data.get("points") or []],
            start_time=_dt(data.get("start_time")),
            captured_at=captured,
            location_name=data.get("location_name") or None,
            graceful_pause=data.get("graceful_pause") is True,
        )


@dataclass(frozen=True)
class RecordingConfig:
    elapsed_tick_s: float = 1.0
    stats_interval_s: float = 5.0
    autosave_interval_s: float = 60.0
    status_interval_s: float = 5.0
    signal_check_interval_s: float = 5.0
    max_accuracy_m: float = 50.0
    good_fix_accuracy_m: float = 20.0
    min_fix_interval_s: float = 1.0
    signal_loss_s: float = 30.0
    low_battery: float = 0.10
    critical_battery: float = 0.05
    min_storage_mb: float = 50.0
    snapshot_name: str = "recording-autosave.json"
    accuracy_hint: str = "high"
    token_label: str = "slopetrace-recording"
    status_title: str = "Recording Active"
    default_track_name: str = "Recording"
    fallback_place: str = "Unknown"


# -----------------
# Collaborators
# -----------------

class DurableStore(Protocol):
    def write(self, name: str, data: bytes) -> Any: ...

    def read(self, name: str) -> Optional[bytes]: ...

    def delete(self, name: str) -> None: ...


class SensorStream(Protocol):
    def subscribe(self, accuracy_hint: str, callback: Callable[[Fix], None]) -> Any: ...

    def unsubscribe(self, handle: Any) -> None: ...


class BackgroundTokenProvider(Protocol):
    def acquire(self, label: str) -> Any: ...

    def release(self, token: Any) -> None: ...


class BatteryObserver(Protocol):
    def subscribe(self, callback: Callable[[float], None]) -> Any: ...

    def unsubscribe(self, handle: Any) -> None: ...


class LifecycleObserver(Protocol):
    def subscribe(self, callback: Callable[[bool], None]) -> Any: ...

    def unsubscribe(self, handle: Any) -> None: ...


class NetworkReachability(Protocol):
    def is_reachable(self) -> bool: ...


class PlaceLookup(Protocol):
    def lookup(self, lat: float, lon: float) -> Optional[str]: ...


class StatusSink(Protocol):
    def update(self, title: str, body: str) -> None: ...


class Cancellable(Protocol):
    def cancel(self) -> None: ...


class Scheduler(Protocol):
    def every(self, interval_s: float, callback: Callable[[], None], name: str) -> Cancellable: ...


# -----------------
# Default implementations
# -----------------

class _RepeatingTimer(threading.Thread):
    def __init__(self, interval_s: float, callback: Callable[[], None], name: str) -> None:
        super().__init__(name=f"slopetrace-{name}", daemon=True)
        self._interval = interval_s
        self._callback = callback
        self._stopped = threading.Event()

    def run(self) -> None:
        while not self._stopped.wait(self._interval):
            try:
                self._callback()
            except Exception:
                logging.exception("Periodic task %s failed", self.name)

    def cancel(self) -> None:
        self._stopped.set()


class ThreadScheduler:
    def every(self, interval_s: float, callback: Callable[[], None], name: str = "task") -> _RepeatingTimer:
        timer = _RepeatingTimer(interval_s, callback, name)
        timer.start()
        return timer


class DirectoryStore:
    """Durable store keeping one file per name under a root directory."""

    def __init__(self, root: str) -> None:
        self.root = os.path.abspath(root)

    def _path(self, name: str) -> str:
        if not name or os.path.basename(name) != name:
            raise ValueError(f"Invalid store name: {name!r}")
        return os.path.join(self.root, name)

    def write(self, name: str, data: bytes) -> str:
        path = self._path(name)
        os.makedirs(self.root, exist_ok=True)
        tmp_path = path + ".tmp"
        try:
            with open(tmp_path, "wb") as fh:
                fh.write(data)
            os.replace(tmp_path, path)
        except OSError:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)
            raise
        return path

    def read(self, name: str) -> Optional[bytes]:
        path = self._path(name)
        if not os.path.exists(path):
            return None
        with open(path, "rb") as fh:
            return fh.read()

    def delete(self, name: str) -> None:
        path = self._path(name)
        if os.path.exists(path):
            os.remove(path)

    def free_megabytes(self) -> float:
        probe = self.root
        while not os.path.exists(probe):
            parent = os.path.dirname(probe)
            if parent == probe:
                break
            probe = parent
        return shutil.disk_usage(probe).free / (1024 * 1024)


@dataclass(frozen=True)
class NominatimConfig:
    base_url: str = "https://nominatim.openstreetmap.org/reverse"
    zoom: int = 10
    timeout_s: float = 5.0
    user_agent: str = "slopetrace/0.1 (reverse-geocode)"


# Most specific first
PLACE_KEYS = ("village", "town", "city", "municipality", "county")


class NominatimLookup:
    """Reverse place-name lookup against OpenStreetMap Nominatim. Never raises."""

    def __init__(self, config: Optional[NominatimConfig] = None, session: Optional[requests.Session] = None) -> None:
        self._cfg = config or NominatimConfig()
        self._session = session or requests.Session()

    def lookup(self, lat: float, lon: float) -> Optional[str]:
        params = {"format": "json", "lat": lat, "lon": lon, "zoom": self._cfg.zoom}
        try:
            resp = self._session.get(
                self._cfg.base_url,
                params=params,
                headers={"User-Agent": self._cfg.user_agent},
                timeout=self._cfg.timeout_s,
            )
        except requests.Timeout:
            logging.info("Reverse geocoding timed out")
            return None
        except requests.RequestException as exc:
            logging.warning("Reverse geocoding failed: %s", exc)
            return None
        if not resp.ok:
            return None
        try:
            data = resp.json()
        except ValueError:
            return None
        address = data.get("address") if isinstance(data, dict) else None
        if not isinstance(address, dict):
            return None
        for key in PLACE_KEYS:
            value = address.get(key)
            if value:
                return str(value)
        return None


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def track_file_name(start: datetime, place: Optional[str], fallback: str = "Unknown") -> str:
    label = re.sub(r"[^A-Za-z0-9]", "_", place or fallback)
    return f"{ensure_utc(start).date().isoformat()}_{label}.gpx"


# -----------------
# Session
# -----------------

class RecordingSession:
    """Live recording state machine.

    Sensor fixes, timer ticks and battery/lifecycle notifications all enter
    through methods that hold one re-entrant lock, so the point buffer has a
    single writer. Snapshot I/O and place lookups run on executors and never
    change the session state on failure.

    On a desktop host the bundled helpers cover the optional collaborators::

        store = DirectoryStore(os.path.expanduser("~/slopetrace"))
        session = RecordingSession(
            store,
            sensor,
            storage_headroom=store.free_megabytes,
            place_lookup=NominatimLookup(),
        )
    """

    def __init__(
        self,
        store: DurableStore,
        sensor: SensorStream,
        *,
        config: Optional[RecordingConfig] = None,
        segmentation: Optional[SegmentationConfig] = None,
        scheduler: Optional[Scheduler] = None,
        clock: Optional[Callable[[], datetime]] = None,
        token_provider: Optional[BackgroundTokenProvider] = None,
        battery: Optional[BatteryObserver] = None,
        lifecycle: Optional[LifecycleObserver] = None,
        network: Optional[NetworkReachability] = None,
        place_lookup: Optional[PlaceLookup] = None,
        status_sink: Optional[StatusSink] = None,
        storage_headroom: Optional[Callable[[], Optional[float]]] = None,
        io_executor: Optional[Executor] = None,
        lookup_executor: Optional[Executor] = None,
    ) -> None:
        self.config = config or RecordingConfig()
        self.segmentation = segmentation
        self._store = store
        self._sensor = sensor
        self._scheduler = scheduler or ThreadScheduler()
        self._clock = clock or _utc_now
        self._tokens = token_provider
        self._battery = battery
        self._lifecycle = lifecycle
        self._network = network
        self._place_lookup = place_lookup
        self._status_sink = status_sink
        self._storage_headroom = storage_headroom
        self._owned_executors: List[Executor] = []
        if io_executor is None:
            io_executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="slopetrace-io")
            self._owned_executors.append(io_executor)
        if lookup_executor is None:
            lookup_executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="slopetrace-lookup")
            self._owned_executors.append(lookup_executor)
        self._io = io_executor
        self._lookups = lookup_executor

        self._lock = threading.RLock()
        self._store_lock = threading.Lock()
        # Bumped whenever a session ends; stale background work checks it
        self._generation = 0

        self.state = SessionState.IDLE
        self.points: List[TrackPoint] = []
        self.start_time: Optional[datetime] = None
        self.elapsed_seconds = 0
        self.location_name: Optional[str] = None
        self.accuracy: Optional[float] = None
        self.last_fix_time: Optional[datetime] = None
        self.live: Optional[Analysis] = None
        self.error: Optional[SessionError] = None
        self.track: Optional[Track] = None
        self.saved_as: Optional[str] = None
        self.in_foreground = True

        self._last_fix_seen: Optional[datetime] = None
        self._lookup_requested = False
        self._pending: Optional[AutosaveSnapshot] = None
        self._timers: List[Cancellable] = []
        self._sensor_handle: Any = None
        self._battery_handle: Any = None
        self._lifecycle_handle: Any = None
        self._token: Any = None

    @property
    def point_count(self) -> int:
        return len(self.points)

    # ---- start / resume ----

    def start(self) -> bool:
        with self._lock:
            if self.state == SessionState.RECORDING:
                logging.warning("start() ignored: already recording")
                return False

            headroom = self._probe_storage()
            if headroom is not None and headroom < self.config.min_storage_mb:
                self.error = PreconditionError(f"Low storage: {headroom:.0f}MB available", tag=LOW_STORAGE)
                logging.error("Cannot start recording: insufficient storage space (%.0fMB)", headroom)
                return False

            with self._store_lock:
                self._delete_snapshot_locked("stale autosave")

            if not self._acquire():
                return False

            self._reset_buffer()
            self.start_time = self._clock()
            self.error = None
            self.track = None
            self.saved_as = None
            self._pending = None
            self.state = SessionState.RECORDING
            self._start_activities()
            self.autosave(force=True)
            logging.info("Recording started at %s", self.start_time.isoformat())
            return True

    def resume(self) -> bool:
        """Restore the autosaved buffer and continue recording."""
        with self._lock:
            if self.state == SessionState.RECORDING:
                return False
            snapshot = self._pending or self._load_snapshot()
            if snapshot is None:
                logging.warning("resume() found no autosave snapshot")
                self._pending = None
                self.state = SessionState.IDLE
                return False
            if not self._acquire():
                self._pending = None
                self.state = SessionState.IDLE
                return False

            self._reset_buffer()
            self.points = list(snapshot.points)
            now = self._clock()
            self.start_time = snapshot.start_time or now
            self.elapsed_seconds = max(0, int((now - self.start_time).total_seconds()))
            self.location_name = snapshot.location_name
            self._lookup_requested = snapshot.location_name is not None
            self.last_fix_time = self.points[-1].time if self.points else None
            self._last_fix_seen = now
            self.error = None
            self.track = None
            self.saved_as = None
            self._pending = None
            self.state = SessionState.RECORDING
            self._start_activities()
            logging.info("Recording resumed with %d points", len(self.points))
            return True

    def _probe_storage(self) -> Optional[float]:
        if self._storage_headroom is None:
            return None
        try:
            return self._storage_headroom()
        except Exception as exc:
            logging.error("Storage check failed: %s", exc)
            return None

    def _acquire(self) -> bool:
        token = None
        if self._tokens is not None:
            try:
                token = self._tokens.acquire(self.config.token_label)
            except Exception as exc:
                self.error = PreconditionError(f"Background execution denied: {exc}", tag=TOKEN_DENIED)
                logging.error("Failed to acquire background token: %s", exc)
                return False
            if token is None:
                self.error = PreconditionError("Background execution denied", tag=TOKEN_DENIED)
                logging.error("Background token provider returned no token")
                return False

        try:
            sensor_handle = self._sensor.subscribe(self.config.accuracy_hint, self.on_fix)
        except Exception as exc:
            self.error = PreconditionError(f"Location stream unavailable: {exc}", tag=SENSOR_UNAVAILABLE)
            logging.error("Failed to start location stream: %s", exc)
            if token is not None:
                self._release_token(token)
            return False

        self._token = token
        self._sensor_handle = sensor_handle
        if self._battery is not None:
            try:
                self._battery_handle = self._battery.subscribe(self.on_battery)
            except Exception as exc:
                logging.warning("Battery monitoring unavailable: %s", exc)
        if self._lifecycle is not None:
            try:
                self._lifecycle_handle = self._lifecycle.subscribe(self.on_lifecycle)
            except Exception as exc:
                logging.warning("Lifecycle monitoring unavailable: %s", exc)
        return True

    def _release_token(self, token: Any) -> None:
        try:
            self._tokens.release(token)
        except Exception as exc:
            logging.error("Failed to release background token: %s", exc)

    def _reset_buffer(self) -> None:
        self.points = []
        self.elapsed_seconds = 0
        self.location_name = None
        self.accuracy = None
        self.last_fix_time = None
        self.live = None
        self._last_fix_seen = None
        self._lookup_requested = False

    def _start_activities(self) -> None:
        cfg = self.config
        self._timers = [
            self._scheduler.every(cfg.elapsed_tick_s, self._tick_elapsed, "elapsed"),
            self._scheduler.every(cfg.stats_interval_s, self.refresh_live_stats, "stats"),
            self._scheduler.every(cfg.autosave_interval_s, self.autosave, "autosave"),
            self._scheduler.every(cfg.status_interval_s, self._update_status, "status"),
            self._scheduler.every(cfg.signal_check_interval_s, self._check_signal, "signal"),
        ]

    # ---- event intake ----

    def on_fix(self, fix: Fix) -> None:
        with self._lock:
            if self.state != SessionState.RECORDING:
                return
            if fix.accuracy is not None and fix.accuracy > self.config.max_accuracy_m:
                logging.debug("Dropping fix with accuracy %.0fm", fix.accuracy)
                return
            ts = ensure_utc(fix.timestamp)
            if self.last_fix_time is not None:
                if (ts - self.last_fix_time).total_seconds() < self.config.min_fix_interval_s:
                    return
            self.last_fix_time = ts
            self._last_fix_seen = self._clock()
            self.points.append(
                TrackPoint(
                    lat=fix.lat,
                    lon=fix.lon,
                    ele=fix.elevation if fix.elevation is not None else 0.0,
                    time=ts,
                )
            )
            self.accuracy = fix.accuracy
            if self.error is not None and self.error.tag == SIGNAL_LOST:
                self.error = None
            if (
                not self._lookup_requested
                and fix.accuracy is not None
                and fix.accuracy < self.config.good_fix_accuracy_m
            ):
                self._lookup_requested = True
                self._request_place_name(fix.lat, fix.lon)

    def on_battery(self, level: float) -> None:
        with self._lock:
            if self.state != SessionState.RECORDING:
                return
            if level <= self.config.critical_battery:
                logging.error("Critical battery (%.0f%%): stopping recording", level * 100)
                self.error = FatalSessionError("Critical battery - stopping recording", tag=CRITICAL_BATTERY)
                self.stop()
            elif level <= self.config.low_battery:
                logging.warning("Low battery (%.0f%%): saving progress", level * 100)
                self.error = AdvisoryError("Low battery - saving progress", tag=LOW_BATTERY)
                self.autosave()

    def on_lifecycle(self, is_foreground: bool) -> None:
        with self._lock:
            self.in_foreground = is_foreground
            if self.state != SessionState.RECORDING:
                return
            if not is_foreground:
                # Written even before the first fix so the pause is never read as a crash
                logging.info("App backgrounded during recording, saving state")
                self.autosave(graceful_pause=True, force=True)
                return
            logging.info("App resumed, clearing graceful-pause autosave")
            snapshot = self._snapshot(graceful_pause=False)
            self._submit_io(self._save_then_clear, snapshot, self._generation)

    # ---- periodic activities ----

    def _tick_elapsed(self) -> None:
        with self._lock:
            if self.state != SessionState.RECORDING or self.start_time is None:
                return
            self.elapsed_seconds = max(0, int((self._clock() - self.start_time).total_seconds()))

    def refresh_live_stats(self) -> Optional[Analysis]:
        with self._lock:
            if self.state != SessionState.RECORDING or not self.points:
                return None
            points = list(self.points)
            generation = self._generation
        result = analyze(points, self.segmentation)
        with self._lock:
            if generation == self._generation and self.state == SessionState.RECORDING:
                self.live = result
        return result

    def _status_body(self) -> str:
        duration = format_duration(self.elapsed_seconds)
        if not self.points:
            return f"{duration} • Acquiring GPS..."
        if self.live is None:
            return f"{duration} • {len(self.points)} points"
        stats = self.live.stats
        return f"{duration} • {stats.run_count} runs • {stats.ski_distance / 1000.0:.1f} km"

    def _update_status(self) -> None:
        if self._status_sink is None:
            return
        with self._lock:
            if self.state != SessionState.RECORDING:
                return
            body = self._status_body()
        try:
            self._status_sink.update(self.config.status_title, body)
        except Exception as exc:
            logging.error("Failed to update status: %s", exc)

    def _check_signal(self) -> None:
        with self._lock:
            if self.state != SessionState.RECORDING:
                return
            reference = self._last_fix_seen or self.start_time
            if reference is None:
                return
            silent_s = (self._clock() - reference).total_seconds()
            if silent_s > self.config.signal_loss_s:
                if not isinstance(self.error, FatalSessionError):
                    if self.error is None or self.error.tag != SIGNAL_LOST:
                        logging.warning("GPS signal lost (%.0fs without a fix)", silent_s)
                    self.error = AdvisoryError("GPS signal lost", tag=SIGNAL_LOST)
            elif self.error is not None and self.error.tag == SIGNAL_LOST:
                self.error = None

    # ---- autosave ----

    def _snapshot(self, graceful_pause: bool) -> AutosaveSnapshot:
        return AutosaveSnapshot(
            points=list(self.points),
            start_time=self.start_time,
            captured_at=self._clock(),
            location_name=self.location_name,
            graceful_pause=graceful_pause,
        )

    def autosave(self, graceful_pause: bool = False, force: bool = False) -> None:
        """Queue a snapshot write. Empty buffers are skipped unless forced."""
        with self._lock:
            if self.state != SessionState.RECORDING:
                return
            if not self.points and not force:
                return
            snapshot = self._snapshot(graceful_pause)
            generation = self._generation
        self._submit_io(self._write_snapshot, snapshot, generation)

    def _submit_io(self, fn: Callable[..., None], *args: Any) -> None:
        try:
            self._io.submit(fn, *args)
        except RuntimeError as exc:
            logging.error("Background I/O unavailable: %s", exc)

    def _write_snapshot(self, snapshot: AutosaveSnapshot, generation: int) -> bool:
        with self._store_lock:
            if generation != self._generation:
                logging.debug("Skipping autosave from a finished session")
                return False
            try:
                self._store.write(self.config.snapshot_name, snapshot.to_json().encode("utf-8"))
            except Exception as exc:
                logging.error("Auto-save failed: %s", exc)
                return False
        return True

    def _save_then_clear(self, snapshot: AutosaveSnapshot, generation: int) -> None:
        if not self._write_snapshot(snapshot, generation):
            return
        with self._store_lock:
            if generation != self._generation:
                return
            try:
                self._store.delete(self.config.snapshot_name)
                return
            except Exception as exc:
                logging.error("Failed to clean up autosave after resume: %s", exc)
        # Session lock is never taken while holding the store lock
        with self._lock:
            if generation == self._generation and self.state == SessionState.RECORDING:
                self.error = AdvisoryError("Failed to clean up autosave", tag=CLEANUP_FAILED)

    def _delete_snapshot_locked(self, what: str) -> None:
        try:
            self._store.delete(self.config.snapshot_name)
        except Exception as exc:
            logging.warning("Could not delete %s: %s", what, exc)

    def _load_snapshot(self) -> Optional[AutosaveSnapshot]:
        try:
            raw = self._store.read(self.config.snapshot_name)
        except Exception as exc:
            logging.warning("Could not read autosave: %s", exc)
            return None
        if not raw:
            return None
        try:
            return AutosaveSnapshot.from_json(raw.decode("utf-8"))
        except (ValueError, KeyError, TypeError) as exc:
            logging.warning("Ignoring unreadable autosave: %s", exc)
            return None

    # ---- place name ----

    def _request_place_name(self, lat: float, lon: float) -> None:
        if self._place_lookup is None:
            return
        if self._network is not None:
            try:
                reachable = bool(self._network.is_reachable())
            except Exception as exc:
                logging.debug("Reachability check failed: %s", exc)
                reachable = False
            if not reachable:
                logging.debug("Offline: skipping place-name lookup")
                return
        try:
            self._lookups.submit(self._lookup_place, lat, lon, self._generation)
        except RuntimeError as exc:
            logging.debug("Place-name lookup not scheduled: %s", exc)

    def _lookup_place(self, lat: float, lon: float, generation: int) -> None:
        try:
            name = self._place_lookup.lookup(lat, lon)
        except Exception as exc:
            logging.info("Geocoding failed (offline or error): %s", exc)
            return
        if not name:
            return
        with self._lock:
            if generation == self._generation and self.state == SessionState.RECORDING:
                self.location_name = name
                logging.info("Recording location: %s", name)

    # ---- stop / discard ----

    def _teardown(self) -> List[str]:
        failures: List[str] = []
        for timer in self._timers:
            try:
                timer.cancel()
            except Exception as exc:
                failures.append(f"timer: {exc}")
        self._timers = []

        if self._sensor_handle is not None:
            try:
                self._sensor.unsubscribe(self._sensor_handle)
            except Exception as exc:
                failures.append(f"location stream: {exc}")
            self._sensor_handle = None
        if self._battery_handle is not None:
            try:
                self._battery.unsubscribe(self._battery_handle)
            except Exception as exc:
                failures.append(f"battery observer: {exc}")
            self._battery_handle = None
        if self._lifecycle_handle is not None:
            try:
                self._lifecycle.unsubscribe(self._lifecycle_handle)
            except Exception as exc:
                failures.append(f"lifecycle observer: {exc}")
            self._lifecycle_handle = None
        if self._token is not None:
            try:
                self._tokens.release(self._token)
            except Exception as exc:
                failures.append(f"background token: {exc}")
            self._token = None

        if failures:
            logging.error("Cleanup errors: %s", "; ".join(failures))
        return failures

    def _end_generation(self) -> None:
        with self._store_lock:
            self._generation += 1

    def stop(self) -> Optional[Track]:
        """Finish the session and persist it as GPX.

        Returns the finalized track, or None when nothing was recorded. When
        persisting fails the track is still returned and the autosave is kept
        for a later recovery.
        """
        with self._lock:
            if self.state != SessionState.RECORDING:
                logging.warning("stop() ignored: not recording")
                return None
            self._teardown()
            self._end_generation()

            if not self.points:
                with self._store_lock:
                    self._delete_snapshot_locked("empty autosave")
                self.state = SessionState.IDLE
                self.live = None
                return None

            name = self.location_name or self.config.default_track_name
            track = track_from_points(name, self.points, self.segmentation)
            file_name = track_file_name(self.start_time or self._clock(), self.location_name, self.config.fallback_place)
            try:
                content = write_gpx(track.points, name, created=self._clock())
                self._store.write(file_name, content.encode("utf-8"))
            except Exception as exc:
                logging.error("Failed to save track %s: %s", file_name, exc)
                with self._store_lock:
                    try:
                        self._store.write(
                            self.config.snapshot_name,
                            self._snapshot(graceful_pause=False).to_json().encode("utf-8"),
                        )
                    except Exception as snap_exc:
                        logging.error("Final auto-save failed: %s", snap_exc)
                self.error = AdvisoryError(
                    "Failed to save track. Recording data is still available.", tag=SAVE_FAILED
                )
                self.track = track
                self.live = None
                self.state = SessionState.IDLE
                return track

            with self._store_lock:
                self._delete_snapshot_locked("autosave after save")
            logging.info("Saved %s (%d points, %d runs)", file_name, len(track.points), len(track.runs))
            self.points = []
            self.live = None
            self.track = track
            self.saved_as = file_name
            self.state = SessionState.STOPPED
            return track

    def discard(self) -> None:
        with self._lock:
            self._teardown()
            with self._store_lock:
                self._generation += 1
                self._delete_snapshot_locked("autosave on discard")
            self._reset_buffer()
            self.start_time = None
            self.error = None
            self.track = None
            self.saved_as = None
            self._pending = None
            self.state = SessionState.IDLE

    # ---- recovery ----

    def check_for_recovery(self) -> bool:
        with self._lock:
            if self.state not in (SessionState.IDLE, SessionState.STOPPED):
                return False
        snapshot = self._load_snapshot()
        if snapshot is None:
            return False
        if snapshot.graceful_pause:
            logging.debug("Autosave found but app was gracefully paused; no recovery needed")
            return False
        return True

    def offer_recovery(self) -> Optional[AutosaveSnapshot]:
        with self._lock:
            if not self.check_for_recovery():
                return None
            snapshot = self._load_snapshot()
            if snapshot is None:
                return None
            self._pending = snapshot
            self.state = SessionState.RECOVERING
            logging.info("Autosave from interrupted recording found (%d points)", len(snapshot.points))
            return snapshot

    def clear_recovery(self) -> None:
        with self._lock:
            with self._store_lock:
                self._delete_snapshot_locked("autosave")
            self._pending = None
            if self.state == SessionState.RECOVERING:
                self.state = SessionState.IDLE

    def close(self) -> None:
        for executor in self._owned_executors:
            executor.shutdown(wait=False)
