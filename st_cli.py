from __future__ import annotations

# Command line for slopetrace. Parsing lives in st_ingest, the analysis
# engine in st_core and the autosave format in st_recording.

import csv
import json
import logging
import os
from typing import Any, Dict, List, Optional

import typer

from st_core import (
    SegmentationConfig,
    Stats,
    Track,
    _setup_logging,
    format_duration,
    format_duration_long,
    kmh_to_mph,
    meters_to_feet,
    meters_to_miles,
    track_from_points,
)
from st_ingest import ParseError, read_track_file, write_gpx
from st_recording import AutosaveSnapshot, DirectoryStore, RecordingConfig, track_file_name


EXIT_OK = 0
EXIT_INPUT_ERROR = 2
EXIT_NOTHING = 3

RUN_CSV_FIELDS = [
    "id",
    "start_time",
    "end_time",
    "duration_s",
    "distance_m",
    "vertical_drop_m",
    "start_elevation_m",
    "end_elevation_m",
    "avg_speed_kmh",
    "max_speed_kmh",
    "avg_slope_deg",
    "avg_heart_rate",
    "max_heart_rate",
]


def _load_segmentation(config_path: Optional[str]) -> Optional[SegmentationConfig]:
    if not config_path:
        return None
    with open(config_path, "r", encoding="utf-8") as f:
        data = json.load(f)
    if not isinstance(data, dict):
        raise ValueError(f"Segmentation config must be a JSON object: {config_path}")
    return SegmentationConfig.from_mapping(data)


def _iso(value: Any) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _stats_dict(stats: Stats) -> Dict[str, Any]:
    out: Dict[str, Any] = {}
    for key, value in vars(stats).items():
        out[key] = _iso(value) if key in ("start_time", "end_time") else value
    return out


def _run_rows(track: Track) -> List[Dict[str, Any]]:
    rows: List[Dict[str, Any]] = []
    for run in track.runs:
        rows.append(
            {
                "id": run.id,
                "start_time": _iso(run.start_time),
                "end_time": _iso(run.end_time),
                "duration_s": round(run.duration, 1),
                "distance_m": round(run.distance, 1),
                "vertical_drop_m": round(run.vertical_drop, 1),
                "start_elevation_m": round(run.start_elevation, 1),
                "end_elevation_m": round(run.end_elevation, 1),
                "avg_speed_kmh": round(run.avg_speed, 2),
                "max_speed_kmh": round(run.max_speed, 2),
                "avg_slope_deg": round(run.avg_slope, 2),
                "avg_heart_rate": run.avg_heart_rate,
                "max_heart_rate": run.max_heart_rate,
            }
        )
    return rows


def track_to_dict(track: Track) -> Dict[str, Any]:
    return {
        "name": track.name,
        "point_count": len(track.points),
        "stats": _stats_dict(track.stats),
        "runs": _run_rows(track),
    }


def _summary_lines(track: Track, imperial: bool) -> List[str]:
    s = track.stats
    if imperial:
        dist = lambda m: f"{meters_to_miles(m):.2f} mi"  # noqa: E731
        vert = lambda m: f"{meters_to_feet(m):.0f} ft"  # noqa: E731
        speed = lambda k: f"{kmh_to_mph(k):.1f} mph"  # noqa: E731
    else:
        dist = lambda m: f"{m / 1000.0:.2f} km"  # noqa: E731
        vert = lambda m: f"{m:.0f} m"  # noqa: E731
        speed = lambda k: f"{k:.1f} km/h"  # noqa: E731

    lines = [
        f"Track: {track.name}",
        f"  points:        {len(track.points)}",
        f"  duration:      {format_duration(s.duration)}",
        f"  distance:      {dist(s.total_distance)}",
        f"  ascent:        {vert(s.total_ascent)}",
        f"  descent:       {vert(s.total_descent)}",
        f"  altitude:      {vert(s.min_altitude)} - {vert(s.max_altitude)}",
        f"  max speed:     {speed(s.max_speed)}",
        f"  avg speed:     {speed(s.avg_speed)}",
        f"  runs:          {s.run_count}",
    ]
    if s.run_count:
        lines += [
            f"  ski distance:  {dist(s.ski_distance)}",
            f"  ski vertical:  {vert(s.ski_vertical)}",
            f"  ski time:      {format_duration_long(s.ski_duration)}",
            f"  avg ski speed: {speed(s.avg_ski_speed)}",
        ]
    if s.avg_heart_rate is not None:
        lines.append(f"  heart rate:    avg {s.avg_heart_rate:.0f} / max {s.max_heart_rate:.0f} bpm")
    for run in track.runs:
        lines.append(
            f"  run {run.id:>2}: {format_duration(run.duration)}  {vert(run.vertical_drop)} drop  "
            f"{dist(run.distance)}  max {speed(run.max_speed)}"
        )
    return lines


def _load_track(path: str, config_path: Optional[str]) -> Track:
    segmentation = _load_segmentation(config_path)
    logging.info("Reading: %s", path)
    return read_track_file(path, segmentation)


def _run_analyze(
    path: str,
    json_out: Optional[str],
    imperial: bool,
    config_path: Optional[str],
) -> int:
    try:
        track = _load_track(path, config_path)
    except (ParseError, OSError, ValueError) as exc:
        logging.error("%s", exc)
        return EXIT_INPUT_ERROR

    for line in _summary_lines(track, imperial):
        typer.echo(line)
    if json_out:
        with open(json_out, "w", encoding="utf-8") as f:
            json.dump(track_to_dict(track), f, indent=2)
        logging.info("Wrote: %s", json_out)
    return EXIT_OK


def _run_runs(path: str, csv_out: Optional[str], config_path: Optional[str]) -> int:
    try:
        track = _load_track(path, config_path)
    except (ParseError, OSError, ValueError) as exc:
        logging.error("%s", exc)
        return EXIT_INPUT_ERROR

    rows = _run_rows(track)
    if not rows:
        logging.warning("No runs detected in %s", path)
        return EXIT_NOTHING
    for row in rows:
        typer.echo(
            f"{row['id']:>3}  {row['start_time']}  {row['duration_s']:>8.1f}s  "
            f"{row['vertical_drop_m']:>7.1f}m  {row['distance_m']:>8.1f}m  {row['max_speed_kmh']:>6.1f}km/h"
        )
    if csv_out:
        with open(csv_out, "w", newline="", encoding="utf-8") as f:
            writer = csv.DictWriter(f, fieldnames=RUN_CSV_FIELDS)
            writer.writeheader()
            writer.writerows(rows)
        logging.info("Wrote: %s", csv_out)
    return EXIT_OK


def _run_recover(directory: str, output: Optional[str], clear: bool, config_path: Optional[str]) -> int:
    rec_cfg = RecordingConfig()
    store = DirectoryStore(directory)
    try:
        segmentation = _load_segmentation(config_path)
        raw = store.read(rec_cfg.snapshot_name)
    except (OSError, ValueError) as exc:
        logging.error("%s", exc)
        return EXIT_INPUT_ERROR
    if raw is None:
        logging.warning("No autosave snapshot in %s", directory)
        return EXIT_NOTHING
    try:
        snapshot = AutosaveSnapshot.from_json(raw.decode("utf-8"))
    except (ValueError, KeyError, TypeError) as exc:
        logging.error("Unreadable autosave snapshot: %s", exc)
        return EXIT_INPUT_ERROR
    if not snapshot.points:
        logging.warning("Autosave snapshot holds no points")
        return EXIT_NOTHING
    if snapshot.graceful_pause:
        logging.info("Snapshot was written on a graceful pause; recovering anyway")

    name = snapshot.location_name or rec_cfg.default_track_name
    track = track_from_points(name, snapshot.points, segmentation)
    start = snapshot.start_time or snapshot.points[0].time
    out = output or os.path.join(directory, track_file_name(start, snapshot.location_name, rec_cfg.fallback_place))
    with open(out, "w", encoding="utf-8") as f:
        f.write(write_gpx(track.points, name, created=snapshot.captured_at))
    logging.info("Recovered %d points, %d runs -> %s", len(track.points), len(track.runs), out)
    if clear:
        store.delete(rec_cfg.snapshot_name)
        logging.info("Removed autosave snapshot")
    return EXIT_OK


def _build_typer_app():  # pragma: no cover
    app = typer.Typer(add_completion=False, help="Ski track statistics and run detection for GPX/FIT files.")

    @app.command()
    def analyze(
        path: str = typer.Argument(..., help="Input .gpx or .fit file"),
        json_out: Optional[str] = typer.Option(None, "--json", help="Write stats and runs as JSON"),
        imperial: bool = typer.Option(False, "--imperial", help="Report miles, feet and mph"),
        config: Optional[str] = typer.Option(None, "--config", help="JSON file overriding segmentation thresholds"),
        verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose logging"),
        log_file: Optional[str] = typer.Option(None, "--log-file", help="Optional log file path for diagnostics"),
    ) -> None:
        """Print session statistics and detected runs."""
        _setup_logging(verbose, log_file)
        code = _run_analyze(path, json_out, imperial, config)
        if code != 0:
            raise typer.Exit(code)

    @app.command()
    def runs(
        path: str = typer.Argument(..., help="Input .gpx or .fit file"),
        csv_out: Optional[str] = typer.Option(None, "--csv", help="Write the run table as CSV"),
        config: Optional[str] = typer.Option(None, "--config", help="JSON file overriding segmentation thresholds"),
        verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose logging"),
        log_file: Optional[str] = typer.Option(None, "--log-file", help="Optional log file path for diagnostics"),
    ) -> None:
        """List detected downhill runs."""
        _setup_logging(verbose, log_file)
        code = _run_runs(path, csv_out, config)
        if code != 0:
            raise typer.Exit(code)

    @app.command()
    def recover(
        directory: str = typer.Argument(..., help="Directory holding the autosave snapshot"),
        output: Optional[str] = typer.Option(None, "--output", "-o", help="GPX output path (defaults next to the snapshot)"),
        clear: bool = typer.Option(False, "--clear/--keep", help="Delete the snapshot after a successful recovery"),
        config: Optional[str] = typer.Option(None, "--config", help="JSON file overriding segmentation thresholds"),
        verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose logging"),
        log_file: Optional[str] = typer.Option(None, "--log-file", help="Optional log file path for diagnostics"),
    ) -> None:
        """Finalize an interrupted recording from its autosave snapshot."""
        _setup_logging(verbose, log_file)
        code = _run_recover(directory, output, clear, config)
        if code != 0:
            raise typer.Exit(code)

    return app


def main_cli() -> int:
    app = _build_typer_app()
    app()
    return 0


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main_cli())
