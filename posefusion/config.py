"""Tracker configuration, validated merges, and CLI defaults."""

from __future__ import annotations

import argparse
import math
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Mapping, Optional

import yaml

from .control.pose import SOURCE_NAMES


@dataclass(frozen=True)
class SourceFlags:
    visual: bool = False
    geolocation: bool = False
    marker: bool = False


@dataclass(frozen=True)
class PerformanceConfig:
    target_fps: float = 30.0
    min_fps: float = 20.0


@dataclass(frozen=True)
class MarkerParams:
    """Runtime marker detector parameters; None keeps the detector's value."""

    marker_size: Optional[float] = None
    marker_id: Optional[int] = None
    dictionary: Optional[str] = None

    def overrides(self) -> dict[str, Any]:
        values = {f.name: getattr(self, f.name) for f in fields(self)}
        return {k: v for k, v in values.items() if v is not None}


@dataclass(frozen=True)
class TrackerConfig:
    """Process-wide tracker configuration. All sources start disabled."""

    pose: SourceFlags = field(default_factory=SourceFlags)
    debug: bool = False
    performance: PerformanceConfig = field(default_factory=PerformanceConfig)
    marker: MarkerParams = field(default_factory=MarkerParams)

    def enabled(self, source: str) -> bool:
        return bool(getattr(self.pose, source))


_TRACKER_KEY_ALIASES = {
    "alva": "visual",
    "gps": "geolocation",
    "image": "marker",
    "targetfps": "target_fps",
    "minfps": "min_fps",
}
_PERFORMANCE_FIELDS = {f.name for f in fields(PerformanceConfig)}
_MARKER_KEY_ALIASES = {"size": "marker_size", "id": "marker_id"}


def _parse_bool(value: Any, key: str) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)) and value in (0, 1):
        return bool(value)
    if isinstance(value, str):
        s = value.strip().lower()
        if s in {"1", "true", "yes", "on"}:
            return True
        if s in {"0", "false", "no", "off"}:
            return False
    raise ValueError(f"config key '{key}' expects a bool, got {value!r}")


def _parse_positive_float(value: Any, key: str) -> float:
    if isinstance(value, bool):
        raise ValueError(f"config key '{key}' expects a number, got {value!r}")
    try:
        f = float(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"invalid value for config key '{key}': {value!r}") from exc
    if not math.isfinite(f) or f <= 0.0:
        raise ValueError(f"config key '{key}' must be a finite number > 0, got {value!r}")
    return f


def _normalize_key(raw_key: Any) -> str:
    if not isinstance(raw_key, str):
        raise ValueError(f"config key must be string, got {type(raw_key).__name__}")
    key = raw_key.strip().replace("-", "_")
    if not key:
        raise ValueError("config key cannot be empty")
    return _TRACKER_KEY_ALIASES.get(key.lower(), key)


def _expect_mapping(value: Any, key: str) -> Mapping:
    if not isinstance(value, Mapping):
        raise ValueError(f"config key '{key}' expects a mapping, got {type(value).__name__}")
    return value


def merge_tracker_config(
    current: TrackerConfig, update: Mapping[str, Any] | TrackerConfig
) -> TrackerConfig:
    """Merge a partial update into ``current`` and return the new config.

    Unknown keys and invalid values raise ValueError; ``current`` is never
    modified.
    """
    if isinstance(update, TrackerConfig):
        validate_tracker_config(update)
        return update
    update = _expect_mapping(update, "<root>")

    pose = current.pose
    debug = current.debug
    perf = current.performance
    marker = current.marker
    for raw_key, raw_value in update.items():
        key = _normalize_key(raw_key)
        if key == "pose":
            changes = {}
            for raw_name, flag in _expect_mapping(raw_value, "pose").items():
                name = _normalize_key(raw_name)
                if name not in SOURCE_NAMES:
                    raise ValueError(f"unknown pose source in config: {raw_name!r}")
                changes[name] = _parse_bool(flag, f"pose.{name}")
            pose = replace(pose, **changes)
        elif key == "debug":
            debug = _parse_bool(raw_value, "debug")
        elif key == "performance":
            changes = {}
            for raw_name, v in _expect_mapping(raw_value, "performance").items():
                name = _normalize_key(raw_name)
                if name not in _PERFORMANCE_FIELDS:
                    raise ValueError(f"unknown performance key in config: {raw_name!r}")
                changes[name] = _parse_positive_float(v, f"performance.{name}")
            perf = replace(perf, **changes)
        elif key == "marker":
            marker = _merge_marker_params(marker, _expect_mapping(raw_value, "marker"))
        else:
            raise ValueError(f"unknown config key: {raw_key!r}")

    merged = TrackerConfig(pose=pose, debug=debug, performance=perf, marker=marker)
    validate_tracker_config(merged)
    return merged


def _merge_marker_params(current: MarkerParams, update: Mapping) -> MarkerParams:
    changes: dict[str, Any] = {}
    for raw_name, v in update.items():
        name = _normalize_key(raw_name).lower()
        name = _MARKER_KEY_ALIASES.get(name, name)
        if name == "marker_size":
            changes[name] = _parse_positive_float(v, "marker.marker_size")
        elif name == "marker_id":
            if isinstance(v, bool):
                raise ValueError(f"config key 'marker.marker_id' expects an int, got {v!r}")
            try:
                marker_id = int(v)
            except (TypeError, ValueError) as exc:
                raise ValueError(f"invalid value for config key 'marker.marker_id': {v!r}") from exc
            if marker_id < -1:
                raise ValueError(f"config key 'marker.marker_id' must be >= -1, got {v!r}")
            changes[name] = marker_id
        elif name == "dictionary":
            if not isinstance(v, str) or not v.strip():
                raise ValueError(f"config key 'marker.dictionary' expects a name, got {v!r}")
            changes[name] = v.strip()
        else:
            raise ValueError(f"unknown marker key in config: {raw_name!r}")
    return replace(current, **changes)


def validate_tracker_config(cfg: TrackerConfig) -> None:
    perf = cfg.performance
    if perf.min_fps <= 0.0:
        raise ValueError(f"performance.min_fps must be > 0, got {perf.min_fps}")
    if perf.target_fps < perf.min_fps:
        raise ValueError(
            f"performance.target_fps must be >= min_fps, got {perf.target_fps} < {perf.min_fps}"
        )


@dataclass(frozen=True)
class AppConfig:
    sources: str = "marker"
    camera_index: int = 0
    camera_width: int = 1280
    camera_height: int = 720
    marker_dictionary: str = "DICT_4X4_50"
    marker_size: float = 0.06
    marker_id: int = -1
    marker_interval_ms: float = 30.0
    marker_hold_timeout_ms: float = 2000.0
    max_lost_frames: int = 5
    smoothing_alpha: float = 0.3
    target_fps: float = 30.0
    min_fps: float = 20.0
    duration_s: float = 0.0
    log_hz: float = 2.0
    debug: bool = False
    log_level: str = "info"


_APP_CONFIG_FIELDS = {f.name for f in fields(AppConfig)}
_BOOL_FIELDS = {"debug"}
_INT_FIELDS = {"camera_index", "camera_width", "camera_height", "marker_id", "max_lost_frames"}
_FLOAT_FIELDS = {
    "marker_size",
    "marker_interval_ms",
    "marker_hold_timeout_ms",
    "smoothing_alpha",
    "target_fps",
    "min_fps",
    "duration_s",
    "log_hz",
}
_STRING_FIELDS = {"sources", "marker_dictionary", "log_level"}
# Sources with a bundled collaborator; the rest need programmatic injection.
CLI_SOURCES = {"marker"}


def _coerce_config_value(key: str, value: Any) -> Any:
    try:
        if key in _BOOL_FIELDS:
            return _parse_bool(value, key)
        if key in _INT_FIELDS:
            return int(value)
        if key in _FLOAT_FIELDS:
            return float(value)
        if key in _STRING_FIELDS:
            if isinstance(value, (list, tuple)):
                return ",".join(str(v) for v in value)
            return "" if value is None else str(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"invalid value for config key '{key}': {value!r}") from exc
    raise ValueError(f"unsupported config key '{key}'")


def _load_yaml_config(path: str) -> dict[str, Any]:
    p = Path(path)
    if not p.exists():
        raise ValueError(f"--config file not found: {p}")
    if not p.is_file():
        raise ValueError(f"--config must point to a file: {p}")

    try:
        text = p.read_text(encoding="utf-8")
    except OSError as exc:
        raise ValueError(f"failed to read --config file {p}: {exc}") from exc
    try:
        loaded = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise ValueError(f"failed to parse YAML config {p}: {exc}") from exc

    if loaded is None:
        return {}
    if not isinstance(loaded, dict):
        raise ValueError(f"--config root must be a mapping/object, got {type(loaded).__name__}")

    normalized: dict[str, Any] = {}
    for raw_key, raw_value in loaded.items():
        if not isinstance(raw_key, str):
            raise ValueError(f"config key must be string, got {type(raw_key).__name__}")
        key = raw_key.strip().replace("-", "_")
        if key not in _APP_CONFIG_FIELDS:
            raise ValueError(f"unknown config key in {p}: {raw_key!r}")
        normalized[key] = _coerce_config_value(key, raw_value)
    return normalized


def parse_source_list(text: str) -> list[str]:
    names = []
    for raw in text.split(","):
        name = raw.strip().lower()
        if not name:
            continue
        name = _TRACKER_KEY_ALIASES.get(name, name)
        if name not in names:
            names.append(name)
    return names


def build_arg_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(prog="posefusion")
    ap.add_argument(
        "--config",
        type=str,
        default="",
        help="YAML config file path. CLI args override YAML values.",
    )
    ap.add_argument(
        "--sources",
        type=str,
        default="marker",
        help="Comma-separated pose sources to enable.",
    )
    ap.add_argument("--camera-index", type=int, default=0, help="OpenCV camera index.")
    ap.add_argument("--camera-width", type=int, default=1280, help="Requested camera frame width.")
    ap.add_argument("--camera-height", type=int, default=720, help="Requested camera frame height.")
    ap.add_argument(
        "--marker-dictionary",
        type=str,
        default="DICT_4X4_50",
        help="cv2.aruco predefined dictionary name.",
    )
    ap.add_argument(
        "--marker-size",
        type=float,
        default=0.06,
        help="Marker side length in meters.",
    )
    ap.add_argument(
        "--marker-id",
        type=int,
        default=-1,
        help="Track only this marker id (-1 = first detected).",
    )
    ap.add_argument(
        "--marker-interval-ms",
        type=float,
        default=30.0,
        help="Marker detection loop interval in milliseconds.",
    )
    ap.add_argument(
        "--marker-hold-timeout-ms",
        type=float,
        default=2000.0,
        help="How long a lost marker pose is held before reporting loss.",
    )
    ap.add_argument(
        "--max-lost-frames",
        type=int,
        default=5,
        help="Consecutive lost frames that re-emit the held pose.",
    )
    ap.add_argument(
        "--smoothing-alpha",
        type=float,
        default=0.3,
        help="Fused pose EMA factor in (0,1]. Lower is smoother.",
    )
    ap.add_argument("--target-fps", type=float, default=30.0, help="Scale-up FPS threshold.")
    ap.add_argument("--min-fps", type=float, default=20.0, help="Scale-down FPS threshold.")
    ap.add_argument(
        "--duration-s",
        type=float,
        default=0.0,
        help="Run time in seconds (0 = until interrupted).",
    )
    ap.add_argument(
        "--log-hz",
        type=float,
        default=2.0,
        help="Fused pose log rate in Hz (0 disables pose logging).",
    )
    ap.add_argument("--debug", action="store_true", help="Enable tracker debug mode.")
    ap.add_argument(
        "--log-level",
        choices=["debug", "info", "warning", "error"],
        default="info",
        help="Global log level.",
    )
    return ap


def validate_config(cfg: AppConfig) -> None:
    names = parse_source_list(cfg.sources)
    if not names:
        raise ValueError("--sources must name at least one source")
    for name in names:
        if name not in SOURCE_NAMES:
            raise ValueError(f"--sources: unknown source {name!r}")
        if name not in CLI_SOURCES:
            raise ValueError(
                f"--sources: {name!r} needs an injected collaborator and cannot run from the CLI"
            )
    if cfg.camera_index < 0:
        raise ValueError(f"--camera-index must be >= 0, got {cfg.camera_index}")
    if cfg.camera_width < 0:
        raise ValueError(f"--camera-width must be >= 0, got {cfg.camera_width}")
    if cfg.camera_height < 0:
        raise ValueError(f"--camera-height must be >= 0, got {cfg.camera_height}")
    if not cfg.marker_dictionary.startswith("DICT_"):
        raise ValueError(f"--marker-dictionary must be a DICT_* name, got {cfg.marker_dictionary}")
    if cfg.marker_size <= 0.0:
        raise ValueError(f"--marker-size must be > 0, got {cfg.marker_size}")
    if cfg.marker_id < -1:
        raise ValueError(f"--marker-id must be >= -1, got {cfg.marker_id}")
    if cfg.marker_interval_ms <= 0.0:
        raise ValueError(f"--marker-interval-ms must be > 0, got {cfg.marker_interval_ms}")
    if cfg.marker_hold_timeout_ms <= 0.0:
        raise ValueError(
            f"--marker-hold-timeout-ms must be > 0, got {cfg.marker_hold_timeout_ms}"
        )
    if cfg.max_lost_frames < 0:
        raise ValueError(f"--max-lost-frames must be >= 0, got {cfg.max_lost_frames}")
    if not (0.0 < cfg.smoothing_alpha <= 1.0):
        raise ValueError(f"--smoothing-alpha must be in (0,1], got {cfg.smoothing_alpha}")
    if cfg.min_fps <= 0.0:
        raise ValueError(f"--min-fps must be > 0, got {cfg.min_fps}")
    if cfg.target_fps < cfg.min_fps:
        raise ValueError(
            f"--target-fps must be >= --min-fps, got {cfg.target_fps} < {cfg.min_fps}"
        )
    if cfg.duration_s < 0.0:
        raise ValueError(f"--duration-s must be >= 0, got {cfg.duration_s}")
    if cfg.log_hz < 0.0:
        raise ValueError(f"--log-hz must be >= 0, got {cfg.log_hz}")


def tracker_config_from_app(cfg: AppConfig) -> dict[str, Any]:
    """Partial tracker update enabling the CLI-selected sources."""
    enabled = set(parse_source_list(cfg.sources))
    return {
        "pose": {name: name in enabled for name in SOURCE_NAMES},
        "debug": cfg.debug,
        "performance": {"target_fps": cfg.target_fps, "min_fps": cfg.min_fps},
    }


def parse_args(argv=None) -> AppConfig:
    bootstrap = argparse.ArgumentParser(add_help=False)
    bootstrap.add_argument("--config", type=str, default="")
    bootstrap_ns, _ = bootstrap.parse_known_args(argv)

    yaml_cfg: dict[str, Any] = {}
    yaml_error: Optional[str] = None
    if bootstrap_ns.config:
        try:
            yaml_cfg = _load_yaml_config(bootstrap_ns.config)
        except ValueError as exc:
            yaml_error = str(exc)

    ap = build_arg_parser()
    if yaml_error is not None:
        ap.error(yaml_error)
    if yaml_cfg:
        ap.set_defaults(**yaml_cfg)
    args = ap.parse_args(argv)

    cfg = AppConfig(
        sources=args.sources,
        camera_index=args.camera_index,
        camera_width=args.camera_width,
        camera_height=args.camera_height,
        marker_dictionary=args.marker_dictionary,
        marker_size=float(args.marker_size),
        marker_id=args.marker_id,
        marker_interval_ms=float(args.marker_interval_ms),
        marker_hold_timeout_ms=float(args.marker_hold_timeout_ms),
        max_lost_frames=args.max_lost_frames,
        smoothing_alpha=float(args.smoothing_alpha),
        target_fps=float(args.target_fps),
        min_fps=float(args.min_fps),
        duration_s=float(args.duration_s),
        log_hz=float(args.log_hz),
        debug=bool(args.debug),
        log_level=args.log_level,
    )
    try:
        validate_config(cfg)
    except ValueError as exc:
        ap.error(str(exc))
    return cfg
