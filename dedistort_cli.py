"""
Tile-Dedistort CLI

Command-line interface for dedistortion and stacking:
- Config schema, defaults and validation
- Dedistortion against a reference or by consensus
- Stacking of raw or dedistorted frames
- Replaying recorded distortion maps on other frames

Frames are read from and written to FITS files. Distortion maps are stored
next to each output as ``<name>.dmaps``. All commands print a JSON result on
stdout; logs go to stderr.

Usage:
    tile-dedistort <command> [args]
"""

import argparse
import json
import logging
import sys
import uuid
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator

from dedistort_backend.configuration import (
    ConfigurationManager,
    DeviceConfig,
    default_config,
    load_schema_json,
    validate_config_yaml_text,
)
from dedistort_backend.consensus import ConsensusEngine
from dedistort_backend.correlation import HannWindowCache
from dedistort_backend.dedistort import DedistortEngine, apply_distortion_maps
from dedistort_backend.device import get_device_context
from dedistort_backend.distortion_map import DistortionMaps
from dedistort_backend.image import ConsensusReference, FileBackedImage, Image, SourceInfo, save_fits_image
from dedistort_backend.progress import Broadcaster, LoggingBroadcaster
from dedistort_backend.stacking import ReferenceSelection, Stacker
from dedistort_runner.error_handling import ProcessingError, log_exception, robust_processing
from dedistort_runner.events import EventBroadcaster, phase_end, phase_start
from dedistort_runner.fits_utils import discover_fits_files, read_fits_header
from dedistort_runner.logging_config import setup_logging
from dedistort_runner.resources import ResourceManager

MAPS_SUFFIX = ".dmaps"


def _print_json(obj: object) -> None:
    sys.stdout.write(json.dumps(obj, ensure_ascii=False, indent=2))
    sys.stdout.write("\n")
    sys.stdout.flush()


def maps_path(path: Path) -> Path:
    return Path(path).with_suffix(MAPS_SUFFIX)


def write_maps(path: Path, maps: DistortionMaps) -> None:
    with open(path, "wb") as f:
        maps.save_to(f)


def read_maps(path: Path) -> DistortionMaps:
    with open(path, "rb") as f:
        return DistortionMaps.load_from(f)


def _overrides(section: str, values: dict[str, Any]) -> dict[str, Any]:
    present = {k: v for k, v in values.items() if v is not None}
    return {section: present} if present else {}


def _load_config(args: argparse.Namespace, overrides: dict[str, Any]) -> dict[str, Any]:
    if args.config is not None:
        cfg = ConfigurationManager.load_config(Path(args.config))
    else:
        cfg = default_config()
    if args.device is not None:
        cfg["device"]["enabled"] = True
        cfg["device"]["backend"] = args.device
    if args.workers is not None:
        cfg["parallel"]["max_workers"] = args.workers
    return ConfigurationManager._deep_update(cfg, overrides)


def _input_images(paths: list[str]) -> list[FileBackedImage]:
    """Frames of the given files; a directory contributes its FITS files in name order."""
    images = []
    for p in map(Path, paths):
        files = discover_fits_files(p) if p.is_dir() else [p]
        images.extend(FileBackedImage(f) for f in files)
    return images


def _output_path(output_dir: Path, image: Image, suffix: str) -> Path:
    source = image.find_metadata(SourceInfo)
    stem = Path(source.filename).stem if source is not None else "frame"
    return output_dir / f"{stem}_{suffix}.fits"


def _input_header(image: Image) -> Any:
    source = image.find_metadata(SourceInfo)
    if source is None or not source.parent_dir:
        return None
    path = Path(source.parent_dir) / source.filename
    return read_fits_header(path) if path.exists() else None


def _save_registered(images: list[Image], output_dir: Path, suffix: str) -> list[dict[str, Any]]:
    output_dir.mkdir(parents=True, exist_ok=True)
    outputs = []
    for image in images:
        out = _output_path(output_dir, image, suffix)
        save_fits_image(image, out, header=_input_header(image))
        entry: dict[str, Any] = {"output": str(out)}
        maps = image.find_metadata(DistortionMaps)
        if maps is not None:
            write_maps(maps_path(out), maps)
            entry["maps"] = str(maps_path(out))
            entry["map_count"] = len(maps)
            entry["distortion"] = maps.combined().total_distorsion() if len(maps) else 0.0
        source = image.find_metadata(SourceInfo)
        if source is not None:
            entry["input"] = source.filename
        outputs.append(entry)
    return outputs


@contextmanager
def _progress(args: argparse.Namespace, phase_name: str) -> Iterator[Broadcaster]:
    """Progress receiver of a command; with ``--events`` phases and progress are JSON lines on stdout."""
    if not args.events:
        yield LoggingBroadcaster()
        return
    run_id = uuid.uuid4().hex[:12]
    phase_start(run_id, None, phase_name)
    status = "error"
    try:
        yield EventBroadcaster(run_id)
        status = "ok"
    finally:
        phase_end(run_id, None, phase_name, status)


def _engine(cfg: dict[str, Any], broadcaster: Broadcaster) -> DedistortEngine:
    window_cache = HannWindowCache()
    context = get_device_context(DeviceConfig(cfg), window_cache)
    return DedistortEngine(cfg, broadcaster=broadcaster, device_context=context, window_cache=window_cache)


def _dedistort_overrides(args: argparse.Namespace) -> dict[str, Any]:
    return _overrides("dedistort", {
        "tile_size": args.tile_size,
        "sampling": args.sampling,
        "threshold": args.threshold,
        "iterations": args.iterations,
        "sparse": args.sparse,
        "multiscale": args.multiscale,
        "refine": getattr(args, "refine", None),
    })


def cmd_get_schema(_: argparse.Namespace) -> int:
    _print_json(load_schema_json())
    return 0


def cmd_default_config(args: argparse.Namespace) -> int:
    output = Path(args.output) if args.output is not None else None
    config = ConfigurationManager.generate_default_config(output)
    result: dict[str, Any] = {"config": config}
    if output is not None:
        result["path"] = str(output)
    _print_json(result)
    return 0


def cmd_validate_config(args: argparse.Namespace) -> int:
    if args.path is not None:
        yaml_text = Path(args.path).read_text(encoding="utf-8")
    else:
        if args.stdin:
            yaml_text = sys.stdin.read()
        else:
            yaml_text = args.yaml

    result = validate_config_yaml_text(yaml_text=yaml_text, schema_path=args.schema)
    if args.path is not None:
        result["path"] = args.path
    _print_json(result)
    if args.strict_exit_codes:
        return 0 if result.get("valid") else 1
    return 0


@log_exception
@robust_processing
def cmd_dedistort(args: argparse.Namespace) -> int:
    cfg = _load_config(args, _dedistort_overrides(args))
    resources = ResourceManager()
    resources.check_resources()
    with _progress(args, "dedistort") as broadcaster:
        engine = _engine(cfg, broadcaster)
        reference = FileBackedImage(Path(args.reference)).materialize()
        if args.consensus_reference:
            reference = reference.with_metadata(ConsensusReference())
        results = engine.dedistort_many(reference, _input_images(args.targets))
        outputs = _save_registered(results, Path(args.output_dir), "dedistorted")
        resources.check_resources()
    _print_json({"ok": True, "reference": args.reference, "outputs": outputs,
                 "resources": resources.get_resource_status()})
    return 0


@log_exception
@robust_processing
def cmd_consensus(args: argparse.Namespace) -> int:
    cfg = _load_config(args, ConfigurationManager._deep_update(
        _dedistort_overrides(args),
        _overrides("consensus", {"max_comparisons": args.max_comparisons, "seed": args.seed})
    ))
    resources = ResourceManager()
    resources.check_resources()
    with _progress(args, "consensus") as broadcaster:
        engine = _engine(cfg, broadcaster)
        results = ConsensusEngine(engine).dedistort_consensus(_input_images(args.inputs))
        outputs = _save_registered(results, Path(args.output_dir), "consensus")
        resources.check_resources()
    _print_json({"ok": True, "outputs": outputs, "resources": resources.get_resource_status()})
    return 0


@log_exception
@robust_processing
def cmd_stack(args: argparse.Namespace) -> int:
    cfg = _load_config(args, _overrides("stacking", {
        "tile_size": args.tile_size,
        "sampling": args.sampling,
        "select": args.select,
    }))
    with _progress(args, "stack") as broadcaster:
        stacker = Stacker(cfg, broadcaster=broadcaster)
        reference = FileBackedImage(Path(args.reference)) if args.reference is not None else None
        images = _input_images(args.inputs)
        result = stacker.stack(images, reference=reference, best_source=args.best_source)
        out = Path(args.output)
        out.parent.mkdir(parents=True, exist_ok=True)
        save_fits_image(result, out, header=_input_header(result))
    _print_json({"ok": True, "output": str(out), "count": len(images)})
    return 0


@log_exception
@robust_processing
def cmd_stack_dedistorted(args: argparse.Namespace) -> int:
    cfg = _load_config(args, _overrides("stacking", {"best": args.best, "local": args.local}))
    images = []
    for path in args.inputs:
        path = Path(path)
        image = FileBackedImage(path).materialize()
        images.append(image.with_metadata(read_maps(maps_path(path))))
    with _progress(args, "stack-dedistorted") as broadcaster:
        result = Stacker(cfg, broadcaster=broadcaster).stack_dedistorted(images)
        out = Path(args.output)
        out.parent.mkdir(parents=True, exist_ok=True)
        save_fits_image(result, out, header=_input_header(result))
    _print_json({"ok": True, "output": str(out), "count": len(images)})
    return 0


@log_exception
@robust_processing
def cmd_apply_maps(args: argparse.Namespace) -> int:
    if len(args.maps) != len(args.inputs):
        sys.stderr.write(f"apply-maps requires one maps file per input, got {len(args.maps)} for {len(args.inputs)}\n")
        return 2
    images = [FileBackedImage(Path(p)).materialize() for p in args.inputs]
    references = [image.with_metadata(read_maps(Path(m))) for image, m in zip(images, args.maps)]
    results = apply_distortion_maps(images, references)
    outputs = _save_registered(results, Path(args.output_dir), "applied")
    _print_json({"ok": True, "outputs": outputs})
    return 0


def _add_common(p: argparse.ArgumentParser) -> None:
    p.add_argument("--config", default=None, help="YAML configuration merged over the defaults")
    p.add_argument("--device", choices=["numpy", "cupy"], default=None,
                   help="Enable the device path with the given array backend")
    p.add_argument("--workers", type=int, default=None, help="Maximum worker threads")
    p.add_argument("--events", action="store_true", help="Emit phase and progress events as JSON lines")


def _add_dedistort_options(p: argparse.ArgumentParser) -> None:
    p.add_argument("--tile-size", type=int, default=None)
    p.add_argument("--sampling", type=float, default=None)
    p.add_argument("--threshold", type=float, default=None, help="Background signal threshold")
    p.add_argument("--iterations", type=int, default=None)
    p.add_argument("--sparse", action="store_true", default=None, help="Interest-point sampling")
    p.add_argument("--multiscale", action="store_true", default=None, help="Multiscale interest points")


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="tile-dedistort")
    p.add_argument("--log-level", default="WARNING", choices=["DEBUG", "INFO", "WARNING", "ERROR"])
    p.add_argument("--log-dir", default=None, help="Also write rotating log files to this directory")
    sub = p.add_subparsers(dest="command", required=True)

    p_schema = sub.add_parser("get-schema")
    p_schema.set_defaults(func=cmd_get_schema)

    p_default = sub.add_parser("default-config")
    p_default.add_argument("--output", default=None, help="Write the defaults as YAML to this path")
    p_default.set_defaults(func=cmd_default_config)

    p_validate = sub.add_parser("validate-config")
    src = p_validate.add_mutually_exclusive_group(required=True)
    src.add_argument("--path")
    src.add_argument("--yaml")
    src.add_argument("--stdin", action="store_true")
    p_validate.add_argument("--schema", default=None, help="Optional path to a JSON schema file")
    p_validate.add_argument(
        "--strict-exit-codes",
        action="store_true",
        help="Return exit code 1 when validation fails. Default: always 0 and rely on JSON result.",
    )
    p_validate.set_defaults(func=cmd_validate_config)

    p_dedistort = sub.add_parser("dedistort")
    p_dedistort.add_argument("reference")
    p_dedistort.add_argument("targets", nargs="+")
    p_dedistort.add_argument("--output-dir", required=True)
    p_dedistort.add_argument("--refine", action="store_true", default=None, help="Refine at smaller tile sizes")
    p_dedistort.add_argument("--consensus-reference", action="store_true",
                             help="Register the targets on their consensus geometry")
    _add_dedistort_options(p_dedistort)
    _add_common(p_dedistort)
    p_dedistort.set_defaults(func=cmd_dedistort)

    p_consensus = sub.add_parser("consensus")
    p_consensus.add_argument("inputs", nargs="+")
    p_consensus.add_argument("--output-dir", required=True)
    p_consensus.add_argument("--max-comparisons", type=int, default=None)
    p_consensus.add_argument("--seed", type=int, default=None)
    _add_dedistort_options(p_consensus)
    _add_common(p_consensus)
    p_consensus.set_defaults(func=cmd_consensus)

    p_stack = sub.add_parser("stack")
    p_stack.add_argument("inputs", nargs="+")
    p_stack.add_argument("--output", required=True)
    p_stack.add_argument("--tile-size", type=int, default=None)
    p_stack.add_argument("--sampling", type=float, default=None)
    p_stack.add_argument("--select", choices=[s.value for s in ReferenceSelection], default=None)
    p_stack.add_argument("--best-source", default=None, help="File name of the reference for --select manual")
    p_stack.add_argument("--reference", default=None, help="Explicit reference frame, enables per-pixel weights")
    _add_common(p_stack)
    p_stack.set_defaults(func=cmd_stack)

    p_stack_d = sub.add_parser("stack-dedistorted")
    p_stack_d.add_argument("inputs", nargs="+", help="Dedistorted frames with their .dmaps files alongside")
    p_stack_d.add_argument("--output", required=True)
    p_stack_d.add_argument("--best", type=float, default=None, help="Fraction of frames to keep")
    p_stack_d.add_argument("--local", action="store_true", default=None, help="Per-pixel weights")
    _add_common(p_stack_d)
    p_stack_d.set_defaults(func=cmd_stack_dedistorted)

    p_apply = sub.add_parser("apply-maps")
    p_apply.add_argument("inputs", nargs="+")
    p_apply.add_argument("--maps", nargs="+", required=True, help="One .dmaps file per input")
    p_apply.add_argument("--output-dir", required=True)
    p_apply.set_defaults(func=cmd_apply_maps)

    return p


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logging(getattr(logging, args.log_level), args.log_dir)
    try:
        return int(args.func(args))
    except ProcessingError as e:
        _print_json({"ok": False, "error": str(e)})
        return 2


if __name__ == "__main__":
    raise SystemExit(main())
