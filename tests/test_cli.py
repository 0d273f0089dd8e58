import json

import numpy as np
import yaml
from astropy.io import fits
from scipy import ndimage

from dedistort_cli import build_parser, cmd_stack, main, maps_path, read_maps
from dedistort_runner.fits_utils import write_fits_float


def _texture(shape=(128, 128), sigma=2.5):
    noise = np.random.normal(0, 1, shape)
    tex = ndimage.gaussian_filter(noise, sigma, mode="wrap")
    return (tex / tex.std() * 20 + 100).astype(np.float32)


def _write_frames(directory, shifts):
    np.random.seed(42)
    base = _texture()
    paths = []
    for i, (sx, sy) in enumerate(shifts):
        path = directory / f"frame_{i:02d}.fits"
        write_fits_float(path, ndimage.shift(base, (sy, sx), order=3, mode="wrap"))
        paths.append(path)
    return paths


def _run(capsys, argv):
    code = main(argv)
    return code, json.loads(capsys.readouterr().out)


class TestParser:
    def test_stack_arguments(self):
        args = build_parser().parse_args(["stack", "a.fits", "b.fits", "--output", "out.fits", "--select", "first"])
        assert args.func is cmd_stack
        assert args.inputs == ["a.fits", "b.fits"]
        assert args.select == "first"
        assert args.tile_size is None

    def test_log_level_default(self):
        args = build_parser().parse_args(["get-schema"])
        assert args.log_level == "WARNING"


class TestConfigCommands:
    def test_get_schema(self, capsys):
        code, schema = _run(capsys, ["get-schema"])
        assert code == 0
        assert "dedistort" in schema["properties"]

    def test_default_config_written_as_yaml(self, tmp_path, capsys):
        out = tmp_path / "config.yaml"

        code, result = _run(capsys, ["default-config", "--output", str(out)])

        assert code == 0
        assert result["path"] == str(out)
        assert yaml.safe_load(out.read_text())["stacking"]["select"] == "sharpness"

    def test_validate_yaml_text(self, capsys):
        code, result = _run(capsys, ["validate-config", "--yaml", "stacking: {tile_size: 24}"])
        assert code == 0
        assert result["valid"] is False
        assert result["errors"][0]["code"] == "stacking_tile_size_not_power_of_two"

    def test_strict_exit_codes(self, capsys):
        code, _ = _run(capsys, ["validate-config", "--yaml", "dedistort: {tile_size: 8}", "--strict-exit-codes"])
        assert code == 1

    def test_validate_file(self, tmp_path, capsys):
        path = tmp_path / "cfg.yaml"
        path.write_text("dedistort:\n  tile_size: 64\n  iterations: 2\n")
        code, result = _run(capsys, ["validate-config", "--path", str(path)])
        assert code == 0
        assert result["valid"] is True
        assert result["path"] == str(path)


class TestProcessingCommands:
    def test_dedistort_then_stack(self, tmp_path, capsys):
        inputs = tmp_path / "in"
        inputs.mkdir()
        reference, *targets = _write_frames(inputs, [(0.0, 0.0), (1.0, 0.0), (0.0, -1.0)])
        out_dir = tmp_path / "out"

        code, result = _run(capsys, [
            "dedistort", str(reference), *map(str, targets),
            "--output-dir", str(out_dir), "--tile-size", "32", "--workers", "2",
        ])

        assert code == 0
        assert result["ok"] is True
        assert [o["input"] for o in result["outputs"]] == ["frame_01.fits", "frame_02.fits"]
        registered = [out_dir / "frame_01_dedistorted.fits", out_dir / "frame_02_dedistorted.fits"]
        for path in registered:
            assert path.exists()
            assert len(read_maps(maps_path(path))) >= 1
        assert "memory_total_gb" in result["resources"]

        stacked = tmp_path / "stacked.fits"
        code, result = _run(capsys, ["stack-dedistorted", *map(str, registered), "--output", str(stacked)])

        assert code == 0
        assert result["count"] == 2
        assert fits.getdata(str(stacked)).shape == (128, 128)

    def test_apply_maps(self, tmp_path, capsys):
        reference, target = _write_frames(tmp_path, [(0.0, 0.0), (2.0, 0.0)])
        _run(capsys, ["dedistort", str(reference), str(target), "--output-dir", str(tmp_path / "reg")])
        maps_file = maps_path(tmp_path / "reg" / "frame_01_dedistorted.fits")

        code, result = _run(capsys, [
            "apply-maps", str(target), "--maps", str(maps_file), "--output-dir", str(tmp_path / "applied")
        ])

        assert code == 0
        applied = fits.getdata(result["outputs"][0]["output"])
        registered = fits.getdata(str(tmp_path / "reg" / "frame_01_dedistorted.fits"))
        assert np.allclose(applied, registered, atol=1e-3)

    def test_apply_maps_count_mismatch(self, tmp_path, capsys):
        (frame,) = _write_frames(tmp_path, [(0.0, 0.0)])
        code = main(["apply-maps", str(frame), "--maps", "a.dmaps", "b.dmaps", "--output-dir", str(tmp_path)])
        assert code == 2

    def test_stack_directory(self, tmp_path, capsys):
        _write_frames(tmp_path, [(0.0, 0.0), (1.0, 0.0), (0.0, 1.0)])
        out = tmp_path / "result" / "stack.fits"

        code, result = _run(capsys, ["stack", str(tmp_path), "--output", str(out), "--select", "first"])

        assert code == 0
        assert result["count"] == 3
        assert out.exists()

    def test_consensus(self, tmp_path, capsys):
        paths = _write_frames(tmp_path, [(0.0, 0.0), (1.0, 0.0), (0.0, 1.0)])

        code, result = _run(capsys, [
            "consensus", *map(str, paths), "--output-dir", str(tmp_path / "out"), "--iterations", "1",
        ])

        assert code == 0
        assert len(result["outputs"]) == 3
        assert all(o["map_count"] == 1 for o in result["outputs"])

    def test_precondition_failure_is_reported(self, tmp_path, capsys):
        paths = _write_frames(tmp_path, [(0.0, 0.0), (1.0, 0.0)])

        code, result = _run(capsys, ["stack", *map(str, paths), "--output", str(tmp_path / "s.fits"), "--tile-size", "24"])

        assert code == 2
        assert result["ok"] is False
        assert "power of two" in result["error"]

    def test_events_are_json_lines(self, tmp_path, capsys):
        reference, target = _write_frames(tmp_path, [(0.0, 0.0), (1.0, 0.0)])

        code = main(["dedistort", str(reference), str(target), "--output-dir", str(tmp_path / "out"), "--events"])

        lines = capsys.readouterr().out.splitlines()
        assert code == 0
        first = json.loads(lines[0])
        assert first["type"] == "phase_start"
        assert first["phase_name"] == "dedistort"
        events = [json.loads(line) for line in lines if line.startswith('{"')]
        assert any(e["type"] == "progress" for e in events)
        assert any(e["type"] == "phase_end" and e["status"] == "ok" for e in events)
