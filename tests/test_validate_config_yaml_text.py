import yaml

from dedistort_backend.configuration import validate_config_yaml_text


def _base_cfg() -> dict:
    return {
        "dedistort": {
            "tile_size": 64,
            "sampling": 0.5,
            "threshold": None,
            "iterations": 2,
            "refine": True,
            "sparse": True,
            "multiscale": True,
            "rejection_percentile": 0.5,
            "neighbors_k": 12,
            "tile_weighting": False,
            "convergence_threshold": 0.01,
        },
        "filter": {"search_radius": 3, "half_window": 2, "mad_threshold": 3.0, "sigma": 1.0},
        "consensus": {"max_comparisons": 30, "seed": 42},
        "stacking": {"tile_size": 32, "sampling": 0.5, "select": "sharpness", "best": 0.5, "local": True},
        "device": {"enabled": False, "backend": "numpy", "min_tiles": 100},
        "parallel": {"max_workers": 4},
    }


def _validate(cfg: dict) -> dict:
    yaml_text = yaml.safe_dump(cfg, sort_keys=False)
    return validate_config_yaml_text(yaml_text=yaml_text)


def _codes(result: dict) -> set[str]:
    return {e.get("code") for e in result.get("errors", [])}


def _warning_codes(result: dict) -> set[str]:
    return {w.get("code") for w in result.get("warnings", [])}


def test_valid_config_is_valid() -> None:
    res = _validate(_base_cfg())
    assert res["valid"] is True
    assert res["errors"] == []
    assert res["warnings"] == []


def test_empty_document_is_valid() -> None:
    res = validate_config_yaml_text(yaml_text="")
    assert res["valid"] is True


def test_stacking_tile_size_not_power_of_two() -> None:
    cfg = _base_cfg()
    cfg["stacking"]["tile_size"] = 48
    res = _validate(cfg)
    assert res["valid"] is False
    assert "stacking_tile_size_not_power_of_two" in _codes(res)


def test_dedistort_tile_size_too_small() -> None:
    cfg = _base_cfg()
    cfg["dedistort"]["tile_size"] = 8
    res = _validate(cfg)
    assert res["valid"] is False
    assert "schema_validation_error" in _codes(res)
    assert res["errors"][0]["path"] == "$.dedistort.tile_size"


def test_unknown_reference_selection() -> None:
    cfg = _base_cfg()
    cfg["stacking"]["select"] = "brightest"
    res = _validate(cfg)
    assert res["valid"] is False
    assert "schema_validation_error" in _codes(res)


def test_unknown_section_is_invalid() -> None:
    cfg = _base_cfg()
    cfg["registration"] = {"engine": "siril"}
    res = _validate(cfg)
    assert res["valid"] is False
    assert "schema_validation_error" in _codes(res)


def test_best_fraction_out_of_range() -> None:
    cfg = _base_cfg()
    cfg["stacking"]["best"] = 1.5
    res = _validate(cfg)
    assert res["valid"] is False


def test_multiscale_without_sparse_warns() -> None:
    cfg = _base_cfg()
    cfg["dedistort"]["sparse"] = False
    res = _validate(cfg)
    assert res["valid"] is True
    assert "multiscale_without_sparse" in _warning_codes(res)


def test_full_rejection_warns() -> None:
    cfg = _base_cfg()
    cfg["dedistort"]["rejection_percentile"] = 1.0
    res = _validate(cfg)
    assert res["valid"] is True
    assert "rejection_discards_all" in _warning_codes(res)


def test_yaml_parse_error() -> None:
    res = validate_config_yaml_text(yaml_text="dedistort: [unclosed")
    assert res["valid"] is False
    assert "yaml_parse_error" in _codes(res)


def test_root_must_be_mapping() -> None:
    res = validate_config_yaml_text(yaml_text="- 1\n- 2\n")
    assert res["valid"] is False
    assert "config_not_object" in _codes(res)
