"""配置读取与审计模块测试。"""

from __future__ import annotations

import logging
from pathlib import Path

import pytest

from pfdd_spectral import ConfigurationError, PFDDSimulator, audit_config, load_config, save_audit_report
from pfdd_spectral.validation import raise_on_errors, summarize_audit_report

CONFIGS = Path(__file__).resolve().parents[1] / "configs"


@pytest.mark.parametrize("name", ["hcp_notch.yaml", "fcc_loop.yaml", "sc_single_slip_langevin.yaml"])
def test_shipped_configs_have_no_errors(name: str) -> None:
    """随仓库提供的算例配置应通过审计（允许 warning）。"""
    rep = audit_config(load_config(CONFIGS / name), config_path=str(CONFIGS / name))
    assert rep.error_count == 0
    assert rep.passed is True
    assert "CONFIG_AUDIT_PASSED" in rep.codes("info")


def test_yaml_overrides_defaults_and_ignores_unknown_keys(tmp_path: Path) -> None:
    p = tmp_path / "case.yaml"
    p.write_text(
        "domain:\n  nx: 12\n  legacy_key: 3\nmaterial:\n  lambda: 2.5\n  mu: 0.8\nnumerics:\n  dt: 0.25\n",
        encoding="utf-8",
    )
    cfg = load_config(p)
    assert cfg.domain.nx == 12
    assert cfg.domain.ny == 32
    assert cfg.material.lambda_ == 2.5
    assert cfg.material.mu == 0.8
    assert cfg.numerics.dt == 0.25
    assert not hasattr(cfg.domain, "legacy_key")


def test_default_config_without_path() -> None:
    cfg = load_config(None)
    assert cfg.material.crystal_structure == "hcp_basal"
    assert audit_config(cfg).passed


def test_oversubscribed_decomposition_is_error() -> None:
    cfg = load_config(None)
    cfg.domain.nx = 4
    cfg.domain.n_procs = 5
    rep = audit_config(cfg)
    assert "DECOMP_OVERSUBSCRIBED" in rep.codes("error")


def test_degenerate_grid_is_error() -> None:
    cfg = load_config(None)
    cfg.domain.nz = 0
    assert "DOMAIN_GRID_INVALID" in audit_config(cfg).codes("error")


def test_unknown_structure_and_slip_count_are_errors() -> None:
    cfg = load_config(None)
    cfg.material.crystal_structure = "orthorhombic"
    assert "CRYSTAL_STRUCTURE_UNSUPPORTED" in audit_config(cfg).codes("error")
    cfg = load_config(None)
    cfg.material.n_slip_systems = 5
    assert "SLIP_COUNT_INVALID" in audit_config(cfg).codes("error")


def test_non_orthonormal_custom_slip_system_is_error() -> None:
    cfg = load_config(None)
    cfg.material.crystal_structure = "custom"
    cfg.material.slip_systems = [{"normal": [1.0, 0.0, 0.0], "burgers": [1.0, 1.0, 0.0]}]
    rep = audit_config(cfg)
    assert "CP_SLIP_SYSTEM_NOT_ORTHONORMAL" in rep.codes("error")


def test_numerics_checks() -> None:
    cfg = load_config(None)
    cfg.numerics.integrator = "leapfrog"
    assert "INTEGRATOR_UNKNOWN" in audit_config(cfg).codes("error")

    cfg = load_config(None)
    cfg.numerics.dt = 0.0
    assert "NUMERICS_DT_INVALID" in audit_config(cfg).codes("error")

    cfg = load_config(None)
    cfg.numerics.total_time = 0.5
    cfg.numerics.dt = 1.0
    rep = audit_config(cfg)
    assert "STOP_TIME_SHORTER_THAN_DT" in rep.codes("warning")
    assert rep.passed


def test_large_timestep_only_warns() -> None:
    cfg = load_config(None)
    cfg.numerics.dt = 100.0
    cfg.numerics.total_time = 1000.0
    rep = audit_config(cfg)
    assert "NUM_EXPLICIT_STABILITY_RISK" in rep.codes("warning")
    assert rep.passed


def test_elastic_constants_checked() -> None:
    cfg = load_config(None)
    cfg.material.mu = -1.0
    assert "ELASTIC_CONSTANTS_INVALID" in audit_config(cfg).codes("error")


def test_raise_on_errors_collects_codes() -> None:
    cfg = load_config(None)
    cfg.domain.lattice_style = "hex"
    cfg.numerics.integrator = "leapfrog"
    rep = audit_config(cfg)
    with pytest.raises(ConfigurationError) as exc:
        raise_on_errors(rep)
    assert "LATTICE_STYLE_UNSUPPORTED" in str(exc.value)
    assert "INTEGRATOR_UNKNOWN" in str(exc.value)
    assert summarize_audit_report(rep).startswith("[FAIL]")


def test_simulator_rejects_bad_config_with_one_log_record(caplog: pytest.LogCaptureFixture) -> None:
    cfg = load_config(None)
    cfg.domain.nx = 4
    cfg.numerics.integrator = "leapfrog"
    with caplog.at_level(logging.ERROR, logger="pfdd_spectral"):
        with pytest.raises(ConfigurationError):
            PFDDSimulator(cfg)
    errors = [r for r in caplog.records if r.levelno >= logging.ERROR]
    assert len(errors) == 1
    assert "INTEGRATOR_UNKNOWN" in errors[0].getMessage()


def test_save_audit_report_roundtrip(tmp_path: Path) -> None:
    """审计报告应可写出为 JSON。"""
    cfg = load_config(CONFIGS / "hcp_notch.yaml")
    rep = audit_config(cfg, config_path="configs/hcp_notch.yaml")
    out = save_audit_report(rep, tmp_path / "cfg_audit.json")
    assert out.exists()
    txt = out.read_text(encoding="utf-8")
    assert "config_path" in txt
    assert "counts" in txt
