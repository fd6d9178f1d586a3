"""基础烟测（中文注释版）。"""

from __future__ import annotations

from pathlib import Path

import pytest
import torch
import torch.distributed as dist
import torch.multiprocessing as mp

from pfdd_spectral import PFDDSimulator, load_config, run_in_process
from pfdd_spectral.comm import TorchDistCommunicator
from pfdd_spectral.io_utils import load_snapshot_npz

CONFIGS = Path(__file__).resolve().parents[1] / "configs"


def _small_cfg(tmp_path: Path, case: str = "smoke_case"):
    cfg = load_config(CONFIGS / "hcp_notch.yaml")
    cfg.domain.nx, cfg.domain.ny, cfg.domain.nz = 8, 6, 4
    cfg.domain.notch_length = 3
    cfg.numerics.dt = 0.5
    cfg.numerics.total_time = 2.0
    cfg.runtime.output_dir = str(tmp_path)
    cfg.runtime.case_name = case
    cfg.runtime.stats_every = 2
    cfg.runtime.dump_every = 2
    return cfg


def test_smoke_run(tmp_path: Path) -> None:
    """验证最小步数算例可跑通，并写出历史表与快照。"""
    cfg = _small_cfg(tmp_path)
    sim = PFDDSimulator(cfg)
    out = sim.run()
    assert Path(out["history_csv"]).exists()
    assert len(sim.history) == 4
    assert sim.terminated
    assert [row["step"] for row in sim.history] == [1, 2, 3, 4]
    assert sim.history[-1]["time"] == 2.0

    snaps = sorted(Path(out["snapshots_dir"]).glob("snapshot_*.npz"))
    assert [p.name for p in snaps] == ["snapshot_000002_r000.npz", "snapshot_000004_r000.npz"]
    snap = load_snapshot_npz(snaps[-1])
    assert snap["xi"].shape == (3, 8, 6, 4)
    assert snap["slab_start"] == 0 and snap["slab_extent"] == 8
    assert torch.allclose(torch.from_numpy(snap["xi"]), sim.engine.order_parameter_field())

    txt = Path(out["history_csv"]).read_text(encoding="utf-8").splitlines()
    assert txt[0].startswith("step,time,avg_xi,max_abs_xi,sxx")
    assert len(txt) == 5


def test_notch_relaxes_under_gradient_descent(tmp_path: Path) -> None:
    cfg = _small_cfg(tmp_path)
    cfg.runtime.dump_every = 0
    cfg.runtime.stats_every = 0
    sim = PFDDSimulator(cfg)
    before = float(sim.engine.order_parameter_field().abs().max())
    sim.run()
    after = sim.history[-1]["max_abs_xi"]
    assert before == 1.0
    assert 0.0 < after < before


def test_stats_hooks_are_fixed_format_and_idempotent(tmp_path: Path) -> None:
    sim = PFDDSimulator(_small_cfg(tmp_path))
    header = sim.stats_header()
    assert header.startswith(" %10s %10s" % ("Time", "Step"))
    assert header.split()[2:] == list(sim.diagnostic.columns)
    sim.step()
    line = sim.stats()
    assert line == sim.stats()
    fields = line.split()
    assert float(fields[0]) == 0.5
    assert int(fields[1]) == 1
    assert len(fields) == 2 + len(sim.diagnostic.columns)


def test_stats_are_printed_during_run(tmp_path: Path, capsys) -> None:
    cfg = _small_cfg(tmp_path)
    PFDDSimulator(cfg).run(progress=True, progress_every=2)
    out = capsys.readouterr().out.splitlines()
    assert out[0].split()[:2] == ["Time", "Step"]
    assert any(line.startswith("[smoke_case]") for line in out)


def test_threaded_run_matches_serial_run(tmp_path: Path) -> None:
    cfg = _small_cfg(tmp_path)
    cfg.runtime.dump_every = 0
    cfg.runtime.stats_every = 0
    serial = PFDDSimulator(cfg)
    serial.run()

    cfg.runtime.case_name = "smoke_threads"

    def work(sim: PFDDSimulator):
        out = sim.run()
        return sim.engine.order_parameter_field(), out["history_csv"], sim.history

    parts = run_in_process(cfg, 3, work)
    field = torch.cat([p[0] for p in parts], dim=1)
    assert torch.allclose(field, serial.engine.order_parameter_field(), atol=1e-12)
    assert parts[0][1] is not None and Path(parts[0][1]).exists()
    assert parts[1][1] is None
    assert parts[1][2][-1]["max_abs_xi"] == parts[0][2][-1]["max_abs_xi"]
    assert abs(parts[0][2][-1]["sxz"] - serial.history[-1]["sxz"]) < 1e-12


def test_random_initial_field_is_decomposition_independent(tmp_path: Path) -> None:
    cfg = load_config(CONFIGS / "sc_single_slip_langevin.yaml")
    cfg.domain.nx, cfg.domain.ny, cfg.domain.nz = 6, 4, 4
    cfg.runtime.output_dir = str(tmp_path)
    serial = PFDDSimulator(cfg).engine.order_parameter_field()
    parts = run_in_process(cfg, 2, lambda sim: sim.engine.order_parameter_field())
    assert torch.equal(torch.cat(parts, dim=1), serial)


def _gloo_rank(rank: int, world: int, store: str, cfg, out_dir: str) -> None:
    """torch.multiprocessing 子进程：一个 gloo rank 跑完整算例并保存本 slab 的 ξ。"""
    dist.init_process_group("gloo", init_method=f"file://{store}", rank=rank, world_size=world)
    try:
        sim = PFDDSimulator(cfg, comm=TorchDistCommunicator())
        sim.run()
        torch.save(
            {"xi": sim.engine.order_parameter_field(), "history": sim.history},
            Path(out_dir) / f"xi_r{rank}.pt",
        )
    finally:
        dist.destroy_process_group()


@pytest.mark.skipif(not dist.is_available(), reason="torch.distributed unavailable")
def test_gloo_ranks_match_serial_run(tmp_path: Path) -> None:
    """多进程 gloo 后端：转置、归约与对象收集路径与单 rank 结果一致。"""
    cfg = _small_cfg(tmp_path, case="smoke_gloo")
    cfg.runtime.dump_every = 0
    cfg.runtime.stats_every = 0
    serial = PFDDSimulator(cfg)
    serial.run()

    world = 3
    mp.spawn(_gloo_rank, args=(world, str(tmp_path / "gloo_store"), cfg, str(tmp_path)), nprocs=world, join=True)

    parts = [torch.load(tmp_path / f"xi_r{r}.pt") for r in range(world)]
    field = torch.cat([p["xi"] for p in parts], dim=1)
    assert torch.allclose(field, serial.engine.order_parameter_field(), atol=1e-12)
    for p in parts:
        assert p["history"][-1]["max_abs_xi"] == pytest.approx(serial.history[-1]["max_abs_xi"], abs=1e-12)
        assert p["history"][-1]["sxz"] == pytest.approx(serial.history[-1]["sxz"], abs=1e-12)


def test_initial_stats_reflect_initial_field(tmp_path: Path) -> None:
    """构造后即完成一次求解：缺口初值的平均剪应力 σ_xz = −2μ·M_xz·⟨ξ⟩。"""
    cfg = _small_cfg(tmp_path)
    cfg.material.applied_strain = [0.0] * 6
    sim = PFDDSimulator(cfg)
    mean_xi = 3 * 6 / (8 * 6 * 4)
    avg = sim.diagnostic.compute()
    assert avg["sxz"] == pytest.approx(-cfg.material.mu * mean_xi, abs=1e-12)
    assert avg["exz"] == pytest.approx(0.0, abs=1e-12)
    fields = sim.stats().split()
    assert int(fields[1]) == 0
    assert float(fields[2 + sim.diagnostic.columns.index("sxz")]) == pytest.approx(-mean_xi, rel=1e-5)
