"""PFDD 主求解器模块（中文注释版）。

本模块负责把各组件串联为完整算例：
1. 配置审计（存在 error 时记录一次日志并拒绝启动）；
2. 晶格分解、滑移系投影、谱引擎、初值、时间推进器与诊断的构造；
3. 主循环：`engine.solve()` -> `integrator.step()`，直到步数预算耗尽；
4. 历史量记录、固定格式统计输出与快照。
"""

from __future__ import annotations

from dataclasses import dataclass, field
import logging
import time
from pathlib import Path
from typing import Any, Callable, Dict, List

import torch

from .comm import Communicator, InProcessGroup, SerialCommunicator
from .config import ConfigurationError, SimulationConfig
from .crystallography import build_slip_systems
from .diagnostics import StrainDiagnostic
from .engine import SpectralFieldEngine
from .geometry import initial_order_parameter
from .integrator import TimeIntegrator
from .io_utils import ensure_dir, save_history_csv, save_snapshot_npz
from .lattice import LatticeDecomposition, build_geometry
from .validation import audit_config, raise_on_errors

logger = logging.getLogger(__name__)


def _torch_dtype(name: str) -> torch.dtype:
    """字符串 dtype 映射到 torch dtype。"""
    if name == "float64":
        return torch.float64
    return torch.float32


def _pick_device(mode: str) -> torch.device:
    """解析设备选择策略。"""
    if mode == "cpu":
        return torch.device("cpu")
    return torch.device("cuda" if torch.cuda.is_available() else "cpu")


def _fmt_wall_time(seconds: float) -> str:
    """将秒数格式化为 `MM:SS.xx` 或 `HH:MM:SS.xx`。"""
    s = max(float(seconds), 0.0)
    h = int(s // 3600.0)
    m = int((s % 3600.0) // 60.0)
    sec = s - 3600.0 * h - 60.0 * m
    if h > 0:
        return f"{h:02d}:{m:02d}:{sec:05.2f}"
    return f"{m:02d}:{sec:05.2f}"


@dataclass
class StepDiagnostics:
    """单步诊断量（全局）。"""
    step: int
    time: float
    avg_xi: float
    max_abs_xi: float
    averages: Dict[str, float] = field(default_factory=dict)

    def to_row(self) -> Dict[str, float]:
        row = {"step": self.step, "time": self.time, "avg_xi": self.avg_xi, "max_abs_xi": self.max_abs_xi}
        row.update(self.averages)
        return row


class PFDDSimulator:
    """单个 rank 上的完整算例。"""

    def __init__(self, cfg: SimulationConfig, comm: Communicator | None = None):
        self.cfg = cfg
        self.comm = comm if comm is not None else SerialCommunicator()
        self.rank = self.comm.rank
        try:
            raise_on_errors(audit_config(cfg))
            self._build()
        except ConfigurationError as exc:
            if self.rank == 0:
                logger.error("fatal configuration error: %s", exc)
            raise

    def _build(self) -> None:
        cfg = self.cfg
        self.device = _pick_device(cfg.runtime.device)
        self.dtype = _torch_dtype(cfg.numerics.dtype)
        self.geometry = build_geometry(cfg.domain)
        self.decomposition = LatticeDecomposition(self.geometry, self.comm.size, self.rank)
        self.slip_systems = build_slip_systems(cfg.material, self.geometry.spacing)
        self.engine = SpectralFieldEngine(
            self.decomposition,
            self.slip_systems,
            cfg.material,
            self.comm,
            device=self.device,
            dtype=self.dtype,
        )
        self.engine.assign_order_parameter(
            initial_order_parameter(
                cfg.domain,
                self.engine.n_slip,
                self.decomposition.slab,
                seed=cfg.numerics.seed,
                device=self.device,
                dtype=self.dtype,
            )
        )
        self.integrator = TimeIntegrator(self.engine, cfg.numerics, cfg.material, rank=self.rank)
        self.diagnostic = StrainDiagnostic(self.engine)
        self.history: List[Dict[str, float]] = []
        # 初始应力/应变与初值一致，使第 0 步的统计输出反映真实状态。
        self.engine.solve()
        if self.rank == 0:
            logger.info(
                "grid=%dx%dx%d style=%s ranks=%d slip=%s budget=%d steps",
                self.geometry.nx,
                self.geometry.ny,
                self.geometry.nz,
                self.geometry.style,
                self.comm.size,
                [s.name for s in self.slip_systems.systems],
                self.integrator.state.budget,
            )

    @property
    def terminated(self) -> bool:
        return self.integrator.terminated

    def _order_parameter_summary(self) -> tuple[float, float]:
        """全局平均 Re ξ 与全局最大 |ξ|（集合操作）。"""
        xi = self.engine.order_parameter_view()
        local_sum = xi.real.sum().reshape(1).cpu()
        local_max = float(xi.abs().max()) if xi.numel() else 0.0
        total = self.comm.all_reduce_sum(local_sum)
        n = xi.shape[0] * self.geometry.nx * self.geometry.ny * self.geometry.nz
        gmax = max(self.comm.all_gather_object(local_max))
        return float(total[0]) / max(n, 1), float(gmax)

    def step(self) -> StepDiagnostics:
        """执行一步：先求应力，再推进序参量。"""
        self.engine.solve()
        st = self.integrator.step()
        avg_xi, max_xi = self._order_parameter_summary()
        return StepDiagnostics(
            step=st.step,
            time=st.time,
            avg_xi=avg_xi,
            max_abs_xi=max_xi,
            averages=self.diagnostic.compute(),
        )

    def stats_header(self) -> str:
        return " %10s %10s" % ("Time", "Step") + self.diagnostic.stats_header()

    def stats(self) -> str:
        """当前状态的一行统计（集合操作，所有 rank 需同时调用）。"""
        st = self.integrator.state
        return " %10g %10d" % (st.time, st.step) + self.diagnostic.stats()

    def snapshot_meta(self) -> Dict[str, Any]:
        slab = self.decomposition.slab
        return {
            "rank": self.rank,
            "slab_start": slab.start,
            "slab_extent": slab.extent,
            "nx": self.geometry.nx,
            "ny": self.geometry.ny,
            "nz": self.geometry.nz,
            "n_slip": self.engine.n_slip,
            "nbasis": self.geometry.nbasis,
            "step": self.integrator.state.step,
            "time": self.integrator.state.time,
        }

    def run(
        self,
        progress: bool = False,
        progress_every: int = 50,
        progress_prefix: str = "pfdd",
    ) -> Dict[str, Path | float | None]:
        """执行完整算例并按配置输出统计、快照与历史表。"""
        t0_wall = time.perf_counter()
        rt = self.cfg.runtime
        out_dir = Path(rt.output_dir) / rt.case_name
        snap_dir = out_dir / "snapshots"
        if self.rank == 0:
            ensure_dir(snap_dir)
            if rt.clean_output:
                # 开启 clean_output 时先清理旧结果，再写入新结果。
                for p in snap_dir.glob("snapshot_*.npz"):
                    p.unlink(missing_ok=True)
                (out_dir / "history.csv").unlink(missing_ok=True)
        self.comm.barrier()

        stats_every = int(rt.stats_every)
        dump_every = int(rt.dump_every)
        budget = self.integrator.state.budget
        if stats_every > 0:
            line = self.stats()
            if self.rank == 0:
                print(self.stats_header())
                print(line)

        while not self.terminated:
            diag = self.step()
            self.history.append(diag.to_row())
            i = diag.step
            if stats_every > 0 and (i % stats_every == 0 or i == budget):
                line = self.stats()
                if self.rank == 0:
                    print(line)
            if progress and self.rank == 0 and (i == 1 or i % max(1, progress_every) == 0 or i == budget):
                frac = i / max(budget, 1)
                bar_n = 28
                fill = int(bar_n * frac)
                bar = "#" * fill + "-" * (bar_n - fill)
                wall_elapsed_s = time.perf_counter() - t0_wall
                wall_eta_s = wall_elapsed_s * (1.0 - frac) / max(frac, 1e-12)
                print(
                    f"[{progress_prefix}] [{bar}] {frac*100:6.2f}% "
                    f"t={diag.time:.4f}/{budget * self.integrator.state.dt:.4f} dt={self.integrator.state.dt:.2e} "
                    f"wall={_fmt_wall_time(wall_elapsed_s)} eta_wall={_fmt_wall_time(wall_eta_s)} "
                    f"xi_avg={diag.avg_xi:.6f} xi_max={diag.max_abs_xi:.6f}"
                )
            if dump_every > 0 and (i % dump_every == 0 or i == budget):
                save_snapshot_npz(snap_dir, i, self.engine.raw_buffers(), self.snapshot_meta())

        hist = save_history_csv(out_dir, self.history) if self.rank == 0 else None
        self.comm.barrier()
        return {
            "output_dir": out_dir,
            "history_csv": hist,
            "snapshots_dir": snap_dir,
            "n_steps": float(self.integrator.state.step),
            "wall_time_s": time.perf_counter() - t0_wall,
        }


def run_in_process(
    cfg: SimulationConfig,
    n_ranks: int | None = None,
    fn: Callable[[PFDDSimulator], Any] | None = None,
) -> List[Any]:
    """在同一进程内以 `n_ranks` 个逻辑 rank 运行算例。

    每个 rank 构造一个 PFDDSimulator 并执行 `fn(sim)`（默认 `sim.run()`），
    按 rank 顺序返回结果。
    """
    n = int(n_ranks if n_ranks is not None else cfg.domain.n_procs)
    group = InProcessGroup(n)

    def target(comm: Communicator) -> Any:
        sim = PFDDSimulator(cfg, comm=comm)
        return fn(sim) if fn is not None else sim.run()

    return group.run(target)
