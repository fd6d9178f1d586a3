#!/usr/bin/env python
"""单算例入口脚本（中文注释版）。

用途：
- 按配置运行一次 PFDD 谱方法算例；
- 支持从命令行覆盖步长、总时间、并行方式与输出间隔；
- 运行结束后输出结构化 JSON 结果，便于自动化流程调用。

并行方式：
- serial：单 rank；
- threads：进程内 `--n-procs` 个逻辑 rank；
- torch_distributed：由 torchrun 启动，每个进程一个 rank。
"""

from __future__ import annotations

import argparse
import json
import logging
from pathlib import Path
import sys

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from pfdd_spectral import PFDDSimulator, load_config, run_in_process
from pfdd_spectral.comm import build_communicator
from pfdd_spectral.crystallography import apply_preset_defaults


def parse_args() -> argparse.Namespace:
    """定义并解析命令行参数。"""
    p = argparse.ArgumentParser(description="Run a phase-field dislocation dynamics spectral case.")
    p.add_argument("--config", default="configs/hcp_notch.yaml")
    p.add_argument("--dt", type=float, default=0.0, help="Timestep override.")
    p.add_argument("--total-time", type=float, default=0.0, help="Total simulated time override.")
    p.add_argument("--parallel", choices=["serial", "threads", "torch_distributed"], default="")
    p.add_argument("--n-procs", type=int, default=0, help="Logical ranks for --parallel threads.")
    p.add_argument("--integrator", choices=["gradient_descent", "stochastic", "langevin"], default="")
    p.add_argument("--stats-every", type=int, default=-1)
    p.add_argument("--dump-every", type=int, default=-1)
    p.add_argument("--device", choices=["auto", "cpu", "cuda"], default="")
    p.add_argument("--dtype", choices=["float32", "float64"], default="")
    p.add_argument(
        "--preset-defaults",
        action="store_true",
        help="Use the default grid and mobility of the selected crystal structure.",
    )
    p.add_argument("--no-clean-output", action="store_true")
    p.add_argument("--progress", action="store_true")
    p.add_argument("--progress-every", type=int, default=50)
    p.add_argument("--log-level", default="INFO")
    return p.parse_args()


def main() -> None:
    """脚本主流程：读取配置 -> 覆盖参数 -> 运行 -> 输出JSON。"""
    args = parse_args()
    logging.basicConfig(level=getattr(logging, str(args.log_level).upper(), logging.INFO), format="%(levelname)s %(name)s: %(message)s")

    # 1) 先从 YAML 读取基线配置。
    cfg = load_config(args.config)

    # 2) 依次应用命令行覆盖（CLI 优先级高于 YAML）。
    if args.preset_defaults:
        apply_preset_defaults(cfg)
    if args.dt > 0:
        cfg.numerics.dt = args.dt
    if args.total_time > 0:
        cfg.numerics.total_time = args.total_time
    if args.parallel:
        cfg.runtime.parallel = args.parallel
    if args.n_procs > 0:
        cfg.domain.n_procs = args.n_procs
    if args.integrator:
        cfg.numerics.integrator = args.integrator
    if args.stats_every >= 0:
        cfg.runtime.stats_every = args.stats_every
    if args.dump_every >= 0:
        cfg.runtime.dump_every = args.dump_every
    if args.device:
        cfg.runtime.device = args.device
    if args.dtype:
        cfg.numerics.dtype = args.dtype
    if args.no_clean_output:
        cfg.runtime.clean_output = False

    # 3) 构建求解器并运行。
    def run(sim: PFDDSimulator):
        outputs = sim.run(
            progress=args.progress,
            progress_every=max(1, args.progress_every),
            progress_prefix=cfg.runtime.case_name,
        )
        return sim, outputs

    if str(cfg.runtime.parallel).strip().lower() == "threads":
        sim, outputs = run_in_process(cfg, cfg.domain.n_procs, run)[0]
    else:
        sim, outputs = run(PFDDSimulator(cfg, comm=build_communicator(cfg.runtime.parallel)))
    if sim.rank != 0:
        return

    # 4) 统一输出关键元数据，方便后处理脚本直接消费。
    state = sim.integrator.state
    print(
        json.dumps(
            {
                "case": cfg.runtime.case_name,
                "crystal_structure": cfg.material.crystal_structure,
                "slip_systems": [s.name for s in sim.slip_systems.systems],
                "grid": [sim.geometry.nx, sim.geometry.ny, sim.geometry.nz],
                "ranks": sim.comm.size,
                "integrator": sim.integrator.scheme,
                "dt": state.dt,
                "time": state.time,
                "n_steps": state.step,
                "output_dir": str(outputs["output_dir"]),
                "history_csv": str(outputs["history_csv"]),
                "snapshots_dir": str(outputs["snapshots_dir"]),
                "wall_time_s": float(outputs.get("wall_time_s", 0.0)),
                "device": str(sim.device),
            },
            ensure_ascii=False,
            indent=2,
        )
    )


if __name__ == "__main__":
    main()
