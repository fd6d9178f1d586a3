"""初始序参量构造模块（中文注释版）。

支持的初值：
- zero：全零；
- loop：在 z=k0 层内半径为 R 的圆盘上 ξ=amp（单个位错环）；
- notch：在 z=k0 层内 x < notch_length 的半平面上 ξ=amp（贯穿缺口位错）；
- random：[0, amp) 均匀随机实部。

所有初值都先在全局网格上定义再按 slab 截取，因此与分解方式无关。
"""

from __future__ import annotations

import torch

from .config import ConfigurationError, DomainConfig
from .lattice import ProcessSlab

INITIAL_CONDITIONS = ("zero", "loop", "notch", "random")


def _plane_k(domain: DomainConfig) -> int:
    k0 = int(domain.initial_plane_k)
    if k0 < 0:
        k0 = int(domain.nz) // 2
    if k0 >= int(domain.nz):
        raise ConfigurationError(f"initial_plane_k={k0} outside [0, {domain.nz}).")
    return k0


def loop_mask(domain: DomainConfig, slab: ProcessSlab) -> torch.Tensor:
    """本 slab 上位错环区域的 `[lnx, ny]` 掩码。"""
    ci = float(domain.loop_center_i) if float(domain.loop_center_i) >= 0.0 else 0.5 * (int(domain.nx) - 1)
    cj = float(domain.loop_center_j) if float(domain.loop_center_j) >= 0.0 else 0.5 * (int(domain.ny) - 1)
    ii = torch.arange(slab.start, slab.stop, dtype=torch.float64)[:, None]
    jj = torch.arange(int(domain.ny), dtype=torch.float64)[None, :]
    r2 = (ii - ci) ** 2 + (jj - cj) ** 2
    return r2 <= float(domain.loop_radius) ** 2


def notch_mask(domain: DomainConfig, slab: ProcessSlab) -> torch.Tensor:
    """本 slab 上缺口区域的 `[lnx, ny]` 掩码。"""
    ii = torch.arange(slab.start, slab.stop)[:, None]
    return (ii < int(domain.notch_length)).expand(slab.extent, int(domain.ny))


def initial_order_parameter(
    domain: DomainConfig,
    n_slip: int,
    slab: ProcessSlab,
    *,
    seed: int = 0,
    device: torch.device | str = "cpu",
    dtype: torch.dtype = torch.float64,
) -> torch.Tensor:
    """生成本 rank 的初始序参量 `[S, lnx, ny, nz]`（实数，虚部由调用方补 0）。"""
    mode = str(domain.initial_condition).strip().lower()
    if mode not in INITIAL_CONDITIONS:
        raise ConfigurationError(
            f"Unsupported initial condition '{domain.initial_condition}'. Choose from {INITIAL_CONDITIONS}."
        )
    s0 = int(domain.initial_slip_index)
    if not 0 <= s0 < int(n_slip):
        raise ConfigurationError(f"initial_slip_index={s0} outside [0, {n_slip}).")
    amp = float(domain.initial_amplitude)
    xi = torch.zeros((int(n_slip), slab.extent, int(domain.ny), int(domain.nz)), dtype=dtype)

    if mode == "loop":
        xi[s0, :, :, _plane_k(domain)] = amp * loop_mask(domain, slab).to(dtype)
    elif mode == "notch":
        xi[s0, :, :, _plane_k(domain)] = amp * notch_mask(domain, slab).to(dtype)
    elif mode == "random":
        # 先生成全局随机场再截取，保证多 rank 与单 rank 结果一致。
        g = torch.Generator(device="cpu")
        g.manual_seed(int(seed))
        full = torch.rand((int(n_slip), int(domain.nx), int(domain.ny), int(domain.nz)), generator=g, dtype=dtype)
        xi = amp * full[:, slab.start : slab.stop].clone()
    return xi.to(device)
