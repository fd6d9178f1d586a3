"""三维谱算子模块（中文注释版）。

本模块提供弹性谱求解所需的基础算子：
- 波矢网格（周期边界，`2π·fftfreq/a`）
- 各向同性刚度张量与 Voigt 形式互换
- 滑移系本征应变 M_s
- 声学张量逆与每个频率点的应力/应变响应表

张量统一采用 `[..., 3, 3]`；Voigt 顺序为 xx, yy, zz, xy, xz, yz（张量剪切分量）。
"""

from __future__ import annotations

import math
from typing import Sequence, Tuple

import torch

from .indexing import VOIGT_PAIRS

# σ:M 在 Voigt 形式下的权重（剪切分量出现两次）。
VOIGT_WEIGHTS: Tuple[float, ...] = (1.0, 1.0, 1.0, 2.0, 2.0, 2.0)


def wavevectors(
    n: Sequence[int],
    spacing: Sequence[float],
    *,
    device: torch.device | str = "cpu",
    dtype: torch.dtype = torch.float64,
) -> Tuple[torch.Tensor, torch.Tensor, torch.Tensor]:
    """三个方向的一维波矢 `k_a = 2π·fftfreq(N_a) / a`。"""
    out = []
    for na, a in zip(n, spacing):
        out.append(2.0 * math.pi * torch.fft.fftfreq(int(na), d=float(a), device=device, dtype=dtype))
    return out[0], out[1], out[2]


def isotropic_stiffness(lam: float, mu: float, *, dtype: torch.dtype = torch.float64) -> torch.Tensor:
    """`C_ijkl = λ δ_ij δ_kl + μ (δ_ik δ_jl + δ_il δ_jk)`。"""
    d = torch.eye(3, dtype=dtype)
    return (
        float(lam) * torch.einsum("ij,kl->ijkl", d, d)
        + float(mu) * (torch.einsum("ik,jl->ijkl", d, d) + torch.einsum("il,jk->ijkl", d, d))
    )


def double_contract(c: torch.Tensor, t: torch.Tensor) -> torch.Tensor:
    """`(C:T)_ij = C_ijkl T_kl`，T 可带前导批维度。"""
    return torch.einsum("ijkl,...kl->...ij", c.to(t.dtype), t)


def tensor_to_voigt(t: torch.Tensor) -> torch.Tensor:
    """`[..., 3, 3] -> [..., 6]`。"""
    return torch.stack([t[..., a, b] for a, b in VOIGT_PAIRS], dim=-1)


def voigt_to_tensor(v: torch.Tensor) -> torch.Tensor:
    """`[..., 6] -> [..., 3, 3]`（对称补全）。"""
    out = torch.zeros(tuple(v.shape[:-1]) + (3, 3), dtype=v.dtype, device=v.device)
    for c, (a, b) in enumerate(VOIGT_PAIRS):
        out[..., a, b] = v[..., c]
        out[..., b, a] = v[..., c]
    return out


def eigenstrain_tensors(
    normals: torch.Tensor,
    burgers: torch.Tensor,
    burgers_magnitude: float,
    interplanar_spacing: float,
) -> torch.Tensor:
    """单位序参量对应的本征应变 `M_s = (b/2d)(b_s⊗n_s + n_s⊗b_s)`，形状 `[S,3,3]`。"""
    scale = 0.5 * float(burgers_magnitude) / float(interplanar_spacing)
    bn = torch.einsum("si,sj->sij", burgers, normals)
    return scale * (bn + bn.transpose(1, 2))


def acoustic_inverse(nhat: torch.Tensor, lam: float, mu: float) -> torch.Tensor:
    """各向同性声学张量逆 `A⁻¹ = (1/μ)(I − (λ+μ)/(λ+2μ) n̂⊗n̂)`。"""
    eye = torch.eye(3, dtype=nhat.dtype, device=nhat.device)
    c = (float(lam) + float(mu)) / (float(lam) + 2.0 * float(mu))
    nn = nhat[..., :, None] * nhat[..., None, :]
    return (eye - c * nn) / float(mu)


def green_response(
    kx: torch.Tensor,
    ky: torch.Tensor,
    kz: torch.Tensor,
    eigenstrain: torch.Tensor,
    lam: float,
    mu: float,
) -> Tuple[torch.Tensor, torch.Tensor]:
    """构造每个滑移系、每个频率点的应变/应力响应表。

    参数:
    - kx, ky, kz: 本 rank 频率 slab 上的一维波矢；
    - eigenstrain: `[S,3,3]` 本征应变 M_s；
    - lam, mu: 各向同性 Lamé 常数。

    返回:
    - strain_op, stress_op: 形状均为 `[S, 6, len(kx), len(ky), len(kz)]` 的实张量。

    k=0 处应变响应为 0，应力响应为 `−C:M_s`。
    """
    dtype = eigenstrain.dtype
    device = kx.device
    kk = torch.stack(torch.meshgrid(kx, ky, kz, indexing="ij"), dim=-1)
    kn = torch.linalg.norm(kk, dim=-1, keepdim=True)
    zero = kn[..., 0] == 0.0
    nhat = kk / torch.where(kn == 0.0, torch.ones_like(kn), kn)

    c = isotropic_stiffness(lam, mu, dtype=dtype).to(device)
    m = eigenstrain.to(device)
    tau = double_contract(c, m)
    # t_s = τ_s·n̂，u_s = A⁻¹·t_s
    t = torch.einsum("sij,xyzj->sxyzi", tau, nhat)
    u = torch.einsum("xyzij,sxyzj->sxyzi", acoustic_inverse(nhat, lam, mu), t)
    eps = 0.5 * (nhat[None, ..., :, None] * u[..., None, :] + u[..., :, None] * nhat[None, ..., None, :])
    eps[:, zero] = 0.0
    sig = double_contract(c, eps) - tau[:, None, None, None]

    strain_op = tensor_to_voigt(eps).permute(0, 4, 1, 2, 3).contiguous()
    stress_op = tensor_to_voigt(sig).permute(0, 4, 1, 2, 3).contiguous()
    return strain_op, stress_op


def resolved_driving_force(stress: torch.Tensor, eigenstrain: torch.Tensor) -> torch.Tensor:
    """弹性驱动力 `−σ:M_s`。

    stress 形状 `[6, ...]`，eigenstrain 形状 `[S,3,3]`，返回 `[S, ...]`。
    """
    w = torch.tensor(VOIGT_WEIGHTS, dtype=eigenstrain.dtype, device=eigenstrain.device)
    mv = tensor_to_voigt(eigenstrain) * w
    extra = (1,) * (stress.dim() - 1)
    return -(mv.view(mv.shape + extra).to(stress.device) * stress[None]).sum(dim=1)
