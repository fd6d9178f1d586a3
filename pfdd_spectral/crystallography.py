"""晶体学与滑移系模块（中文注释版）。

本模块统一：
1. 各晶体结构的滑移系常数表（法向 n、Burgers 方向 b）；
2. HCP 四指数 (Miller-Bravais) -> 笛卡尔向量转换（custom 滑移系使用）；
3. 直接晶格原胞 -> 倒易基矢，以及滑移矢量向归一化倒易基的投影：

    v'_a = (v · b_a) / |b_a|

不同晶体结构只在常数上不同，投影算法完全一致。
"""

from __future__ import annotations

from dataclasses import dataclass
import math
from typing import Any, Dict, List, Sequence, Tuple

import torch

from .config import ConfigurationError, MaterialConfig, SimulationConfig

Vec3 = Tuple[float, float, float]

_S2 = math.sqrt(2.0)
_S3 = math.sqrt(3.0)


@dataclass(frozen=True)
class SlipPreset:
    """单个晶体结构的滑移系常数与默认参数。"""
    name: str
    # (name, normal, burgers)，均为物理笛卡尔坐标。
    systems: Tuple[Tuple[str, Vec3, Vec3], ...]
    default_grid: Tuple[int, int, int]
    default_mobility: float


def _hcp_basal_systems() -> Tuple[Tuple[str, Vec3, Vec3], ...]:
    """basal <a>：法向沿 c 轴，Burgers 方向间隔 120°。"""
    out = []
    for m in range(3):
        th = 2.0 * math.pi * m / 3.0
        out.append((f"basal_{m + 1}", (0.0, 0.0, 1.0), (math.cos(th), math.sin(th), 0.0)))
    return tuple(out)


SLIP_PRESETS: Dict[str, SlipPreset] = {
    "fcc_111": SlipPreset(
        name="fcc_111",
        systems=(("111_1-10", (1.0 / _S3, 1.0 / _S3, 1.0 / _S3), (1.0 / _S2, -1.0 / _S2, 0.0)),),
        default_grid=(32, 32, 32),
        default_mobility=0.5,
    ),
    "fcc_2slip": SlipPreset(
        name="fcc_2slip",
        systems=(
            ("111_1-10", (1.0 / _S3, 1.0 / _S3, 1.0 / _S3), (1.0 / _S2, -1.0 / _S2, 0.0)),
            ("111_10-1", (1.0 / _S3, 1.0 / _S3, 1.0 / _S3), (1.0 / _S2, 0.0, -1.0 / _S2)),
        ),
        default_grid=(32, 32, 32),
        default_mobility=0.5,
    ),
    "bcc_110": SlipPreset(
        name="bcc_110",
        systems=(("1-10_111", (1.0 / _S2, -1.0 / _S2, 0.0), (1.0 / _S3, 1.0 / _S3, 1.0 / _S3)),),
        default_grid=(32, 32, 32),
        default_mobility=0.5,
    ),
    "hcp_basal": SlipPreset(
        name="hcp_basal",
        systems=_hcp_basal_systems(),
        default_grid=(64, 64, 16),
        default_mobility=0.5,
    ),
}


def normalize_vec3(v: torch.Tensor, eps: float = 1e-12) -> torch.Tensor:
    """三维向量归一化。"""
    n = torch.sqrt(torch.clamp(torch.sum(v * v), min=eps))
    return v / n


def axis_angle_matrix(axis: Sequence[float], angle_deg: float, *, dtype: torch.dtype = torch.float64) -> torch.Tensor:
    """轴角旋转矩阵（Rodrigues）。"""
    if len(axis) != 3:
        raise ValueError("Axis must have length 3.")
    ax = normalize_vec3(torch.tensor([float(a) for a in axis], dtype=dtype))
    th = math.radians(float(angle_deg))
    x, y, z = (float(a) for a in ax)
    k = torch.tensor([[0.0, -z, y], [z, 0.0, -x], [-y, x, 0.0]], dtype=dtype)
    i = torch.eye(3, dtype=dtype)
    outer = ax.view(3, 1) @ ax.view(1, 3)
    return math.cos(th) * i + (1.0 - math.cos(th)) * outer + math.sin(th) * k


def _hcp_direct_basis(c_over_a: float, *, dtype: torch.dtype = torch.float64) -> torch.Tensor:
    """HCP 直接晶格基矢矩阵 A=[a1,a2,c]（列向量）。"""
    a1 = torch.tensor([1.0, 0.0, 0.0], dtype=dtype)
    a2 = torch.tensor([-0.5, 0.5 * _S3, 0.0], dtype=dtype)
    c = torch.tensor([0.0, 0.0, float(c_over_a)], dtype=dtype)
    return torch.stack([a1, a2, c], dim=1)


def hcp_direction_mb_to_cart(direction_mb: Sequence[float], *, c_over_a: float) -> torch.Tensor:
    """四指数方向 [u,v,t,w] -> 笛卡尔方向向量。"""
    if len(direction_mb) != 4:
        raise ValueError("direction_mb must have length 4.")
    u, v, _t, w = (float(x) for x in direction_mb)
    # 在独立基矢 (a1,a2,c) 下的坐标：r = (2u+v)a1 + (u+2v)a2 + w c
    coeff = torch.tensor([2.0 * u + v, u + 2.0 * v, w], dtype=torch.float64)
    return _hcp_direct_basis(c_over_a) @ coeff


def hcp_plane_mb_to_cart(plane_mb: Sequence[float], *, c_over_a: float) -> torch.Tensor:
    """四指数晶面 (h,k,i,l) -> 笛卡尔法向向量。"""
    if len(plane_mb) != 4:
        raise ValueError("plane_mb must have length 4.")
    h, k, _i, l = (float(x) for x in plane_mb)
    # 由独立基 (a1,a2,c) 的倒易基构造法向：g = h*b1 + k*b2 + l*b3
    b = torch.linalg.inv(_hcp_direct_basis(c_over_a)).transpose(0, 1)
    return b @ torch.tensor([h, k, l], dtype=torch.float64)


def reciprocal_basis(primitive_vectors: torch.Tensor) -> torch.Tensor:
    """直接原胞矢量（行）-> 倒易基矢（行），满足 a_i·b_j = 2π δ_ij。"""
    a = primitive_vectors.to(torch.float64)
    if tuple(a.shape) != (3, 3):
        raise ConfigurationError(f"primitive_vectors must be 3x3, got {tuple(a.shape)}.")
    if abs(float(torch.linalg.det(a))) < 1e-12:
        raise ConfigurationError("primitive_vectors are linearly dependent.")
    return 2.0 * math.pi * torch.linalg.inv(a).transpose(0, 1)


def project_to_reciprocal(vector: torch.Tensor, basis: torch.Tensor) -> torch.Tensor:
    """把物理坐标向量投影到归一化倒易基：`v'_a = v·b_a / |b_a|`。"""
    norms = torch.linalg.norm(basis, dim=1)
    return (basis @ vector.to(basis.dtype)) / norms


def is_axis_aligned_cell(a: torch.Tensor, tol: float = 1e-9) -> bool:
    """原胞矢量是否沿 x/y/z 正方向（对角、正长度，非对角元相对容差 tol）。"""
    if tuple(a.shape) != (3, 3):
        return False
    diag = torch.diagonal(a)
    if bool(torch.any(diag <= 0.0)):
        return False
    off = a - torch.diag(diag)
    return float(off.abs().max()) <= tol * float(diag.max())


def primitive_vectors(material: MaterialConfig, spacing: Sequence[float]) -> torch.Tensor:
    """返回直接原胞矢量；未显式给出时由晶格间距构造正交原胞。

    谱求解的波矢网格沿笛卡尔轴构造，因此只接受沿坐标轴的正交原胞；
    此时归一化倒易基为单位阵，投影不改变滑移矢量。
    """
    if material.primitive_vectors:
        a = torch.tensor([[float(v) for v in row] for row in material.primitive_vectors], dtype=torch.float64)
        if not is_axis_aligned_cell(a):
            raise ConfigurationError(
                f"primitive_vectors must be an axis-aligned orthogonal cell (positive diagonal), got {material.primitive_vectors}."
            )
        return a
    return torch.diag(torch.tensor([float(a) for a in spacing], dtype=torch.float64))


@dataclass(frozen=True)
class SlipSystem:
    """单个滑移系：物理坐标下的单位 n、b 及其倒易基投影。"""
    name: str
    normal: Vec3
    burgers: Vec3
    rotated_normal: Vec3
    rotated_burgers: Vec3


def _as_vec3(t: torch.Tensor) -> Vec3:
    return (float(t[0]), float(t[1]), float(t[2]))


def _basis_key(basis: torch.Tensor) -> Tuple[Vec3, Vec3, Vec3]:
    return (_as_vec3(basis[0]), _as_vec3(basis[1]), _as_vec3(basis[2]))


@dataclass(frozen=True)
class SlipSystemSet:
    """一组滑移系及其投影所用的倒易基（初始化后只读共享）。"""
    systems: Tuple[SlipSystem, ...]
    basis: Tuple[Vec3, Vec3, Vec3] | None = None

    def __len__(self) -> int:
        return len(self.systems)

    def project(self, basis: torch.Tensor) -> "SlipSystemSet":
        """以给定倒易基投影。

        总是从物理坐标下的 n、b 重新计算，因此对同一倒易基重复投影结果不变；
        沿坐标轴的正交原胞下倒易基归一化后为单位阵，投影后的向量再次投影仍是其自身。
        """
        key = _basis_key(basis)
        b = torch.tensor(key, dtype=torch.float64)
        out = []
        for s in self.systems:
            n = project_to_reciprocal(torch.tensor(s.normal, dtype=torch.float64), b)
            bv = project_to_reciprocal(torch.tensor(s.burgers, dtype=torch.float64), b)
            out.append(
                SlipSystem(
                    name=s.name,
                    normal=s.normal,
                    burgers=s.burgers,
                    rotated_normal=_as_vec3(n),
                    rotated_burgers=_as_vec3(bv),
                )
            )
        return SlipSystemSet(systems=tuple(out), basis=key)

    def normals(self, *, device: torch.device | str = "cpu", dtype: torch.dtype = torch.float64) -> torch.Tensor:
        """投影后的法向 `[S, 3]`。"""
        return torch.tensor([s.rotated_normal for s in self.systems], device=device, dtype=dtype)

    def burgers(self, *, device: torch.device | str = "cpu", dtype: torch.dtype = torch.float64) -> torch.Tensor:
        """投影后的 Burgers 方向 `[S, 3]`。"""
        return torch.tensor([s.rotated_burgers for s in self.systems], device=device, dtype=dtype)


def _custom_pair(system: Dict[str, Any], c_over_a: float) -> Tuple[torch.Tensor, torch.Tensor]:
    """从 custom 定义解析 (n, b)。"""
    if "normal" in system and "burgers" in system:
        n = torch.tensor([float(v) for v in system["normal"]], dtype=torch.float64)
        b = torch.tensor([float(v) for v in system["burgers"]], dtype=torch.float64)
    elif "plane_mb" in system and "direction_mb" in system:
        n = hcp_plane_mb_to_cart(system["plane_mb"], c_over_a=c_over_a)
        b = hcp_direction_mb_to_cart(system["direction_mb"], c_over_a=c_over_a)
    else:
        raise ConfigurationError(
            f"Slip system '{system.get('name', 'unknown')}' must provide normal/burgers or plane_mb/direction_mb."
        )
    if n.numel() != 3 or b.numel() != 3:
        raise ConfigurationError(f"Slip system '{system.get('name', 'unknown')}' vectors must have length 3.")
    return n, b


def resolve_slip_pairs(material: MaterialConfig) -> List[Tuple[str, torch.Tensor, torch.Tensor]]:
    """解析物理坐标下的单位 (n, b)，并按 oflag 绕 n 旋转 b。"""
    name = str(material.crystal_structure).strip().lower()
    raw: List[Tuple[str, torch.Tensor, torch.Tensor]] = []
    if name == "custom":
        if not material.slip_systems:
            raise ConfigurationError("crystal_structure 'custom' requires material.slip_systems.")
        for idx, s in enumerate(material.slip_systems):
            n, b = _custom_pair(s, float(material.hcp_c_over_a))
            raw.append((str(s.get("name", f"slip_{idx + 1}")), n, b))
    elif name in SLIP_PRESETS:
        for sname, n, b in SLIP_PRESETS[name].systems:
            raw.append((sname, torch.tensor(n, dtype=torch.float64), torch.tensor(b, dtype=torch.float64)))
    else:
        raise ConfigurationError(
            f"Unsupported crystal structure '{material.crystal_structure}'. "
            f"Choose from {sorted(SLIP_PRESETS) + ['custom']}."
        )

    count = int(material.n_slip_systems)
    if count > len(raw):
        raise ConfigurationError(f"Requested {count} slip systems but '{name}' defines only {len(raw)}.")
    if count > 0:
        raw = raw[:count]

    out = []
    for sname, n, b in raw:
        n_u = normalize_vec3(n)
        b_u = normalize_vec3(b)
        if abs(float(torch.dot(n_u, b_u))) > 1e-6:
            raise ConfigurationError(f"Slip system '{sname}': Burgers direction is not in the slip plane.")
        # oflag=0 为刃型；oflag=1 时 b 绕 n 转 90° 得到螺型。
        if float(material.oflag) != 0.0:
            b_u = axis_angle_matrix(_as_vec3(n_u), 90.0 * float(material.oflag)) @ b_u
        out.append((sname, n_u, b_u))
    return out


def build_slip_systems(material: MaterialConfig, spacing: Sequence[float]) -> SlipSystemSet:
    """构造并投影滑移系集合。"""
    pairs = resolve_slip_pairs(material)
    raw = SlipSystemSet(
        systems=tuple(
            SlipSystem(name=s, normal=_as_vec3(n), burgers=_as_vec3(b), rotated_normal=_as_vec3(n), rotated_burgers=_as_vec3(b))
            for s, n, b in pairs
        )
    )
    return raw.project(reciprocal_basis(primitive_vectors(material, spacing)))


def apply_preset_defaults(cfg: SimulationConfig) -> SimulationConfig:
    """把预设晶体结构的默认网格与迁移率写入配置（custom 不变）。"""
    name = str(cfg.material.crystal_structure).strip().lower()
    preset = SLIP_PRESETS.get(name)
    if preset is None:
        return cfg
    cfg.domain.nx, cfg.domain.ny, cfg.domain.nz = preset.default_grid
    cfg.numerics.mobility = preset.default_mobility
    return cfg
