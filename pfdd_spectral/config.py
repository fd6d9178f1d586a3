"""配置模块（中文注释版）。

本文件统一定义相场位错动力学（PFDD）谱方法核心的全部可配置参数：
1. 晶格与区域分解参数（DomainConfig）
2. 材料、弹性常数与滑移系参数（MaterialConfig）
3. 时间推进参数（NumericsConfig）
4. 运行时输出参数（RuntimeConfig）

使用方式：
- 通过 `load_config(path)` 从 YAML 读取并覆盖默认值。
- 各子模块在构造时一次性拷贝所需参数，运行过程中不再回读配置。
"""

from __future__ import annotations

from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List

import yaml


class ConfigurationError(ValueError):
    """配置类致命错误（网格退化、过度分解、未知晶体结构等）。"""


@dataclass
class DomainConfig:
    """三维结构化晶格与初始序参量配置。"""
    nx: int = 32
    ny: int = 32
    nz: int = 32
    # 晶格样式：sc/6n, sc/26n, bcc, fcc。
    lattice_style: str = "sc/6n"
    lattice_spacing: List[float] = field(default_factory=lambda: [1.0, 1.0, 1.0])
    origin: List[float] = field(default_factory=lambda: [0.0, 0.0, 0.0])
    # 进程内多 rank 运行时使用的 rank 数（torch.distributed 下以进程组大小为准）。
    n_procs: int = 1
    # 初始序参量：zero / loop / notch / random。
    initial_condition: str = "loop"
    initial_amplitude: float = 1.0
    initial_slip_index: int = 0
    # loop/notch 所在的 z 层；<0 时取 nz//2。
    initial_plane_k: int = -1
    # 位错环半径与中心（网格单位）；中心 <0 时取区域中心。
    loop_radius: float = 6.0
    loop_center_i: float = -1.0
    loop_center_j: float = -1.0
    # notch：x < notch_length 的半平面被滑移。
    notch_length: int = 8


@dataclass
class MaterialConfig:
    """晶体结构、弹性常数与位错核参数。"""
    # 预设晶体结构：fcc_111, fcc_2slip, bcc_110, hcp_basal, custom。
    crystal_structure: str = "hcp_basal"
    # 位错特征：0 为刃型，1 为螺型（Burgers 矢量绕法向旋转 oflag*90°）。
    oflag: float = 0.0
    # <=0 时使用预设的全部滑移系。
    n_slip_systems: int = -1
    # crystal_structure=custom 时使用；每项含 normal/burgers 或 plane_mb/direction_mb。
    slip_systems: List[Dict[str, Any]] = field(default_factory=list)
    hcp_c_over_a: float = 1.624
    # 直接晶格原胞矢量（行向量）；为空时由 lattice_spacing 构造正交原胞。
    primitive_vectors: List[List[float]] = field(default_factory=list)
    # 各向同性弹性常数（无量纲单位，默认 nu=0.3）。
    lambda_: float = 1.5
    mu: float = 1.0
    burgers_magnitude: float = 1.0
    interplanar_spacing: float = 1.0
    # 位错核能：sin2 表示 A*sin^2(pi*xi)，none 表示关闭。
    core_model: str = "sin2"
    core_energy: float = 0.05
    # 外加均匀应变（Voigt 顺序 xx,yy,zz,xy,xz,yz，张量剪切分量）。
    applied_strain: List[float] = field(default_factory=lambda: [0.0, 0.0, 0.0, 0.0, 0.0, 0.0])


@dataclass
class NumericsConfig:
    """显式时间推进配置。"""
    dt: float = 1.0
    total_time: float = 50.0
    # 位错迁移率 CD。
    mobility: float = 0.5
    # gradient_descent / stochastic / langevin
    integrator: str = "gradient_descent"
    noise_amplitude: float = 0.0
    seed: int = 42
    dtype: str = "float64"


@dataclass
class RuntimeConfig:
    """运行时配置（设备、并行方式、输出路径）。"""
    device: str = "cpu"
    # serial / threads / torch_distributed
    parallel: str = "serial"
    output_dir: str = "artifacts/pfdd"
    case_name: str = "pfdd_case"
    clean_output: bool = True
    stats_every: int = 10
    dump_every: int = 0


@dataclass
class SimulationConfig:
    """项目总配置容器。"""
    domain: DomainConfig = field(default_factory=DomainConfig)
    material: MaterialConfig = field(default_factory=MaterialConfig)
    numerics: NumericsConfig = field(default_factory=NumericsConfig)
    runtime: RuntimeConfig = field(default_factory=RuntimeConfig)


def _deep_update(dst: Dict[str, Any], src: Dict[str, Any]) -> Dict[str, Any]:
    """递归合并字典，用于 YAML 覆盖默认配置。"""
    for k, v in src.items():
        if isinstance(v, dict) and isinstance(dst.get(k), dict):
            _deep_update(dst[k], v)
        else:
            dst[k] = v
    return dst


def _filter_dataclass_kwargs(dc_type, payload: Dict[str, Any]) -> Dict[str, Any]:
    """过滤 dataclass 未声明字段，保证旧配置键名不致使加载失败。"""
    names = {f.name for f in fields(dc_type)}
    out = {k: v for k, v in payload.items() if k in names}
    # YAML 中写 `lambda` 更自然，这里映射到合法的字段名。
    if "lambda" in payload and "lambda_" in names:
        out["lambda_"] = payload["lambda"]
    return out


def load_config(config_path: str | Path | None = None) -> SimulationConfig:
    """读取并构建 SimulationConfig。

    参数:
    - config_path: YAML 配置路径；为空时返回纯默认配置。

    返回:
    - 完整的 SimulationConfig。
    """
    cfg = SimulationConfig()
    if config_path is None:
        return cfg
    p = Path(config_path)
    # 使用 safe_load 避免执行任意对象构造。
    data = yaml.safe_load(p.read_text(encoding="utf-8")) or {}
    merged = {
        "domain": cfg.domain.__dict__.copy(),
        "material": cfg.material.__dict__.copy(),
        "numerics": cfg.numerics.__dict__.copy(),
        "runtime": cfg.runtime.__dict__.copy(),
    }
    _deep_update(merged, data)
    # 逐子配置回填到 dataclass，保留类型约束。
    cfg.domain = DomainConfig(**_filter_dataclass_kwargs(DomainConfig, merged["domain"]))
    cfg.material = MaterialConfig(**_filter_dataclass_kwargs(MaterialConfig, merged["material"]))
    cfg.numerics = NumericsConfig(**_filter_dataclass_kwargs(NumericsConfig, merged["numerics"]))
    cfg.runtime = RuntimeConfig(**_filter_dataclass_kwargs(RuntimeConfig, merged["runtime"]))
    return cfg
