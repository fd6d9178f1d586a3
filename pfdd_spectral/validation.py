"""配置与物理一致性审计模块（中文注释版）。

目标：
1. 在仿真启动前识别会导致构造失败或数值不稳的配置问题；
2. 给出可执行的修复建议，而非仅报错；
3. 提供可机器读取的 JSON 报告，便于批量回归与 CI 集成。
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
import json
import math
from pathlib import Path
from typing import Any, Dict, List

import torch

from .config import ConfigurationError, SimulationConfig
from .crystallography import SLIP_PRESETS, is_axis_aligned_cell
from .geometry import INITIAL_CONDITIONS
from .integrator import CORE_MODELS, INTEGRATOR_SCHEMES
from .lattice import LATTICE_STYLES

PARALLEL_MODES = ("serial", "threads", "torch_distributed")


@dataclass
class AuditIssue:
    """单条审计问题。"""

    level: str
    code: str
    message: str
    recommendation: str = ""
    path: str = ""
    value: Any = None

    def to_dict(self) -> Dict[str, Any]:
        """序列化为字典。"""
        return {
            "level": self.level,
            "code": self.code,
            "message": self.message,
            "recommendation": self.recommendation,
            "path": self.path,
            "value": self.value,
        }


@dataclass
class ConfigAuditReport:
    """配置审计报告。"""

    config_path: str = ""
    generated_at: str = field(default_factory=lambda: datetime.utcnow().isoformat(timespec="seconds") + "Z")
    issues: List[AuditIssue] = field(default_factory=list)

    def add(self, level: str, code: str, message: str, *, recommendation: str = "", path: str = "", value: Any = None) -> None:
        """添加审计项。"""
        self.issues.append(
            AuditIssue(
                level=str(level).lower().strip(),
                code=str(code),
                message=str(message),
                recommendation=str(recommendation),
                path=str(path),
                value=value,
            )
        )

    def add_error(self, code: str, message: str, *, recommendation: str = "", path: str = "", value: Any = None) -> None:
        self.add("error", code, message, recommendation=recommendation, path=path, value=value)

    def add_warning(self, code: str, message: str, *, recommendation: str = "", path: str = "", value: Any = None) -> None:
        self.add("warning", code, message, recommendation=recommendation, path=path, value=value)

    def add_info(self, code: str, message: str, *, recommendation: str = "", path: str = "", value: Any = None) -> None:
        self.add("info", code, message, recommendation=recommendation, path=path, value=value)

    @property
    def error_count(self) -> int:
        return sum(1 for x in self.issues if x.level == "error")

    @property
    def warning_count(self) -> int:
        return sum(1 for x in self.issues if x.level == "warning")

    @property
    def info_count(self) -> int:
        return sum(1 for x in self.issues if x.level == "info")

    @property
    def passed(self) -> bool:
        """是否通过（无 error）。"""
        return self.error_count == 0

    def codes(self, level: str | None = None) -> List[str]:
        """按级别列出问题代码。"""
        return [x.code for x in self.issues if level is None or x.level == level]

    def to_dict(self) -> Dict[str, Any]:
        """序列化为字典。"""
        return {
            "config_path": self.config_path,
            "generated_at": self.generated_at,
            "passed": self.passed,
            "counts": {
                "errors": self.error_count,
                "warnings": self.warning_count,
                "infos": self.info_count,
            },
            "issues": [x.to_dict() for x in self.issues],
        }


def _norm3(v: List[float]) -> float:
    """三维向量二范数。"""
    if len(v) != 3:
        return 0.0
    return float((v[0] * v[0] + v[1] * v[1] + v[2] * v[2]) ** 0.5)


def _dot3(a: List[float], b: List[float]) -> float:
    """三维向量点积。"""
    if len(a) != 3 or len(b) != 3:
        return 0.0
    return float(a[0] * b[0] + a[1] * b[1] + a[2] * b[2])


def _available_slip_count(cfg: SimulationConfig) -> int:
    """当前晶体结构可提供的滑移系数；未知结构返回 0。"""
    name = str(cfg.material.crystal_structure).strip().lower()
    if name == "custom":
        return len(cfg.material.slip_systems)
    if name in SLIP_PRESETS:
        return len(SLIP_PRESETS[name].systems)
    return 0


def _resolved_slip_count(cfg: SimulationConfig) -> int:
    avail = _available_slip_count(cfg)
    n = int(cfg.material.n_slip_systems)
    return avail if n <= 0 else min(n, avail)


def _audit_domain(cfg: SimulationConfig, rep: ConfigAuditReport) -> None:
    d = cfg.domain
    dims = (int(d.nx), int(d.ny), int(d.nz))
    if min(dims) <= 0:
        rep.add_error(
            "DOMAIN_GRID_INVALID",
            "网格尺寸 nx/ny/nz 必须为正整数。",
            recommendation="设置 domain.nx, domain.ny, domain.nz >= 1。",
            path="domain.nx/ny/nz",
            value=list(dims),
        )
    if int(d.n_procs) <= 0:
        rep.add_error(
            "DECOMP_PROCS_INVALID",
            "rank 数必须为正整数。",
            recommendation="设置 domain.n_procs >= 1。",
            path="domain.n_procs",
            value=int(d.n_procs),
        )
    elif dims[0] > 0 and int(d.n_procs) > dims[0]:
        rep.add_error(
            "DECOMP_OVERSUBSCRIBED",
            "rank 数超过 x 方向层数，会出现空 slab。",
            recommendation=f"设置 domain.n_procs <= nx={dims[0]}，或增大 nx。",
            path="domain.n_procs",
            value=int(d.n_procs),
        )
    elif dims[1] > 0 and int(d.n_procs) > dims[1]:
        rep.add_info(
            "DECOMP_FREQ_SLAB_EMPTY",
            "rank 数超过 ny，部分 rank 在频率空间没有 y 层，仅参与转置通信。",
            recommendation="如需均衡负载，令 domain.n_procs <= ny。",
            path="domain.n_procs",
            value=int(d.n_procs),
        )
    style = str(d.lattice_style).strip().lower()
    if style not in LATTICE_STYLES:
        rep.add_error(
            "LATTICE_STYLE_UNSUPPORTED",
            f"不支持的晶格样式: {d.lattice_style}",
            recommendation=f"可选: {sorted(LATTICE_STYLES)}。",
            path="domain.lattice_style",
            value=d.lattice_style,
        )
    if len(d.lattice_spacing) != 3 or any(float(a) <= 0.0 for a in d.lattice_spacing):
        rep.add_error(
            "LATTICE_SPACING_INVALID",
            "lattice_spacing 必须是 3 个正数。",
            recommendation="例如 domain.lattice_spacing: [1.0, 1.0, 1.0]。",
            path="domain.lattice_spacing",
            value=list(d.lattice_spacing),
        )
    mode = str(d.initial_condition).strip().lower()
    if mode not in INITIAL_CONDITIONS:
        rep.add_error(
            "INITIAL_CONDITION_UNSUPPORTED",
            f"不支持的初值类型: {d.initial_condition}",
            recommendation=f"可选: {list(INITIAL_CONDITIONS)}。",
            path="domain.initial_condition",
            value=d.initial_condition,
        )
    n_slip = _resolved_slip_count(cfg)
    if n_slip > 0 and not 0 <= int(d.initial_slip_index) < n_slip:
        rep.add_error(
            "INITIAL_SLIP_INDEX_INVALID",
            "initial_slip_index 超出滑移系范围。",
            recommendation=f"设置 0 <= domain.initial_slip_index < {n_slip}。",
            path="domain.initial_slip_index",
            value=int(d.initial_slip_index),
        )
    if mode in ("loop", "notch") and int(d.initial_plane_k) >= max(dims[2], 0):
        rep.add_error(
            "INITIAL_PLANE_OUT_OF_RANGE",
            "initial_plane_k 超出 z 方向范围。",
            recommendation="设置 domain.initial_plane_k < nz，或设为 -1 取中间层。",
            path="domain.initial_plane_k",
            value=int(d.initial_plane_k),
        )


def _audit_material(cfg: SimulationConfig, rep: ConfigAuditReport) -> None:
    m = cfg.material
    name = str(m.crystal_structure).strip().lower()
    if name != "custom" and name not in SLIP_PRESETS:
        rep.add_error(
            "CRYSTAL_STRUCTURE_UNSUPPORTED",
            f"不支持的晶体结构: {m.crystal_structure}",
            recommendation=f"可选: {sorted(SLIP_PRESETS) + ['custom']}。",
            path="material.crystal_structure",
            value=m.crystal_structure,
        )
    elif name == "custom" and not m.slip_systems:
        rep.add_error(
            "SLIP_COUNT_INVALID",
            "custom 晶体结构需要至少一个滑移系定义。",
            recommendation="在 material.slip_systems 中给出 normal/burgers 或 plane_mb/direction_mb。",
            path="material.slip_systems",
        )
    avail = _available_slip_count(cfg)
    if avail > 0 and int(m.n_slip_systems) > avail:
        rep.add_error(
            "SLIP_COUNT_INVALID",
            f"请求 {m.n_slip_systems} 个滑移系，但 {name} 只定义了 {avail} 个。",
            recommendation=f"设置 material.n_slip_systems <= {avail}，或 <= 0 使用全部。",
            path="material.n_slip_systems",
            value=int(m.n_slip_systems),
        )

    if name == "custom":
        for i, s in enumerate(m.slip_systems):
            path = f"material.slip_systems[{i}]"
            if "normal" in s and "burgers" in s:
                n = [float(v) for v in s["normal"]]
                b = [float(v) for v in s["burgers"]]
                nn, bn = _norm3(n), _norm3(b)
                if nn <= 1e-12 or bn <= 1e-12:
                    rep.add_error(
                        "CP_SLIP_SYSTEM_NOT_ORTHONORMAL",
                        "滑移系 normal/burgers 必须为非零三维向量。",
                        recommendation="检查向量长度与取值。",
                        path=path,
                        value={"normal": n, "burgers": b},
                    )
                elif abs(_dot3(n, b)) / (nn * bn) > 1e-6:
                    rep.add_error(
                        "CP_SLIP_SYSTEM_NOT_ORTHONORMAL",
                        "Burgers 方向不在滑移面内（n·b ≠ 0）。",
                        recommendation="修正 normal 或 burgers，使二者正交。",
                        path=path,
                        value=_dot3(n, b) / (nn * bn),
                    )
            elif not ("plane_mb" in s and "direction_mb" in s):
                rep.add_error(
                    "CP_SLIP_SYSTEM_INCOMPLETE",
                    "滑移系定义缺少 normal/burgers 或 plane_mb/direction_mb。",
                    recommendation="补全滑移系的两个向量。",
                    path=path,
                )

    if float(m.oflag) not in (0.0, 1.0):
        rep.add_info(
            "SLIP_MIXED_CHARACTER",
            "oflag 介于刃型(0)与螺型(1)之间，按 oflag*90° 旋转 Burgers 方向。",
            path="material.oflag",
            value=float(m.oflag),
        )
    if m.primitive_vectors:
        rows = [list(r) for r in m.primitive_vectors]
        ok = len(rows) == 3 and all(len(r) == 3 for r in rows)
        det = 0.0
        if ok:
            a, b, c = rows
            det = (
                a[0] * (b[1] * c[2] - b[2] * c[1])
                - a[1] * (b[0] * c[2] - b[2] * c[0])
                + a[2] * (b[0] * c[1] - b[1] * c[0])
            )
        if not ok or abs(det) < 1e-12:
            rep.add_error(
                "PRIMITIVE_VECTORS_INVALID",
                "primitive_vectors 必须是线性无关的 3x3 矩阵。",
                recommendation="给出三个行向量，或留空使用 lattice_spacing 构造的正交原胞。",
                path="material.primitive_vectors",
                value=rows,
            )
        elif not is_axis_aligned_cell(torch.tensor(rows, dtype=torch.float64)):
            rep.add_error(
                "PRIMITIVE_VECTORS_NOT_AXIS_ALIGNED",
                "primitive_vectors 必须是沿坐标轴的正交原胞：波矢网格沿笛卡尔轴构造，斜原胞或旋转原胞会使本征应变与谱算子不一致。",
                recommendation="使用正交原胞（例如 FCC/BCC 取立方惯用胞），或留空由 lattice_spacing 构造。",
                path="material.primitive_vectors",
                value=rows,
            )

    lam, mu = float(m.lambda_), float(m.mu)
    if mu <= 0.0 or 3.0 * lam + 2.0 * mu <= 0.0:
        rep.add_error(
            "ELASTIC_CONSTANTS_INVALID",
            "各向同性弹性常数不满足正定条件（需 mu>0 且 3λ+2μ>0）。",
            recommendation="检查 material.lambda 与 material.mu。",
            path="material.lambda/mu",
            value={"lambda": lam, "mu": mu},
        )
    if float(m.burgers_magnitude) <= 0.0 or float(m.interplanar_spacing) <= 0.0:
        rep.add_error(
            "SLIP_GEOMETRY_INVALID",
            "Burgers 矢量模长与晶面间距必须为正。",
            recommendation="设置 material.burgers_magnitude > 0 且 material.interplanar_spacing > 0。",
            path="material.burgers_magnitude/interplanar_spacing",
            value=[float(m.burgers_magnitude), float(m.interplanar_spacing)],
        )
    if str(m.core_model).strip().lower() not in CORE_MODELS:
        rep.add_error(
            "CORE_MODEL_UNSUPPORTED",
            f"不支持的位错核模型: {m.core_model}",
            recommendation=f"可选: {list(CORE_MODELS)}。",
            path="material.core_model",
            value=m.core_model,
        )
    if len(m.applied_strain) != 6:
        rep.add_error(
            "APPLIED_STRAIN_INVALID",
            "applied_strain 必须是 6 个 Voigt 分量（xx,yy,zz,xy,xz,yz）。",
            recommendation="例如 material.applied_strain: [0, 0, 0, 0, 0, 0.01]。",
            path="material.applied_strain",
            value=list(m.applied_strain),
        )


def _audit_numerics(cfg: SimulationConfig, rep: ConfigAuditReport) -> None:
    n = cfg.numerics
    dt = float(n.dt)
    if dt <= 0.0:
        rep.add_error(
            "NUMERICS_DT_INVALID",
            "dt 必须为正。",
            recommendation="设置 numerics.dt > 0。",
            path="numerics.dt",
            value=dt,
        )
    elif float(n.total_time) < dt:
        rep.add_warning(
            "STOP_TIME_SHORTER_THAN_DT",
            "total_time 小于 dt，步数预算为 0，不会推进任何一步。",
            recommendation="增大 numerics.total_time 或减小 numerics.dt。",
            path="numerics.total_time",
            value=float(n.total_time),
        )
    scheme = str(n.integrator).strip().lower()
    if scheme not in INTEGRATOR_SCHEMES:
        rep.add_error(
            "INTEGRATOR_UNKNOWN",
            f"未知的时间推进格式: {n.integrator}",
            recommendation=f"可选: {list(INTEGRATOR_SCHEMES)}。",
            path="numerics.integrator",
            value=n.integrator,
        )
    if float(n.noise_amplitude) < 0.0:
        rep.add_error(
            "NOISE_AMPLITUDE_NEGATIVE",
            "噪声幅值不能为负。",
            recommendation="设置 numerics.noise_amplitude >= 0。",
            path="numerics.noise_amplitude",
            value=float(n.noise_amplitude),
        )
    elif scheme == "gradient_descent" and float(n.noise_amplitude) > 0.0:
        rep.add_info(
            "NOISE_IGNORED",
            "gradient_descent 格式不使用噪声幅值。",
            recommendation="如需随机项，改用 stochastic 或 langevin。",
            path="numerics.noise_amplitude",
            value=float(n.noise_amplitude),
        )
    if float(n.mobility) <= 0.0:
        rep.add_error(
            "MOBILITY_INVALID",
            "迁移率 CD 必须为正。",
            recommendation="设置 numerics.mobility > 0。",
            path="numerics.mobility",
            value=float(n.mobility),
        )
    if str(n.dtype) not in ("float32", "float64"):
        rep.add_error(
            "DTYPE_UNSUPPORTED",
            f"不支持的浮点类型: {n.dtype}",
            recommendation="设置 numerics.dtype 为 float32 或 float64。",
            path="numerics.dtype",
            value=n.dtype,
        )
    elif str(n.dtype) == "float32":
        rep.add_info(
            "FLOAT32_PRECISION",
            "float32 下 FFT 往返误差约 1e-6 量级。",
            path="numerics.dtype",
            value=n.dtype,
        )

    m = cfg.material
    if dt > 0.0 and float(n.mobility) > 0.0 and float(m.interplanar_spacing) > 0.0:
        ratio = float(m.burgers_magnitude) / float(m.interplanar_spacing)
        core = float(m.core_energy) if str(m.core_model).strip().lower() == "sin2" else 0.0
        stiff = 2.0 * float(m.mu) * 0.5 * ratio * ratio + 2.0 * math.pi * math.pi * abs(core)
        rate = float(n.mobility) * dt * stiff
        if rate > 2.0:
            rep.add_warning(
                "NUM_EXPLICIT_STABILITY_RISK",
                f"显式格式估计放大因子 CD*dt*K={rate:.3g} > 2，可能发散。",
                recommendation=f"建议 dt <= {2.0 / (float(n.mobility) * stiff):.3g}。",
                path="numerics.dt",
                value=dt,
            )


def _audit_runtime(cfg: SimulationConfig, rep: ConfigAuditReport) -> None:
    r = cfg.runtime
    if str(r.parallel).strip().lower() not in PARALLEL_MODES:
        rep.add_error(
            "PARALLEL_MODE_UNSUPPORTED",
            f"不支持的并行方式: {r.parallel}",
            recommendation=f"可选: {list(PARALLEL_MODES)}。",
            path="runtime.parallel",
            value=r.parallel,
        )
    if int(r.stats_every) < 0 or int(r.dump_every) < 0:
        rep.add_error(
            "OUTPUT_INTERVAL_NEGATIVE",
            "stats_every/dump_every 不能为负（0 表示关闭）。",
            recommendation="设置 runtime.stats_every >= 0 且 runtime.dump_every >= 0。",
            path="runtime.stats_every/dump_every",
            value=[int(r.stats_every), int(r.dump_every)],
        )


def audit_config(cfg: SimulationConfig, *, config_path: str | Path | None = None) -> ConfigAuditReport:
    """执行完整配置审计。"""
    rep = ConfigAuditReport(config_path=str(config_path or ""))
    _audit_domain(cfg, rep)
    _audit_material(cfg, rep)
    _audit_numerics(cfg, rep)
    _audit_runtime(cfg, rep)
    if rep.passed:
        rep.add_info(
            "CONFIG_AUDIT_PASSED",
            "配置审计通过（无 error）。",
            recommendation="可进入仿真流程。",
        )
    return rep


def raise_on_errors(report: ConfigAuditReport) -> None:
    """存在 error 级问题时抛出 ConfigurationError（消息汇总全部 error）。"""
    if report.passed:
        return
    msg = "; ".join(f"{x.code}: {x.message}" for x in report.issues if x.level == "error")
    raise ConfigurationError(msg)


def save_audit_report(report: ConfigAuditReport, path: str | Path) -> Path:
    """保存审计报告 JSON。"""
    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    p.write_text(json.dumps(report.to_dict(), ensure_ascii=False, indent=2), encoding="utf-8")
    return p


def summarize_audit_report(report: ConfigAuditReport) -> str:
    """生成人类可读的一行摘要。"""
    st = "PASS" if report.passed else "FAIL"
    return (
        f"[{st}] errors={report.error_count} "
        f"warnings={report.warning_count} infos={report.info_count}"
    )
