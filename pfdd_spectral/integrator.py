"""显式时间推进模块（中文注释版）。

更新规则（对本 rank 所有 owned 单元一次性写回）：

    f_s = −σ : M_s + ∂E_core/∂ξ_s
    ξ_s ← ξ_s − CD · f_s · dt

随机变体在实部上叠加有界均匀增量：
- stochastic: noise · U(−1, 1)
- langevin:   noise · √dt · U(−1, 1)

不做发散检测，显式格式的稳定性由调用方保证。
"""

from __future__ import annotations

from dataclasses import dataclass
import math

import torch

from .config import ConfigurationError, MaterialConfig, NumericsConfig
from .engine import SpectralFieldEngine
from .operators import resolved_driving_force

INTEGRATOR_SCHEMES = ("gradient_descent", "stochastic", "langevin")
CORE_MODELS = ("sin2", "none")
# 噪声流与 random 初值流（直接使用 numerics.seed）错开。
NOISE_SEED_OFFSET = 1_000_003


class IntegratorTerminatedError(RuntimeError):
    """步数预算耗尽后仍调用 step。"""


@dataclass
class IntegratorState:
    """推进状态：已推进时间、步数、步长与步数预算。"""
    time: float
    step: int
    dt: float
    budget: int

    @property
    def terminated(self) -> bool:
        return self.step >= self.budget


def step_budget(total_time: float, dt: float) -> int:
    """`floor(total_time / dt)`。"""
    if float(dt) <= 0.0:
        raise ConfigurationError(f"Timestep must be positive, got {dt}.")
    return max(int(math.floor(float(total_time) / float(dt))), 0)


def noise_seed(seed: int, rank: int) -> int:
    """rank 的噪声种子：`seed + NOISE_SEED_OFFSET + rank`。"""
    return int(seed) + NOISE_SEED_OFFSET + int(rank)


class TimeIntegrator:
    """序参量显式推进器。"""

    def __init__(
        self,
        engine: SpectralFieldEngine,
        numerics: NumericsConfig,
        material: MaterialConfig,
        *,
        rank: int = 0,
    ):
        scheme = str(numerics.integrator).strip().lower()
        if scheme not in INTEGRATOR_SCHEMES:
            raise ConfigurationError(f"Unsupported integrator '{numerics.integrator}'. Choose from {INTEGRATOR_SCHEMES}.")
        core = str(material.core_model).strip().lower()
        if core not in CORE_MODELS:
            raise ConfigurationError(f"Unsupported core model '{material.core_model}'. Choose from {CORE_MODELS}.")
        self.engine = engine
        self.scheme = scheme
        self.core_model = core
        self.core_energy = float(material.core_energy)
        self.mobility = float(numerics.mobility)
        self.noise = float(numerics.noise_amplitude)
        self.state = IntegratorState(
            time=0.0,
            step=0,
            dt=float(numerics.dt),
            budget=step_budget(numerics.total_time, numerics.dt),
        )
        # 各 rank 使用不同的种子偏移，保证同一配置下结果可复现。
        self.generator = torch.Generator(device="cpu")
        self.generator.manual_seed(noise_seed(numerics.seed, rank))

    @property
    def terminated(self) -> bool:
        return self.state.terminated

    def driving_force(self, xi: torch.Tensor | None = None) -> torch.Tensor:
        """当前应力下每个滑移系的驱动力 `[S, lnx, ny, nz]`（复数）。"""
        if xi is None:
            xi = self.engine.order_parameter_view()
        f = resolved_driving_force(self.engine.stress_view(), self.engine.eigenstrain)
        if self.core_model == "sin2" and self.core_energy != 0.0:
            # d/dξ [A sin²(π ξ)] = A π sin(2π ξ)，只作用于实部。
            f = f + self.core_energy * math.pi * torch.sin(2.0 * math.pi * xi.real)
        return f

    def _uniform_increment(self, shape) -> torch.Tensor:
        u = 2.0 * torch.rand(shape, generator=self.generator, dtype=self.engine.dtype) - 1.0
        return u.to(self.engine.device)

    def step(self) -> IntegratorState:
        """推进一步；终止后调用抛出 IntegratorTerminatedError。"""
        if self.terminated:
            raise IntegratorTerminatedError(
                f"Integrator finished its budget of {self.state.budget} steps (t={self.state.time:g})."
            )
        dt = self.state.dt
        xi = self.engine.order_parameter_field()
        new = xi - self.mobility * dt * self.driving_force(xi)
        if self.scheme == "stochastic":
            new = new + self.noise * self._uniform_increment(tuple(xi.shape))
        elif self.scheme == "langevin":
            new = new + self.noise * math.sqrt(dt) * self._uniform_increment(tuple(xi.shape))
        self.engine.assign_order_parameter(new)
        self.state.step += 1
        self.state.time += dt
        return self.state
