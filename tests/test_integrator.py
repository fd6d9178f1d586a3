"""显式时间推进测试。"""

from __future__ import annotations

import math

import pytest
import torch

from pfdd_spectral.comm import SerialCommunicator
from pfdd_spectral.config import ConfigurationError, SimulationConfig
from pfdd_spectral.crystallography import build_slip_systems
from pfdd_spectral.engine import SpectralFieldEngine
from pfdd_spectral.integrator import IntegratorTerminatedError, TimeIntegrator, noise_seed, step_budget
from pfdd_spectral.lattice import LatticeDecomposition, build_geometry


def _cfg(**numerics) -> SimulationConfig:
    cfg = SimulationConfig()
    cfg.domain.nx, cfg.domain.ny, cfg.domain.nz = 4, 4, 4
    cfg.material.crystal_structure = "hcp_basal"
    cfg.material.n_slip_systems = 1
    for k, v in numerics.items():
        setattr(cfg.numerics, k, v)
    return cfg


def _build(cfg: SimulationConfig, rank: int = 0):
    g = build_geometry(cfg.domain)
    d = LatticeDecomposition(g, 1, 0)
    eng = SpectralFieldEngine(d, build_slip_systems(cfg.material, g.spacing), cfg.material, SerialCommunicator())
    return eng, TimeIntegrator(eng, cfg.numerics, cfg.material, rank=rank)


def test_step_budget_is_floor_of_ratio() -> None:
    assert step_budget(2.5, 1.0) == 2
    assert step_budget(3.0, 1.5) == 2
    assert step_budget(0.4, 0.5) == 0
    with pytest.raises(ConfigurationError):
        step_budget(1.0, 0.0)


def test_counters_and_termination() -> None:
    eng, integ = _build(_cfg(dt=0.5, total_time=1.5))
    assert integ.state.budget == 3
    for n in range(1, 4):
        eng.solve()
        st = integ.step()
        assert st.step == n
        assert st.time == pytest.approx(0.5 * n)
    assert integ.terminated
    with pytest.raises(IntegratorTerminatedError):
        integ.step()
    assert integ.state.step == 3


def test_total_time_shorter_than_dt_terminates_immediately() -> None:
    _, integ = _build(_cfg(dt=1.0, total_time=0.5))
    assert integ.terminated
    with pytest.raises(IntegratorTerminatedError):
        integ.step()


def test_zero_field_stays_zero() -> None:
    eng, integ = _build(_cfg(dt=0.5, total_time=2.0))
    while not integ.terminated:
        eng.solve()
        integ.step()
    assert float(eng.order_parameter_field().abs().max()) == 0.0


def test_gradient_descent_update_for_uniform_field() -> None:
    """均匀 ξ=c：−σ:M = 2μ M:M c = μ c，核项 Aπ sin(2πc)。"""
    cfg = _cfg(dt=0.5, total_time=5.0, mobility=0.4)
    eng, integ = _build(cfg)
    c = 0.25
    eng.assign_order_parameter(torch.full_like(eng.order_parameter_field(), c))
    eng.solve()
    integ.step()
    a = cfg.material.core_energy
    force = cfg.material.mu * c + a * math.pi * math.sin(2.0 * math.pi * c)
    expected = c - 0.4 * 0.5 * force
    xi = eng.order_parameter_field()
    assert torch.allclose(xi.real, torch.full_like(xi.real, expected), atol=1e-12)
    assert float(xi.imag.abs().max()) < 1e-12


def test_update_matches_driving_force_for_random_field() -> None:
    cfg = _cfg(dt=0.1, total_time=1.0, mobility=0.5)
    cfg.material.n_slip_systems = -1
    eng, integ = _build(cfg)
    g = torch.Generator().manual_seed(5)
    x = torch.rand(tuple(eng.order_parameter_field().shape), generator=g, dtype=torch.float64)
    eng.assign_order_parameter(x)
    eng.solve()
    expected = eng.order_parameter_field() - 0.5 * 0.1 * integ.driving_force()
    integ.step()
    assert torch.allclose(eng.order_parameter_field(), expected, atol=1e-14)


def test_no_core_model_drops_core_force() -> None:
    cfg = _cfg(dt=0.5, total_time=5.0)
    cfg.material.core_model = "none"
    eng, integ = _build(cfg)
    eng.assign_order_parameter(torch.full_like(eng.order_parameter_field(), 0.25))
    eng.solve()
    f = integ.driving_force()
    assert torch.allclose(f.real, torch.full_like(f.real, cfg.material.mu * 0.25), atol=1e-12)


@pytest.mark.parametrize("scheme,scale", [("stochastic", 1.0), ("langevin", math.sqrt(0.25))])
def test_stochastic_increment_is_bounded_and_real(scheme: str, scale: float) -> None:
    eng, integ = _build(_cfg(dt=0.25, total_time=1.0, integrator=scheme, noise_amplitude=0.1, seed=3))
    eng.solve()
    integ.step()
    xi = eng.order_parameter_field()
    assert float(xi.real.abs().max()) <= 0.1 * scale + 1e-15
    assert float(xi.real.abs().max()) > 0.0
    assert float(xi.imag.abs().max()) == 0.0


def test_stochastic_runs_are_reproducible() -> None:
    def run(seed: int) -> torch.Tensor:
        eng, integ = _build(_cfg(dt=0.25, total_time=1.0, integrator="langevin", noise_amplitude=0.1, seed=seed))
        while not integ.terminated:
            eng.solve()
            integ.step()
        return eng.order_parameter_field()

    assert torch.equal(run(9), run(9))
    assert not torch.equal(run(9), run(10))


def test_rank_offsets_random_stream() -> None:
    cfg = _cfg(integrator="stochastic", noise_amplitude=0.1, seed=1)
    _, a = _build(cfg, rank=0)
    _, b = _build(cfg, rank=1)
    assert not torch.equal(torch.rand(8, generator=a.generator), torch.rand(8, generator=b.generator))


def test_unknown_integrator_and_core_model_rejected() -> None:
    with pytest.raises(ConfigurationError):
        _build(_cfg(integrator="runge_kutta"))
    cfg = _cfg()
    cfg.material.core_model = "peierls"
    with pytest.raises(ConfigurationError):
        _build(cfg)


def test_noise_stream_differs_from_random_initial_field_stream() -> None:
    """rank 0 的噪声流与 random 初值（同一 numerics.seed）不重合。"""
    cfg = _cfg(integrator="langevin", noise_amplitude=0.1, seed=7)
    _, integ = _build(cfg, rank=0)
    init = torch.Generator().manual_seed(7)
    assert integ.generator.initial_seed() == noise_seed(7, 0)
    assert integ.generator.initial_seed() != 7
    assert not torch.equal(
        torch.rand(16, generator=integ.generator, dtype=torch.float64),
        torch.rand(16, generator=init, dtype=torch.float64),
    )
