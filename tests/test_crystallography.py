"""滑移系与倒易基投影测试。"""

from __future__ import annotations

import math

import pytest
import torch

from pfdd_spectral import audit_config
from pfdd_spectral.config import ConfigurationError, MaterialConfig, SimulationConfig
from pfdd_spectral.crystallography import (
    SLIP_PRESETS,
    apply_preset_defaults,
    build_slip_systems,
    hcp_direction_mb_to_cart,
    hcp_plane_mb_to_cart,
    primitive_vectors,
    project_to_reciprocal,
    reciprocal_basis,
    resolve_slip_pairs,
)

UNIT = (1.0, 1.0, 1.0)


def _dot3(a, b) -> float:
    return float(a[0] * b[0] + a[1] * b[1] + a[2] * b[2])


def _norm(v) -> float:
    return math.sqrt(_dot3(v, v))


def test_hcp_basal_burgers_directions_are_120_degrees_apart() -> None:
    s = build_slip_systems(MaterialConfig(crystal_structure="hcp_basal", oflag=0.0), UNIT)
    assert len(s) == 3
    angles = [math.degrees(math.atan2(x.burgers[1], x.burgers[0])) % 360.0 for x in s.systems]
    assert angles == pytest.approx([0.0, 120.0, 240.0], abs=1e-9)
    for x in s.systems:
        assert x.normal == pytest.approx((0.0, 0.0, 1.0))


@pytest.mark.parametrize("name,count", [("fcc_111", 1), ("fcc_2slip", 2), ("bcc_110", 1), ("hcp_basal", 3)])
def test_presets_are_orthonormal(name: str, count: int) -> None:
    pairs = resolve_slip_pairs(MaterialConfig(crystal_structure=name))
    assert len(pairs) == count
    for _, n, b in pairs:
        assert float(torch.linalg.norm(n)) == pytest.approx(1.0)
        assert float(torch.linalg.norm(b)) == pytest.approx(1.0)
        assert abs(float(torch.dot(n, b))) < 1e-12


def test_screw_character_rotates_burgers_in_plane() -> None:
    edge = resolve_slip_pairs(MaterialConfig(crystal_structure="fcc_111", oflag=0.0))[0]
    screw = resolve_slip_pairs(MaterialConfig(crystal_structure="fcc_111", oflag=1.0))[0]
    assert torch.allclose(edge[1], screw[1])
    assert abs(float(torch.dot(edge[2], screw[2]))) < 1e-12
    assert abs(float(torch.dot(screw[1], screw[2]))) < 1e-12


def test_slip_count_selection() -> None:
    s = build_slip_systems(MaterialConfig(crystal_structure="hcp_basal", n_slip_systems=2), UNIT)
    assert [x.name for x in s.systems] == ["basal_1", "basal_2"]
    with pytest.raises(ConfigurationError):
        build_slip_systems(MaterialConfig(crystal_structure="hcp_basal", n_slip_systems=4), UNIT)


def test_unknown_structure_is_configuration_error() -> None:
    with pytest.raises(ConfigurationError):
        build_slip_systems(MaterialConfig(crystal_structure="tetragonal"), UNIT)


def test_reciprocal_basis_is_dual_to_primitive_cell() -> None:
    a = torch.tensor([[0.0, 0.5, 0.5], [0.5, 0.0, 0.5], [0.5, 0.5, 0.0]], dtype=torch.float64)
    b = reciprocal_basis(a)
    assert torch.allclose(a @ b.T, 2.0 * math.pi * torch.eye(3, dtype=torch.float64))


def test_orthogonal_cell_projection_is_identity() -> None:
    s = build_slip_systems(MaterialConfig(crystal_structure="bcc_110"), (1.0, 2.0, 0.5))
    for x in s.systems:
        assert x.rotated_normal == pytest.approx(x.normal)
        assert x.rotated_burgers == pytest.approx(x.burgers)


@pytest.mark.parametrize(
    "structure,spacing,cell",
    [
        ("fcc_111", UNIT, []),
        ("fcc_2slip", (1.0, 2.0, 0.5), []),
        ("bcc_110", UNIT, [[2.0, 0.0, 0.0], [0.0, 1.0, 0.0], [0.0, 0.0, 3.0]]),
        ("hcp_basal", (1.0, 1.0, 1.624), []),
    ],
)
def test_projection_is_idempotent_per_vector(structure: str, spacing, cell) -> None:
    """投影后的向量再次投影不变，且保持单位长度。"""
    mat = MaterialConfig(crystal_structure=structure, oflag=1.0, primitive_vectors=cell)
    s = build_slip_systems(mat, spacing)
    basis = reciprocal_basis(primitive_vectors(mat, spacing))
    for x in s.systems:
        for v in (x.rotated_normal, x.rotated_burgers):
            t = torch.tensor(v, dtype=torch.float64)
            assert torch.allclose(project_to_reciprocal(t, basis), t, atol=1e-12)
            assert float(torch.linalg.norm(t)) == pytest.approx(1.0)
    again = s.project(basis)
    assert torch.allclose(again.normals(), s.normals(), atol=1e-12)
    assert torch.allclose(again.burgers(), s.burgers(), atol=1e-12)


@pytest.mark.parametrize(
    "cell",
    [
        [[0.0, 0.5, 0.5], [0.5, 0.0, 0.5], [0.5, 0.5, 0.0]],
        [[0.8660254037844386, 0.5, 0.0], [-0.5, 0.8660254037844386, 0.0], [0.0, 0.0, 1.0]],
        [[-1.0, 0.0, 0.0], [0.0, 1.0, 0.0], [0.0, 0.0, 1.0]],
    ],
)
def test_non_axis_aligned_cell_is_rejected(cell) -> None:
    """斜原胞、旋转原胞与反向原胞都会改变投影后的本征应变，构造时拒绝。"""
    mat = MaterialConfig(crystal_structure="fcc_111", primitive_vectors=cell)
    with pytest.raises(ConfigurationError):
        build_slip_systems(mat, UNIT)
    cfg = SimulationConfig()
    cfg.material = mat
    assert "PRIMITIVE_VECTORS_NOT_AXIS_ALIGNED" in audit_config(cfg).codes("error")


def test_miller_bravais_conversion() -> None:
    d = hcp_direction_mb_to_cart([2, -1, -1, 0], c_over_a=1.624)
    assert torch.allclose(d / torch.linalg.norm(d), torch.tensor([1.0, 0.0, 0.0], dtype=torch.float64))
    n = hcp_plane_mb_to_cart([0, 0, 0, 1], c_over_a=1.624)
    assert torch.allclose(n / torch.linalg.norm(n), torch.tensor([0.0, 0.0, 1.0], dtype=torch.float64))
    # 柱面 (10-10) 法向垂直于 c 轴，且与 [-12-10] 正交。
    p = hcp_plane_mb_to_cart([1, 0, -1, 0], c_over_a=1.624)
    a = hcp_direction_mb_to_cart([-1, 2, -1, 0], c_over_a=1.624)
    assert abs(float(p[2])) < 1e-12
    assert abs(float(torch.dot(p, a))) < 1e-9


def test_custom_systems_from_both_notations() -> None:
    mat = MaterialConfig(
        crystal_structure="custom",
        slip_systems=[
            {"name": "cart", "normal": [0.0, 0.0, 2.0], "burgers": [0.0, 3.0, 0.0]},
            {"name": "mb", "plane_mb": [0, 0, 0, 1], "direction_mb": [2, -1, -1, 0]},
        ],
    )
    s = build_slip_systems(mat, UNIT)
    assert [x.name for x in s.systems] == ["cart", "mb"]
    assert s.systems[0].burgers == pytest.approx((0.0, 1.0, 0.0))
    assert s.systems[1].burgers == pytest.approx((1.0, 0.0, 0.0))
    assert _norm(s.systems[1].normal) == pytest.approx(1.0)


def test_custom_system_out_of_plane_is_rejected() -> None:
    mat = MaterialConfig(
        crystal_structure="custom",
        slip_systems=[{"normal": [0.0, 0.0, 1.0], "burgers": [0.0, 1.0, 1.0]}],
    )
    with pytest.raises(ConfigurationError):
        build_slip_systems(mat, UNIT)


def test_preset_defaults_update_grid_and_mobility() -> None:
    cfg = SimulationConfig()
    cfg.material.crystal_structure = "hcp_basal"
    apply_preset_defaults(cfg)
    assert (cfg.domain.nx, cfg.domain.ny, cfg.domain.nz) == SLIP_PRESETS["hcp_basal"].default_grid
    assert cfg.numerics.mobility == SLIP_PRESETS["hcp_basal"].default_mobility
