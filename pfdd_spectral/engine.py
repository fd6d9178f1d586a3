"""谱场引擎（中文注释版）。

每个 rank 持有：
1. 序参量 ξ、应力、应变三块扁平实数缓冲区（实部/虚部交错存储）；
2. 频率 y-slab 上的应力/应变响应表（初始化后只读）。

一次 `solve()`：
    ξ (x-slab) --FFT(y,z)--> all_to_all 转置 --FFT(x)--> ξ(k) (y-slab)
    ξ(k) 与响应表收缩得到 ε(k), σ(k)
    ε(k), σ(k) --IFFT(x)--> all_to_all 转置 --IFFT(y,z)--> ε, σ (x-slab)
最后叠加外加均匀应变并同步。
"""

from __future__ import annotations

import logging
from typing import List, Sequence, Tuple

import torch

from .comm import Communicator, SerialCommunicator
from .config import MaterialConfig
from .crystallography import SlipSystemSet
from .indexing import TENSOR_COMPONENTS, FieldLayout, parse_quantity
from .lattice import LatticeDecomposition, ProcessSlab, split_extent
from .operators import (
    double_contract,
    eigenstrain_tensors,
    green_response,
    isotropic_stiffness,
    tensor_to_voigt,
    voigt_to_tensor,
    wavevectors,
)

logger = logging.getLogger(__name__)

N_COMPONENTS = len(TENSOR_COMPONENTS)


class BufferAllocationError(RuntimeError):
    """缓冲区重新分配失败。"""


class FieldBuffer:
    """可变长度的扁平实数缓冲区。

    `resize` 先申请新存储并拷贝重叠部分，成功后才替换旧存储；
    申请失败时抛出 `BufferAllocationError`，原数据保持不变。
    """

    def __init__(self, length: int = 0, *, dtype: torch.dtype = torch.float64, device: torch.device | str = "cpu"):
        self.dtype = dtype
        self.device = torch.device(device)
        self.data = self.allocate(length)

    def __len__(self) -> int:
        return int(self.data.numel())

    def allocate(self, length: int) -> torch.Tensor:
        """申请新的零初始化存储（不修改当前缓冲区）。"""
        try:
            return torch.zeros(int(length), dtype=self.dtype, device=self.device)
        except (RuntimeError, MemoryError) as exc:
            raise BufferAllocationError(f"Failed to allocate field buffer of length {length}: {exc}") from exc

    def adopt(self, storage: torch.Tensor, keep: bool = True) -> None:
        """以新存储替换当前缓冲区；keep=True 时保留扁平前缀的重叠数据。"""
        n = min(int(storage.numel()), len(self)) if keep else 0
        if n > 0:
            storage[:n] = self.data[:n]
        self.data = storage

    def resize(self, length: int) -> None:
        self.adopt(self.allocate(length))

    def complex_view(self, channels: int, local_nx: int, ny: int, nz: int) -> torch.Tensor:
        """返回 `[C, lnx, ny, nz]` 复数视图（与缓冲区共享存储）。"""
        return torch.view_as_complex(self.data.view(int(channels), int(local_nx), int(ny), int(nz), 2))


def _fft_along(x: torch.Tensor, dims: Sequence[int], *, inverse: bool = False) -> torch.Tensor:
    """沿给定维度做 FFT；空 slab 直接返回副本。"""
    if x.numel() == 0:
        return x.clone()
    if inverse:
        return torch.fft.ifftn(x, dim=tuple(dims))
    return torch.fft.fftn(x, dim=tuple(dims))


class SpectralFieldEngine:
    """分布式谱弹性求解与场缓冲区管理。"""

    def __init__(
        self,
        decomposition: LatticeDecomposition,
        slip_systems: SlipSystemSet,
        material: MaterialConfig,
        comm: Communicator | None = None,
        *,
        device: torch.device | str = "cpu",
        dtype: torch.dtype = torch.float64,
    ):
        self.decomposition = decomposition
        self.comm = comm if comm is not None else SerialCommunicator()
        if self.comm.size != decomposition.n_procs or self.comm.rank != decomposition.rank:
            raise ValueError(
                f"Communicator (rank {self.comm.rank}/{self.comm.size}) does not match decomposition "
                f"(rank {decomposition.rank}/{decomposition.n_procs})."
            )
        self.slip_systems = slip_systems
        self.n_slip = len(slip_systems)
        self.device = torch.device(device)
        self.dtype = dtype

        g = decomposition.geometry
        self.nx, self.ny, self.nz = g.nx, g.ny, g.nz
        # 频率空间按 y 切分；ny 小于 rank 数时允许空 slab。
        self.freq_slabs: List[ProcessSlab] = [
            ProcessSlab(rank=r, start=s, extent=e, ny=self.nx, nz=self.nz)
            for r, (s, e) in enumerate(split_extent(self.ny, decomposition.n_procs))
        ]
        self.freq_slab = self.freq_slabs[decomposition.rank]

        # 组件在构造时拷贝所需材料参数，此后不再读取配置。
        self.lam = float(material.lambda_)
        self.mu = float(material.mu)
        self.stiffness = isotropic_stiffness(self.lam, self.mu, dtype=dtype).to(self.device)
        self.eigenstrain = eigenstrain_tensors(
            slip_systems.normals(dtype=dtype),
            slip_systems.burgers(dtype=dtype),
            material.burgers_magnitude,
            material.interplanar_spacing,
        ).to(self.device)
        applied = voigt_to_tensor(torch.tensor([float(v) for v in material.applied_strain], dtype=dtype))
        self.applied_strain = tensor_to_voigt(applied).to(self.device)
        self.applied_stress = tensor_to_voigt(double_contract(self.stiffness.cpu(), applied)).to(self.device)

        self.layout = FieldLayout(decomposition.slab.extent, self.ny, self.nz, self.n_slip)
        self._xi = FieldBuffer(0, dtype=dtype, device=self.device)
        self._stress = FieldBuffer(0, dtype=dtype, device=self.device)
        self._strain = FieldBuffer(0, dtype=dtype, device=self.device)
        self.reallocate()
        self._build_operators(g.spacing)

    def _build_operators(self, spacing: Tuple[float, float, float]) -> None:
        kx, ky, kz = wavevectors((self.nx, self.ny, self.nz), spacing, device=self.device, dtype=self.dtype)
        fs = self.freq_slab
        self.strain_op, self.stress_op = green_response(
            kx, ky[fs.start : fs.stop], kz, self.eigenstrain, self.lam, self.mu
        )
        logger.debug(
            "rank %d: operator table %s on frequency slab y=[%d, %d)",
            self.decomposition.rank,
            tuple(self.strain_op.shape),
            fs.start,
            fs.stop,
        )

    def reallocate(self) -> None:
        """按当前 slab 尺寸重新分配三块缓冲区（全部申请成功后才替换）。

        slab 形状不变时保留原有场值；形状改变时通道步长 lN1*N2*N3 随之改变，
        旧数据无法按扁平前缀对应到新单元，三块缓冲区一律清零。
        """
        layout = FieldLayout(self.decomposition.slab.extent, self.ny, self.nz, self.n_slip)
        xi = self._xi.allocate(layout.xi_length)
        stress = self._stress.allocate(layout.tensor_length)
        strain = self._strain.allocate(layout.tensor_length)
        keep = layout == self.layout
        self._xi.adopt(xi, keep)
        self._stress.adopt(stress, keep)
        self._strain.adopt(strain, keep)
        self.layout = layout

    def _view(self, buf: FieldBuffer, channels: int) -> torch.Tensor:
        return buf.complex_view(channels, self.layout.local_nx, self.ny, self.nz)

    def forward_transform(self, field: torch.Tensor) -> torch.Tensor:
        """`[C, lnx, ny, nz]` x-slab -> `[C, nx, lny, nz]` 频率 y-slab。"""
        c = int(field.shape[0])
        a = _fft_along(field, (2, 3))
        send = [a[:, :, s.start : s.stop, :].contiguous() for s in self.freq_slabs]
        recv_shapes = [(c, s.extent, self.freq_slab.extent, self.nz) for s in self.decomposition.slabs]
        parts = self.comm.all_to_all(send, recv_shapes)
        return _fft_along(torch.cat(parts, dim=1), (1,))

    def inverse_transform(self, freq: torch.Tensor) -> torch.Tensor:
        """`forward_transform` 的逆过程。"""
        c = int(freq.shape[0])
        a = _fft_along(freq, (1,), inverse=True)
        send = [a[:, s.start : s.stop].contiguous() for s in self.decomposition.slabs]
        recv_shapes = [(c, self.decomposition.slab.extent, s.extent, self.nz) for s in self.freq_slabs]
        parts = self.comm.all_to_all(send, recv_shapes)
        return _fft_along(torch.cat(parts, dim=2), (2, 3), inverse=True)

    def solve(self) -> None:
        """由当前序参量计算应力与应变，覆盖两块缓冲区。"""
        xi_k = self.forward_transform(self.order_parameter_view())
        w = xi_k[:, None]
        eps_k = (self.strain_op * w).sum(dim=0)
        sig_k = (self.stress_op * w).sum(dim=0)
        out = self.inverse_transform(torch.cat([eps_k, sig_k], dim=0))
        shape = (N_COMPONENTS, 1, 1, 1)
        self.strain_view().copy_(out[:N_COMPONENTS] + self.applied_strain.view(shape))
        self.stress_view().copy_(out[N_COMPONENTS:] + self.applied_stress.view(shape))
        self.comm.barrier()

    # ---- 场视图（共享存储） ----
    def order_parameter_view(self) -> torch.Tensor:
        return self._view(self._xi, self.n_slip)

    def stress_view(self) -> torch.Tensor:
        return self._view(self._stress, N_COMPONENTS)

    def strain_view(self) -> torch.Tensor:
        return self._view(self._strain, N_COMPONENTS)

    # ---- 场拷贝 ----
    def order_parameter_field(self) -> torch.Tensor:
        return self.order_parameter_view().clone()

    def stress_field(self) -> torch.Tensor:
        return self.stress_view().clone()

    def strain_field(self) -> torch.Tensor:
        return self.strain_view().clone()

    def assign_order_parameter(self, field: torch.Tensor) -> None:
        """整体替换序参量；实数输入视为虚部为 0。"""
        view = self.order_parameter_view()
        if tuple(field.shape) != tuple(view.shape):
            raise ValueError(f"Order parameter shape {tuple(field.shape)} does not match {tuple(view.shape)}.")
        view.copy_(field.to(device=view.device, dtype=view.dtype))

    def raw_buffers(self) -> dict:
        """扁平交错缓冲区（供快照使用，不拷贝）。"""
        return {"xi": self._xi.data, "stress": self._stress.data, "strain": self._strain.data}

    # ---- 单点访问器 ----
    def value(self, local_site: int, quantity: str) -> float:
        """按选择子名称读取单个 site 的数值，如 `xi1_re`、`sxy`、`ezx`。

        `xi{s}` 中的 s 从 1 开始计数，与 `order_parameter(site, s - 1)` 相同。
        """
        q = parse_quantity(quantity, self.n_slip)
        i, j, k = self.decomposition.cell_of(local_site)
        if q.kind == "xi":
            return float(self._xi.data[self.layout.xi_index(i, j, k, q.channel, q.imag)])
        buf = self._stress if q.kind == "stress" else self._strain
        return float(buf.data[self.layout.tensor_index(i, j, k, q.channel, q.imag)])

    def order_parameter(self, local_site: int, slip: int, imag: bool = False) -> float:
        """读取单个 site 的序参量。

        `slip` 从 0 开始计数（与 `order_parameter_field()` 的第 0 维一致）；
        `value()` 的 `xi{s}_re` 选择子则从 1 开始，`xi1_re` 对应 `slip=0`。
        """
        i, j, k = self.decomposition.cell_of(local_site)
        return float(self._xi.data[self.layout.xi_index(i, j, k, slip, imag)])

    def stress(self, local_site: int, component: int | str) -> float:
        i, j, k = self.decomposition.cell_of(local_site)
        return float(self._stress.data[self.layout.tensor_index(i, j, k, component)])

    def strain(self, local_site: int, component: int | str) -> float:
        i, j, k = self.decomposition.cell_of(local_site)
        return float(self._strain.data[self.layout.tensor_index(i, j, k, component)])
