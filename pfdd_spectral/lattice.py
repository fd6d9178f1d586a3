"""结构化晶格与区域分解模块（中文注释版）。

主要功能：
1. 按 x 方向把三维网格切分为各 rank 的连续 slab（相邻 slab 厚度差不超过 1）；
2. 按 (i,j,k,basis) 行主序分配全局 site 编号；
3. 由原胞基元构造连接表 cmap，并生成邻居表、ghost 表与 ghost 交换列表。

边界条件统一为三方向周期。
"""

from __future__ import annotations

from dataclasses import dataclass
from itertools import product
from typing import Dict, List, Tuple

import torch

from .comm import Communicator
from .config import ConfigurationError, DomainConfig

# 原胞内基元的分数坐标。
_LATTICE_BASIS: Dict[str, List[Tuple[float, float, float]]] = {
    "sc/6n": [(0.0, 0.0, 0.0)],
    "sc/26n": [(0.0, 0.0, 0.0)],
    "bcc": [(0.0, 0.0, 0.0), (0.5, 0.5, 0.5)],
    "fcc": [(0.0, 0.0, 0.0), (0.5, 0.5, 0.0), (0.5, 0.0, 0.5), (0.0, 0.5, 0.5)],
}
# 这些样式取相邻 26 个原胞全部位点，而不是最近邻壳层。
_FULL_CUBE_STYLES = {"sc/26n"}
LATTICE_STYLES = tuple(_LATTICE_BASIS)


@dataclass(frozen=True)
class ProcessSlab:
    """单个 rank 在分解轴上的范围。"""
    rank: int
    start: int
    extent: int
    ny: int
    nz: int

    @property
    def stop(self) -> int:
        return self.start + self.extent

    @property
    def n_cells(self) -> int:
        return self.extent * self.ny * self.nz


@dataclass(frozen=True)
class Site:
    """单个 site 的只读记录。"""
    id: int
    proc: int
    index: int
    i: int
    j: int
    k: int
    basis: int
    x: float
    y: float
    z: float


@dataclass
class LatticeGeometry:
    """结构化晶格几何：网格尺寸、间距、原点、基元与连接表。"""
    nx: int
    ny: int
    nz: int
    spacing: Tuple[float, float, float]
    origin: Tuple[float, float, float]
    style: str
    basis: List[Tuple[float, float, float]]
    # cmap[basis] = [(di, dj, dk, basis2), ...]
    cmap: List[List[Tuple[int, int, int, int]]]

    @property
    def nbasis(self) -> int:
        return len(self.basis)

    @property
    def maxneigh(self) -> int:
        return max((len(c) for c in self.cmap), default=0)

    @property
    def n_sites(self) -> int:
        return self.nx * self.ny * self.nz * self.nbasis

    @property
    def reach(self) -> int:
        """连接表在 x 方向的最大跨度（决定 ghost 层数）。"""
        return max((abs(o[0]) for c in self.cmap for o in c), default=0)

    def site_id(self, i: int, j: int, k: int, basis: int = 0) -> int:
        """行主序全局编号。"""
        return ((int(i) * self.ny + int(j)) * self.nz + int(k)) * self.nbasis + int(basis)

    def site_ids(self, ijkb: torch.Tensor) -> torch.Tensor:
        """批量计算全局编号，`ijkb` 形状为 `[..., 4]`。"""
        return ((ijkb[..., 0] * self.ny + ijkb[..., 1]) * self.nz + ijkb[..., 2]) * self.nbasis + ijkb[..., 3]

    def decode_ids(self, ids: torch.Tensor) -> torch.Tensor:
        """全局编号反解为 `[N, 4]` 的 (i,j,k,basis)。"""
        b = ids % self.nbasis
        rest = ids // self.nbasis
        k = rest % self.nz
        rest = rest // self.nz
        j = rest % self.ny
        i = rest // self.ny
        return torch.stack([i, j, k, b], dim=-1)

    def position(self, i: int, j: int, k: int, basis: int = 0) -> Tuple[float, float, float]:
        """site 的笛卡尔坐标。"""
        f = self.basis[int(basis)]
        return (
            self.origin[0] + (int(i) + f[0]) * self.spacing[0],
            self.origin[1] + (int(j) + f[1]) * self.spacing[1],
            self.origin[2] + (int(k) + f[2]) * self.spacing[2],
        )


def split_extent(n: int, parts: int) -> List[Tuple[int, int]]:
    """把长度 n 均分为 parts 段，返回 `(start, extent)`；允许出现空段。"""
    base, extra = divmod(int(n), int(parts))
    out = []
    start = 0
    for r in range(int(parts)):
        ext = base + (1 if r < extra else 0)
        out.append((start, ext))
        start += ext
    return out


def decompose_slabs(nx: int, ny: int, nz: int, n_procs: int) -> List[ProcessSlab]:
    """沿 x 方向切分 slab。

    前 `nx % n_procs` 个 rank 各多分一层，因此任意两个 slab 厚度差不超过 1。
    """
    if int(nx) <= 0 or int(ny) <= 0 or int(nz) <= 0:
        raise ConfigurationError(f"Grid extents must be positive, got ({nx}, {ny}, {nz}).")
    if int(n_procs) <= 0:
        raise ConfigurationError(f"Process count must be positive, got {n_procs}.")
    if int(n_procs) > int(nx):
        raise ConfigurationError(
            f"Cannot decompose nx={nx} layers across {n_procs} processes: a slab would be empty."
        )
    return [
        ProcessSlab(rank=r, start=s, extent=e, ny=int(ny), nz=int(nz))
        for r, (s, e) in enumerate(split_extent(int(nx), int(n_procs)))
    ]


def _connectivity(style: str, basis: List[Tuple[float, float, float]]) -> List[List[Tuple[int, int, int, int]]]:
    """由基元分数坐标推导每个基元的邻居偏移。"""
    eps = 1e-6
    cmap: List[List[Tuple[int, int, int, int]]] = []
    for b1, f1 in enumerate(basis):
        cands = []
        for di, dj, dk in product((-1, 0, 1), repeat=3):
            for b2, f2 in enumerate(basis):
                if (di, dj, dk) == (0, 0, 0) and b2 == b1:
                    continue
                d = (di + f2[0] - f1[0], dj + f2[1] - f1[1], dk + f2[2] - f1[2])
                cands.append((d[0] * d[0] + d[1] * d[1] + d[2] * d[2], (di, dj, dk, b2)))
        if style in _FULL_CUBE_STYLES:
            cmap.append([c[1] for c in cands])
            continue
        dmin = min(c[0] for c in cands)
        cmap.append([c[1] for c in cands if c[0] <= dmin + eps])
    return cmap


def build_geometry(domain: DomainConfig) -> LatticeGeometry:
    """根据 DomainConfig 构造晶格几何。"""
    style = str(domain.lattice_style).strip().lower()
    if style not in _LATTICE_BASIS:
        raise ConfigurationError(
            f"Unsupported lattice style '{domain.lattice_style}'. Choose from {sorted(_LATTICE_BASIS)}."
        )
    if len(domain.lattice_spacing) != 3 or len(domain.origin) != 3:
        raise ConfigurationError("lattice_spacing and origin must have length 3.")
    if any(float(a) <= 0.0 for a in domain.lattice_spacing):
        raise ConfigurationError(f"Lattice spacing must be positive, got {domain.lattice_spacing}.")
    basis = list(_LATTICE_BASIS[style])
    return LatticeGeometry(
        nx=int(domain.nx),
        ny=int(domain.ny),
        nz=int(domain.nz),
        spacing=tuple(float(a) for a in domain.lattice_spacing),
        origin=tuple(float(a) for a in domain.origin),
        style=style,
        basis=basis,
        cmap=_connectivity(style, basis),
    )


class LatticeDecomposition:
    """单个 rank 视角下的区域分解结果。

    局部编号：先按全局编号顺序排列本 rank 拥有的 site（稠密、无空洞），
    再按全局编号顺序追加 ghost site。
    """

    def __init__(self, geometry: LatticeGeometry, n_procs: int, rank: int = 0):
        if not 0 <= int(rank) < max(int(n_procs), 1):
            raise ValueError(f"rank {rank} out of range for {n_procs} processes.")
        self.geometry = geometry
        self.n_procs = int(n_procs)
        self.rank = int(rank)
        self.slabs = decompose_slabs(geometry.nx, geometry.ny, geometry.nz, self.n_procs)
        self.slab = self.slabs[self.rank]

        owner = torch.empty(geometry.nx, dtype=torch.long)
        for s in self.slabs:
            owner[s.start : s.stop] = s.rank
        self._owner_of_layer = owner

        # 邻居偏移按基元打包为 [nbasis, maxneigh, 4]，不足处以 mask 标记。
        m = max(geometry.maxneigh, 1)
        offs = torch.zeros((geometry.nbasis, m, 4), dtype=torch.long)
        mask = torch.zeros((geometry.nbasis, m), dtype=torch.bool)
        for b, entries in enumerate(geometry.cmap):
            for n, o in enumerate(entries):
                offs[b, n] = torch.tensor(o, dtype=torch.long)
                mask[b, n] = True
        self._offsets = offs
        self._offset_mask = mask

        owned = self._layer_sites(range(self.slab.start, self.slab.stop))
        self.n_owned = int(owned.shape[0])
        self._first_id = geometry.site_id(self.slab.start, 0, 0, 0)

        nbr_ids, valid = self._neighbor_ids(owned)
        nbr_owner = self._owner_of_layer[self.geometry.decode_ids(nbr_ids)[..., 0]]
        is_ghost = valid & (nbr_owner != self.rank)
        ghost_ids = torch.unique(nbr_ids[is_ghost])
        self.n_ghost = int(ghost_ids.numel())

        self.global_ids = torch.cat([geometry.site_ids(owned), ghost_ids])
        self.siteijk = torch.cat([owned, geometry.decode_ids(ghost_ids)]) if self.n_ghost else owned
        self.site_owner = torch.cat(
            [torch.full((self.n_owned,), self.rank, dtype=torch.long), self._owner_of_layer[self.siteijk[self.n_owned :, 0]]]
        )
        self._ghost_ids = ghost_ids

        local = torch.full_like(nbr_ids, -1)
        local[valid] = self.local_index_of(nbr_ids[valid])
        self.neighbors = local

        self.recv_lists: Dict[int, torch.Tensor] = {}
        ghost_owner = self.site_owner[self.n_owned :]
        for r in range(self.n_procs):
            sel = torch.nonzero(ghost_owner == r, as_tuple=False).flatten()
            if sel.numel() > 0:
                self.recv_lists[r] = sel + self.n_owned

        self.send_lists: Dict[int, torch.Tensor] = {}
        for peer in self.slabs:
            if peer.rank == self.rank:
                continue
            needed = self._ghost_ids_of(peer)
            mine = needed[self._owner_of_layer[self.geometry.decode_ids(needed)[..., 0]] == self.rank]
            if mine.numel() > 0:
                self.send_lists[peer.rank] = mine - self._first_id

    def _layer_sites(self, layers) -> torch.Tensor:
        """给定 i 层集合，按行主序返回全部 (i,j,k,basis)。"""
        g = self.geometry
        ii = torch.tensor(list(layers), dtype=torch.long)
        if ii.numel() == 0:
            return torch.zeros((0, 4), dtype=torch.long)
        grids = torch.meshgrid(
            ii,
            torch.arange(g.ny, dtype=torch.long),
            torch.arange(g.nz, dtype=torch.long),
            torch.arange(g.nbasis, dtype=torch.long),
            indexing="ij",
        )
        return torch.stack([x.reshape(-1) for x in grids], dim=-1)

    def _neighbor_ids(self, ijkb: torch.Tensor) -> Tuple[torch.Tensor, torch.Tensor]:
        """返回邻居全局编号 `[N, maxneigh]` 及有效位 mask（周期回卷）。"""
        g = self.geometry
        offs = self._offsets[ijkb[:, 3]]
        valid = self._offset_mask[ijkb[:, 3]]
        dims = torch.tensor([g.nx, g.ny, g.nz], dtype=torch.long)
        ijk = torch.remainder(ijkb[:, None, :3] + offs[..., :3], dims)
        nbr = torch.cat([ijk, offs[..., 3:]], dim=-1)
        return g.site_ids(nbr), valid

    def _ghost_ids_of(self, slab: ProcessSlab) -> torch.Tensor:
        """计算任一 slab 的 ghost 全局编号（只需检查靠近边界的层）。"""
        reach = self.geometry.reach
        layers = sorted(
            set(range(slab.start, min(slab.start + reach, slab.stop)))
            | set(range(max(slab.stop - reach, slab.start), slab.stop))
        )
        sites = self._layer_sites(layers)
        if sites.shape[0] == 0:
            return torch.zeros((0,), dtype=torch.long)
        ids, valid = self._neighbor_ids(sites)
        owner = self._owner_of_layer[self.geometry.decode_ids(ids)[..., 0]]
        return torch.unique(ids[valid & (owner != slab.rank)])

    @property
    def n_local(self) -> int:
        return self.n_owned + self.n_ghost

    def local_index_of(self, ids: torch.Tensor) -> torch.Tensor:
        """全局编号 -> 局部编号（必须是本 rank 的 owned 或 ghost site）。"""
        ids = torch.as_tensor(ids, dtype=torch.long)
        owned_mask = (ids >= self._first_id) & (ids < self._first_id + self.n_owned)
        out = torch.empty_like(ids)
        out[owned_mask] = ids[owned_mask] - self._first_id
        rest = ids[~owned_mask]
        if rest.numel() > 0:
            pos = torch.searchsorted(self._ghost_ids, rest)
            pos_c = torch.clamp(pos, max=max(self.n_ghost - 1, 0))
            if self.n_ghost == 0 or not bool(torch.all(self._ghost_ids[pos_c] == rest)):
                raise ValueError("Some site ids are neither owned nor ghost sites of this rank.")
            out[~owned_mask] = pos + self.n_owned
        return out

    def cell_of(self, local_index: int) -> Tuple[int, int, int]:
        """局部 site 编号 -> slab 内 (i,j,k)（仅 owned site）。"""
        n = int(local_index)
        if not 0 <= n < self.n_owned:
            raise ValueError(f"Site index {local_index} is not an owned site (0 <= index < {self.n_owned}).")
        i, j, k, _ = (int(v) for v in self.siteijk[n])
        return i - self.slab.start, j, k

    def site(self, local_index: int) -> Site:
        """返回局部 site 的完整记录。"""
        n = int(local_index)
        if not 0 <= n < self.n_local:
            raise ValueError(f"Site index {local_index} out of range [0, {self.n_local}).")
        i, j, k, b = (int(v) for v in self.siteijk[n])
        x, y, z = self.geometry.position(i, j, k, b)
        return Site(
            id=int(self.global_ids[n]),
            proc=int(self.site_owner[n]),
            index=n,
            i=i,
            j=j,
            k=k,
            basis=b,
            x=x,
            y=y,
            z=z,
        )

    def exchange_ghosts(self, values: torch.Tensor, comm: Communicator) -> torch.Tensor:
        """用 owner 的数据填充 ghost，返回 `[n_owned + n_ghost, ...]`。"""
        if values.shape[0] != self.n_owned:
            raise ValueError(f"Expected {self.n_owned} owned values, got {values.shape[0]}.")
        tail = tuple(values.shape[1:])
        empty = torch.zeros((0,), dtype=torch.long)
        send = [values[self.send_lists.get(r, empty)] for r in range(self.n_procs)]
        recv_shapes = [(int(self.recv_lists.get(r, empty).numel()),) + tail for r in range(self.n_procs)]
        recv = comm.all_to_all(send, recv_shapes)
        out = torch.empty((self.n_local,) + tail, dtype=values.dtype, device=values.device)
        out[: self.n_owned] = values
        for r, idx in self.recv_lists.items():
            out[idx] = recv[r]
        return out
