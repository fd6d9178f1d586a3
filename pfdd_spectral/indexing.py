"""扁平缓冲区索引工具（中文注释版）。

序参量、应力、应变三类缓冲区共用一个索引公式：

    na = 2*(i*N2*N3 + j*N3 + k + channel*lN1*N2*N3) + part

其中 (i,j,k) 为 slab 内坐标，channel 为滑移系编号或张量分量编号，
part=0/1 分别对应实部/虚部。所有访问器都只通过 `FieldLayout` 计算偏移。
"""

from __future__ import annotations

from dataclasses import dataclass
import re
from typing import Dict, Tuple

# 对称张量只存 6 个独立分量。
TENSOR_COMPONENTS: Tuple[str, ...] = ("xx", "yy", "zz", "xy", "xz", "yz")
VOIGT_PAIRS: Tuple[Tuple[int, int], ...] = ((0, 0), (1, 1), (2, 2), (0, 1), (0, 2), (1, 2))
_AXIS = {"x": 0, "y": 1, "z": 2}


def component_index(component: str) -> int:
    """张量分量名 -> 存储编号；`yx` 与 `xy` 等价。"""
    c = str(component).strip().lower()
    if len(c) != 2 or c[0] not in _AXIS or c[1] not in _AXIS:
        raise ValueError(f"Unknown tensor component '{component}'. Use two of x/y/z, e.g. 'xy'.")
    a, b = sorted((_AXIS[c[0]], _AXIS[c[1]]))
    return VOIGT_PAIRS.index((a, b))


@dataclass(frozen=True)
class FieldLayout:
    """单个 rank 的缓冲区布局。"""
    local_nx: int
    ny: int
    nz: int
    n_slip: int

    @property
    def local_size(self) -> int:
        """lN1*N2*N3。"""
        return self.local_nx * self.ny * self.nz

    @property
    def xi_length(self) -> int:
        return 2 * self.local_size * self.n_slip

    @property
    def tensor_length(self) -> int:
        return 2 * self.local_size * len(TENSOR_COMPONENTS)

    def _cell(self, i: int, j: int, k: int) -> int:
        if not (0 <= i < self.local_nx and 0 <= j < self.ny and 0 <= k < self.nz):
            raise ValueError(
                f"Cell ({i}, {j}, {k}) outside local extents ({self.local_nx}, {self.ny}, {self.nz})."
            )
        return i * self.ny * self.nz + j * self.nz + k

    def flat_index(self, i: int, j: int, k: int, channel: int, n_channels: int, imag: bool = False) -> int:
        """通用公式；channel 必须落在 [0, n_channels)。"""
        if not 0 <= int(channel) < int(n_channels):
            raise ValueError(f"Channel {channel} out of range [0, {n_channels}).")
        return 2 * (self._cell(i, j, k) + int(channel) * self.local_size) + (1 if imag else 0)

    def xi_index(self, i: int, j: int, k: int, slip: int, imag: bool = False) -> int:
        return self.flat_index(i, j, k, slip, self.n_slip, imag)

    def tensor_index(self, i: int, j: int, k: int, component: int | str, imag: bool = False) -> int:
        c = component_index(component) if isinstance(component, str) else int(component)
        return self.flat_index(i, j, k, c, len(TENSOR_COMPONENTS), imag)


@dataclass(frozen=True)
class Quantity:
    """访问器选择子：kind 为 xi / stress / strain。"""
    kind: str
    channel: int
    imag: bool = False


_XI_PATTERN = re.compile(r"^xi(\d+)_(re|im)$")
_KIND_BY_PREFIX: Dict[str, str] = {"s": "stress", "e": "strain"}


def parse_quantity(name: str, n_slip: int) -> Quantity:
    """解析选择子名称。

    - `xi1_re` / `xi1_im`：第 1 个滑移系序参量的实部 / 虚部（编号从 1 开始）；
    - `sxx`, `syz`, `szy`...：应力分量；
    - `exx`, `exy`, `eyx`...：应变分量。

    非法名称或超出滑移系数量时抛出 ValueError。
    """
    q = str(name).strip().lower()
    m = _XI_PATTERN.match(q)
    if m:
        slip = int(m.group(1)) - 1
        if not 0 <= slip < int(n_slip):
            raise ValueError(f"Quantity '{name}' refers to slip system {slip + 1}, but only {n_slip} exist.")
        return Quantity("xi", slip, m.group(2) == "im")
    if len(q) == 3 and q[0] in _KIND_BY_PREFIX:
        return Quantity(_KIND_BY_PREFIX[q[0]], component_index(q[1:]))
    raise ValueError(f"Unknown quantity selector '{name}'.")
