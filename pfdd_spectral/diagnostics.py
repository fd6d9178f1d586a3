"""全局应力/应变诊断（中文注释版）。

对应力、应变两块缓冲区的实部求体积平均，跨 rank 用 all_reduce 求和。
`compute` 是集合操作，所有 rank 必须同时调用。
"""

from __future__ import annotations

from typing import Dict, Tuple

import torch

from .engine import SpectralFieldEngine
from .indexing import TENSOR_COMPONENTS


class StrainDiagnostic:
    """全局平均应力与应变。"""

    columns: Tuple[str, ...] = tuple(f"s{c}" for c in TENSOR_COMPONENTS) + tuple(f"e{c}" for c in TENSOR_COMPONENTS)

    def __init__(self, engine: SpectralFieldEngine):
        self.engine = engine
        self.n_cells = engine.nx * engine.ny * engine.nz

    def compute(self) -> Dict[str, float]:
        sig = self.engine.stress_view().real.sum(dim=(1, 2, 3))
        eps = self.engine.strain_view().real.sum(dim=(1, 2, 3))
        total = self.engine.comm.all_reduce_sum(torch.cat([sig, eps]).cpu())
        avg = total / float(self.n_cells)
        return {name: float(v) for name, v in zip(self.columns, avg)}

    def stats_header(self) -> str:
        return "".join(" %10s" % c for c in self.columns)

    def stats(self) -> str:
        values = self.compute()
        return "".join(" %10g" % values[c] for c in self.columns)
