"""输入输出模块（中文注释版）。

提供能力：
- 快照保存（NPZ，原样保存交错实/虚部扁平缓冲区与 slab 布局元数据）
- 快照读取并还原为 `[C, lnx, ny, nz]` 复数场
- 历史曲线 CSV 导出
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, List

import numpy as np
import torch

from .indexing import TENSOR_COMPONENTS

SNAPSHOT_META_KEYS = ("rank", "slab_start", "slab_extent", "nx", "ny", "nz", "n_slip", "nbasis", "step", "time")


def ensure_dir(path: str | Path) -> Path:
    """确保目录存在，不存在则递归创建。"""
    p = Path(path)
    p.mkdir(parents=True, exist_ok=True)
    return p


def tensor_to_np(x: torch.Tensor) -> np.ndarray:
    """将 torch 张量安全转为 numpy 数组。"""
    return x.detach().cpu().numpy()


def save_snapshot_npz(
    out_dir: Path,
    step: int,
    buffers: Dict[str, torch.Tensor],
    meta: Dict[str, Any],
) -> Path:
    """保存单个 rank 的单步快照为压缩 NPZ。

    文件名 `snapshot_{step:06d}_r{rank:03d}.npz`；缓冲区保持扁平交错布局。
    """
    missing = [k for k in SNAPSHOT_META_KEYS if k not in meta]
    if missing:
        raise ValueError(f"Snapshot metadata missing keys: {missing}")
    payload = {k: tensor_to_np(v) for k, v in buffers.items()}
    for k in SNAPSHOT_META_KEYS:
        payload[k] = np.asarray(meta[k])
    p = Path(out_dir) / f"snapshot_{int(step):06d}_r{int(meta['rank']):03d}.npz"
    np.savez_compressed(p, **payload)
    return p


def _complex_from_flat(flat: np.ndarray, channels: int, lnx: int, ny: int, nz: int) -> np.ndarray:
    expected = 2 * channels * lnx * ny * nz
    if flat.size != expected:
        raise ValueError(f"Flat buffer has {flat.size} entries, expected {expected}.")
    pairs = flat.reshape(channels, lnx, ny, nz, 2)
    return pairs[..., 0] + 1j * pairs[..., 1]


def load_snapshot_npz(path: str | Path) -> Dict[str, Any]:
    """读取快照，返回元数据与复数场 `xi` `[S,lnx,ny,nz]`、`stress`/`strain` `[6,lnx,ny,nz]`。"""
    with np.load(Path(path)) as data:
        meta = {k: data[k].item() for k in SNAPSHOT_META_KEYS}
        lnx, ny, nz = int(meta["slab_extent"]), int(meta["ny"]), int(meta["nz"])
        out: Dict[str, Any] = dict(meta)
        out["xi"] = _complex_from_flat(data["xi"], int(meta["n_slip"]), lnx, ny, nz)
        for name in ("stress", "strain"):
            if name in data.files:
                out[name] = _complex_from_flat(data[name], len(TENSOR_COMPONENTS), lnx, ny, nz)
    return out


def save_history_csv(out_dir: Path, history: List[Dict[str, float]]) -> Path:
    """将逐步历史量写入 CSV。"""
    p = Path(out_dir) / "history.csv"
    if not history:
        p.write_text("step,time\n", encoding="utf-8")
        return p
    keys = list(history[0].keys())
    lines = [",".join(keys)]
    for row in history:
        lines.append(",".join(str(row[k]) for k in keys))
    p.write_text("\n".join(lines) + "\n", encoding="utf-8")
    return p
