"""Pytest session bootstrap.

确保仓库根目录位于 `sys.path`，便于测试直接导入 `pfdd_spectral`。
"""

from __future__ import annotations

import sys
from pathlib import Path


ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))
