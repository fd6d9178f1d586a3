#!/usr/bin/env python
"""配置审计脚本（中文注释版）。

用途：
1. 在仿真前检查网格分解、滑移系、弹性常数与显式步长风险；
2. 输出结构化 JSON（含 error/warning 代码列表），供自动化流水线直接消费；
3. 可选 strict 模式：发现 error 即返回非零退出码。
"""

from __future__ import annotations

import argparse
import json
from pathlib import Path
import sys

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from pfdd_spectral import audit_config, load_config, save_audit_report, summarize_audit_report


def parse_args() -> argparse.Namespace:
    """解析命令行参数。"""
    p = argparse.ArgumentParser(description="Audit a PFDD case configuration before running.")
    p.add_argument("--config", default="configs/hcp_notch.yaml", help="YAML config path.")
    p.add_argument("--n-procs", type=int, default=0, help="Check the decomposition for this many ranks.")
    p.add_argument(
        "--output",
        default="artifacts/validation/config_audit.json",
        help="Audit report output path (JSON).",
    )
    p.add_argument(
        "--strict",
        action="store_true",
        help="Fail (exit code=2) when audit contains errors.",
    )
    return p.parse_args()


def main() -> None:
    """脚本主流程。"""
    args = parse_args()
    cfg = load_config(args.config)
    if args.n_procs > 0:
        cfg.domain.n_procs = args.n_procs
    report = audit_config(cfg, config_path=args.config)
    out_path = save_audit_report(report, args.output)
    print(
        json.dumps(
            {
                "summary": summarize_audit_report(report),
                "passed": report.passed,
                "errors": report.codes("error"),
                "warnings": report.codes("warning"),
                "report": str(out_path.resolve()),
            },
            ensure_ascii=False,
            indent=2,
        )
    )
    if args.strict and not report.passed:
        raise SystemExit(2)


if __name__ == "__main__":
    main()
