"""项目对外入口（中文注释版）。

导出最常用的对象：
- `SimulationConfig` / `load_config`：配置数据结构与读取函数
- `PFDDSimulator` / `run_in_process`：主求解器与进程内多 rank 运行
- 审计报告相关函数
"""

from .config import ConfigurationError, SimulationConfig, load_config
from .simulator import PFDDSimulator, run_in_process
from .validation import ConfigAuditReport, audit_config, save_audit_report, summarize_audit_report

__all__ = [
    "ConfigurationError",
    "SimulationConfig",
    "load_config",
    "PFDDSimulator",
    "run_in_process",
    "ConfigAuditReport",
    "audit_config",
    "save_audit_report",
    "summarize_audit_report",
]
