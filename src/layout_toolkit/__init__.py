"""
Layout Toolkit - 可升级合约存储布局兼容性检查

模块结构:
- storage_layout: 类型描述与槽位计算
- compatibility: 类型兼容性判断与布局比较
- layout_loader: JSON布局快照加载
- compare_layout: 命令行入口 (CI门禁)
"""

from .errors import LayoutError, MalformedLayoutError, StructuralLayoutError, ConfigError
from .storage_layout import Layout, TypeDescriptor, TypeKind, Variable, StorageLayoutCalculator
from .compatibility import LayoutDiffer, Report, Severity, TypeCompatibilityOracle

__version__ = "1.0.0"

__all__ = [
    "LayoutError",
    "MalformedLayoutError",
    "StructuralLayoutError",
    "ConfigError",
    "Layout",
    "TypeDescriptor",
    "TypeKind",
    "Variable",
    "StorageLayoutCalculator",
    "LayoutDiffer",
    "Report",
    "Severity",
    "TypeCompatibilityOracle",
]
