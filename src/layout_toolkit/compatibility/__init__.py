"""
兼容性比较模块

提供升级前后存储布局的兼容性判断:
- 类型能否原地重新解释
- 按声明顺序逐位置比较布局
- 多个存储单元的批量比较
"""

from .findings import Severity, Compatibility, Finding, Report
from .type_oracle import TypeCompatibilityOracle
from .layout_differ import LayoutDiffer, UnitResult, ComparisonSummary, compare_unit_sets

__all__ = [
    "Severity",
    "Compatibility",
    "Finding",
    "Report",
    "TypeCompatibilityOracle",
    "LayoutDiffer",
    "UnitResult",
    "ComparisonSummary",
    "compare_unit_sets",
]
