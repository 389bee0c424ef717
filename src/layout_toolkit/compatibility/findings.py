"""
比较结果数据结构

- Severity: 单条结果的严重程度
- Compatibility: 类型兼容性判断结果
- Finding: 一对(或单侧)变量的比较结果
- Report: 一次布局比较的全部结果
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from ..storage_layout.types import Variable


class Severity(Enum):
    """结果严重程度"""
    OK = "ok"
    WARNING = "warning"                        # 位模式不变, 语义变化, 需人工复核
    UNSAFE_APPEND = "unsafe_append"            # 追加的变量占用了旧布局已使用的存储
    UNSAFE_REMOVE = "unsafe_remove"            # 删除了已声明的变量
    UNSAFE_TYPE_CHANGE = "unsafe_type_change"  # 类型无法原地重新解释
    UNSAFE_RESIZE = "unsafe_resize"            # 前面的变量宽度变化导致位置偏移

    @property
    def unsafe(self) -> bool:
        return self not in (Severity.OK, Severity.WARNING)

    @property
    def rank(self) -> int:
        if self is Severity.OK:
            return 0
        if self is Severity.WARNING:
            return 1
        return 2


def worst(*severities: Severity) -> Severity:
    """取最严重的等级 (同级时保留先出现的)"""
    result = Severity.OK
    for severity in severities:
        if severity.rank > result.rank:
            result = severity
    return result


@dataclass(frozen=True)
class Compatibility:
    """类型兼容性判断结果"""
    severity: Severity
    reason: str

    @property
    def compatible(self) -> bool:
        return not self.severity.unsafe

    @classmethod
    def ok(cls, reason: str = "类型一致") -> "Compatibility":
        return cls(Severity.OK, reason)

    @classmethod
    def warning(cls, reason: str) -> "Compatibility":
        return cls(Severity.WARNING, reason)

    @classmethod
    def incompatible(cls, reason: str) -> "Compatibility":
        return cls(Severity.UNSAFE_TYPE_CHANGE, reason)


@dataclass(frozen=True)
class Finding:
    """单个变量位置的比较结果"""
    severity: Severity
    index: int
    old: Optional[Variable]
    new: Optional[Variable]
    explanation: str

    @property
    def name(self) -> str:
        var = self.new if self.new is not None else self.old
        return var.qualified_name()

    def to_dict(self) -> Dict[str, Any]:
        return {
            'severity': self.severity.value,
            'index': self.index,
            'old': _variable_dict(self.old),
            'new': _variable_dict(self.new),
            'explanation': self.explanation,
        }


def _variable_dict(var: Optional[Variable]) -> Optional[Dict[str, Any]]:
    if var is None:
        return None
    return {'name': var.qualified_name(), 'type': var.type.describe()}


@dataclass(frozen=True)
class Report:
    """
    一次布局比较的报告

    ok 为 True 当且仅当没有任何 UNSAFE_* 结果; WARNING 只提示人工复核, 不阻断。
    """
    name: str
    findings: Tuple[Finding, ...] = ()

    @property
    def ok(self) -> bool:
        return not any(f.severity.unsafe for f in self.findings)

    @property
    def errors(self) -> List[Finding]:
        return [f for f in self.findings if f.severity.unsafe]

    @property
    def warnings(self) -> List[Finding]:
        return [f for f in self.findings if f.severity is Severity.WARNING]

    def explain(self, verbose: bool = False) -> str:
        """
        生成可读的报告文本

        默认只列出 WARNING 和 UNSAFE_*; verbose 时列出所有结果。
        """
        lines = []
        for finding in self.findings:
            if finding.severity is Severity.OK and not verbose:
                continue
            lines.append(
                f"  [{finding.severity.value}] #{finding.index} {finding.name}: {finding.explanation}"
            )
        return "\n".join(lines)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'name': self.name,
            'ok': self.ok,
            'findings': [f.to_dict() for f in self.findings],
        }
