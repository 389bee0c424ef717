"""
按声明顺序逐位置匹配两组已定位的变量

顶层布局和struct成员列表共用这套规则 (append-only):
- 两侧都存在: 类型检查 + 位置检查
- 只有旧的: 删除, 不安全
- 只有新的: 末尾追加, 安全 (除非占用了旧布局已使用的字节)
"""

from typing import List, Optional, Sequence

from ..storage_layout.types import PositionedVariable
from .findings import Finding, Severity


def match_positioned(
    old: Sequence[PositionedVariable],
    new: Sequence[PositionedVariable],
    oracle
) -> List[Finding]:
    """
    逐位置比较

    Args:
        old: 旧版本已定位变量
        new: 新版本已定位变量
        oracle: 提供 check(old_type, new_type) -> Compatibility 的对象

    Returns:
        按位置排列的 Finding 列表
    """
    findings: List[Finding] = []

    for index in range(max(len(old), len(new))):
        old_pv: Optional[PositionedVariable] = old[index] if index < len(old) else None
        new_pv: Optional[PositionedVariable] = new[index] if index < len(new) else None

        if old_pv is not None and new_pv is not None:
            findings.append(_compare_pair(index, old_pv, new_pv, oracle))
        elif old_pv is not None:
            findings.append(Finding(
                severity=Severity.UNSAFE_REMOVE,
                index=index,
                old=old_pv.variable,
                new=None,
                explanation=f"删除了变量 '{old_pv.name}' ({old_pv.location()})"
            ))
        else:
            findings.append(_appended(index, new_pv, old))

    return findings


def _compare_pair(index: int, old_pv: PositionedVariable, new_pv: PositionedVariable, oracle) -> Finding:
    old_type = old_pv.variable.type
    new_type = new_pv.variable.type
    verdict = oracle.check(old_type, new_type)

    if not verdict.compatible:
        severity = Severity.UNSAFE_TYPE_CHANGE
        explanation = f"类型 {old_type.describe()} -> {new_type.describe()} 不兼容: {verdict.reason}"
    elif old_pv.position != new_pv.position:
        # 类型兼容但位置变了, 说明前面某个变量的宽度变化, 后续变量整体偏移
        severity = Severity.UNSAFE_RESIZE
        explanation = f"位置从 ({old_pv.location()}) 移到了 ({new_pv.location()})"
    elif verdict.severity is Severity.WARNING:
        severity = Severity.WARNING
        explanation = f"类型 {old_type.describe()} -> {new_type.describe()}: {verdict.reason}"
    else:
        severity = Severity.OK
        explanation = verdict.reason

    if severity is not Severity.UNSAFE_TYPE_CHANGE and old_pv.name != new_pv.name:
        explanation += f" (重命名 '{old_pv.name}' -> '{new_pv.name}')"

    return Finding(
        severity=severity,
        index=index,
        old=old_pv.variable,
        new=new_pv.variable,
        explanation=explanation
    )


def _appended(index: int, new_pv: PositionedVariable, old: Sequence[PositionedVariable]) -> Finding:
    for old_pv in old:
        if new_pv.overlaps(old_pv):
            return Finding(
                severity=Severity.UNSAFE_APPEND,
                index=index,
                old=None,
                new=new_pv.variable,
                explanation=(
                    f"追加的变量 '{new_pv.name}' ({new_pv.location()}) "
                    f"与旧变量 '{old_pv.name}' ({old_pv.location()}) 的存储重叠"
                )
            )

    return Finding(
        severity=Severity.OK,
        index=index,
        old=None,
        new=new_pv.variable,
        explanation=f"appended ({new_pv.location()})"
    )
