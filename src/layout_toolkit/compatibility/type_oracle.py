"""
类型兼容性判断

判断旧类型的存储数据能否原地按新类型重新解释而不损坏。
只看 TypeDescriptor 的 kind / size / 组合结构, 从不比较类型名文本。

规则按顺序匹配, 第一条命中即返回:
1. 种类、宽度、递归结构完全一致 -> 兼容
2. 都是标量, 宽度相同, 语义标签不同 (如 uint160 -> address) -> 兼容但警告
3. 都是标量, 宽度不同 -> 不兼容
4. 都是 dynamic array / 都是 mapping -> 递归检查元素/value类型
5. 都是定长数组且长度相同 -> 递归检查元素类型
6. 都是定长数组但长度不同 -> 不兼容
7. 都是 struct -> 成员按 append-only 规则逐个比较
8. 其余种类不匹配 -> 不兼容
"""

import logging
from typing import FrozenSet, Optional, Tuple

from ..storage_layout.layout_calculator import StorageLayoutCalculator
from ..storage_layout.types import TypeDescriptor, TypeKind
from .findings import Compatibility, Severity, worst
from .matching import match_positioned

logger = logging.getLogger(__name__)

# 正在比较中的 struct 对 (按对象身份), 用于终止递归类型的比较
Assumed = FrozenSet[Tuple[int, int]]


class TypeCompatibilityOracle:
    """类型兼容性判断器"""

    def __init__(self, calculator: Optional[StorageLayoutCalculator] = None):
        self.calculator = calculator or StorageLayoutCalculator()
        self.logger = logging.getLogger(__name__ + '.TypeCompatibilityOracle')

    def check(self, old: TypeDescriptor, new: TypeDescriptor) -> Compatibility:
        """
        判断 old -> new 是否可以安全地原地重新解释

        Returns:
            Compatibility (severity 为 OK / WARNING / UNSAFE_TYPE_CHANGE)
        """
        result = self._check(old, new, frozenset())
        self.logger.debug(f"{old.describe()} -> {new.describe()}: {result.severity.value} ({result.reason})")
        return result

    def _check(self, old: TypeDescriptor, new: TypeDescriptor, assumed: Assumed) -> Compatibility:
        old, new = old.resolved(), new.resolved()

        # 规则1
        if old.shape() == new.shape():
            return Compatibility.ok()

        if old.kind is not new.kind:
            # 规则8
            return Compatibility.incompatible(f"类型种类从 {old.kind.value} 变为 {new.kind.value}")

        kind = old.kind

        if kind is TypeKind.SCALAR:
            return self._check_scalar(old, new)

        if kind in (TypeKind.DYNAMIC_ARRAY, TypeKind.MAPPING):
            return self._check_indirect(old, new, assumed)

        if kind is TypeKind.FIXED_ARRAY:
            return self._check_fixed_array(old, new, assumed)

        if kind is TypeKind.STRUCT:
            return self._check_struct(old, new, assumed)

        if kind is TypeKind.ENUM:
            return self._check_enum(old, new)

        if kind in (TypeKind.CONTRACT, TypeKind.FUNCTION):
            if old.size != new.size:
                return Compatibility.incompatible(f"宽度从 {old.size} 字节变为 {new.size} 字节")
            return Compatibility.ok()

        return Compatibility.incompatible(f"无法比较的类型种类 {kind.value}")

    def _check_scalar(self, old: TypeDescriptor, new: TypeDescriptor) -> Compatibility:
        if old.dynamic != new.dynamic or old.size != new.size:
            # 规则3: 改变宽度会破坏同槽位中打包的相邻数据
            return Compatibility.incompatible(
                f"宽度从 {_width(old)} 变为 {_width(new)}"
            )
        # 规则2: 位模式不变, 含义改变
        return Compatibility.warning(
            f"宽度相同 ({_width(old)}), 语义从 {old.tag} 变为 {new.tag}"
        )

    def _check_indirect(self, old: TypeDescriptor, new: TypeDescriptor, assumed: Assumed) -> Compatibility:
        what = "mapping value" if old.kind is TypeKind.MAPPING else "数组元素"
        nested = self._check(old.element, new.element, assumed)
        if not nested.compatible:
            return Compatibility.incompatible(f"{what}类型不兼容: {nested.reason}")

        if old.kind is TypeKind.DYNAMIC_ARRAY:
            # 动态数组元素连续存放, 元素宽度变化会错位
            old_stride = self.calculator.footprint(old.element)
            new_stride = self.calculator.footprint(new.element)
            if old_stride != new_stride:
                return Compatibility.incompatible(
                    f"数组元素宽度从 {old_stride} 字节变为 {new_stride} 字节"
                )

        if nested.severity is Severity.WARNING:
            return Compatibility.warning(f"{what}: {nested.reason}")
        return Compatibility.ok(f"{what}兼容")

    def _check_fixed_array(self, old: TypeDescriptor, new: TypeDescriptor, assumed: Assumed) -> Compatibility:
        if old.length != new.length:
            # 规则6
            return Compatibility.incompatible(f"数组长度从 {old.length} 变为 {new.length}")

        nested = self._check(old.element, new.element, assumed)
        if not nested.compatible:
            return Compatibility.incompatible(f"数组元素类型不兼容: {nested.reason}")

        old_stride = self.calculator.footprint(old.element)
        new_stride = self.calculator.footprint(new.element)
        if old_stride != new_stride:
            return Compatibility.incompatible(
                f"数组元素宽度从 {old_stride} 字节变为 {new_stride} 字节"
            )

        if nested.severity is Severity.WARNING:
            return Compatibility.warning(f"数组元素: {nested.reason}")
        return Compatibility.ok("数组元素兼容")

    def _check_struct(self, old: TypeDescriptor, new: TypeDescriptor, assumed: Assumed) -> Compatibility:
        pair = (id(old), id(new))
        if pair in assumed:
            # 递归类型回到了正在比较的 struct 对, 其余成员由外层比较负责
            return Compatibility.ok("递归引用")

        old_members = self.calculator.resolve_members(old)
        new_members = self.calculator.resolve_members(new)
        findings = match_positioned(old_members, new_members, _MemberChecker(self, assumed | {pair}))

        for finding in findings:
            if finding.severity.unsafe:
                return Compatibility.incompatible(
                    f"struct成员 '{finding.name}' {finding.severity.value}: {finding.explanation}"
                )

        severity = worst(*(f.severity for f in findings))
        if severity is Severity.WARNING:
            reasons = "; ".join(f"{f.name}: {f.explanation}" for f in findings if f.severity is Severity.WARNING)
            return Compatibility.warning(f"struct成员语义变化 ({reasons})")

        appended = len(new_members) - len(old_members)
        if appended > 0:
            return Compatibility.ok(f"struct末尾追加了 {appended} 个成员")
        return Compatibility.ok("struct成员兼容")

    def _check_enum(self, old: TypeDescriptor, new: TypeDescriptor) -> Compatibility:
        if old.size != new.size:
            return Compatibility.incompatible(f"enum宽度从 {old.size} 字节变为 {new.size} 字节")

        prefix = new.enum_members[:len(old.enum_members)]
        if prefix == old.enum_members:
            return Compatibility.ok("enum末尾追加了成员")
        # 已存储的序号会对应到别的成员
        return Compatibility.incompatible("enum成员被删除或重排")


class _MemberChecker:
    """带着递归假设比较 struct 成员类型"""

    def __init__(self, oracle: TypeCompatibilityOracle, assumed: Assumed):
        self.oracle = oracle
        self.assumed = assumed

    def check(self, old: TypeDescriptor, new: TypeDescriptor) -> Compatibility:
        return self.oracle._check(old, new, self.assumed)


def _width(var_type: TypeDescriptor) -> str:
    if var_type.dynamic:
        return "动态"
    return f"{var_type.size} 字节"
