"""
存储布局计算器

根据EVM存储规则计算状态变量的槽位布局。

支持:
- 值类型的连续分配和packed storage (不跨越槽位边界)
- Mapping / dynamic array / string / bytes 独占一个槽位
- Struct 和定长数组从新槽位开始, 成员按同样规则打包, 之后的变量也从新槽位开始
- 手动指定槽位 (slot hint, 例如 ERC-7201 命名空间)

计算出的 (slot, offset) 是跨版本比较的依据, 必须与编译器完全一致。
"""

import logging
from typing import Iterable, List, Optional, Tuple

from web3 import Web3

from ..errors import MalformedLayoutError, StructuralLayoutError
from .types import SLOT_SIZE, Layout, PositionedVariable, TypeDescriptor, TypeKind, Variable

logger = logging.getLogger(__name__)


def erc7201_slot(namespace_id: str) -> int:
    """
    计算ERC-7201命名空间的根槽位

    keccak256(abi.encode(uint256(keccak256(id)) - 1)) & ~bytes32(uint256(0xff))
    """
    inner = int.from_bytes(Web3.keccak(text=namespace_id), byteorder='big') - 1
    outer = Web3.keccak(inner.to_bytes(32, byteorder='big'))
    return int.from_bytes(outer, byteorder='big') & ~0xff


class StorageLayoutCalculator:
    """
    存储布局计算器

    实现EVM存储布局规则:
    1. 状态变量按声明顺序分配槽位
    2. 小于32字节的值类型尝试packed storage, 放不下时换到下一个槽位
    3. Mapping和dynamic array单独占用槽位
    4. Struct展开成员, 从新槽位开始
    5. 定长数组按元素打包, 从新槽位开始
    """

    def __init__(self):
        self.logger = logging.getLogger(__name__ + '.StorageLayoutCalculator')

    def resolve(self, layout: Layout) -> Tuple[PositionedVariable, ...]:
        """
        计算存储布局

        Args:
            layout: 按声明顺序排列的布局

        Returns:
            与 layout.variables 一一对应的 PositionedVariable 序列

        Raises:
            MalformedLayoutError: 类型描述缺少必需字段
        """
        placed, end_slot = self._place(layout.variables, start_slot=0, allow_hints=True)
        self.logger.debug(f"{layout.name}: {len(placed)} 个变量, 使用槽位 0-{end_slot}")
        return placed

    def resolve_members(self, struct_type: TypeDescriptor) -> Tuple[PositionedVariable, ...]:
        """以槽位0为起点计算struct成员的相对布局"""
        struct_type = struct_type.resolved()
        self.check_type(struct_type, struct_type.describe())
        placed, _ = self._place(struct_type.members, start_slot=0, allow_hints=False)
        return placed

    def _place(
        self,
        variables: Iterable[Variable],
        start_slot: int,
        allow_hints: bool
    ) -> Tuple[Tuple[PositionedVariable, ...], int]:
        """
        按声明顺序放置变量

        Returns:
            (已放置的变量, 第一个完全空闲的槽位)
        """
        placed: List[PositionedVariable] = []
        current_slot = start_slot
        current_offset = 0  # 当前槽位的偏移量

        for var in variables:
            self.check_type(var.type, var.name)

            if var.slot_hint is not None:
                if not allow_hints:
                    raise MalformedLayoutError("struct成员不能指定槽位", variable=var.name)
                if var.slot_hint < 0:
                    raise MalformedLayoutError(f"非法槽位 {var.slot_hint}", variable=var.name)
                current_slot = var.slot_hint
                current_offset = 0

            var_type = var.type.resolved()
            if var_type.whole_slot:
                # 独占槽位的类型不与前一个变量共享槽位
                if current_offset:
                    current_slot += 1
                    current_offset = 0

                members: Tuple[PositionedVariable, ...] = ()
                if var_type.kind is TypeKind.STRUCT:
                    members, end_slot = self._place(var_type.members, current_slot, allow_hints=False)
                    slot_count = end_slot - current_slot
                else:
                    slot_count = self.slot_count(var_type)

                placed.append(PositionedVariable(
                    variable=var,
                    slot=current_slot,
                    offset=0,
                    width=slot_count * SLOT_SIZE,
                    members=members
                ))
                current_slot += slot_count
                current_offset = 0
                continue

            width = var_type.size
            if current_offset + width > SLOT_SIZE:
                # 值类型不跨越槽位边界
                current_slot += 1
                current_offset = 0

            placed.append(PositionedVariable(
                variable=var,
                slot=current_slot,
                offset=current_offset,
                width=width
            ))

            current_offset += width
            if current_offset == SLOT_SIZE:
                current_slot += 1
                current_offset = 0

        end_slot = current_slot + 1 if current_offset else current_slot
        return tuple(placed), end_slot

    def slot_count(self, var_type: TypeDescriptor) -> int:
        """类型占用的槽位数 (值类型按1个槽位计)"""
        var_type = var_type.resolved()
        kind = var_type.kind

        if kind is TypeKind.STRUCT:
            _, end_slot = self._place(var_type.members, 0, allow_hints=False)
            return end_slot

        if kind is TypeKind.FIXED_ARRAY:
            element = var_type.element
            if element.whole_slot:
                return var_type.length * self.slot_count(element)
            per_slot = SLOT_SIZE // element.size
            return -(-var_type.length // per_slot)

        return 1

    def footprint(self, var_type: TypeDescriptor) -> int:
        """类型在存储中的字节宽度; 独占槽位的类型按整槽计算"""
        var_type = var_type.resolved()
        if var_type.whole_slot:
            return self.slot_count(var_type) * SLOT_SIZE
        return var_type.size

    def check_type(self, var_type: TypeDescriptor, owner: Optional[str]) -> None:
        """
        校验类型描述是否完整

        不猜测默认大小: 缺少字段直接报错, 并指出所属变量。
        """
        if var_type.ref is not None:
            # 递归引用的目标在其定义处校验
            return

        kind = var_type.kind
        label = var_type.describe()

        if kind in (TypeKind.SCALAR, TypeKind.ENUM, TypeKind.CONTRACT, TypeKind.FUNCTION):
            if var_type.dynamic:
                if kind is not TypeKind.SCALAR:
                    raise MalformedLayoutError(f"{kind.value} 类型不能是动态大小", variable=owner)
                return
            if var_type.size is None:
                raise MalformedLayoutError(f"定长类型 {label} 缺少字节大小", variable=owner)
            if not isinstance(var_type.size, int) or not 0 < var_type.size <= SLOT_SIZE:
                raise MalformedLayoutError(
                    f"类型 {label} 的字节大小 {var_type.size!r} 不在 1-{SLOT_SIZE} 之间",
                    variable=owner
                )
            return

        if kind in (TypeKind.FIXED_ARRAY, TypeKind.DYNAMIC_ARRAY, TypeKind.MAPPING):
            if var_type.element is None:
                what = "value类型" if kind is TypeKind.MAPPING else "元素类型"
                raise MalformedLayoutError(f"{label} 缺少{what}", variable=owner)
            if kind is TypeKind.FIXED_ARRAY:
                if var_type.length is None:
                    raise MalformedLayoutError(f"定长数组 {label} 缺少长度", variable=owner)
                if var_type.length <= 0:
                    raise StructuralLayoutError(
                        f"定长数组 {label} 的长度必须为正数, 实际为 {var_type.length}",
                        variable=owner
                    )
            self.check_type(var_type.element, owner)
            return

        if kind is TypeKind.STRUCT:
            if not var_type.members:
                raise StructuralLayoutError(f"struct {label} 没有成员", variable=owner)
            for member in var_type.members:
                self.check_type(member.type, f"{owner}.{member.name}")
            return

        raise MalformedLayoutError(f"未知类型种类 {kind!r}", variable=owner)
