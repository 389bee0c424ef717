"""
存储布局模块

提供存储槽位布局能力:
- 描述存储类型 (TypeDescriptor)
- 按声明顺序计算槽位和偏移
- 计算ERC-7201命名空间根槽位
"""

from .types import (
    SLOT_SIZE,
    TypeKind,
    TypeDescriptor,
    TypeRef,
    Variable,
    Layout,
    PositionedVariable,
)
from .layout_calculator import StorageLayoutCalculator, erc7201_slot

__all__ = [
    "SLOT_SIZE",
    "TypeKind",
    "TypeDescriptor",
    "TypeRef",
    "Variable",
    "Layout",
    "PositionedVariable",
    "StorageLayoutCalculator",
    "erc7201_slot",
]
