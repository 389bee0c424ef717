"""
存储布局数据模型

- TypeKind / TypeDescriptor: 存储类型描述 (显式的变体类型)
- Variable / Layout: 按声明顺序排列的状态变量
- PositionedVariable: 解析出槽位/偏移后的变量

所有记录都是不可变的 (frozen dataclass), 可以在多次比较之间安全共享。
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable, Optional, Sequence, Tuple, Union

from ..errors import MalformedLayoutError

# EVM 存储槽位宽度 (字节)
SLOT_SIZE = 32


class TypeRef:
    """
    对递归类型的延迟引用

    例如 struct Node { uint256 v; Node[] kids; } 中 kids 的元素类型。
    引用环上至少经过一个 mapping 或 dynamic array; 目标在外层类型构造完成后填入。
    """

    def __init__(self, type_id: str):
        self.type_id = type_id
        self.target: Optional["TypeDescriptor"] = None

    def resolve(self) -> "TypeDescriptor":
        if self.target is None:
            raise MalformedLayoutError(f"递归类型 {self.type_id} 没有定义")
        return self.target

    def __repr__(self) -> str:
        return f"TypeRef({self.type_id!r})"


class TypeKind(Enum):
    """存储类型种类"""
    SCALAR = "scalar"                # uintN/intN/address/bool/bytesN/string/bytes
    FIXED_ARRAY = "fixed_array"      # T[N]
    DYNAMIC_ARRAY = "dynamic_array"  # T[]
    MAPPING = "mapping"              # mapping(K => V)
    STRUCT = "struct"
    ENUM = "enum"
    CONTRACT = "contract"            # 合约引用 (本质是地址)
    FUNCTION = "function"            # 函数引用


@dataclass(frozen=True)
class TypeDescriptor:
    """
    存储类型描述

    label 只用于展示, 兼容性判断只看 kind / size / 组合结构。

    Attributes:
        kind: 类型种类
        label: 可读的类型名 (如 "uint256", "struct Vault.Position")
        size: 值类型的字节宽度; 动态类型为 None
        dynamic: 是否为动态类型 (只占一个槽位作为间接引用)
        tag: 标量语义标签 (uint/int/address/bool/bytes/string...), 函数引用为可见性
        element: 数组元素类型 / mapping 的 value 类型
        key: mapping 的 key 类型 (不上链, 与布局无关)
        length: 定长数组长度
        members: struct 成员 (Variable 序列)
        enum_members: enum 成员名
    """
    kind: TypeKind
    label: str = ""
    size: Optional[int] = None
    dynamic: bool = False
    tag: Optional[str] = None
    element: Optional["TypeDescriptor"] = None
    key: Optional["TypeDescriptor"] = None
    length: Optional[int] = None
    members: Tuple["Variable", ...] = ()
    enum_members: Tuple[str, ...] = ()
    ref: Optional[TypeRef] = field(default=None, compare=False, repr=False)

    @property
    def whole_slot(self) -> bool:
        """是否独占完整槽位 (不与前后变量打包)"""
        if self.kind in (TypeKind.MAPPING, TypeKind.DYNAMIC_ARRAY,
                         TypeKind.STRUCT, TypeKind.FIXED_ARRAY):
            return True
        return self.dynamic

    def shape(self) -> tuple:
        """
        与名字无关的结构指纹

        两个描述的 shape 相等 <=> 种类、宽度、递归结构完全一致。
        label、成员名、mapping key 都不参与。
        """
        if self.ref is not None:
            # 递归引用按对象身份区分, 不同快照之间总是走逐项比较
            return (self.kind, "ref", id(self.ref))
        return (
            self.kind,
            "dynamic" if self.dynamic else self.size,
            self.tag if self.kind is TypeKind.SCALAR else None,
            self.length,
            self.element.shape() if self.element is not None else None,
            tuple(m.type.shape() for m in self.members),
            self.enum_members,
        )

    def resolved(self) -> "TypeDescriptor":
        """递归引用返回其目标类型, 否则返回自身"""
        if self.ref is not None:
            return self.ref.resolve()
        return self

    def describe(self) -> str:
        return self.label or self.kind.value

    # ------------------------------------------------------------------
    # 构造辅助
    # ------------------------------------------------------------------

    @classmethod
    def scalar(cls, size: Optional[int], tag: str, label: str = "") -> "TypeDescriptor":
        if not label:
            if tag in ("uint", "int") and size:
                label = f"{tag}{size * 8}"
            elif tag == "bytes" and size:
                label = f"bytes{size}"
            else:
                label = tag
        return cls(TypeKind.SCALAR, label=label, size=size, tag=tag)

    @classmethod
    def dynamic_scalar(cls, tag: str) -> "TypeDescriptor":
        """string / bytes"""
        return cls(TypeKind.SCALAR, label=tag, dynamic=True, tag=tag)

    @classmethod
    def fixed_array(cls, element: "TypeDescriptor", length: Optional[int]) -> "TypeDescriptor":
        return cls(TypeKind.FIXED_ARRAY, label=f"{element.describe()}[{length}]",
                   element=element, length=length)

    @classmethod
    def dynamic_array(cls, element: "TypeDescriptor") -> "TypeDescriptor":
        return cls(TypeKind.DYNAMIC_ARRAY, label=f"{element.describe()}[]",
                   dynamic=True, element=element)

    @classmethod
    def mapping(cls, value: "TypeDescriptor",
                key: Optional["TypeDescriptor"] = None) -> "TypeDescriptor":
        key_label = key.describe() if key is not None else "?"
        return cls(TypeKind.MAPPING, label=f"mapping({key_label} => {value.describe()})",
                   dynamic=True, element=value, key=key)

    @classmethod
    def struct(cls, label: str, members: Iterable["Variable"]) -> "TypeDescriptor":
        return cls(TypeKind.STRUCT, label=label, members=tuple(members))

    @classmethod
    def enum(cls, label: str, members: Sequence[str] = (), size: Optional[int] = None) -> "TypeDescriptor":
        if size is None and members:
            # 成员数 <= 256 用 1 字节, 以此类推
            size = max(1, ((len(members) - 1).bit_length() + 7) // 8)
        return cls(TypeKind.ENUM, label=label, size=size, enum_members=tuple(members))

    @classmethod
    def contract(cls, label: str) -> "TypeDescriptor":
        return cls(TypeKind.CONTRACT, label=label, size=20)

    @classmethod
    def function(cls, visibility: str = "internal", label: str = "") -> "TypeDescriptor":
        # external 函数引用 = address(20) + selector(4)
        size = 24 if visibility == "external" else 8
        return cls(TypeKind.FUNCTION, label=label or f"function {visibility}",
                   size=size, tag=visibility)


@dataclass(frozen=True)
class Variable:
    """
    状态变量 (或 struct 成员)

    name 只用于报告; 槽位完全由声明顺序和类型决定。
    """
    name: str
    type: TypeDescriptor
    index: int = 0
    slot_hint: Optional[int] = None
    contract: Optional[str] = None  # 继承链中声明该变量的合约

    def qualified_name(self) -> str:
        if self.contract:
            return f"{self.contract}.{self.name}"
        return self.name


VariableSpec = Union[Variable, Tuple[str, TypeDescriptor]]


def build_variables(specs: Iterable[VariableSpec]) -> Tuple[Variable, ...]:
    """按出现顺序生成 Variable 并写入 index"""
    result = []
    for index, spec in enumerate(specs):
        if isinstance(spec, Variable):
            var = spec
        else:
            name, var_type = spec
            var = Variable(name=name, type=var_type)
        if var.index != index:
            var = Variable(var.name, var.type, index, var.slot_hint, var.contract)
        result.append(var)
    return tuple(result)


@dataclass(frozen=True)
class Layout:
    """一个存储单元 (合约或线性化后的继承链) 某个版本的布局, 顺序不可重排"""
    name: str
    variables: Tuple[Variable, ...] = ()

    @classmethod
    def of(cls, name: str, specs: Iterable[VariableSpec]) -> "Layout":
        return cls(name=name, variables=build_variables(specs))

    def __len__(self) -> int:
        return len(self.variables)

    def __iter__(self):
        return iter(self.variables)


@dataclass(frozen=True)
class PositionedVariable:
    """解析后的变量位置; struct 变量同时带有成员的位置"""
    variable: Variable
    slot: int
    offset: int
    width: int
    members: Tuple["PositionedVariable", ...] = field(default=(), repr=False)

    @property
    def name(self) -> str:
        return self.variable.name

    @property
    def position(self) -> Tuple[int, int]:
        return (self.slot, self.offset)

    @property
    def start_byte(self) -> int:
        return self.slot * SLOT_SIZE + self.offset

    @property
    def end_byte(self) -> int:
        return self.start_byte + self.width

    def overlaps(self, other: "PositionedVariable") -> bool:
        return self.start_byte < other.end_byte and other.start_byte < self.end_byte

    def location(self) -> str:
        return f"slot {self.slot}, offset {self.offset}"
