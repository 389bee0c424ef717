"""
布局文件加载器

把JSON格式的存储布局快照转换为 Layout。比较引擎本身不做任何I/O。

支持两种单元格式:

1. 原生格式 (变量列表)::

    {"Token": [
        {"name": "owner", "type": "address"},
        {"name": "balances", "type": "mapping(address => uint256)"},
        {"name": "pos", "type": {"kind": "struct", "label": "Position",
                                 "members": [{"name": "amount", "type": "uint128"}]}},
        {"name": "impl", "type": "address", "slot": 100}
    ]}

2. 编译器格式 (solc storageLayout / OpenZeppelin upgrades-core 提取结果)::

    {"Token": {"storage": [{"label": "owner", "type": "t_address", ...}],
               "types": {"t_address": {"encoding": "inplace", "label": "address",
                                       "numberOfBytes": "20"}},
               "namespaces": {"erc7201:example.main": [...]}}}

   upgrades-core 提取的快照省略 encoding / base / value, 从类型ID推断。

编译器给出的 slot/offset 不作为槽位提示使用, 位置一律重新计算。
ERC-7201 命名空间拆成独立单元 "<单元>@erc7201:<id>"。
"""

import json
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

from .errors import LayoutError, MalformedLayoutError
from .storage_layout.layout_calculator import erc7201_slot
from .storage_layout.types import Layout, TypeDescriptor, TypeKind, TypeRef, Variable, build_variables

logger = logging.getLogger(__name__)

_INT_PATTERN = re.compile(r'^(u?int)(\d*)$')
_BYTES_PATTERN = re.compile(r'^bytes(\d+)$')
_ARRAY_LENGTH_PATTERN = re.compile(r'\[(\d+)\]$')
_ID_LENGTH_PATTERN = re.compile(r'^(\d+)')


@dataclass
class LayoutSet:
    """一个布局文件的加载结果; 无法解析的单元记录在 errors 中"""
    layouts: Dict[str, Layout] = field(default_factory=dict)
    errors: Dict[str, str] = field(default_factory=dict)

    def names(self) -> List[str]:
        return list(self.layouts) + [n for n in self.errors if n not in self.layouts]


# ============================================================================
# 类型名解析
# ============================================================================

def elementary_type(label: str) -> Optional[TypeDescriptor]:
    """
    解析基础类型名, 无法识别时返回 None

    uintN/intN, address (payable), bool, bytesN, string, bytes
    """
    label = label.strip()

    if label in ("address", "address payable"):
        return TypeDescriptor.scalar(20, "address", label)
    if label == "bool":
        return TypeDescriptor.scalar(1, "bool", label)
    if label in ("string", "bytes"):
        return TypeDescriptor.dynamic_scalar(label)

    match = _INT_PATTERN.match(label)
    if match:
        bits = int(match.group(2) or 256)
        if bits % 8 or not 8 <= bits <= 256:
            return None
        return TypeDescriptor.scalar(bits // 8, match.group(1), label)

    match = _BYTES_PATTERN.match(label)
    if match:
        size = int(match.group(1))
        if not 1 <= size <= 32:
            return None
        return TypeDescriptor.scalar(size, "bytes", label)

    return None


def parse_type_label(label: str, owner: Optional[str] = None) -> TypeDescriptor:
    """
    解析类型名

    支持基础类型, T[], T[N], mapping(K => V) 及其嵌套。
    struct / enum 等需要用描述对象声明。
    """
    label = label.strip()

    if label.startswith("mapping(") and label.endswith(")"):
        key_label, value_label = _split_mapping(label[len("mapping("):-1], label, owner)
        return TypeDescriptor.mapping(
            value=parse_type_label(value_label, owner),
            key=parse_type_label(key_label, owner)
        )

    if label.endswith("]"):
        bracket = label.rfind("[")
        if bracket <= 0:
            raise MalformedLayoutError(f"无法解析的数组类型 '{label}'", variable=owner)
        element = parse_type_label(label[:bracket], owner)
        inner = label[bracket + 1:-1].strip()
        if not inner:
            return TypeDescriptor.dynamic_array(element)
        try:
            length = int(inner)
        except ValueError:
            raise MalformedLayoutError(f"数组长度 '{inner}' 不是整数", variable=owner)
        return TypeDescriptor.fixed_array(element, length)

    descriptor = elementary_type(label)
    if descriptor is None:
        raise MalformedLayoutError(f"无法识别的类型 '{label}'", variable=owner)
    return descriptor


def _split_mapping(inner: str, label: str, owner: Optional[str]):
    depth = 0
    for i, ch in enumerate(inner):
        if ch in "([":
            depth += 1
        elif ch in ")]":
            depth -= 1
        elif ch == "=" and depth == 0 and inner[i:i + 2] == "=>":
            return inner[:i].strip(), inner[i + 2:].strip()
    raise MalformedLayoutError(f"无法解析的mapping类型 '{label}'", variable=owner)


def _int_or_none(value: Any) -> Optional[int]:
    if value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


# ============================================================================
# 加载器
# ============================================================================

class LayoutLoader:
    """布局文件加载器"""

    def __init__(self):
        self.logger = logging.getLogger(__name__ + '.LayoutLoader')

    def load_file(self, path: Path) -> LayoutSet:
        """
        加载布局文件

        Raises:
            LayoutError: 文件不存在或不是合法JSON对象
        """
        path = Path(path)
        if not path.exists():
            raise LayoutError(f"布局文件不存在: {path}")

        try:
            with open(path, 'r', encoding='utf-8') as f:
                data = json.load(f)
        except json.JSONDecodeError as e:
            raise LayoutError(f"布局文件不是合法JSON ({path}): {e}") from e

        layout_set = self.parse_units(data)
        self.logger.info(
            f"加载 {path}: {len(layout_set.layouts)} 个存储单元"
            + (f", {len(layout_set.errors)} 个无法解析" if layout_set.errors else "")
        )
        return layout_set

    def parse_units(self, data: Any) -> LayoutSet:
        """解析 单元名 -> 单元布局 的映射"""
        if not isinstance(data, dict):
            raise LayoutError(f"布局文件顶层必须是对象, 实际为 {type(data).__name__}")

        layout_set = LayoutSet()
        for name, unit in data.items():
            if isinstance(unit, dict) and isinstance(unit.get("namespaces"), dict):
                namespaces = unit["namespaces"]
            else:
                namespaces = {}

            try:
                layout_set.layouts[name] = self.parse_unit(name, unit)
            except MalformedLayoutError as e:
                self.logger.error(f"  ✗ {name}: {e}")
                layout_set.errors[name] = str(e)

            for namespace_id, entries in namespaces.items():
                unit_name = f"{name}@{namespace_id}"
                try:
                    layout_set.layouts[unit_name] = self.parse_namespace(unit_name, namespace_id, entries, unit)
                except MalformedLayoutError as e:
                    self.logger.error(f"  ✗ {unit_name}: {e}")
                    layout_set.errors[unit_name] = str(e)

        return layout_set

    def parse_unit(self, name: str, unit: Any) -> Layout:
        """解析单个存储单元 (不含命名空间)"""
        if isinstance(unit, list):
            return Layout(name=name, variables=self._native_variables(unit))

        if isinstance(unit, dict) and isinstance(unit.get("storage"), list):
            if "types" in unit:
                return Layout(name=name, variables=self._solc_variables(unit["storage"], unit))
            return Layout(name=name, variables=self._native_variables(unit["storage"]))

        raise MalformedLayoutError(f"存储单元 '{name}' 既不是变量列表也不含 storage 字段")

    def parse_namespace(self, unit_name: str, namespace_id: str, entries: Any, unit: Dict) -> Layout:
        """
        解析ERC-7201命名空间

        第一个变量放在命名空间根槽位, 其余变量按规则顺延。
        """
        prefix = "erc7201:"
        if not namespace_id.startswith(prefix):
            raise MalformedLayoutError(f"不支持的命名空间公式 '{namespace_id}'")
        if not isinstance(entries, list):
            raise MalformedLayoutError(f"命名空间 '{namespace_id}' 必须是变量列表")

        if "types" in unit:
            variables = self._solc_variables(entries, unit)
        else:
            variables = self._native_variables(entries)

        if variables:
            root = erc7201_slot(namespace_id[len(prefix):])
            first = variables[0]
            variables = (Variable(first.name, first.type, 0, root, first.contract),) + variables[1:]
            self.logger.debug(f"{unit_name}: 根槽位 {hex(root)}")

        return Layout(name=unit_name, variables=variables)

    # ------------------------------------------------------------------
    # 原生格式
    # ------------------------------------------------------------------

    def _native_variables(self, entries: List[Any]) -> tuple:
        variables = []
        for position, entry in enumerate(entries):
            if not isinstance(entry, dict):
                raise MalformedLayoutError(f"第 {position} 个变量不是对象")
            name = entry.get("name") or entry.get("label")
            if not name:
                raise MalformedLayoutError(f"第 {position} 个变量缺少 name")
            if "type" not in entry:
                raise MalformedLayoutError("缺少 type", variable=name)

            slot_hint = entry.get("slot")
            if slot_hint is not None and not isinstance(slot_hint, int):
                slot_hint = _int_or_none(slot_hint)
                if slot_hint is None:
                    raise MalformedLayoutError(f"非法槽位 {entry.get('slot')!r}", variable=name)

            variables.append(Variable(
                name=name,
                type=self.parse_type(entry["type"], name),
                slot_hint=slot_hint,
                contract=entry.get("contract")
            ))
        return build_variables(variables)

    def parse_type(self, spec: Any, owner: Optional[str] = None) -> TypeDescriptor:
        """解析原生格式的类型: 类型名字符串或描述对象"""
        if isinstance(spec, str):
            return parse_type_label(spec, owner)
        if not isinstance(spec, dict):
            raise MalformedLayoutError(f"类型必须是字符串或对象, 实际为 {type(spec).__name__}", variable=owner)

        kind_name = spec.get("kind")
        try:
            kind = TypeKind(kind_name)
        except ValueError:
            raise MalformedLayoutError(f"未知类型种类 {kind_name!r}", variable=owner)

        label = spec.get("label", "")

        if kind is TypeKind.SCALAR:
            if spec.get("dynamic"):
                return TypeDescriptor.dynamic_scalar(spec.get("tag", "bytes"))
            return TypeDescriptor.scalar(_int_or_none(spec.get("size")), spec.get("tag", "uint"), label)

        if kind is TypeKind.ENUM:
            members = spec.get("members") or ()
            return TypeDescriptor.enum(label or "enum", members, _int_or_none(spec.get("size")))

        if kind is TypeKind.CONTRACT:
            return TypeDescriptor.contract(label or "contract")

        if kind is TypeKind.FUNCTION:
            return TypeDescriptor.function(spec.get("visibility", "internal"), label)

        if kind is TypeKind.STRUCT:
            members = self._native_variables(spec.get("members") or [])
            return TypeDescriptor.struct(label or "struct", members)

        if kind is TypeKind.MAPPING:
            key = self.parse_type(spec["key"], owner) if spec.get("key") is not None else None
            if spec.get("value") is None:
                return TypeDescriptor(TypeKind.MAPPING, label=label or "mapping", dynamic=True, key=key)
            return TypeDescriptor.mapping(self.parse_type(spec["value"], owner), key)

        element = self.parse_type(spec["element"], owner) if spec.get("element") is not None else None
        if kind is TypeKind.DYNAMIC_ARRAY:
            if element is None:
                return TypeDescriptor(TypeKind.DYNAMIC_ARRAY, label=label, dynamic=True)
            return TypeDescriptor.dynamic_array(element)

        # FIXED_ARRAY
        length = _int_or_none(spec.get("length"))
        if element is None:
            return TypeDescriptor(TypeKind.FIXED_ARRAY, label=label, length=length)
        return TypeDescriptor.fixed_array(element, length)

    # ------------------------------------------------------------------
    # 编译器格式
    # ------------------------------------------------------------------

    def _solc_variables(self, entries: List[Any], unit: Dict) -> tuple:
        types = unit.get("types") or {}
        if not isinstance(types, dict):
            raise MalformedLayoutError("types 字段必须是对象")

        converter = _SolcTypeConverter(types)
        variables = []
        for position, entry in enumerate(entries):
            variables.append(converter.variable(entry, position))
        return build_variables(variables)


class _SolcTypeConverter:
    """
    solc types 表 -> TypeDescriptor, 按类型ID缓存

    upgrades-core 提取的快照不带 encoding / base / key / value,
    这时从类型ID推断: t_mapping(K,V), t_array(T)dyn_storage, t_array(T)N_storage,
    t_string_storage, t_bytes_storage, t_struct(...), t_enum(...), t_contract(...)。

    经过 mapping / dynamic array 回到自身的递归类型用 TypeRef 延迟引用。
    """

    def __init__(self, types: Dict[str, Any]):
        self.types = types
        self.cache: Dict[str, TypeDescriptor] = {}
        self.in_progress: Dict[str, int] = {}  # 类型ID -> 开始转换时的间接层数
        self.indirections = 0
        self.pending: Dict[str, List[TypeRef]] = {}

    def variable(self, entry: Any, position: int) -> Variable:
        if not isinstance(entry, dict):
            raise MalformedLayoutError(f"第 {position} 个变量不是对象")
        name = entry.get("label")
        if not name:
            raise MalformedLayoutError(f"第 {position} 个变量缺少 label")
        type_id = entry.get("type")
        if not type_id:
            raise MalformedLayoutError("缺少 type", variable=name)
        return Variable(name=name, type=self.convert(type_id, name), contract=entry.get("contract"))

    def convert(self, type_id: str, owner: str) -> TypeDescriptor:
        if type_id in self.cache:
            return self.cache[type_id]
        if type_id in self.in_progress:
            if self.indirections > self.in_progress[type_id]:
                return self._reference(type_id, owner)
            raise MalformedLayoutError(f"类型 {type_id} 直接包含自身", variable=owner)

        info = self._info(type_id, owner)

        self.in_progress[type_id] = self.indirections
        try:
            descriptor = self._convert(type_id, info, owner)
        finally:
            del self.in_progress[type_id]

        for ref in self.pending.pop(type_id, ()):
            ref.target = descriptor
        self.cache[type_id] = descriptor
        return descriptor

    def _info(self, type_id: str, owner: str) -> Dict[str, Any]:
        info = self.types.get(type_id)
        if isinstance(info, dict):
            return info
        # 基础类型可以只凭类型ID识别
        label = _elementary_label(type_id)
        if label is not None:
            return {"label": label}
        raise MalformedLayoutError(f"types 中缺少 {type_id}", variable=owner)

    def _indirect(self, type_id: str, owner: str) -> TypeDescriptor:
        """转换 mapping value / dynamic array 元素; 这一层之下允许递归"""
        self.indirections += 1
        try:
            return self.convert(type_id, owner)
        finally:
            self.indirections -= 1

    def _reference(self, type_id: str, owner: str) -> TypeDescriptor:
        info = self._info(type_id, owner)
        label = info.get("label", type_id)
        encoding = _solc_encoding(type_id, info, owner)

        if encoding == "mapping":
            kind = TypeKind.MAPPING
        elif encoding == "dynamic_array":
            kind = TypeKind.DYNAMIC_ARRAY
        elif label.endswith("]") or type_id.startswith("t_array("):
            kind = TypeKind.FIXED_ARRAY
        else:
            kind = TypeKind.STRUCT

        ref = TypeRef(type_id)
        self.pending.setdefault(type_id, []).append(ref)
        return TypeDescriptor(
            kind, label=label, dynamic=kind in (TypeKind.MAPPING, TypeKind.DYNAMIC_ARRAY), ref=ref
        )

    def _key(self, type_id: Optional[str], owner: str) -> Optional[TypeDescriptor]:
        # key 不影响布局, 无法识别时忽略
        if not type_id or (type_id not in self.types and _elementary_label(type_id) is None):
            return None
        return self.convert(type_id, owner)

    def _convert(self, type_id: str, info: Dict[str, Any], owner: str) -> TypeDescriptor:
        label = info.get("label", type_id)
        encoding = _solc_encoding(type_id, info, owner)
        size = _int_or_none(info.get("numberOfBytes"))

        if encoding == "mapping":
            key_id, value_id = info.get("key"), info.get("value")
            if type_id.startswith("t_mapping("):
                args, _ = _type_id_args(type_id, owner)
                if len(args) == 2:
                    key_id = key_id or args[0]
                    value_id = value_id or args[1]
            key = self._key(key_id, owner)
            if not value_id:
                return TypeDescriptor(TypeKind.MAPPING, label=label, dynamic=True, key=key)
            value = self._indirect(value_id, owner)
            return TypeDescriptor(TypeKind.MAPPING, label=label, dynamic=True, element=value, key=key)

        if encoding == "dynamic_array":
            base_id = info.get("base") or _array_base(type_id, owner)
            element = self._indirect(base_id, owner) if base_id else None
            return TypeDescriptor(TypeKind.DYNAMIC_ARRAY, label=label, dynamic=True, element=element)

        if encoding == "bytes":
            tag = "string" if label == "string" else "bytes"
            return TypeDescriptor(TypeKind.SCALAR, label=label, dynamic=True, tag=tag)

        if encoding != "inplace":
            raise MalformedLayoutError(f"未知编码 '{encoding}' ({type_id})", variable=owner)

        if label.startswith("struct ") or type_id.startswith("t_struct("):
            members = [self.variable(m, i) for i, m in enumerate(info.get("members") or [])]
            return TypeDescriptor(TypeKind.STRUCT, label=label, members=build_variables(members))

        if label.endswith("]") or type_id.startswith("t_array("):
            length = None
            match = _ARRAY_LENGTH_PATTERN.search(label)
            if match:
                length = int(match.group(1))
            elif type_id.startswith("t_array("):
                _, suffix = _type_id_args(type_id, owner)
                match = _ID_LENGTH_PATTERN.match(suffix)
                length = int(match.group(1)) if match else None
            base_id = info.get("base") or _array_base(type_id, owner)
            element = self.convert(base_id, owner) if base_id else None
            return TypeDescriptor(TypeKind.FIXED_ARRAY, label=label, element=element, length=length)

        if label.startswith("enum ") or type_id.startswith("t_enum("):
            members = info.get("members") or ()
            if not all(isinstance(m, str) for m in members):
                members = ()
            return TypeDescriptor.enum(label, members, size)

        if label.startswith(("contract ", "interface ")) or type_id.startswith("t_contract("):
            return TypeDescriptor(TypeKind.CONTRACT, label=label, size=size or 20)

        if label.startswith("function ") or type_id.startswith("t_function"):
            visibility = "external" if " external" in label or type_id.startswith("t_function_external") else "internal"
            if size is None:
                return TypeDescriptor.function(visibility, label)
            return TypeDescriptor(TypeKind.FUNCTION, label=label, size=size, tag=visibility)

        elementary = elementary_type(label)
        if elementary is not None and size is None:
            size = elementary.size
        # 用户自定义值类型等: 以类型名作为语义标签
        tag = elementary.tag if elementary is not None else label
        return TypeDescriptor(TypeKind.SCALAR, label=label, size=size, tag=tag)


def _solc_encoding(type_id: str, info: Dict[str, Any], owner: str) -> str:
    encoding = info.get("encoding")
    if encoding:
        return encoding
    if type_id.startswith("t_mapping("):
        return "mapping"
    if type_id.startswith("t_array("):
        _, suffix = _type_id_args(type_id, owner)
        return "dynamic_array" if suffix.startswith("dyn") else "inplace"
    if type_id in ("t_string_storage", "t_bytes_storage") or info.get("label") in ("string", "bytes"):
        return "bytes"
    return "inplace"


def _type_id_args(type_id: str, owner: str) -> Tuple[List[str], str]:
    """
    拆分类型ID第一层括号内的参数和括号后的后缀

    t_mapping(t_address,t_uint256) -> (["t_address", "t_uint256"], "")
    t_array(t_uint256)3_storage -> (["t_uint256"], "3_storage")
    """
    open_at = type_id.find("(")
    if open_at < 0:
        return [], type_id

    args = []
    depth = 0
    start = open_at + 1
    for i in range(open_at, len(type_id)):
        ch = type_id[i]
        if ch == "(":
            depth += 1
        elif ch == ")":
            depth -= 1
            if depth == 0:
                args.append(type_id[start:i])
                return args, type_id[i + 1:]
        elif ch == "," and depth == 1:
            args.append(type_id[start:i])
            start = i + 1
    raise MalformedLayoutError(f"无法解析的类型ID {type_id}", variable=owner)


def _array_base(type_id: str, owner: str) -> Optional[str]:
    if not type_id.startswith("t_array("):
        return None
    args, _ = _type_id_args(type_id, owner)
    return args[0] if args else None


def _elementary_label(type_id: str) -> Optional[str]:
    """t_uint256 -> uint256, t_address_payable -> address payable, t_string_storage -> string"""
    if not type_id.startswith("t_"):
        return None
    name = type_id[len("t_"):]
    if name.endswith("_storage"):
        name = name[:-len("_storage")]
    name = name.replace("_payable", " payable")
    return name if elementary_type(name) is not None else None


def load_layouts(path: Union[str, Path]) -> LayoutSet:
    return LayoutLoader().load_file(Path(path))
