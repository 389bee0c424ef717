#!/usr/bin/env python3
"""
布局加载器单元测试

测试:
1. 类型名解析 (基础类型 / 数组 / mapping)
2. 原生格式与编译器(solc storageLayout)格式
3. 不带 encoding 的 upgrades-core 快照与递归struct
4. ERC-7201 命名空间拆分
5. 单元级别的错误隔离
"""

import json
import sys
import tempfile
import unittest
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent / "src"))

from layout_toolkit.compatibility import LayoutDiffer, Severity
from layout_toolkit.errors import LayoutError, MalformedLayoutError
from layout_toolkit.layout_loader import LayoutLoader, elementary_type, load_layouts, parse_type_label
from layout_toolkit.storage_layout import StorageLayoutCalculator, TypeKind, erc7201_slot

SOLC_UNIT = {
    "storage": [
        {"astId": 3, "contract": "src/Vault.sol:Vault", "label": "owner", "offset": 0, "slot": "0", "type": "t_address"},
        {"astId": 5, "contract": "src/Vault.sol:Vault", "label": "paused", "offset": 20, "slot": "0", "type": "t_bool"},
        {"astId": 9, "contract": "src/Vault.sol:Vault", "label": "balances", "offset": 0, "slot": "1",
         "type": "t_mapping(t_address,t_uint256)"},
        {"astId": 14, "contract": "src/Vault.sol:Vault", "label": "position", "offset": 0, "slot": "2",
         "type": "t_struct(Position)12_storage"},
        {"astId": 18, "contract": "src/Vault.sol:Vault", "label": "fees", "offset": 0, "slot": "4",
         "type": "t_array(t_uint128)3_storage"},
        {"astId": 20, "contract": "src/Vault.sol:Vault", "label": "name", "offset": 0, "slot": "6",
         "type": "t_string_storage"},
        {"astId": 23, "contract": "src/Vault.sol:Vault", "label": "holders", "offset": 0, "slot": "7",
         "type": "t_array(t_address)dyn_storage"},
        {"astId": 25, "contract": "src/Vault.sol:Vault", "label": "status", "offset": 0, "slot": "8",
         "type": "t_enum(Status)4"},
    ],
    "types": {
        "t_address": {"encoding": "inplace", "label": "address", "numberOfBytes": "20"},
        "t_bool": {"encoding": "inplace", "label": "bool", "numberOfBytes": "1"},
        "t_uint256": {"encoding": "inplace", "label": "uint256", "numberOfBytes": "32"},
        "t_uint128": {"encoding": "inplace", "label": "uint128", "numberOfBytes": "16"},
        "t_uint64": {"encoding": "inplace", "label": "uint64", "numberOfBytes": "8"},
        "t_mapping(t_address,t_uint256)": {
            "encoding": "mapping", "key": "t_address", "label": "mapping(address => uint256)",
            "numberOfBytes": "32", "value": "t_uint256"
        },
        "t_struct(Position)12_storage": {
            "encoding": "inplace", "label": "struct Vault.Position", "numberOfBytes": "64",
            "members": [
                {"astId": 7, "contract": "src/Vault.sol:Vault", "label": "amount", "offset": 0, "slot": "0",
                 "type": "t_uint256"},
                {"astId": 11, "contract": "src/Vault.sol:Vault", "label": "since", "offset": 0, "slot": "1",
                 "type": "t_uint64"},
            ]
        },
        "t_array(t_uint128)3_storage": {
            "base": "t_uint128", "encoding": "inplace", "label": "uint128[3]", "numberOfBytes": "64"
        },
        "t_string_storage": {"encoding": "bytes", "label": "string", "numberOfBytes": "32"},
        "t_array(t_address)dyn_storage": {
            "base": "t_address", "encoding": "dynamic_array", "label": "address[]", "numberOfBytes": "32"
        },
        "t_enum(Status)4": {
            "encoding": "inplace", "label": "enum Vault.Status", "numberOfBytes": "1",
            "members": ["Active", "Paused"]
        },
    }
}

# upgrades-core extractStorageLayout 的输出: 类型表只有 label / members / numberOfBytes
UPGRADES_CORE_UNIT = {
    "storage": [
        {"contract": "Vault", "label": "owner", "type": "t_address", "src": "src/Vault.sol:10"},
        {"contract": "Vault", "label": "balances", "type": "t_mapping(t_address,t_uint256)", "src": "src/Vault.sol:11"},
        {"contract": "Vault", "label": "list", "type": "t_array(t_uint256)dyn_storage", "src": "src/Vault.sol:12"},
        {"contract": "Vault", "label": "fees", "type": "t_array(t_uint128)3_storage", "src": "src/Vault.sol:13"},
        {"contract": "Vault", "label": "name", "type": "t_string_storage", "src": "src/Vault.sol:14"},
        {"contract": "Vault", "label": "data", "type": "t_bytes_storage", "src": "src/Vault.sol:15"},
        {"contract": "Vault", "label": "position", "type": "t_struct(Position)10_storage", "src": "src/Vault.sol:16"},
        {"contract": "Vault", "label": "status", "type": "t_enum(Status)5", "src": "src/Vault.sol:17"},
        {"contract": "Vault", "label": "token", "type": "t_contract(IERC20)20", "src": "src/Vault.sol:18"},
    ],
    "types": {
        "t_address": {"label": "address", "numberOfBytes": "20"},
        "t_uint256": {"label": "uint256", "numberOfBytes": "32"},
        "t_uint128": {"label": "uint128", "numberOfBytes": "16"},
        "t_uint64": {"label": "uint64", "numberOfBytes": "8"},
        "t_mapping(t_address,t_uint256)": {"label": "mapping(address => uint256)", "numberOfBytes": "32"},
        "t_array(t_uint256)dyn_storage": {"label": "uint256[]", "numberOfBytes": "32"},
        "t_array(t_uint128)3_storage": {"label": "uint128[3]", "numberOfBytes": "64"},
        "t_string_storage": {"label": "string", "numberOfBytes": "32"},
        "t_bytes_storage": {"label": "bytes", "numberOfBytes": "32"},
        "t_struct(Position)10_storage": {
            "label": "struct Vault.Position",
            "members": [{"label": "amount", "type": "t_uint256"}, {"label": "since", "type": "t_uint64"}],
            "numberOfBytes": "64"
        },
        "t_enum(Status)5": {"label": "enum Vault.Status", "members": ["Active", "Paused"], "numberOfBytes": "1"},
        "t_contract(IERC20)20": {"label": "contract IERC20", "numberOfBytes": "20"},
    },
    "layoutVersion": "1.2",
    "flat": False,
    "namespaces": {}
}


def linked_list_unit(*extra_members):
    """struct Node { uint256 v; Node[] kids; }"""
    members = [
        {"label": "v", "type": "t_uint256"},
        {"label": "kids", "type": "t_array(t_struct(Node)1_storage)dyn_storage"},
    ]
    members.extend(extra_members)
    return {
        "storage": [
            {"contract": "Tree", "label": "root", "type": "t_struct(Node)1_storage"},
            {"contract": "Tree", "label": "size", "type": "t_uint256"},
        ],
        "types": {
            "t_uint256": {"label": "uint256", "numberOfBytes": "32"},
            "t_struct(Node)1_storage": {
                "label": "struct Tree.Node", "members": members, "numberOfBytes": str(32 * len(members))
            },
            "t_array(t_struct(Node)1_storage)dyn_storage": {"label": "struct Tree.Node[]", "numberOfBytes": "32"},
        }
    }


class TestTypeLabels(unittest.TestCase):
    """测试类型名解析"""

    def test_elementary(self):
        cases = {
            "uint256": (32, "uint"),
            "uint": (32, "uint"),
            "int8": (1, "int"),
            "address": (20, "address"),
            "address payable": (20, "address"),
            "bool": (1, "bool"),
            "bytes4": (4, "bytes"),
        }
        for label, (size, tag) in cases.items():
            descriptor = elementary_type(label)
            self.assertEqual((descriptor.size, descriptor.tag), (size, tag), label)

    def test_dynamic_elementary(self):
        self.assertTrue(elementary_type("string").dynamic)
        self.assertTrue(elementary_type("bytes").dynamic)

    def test_unknown_elementary(self):
        for label in ("uint7", "uint264", "bytes33", "Foo"):
            self.assertIsNone(elementary_type(label), label)

    def test_nested_mapping(self):
        descriptor = parse_type_label("mapping(address => mapping(uint256 => bool))")

        self.assertEqual(descriptor.kind, TypeKind.MAPPING)
        self.assertEqual(descriptor.key.tag, "address")
        self.assertEqual(descriptor.element.kind, TypeKind.MAPPING)
        self.assertEqual(descriptor.element.element.tag, "bool")

    def test_arrays(self):
        nested = parse_type_label("uint256[2][3]")

        self.assertEqual(nested.kind, TypeKind.FIXED_ARRAY)
        self.assertEqual(nested.length, 3)
        self.assertEqual(nested.element.length, 2)

        dynamic = parse_type_label("mapping(address => uint8)[]")
        self.assertEqual(dynamic.kind, TypeKind.DYNAMIC_ARRAY)
        self.assertEqual(dynamic.element.kind, TypeKind.MAPPING)

    def test_bad_labels(self):
        for label in ("uint7", "uint256[x]", "mapping(address)", "[3]"):
            with self.assertRaises(MalformedLayoutError, msg=label):
                parse_type_label(label, owner="v")


class TestNativeFormat(unittest.TestCase):
    """测试原生格式"""

    def setUp(self):
        self.loader = LayoutLoader()

    def test_variable_list(self):
        layout_set = self.loader.parse_units({
            "Token": [
                {"name": "owner", "type": "address"},
                {"name": "balances", "type": "mapping(address => uint256)"},
                {"name": "pos", "type": {
                    "kind": "struct", "label": "Position",
                    "members": [{"name": "amount", "type": "uint128"}, {"name": "since", "type": "uint64"}]
                }},
                {"name": "status", "type": {"kind": "enum", "label": "Status", "members": ["A", "B"]}},
                {"name": "impl", "type": "address", "slot": 100},
            ]
        })

        layout = layout_set.layouts["Token"]
        self.assertEqual(layout_set.errors, {})
        self.assertEqual([v.name for v in layout], ["owner", "balances", "pos", "status", "impl"])
        self.assertEqual([v.index for v in layout], [0, 1, 2, 3, 4])
        self.assertEqual(layout.variables[2].type.kind, TypeKind.STRUCT)
        self.assertEqual(layout.variables[4].slot_hint, 100)

        placed = StorageLayoutCalculator().resolve(layout)
        self.assertEqual([(pv.slot, pv.offset) for pv in placed], [(0, 0), (1, 0), (2, 0), (3, 0), (100, 0)])

    def test_descriptor_without_size_fails_at_resolve(self):
        layout_set = self.loader.parse_units({
            "T": [{"name": "x", "type": {"kind": "scalar", "tag": "uint"}}]
        })

        with self.assertRaises(MalformedLayoutError) as ctx:
            StorageLayoutCalculator().resolve(layout_set.layouts["T"])
        self.assertEqual(ctx.exception.variable, "x")

    def test_bad_unit_isolated(self):
        layout_set = self.loader.parse_units({
            "Good": [{"name": "a", "type": "uint256"}],
            "Bad": [{"name": "a"}],
            "Worse": "not a layout",
        })

        self.assertIn("Good", layout_set.layouts)
        self.assertEqual(set(layout_set.errors), {"Bad", "Worse"})
        self.assertEqual(layout_set.names(), ["Good", "Bad", "Worse"])

    def test_unknown_kind(self):
        with self.assertRaises(MalformedLayoutError):
            self.loader.parse_type({"kind": "tuple"}, owner="x")


class TestSolcFormat(unittest.TestCase):
    """测试编译器格式"""

    def setUp(self):
        self.loader = LayoutLoader()

    def test_types_converted(self):
        layout = self.loader.parse_unit("Vault", SOLC_UNIT)
        kinds = [v.type.kind for v in layout]

        self.assertEqual(kinds, [
            TypeKind.SCALAR, TypeKind.SCALAR, TypeKind.MAPPING, TypeKind.STRUCT,
            TypeKind.FIXED_ARRAY, TypeKind.SCALAR, TypeKind.DYNAMIC_ARRAY, TypeKind.ENUM,
        ])
        self.assertEqual(layout.variables[0].contract, "src/Vault.sol:Vault")
        self.assertEqual(layout.variables[4].type.length, 3)
        self.assertEqual(layout.variables[7].type.enum_members, ("Active", "Paused"))
        self.assertTrue(layout.variables[5].type.dynamic)

    def test_positions_match_compiler(self):
        """重新计算的位置与编译器给出的一致"""
        layout = self.loader.parse_unit("Vault", SOLC_UNIT)

        placed = StorageLayoutCalculator().resolve(layout)

        expected = [(int(e["slot"]), e["offset"]) for e in SOLC_UNIT["storage"]]
        self.assertEqual([(pv.slot, pv.offset) for pv in placed], expected)

    def test_missing_number_of_bytes(self):
        """基础类型的宽度由类型名决定, 用户自定义值类型则必须给出"""
        unit = {
            "storage": [
                {"label": "x", "type": "t_uint256"},
                {"label": "amount", "type": "t_userDefinedValueType(Amount)7"},
            ],
            "types": {
                "t_uint256": {"encoding": "inplace", "label": "uint256"},
                "t_userDefinedValueType(Amount)7": {"encoding": "inplace", "label": "Amount"},
            },
        }
        layout = self.loader.parse_unit("T", unit)

        self.assertEqual(layout.variables[0].type.size, 32)
        with self.assertRaises(MalformedLayoutError) as ctx:
            StorageLayoutCalculator().resolve(layout)
        self.assertEqual(ctx.exception.variable, "amount")

    def test_missing_type_entry(self):
        unit = {"storage": [{"label": "x", "type": "t_missing"}], "types": {}}

        with self.assertRaises(MalformedLayoutError):
            self.loader.parse_unit("T", unit)

    def test_upgrade_from_solc_snapshots(self):
        new_unit = json.loads(json.dumps(SOLC_UNIT))
        new_unit["storage"].append(
            {"astId": 30, "contract": "src/Vault.sol:Vault", "label": "fee", "offset": 1, "slot": "8", "type": "t_uint128"}
        )

        report = LayoutDiffer().diff(
            self.loader.parse_unit("Vault", SOLC_UNIT),
            self.loader.parse_unit("Vault", new_unit)
        )

        self.assertTrue(report.ok)


class TestUpgradesCoreFormat(unittest.TestCase):
    """测试不带 encoding 的 upgrades-core 快照"""

    def setUp(self):
        self.loader = LayoutLoader()

    def load(self, unit):
        return self.loader.parse_unit("Vault", json.loads(json.dumps(unit)))

    def test_kinds_from_type_ids(self):
        layout = self.load(UPGRADES_CORE_UNIT)
        types = [v.type for v in layout]

        self.assertEqual([t.kind for t in types], [
            TypeKind.SCALAR, TypeKind.MAPPING, TypeKind.DYNAMIC_ARRAY, TypeKind.FIXED_ARRAY,
            TypeKind.SCALAR, TypeKind.SCALAR, TypeKind.STRUCT, TypeKind.ENUM, TypeKind.CONTRACT,
        ])
        self.assertEqual(types[1].element.tag, "uint")
        self.assertEqual(types[1].key.tag, "address")
        self.assertEqual(types[2].element.size, 32)
        self.assertEqual((types[3].length, types[3].element.size), (3, 16))
        self.assertEqual((types[4].tag, types[5].tag), ("string", "bytes"))
        self.assertTrue(types[4].dynamic and types[5].dynamic)

    def test_positions(self):
        placed = StorageLayoutCalculator().resolve(self.load(UPGRADES_CORE_UNIT))

        self.assertEqual([(pv.slot, pv.offset) for pv in placed], [
            (0, 0), (1, 0), (2, 0), (3, 0), (5, 0), (6, 0), (7, 0), (9, 0), (9, 1),
        ])

    def test_identical_snapshots(self):
        report = LayoutDiffer().diff(self.load(UPGRADES_CORE_UNIT), self.load(UPGRADES_CORE_UNIT))

        self.assertTrue(report.ok)
        self.assertEqual(report.warnings, [])

    def test_mapping_value_narrowed(self):
        new_unit = json.loads(json.dumps(UPGRADES_CORE_UNIT))
        new_unit["storage"][1]["type"] = "t_mapping(t_address,t_uint8)"
        new_unit["types"]["t_mapping(t_address,t_uint8)"] = {
            "label": "mapping(address => uint8)", "numberOfBytes": "32"
        }

        report = LayoutDiffer().diff(self.load(UPGRADES_CORE_UNIT), self.load(new_unit))

        self.assertFalse(report.ok)
        self.assertEqual(report.findings[1].severity, Severity.UNSAFE_TYPE_CHANGE)

    def test_dynamic_array_element_changed(self):
        new_unit = json.loads(json.dumps(UPGRADES_CORE_UNIT))
        new_unit["storage"][2]["type"] = "t_array(t_address)dyn_storage"
        new_unit["types"]["t_array(t_address)dyn_storage"] = {"label": "address[]", "numberOfBytes": "32"}

        report = LayoutDiffer().diff(self.load(UPGRADES_CORE_UNIT), self.load(new_unit))

        self.assertEqual(report.findings[2].severity, Severity.UNSAFE_TYPE_CHANGE)

    def test_unbalanced_type_id(self):
        unit = {"storage": [{"label": "m", "type": "t_mapping(t_address,t_uint256"}],
                "types": {"t_mapping(t_address,t_uint256": {"label": "mapping(address => uint256)"}}}

        with self.assertRaises(MalformedLayoutError):
            self.loader.parse_unit("T", unit)


class TestRecursiveStructs(unittest.TestCase):
    """测试经由动态数组引用自身的struct"""

    def setUp(self):
        self.loader = LayoutLoader()

    def test_loaded_without_errors(self):
        layout_set = self.loader.parse_units({"Tree": linked_list_unit()})

        self.assertEqual(layout_set.errors, {})
        root = layout_set.layouts["Tree"].variables[0].type
        kids = root.members[1].type
        self.assertIsNotNone(kids.element.ref)
        self.assertIs(kids.element.resolved(), root)

    def test_positions(self):
        layout = self.loader.parse_unit("Tree", linked_list_unit())

        placed = StorageLayoutCalculator().resolve(layout)

        self.assertEqual([(pv.slot, pv.width) for pv in placed], [(0, 64), (2, 32)])

    def test_identical_snapshots(self):
        report = LayoutDiffer().diff(
            self.loader.parse_unit("Tree", linked_list_unit()),
            self.loader.parse_unit("Tree", linked_list_unit())
        )

        self.assertTrue(report.ok)

    def test_grown_node_misaligns_children(self):
        report = LayoutDiffer().diff(
            self.loader.parse_unit("Tree", linked_list_unit()),
            self.loader.parse_unit("Tree", linked_list_unit({"label": "w", "type": "t_uint256"}))
        )

        self.assertFalse(report.ok)
        self.assertEqual(report.findings[0].severity, Severity.UNSAFE_TYPE_CHANGE)

    def test_struct_containing_itself_directly(self):
        unit = {
            "storage": [{"label": "n", "type": "t_struct(Node)1_storage"}],
            "types": {"t_struct(Node)1_storage": {
                "label": "struct Node", "members": [{"label": "self", "type": "t_struct(Node)1_storage"}]
            }},
        }

        with self.assertRaises(MalformedLayoutError):
            self.loader.parse_unit("T", unit)


class TestNamespaces(unittest.TestCase):
    """测试ERC-7201命名空间"""

    def test_namespace_split_into_unit(self):
        data = {
            "Token": {
                "storage": [{"name": "version", "type": "uint8"}],
                "namespaces": {
                    "erc7201:example.main": [
                        {"name": "x", "type": "uint256"},
                        {"name": "y", "type": "uint128"},
                    ]
                }
            }
        }

        layout_set = LayoutLoader().parse_units(data)

        self.assertEqual(set(layout_set.layouts), {"Token", "Token@erc7201:example.main"})
        namespace = layout_set.layouts["Token@erc7201:example.main"]
        root = erc7201_slot("example.main")
        self.assertEqual(namespace.variables[0].slot_hint, root)
        placed = StorageLayoutCalculator().resolve(namespace)
        self.assertEqual([pv.slot for pv in placed], [root, root + 1])

    def test_unsupported_formula(self):
        data = {"Token": {"storage": [], "namespaces": {"custom:foo": []}}}

        layout_set = LayoutLoader().parse_units(data)

        self.assertIn("Token", layout_set.layouts)
        self.assertIn("Token@custom:foo", layout_set.errors)


class TestLoadFile(unittest.TestCase):
    """测试文件加载"""

    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.dir = Path(self.tmp.name)

    def tearDown(self):
        self.tmp.cleanup()

    def test_round_trip_file(self):
        path = self.dir / "layout.json"
        path.write_text(json.dumps({"Vault": SOLC_UNIT}), encoding="utf-8")

        layout_set = load_layouts(str(path))

        self.assertEqual(len(layout_set.layouts["Vault"]), 8)

    def test_missing_file(self):
        with self.assertRaises(LayoutError):
            LayoutLoader().load_file(self.dir / "nope.json")

    def test_invalid_json(self):
        path = self.dir / "broken.json"
        path.write_text("{not json", encoding="utf-8")

        with self.assertRaises(LayoutError):
            LayoutLoader().load_file(path)

    def test_top_level_must_be_object(self):
        path = self.dir / "list.json"
        path.write_text("[]", encoding="utf-8")

        with self.assertRaises(LayoutError):
            LayoutLoader().load_file(path)


if __name__ == "__main__":
    unittest.main(verbosity=2)
