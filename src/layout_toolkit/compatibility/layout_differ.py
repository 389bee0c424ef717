"""
布局差异比较器

按声明顺序(而非名字)逐位置比较新旧两个布局, 生成 Report。
批量比较多个存储单元时, 单个单元的输入错误不会中断其它单元。
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Tuple

from ..errors import MalformedLayoutError
from ..storage_layout.layout_calculator import StorageLayoutCalculator
from ..storage_layout.types import Layout
from .findings import Report, Severity
from .matching import match_positioned
from .type_oracle import TypeCompatibilityOracle

logger = logging.getLogger(__name__)


class LayoutDiffer:
    """
    布局差异比较器

    1. 两个布局各自整体解析一次槽位
    2. 逐位置匹配, 通过 TypeCompatibilityOracle 判断类型
    3. 汇总为 Report
    """

    def __init__(
        self,
        calculator: Optional[StorageLayoutCalculator] = None,
        oracle: Optional[TypeCompatibilityOracle] = None
    ):
        self.calculator = calculator or StorageLayoutCalculator()
        self.oracle = oracle or TypeCompatibilityOracle(self.calculator)
        self.logger = logging.getLogger(__name__ + '.LayoutDiffer')

    def diff(self, old: Layout, new: Layout) -> Report:
        """
        比较两个布局

        Raises:
            MalformedLayoutError: 任一布局无法解析
        """
        old_positioned = self.calculator.resolve(old)
        new_positioned = self.calculator.resolve(new)

        findings = match_positioned(old_positioned, new_positioned, self.oracle)
        report = Report(name=new.name or old.name, findings=tuple(findings))

        unsafe = len(report.errors)
        self.logger.debug(
            f"{report.name}: {len(findings)} 项, {unsafe} 项不安全, {len(report.warnings)} 项警告"
        )
        return report


# ============================================================================
# 批量比较
# ============================================================================

@dataclass(frozen=True)
class UnitResult:
    """单个存储单元的比较结果: 要么有 report, 要么有 error"""
    name: str
    report: Optional[Report] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None and self.report is not None and self.report.ok

    @property
    def has_warnings(self) -> bool:
        return self.report is not None and bool(self.report.warnings)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {'name': self.name, 'ok': self.ok}
        if self.error is not None:
            data['error'] = self.error
        if self.report is not None:
            data['findings'] = self.report.to_dict()['findings']
        return data


@dataclass
class ComparisonSummary:
    """一次批量比较的汇总"""
    results: List[UnitResult] = field(default_factory=list)
    removed_units: List[str] = field(default_factory=list)  # 只在旧版本中存在
    added_units: List[str] = field(default_factory=list)    # 只在新版本中存在
    skipped_units: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return all(r.ok for r in self.results)

    @property
    def failed(self) -> List[UnitResult]:
        return [r for r in self.results if r.error is None and not r.ok]

    @property
    def errored(self) -> List[UnitResult]:
        return [r for r in self.results if r.error is not None]

    def to_dict(self) -> Dict[str, Any]:
        return {
            'ok': self.ok,
            'units': [r.to_dict() for r in self.results],
            'removed_units': list(self.removed_units),
            'added_units': list(self.added_units),
            'skipped_units': list(self.skipped_units),
        }


def compare_unit_sets(
    old_units: Mapping[str, Layout],
    new_units: Mapping[str, Layout],
    skip_units: Tuple[str, ...] = (),
    differ: Optional[LayoutDiffer] = None,
    old_errors: Optional[Mapping[str, str]] = None,
    new_errors: Optional[Mapping[str, str]] = None
) -> ComparisonSummary:
    """
    比较两组存储单元

    遍历旧版本中的单元名: 新版本也有的做比较, 没有的记为 removed;
    只在新版本中出现的记为 added。是否因此失败由调用方决定。

    old_errors / new_errors 是加载阶段就无法解析的单元 (单元名 -> 错误信息),
    它们只让各自的单元失败, 不影响其它单元。
    """
    differ = differ or LayoutDiffer()
    old_errors = old_errors or {}
    new_errors = new_errors or {}
    summary = ComparisonSummary()

    old_names = list(old_units) + [n for n in old_errors if n not in old_units]
    new_names = list(new_units) + [n for n in new_errors if n not in new_units]

    for name in old_names:
        if name in skip_units:
            summary.skipped_units.append(name)
            continue

        if name not in new_names:
            logger.info(f"  - {name}: 新版本中不存在, 跳过比较")
            summary.removed_units.append(name)
            continue

        load_error = old_errors.get(name) or new_errors.get(name)
        if load_error is not None:
            summary.results.append(UnitResult(name=name, error=load_error))
            continue

        try:
            report = differ.diff(old_units[name], new_units[name])
        except MalformedLayoutError as e:
            logger.error(f"  ✗ {name}: 布局无法解析: {e}")
            summary.results.append(UnitResult(name=name, error=str(e)))
            continue

        summary.results.append(UnitResult(name=name, report=report))
        if report.ok:
            logger.info(f"  ✓ {name}: {len(report.findings)} 个变量兼容")
        else:
            kinds = sorted({f.severity.value for f in report.errors})
            logger.info(f"  ✗ {name}: {len(report.errors)} 项不安全 ({', '.join(kinds)})")

    summary.added_units.extend(
        name for name in new_names if name not in old_names and name not in skip_units
    )
    return summary


def count_by_severity(report: Report) -> Dict[Severity, int]:
    counts: Dict[Severity, int] = {}
    for finding in report.findings:
        counts[finding.severity] = counts.get(finding.severity, 0) + 1
    return counts
