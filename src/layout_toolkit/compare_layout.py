#!/usr/bin/env python3
"""
存储布局兼容性检查 (CI门禁)

读取两个存储布局快照 (参考版本 ref 和待合入版本 head),
对两边都存在的每个存储单元做兼容性比较。

退出码:
    0  全部兼容
    1  存在不安全的布局变化 (或按配置视为失败的警告/单元增删)
    2  输入或配置错误 (工具链问题, 不是升级安全问题)
"""

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import List, Optional

from .compatibility.layout_differ import ComparisonSummary, compare_unit_sets, count_by_severity
from .config import CheckConfig, load_config
from .errors import ConfigError, LayoutError
from .layout_loader import LayoutLoader

LOG_FORMAT = '%(asctime)s - %(levelname)s - %(message)s'
logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_UNSAFE = 1
EXIT_INPUT_ERROR = 2


def run_check(ref: Path, head: Path, config: CheckConfig) -> ComparisonSummary:
    """加载两个快照并逐单元比较"""
    loader = LayoutLoader()
    old_set = loader.load_file(ref)
    new_set = loader.load_file(head)

    logger.info(f"比较 {ref} -> {head}")
    return compare_unit_sets(
        old_set.layouts,
        new_set.layouts,
        skip_units=config.skip_units,
        old_errors=old_set.errors,
        new_errors=new_set.errors
    )


def exit_code_for(summary: ComparisonSummary, config: CheckConfig) -> int:
    """根据比较结果和配置决定退出码"""
    if summary.errored:
        return EXIT_INPUT_ERROR

    failed = bool(summary.failed)

    if config.fail_on_warning and any(r.has_warnings for r in summary.results):
        failed = True

    for policy, units, what in (
        (config.removed_units, summary.removed_units, "新版本中被删除"),
        (config.added_units, summary.added_units, "新版本中新增"),
    ):
        if not units or policy == "ignore":
            continue
        for name in units:
            logger.warning(f"存储单元 {name} {what}")
        if policy == "fail":
            failed = True

    return EXIT_UNSAFE if failed else EXIT_OK


def format_summary(summary: ComparisonSummary, verbose: bool = False) -> str:
    lines: List[str] = []

    for result in summary.results:
        if result.error is not None:
            lines.append(f"✗ {result.name}: 输入错误: {result.error}")
            continue

        report = result.report
        counts = count_by_severity(report)
        detail = ", ".join(f"{s.value}: {n}" for s, n in counts.items())
        mark = "✓" if report.ok else "✗"
        lines.append(f"{mark} {result.name} ({detail or '空布局'})")

        explanation = report.explain(verbose=verbose)
        if explanation:
            lines.append(explanation)

    for name in summary.removed_units:
        lines.append(f"- {name}: 只存在于参考版本, 未比较")
    for name in summary.added_units:
        lines.append(f"+ {name}: 只存在于新版本, 未比较")

    lines.append(
        f"\n共比较 {len(summary.results)} 个存储单元: "
        f"{len(summary.results) - len(summary.failed) - len(summary.errored)} 兼容, "
        f"{len(summary.failed)} 不安全, {len(summary.errored)} 输入错误"
    )
    return "\n".join(lines)


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description='检查可升级合约的存储布局兼容性',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
示例:
  # 比较参考分支和当前分支的布局快照
  compare-layout --ref build/layout-main.json --head build/layout-head.json

  # 机器可读输出, 警告也视为失败
  compare-layout --ref ref.json --head head.json --json --strict

  # 指定配置文件
  compare-layout --ref ref.json --head head.json --config layout_check.toml

检查规则:
  • 变量按声明顺序匹配, 名字变化不影响兼容性
  • 只允许在末尾追加变量
  • 删除、重排、改变宽度都是不安全的
  • 宽度相同但语义变化 (如 uint160 -> address) 只给出警告
        """
    )

    parser.add_argument(
        '--ref',
        type=Path,
        required=True,
        help='参考版本的布局快照 (JSON)'
    )

    parser.add_argument(
        '--head',
        type=Path,
        required=True,
        help='待检查版本的布局快照 (JSON)'
    )

    parser.add_argument(
        '--config',
        type=Path,
        help='TOML配置文件 (默认: 当前目录下的 layout_check.toml, 若存在)'
    )

    parser.add_argument(
        '--strict',
        action='store_true',
        default=None,
        help='警告也视为失败'
    )

    parser.add_argument(
        '--json',
        action='store_true',
        help='以 JSON 格式输出结果'
    )

    parser.add_argument(
        '--verbose',
        action='store_true',
        help='列出所有变量的比较结果 (包括 OK)'
    )

    parser.add_argument(
        '--debug',
        action='store_true',
        help='启用调试日志'
    )

    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)

    logging.basicConfig(level=logging.INFO, format=LOG_FORMAT)

    try:
        config = load_config(args.config).with_overrides(fail_on_warning=args.strict)
    except ConfigError as e:
        logger.error(f"加载配置失败: {e}")
        return EXIT_INPUT_ERROR

    # 设置日志级别
    if args.debug:
        logging.getLogger().setLevel(logging.DEBUG)
    else:
        logging.getLogger().setLevel(config.log_level.upper())

    try:
        summary = run_check(args.ref, args.head, config)
    except LayoutError as e:
        logger.error(f"加载布局失败: {e}")
        return EXIT_INPUT_ERROR

    if args.json:
        print(json.dumps(summary.to_dict(), ensure_ascii=False, indent=2))
    else:
        print(format_summary(summary, verbose=args.verbose))

    return exit_code_for(summary, config)


if __name__ == '__main__':
    sys.exit(main())
