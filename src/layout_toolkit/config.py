"""
检查配置

从TOML文件的 [layout_check] 表读取::

    [layout_check]
    fail_on_warning = false     # WARNING 也视为失败
    removed_units = "ignore"    # 新版本中整个单元消失: ignore | warn | fail
    added_units = "ignore"      # 新版本中新增单元: ignore | warn | fail
    skip_units = ["Mock"]       # 不参与比较的单元
    log_level = "INFO"
"""

import logging
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import toml

from .errors import ConfigError

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_FILE = "layout_check.toml"
CONFIG_TABLE = "layout_check"

UNIT_POLICIES = ("ignore", "warn", "fail")
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")


@dataclass(frozen=True)
class CheckConfig:
    """检查配置"""
    fail_on_warning: bool = False
    removed_units: str = "ignore"
    added_units: str = "ignore"
    skip_units: Tuple[str, ...] = ()
    log_level: str = "INFO"

    def with_overrides(self, **overrides: Any) -> "CheckConfig":
        """用非 None 的参数覆盖配置 (命令行优先)"""
        values = {k: v for k, v in overrides.items() if v is not None}
        return validate(replace(self, **values))


def validate(config: CheckConfig) -> CheckConfig:
    for name in ("removed_units", "added_units"):
        value = getattr(config, name)
        if value not in UNIT_POLICIES:
            raise ConfigError(f"{name} 必须是 {'/'.join(UNIT_POLICIES)} 之一, 实际为 {value!r}")
    if str(config.log_level).upper() not in LOG_LEVELS:
        raise ConfigError(f"log_level 必须是 {'/'.join(LOG_LEVELS)} 之一, 实际为 {config.log_level!r}")
    if not isinstance(config.fail_on_warning, bool):
        raise ConfigError(f"fail_on_warning 必须是布尔值, 实际为 {config.fail_on_warning!r}")
    return config


def load_config(path: Optional[Path] = None) -> CheckConfig:
    """
    加载配置

    Args:
        path: 配置文件路径; 为 None 时尝试当前目录下的 layout_check.toml, 不存在则用默认值

    Raises:
        ConfigError: 显式指定的文件不存在, 或内容非法
    """
    if path is None:
        path = Path(DEFAULT_CONFIG_FILE)
        if not path.exists():
            logger.debug(f"未找到 {DEFAULT_CONFIG_FILE}, 使用默认配置")
            return CheckConfig()
    elif not Path(path).exists():
        raise ConfigError(f"配置文件不存在: {path}")

    try:
        with open(path, 'r', encoding='utf-8') as f:
            data = toml.load(f)
    except toml.TomlDecodeError as e:
        raise ConfigError(f"配置文件不是合法TOML ({path}): {e}") from e

    table = data.get(CONFIG_TABLE, {})
    if not isinstance(table, dict):
        raise ConfigError(f"[{CONFIG_TABLE}] 必须是表")

    config = validate(CheckConfig(**_known_keys(table, path)))
    logger.debug(f"从 {path} 加载配置: {config}")
    return config


def _known_keys(table: Dict[str, Any], path: Path) -> Dict[str, Any]:
    known = {f.name for f in fields(CheckConfig)}
    values = {}
    for key, value in table.items():
        if key not in known:
            logger.warning(f"忽略未知配置项 {key} ({path})")
            continue
        values[key] = value

    if "skip_units" in values:
        skip = values["skip_units"]
        if not isinstance(skip, list) or not all(isinstance(s, str) for s in skip):
            raise ConfigError("skip_units 必须是字符串列表")
        values["skip_units"] = tuple(skip)
    return values
