"""
错误类型

布局"不兼容"从来不是异常,它总是以 Finding 的形式出现在 Report 中。
这里的异常只用于无法被解释为布局的输入 (工具链/输入问题)。
"""

from typing import Optional


class LayoutError(Exception):
    """布局工具链错误的基类"""


class MalformedLayoutError(LayoutError):
    """
    输入无法解释为合法布局

    例如: 声明为定长类型却没有字节大小, 数组缺少元素类型。
    """

    def __init__(self, message: str, variable: Optional[str] = None):
        self.variable = variable
        self.detail = message
        if variable:
            message = f"变量 '{variable}': {message}"
        super().__init__(message)


class StructuralLayoutError(MalformedLayoutError):
    """结构上不可能的布局 (空struct, 非正长度的定长数组)"""


class ConfigError(LayoutError):
    """配置文件无法读取或取值非法"""
