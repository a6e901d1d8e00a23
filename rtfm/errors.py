"""异常定义模块

知识库各组件共用的异常类型。
单条记录的解析/编码错误在批处理中被计数并跳过；
索引 I/O 错误和查询构建错误原样传递给调用方。
"""


class RtfmError(Exception):
    """所有知识库异常的基类"""
    pass


class ParseError(RtfmError):
    """解析错误基类"""
    pass


class UnlearnableError(ParseError):
    """无法从输入中提取出可用的描述或示例

    该记录不能被持久化或索引，调用方应跳过并计数。
    """

    def __init__(self, command: str, reason: str):
        self.command = command
        self.reason = reason
        super().__init__(f"Cannot learn '{command}': {reason}")


class EncodingError(RtfmError):
    """输入文本包含非法的字节序列"""

    def __init__(self, identifier: str, detail: str = ""):
        self.identifier = identifier
        self.detail = detail
        message = f"Malformed text in '{identifier}'"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


class IndexIOError(RtfmError):
    """索引持久化过程中的存储错误

    发生时旧快照保持不变，仍可继续提供查询。
    """
    pass


class QueryBuildError(RtfmError):
    """转义后的查询仍无法构建

    这总是转义逻辑的缺陷，不能被当作"无结果"处理。
    """
    pass


class NotFoundError(RtfmError):
    """请求的 (name, lang) 记录不存在"""

    def __init__(self, name: str, lang: str):
        self.name = name
        self.lang = lang
        super().__init__(f"Command '{name}' ({lang}) not found")
