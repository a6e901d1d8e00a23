"""文本规范化模块

提供语言感知的分词（中文使用 jieba 分词，其他文字按空白和标点切分）
以及查询字符串转义。索引和查询必须使用同一套分词规则。
"""

import logging
import re
from typing import List, Optional, Tuple, Union

import jieba

from rtfm.errors import EncodingError, QueryBuildError


logger = logging.getLogger(__name__)


# CJK 统一表意文字及扩展区
CJK_RANGES = (
    (0x3400, 0x4DBF),    # Extension A
    (0x4E00, 0x9FFF),    # CJK Unified Ideographs
    (0xF900, 0xFAFF),    # Compatibility Ideographs
    (0x20000, 0x2A6DF),  # Extension B
    (0x2A700, 0x2EBEF),  # Extension C-F
    (0x30000, 0x3134F),  # Extension G
)

# 查询语法中的运算符字符
QUERY_OPERATORS = frozenset('+-&|!(){}[]^"~*?:\\/')

_WORD_PATTERN = re.compile(r"[^\W_]+")


def is_cjk(char: str) -> bool:
    """判断字符是否为 CJK 表意文字"""
    code = ord(char)
    for start, end in CJK_RANGES:
        if start <= code <= end:
            return True
    return False


def contains_cjk(text: str) -> bool:
    return any(is_cjk(char) for char in text)


def ensure_text(data: Union[str, bytes], identifier: str = "<text>") -> str:
    """将输入转换为合法的 Unicode 字符串

    bytes 按严格 UTF-8 解码（允许 BOM）；字符串中的孤立代理项同样视为非法。

    Raises:
        EncodingError: 输入包含非法字节序列
    """
    if isinstance(data, (bytes, bytearray)):
        try:
            return bytes(data).decode("utf-8-sig")
        except UnicodeDecodeError as e:
            raise EncodingError(identifier, str(e)) from e

    try:
        data.encode("utf-8")
    except UnicodeEncodeError as e:
        raise EncodingError(identifier, str(e)) from e
    return data


def split_script_runs(text: str) -> List[Tuple[bool, str]]:
    """按文字类型把文本切分为连续的片段

    Returns:
        list: (是否为 CJK, 片段文本) 列表，保持原始顺序
    """
    runs: List[Tuple[bool, str]] = []
    current: List[str] = []
    current_cjk = False

    for char in text:
        char_cjk = is_cjk(char)
        if current and char_cjk != current_cjk:
            runs.append((current_cjk, ''.join(current)))
            current = []
        current_cjk = char_cjk
        current.append(char)

    if current:
        runs.append((current_cjk, ''.join(current)))
    return runs


def _segment_cjk(run: str) -> List[str]:
    return [word for word in jieba.cut(run, HMM=True) if word.strip()]


def _split_words(run: str) -> List[str]:
    return [word.casefold() for word in _WORD_PATTERN.findall(run)]


def tokenize(text: Union[str, bytes], lang_hint: Optional[str] = None) -> List[str]:
    """将文本切分为检索词

    中文片段使用 jieba 分词（词典最长路径匹配，未登录词由 HMM 识别），
    其他片段按空白、标点切分并统一为小写。混合文本逐片段处理后按原顺序拼接。

    Args:
        text: 待分词文本
        lang_hint: 文本语言提示（任何语言的汉字片段都使用同一套分词规则）

    Returns:
        list: 检索词列表

    Raises:
        EncodingError: 输入包含非法字节序列
    """
    text = ensure_text(text)
    if not text:
        return []

    tokens: List[str] = []
    for cjk_run, run in split_script_runs(text):
        if cjk_run:
            tokens.extend(_segment_cjk(run))
        else:
            tokens.extend(_split_words(run))
    return tokens


def escape_for_query(text: str) -> str:
    """转义查询语法中的所有运算符字符

    用户输入的通配符、引号、括号等不会改变查询语义。

    Example:
        >>> escape_for_query("ps -a")
        'ps \\\\-a'
    """
    escaped = []
    for char in text:
        if char in QUERY_OPERATORS:
            escaped.append('\\')
        escaped.append(char)
    return ''.join(escaped)


def parse_query(escaped: str) -> str:
    """读取转义后的查询字符串，还原为字面文本

    查询语言只支持字面词项，任何未转义的运算符都说明转义出了问题。

    Raises:
        QueryBuildError: 存在未转义的运算符或结尾的孤立反斜杠
    """
    literal = []
    chars = iter(enumerate(escaped))
    for position, char in chars:
        if char == '\\':
            following = next(chars, None)
            if following is None:
                raise QueryBuildError(
                    f"Dangling escape at position {position} in query {escaped!r}"
                )
            literal.append(following[1])
        elif char in QUERY_OPERATORS:
            raise QueryBuildError(
                f"Unescaped operator {char!r} at position {position} in query {escaped!r}"
            )
        else:
            literal.append(char)
    return ''.join(literal)


def collapse_whitespace(text: str) -> str:
    """去除首尾空白并把内部连续空白压缩为一个空格"""
    return ' '.join(text.split())
