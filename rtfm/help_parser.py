"""帮助输出解析模块

把 `<command> --help` 和 `man <command>` 的原始输出解析为结构化记录。
每条启发式规则都是独立的纯函数：行分类 -> 描述提取 -> 示例合成 -> 来源合并。
解析器不执行任何进程，原始输出由调用方提供。
"""

import logging
import re
import sys
from enum import Enum
from typing import List, NamedTuple, Optional, Sequence, Tuple

from rtfm.config import settings
from rtfm.errors import UnlearnableError
from rtfm.models import Example, HelpCapture, PreferredSource, SourceKind, StructuredRecord
from rtfm.text import collapse_whitespace


logger = logging.getLogger(__name__)


# 描述最多收集的字符数
DESCRIPTION_MAX_CHARS = 200

_ANSI_PATTERN = re.compile(r'\x1b\[[0-9;?]*[A-Za-z]')
_USAGE_PATTERN = re.compile(r'^\s*(usage|synopsis)\b', re.IGNORECASE)
_LABEL_PATTERN = re.compile(r'^(NAME|DESCRIPTION)\s*$')
_TITLE_PATTERN = re.compile(r'^\S+\(\d\w*\)\s.*\S+\(\d\w*\)\s*$')
_UPPER_HEADING_PATTERN = re.compile(r'^[A-Z][A-Z0-9 _/-]*$')
_SECTION_WORDS = frozenset({"options", "flags", "commands", "arguments", "parameters"})
_FLAG_PATTERN = re.compile(r'^--?[A-Za-z0-9?#@]')
_OPTION_SPLIT = re.compile(r'\s{2,}|\t')
_MAN_NAME_PATTERN = re.compile(
    r'^\s*(?P<names>[\w.+-]+(?:\s*,\s*[\w.+-]+)*)\s+(?:\\?-|–|—)\s+(?P<summary>\S.*)$'
)

_HELP_KEYWORDS = ("usage", "options", "help", "commands", "synopsis", "description")
_EXAMPLE_HEADINGS = frozenset({"example", "examples"})
_INLINE_COMMENT = re.compile(r"\s+#\s+")


class LineKind(Enum):
    """帮助文本的行类型"""
    BLANK = "blank"
    TITLE = "title"       # man 页面页眉，如 "LS(1)  User Commands  LS(1)"
    USAGE = "usage"       # Usage: / SYNOPSIS
    LABEL = "label"       # NAME / DESCRIPTION 标题
    SECTION = "section"   # OPTIONS、Flags: 等选项类小节标题
    FLAG = "flag"         # 以 -x / --xx 开头的行
    TEXT = "text"


class Extraction(NamedTuple):
    """单个来源的提取结果"""
    source: SourceKind
    label: str
    text: str
    description: str
    examples: List[Example]


def strip_ansi_codes(text: str) -> str:
    """移除 ANSI 转义序列和 backspace 粗体/下划线效果"""
    text = _ANSI_PATTERN.sub('', text)
    if '\x08' not in text:
        return text

    result: List[str] = []
    for char in text:
        if char == '\x08':
            if result:
                result.pop()
        else:
            result.append(char)
    return ''.join(result)


def is_valid_help_content(text: str) -> bool:
    """检查内容是否像有效的帮助文本"""
    trimmed = text.strip()
    if not trimmed:
        return False
    lower = trimmed.lower()
    return any(keyword in lower for keyword in _HELP_KEYWORDS) or len(trimmed) > 50


def classify_line(line: str) -> LineKind:
    """判断单行帮助文本的类型"""
    stripped = line.strip()
    if not stripped:
        return LineKind.BLANK
    if _TITLE_PATTERN.match(stripped):
        return LineKind.TITLE
    if _USAGE_PATTERN.match(stripped):
        return LineKind.USAGE
    if _FLAG_PATTERN.match(stripped):
        return LineKind.FLAG

    indented = line[:1].isspace()
    if not indented:
        if _LABEL_PATTERN.match(stripped):
            return LineKind.LABEL
        if stripped.lower() in _SECTION_WORDS:
            return LineKind.SECTION
        if _UPPER_HEADING_PATTERN.match(stripped) and len(stripped) > 1:
            return LineKind.SECTION
        # "Common Commands:"、"Management Commands:" 这类短标题
        if stripped.endswith(':') and len(stripped.split()) <= 4:
            return LineKind.SECTION
    return LineKind.TEXT


def man_name_summary(line: str, command: str) -> Optional[str]:
    """解析 man NAME 小节的 "cmd - summary" 行"""
    match = _MAN_NAME_PATTERN.match(line)
    if not match:
        return None
    names = [n.strip().lower() for n in match.group('names').split(',')]
    if command.lower() not in names:
        return None
    return collapse_whitespace(match.group('summary'))


def extract_description(lines: Sequence[str], command: str) -> str:
    """提取描述

    取第一个选项小节（或第一行选项）之前的第一段连续文本。
    Usage/SYNOPSIS 行及其缩进的续行会被跳过。

    Returns:
        str: 压缩空白后的描述，找不到时返回空字符串
    """
    block: List[str] = []
    length = 0
    in_usage = False

    for line in lines:
        kind = classify_line(line)

        if kind is LineKind.BLANK:
            if block:
                break
            in_usage = False
            continue
        if kind is LineKind.TITLE:
            continue
        if kind is LineKind.USAGE:
            if block:
                break
            in_usage = True
            continue
        if kind in (LineKind.SECTION, LineKind.FLAG):
            break
        if kind is LineKind.LABEL:
            if block:
                break
            in_usage = False
            continue

        if in_usage and line[:1].isspace():
            continue
        in_usage = False

        if not block:
            summary = man_name_summary(line, command)
            if summary:
                return summary

        stripped = line.strip()
        block.append(stripped)
        length += len(stripped)
        if length > DESCRIPTION_MAX_CHARS:
            break

    return collapse_whitespace(' '.join(block))


def split_option_line(line: str) -> Tuple[str, str]:
    """把选项行拆分为 (选项部分, 说明部分)

    选项与说明之间以两个以上空格或制表符分隔；只有选项时说明为空。
    """
    parts = _OPTION_SPLIT.split(line.strip(), maxsplit=1)
    if len(parts) == 2:
        return parts[0].strip(), parts[1].strip()
    return parts[0].strip(), ""


def primary_flag(flags: str) -> str:
    """从 "-v, --verbose" 中选出主要选项（优先长选项）"""
    options = [opt.strip() for opt in flags.split(',') if opt.strip()]
    if not options:
        return ""
    chosen = next((opt for opt in options if opt.startswith('--')), options[0])
    return chosen.split()[0]


def _indent(line: str) -> int:
    return len(line) - len(line.lstrip())


def _continuation_description(lines: Sequence[str], index: int) -> str:
    """man 风格：选项单独一行，说明在下一行更深的缩进处"""
    base = _indent(lines[index])
    for line in lines[index + 1:]:
        kind = classify_line(line)
        if kind is LineKind.BLANK:
            continue
        if kind is LineKind.TEXT and _indent(line) > base:
            return line.strip()
        return ""
    return ""


def extract_flag_examples(lines: Sequence[str], command: str, max_examples: int) -> List[Example]:
    """把选项行合成为示例

    按出现顺序处理，越靠前的选项越重要；按命令去重并限制数量。
    """
    examples: List[Example] = []
    seen = set()

    for index, line in enumerate(lines):
        if len(examples) >= max_examples:
            break
        if classify_line(line) is not LineKind.FLAG:
            continue

        flags, description = split_option_line(line)
        if not description:
            description = _continuation_description(lines, index)
        description = collapse_whitespace(description)
        flag = primary_flag(flags)
        if not flag or not description:
            continue

        code = f"{command} {flag}"
        if code in seen:
            continue
        seen.add(code)
        examples.append(Example(description=description, code=code))

    return examples


def _split_comment(code: str) -> Tuple[str, str]:
    """拆分 "tar -cf a.tar foo  # 创建归档" 形式的行尾注释"""
    parts = _INLINE_COMMENT.split(code, maxsplit=1)
    if len(parts) == 2:
        return parts[0].strip(), collapse_whitespace(parts[1])
    return code, ""


def _is_example_heading(line: str) -> bool:
    if line[:1].isspace():
        return False
    return line.strip().rstrip(":").strip().lower() in _EXAMPLE_HEADINGS


def extract_usage_examples(lines: Sequence[str], command: str, max_examples: int) -> List[Example]:
    """收集 EXAMPLES 小节中真实的命令行

    以 `<command>` 或 `$ <command>` 开头的行作为示例，说明取其前面最近的一行文字，
    没有时取行尾的 `# 注释`。小节在下一个标题处结束。
    """
    examples: List[Example] = []
    seen = set()
    in_examples = False
    pending = ""

    for line in lines:
        if len(examples) >= max_examples:
            break
        if _is_example_heading(line):
            in_examples = True
            pending = ""
            continue
        if not in_examples:
            continue

        kind = classify_line(line)
        if kind in (LineKind.SECTION, LineKind.LABEL, LineKind.TITLE, LineKind.USAGE) and not line[:1].isspace():
            in_examples = False
            continue
        if kind is LineKind.BLANK:
            continue

        stripped = line.strip()
        code = stripped[2:].strip() if stripped.startswith("$ ") else stripped
        if code == command or code.startswith(command + " "):
            code, comment = _split_comment(code)
            description = pending or comment
            pending = ""
            if not description or code in seen:
                continue
            seen.add(code)
            examples.append(Example(description=description, code=code))
        elif not stripped.startswith(("-", "[")) and len(stripped) < 100:
            pending = collapse_whitespace(stripped).rstrip(":").strip()

    return examples


def extract(source: SourceKind, label: str, text: str, command: str, max_examples: int) -> Extraction:
    """对单个来源运行描述提取和示例收集

    EXAMPLES 小节中有真实命令行时使用它们，否则由选项行合成示例。
    """
    clean = strip_ansi_codes(text)
    lines = clean.splitlines()
    return Extraction(
        source=source,
        label=label,
        text=clean,
        description=extract_description(lines, command),
        examples=(
            extract_usage_examples(lines, command, max_examples)
            or extract_flag_examples(lines, command, max_examples)
        ),
    )


def select_sources(capture: HelpCapture, preferred: PreferredSource) -> List[Tuple[SourceKind, str, str]]:
    """按优先级列出可用的来源

    Returns:
        list: (来源类型, 来源标签, 原始文本)，第一个为主来源
    """
    help_source = None
    man_source = None
    if capture.help_ok and capture.help_output.strip():
        help_source = (SourceKind.HELP, capture.help_flag, capture.help_output)
    if capture.man_ok and capture.man_output.strip():
        man_source = (SourceKind.MAN, "man", capture.man_output)

    if preferred is PreferredSource.HELP:
        ordered = [help_source]
    elif preferred is PreferredSource.MAN:
        ordered = [man_source, help_source]
    else:
        ordered = [help_source, man_source]
    return [source for source in ordered if source is not None]


def merge_extractions(primary: Extraction, secondary: Extraction, max_examples: int) -> Tuple[str, List[Example]]:
    """合并两个来源：保留非空描述，示例取并集（主来源在前）"""
    description = primary.description or secondary.description
    examples = list(primary.examples)
    seen = {example.code for example in examples}
    for example in secondary.examples:
        if len(examples) >= max_examples:
            break
        if example.code not in seen:
            seen.add(example.code)
            examples.append(example)
    return description, examples[:max_examples]


def current_platform() -> str:
    if sys.platform.startswith("win"):
        return "windows"
    if sys.platform == "darwin":
        return "osx"
    return "linux"


def _contributing_labels(used: Sequence[Extraction], description: str, examples: Sequence[Example]) -> List[str]:
    """找出实际提供了描述或示例的来源"""
    codes = {example.code for example in examples}
    claimed: set = set()
    owner_found = False
    labels = []
    for extraction in used:
        owns = not owner_found and extraction.description == description
        owner_found = owner_found or owns
        provided = {example.code for example in extraction.examples} & (codes - claimed)
        claimed |= provided
        if owns or provided:
            labels.append(extraction.label)
    return labels


def parse_help(
    command: str,
    capture: HelpCapture,
    preferred: PreferredSource = PreferredSource.AUTO,
    max_examples: Optional[int] = None,
) -> StructuredRecord:
    """解析命令帮助输出为结构化记录，见 parse_help_with_sources"""
    record, _ = parse_help_with_sources(command, capture, preferred, max_examples)
    return record


def parse_help_with_sources(
    command: str,
    capture: HelpCapture,
    preferred: PreferredSource = PreferredSource.AUTO,
    max_examples: Optional[int] = None,
) -> Tuple[StructuredRecord, List[str]]:
    """解析命令帮助输出为结构化记录，并返回实际用到的来源

    Args:
        command: 命令名称
        capture: --help 与 man 的原始输出及成功标志
        preferred: 来源优先级
        max_examples: 合成示例数量上限，默认使用配置值

    Returns:
        tuple: (lang 为 "local" 的记录, 提供了描述或示例的来源标签列表)

    Raises:
        UnlearnableError: 两个来源都无法提供描述和示例
    """
    if max_examples is None:
        max_examples = settings.max_learned_examples

    sources = select_sources(capture, preferred)
    if not sources:
        raise UnlearnableError(command, "no usable --help or man output")

    primary = extract(*sources[0], command, max_examples)
    used = [primary]
    description, examples = primary.description, primary.examples

    if (not description or not examples) and len(sources) > 1:
        secondary = extract(*sources[1], command, max_examples)
        logger.debug(
            f"Falling back to {secondary.label} for '{command}' "
            f"(description={bool(description)}, examples={len(examples)})"
        )
        description, examples = merge_extractions(primary, secondary, max_examples)
        used.append(secondary)

    if not description:
        raise UnlearnableError(command, "no description found")
    if not examples:
        raise UnlearnableError(command, "no examples found")

    content = "\n\n".join(
        f"Source: {extraction.label}\n\n{extraction.text.strip()}" for extraction in used
    )
    record = StructuredRecord(
        name=command,
        description=description,
        category="local",
        platform=current_platform(),
        lang="local",
        examples=examples,
        content=content,
    )
    return record, _contributing_labels(used, description, examples)
