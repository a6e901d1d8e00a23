"""Markdown 导入模块

解析 tldr 风格的 Markdown 文件：

    # docker
    > Manage Docker containers and images.
    - Run a container:
    `docker run {{image}}`

并提供反向序列化、HTML 渲染以及按文件独立处理的批量导入。
"""

import logging
import re
from pathlib import PurePosixPath
from typing import Iterable, List, NamedTuple, Optional, Sequence, Tuple, Union

import frontmatter
import markdown

from rtfm.errors import EncodingError, UnlearnableError
from rtfm.models import Example, ImportReport, StructuredRecord
from rtfm.text import ensure_text


logger = logging.getLogger(__name__)


_HEADING_PATTERN = re.compile(r'^#\s+(.+?)(?:\s+#+)?\s*$')
_QUOTE_PATTERN = re.compile(r'^>\s?(.*)$')
_BULLET_PATTERN = re.compile(r'^[-*]\s+(.+)$')
_INLINE_CODE_PATTERN = re.compile(r'^(`+)(.+?)\1$')
_FENCE = '```'

# front matter 中允许覆盖的字段
_METADATA_FIELDS = ("lang", "platform", "category")


class TldrPath(NamedTuple):
    lang: str
    platform: str
    name: str


def parse_tldr_path(identifier: str) -> Optional[TldrPath]:
    """从 tldr-pages 路径解析语言、平台和命令名

    例如: pages.zh/common/docker.md -> ("zh", "common", "docker")
    pages/ 目录表示英文。
    """
    parts = [part for part in identifier.replace('\\', '/').split('/') if part]
    pages_index = next((i for i, part in enumerate(parts) if part.startswith('pages')), None)
    if pages_index is None or len(parts) < pages_index + 3:
        return None

    pages_dir = parts[pages_index]
    lang = pages_dir.split('.', 1)[1] if '.' in pages_dir else 'en'
    platform = parts[pages_index + 1]
    name = PurePosixPath(parts[-1]).stem
    if not lang or not name:
        return None
    return TldrPath(lang=lang, platform=platform, name=name)


def _inline_code(line: str) -> Optional[str]:
    match = _INLINE_CODE_PATTERN.match(line)
    if match:
        return match.group(2).strip()
    return None


def _parse_body(lines: Sequence[str]) -> Tuple[Optional[str], Optional[str], List[Example], List[str]]:
    """逐行解析正文

    Returns:
        tuple: (name, description, examples, content_lines)
    """
    name: Optional[str] = None
    description: Optional[str] = None
    examples: List[Example] = []
    content: List[str] = []
    pending: Optional[str] = None
    pending_line = ""

    index = 0
    while index < len(lines):
        raw = lines[index]
        line = raw.strip()
        index += 1

        if not line:
            continue

        if line.startswith(_FENCE):
            fenced: List[str] = []
            closed = False
            while index < len(lines):
                inner = lines[index]
                index += 1
                if inner.strip().startswith(_FENCE):
                    closed = True
                    break
                fenced.append(inner.rstrip())
            code = '\n'.join(fenced).strip()
            if pending is not None and closed and code:
                examples.append(Example(description=pending, code=code))
                pending = None
            else:
                content.append(line)
                content.extend(fenced)
                if closed:
                    content.append(_FENCE)
            continue

        code = _inline_code(line)
        if code is not None:
            if pending is not None:
                examples.append(Example(description=pending, code=code))
                pending = None
            else:
                content.append(line)
            continue

        heading = _HEADING_PATTERN.match(line)
        if heading and name is None:
            name = heading.group(1).strip()
            continue

        quote = _QUOTE_PATTERN.match(line)
        if quote and description is None and quote.group(1).strip():
            description = quote.group(1).strip()
            continue

        bullet = _BULLET_PATTERN.match(line)
        if bullet:
            # 上一个没有配对代码的列表项归入 content
            if pending is not None:
                content.append(pending_line)
            pending = bullet.group(1).strip().rstrip(':').strip()
            pending_line = line
            continue

        content.append(line)

    if pending is not None:
        content.append(pending_line)

    return name, description, examples, content


def parse_markdown(
    text: Union[str, bytes],
    lang_hint: str = "en",
    platform: str = "common",
    category: Optional[str] = None,
    identifier: Optional[str] = None,
) -> StructuredRecord:
    """解析 tldr 风格的 Markdown 文本

    Args:
        text: Markdown 文本（bytes 按 UTF-8 解码）
        lang_hint: 语言代码
        platform: 平台（common、linux、osx 等）
        category: 分类，默认与平台相同
        identifier: 文件标识，用于错误信息

    Returns:
        StructuredRecord: 结构化记录

    Raises:
        EncodingError: 文本包含非法字节序列
        UnlearnableError: 缺少名称、描述或示例
    """
    identifier = identifier or "<markdown>"
    text = ensure_text(text, identifier)

    try:
        post = frontmatter.loads(text)
    except Exception as e:
        raise UnlearnableError(identifier, f"invalid front matter: {e}") from e

    metadata = {key: str(post[key]) for key in _METADATA_FIELDS if post.get(key) is not None}
    name, description, examples, content = _parse_body(post.content.splitlines())

    if not name:
        raise UnlearnableError(identifier, "missing '# name' heading")
    if not description:
        raise UnlearnableError(name, "missing '> description' line")
    if not examples:
        raise UnlearnableError(name, "no examples")

    platform = metadata.get("platform", platform)
    return StructuredRecord(
        name=name,
        description=description,
        category=metadata.get("category", category or platform),
        platform=platform,
        lang=metadata.get("lang", lang_hint),
        examples=examples,
        content='\n'.join(content),
    )


def to_markdown(record: StructuredRecord) -> str:
    """把记录序列化为 tldr 风格的 Markdown（带 front matter）

    parse_markdown(to_markdown(record)) 得到与 record 相同的记录。
    """
    lines = [f"# {record.name}", "", f"> {record.description}", ""]
    if record.content:
        lines.extend(record.content.splitlines())
        lines.append("")
    for example in record.examples:
        lines.append(f"- {example.description}:")
        lines.append("")
        if '\n' in example.code or '`' in example.code:
            lines.extend([_FENCE, example.code, _FENCE])
        else:
            lines.append(f"`{example.code}`")
        lines.append("")

    post = frontmatter.Post(
        '\n'.join(lines).rstrip() + '\n',
        category=record.category,
        platform=record.platform,
        lang=record.lang,
    )
    return frontmatter.dumps(post) + '\n'


def render_record_html(record: StructuredRecord) -> str:
    """把记录渲染为 HTML

    支持代码块和表格扩展语法。
    """
    post = frontmatter.loads(to_markdown(record))
    md = markdown.Markdown(extensions=[
        'fenced_code',  # 支持代码块
        'tables',       # 支持表格
        'codehilite',   # 代码高亮
    ])
    return md.convert(post.content)


def import_markdown_batch(
    items: Iterable[Tuple[str, Union[str, bytes]]],
    lang_hint: str = "en",
    languages: Optional[Sequence[str]] = None,
    platform: str = "common",
) -> ImportReport:
    """批量导入 Markdown 文件

    每个文件独立处理，单个文件失败不会中断整个批次。

    Args:
        items: (文件标识, 文件内容) 序列
        lang_hint: 无法从路径判断语言时使用的语言代码
        languages: 允许导入的语言，None 或空表示全部
        platform: 无法从路径判断平台时使用的平台

    Returns:
        ImportReport: imported / skipped / failed 计数、跳过的标识以及解析出的记录
    """
    allowed = set(languages) if languages else None
    report = ImportReport()

    for identifier, text in items:
        if not identifier.lower().endswith('.md'):
            continue

        tldr = parse_tldr_path(identifier)
        lang = tldr.lang if tldr else lang_hint
        file_platform = tldr.platform if tldr else platform

        if allowed is not None and lang not in allowed:
            report.skip(identifier, f"language '{lang}' not enabled")
            continue

        try:
            record = parse_markdown(
                text,
                lang_hint=lang,
                platform=file_platform,
                identifier=identifier,
            )
        except UnlearnableError as e:
            logger.info(f"Skipping {identifier}: {e.reason}")
            report.skip(identifier, e.reason)
            continue
        except EncodingError as e:
            logger.warning(f"Failed to decode {identifier}: {e}")
            report.fail(identifier, str(e))
            continue
        except Exception as e:
            logger.error(f"Failed to import {identifier}: {e}", exc_info=True)
            report.fail(identifier, str(e))
            continue

        report.records.append(record)
        report.imported += 1

    logger.info(
        f"Markdown import finished: imported={report.imported}, "
        f"skipped={report.skipped}, failed={report.failed}"
    )
    return report
