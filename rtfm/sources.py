"""Markdown 来源模块

从目录、zip、tar / tar.gz 中读取 Markdown 文件，
产出 (文件标识, 原始字节) 序列，交给 Markdown 导入器处理。
"""

import logging
import tarfile
import zipfile
from pathlib import Path
from typing import Iterator, Tuple


logger = logging.getLogger(__name__)


Entry = Tuple[str, bytes]


def iter_markdown_files(root: Path) -> Iterator[Entry]:
    """递归遍历目录下所有 .md 文件

    Args:
        root: 要扫描的根目录或单个 .md 文件

    Yields:
        tuple: (相对根目录的 POSIX 路径, 文件内容)
    """
    root = Path(root)
    if not root.exists():
        return

    if root.is_file() and root.suffix == '.md':
        yield root.name, root.read_bytes()
        return

    if root.is_dir():
        for item in sorted(root.rglob('*.md')):
            if item.is_file():
                yield item.relative_to(root).as_posix(), item.read_bytes()


def iter_zip(path: Path) -> Iterator[Entry]:
    """遍历 zip 压缩包中的 .md 文件"""
    with zipfile.ZipFile(path) as archive:
        for info in archive.infolist():
            if info.is_dir() or not info.filename.endswith('.md'):
                continue
            yield info.filename, archive.read(info)


def iter_tar(path: Path) -> Iterator[Entry]:
    """遍历 tar / tar.gz 压缩包中的 .md 文件"""
    with tarfile.open(path, mode='r:*') as archive:
        for member in archive:
            if not member.isfile() or not member.name.endswith('.md'):
                continue
            handle = archive.extractfile(member)
            if handle is None:
                continue
            with handle:
                yield member.name, handle.read()


def iter_source(path: Path) -> Iterator[Entry]:
    """根据路径类型选择读取方式

    Raises:
        FileNotFoundError: 路径不存在
        ValueError: 无法识别的文件格式
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Import source does not exist: {path}")

    if path.is_dir() or path.suffix == '.md':
        return iter_markdown_files(path)
    if zipfile.is_zipfile(path):
        return iter_zip(path)
    if tarfile.is_tarfile(path):
        return iter_tar(path)
    raise ValueError(f"Unrecognized import source format: {path}")
