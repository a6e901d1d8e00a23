"""本地文档监控模块

使用 watchdog 监控本地 Markdown 文档目录，文件变化时更新知识库。
"""

import logging
import threading
from pathlib import Path
from typing import Dict, Optional, Tuple

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from rtfm.config import settings
from rtfm.errors import NotFoundError, RtfmError
from rtfm.knowledge_base import KnowledgeBase
from rtfm.markdown_importer import parse_markdown


logger = logging.getLogger(__name__)


class LocalDocsEventHandler(FileSystemEventHandler):
    """本地 Markdown 文档事件处理器

    记住每个文件产生的 (name, lang)，文件删除或改名时据此删除对应记录。
    事件处理中的错误只记录日志，不会传播到 Observer 线程。
    """

    def __init__(self, kb: KnowledgeBase, root: Path, lang: Optional[str] = None):
        super().__init__()
        self.kb = kb
        self.root = Path(root)
        self.lang = lang or settings.local_lang
        self._keys: Dict[str, Tuple[str, str]] = {}
        self._lock = threading.Lock()

    def _is_markdown_file(self, path: str) -> bool:
        return path.endswith('.md')

    def _identifier(self, path: Path) -> str:
        try:
            return path.relative_to(self.root).as_posix()
        except ValueError:
            return path.as_posix()

    def scan(self) -> int:
        """索引目录下已有的全部文件

        Returns:
            int: 成功索引的文件数
        """
        indexed = 0
        for path in sorted(self.root.rglob('*.md')):
            if path.is_file() and self.index_path(path):
                indexed += 1
        logger.info(f"Indexed {indexed} local documents under {self.root}")
        return indexed

    def index_path(self, path: Path) -> bool:
        """解析并保存单个文件，文件产生的旧记录被替换"""
        identifier = self._identifier(path)
        try:
            record = parse_markdown(
                path.read_bytes(),
                lang_hint=self.lang,
                identifier=identifier,
            )
        except RtfmError as e:
            logger.warning(f"Skipping local document {identifier}: {e}")
            return False
        except OSError as e:
            logger.error(f"Failed to read local document {path}: {e}")
            return False

        with self._lock:
            previous = self._keys.get(str(path))
            if previous is not None and previous != record.key:
                self._remove_key(previous)
            if not self.kb.put(record):
                return False
            self._keys[str(path)] = record.key
        return True

    def remove_path(self, path: Path) -> None:
        with self._lock:
            key = self._keys.pop(str(path), None)
            if key is not None:
                self._remove_key(key)

    def _remove_key(self, key: Tuple[str, str]) -> None:
        try:
            self.kb.delete(*key)
        except NotFoundError:
            logger.debug(f"Local document record {key} already removed")

    def on_created(self, event: FileSystemEvent) -> None:
        if event.is_directory or not self._is_markdown_file(event.src_path):
            return
        try:
            if self.index_path(Path(event.src_path)):
                logger.info(f"Indexed new file: {event.src_path}")
        except Exception as e:
            logger.error(f"Failed to index created file {event.src_path}: {e}")

    def on_modified(self, event: FileSystemEvent) -> None:
        if event.is_directory or not self._is_markdown_file(event.src_path):
            return
        try:
            if self.index_path(Path(event.src_path)):
                logger.info(f"Updated index for modified file: {event.src_path}")
        except Exception as e:
            logger.error(f"Failed to update index for modified file {event.src_path}: {e}")

    def on_deleted(self, event: FileSystemEvent) -> None:
        if event.is_directory or not self._is_markdown_file(event.src_path):
            return
        try:
            self.remove_path(Path(event.src_path))
            logger.info(f"Removed deleted file from index: {event.src_path}")
        except Exception as e:
            logger.error(f"Failed to remove deleted file from index {event.src_path}: {e}")

    def on_moved(self, event: FileSystemEvent) -> None:
        if event.is_directory:
            return
        try:
            if self._is_markdown_file(event.src_path):
                self.remove_path(Path(event.src_path))
            if self._is_markdown_file(event.dest_path):
                self.index_path(Path(event.dest_path))
            logger.info(f"Handled move: {event.src_path} -> {event.dest_path}")
        except Exception as e:
            logger.error(f"Failed to handle move {event.src_path} -> {event.dest_path}: {e}")


def start_watcher(root: Path, kb: KnowledgeBase, scan: bool = True) -> Observer:
    """启动文件监听器

    Args:
        root: 要监控的根目录
        kb: 知识库
        scan: 启动前是否先索引已有文件

    Returns:
        Observer: watchdog Observer 实例

    Raises:
        ValueError: 如果根目录不存在
    """
    root = Path(root)

    if not root.exists():
        raise ValueError(f"Watch directory does not exist: {root}")

    if not root.is_dir():
        raise ValueError(f"Watch path is not a directory: {root}")

    event_handler = LocalDocsEventHandler(kb, root)
    if scan:
        event_handler.scan()

    observer = Observer()
    observer.schedule(
        event_handler,
        str(root),
        recursive=settings.watch_recursive
    )

    observer.start()
    logger.info(f"Started file watcher on: {root}")

    return observer
