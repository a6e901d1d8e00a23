"""索引持久化模块

磁盘布局：

    <index_dir>/meta.json                  索引元数据（文档数、schema 版本、构建时间、段列表）
    <index_dir>/seg-<version>-base.json    基础段：完整文档集合
    <index_dir>/seg-<version>-delta.json   增量段：单次 upsert / delete

段文件先写入临时文件并 fsync 后再重命名，最后才替换 meta.json，
因此崩溃时 meta.json 不会指向不存在的段。
"""

import logging
import os
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Literal, Optional, Tuple

from pydantic import BaseModel, Field, ValidationError

from rtfm.errors import IndexIOError
from rtfm.models import IndexedDocument


logger = logging.getLogger(__name__)


SCHEMA_VERSION = 1
META_FILENAME = "meta.json"
SEGMENT_PREFIX = "seg-"


def is_delta_segment(name: str) -> bool:
    return name.endswith("-delta.json")


class SegmentEntry(BaseModel):
    """段中的单个文档及其各字段词频"""
    document: IndexedDocument
    terms: Dict[str, Tuple[int, int, int]] = Field(default_factory=dict)


class SegmentData(BaseModel):
    kind: Literal["base", "delta"]
    entries: List[SegmentEntry] = Field(default_factory=list)
    deleted: List[Tuple[str, str]] = Field(default_factory=list)


class IndexMetadata(BaseModel):
    schema_version: int = SCHEMA_VERSION
    doc_count: int = 0
    version: int = 0
    built_at: datetime
    segments: List[str] = Field(default_factory=list)


def _write_atomic(path: Path, payload: str) -> None:
    tmp_path = path.with_name(path.name + ".tmp")
    try:
        with open(tmp_path, 'w', encoding='utf-8') as f:
            f.write(payload)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, path)
    except OSError:
        try:
            tmp_path.unlink()
        except OSError:
            pass
        raise


class IndexStorage:
    """索引目录的读写"""

    def __init__(self, index_dir: Path):
        self.index_dir = Path(index_dir)

    @property
    def meta_path(self) -> Path:
        return self.index_dir / META_FILENAME

    def load(self) -> Optional[Tuple[IndexMetadata, List[SegmentData]]]:
        """读取元数据和全部段

        Returns:
            tuple: (元数据, 按顺序排列的段)，索引不存在时返回 None

        Raises:
            IndexIOError: 文件无法读取、格式错误或 schema 版本不支持
        """
        if not self.meta_path.exists():
            return None

        try:
            metadata = IndexMetadata.model_validate_json(self.meta_path.read_text(encoding='utf-8'))
        except (OSError, ValidationError) as e:
            raise IndexIOError(f"Failed to read index metadata {self.meta_path}: {e}") from e

        if metadata.schema_version != SCHEMA_VERSION:
            raise IndexIOError(
                f"Unsupported index schema version {metadata.schema_version} "
                f"(expected {SCHEMA_VERSION})"
            )

        segments = []
        for name in metadata.segments:
            path = self.index_dir / name
            try:
                segments.append(SegmentData.model_validate_json(path.read_text(encoding='utf-8')))
            except (OSError, ValidationError) as e:
                raise IndexIOError(f"Failed to read index segment {path}: {e}") from e

        self._remove_unreferenced(metadata.segments)
        return metadata, segments

    def commit(
        self,
        segment: SegmentData,
        version: int,
        doc_count: int,
        built_at: datetime,
        previous: List[str],
    ) -> List[str]:
        """写入一个新段并更新元数据

        基础段替换之前的全部段，增量段追加到段列表末尾。

        Returns:
            list: 新的段列表

        Raises:
            IndexIOError: 任何存储错误；此时 meta.json 仍指向旧的段
        """
        segment_name = f"{SEGMENT_PREFIX}{version:08d}-{segment.kind}.json"
        segment_path = self.index_dir / segment_name
        segments = [segment_name] if segment.kind == "base" else previous + [segment_name]
        metadata = IndexMetadata(
            doc_count=doc_count,
            version=version,
            built_at=built_at,
            segments=segments,
        )

        try:
            self.index_dir.mkdir(parents=True, exist_ok=True)
            _write_atomic(segment_path, segment.model_dump_json())
            _write_atomic(self.meta_path, metadata.model_dump_json(indent=2))
        except OSError as e:
            try:
                segment_path.unlink()
            except OSError:
                pass
            raise IndexIOError(f"Failed to persist index version {version}: {e}") from e

        if segment.kind == "base":
            self._remove_unreferenced(segments)
        return segments

    def _remove_unreferenced(self, keep: List[str]) -> None:
        """删除不再被元数据引用的段文件"""
        referenced = set(keep)
        for path in self.index_dir.glob(f"{SEGMENT_PREFIX}*"):
            if path.name in referenced:
                continue
            try:
                path.unlink()
                logger.debug(f"Removed stale index segment: {path.name}")
            except OSError as e:
                logger.warning(f"Failed to remove stale index segment {path}: {e}")
