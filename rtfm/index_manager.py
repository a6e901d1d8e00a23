"""索引管理模块

维护倒排索引（token -> 文档 ID 与各字段词频）。索引状态是一个不可变快照，
写操作（rebuild / upsert / delete）在单个写锁下串行执行：先在副本上构建新快照，
持久化成功后再一次性替换引用。读操作只读取当前引用，从不加锁。
"""

import logging
import threading
from datetime import datetime, timezone
from pathlib import Path
from types import MappingProxyType
from typing import Dict, Iterable, List, Mapping, NamedTuple, Optional, Tuple

from rtfm.config import settings
from rtfm.index_storage import IndexStorage, SegmentData, SegmentEntry, is_delta_segment
from rtfm.models import IndexedDocument
from rtfm.text import tokenize


logger = logging.getLogger(__name__)


FIELDS = ("name", "description", "content")

Key = Tuple[str, str]
# token -> (name 词频, description 词频, content 词频)
TermFrequencies = Mapping[str, Tuple[int, int, int]]

_EMPTY_POSTINGS: Mapping[int, "Posting"] = MappingProxyType({})


class Posting(NamedTuple):
    doc_id: int
    name_tf: int
    description_tf: int
    content_tf: int


def analyze_document(document: IndexedDocument) -> Dict[str, Tuple[int, int, int]]:
    """对文档的 name / description / content 分词并统计各字段词频"""
    counts: Dict[str, List[int]] = {}
    for position, field in enumerate(FIELDS):
        for token in tokenize(getattr(document, field), document.lang):
            counts.setdefault(token, [0, 0, 0])[position] += 1
    return {token: (tf[0], tf[1], tf[2]) for token, tf in counts.items()}


class IndexSnapshot:
    """索引在某一时刻的不可变视图

    快照一旦发布，其中的映射不会再被修改；写操作总是生成新的快照。
    """

    def __init__(
        self,
        documents: Dict[int, IndexedDocument],
        terms: Dict[int, TermFrequencies],
        postings: Dict[str, Dict[int, Posting]],
        keys: Dict[Key, int],
        lang_counts: Dict[str, int],
        next_doc_id: int,
        version: int,
        built_at: datetime,
    ):
        self._documents = documents
        self._terms = terms
        self._postings = postings
        self._keys = keys
        self._lang_counts = lang_counts
        self._next_doc_id = next_doc_id
        self.version = version
        self.built_at = built_at

    @classmethod
    def empty(cls) -> "IndexSnapshot":
        return cls({}, {}, {}, {}, {}, 1, 0, datetime.now(timezone.utc))

    @property
    def doc_count(self) -> int:
        return len(self._documents)

    @property
    def documents(self) -> Mapping[int, IndexedDocument]:
        return MappingProxyType(self._documents)

    @property
    def vocabulary(self) -> int:
        return len(self._postings)

    def __len__(self) -> int:
        return len(self._documents)

    def __contains__(self, key: Key) -> bool:
        return key in self._keys

    def document(self, doc_id: int) -> Optional[IndexedDocument]:
        return self._documents.get(doc_id)

    def get(self, name: str, lang: str) -> Optional[IndexedDocument]:
        doc_id = self._keys.get((name, lang))
        if doc_id is None:
            return None
        return self._documents[doc_id]

    def postings(self, token: str) -> Mapping[int, Posting]:
        inner = self._postings.get(token)
        if inner is None:
            return _EMPTY_POSTINGS
        return MappingProxyType(inner)

    def lang_count(self, lang: str) -> int:
        return self._lang_counts.get(lang, 0)

    def segment_entries(self) -> List[SegmentEntry]:
        return [
            SegmentEntry(document=document, terms=dict(self._terms[doc_id]))
            for doc_id, document in sorted(self._documents.items())
        ]


class _SnapshotBuilder:
    """写线程私有的快照副本

    只复制被修改的 token 对应的倒排表，其余倒排表与旧快照共享。
    """

    def __init__(self, base: Optional[IndexSnapshot] = None):
        if base is None:
            base = IndexSnapshot.empty()
        self.documents = dict(base._documents)
        self.terms = dict(base._terms)
        self.postings = dict(base._postings)
        self.keys = dict(base._keys)
        self.lang_counts = dict(base._lang_counts)
        self.next_doc_id = base._next_doc_id
        self._copied = set()

    def _writable(self, token: str) -> Dict[int, Posting]:
        if token not in self._copied:
            self.postings[token] = dict(self.postings.get(token, {}))
            self._copied.add(token)
        return self.postings[token]

    def remove(self, key: Key) -> bool:
        doc_id = self.keys.pop(key, None)
        if doc_id is None:
            return False

        document = self.documents.pop(doc_id)
        for token in self.terms.pop(doc_id):
            inner = self._writable(token)
            inner.pop(doc_id, None)
            if not inner:
                del self.postings[token]
                self._copied.discard(token)

        remaining = self.lang_counts.get(document.lang, 0) - 1
        if remaining > 0:
            self.lang_counts[document.lang] = remaining
        else:
            self.lang_counts.pop(document.lang, None)
        return True

    def add(self, document: IndexedDocument, terms: Optional[TermFrequencies] = None) -> int:
        if terms is None:
            terms = analyze_document(document)
        self.remove(document.key)

        doc_id = self.next_doc_id
        self.next_doc_id += 1
        self.documents[doc_id] = document.model_copy(update={"doc_id": doc_id})
        self.terms[doc_id] = dict(terms)
        self.keys[document.key] = doc_id
        self.lang_counts[document.lang] = self.lang_counts.get(document.lang, 0) + 1

        for token, (name_tf, description_tf, content_tf) in terms.items():
            self._writable(token)[doc_id] = Posting(doc_id, name_tf, description_tf, content_tf)
        return doc_id

    def apply(self, segment: SegmentData) -> None:
        for name, lang in segment.deleted:
            self.remove((name, lang))
        for entry in segment.entries:
            self.add(entry.document, entry.terms)

    def build(self, version: int, built_at: Optional[datetime] = None) -> IndexSnapshot:
        return IndexSnapshot(
            documents=self.documents,
            terms=self.terms,
            postings=self.postings,
            keys=self.keys,
            lang_counts=self.lang_counts,
            next_doc_id=self.next_doc_id,
            version=version,
            built_at=built_at or datetime.now(timezone.utc),
        )


class IndexManager:
    """倒排索引的唯一所有者

    Args:
        index_dir: 索引目录，None 表示只在内存中维护
        max_delta_segments: 增量段达到该数量后合并为基础段
    """

    def __init__(self, index_dir: Optional[Path] = None, max_delta_segments: Optional[int] = None):
        self._storage = IndexStorage(index_dir) if index_dir is not None else None
        self._max_delta_segments = max_delta_segments or settings.max_delta_segments
        self._write_lock = threading.Lock()
        self._snapshot = IndexSnapshot.empty()
        self._segments: List[str] = []

    @classmethod
    def open(cls, index_dir: Path, max_delta_segments: Optional[int] = None) -> "IndexManager":
        """打开磁盘上的索引，不存在时返回空索引

        Raises:
            IndexIOError: 索引文件损坏或版本不支持
        """
        manager = cls(index_dir, max_delta_segments)
        loaded = manager._storage.load()
        if loaded is None:
            logger.info(f"No index found at {index_dir}, starting empty")
            return manager

        metadata, segments = loaded
        builder = _SnapshotBuilder()
        for segment in segments:
            builder.apply(segment)
        manager._snapshot = builder.build(metadata.version, metadata.built_at)
        manager._segments = list(metadata.segments)

        if manager._snapshot.doc_count != metadata.doc_count:
            logger.warning(
                f"Index metadata reports {metadata.doc_count} documents, "
                f"segments contain {manager._snapshot.doc_count}"
            )
        logger.info(
            f"Opened index at {index_dir}: {manager._snapshot.doc_count} documents, "
            f"{len(segments)} segments, version {metadata.version}"
        )
        return manager

    @property
    def index_dir(self) -> Optional[Path]:
        return self._storage.index_dir if self._storage else None

    def current_snapshot(self) -> IndexSnapshot:
        """返回当前快照，从不等待写操作"""
        return self._snapshot

    def _install(self, builder: _SnapshotBuilder, segment: SegmentData) -> IndexSnapshot:
        """持久化并发布新快照，调用方必须持有写锁"""
        version = self._snapshot.version + 1
        snapshot = builder.build(version)

        if self._storage is not None:
            deltas = sum(1 for name in self._segments if is_delta_segment(name))
            if segment.kind == "delta" and deltas >= self._max_delta_segments:
                logger.info(f"Compacting {len(self._segments)} index segments")
                segment = SegmentData(kind="base", entries=snapshot.segment_entries())
            self._segments = self._storage.commit(
                segment,
                version=version,
                doc_count=snapshot.doc_count,
                built_at=snapshot.built_at,
                previous=self._segments,
            )

        self._snapshot = snapshot
        return snapshot

    def rebuild(self, documents: Iterable[IndexedDocument]) -> IndexSnapshot:
        """从完整文档集合重建索引

        重建期间旧快照保持可读，新快照构建并持久化完成后一次性替换。

        Raises:
            IndexIOError: 持久化失败，旧快照保持不变
        """
        with self._write_lock:
            builder = _SnapshotBuilder()
            for document in documents:
                builder.add(document)
            snapshot = builder.build(self._snapshot.version + 1)
            segment = SegmentData(kind="base", entries=snapshot.segment_entries())
            installed = self._install(builder, segment)

        logger.info(f"Rebuilt index: {installed.doc_count} documents, {installed.vocabulary} tokens")
        return installed

    def upsert(self, document: IndexedDocument) -> IndexSnapshot:
        """增量添加或替换单个文档

        Raises:
            IndexIOError: 持久化失败，旧快照保持不变
        """
        terms = analyze_document(document)
        with self._write_lock:
            builder = _SnapshotBuilder(self._snapshot)
            builder.add(document, terms)
            segment = SegmentData(
                kind="delta",
                entries=[SegmentEntry(document=document, terms=terms)],
            )
            installed = self._install(builder, segment)

        logger.debug(f"Indexed '{document.name}' ({document.lang})")
        return installed

    def delete(self, name: str, lang: str) -> IndexSnapshot:
        """删除文档，文档不存在时返回当前快照

        Raises:
            IndexIOError: 持久化失败，旧快照保持不变
        """
        with self._write_lock:
            builder = _SnapshotBuilder(self._snapshot)
            if not builder.remove((name, lang)):
                logger.debug(f"Delete of missing document '{name}' ({lang}) ignored")
                return self._snapshot
            segment = SegmentData(kind="delta", deleted=[(name, lang)])
            installed = self._install(builder, segment)

        logger.debug(f"Removed '{name}' ({lang}) from index")
        return installed
