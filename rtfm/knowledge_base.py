"""知识库模块

把记录存储、索引管理器和查询引擎组合在一起，提供学习、导入、
增删查以及重建索引等流程。每条记录在进入存储和索引之前都要经过有效性检查。
"""

import logging
import threading
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple, Union

from pydantic import ValidationError

from rtfm.capture import capture_help, list_commands
from rtfm.config import Settings, settings
from rtfm.db import RecordStore, SqliteRecordStore
from rtfm.errors import EncodingError, NotFoundError, UnlearnableError
from rtfm.help_parser import parse_help_with_sources
from rtfm.index_manager import IndexManager, IndexSnapshot
from rtfm.markdown_importer import import_markdown_batch, render_record_html
from rtfm.models import (
    CommandSource,
    HelpCapture,
    ImportIssue,
    ImportReport,
    IndexedDocument,
    LearnOutcome,
    LearnReport,
    PreferredSource,
    SearchResponse,
    StructuredRecord,
)
from rtfm.search_service import QueryEngine
from rtfm.sources import iter_source


logger = logging.getLogger(__name__)


LOCAL_LANG = "local"

CaptureFunc = Callable[[str], HelpCapture]


class KnowledgeBase:
    """命令知识库

    Args:
        store: 记录存储
        index: 索引管理器（由调用方创建并显式传入）
        engine: 查询引擎，默认在 index 上创建
        languages: 批量导入时允许的语言，None 或空表示全部
    """

    def __init__(
        self,
        store: RecordStore,
        index: IndexManager,
        engine: Optional[QueryEngine] = None,
        languages: Optional[Sequence[str]] = None,
    ):
        self.store = store
        self.index = index
        self.engine = engine or QueryEngine(index)
        self.languages = list(languages) if languages else None
        self.discarded = 0
        # 存储与索引的每一组配对写操作都在这把锁内完成
        self._write_lock = threading.RLock()

    @classmethod
    def from_settings(cls, cfg: Optional[Settings] = None) -> "KnowledgeBase":
        """根据配置打开 SQLite 存储和磁盘索引

        索引为空而存储中有记录时（例如索引目录被删除），从存储重建索引。
        """
        cfg = cfg or settings
        store = SqliteRecordStore(cfg.db_path)
        index = IndexManager.open(cfg.index_dir, cfg.max_delta_segments)
        engine = QueryEngine(
            index,
            name_boost=cfg.name_boost,
            description_boost=cfg.description_boost,
            content_boost=cfg.content_boost,
            default_limit=cfg.default_limit,
            max_limit=cfg.max_search_limit,
            max_query_length=cfg.max_query_length,
        )
        kb = cls(store, index, engine, languages=cfg.languages)

        if index.current_snapshot().doc_count == 0 and store.count() > 0:
            logger.info("Index is empty but the record store is not, rebuilding")
            kb.reindex()
        return kb

    def _discard(self, record: StructuredRecord, problem: str) -> None:
        self.discarded += 1
        logger.warning(f"Discarding invalid record '{record.name}' ({record.lang}): {problem}")

    def _admit(self, records: Iterable[StructuredRecord]) -> List[StructuredRecord]:
        """只保留有效记录，无效记录被记录日志并计数"""
        admitted = []
        for record in records:
            problem = record.validation_problem()
            if problem is None:
                admitted.append(record)
            else:
                self._discard(record, problem)
        return admitted

    def put(self, record: StructuredRecord) -> bool:
        """保存并索引单条记录

        先写存储再写索引。索引写入失败时存储已保存新记录，索引仍是旧快照，
        直到下一次写入或 reindex 之前搜索看到的是旧内容。

        Returns:
            bool: 记录无效被丢弃时返回 False

        Raises:
            IndexIOError: 索引持久化失败
        """
        problem = record.validation_problem()
        if problem is not None:
            self._discard(record, problem)
            return False

        with self._write_lock:
            self.store.put(record)
            self.index.upsert(IndexedDocument.from_record(record))
        return True

    def get(self, name: str, lang: str) -> Optional[StructuredRecord]:
        return self.store.get(name, lang)

    def delete(self, name: str, lang: str) -> None:
        """删除记录及其索引文档

        先删索引再删存储。索引写入失败时两边都保留该记录，
        不会出现能搜到却取不到的文档。

        Raises:
            NotFoundError: 记录不存在
            IndexIOError: 索引持久化失败
        """
        with self._write_lock:
            stored = self.store.get(name, lang) is not None
            indexed = (name, lang) in self.index.current_snapshot()
            if not stored and not indexed:
                raise NotFoundError(name, lang)
            if indexed:
                self.index.delete(name, lang)
            self.store.delete(name, lang)
        logger.info(f"Deleted '{name}' ({lang})")

    def search(self, query: str, lang: Optional[str] = None, limit: Optional[int] = None) -> SearchResponse:
        return self.engine.search(query, lang=lang, limit=limit)

    def render(self, name: str, lang: str) -> Optional[str]:
        """把记录渲染为 HTML，记录不存在时返回 None"""
        record = self.store.get(name, lang)
        if record is None:
            return None
        return render_record_html(record)

    def learn(
        self,
        command: str,
        capture: Optional[HelpCapture] = None,
        preferred: PreferredSource = PreferredSource.AUTO,
        force: bool = False,
    ) -> LearnOutcome:
        """从 --help / man 输出学习一个本地命令

        Args:
            command: 命令名称
            capture: 已采集的输出，None 表示现在运行命令采集
            preferred: 来源优先级
            force: 已学习过时是否重新学习
        """
        if not force and self.store.get(command, LOCAL_LANG) is not None:
            return LearnOutcome(
                command=command,
                learned=False,
                message=f"Command '{command}' already learned. Use force to re-learn.",
            )

        if capture is None:
            capture = capture_help(command)

        try:
            record, labels = parse_help_with_sources(command, capture, preferred)
        except UnlearnableError as e:
            logger.info(f"Cannot learn '{command}': {e.reason}")
            return LearnOutcome(command=command, learned=False, message=e.reason)

        if not self.put(record):
            return LearnOutcome(command=command, learned=False, message="invalid record")

        source = " + ".join(labels)
        logger.info(f"Learned '{command}' from {source}")
        return LearnOutcome(
            command=command,
            learned=True,
            source=source,
            message=f"Learned '{command}' successfully",
        )

    def learn_many(
        self,
        commands: Iterable[str],
        preferred: PreferredSource = PreferredSource.AUTO,
        skip_existing: bool = True,
        prefix: Optional[str] = None,
        limit: int = 0,
        capture: CaptureFunc = capture_help,
    ) -> LearnReport:
        """批量学习命令

        Args:
            commands: 命令名称
            preferred: 来源优先级
            skip_existing: 跳过已学习的命令
            prefix: 只学习以该前缀开头的命令（不区分大小写）
            limit: 最多学习的命令数，0 表示不限
            capture: 采集函数
        """
        selected = list(commands)
        if prefix:
            lowered = prefix.lower()
            selected = [name for name in selected if name.lower().startswith(lowered)]
        if limit > 0:
            selected = selected[:limit]

        report = LearnReport(total=len(selected))
        for command in selected:
            if skip_existing and self.store.get(command, LOCAL_LANG) is not None:
                report.skipped += 1
                report.skipped_commands.append(command)
                continue

            try:
                outcome = self.learn(command, capture(command), preferred, force=True)
            except EncodingError as e:
                logger.warning(f"Failed to learn '{command}': {e}")
                outcome = LearnOutcome(command=command, learned=False, message=str(e))

            if outcome.learned:
                report.learned += 1
            else:
                report.failed += 1
                report.issues.append(ImportIssue(identifier=command, reason=outcome.message))

        logger.info(
            f"Batch learn finished: total={report.total}, learned={report.learned}, "
            f"skipped={report.skipped}, failed={report.failed}"
        )
        return report

    def learn_section(
        self,
        section: str = "1",
        source: CommandSource = CommandSource.AUTO,
        **kwargs: Any,
    ) -> LearnReport:
        """学习某个 man section（或 PATH）中的全部命令

        Args:
            section: man section，只对 man -k 来源有效
            source: 命令列表来源，见 CommandSource
            **kwargs: 传给 learn_many 的参数
        """
        commands = list_commands(source, section)
        if not commands:
            logger.info(f"No commands found (source={source.value}, section={section})")
        return self.learn_many([name for name, _ in commands], **kwargs)

    def import_markdown(
        self,
        items: Iterable[Tuple[str, Union[str, bytes]]],
        lang_hint: str = "en",
        languages: Optional[Sequence[str]] = None,
    ) -> ImportReport:
        """批量导入 Markdown，写入存储后重建一次索引"""
        report = import_markdown_batch(
            items,
            lang_hint=lang_hint,
            languages=languages if languages is not None else self.languages,
        )
        records = self._admit(report.records)
        discarded = len(report.records) - len(records)
        if discarded:
            report.imported -= discarded
            report.skipped += discarded

        if records:
            with self._write_lock:
                self.store.put_many(records)
                self.reindex()
        return report

    def import_path(self, path: Path, lang_hint: str = "en") -> ImportReport:
        """导入目录、单个 .md 文件或 zip / tar 压缩包

        Raises:
            FileNotFoundError: 路径不存在
            ValueError: 无法识别的文件格式
        """
        logger.info(f"Importing markdown from {path}")
        return self.import_markdown(iter_source(path), lang_hint=lang_hint)

    def import_records(self, rows: Iterable[Dict[str, Any]]) -> ImportReport:
        """导入 JSON 形式的记录"""
        report = ImportReport()
        valid: List[StructuredRecord] = []
        for position, row in enumerate(rows):
            identifier = str(row.get("name") or f"#{position}") if isinstance(row, dict) else f"#{position}"
            try:
                record = StructuredRecord.model_validate(row)
            except ValidationError as e:
                report.fail(identifier, f"invalid record: {e.error_count()} validation errors")
                continue

            problem = record.validation_problem()
            if problem is not None:
                self._discard(record, problem)
                report.skip(identifier, problem)
                continue
            valid.append(record)
            report.imported += 1

        if valid:
            with self._write_lock:
                self.store.put_many(valid)
                self.reindex()
        report.records = valid
        return report

    def reindex(self) -> IndexSnapshot:
        """从存储中的全部记录重建索引"""
        with self._write_lock:
            records = self._admit(self.store.list())
            return self.index.rebuild([IndexedDocument.from_record(record) for record in records])

    def clear(self) -> IndexSnapshot:
        """清空存储和索引"""
        with self._write_lock:
            self.store.clear()
            snapshot = self.index.rebuild([])
        logger.info("Cleared knowledge base")
        return snapshot

    def stats(self) -> Dict[str, Any]:
        snapshot = self.index.current_snapshot()
        return {
            "records": self.store.count(),
            "documents": snapshot.doc_count,
            "tokens": snapshot.vocabulary,
            "version": snapshot.version,
            "built_at": snapshot.built_at.isoformat(),
        }
