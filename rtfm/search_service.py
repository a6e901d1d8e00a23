"""搜索服务模块

在索引快照上执行全文搜索。查询先转义、再由查询语法读取，
然后用与索引相同的分词规则切分，按字段加权的 BM25 风格得分排序。
"""

import logging
import math
import time
from typing import Dict, List, Optional, Tuple

from rtfm.config import settings
from rtfm.errors import QueryBuildError
from rtfm.index_manager import IndexManager, IndexSnapshot
from rtfm.models import SearchResponse, SearchResult
from rtfm.text import escape_for_query, parse_query, tokenize


logger = logging.getLogger(__name__)


def inverse_document_frequency(total: int, frequency: int) -> float:
    """idf = ln(1 + (N - df + 0.5) / (df + 0.5))，始终非负"""
    return math.log(1.0 + (total - frequency + 0.5) / (frequency + 0.5))


class QueryEngine:
    """查询引擎

    只读取 IndexManager 的快照，从不修改索引。

    Args:
        index: 索引管理器
        name_boost / description_boost / content_boost: 字段权重
        default_limit: 未指定 limit 时返回的结果数
        max_limit: limit 上限
        max_query_length: 查询字符串最大长度，超出部分被截断
    """

    def __init__(
        self,
        index: IndexManager,
        name_boost: Optional[float] = None,
        description_boost: Optional[float] = None,
        content_boost: Optional[float] = None,
        default_limit: Optional[int] = None,
        max_limit: Optional[int] = None,
        max_query_length: Optional[int] = None,
    ):
        self.index = index
        self.boosts = (
            name_boost if name_boost is not None else settings.name_boost,
            description_boost if description_boost is not None else settings.description_boost,
            content_boost if content_boost is not None else settings.content_boost,
        )
        self.default_limit = default_limit or settings.default_limit
        self.max_limit = max_limit or settings.max_search_limit
        self.max_query_length = max_query_length or settings.max_query_length

    def _effective_limit(self, limit: Optional[int]) -> int:
        if limit is None or limit < 1:
            limit = self.default_limit
        return min(limit, self.max_limit)

    def _query_tokens(self, query: str, lang: Optional[str]) -> List[str]:
        """转义并读取查询，返回去重后的检索词

        Raises:
            QueryBuildError: 转义后的查询仍无法被读取
        """
        truncated = query[:self.max_query_length]
        escaped = escape_for_query(truncated)
        literal = parse_query(escaped)
        if literal != truncated:
            raise QueryBuildError(f"Escaped query {escaped!r} does not read back as {truncated!r}")

        tokens = []
        seen = set()
        for token in tokenize(literal, lang):
            if token not in seen:
                seen.add(token)
                tokens.append(token)
        return tokens

    def search(self, query: str, lang: Optional[str] = None, limit: Optional[int] = None) -> SearchResponse:
        """在当前快照上执行搜索

        Raises:
            QueryBuildError: 查询构建失败
            EncodingError: 查询包含非法字符
        """
        return self.search_snapshot(self.index.current_snapshot(), query, lang, limit)

    def search_snapshot(
        self,
        snapshot: IndexSnapshot,
        query: str,
        lang: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> SearchResponse:
        """在调用方持有的快照上执行搜索

        Args:
            snapshot: 索引快照
            query: 用户输入的查询字符串（任意文本，运算符按字面处理）
            lang: 语言过滤，None 表示全部语言
            limit: 返回结果数

        Returns:
            SearchResponse: 按得分降序、名称升序、语言升序排列的结果
        """
        started = time.perf_counter()
        try:
            tokens = self._query_tokens(query, lang)
        except QueryBuildError as e:
            logger.error(f"Failed to build query: {e}")
            raise

        limit = self._effective_limit(limit)
        if not tokens:
            return SearchResponse(query=query, lang=lang, elapsed_ms=_elapsed_ms(started))

        total_docs = snapshot.lang_count(lang) if lang is not None else snapshot.doc_count
        name_boost, description_boost, content_boost = self.boosts
        scores: Dict[int, float] = {}

        for token in tokens:
            postings = snapshot.postings(token)
            if not postings:
                continue

            if lang is None:
                candidates = list(postings.values())
            else:
                candidates = [
                    posting for posting in postings.values()
                    if snapshot.document(posting.doc_id).lang == lang
                ]
            if not candidates:
                continue

            idf = inverse_document_frequency(total_docs, len(candidates))
            for posting in candidates:
                weight = (
                    name_boost * math.sqrt(posting.name_tf)
                    + description_boost * math.sqrt(posting.description_tf)
                    + content_boost * math.sqrt(posting.content_tf)
                )
                scores[posting.doc_id] = scores.get(posting.doc_id, 0.0) + idf * weight

        ranked: List[Tuple[float, str, str, int]] = []
        for doc_id, score in scores.items():
            document = snapshot.document(doc_id)
            ranked.append((-score, document.name, document.lang, doc_id))
        ranked.sort()

        results = []
        for negative_score, _name, _lang, doc_id in ranked[:limit]:
            document = snapshot.document(doc_id)
            results.append(SearchResult(
                name=document.name,
                description=document.description,
                category=document.category,
                lang=document.lang,
                score=max(0.0, -negative_score),
            ))

        elapsed = _elapsed_ms(started)
        logger.debug(
            f"Query {query!r} (lang={lang}): {len(ranked)} matches, "
            f"{len(results)} returned in {elapsed:.2f} ms"
        )
        return SearchResponse(
            query=query,
            lang=lang,
            results=results,
            total=len(ranked),
            elapsed_ms=elapsed,
        )


def _elapsed_ms(started: float) -> float:
    return (time.perf_counter() - started) * 1000.0
