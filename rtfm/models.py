"""Pydantic 数据模型

定义结构化命令记录、索引文档、搜索结果以及批处理报告。
"""

from enum import Enum
from typing import List, Optional, Tuple
from pydantic import BaseModel, ConfigDict, Field


class SourceKind(str, Enum):
    """文档来源（封闭集合）"""
    HELP = "help"
    MAN = "man"
    MARKDOWN = "markdown"


class PreferredSource(str, Enum):
    """学习命令时的来源优先级

    AUTO: 优先 --help，man 作为回退
    HELP: 只使用 --help
    MAN: 优先 man，--help 作为回退
    """
    AUTO = "auto"
    HELP = "help"
    MAN = "man"


class CommandSource(str, Enum):
    """批量学习时列出命令的来源

    AUTO: 优先 man -k，列不出任何页面时（包括 Windows）回退到 PATH
    MAN: 只使用 man -k
    PATH: PATH 中的可执行文件
    """
    AUTO = "auto"
    MAN = "man"
    PATH = "path"


class Example(BaseModel):
    """命令示例"""
    description: str = Field(..., description="示例说明")
    code: str = Field(..., description="示例命令")


class StructuredRecord(BaseModel):
    """结构化命令记录

    一条记录对应一个命令在一种语言下的文档，由 (name, lang) 唯一确定。
    description 为空或 examples 为空的记录无效，不能被持久化或索引。
    """
    name: str = Field(..., min_length=1, description="命令名称")
    description: str = Field("", description="简短描述")
    category: str = Field("common", description="分类")
    platform: str = Field("common", description="平台")
    lang: str = Field("en", description="语言代码")
    examples: List[Example] = Field(default_factory=list, description="示例列表，第一个为主要示例")
    content: str = Field("", description="用于检索的原始文本")

    @property
    def key(self) -> Tuple[str, str]:
        return (self.name, self.lang)

    def validation_problem(self) -> Optional[str]:
        """返回记录无效的原因，有效时返回 None"""
        if not self.name.strip():
            return "empty name"
        if not self.description.strip():
            return "empty description"
        if not self.examples:
            return "no examples"
        return None

    def is_valid(self) -> bool:
        return self.validation_problem() is None


class IndexedDocument(BaseModel):
    """索引文档

    StructuredRecord 面向搜索的投影，doc_id 由索引分配。
    """
    model_config = ConfigDict(frozen=True)

    doc_id: Optional[int] = Field(None, description="索引内部文档 ID")
    name: str = Field(..., min_length=1, description="命令名称")
    description: str = Field("", description="简短描述")
    content: str = Field("", description="检索正文")
    category: str = Field("common", description="分类")
    lang: str = Field("en", description="语言代码")

    @property
    def key(self) -> Tuple[str, str]:
        return (self.name, self.lang)

    @classmethod
    def from_record(cls, record: StructuredRecord) -> "IndexedDocument":
        return cls(
            name=record.name,
            description=record.description,
            content=record.content,
            category=record.category,
            lang=record.lang,
        )


class SearchResult(BaseModel):
    """单个搜索结果"""
    name: str = Field(..., description="命令名称")
    description: str = Field(..., description="命令描述")
    category: str = Field(..., description="分类")
    lang: str = Field(..., description="语言代码")
    score: float = Field(..., ge=0, description="相关性得分")


class SearchResponse(BaseModel):
    """搜索响应

    total 为截断前匹配的文档总数。
    """
    query: str = Field(..., description="搜索查询字符串")
    lang: Optional[str] = Field(None, description="语言过滤条件")
    results: List[SearchResult] = Field(default_factory=list, description="搜索结果列表")
    total: int = Field(0, description="匹配的文档总数")
    elapsed_ms: float = Field(0.0, description="查询耗时（毫秒）")


class HelpCapture(BaseModel):
    """命令帮助的原始输出

    由进程执行协作方提供，解析器本身从不启动进程。
    """
    help_output: str = Field("", description="--help / -h 的输出")
    help_ok: bool = Field(False, description="--help / -h 是否成功")
    help_flag: str = Field("--help", description="实际使用的帮助参数")
    man_output: str = Field("", description="man 页面内容")
    man_ok: bool = Field(False, description="man 是否成功")


class ImportIssue(BaseModel):
    """被跳过或失败的条目"""
    identifier: str = Field(..., description="文件标识")
    reason: str = Field(..., description="原因")


class ImportReport(BaseModel):
    """批量导入报告"""
    imported: int = 0
    skipped: int = 0
    failed: int = 0
    skipped_ids: List[str] = Field(default_factory=list)
    issues: List[ImportIssue] = Field(default_factory=list)
    records: List[StructuredRecord] = Field(default_factory=list, exclude=True)

    def skip(self, identifier: str, reason: str) -> None:
        self.skipped += 1
        self.skipped_ids.append(identifier)
        self.issues.append(ImportIssue(identifier=identifier, reason=reason))

    def fail(self, identifier: str, reason: str) -> None:
        self.failed += 1
        self.issues.append(ImportIssue(identifier=identifier, reason=reason))


class LearnOutcome(BaseModel):
    """单个命令的学习结果"""
    command: str
    learned: bool
    source: str = ""
    message: str = ""


class LearnReport(BaseModel):
    """批量学习报告"""
    total: int = 0
    learned: int = 0
    skipped: int = 0
    failed: int = 0
    skipped_commands: List[str] = Field(default_factory=list)
    issues: List[ImportIssue] = Field(default_factory=list)
