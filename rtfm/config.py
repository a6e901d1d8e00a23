"""配置管理模块

提供全局配置参数，支持从环境变量（RTFM_ 前缀）和 .env 文件读取配置。
包含配置验证和错误提示功能。
"""

import sys
import logging
from pathlib import Path
from typing import List, Optional
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import ValidationError, field_validator, model_validator


logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """应用配置类

    从环境变量或 .env 文件读取配置参数。
    """

    model_config = SettingsConfigDict(
        env_prefix="RTFM_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # 数据目录（记录库和索引都放在这里）
    data_dir: Path = Path("./data")
    db_filename: str = "rtfm.db"
    index_dirname: str = "index"

    # 日志级别
    log_level: str = "INFO"

    # 搜索配置
    default_limit: int = 20
    max_search_limit: int = 100
    max_query_length: int = 500

    # 字段权重：name > description > content
    name_boost: float = 3.0
    description_boost: float = 2.0
    content_boost: float = 1.0

    # 学习命令时最多合成的示例数量
    max_learned_examples: int = 10

    # 增量段数量达到该值后合并为一个基础段
    max_delta_segments: int = 32

    # 允许导入的语言（空列表表示全部）
    languages: List[str] = ["en", "zh"]

    # 本地 Markdown 文档
    local_lang: str = "zh"
    local_docs_dir: Optional[Path] = None
    watch_recursive: bool = True

    # 获取 --help / man 输出的超时时间（秒）
    help_timeout: float = 10.0

    @property
    def db_path(self) -> Path:
        return self.data_dir / self.db_filename

    @property
    def index_dir(self) -> Path:
        return self.data_dir / self.index_dirname

    @field_validator('data_dir')
    @classmethod
    def validate_data_dir(cls, v: Path) -> Path:
        """验证数据目录

        目录本身可以不存在（会自动创建），但不能是一个文件。
        """
        if v.exists() and not v.is_dir():
            raise ValueError(
                f"DATA_DIR 必须是一个目录，但 {v.absolute()} 是一个文件。"
            )
        return v

    @field_validator('local_docs_dir')
    @classmethod
    def validate_local_docs_dir(cls, v: Optional[Path]) -> Optional[Path]:
        """验证本地文档目录是否存在"""
        if v is None:
            return v
        if not v.exists():
            raise ValueError(
                f"本地文档目录不存在: {v.absolute()}\n"
                f"请确保路径正确，或创建该目录。"
            )
        if not v.is_dir():
            raise ValueError(
                f"LOCAL_DOCS_DIR 必须是一个目录，但 {v.absolute()} 是一个文件。"
            )
        return v

    @field_validator('log_level')
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """验证日志级别是否有效"""
        valid_levels = ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']
        v_upper = v.upper()
        if v_upper not in valid_levels:
            raise ValueError(
                f"无效的日志级别: {v}\n"
                f"有效的日志级别: {', '.join(valid_levels)}"
            )
        return v_upper

    @field_validator('max_search_limit')
    @classmethod
    def validate_max_search_limit(cls, v: int) -> int:
        """验证最大搜索限制是否合理"""
        if v <= 0:
            raise ValueError(
                f"MAX_SEARCH_LIMIT 必须大于 0，当前值: {v}"
            )
        if v > 1000:
            raise ValueError(
                f"MAX_SEARCH_LIMIT 不应超过 1000，当前值: {v}\n"
                f"过大的限制可能导致性能问题。"
            )
        return v

    @field_validator('default_limit', 'max_query_length', 'max_delta_segments')
    @classmethod
    def validate_positive(cls, v: int, info) -> int:
        if v <= 0:
            raise ValueError(
                f"{info.field_name.upper()} 必须大于 0，当前值: {v}"
            )
        return v

    @field_validator('help_timeout')
    @classmethod
    def validate_help_timeout(cls, v: float) -> float:
        if v <= 0:
            raise ValueError(f"HELP_TIMEOUT 必须大于 0，当前值: {v}")
        return v

    @field_validator('max_learned_examples')
    @classmethod
    def validate_max_learned_examples(cls, v: int) -> int:
        """验证示例数量上限

        帮助输出可能包含上百个选项，上限用于避免生成过多示例。
        """
        if v <= 0:
            raise ValueError(
                f"MAX_LEARNED_EXAMPLES 必须大于 0，当前值: {v}"
            )
        if v > 100:
            raise ValueError(
                f"MAX_LEARNED_EXAMPLES 不应超过 100，当前值: {v}"
            )
        return v

    @model_validator(mode='after')
    def validate_boosts(self) -> 'Settings':
        """验证字段权重：必须为正数且 name >= description >= content"""
        boosts = (self.name_boost, self.description_boost, self.content_boost)
        if any(b <= 0 for b in boosts):
            raise ValueError(
                f"字段权重必须大于 0，当前值: {boosts}"
            )
        if not (self.name_boost >= self.description_boost >= self.content_boost):
            raise ValueError(
                f"字段权重必须满足 NAME_BOOST >= DESCRIPTION_BOOST >= CONTENT_BOOST，"
                f"当前值: {boosts}"
            )
        return self


_RULE = "=" * 60


def format_validation_error(error: ValidationError) -> str:
    """把 pydantic 校验错误整理成面向用户的提示

    每个字段显示为对应的 RTFM_* 环境变量名。
    """
    lines = [_RULE, "配置错误 - 无法加载知识库配置", _RULE]
    for item in error.errors():
        field = str(item['loc'][0]).upper() if item['loc'] else 'SETTINGS'
        lines.append(f"\n字段: RTFM_{field}")
        lines.append(f"错误: {item['msg']}")
    lines.extend(["\n" + _RULE, "请检查 .env 文件或 RTFM_* 环境变量配置。", _RULE])
    return "\n".join(lines)


def _abort(message: str) -> None:
    logger.error(message)
    print(message, file=sys.stderr)
    sys.exit(1)


def load_settings() -> Settings:
    """加载配置，校验失败时打印原因并以状态码 1 退出

    Raises:
        SystemExit: 配置无效或无法读取
    """
    try:
        return Settings()
    except ValidationError as e:
        _abort(format_validation_error(e))
    except Exception as e:
        _abort(f"加载配置时发生未预期的错误: {e}\n请检查 .env 文件格式是否正确。")


# 全局配置实例
settings = load_settings()
