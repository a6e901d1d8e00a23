#!/usr/bin/env python3
"""知识库初始化脚本

初始化记录存储，可选地导入 Markdown 目录或压缩包，然后重建索引。

使用方法:
    python scripts/init_index.py [PATH]
"""

import sys
from pathlib import Path

# 添加项目根目录到 Python 路径
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from rtfm.config import settings
from rtfm.errors import RtfmError
from rtfm.knowledge_base import KnowledgeBase
from rtfm.log import setup_logging


def main():
    """主函数：初始化存储、导入文档并重建索引"""
    setup_logging()

    print("=" * 60)
    print("rtfm 命令知识库 - 初始化")
    print("=" * 60)

    print(f"\n配置信息:")
    print(f"  数据目录: {settings.data_dir}")
    print(f"  数据库路径: {settings.db_path}")
    print(f"  索引目录: {settings.index_dir}")
    print(f"  启用语言: {', '.join(settings.languages) or '全部'}")

    print(f"\n步骤 1: 打开记录存储和索引...")
    try:
        kb = KnowledgeBase.from_settings()
        print(f"  ✓ 已有 {kb.store.count()} 条记录")
    except RtfmError as e:
        print(f"  ✗ 初始化失败: {e}")
        sys.exit(1)

    if len(sys.argv) > 1:
        source = Path(sys.argv[1])
        print(f"\n步骤 2: 导入 {source} ...")
        try:
            report = kb.import_path(source)
        except (FileNotFoundError, ValueError, RtfmError) as e:
            print(f"  ✗ 导入失败: {e}")
            sys.exit(1)
        print(f"  导入 {report.imported} 个，跳过 {report.skipped} 个，失败 {report.failed} 个")
    else:
        print(f"\n步骤 2: 未指定导入来源，跳过")

    print(f"\n步骤 3: 重建索引...")
    try:
        snapshot = kb.reindex()
    except RtfmError as e:
        print(f"  ✗ 索引构建失败: {e}")
        sys.exit(1)
    print(f"  ✓ 已索引 {snapshot.doc_count} 个文档，{snapshot.vocabulary} 个检索词")
    if kb.discarded:
        print(f"  丢弃 {kb.discarded} 条无效记录")

    print("\n" + "=" * 60)
    print("初始化完成！")
    print("=" * 60)
    print()


if __name__ == "__main__":
    main()
