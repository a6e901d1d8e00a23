"""知识库测试

测试有效性检查、学习命令、批量导入以及存储与索引的一致性。
"""

import threading
import zipfile
from unittest.mock import patch

import pytest

from rtfm.config import Settings
from rtfm.db import SqliteRecordStore
from rtfm.errors import IndexIOError, NotFoundError
from rtfm.index_manager import IndexManager
from rtfm.knowledge_base import KnowledgeBase
from rtfm.models import CommandSource, Example, HelpCapture, PreferredSource, StructuredRecord


GREP_HELP = """Usage: grep [OPTION]... PATTERNS [FILE]...
Search for PATTERNS in each FILE.

Options:
  -i, --ignore-case         ignore case distinctions
  -v, --invert-match        select non-matching lines
"""

LS_MAN = """LS(1)                            User Commands                           LS(1)

NAME
       ls - list directory contents

OPTIONS
       -a, --all
              do not ignore entries starting with .
"""

DOCKER_MD = """# docker

> Manage Docker containers and images.

- List all docker containers:

`docker ps --all`
"""

TAR_ZH_MD = """# tar

> 归档实用工具。

- 创建归档文件:

`tar cf {{目标.tar}} {{文件}}`
"""


def _record(name, lang="en", description="Do something.", examples=None):
    if examples is None:
        examples = [Example(description="Run it", code=f"{name} --run")]
    return StructuredRecord(name=name, lang=lang, description=description, examples=examples)


@pytest.fixture
def kb(tmp_path):
    store = SqliteRecordStore(tmp_path / "rtfm.db")
    index = IndexManager(tmp_path / "index")
    return KnowledgeBase(store, index)


class TestValidityGate:

    def test_put_valid_record(self, kb):
        assert kb.put(_record("ls", description="List files."))

        assert kb.get("ls", "en").description == "List files."
        assert kb.search("files").results[0].name == "ls"

    def test_empty_description_is_discarded(self, kb, caplog):
        assert kb.put(_record("ls", description="  ")) is False

        assert kb.get("ls", "en") is None
        assert kb.index.current_snapshot().doc_count == 0
        assert kb.discarded == 1
        assert "Discarding invalid record 'ls'" in caplog.text

    def test_no_examples_is_discarded(self, kb):
        assert kb.put(_record("ls", examples=[])) is False

        assert kb.store.count() == 0
        assert kb.discarded == 1

    def test_reindex_discards_invalid_stored_records(self, kb):
        kb.store.put(_record("ls"))
        kb.store.put(_record("broken", description=""))

        snapshot = kb.reindex()

        assert snapshot.doc_count == 1
        assert snapshot.get("broken", "en") is None
        assert kb.discarded == 1


class TestCrud:

    def test_replace_same_key(self, kb):
        kb.put(_record("ls", description="Old text."))
        kb.put(_record("ls", description="New text."))

        assert kb.store.count() == 1
        assert kb.search("old").results == []
        assert kb.search("new").results[0].name == "ls"

    def test_delete(self, kb):
        kb.put(_record("ls"))

        kb.delete("ls", "en")

        assert kb.get("ls", "en") is None
        assert kb.search("ls").results == []

    def test_delete_missing_raises(self, kb):
        with pytest.raises(NotFoundError) as exc_info:
            kb.delete("nope", "en")

        assert exc_info.value.name == "nope"

    def test_get_missing_returns_none(self, kb):
        assert kb.get("nope", "en") is None

    def test_render(self, kb):
        kb.put(_record("ls", description="List files."))

        html = kb.render("ls", "en")

        assert "<h1>ls</h1>" in html
        assert kb.render("nope", "en") is None

    def test_clear(self, kb):
        kb.put(_record("ls"))

        kb.clear()

        assert kb.store.count() == 0
        assert kb.index.current_snapshot().doc_count == 0

    def test_stats(self, kb):
        kb.put(_record("ls"))

        stats = kb.stats()

        assert stats["records"] == 1
        assert stats["documents"] == 1


class TestWriteConsistency:
    """存储和索引的配对写操作"""

    def test_concurrent_puts_of_same_key_agree(self, kb):
        descriptions = [f"Version {i} text." for i in range(8)]
        barrier = threading.Barrier(len(descriptions))

        def writer(description):
            barrier.wait()
            kb.put(_record("ls", description=description))

        threads = [threading.Thread(target=writer, args=(d,)) for d in descriptions]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        stored = kb.get("ls", "en").description
        indexed = kb.index.current_snapshot().get("ls", "en").description
        assert stored == indexed

    def test_failed_index_upsert_keeps_previous_snapshot(self, kb):
        kb.put(_record("ls", description="Old text."))

        with patch.object(kb.index, "upsert", side_effect=IndexIOError("disk full")):
            with pytest.raises(IndexIOError):
                kb.put(_record("ls", description="New text."))

        # 存储已是新记录，索引仍是旧快照，reindex 后恢复一致
        assert kb.get("ls", "en").description == "New text."
        assert kb.search("old").results[0].name == "ls"
        kb.reindex()
        assert kb.search("old").results == []
        assert kb.search("new").results[0].name == "ls"

    def test_failed_index_delete_keeps_record(self, kb):
        kb.put(_record("ls", description="List files."))

        with patch.object(kb.index, "delete", side_effect=IndexIOError("disk full")):
            with pytest.raises(IndexIOError):
                kb.delete("ls", "en")

        assert kb.get("ls", "en") is not None
        assert kb.search("files").results[0].name == "ls"

    def test_delete_of_index_only_document(self, kb):
        record = _record("ls")
        kb.put(record)
        kb.store.delete("ls", "en")

        kb.delete("ls", "en")

        assert ("ls", "en") not in kb.index.current_snapshot()


class TestLearn:

    def test_learn_from_help(self, kb):
        capture = HelpCapture(help_output=GREP_HELP, help_ok=True)

        outcome = kb.learn("grep", capture)

        assert outcome.learned
        assert outcome.source == "--help"
        record = kb.get("grep", "local")
        assert record.description == "Search for PATTERNS in each FILE."
        assert kb.search("patterns", lang="local").results[0].name == "grep"

    def test_learn_falls_back_to_man(self, kb):
        capture = HelpCapture(help_output="Usage: ls\nList things.\n", help_ok=True, man_output=LS_MAN, man_ok=True)

        outcome = kb.learn("ls", capture)

        assert outcome.learned
        assert kb.get("ls", "local").examples[0].code == "ls --all"
        assert outcome.source == "--help + man"

    def test_learn_existing_is_skipped_without_force(self, kb):
        capture = HelpCapture(help_output=GREP_HELP, help_ok=True)
        kb.learn("grep", capture)

        outcome = kb.learn("grep", capture)

        assert not outcome.learned
        assert "already learned" in outcome.message
        assert kb.learn("grep", capture, force=True).learned

    def test_unlearnable_command(self, kb):
        outcome = kb.learn("mystery", HelpCapture())

        assert not outcome.learned
        assert outcome.message == "no usable --help or man output"
        assert kb.get("mystery", "local") is None

    def test_learn_uses_capture_when_not_given(self, kb, monkeypatch):
        calls = []

        def fake_capture(command):
            calls.append(command)
            return HelpCapture(help_output=GREP_HELP, help_ok=True)

        monkeypatch.setattr("rtfm.knowledge_base.capture_help", fake_capture)

        assert kb.learn("grep").learned
        assert calls == ["grep"]

    def test_learn_man_first(self, kb):
        capture = HelpCapture(help_output=GREP_HELP, help_ok=True, man_output=LS_MAN, man_ok=True)

        outcome = kb.learn("ls", capture, PreferredSource.MAN)

        assert outcome.source == "man"

    def test_learn_many(self, kb):
        captures = {
            "grep": HelpCapture(help_output=GREP_HELP, help_ok=True),
            "ls": HelpCapture(man_output=LS_MAN, man_ok=True),
            "mystery": HelpCapture(),
            "gzip": HelpCapture(help_output=GREP_HELP, help_ok=True),
        }
        kb.learn("ls", captures["ls"])

        report = kb.learn_many(["grep", "ls", "mystery", "gzip"], prefix="G", capture=captures.__getitem__)

        assert report.total == 2
        assert report.learned == 2
        assert report.skipped == 0

        report = kb.learn_many(["grep", "ls", "mystery"], capture=captures.__getitem__)

        assert report.total == 3
        assert report.skipped == 2
        assert report.skipped_commands == ["grep", "ls"]
        assert report.failed == 1
        assert report.issues[0].identifier == "mystery"

    def test_learn_many_limit(self, kb):
        capture = lambda command: HelpCapture(help_output=GREP_HELP, help_ok=True)

        report = kb.learn_many(["a", "b", "c"], limit=2, capture=capture)

        assert report.total == 2
        assert report.learned == 2
        assert kb.get("c", "local") is None

    def test_learn_section_from_path(self, kb, monkeypatch):
        calls = []

        def fake_list(source, section):
            calls.append((source, section))
            return [("grep", "PATH executable"), ("gzip", "PATH executable")]

        monkeypatch.setattr("rtfm.knowledge_base.list_commands", fake_list)
        capture = lambda command: HelpCapture(help_output=GREP_HELP, help_ok=True)

        report = kb.learn_section(source=CommandSource.PATH, capture=capture)

        assert calls == [(CommandSource.PATH, "1")]
        assert report.learned == 2
        assert kb.get("gzip", "local") is not None

    def test_learn_section_without_commands(self, kb, monkeypatch):
        monkeypatch.setattr("rtfm.knowledge_base.list_commands", lambda source, section: [])

        report = kb.learn_section("8")

        assert report.total == 0


class TestImport:

    def test_import_markdown(self, kb):
        items = [
            ("pages/common/docker.md", DOCKER_MD),
            ("pages.zh/common/tar.md", TAR_ZH_MD),
            ("pages/common/empty.md", "# empty\n\n> Nothing.\n"),
        ]

        report = kb.import_markdown(items)

        assert report.imported == 2
        assert report.skipped == 1
        assert kb.store.count() == 2
        assert kb.search("docker").results[0].name == "docker"
        assert kb.search("归档", lang="zh").results[0].name == "tar"

    def test_import_respects_languages(self, tmp_path):
        kb = KnowledgeBase(SqliteRecordStore(tmp_path / "rtfm.db"), IndexManager(), languages=["zh"])

        report = kb.import_markdown([
            ("pages/common/docker.md", DOCKER_MD),
            ("pages.zh/common/tar.md", TAR_ZH_MD),
        ])

        assert report.imported == 1
        assert kb.get("docker", "en") is None

    def test_import_path_zip(self, kb, tmp_path):
        archive = tmp_path / "tldr.zip"
        with zipfile.ZipFile(archive, "w") as zf:
            zf.writestr("tldr-main/pages/common/docker.md", DOCKER_MD)
            zf.writestr("tldr-main/pages.zh/linux/tar.md", TAR_ZH_MD)

        report = kb.import_path(archive)

        assert report.imported == 2
        assert kb.get("tar", "zh").platform == "linux"

    def test_reimport_replaces(self, kb):
        kb.import_markdown([("pages/common/docker.md", DOCKER_MD)])
        updated = DOCKER_MD.replace("Manage Docker containers and images.", "Container runtime.")

        kb.import_markdown([("pages/common/docker.md", updated)])

        assert kb.store.count() == 1
        assert kb.get("docker", "en").description == "Container runtime."
        assert kb.search("runtime").results[0].name == "docker"

    def test_import_records(self, kb):
        rows = [
            {"name": "ls", "description": "List files.", "examples": [{"description": "All", "code": "ls -a"}]},
            {"name": "cat", "description": "", "examples": [{"description": "Show", "code": "cat f"}]},
            {"name": "", "description": "Bad name."},
            {"name": "cp", "description": "Copy.", "lang": "zh", "examples": [{"description": "x", "code": "cp a b"}]},
        ]

        report = kb.import_records(rows)

        assert report.imported == 2
        assert report.skipped == 1
        assert report.failed == 1
        assert kb.get("cp", "zh") is not None
        assert kb.search("files").results[0].name == "ls"


class TestFromSettings:

    def test_from_settings_rebuilds_missing_index(self, tmp_path):
        cfg = Settings(data_dir=tmp_path / "data")
        kb = KnowledgeBase.from_settings(cfg)
        kb.put(_record("ls", description="List files."))

        # 删除索引目录后重新打开，索引从存储重建
        for path in cfg.index_dir.iterdir():
            path.unlink()
        cfg.index_dir.rmdir()

        reopened = KnowledgeBase.from_settings(cfg)

        assert reopened.index.current_snapshot().doc_count == 1
        assert reopened.search("files").results[0].name == "ls"

    def test_from_settings_reopens_persisted_index(self, tmp_path):
        cfg = Settings(data_dir=tmp_path / "data", default_limit=1)
        kb = KnowledgeBase.from_settings(cfg)
        kb.put(_record("ls", description="List files."))
        kb.put(_record("cat", description="Print files."))

        reopened = KnowledgeBase.from_settings(cfg)

        assert reopened.index.current_snapshot().version == kb.index.current_snapshot().version
        response = reopened.search("files")
        assert len(response.results) == 1
        assert response.total == 2
