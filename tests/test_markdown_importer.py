"""Markdown 导入测试

测试 tldr 风格 Markdown 的解析、反向序列化、HTML 渲染和批量导入。
"""

import pytest

from rtfm.errors import EncodingError, UnlearnableError
from rtfm.markdown_importer import (
    import_markdown_batch,
    parse_markdown,
    parse_tldr_path,
    render_record_html,
    to_markdown,
)
from rtfm.models import Example, StructuredRecord


DOCKER_MD = """# docker

> Manage Docker containers and images.
> More information: <https://docs.docker.com/engine/reference/commandline/cli/>.

- List all docker containers (running and stopped):

`docker ps --all`

- Start a container from an image, with a custom name:

`docker run --name {{container_name}} {{image}}`
"""

ZH_MD = """# tar

> 归档实用工具。

- 创建归档并写入文件:

`tar cf {{目标.tar}} {{文件1}} {{文件2}}`
"""


class TestParseMarkdown:

    def test_docker_page(self):
        record = parse_markdown(DOCKER_MD)

        assert record.name == "docker"
        assert record.description == "Manage Docker containers and images."
        assert record.lang == "en"
        assert record.platform == "common"
        assert record.category == "common"
        assert [e.code for e in record.examples] == [
            "docker ps --all",
            "docker run --name {{container_name}} {{image}}",
        ]
        assert record.examples[0].description == "List all docker containers (running and stopped)"

    def test_extra_quote_lines_go_to_content(self):
        record = parse_markdown(DOCKER_MD)

        assert "More information" in record.content
        assert "More information" not in record.description

    def test_chinese_page(self):
        record = parse_markdown(ZH_MD, lang_hint="zh", platform="linux")

        assert record.name == "tar"
        assert record.description == "归档实用工具。"
        assert record.lang == "zh"
        assert record.platform == "linux"
        assert record.category == "linux"
        assert record.examples[0].description == "创建归档并写入文件"
        assert record.examples[0].code == "tar cf {{目标.tar}} {{文件1}} {{文件2}}"

    def test_fenced_code_example(self):
        text = "# jq\n\n> JSON processor.\n\n- Pretty print:\n\n```\ncat file.json | jq '.'\n```\n"

        record = parse_markdown(text)

        assert record.examples[0].code == "cat file.json | jq '.'"

    def test_orphan_bullet_goes_to_content(self):
        text = "# ls\n\n> List files.\n\n- A note without code\n- List all files:\n\n`ls -a`\n"

        record = parse_markdown(text)

        assert len(record.examples) == 1
        assert record.examples[0].description == "List all files"
        assert "A note without code" in record.content

    def test_front_matter_overrides(self):
        text = "---\nlang: zh\nplatform: osx\ncategory: network\n---\n" + ZH_MD

        record = parse_markdown(text, lang_hint="en")

        assert record.lang == "zh"
        assert record.platform == "osx"
        assert record.category == "network"

    def test_bytes_with_bom(self):
        record = parse_markdown(b"\xef\xbb\xbf" + DOCKER_MD.encode("utf-8"))

        assert record.name == "docker"

    def test_malformed_bytes(self):
        with pytest.raises(EncodingError):
            parse_markdown(b"# ls\n\n> \xff\xfe\n", identifier="ls.md")

    def test_missing_name(self):
        with pytest.raises(UnlearnableError) as exc_info:
            parse_markdown("> Only a description.\n\n- x:\n\n`x`\n", identifier="x.md")

        assert "name" in exc_info.value.reason

    def test_missing_description(self):
        with pytest.raises(UnlearnableError) as exc_info:
            parse_markdown("# ls\n\n- List:\n\n`ls`\n")

        assert "description" in exc_info.value.reason
        assert exc_info.value.command == "ls"

    def test_missing_examples(self):
        with pytest.raises(UnlearnableError) as exc_info:
            parse_markdown("# ls\n\n> List files.\n\nSome prose.\n")

        assert "examples" in exc_info.value.reason


class TestRoundTrip:

    def test_docker_round_trip(self):
        record = parse_markdown(DOCKER_MD)

        assert parse_markdown(to_markdown(record)) == record

    def test_round_trip_preserves_metadata(self):
        record = StructuredRecord(
            name="kubectl-apply",
            description="应用配置",
            category="devops",
            platform="linux",
            lang="zh",
            examples=[
                Example(description="Apply a file", code="kubectl apply -f {{file.yaml}}"),
                Example(description="Multi line", code="cat <<EOF | kubectl apply -f -\nkind: Pod\nEOF"),
                Example(description="Backticks", code="echo `date`"),
            ],
            content="Extra notes.",
        )

        assert parse_markdown(to_markdown(record)) == record

    @pytest.mark.parametrize("name", ["c#", "f#", "c++"])
    def test_name_with_trailing_symbols(self, name):
        """命令名末尾的 # 不是标题的闭合符号"""
        record = StructuredRecord(
            name=name,
            description="Compile sources.",
            lang="en",
            examples=[Example(description="Build", code=f"{name} build")],
        )

        assert parse_markdown(to_markdown(record)).name == name
        assert parse_markdown(to_markdown(record)) == record

    def test_closing_hashes_are_stripped(self):
        record = parse_markdown("# docker ##\n\n> Manage containers.\n\n- List:\n\n`docker ps`\n")

        assert record.name == "docker"


def test_render_record_html():
    record = parse_markdown(DOCKER_MD)

    html = render_record_html(record)

    assert "<h1>docker</h1>" in html
    assert "<blockquote>" in html
    assert "docker ps --all" in html
    assert "platform:" not in html


class TestTldrPath:

    @pytest.mark.parametrize("identifier, expected", [
        ("pages/common/docker.md", ("en", "common", "docker")),
        ("pages.zh/linux/apt.md", ("zh", "linux", "apt")),
        ("tldr-main/pages.pt_BR/osx/brew.md", ("pt_BR", "osx", "brew")),
    ])
    def test_parse(self, identifier, expected):
        assert tuple(parse_tldr_path(identifier)) == expected

    def test_not_a_tldr_path(self):
        assert parse_tldr_path("docs/docker.md") is None
        assert parse_tldr_path("pages/docker.md") is None


class TestBatchImport:

    def test_counts_and_reasons(self):
        items = [
            ("pages/common/docker.md", DOCKER_MD),
            ("pages.zh/common/tar.md", ZH_MD.encode("utf-8")),
            ("pages/common/empty.md", "# empty\n\n> Nothing to see.\n"),
            ("pages/common/bad.md", b"# bad\n\n> \xff\n"),
            ("pages/common/README.txt", "ignored"),
        ]

        report = import_markdown_batch(items)

        assert report.imported == 2
        assert report.skipped == 1
        assert report.failed == 1
        assert report.skipped_ids == ["pages/common/empty.md"]
        assert {issue.identifier for issue in report.issues} == {
            "pages/common/empty.md",
            "pages/common/bad.md",
        }
        assert [record.key for record in report.records] == [("docker", "en"), ("tar", "zh")]

    def test_language_filter(self):
        items = [
            ("pages/common/docker.md", DOCKER_MD),
            ("pages.zh/common/tar.md", ZH_MD),
        ]

        report = import_markdown_batch(items, languages=["en"])

        assert report.imported == 1
        assert report.skipped_ids == ["pages.zh/common/tar.md"]
        assert "not enabled" in report.issues[0].reason

    def test_platform_from_path(self):
        report = import_markdown_batch([("pages/linux/docker.md", DOCKER_MD)])

        assert report.records[0].platform == "linux"
        assert report.records[0].category == "linux"

    def test_unexpected_error_is_counted(self, monkeypatch):
        def boom(*args, **kwargs):
            raise RuntimeError("boom")

        monkeypatch.setattr("rtfm.markdown_importer.parse_markdown", boom)

        report = import_markdown_batch([("pages/common/docker.md", DOCKER_MD)])

        assert report.failed == 1
        assert report.issues[0].reason == "boom"

    def test_report_excludes_records_when_serialized(self):
        report = import_markdown_batch([("pages/common/docker.md", DOCKER_MD)])

        assert "records" not in report.model_dump()
