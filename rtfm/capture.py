"""命令帮助采集模块

运行 `<cmd> --help`、`<cmd> -h` 和 `man <cmd>`，把原始输出交给帮助解析器。
程序不存在、超时或退出码非零都视为该次尝试失败，不会抛出异常。
"""

import logging
import os
import re
import subprocess
import sys
from pathlib import Path
from typing import List, Optional, Sequence, Tuple

from rtfm.config import settings
from rtfm.help_parser import is_valid_help_content, strip_ansi_codes
from rtfm.models import CommandSource, HelpCapture


logger = logging.getLogger(__name__)


HELP_FLAGS = ("--help", "-h")

_MAN_ENV = {
    "MANPAGER": "cat",
    "MANWIDTH": "80",
    "GROFF_NO_SGR": "1",
}

_MAN_LIST_NAME = re.compile(r'^\s*([^\s,(]+)')

_WINDOWS_EXTENSIONS = (".exe", ".cmd", ".bat")


def _run(args: Sequence[str], timeout: float, env: Optional[dict] = None) -> Optional[subprocess.CompletedProcess]:
    """运行子进程，失败时返回 None"""
    try:
        return subprocess.run(
            list(args),
            capture_output=True,
            timeout=timeout,
            env=env,
            stdin=subprocess.DEVNULL,
        )
    except FileNotFoundError:
        logger.debug(f"Program not found: {args[0]}")
    except subprocess.TimeoutExpired:
        logger.warning(f"Timed out after {timeout}s: {' '.join(args)}")
    except OSError as e:
        logger.warning(f"Failed to run {' '.join(args)}: {e}")
    return None


def _decode(data: bytes) -> str:
    return data.decode("utf-8", errors="replace")


def try_help_flag(command: str, flag: str, timeout: float) -> Optional[Tuple[str, str]]:
    """尝试 `<command> <flag>`

    有些命令把帮助写到 stderr 或以非零状态退出，所以优先检查 stdout 再检查 stderr。

    Returns:
        tuple: (帮助文本, 使用的参数)，没有可用输出时返回 None
    """
    result = _run([command, flag], timeout)
    if result is None:
        return None

    stdout = _decode(result.stdout)
    if (result.returncode == 0 or stdout) and is_valid_help_content(stdout):
        return stdout, flag

    stderr = _decode(result.stderr)
    if is_valid_help_content(stderr):
        return stderr, f"{flag} (stderr)"
    return None


def read_man_page(command: str, timeout: float, section: Optional[str] = None) -> Optional[str]:
    """读取 man 页面，去除 ANSI 序列和 backspace 效果"""
    args = ["man"]
    if section:
        args.append(section)
    args.append(command)

    result = _run(args, timeout, env={**os.environ, **_MAN_ENV})
    if result is None:
        return None
    if result.returncode != 0:
        logger.debug(f"No man page for '{command}': {_decode(result.stderr).strip()}")
        return None

    text = strip_ansi_codes(_decode(result.stdout))
    if not text.strip():
        return None
    return text


def capture_help(command: str, timeout: Optional[float] = None) -> HelpCapture:
    """采集命令的 --help / -h 输出和 man 页面"""
    if timeout is None:
        timeout = settings.help_timeout

    capture = HelpCapture()
    for flag in HELP_FLAGS:
        found = try_help_flag(command, flag, timeout)
        if found is not None:
            capture.help_output, capture.help_flag = found
            capture.help_ok = True
            break

    man_text = read_man_page(command, timeout)
    if man_text is not None:
        capture.man_output = man_text
        capture.man_ok = True

    logger.debug(f"Captured '{command}': help={capture.help_ok}, man={capture.man_ok}")
    return capture


def parse_man_list_line(line: str, section: str) -> Optional[Tuple[str, str]]:
    """解析 `man -k` 的输出行

    格式: "command (1) - description" 或 "command, alias (1) - description"

    Returns:
        tuple: (命令名, 描述)，行不属于该 section 时返回 None
    """
    if f"({section})" not in line and f"({section}," not in line:
        return None

    match = _MAN_LIST_NAME.match(line)
    if not match:
        return None

    _, separator, description = line.partition(" - ")
    return match.group(1), description.strip() if separator else ""


def list_man_pages(section: str = "1", timeout: Optional[float] = None) -> List[Tuple[str, str]]:
    """列出指定 section 的全部 man 页面

    先尝试 `man -k -s <section> .`，不支持 -s 的系统（macOS）回退到 `man -k .`。

    Returns:
        list: (命令名, 描述) 列表；man 不可用时为空列表
    """
    if timeout is None:
        timeout = settings.help_timeout

    result = _run(["man", "-k", "-s", section, "."], timeout)
    if result is None or result.returncode != 0 or not result.stdout:
        result = _run(["man", "-k", "."], timeout)
        if result is None or result.returncode != 0:
            logger.warning(f"Failed to list man pages for section {section}")
            return []

    pages = []
    seen = set()
    for line in _decode(result.stdout).splitlines():
        parsed = parse_man_list_line(line, section)
        if parsed is not None and parsed[0] not in seen:
            seen.add(parsed[0])
            pages.append(parsed)
    return pages


def _is_windows() -> bool:
    return sys.platform.startswith("win")


def _executable_name(path: Path) -> Optional[str]:
    try:
        if not path.is_file():
            return None
    except OSError:
        return None
    if _is_windows():
        if path.suffix.lower() in _WINDOWS_EXTENSIONS:
            return path.stem
        return None
    if os.access(path, os.X_OK):
        return path.name
    return None


def list_path_commands(path_var: Optional[str] = None) -> List[Tuple[str, str]]:
    """列出 PATH 中的可执行文件

    Windows 上只取 .exe / .cmd / .bat，命令名不含扩展名。
    不存在或不可读的目录被忽略。

    Returns:
        list: 按名称排序并去重的 (命令名, "PATH executable") 列表
    """
    if path_var is None:
        path_var = os.environ.get("PATH", "")

    names = set()
    for directory in path_var.split(os.pathsep):
        if not directory:
            continue
        try:
            entries = list(Path(directory).iterdir())
        except OSError:
            continue
        for entry in entries:
            name = _executable_name(entry)
            if name:
                names.add(name)
    return [(name, "PATH executable") for name in sorted(names)]


def list_commands(source: CommandSource = CommandSource.AUTO, section: str = "1") -> List[Tuple[str, str]]:
    """按来源列出可学习的命令

    Returns:
        list: (命令名, 描述) 列表
    """
    if source is CommandSource.PATH:
        return list_path_commands()
    if source is CommandSource.MAN:
        return list_man_pages(section)

    pages = [] if _is_windows() else list_man_pages(section)
    if pages:
        return pages
    logger.info("No man pages listed, falling back to PATH executables")
    return list_path_commands()
