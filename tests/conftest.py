import ast
import sys
import threading
from collections import defaultdict
from pathlib import Path
from typing import Dict, Iterable, Set

import pytest

from grubluks import executil

_ROOT_DIR = Path(__file__).absolute().parent.parent
_PACKAGE_DIR = (_ROOT_DIR / "grubluks").absolute()

_EXECUTED_LINES: Dict[Path, Set[int]] = defaultdict(set)
_CANDIDATE_LINES: Dict[Path, Set[int]] = {}
_PREVIOUS_TRACE = None
_TRACE_ACTIVE = False


class DummyResult:
    def __init__(self, out: str = "", rc: int = 0, err: str = "") -> None:
        self.out = out
        self.rc = rc
        self.err = err


class FakeRunner:
    """Stand-in for ``executil.run`` keyed on the exact command tuple."""

    def __init__(self, responses=None, default=None):
        self.responses = dict(responses or {})
        self.default = default or DummyResult()
        self.calls: list[list[str]] = []

    def __call__(self, cmd, check=True, **_kwargs):  # noqa: ARG002 - signature compatibility
        self.calls.append(list(cmd))
        return self.responses.get(tuple(cmd), self.default)


@pytest.fixture(autouse=True)
def isolated_trace_log(tmp_path, monkeypatch):
    log_dir = tmp_path / "trace-logs"
    monkeypatch.setattr(executil, "LOG_DIRS", [str(log_dir)])
    monkeypatch.setattr(executil, "LOG_PATH", None)
    return log_dir


def _statement_lines(path: Path) -> Set[int]:
    source = path.read_text(encoding="utf-8")
    try:
        tree = ast.parse(source, filename=str(path))
    except SyntaxError:
        return set()
    source_lines = source.splitlines()
    lines: Set[int] = set()
    for node in ast.walk(tree):
        if not isinstance(node, ast.stmt):
            continue
        lineno = node.lineno
        if lineno <= len(source_lines) and not source_lines[lineno - 1].strip().startswith("#"):
            lines.add(lineno)
    return lines


def _iter_modules(directory: Path) -> Iterable[Path]:
    return sorted(p.absolute() for p in directory.glob("*.py") if p.is_file())


def _trace(frame, event, arg):
    if event == "line":
        filename = Path(frame.f_code.co_filename)
        if filename in _CANDIDATE_LINES:
            _EXECUTED_LINES[filename].add(frame.f_lineno)
    return _trace


def pytest_sessionstart(session):
    global _PREVIOUS_TRACE, _TRACE_ACTIVE
    if _TRACE_ACTIVE:
        return
    for path in _iter_modules(_PACKAGE_DIR):
        _CANDIDATE_LINES[path] = _statement_lines(path)
    _TRACE_ACTIVE = True
    _PREVIOUS_TRACE = sys.gettrace()
    sys.settrace(_trace)
    threading.settrace(_trace)


def pytest_sessionfinish(session, exitstatus):
    global _TRACE_ACTIVE
    if not _TRACE_ACTIVE:
        return
    _TRACE_ACTIVE = False
    sys.settrace(_PREVIOUS_TRACE)
    threading.settrace(None)

    terminal = session.config.pluginmanager.get_plugin("terminalreporter")
    write_line = terminal.write_line if terminal else print
    total = covered = 0
    write_line("")
    write_line("Statement coverage for 'grubluks':")
    for path, candidates in _CANDIDATE_LINES.items():
        if not candidates:
            continue
        hit = len(_EXECUTED_LINES.get(path, set()) & candidates)
        total += len(candidates)
        covered += hit
        write_line(f"  {str(path.relative_to(_ROOT_DIR)):<40} {hit:>4}/{len(candidates):<4} {hit / len(candidates) * 100:6.1f}%")
    if total:
        write_line(f"  {'TOTAL':<40} {covered:>4}/{total:<4} {covered / total * 100:6.1f}%")
