"""
Stack trace parsing for Python, Node.js, Java, Go and Rust.

Frames are returned throw-site first: ``depth == 0`` is the frame that raised.
Lines that do not match a language's frame grammar are skipped, so partially
garbled traces still yield whatever frames can be recovered.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import StrEnum
from typing import Final


class TraceLanguage(StrEnum):
    PYTHON = "python"
    NODE = "node"
    JAVA = "java"
    GO = "go"
    RUST = "rust"
    UNKNOWN = "unknown"


@dataclass(frozen=True, slots=True)
class StackFrame:
    symbol: str | None
    file_hint: str | None
    line_hint: int | None
    depth: int
    language: TraceLanguage


@dataclass(frozen=True, slots=True)
class ParsedTrace:
    language: TraceLanguage
    frames: tuple[StackFrame, ...]
    error_type: str | None
    error_message: str

    @property
    def summary(self) -> str:
        parts = [part for part in (self.error_type, self.error_message) if part]
        return ": ".join(parts)


_PYTHON_FRAME: Final = re.compile(
    r'^\s*File "(?P<file>[^"]+)", line (?P<line>\d+)(?:, in (?P<symbol>\S+))?'
)
_PYTHON_ERROR: Final = re.compile(r"^(?P<type>[A-Za-z_][\w.]*)(?::\s?(?P<message>.*))?$")
_NODE_FRAME: Final = re.compile(
    r"^\s*at (?:(?P<symbol>.+?) \()?(?P<file>[^()\s]+?):(?P<line>\d+)(?::\d+)?\)?\s*$"
)
_NODE_ERROR: Final = re.compile(
    r"^(?:Uncaught )?(?P<type>[A-Z]\w*(?:Error|Exception))(?::\s?(?P<message>.*))?$"
)
_JAVA_FRAME: Final = re.compile(
    r"^\s*at (?P<symbol>[\w$.<>/]+)\((?P<file>[\w$-]+\.(?:java|kt|scala|groovy)):(?P<line>\d+)\)"
)
_JAVA_ERROR: Final = re.compile(
    r"^(?:Exception in thread \"[^\"]*\" |Caused by: )?"
    r"(?P<type>[\w$.]+(?:Exception|Error|Throwable))(?::\s?(?P<message>.*))?$"
)
_GO_FUNCTION: Final = re.compile(r"^(?P<symbol>[\w./*()\[\]-]+?)\((?:[^)]*)\)$")
_GO_LOCATION: Final = re.compile(r"^\s+(?P<file>\S+\.go):(?P<line>\d+)(?:\s+\+0x[0-9a-f]+)?$")
_RUST_PANIC: Final = re.compile(
    r"^thread '[^']*' panicked at (?:'(?P<old_message>.*)', )?"
    r"(?P<file>[^:\s]+\.rs):(?P<line>\d+):\d+:?$"
)
_RUST_FRAME_SYMBOL: Final = re.compile(r"^\s*\d+:\s+(?:0x[0-9a-f]+ - )?(?P<symbol>\S+)$")
_RUST_FRAME_LOCATION: Final = re.compile(r"^\s+at (?P<file>\S+\.rs):(?P<line>\d+)(?::\d+)?$")

_GO_RUNTIME_PREFIXES: Final[tuple[str, ...]] = ("runtime.", "panic", "testing.")
_RUST_STD_PREFIXES: Final[tuple[str, ...]] = (
    "std::",
    "core::",
    "alloc::",
    "rust_begin_unwind",
    "__rust",
    "<",
)


def detect_language(trace: str) -> TraceLanguage:
    if "Traceback (most recent call last)" in trace or _any_line(_PYTHON_FRAME, trace):
        return TraceLanguage.PYTHON
    if "panicked at" in trace:
        return TraceLanguage.RUST
    if re.search(r"^goroutine \d+ \[", trace, re.MULTILINE) or re.search(r"\.go:\d+", trace):
        return TraceLanguage.GO
    if _any_line(_JAVA_FRAME, trace):
        return TraceLanguage.JAVA
    if _any_line(_NODE_FRAME, trace):
        return TraceLanguage.NODE
    return TraceLanguage.UNKNOWN


def parse_stacktrace(trace: str, language: TraceLanguage | None = None) -> ParsedTrace:
    """Parse ``trace``, auto-detecting the language unless one is given."""

    resolved = language or detect_language(trace)
    lines = trace.replace("\r\n", "\n").split("\n")
    if resolved is TraceLanguage.PYTHON:
        return _parse_python(lines)
    if resolved is TraceLanguage.NODE:
        return _parse_node(lines)
    if resolved is TraceLanguage.JAVA:
        return _parse_java(lines)
    if resolved is TraceLanguage.GO:
        return _parse_go(lines)
    if resolved is TraceLanguage.RUST:
        return _parse_rust(lines)
    message = next((line.strip() for line in reversed(lines) if line.strip()), "")
    return ParsedTrace(TraceLanguage.UNKNOWN, (), None, message)


def _parse_python(lines: list[str]) -> ParsedTrace:
    # With chained exceptions the last traceback block is the one that escaped.
    start = 0
    for index, line in enumerate(lines):
        if line.startswith("Traceback (most recent call last)"):
            start = index
    block = lines[start:]

    raw: list[tuple[str | None, str, int]] = []
    error_type: str | None = None
    error_message = ""
    for line in block:
        frame = _PYTHON_FRAME.match(line)
        if frame is not None:
            raw.append((frame.group("symbol"), frame.group("file"), int(frame.group("line"))))
            continue
        if line and not line[0].isspace() and not line.startswith("Traceback"):
            error = _PYTHON_ERROR.match(line.strip())
            if error is not None:
                error_type = error.group("type")
                error_message = (error.group("message") or "").strip()
    # Python prints the outermost call first.
    raw.reverse()
    return ParsedTrace(
        TraceLanguage.PYTHON,
        _frames(raw, TraceLanguage.PYTHON),
        error_type,
        error_message,
    )


def _parse_node(lines: list[str]) -> ParsedTrace:
    raw: list[tuple[str | None, str, int]] = []
    error_type: str | None = None
    error_message = ""
    for line in lines:
        frame = _NODE_FRAME.match(line)
        if frame is not None:
            file_hint = frame.group("file")
            if file_hint.startswith("node:") or file_hint.startswith("internal/"):
                continue
            line_number = int(frame.group("line"))
            raw.append((frame.group("symbol"), _strip_file_scheme(file_hint), line_number))
            continue
        if error_type is None:
            error = _NODE_ERROR.match(line.strip())
            if error is not None:
                error_type = error.group("type")
                error_message = (error.group("message") or "").strip()
    frames = _frames(raw, TraceLanguage.NODE)
    return ParsedTrace(TraceLanguage.NODE, frames, error_type, error_message)


def _parse_java(lines: list[str]) -> ParsedTrace:
    # The innermost "Caused by" block holds the root cause.
    start = 0
    for index, line in enumerate(lines):
        if line.startswith("Caused by:"):
            start = index
    raw: list[tuple[str | None, str, int]] = []
    error_type: str | None = None
    error_message = ""
    for line in lines[start:]:
        frame = _JAVA_FRAME.match(line)
        if frame is not None:
            symbol = frame.group("symbol")
            file_hint = _java_path_hint(symbol, frame.group("file"))
            raw.append((symbol, file_hint, int(frame.group("line"))))
            continue
        if error_type is None:
            error = _JAVA_ERROR.match(line.strip())
            if error is not None:
                error_type = error.group("type")
                error_message = (error.group("message") or "").strip()
    frames = _frames(raw, TraceLanguage.JAVA)
    return ParsedTrace(TraceLanguage.JAVA, frames, error_type, error_message)


def _parse_go(lines: list[str]) -> ParsedTrace:
    raw: list[tuple[str | None, str, int]] = []
    error_message = ""
    pending_symbol: str | None = None
    for line in lines:
        if line.startswith("panic: ") and not error_message:
            error_message = line[len("panic: ") :].strip()
            continue
        location = _GO_LOCATION.match(line)
        if location is not None:
            symbol = pending_symbol
            pending_symbol = None
            if symbol is not None and symbol.startswith(_GO_RUNTIME_PREFIXES):
                continue
            raw.append((symbol, location.group("file"), int(location.group("line"))))
            continue
        function = _GO_FUNCTION.match(line.strip()) if line and not line[0].isspace() else None
        if function is not None:
            pending_symbol = function.group("symbol")
        elif line.startswith("created by "):
            pending_symbol = line[len("created by ") :].split(" in goroutine")[0].strip()
    error_type = "panic" if error_message else None
    return ParsedTrace(TraceLanguage.GO, _frames(raw, TraceLanguage.GO), error_type, error_message)


def _parse_rust(lines: list[str]) -> ParsedTrace:
    raw: list[tuple[str | None, str, int]] = []
    error_message = ""
    pending_symbol: str | None = None
    for index, line in enumerate(lines):
        panic = _RUST_PANIC.match(line.strip())
        if panic is not None:
            raw.append((None, _strip_relative(panic.group("file")), int(panic.group("line"))))
            error_message = panic.group("old_message") or ""
            if not error_message and index + 1 < len(lines):
                error_message = lines[index + 1].strip()
            continue
        symbol = _RUST_FRAME_SYMBOL.match(line)
        if symbol is not None:
            pending_symbol = symbol.group("symbol")
            continue
        location = _RUST_FRAME_LOCATION.match(line)
        if location is not None:
            frame_symbol = pending_symbol
            pending_symbol = None
            file_hint = location.group("file")
            if file_hint.startswith("/rustc/") or (
                frame_symbol is not None and frame_symbol.startswith(_RUST_STD_PREFIXES)
            ):
                continue
            entry = (frame_symbol, _strip_relative(file_hint), int(location.group("line")))
            if raw and raw[0][0] is None and raw[0][1:] == entry[1:]:
                # The panic location repeated by the backtrace; keep its symbol.
                raw[0] = entry
                continue
            raw.append(entry)
    error_type = "panic" if raw or error_message else None
    frames = _frames(raw, TraceLanguage.RUST)
    return ParsedTrace(TraceLanguage.RUST, frames, error_type, error_message)


def _frames(
    raw: list[tuple[str | None, str, int]], language: TraceLanguage
) -> tuple[StackFrame, ...]:
    return tuple(
        StackFrame(
            symbol=symbol, file_hint=file_hint, line_hint=line, depth=depth, language=language
        )
        for depth, (symbol, file_hint, line) in enumerate(raw)
    )


def _java_path_hint(symbol: str, filename: str) -> str:
    """``com.acme.Billing$Inner.total`` in ``Billing.java`` -> ``com/acme/Billing.java``."""

    parts = symbol.split(".")
    package = [part for part in parts[:-2] if part and part[0].islower()]
    return "/".join([*package, filename])


def _strip_file_scheme(path: str) -> str:
    return path[len("file://") :] if path.startswith("file://") else path


def _strip_relative(path: str) -> str:
    return path[2:] if path.startswith("./") else path


def _any_line(pattern: re.Pattern[str], trace: str) -> bool:
    return any(pattern.match(line) for line in trace.splitlines())


__all__ = [
    "ParsedTrace",
    "StackFrame",
    "TraceLanguage",
    "detect_language",
    "parse_stacktrace",
]
