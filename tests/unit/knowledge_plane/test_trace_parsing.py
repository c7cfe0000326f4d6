"""Unit tests for multi-language stack trace parsing."""

from __future__ import annotations

import pytest

from nexus_verifier.knowledge_plane.trace_parsing import (
    TraceLanguage,
    detect_language,
    parse_stacktrace,
)

PYTHON_TRACE = """\
Traceback (most recent call last):
  File "/srv/app/main.py", line 10, in <module>
    run()
  File "/srv/app/billing/invoice.py", line 42, in total
    return sum(items) / count
ZeroDivisionError: division by zero
"""

PYTHON_CHAINED_TRACE = """\
Traceback (most recent call last):
  File "/srv/app/config.py", line 5, in load
    return values["port"]
KeyError: 'port'

During handling of the above exception, another exception occurred:

Traceback (most recent call last):
  File "/srv/app/server.py", line 30, in start
    port = load()
ValueError: port is not configured
"""

NODE_TRACE = """\
TypeError: Cannot read properties of undefined (reading 'id')
    at getUser (/app/src/users.js:14:22)
    at Object.<anonymous> (/app/src/index.js:5:1)
    at Module._compile (node:internal/modules/cjs/loader:1256:14)
"""

JAVA_TRACE = """\
Exception in thread "main" java.lang.IllegalStateException: wrapper
\tat com.acme.App.main(App.java:20)
Caused by: java.lang.NullPointerException: missing customer
\tat com.acme.billing.Invoice$Line.total(Invoice.java:88)
\tat com.acme.App.main(App.java:18)
"""

GO_TRACE = """\
panic: runtime error: index out of range [5] with length 3

goroutine 1 [running]:
main.lookup(...)
\t/home/dev/svc/main.go:12
main.main()
\t/home/dev/svc/main.go:7 +0x1d
exit status 2
"""

RUST_TRACE = """\
thread 'main' panicked at src/parser.rs:27:9:
called `Option::unwrap()` on a `None` value
stack backtrace:
   0: rust_begin_unwind
             at /rustc/abc123/library/std/src/panicking.rs:645:5
   1: core::panicking::panic
             at /rustc/abc123/library/core/src/panicking.rs:144:5
   2: demo::parser::parse_header
             at ./src/parser.rs:27:9
   3: demo::main
             at ./src/main.rs:4:5
"""


@pytest.mark.parametrize(
    ("trace", "language"),
    [
        (PYTHON_TRACE, TraceLanguage.PYTHON),
        (NODE_TRACE, TraceLanguage.NODE),
        (JAVA_TRACE, TraceLanguage.JAVA),
        (GO_TRACE, TraceLanguage.GO),
        (RUST_TRACE, TraceLanguage.RUST),
        ("Segmentation fault (core dumped)", TraceLanguage.UNKNOWN),
    ],
)
def test_language_detection(trace: str, language: TraceLanguage) -> None:
    assert detect_language(trace) is language


def test_python_frames_are_throw_site_first() -> None:
    parsed = parse_stacktrace(PYTHON_TRACE)

    assert parsed.error_type == "ZeroDivisionError"
    assert parsed.error_message == "division by zero"
    assert parsed.summary == "ZeroDivisionError: division by zero"
    assert [(f.symbol, f.file_hint, f.line_hint, f.depth) for f in parsed.frames] == [
        ("total", "/srv/app/billing/invoice.py", 42, 0),
        ("<module>", "/srv/app/main.py", 10, 1),
    ]


def test_python_chained_exception_uses_last_block() -> None:
    parsed = parse_stacktrace(PYTHON_CHAINED_TRACE)

    assert parsed.error_type == "ValueError"
    assert [frame.file_hint for frame in parsed.frames] == ["/srv/app/server.py"]


def test_node_frames_skip_runtime_internals() -> None:
    parsed = parse_stacktrace(NODE_TRACE)

    assert parsed.error_type == "TypeError"
    assert parsed.error_message.startswith("Cannot read properties of undefined")
    assert [(f.symbol, f.file_hint, f.line_hint) for f in parsed.frames] == [
        ("getUser", "/app/src/users.js", 14),
        ("Object.<anonymous>", "/app/src/index.js", 5),
    ]


def test_java_root_cause_block_and_path_hints() -> None:
    parsed = parse_stacktrace(JAVA_TRACE)

    assert parsed.error_type == "java.lang.NullPointerException"
    assert parsed.error_message == "missing customer"
    assert [(f.file_hint, f.line_hint) for f in parsed.frames] == [
        ("com/acme/billing/Invoice.java", 88),
        ("com/acme/App.java", 18),
    ]
    assert parsed.frames[0].symbol == "com.acme.billing.Invoice$Line.total"


def test_go_panic_frames() -> None:
    parsed = parse_stacktrace(GO_TRACE)

    assert parsed.error_type == "panic"
    assert parsed.error_message == "runtime error: index out of range [5] with length 3"
    assert [(f.symbol, f.file_hint, f.line_hint) for f in parsed.frames] == [
        ("main.lookup", "/home/dev/svc/main.go", 12),
        ("main.main", "/home/dev/svc/main.go", 7),
    ]


def test_rust_panic_merges_location_with_backtrace_symbol() -> None:
    parsed = parse_stacktrace(RUST_TRACE)

    assert parsed.error_type == "panic"
    assert parsed.error_message == "called `Option::unwrap()` on a `None` value"
    assert [(f.symbol, f.file_hint, f.line_hint) for f in parsed.frames] == [
        ("demo::parser::parse_header", "src/parser.rs", 27),
        ("demo::main", "src/main.rs", 4),
    ]


def test_rust_legacy_panic_format() -> None:
    parsed = parse_stacktrace("thread 'main' panicked at 'boom', ./src/lib.rs:3:5")

    assert parsed.language is TraceLanguage.RUST
    assert parsed.error_message == "boom"
    assert [(f.symbol, f.file_hint, f.line_hint) for f in parsed.frames] == [
        (None, "src/lib.rs", 3)
    ]


def test_garbled_lines_are_skipped() -> None:
    garbled = PYTHON_TRACE.replace("    run()\n", "\x1b[31m###garbage### (((\n")
    parsed = parse_stacktrace(garbled)

    assert len(parsed.frames) == 2
    assert parsed.error_type == "ZeroDivisionError"


def test_unknown_trace_keeps_last_line_as_message() -> None:
    parsed = parse_stacktrace("starting worker\nSegmentation fault (core dumped)\n")

    assert parsed.language is TraceLanguage.UNKNOWN
    assert parsed.frames == ()
    assert parsed.error_type is None
    assert parsed.summary == "Segmentation fault (core dumped)"


def test_explicit_language_overrides_detection() -> None:
    parsed = parse_stacktrace(NODE_TRACE, TraceLanguage.JAVA)
    assert parsed.language is TraceLanguage.JAVA
    assert parsed.frames == ()
