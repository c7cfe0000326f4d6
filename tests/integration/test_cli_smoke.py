"""
nexus-verifier — CLI subprocess smoke contracts

File: tests/integration/test_cli_smoke.py

Purpose
- Enforce CLI behavior for `python -m nexus_verifier` as a real child process.
- Verify exit codes, JSON output shape, and on-disk side effects (audit log, run logs).
"""

from __future__ import annotations

import json
import os
import shutil
import subprocess
import sys
from pathlib import Path

import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[2]
SRC_PATH = PROJECT_ROOT / "src"

pytestmark = pytest.mark.integration


def _run_cli(cwd: Path, *args: str) -> subprocess.CompletedProcess[str]:
    env = {key: value for key, value in os.environ.items() if not key.startswith("NEXUS_VERIFIER_")}
    existing_pythonpath = env.get("PYTHONPATH")
    src_pythonpath = str(SRC_PATH)
    env["PYTHONPATH"] = (
        src_pythonpath if not existing_pythonpath else f"{src_pythonpath}:{existing_pythonpath}"
    )
    env["NEXUS_VERIFIER_SCORING_LINT_TOOL"] = "syntax"
    env.setdefault("GIT_TERMINAL_PROMPT", "0")
    env.setdefault("GIT_CONFIG_NOSYSTEM", "1")
    return subprocess.run(
        [sys.executable, "-m", "nexus_verifier", *args],
        cwd=cwd,
        text=True,
        capture_output=True,
        check=False,
        env=env,
        timeout=120,
    )


def _write(path: Path, contents: str) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(contents, encoding="utf-8")
    return path


def test_help_and_usage_errors(tmp_path: Path) -> None:
    help_run = _run_cli(tmp_path, "--help")
    usage_run = _run_cli(tmp_path, "verify")

    assert help_run.returncode == 0, help_run.stderr
    assert "nexus-verifier" in help_run.stdout
    assert usage_run.returncode == 2
    assert "--repo" in usage_run.stderr


def test_config_reflects_environment_overrides(tmp_path: Path) -> None:
    completed = _run_cli(tmp_path, "config", "--json")

    assert completed.returncode == 0, completed.stderr
    payload = json.loads(completed.stdout)
    assert payload["config"]["scoring"]["lint_tool"] == "syntax"
    workspace_root = (tmp_path.resolve() / "workspaces").as_posix()
    assert payload["config"]["paths"]["workspace_root"] == workspace_root


def test_minimize_writes_the_reduced_input(tmp_path: Path) -> None:
    failing = _write(tmp_path / "big.txt", "".join(f"line {n}\n" for n in range(8)) + "CRASH\n")
    output = tmp_path / "small.txt"
    script = "import sys; sys.exit(2 if 'CRASH' in open('input.txt').read() else 0)"

    completed = _run_cli(
        tmp_path,
        "minimize",
        "--input",
        str(failing),
        "--output",
        str(output),
        "--json",
        "--",
        sys.executable,
        "-c",
        script,
    )

    assert completed.returncode == 0, completed.stderr
    result = json.loads(completed.stdout)["result"]
    assert result["status"] == "minimal"
    assert result["final_size"] == 1
    assert output.read_text(encoding="utf-8") == "CRASH\n"
    assert (tmp_path / "audit" / "audit.jsonl").is_file()
    assert any((tmp_path / "logs").iterdir())


@pytest.mark.skipif(shutil.which("git") is None, reason="git is not installed")
def test_score_reports_outcome_and_confidence(tmp_path: Path) -> None:
    repo = tmp_path / "repo"
    _write(repo / "calc.py", "def add(a, b):\n    return a - b\n")
    patch = _write(
        tmp_path / "fix.diff",
        "--- a/calc.py\n+++ b/calc.py\n@@ -1,2 +1,2 @@\n"
        " def add(a, b):\n-    return a - b\n+    return a + b\n",
    )
    evidence = _write(tmp_path / "evidence.yaml", "- path: calc.py\n  start_line: 2\n")
    check = f"{sys.executable} -c 'import calc; assert calc.add(2, 2) == 4'"

    passed = _run_cli(
        tmp_path,
        "score",
        "--repo",
        str(repo),
        "--patch",
        str(patch),
        "--test",
        check,
        "--evidence",
        str(evidence),
        "--history",
        "1.0",
        "--json",
    )
    rejected = _run_cli(
        tmp_path,
        "verify",
        "--repo",
        str(repo),
        "--patch",
        str(patch),
        "--test",
        f"{sys.executable} -c 'raise SystemExit(1)'",
    )

    assert passed.returncode == 0, passed.stderr
    payload = json.loads(passed.stdout)
    assert payload["outcome"]["status"] == "passed"
    assert payload["report"]["category"] == "High"
    assert rejected.returncode == 1
    assert "Verification: failed" in rejected.stdout
