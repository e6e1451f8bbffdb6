"""
bastion-orchestrator — end-to-end smoke test

File: tests/smoke/test_end_to_end.py
Last updated: 2026-10-19

Purpose
- Drive the ``bastion`` entrypoint through a realistic session (grant, execute, scan,
  run a task) against one state DB and check the persisted side effects directly.
"""

from __future__ import annotations

import json
import shutil
import sqlite3
from pathlib import Path

import pytest

from bastion_orchestrator.main import ExitCode, cli_entrypoint

_PLAN = {
    "plan": {"name": "Report", "description": "Compute then write up"},
    "subtasks": [
        {"id": "compute", "description": "Compute the totals", "assignedTo": "analyst"},
        {
            "id": "write",
            "description": "Write the summary",
            "assignedTo": "writer",
            "dependencies": ["compute"],
        },
    ],
}


@pytest.mark.smoke
def test_end_to_end_session_persists_every_decision(
    tmp_path: Path, capsys: pytest.CaptureFixture[str], monkeypatch: pytest.MonkeyPatch
) -> None:
    if shutil.which("python3") is None:
        pytest.skip("python3 not on PATH")
    monkeypatch.setenv("BASTION_ANTHROPIC_API_KEY", "sk-ant-SMOKEFAKE1234567890")

    config = tmp_path / "bastion.toml"
    config.write_text(
        '[sandbox]\nbackend = "none"\nmemory_limit_mb = 512\n\n'
        '[observability]\nlog_dir = "logs"\nlog_level = "DEBUG"\n',
        encoding="utf-8",
    )
    script = tmp_path / "script.json"
    script.write_text(
        json.dumps(
            {
                "rules": [
                    {"match": "break down the following task", "response": json.dumps(_PLAN)},
                    {"match": "synthesize these results", "response": "Totals are 42."},
                    {"match": "Task ID:", "response": "done"},
                ]
            }
        ),
        encoding="utf-8",
    )
    common = ["--config", str(config), "--principal", "dana", "--json"]

    def run(*argv: str) -> tuple[int, dict[str, object]]:
        code = cli_entrypoint([*argv, *common])
        out = capsys.readouterr().out.strip().splitlines()
        return code, json.loads(out[-1]) if out else {}

    code, executed = run("exec", "--language", "python", "print(40 + 2)")
    assert code == ExitCode.SUCCESS
    assert executed["content"] == "42\n"

    code, blocked = run("exec", "--language", "python", "import os\nos.system('id')")
    assert code == ExitCode.DENIED_OR_FAILED
    assert blocked["metadata"]["error_code"] == "content_blocked"  # type: ignore[index]

    code, scanned = run("scan", "Email me at dana@example.com")
    assert code in (ExitCode.SUCCESS, ExitCode.DENIED_OR_FAILED)
    assert "dana@example.com" not in json.dumps(scanned.get("redacted_content"))

    code, task = run("run-task", "Produce the quarterly report", "--script", str(script))
    assert code == ExitCode.SUCCESS
    assert task["task_status"] == "completed"
    assert task["synthesis"] == "Totals are 42."

    db_path = tmp_path / "state" / "bastion.sqlite"
    with sqlite3.connect(db_path) as conn:
        kinds = dict(
            conn.execute(
                "SELECT kind, COUNT(*) FROM audit_records WHERE principal_id = ? GROUP BY kind",
                ("dana",),
            ).fetchall()
        )
        statuses = sorted(
            row[0]
            for row in conn.execute(
                "SELECT status FROM tasks WHERE owner_id = ?", ("dana",)
            ).fetchall()
        )
        results = conn.execute("SELECT COUNT(*) FROM execution_results").fetchone()[0]
    assert kinds["authorization"] == 1
    assert kinds["sandbox_execution"] == 1
    assert statuses == ["completed", "completed", "completed"]
    assert results == 1

    log_files = sorted((tmp_path / "logs").glob("*/bastion.jsonl"))
    assert len(log_files) == 4
    for log_file in log_files:
        text = log_file.read_text(encoding="utf-8")
        assert "SMOKEFAKE" not in text
        for line in text.splitlines():
            assert isinstance(json.loads(line), dict)
