import subprocess
import sys

import pytest

from vps_setup.executors import ExecutionStatus, Executor
from vps_setup.recap import parse_recap


def python(code: str) -> list[str]:
    return [sys.executable, "-c", code]


def test_run_captures_output() -> None:
    result = Executor().run(python("print('hi')"))
    assert result.stdout.strip() == "hi"
    assert result.returncode == 0


def test_run_check_raises() -> None:
    with pytest.raises(subprocess.CalledProcessError):
        Executor().run(python("import sys; sys.exit(3)"))
    assert Executor().run(python("import sys; sys.exit(3)"), check=False).returncode == 3


def test_stream_forwards_lines() -> None:
    seen: list[str] = []
    result = Executor().stream(
        python("import sys\nfor i in range(3): print(f'line {i}')\nprint('oops', file=sys.stderr)"),
        timeout=30,
        on_line=seen.append,
    )

    assert result.status is ExecutionStatus.COMPLETED
    assert result.completed
    assert result.returncode == 0
    assert seen == ["line 0", "line 1", "line 2"]
    assert result.stdout == "line 0\nline 1\nline 2\n"
    assert result.stderr.strip() == "oops"


def test_stream_survives_undecodable_bytes() -> None:
    code = (
        "import sys\n"
        "sys.stdout.buffer.write(b'ok: caf\\xe9\\n')\n"
        "sys.stdout.buffer.write(b'PLAY RECAP ***\\nh : ok=1 changed=0 unreachable=0 failed=0\\n')\n"
        "sys.stdout.flush()\n"
    )
    result = Executor().stream(python(code), timeout=30)

    assert result.status is ExecutionStatus.COMPLETED
    assert result.returncode == 0
    assert "caf\ufffd" in result.stdout
    assert parse_recap(result.stdout).success is True


def test_run_survives_undecodable_bytes() -> None:
    result = Executor().run(python("import sys; sys.stdout.buffer.write(b'ID=\\xff\\n')"))
    assert result.stdout == "ID=\ufffd\n"


def test_stream_keeps_only_the_tail() -> None:
    result = Executor(tail_lines=2).stream(python("for i in range(10): print(i)"), timeout=30)
    assert result.stdout == "8\n9\n"


def test_stream_reports_exit_code() -> None:
    result = Executor().stream(python("import sys; print('x'); sys.exit(2)"), timeout=30)
    assert result.status is ExecutionStatus.COMPLETED
    assert result.returncode == 2


def test_stream_passes_env() -> None:
    result = Executor().stream(python("import os; print(os.environ['ANSIBLE_NOCOLOR'])"), env={"ANSIBLE_NOCOLOR": "1"}, timeout=30)
    assert result.stdout.strip() == "1"


def test_stream_timeout_kills_and_keeps_partial_output() -> None:
    code = "import sys, time\nprint('started', flush=True)\ntime.sleep(30)\nprint('never')"
    result = Executor().stream(python(code), timeout=1)

    assert result.status is ExecutionStatus.TIMED_OUT
    assert "started" in result.stdout
    assert "never" not in result.stdout
    assert "timed out" in result.error


def test_stream_spawn_failure(tmp_path) -> None:
    result = Executor().stream([str(tmp_path / "does-not-exist")], timeout=5)
    assert result.status is ExecutionStatus.SPAWN_FAILED
    assert result.returncode is None
    assert result.error
