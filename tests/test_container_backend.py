"""ContainerBackend against a faked `container exec`, no container needed."""

from __future__ import annotations

import asyncio
import base64
import uuid

import pytest

import gateway_mcp_server as sm


def _b64(s: str) -> str:
    return base64.b64encode(s.encode()).decode()


class FakeExec:
    """Records `container exec` scripts and replays canned results."""

    def __init__(self, *results: tuple[int, str, str]):
        self.results = list(results)
        self.cmds: list[list[str]] = []

    async def __call__(self, cmd, timeout=30.0, input_data=None):
        self.cmds.append(cmd)
        if not self.results:
            raise AssertionError(f"Unexpected command: {cmd}")
        return self.results.pop(0)

    @property
    def scripts(self) -> list[str]:
        return [cmd[-1] for cmd in self.cmds]


@pytest.fixture
def fake_exec(monkeypatch: pytest.MonkeyPatch):
    def install(*results):
        fake = FakeExec(*results)
        monkeypatch.setattr(sm, "_run", fake)
        return fake

    return install


def test_start_process_targets_named_container(fake_exec):
    fake = fake_exec((0, "4242\n", ""))
    handle = asyncio.run(sm.ContainerBackend("gw-box").start_process("clawdbot --version"))

    assert fake.cmds[0][:5] == ["container", "exec", "gw-box", "sh", "-c"]
    script = fake.scripts[0]
    assert handle.id.startswith("proc-")
    assert f"{sm.PROC_ROOT}/{handle.id}" in script
    assert "nohup sh -c" in script
    assert handle.command == "clawdbot --version"
    assert handle.status == sm.STARTING
    assert handle.start_time is not None


def test_start_process_quotes_command(fake_exec):
    fake = fake_exec((0, "1\n", ""))
    asyncio.run(sm.ContainerBackend().start_process("echo 'hi there'"))
    # the command is stored verbatim in the cmd file, shell-quoted
    assert sm._sq("echo 'hi there'") in fake.scripts[0]


def test_start_process_trailing_comment_keeps_subshell_closed(fake_exec):
    fake = fake_exec((0, "1\n", ""))
    asyncio.run(sm.ContainerBackend().start_process("echo hello # say hi"))
    # the comment ends at the newline, so `)` and the redirections survive
    assert "echo hello # say hi\n) > " in fake.scripts[0]


def test_start_process_failure_raises_backend_error(fake_exec):
    fake_exec((1, "", "no such container: clawdbot\n"))
    with pytest.raises(sm.BackendError, match="no such container"):
        asyncio.run(sm.ContainerBackend().start_process("true"))


def test_get_status_refreshes_handle(fake_exec):
    line = "\t".join(
        [
            "proc-1",
            "99",
            "0",
            "2026-01-15T12:00:00Z",
            "2026-01-15T12:00:02Z",
            "0",
            _b64("true"),
        ]
    )
    fake_exec((0, line + "\n", ""))
    handle = sm.ProcessHandle(id="proc-1", command="true")
    status = asyncio.run(sm.ContainerBackend().get_status(handle))
    assert status == sm.COMPLETED
    assert handle.status == sm.COMPLETED
    assert handle.exit_code == 0
    assert handle.end_time is not None


def test_get_status_missing_process(fake_exec):
    fake_exec((0, "", ""))
    handle = sm.ProcessHandle(id="proc-gone", command="true")
    with pytest.raises(sm.BackendError, match="proc-gone"):
        asyncio.run(sm.ContainerBackend().get_status(handle))


def test_get_logs_decodes_streams(fake_exec):
    out, err = _b64("out line\n"), _b64("err line")
    fake = fake_exec((0, f"{out}\n{err}\n", ""))
    handle = sm.ProcessHandle(id="proc-1", command="x")
    logs = asyncio.run(sm.ContainerBackend().get_logs(handle))
    assert logs.stdout == "out line\n"
    assert logs.stderr == "err line"
    assert f"{sm.PROC_ROOT}/proc-1" in fake.scripts[0]


def test_get_logs_empty_files(fake_exec):
    fake_exec((0, "\n\n", ""))
    logs = asyncio.run(sm.ContainerBackend().get_logs(sm.ProcessHandle(id="p", command="x")))
    assert logs == sm.LogSnapshot(stdout="", stderr="")


def test_list_processes_parses_every_line(fake_exec):
    lines = [
        "\t".join(["proc-a", "10", "1", "2026-01-15T12:00:00Z", "", "", _b64("clawdbot gateway")]),
        "garbage",
        "\t".join(["proc-b", "11", "0", "2026-01-15T12:01:00Z", "", "3", _b64("false")]),
    ]
    fake_exec((0, "\n".join(lines) + "\n", ""))
    handles = asyncio.run(sm.ContainerBackend().list_processes())
    assert [(h.id, h.status) for h in handles] == [
        ("proc-a", sm.RUNNING),
        ("proc-b", sm.FAILED),
    ]
    assert handles[0].command == "clawdbot gateway"


def test_mount_check_end_to_end(fake_exec, monkeypatch):
    monkeypatch.setattr(sm.uuid, "uuid4", lambda: uuid.UUID(int=0))
    mount_line = _b64("tigrisfs on /data/moltbot type fuse.tigrisfs")
    fake_exec(
        (0, "7\n", ""),
        (0, "\t".join(["proc-00000000", "7", "0", "", "", "0", _b64("mount")]) + "\n", ""),
        (0, f"{mount_line}\n\n", ""),
    )
    status = asyncio.run(sm.MountStatusDetector(sm.ContainerBackend()).detect())
    assert status.mounted is True


def test_exec_timeout_becomes_command_failed(monkeypatch):
    async def slow_run(cmd, timeout=30.0, input_data=None):
        raise asyncio.TimeoutError()

    monkeypatch.setattr(sm, "_run", slow_run)
    status = asyncio.run(sm.MountStatusDetector(sm.ContainerBackend()).detect())
    assert status.mounted is False
    assert status.error == sm.COMMAND_FAILED
    assert "Timed out" in status.detail


def test_get_backend_builds_fresh_backend_per_call():
    first = sm.get_backend("a")
    assert first.sandbox_name == "a"
    assert sm.get_backend("a") is not first
    assert sm.get_backend().sandbox_name == sm.settings.sandbox
