from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

import pytest

import gateway_mcp_server as sm


def _ts(minute: int) -> datetime:
    return datetime(2026, 1, 15, 12, minute, 0, tzinfo=timezone.utc)


class FakeBackend:
    """
    In-memory sandbox backend. Commands are scripted with a status sequence
    (the last status repeats once the sequence runs out) and fixed logs.
    Every call is recorded so tests can assert on remote traffic.
    """

    def __init__(self):
        self.calls: list[tuple[str, Optional[str]]] = []
        self.handles: list[sm.ProcessHandle] = []
        self.logs: dict[str, object] = {}
        self.start_error: Optional[Exception] = None
        self.status_error: Optional[Exception] = None
        self.list_error: Optional[Exception] = None
        self._scripts: dict[str, dict] = {}
        self._default = {
            "statuses": [sm.COMPLETED],
            "stdout": "",
            "stderr": "",
            "exit_code": 0,
        }
        self._pending: dict[str, list[str]] = {}
        self._exit: dict[str, Optional[int]] = {}
        self._seq = 0

    def script(
        self,
        command: str,
        statuses=(sm.COMPLETED,),
        stdout: str = "",
        stderr: str = "",
        exit_code: Optional[int] = 0,
    ):
        self._scripts[command] = {
            "statuses": list(statuses),
            "stdout": stdout,
            "stderr": stderr,
            "exit_code": exit_code,
        }

    def add_process(
        self,
        proc_id: str,
        command: str,
        status: str,
        start_minute: Optional[int] = None,
        stdout: str = "",
        stderr: str = "",
    ) -> sm.ProcessHandle:
        handle = sm.ProcessHandle(
            id=proc_id,
            command=command,
            status=status,
            start_time=_ts(start_minute) if start_minute is not None else None,
        )
        self.handles.append(handle)
        self.logs[proc_id] = sm.LogSnapshot(stdout=stdout, stderr=stderr)
        return handle

    def count(self, method: str) -> int:
        return sum(1 for name, _ in self.calls if name == method)

    def started_commands(self) -> list[str]:
        return [arg for name, arg in self.calls if name == "start_process"]

    async def start_process(self, command: str) -> sm.ProcessHandle:
        self.calls.append(("start_process", command))
        if self.start_error:
            raise self.start_error
        self._seq += 1
        handle = sm.ProcessHandle(
            id=f"proc-{self._seq}", command=command, status=sm.STARTING
        )
        scripted = self._scripts.get(command, self._default)
        self._pending[handle.id] = list(scripted["statuses"])
        self._exit[handle.id] = scripted["exit_code"]
        self.logs[handle.id] = sm.LogSnapshot(stdout=scripted["stdout"], stderr=scripted["stderr"])
        return handle

    async def get_status(self, handle: sm.ProcessHandle) -> str:
        self.calls.append(("get_status", handle.id))
        if self.status_error:
            raise self.status_error
        queue = self._pending.get(handle.id)
        if queue:
            status = queue.pop(0) if len(queue) > 1 else queue[0]
            handle.status = status
            if status in sm.TERMINAL_STATUSES:
                handle.exit_code = self._exit.get(handle.id)
        return handle.status

    async def get_logs(self, handle: sm.ProcessHandle) -> sm.LogSnapshot:
        self.calls.append(("get_logs", handle.id))
        entry = self.logs.get(handle.id, sm.LogSnapshot())
        if isinstance(entry, Exception):
            raise entry
        return entry

    async def list_processes(self) -> list[sm.ProcessHandle]:
        self.calls.append(("list_processes", None))
        if self.list_error:
            raise self.list_error
        return list(self.handles)


@pytest.fixture
def backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture
def configured() -> sm.Settings:
    return sm.Settings(
        sandbox="test-sb",
        mount_path="/data/x",
        r2_access_key_id="AKIA-test",
        r2_secret_access_key="s3cr3t-value",
        cf_account_id="acct-123",
    )


@pytest.fixture
def tools(monkeypatch: pytest.MonkeyPatch, backend: FakeBackend, configured):
    """Point the MCP tools at the fake backend and test settings."""
    monkeypatch.setattr(sm, "settings", configured)
    monkeypatch.setattr(sm, "get_backend", lambda sandbox="": backend)
    return sm
