#!/usr/bin/env python3
"""MCP server supervising the gateway process inside a container sandbox."""

import asyncio
import base64
import json
import logging
import os
import sys
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Mapping, Optional, Protocol

from mcp.server.fastmcp import FastMCP

# ── Logging (stderr only, stdout is MCP protocol) ──────────────────────

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(message)s",
    stream=sys.stderr,
)
log = logging.getLogger("gateway-mcp")

# ── Config ───────────────────────────────────────────────────────────────

DEFAULT_SANDBOX = "clawdbot"
EXEC_TIMEOUT = 15.0
MAX_OUTPUT = 50_000

# FUSE-backed object storage mount inside the container
MOUNT_PATH = "/data/moltbot"
MOUNT_FS_TYPE = "tigrisfs"

GATEWAY_PORT = 18789
GATEWAY_CONFIG_PATH = "/root/.clawdbot/clawdbot.json"
GATEWAY_VERSION_CMD = "clawdbot --version"

# Substrings identifying the long-running gateway launch command
GATEWAY_SIGNATURES = ("start-moltbot.sh", "clawdbot gateway")

# Bookkeeping for remote processes started by this server
PROC_ROOT = "/tmp/_gw_procs"
_TS_FORMAT = "%Y-%m-%dT%H:%M:%SZ"

STORAGE_CREDENTIALS = ("R2_ACCESS_KEY_ID", "R2_SECRET_ACCESS_KEY", "CF_ACCOUNT_ID")

# Process statuses reported by the backend
STARTING = "starting"
RUNNING = "running"
COMPLETED = "completed"
FAILED = "failed"
ACTIVE_STATUSES = frozenset({STARTING, RUNNING})
TERMINAL_STATUSES = frozenset({COMPLETED, FAILED})

STATUS_RANK = {RUNNING: 0, STARTING: 1, COMPLETED: 2, FAILED: 3}
UNKNOWN_RANK = 99

# Error codes carried on structured results
CONFIGURATION_MISSING = "configuration_missing"
MOUNT_INACTIVE = "mount_inactive"
COMMAND_FAILED = "command_failed"
TIMEOUT = "timeout"
PARSE_FAILURE = "parse_failure"

MOUNTED = "MOUNTED"
NOT_MOUNTED = "NOT_MOUNTED"


@dataclass
class Settings:
    """Runtime configuration read from the server's environment."""

    sandbox: str = DEFAULT_SANDBOX
    mount_path: str = MOUNT_PATH
    gateway_port: int = GATEWAY_PORT
    r2_access_key_id: str = field(default="", repr=False)
    r2_secret_access_key: str = field(default="", repr=False)
    cf_account_id: str = ""
    anthropic_api_key: str = field(default="", repr=False)
    openai_api_key: str = field(default="", repr=False)
    gateway_token: str = field(default="", repr=False)
    dev_mode: Optional[str] = None
    debug_routes: Optional[str] = None
    bind_mode: Optional[str] = None
    cf_access_team_domain: Optional[str] = None
    cf_access_aud: str = field(default="", repr=False)

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        env = os.environ if environ is None else environ
        port = env.get("GATEWAY_PORT", "")
        return cls(
            sandbox=env.get("GATEWAY_SANDBOX") or DEFAULT_SANDBOX,
            mount_path=env.get("GATEWAY_MOUNT_PATH") or MOUNT_PATH,
            gateway_port=int(port) if port.isdigit() else GATEWAY_PORT,
            r2_access_key_id=env.get("R2_ACCESS_KEY_ID", ""),
            r2_secret_access_key=env.get("R2_SECRET_ACCESS_KEY", ""),
            cf_account_id=env.get("CF_ACCOUNT_ID", ""),
            anthropic_api_key=env.get("ANTHROPIC_API_KEY", ""),
            openai_api_key=env.get("OPENAI_API_KEY", ""),
            gateway_token=env.get("CLAWDBOT_GATEWAY_TOKEN", ""),
            dev_mode=env.get("DEV_MODE"),
            debug_routes=env.get("DEBUG_ROUTES"),
            bind_mode=env.get("CLAWDBOT_BIND_MODE"),
            cf_access_team_domain=env.get("CF_ACCESS_TEAM_DOMAIN"),
            cf_access_aud=env.get("CF_ACCESS_AUD", ""),
        )

    def missing_storage_credentials(self) -> list[str]:
        values = (self.r2_access_key_id, self.r2_secret_access_key, self.cf_account_id)
        return [name for name, value in zip(STORAGE_CREDENTIALS, values) if not value]

    def sanitized(self) -> dict:
        """Presence flags only; secret values never leave the process."""
        return {
            "sandbox": self.sandbox,
            "mount_path": self.mount_path,
            "gateway_port": self.gateway_port,
            "has_anthropic_key": bool(self.anthropic_api_key),
            "has_openai_key": bool(self.openai_api_key),
            "has_gateway_token": bool(self.gateway_token),
            "has_r2_access_key": bool(self.r2_access_key_id),
            "has_r2_secret_key": bool(self.r2_secret_access_key),
            "has_cf_account_id": bool(self.cf_account_id),
            "dev_mode": self.dev_mode,
            "debug_routes": self.debug_routes,
            "bind_mode": self.bind_mode,
            "cf_access_team_domain": self.cf_access_team_domain,
            "has_cf_access_aud": bool(self.cf_access_aud),
        }


# ── Helpers ──────────────────────────────────────────────────────────────


def _humanize_bytes(n: int) -> str:
    v = float(n)
    for unit in ("B", "KB", "MB"):
        if v < 1024:
            return f"{v:.0f}{unit}" if unit == "B" else f"{v:.1f}{unit}"
        v /= 1024
    return f"{v:.1f}GB"


async def _run(
    cmd: list[str], timeout: float = 30.0, input_data: Optional[bytes] = None
) -> tuple[int, str, str]:
    proc = await asyncio.create_subprocess_exec(
        *cmd,
        stdin=asyncio.subprocess.PIPE if input_data else None,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    stdout, stderr = await asyncio.wait_for(
        proc.communicate(input=input_data), timeout=timeout
    )
    return (
        proc.returncode or 0,
        stdout.decode(errors="replace"),
        stderr.decode(errors="replace"),
    )


def _truncate(text: str, limit: int = MAX_OUTPUT) -> str:
    if len(text) <= limit:
        return text
    total = _humanize_bytes(len(text.encode()))
    return (
        text[:limit]
        + f"\n[truncated, {total} total, showing first {_humanize_bytes(limit)}]"
    )


def _sq(s: str) -> str:
    return "'" + s.replace("'", "'\\''") + "'"


def _parse_timestamp(value: str) -> Optional[datetime]:
    try:
        return datetime.strptime(value.strip(), _TS_FORMAT).replace(
            tzinfo=timezone.utc
        )
    except ValueError:
        return None


def _iso(ts: Optional[datetime]) -> Optional[str]:
    return ts.isoformat() if ts else None


def _error_text(exc: BaseException) -> str:
    if isinstance(exc, asyncio.TimeoutError):
        return "Timed out waiting for the sandbox backend"
    return str(exc) or type(exc).__name__


class BackendError(RuntimeError):
    pass


# ── Remote process handle ────────────────────────────────────────────────


@dataclass
class ProcessHandle:
    id: str
    command: str
    status: str = STARTING
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    exit_code: Optional[int] = None

    def to_record(self) -> dict:
        return {
            "id": self.id,
            "command": self.command,
            "status": self.status,
            "start_time": _iso(self.start_time),
            "end_time": _iso(self.end_time),
            "exit_code": self.exit_code,
        }


@dataclass
class LogSnapshot:
    stdout: str = ""
    stderr: str = ""


class SandboxBackend(Protocol):
    async def start_process(self, command: str) -> ProcessHandle: ...

    async def get_status(self, handle: ProcessHandle) -> str: ...

    async def get_logs(self, handle: ProcessHandle) -> LogSnapshot: ...

    async def list_processes(self) -> list[ProcessHandle]: ...


# ── Container backend ────────────────────────────────────────────────────


def _derive_status(pid: str, alive: bool, exit_code: Optional[int]) -> str:
    if exit_code is not None:
        return COMPLETED if exit_code == 0 else FAILED
    if alive:
        return RUNNING
    if not pid:
        return STARTING
    # pid recorded but gone without writing an exit file: killed
    return FAILED


def _describe_script(pattern: str) -> str:
    """Emit one tab-separated line per process directory matching `pattern`."""
    return (
        f"for d in {pattern}; do "
        '[ -d "$d" ] || continue; '
        'pid=$(cat "$d/pid" 2>/dev/null); alive=0; '
        'if [ -n "$pid" ] && kill -0 "$pid" 2>/dev/null; then alive=1; fi; '
        "printf '%s\\t%s\\t%s\\t%s\\t%s\\t%s\\t%s\\n' "
        '"$(basename "$d")" "$pid" "$alive" '
        '"$(cat "$d/start" 2>/dev/null)" "$(cat "$d/end" 2>/dev/null)" '
        '"$(cat "$d/exit" 2>/dev/null)" '
        "\"$(base64 \"$d/cmd\" 2>/dev/null | tr -d '\\n')\"; "
        "done"
    )


def _parse_describe_line(line: str) -> Optional[ProcessHandle]:
    parts = line.rstrip("\r").split("\t")
    if len(parts) != 7 or not parts[0]:
        return None
    proc_id, pid, alive, start, end, exit_raw, cmd_b64 = parts
    exit_raw = exit_raw.strip()
    try:
        exit_code: Optional[int] = int(exit_raw) if exit_raw else None
    except ValueError:
        exit_code = None
    try:
        command = base64.b64decode(cmd_b64).decode(errors="replace")
    except ValueError:
        command = ""
    return ProcessHandle(
        id=proc_id,
        command=command,
        status=_derive_status(pid.strip(), alive.strip() == "1", exit_code),
        start_time=_parse_timestamp(start),
        end_time=_parse_timestamp(end),
        exit_code=exit_code,
    )


def _decode_log_stream(encoded: str) -> str:
    try:
        return base64.b64decode(encoded.strip()).decode(errors="replace")
    except ValueError:
        return ""


class ContainerBackend:
    """
    Runs detached processes inside a named container via `container exec`.
    Each process gets a directory under PROC_ROOT holding its command,
    pid, timestamps, exit code and captured output, so status and logs
    can be re-read at any time without a live connection.
    """

    def __init__(self, sandbox_name: str = DEFAULT_SANDBOX, timeout: float = EXEC_TIMEOUT):
        self.sandbox_name = sandbox_name
        self.timeout = timeout

    def _proc_dir(self, proc_id: str) -> str:
        return f"{PROC_ROOT}/{proc_id}"

    async def _exec(self, script: str) -> str:
        code, stdout, stderr = await _run(
            ["container", "exec", self.sandbox_name, "sh", "-c", script],
            timeout=self.timeout,
        )
        if code != 0:
            raise BackendError(stderr.strip() or f"container exec exited with {code}")
        return stdout

    async def start_process(self, command: str) -> ProcessHandle:
        proc_id = f"proc-{uuid.uuid4().hex[:8]}"
        d = self._proc_dir(proc_id)
        runner = (
            f"(\n{command}\n) > {_sq(d + '/stdout')} 2> {_sq(d + '/stderr')}; "
            f"echo $? > {_sq(d + '/exit')}; "
            f"date -u +{_TS_FORMAT} > {_sq(d + '/end')}"
        )
        script = (
            f"{{ mkdir -p {_sq(d)} && printf '%s' {_sq(command)} > {_sq(d + '/cmd')} "
            f"&& date -u +{_TS_FORMAT} > {_sq(d + '/start')}; }} || exit 1; "
            f"nohup sh -c {_sq(runner)} > /dev/null 2>&1 & "
            f"pid=$!; echo $pid > {_sq(d + '/pid')}; echo $pid"
        )
        stdout = await self._exec(script)
        log.info(f"Started {proc_id} (pid {stdout.strip()}) in {self.sandbox_name}: {command[:100]}")
        return ProcessHandle(
            id=proc_id,
            command=command,
            status=STARTING,
            start_time=datetime.now(timezone.utc).replace(microsecond=0),
        )

    async def get_status(self, handle: ProcessHandle) -> str:
        stdout = await self._exec(_describe_script(_sq(self._proc_dir(handle.id))))
        for line in stdout.splitlines():
            fresh = _parse_describe_line(line)
            if fresh and fresh.id == handle.id:
                handle.status = fresh.status
                handle.end_time = fresh.end_time
                handle.exit_code = fresh.exit_code
                if fresh.start_time:
                    handle.start_time = fresh.start_time
                return handle.status
        raise BackendError(f"Process {handle.id} not found")

    async def get_logs(self, handle: ProcessHandle) -> LogSnapshot:
        d = self._proc_dir(handle.id)
        script = (
            f"[ -d {_sq(d)} ] || {{ echo 'Process {handle.id} not found' >&2; exit 1; }}; "
            f"base64 {_sq(d + '/stdout')} 2>/dev/null | tr -d '\\n'; echo; "
            f"base64 {_sq(d + '/stderr')} 2>/dev/null | tr -d '\\n'; echo"
        )
        lines = (await self._exec(script)).split("\n")
        stdout = _decode_log_stream(lines[0]) if lines else ""
        stderr = _decode_log_stream(lines[1]) if len(lines) > 1 else ""
        return LogSnapshot(stdout=_truncate(stdout), stderr=_truncate(stderr))

    async def list_processes(self) -> list[ProcessHandle]:
        stdout = await self._exec(_describe_script(f"{PROC_ROOT}/*"))
        handles = []
        for line in stdout.splitlines():
            handle = _parse_describe_line(line)
            if handle:
                handles.append(handle)
        return handles


# ── Bounded poller ───────────────────────────────────────────────────────


@dataclass(frozen=True)
class PollProfile:
    """Sampling interval in seconds plus an attempt and/or wall-clock bound."""

    interval: float
    max_attempts: Optional[int] = None
    max_duration: Optional[float] = None

    def __post_init__(self):
        if self.max_attempts is None and self.max_duration is None:
            raise ValueError("PollProfile needs max_attempts or max_duration")
        if self.interval < 0:
            raise ValueError(f"Invalid poll interval: {self.interval!r}")


# Mount checks run on every status-page load and must stay around 2s
MOUNT_POLL = PollProfile(interval=0.2, max_attempts=10)
SYNC_POLL = PollProfile(interval=0.2, max_duration=5.0)
QUICK_POLL = PollProfile(interval=0.2, max_attempts=10)
CLI_POLL = PollProfile(interval=0.5, max_attempts=30)


@dataclass
class PollResult:
    status: str
    attempts: int
    timed_out: bool


async def poll_process(
    backend: SandboxBackend, handle: ProcessHandle, profile: PollProfile
) -> PollResult:
    """
    Re-read a process's status until it leaves starting/running or the
    profile's bound runs out. Exhaustion is reported via `timed_out`, not
    raised; the remote process is left alone either way. Backend errors
    propagate to the caller.
    """
    t0 = time.monotonic()
    attempts = 0
    status = await backend.get_status(handle)
    while status in ACTIVE_STATUSES:
        if profile.max_attempts is not None and attempts >= profile.max_attempts:
            break
        if (
            profile.max_duration is not None
            and time.monotonic() - t0 >= profile.max_duration
        ):
            break
        await asyncio.sleep(profile.interval)
        attempts += 1
        status = await backend.get_status(handle)
    return PollResult(
        status=status, attempts=attempts, timed_out=status in ACTIVE_STATUSES
    )


# ── Output interpretation ────────────────────────────────────────────────


@dataclass
class MatchVerdict:
    matched: bool
    raw: str


@dataclass
class ParseVerdict:
    parsed: Optional[object]
    raw: str
    error: Optional[str] = None


def match_marker(stdout: str, marker: str) -> MatchVerdict:
    """Exact, case-sensitive substring test; no whitespace normalization."""
    stdout = stdout or ""
    return MatchVerdict(matched=bool(marker) and marker in stdout, raw=stdout)


def parse_structured(stdout: str) -> ParseVerdict:
    stdout = stdout or ""
    try:
        parsed = json.loads(stdout)
    except (ValueError, RecursionError) as e:
        return ParseVerdict(parsed=None, raw=stdout, error=f"{PARSE_FAILURE}: {e}")
    if parsed is None:
        return ParseVerdict(parsed=None, raw=stdout, error="document is JSON null")
    return ParseVerdict(parsed=parsed, raw=stdout)


def extract_text(stdout: str, stderr: str = "") -> str:
    for stream in (stdout, stderr):
        if stream and stream.strip():
            return stream.strip()
    return ""


def parse_http_response(raw: str) -> dict:
    """Split a `curl -i` capture into status, content type and body."""
    raw = raw or ""
    sep = "\r\n\r\n" if "\r\n\r\n" in raw else "\n\n"
    head, _, body = raw.partition(sep)
    # curl -i prints interim 100 Continue blocks before the real response
    while head.startswith("HTTP/") and " 100 " in head.split("\n", 1)[0]:
        head, _, body = body.partition(sep)

    lines = head.splitlines()
    status_code = None
    if lines and lines[0].startswith("HTTP/"):
        fields = lines[0].split()
        if len(fields) > 1 and fields[1].isdigit():
            status_code = int(fields[1])

    content_type = ""
    for line in lines[1:]:
        name, _, value = line.partition(":")
        if name.strip().lower() == "content-type":
            content_type = value.strip()
            break

    result: dict = {"status": status_code, "content_type": content_type}
    if "application/json" in content_type:
        verdict = parse_structured(body)
        result["body"] = verdict.parsed if verdict.parsed is not None else body
        if verdict.error:
            result["parse_error"] = verdict.error
    else:
        result["body"] = body
    return result


# ── Mount status detection ───────────────────────────────────────────────


@dataclass
class MountStatus:
    mounted: bool
    state: str
    detail: str
    error: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "mounted": self.mounted,
            "state": self.state,
            "error": self.error,
            "detail": self.detail,
        }


class MountStatusDetector:
    """
    Checks whether the FUSE storage mount is active inside the container.
    Computed fresh on every call: a previous MOUNTED verdict is never reused.
    """

    def __init__(
        self,
        backend: SandboxBackend,
        mount_path: str = MOUNT_PATH,
        fs_type: str = MOUNT_FS_TYPE,
        profile: PollProfile = MOUNT_POLL,
    ):
        self.backend = backend
        self.mount_path = mount_path
        self.fs_type = fs_type
        self.profile = profile

    @property
    def command(self) -> str:
        return f'mount | grep "{self.fs_type} on {self.mount_path}"'

    async def detect(self) -> MountStatus:
        try:
            handle = await self.backend.start_process(self.command)
            poll = await poll_process(self.backend, handle, self.profile)
            logs = await self.backend.get_logs(handle)
        except Exception as e:
            detail = _error_text(e)
            log.warning(f"Mount check failed: {detail}")
            return MountStatus(
                mounted=False, state=NOT_MOUNTED, detail=detail, error=COMMAND_FAILED
            )

        verdict = match_marker(logs.stdout, self.fs_type)
        log.info(f"Mount check: matched={verdict.matched} stdout={verdict.raw[:100]!r}")
        if verdict.matched:
            return MountStatus(
                mounted=True,
                state=MOUNTED,
                detail=f"{self.fs_type} mount active at {self.mount_path}",
            )
        if poll.timed_out:
            return MountStatus(
                mounted=False,
                state=NOT_MOUNTED,
                detail=f"Mount check still {poll.status} after {poll.attempts} checks",
                error=TIMEOUT,
            )
        return MountStatus(
            mounted=False,
            state=NOT_MOUNTED,
            detail=f"No {self.fs_type} mount at {self.mount_path}",
            error=MOUNT_INACTIVE,
        )


def _credentials_missing(settings: Settings) -> Optional[MountStatus]:
    missing = settings.missing_storage_credentials()
    if not missing:
        return None
    return MountStatus(
        mounted=False,
        state=NOT_MOUNTED,
        detail=f"Storage not configured (missing {', '.join(missing)})",
        error=CONFIGURATION_MISSING,
    )


async def check_storage_mount(
    backend: SandboxBackend, settings: Settings
) -> MountStatus:
    """Credential gate plus a live mount check. Missing credentials never reach the backend."""
    not_configured = _credentials_missing(settings)
    if not_configured:
        log.info(not_configured.detail)
        return not_configured

    status = await MountStatusDetector(backend, settings.mount_path).detect()
    if status.mounted:
        log.info(f"Storage mount active at {settings.mount_path}")
    else:
        log.info("Storage mount not active yet, container may still be starting")
    return status


@dataclass
class SyncResult:
    success: bool
    last_sync: Optional[str] = None
    error: Optional[str] = None
    detail: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "last_sync": self.last_sync,
            "error": self.error,
            "detail": self.detail,
        }


async def check_storage_sync(backend: SandboxBackend, settings: Settings) -> SyncResult:
    """Data is written straight through the FUSE mount, so sync state is mount state."""
    if settings.missing_storage_credentials():
        return SyncResult(success=False, error="Storage is not configured")

    detector = MountStatusDetector(backend, settings.mount_path, profile=SYNC_POLL)
    status = await detector.detect()
    if status.mounted:
        return SyncResult(
            success=True,
            last_sync="live (FUSE mount active)",
            detail="Data is written directly to storage via FUSE mount",
        )
    if status.error == COMMAND_FAILED:
        return SyncResult(
            success=False, error="Failed to check mount status", detail=status.detail
        )
    return SyncResult(
        success=False,
        error="Storage FUSE mount not active",
        detail="The container may need to be restarted to mount storage",
    )


# ── Process registry ─────────────────────────────────────────────────────


def _sort_key_rank(record: dict) -> int:
    return STATUS_RANK.get(record.get("status"), UNKNOWN_RANK)


def _sort_key_started(record: dict) -> str:
    return record.get("start_time") or ""


def sort_process_records(records: list[dict]) -> list[dict]:
    """Status rank ascending, then start time descending; stable on ties."""
    ordered = sorted(records, key=_sort_key_started, reverse=True)
    ordered.sort(key=_sort_key_rank)
    return ordered


@dataclass
class RegistryListing:
    success: bool
    processes: list[dict] = field(default_factory=list)
    error: Optional[str] = None
    detail: Optional[str] = None

    @property
    def count(self) -> int:
        return len(self.processes)

    def to_dict(self) -> dict:
        if not self.success:
            return {"success": False, "error": self.error, "detail": self.detail}
        return {"success": True, "count": self.count, "processes": self.processes}


class ProcessRegistryReader:
    def __init__(self, backend: SandboxBackend):
        self.backend = backend

    async def fetch_handles(self) -> list[ProcessHandle]:
        return list(await self.backend.list_processes())

    async def _enrich(self, handle: ProcessHandle) -> dict:
        record = handle.to_record()
        try:
            logs = await self.backend.get_logs(handle)
        except Exception as e:
            log.warning(f"Failed to retrieve logs for {handle.id}: {_error_text(e)}")
            record["logs_error"] = "Failed to retrieve logs"
            return record
        record["stdout"] = logs.stdout or ""
        record["stderr"] = logs.stderr or ""
        return record

    async def list(self, include_logs: bool = False) -> RegistryListing:
        try:
            handles = await self.fetch_handles()
        except Exception as e:
            detail = _error_text(e)
            log.warning(f"Failed to list processes: {detail}")
            return RegistryListing(success=False, error=COMMAND_FAILED, detail=detail)

        if include_logs:
            records = await asyncio.gather(*(self._enrich(h) for h in handles))
        else:
            records = [h.to_record() for h in handles]
        return RegistryListing(success=True, processes=sort_process_records(list(records)))


# ── Named process lookup ─────────────────────────────────────────────────


@dataclass
class LocateResult:
    handle: Optional[ProcessHandle] = None
    error: Optional[str] = None
    detail: Optional[str] = None

    @property
    def found(self) -> bool:
        return self.handle is not None


def _matches_signature(command: str, signatures) -> bool:
    return any(sig and sig in command for sig in signatures)


class NamedProcessLocator:
    def __init__(
        self,
        registry: ProcessRegistryReader,
        signatures: tuple[str, ...] = GATEWAY_SIGNATURES,
    ):
        self.registry = registry
        self.signatures = signatures

    async def find(self, signatures: Optional[tuple[str, ...]] = None) -> LocateResult:
        """First live (starting/running) process whose command carries a signature."""
        wanted = self.signatures if signatures is None else signatures
        try:
            handles = await self.registry.fetch_handles()
        except Exception as e:
            return LocateResult(error=COMMAND_FAILED, detail=_error_text(e))
        for handle in handles:
            if handle.status in ACTIVE_STATUSES and _matches_signature(
                handle.command, wanted
            ):
                return LocateResult(handle=handle)
        return LocateResult()

    async def find_by_id(self, process_id: str) -> LocateResult:
        try:
            handles = await self.registry.fetch_handles()
        except Exception as e:
            return LocateResult(error=COMMAND_FAILED, detail=_error_text(e))
        for handle in handles:
            if handle.id == process_id:
                return LocateResult(handle=handle)
        return LocateResult()


# ── Remote command helpers ───────────────────────────────────────────────


async def run_command(
    backend: SandboxBackend, command: str, profile: PollProfile
) -> tuple[ProcessHandle, PollResult, LogSnapshot]:
    """Start, poll, and capture logs (partial output if the poll timed out)."""
    handle = await backend.start_process(command)
    poll = await poll_process(backend, handle, profile)
    logs = await backend.get_logs(handle)
    return handle, poll, logs


# ── MCP Server ───────────────────────────────────────────────────────────

mcp_server = FastMCP(
    "gateway",
    instructions=(
        "Inspect the gateway container sandbox. "
        "Use mount_status or storage_sync_status to check the FUSE storage mount, "
        "processes to list remote processes (logs=true to include output), "
        "process_logs to read the gateway's output, cli to run a one-off command, "
        "version, container_config and gateway_api to probe the gateway itself, "
        "and env to see which configuration values are present."
    ),
)

settings = Settings.from_env()


def get_backend(sandbox: str = "") -> SandboxBackend:
    # ContainerBackend holds no state beyond the name, so one per call is fine.
    return ContainerBackend(sandbox or settings.sandbox)


def _dump(payload: dict) -> str:
    return json.dumps(payload, indent=2, default=str)


# ── Storage tools ────────────────────────────────────────────────────────


@mcp_server.tool()
async def mount_status(sandbox: str = "") -> str:
    """
    Check whether the FUSE storage mount is active inside the container.

    Args:
        sandbox: Container name (default from GATEWAY_SANDBOX)

    Returns:
        JSON with mounted, state, error and detail.
    """
    status = await check_storage_mount(get_backend(sandbox), settings)
    return _dump(status.to_dict())


@mcp_server.tool()
async def storage_sync_status(sandbox: str = "") -> str:
    """
    Report storage persistence state. With the FUSE mount data is written
    through directly, so this succeeds exactly when the mount is live.
    """
    result = await check_storage_sync(get_backend(sandbox), settings)
    return _dump(result.to_dict())


# ── Process tools ────────────────────────────────────────────────────────


@mcp_server.tool()
async def processes(logs: bool = False, sandbox: str = "") -> str:
    """
    List processes started in the container, running first, newest first.

    Args:
        logs: Include each process's stdout/stderr.
        sandbox: Container name (default from GATEWAY_SANDBOX)
    """
    listing = await ProcessRegistryReader(get_backend(sandbox)).list(include_logs=logs)
    return _dump(listing.to_dict())


@mcp_server.tool()
async def process_logs(process_id: str = "", sandbox: str = "") -> str:
    """
    Read a process's output. Without process_id, reads the gateway process.

    Args:
        process_id: Process ID from processes (optional)
        sandbox: Container name (default from GATEWAY_SANDBOX)
    """
    backend = get_backend(sandbox)
    locator = NamedProcessLocator(ProcessRegistryReader(backend))
    if process_id:
        found = await locator.find_by_id(process_id)
        missing = {"status": "not_found", "message": f"Process {process_id} not found"}
    else:
        found = await locator.find()
        missing = {"status": "no_process", "message": "No gateway process is currently running"}

    if found.error:
        return _dump(
            {
                "status": "error",
                "message": f"Failed to get logs: {found.detail}",
                "stdout": "",
                "stderr": "",
            }
        )
    if not found.found:
        return _dump({**missing, "stdout": "", "stderr": ""})

    handle = found.handle
    try:
        snapshot = await backend.get_logs(handle)
    except Exception as e:
        return _dump(
            {
                "status": "error",
                "message": f"Failed to get logs: {_error_text(e)}",
                "stdout": "",
                "stderr": "",
            }
        )
    return _dump(
        {
            "status": "ok",
            "process_id": handle.id,
            "process_status": handle.status,
            "stdout": snapshot.stdout,
            "stderr": snapshot.stderr,
        }
    )


@mcp_server.tool()
async def cli(command: str = "clawdbot --help", sandbox: str = "") -> str:
    """
    Run a command in the container and wait up to ~15s for it to finish.

    Args:
        command: Shell command to run (default "clawdbot --help")
        sandbox: Container name (default from GATEWAY_SANDBOX)

    Returns:
        JSON with status, exit code, poll attempts, stdout and stderr.
    """
    try:
        handle, poll, snapshot = await run_command(get_backend(sandbox), command, CLI_POLL)
    except Exception as e:
        return _dump({"success": False, "error": COMMAND_FAILED, "detail": _error_text(e), "command": command})
    return _dump(
        {
            "success": True,
            "command": command,
            "status": poll.status,
            "exit_code": handle.exit_code,
            "attempts": poll.attempts,
            "timed_out": poll.timed_out,
            "stdout": snapshot.stdout,
            "stderr": snapshot.stderr,
        }
    )


# ── Gateway probes ───────────────────────────────────────────────────────


@mcp_server.tool()
async def version(sandbox: str = "") -> str:
    """Report the gateway CLI and node versions installed in the container."""
    backend = get_backend(sandbox)
    try:
        _, _, gw_logs = await run_command(backend, GATEWAY_VERSION_CMD, QUICK_POLL)
        _, _, node_logs = await run_command(backend, "node --version", QUICK_POLL)
    except Exception as e:
        return _dump(
            {
                "success": False,
                "error": COMMAND_FAILED,
                "detail": f"Failed to get version info: {_error_text(e)}",
            }
        )
    return _dump(
        {
            "gateway_version": extract_text(gw_logs.stdout, gw_logs.stderr),
            "node_version": extract_text(node_logs.stdout),
        }
    )


@mcp_server.tool()
async def container_config(sandbox: str = "") -> str:
    """Read the gateway's JSON config from inside the container."""
    try:
        handle, poll, snapshot = await run_command(
            get_backend(sandbox), f"cat {_sq(GATEWAY_CONFIG_PATH)}", QUICK_POLL
        )
    except Exception as e:
        return _dump({"success": False, "error": COMMAND_FAILED, "detail": _error_text(e)})

    verdict = parse_structured(snapshot.stdout)
    payload = {
        "status": poll.status,
        "exit_code": handle.exit_code,
        "config": verdict.parsed,
        "stderr": snapshot.stderr,
    }
    if verdict.parsed is None:
        payload["raw"] = verdict.raw
        payload["error"] = verdict.error
    return _dump(payload)


@mcp_server.tool()
async def gateway_api(path: str = "/", sandbox: str = "") -> str:
    """
    Probe the gateway's HTTP API from inside the container.

    Args:
        path: Request path (default "/")
        sandbox: Container name (default from GATEWAY_SANDBOX)
    """
    if not path.startswith("/"):
        path = "/" + path
    url = f"http://localhost:{settings.gateway_port}{path}"
    try:
        _, poll, snapshot = await run_command(
            get_backend(sandbox), f"curl -s -i --max-time 10 {_sq(url)}", QUICK_POLL
        )
    except Exception as e:
        return _dump({"success": False, "error": COMMAND_FAILED, "detail": _error_text(e), "path": path})

    if not snapshot.stdout:
        detail = snapshot.stderr.strip() or f"No response (probe {poll.status})"
        return _dump({"success": False, "error": COMMAND_FAILED, "detail": detail, "path": path})
    return _dump({"path": path, **parse_http_response(snapshot.stdout)})


@mcp_server.tool()
async def ws_info(sandbox: str = "") -> str:
    """Connection hints for testing the gateway's WebSocket endpoint."""
    return _dump(
        {
            "ws_url": f"ws://localhost:{settings.gateway_port}/",
            "hint": "Connect a WebSocket client through the gateway's /chat route and inspect frames",
            "sandbox": sandbox or settings.sandbox,
            "port": settings.gateway_port,
        }
    )


@mcp_server.tool()
async def env() -> str:
    """Show which configuration values are present (never the values themselves)."""
    return _dump(settings.sanitized())


# ── Entry point ──────────────────────────────────────────────────────────


def main():
    mcp_server.run(transport="stdio")


if __name__ == "__main__":
    main()
