"""
Pairing approval delegated to an external command.

The external runtime owns the codes in this mode:
  request:  ``openclaw pairing request --channel wemp <accountId:openId>``, code read
            from its output ("Pairing code: <CODE>")
  approve:  ``openclaw pairing approve --channel wemp <CODE> --notify``, subject read
            from its output ("Approved wemp sender <id>.")

Approved subjects are also written to ``paired-users.json`` when a
PairedSubjectStore is given, so the default allow-list source sees them.
"""

import asyncio
import logging
import re
import shutil
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, List, Optional

from state.pairing_codes import PAIRING_CODE_TTL_MS, PairedSubjectStore, PairingCode
from state.subject import make_subject_id, parse_subject_id

from .base import ApprovalResult, PairingApprover

logger = logging.getLogger(__name__)

DEFAULT_COMMAND_TIMEOUT_S = 15.0

_ANSI_RE = re.compile(r"\x1b\[[0-9;]*m")
_SENDER_RE = re.compile(r"sender\s+([^\s.]+)\.", re.IGNORECASE)
_CODE_RE = re.compile(r"\bcode\s*[:：]?\s*([A-Za-z0-9]{4,16})\b", re.IGNORECASE)


class CommandTimeoutError(TimeoutError):
    """External command did not finish in time."""
    pass


@dataclass
class CommandResult:
    stdout: str
    stderr: str
    code: Optional[int]


CommandRunner = Callable[[List[str], float], Awaitable[CommandResult]]


async def run_command_with_timeout(argv: List[str], timeout_s: float) -> CommandResult:
    """
    Run ``argv`` without a shell and collect its output.

    Raises:
        FileNotFoundError: executable not found
        CommandTimeoutError: process killed after ``timeout_s``
    """
    process = await asyncio.create_subprocess_exec(
        *argv,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    try:
        stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout_s)
    except asyncio.TimeoutError:
        process.kill()
        await process.wait()
        raise CommandTimeoutError(f"Command timed out after {timeout_s}s: {argv[0]}")
    return CommandResult(
        stdout=stdout.decode("utf-8", errors="replace"),
        stderr=stderr.decode("utf-8", errors="replace"),
        code=process.returncode,
    )


def strip_ansi(text: str) -> str:
    return _ANSI_RE.sub("", text or "")


def extract_approved_sender_id(stdout: str, stderr: str) -> Optional[str]:
    combined = strip_ansi(f"{stdout}\n{stderr}")
    match = _SENDER_RE.search(combined)
    return match.group(1).strip() if match else None


def extract_pairing_code(stdout: str) -> Optional[str]:
    match = _CODE_RE.search(strip_ansi(stdout))
    return match.group(1).upper() if match else None


class CommandPairingApprover(PairingApprover):

    notifies_subject = True

    def __init__(
        self,
        subjects: Optional[PairedSubjectStore] = None,
        runner: Optional[CommandRunner] = None,
        executable: str = "openclaw",
        channel: str = "wemp",
        timeout_s: float = DEFAULT_COMMAND_TIMEOUT_S,
        code_ttl_ms: int = PAIRING_CODE_TTL_MS,
    ):
        self.subjects = subjects
        self.runner = runner
        self.executable = executable
        self.channel = channel
        self.timeout_s = timeout_s
        self.code_ttl_ms = code_ttl_ms

    def _resolve_runner(self) -> Optional[CommandRunner]:
        if self.runner is not None:
            return self.runner
        if shutil.which(self.executable) is None:
            return None
        return run_command_with_timeout

    async def _run(self, runner: CommandRunner, *args: str) -> CommandResult:
        return await runner([self.executable, "pairing", *args], self.timeout_s)

    async def request_code(self, account_id: str, open_id: str) -> Optional[PairingCode]:
        runner = self._resolve_runner()
        if runner is None:
            logger.warning(f"[wemp:{account_id}] Pairing runtime not available; no code issued")
            return None

        subject_id = make_subject_id(account_id, open_id)
        try:
            result = await self._run(runner, "request", "--channel", self.channel, subject_id)
        except (FileNotFoundError, CommandTimeoutError) as e:
            logger.warning(f"[wemp:{account_id}] Pairing request command failed: {e}")
            return None

        code = extract_pairing_code(result.stdout) if not result.code else None
        if code is None:
            logger.warning(
                f"[wemp:{account_id}] Pairing request command returned no code",
                extra={"exit_code": result.code, "stderr": result.stderr.strip()},
            )
            return None

        now = int(time.time() * 1000)
        return PairingCode(code, account_id, open_id, now, now + self.code_ttl_ms)

    async def approve(self, code: str) -> ApprovalResult:
        runner = self._resolve_runner()
        if runner is None:
            return ApprovalResult(status="unavailable", error="Pairing approval runtime not available")

        code = code.strip().upper()
        try:
            result = await self._run(runner, "approve", "--channel", self.channel, code, "--notify")
        except FileNotFoundError:
            return ApprovalResult(status="unavailable", error="Pairing approval runtime not available")
        except CommandTimeoutError as e:
            logger.warning(f"Pairing approval command timed out: {e}")
            return ApprovalResult(status="rejected", error="Failed to approve pairing code", details=str(e))

        if result.code:
            details = result.stderr.strip() or None
            logger.warning(f"Pairing approval command exited with {result.code}")
            return ApprovalResult(status="rejected", error="Failed to approve pairing code", details=details)

        subject_id = extract_approved_sender_id(result.stdout, result.stderr)
        subject = parse_subject_id(subject_id)
        if subject is not None and self.subjects is not None:
            await self.subjects.add(subject.account_id, subject.open_id, code=code)
        return ApprovalResult(status="approved", subject_id=subject_id)
