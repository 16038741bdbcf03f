"""
Pairing Approval Tests

Local approval against the JSON stores, and command-based approval with a
fake runner standing in for the external CLI.
"""

import pytest

from services.approval import CommandPairingApprover, CommandResult, LocalPairingApprover
from services.approval.command import (
    CommandTimeoutError,
    extract_approved_sender_id,
    extract_pairing_code,
    strip_ansi,
)
from state.pairing_codes import PairedSubjectStore, PairingCodeStore


class FakeRunner:
    """Records argv and returns a canned result (or raises)."""

    def __init__(self, result=None, error=None):
        self.result = result or CommandResult(stdout="", stderr="", code=0)
        self.error = error
        self.calls = []

    async def __call__(self, argv, timeout_s):
        self.calls.append((argv, timeout_s))
        if self.error is not None:
            raise self.error
        return self.result


class TestLocalApprover:

    @pytest.mark.asyncio
    async def test_approves_issued_code(self, data_dir):
        codes = PairingCodeStore(data_dir)
        subjects = PairedSubjectStore(data_dir)
        issued = await codes.issue("default", "oUser")

        result = await LocalPairingApprover(codes, subjects).approve(issued.code)

        assert result.approved
        assert result.subject_id == "default:oUser"
        assert subjects.list_subject_ids() == ["default:oUser"]

    @pytest.mark.asyncio
    async def test_code_cannot_be_reused(self, data_dir):
        codes = PairingCodeStore(data_dir)
        approver = LocalPairingApprover(codes, PairedSubjectStore(data_dir))
        issued = await codes.issue("default", "oUser")
        await approver.approve(issued.code)

        result = await approver.approve(issued.code)

        assert result.status == "rejected"
        assert result.error == "Invalid or expired pairing code"

    def test_local_approver_does_not_notify(self, data_dir):
        approver = LocalPairingApprover(PairingCodeStore(data_dir), PairedSubjectStore(data_dir))
        assert approver.notifies_subject is False


class TestCommandApprover:

    def test_sender_extraction(self):
        stdout = "\x1b[32mApproved wemp sender default:oABC123.\x1b[0m\n"
        assert strip_ansi(stdout).startswith("Approved wemp sender")
        assert extract_approved_sender_id(stdout, "") == "default:oABC123"
        assert extract_approved_sender_id("done", "") is None

    @pytest.mark.asyncio
    async def test_success(self):
        runner = FakeRunner(CommandResult(stdout="\x1b[1mApproved wemp sender default:oABC.\x1b[0m", stderr="", code=0))
        approver = CommandPairingApprover(runner=runner, timeout_s=5)

        result = await approver.approve(" ab12cd ")

        assert result.approved
        assert result.subject_id == "default:oABC"
        argv, timeout_s = runner.calls[0]
        assert argv == ["openclaw", "pairing", "approve", "--channel", "wemp", "AB12CD", "--notify"]
        assert timeout_s == 5
        assert approver.notifies_subject is True

    @pytest.mark.asyncio
    async def test_nonzero_exit_rejected_with_stderr(self):
        runner = FakeRunner(CommandResult(stdout="", stderr="unknown code\n", code=1))

        result = await CommandPairingApprover(runner=runner).approve("123456")

        assert result.status == "rejected"
        assert result.details == "unknown code"

    @pytest.mark.asyncio
    async def test_timeout_rejected(self):
        runner = FakeRunner(error=CommandTimeoutError("Command timed out after 15s: openclaw"))
        result = await CommandPairingApprover(runner=runner).approve("123456")
        assert result.status == "rejected"

    @pytest.mark.asyncio
    async def test_executable_vanished(self):
        runner = FakeRunner(error=FileNotFoundError("openclaw"))
        result = await CommandPairingApprover(runner=runner).approve("123456")
        assert result.status == "unavailable"

    @pytest.mark.asyncio
    async def test_missing_executable_is_unavailable(self):
        approver = CommandPairingApprover(executable="definitely-not-installed-xyz")
        result = await approver.approve("123456")
        assert result.status == "unavailable"
        assert result.error == "Pairing approval runtime not available"

    @pytest.mark.asyncio
    async def test_approval_recorded_in_paired_subjects(self, data_dir):
        subjects = PairedSubjectStore(data_dir)
        runner = FakeRunner(CommandResult(stdout="Approved wemp sender default:oABC.", stderr="", code=0))

        result = await CommandPairingApprover(subjects, runner=runner).approve("ab12cd")

        assert result.approved
        assert subjects.list_subject_ids() == ["default:oABC"]

    @pytest.mark.asyncio
    async def test_approval_without_sender_records_nothing(self, data_dir):
        subjects = PairedSubjectStore(data_dir)
        runner = FakeRunner(CommandResult(stdout="done", stderr="", code=0))

        result = await CommandPairingApprover(subjects, runner=runner).approve("ab12cd")

        assert result.approved
        assert result.subject_id is None
        assert subjects.list_subject_ids() == []


class TestCommandPairingRequest:

    def test_code_extraction(self):
        assert extract_pairing_code("\x1b[1mPairing code: qx7k2m9p\x1b[0m\n") == "QX7K2M9P"
        assert extract_pairing_code("配对 code：123456") == "123456"
        assert extract_pairing_code("nothing here") is None

    @pytest.mark.asyncio
    async def test_request_issues_external_code(self):
        runner = FakeRunner(CommandResult(stdout="Pairing code: QX7K2M9P\n", stderr="", code=0))
        approver = CommandPairingApprover(runner=runner, timeout_s=5)

        code = await approver.request_code("default", "oUser")

        assert code.code == "QX7K2M9P"
        assert code.subject_id == "default:oUser"
        assert code.expires_at - code.created_at == 5 * 60 * 1000
        argv, timeout_s = runner.calls[0]
        assert argv == ["openclaw", "pairing", "request", "--channel", "wemp", "default:oUser"]
        assert timeout_s == 5

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "runner",
        [
            FakeRunner(CommandResult(stdout="", stderr="channel not configured", code=2)),
            FakeRunner(CommandResult(stdout="ok", stderr="", code=0)),
            FakeRunner(error=CommandTimeoutError("Command timed out after 15s: openclaw")),
            FakeRunner(error=FileNotFoundError("openclaw")),
        ],
        ids=["nonzero-exit", "no-code", "timeout", "vanished"],
    )
    async def test_request_failures_issue_no_code(self, runner):
        assert await CommandPairingApprover(runner=runner).request_code("default", "oUser") is None

    @pytest.mark.asyncio
    async def test_missing_executable_issues_no_code(self):
        approver = CommandPairingApprover(executable="definitely-not-installed-xyz")
        assert await approver.request_code("default", "oUser") is None


class TestLocalPairingRequest:

    @pytest.mark.asyncio
    async def test_request_issues_local_code(self, data_dir):
        codes = PairingCodeStore(data_dir)
        approver = LocalPairingApprover(codes, PairedSubjectStore(data_dir))

        code = await approver.request_code("default", "oUser")

        assert len(code.code) == 6
        assert (await codes.consume(code.code)).subject_id == "default:oUser"
