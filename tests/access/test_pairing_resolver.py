"""
Pairing Resolver Tests

KEY ASSERTION: the opt-out overlay always wins over the allow-list
"""

import pytest

from access.pairing import PairingResolver
from services.allowlist import AllowListError, AllowListSource, PairedSubjectsAllowListSource, StaticAllowListSource
from services.approval import ApprovalResult, CommandPairingApprover, CommandResult, LocalPairingApprover, PairingApprover
from state.opt_out import OptOutStore
from state.pairing_codes import PairedSubjectStore, PairingCode, PairingCodeStore


class BrokenAllowListSource(AllowListSource):

    async def pull(self, channel):
        raise AllowListError("store offline")


class ListAllowListSource(AllowListSource):

    def __init__(self):
        self.ids = []

    async def pull(self, channel):
        return list(self.ids)


class FixedApprover(PairingApprover):

    def __init__(self, result):
        self.result = result
        self.requested = []

    async def request_code(self, account_id, open_id):
        self.requested.append((account_id, open_id))
        return PairingCode("ABC123", account_id, open_id, 0, 1)

    async def approve(self, code):
        return self.result


def make_resolver(data_dir, allow_list=None, approver=None, clock=None):
    kwargs = {"clock": clock} if clock is not None else {}
    return PairingResolver(
        allow_list or StaticAllowListSource(),
        OptOutStore(data_dir),
        approver,
        **kwargs,
    )


class TestPairingResolution:

    @pytest.mark.asyncio
    async def test_allow_listed_subject_is_paired(self, data_dir):
        resolver = make_resolver(data_dir, StaticAllowListSource(["default:oA"]))
        assert await resolver.is_paired("default", "oA")
        assert not await resolver.is_paired("default", "oB")
        assert not await resolver.is_paired("second", "oA")

    @pytest.mark.asyncio
    async def test_opt_out_wins(self, data_dir):
        resolver = make_resolver(data_dir, StaticAllowListSource(["default:oA"]))
        await resolver.set_opt_out("default", "oA", True)

        assert not await resolver.is_paired("default", "oA")
        assert await resolver.is_allow_listed("default", "oA")

    @pytest.mark.asyncio
    async def test_snapshot_cached_until_ttl(self, data_dir, clock):
        source = StaticAllowListSource()
        resolver = make_resolver(data_dir, source, clock=clock)

        assert not await resolver.is_paired("default", "oA")
        source.add("default:oA")
        clock.advance(5)
        assert not await resolver.is_paired("default", "oA")
        assert source.pull_count == 1

        clock.advance(5)
        assert await resolver.is_paired("default", "oA")
        assert source.pull_count == 2

    @pytest.mark.asyncio
    async def test_failed_pull_means_unpaired(self, data_dir):
        resolver = make_resolver(data_dir, BrokenAllowListSource())
        assert not await resolver.is_paired("default", "oA")

    @pytest.mark.asyncio
    async def test_recorded_approval_visible_before_refresh(self, data_dir, clock):
        resolver = make_resolver(data_dir, clock=clock)
        await resolver.refresh()
        resolver.record_approved_subject_id("default:oA")
        assert await resolver.is_paired("default", "oA")

    @pytest.mark.asyncio
    async def test_approval_on_cold_snapshot_survives_first_pull(self, data_dir, clock):
        resolver = make_resolver(data_dir, clock=clock)
        resolver.record_approved_subject_id("default:oA")
        assert await resolver.is_paired("default", "oA")

    @pytest.mark.asyncio
    async def test_approval_on_stale_snapshot_survives_refresh(self, data_dir, clock):
        source = StaticAllowListSource()
        resolver = make_resolver(data_dir, source, clock=clock)
        await resolver.refresh()
        clock.advance(11)

        resolver.record_approved_subject_id("default:oA")

        assert await resolver.is_paired("default", "oA")
        assert source.pull_count == 2

    @pytest.mark.asyncio
    async def test_approval_settled_once_source_returns_it(self, data_dir, clock):
        source = ListAllowListSource()
        resolver = make_resolver(data_dir, source, clock=clock)
        resolver.record_approved_subject_id("default:oA")
        source.ids.append("default:oA")
        clock.advance(11)
        assert await resolver.is_paired("default", "oA")

        source.ids.clear()
        clock.advance(11)
        assert not await resolver.is_paired("default", "oA")

    @pytest.mark.asyncio
    async def test_unconfirmed_approval_expires_after_grace(self, data_dir, clock):
        resolver = make_resolver(data_dir, clock=clock)
        resolver.record_approved_subject_id("default:oA")

        clock.advance(299)
        assert await resolver.is_paired("default", "oA")

        clock.advance(2)
        assert not await resolver.is_paired("default", "oA")


class TestCodeApproval:

    @pytest.mark.asyncio
    async def test_no_approver_is_unavailable(self, data_dir):
        approval = await make_resolver(data_dir).approve_code("123456")
        assert approval.result.status == "unavailable"

    @pytest.mark.asyncio
    async def test_local_round_trip_clears_opt_out(self, data_dir):
        codes = PairingCodeStore(data_dir)
        subjects = PairedSubjectStore(data_dir)
        approver = LocalPairingApprover(codes, subjects)
        resolver = PairingResolver(PairedSubjectsAllowListSource(subjects), OptOutStore(data_dir), approver)
        await resolver.set_opt_out("default", "oA", True)
        issued = await resolver.request_pairing("default", "oA")

        approval = await resolver.approve_code(issued.code)

        assert approval.result.approved
        assert approval.subject.account_id == "default"
        assert approval.subject.open_id == "oA"
        assert not resolver.opt_out.is_opted_out("default", "oA")
        assert await resolver.is_paired("default", "oA")

    @pytest.mark.asyncio
    async def test_rejection_passed_through(self, data_dir):
        rejected = ApprovalResult(status="rejected", error="Failed to approve pairing code", details="nope")
        approval = await make_resolver(data_dir, approver=FixedApprover(rejected)).approve_code("123456")
        assert approval.result is rejected
        assert approval.subject is None

    @pytest.mark.asyncio
    async def test_approval_without_subject(self, data_dir):
        approval = await make_resolver(data_dir, approver=FixedApprover(ApprovalResult(status="approved"))).approve_code("1")
        assert approval.result.approved
        assert approval.subject is None


class TestPairingRequests:

    @pytest.mark.asyncio
    async def test_request_goes_through_approver(self, data_dir):
        approver = FixedApprover(ApprovalResult(status="approved"))
        code = await make_resolver(data_dir, approver=approver).request_pairing("default", "oA")
        assert code.code == "ABC123"
        assert approver.requested == [("default", "oA")]

    @pytest.mark.asyncio
    async def test_no_approver_issues_no_code(self, data_dir):
        assert await make_resolver(data_dir).request_pairing("default", "oA") is None


class ScriptedRunner:
    """Answers the external pairing CLI: request hands out a code, approve names the sender."""

    def __init__(self):
        self.calls = []

    async def __call__(self, argv, timeout_s):
        self.calls.append(argv)
        if argv[2] == "request":
            return CommandResult(stdout="Pairing code: QX7K2M9P\n", stderr="", code=0)
        return CommandResult(stdout="Approved wemp sender default:oUser.\n", stderr="", code=0)


class TestCommandApprovalFlow:

    @pytest.mark.asyncio
    async def test_command_approval_stays_paired_after_refresh(self, data_dir, clock):
        subjects = PairedSubjectStore(data_dir)
        runner = ScriptedRunner()
        resolver = PairingResolver(
            PairedSubjectsAllowListSource(subjects),
            OptOutStore(data_dir),
            CommandPairingApprover(subjects, runner=runner),
            clock=clock,
        )

        issued = await resolver.request_pairing("default", "oUser")
        assert issued.code == "QX7K2M9P"
        assert runner.calls[0] == ["openclaw", "pairing", "request", "--channel", "wemp", "default:oUser"]

        approval = await resolver.approve_code(issued.code)
        assert approval.result.approved
        assert runner.calls[1][5] == "QX7K2M9P"
        assert await resolver.is_paired("default", "oUser")

        clock.advance(11)
        assert await resolver.is_paired("default", "oUser")
        clock.advance(600)
        assert await resolver.is_paired("default", "oUser")
        assert subjects.list_subject_ids() == ["default:oUser"]
