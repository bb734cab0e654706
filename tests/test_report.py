"""Tests for stage results and the build report."""

import json
import threading

import pytest

from shran.report import BuildReport, FailureReason, ResultFrozenError, StageResult, StageStatus
from shran.specloader import Stage


class TestStageResult:
    """Test the stage result lifecycle."""

    def test_lifecycle(self):
        r = StageResult("bitcoind", Stage.COMPILE)
        assert r.status == StageStatus.PENDING
        r.start()
        assert r.status == StageStatus.RUNNING
        assert r.attempts == 1
        r.succeed(0, output_ref="/logs/x", duration=1.5)
        assert r.succeeded
        assert r.duration == 1.5
        assert r.exit_code == 0

    def test_frozen_once_terminal(self):
        r = StageResult("bitcoind", Stage.TEST).start().fail(FailureReason.STAGE_FAILURE, exit_code=2)
        with pytest.raises(ResultFrozenError):
            r.exit_code = 0
        with pytest.raises(ResultFrozenError):
            r.succeed()
        assert r.exit_code == 2

    def test_cancelled_flag(self):
        r = StageResult("bitcoind", Stage.COMPILE).start().fail(FailureReason.CANCELLED)
        assert r.cancelled
        assert r.failed

    def test_skip(self):
        r = StageResult("libssl", Stage.LINK).skip("not applicable")
        assert r.status == StageStatus.SKIPPED
        assert r.status.terminal
        assert r.to_dict()["detail"] == "not applicable"


class TestBuildReport:
    """Test report aggregation."""

    def test_outcome(self):
        report = BuildReport(["libssl", "bitcoind"])
        report.set_target_state("libssl", "Succeeded")
        assert not report.succeeded
        report.set_target_state("bitcoind", "Succeeded")
        assert report.succeeded
        assert report.outcome == "Succeeded"

    def test_failed_targets_and_blocked_by(self):
        report = BuildReport(["libssl", "bitcoind"])
        report.set_target_state("libssl", "Failed")
        report.set_target_state("bitcoind", "Failed", blocked_by="libssl")
        assert report.failed_targets == ["libssl", "bitcoind"]
        assert report.blocked_by("bitcoind") == "libssl"
        assert report.outcome == "Failed"

    def test_empty_report_not_succeeded(self):
        assert not BuildReport().succeeded

    def test_finalize_is_read_only(self):
        report = BuildReport(["bitcoind"])
        report.append(StageResult("bitcoind", Stage.CONFIGURE).start().succeed())
        report.finalize()
        assert report.finalized
        with pytest.raises(ResultFrozenError):
            report.append(StageResult("bitcoind", Stage.COMPILE))
        assert len(report.results) == 1

    def test_result_lookup(self):
        report = BuildReport(["bitcoind"])
        first = StageResult("bitcoind", Stage.CONFIGURE).start().succeed()
        report.append(first)
        assert report.result("bitcoind", Stage.CONFIGURE) is first
        assert report.result("bitcoind", Stage.DEPLOY) is None

    def test_concurrent_appends(self):
        report = BuildReport([f"t{i}" for i in range(8)])

        def worker(i):
            for stage in Stage:
                report.append(StageResult(f"t{i}", stage).start().succeed())

        threads = [threading.Thread(target=worker, args=(i,)) for i in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert len(report.results) == 8 * len(Stage)
        assert [r.stage for r in report.results_for("t3")] == list(Stage)

    def test_write_json(self, tmp_path):
        report = BuildReport(["bitcoind"])
        report.append(StageResult("bitcoind", Stage.CONFIGURE).start().fail(
            FailureReason.TIMEOUT, exit_code=-9, detail="timed out after 5s"))
        report.set_target_state("bitcoind", "Failed")
        path = report.finalize().write_json(str(tmp_path / "out" / "report.json"))
        data = json.loads(path.read_text())
        assert data["outcome"] == "Failed"
        assert data["results"][0]["reason"] == "Timeout"
        assert data["targets"]["bitcoind"]["state"] == "Failed"
