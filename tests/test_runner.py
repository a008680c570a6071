"""
Tests for external command execution.

``subprocess.run`` and ``shutil.which`` are replaced so no external binary
is ever started.
"""

import logging
import subprocess

import pytest

from act_connectome import runner as runner_mod
from act_connectome.runner import CommandRunner, require_executables
from act_connectome.utils import CommandError, MissingExecutableError, StageOutputError


class FakeRun:
    """Stand-in for subprocess.run that records calls and writes outputs."""

    def __init__(self, returncode=0, create=(), stderr=""):
        self.calls = []
        self.returncode = returncode
        self.create = list(create)
        self.stderr = stderr

    def __call__(self, cmd, **kwargs):
        self.calls.append(cmd)
        for p in self.create:
            p.write_text("x")
        return subprocess.CompletedProcess(cmd, self.returncode, "", self.stderr)


# ---------------------------------------------------------------------------
# require_executables
# ---------------------------------------------------------------------------

class TestRequireExecutables:

    def test_all_present(self, monkeypatch):
        monkeypatch.setattr(runner_mod.shutil, "which", lambda name: f"/usr/bin/{name}")
        require_executables(["mrconvert", "flirt"])

    def test_missing_listed(self, monkeypatch):
        present = {"mrconvert"}
        monkeypatch.setattr(
            runner_mod.shutil, "which",
            lambda name: f"/usr/bin/{name}" if name in present else None,
        )
        with pytest.raises(MissingExecutableError) as excinfo:
            require_executables(["mrconvert", "tckgen", "bet", "tckgen"])
        assert "bet, tckgen" in str(excinfo.value)


# ---------------------------------------------------------------------------
# CommandRunner
# ---------------------------------------------------------------------------

class TestCommandRunner:
    """Tests for skipping, option injection and failure detection."""

    def test_success_checks_outputs(self, tmp_path, monkeypatch):
        out = tmp_path / "dwi_dn.mif"
        fake = FakeRun(create=[out])
        monkeypatch.setattr(runner_mod.subprocess, "run", fake)

        ran = CommandRunner().run(["dwidenoise", tmp_path / "dwi.mif", out], outputs=[out])

        assert ran is True
        assert fake.calls == [["dwidenoise", str(tmp_path / "dwi.mif"), str(out)]]

    def test_nonzero_exit_raises(self, tmp_path, monkeypatch):
        fake = FakeRun(returncode=3, stderr="dwidenoise: [ERROR] bad image")
        monkeypatch.setattr(runner_mod.subprocess, "run", fake)

        with pytest.raises(CommandError) as excinfo:
            CommandRunner().run(["dwidenoise", "a.mif", "b.mif"])
        assert excinfo.value.returncode == 3
        assert "bad image" in excinfo.value.stderr
        assert excinfo.value.cmd[0] == "dwidenoise"

    def test_unstartable_program_raises(self, monkeypatch):
        def missing(cmd, **kwargs):
            raise FileNotFoundError(2, "No such file or directory", cmd[0])

        monkeypatch.setattr(runner_mod.subprocess, "run", missing)
        with pytest.raises(CommandError) as excinfo:
            CommandRunner().run(["tckgen"])
        assert excinfo.value.returncode == 127

    def test_missing_output_after_success(self, tmp_path, monkeypatch):
        monkeypatch.setattr(runner_mod.subprocess, "run", FakeRun())
        with pytest.raises(StageOutputError, match="fod.mif"):
            CommandRunner().run(["dwi2fod"], outputs=[tmp_path / "fod.mif"])

    def test_existing_outputs_skipped(self, tmp_path, monkeypatch):
        out = tmp_path / "tracts.tck"
        out.write_text("existing")
        fake = FakeRun()
        monkeypatch.setattr(runner_mod.subprocess, "run", fake)

        runner = CommandRunner()
        assert runner.run(["tckgen", "fod.mif", out], outputs=[out]) is False
        assert fake.calls == []
        assert runner.history == []

    def test_reused_outputs_logged(self, tmp_path, monkeypatch, caplog):
        out = tmp_path / "tracts-sift.tck"
        out.write_text("existing")
        monkeypatch.setattr(runner_mod.subprocess, "run", FakeRun())

        with caplog.at_level(logging.INFO, logger="act_connectome.runner"):
            CommandRunner().run(["tcksift", "tracts.tck", out], outputs=[out])

        assert "skipping tcksift: tracts-sift.tck" in caplog.text

    def test_partial_outputs_rerun(self, tmp_path, monkeypatch):
        out = tmp_path / "dn.mif"
        noise = tmp_path / "noise.mif"
        out.write_text("existing")
        fake = FakeRun(create=[noise])
        monkeypatch.setattr(runner_mod.subprocess, "run", fake)

        assert CommandRunner().run(["dwidenoise"], outputs=[out, noise]) is True
        assert len(fake.calls) == 1

    def test_force_reruns_and_adds_mrtrix_option(self, tmp_path, monkeypatch):
        out = tmp_path / "tracts.tck"
        out.write_text("existing")
        fake = FakeRun()
        monkeypatch.setattr(runner_mod.subprocess, "run", fake)

        CommandRunner(force=True, nthreads=4).run(["tckgen", out], outputs=[out])
        assert fake.calls == [["tckgen", str(out), "-force", "-nthreads", "4"]]

    def test_non_mrtrix_command_untouched(self, tmp_path, monkeypatch):
        out = tmp_path / "T1w_bet.nii.gz"
        fake = FakeRun(create=[out])
        monkeypatch.setattr(runner_mod.subprocess, "run", fake)

        CommandRunner(force=True, nthreads=4).run(
            ["bet", "T1w.nii.gz", out, "-f", 0.2, "-R"], outputs=[out], mrtrix=False,
        )
        assert fake.calls == [["bet", "T1w.nii.gz", str(out), "-f", "0.2", "-R"]]

    def test_dry_run_records_without_executing(self, tmp_path, monkeypatch):
        def forbidden(cmd, **kwargs):
            raise AssertionError("subprocess.run called in dry-run mode")

        monkeypatch.setattr(runner_mod.subprocess, "run", forbidden)
        runner = CommandRunner(dry_run=True)
        runner.run(["mrconvert", "in.nii.gz", "out.mif"], outputs=[tmp_path / "out.mif"])
        runner.run(["bet", "a", "b"], mrtrix=False)
        assert runner.history == [
            ["mrconvert", "in.nii.gz", "out.mif"],
            ["bet", "a", "b"],
        ]
