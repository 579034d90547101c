import os
import sys
from pathlib import Path

import pytest

from src.config_utilities import SpectrumMode, load_job_parameters
from src.errors import ExternalToolError, WorkspaceError
from src.pipeline_utilities import (
    ExternalToolRunner,
    PipelineOrchestrator,
    PipelineState,
    StepResult,
    WorkspaceManager,
)


class RecordingRunner:
    """Runner stand-in that records the calls and fails on a chosen step."""

    def __init__(self, fail_step=None, exit_code=1, raise_on_failure=True):
        self.calls = []
        self.fail_step = fail_step
        self.exit_code = exit_code
        self.raise_on_failure = raise_on_failure

    def run(self, command_name, argument_list, output_redirect=None, step_name=None, cwd=None):
        self.calls.append((step_name, command_name, list(argument_list), output_redirect, cwd))
        if step_name == self.fail_step:
            if self.raise_on_failure:
                raise ExternalToolError(step_name, command_name, self.exit_code, "simulated failure")
            return StepResult(step_name, [command_name] + list(argument_list), self.exit_code,
                              stderr="simulated failure")
        return StepResult(step_name, [command_name] + list(argument_list), 0)


# --- WorkspaceManager ---

def test_enter_creates_nested_directories_and_is_idempotent(tmp_path: Path) -> None:
    manager = WorkspaceManager()
    out = tmp_path / "popX_vs_popY"

    first = manager.enter(str(out), "chr1")
    second = manager.enter(str(out), "chr1")

    assert first.path == second.path == str(out / "chr1")
    assert (out / "chr1").is_dir()
    assert first.previous == os.getcwd()


def test_enter_can_change_and_restore_directory(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)

    with WorkspaceManager().enter("results", "chr2", change_directory=True) as handle:
        assert os.getcwd() == handle.path
        assert handle.previous == str(tmp_path)

    assert os.getcwd() == str(tmp_path)


@pytest.mark.parametrize("name", ["", ".", "..", "chr/1"])
def test_enter_rejects_invalid_chromosome_names(tmp_path: Path, name: str) -> None:
    with pytest.raises(WorkspaceError, match="Invalid chromosome name"):
        WorkspaceManager().enter(str(tmp_path / "out"), name)


def test_enter_fails_when_a_file_is_in_the_way(tmp_path: Path) -> None:
    blocker = tmp_path / "out"
    blocker.write_text("not a directory", encoding="utf-8")

    with pytest.raises(WorkspaceError) as err:
        WorkspaceManager().enter(str(blocker), "chr1")
    assert isinstance(err.value, OSError)


# --- ExternalToolRunner ---

def test_runner_captures_stdout(tmp_path: Path) -> None:
    result = ExternalToolRunner().run(sys.executable, ["-c", "print('0.9 0.1')"], step_name="spectrum")

    assert result.exit_code == 0
    assert result.step_name == "spectrum"
    assert result.stdout.strip() == "0.9 0.1"
    assert result.stdout_path is None


def test_runner_redirects_stdout_relative_to_cwd(tmp_path: Path) -> None:
    result = ExternalToolRunner().run(sys.executable, ["-c", "print('global')"],
                                      output_redirect="chr1.global.fst", cwd=str(tmp_path))

    assert result.stdout_path == str(tmp_path / "chr1.global.fst")
    assert (tmp_path / "chr1.global.fst").read_text(encoding="utf-8").strip() == "global"
    assert result.stdout is None


def test_runner_raises_with_exit_code_and_stderr() -> None:
    script = "import sys; sys.stderr.write('bad bam list'); sys.exit(4)"
    with pytest.raises(ExternalToolError) as err:
        ExternalToolRunner().run(sys.executable, ["-c", script], step_name="likelihoods_pop1")

    assert err.value.step_name == "likelihoods_pop1"
    assert err.value.command_name == sys.executable
    assert err.value.exit_code == 4
    assert "bad bam list" in err.value.stderr
    assert err.value.process_exit_status() == 4


def test_runner_missing_executable_is_an_external_tool_error(tmp_path: Path) -> None:
    with pytest.raises(ExternalToolError) as err:
        ExternalToolRunner().run(str(tmp_path / "no_such_angsd"), ["-bam", "x"])
    assert err.value.exit_code == 127


def test_signal_exit_maps_to_shell_convention() -> None:
    assert ExternalToolError("spectrum", "realSFS", -9).process_exit_status() == 137
    assert ExternalToolError("spectrum", "realSFS", 300).process_exit_status() == 1


# --- Command assembly ---

def test_likelihood_commands(job_parameters) -> None:
    steps = PipelineOrchestrator(job_parameters).build_commands("chr2", SpectrumMode.FOLDED)

    assert [step.state for step in steps] == [
        PipelineState.LIKELIHOODS_POP1, PipelineState.LIKELIHOODS_POP2, PipelineState.SPECTRUM,
        PipelineState.FST_INDEX, PipelineState.FST_GLOBAL, PipelineState.FST_WINDOWED,
    ]
    pop1 = steps[0]
    assert pop1.command_name == "angsd"
    assert pop1.arguments == [
        "-bam", "/data/pop1.bamlist", "-ref", "/ref.fasta.gz", "-anc", "/ref.fasta.gz",
        "-uniqueOnly", "1", "-remove_bads", "1", "-only_proper_pairs", "0", "-trim", "0",
        "-minMapQ", "20", "-minQ", "20", "-gl", "1", "-doSaf", "1", "-r", "chr2", "-out", "pop1.chr2",
    ]
    assert pop1.output_redirect is None
    assert steps[1].arguments[1] == "/data/pop2.bamlist"
    assert steps[1].arguments[-1] == "pop2.chr2"


@pytest.mark.parametrize("mode, fold, label", [(SpectrumMode.FOLDED, "1", "folded"),
                                               (SpectrumMode.UNFOLDED, "0", "unfolded")])
def test_spectrum_and_fst_commands(job_parameters, mode, fold, label) -> None:
    steps = PipelineOrchestrator(job_parameters).build_commands("chr2", mode)
    spectrum, index, global_fst, windowed = steps[2:]

    assert spectrum.command_name == "realSFS"
    assert spectrum.arguments == ["pop1.chr2.saf.idx", "pop2.chr2.saf.idx", "-fold", fold, "-m", "0",
                                  "-maxIter", "50000", "-tole", "0.0001"]
    assert spectrum.output_redirect == f"pop1.pop2.chr2.{label}.sfs"

    assert index.arguments == ["fst", "index", "pop1.chr2.saf.idx", "pop2.chr2.saf.idx",
                               "-sfs", f"pop1.pop2.chr2.{label}.sfs", "-fstout", "pop1.pop2.chr2"]
    assert index.output_redirect is None

    assert global_fst.arguments == ["fst", "stats", "pop1.pop2.chr2.fst.idx"]
    assert global_fst.output_redirect == "pop1.pop2.chr2.global.fst"

    assert windowed.arguments == ["fst", "stats2", "pop1.pop2.chr2.fst.idx", "-win", "100000",
                                  "-step", "100000", "-type", "2"]
    assert windowed.output_redirect == "pop1.pop2.chr2.fst.size100000_step100000"


def test_custom_tags_and_em_settings(raw_parameters) -> None:
    raw_parameters.update(pop1_name="north", pop2_name="south", tolerance=1e-6, max_iterations=200,
                          window_size=50000, step_size=10000)
    job = load_job_parameters(raw_parameters)
    steps = PipelineOrchestrator(job).build_commands("chr1", SpectrumMode.UNFOLDED)

    assert steps[0].arguments[-1] == "north.chr1"
    assert steps[2].arguments[-4:] == ["-maxIter", "200", "-tole", "1e-06"]
    assert steps[5].output_redirect == "north.south.chr1.fst.size50000_step10000"


# --- Orchestration ---

def test_run_executes_all_steps_in_order(job_parameters) -> None:
    runner = RecordingRunner()
    run = PipelineOrchestrator(job_parameters, runner=runner).run("chr2")

    assert run.state is PipelineState.DONE
    assert run.succeeded
    assert run.mode is SpectrumMode.FOLDED
    assert [call[0] for call in runner.calls] == [
        "likelihoods_pop1", "likelihoods_pop2", "spectrum", "fst_index", "fst_global", "fst_windowed",
    ]
    assert all(call[4] == run.workspace.path for call in runner.calls)
    assert run.workspace.path.endswith(os.path.join("pop1_vs_pop2", "chr2"))
    assert len(run.results) == 6


def test_first_likelihood_failure_stops_the_pipeline(job_parameters) -> None:
    runner = RecordingRunner(fail_step="likelihoods_pop1")

    with pytest.raises(ExternalToolError) as err:
        PipelineOrchestrator(job_parameters, runner=runner).run("chr2")

    assert err.value.step_name == "likelihoods_pop1"
    assert err.value.run.state is PipelineState.FAILED
    assert err.value.run.failed_step == "likelihoods_pop1"
    assert [call[0] for call in runner.calls] == ["likelihoods_pop1"]
    assert "spectrum" not in [call[0] for call in runner.calls]


def test_non_zero_result_from_non_raising_runner_also_stops(job_parameters) -> None:
    runner = RecordingRunner(fail_step="fst_index", exit_code=2, raise_on_failure=False)

    with pytest.raises(ExternalToolError) as err:
        PipelineOrchestrator(job_parameters, runner=runner).run("chr1", mode=SpectrumMode.UNFOLDED)

    assert err.value.exit_code == 2
    assert err.value.run.failed_step == "fst_index"
    assert [call[0] for call in runner.calls][-1] == "fst_index"
    assert len(runner.calls) == 4


def test_end_to_end_with_fake_tools(raw_parameters, fake_tools, tool_calls) -> None:
    raw_parameters.update(angsd_executable=fake_tools["angsd"], realsfs_executable=fake_tools["realSFS"],
                          ancestral_path="/anc.fa")
    job = load_job_parameters(raw_parameters)

    run = PipelineOrchestrator(job).run("chrA")
    chrom_dir = Path(run.workspace.path)

    assert run.mode is SpectrumMode.UNFOLDED
    for name in ["pop1.chrA.saf.idx", "pop2.chrA.saf.idx", "pop1.pop2.chrA.unfolded.sfs",
                 "pop1.pop2.chrA.fst.idx", "pop1.pop2.chrA.global.fst",
                 "pop1.pop2.chrA.fst.size100000_step100000"]:
        assert (chrom_dir / name).is_file(), name
    assert (chrom_dir / "pop1.pop2.chrA.global.fst").read_text().strip() == "0.012000\t0.045000"
    assert len(tool_calls()) == 6


def test_end_to_end_failure_leaves_earlier_artifacts(raw_parameters, fake_tools, tool_calls, monkeypatch) -> None:
    monkeypatch.setenv("FAKE_REALSFS_FAIL", "1")
    raw_parameters.update(angsd_executable=fake_tools["angsd"], realsfs_executable=fake_tools["realSFS"])
    job = load_job_parameters(raw_parameters)

    with pytest.raises(ExternalToolError) as err:
        PipelineOrchestrator(job).run("chrA")

    chrom_dir = Path(err.value.run.workspace.path)
    assert err.value.step_name == "spectrum"
    assert err.value.exit_code == 3
    assert "did not converge" in err.value.stderr
    assert (chrom_dir / "pop1.chrA.saf.idx").is_file()
    assert not (chrom_dir / "pop1.pop2.chrA.fst.idx").exists()
    assert len(tool_calls()) == 3


def test_resume_skips_steps_with_existing_outputs(job_parameters) -> None:
    orchestrator = PipelineOrchestrator(job_parameters, runner=RecordingRunner())
    chrom_dir = Path(job_parameters.output_directory_name) / "chr3"
    chrom_dir.mkdir(parents=True)
    (chrom_dir / "pop1.chr3.saf.idx").write_text("saf", encoding="utf-8")
    (chrom_dir / "pop2.chr3.saf.idx").write_text("saf", encoding="utf-8")
    # Empty outputs are treated as unfinished
    (chrom_dir / "pop1.pop2.chr3.folded.sfs").write_text("", encoding="utf-8")

    run = orchestrator.run("chr3", resume=True)

    assert run.state is PipelineState.DONE
    assert [result.skipped for result in run.results] == [True, True, False, False, False, False]
    assert [call[0] for call in orchestrator.runner.calls] == [
        "spectrum", "fst_index", "fst_global", "fst_windowed",
    ]


def test_runner_tolerates_undecodable_stderr() -> None:
    script = "import sys; sys.stderr.buffer.write(b'bad byte \\xff\\xfe'); sys.exit(2)"
    with pytest.raises(ExternalToolError) as err:
        ExternalToolRunner().run(sys.executable, ["-c", script], step_name="fst_index")

    assert err.value.exit_code == 2
    assert "bad byte" in err.value.stderr


def test_resume_reruns_every_step_after_a_missing_output(job_parameters) -> None:
    orchestrator = PipelineOrchestrator(job_parameters, runner=RecordingRunner())
    chrom_dir = Path(job_parameters.output_directory_name) / "chr1"
    chrom_dir.mkdir(parents=True)
    # Outputs of an older run, but the pop1 likelihoods are gone
    for name in ["pop2.chr1.saf.idx", "pop1.pop2.chr1.folded.sfs", "pop1.pop2.chr1.fst.idx",
                 "pop1.pop2.chr1.global.fst", "pop1.pop2.chr1.fst.size100000_step100000"]:
        (chrom_dir / name).write_text("old", encoding="utf-8")

    run = orchestrator.run("chr1", resume=True)

    assert run.state is PipelineState.DONE
    assert not any(result.skipped for result in run.results)
    assert [call[0] for call in orchestrator.runner.calls] == [
        "likelihoods_pop1", "likelihoods_pop2", "spectrum", "fst_index", "fst_global", "fst_windowed",
    ]
