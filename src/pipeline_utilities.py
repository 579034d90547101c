"""
Set of functions and classes to run the per-chromosome FST pipeline.

The statistics are computed by angsd and realSFS; this module only prepares the working
directory, assembles the command lines and runs them one after the other:

1) allele frequency likelihoods for population 1 (angsd -doSaf 1)
2) allele frequency likelihoods for population 2
3) 2D site frequency spectrum (realSFS), folded or unfolded
4) per-site FST index (realSFS fst index)
5) global FST for the chromosome (realSFS fst stats)
6) windowed FST (realSFS fst stats2)

Each step reads the files written by the previous ones, so the first failure stops the run.

@Date: 2025-08-04

"""

import os
import logging
import subprocess
from enum import Enum
from dataclasses import dataclass, field
from typing import List, Optional

from tqdm import tqdm

from src.errors import ExternalToolError, WorkspaceError
from src.config_utilities import SpectrumMode, select_spectrum_mode

logger = logging.getLogger(__name__)

# Read filters shared by both angsd runs
ANGSD_FILTERS = [
    '-uniqueOnly', '1',
    '-remove_bads', '1',
    '-only_proper_pairs', '0',
    '-trim', '0',
    '-minMapQ', '20',
    '-minQ', '20',
    '-gl', '1',
    '-doSaf', '1',
]

# -type 2 anchors the left edge of the first window at position 1
WINDOW_TYPE = '2'

tqdm_format = '{l_bar}{bar}| {n_fmt}/{total_fmt} [{elapsed}<{remaining}]'

# ---------------------------------------------------------------------------
# Workspace
# ---------------------------------------------------------------------------

class WorkingDirectoryHandle:
    """
    Directory where the steps of one chromosome write their files.

    `previous` is the process working directory when the handle was created. When the
    handle changed into `path` (change_directory=True), restore() or leaving the `with`
    block goes back to it.
    """

    def __init__(self, path, previous, changed=False):
        self.path = path
        self.previous = previous
        self.changed = changed

    def restore(self):
        if self.changed:
            os.chdir(self.previous)
            self.changed = False

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_value, traceback):
        self.restore()
        return False

    def __repr__(self):
        return f"WorkingDirectoryHandle(path={self.path!r}, previous={self.previous!r})"

class WorkspaceManager:

    def enter(self, output_directory_name, chromosome, change_directory=False):
        """
        Ensure `output_directory_name/chromosome` exists and return a handle on it.

        Parameters
        ----------
        output_directory_name : str
            Output directory shared by all the chromosomes of a comparison (e.g. popX_vs_popY)
        chromosome : str
            Chromosome name, used as the subdirectory name
        change_directory : bool
            Also switch the process working directory into the chromosome directory

        Returns
        -------
        WorkingDirectoryHandle
        """
        if not chromosome or chromosome in ('.', '..') or os.sep in chromosome or \
                (os.altsep and os.altsep in chromosome):
            raise WorkspaceError(f"Invalid chromosome name for a directory: {chromosome!r}")

        previous = os.getcwd()
        chrom_dir = os.path.abspath(os.path.join(output_directory_name, chromosome))

        for directory in (os.path.abspath(output_directory_name), chrom_dir):
            try:
                os.makedirs(directory, exist_ok=True)
            except FileExistsError as e:
                raise WorkspaceError(f"{directory} exists and is not a directory") from e
            except OSError as e:
                raise WorkspaceError(f"Could not create {directory}: {e}") from e

        logger.info(f"Working directory for {chromosome}: {chrom_dir}")

        handle = WorkingDirectoryHandle(chrom_dir, previous)
        if change_directory:
            os.chdir(chrom_dir)
            handle.changed = True

        return handle

# ---------------------------------------------------------------------------
# External tools
# ---------------------------------------------------------------------------

@dataclass
class StepResult:
    step_name: str
    command: List[str]
    exit_code: int
    stdout_path: Optional[str] = None
    stdout: Optional[str] = None
    stderr: str = ''
    skipped: bool = False

class ExternalToolRunner:
    """
    Runs one external tool and waits for it to finish.

    There are no retries: angsd and realSFS are deterministic and run for hours. Callers
    that want a retry policy can wrap run().
    """

    def run(self, command_name, argument_list, output_redirect=None, step_name=None, cwd=None):
        """
        Run `command_name` with `argument_list`.

        Parameters
        ----------
        command_name : str
            Executable to call (e.g. 'angsd', 'realSFS' or a full path)
        argument_list : list
            Arguments, without the executable
        output_redirect : str, optional
            File that receives the standard output. Relative names resolve against `cwd`.
            The file is truncated first, so a re-run overwrites it.
        step_name : str, optional
            Name reported in the result and in errors. Defaults to `command_name`.
        cwd : str, optional
            Directory the tool runs in

        Returns
        -------
        StepResult
        """
        step_name = step_name or command_name
        cmd = [command_name] + [str(arg) for arg in argument_list]

        log_line = ' '.join(cmd)
        if output_redirect:
            log_line += f" > {output_redirect}"
        logger.info(f"[{step_name}] Running command: {log_line}")

        stdout_path = None
        try:
            if output_redirect:
                stdout_path = output_redirect
                if cwd and not os.path.isabs(stdout_path):
                    stdout_path = os.path.join(cwd, stdout_path)
                with open(stdout_path, 'w') as out_handle:
                    result = subprocess.run(cmd, cwd=cwd, stdout=out_handle, stderr=subprocess.PIPE,
                                            universal_newlines=True, errors='replace')
            else:
                result = subprocess.run(cmd, cwd=cwd, stdout=subprocess.PIPE, stderr=subprocess.PIPE,
                                        universal_newlines=True, errors='replace')
        except FileNotFoundError as e:
            # Either the executable or the working directory is missing
            logger.error(f"[{step_name}] Could not start {command_name}: {e}")
            raise ExternalToolError(step_name, command_name, 127, str(e)) from e

        if result.returncode != 0:
            logger.error(f"[{step_name}] {command_name} failed with exit code {result.returncode}")
            if result.stderr:
                logger.error(f"[{step_name}] Stderr:\n{result.stderr.strip()}")
            raise ExternalToolError(step_name, command_name, result.returncode, result.stderr)

        if result.stderr:
            # angsd and realSFS report progress on stderr
            logger.debug(f"[{step_name}] Stderr:\n{result.stderr.strip()}")

        return StepResult(step_name=step_name,
                          command=cmd,
                          exit_code=result.returncode,
                          stdout_path=stdout_path,
                          stdout=None if output_redirect else result.stdout,
                          stderr=result.stderr or '')

# ---------------------------------------------------------------------------
# Orchestration
# ---------------------------------------------------------------------------

class PipelineState(Enum):
    INIT = 'init'
    LIKELIHOODS_POP1 = 'likelihoods_pop1'
    LIKELIHOODS_POP2 = 'likelihoods_pop2'
    SPECTRUM = 'spectrum'
    FST_INDEX = 'fst_index'
    FST_GLOBAL = 'fst_global'
    FST_WINDOWED = 'fst_windowed'
    DONE = 'done'
    FAILED = 'failed'

STEP_ORDER = [
    PipelineState.LIKELIHOODS_POP1,
    PipelineState.LIKELIHOODS_POP2,
    PipelineState.SPECTRUM,
    PipelineState.FST_INDEX,
    PipelineState.FST_GLOBAL,
    PipelineState.FST_WINDOWED,
]

@dataclass
class PipelineStep:
    state: PipelineState
    command_name: str
    arguments: List[str]
    output_redirect: Optional[str]
    # File whose presence means the step already ran (used when resuming)
    artifact: str

    @property
    def name(self):
        return self.state.value

@dataclass
class PipelineRun:
    chromosome: str
    mode: SpectrumMode
    workspace: Optional[WorkingDirectoryHandle] = None
    state: PipelineState = PipelineState.INIT
    results: List[StepResult] = field(default_factory=list)
    failed_step: Optional[str] = None

    @property
    def succeeded(self):
        return self.state is PipelineState.DONE

class PipelineOrchestrator:
    """
    Drives the six tool invocations of one chromosome as a state machine.

    INIT -> LIKELIHOODS_POP1 -> LIKELIHOODS_POP2 -> SPECTRUM -> FST_INDEX -> FST_GLOBAL
    -> FST_WINDOWED -> DONE. Any failure moves the run to FAILED and no later step runs.
    """

    def __init__(self, parameters, runner=None, workspace_manager=None):
        self.parameters = parameters
        self.runner = runner or ExternalToolRunner()
        self.workspace_manager = workspace_manager or WorkspaceManager()

    def file_names(self, chromosome, mode):
        """Names of every artifact the pipeline writes for `chromosome`."""
        p = self.parameters
        pair = f"{p.pop1_name}.{p.pop2_name}.{chromosome}"
        return {
            'pop1_prefix': f"{p.pop1_name}.{chromosome}",
            'pop2_prefix': f"{p.pop2_name}.{chromosome}",
            'pop1_saf': f"{p.pop1_name}.{chromosome}.saf.idx",
            'pop2_saf': f"{p.pop2_name}.{chromosome}.saf.idx",
            'sfs': f"{pair}.{mode.label}.sfs",
            'fst_prefix': pair,
            'fst_index': f"{pair}.fst.idx",
            'global_fst': f"{pair}.global.fst",
            'windowed_fst': f"{pair}.fst.size{p.window_size}_step{p.step_size}",
        }

    def build_commands(self, chromosome, mode):
        """
        Assemble the ordered step definitions for one chromosome.

        Parameters
        ----------
        chromosome : str
            Chromosome name, exactly as in the reference
        mode : SpectrumMode
            Folded or unfolded spectrum

        Returns
        -------
        list of PipelineStep
        """
        p = self.parameters
        names = self.file_names(chromosome, mode)

        def likelihoods(state, bam_list, prefix, saf):
            args = ['-bam', bam_list, '-ref', p.reference_path, '-anc', p.ancestral_path] + \
                ANGSD_FILTERS + ['-r', chromosome, '-out', prefix]
            return PipelineStep(state, p.angsd_executable, args, None, saf)

        return [
            likelihoods(PipelineState.LIKELIHOODS_POP1, p.pop1_bam_list_path,
                        names['pop1_prefix'], names['pop1_saf']),
            likelihoods(PipelineState.LIKELIHOODS_POP2, p.pop2_bam_list_path,
                        names['pop2_prefix'], names['pop2_saf']),
            PipelineStep(PipelineState.SPECTRUM, p.realsfs_executable,
                         [names['pop1_saf'], names['pop2_saf'],
                          '-fold', mode.fold_flag,
                          '-m', '0',
                          '-maxIter', str(p.max_iterations),
                          '-tole', f"{p.tolerance:g}"],
                         names['sfs'], names['sfs']),
            PipelineStep(PipelineState.FST_INDEX, p.realsfs_executable,
                         ['fst', 'index', names['pop1_saf'], names['pop2_saf'],
                          '-sfs', names['sfs'],
                          '-fstout', names['fst_prefix']],
                         None, names['fst_index']),
            PipelineStep(PipelineState.FST_GLOBAL, p.realsfs_executable,
                         ['fst', 'stats', names['fst_index']],
                         names['global_fst'], names['global_fst']),
            PipelineStep(PipelineState.FST_WINDOWED, p.realsfs_executable,
                         ['fst', 'stats2', names['fst_index'],
                          '-win', str(p.window_size),
                          '-step', str(p.step_size),
                          '-type', WINDOW_TYPE],
                         names['windowed_fst'], names['windowed_fst']),
        ]

    def run(self, chromosome, mode=None, resume=False):
        """
        Run the whole pipeline for one chromosome.

        Parameters
        ----------
        chromosome : str
            Chromosome to process
        mode : SpectrumMode, optional
            Defaults to the mode implied by the reference and ancestral paths
        resume : bool
            Skip the leading steps whose output file already exists and is not empty. Once a
            step has to run, all the steps after it run as well.

        Returns
        -------
        PipelineRun
            The finished run (state DONE). On failure ExternalToolError is raised after the
            run has been moved to FAILED; the run is attached to the exception as `run`.
        """
        p = self.parameters
        if mode is None:
            mode = select_spectrum_mode(p.reference_path, p.ancestral_path)

        logger.info(f"Calculating FST for {chromosome} from the {mode.label} SFS")

        run = PipelineRun(chromosome=chromosome, mode=mode)
        run.workspace = self.workspace_manager.enter(p.output_directory_name, chromosome)

        steps = self.build_commands(chromosome, mode)
        # Once a step runs, every later step is stale and runs too
        reuse_outputs = resume
        for step in tqdm(steps, desc=f'FST {chromosome}', bar_format=tqdm_format):
            run.state = step.state
            artifact_path = os.path.join(run.workspace.path, step.artifact)

            if reuse_outputs and os.path.isfile(artifact_path) and os.path.getsize(artifact_path) > 0:
                logger.info(f"[{step.name}] {step.artifact} already exists, skipping")
                run.results.append(StepResult(step_name=step.name,
                                              command=[step.command_name] + step.arguments,
                                              exit_code=0,
                                              stdout_path=artifact_path if step.output_redirect else None,
                                              skipped=True))
                continue

            reuse_outputs = False
            try:
                result = self.runner.run(step.command_name, step.arguments,
                                         output_redirect=step.output_redirect,
                                         step_name=step.name,
                                         cwd=run.workspace.path)
            except ExternalToolError as e:
                run.state = PipelineState.FAILED
                run.failed_step = step.name
                e.run = run
                logger.error(f"Pipeline for {chromosome} stopped at step '{step.name}'")
                raise

            run.results.append(result)
            if result.exit_code != 0:
                # Runners are expected to raise, but a wrapped runner may only report
                run.state = PipelineState.FAILED
                run.failed_step = step.name
                error = ExternalToolError(step.name, step.command_name, result.exit_code, result.stderr)
                error.run = run
                logger.error(f"Pipeline for {chromosome} stopped at step '{step.name}'")
                raise error

        run.state = PipelineState.DONE
        logger.info(f"FST pipeline finished for {chromosome}. Results in {run.workspace.path}")
        return run
