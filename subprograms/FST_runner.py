#!/usr/bin/env python3

"""
Main subprogram to calculate FST for one chromosome of a job array.

The chromosome is picked from the chromosome list with the task index (SLURM_ARRAY_TASK_ID by
default). FST is estimated from the folded SFS if the ancestral sequence is the reference,
and from the unfolded SFS otherwise.

@Date: 2025-08-05

"""

import os
import sys
import logging

from src.errors import ConfigError, ExternalToolError, WorkspaceError
from src.config_utilities import load_job_parameters, resolve_chromosome, select_spectrum_mode
from src.pipeline_utilities import PipelineOrchestrator

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S'
)
logger = logging.getLogger(__name__)

def get_task_index(args):
    if args.task_index is not None:
        return args.task_index
    task_id = os.environ.get('SLURM_ARRAY_TASK_ID')
    if task_id is None:
        raise ConfigError("No task index given: use --task_index or run inside a SLURM job array",
                          field='task_index')
    return task_id

def main(args):
    parameters = {
        'window_size': args.window_size,
        'step_size': args.step_size,
        'chromosome_list_path': args.chrom_list,
        'pop1_bam_list_path': args.pop1_bams,
        'pop2_bam_list_path': args.pop2_bams,
        'reference_path': args.reference,
        # Without an ancestral sequence the reference is used, which gives the folded SFS
        'ancestral_path': args.ancestral or args.reference,
        'output_directory_name': args.output,
        'pop1_name': args.pop1_name,
        'pop2_name': args.pop2_name,
        'max_iterations': args.max_iter,
        'tolerance': args.tolerance,
        'angsd_executable': os.path.expanduser(args.angsd_path),
        'realsfs_executable': os.path.expanduser(args.realsfs_path),
    }

    try:
        job = load_job_parameters(parameters)
        chromosome = resolve_chromosome(get_task_index(args), job.chromosome_list_path)
    except ConfigError as e:
        logger.error(f"Invalid configuration: {e}")
        sys.exit(1)

    mode = select_spectrum_mode(job.reference_path, job.ancestral_path, canonicalize=args.canonicalize_paths)
    logger.info(f"Chromosome: {chromosome} | SFS: {mode.label} | window {job.window_size} bp, step {job.step_size} bp")

    orchestrator = PipelineOrchestrator(job)

    try:
        run = orchestrator.run(chromosome, mode=mode, resume=args.resume)
    except WorkspaceError as e:
        logger.error(f"Could not prepare the output directory: {e}")
        sys.exit(1)
    except ExternalToolError as e:
        logger.error(str(e))
        if e.stderr:
            logger.error(f"{e.command_name} stderr:\n{e.stderr.strip()}")
        sys.exit(e.process_exit_status())

    logger.info(f"Done! Outputs for {chromosome} are in {run.workspace.path}")
    return run
