"""
Utility functions to launch the FST pipeline as a SLURM job array (one task per chromosome).

@Date: 2025-08-05

"""

import os
import shlex
import logging
import subprocess

from src.config_utilities import read_chromosome_list

logger = logging.getLogger(__name__)

DEFAULT_MODULE_LOAD = 'ml angsd/0.935-GCC-10.2.0'

def array_range(n_tasks, throttle=None):
    """
    Value of the #SBATCH --array option for `n_tasks` tasks.

    Parameters
    ----------
    n_tasks : int
        Number of chromosomes
    throttle : int, optional
        Maximum number of tasks SLURM runs at the same time

    Returns
    -------
    str
    """
    value = f"1-{n_tasks}:1"
    if throttle:
        value += f"%{throttle}"
    return value

def array_script_generator(args, n_tasks, job_dir, streamer_path):
    """
    Write the sbatch script that runs `FstStreamer.py RunFst` for every chromosome.

    Parameters
    ----------
    args : argparse.Namespace
        Parsed SubmitFstArray arguments
    n_tasks : int
        Size of the job array (number of chromosomes in the list)
    job_dir : str
        Directory for the script and the SLURM logs
    streamer_path : str
        Path to FstStreamer.py

    Returns
    -------
    str
        Path to the job script
    """
    job_name = args.job_name
    job_script_path = os.path.join(job_dir, f"{job_name}.sh")

    run_parts = [
        args.python_executable, streamer_path, 'RunFst',
        '--window_size', str(args.window_size),
        '--step_size', str(args.step_size),
        '--chrom_list', os.path.abspath(args.chrom_list),
        '--pop1_bams', os.path.abspath(args.pop1_bams),
        '--pop2_bams', os.path.abspath(args.pop2_bams),
        '--reference', os.path.abspath(args.reference),
        '--ancestral', os.path.abspath(args.ancestral) if args.ancestral else os.path.abspath(args.reference),
        '--output', os.path.abspath(args.output),
        '--pop1_name', args.pop1_name,
        '--pop2_name', args.pop2_name,
        '--max_iter', str(args.max_iter),
        '--tolerance', str(args.tolerance),
        '--angsd_path', args.angsd_path,
        '--realsfs_path', args.realsfs_path,
    ]
    if args.resume:
        run_parts.append('--resume')
    if args.canonicalize_paths:
        run_parts.append('--canonicalize_paths')

    run_command = ' '.join(shlex.quote(part) for part in run_parts) + ' --task_index "$SLURM_ARRAY_TASK_ID"'

    with open(job_script_path, 'w') as out:
        out.write("#!/bin/bash\n")
        if args.clusters:
            out.write(f"#SBATCH --clusters={args.clusters}\n")
        out.write("#SBATCH --nodes=1\n")
        if args.exclusive:
            out.write("#SBATCH --exclusive\n")
        out.write(f"#SBATCH --array={array_range(n_tasks, args.array_throttle)}\n")
        out.write(f"#SBATCH --time={args.time_limit}\n")
        out.write(f"#SBATCH --job-name={job_name}\n")
        out.write(f"#SBATCH --partition={args.partition}\n")
        out.write(f"#SBATCH --output={os.path.join(job_dir, f'{job_name}_%A_%a.log')}\n")
        out.write(f"#SBATCH --error={os.path.join(job_dir, f'{job_name}_%A_%a.error')}\n")
        if args.email:
            out.write(f"#SBATCH --mail-user={args.email}\n")
            out.write("#SBATCH --mail-type=FAIL\n")
        out.write("\n")
        if args.module_load_cmd and args.module_load_cmd.lower() != 'none':
            out.write(f"{args.module_load_cmd}\n")
            out.write("\n")
        out.write(f"cd {shlex.quote(os.path.abspath(args.working_directory))}\n")
        out.write("\n")
        out.write(f"{run_command}\n")

    return job_script_path

def submit_array_job(job_script_path):
    """
    Submit the array script with sbatch.

    Returns
    -------
    str or None
        The SLURM job id, or None if it could not be read from the sbatch output
    """
    try:
        output = subprocess.check_output(['sbatch', job_script_path], universal_newlines=True).strip()
    except subprocess.CalledProcessError as e:
        logger.error(f"Error submitting job {job_script_path}: {e}")
        raise

    if "Submitted batch job" in output:
        job_id = output.split()[-1]
        if job_id.isdigit():
            logger.info(f"Submitted array job {job_id} from {job_script_path}")
            return job_id
        logger.warning(f"Could not extract job ID from output: {output}")
    else:
        logger.warning(f"Unexpected sbatch output: {output}")

    return None

def prepare_and_submit(args, streamer_path):
    """
    Size the job array from the chromosome list, write the script and submit it.

    Returns
    -------
    tuple
        (job script path, job id or None when not submitted)
    """
    chromosomes = read_chromosome_list(args.chrom_list)
    logger.info(f"{len(chromosomes)} chromosomes in {args.chrom_list}; one array task each")

    job_dir = os.path.abspath(args.job_dir)
    if not os.path.isdir(job_dir):
        logger.info(f'Creating the job directory {job_dir}')
        os.makedirs(job_dir, exist_ok=True)

    job_script = array_script_generator(args, len(chromosomes), job_dir, streamer_path)
    logger.info(f"Job array script written to {job_script}")

    if args.no_submit:
        logger.info(f"Not submitting. Launch it with: sbatch {job_script}")
        return job_script, None

    return job_script, submit_array_job(job_script)
