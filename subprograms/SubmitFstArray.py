#!/usr/bin/env python3

"""
Subprogram to write and submit the SLURM job array that runs the FST pipeline on every chromosome.

The size of the array is taken from the chromosome list, so it does not need to be edited by hand
when moving to a species with a different number of chromosomes.

@Date: 2025-08-05

"""

import os
import sys
import logging
import subprocess

from src.errors import ConfigError
from src.slurm_utilities import prepare_and_submit

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S'
)
logger = logging.getLogger(__name__)

def main(args):
    streamer_path = os.path.abspath(os.path.join(os.path.dirname(__file__), '..', 'FstStreamer.py'))

    try:
        job_script, job_id = prepare_and_submit(args, streamer_path)
    except ConfigError as e:
        logger.error(f"Invalid configuration: {e}")
        sys.exit(1)
    except subprocess.CalledProcessError as e:
        logger.error(f"sbatch failed with exit code {e.returncode}")
        sys.exit(1)
    except FileNotFoundError:
        logger.error("sbatch executable not found. Are you on a SLURM login node?")
        sys.exit(1)

    if job_id:
        logger.info(f"Array job {job_id} is running in the background. Logs will be in {args.job_dir}")

    return job_script, job_id
