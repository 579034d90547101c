"""
Set of functions to prepare the inputs of the FST pipeline before any external tool runs.

It covers the chromosome list (reading it, resolving the chromosome of a job-array task
and building it from the reference assembly), the validation of the job parameters and
the choice between the folded and the unfolded site frequency spectrum.

@Date: 2025-08-04

"""

import os
import gzip
import logging
import argparse
from enum import Enum
from dataclasses import dataclass

import pandas as pd
from Bio import SeqIO

from src.errors import ConfigError

logger = logging.getLogger(__name__)

REQUIRED_PATHS = [
    'chromosome_list_path',
    'pop1_bam_list_path',
    'pop2_bam_list_path',
    'reference_path',
    'ancestral_path',
    'output_directory_name',
]

class SpectrumMode(Enum):
    FOLDED = 'folded'
    UNFOLDED = 'unfolded'

    @property
    def fold_flag(self):
        """Value passed to realSFS -fold."""
        return '1' if self is SpectrumMode.FOLDED else '0'

    @property
    def label(self):
        return self.value

@dataclass(frozen=True)
class JobParameters:
    window_size: int
    step_size: int
    chromosome_list_path: str
    pop1_bam_list_path: str
    pop2_bam_list_path: str
    reference_path: str
    ancestral_path: str
    output_directory_name: str
    pop1_name: str = 'pop1'
    pop2_name: str = 'pop2'
    max_iterations: int = 50000
    tolerance: float = 1e-4
    angsd_executable: str = 'angsd'
    realsfs_executable: str = 'realSFS'

def read_chromosome_list(chromosome_list_path):
    """
    Read the chromosome names, one per line, in the order that defines the task indices.

    Parameters
    ----------
    chromosome_list_path : str
        Path to the chromosome list. Names must match the reference headers exactly.

    Returns
    -------
    list
        Chromosome names. Blank lines are only allowed at the end of the file, since
        line i is the chromosome of task i.
    """
    try:
        with open(chromosome_list_path, 'r') as handle:
            lines = [line.strip() for line in handle]
    except OSError as e:
        raise ConfigError(f"Cannot read the chromosome list {chromosome_list_path}: {e}",
                          field='chromosome_list_path') from e

    while lines and not lines[-1]:
        lines.pop()

    if '' in lines:
        raise ConfigError(f"Blank line {lines.index('') + 1} in the chromosome list {chromosome_list_path} "
                          f"would shift the task indices of the chromosomes after it",
                          field='chromosome_list_path')
    chromosomes = lines

    if not chromosomes:
        raise ConfigError(f"The chromosome list {chromosome_list_path} is empty",
                          field='chromosome_list_path')

    seen = set()
    for chrom in chromosomes:
        if chrom in seen:
            raise ConfigError(f"Chromosome '{chrom}' is listed more than once in {chromosome_list_path}",
                              field='chromosome_list_path')
        seen.add(chrom)

    return chromosomes

def resolve_chromosome(task_index, chromosome_list_path):
    """
    Map a 1-based job-array task index to its chromosome.

    Parameters
    ----------
    task_index : int
        Task index as given by SLURM_ARRAY_TASK_ID
    chromosome_list_path : str
        Path to the chromosome list

    Returns
    -------
    str
        The chromosome on line `task_index` of the list
    """
    index = _as_positive_int(task_index, 'task_index')
    chromosomes = read_chromosome_list(chromosome_list_path)

    if index > len(chromosomes):
        raise ConfigError(f"Task index {index} is out of range: {chromosome_list_path} lists "
                          f"{len(chromosomes)} chromosomes", field='task_index')

    return chromosomes[index - 1]

def _as_positive_int(value, field):
    if isinstance(value, bool):
        raise ConfigError(f"{field} must be a positive integer, got {value!r}", field=field)
    if isinstance(value, float):
        if not value.is_integer():
            raise ConfigError(f"{field} must be a positive integer, got {value!r}", field=field)
        value = int(value)
    elif isinstance(value, str):
        try:
            value = int(value.strip())
        except ValueError:
            raise ConfigError(f"{field} must be a positive integer, got {value!r}", field=field) from None
    elif not isinstance(value, int):
        raise ConfigError(f"{field} must be a positive integer, got {value!r}", field=field)

    if value <= 0:
        raise ConfigError(f"{field} must be a positive integer, got {value}", field=field)

    return value

def _as_non_empty_str(value, field):
    if value is None or not isinstance(value, (str, os.PathLike)) or not str(value).strip():
        raise ConfigError(f"{field} is required and cannot be empty", field=field)
    return str(value)

def load_job_parameters(parameters):
    """
    Validate the raw job settings and freeze them into a JobParameters instance.

    Fields are checked in a fixed order and the first invalid one is reported.

    Parameters
    ----------
    parameters : dict or argparse.Namespace
        Raw settings, usually the parsed command line

    Returns
    -------
    JobParameters
    """
    if isinstance(parameters, argparse.Namespace):
        parameters = vars(parameters)

    values = {
        'window_size': _as_positive_int(parameters.get('window_size'), 'window_size'),
        'step_size': _as_positive_int(parameters.get('step_size'), 'step_size'),
    }

    for field in REQUIRED_PATHS:
        values[field] = _as_non_empty_str(parameters.get(field), field)

    optional = {
        'pop1_name': parameters.get('pop1_name') or JobParameters.pop1_name,
        'pop2_name': parameters.get('pop2_name') or JobParameters.pop2_name,
        'angsd_executable': parameters.get('angsd_executable') or JobParameters.angsd_executable,
        'realsfs_executable': parameters.get('realsfs_executable') or JobParameters.realsfs_executable,
    }
    for field, value in optional.items():
        values[field] = _as_non_empty_str(value, field)

    if values['pop1_name'] == values['pop2_name']:
        raise ConfigError("pop1_name and pop2_name must be different, otherwise the likelihood "
                          "files overwrite each other", field='pop2_name')

    max_iterations = parameters.get('max_iterations')
    values['max_iterations'] = (JobParameters.max_iterations if max_iterations is None
                                else _as_positive_int(max_iterations, 'max_iterations'))

    tolerance = parameters.get('tolerance')
    if tolerance is None:
        tolerance = JobParameters.tolerance
    try:
        tolerance = float(tolerance)
    except (TypeError, ValueError):
        raise ConfigError(f"tolerance must be a positive number, got {tolerance!r}", field='tolerance') from None
    if not tolerance > 0:
        raise ConfigError(f"tolerance must be a positive number, got {tolerance}", field='tolerance')
    values['tolerance'] = tolerance

    return JobParameters(**values)

def select_spectrum_mode(reference_path, ancestral_path, canonicalize=False):
    """
    Folded SFS when the ancestral sequence is the reference itself, unfolded otherwise.

    The comparison is an exact string match unless `canonicalize` is set, in which case
    both paths are resolved first (symlinks, relative spellings).
    """
    if canonicalize:
        reference_path = os.path.realpath(reference_path)
        ancestral_path = os.path.realpath(ancestral_path)

    if reference_path == ancestral_path:
        return SpectrumMode.FOLDED
    return SpectrumMode.UNFOLDED

def _open_fasta(fasta_file):
    if fasta_file.endswith('.gz'):
        return gzip.open(fasta_file, 'rt')
    return open(fasta_file, 'r')

def get_reference_chromosomes(reference, only_chrom=False):
    """
    List the sequence names of the reference assembly in file order.

    Uses the samtools index (`<reference>.fai`) when it exists, otherwise parses the FASTA.

    Parameters
    ----------
    reference : str
        Reference assembly in fasta format, optionally gzipped
    only_chrom : bool
        If True, scaffolds and contigs are discarded.

    Returns
    -------
    list
    """
    fai_file = reference + '.fai'

    if os.path.isfile(fai_file):
        logger.info(f"Reading sequence names from the index {fai_file}")
        fai = pd.read_csv(fai_file, sep='\t', header=None, usecols=[0], dtype=str)
        names = fai[0].tolist()
    else:
        logger.info(f"Reading sequence names from {reference}")
        with _open_fasta(reference) as handle:
            names = [record.id for record in SeqIO.parse(handle, 'fasta')]

    if only_chrom:
        names = [name for name in names if 'scaffold' not in name.lower() and 'contig' not in name.lower()]

    return names

def write_chromosome_list(reference, output_file, only_chrom=False):
    """
    Write the chromosome list used by the job array from the reference assembly.

    Returns
    -------
    int
        Number of chromosomes written (i.e. the size of the job array)
    """
    names = get_reference_chromosomes(reference, only_chrom)
    if not names:
        raise ConfigError(f"No sequences found in {reference}", field='reference_path')

    output_dir = os.path.dirname(output_file)
    if output_dir and not os.path.exists(output_dir):
        os.makedirs(output_dir)

    with open(output_file, 'w') as out:
        for name in names:
            out.write(name + '\n')

    logger.info(f"Wrote {len(names)} chromosome names to {output_file}")
    return len(names)
