"""
Set of functions to postprocess the output files after running the FST pipeline on every chromosome

@Date: 2025-08-06

"""

import os
import logging

import numpy as np
import pandas as pd
from tqdm import tqdm

from src.config_utilities import read_chromosome_list

logger = logging.getLogger(__name__)

# realSFS fst stats2 writes a 4-name header over 5 data columns
WINDOW_COLUMNS = ['region', 'chr', 'midPos', 'Nsites', 'Fst']

def read_windowed_fst(windowed_file):
    """
    Read the sliding window table written by `realSFS fst stats2`.

    Parameters
    ----------
    windowed_file : str
        Path to the pop1.pop2.<chrom>.fst.size<W>_step<S> file

    Returns
    -------
    pandas.DataFrame
        Columns region, chr, midPos, Nsites, Fst
    """
    df = pd.read_csv(windowed_file, sep='\t', header=None, skiprows=1, names=WINDOW_COLUMNS,
                     dtype={'region': str, 'chr': str})
    df = df.dropna(subset=['Fst'])
    df['midPos'] = df['midPos'].astype(int)
    df['Nsites'] = df['Nsites'].astype(int)
    return df

def read_global_fst(global_file):
    """
    Read the output of `realSFS fst stats`: one line with the unweighted and weighted FST.

    Returns
    -------
    tuple of float
        (unweighted, weighted)
    """
    df = pd.read_csv(global_file, sep=r'\s+', header=None, nrows=1)
    if df.shape[1] < 2:
        raise ValueError(f"Unexpected format in {global_file}: expected two FST values")
    return float(df.iloc[0, 0]), float(df.iloc[0, 1])

def _has_content(path):
    return os.path.isfile(path) and os.path.getsize(path) > 0

def weighted_fst(windows):
    """Mean window FST weighted by the number of sites in each window."""
    if windows.empty or windows['Nsites'].sum() == 0:
        return np.nan
    return float(np.average(windows['Fst'], weights=windows['Nsites']))

def combine_fst_results(output_dir, window_size, step_size, pop1_name='pop1', pop2_name='pop2',
                        chrom_list=None, windowed_name='windowed_fst.tsv', global_name='global_fst.tsv'):
    """
    Combine the per-chromosome FST outputs into two tables.

    Parameters
    ----------
    output_dir : str
        Output directory of the pipeline (one subdirectory per chromosome)
    window_size : int
        Window size used in the run, part of the windowed file names
    step_size : int
        Step size used in the run
    pop1_name : str
        Tag of population 1 in the file names
    pop2_name : str
        Tag of population 2 in the file names
    chrom_list : str, optional
        Chromosome list; sets the order of the rows. Defaults to the sorted subdirectories.
    windowed_name : str
        Name of the combined windowed table, written inside `output_dir`
    global_name : str
        Name of the per-chromosome global table, written inside `output_dir`

    Returns
    -------
    tuple of pandas.DataFrame
        (windowed table, global table)
    """
    if chrom_list:
        chromosomes = read_chromosome_list(chrom_list)
    else:
        chromosomes = sorted(d for d in os.listdir(output_dir) if os.path.isdir(os.path.join(output_dir, d)))

    windows_list = []
    global_rows = []

    for chrom in tqdm(chromosomes, desc='Combining chromosomes'):
        prefix = os.path.join(output_dir, chrom, f"{pop1_name}.{pop2_name}.{chrom}")
        windowed_file = f"{prefix}.fst.size{window_size}_step{step_size}"
        global_file = f"{prefix}.global.fst"

        # A task killed during a redirected step leaves an empty file behind
        if not _has_content(windowed_file) or not _has_content(global_file):
            logger.warning(f"Missing or empty FST outputs for {chrom}, skipping it")
            continue

        try:
            windows = read_windowed_fst(windowed_file)
            unweighted, weighted = read_global_fst(global_file)
        except (pd.errors.EmptyDataError, ValueError) as e:
            logger.warning(f"Could not read the FST outputs for {chrom} ({e}), skipping it")
            continue

        windows_list.append(windows)
        global_rows.append({
            'chromosome': chrom,
            'fst_unweighted': unweighted,
            'fst_weighted': weighted,
            'n_windows': len(windows),
            'n_sites': int(windows['Nsites'].sum()),
        })

    if windows_list:
        combined_windows = pd.concat(windows_list, ignore_index=True)
    else:
        combined_windows = pd.DataFrame(columns=WINDOW_COLUMNS)

    global_df = pd.DataFrame(global_rows, columns=['chromosome', 'fst_unweighted', 'fst_weighted',
                                                   'n_windows', 'n_sites'])

    if global_rows:
        genome_row = pd.DataFrame([{
            'chromosome': 'genome_wide',
            'fst_unweighted': np.nan,
            'fst_weighted': weighted_fst(combined_windows),
            'n_windows': len(combined_windows),
            'n_sites': int(combined_windows['Nsites'].sum()),
        }])
        global_df = pd.concat([global_df, genome_row], ignore_index=True)
        logger.info(f"Genome-wide FST (window average weighted by sites): {genome_row['fst_weighted'].iloc[0]:.6f}")
    else:
        logger.warning(f"No FST outputs found in {output_dir}")

    combined_windows.to_csv(os.path.join(output_dir, windowed_name), sep='\t', index=False)
    global_df.to_csv(os.path.join(output_dir, global_name), sep='\t', index=False)

    logger.info(f"Combined {len(global_rows)} chromosomes into {windowed_name} and {global_name}")
    return combined_windows, global_df
