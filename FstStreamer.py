#!/usr/bin/env python3
"""
FST streamer runs angsd and realSFS to estimate genome-wide and windowed FST between two
populations, one chromosome per SLURM job-array task.

@date: 2025-08-06

@version: 1.0.0

"""

import argparse

from subprograms.FST_runner import main as run_fst_main
from subprograms.SubmitFstArray import main as submit_fst_array_main
from subprograms.MakeChromList import main as make_chrom_list_main
from subprograms.CombineFst import main as combine_fst_main
from src.slurm_utilities import DEFAULT_MODULE_LOAD

def add_pipeline_arguments(parser):
    """Arguments shared by RunFst and SubmitFstArray."""

    global_group = parser.add_argument_group('Global arguments', 'Input files and output directory')
    global_group.add_argument('--chrom_list', '-c', required=True,
                              help='Chromosome names, one per line, exactly as they appear in the reference. '
                                   'Blank lines are only allowed at the end')
    global_group.add_argument('--pop1_bams', '-p1', required=True, help='List of BAM files for population 1')
    global_group.add_argument('--pop2_bams', '-p2', required=True, help='List of BAM files for population 2')
    global_group.add_argument('--reference', '-r', required=True, help='Reference assembly (fasta, can be gzipped)')
    global_group.add_argument('--ancestral', '-a', required=False, default=None,
                              help='Ancestral consensus sequence for the unfolded SFS. '
                                   'If not given (or equal to the reference) the folded SFS is used')
    global_group.add_argument('--output', '-o', required=True,
                              help='Output directory name (something sensible like popX_vs_popY)')

    naming_group = parser.add_argument_group('Naming arguments', 'Population tags used in the file names')
    naming_group.add_argument('--pop1_name', required=False, default='pop1', help='Tag for population 1')
    naming_group.add_argument('--pop2_name', required=False, default='pop2', help='Tag for population 2')

    window_group = parser.add_argument_group('Window arguments', 'Sliding window settings (bp)')
    window_group.add_argument('--window_size', '-ws', type=int, required=False, default=100000, help='Window size')
    window_group.add_argument('--step_size', '-ss', type=int, required=False, default=100000, help='Step size')

    sfs_group = parser.add_argument_group('realSFS arguments', 'EM settings for the 2D SFS')
    sfs_group.add_argument('--max_iter', type=int, required=False, default=50000,
                           help='Maximum number of EM iterations')
    sfs_group.add_argument('--tolerance', type=float, required=False, default=1e-4,
                           help='EM stops when successive likelihoods differ by less than this')

    tools_group = parser.add_argument_group('Executables', 'Paths to the external tools')
    tools_group.add_argument('--angsd_path', required=False, default='angsd', help='Path to the angsd executable')
    tools_group.add_argument('--realsfs_path', required=False, default='realSFS',
                             help='Path to the realSFS executable')

    misc_group = parser.add_argument_group('Miscellaneous arguments', 'Miscellaneous settings')
    misc_group.add_argument('--resume', action='store_true', default=False,
                            help='Skip the steps whose output file already exists')
    misc_group.add_argument('--canonicalize_paths', action='store_true', default=False,
                            help='Resolve the reference and ancestral paths before comparing them')

def main(argv=None):
    # Create the main parser
    parser = argparse.ArgumentParser(description="FST streamer: FST from the SFS with angsd and realSFS.")
    subparsers = parser.add_subparsers(dest='command', help='Subcommands')

    # --- Chromosome list ---
    chrom_list_parser = subparsers.add_parser('MakeChromList', help='Write the chromosome list from the reference')
    chrom_list_parser.add_argument('--reference', '-r', required=True, help='Reference assembly (fasta, can be gzipped)')
    chrom_list_parser.add_argument('--output', '-o', required=True, help='Output chromosome list')
    chrom_list_parser.add_argument('--chrom_level', action='store_true', default=False,
                                   help='Discard scaffolds and contigs')

    # --- One array task ---
    run_parser = subparsers.add_parser('RunFst', help='Calculate FST for the chromosome of one array task')
    add_pipeline_arguments(run_parser)
    run_parser.add_argument('--task_index', '-i', type=int, required=False, default=None,
                            help='1-based line of the chromosome list (default: $SLURM_ARRAY_TASK_ID)')

    # --- Job array submission ---
    submit_parser = subparsers.add_parser('SubmitFstArray', help='Write and submit the SLURM job array')
    add_pipeline_arguments(submit_parser)
    slurm_group = submit_parser.add_argument_group('SLURM arguments', 'Job array settings')
    slurm_group.add_argument('--job_dir', required=False, default='./Jobs', help='Directory for the job script and logs')
    slurm_group.add_argument('--job_name', required=False, default='CalcFST', help='SLURM job name')
    slurm_group.add_argument('--partition', required=False, default='long', help='SLURM partition to use')
    slurm_group.add_argument('--time_limit', required=False, default='7-00:00:00', help='Time limit per task')
    slurm_group.add_argument('--clusters', required=False, default=None, help='SLURM clusters (e.g. all)')
    slurm_group.add_argument('--exclusive', action='store_true', default=False, help='Request whole nodes')
    slurm_group.add_argument('--array_throttle', type=int, required=False, default=None,
                             help='Maximum number of tasks running at the same time')
    slurm_group.add_argument('--email', required=False, default=None,
                             help='Email address for SLURM job notifications (optional)')
    slurm_group.add_argument('--module_load_cmd', required=False, default=DEFAULT_MODULE_LOAD,
                             help='Command that makes angsd available (use "none" to skip)')
    slurm_group.add_argument('--python_executable', required=False, default='python3',
                             help='Python used inside the job')
    slurm_group.add_argument('--working_directory', '-w', required=False, default='.',
                             help='Directory the tasks run from')
    slurm_group.add_argument('--no_submit', action='store_true', default=False,
                             help='Only write the job script')

    # --- Combine results ---
    combine_parser = subparsers.add_parser('CombineFst', help='Combine the FST outputs of all chromosomes')
    combine_parser.add_argument('--output', '-o', required=True, help='Output directory of the pipeline')
    combine_parser.add_argument('--window_size', '-ws', type=int, required=False, default=100000, help='Window size')
    combine_parser.add_argument('--step_size', '-ss', type=int, required=False, default=100000, help='Step size')
    combine_parser.add_argument('--pop1_name', required=False, default='pop1', help='Tag for population 1')
    combine_parser.add_argument('--pop2_name', required=False, default='pop2', help='Tag for population 2')
    combine_parser.add_argument('--chrom_list', '-c', required=False, default=None,
                                help='Chromosome list, sets the order of the rows')
    combine_parser.add_argument('--windowed_name', required=False, default='windowed_fst.tsv',
                                help='Name of the combined windowed table')
    combine_parser.add_argument('--global_name', required=False, default='global_fst.tsv',
                                help='Name of the per-chromosome global table')

    # Parse arguments
    args = parser.parse_args(argv)

    # Execute the appropriate subcommand
    if args.command == 'MakeChromList':
        make_chrom_list_main(args)
    elif args.command == 'RunFst':
        run_fst_main(args)
    elif args.command == 'SubmitFstArray':
        submit_fst_array_main(args)
    elif args.command == 'CombineFst':
        combine_fst_main(args)
    else:
        parser.print_help()

if __name__ == "__main__":
    main()
