#!/usr/bin/env python3

"""
Subprogram to write the chromosome list from the reference assembly, so that the names match
the reference headers exactly.

@Date: 2025-08-05

"""

import sys
import logging

from src.errors import ConfigError
from src.config_utilities import write_chromosome_list

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(levelname)s - %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S'
)

def main(args):
    try:
        n_chrom = write_chromosome_list(args.reference, args.output, only_chrom=args.chrom_level)
    except ConfigError as e:
        logging.error(str(e))
        sys.exit(1)

    logging.info(f"Use --array=1-{n_chrom}:1 when submitting the job array by hand")
    return n_chrom
