#!/usr/bin/env python3

"""
Subprogram to combine the FST outputs of all the chromosomes into one windowed table and one global table.

@Date: 2025-08-06

"""

import os
import sys
import logging

from src.errors import ConfigError
from src.postprocessing_utilities import combine_fst_results

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S'
)
logger = logging.getLogger(__name__)

def main(args):

    if not os.path.isdir(args.output):
        logger.error(f"The output directory {args.output} does not exist")
        sys.exit(1)

    try:
        return combine_fst_results(args.output, args.window_size, args.step_size,
                                   pop1_name=args.pop1_name, pop2_name=args.pop2_name,
                                   chrom_list=args.chrom_list,
                                   windowed_name=args.windowed_name,
                                   global_name=args.global_name)
    except ConfigError as e:
        logger.error(f"Invalid configuration: {e}")
        sys.exit(1)
    except OSError as e:
        logger.error(f"Could not combine the FST outputs: {e}")
        sys.exit(1)
