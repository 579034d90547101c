import os
import stat
from pathlib import Path

import pytest

from src.config_utilities import load_job_parameters

FAKE_ANGSD = """#!/bin/sh
echo "angsd $*" >> "$FAKE_TOOL_LOG"
if [ -n "$FAKE_ANGSD_FAIL" ]; then
    echo "angsd: could not open bam list" >&2
    exit "$FAKE_ANGSD_FAIL"
fi
out=""
while [ $# -gt 0 ]; do
    if [ "$1" = "-out" ]; then out="$2"; fi
    shift
done
echo "saf" > "$out.saf.idx"
echo "saf" > "$out.saf.gz"
"""

FAKE_REALSFS = """#!/bin/sh
echo "realSFS $*" >> "$FAKE_TOOL_LOG"
if [ "$1" = "fst" ]; then
    case "$2" in
        index)
            prefix=""
            while [ $# -gt 0 ]; do
                if [ "$1" = "-fstout" ]; then prefix="$2"; fi
                shift
            done
            echo "idx" > "$prefix.fst.idx"
            ;;
        stats)
            printf '0.012000\\t0.045000\\n'
            ;;
        stats2)
            printf 'region\\tchr\\tmidPos\\tNsites\\n'
            printf '(0,9)(1,100000)(1,100000)\\tchrA\\t50000\\t900\\t0.04\\n'
            printf '(10,19)(100001,200000)(100001,200000)\\tchrA\\t150000\\t100\\t0.14\\n'
            ;;
    esac
else
    if [ -n "$FAKE_REALSFS_FAIL" ]; then
        echo "realSFS: EM did not converge" >&2
        exit 3
    fi
    echo "0.9 0.05 0.05"
fi
"""

def _write_executable(path: Path, content: str) -> Path:
    path.write_text(content, encoding="utf-8")
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return path

@pytest.fixture
def fake_tools(tmp_path: Path, monkeypatch):
    """angsd and realSFS stand-ins that log their calls and write the expected files."""
    bin_dir = tmp_path / "bin"
    bin_dir.mkdir()
    log = tmp_path / "tool_calls.log"
    monkeypatch.setenv("FAKE_TOOL_LOG", str(log))
    monkeypatch.delenv("FAKE_ANGSD_FAIL", raising=False)
    monkeypatch.delenv("FAKE_REALSFS_FAIL", raising=False)
    return {
        "angsd": str(_write_executable(bin_dir / "angsd", FAKE_ANGSD)),
        "realSFS": str(_write_executable(bin_dir / "realSFS", FAKE_REALSFS)),
        "log": log,
    }

@pytest.fixture
def chrom_list(tmp_path: Path) -> Path:
    path = tmp_path / "chroms.txt"
    path.write_text("chr1\nchr2\nchr3\n", encoding="utf-8")
    return path

@pytest.fixture
def raw_parameters(tmp_path: Path, chrom_list: Path) -> dict:
    return {
        "window_size": 100000,
        "step_size": 100000,
        "chromosome_list_path": str(chrom_list),
        "pop1_bam_list_path": "/data/pop1.bamlist",
        "pop2_bam_list_path": "/data/pop2.bamlist",
        "reference_path": "/ref.fasta.gz",
        "ancestral_path": "/ref.fasta.gz",
        "output_directory_name": str(tmp_path / "pop1_vs_pop2"),
    }

@pytest.fixture
def job_parameters(raw_parameters):
    return load_job_parameters(raw_parameters)

@pytest.fixture
def tool_calls(fake_tools):
    """Lines logged by the fake tools, one per invocation."""
    def _read():
        log = fake_tools["log"]
        if not os.path.exists(log):
            return []
        return log.read_text(encoding="utf-8").splitlines()
    return _read
