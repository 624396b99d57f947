#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
PECAN classification and count-table annotation requests.

Only argument assembly lives here; execution goes through ``tool_runner``.

Annotation branches
-------------------
- ``pecan+silva``: combine_tx_for_ASV.pl with PECAN and SILVA results
  (chosen when --pecan-silva is set).
- ``pecan``: PECAN_tx_for_ASV.pl with PECAN results only (default).
- ``silva``: combine_tx_for_ASV.pl with SILVA results only. Runs for the V4
  region *in addition to* whichever of the two branches above was chosen.

The first two pass ``--vaginal`` unless --notVaginal is set.
"""

from __future__ import annotations

from pathlib import Path
from typing import List

from tool_runner import ToolRequest


PECAN_REGION = "V3V4"
SILVA_ONLY_REGION = "V4"
PECAN_RESULTS = "MC_order7_results.txt"

BRANCH_PECAN_SILVA = "pecan+silva"
BRANCH_PECAN = "pecan"
BRANCH_SILVA = "silva"


def uses_pecan(region: str) -> bool:
    """True when the region has PECAN models and sequences are classified."""
    return region == PECAN_REGION


def pecan_classify_request(
    *, classify_binary: str, models_dir: str, fasta: str, work_dir: Path
) -> ToolRequest:
    """Build the PECAN ``classify`` call; results land in ``work_dir``."""
    return ToolRequest(
        executable=classify_binary,
        args=("-d", models_dir, "-i", fasta, "-o", "."),
        cwd=work_dir,
    )


def select_annotation_branches(*, region: str, pecan_silva: bool) -> List[str]:
    """
    Return the annotation branches to run, in order.

    Exactly one of ``pecan+silva`` / ``pecan`` is always selected; ``silva``
    is appended for the V4 region.
    """
    branches = [BRANCH_PECAN_SILVA if pecan_silva else BRANCH_PECAN]
    if region == SILVA_ONLY_REGION:
        branches.append(BRANCH_SILVA)
    return branches


def annotation_request(
    *,
    branch: str,
    pecan_results: str,
    silva_csv: str,
    abundance_csv: str,
    not_vaginal: bool,
    combine_script: str,
    pecan_script: str,
    work_dir: Path,
) -> ToolRequest:
    """
    Build the annotator call for one branch.

    Raises
    ------
    ValueError
        If ``branch`` is not a known branch name.
    """
    if branch == BRANCH_PECAN_SILVA:
        executable = combine_script
        args = ["-p", pecan_results, "-s", silva_csv, "-c", abundance_csv]
    elif branch == BRANCH_PECAN:
        executable = pecan_script
        args = ["-p", pecan_results, "-c", abundance_csv]
    elif branch == BRANCH_SILVA:
        return ToolRequest(
            executable=combine_script,
            args=("-s", silva_csv, "-c", abundance_csv),
            cwd=work_dir,
        )
    else:
        raise ValueError(f"Unknown annotation branch: {branch}")

    if not not_vaginal:
        args.append("--vaginal")
    return ToolRequest(executable=executable, args=tuple(args), cwd=work_dir)
