#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Table helpers for the part 2 dada2 runner.

Covers the small amount of tabular work done on the Python side:

- reading whitespace-delimited dada2 stats files (sample ID -> read counts);
- merging tables the same way the embedded R procedure merges per-run
  abundance tables (union of samples and ASVs, zero-fill, ASV columns
  ordered by descending total count);
- reading the ASV FASTA and checking that the merged table, the FASTA and
  the classification tables all describe the same ASVs, and that R wrote
  the merged ASV columns in descending-total order;
- writing the per-sample read-survival table.

All tables written here are tab-separated.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence

import pandas as pd


def _is_int(token: str) -> bool:
    try:
        int(token)
    except ValueError:
        return False
    return True


def read_stats_table(
    path: Path, *, value_names: Optional[Sequence[str]] = None
) -> pd.DataFrame:
    """
    Read a whitespace-delimited stats file into a DataFrame.

    The first token of each line is the sample ID and the remaining tokens
    are integer read counts. A header line (any line whose value tokens are
    not all integers) is tolerated; R's ``write.table`` omits the row-name
    column from the header, so a header may be one token shorter than the
    data rows.

    Parameters
    ----------
    path : pathlib.Path
        Stats file to read.
    value_names : sequence of str, optional
        Names for the count columns. Overrides any header in the file.

    Returns
    -------
    pandas.DataFrame
        Index ``SampleID``, one int64 column per count.

    Raises
    ------
    FileNotFoundError
        If ``path`` does not exist.
    ValueError
        If the file has no sample rows or the rows disagree in width.
    """
    path = Path(path)
    header: Optional[List[str]] = None
    rows: Dict[str, List[int]] = {}
    width: Optional[int] = None

    with path.open("r", encoding="utf-8", errors="replace") as fh:
        for line in fh:
            tokens = line.split()
            if not tokens:
                continue
            values = tokens[1:]
            if not values or not all(_is_int(t) for t in values):
                if rows:
                    raise ValueError(f"Unexpected non-numeric row in {path}: {line.strip()}")
                header = tokens
                continue
            if width is None:
                width = len(values)
            elif len(values) != width:
                raise ValueError(
                    f"Inconsistent column count in {path}: expected {width}, got {len(values)}"
                )
            rows[tokens[0]] = [int(t) for t in values]

    if not rows or width is None:
        raise ValueError(f"No sample rows found in stats file: {path}")

    if value_names is not None:
        names = list(value_names)
    elif header is not None and len(header) == width:
        names = header
    elif header is not None and len(header) == width + 1:
        names = header[1:]
    elif width == 1:
        names = ["reads"]
    else:
        names = [f"reads_{i}" for i in range(1, width + 1)]
    if len(names) != width:
        raise ValueError(f"{len(names)} column names given for {width} columns in {path}")

    df = pd.DataFrame.from_dict(rows, orient="index", columns=names).astype("int64")
    df.index.name = "SampleID"
    return df


# ----------------------------- merging ----------------------------- #

def order_columns_by_abundance(table: pd.DataFrame) -> pd.DataFrame:
    """
    Return ``table`` with columns sorted by descending column total.

    Ties keep their current relative order (stable sort), so repeated runs
    on the same inputs give the same column order.
    """
    totals = table.sum(axis=0)
    order = totals.sort_values(ascending=False, kind="stable").index
    return table.loc[:, order]


def merge_abundance_tables(
    tables: Sequence[pd.DataFrame], *, order_by_abundance: bool = True
) -> pd.DataFrame:
    """
    Merge sample x ASV count tables from several runs.

    The merged table holds the union of samples (rows) and ASVs (columns) in
    discovery order; cells a run did not cover are zero. A sample ID present
    in more than one run is collapsed into one row by summing its counts.
    Unless ``order_by_abundance`` is False, columns are then ordered by
    descending total count across all samples.

    Parameters
    ----------
    tables : sequence of pandas.DataFrame
        Per-run count tables (rows = samples, columns = ASV sequences).
    order_by_abundance : bool
        Sort columns by descending total (default True).

    Returns
    -------
    pandas.DataFrame
        Merged int64 count table.

    Raises
    ------
    ValueError
        If no tables are given.
    """
    if not tables:
        raise ValueError("No tables to merge.")

    index_name = tables[0].index.name
    combined = pd.concat(list(tables), axis=0, sort=False)
    combined = combined.fillna(0).astype("int64")
    merged = combined.groupby(level=0, sort=False).sum()
    merged.index.name = index_name

    if order_by_abundance:
        merged = order_columns_by_abundance(merged)
    return merged


# ----------------------------- ASV checks ----------------------------- #

def read_asv_fasta(fasta: Path) -> List[str]:
    """
    Return the ASV sequences of a FASTA written by the merge procedure.

    Each record's header is the sequence itself, so the header token (up to
    the first whitespace) is returned for every record, in file order.
    """
    ids: List[str] = []
    with Path(fasta).open("r", encoding="utf-8", errors="replace") as fh:
        for line in fh:
            line = line.rstrip("\n\r")
            if line.startswith(">"):
                ids.append(line[1:].split()[0] if line[1:].strip() else "")
    return ids


def check_abundance_order(table: pd.DataFrame, *, source: object = "table") -> None:
    """
    Raise ``ValueError`` unless ASV columns are in descending-total order.

    A stable re-sort of a correctly ordered table leaves it unchanged, so the
    table is compared against ``order_columns_by_abundance`` of itself.
    """
    expected = list(order_columns_by_abundance(table).columns)
    actual = list(table.columns)
    if expected != actual:
        pos = next(i for i, (a, b) in enumerate(zip(actual, expected)) if a != b)
        totals = table.sum(axis=0)
        raise ValueError(
            f"ASV columns in {source} are not ordered by descending total: "
            f"column {pos + 1} has total {totals[actual[pos]]}, "
            f"expected {totals[expected[pos]]}"
        )


def read_abundance_csv(csv_path: Path) -> pd.DataFrame:
    """Read the merged abundance CSV written by R (samples as row names)."""
    df = pd.read_csv(csv_path, index_col=0)
    df.index = df.index.astype(str)
    df.index.name = "SampleID"
    return df


def read_classification_asvs(csv_path: Path) -> List[str]:
    """Return the ASV sequences (row names) of a classification CSV."""
    df = pd.read_csv(csv_path, index_col=0)
    return [str(x) for x in df.index]


def check_asv_consistency(
    *,
    abundance_csv: Path,
    fasta: Path,
    classification_csvs: Iterable[Path] = (),
    logger: Optional[logging.Logger] = None,
) -> int:
    """
    Verify that every artefact references the same set of ASVs and that the
    merged table's ASV columns are ordered by descending total count.

    Parameters
    ----------
    abundance_csv : pathlib.Path
        Merged, chimera-free abundance table (ASVs are columns).
    fasta : pathlib.Path
        ASV FASTA written alongside it.
    classification_csvs : iterable of pathlib.Path
        Classification tables (ASVs are row names).
    logger : logging.Logger, optional
        Receives a short summary.

    Returns
    -------
    int
        Number of ASVs.

    Raises
    ------
    ValueError
        If any artefact's ASV set differs from the abundance table's, or the
        table's columns are out of order.
    """
    table = read_abundance_csv(abundance_csv)
    check_abundance_order(table, source=abundance_csv)
    reference = set(str(c) for c in table.columns)

    others = {str(fasta): set(read_asv_fasta(fasta))}
    for csv_path in classification_csvs:
        others[str(csv_path)] = set(read_classification_asvs(csv_path))

    for name, asvs in others.items():
        if asvs != reference:
            missing = len(reference - asvs)
            extra = len(asvs - reference)
            raise ValueError(
                f"ASV set in {name} does not match {abundance_csv}: "
                f"{missing} missing, {extra} unexpected"
            )

    if logger is not None:
        logger.info(
            "ASV check passed: %d ASVs across %d samples in %d files",
            len(reference), len(table.index), len(others) + 1,
        )
    return len(reference)


# ----------------------------- read survival ----------------------------- #

def combine_read_stats(
    *,
    part1_stats: Sequence[Path],
    part2_stats: Path,
    logger: Optional[logging.Logger] = None,
) -> pd.DataFrame:
    """
    Join per-run part 1 stats with the post-chimera-removal totals.

    Samples from all runs are combined first (union, duplicates summed);
    the ``nonchimeric`` column is then attached. A sample missing from the
    part 2 stats is reported and given 0.
    """
    part1 = merge_abundance_tables(
        [read_stats_table(p) for p in part1_stats], order_by_abundance=False
    )
    part2 = read_stats_table(part2_stats, value_names=["nonchimeric"])

    absent = [sid for sid in part1.index if sid not in part2.index]
    if absent and logger is not None:
        for sid in absent:
            logger.warning("%s not present in %s", sid, part2_stats)

    combined = part1.join(part2, how="left", rsuffix="_part2")
    combined = combined.fillna(0).astype("int64")
    combined.index.name = "SampleID"
    return combined


def write_read_stats(*, stats: pd.DataFrame, out_path: Path) -> Path:
    """Write the read-survival table as TSV with a ``SampleID`` column."""
    out_path = Path(out_path)
    out_path.parent.mkdir(parents=True, exist_ok=True)
    stats.to_csv(out_path, sep="\t", index_label="SampleID")
    return out_path
