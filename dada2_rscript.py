#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Embedded R/dada2 procedure for merging runs and classifying ASVs.

The procedure is rendered to a script in the working directory and run with
``R CMD BATCH``. It:

1) reads every staged per-run abundance table (.rds) and stats file;
2) merges the tables (union of samples and ASVs, zero-fill, duplicate
   sample IDs summed, ASVs ordered by descending total count);
3) removes chimeras with ``removeBimeraDenovo`` (default method 'consensus');
4) assigns taxonomy with ``assignTaxonomy`` against the SILVA training set
   (and, optionally, an RDP training set);
5) writes the merged table (.rds and .csv), the classification CSV(s), and
   the ASV FASTA (header and body are both the sequence);
6) writes per-sample non-chimeric read totals.
"""

from __future__ import annotations

from pathlib import Path
from typing import Optional, Sequence


MERGED_RDS = "all_runs_dada2_abundance_table.rds"
MERGED_CSV = "all_runs_dada2_abundance_table.csv"
SILVA_CSV = "silva_classification.csv"
RDP_CSV = "rdp_classification.csv"
ASV_FASTA = "all_runs_dada2_ASV.fasta"
PART2_STATS = "dada2_part2_stats.txt"


def _r_string(value: str) -> str:
    """Quote a Python string as an R string literal."""
    escaped = str(value).replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


def _r_vector(values: Sequence[str]) -> str:
    return "c(" + ", ".join(_r_string(v) for v in values) + ")"


def render_merge_and_classify(
    *,
    tables: Sequence[str],
    stats: Sequence[str],
    silva_train_set: str,
    rdp_train_set: Optional[str] = None,
    chimera_method: str = "consensus",
    multithread: bool = True,
) -> str:
    """
    Render the R merge-and-classify procedure.

    Parameters
    ----------
    tables : sequence of str
        Staged abundance tables, relative to the working directory.
    stats : sequence of str
        Staged part 1 stats files, relative to the working directory.
    silva_train_set : str
        SILVA training set for ``assignTaxonomy``.
    rdp_train_set : str, optional
        RDP training set; when given, ``rdp_classification.csv`` is written.
    chimera_method : str
        ``removeBimeraDenovo`` method.
    multithread : bool
        Passed to the dada2 calls.

    Returns
    -------
    str
        R source text.

    Raises
    ------
    ValueError
        If no tables are given.
    """
    if not tables:
        raise ValueError("At least one staged abundance table is required.")

    mt = "TRUE" if multithread else "FALSE"
    rdp_block = ""
    if rdp_train_set:
        rdp_block = (
            f"rdp <- assignTaxonomy(seqtab, {_r_string(rdp_train_set)}, multithread={mt})\n"
            f"write.csv(rdp, {_r_string(RDP_CSV)}, quote=FALSE)\n"
        )

    return f"""\
library("dada2")
packageVersion("dada2")

tables <- {_r_vector(tables)}
stats <- {_r_vector(stats)}

runs <- vector("list", length(tables))
names(runs) <- tables
for(run in tables) {{
  cat("Reading in:", run, "\\n")
  runs[[run]] <- readRDS(run)
}}

runstats <- vector("list", length(stats))
names(runstats) <- stats
for(run in stats) {{
  cat("Reading in:", run, "\\n")
  runstats[[run]] <- read.table(run, header=FALSE, fill=TRUE)
}}

unqs <- unique(c(lapply(runs, colnames), recursive=TRUE))
smps <- unique(c(lapply(runs, rownames), recursive=TRUE))
st <- matrix(0L, nrow=length(smps), ncol=length(unqs))
rownames(st) <- smps
colnames(st) <- unqs
for(sti in runs) {{
  st[rownames(sti), colnames(sti)] <- st[rownames(sti), colnames(sti)] + sti
}}
st <- st[, order(-colSums(st), seq_len(ncol(st))), drop=FALSE]

seqtab <- removeBimeraDenovo(st, method={_r_string(chimera_method)}, multithread={mt})
silva <- assignTaxonomy(seqtab, {_r_string(silva_train_set)}, multithread={mt})
{rdp_block}
saveRDS(seqtab, {_r_string(MERGED_RDS)})
write.csv(seqtab, {_r_string(MERGED_CSV)}, quote=FALSE)
write.csv(silva, {_r_string(SILVA_CSV)}, quote=FALSE)

fc <- file({_r_string(ASV_FASTA)})
fltp <- character()
for(i in seq_len(ncol(seqtab))) {{
  fltp <- append(fltp, paste0(">", colnames(seqtab)[i]))
  fltp <- append(fltp, colnames(seqtab)[i])
}}
writeLines(fltp, fc)
close(fc)

track <- as.matrix(rowSums(seqtab))
colnames(track) <- c("nonchimeric")
write.table(track, {_r_string(PART2_STATS)}, quote=FALSE, append=FALSE, sep="\\t", row.names=TRUE, col.names=TRUE)
"""


def write_rscript(*, script: str, out_path: Path) -> Path:
    """Write R source to ``out_path`` and return the path."""
    out_path = Path(out_path)
    out_path.write_text(script, encoding="utf-8")
    return out_path
