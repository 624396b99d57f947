#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Illumina dada2 part 2 runner: merge runs, remove chimeras, classify ASVs.

Overview
--------
Given a comma-separated list of Illumina amplicon runs, the variable region
of the amplicons and a project ID, and assuming each run name is also the
directory holding that run's part 1 outputs (``dada2_abundance_table.rds``
and ``dada2_part1_stats.txt``), this script will:

1) Remove stale staged tables from earlier invocations.
2) Copy each run's abundance table and stats into the working directory
   as ``<project>_<run>-dada2_abundance_table.rds`` (and ``...stats.txt``).
3) Run an embedded R/dada2 procedure that merges the runs, removes
   chimeras, assigns SILVA taxonomy and writes the ASV FASTA.
4) Rename the merged table and SILVA classification for the project.
5) For V3V4, classify ASVs with PECAN.
6) Apply classifications to the count table:
   - default: PECAN only, with vaginal merging rules;
   - --pecan-silva: PECAN + SILVA;
   - V4: additionally a SILVA-only pass.

Notes
-----
- Run from the project directory produced in part 1. Only one instance may
  run per directory at a time; there is no locking.
- Every step is fatal on failure; there is no resume.
- UK English spelling is used throughout documentation strings.

Example
-------
part2_illumina_dada2 -i MM_01,MM_03,MM_05,MM_21 -v V3V4 -p MM
"""

from __future__ import annotations

import argparse
import logging
import os
import shutil
import sys
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterator, List, Optional, Sequence, Tuple

import psutil

import dada2_rscript as rscript
import dada2_tables as tables
import taxonomy_steps as tx
from tool_runner import ToolFailure, ToolRequest, ToolRunner, invoke, run_tool


VALID_REGIONS = ("V3V4", "V4", "ITS")
REGION_ALIASES = {"ITS-like": "ITS"}

RUN_TABLE = "dada2_abundance_table.rds"
RUN_STATS = "dada2_part1_stats.txt"
STAGED_TABLE_SUFFIX = "-" + RUN_TABLE
STAGED_STATS_SUFFIX = "-" + RUN_STATS

R_SCRIPT = "dada2_part2.R"
FINAL_STATS = "dada2_final_stats.txt"
LOG_NAME = "part2_16S_pipeline_log.txt"


class UsageError(ValueError):
    """Invalid or missing command-line input."""


class PipelineError(RuntimeError):
    """A filesystem precondition of a pipeline step failed."""


# ----------------------------- configuration ----------------------------- #

@dataclass(frozen=True)
class ToolConfig:
    """Locations of the external tools and reference data.

    Each field can be overridden with the environment variable shown in
    ``ENV_VARS``.
    """

    r_binary: str = "/usr/local/packages/r-3.4.0/bin/R"
    ld_library_path: str = "/usr/local/packages/gcc/lib64"
    silva_train_set: str = "/home/jholm/bin/silva_nr_v128_train_set.fa.gz"
    rdp_train_set: str = ""
    chimera_method: str = "consensus"
    classify_binary: str = "/local/projects/pgajer/devel/MCclassifier/bin/classify"
    pecan_v3v4_models: str = "/local/projects-t2/jholm/PECAN/v1.0/V3V4/merged_models/"
    combine_tx_script: str = "/home/jholm/bin/combine_tx_for_ASV.pl"
    pecan_tx_script: str = "/home/jholm/bin/PECAN_tx_for_ASV.pl"

    ENV_VARS = {
        "r_binary": "PART2_R_BINARY",
        "ld_library_path": "PART2_LD_LIBRARY_PATH",
        "silva_train_set": "PART2_SILVA_TRAIN_SET",
        "rdp_train_set": "PART2_RDP_TRAIN_SET",
        "chimera_method": "PART2_CHIMERA_METHOD",
        "classify_binary": "PART2_CLASSIFY_BINARY",
        "pecan_v3v4_models": "PART2_PECAN_V3V4_MODELS",
        "combine_tx_script": "PART2_COMBINE_TX_SCRIPT",
        "pecan_tx_script": "PART2_PECAN_TX_SCRIPT",
    }

    @classmethod
    def from_env(cls, environ: Optional[dict] = None) -> "ToolConfig":
        """Build a config, taking any overrides from ``environ``."""
        environ = os.environ if environ is None else environ
        overrides = {
            name: environ[var] for name, var in cls.ENV_VARS.items() if var in environ
        }
        return cls(**overrides)

    def r_env(self) -> dict:
        return {"LD_LIBRARY_PATH": self.ld_library_path} if self.ld_library_path else {}


@dataclass
class PipelineContext:
    """Everything a pipeline step needs; passed explicitly to each step."""

    project: str
    runs: List[str]
    region: str
    logger: logging.Logger
    not_vaginal: bool = False
    pecan_silva: bool = False
    dry_run: bool = False
    debug: bool = False
    work_dir: Path = field(default_factory=Path.cwd)
    tools: ToolConfig = field(default_factory=ToolConfig)
    runner: ToolRunner = run_tool
    started_at: float = field(default_factory=time.time)

    def project_name(self, base: str) -> str:
        return f"{self.project}_{base}"

    def project_path(self, base: str) -> Path:
        return self.work_dir / self.project_name(base)

    def staged_table(self, run: str) -> Path:
        return self.work_dir / f"{self.project}_{run}{STAGED_TABLE_SUFFIX}"

    def staged_stats(self, run: str) -> Path:
        return self.work_dir / f"{self.project}_{run}{STAGED_STATS_SUFFIX}"


def parse_runs(text: Optional[str]) -> List[str]:
    """Split a comma-separated run list, dropping blanks and repeats."""
    if not text:
        return []
    runs = [r.strip() for r in text.split(",") if r.strip()]
    return list(dict.fromkeys(runs))


def validate_config(*, runs: Sequence[str], region: Optional[str], project: Optional[str]) -> str:
    """
    Check the required inputs and return the canonical region name.

    Parameters
    ----------
    runs : sequence of str
        Run names from -i.
    region : str or None
        Variable region from -v.
    project : str or None
        Project ID from -p.

    Returns
    -------
    str
        One of ``VALID_REGIONS``.

    Raises
    ------
    UsageError
        With a message telling the user what to provide.
    """
    if not region:
        raise UsageError("Please provide a variable region (-v), V3V4, V4 or ITS-like")
    region = REGION_ALIASES.get(region, region)
    if region not in VALID_REGIONS:
        raise UsageError(
            f"Please provide a valid variable region: V3V4, V4 or ITS-like (got '{region}')"
        )
    if not project or not project.strip():
        raise UsageError("Please provide a project name (-p)")
    if not runs:
        raise UsageError("Please provide (a) run ID(s) (-i)")
    return region


# ----------------------------- logging ----------------------------- #

def setup_logging(*, work_dir: Path, project: str, debug: bool = False) -> logging.Logger:
    """
    Configure logging to stderr (human) and to the project log file.

    The file receives DEBUG+ with timestamps; stderr shows INFO+ (DEBUG+ with
    --debug) with compact formatting. The file is started afresh on each
    invocation.

    Parameters
    ----------
    work_dir : pathlib.Path
        Directory the log file is written to.
    project : str
        Project ID; the log is ``<project>_part2_16S_pipeline_log.txt``.
    debug : bool
        Show DEBUG messages on stderr.

    Returns
    -------
    logging.Logger
        Configured logger instance ('dada2_part2_runner').
    """
    log_file = Path(work_dir) / f"{project}_{LOG_NAME}"

    logger = logging.getLogger("dada2_part2_runner")
    logger.setLevel(logging.DEBUG)
    close_logging(logger)
    logger.propagate = False

    stream_handler = logging.StreamHandler(stream=sys.stderr)
    stream_handler.setLevel(logging.DEBUG if debug else logging.INFO)
    stream_handler.setFormatter(logging.Formatter("%(levelname)s: %(message)s"))

    file_handler = logging.FileHandler(filename=log_file, mode="w", encoding="utf-8")
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(logging.Formatter("%(asctime)s | %(levelname)s | %(message)s"))

    logger.addHandler(stream_handler)
    logger.addHandler(file_handler)

    logger.debug("Log file: %s", log_file)
    logger.debug("Python version: %s", " ".join(map(str, sys.version_info)))
    logger.debug("Command line: %s", " ".join(sys.argv))
    return logger


def close_logging(logger: logging.Logger) -> None:
    """Flush, close and detach every handler of ``logger``."""
    for handler in list(logger.handlers):
        handler.flush()
        handler.close()
        logger.removeHandler(handler)


@contextmanager
def pipeline_logging(*, work_dir: Path, project: str, debug: bool = False) -> Iterator[logging.Logger]:
    """Open the pipeline log for the duration of a run; always closes it."""
    logger = setup_logging(work_dir=work_dir, project=project, debug=debug)
    try:
        yield logger
    finally:
        close_logging(logger)


def log_section(*, logger: logging.Logger, title: str) -> None:
    """Emit a visible section divider in logs."""
    sep = "=" * max(10, min(80, len(title) + 8))
    logger.info("%s", sep)
    logger.info("== %s ==", title)
    logger.info("%s", sep)


def log_memory_usage(
    *,
    logger: logging.Logger,
    started_at: float,
    prefix: str = "",
    extra_msg: Optional[str] = None,
) -> None:
    """
    Log current resident memory and elapsed wall time.

    Parameters
    ----------
    logger : logging.Logger
        Logger instance to emit the message.
    started_at : float
        ``time.time()`` at pipeline start.
    prefix : str
        Optional prefix (e.g., 'START' or 'END').
    extra_msg : str or None
        Optional extra text appended to the log message.
    """
    parts = []
    if prefix:
        parts.append(prefix.strip())
    try:
        rss_gb = psutil.Process(os.getpid()).memory_info().rss / (1024 ** 3)
        parts.append(f"RAM: {rss_gb:.2f} GB")
    except psutil.Error as err:
        logger.debug("Memory usage unavailable: %s", err)
    elapsed_min = max(0.0, time.time() - started_at) / 60.0
    parts.append(f"Elapsed: {elapsed_min:.1f} min")
    if extra_msg:
        parts.append(extra_msg)
    logger.info(" | ".join(parts))


# ----------------------------- file operations ----------------------------- #

def _echo(ctx: PipelineContext, cmd: str) -> None:
    if ctx.dry_run or ctx.debug:
        ctx.logger.info("\tcmd=%s", cmd)
    else:
        ctx.logger.debug("cmd=%s", cmd)


def _copy(ctx: PipelineContext, src: Path, dst: Path) -> None:
    _echo(ctx, f"cp {src} {dst}")
    if ctx.dry_run:
        return
    if not src.is_file():
        raise PipelineError(f"Expected input not found: {src}")
    shutil.copy2(src, dst)


def _move(ctx: PipelineContext, src: Path, dst: Path) -> None:
    _echo(ctx, f"mv {src.name} {dst.name}")
    if ctx.dry_run:
        return
    if not src.exists():
        raise PipelineError(f"Expected output not found: {src}")
    os.replace(src, dst)


# ----------------------------- pipeline steps ----------------------------- #

def clean_staged_files(ctx: PipelineContext) -> List[Path]:
    """Remove staged per-run tables and stats left by earlier invocations."""
    stale: List[Path] = []
    for suffix in (STAGED_TABLE_SUFFIX, STAGED_STATS_SUFFIX):
        stale.extend(sorted(ctx.work_dir.glob(f"*{suffix}")))
    _echo(ctx, f"rm -f *{STAGED_TABLE_SUFFIX} *{STAGED_STATS_SUFFIX}")
    if ctx.dry_run:
        return stale
    for path in stale:
        path.unlink(missing_ok=True)
    if stale:
        ctx.logger.info("Removed %d stale staged file(s)", len(stale))
    return stale


def stage_runs(ctx: PipelineContext) -> List[Tuple[Path, Path]]:
    """
    Copy each run's abundance table and stats into the working directory.

    Returns
    -------
    list of (pathlib.Path, pathlib.Path)
        Staged (table, stats) per run, in input order.

    Raises
    ------
    PipelineError
        If a run is missing either input file.
    """
    n = len(ctx.runs)
    if n > 1:
        ctx.logger.info("---Copying %d abundance tables to this directory & combining", n)
    else:
        ctx.logger.info("---Copying 1 abundance table to this directory")
        ctx.logger.info("---Proceeding to chimera removal for 1 run")
    ctx.logger.info("Runs:" if n > 1 else "Run:")

    staged: List[Tuple[Path, Path]] = []
    for run in ctx.runs:
        ctx.logger.info("%s", run)
        run_dir = ctx.work_dir / run
        table = ctx.staged_table(run)
        stats = ctx.staged_stats(run)
        _copy(ctx, run_dir / RUN_TABLE, table)
        _copy(ctx, run_dir / RUN_STATS, stats)
        staged.append((table, stats))
    return staged


def merge_and_classify(ctx: PipelineContext, staged: Sequence[Tuple[Path, Path]]) -> None:
    """
    Run the embedded R procedure over the staged tables.

    Raises
    ------
    ToolFailure
        If R exits non-zero or its ``.Rout`` log contains an error line.
    """
    ctx.logger.info(
        "---Performing chimera removal on merged tables and classifying amplicon sequence variants (ASVs)"
    )
    script_path = ctx.work_dir / R_SCRIPT
    source = rscript.render_merge_and_classify(
        tables=[t.name for t, _ in staged],
        stats=[s.name for _, s in staged],
        silva_train_set=ctx.tools.silva_train_set,
        rdp_train_set=ctx.tools.rdp_train_set or None,
        chimera_method=ctx.tools.chimera_method,
    )
    if not ctx.dry_run:
        rscript.write_rscript(script=source, out_path=script_path)

    request = ToolRequest(
        executable=ctx.tools.r_binary,
        args=("CMD", "BATCH", script_path.name),
        cwd=ctx.work_dir,
        env=ctx.tools.r_env(),
        log_file=ctx.work_dir / (script_path.name + "out"),
    )
    invoke(
        request=request,
        runner=ctx.runner,
        logger=ctx.logger,
        dry_run=ctx.dry_run,
        echo=ctx.debug,
        scan_log=True,
    )

    ctx.logger.info("---Merged, chimera-removed abundance tables written to %s", rscript.MERGED_CSV)
    ctx.logger.info("---ASVs classified via silva written to %s", rscript.SILVA_CSV)
    if ctx.tools.rdp_train_set:
        ctx.logger.info("---ASVs classified via RDP written to %s", rscript.RDP_CSV)
    ctx.logger.info("---Final ASVs written to %s for classification via PECAN", rscript.ASV_FASTA)
    ctx.logger.info("---dada2 completed successfully")


def rename_outputs(ctx: PipelineContext) -> None:
    """Prefix the R procedure's fixed-name outputs with the project ID."""
    ctx.logger.info("---Renaming dada2 files for project")
    for base in (rscript.MERGED_CSV, rscript.MERGED_RDS):
        _move(ctx, ctx.work_dir / base, ctx.project_path(base))
    ctx.logger.info("---Renaming SILVA classification file for project")
    _move(ctx, ctx.work_dir / rscript.SILVA_CSV, ctx.project_path(rscript.SILVA_CSV))
    if ctx.tools.rdp_train_set:
        _move(ctx, ctx.work_dir / rscript.RDP_CSV, ctx.project_path(rscript.RDP_CSV))


def summarise_read_survival(ctx: PipelineContext, staged: Sequence[Tuple[Path, Path]]) -> Optional[Path]:
    """
    Check ASV consistency and write ``<project>_dada2_final_stats.txt``.

    Raises
    ------
    ValueError
        If the merged table, FASTA and classification disagree on ASVs.
    """
    if ctx.dry_run:
        return None
    classification = [ctx.project_path(rscript.SILVA_CSV)]
    if ctx.tools.rdp_train_set:
        classification.append(ctx.project_path(rscript.RDP_CSV))
    tables.check_asv_consistency(
        abundance_csv=ctx.project_path(rscript.MERGED_CSV),
        fasta=ctx.work_dir / rscript.ASV_FASTA,
        classification_csvs=classification,
        logger=ctx.logger,
    )
    stats = tables.combine_read_stats(
        part1_stats=[s for _, s in staged],
        part2_stats=ctx.work_dir / rscript.PART2_STATS,
        logger=ctx.logger,
    )
    out_path = tables.write_read_stats(stats=stats, out_path=ctx.project_path(FINAL_STATS))
    ctx.logger.info("Read survival stats for %d samples written to %s", len(stats), out_path.name)
    return out_path


def classify_sequences(ctx: PipelineContext) -> bool:
    """Classify ASVs with PECAN when the region has PECAN models.

    Returns True if the classifier ran (or would run, in a dry run).
    """
    if not tx.uses_pecan(ctx.region):
        ctx.logger.info("---Skipping PECAN classification for %s", ctx.region)
        return False
    models = ctx.tools.pecan_v3v4_models
    ctx.logger.info("---Classifying ASVs with %s PECAN models (located in %s)", ctx.region, models)
    request = tx.pecan_classify_request(
        classify_binary=ctx.tools.classify_binary,
        models_dir=models,
        fasta=rscript.ASV_FASTA,
        work_dir=ctx.work_dir,
    )
    invoke(request=request, runner=ctx.runner, logger=ctx.logger, dry_run=ctx.dry_run, echo=ctx.debug)
    _move(ctx, ctx.work_dir / tx.PECAN_RESULTS, ctx.project_path(tx.PECAN_RESULTS))
    return True


def annotate_count_table(ctx: PipelineContext) -> List[str]:
    """Apply classifications to the count table; returns the branches run."""
    branches = tx.select_annotation_branches(region=ctx.region, pecan_silva=ctx.pecan_silva)
    for branch in branches:
        if branch == tx.BRANCH_SILVA:
            ctx.logger.info("---Classifying ASVs with %s with SILVA only", ctx.region)
        else:
            ctx.logger.info("---Applying %s classifications to count table", branch.upper())
        request = tx.annotation_request(
            branch=branch,
            pecan_results=ctx.project_name(tx.PECAN_RESULTS),
            silva_csv=ctx.project_name(rscript.SILVA_CSV),
            abundance_csv=ctx.project_name(rscript.MERGED_CSV),
            not_vaginal=ctx.not_vaginal,
            combine_script=ctx.tools.combine_tx_script,
            pecan_script=ctx.tools.pecan_tx_script,
            work_dir=ctx.work_dir,
        )
        invoke(request=request, runner=ctx.runner, logger=ctx.logger, dry_run=ctx.dry_run, echo=ctx.debug)
    return branches


def report_final_files(ctx: PipelineContext) -> None:
    """Log where the final artefacts ended up."""

    def first(pattern: str) -> str:
        hits = sorted(ctx.work_dir.glob(pattern))
        return hits[0].name if hits else "(not found)"

    ctx.logger.info("---Final files succesfully produced!")
    ctx.logger.info("Final merged read count table: %s", first("*_taxa_only_merged.csv"))
    ctx.logger.info("Final unmerged taxa table: %s", first("*_taxa_only.csv"))
    ctx.logger.info("Final ASV table with taxa: %s", first("*_w_taxa.csv"))
    ctx.logger.info("Final ASV count table: %s", ctx.project_name(rscript.MERGED_CSV))
    ctx.logger.info("ASV sequences: %s", rscript.ASV_FASTA)
    ctx.logger.info("Read survival stats: %s", ctx.project_name(FINAL_STATS))


def run_pipeline(ctx: PipelineContext) -> None:
    """
    Run every step in order; the first failure stops the pipeline.

    Clean -> Stage -> MergeAndClassify -> Rename -> [ClassifySequences]
    -> AnnotateCountTable.
    """
    logger = ctx.logger
    logger.info(
        "This file logs the progress of %d runs for %s 16S amplicon sequences "
        "through the illumina_dada2 part 2 pipeline.",
        len(ctx.runs), ctx.project,
    )
    logger.info("Region: %s | PECAN+SILVA: %s | notVaginal: %s", ctx.region, ctx.pecan_silva, ctx.not_vaginal)
    log_memory_usage(logger=logger, started_at=ctx.started_at, prefix="START")

    log_section(logger=logger, title="Stage runs")
    clean_staged_files(ctx)
    staged = stage_runs(ctx)

    log_section(logger=logger, title="Merge and classify")
    merge_and_classify(ctx, staged)
    rename_outputs(ctx)
    summarise_read_survival(ctx, staged)

    log_section(logger=logger, title="Taxonomy")
    classify_sequences(ctx)
    annotate_count_table(ctx)

    report_final_files(ctx)
    log_memory_usage(logger=logger, started_at=ctx.started_at, prefix="END", extra_msg="Pipeline complete")


# ----------------------------- command line ----------------------------- #

class _ArgumentParser(argparse.ArgumentParser):
    """ArgumentParser that exits with status 1 on usage errors."""

    def error(self, message: str) -> None:  # type: ignore[override]
        self.print_usage(sys.stderr)
        self.exit(1, f"{self.prog}: error: {message}\n")


def build_arg_parser() -> argparse.ArgumentParser:
    """Construct the command-line interface for the runner.

    Returns
    -------
    argparse.ArgumentParser
        Configured parser; required inputs are checked by ``validate_config``.
    """
    p = _ArgumentParser(
        prog="part2_illumina_dada2",
        description=(
            "Merge dada2 abundance tables from one or more Illumina runs, remove "
            "chimeras, classify ASVs (SILVA, PECAN) and build taxonomy count tables."
        ),
        epilog="Example: part2_illumina_dada2 -i MM_01,MM_03,MM_05 -v V3V4 -p MM",
        allow_abbrev=False,
    )
    p.add_argument("--input-runs", "-i", dest="input_runs", type=str, default=None,
                   help="Comma-separated list of input run names (directories). Required.")
    p.add_argument("--variable-region", "-v", dest="region", type=str, default=None,
                   help="Variable region: V3V4, V4 or ITS-like (ITS). Required.")
    p.add_argument("--project-ID", "-p", dest="project", type=str, default=None,
                   help="Project ID. Required.")
    p.add_argument("--notVaginal", "--not-vaginal", dest="not_vaginal", action="store_true",
                   help="Project is NOT just vaginal sequences; skip vaginal merging rules.")
    p.add_argument("--pecan-silva", dest="pecan_silva", action="store_true",
                   help="Apply PECAN+SILVA taxonomy to the count table (default: PECAN only).")
    p.add_argument("--dry-run", dest="dry_run", action="store_true",
                   help="Print commands without executing them.")
    p.add_argument("--debug", action="store_true", help="Echo every command and show debug logs.")
    return p


def main(argv: Optional[Sequence[str]] = None, *, runner: Optional[ToolRunner] = None) -> None:
    """Entry point for the part 2 runner.

    Parses and validates arguments, opens the project log, and runs the
    pipeline from the current working directory. Exits 1 on usage or
    filesystem errors and with the tool's exit status on tool failures.
    """
    parser = build_arg_parser()
    args = parser.parse_args(argv)
    runs = parse_runs(args.input_runs)
    try:
        region = validate_config(runs=runs, region=args.region, project=args.project)
    except UsageError as exc:
        print(f"{exc}\n", file=sys.stderr)
        parser.print_help(sys.stderr)
        sys.exit(1)

    work_dir = Path.cwd()
    with pipeline_logging(work_dir=work_dir, project=args.project, debug=args.debug) as logger:
        ctx = PipelineContext(
            project=args.project,
            runs=runs,
            region=region,
            logger=logger,
            not_vaginal=args.not_vaginal,
            pecan_silva=args.pecan_silva,
            dry_run=args.dry_run,
            debug=args.debug,
            work_dir=work_dir,
            tools=ToolConfig.from_env(),
            runner=runner or run_tool,
        )
        try:
            run_pipeline(ctx)
        except ToolFailure as exc:
            logger.error("%s", exc)
            sys.exit(exc.exit_status)
        except (PipelineError, ValueError, OSError) as exc:
            logger.error("%s", exc)
            sys.exit(1)


if __name__ == "__main__":
    main()
