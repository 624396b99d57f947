from __future__ import annotations

import logging
from pathlib import Path
from typing import Dict, List, Optional

import pytest

from dada2_part2_runner import PipelineContext, ToolConfig
from tool_runner import ToolRequest, ToolResult


ASVS = ["TACGGAGGGTGCAAGCG", "TACGTAGGTGGCAAGCG", "TACGGAGGATCCGAGCG"]

TEST_TOOLS = ToolConfig(
    r_binary="R",
    ld_library_path="",
    silva_train_set="silva_train_set.fa.gz",
    classify_binary="classify",
    pecan_v3v4_models="models/V3V4",
    combine_tx_script="combine_tx_for_ASV.pl",
    pecan_tx_script="PECAN_tx_for_ASV.pl",
)


class FakeRunner:
    """Records requests and writes the files each real tool would write."""

    def __init__(
        self,
        *,
        rout_text: str = "> library(\"dada2\")\nlearnErrors: iteration 3\nproc.time()\n",
        fail: Optional[Dict[str, int]] = None,
    ) -> None:
        self.rout_text = rout_text
        self.fail = fail or {}
        self.requests: List[ToolRequest] = []

    @property
    def executables(self) -> List[str]:
        return [r.executable for r in self.requests]

    def __call__(self, request: ToolRequest) -> ToolResult:
        self.requests.append(request)
        code = self.fail.get(request.executable, 0)
        if code == 0:
            handler = {
                "R": self._r,
                "classify": self._classify,
                "combine_tx_for_ASV.pl": self._annotate,
                "PECAN_tx_for_ASV.pl": self._annotate,
            }[request.executable]
            handler(request)
        elif request.log_file is not None:
            request.log_file.write_text(self.rout_text)
        return ToolResult(request=request, returncode=code, stdout="", stderr="")

    def _r(self, request: ToolRequest) -> None:
        wd = request.cwd
        script = (wd / request.args[-1]).read_text(encoding="utf-8")
        samples = []
        for path in sorted(wd.glob("*-dada2_part1_stats.txt")):
            if path.name in script:
                samples.extend(line.split()[0] for line in path.read_text().splitlines() if line.strip())
        (wd / "all_runs_dada2_abundance_table.rds").write_bytes(b"RDS")
        rows = [",".join([""] + ASVS)]
        for i, sid in enumerate(samples):
            rows.append(",".join([sid] + [str(10 * (i + 1)), "5", "0"]))
        (wd / "all_runs_dada2_abundance_table.csv").write_text("\n".join(rows) + "\n")
        silva = [",Kingdom,Phylum,Genus"] + [f"{a},Bacteria,Firmicutes,Lactobacillus" for a in ASVS]
        (wd / "silva_classification.csv").write_text("\n".join(silva) + "\n")
        (wd / "all_runs_dada2_ASV.fasta").write_text("".join(f">{a}\n{a}\n" for a in ASVS))
        part2 = ["nonchimeric"] + [f"{sid}\t{10 * (i + 1) + 5}" for i, sid in enumerate(samples)]
        (wd / "dada2_part2_stats.txt").write_text("\n".join(part2) + "\n")
        request.log_file.write_text(self.rout_text)

    def _classify(self, request: ToolRequest) -> None:
        lines = [f"{a}\tLactobacillus_crispatus\t0.98" for a in ASVS]
        (request.cwd / "MC_order7_results.txt").write_text("\n".join(lines) + "\n")

    def _annotate(self, request: ToolRequest) -> None:
        abundance = request.args[request.args.index("-c") + 1]
        stem = abundance[: -len(".csv")]
        tag = "silva_" if "-p" not in request.args else ""
        for suffix in ("taxa_only_merged.csv", "taxa_only.csv", "w_taxa.csv"):
            (request.cwd / f"{stem}_{tag}{suffix}").write_text("sample,taxon\n")


def write_run(work_dir: Path, run: str, samples: Dict[str, int]) -> Path:
    """Create ``<run>/dada2_abundance_table.rds`` and its part 1 stats."""
    run_dir = work_dir / run
    run_dir.mkdir(parents=True, exist_ok=True)
    (run_dir / "dada2_abundance_table.rds").write_bytes(f"RDS:{run}".encode())
    (run_dir / "dada2_part1_stats.txt").write_text(
        "".join(f"{sid}\t{n}\n" for sid, n in samples.items())
    )
    return run_dir


@pytest.fixture
def logger() -> logging.Logger:
    log = logging.getLogger("test_dada2_part2")
    log.setLevel(logging.DEBUG)
    return log


@pytest.fixture
def fake_runner() -> FakeRunner:
    return FakeRunner()


@pytest.fixture
def make_context(tmp_path: Path, logger: logging.Logger, fake_runner: FakeRunner):
    def _make(**overrides) -> PipelineContext:
        fields = dict(
            project="P",
            runs=["R1", "R2"],
            region="V3V4",
            logger=logger,
            work_dir=tmp_path,
            tools=TEST_TOOLS,
            runner=fake_runner,
        )
        fields.update(overrides)
        return PipelineContext(**fields)

    return _make
