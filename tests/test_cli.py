from __future__ import annotations

from pathlib import Path

import pytest

from conftest import TEST_TOOLS, FakeRunner, write_run
from dada2_part2_runner import (
    ToolConfig,
    UsageError,
    main,
    parse_runs,
    validate_config,
)


def _use_test_tools(monkeypatch):
    for name, var in ToolConfig.ENV_VARS.items():
        monkeypatch.setenv(var, getattr(TEST_TOOLS, name))


def test_parse_runs():
    assert parse_runs("MM_01, MM_03,,MM_05") == ["MM_01", "MM_03", "MM_05"]
    assert parse_runs(None) == []


@pytest.mark.parametrize("runs, region, project", [
    ([], "V3V4", "P"),
    (["R1"], "V3V4", ""),
    (["R1"], "V3V4", None),
    (["R1"], "V5", "P"),
    (["R1"], None, "P"),
])
def test_validate_rejects(runs, region, project):
    with pytest.raises(UsageError):
        validate_config(runs=runs, region=region, project=project)


def test_validate_accepts_its_alias():
    assert validate_config(runs=["R1"], region="ITS-like", project="P") == "ITS"
    assert validate_config(runs=["R1"], region="V4", project="P") == "V4"


@pytest.mark.parametrize("argv", [
    ["-v", "V3V4", "-p", "P"],
    ["-i", "R1", "-v", "V3V4", "-p", ""],
    ["-i", "R1", "-v", "V9", "-p", "P"],
    ["-i", "R1", "-v", "V3V4", "-p", "P", "--bogus"],
])
def test_usage_errors_exit_1_without_writing(tmp_path: Path, monkeypatch, argv):
    monkeypatch.chdir(tmp_path)
    runner = FakeRunner()
    with pytest.raises(SystemExit) as info:
        main(argv, runner=runner)
    assert info.value.code == 1
    assert list(tmp_path.iterdir()) == []
    assert runner.requests == []


def test_help_exits_0(capsys):
    with pytest.raises(SystemExit) as info:
        main(["-h"])
    assert info.value.code == 0
    out = capsys.readouterr().out
    for flag in ("--input-runs", "--variable-region", "--project-ID", "--notVaginal",
                 "--pecan-silva", "--dry-run", "--debug"):
        assert flag in out


def test_main_success_writes_log(tmp_path: Path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    _use_test_tools(monkeypatch)
    write_run(tmp_path, "R1", {"S1": 10})
    runner = FakeRunner()
    main(["-i", "R1", "-v", "V3V4", "-p", "P"], runner=runner)
    log = (tmp_path / "P_part2_16S_pipeline_log.txt").read_text()
    assert "This file logs the progress of 1 runs for P" in log
    assert "---Final files succesfully produced!" in log
    assert runner.executables == ["R", "classify", "PECAN_tx_for_ASV.pl"]


def test_main_tool_failure_exit_status(tmp_path: Path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    _use_test_tools(monkeypatch)
    write_run(tmp_path, "R1", {"S1": 10})
    with pytest.raises(SystemExit) as info:
        main(["-i", "R1", "-v", "V3V4", "-p", "P"], runner=FakeRunner(fail={"PECAN_tx_for_ASV.pl": 5}))
    assert info.value.code == 5
    log = (tmp_path / "P_part2_16S_pipeline_log.txt").read_text()
    assert "failed with exit code: 5" in log


def test_main_missing_run_exits_1(tmp_path: Path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    _use_test_tools(monkeypatch)
    with pytest.raises(SystemExit) as info:
        main(["-i", "NOPE", "-v", "V4", "-p", "P"], runner=FakeRunner())
    assert info.value.code == 1
    assert "NOPE" in (tmp_path / "P_part2_16S_pipeline_log.txt").read_text()


def test_dry_run_echoes_commands(tmp_path: Path, monkeypatch, capsys):
    monkeypatch.chdir(tmp_path)
    _use_test_tools(monkeypatch)
    runner = FakeRunner()
    main(["-i", "R1,R2", "-v", "V3V4", "-p", "P", "--dry-run"], runner=runner)
    err = capsys.readouterr().err
    assert f"cmd=cp {Path.cwd() / 'R1' / 'dada2_abundance_table.rds'}" in err
    assert "cmd=R CMD BATCH dada2_part2.R" in err
    assert "cmd=PECAN_tx_for_ASV.pl" in err
    assert runner.requests == []


def test_tool_config_from_env():
    cfg = ToolConfig.from_env({"PART2_R_BINARY": "/opt/R/bin/R", "PART2_CHIMERA_METHOD": "pooled"})
    assert cfg.r_binary == "/opt/R/bin/R"
    assert cfg.chimera_method == "pooled"
    assert cfg.classify_binary == ToolConfig().classify_binary
    assert cfg.r_env() == {"LD_LIBRARY_PATH": "/usr/local/packages/gcc/lib64"}


def test_repeated_runs_are_staged_once():
    assert parse_runs("R1,R2,R1") == ["R1", "R2"]


def test_help_names_its_like(capsys):
    with pytest.raises(SystemExit):
        main(["-h"])
    assert "ITS-like" in capsys.readouterr().out
