# Copyright (c) Syntropy Systems
"""Tests for iomatrix CLI commands."""

import json
import sys
import tarfile
import textwrap
from pathlib import Path

from typer.testing import CliRunner

from iomatrix.cli.main import app
from iomatrix.report import EXIT_FATAL, EXIT_JOB_FAILURES

runner = CliRunner()


def write_matrix(temp_dir: Path, fake_fio: Path, axes: str, extra: str = "") -> Path:
    path = temp_dir / "custom.yaml"
    _ = path.write_text(
        textwrap.dedent(
            f"""\
            axes:
            {textwrap.indent(textwrap.dedent(axes), "  ")}
            options:
              fio: {fake_fio}
              runtime: 1
              ramp: 0
              timeout: 30
              output_dir: {temp_dir / "custom-out"}
            """
        )
        + extra
    )
    return path


class TestPlanCommand:
    """Tests for iomatrix plan."""

    def test_plan_lists_jobs(self, matrix_file: Path) -> None:
        result = runner.invoke(app, ["plan", str(matrix_file)])

        assert result.exit_code == 0
        assert "4 jobs" in result.stdout
        assert "0 excluded" in result.stdout
        assert "64k" in result.stdout
        assert "nothing was run" in result.stdout

    def test_plan_counts_exclusions(self, temp_dir: Path) -> None:
        path = temp_dir / "matrix.yaml"
        _ = path.write_text(
            "axes:\n  bs: [4k, 64k]\n  rw: [read, write]\nexclude:\n  - {bs: 64k, rw: write}\n"
        )

        result = runner.invoke(app, ["plan", str(path)])

        assert result.exit_code == 0
        assert "3 jobs" in result.stdout
        assert "1 excluded" in result.stdout

    def test_plan_invalid_space(self, temp_dir: Path) -> None:
        path = temp_dir / "matrix.yaml"
        _ = path.write_text("axes:\n  bs: []\n")

        result = runner.invoke(app, ["plan", str(path)])

        assert result.exit_code == EXIT_FATAL
        assert "no values" in result.stdout

    def test_plan_missing_file(self, temp_dir: Path) -> None:
        result = runner.invoke(app, ["plan", str(temp_dir / "missing.yaml")])

        assert result.exit_code == EXIT_FATAL
        assert "Could not find" in result.stdout


class TestRunCommand:
    """Tests for iomatrix run."""

    def test_run_all_success(self, matrix_file: Path, temp_dir: Path) -> None:
        result = runner.invoke(app, ["run", str(matrix_file)])

        assert result.exit_code == 0, result.stdout
        assert "4 succeeded" in result.stdout

        results_path = temp_dir / "out" / "results.json"
        assert results_path.exists()
        assert (temp_dir / "out" / "results.csv").exists()
        data = json.loads(results_path.read_text())
        assert data["tag"] == "smoke"
        assert [r["outcome"] for r in data["records"]] == ["success"] * 4
        assert data["records"][0]["params"] == {"bs": "4k", "rw": "read"}
        assert data["records"][0]["metrics"]["read_iops"] == 1000
        assert data["records"][0]["metrics"]["write_iops"] is None
        assert "cfg" in data["records"][0]["artifacts"]

    def test_run_with_failures(self, temp_dir: Path, fake_fio: Path) -> None:
        path = write_matrix(temp_dir, fake_fio, "mode: [ok, fail, garbage]\n")

        result = runner.invoke(app, ["run", str(path)])

        assert result.exit_code == EXIT_JOB_FAILURES
        assert "1 succeeded, 2 failed" in result.stdout
        assert "unparsable_output" in result.stdout

    def test_run_missing_tool(self, matrix_file: Path, temp_dir: Path) -> None:
        result = runner.invoke(
            app, ["run", str(matrix_file), "--fio", str(temp_dir / "no-such-fio")]
        )

        assert result.exit_code == EXIT_FATAL
        assert "not found" in result.stdout
        assert not (temp_dir / "out" / "results.json").exists()

    def test_run_overrides(self, matrix_file: Path, temp_dir: Path) -> None:
        other = temp_dir / "elsewhere"

        result = runner.invoke(
            app,
            ["run", str(matrix_file), "--output-dir", str(other), "--tag", "override", "-n", "2"],
        )

        assert result.exit_code == 0, result.stdout
        data = json.loads((other / "results.json").read_text())
        assert data["tag"] == "override"
        assert data["axes"] == ["sample", "bs", "rw"]
        assert len(data["records"]) == 8

    def test_run_compress(self, matrix_file: Path, temp_dir: Path) -> None:
        result = runner.invoke(app, ["run", str(matrix_file), "--compress"])

        assert result.exit_code == 0, result.stdout
        assert (temp_dir / "out.tgz").exists()
        with tarfile.open(temp_dir / "out.tgz") as tar:
            names = tar.getnames()
        assert "out/results.json" in names
        assert any(name.startswith("out/log-") for name in names)

    def test_run_setup_failure_is_fatal(self, temp_dir: Path, fake_fio: Path) -> None:
        extra = f"  run_setup_hooks:\n    - [{sys.executable}, -c, \"import sys; sys.exit(1)\"]\n"
        path = write_matrix(temp_dir, fake_fio, "bs: [4k]\n", extra)

        result = runner.invoke(app, ["run", str(path)])

        assert result.exit_code == EXIT_FATAL
        assert "Run setup failed" in result.stdout
        assert not (temp_dir / "custom-out" / "results.json").exists()

    def test_run_writes_log_file(self, matrix_file: Path, temp_dir: Path) -> None:
        result = runner.invoke(app, ["run", str(matrix_file)])

        assert result.exit_code == 0
        logs = list((temp_dir / "out").glob("log-*.log"))
        assert len(logs) == 1
        assert "Uname:" in logs[0].read_text()

    def test_dump_config(self, matrix_file: Path, temp_dir: Path) -> None:
        result = runner.invoke(app, ["run", str(matrix_file), "--dump-config", "-j", "3"])

        assert result.exit_code == 0
        assert "concurrency: 3" in result.stdout
        assert not (temp_dir / "out").exists()

    def test_run_invalid_option(self, matrix_file: Path) -> None:
        result = runner.invoke(app, ["run", str(matrix_file), "--concurrency", "0"])

        assert result.exit_code == EXIT_FATAL
        assert "concurrency" in result.stdout


class TestReportCommand:
    """Tests for iomatrix report."""

    def test_report_after_run(self, matrix_file: Path, temp_dir: Path) -> None:
        _ = runner.invoke(app, ["run", str(matrix_file)])
        csv_path = temp_dir / "export.csv"

        result = runner.invoke(
            app,
            [
                "report",
                str(temp_dir / "out" / "results.json"),
                "--metric",
                "read_iops",
                "--csv",
                str(csv_path),
            ],
        )

        assert result.exit_code == 0, result.stdout
        assert "Summary: read_iops" in result.stdout
        assert "Exported 4 record(s)" in result.stdout
        assert csv_path.exists()

    def test_report_unknown_metric(self, matrix_file: Path, temp_dir: Path) -> None:
        _ = runner.invoke(app, ["run", str(matrix_file)])

        result = runner.invoke(
            app,
            ["report", str(temp_dir / "out" / "results.json"), "--metric", "nope", "--no-records"],
        )

        assert result.exit_code == EXIT_FATAL
        assert "Unknown metric" in result.stdout

    def test_report_missing_file(self, temp_dir: Path) -> None:
        result = runner.invoke(app, ["report", str(temp_dir / "missing.json")])

        assert result.exit_code != 0
