"""Tests for the sample-weave command-line interface."""

import json

import pandas as pd
import pytest
import yaml
from click.testing import CliRunner

from sample_weave import __version__
from sample_weave.cli.main import cli


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def graph_dir(runner, h5ad_files, tmp_path):
    """Directory holding a graph built from the two .h5ad fixtures."""
    out_dir = tmp_path / "weave"
    result = runner.invoke(
        cli,
        [
            "build-graph",
            "--input", str(h5ad_files[0]),
            "--input", str(h5ad_files[1]),
            "-k", "10",
            "--out", str(out_dir),
        ],
    )
    assert result.exit_code == 0, result.output
    return out_dir


class TestBuildGraphCommand:
    """Tests for build-graph."""

    def test_writes_graph_files(self, graph_dir):
        """The graph, the config used and a summary are written."""
        for name in (
            "joint_graph_edges.csv",
            "joint_graph_nodes.csv",
            "joint_graph_adjacency.npz",
            "joint_graph_info.json",
            "config_used.yaml",
            "build_summary.json",
            "runs.jsonl",
        ):
            assert (graph_dir / name).exists(), name

        summary = json.loads((graph_dir / "build_summary.json").read_text())
        assert summary["graph"]["n_nodes"] == 120
        assert summary["alignment"]["n_succeeded"] == 1

    def test_reports_graph(self, runner, manifest_yaml, tmp_path):
        """A manifest run echoes the graph size."""
        result = runner.invoke(
            cli, ["build-graph", "--manifest", str(manifest_yaml), "--out", str(tmp_path / "out")]
        )
        assert result.exit_code == 0, result.output
        assert "Joint graph: 120 cells" in result.output
        assert "(1/1 pairs aligned)" in result.output

    def test_requires_samples(self, runner, tmp_path):
        """Without a manifest or input files the command is a usage error."""
        result = runner.invoke(cli, ["build-graph", "--out", str(tmp_path / "out")])
        assert result.exit_code == 2

    def test_invalid_config(self, runner, h5ad_files, tmp_path):
        """Invalid configuration values exit with status 1."""
        config = tmp_path / "bad.yaml"
        config.write_text("sample_weave:\n  k: 0\n")
        result = runner.invoke(
            cli,
            [
                "build-graph",
                "--input", str(h5ad_files[0]),
                "--config", str(config),
                "--out", str(tmp_path / "out"),
            ],
        )
        assert result.exit_code == 1
        assert "Error:" in result.output

    def test_run_log_written(self, graph_dir):
        """Each command writes a timestamped run log next to its outputs."""
        logs = sorted(graph_dir.glob("build_graph_*.log"))
        assert len(logs) == 1
        text = logs[0].read_text()
        assert "build_graph" in text
        assert "Aligning 1 sample pairs" in text

    def test_options_override_config_file(self, runner, h5ad_files, tmp_path):
        """Command-line options win over every value of the config file."""
        config = tmp_path / "weave.yaml"
        config.write_text("sample_weave:\n  k: 5\n  alignment:\n    k: 7\n  ncomps: 10\n")
        out_dir = tmp_path / "out"
        result = runner.invoke(
            cli,
            [
                "build-graph",
                "--input", str(h5ad_files[0]),
                "--input", str(h5ad_files[1]),
                "--config", str(config),
                "-k", "12",
                "--out", str(out_dir),
            ],
        )
        assert result.exit_code == 0, result.output
        used = yaml.safe_load((out_dir / "config_used.yaml").read_text())["sample_weave"]
        assert used["alignment"]["k"] == 12
        assert used["alignment"]["ncomps"] == 10

    def test_non_mapping_config(self, runner, h5ad_files, tmp_path):
        """A config file that is not a mapping exits with status 1."""
        config = tmp_path / "list.yaml"
        config.write_text("- 1\n- 2\n")
        result = runner.invoke(
            cli,
            ["build-graph", "--input", str(h5ad_files[0]), "--config", str(config), "--out", str(tmp_path)],
        )
        assert result.exit_code == 1
        assert "mapping" in result.output

    def test_version(self, runner):
        """--version prints the package version."""
        result = runner.invoke(cli, ["--version"])
        assert result.exit_code == 0
        assert __version__ in result.output

    def test_rebalanced_graph_feeds_communities(self, runner, h5ad_files, tmp_path):
        """A rebalanced graph is saved as directed and reused by communities."""
        out_dir = tmp_path / "balanced"
        result = runner.invoke(
            cli,
            [
                "build-graph",
                "--input", str(h5ad_files[0]),
                "--input", str(h5ad_files[1]),
                "--balance-factor", "sample",
                "--alignment-strength", "1.0",
                "--out", str(out_dir),
            ],
        )
        assert result.exit_code == 0, result.output
        info = json.loads((out_dir / "joint_graph_info.json").read_text())
        assert info["directed"] is True

        result = runner.invoke(cli, ["communities", "--graph-dir", str(out_dir), "--out", str(out_dir)])
        assert result.exit_code == 0, result.output
        assert len(pd.read_csv(out_dir / "communities.csv")) == 120


class TestPropagateCommand:
    """Tests for propagate."""

    def test_propagate_saved_graph(self, runner, graph_dir, tmp_path):
        """Seeds on one sample are propagated to every cell of the graph."""
        seeds = tmp_path / "seeds.csv"
        pd.DataFrame(
            {
                "cell_id": [f"donor_a_{i}" for i in range(0, 60, 6)],
                "label": ["early"] * 5 + ["late"] * 5,
            }
        ).to_csv(seeds, index=False)

        result = runner.invoke(
            cli,
            [
                "propagate",
                "--graph-dir", str(graph_dir),
                "--labels", str(seeds),
                "--method", "solver",
                "--out", str(graph_dir),
            ],
        )
        assert result.exit_code == 0, result.output

        table = pd.read_csv(graph_dir / "propagated_labels.csv")
        assert len(table) == 120
        assert {"cell_id", "early", "late", "label", "uncertainty"} <= set(table.columns)
        assert set(table["label"]) <= {"early", "late"}

    def test_unknown_seed_cells(self, runner, graph_dir, tmp_path):
        """Seeds that miss every graph cell exit with status 1."""
        seeds = tmp_path / "seeds.csv"
        pd.DataFrame({"cell_id": ["ghost"], "label": ["x"]}).to_csv(seeds, index=False)
        result = runner.invoke(
            cli,
            ["propagate", "--graph-dir", str(graph_dir), "--labels", str(seeds), "--out", str(tmp_path)],
        )
        assert result.exit_code == 1


class TestCommunitiesCommand:
    """Tests for communities."""

    def test_communities_and_tree(self, runner, graph_dir):
        """Communities, their merge tree and a layout are written."""
        result = runner.invoke(
            cli, ["communities", "--graph-dir", str(graph_dir), "--layout", "--out", str(graph_dir)]
        )
        assert result.exit_code == 0, result.output
        assert "communities over 120 cells" in result.output

        table = pd.read_csv(graph_dir / "communities.csv")
        assert len(table) == 120
        assert "sample_id" in table.columns
        assert (graph_dir / "merge_tree.yaml").exists()
        layout = pd.read_csv(graph_dir / "layout.csv")
        assert len(layout) == 120
