"""Command-line interface for SampleWeave.

Example Usage
-------------
    # From command line:
    sample-weave --help
    sample-weave build-graph --manifest samples.yaml --out weave/
    sample-weave propagate --graph-dir weave/ --labels seeds.csv --out weave/
    sample-weave communities --graph-dir weave/ --resolution 0.8 --out weave/
"""

from .main import cli, main

__all__ = [
    "cli",
    "main",
]
