"""I/O utilities for SampleWeave.

Provides logging, sample loading, and table/graph export.
"""

from .logging import get_logger, get_timestamped_log_path, log_json, log_yaml
from .samples import load_manifest, load_sample_h5ad, load_samples, read_manifest
from .tables import (
    ensure_output_dir,
    read_graph,
    read_label_table,
    write_dataframe,
    write_graph,
    write_label_table,
)

__all__ = [
    # Logging
    "get_logger",
    "get_timestamped_log_path",
    "log_json",
    "log_yaml",
    # Samples
    "load_manifest",
    "load_sample_h5ad",
    "load_samples",
    "read_manifest",
    # Tables
    "ensure_output_dir",
    "read_graph",
    "read_label_table",
    "write_dataframe",
    "write_graph",
    "write_label_table",
]
